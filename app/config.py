from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_AUTH_SECRET_KEY = "change-me-procyard-auth-secret"
DEFAULT_CREDENTIAL_ENCRYPTION_KEY = "change-me-procyard-credential-key"
_PROD_ENV_NAMES = {"prod", "production"}


class Settings(BaseSettings):
    app_name: str = Field(default="Procyard")
    app_env: str = Field(default="dev")
    app_version: str = Field(default="0.1.0")

    database_url: str = Field(default="")

    log_level: str = Field(default="INFO")
    log_file: str = Field(default="data/app.log")
    log_db_queries: bool = Field(default=False)
    log_db_query_params: bool = Field(default=False)
    log_sql_max_length: int = Field(default=400)

    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=3001)
    public_base_url: str = Field(default="http://localhost:3001")
    auth_secret_key: str = Field(default=DEFAULT_AUTH_SECRET_KEY)
    auth_cookie_secure: bool = Field(default=False)
    auth_session_ttl_seconds: int = Field(default=43200)
    credential_encryption_key: str = Field(default=DEFAULT_CREDENTIAL_ENCRYPTION_KEY)

    working_dir: str = Field(default_factory=lambda: str(Path.home() / "repositories"))
    nvm_versions_dir: str = Field(
        default_factory=lambda: str(Path.home() / ".nvm" / "versions" / "node")
    )
    git_command: str = Field(default="git")
    yarn_command: str = Field(default="yarn")
    npm_command: str = Field(default="npm")
    pm2_command: str = Field(default="pm2")

    server_ip: str = Field(default="")
    use_sudo: bool = Field(default=True)
    nginx_available_dir: str = Field(default="/etc/nginx/sites-available")
    nginx_enabled_dir: str = Field(default="/etc/nginx/sites-enabled")
    nginx_test_command: str = Field(default="nginx -t")
    nginx_reload_command: str = Field(default="systemctl reload nginx")
    certbot_command: str = Field(default="certbot")
    certbot_email: str = Field(default="")

    github_api_url: str = Field(default="https://api.github.com")
    github_timeout_seconds: float = Field(default=15.0)

    fetch_timeout_seconds: int = Field(default=300)
    install_timeout_seconds: int = Field(default=900)
    build_timeout_seconds: int = Field(default=900)
    supervisor_timeout_seconds: int = Field(default=60)
    nginx_timeout_seconds: int = Field(default=30)
    certbot_timeout_seconds: int = Field(default=180)
    dns_timeout_seconds: float = Field(default=10.0)

    deploy_queue_max_attempts: int = Field(default=2)
    deploy_queue_retry_delay_seconds: float = Field(default=10.0)
    deploy_queue_history_size: int = Field(default=200)
    autostart_enabled: bool = Field(default=True)

    metrics_enabled: bool = Field(default=True)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_database_url(self) -> "Settings":
        if not self.database_url:
            raise ValueError("DATABASE_URL must be set in .env or environment variables.")
        if self.app_env.strip().lower() in _PROD_ENV_NAMES:
            issues: list[str] = []
            if self.auth_secret_key == DEFAULT_AUTH_SECRET_KEY:
                issues.append("AUTH_SECRET_KEY must not use the default placeholder in production.")
            if self.credential_encryption_key == DEFAULT_CREDENTIAL_ENCRYPTION_KEY:
                issues.append(
                    "CREDENTIAL_ENCRYPTION_KEY must not use the default placeholder in production."
                )
            if len(self.auth_secret_key) < 32:
                issues.append("AUTH_SECRET_KEY must be at least 32 characters in production.")
            if not self.auth_cookie_secure:
                issues.append("AUTH_COOKIE_SECURE must be true in production.")
            if not self.server_ip:
                issues.append("SERVER_IP must be set in production.")
            if issues:
                raise ValueError(" ".join(issues))
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
