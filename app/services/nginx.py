from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path
from typing import List

from app.config import get_settings
from app.errors import ValidationError
from app.logger import get_logger
from app.services import commands

_logger = get_logger("services.nginx")


def render_site_config(*, domain: str, port: int) -> str:
    if not 0 < port < 65536:
        raise ValidationError(f"Invalid port {port}")
    lines = [
        "server {",
        "    listen 80;",
        f"    server_name {domain};",
        "",
        "    location / {",
        f"        proxy_pass http://127.0.0.1:{port};",
        "        proxy_http_version 1.1;",
        "        proxy_set_header Upgrade $http_upgrade;",
        "        proxy_set_header Connection 'upgrade';",
        "        proxy_set_header Host $host;",
        "        proxy_set_header X-Real-IP $remote_addr;",
        "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
        "        proxy_set_header X-Forwarded-Proto $scheme;",
        "        proxy_cache_bypass $http_upgrade;",
        "    }",
        "}",
    ]
    return "\n".join(lines) + "\n"


def available_path(domain: str) -> Path:
    return Path(get_settings().nginx_available_dir) / f"{domain}.conf"


def enabled_path(domain: str) -> Path:
    return Path(get_settings().nginx_enabled_dir) / f"{domain}.conf"


def _write_temp(content: str) -> str:
    fd, path = tempfile.mkstemp(prefix="procyard-nginx-", suffix=".conf")
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
    return path


async def install_site(*, domain: str, port: int) -> str:
    """Write the vhost to a temp file and move it into the available-sites dir."""
    settings = get_settings()
    target = available_path(domain)
    content = render_site_config(domain=domain, port=port)
    temp_path = await asyncio.to_thread(_write_temp, content)
    try:
        await commands.run_checked(
            commands.privileged(["mv", temp_path, str(target)]),
            action="nginx.install",
            timeout_seconds=settings.nginx_timeout_seconds,
        )
    except Exception:
        await asyncio.to_thread(Path(temp_path).unlink, missing_ok=True)
        raise
    await commands.run_checked(
        commands.privileged(["chown", "root:root", str(target)]),
        action="nginx.install",
        timeout_seconds=settings.nginx_timeout_seconds,
    )
    await commands.run_checked(
        commands.privileged(["chmod", "644", str(target)]),
        action="nginx.install",
        timeout_seconds=settings.nginx_timeout_seconds,
    )
    _logger.info("nginx.site.install", "Installed site config", domain=domain, port=port, path=str(target))
    return str(target)


async def enable_site(domain: str) -> str:
    source = available_path(domain)
    target = enabled_path(domain)
    await commands.run_checked(
        commands.privileged(["ln", "-sf", str(source), str(target)]),
        action="nginx.enable",
        timeout_seconds=get_settings().nginx_timeout_seconds,
    )
    return str(target)


async def test_and_reload() -> None:
    """Validate the global config; a failing test never reaches the reload."""
    settings = get_settings()
    await commands.run_checked(
        commands.privileged(commands.split_command(settings.nginx_test_command)),
        action="nginx.test",
        timeout_seconds=settings.nginx_timeout_seconds,
    )
    await commands.run_checked(
        commands.privileged(commands.split_command(settings.nginx_reload_command)),
        action="nginx.reload",
        timeout_seconds=settings.nginx_timeout_seconds,
    )


async def remove_site(domain: str) -> List[str]:
    """Best-effort removal of the symlink, the config file, then a reload.

    Returns the warnings collected along the way; nothing is raised.
    """
    settings = get_settings()
    warnings: List[str] = []
    removals = (
        ("nginx.disable", enabled_path(domain)),
        ("nginx.remove", available_path(domain)),
    )
    for action, path in removals:
        try:
            await commands.run_checked(
                commands.privileged(["rm", "-f", str(path)]),
                action=action,
                timeout_seconds=settings.nginx_timeout_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            warnings.append(f"Failed to remove {path}: {exc}")
    try:
        await commands.run_checked(
            commands.privileged(commands.split_command(settings.nginx_reload_command)),
            action="nginx.reload",
            timeout_seconds=settings.nginx_timeout_seconds,
        )
    except Exception as exc:  # noqa: BLE001
        warnings.append(f"Failed to reload nginx: {exc}")
    if warnings:
        _logger.warning("nginx.site.remove", "Site removal finished with warnings", domain=domain, warnings=len(warnings))
    else:
        _logger.info("nginx.site.remove", "Removed site config", domain=domain)
    return warnings
