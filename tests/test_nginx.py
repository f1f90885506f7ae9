from __future__ import annotations

import pytest

from app.errors import CommandError, ValidationError
from app.services import certbot, commands, nginx
from tests.conftest import CommandRecorder


def test_site_config_proxies_to_local_port() -> None:
    config = nginx.render_site_config(domain="app.example.com", port=3000)

    assert "listen 80;" in config
    assert "server_name app.example.com;" in config
    assert "proxy_pass http://127.0.0.1:3000;" in config
    assert "proxy_set_header Upgrade $http_upgrade;" in config
    assert "proxy_set_header Connection 'upgrade';" in config
    assert "proxy_set_header X-Forwarded-Proto $scheme;" in config
    assert "proxy_cache_bypass $http_upgrade;" in config


@pytest.mark.parametrize("port", [0, 65536, -1])
def test_site_config_rejects_bad_port(port: int) -> None:
    with pytest.raises(ValidationError):
        nginx.render_site_config(domain="app.example.com", port=port)


async def test_test_failure_skips_reload(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = CommandRecorder(fail_actions=["nginx.test"])
    monkeypatch.setattr(commands, "run_checked", recorder)

    with pytest.raises(CommandError):
        await nginx.test_and_reload()

    assert recorder.actions() == ["nginx.test"]


async def test_remove_site_collects_warnings(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = CommandRecorder(fail_actions=["nginx.disable"])
    monkeypatch.setattr(commands, "run_checked", recorder)

    warnings = await nginx.remove_site("app.example.com")

    assert recorder.actions() == ["nginx.disable", "nginx.remove", "nginx.reload"]
    assert len(warnings) == 1
    assert "app.example.com.conf" in warnings[0]


async def test_enable_site_symlinks_into_enabled_dir(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = CommandRecorder()
    monkeypatch.setattr(commands, "run_checked", recorder)

    await nginx.enable_site("app.example.com")

    action, args = recorder.calls[0]
    assert action == "nginx.enable"
    assert args == [
        "ln",
        "-sf",
        "/etc/nginx/sites-available/app.example.com.conf",
        "/etc/nginx/sites-enabled/app.example.com.conf",
    ]


def test_certbot_args_default_contact() -> None:
    args = certbot.certbot_args("app.example.com")
    assert args == [
        "certbot",
        "--nginx",
        "-d",
        "app.example.com",
        "--non-interactive",
        "--agree-tos",
        "-m",
        "admin@app.example.com",
    ]
