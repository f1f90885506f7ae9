from __future__ import annotations

from typing import List

from app.config import get_settings
from app.logger import get_logger
from app.services import commands

_logger = get_logger("services.certbot")


def certbot_args(domain: str) -> List[str]:
    settings = get_settings()
    email = settings.certbot_email or f"admin@{domain}"
    return [
        *commands.split_command(settings.certbot_command),
        "--nginx",
        "-d",
        domain,
        "--non-interactive",
        "--agree-tos",
        "-m",
        email,
    ]


async def issue_certificate(domain: str) -> None:
    await commands.run_checked(
        commands.privileged(certbot_args(domain)),
        action="certbot.issue",
        timeout_seconds=get_settings().certbot_timeout_seconds,
    )
    _logger.info("certbot.issue", "Obtained and installed TLS certificate", domain=domain)
