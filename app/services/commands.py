from __future__ import annotations

import asyncio
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from app.config import get_settings
from app.errors import CommandError, CommandUnavailableError
from app.logger import get_logger, redact
from app.metrics import record_command
from app.utils import truncate

_logger = get_logger("commands")


@dataclass(frozen=True)
class CommandResult:
    code: int
    stdout: str
    stderr: str


def split_command(raw: str) -> list[str]:
    return shlex.split(raw.strip())


def privileged(args: Sequence[str]) -> list[str]:
    """Prefix ``args`` with ``sudo -n`` when host-global changes need root."""
    if get_settings().use_sudo:
        return ["sudo", "-n", *args]
    return list(args)


def _run(
    args: Sequence[str],
    *,
    cwd: Optional[str],
    env: Optional[Mapping[str, str]],
    timeout_seconds: float,
) -> CommandResult:
    merged_env = None
    if env is not None:
        merged_env = dict(os.environ)
        merged_env.update(env)
    try:
        proc = subprocess.run(
            list(args),
            cwd=cwd,
            env=merged_env,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError as exc:
        raise CommandUnavailableError("command.missing", str(exc)) from exc
    except subprocess.TimeoutExpired as exc:
        raise CommandError("command.timeout", f"{args[0]} did not finish within {timeout_seconds}s") from exc
    return CommandResult(
        code=proc.returncode,
        stdout=(proc.stdout or "").strip(),
        stderr=(proc.stderr or "").strip(),
    )


async def run_command(
    args: Sequence[str],
    *,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout_seconds: float = 60,
) -> CommandResult:
    return await asyncio.to_thread(
        _run,
        tuple(args),
        cwd=cwd,
        env=env,
        timeout_seconds=timeout_seconds,
    )


async def run_checked(
    args: Sequence[str],
    *,
    action: str,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout_seconds: float = 60,
) -> str:
    """Run ``args`` off the event loop; raise ``CommandError`` on a non-zero exit."""
    arg_list = list(args)
    printable = redact(" ".join(arg_list))
    try:
        result = await run_command(arg_list, cwd=cwd, env=env, timeout_seconds=timeout_seconds)
    except CommandError:
        record_command(action=action, ok=False)
        raise
    if result.code != 0:
        record_command(action=action, ok=False)
        _logger.warning(
            "command.fail",
            "External command failed",
            action=action,
            args=printable,
            cwd=cwd or "",
            exit_code=result.code,
            stderr=truncate(redact(result.stderr)),
            stdout=truncate(redact(result.stdout)),
        )
        raise CommandError(action, redact(result.stderr or result.stdout or f"exit_{result.code}"))
    record_command(action=action, ok=True)
    _logger.debug(
        "command.ok",
        "External command succeeded",
        action=action,
        args=printable,
        cwd=cwd or "",
    )
    return result.stdout
