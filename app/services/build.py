from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path
from typing import Mapping, Optional

from app.config import get_settings
from app.errors import ValidationError
from app.logger import get_logger
from app.services import commands

_logger = get_logger("services.build")
_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")


def render_env_file(variables: Mapping[str, str]) -> str:
    lines: list[str] = []
    for key, value in variables.items():
        if not _ENV_KEY_RE.match(key):
            raise ValidationError(f"Invalid environment variable name: {key!r}")
        text = str(value)
        if "\n" in text or "\r" in text:
            raise ValidationError(f"Environment variable {key} must not contain newlines")
        lines.append(f"{key}={text}")
    return "\n".join(lines) + ("\n" if lines else "")


def _write_text(path: Path, content: str) -> None:
    path.write_text(content, encoding="utf-8")


async def write_env_file(cwd: str, variables: Mapping[str, str]) -> str:
    path = Path(cwd) / ".env"
    content = render_env_file(variables)
    await asyncio.to_thread(_write_text, path, content)
    _logger.info("build.env_file", "Wrote environment file", path=str(path), keys=len(variables))
    return str(path)


def resolve_tool(command: str, runtime_version: Optional[str]) -> str:
    """Pick the Node-version-scoped executable when a runtime version is pinned."""
    if not runtime_version:
        return command
    settings = get_settings()
    return str(Path(settings.nvm_versions_dir) / runtime_version / "bin" / Path(command).name)


def _installed_versions(root: Path) -> list[str]:
    if not root.is_dir():
        return []
    return [entry.name for entry in root.iterdir() if entry.is_dir() and entry.name.startswith("v")]


def _version_key(name: str) -> tuple[int, ...]:
    return tuple(int(part) for part in re.findall(r"\d+", name))


async def list_runtime_versions() -> list[str]:
    """Node versions installed under the nvm directory, newest first."""
    root = Path(get_settings().nvm_versions_dir)
    versions = await asyncio.to_thread(_installed_versions, root)
    return sorted(versions, key=_version_key, reverse=True)


async def check_runtime_version(runtime_version: Optional[str]) -> None:
    if not runtime_version:
        return
    available = await list_runtime_versions()
    if runtime_version not in available:
        installed = ", ".join(available) if available else "none"
        raise ValidationError(
            f"Node version {runtime_version} is not installed (available: {installed})"
        )


def _read_manifest(cwd: str) -> Optional[dict]:
    manifest = Path(cwd) / "package.json"
    if not manifest.is_file():
        return None
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValidationError(f"package.json is not valid JSON: {exc}") from exc
    return data if isinstance(data, dict) else None


async def has_build_script(cwd: str) -> bool:
    manifest = await asyncio.to_thread(_read_manifest, cwd)
    if manifest is None:
        return False
    scripts = manifest.get("scripts")
    return isinstance(scripts, dict) and bool(scripts.get("build"))


async def install_dependencies(cwd: str, runtime_version: Optional[str]) -> None:
    settings = get_settings()
    yarn = resolve_tool(settings.yarn_command, runtime_version)
    await commands.run_checked(
        [yarn, "install"],
        action="build.install",
        cwd=cwd,
        timeout_seconds=settings.install_timeout_seconds,
    )


async def run_build(cwd: str, runtime_version: Optional[str]) -> None:
    settings = get_settings()
    yarn = resolve_tool(settings.yarn_command, runtime_version)
    await commands.run_checked(
        [yarn, "run", "build"],
        action="build.run",
        cwd=cwd,
        timeout_seconds=settings.build_timeout_seconds,
    )
