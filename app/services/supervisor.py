from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from app.config import get_settings
from app.errors import CommandError
from app.logger import get_logger
from app.services import commands

_logger = get_logger("supervisor")

SUPERVISOR_ONLINE = "online"
SUPERVISOR_STOPPED = "stopped"


@dataclass(frozen=True)
class ProcessSpec:
    name: str
    script: str
    args: List[str] = field(default_factory=list)
    cwd: str = ""
    env: Dict[str, str] = field(default_factory=dict)
    instances: int = 1

    @property
    def exec_mode(self) -> str:
        return "cluster" if self.instances > 1 else "fork"


@dataclass(frozen=True)
class ProcessInfo:
    handle: str
    name: str
    status: str
    pid: Optional[int] = None
    exec_mode: str = ""
    cpu: float = 0.0
    memory: int = 0
    uptime_ms: int = 0
    restarts: int = 0


class ProcessSupervisor(Protocol):
    async def start(self, spec: ProcessSpec) -> str: ...

    async def stop(self, handle: str) -> None: ...

    async def restart(self, handle: str) -> None: ...

    async def reload(self, handle: str) -> None: ...

    async def delete(self, handle: str) -> None: ...

    async def list(self) -> List[ProcessInfo]: ...

    async def logs(self, handle: str, lines: int = 100) -> str: ...


def _parse_jlist(raw: str) -> List[ProcessInfo]:
    # pm2 may print daemon notices before the JSON payload.
    start = raw.find("[")
    if start < 0:
        return []
    try:
        payload = json.loads(raw[start:])
    except json.JSONDecodeError as exc:
        raise CommandError("pm2.list", f"unparseable process table: {exc}") from exc
    if not isinstance(payload, list):
        return []
    rows: List[ProcessInfo] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        if not isinstance(name, str) or not name:
            continue
        env = item.get("pm2_env") if isinstance(item.get("pm2_env"), dict) else {}
        monit = item.get("monit") if isinstance(item.get("monit"), dict) else {}
        pid = item.get("pid")
        rows.append(
            ProcessInfo(
                handle=name,
                name=name,
                status=str(env.get("status") or "unknown"),
                pid=pid if isinstance(pid, int) and pid > 0 else None,
                exec_mode=str(env.get("exec_mode") or ""),
                cpu=float(monit.get("cpu") or 0),
                memory=int(monit.get("memory") or 0),
                uptime_ms=int(env.get("pm_uptime") or 0),
                restarts=int(env.get("restart_time") or 0),
            )
        )
    return rows


class Pm2Supervisor:
    """Drives the ``pm2`` CLI. Handles are pm2 app names."""

    def __init__(self, command: Optional[str] = None, timeout_seconds: Optional[int] = None) -> None:
        settings = get_settings()
        self._command = command or settings.pm2_command
        self._timeout = timeout_seconds or settings.supervisor_timeout_seconds
        self._ecosystem_dir = Path(settings.working_dir) / ".procyard" / "pm2"

    async def _pm2(self, *args: str, action: str) -> str:
        return await commands.run_checked(
            [self._command, *args],
            action=action,
            timeout_seconds=self._timeout,
        )

    def _write_ecosystem(self, spec: ProcessSpec) -> Path:
        self._ecosystem_dir.mkdir(parents=True, exist_ok=True)
        app: Dict[str, Any] = {
            "name": spec.name,
            "script": spec.script,
            "args": list(spec.args),
            "cwd": spec.cwd,
            "env": dict(spec.env),
            "instances": spec.instances,
            "exec_mode": spec.exec_mode,
        }
        path = self._ecosystem_dir / f"{spec.name}.json"
        path.write_text(json.dumps({"apps": [app]}, indent=2), encoding="utf-8")
        return path

    async def start(self, spec: ProcessSpec) -> str:
        existing = [row for row in await self.list() if row.name == spec.name]
        if existing:
            await self._pm2("delete", spec.name, action="pm2.delete")
            _logger.info(
                "pm2.replace",
                "Deleted stale process before start",
                name=spec.name,
                instances=len(existing),
            )
        path = await asyncio.to_thread(self._write_ecosystem, spec)
        await self._pm2("start", str(path), action="pm2.start")
        _logger.info(
            "pm2.start",
            "Started supervised process",
            name=spec.name,
            script=spec.script,
            exec_mode=spec.exec_mode,
            instances=spec.instances,
        )
        return spec.name

    async def stop(self, handle: str) -> None:
        await self._pm2("stop", handle, action="pm2.stop")

    async def restart(self, handle: str) -> None:
        await self._pm2("restart", handle, "--update-env", action="pm2.restart")

    async def reload(self, handle: str) -> None:
        await self._pm2("reload", handle, "--update-env", action="pm2.reload")

    async def delete(self, handle: str) -> None:
        await self._pm2("delete", handle, action="pm2.delete")

    async def list(self) -> List[ProcessInfo]:
        return _parse_jlist(await self._pm2("jlist", action="pm2.list"))

    async def logs(self, handle: str, lines: int = 100) -> str:
        return await self._pm2(
            "logs", handle, "--lines", str(lines), "--raw", "--nostream", action="pm2.logs"
        )


@lru_cache
def get_supervisor() -> ProcessSupervisor:
    return Pm2Supervisor()
