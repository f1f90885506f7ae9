from __future__ import annotations

import os
from dataclasses import replace
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Sequence

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("LOG_FILE", "")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import get_settings
from app.errors import CommandError
from app.models import Base
from app.services import certbot, nginx
from app.services.auth import ROLE_ADMIN, ROLE_MEMBER, Actor
from app.services.supervisor import SUPERVISOR_ONLINE, ProcessInfo, ProcessSpec

SERVER_IP = "203.0.113.10"


class FakeSupervisor:
    """In-memory process table keyed by handle."""

    def __init__(self) -> None:
        self.processes: Dict[str, List[ProcessInfo]] = {}
        self.calls: List[tuple[str, str]] = []
        self.fail_on: set[str] = set()

    def _maybe_fail(self, action: str) -> None:
        if action in self.fail_on:
            raise CommandError(f"pm2.{action}", f"{action} exploded")

    async def start(self, spec: ProcessSpec) -> str:
        self.calls.append(("start", spec.name))
        self._maybe_fail("start")
        self.processes[spec.name] = [
            ProcessInfo(
                handle=spec.name,
                name=spec.name,
                status=SUPERVISOR_ONLINE,
                pid=1000 + index,
                exec_mode=f"{spec.exec_mode}_mode",
                cpu=1.5,
                memory=1024,
                uptime_ms=5000,
            )
            for index in range(spec.instances)
        ]
        return spec.name

    async def stop(self, handle: str) -> None:
        self.calls.append(("stop", handle))
        self._maybe_fail("stop")
        self.set_status(handle, "stopped")

    async def restart(self, handle: str) -> None:
        self.calls.append(("restart", handle))
        self._maybe_fail("restart")
        self.set_status(handle, SUPERVISOR_ONLINE)

    async def reload(self, handle: str) -> None:
        self.calls.append(("reload", handle))
        self._maybe_fail("reload")

    async def delete(self, handle: str) -> None:
        self.calls.append(("delete", handle))
        self._maybe_fail("delete")
        self.processes.pop(handle, None)

    async def list(self) -> List[ProcessInfo]:
        self._maybe_fail("list")
        return [row for rows in self.processes.values() for row in rows]

    async def logs(self, handle: str, lines: int = 100) -> str:
        return f"{handle} log tail ({lines})"

    def set_status(self, handle: str, status: str) -> None:
        self.processes[handle] = [replace(row, status=status) for row in self.processes.get(handle, [])]


@pytest.fixture(autouse=True)
def settings_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Iterator[None]:
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite://")
    monkeypatch.setenv("LOG_FILE", "")
    monkeypatch.setenv("SERVER_IP", SERVER_IP)
    monkeypatch.setenv("WORKING_DIR", str(tmp_path / "repos"))
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://deploy.example.com")
    monkeypatch.setenv("USE_SUDO", "false")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def sessionmaker() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(sessionmaker: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with sessionmaker() as session:
        yield session


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def admin() -> Actor:
    return Actor(username="admin", role=ROLE_ADMIN)


@pytest.fixture
def alice() -> Actor:
    return Actor(username="alice", role=ROLE_MEMBER)


@pytest.fixture
def bob() -> Actor:
    return Actor(username="bob", role=ROLE_MEMBER)


class FakeScheduler:
    def __init__(self) -> None:
        self.submitted: List[tuple[str, str, str]] = []

    def submit(self, service_id: str, *, action: str, source: str) -> Optional[object]:
        self.submitted.append((service_id, action, source))
        return None


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


class CommandRecorder:
    """Stand-in for ``commands.run_checked`` that records argv per action."""

    def __init__(self, fail_actions: Sequence[str] = ()) -> None:
        self.calls: List[tuple[str, List[str]]] = []
        self.fail_actions = set(fail_actions)

    async def __call__(self, args: Sequence[str], *, action: str, **_: Any) -> str:
        self.calls.append((action, list(args)))
        if action in self.fail_actions:
            raise CommandError(action, f"{action} failed")
        return ""

    def actions(self) -> List[str]:
        return [action for action, _ in self.calls]


@pytest.fixture
def host_commands(monkeypatch: pytest.MonkeyPatch) -> List[str]:
    calls: List[str] = []

    async def install_site(*, domain: str, port: int) -> str:
        calls.append(f"install:{domain}:{port}")
        return f"/etc/nginx/sites-available/{domain}.conf"

    async def enable_site(domain: str) -> str:
        calls.append(f"enable:{domain}")
        return f"/etc/nginx/sites-enabled/{domain}.conf"

    async def test_and_reload() -> None:
        calls.append("reload")

    async def issue_certificate(domain: str) -> None:
        calls.append(f"certbot:{domain}")

    async def remove_site(domain: str) -> List[str]:
        calls.append(f"remove:{domain}")
        return []

    monkeypatch.setattr(nginx, "install_site", install_site)
    monkeypatch.setattr(nginx, "enable_site", enable_site)
    monkeypatch.setattr(nginx, "test_and_reload", test_and_reload)
    monkeypatch.setattr(nginx, "remove_site", remove_site)
    monkeypatch.setattr(certbot, "issue_certificate", issue_certificate)
    return calls
