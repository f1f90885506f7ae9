from __future__ import annotations

import json
from pathlib import Path

import pytest

from app.errors import ValidationError
from app.services import build, repository


def test_render_env_file_writes_key_value_lines() -> None:
    content = build.render_env_file({"PORT": "3000", "DATABASE_URL": "postgres://db/app"})
    assert content == "PORT=3000\nDATABASE_URL=postgres://db/app\n"


def test_render_env_file_empty() -> None:
    assert build.render_env_file({}) == ""


@pytest.mark.parametrize("variables", [{"BAD KEY": "x"}, {"MULTI": "a\nb"}])
def test_render_env_file_rejects_unsafe_input(variables: dict[str, str]) -> None:
    with pytest.raises(ValidationError):
        build.render_env_file(variables)


async def test_write_env_file_replaces_existing(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("OLD=1\n", encoding="utf-8")
    path = await build.write_env_file(str(tmp_path), {"NEW": "2"})
    assert Path(path).read_text(encoding="utf-8") == "NEW=2\n"


async def test_has_build_script(tmp_path: Path) -> None:
    assert await build.has_build_script(str(tmp_path)) is False
    (tmp_path / "package.json").write_text(json.dumps({"scripts": {"start": "node ."}}))
    assert await build.has_build_script(str(tmp_path)) is False
    (tmp_path / "package.json").write_text(json.dumps({"scripts": {"build": "tsc"}}))
    assert await build.has_build_script(str(tmp_path)) is True


def test_resolve_tool_uses_pinned_runtime(monkeypatch: pytest.MonkeyPatch) -> None:
    assert build.resolve_tool("yarn", None) == "yarn"
    pinned = build.resolve_tool("yarn", "v20.11.0")
    assert pinned.endswith(str(Path("v20.11.0") / "bin" / "yarn"))


def test_default_repository_path_combines_repo_and_service(tmp_path: Path) -> None:
    path = repository.default_repository_path("https://github.com/acme/shop-api.git", "Shop API")
    assert Path(path).parent == tmp_path / "repos"
    assert Path(path).name.startswith("shop-api-")


def test_authenticated_url_injects_token_once() -> None:
    url = repository.authenticated_url("https://old@github.com/acme/app.git", "tok")
    assert url == "https://tok@github.com/acme/app.git"
    assert repository.authenticated_url("git@github.com:acme/app.git", "tok") == "git@github.com:acme/app.git"


def test_working_directory_stays_inside_repository(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    (repo / "packages" / "web").mkdir(parents=True)
    assert repository.working_directory(str(repo), "packages/web") == str((repo / "packages" / "web").resolve())
    with pytest.raises(ValidationError):
        repository.working_directory(str(repo), "../elsewhere")


async def test_runtime_versions_listed_newest_first(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    from app.config import get_settings

    for name in ("v18.19.0", "v20.11.1", "v9.11.2", "system"):
        (tmp_path / name).mkdir()
    (tmp_path / "v21.0.0.tar.gz").write_text("", encoding="utf-8")
    monkeypatch.setenv("NVM_VERSIONS_DIR", str(tmp_path))
    get_settings.cache_clear()

    assert await build.list_runtime_versions() == ["v20.11.1", "v18.19.0", "v9.11.2"]
    await build.check_runtime_version("v18.19.0")
    await build.check_runtime_version(None)
    with pytest.raises(ValidationError, match="v16.0.0 is not installed"):
        await build.check_runtime_version("v16.0.0")


async def test_runtime_versions_empty_without_nvm(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    from app.config import get_settings

    monkeypatch.setenv("NVM_VERSIONS_DIR", str(tmp_path / "missing"))
    get_settings.cache_clear()

    assert await build.list_runtime_versions() == []
