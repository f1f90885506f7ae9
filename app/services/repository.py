from __future__ import annotations

import asyncio
import re
import shutil
from pathlib import Path
from typing import Optional

from app.config import get_settings
from app.errors import ValidationError
from app.logger import get_logger
from app.services import commands
from app.utils import slugify

_logger = get_logger("services.repository")
_REPO_NAME_RE = re.compile(r"^(?:https?://|git@)[^/:]+[/:][^/]+/([^/]+?)(?:\.git)?/?$")


def extract_repo_name(repo_url: str) -> str:
    match = _REPO_NAME_RE.match(repo_url.strip())
    if not match:
        raise ValidationError(f"Invalid repository URL: {repo_url}")
    return match.group(1)


def default_repository_path(repo_url: str, service_name: str) -> str:
    settings = get_settings()
    name = f"{extract_repo_name(repo_url)}-{slugify(service_name)}"
    return str(Path(settings.working_dir) / name)


def clean_remote_url(repo_url: str) -> str:
    url = repo_url.strip()
    return re.sub(r"^(https?://)[^/@]+@", r"\1", url)


def authenticated_url(repo_url: str, token: Optional[str]) -> str:
    url = clean_remote_url(repo_url)
    if not token or not url.startswith("https://"):
        return url
    return url.replace("https://", f"https://{token}@", 1)


def is_cloned(repo_path: str) -> bool:
    path = Path(repo_path)
    return path.is_dir() and (path / ".git").exists()


def working_directory(repo_path: str, source_directory: Optional[str]) -> str:
    if not source_directory:
        return repo_path
    base = Path(repo_path).resolve()
    target = (base / source_directory.strip().strip("/")).resolve()
    if base != target and base not in target.parents:
        raise ValidationError("source_directory must stay inside the repository")
    return str(target)


async def fetch(
    *,
    repo_url: str,
    branch: str,
    repo_path: str,
    token: Optional[str],
    require_existing: bool = False,
) -> str:
    """Clone ``repo_url`` into ``repo_path`` or fast-forward an existing clone.

    The credential is only placed on the remote for the duration of the
    network call; the stored origin URL never carries it.
    """
    settings = get_settings()
    git = settings.git_command
    timeout = settings.fetch_timeout_seconds
    clean_url = clean_remote_url(repo_url)
    auth_url = authenticated_url(repo_url, token)

    async with _logger.operation(
        "repository.fetch",
        "Fetching repository",
        repo_url=clean_url,
        branch=branch,
        repo_path=repo_path,
    ) as op:
        if is_cloned(repo_path):
            await commands.run_checked(
                [git, "remote", "set-url", "origin", auth_url],
                action="git.remote",
                cwd=repo_path,
                timeout_seconds=30,
            )
            try:
                await commands.run_checked(
                    [git, "fetch", "origin", branch],
                    action="git.fetch",
                    cwd=repo_path,
                    timeout_seconds=timeout,
                )
                op.step("git.fetch", "Fetched remote branch")
                await commands.run_checked(
                    [git, "reset", "--hard", f"origin/{branch}"],
                    action="git.reset",
                    cwd=repo_path,
                    timeout_seconds=60,
                )
                op.step("git.reset", "Reset working copy to remote branch")
            finally:
                await commands.run_checked(
                    [git, "remote", "set-url", "origin", clean_url],
                    action="git.remote",
                    cwd=repo_path,
                    timeout_seconds=30,
                )
            return repo_path

        if require_existing:
            raise ValidationError(f"Repository not found at {repo_path}, cannot pull changes")

        Path(repo_path).parent.mkdir(parents=True, exist_ok=True)
        await commands.run_checked(
            [git, "clone", "--branch", branch, auth_url, repo_path],
            action="git.clone",
            timeout_seconds=timeout,
        )
        op.step("git.clone", "Cloned repository")
        await commands.run_checked(
            [git, "remote", "set-url", "origin", clean_url],
            action="git.remote",
            cwd=repo_path,
            timeout_seconds=30,
        )
        return repo_path


async def remove_working_copy(repo_path: Optional[str]) -> bool:
    if not repo_path or not Path(repo_path).exists():
        return False
    await asyncio.to_thread(shutil.rmtree, repo_path)
    _logger.info("repository.remove", "Removed working copy", repo_path=repo_path)
    return True
