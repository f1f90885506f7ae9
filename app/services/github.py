from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, List, Optional, Tuple

import httpx

from app.config import get_settings
from app.errors import CommandError, ValidationError
from app.logger import get_logger
from app.metrics import record_command

_logger = get_logger("services.github")
_OWNER_REPO_RE = re.compile(r"github\.com[/:]([^/]+)/([^/]+?)(?:\.git)?/?$")


class GitHubError(CommandError):
    pass


@dataclass(frozen=True)
class RepositoryInfo:
    id: str
    name: str
    full_name: str
    url: str
    description: Optional[str] = None


def parse_owner_repo(repo_url: str) -> Tuple[str, str]:
    match = _OWNER_REPO_RE.search(repo_url.strip())
    if not match:
        raise ValidationError("Invalid GitHub repository URL")
    return match.group(1), match.group(2)


class GitHubClient:
    def __init__(
        self,
        *,
        api_url: str,
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout_seconds
        self._transport = transport

    def _client(self, token: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._api_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )

    async def _request(
        self,
        token: str,
        method: str,
        path: str,
        *,
        action: str,
        json_body: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        async with self._client(token) as client:
            try:
                response = await client.request(method, path, json=json_body, params=params)
            except httpx.HTTPError as exc:
                record_command(action=action, ok=False)
                raise GitHubError(action, f"request failed: {type(exc).__name__}") from exc
        record_command(action=action, ok=response.is_success)
        if not response.is_success:
            _logger.warning(
                "github.request.fail",
                "GitHub API request failed",
                action=action,
                method=method,
                path=path,
                status_code=response.status_code,
            )
        return response

    async def validate_token(self, token: str) -> bool:
        response = await self._request(token, "GET", "/user", action="github.validate")
        return response.is_success

    async def list_repositories(self, token: str) -> List[RepositoryInfo]:
        response = await self._request(
            token,
            "GET",
            "/user/repos",
            action="github.repositories",
            params={"sort": "updated", "direction": "desc", "per_page": 100},
        )
        if not response.is_success:
            raise GitHubError("github.repositories", "Failed to fetch repositories from GitHub")
        return [
            RepositoryInfo(
                id=str(repo["id"]),
                name=str(repo["name"]),
                full_name=str(repo["full_name"]),
                url=str(repo["html_url"]),
                description=repo.get("description") or None,
            )
            for repo in response.json()
            if isinstance(repo, dict)
        ]

    async def list_branches(self, token: str, repo_url: str) -> List[str]:
        owner, repo = parse_owner_repo(repo_url)
        response = await self._request(
            token,
            "GET",
            f"/repos/{owner}/{repo}/branches",
            action="github.branches",
            params={"per_page": 100},
        )
        if not response.is_success:
            raise GitHubError("github.branches", f"Failed to fetch branches for repository {repo_url}")
        return [str(item["name"]) for item in response.json() if isinstance(item, dict)]

    async def create_webhook(self, token: str, repo_url: str, callback_url: str) -> str:
        owner, repo = parse_owner_repo(repo_url)
        response = await self._request(
            token,
            "POST",
            f"/repos/{owner}/{repo}/hooks",
            action="github.webhook.create",
            json_body={
                "name": "web",
                "config": {"url": callback_url, "content_type": "json"},
                "events": ["push"],
                "active": True,
            },
        )
        if response.status_code == 422:
            raise GitHubError(
                "github.webhook.create",
                "Webhook already exists for this URL or validation failed",
            )
        if response.status_code == 404:
            raise GitHubError(
                "github.webhook.create",
                "Repository not found or token lacks webhook permissions",
            )
        if not response.is_success:
            raise GitHubError(
                "github.webhook.create",
                f"Failed to create webhook (HTTP {response.status_code})",
            )
        return str(response.json()["id"])

    async def delete_webhook(self, token: str, repo_url: str, hook_id: str) -> None:
        owner, repo = parse_owner_repo(repo_url)
        response = await self._request(
            token,
            "DELETE",
            f"/repos/{owner}/{repo}/hooks/{hook_id}",
            action="github.webhook.delete",
        )
        if response.status_code == 404:
            _logger.info(
                "github.webhook.gone",
                "Webhook already deleted upstream",
                repo=f"{owner}/{repo}",
                hook_id=hook_id,
            )
            return
        if not response.is_success:
            raise GitHubError(
                "github.webhook.delete",
                f"Failed to delete webhook (HTTP {response.status_code})",
            )


@lru_cache
def get_github_client() -> GitHubClient:
    settings = get_settings()
    return GitHubClient(api_url=settings.github_api_url, timeout_seconds=settings.github_timeout_seconds)
