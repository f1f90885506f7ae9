from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional
from urllib import error, request

from app.security import SESSION_COOKIE_NAME


def _api_request(
    *,
    base_url: str,
    path: str,
    method: str = "GET",
    json_body: Optional[Dict[str, Any]] = None,
    session_token: Optional[str] = None,
) -> Any:
    url = base_url.rstrip("/") + path
    headers: Dict[str, str] = {"Accept": "application/json"}
    data: Optional[bytes] = None

    if json_body is not None:
        data = json.dumps(json_body).encode("utf-8")
        headers["Content-Type"] = "application/json"

    if session_token:
        headers["Cookie"] = f"{SESSION_COOKIE_NAME}={session_token}"

    req = request.Request(url=url, method=method.upper(), data=data, headers=headers)
    try:
        with request.urlopen(req, timeout=900) as response:
            body = response.read().decode("utf-8")
            return json.loads(body) if body else {}
    except error.HTTPError as exc:
        payload = exc.read().decode("utf-8")
        detail = payload
        try:
            parsed = json.loads(payload)
            if isinstance(parsed, dict) and "detail" in parsed:
                detail = str(parsed["detail"])
        except json.JSONDecodeError:
            pass
        raise RuntimeError(f"HTTP {exc.code}: {detail}") from exc


def _login(base_url: str, username: str, password: str) -> str:
    result = _api_request(
        base_url=base_url,
        path="/auth/token",
        method="POST",
        json_body={"username": username, "password": password},
    )
    token = result.get("session_token")
    if not isinstance(token, str) or not token:
        raise RuntimeError("Authentication failed: no session token returned.")
    return token


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _add_auth_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--username", "--login-id", dest="username", required=True)
    parser.add_argument("--password", required=True)


def cmd_set_password(args: argparse.Namespace) -> int:
    from app.config import get_settings
    from app.dependencies import get_sessionmaker
    from app.services.auth import set_credentials

    password = args.password or getpass.getpass("New admin password: ")
    if len(password) < 8:
        raise RuntimeError("Password must be at least 8 characters.")

    async def _apply() -> None:
        sessionmaker = get_sessionmaker(get_settings().database_url)
        async with sessionmaker() as session:
            await set_credentials(session, username=args.admin_username, password=password)
            await session.commit()

    asyncio.run(_apply())
    print(f"Updated credentials for {args.admin_username}")
    return 0


def cmd_migrate(args: argparse.Namespace) -> int:
    from alembic import command
    from alembic.config import Config

    config = Config()
    config.set_main_option("script_location", str(Path(__file__).resolve().parent.parent / "migrations"))
    command.upgrade(config, args.revision)
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from app.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=args.host or settings.server_host,
        port=args.port or settings.server_port,
    )
    return 0


def cmd_services(args: argparse.Namespace) -> int:
    session_token = _login(args.api_url, args.username, args.password)
    response = _api_request(base_url=args.api_url, path="/services", session_token=session_token)
    for service in response:
        print(
            f"{service['id']}  {service['name']:<24} {service['status']:<9} "
            f"{service.get('active_environment') or '-'}"
        )
    return 0


def cmd_service_action(args: argparse.Namespace) -> int:
    session_token = _login(args.api_url, args.username, args.password)
    response = _api_request(
        base_url=args.api_url,
        path=f"/services/{args.service_id}/{args.action}",
        method="POST",
        session_token=session_token,
    )
    _print_json(response)
    return 0 if response.get("success") else 1


def cmd_service_logs(args: argparse.Namespace) -> int:
    session_token = _login(args.api_url, args.username, args.password)
    response = _api_request(
        base_url=args.api_url,
        path=f"/services/{args.service_id}/logs?lines={args.lines}",
        session_token=session_token,
    )
    print(response.get("logs", ""))
    return 0


def cmd_domain_verify(args: argparse.Namespace) -> int:
    session_token = _login(args.api_url, args.username, args.password)
    response = _api_request(
        base_url=args.api_url,
        path=f"/domains/{args.domain_id}/verify",
        method="POST",
        json_body={"skip_verification": args.skip},
        session_token=session_token,
    )
    _print_json(response)
    return 0 if response.get("verified") else 1


def cmd_domain_activate(args: argparse.Namespace) -> int:
    session_token = _login(args.api_url, args.username, args.password)
    response = _api_request(
        base_url=args.api_url,
        path=f"/domains/{args.domain_id}/activate",
        method="POST",
        session_token=session_token,
    )
    _print_json(response)
    return 0 if response.get("success") else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="procyard", description="Procyard process dashboard CLI")
    parser.add_argument("--api-url", default="http://127.0.0.1:3001")

    sub = parser.add_subparsers(dest="command", required=True)

    set_password = sub.add_parser("set-password", help="Set the admin username and password")
    set_password.add_argument("--admin-username", default="admin")
    set_password.add_argument("--password", help="Prompted for when omitted")
    set_password.set_defaults(func=cmd_set_password)

    migrate = sub.add_parser("migrate", help="Apply database migrations")
    migrate.add_argument("--revision", default="head")
    migrate.set_defaults(func=cmd_migrate)

    serve = sub.add_parser("serve", help="Run the API server")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.set_defaults(func=cmd_serve)

    services = sub.add_parser("services", help="List services and their status")
    _add_auth_args(services)
    services.set_defaults(func=cmd_services)

    service_action = sub.add_parser("service", help="Run start, stop, restart or reload")
    service_action.add_argument("action", choices=["start", "stop", "restart", "reload"])
    service_action.add_argument("service_id")
    _add_auth_args(service_action)
    service_action.set_defaults(func=cmd_service_action)

    service_logs = sub.add_parser("logs", help="Print recent process logs")
    service_logs.add_argument("service_id")
    service_logs.add_argument("--lines", type=int, default=100)
    _add_auth_args(service_logs)
    service_logs.set_defaults(func=cmd_service_logs)

    domain_verify = sub.add_parser("domain-verify", help="Check that a domain points at this server")
    domain_verify.add_argument("domain_id")
    domain_verify.add_argument("--skip", action="store_true", help="Mark verified without DNS")
    _add_auth_args(domain_verify)
    domain_verify.set_defaults(func=cmd_domain_verify)

    domain_activate = sub.add_parser("domain-activate", help="Configure nginx and issue TLS")
    domain_activate.add_argument("domain_id")
    _add_auth_args(domain_activate)
    domain_activate.set_defaults(func=cmd_domain_activate)

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    try:
        exit_code = args.func(args)
    except Exception as exc:  # noqa: BLE001
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
