from __future__ import annotations

from functools import lru_cache
from time import perf_counter
from typing import Any, AsyncIterator, NoReturn
from uuid import uuid4

from fastapi import Depends, HTTPException, Request
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import Settings, get_settings
from app.errors import ProcyardError
from app.logger import get_logger
from app.services.auth import Actor, resolve_actor
from app.services.github import GitHubClient, get_github_client
from app.services.supervisor import ProcessSupervisor, get_supervisor
from app.utils import truncate

_DB_LOGGER = get_logger("db")
_DB_SESSION_LOGGER = get_logger("db.session")
_API_LOGGER = get_logger("api.errors")
_QUERY_CONTEXT_STACK_KEY = "procyard_query_stack"


def _format_sql(statement: Any, max_length: int) -> str:
    return truncate(" ".join(str(statement or "").split()), max_length)


def _format_params(parameters: Any, max_length: int) -> str:
    return truncate(" ".join(repr(parameters).split()), max_length)


def _get_query_stack(connection: Any) -> list[dict[str, Any]]:
    stack = connection.info.get(_QUERY_CONTEXT_STACK_KEY)
    if isinstance(stack, list):
        return stack
    stack = []
    connection.info[_QUERY_CONTEXT_STACK_KEY] = stack
    return stack


def _install_query_logging(
    engine: AsyncEngine,
    *,
    database_url: str,
    settings: Settings,
) -> None:
    sync_engine = engine.sync_engine
    if getattr(sync_engine, "_procyard_query_logging", False):
        return
    setattr(sync_engine, "_procyard_query_logging", True)

    @event.listens_for(sync_engine, "before_cursor_execute")
    def _before_cursor_execute(
        conn: Any,
        cursor: Any,
        statement: Any,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        del cursor, context
        _get_query_stack(conn).append(
            {
                "start": perf_counter(),
                "statement": statement,
                "parameters": parameters,
                "executemany": executemany,
            }
        )

    @event.listens_for(sync_engine, "after_cursor_execute")
    def _after_cursor_execute(
        conn: Any,
        cursor: Any,
        statement: Any,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        del statement, parameters, context, executemany
        stack = _get_query_stack(conn)
        query_context = stack.pop() if stack else {}
        duration_ms = (perf_counter() - float(query_context.get("start", perf_counter()))) * 1000

        if not settings.log_db_queries:
            return

        fields: dict[str, Any] = {
            "duration_ms": round(duration_ms, 1),
            "rowcount": getattr(cursor, "rowcount", None),
            "executemany": bool(query_context.get("executemany")),
            "sql": _format_sql(query_context.get("statement"), settings.log_sql_max_length),
            "db": database_url.split("://", maxsplit=1)[0],
        }
        if settings.log_db_query_params:
            fields["params"] = _format_params(
                query_context.get("parameters"),
                settings.log_sql_max_length,
            )
        _DB_LOGGER.info("query.execute", "Executed SQL statement", **fields)

        if duration_ms >= 200:
            _DB_LOGGER.warning(
                "query.slow",
                "Slow SQL statement",
                duration_ms=round(duration_ms, 1),
                sql=_format_sql(query_context.get("statement"), settings.log_sql_max_length),
            )

    @event.listens_for(sync_engine, "handle_error")
    def _handle_error(exception_context: Any) -> None:
        connection = exception_context.connection
        if connection is not None:
            stack = _get_query_stack(connection)
            if stack:
                stack.pop()
        _DB_LOGGER.error(
            "query.error",
            "SQL execution failed",
            error_type=type(exception_context.original_exception).__name__,
            error=str(exception_context.original_exception),
            sql=_format_sql(exception_context.statement, settings.log_sql_max_length),
        )


@lru_cache
def get_engine(database_url: str) -> AsyncEngine:
    settings = get_settings()
    engine = create_async_engine(database_url, pool_pre_ping=True)

    if database_url.startswith("sqlite"):

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            del connection_record
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    _install_query_logging(engine, database_url=database_url, settings=settings)
    return engine


@lru_cache
def get_sessionmaker(database_url: str) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=get_engine(database_url), expire_on_commit=False)


async def get_db_session(
    settings: Settings = Depends(get_settings),
) -> AsyncIterator[AsyncSession]:
    sessionmaker = get_sessionmaker(settings.database_url)
    session_id = uuid4().hex[:12]
    start = perf_counter()

    with _DB_SESSION_LOGGER.context(db_session_id=session_id):
        _DB_SESSION_LOGGER.debug("session.open", "Opened DB session")
        async with sessionmaker() as session:
            try:
                yield session
            except Exception as exc:
                if session.in_transaction():
                    await session.rollback()
                    _DB_SESSION_LOGGER.warning(
                        "session.rollback",
                        "Rolled back DB transaction after error",
                        error_type=type(exc).__name__,
                    )
                raise
            finally:
                _DB_SESSION_LOGGER.debug(
                    "session.close",
                    "Closed DB session",
                    duration_ms=round((perf_counter() - start) * 1000, 1),
                )


async def get_current_actor(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> Actor:
    username = getattr(request.state, "auth_user", None)
    if not username:
        raise HTTPException(status_code=401, detail="Authentication required")
    return await resolve_actor(session, username)


def get_process_supervisor() -> ProcessSupervisor:
    return get_supervisor()


def get_github() -> GitHubClient:
    return get_github_client()


def raise_http_error(exc: ProcyardError) -> NoReturn:
    """Translate a domain error into the matching ``HTTPException``."""
    log = _API_LOGGER.error if exc.status_code >= 500 else _API_LOGGER.warning
    log(
        "request.rejected",
        "Operation rejected",
        error_type=type(exc).__name__,
        detail=exc.detail,
        status_code=exc.status_code,
        action=getattr(exc, "action", None),
    )
    raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
