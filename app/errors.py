from __future__ import annotations


class ProcyardError(RuntimeError):
    """Base class for errors that are reported back to the caller."""

    expected = True
    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFoundError(ProcyardError):
    status_code = 404


class ValidationError(ProcyardError):
    status_code = 400


class PermissionDeniedError(ProcyardError):
    status_code = 403


class PreconditionError(ProcyardError):
    status_code = 409


class EntityBusyError(ProcyardError):
    status_code = 409


class CommandError(ProcyardError):
    """An external command (git, yarn, pm2, nginx, certbot...) failed."""

    status_code = 502

    def __init__(self, action: str, detail: str) -> None:
        super().__init__(f"{action}: {detail}")
        self.action = action
        self.detail = detail


class CommandUnavailableError(CommandError):
    status_code = 503
