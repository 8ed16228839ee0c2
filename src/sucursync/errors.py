"""Error taxonomy shared by the services and the HTTP layer."""

from __future__ import annotations

from typing import Any


class SucursyncError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_content(self) -> dict[str, Any]:
        return {"detail": self.message, **self.extra}


class InvalidInput(SucursyncError):
    """Missing or malformed request field."""

    status_code = 400

    def __init__(self, message: str, field: str | None = None) -> None:
        if field is None:
            super().__init__(message)
        else:
            super().__init__(message, field=field)
        self.field = field


class NotFound(SucursyncError):
    status_code = 404


class Forbidden(SucursyncError):
    status_code = 403


class Conflict(SucursyncError):
    status_code = 400


class QuotaExceeded(SucursyncError):
    status_code = 400


class Incomplete(SucursyncError):
    """Completion requested before every chunk index was received."""

    status_code = 400

    def __init__(self, uploaded: int, total: int) -> None:
        super().__init__("Not all chunks received", uploaded=uploaded, total=total)
        self.uploaded = uploaded
        self.total = total


class MissingChunk(SucursyncError):
    """A chunk recorded as received has no file on disk."""

    status_code = 404

    def __init__(self, index: int) -> None:
        super().__init__(f"Chunk {index} not found", index=index)
        self.index = index


class UpstreamUnavailable(SucursyncError):
    """A peer branch could not be reached or answered with an error."""

    status_code = 502


class Internal(SucursyncError):
    status_code = 500
