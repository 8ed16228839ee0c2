"""Extensible authentication for sucursync."""

from __future__ import annotations

import hmac
from typing import Any, Protocol, runtime_checkable

from fastapi import HTTPException, Request
from pydantic import BaseModel, Field

ADMIN_SCOPE = "admin"


class AuthContext(BaseModel):
    """Identity returned by an auth provider."""

    identity: str = "anonymous"
    scopes: set[str] = Field(default_factory=set)
    extra: dict[str, Any] = Field(default_factory=dict)

    def can_act_for(self, user_id: str) -> bool:
        return ADMIN_SCOPE in self.scopes or self.identity == user_id


@runtime_checkable
class AuthProvider(Protocol):
    """Contract that auth providers must satisfy."""

    async def authenticate(self, request: Request) -> AuthContext: ...


class NoAuthProvider:
    """Default no-op provider: allows all requests with full rights."""

    async def authenticate(self, request: Request) -> AuthContext:
        return AuthContext(scopes={ADMIN_SCOPE})


class APIKeyAuthProvider:
    """Validates ``Authorization: Bearer <key>`` or ``?api_key=`` query param.

    A valid key grants admin rights; ``X-User-ID`` may name the user the
    caller acts as.
    """

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    async def authenticate(self, request: Request) -> AuthContext:
        identity = request.headers.get("X-User-ID") or "api-key"

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ")
            if hmac.compare_digest(token, self._api_key):
                return AuthContext(identity=identity, scopes={ADMIN_SCOPE})

        query_key = request.query_params.get("api_key")
        if query_key is not None and hmac.compare_digest(query_key, self._api_key):
            return AuthContext(identity=identity, scopes={ADMIN_SCOPE})

        raise HTTPException(status_code=401, detail="Invalid or missing API key")


class HeaderAuthProvider:
    """Trusts an ``X-User-ID`` header set by an authenticating proxy.

    The user gets no admin scope, so per-user routes only accept their own id.
    """

    def __init__(self, header: str = "X-User-ID") -> None:
        self._header = header

    async def authenticate(self, request: Request) -> AuthContext:
        user_id = request.headers.get(self._header)
        if not user_id:
            raise HTTPException(status_code=401, detail=f"Missing {self._header} header")
        return AuthContext(identity=user_id)


def make_auth_dependency(provider: AuthProvider):
    """Convert an AuthProvider into a FastAPI dependency callable."""

    async def _dependency(request: Request) -> AuthContext:
        return await provider.authenticate(request)

    return _dependency
