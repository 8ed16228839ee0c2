from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import Depends, Request

from sucursync.server.auth import ADMIN_SCOPE, AuthContext
from sucursync.server.state import AppState

if TYPE_CHECKING:
    from collections.abc import Callable


def get_state(request: Request) -> AppState:
    return request.app.state


def get_auth(request: Request) -> AuthContext:
    """Identity bound by the router-level auth dependency."""
    return getattr(request.state, "auth", None) or AuthContext()


def bind_auth(auth_dep: Callable[..., Any]):
    """Wrap *auth_dep* so its result is kept on ``request.state.auth``.

    A raw dependency that returns something other than an AuthContext only
    gates access; requests it lets through act with full rights.
    """

    async def _authenticate(request: Request, result: Any = Depends(auth_dep)) -> AuthContext:
        ctx = result if isinstance(result, AuthContext) else AuthContext(scopes={ADMIN_SCOPE})
        request.state.auth = ctx
        return ctx

    return _authenticate


StateDep = Depends(get_state)
AuthDep = Depends(get_auth)
