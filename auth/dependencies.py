"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer authentication.

The access token comes from `Authorization: Bearer <token>` and is checked by
the SessionTokenManager on request.app.state.context, which means both the
signature and the revocation store are consulted on every request.

try_get_current_claims() is the soft variant (returns None on failure).
get_current_claims() wraps it and raises HTTP 401 if unauthenticated.
require_roles(*roles) builds a dependency that additionally raises HTTP 403
unless the token's "roles" claim holds at least one of the given roles.

Every 401 carries the same body whatever went wrong with the token; the
reason is in the server log only.

Layer rule: no imports from api/, secure/, or cache/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging
from typing import Callable

from fastapi import HTTPException, Request

from auth.models import TokenClaims
from auth.tokens import extract_bearer_token
from core.errors import VerificationError

logger = logging.getLogger("konabra.auth")

_UNAUTHORIZED = {"code": "unauthorized", "message": "You are not authorized to perform this action."}
_FORBIDDEN = {"code": "forbidden", "message": "You don't have the necessary permissions."}


def try_get_current_claims(request: Request) -> TokenClaims | None:
    """Return verified access-token claims for the request, or None.

    Never raises -- callers that need a hard 401 should use get_current_claims().
    """
    token = extract_bearer_token(request.headers.get("Authorization"))
    if token is None:
        return None
    manager = request.app.state.context.token_manager
    try:
        return manager.verify_access_token(token)
    except VerificationError:
        return None


def get_current_claims(request: Request) -> TokenClaims:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/incidents")
        async def route(claims: TokenClaims = Depends(get_current_claims)): ...
    """
    claims = try_get_current_claims(request)
    if claims is None:
        raise HTTPException(
            status_code=401,
            detail=_UNAUTHORIZED,
            headers={"WWW-Authenticate": "Bearer"},
        )
    return claims


def require_roles(*roles: str) -> Callable[[Request], TokenClaims]:
    """Build a dependency that requires any one of `roles`.

    With no roles it only requires authentication.

        @router.delete("/categories/{id}")
        async def route(claims: TokenClaims = Depends(require_roles("admin"))): ...
    """
    wanted = set(roles)

    def dependency(request: Request) -> TokenClaims:
        claims = get_current_claims(request)
        if wanted and not wanted.intersection(claims.roles):
            logger.warning("Subject %s lacks any of roles %s", claims.subject, sorted(wanted))
            raise HTTPException(status_code=403, detail=_FORBIDDEN)
        return claims

    return dependency
