"""Datastore-issued JWT authentication for FastAPI."""

from dataclasses import dataclass

import jwt as pyjwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from billing_sync.core.config import get_settings
from billing_sync.core.exceptions import Unauthenticated

_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthenticatedAccount:
    """Authenticated account extracted from a session JWT."""

    account_id: str
    claims: dict

    @property
    def email(self) -> str | None:
        return self.claims.get("email")


def decode_access_token(token: str) -> AuthenticatedAccount:
    """Verify and decode a session JWT signed with the shared secret.

    Raises ``Unauthenticated`` on any validation failure.
    """
    settings = get_settings()
    if not settings.auth_jwt_secret:
        raise Unauthenticated("Authentication is not configured")

    try:
        payload = pyjwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=["HS256"],
            audience=settings.auth_jwt_audience,
            options={"require": ["sub", "exp"]},
        )
    except pyjwt.ExpiredSignatureError as exc:
        raise Unauthenticated("Token expired") from exc
    except pyjwt.MissingRequiredClaimError as exc:
        raise Unauthenticated(f"Missing required claim: {exc}") from exc
    except pyjwt.InvalidTokenError as exc:
        raise Unauthenticated(f"Invalid token: {exc}") from exc

    sub = payload.get("sub")
    if not sub:
        raise Unauthenticated("Token missing sub claim")

    return AuthenticatedAccount(account_id=sub, claims=payload)


async def require_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AuthenticatedAccount:
    """FastAPI dependency that extracts and validates the bearer JWT.

    Usage::

        @router.post("/billing/checkout")
        async def checkout(account: AuthenticatedAccount = Depends(require_auth)):
            ...
    """
    if credentials is None:
        raise Unauthenticated("Missing authorization header")

    account = decode_access_token(credentials.credentials)

    # Picked up by the exception handlers for server-side logs
    request.state.account_id = account.account_id

    return account
