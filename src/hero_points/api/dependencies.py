"""Authentication and service-wiring dependencies for the HP routes."""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from ..config import Settings
from ..errors import ConfigurationError, Unauthenticated, Unauthorized

if TYPE_CHECKING:  # pragma: no cover
    from .app import Services


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    correlation_id: Optional[str] = None


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_services(request: Request) -> "Services":
    return request.app.state.services


def decode_user_token(token: str, settings: Settings) -> str:
    """Validate a bearer JWT and return its subject."""
    if not settings.JWT_SECRET:
        raise ConfigurationError("JWT_SECRET is not configured")
    options = {"verify_aud": bool(settings.JWT_AUDIENCE)}
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE or None,
            options=options,
        )
    except JWTError as exc:
        raise Unauthenticated("Invalid or expired token") from exc

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise Unauthenticated("Token missing subject")
    return subject


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    settings: Settings = Depends(get_settings_dep),
    x_request_id: Optional[str] = Header(default=None),
) -> AuthContext:
    """Resolve the calling user from the Bearer token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise Unauthenticated("Missing Bearer token")
    return AuthContext(
        user_id=decode_user_token(credentials.credentials, settings),
        correlation_id=x_request_id,
    )


async def require_cron_secret(
    x_cron_secret: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings_dep),
) -> None:
    """Scheduled jobs authenticate with a shared secret, never a user token."""
    expected = settings.CRON_SECRET
    if not expected or not x_cron_secret:
        raise Unauthorized("Missing or invalid cron secret")
    if not hmac.compare_digest(x_cron_secret.encode(), expected.encode()):
        raise Unauthorized("Missing or invalid cron secret")
