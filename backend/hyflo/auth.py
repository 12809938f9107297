"""Bearer token verification and role based authorization.

Tokens are issued by the external authentication service; this module only
verifies them and maps the roles they carry onto workflow authorities.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import settings

logger = logging.getLogger(__name__)

# Bearer token scheme
security = HTTPBearer()

VALIDATE_READING = "VALIDATE_READING"
SUBMIT_READING = "SUBMIT_READING"
MANAGE_THRESHOLDS = "MANAGE_THRESHOLDS"


# Role authorities matrix
ROLE_AUTHORITIES = {
    "admin": {
        SUBMIT_READING: True,
        VALIDATE_READING: True,
        MANAGE_THRESHOLDS: True,
    },
    "validator": {
        SUBMIT_READING: False,
        VALIDATE_READING: True,
        MANAGE_THRESHOLDS: False,
    },
    "operator": {
        SUBMIT_READING: True,
        VALIDATE_READING: False,
        MANAGE_THRESHOLDS: False,
    },
}


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def normalize_role(role: str) -> str:
    """``ROLE_VALIDATOR`` and ``validator`` name the same role."""
    cleaned = role.strip().lower()
    if cleaned.startswith("role_"):
        cleaned = cleaned[len("role_"):]
    return cleaned


@dataclass(frozen=True)
class Principal:
    user_id: int
    roles: frozenset[str]

    def has_authority(self, authority: str) -> bool:
        return any(ROLE_AUTHORITIES.get(role, {}).get(authority, False) for role in self.roles)


def decode_token(token: str) -> dict:
    """Decode JWT token."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError:
        raise _unauthorized()

    now = int(time.time())
    exp = payload.get("exp")
    if exp is None:
        raise _unauthorized()
    try:
        exp_int = int(exp)
    except (TypeError, ValueError):
        raise _unauthorized()
    if now > exp_int + int(settings.JWT_LEEWAY_SECONDS):
        raise _unauthorized("Token expired")

    iat = payload.get("iat")
    if iat is not None:
        try:
            iat_int = int(iat)
        except (TypeError, ValueError):
            raise _unauthorized()
        # Reject tokens issued far in the future (clock skew / malicious tokens).
        if iat_int > now + int(settings.JWT_LEEWAY_SECONDS):
            raise _unauthorized()

    token_type = payload.get("type")
    if token_type is not None and token_type != "access":
        raise _unauthorized("Invalid token type")
    return payload


def principal_from_payload(payload: dict) -> Principal:
    sub = payload.get("sub")
    try:
        user_id = int(str(sub))
    except (TypeError, ValueError):
        raise _unauthorized()

    raw_roles = payload.get("roles")
    if raw_roles is None:
        raw_roles = [payload["role"]] if payload.get("role") else []
    if isinstance(raw_roles, str):
        raw_roles = [raw_roles]
    return Principal(user_id=user_id, roles=frozenset(normalize_role(str(role)) for role in raw_roles))


def principal_from_token(token: str | None) -> Principal:
    if not token:
        raise _unauthorized()
    return principal_from_payload(decode_token(token))


class RoleAuthorizationProvider:
    """Answers ``has_authority`` from roles seen on verified tokens.

    The organisational directory is external; roles can be seeded up front
    and are refreshed every time a user presents a token.
    """

    def __init__(self, roles_by_user: dict[int, set[str]] | None = None) -> None:
        self._lock = threading.Lock()
        self._roles: dict[int, frozenset[str]] = {
            user_id: frozenset(normalize_role(role) for role in roles)
            for user_id, roles in (roles_by_user or {}).items()
        }

    def remember(self, principal: Principal) -> None:
        with self._lock:
            self._roles[principal.user_id] = principal.roles

    def roles_for(self, user_id: int) -> frozenset[str]:
        with self._lock:
            return self._roles.get(user_id, frozenset())

    def has_authority(self, user_id: int, authority: str) -> bool:
        roles = self.roles_for(user_id)
        return any(ROLE_AUTHORITIES.get(role, {}).get(authority, False) for role in roles)


def get_current_principal(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Principal:
    """Get current authenticated principal."""
    principal = principal_from_token(credentials.credentials)
    provider = getattr(request.app.state, "authorization", None)
    if isinstance(provider, RoleAuthorizationProvider):
        provider.remember(principal)
    return principal


class AuthorityChecker:
    """Check principal authorities based on role."""

    def __init__(self, required_authority: str):
        self.required_authority = required_authority

    def __call__(self, principal: Principal = Depends(get_current_principal)) -> Principal:
        if not principal.has_authority(self.required_authority):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {self.required_authority} required",
            )
        return principal
