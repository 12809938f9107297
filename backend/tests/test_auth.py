from __future__ import annotations

import time

import pytest
from fastapi import HTTPException
from jose import jwt

from hyflo.auth import (
    SUBMIT_READING,
    VALIDATE_READING,
    AuthorityChecker,
    Principal,
    RoleAuthorizationProvider,
    decode_token,
    principal_from_token,
)
from hyflo.config import settings


def _token(**claims) -> str:
    now = int(time.time())
    payload = {"sub": "7", "iat": now, "exp": now + 600}
    payload.update(claims)
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def test_principal_roles_are_normalised() -> None:
    principal = principal_from_token(_token(roles=["ROLE_VALIDATOR", "Operator"]))

    assert principal.user_id == 7
    assert principal.roles == frozenset({"validator", "operator"})
    assert principal.has_authority(VALIDATE_READING)
    assert principal.has_authority(SUBMIT_READING)


def test_single_role_claim_is_accepted() -> None:
    principal = principal_from_token(_token(role="operator"))

    assert principal.roles == frozenset({"operator"})
    assert not principal.has_authority(VALIDATE_READING)


def test_expired_token_is_rejected() -> None:
    now = int(time.time())
    token = _token(exp=now - settings.JWT_LEEWAY_SECONDS - 60, iat=now - 3600)

    with pytest.raises(HTTPException) as exc_info:
        decode_token(token)

    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "Token expired"


@pytest.mark.parametrize(
    "token",
    [
        None,
        "not-a-jwt",
        jwt.encode({"sub": "7", "exp": int(time.time()) + 600}, "other-secret", algorithm="HS256"),
    ],
)
def test_invalid_tokens_are_unauthorized(token) -> None:
    with pytest.raises(HTTPException) as exc_info:
        principal_from_token(token)

    assert exc_info.value.status_code == 401


def test_refresh_token_cannot_be_used() -> None:
    with pytest.raises(HTTPException):
        decode_token(_token(type="refresh"))


def test_non_numeric_subject_is_unauthorized() -> None:
    with pytest.raises(HTTPException):
        principal_from_token(_token(sub="alice"))


def test_provider_answers_from_seeded_and_remembered_roles() -> None:
    provider = RoleAuthorizationProvider({1: {"ROLE_VALIDATOR"}})

    assert provider.has_authority(1, VALIDATE_READING)
    assert not provider.has_authority(2, VALIDATE_READING)

    provider.remember(Principal(user_id=2, roles=frozenset({"admin"})))
    assert provider.has_authority(2, VALIDATE_READING)


def test_authority_checker_rejects_missing_authority() -> None:
    checker = AuthorityChecker(SUBMIT_READING)

    with pytest.raises(HTTPException) as exc_info:
        checker(Principal(user_id=3, roles=frozenset({"validator"})))

    assert exc_info.value.status_code == 403
