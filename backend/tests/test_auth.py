"""
Tests for caller identity resolution (JWT, API key, development fallback).
"""

from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from unittest.mock import patch

from app.auth import API_KEY_USER_ID, DEV_USER_ID, get_current_user_id
from app.config import Settings
from app.services.auth_service import create_access_token, decode_access_token


@pytest.fixture
def anyio_backend():
    return "asyncio"


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def _settings(**overrides) -> Settings:
    values = {"environment": "development", "secret_key": "test-secret", "api_key": ""}
    values.update(overrides)
    return Settings(**values)


def test_token_round_trip():
    with patch("app.services.auth_service.get_settings", return_value=_settings()):
        token = create_access_token("user-42", email="ops@example.co.za")
        payload = decode_access_token(token)
    assert payload["sub"] == "user-42"
    assert payload["email"] == "ops@example.co.za"


def test_expired_or_foreign_tokens_are_rejected():
    with patch("app.services.auth_service.get_settings", return_value=_settings()):
        expired = create_access_token("user-42", expires_minutes=-5)
        foreign = create_access_token("user-42")
        assert decode_access_token(expired) is None
        assert decode_access_token("not.a.jwt") is None
    with patch("app.services.auth_service.get_settings", return_value=_settings(secret_key="other-secret")):
        assert decode_access_token(foreign) is None


@pytest.mark.anyio
async def test_dev_mode_without_credentials():
    with patch("app.auth.get_settings", return_value=_settings()):
        assert await get_current_user_id(None) == DEV_USER_ID


@pytest.mark.anyio
async def test_jwt_subject_is_the_caller():
    settings = _settings(api_key="key-123")
    with patch("app.auth.get_settings", return_value=settings), \
            patch("app.services.auth_service.get_settings", return_value=settings):
        token = create_access_token("user-42")
        assert await get_current_user_id(_bearer(token)) == "user-42"


@pytest.mark.anyio
async def test_api_key_caller():
    settings = _settings(api_key="key-123")
    with patch("app.auth.get_settings", return_value=settings), \
            patch("app.services.auth_service.get_settings", return_value=settings):
        assert await get_current_user_id(_bearer("key-123")) == API_KEY_USER_ID

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user_id(_bearer("wrong-key"))
        assert exc_info.value.status_code == 401

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user_id(None)
        assert exc_info.value.status_code == 401


@pytest.mark.anyio
async def test_production_without_api_key_is_misconfigured():
    settings = SimpleNamespace(api_key="", is_production=True)
    with patch("app.auth.get_settings", return_value=settings):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user_id(None)
    assert exc_info.value.status_code == 500
