import pathlib
import sys
from datetime import timedelta

import pytest
from fastapi import HTTPException


ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import backend.main as backend_main


@pytest.mark.asyncio
async def test_get_current_user_missing_cookie_is_unauthorized():
    with pytest.raises(HTTPException) as exc:
        await backend_main.get_current_user(None)

    assert exc.value.status_code == 401


@pytest.mark.asyncio
async def test_resolve_user_invalid_token_returns_none():
    assert await backend_main.resolve_user_from_session_token("not-a-valid-token") is None


@pytest.mark.asyncio
async def test_resolve_user_expired_token_returns_none(monkeypatch):
    expired_token = backend_main.create_access_token(
        subject="42", expires_delta=timedelta(minutes=-5)
    )

    async def _unexpected_get_user_by_id(_uid: str):
        raise AssertionError("get_user_by_id should not be called for expired tokens")

    monkeypatch.setattr(backend_main, "get_user_by_id", _unexpected_get_user_by_id)

    assert await backend_main.resolve_user_from_session_token(expired_token) is None


@pytest.mark.asyncio
async def test_get_current_user_valid_token_returns_user(monkeypatch):
    user = backend_main.UserOut(id="123", email="alice@example.edu", role="user")

    async def _get_user_by_id(uid: str):
        return user if uid == "123" else None

    monkeypatch.setattr(backend_main, "get_user_by_id", _get_user_by_id)

    token = backend_main.create_access_token(subject=user.id)

    result = await backend_main.get_current_user(token)

    assert result is user


@pytest.mark.asyncio
async def test_get_current_user_unknown_subject_is_unauthorized(monkeypatch):
    async def _get_user_by_id(_uid: str):
        return None

    monkeypatch.setattr(backend_main, "get_user_by_id", _get_user_by_id)

    with pytest.raises(HTTPException) as exc:
        await backend_main.get_current_user(backend_main.create_access_token(subject="999"))

    assert exc.value.status_code == 401
