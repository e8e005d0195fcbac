"""Tests for JWT session handling."""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt
from starlette.requests import Request

from callhelm.auth import COOKIE_NAME, JWT_ALGORITHM, AuthManager
from callhelm.errors import AuthenticationError


def _request(headers=None):
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw})


@pytest.fixture
def auth():
    return AuthManager(jwt_secret="s3cret")


def test_token_round_trip(auth):
    token = auth.create_session_token("u1", "u1@example.com")
    payload = auth.verify_session_token(token)
    assert payload["sub"] == "u1"
    assert payload["email"] == "u1@example.com"


def test_wrong_secret_rejected(auth):
    token = AuthManager(jwt_secret="other").create_session_token("u1")
    assert auth.verify_session_token(token) is None


def test_expired_token_rejected(auth):
    past = datetime.now(timezone.utc) - timedelta(days=1)
    token = jwt.encode({"sub": "u1", "exp": past}, "s3cret", algorithm=JWT_ALGORITHM)
    assert auth.verify_session_token(token) is None


def test_bearer_header(auth):
    token = auth.create_session_token("u1")
    assert auth.get_current_user_id(_request({"Authorization": f"Bearer {token}"})) == "u1"


def test_cookie(auth):
    token = auth.create_session_token("u2")
    assert auth.get_current_user_id(_request({"Cookie": f"{COOKIE_NAME}={token}"})) == "u2"


def test_require_auth_without_token(auth):
    with pytest.raises(AuthenticationError) as exc:
        auth.require_auth(_request())
    assert exc.value.status_code == 401


def test_non_bearer_scheme_ignored(auth):
    token = auth.create_session_token("u1")
    assert auth.get_current_user_id(_request({"Authorization": f"Basic {token}"})) is None
