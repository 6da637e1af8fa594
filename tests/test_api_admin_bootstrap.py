"""
tests/test_api_admin_bootstrap.py -- Integration tests for the admin bootstrap endpoints.

The client IP the app sees is chosen per test through conftest's make_client
factory, so loopback and remote callers can be exercised against the same
store.

Coverage:
  - non-loopback client: 403 before any AdminBootstrap is constructed
  - loopback client on an empty store: 201, admin can then sign in
  - repeated call: 200 informational outcome, no second admin
  - password validation: 422 with the form message, nothing written,
    including passwords that fit the field cap but exceed 72 bytes
  - GET /signin/admin reports can_create per client and store state
"""

from __future__ import annotations

from collections.abc import Callable
from unittest.mock import patch

from fastapi.testclient import TestClient

from auth.models import User
from auth.store import UserStore

URL = "/api/v1/signin/generateadminuser"


class TestOriginCheck:
    def test_remote_client_is_rejected_before_bootstrap(
        self, make_client: Callable[..., TestClient], store: UserStore
    ) -> None:
        client = make_client("203.0.113.5")
        with patch("api.routes.v1.auth.AdminBootstrap") as bootstrap_cls:
            resp = client.post(URL, json={"password": "secret", "password_repeat": "secret"})
        assert resp.status_code == 403
        assert resp.json() == {"error": {"code": "forbidden", "message": "Access denied."}}
        bootstrap_cls.assert_not_called()
        assert store.count_users() == 0

    def test_remote_client_gets_403_even_with_bad_passwords(self, make_client: Callable[..., TestClient]) -> None:
        client = make_client("203.0.113.5")
        resp = client.post(URL, json={"password": "a", "password_repeat": "b"})
        assert resp.status_code == 403


class TestGenerateAdminUser:
    def test_loopback_creates_admin(self, make_client: Callable[..., TestClient], store: UserStore) -> None:
        client = make_client("127.0.0.1")
        resp = client.post(URL, json={"password": "secret", "password_repeat": "secret"})
        assert resp.status_code == 201
        body = resp.json()
        assert body["outcome"] == "created"
        assert body["message"] == "Admin user with username = 'admin' was created"
        assert body["is_alert"] is False
        assert store.find_user_by_username("admin") is not None

        signin = client.post("/api/v1/signin", json={"username": "admin", "password": "secret"})
        assert signin.status_code == 200

    def test_second_call_is_informational(self, make_client: Callable[..., TestClient], store: UserStore) -> None:
        client = make_client("::1")
        client.post(URL, json={"password": "secret", "password_repeat": "secret"})
        resp = client.post(URL, json={"password": "secret", "password_repeat": "secret"})
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "already_initialized_or_not_local"
        assert resp.json()["is_alert"] is False
        assert store.count_users() == 1

    def test_password_mismatch(self, make_client: Callable[..., TestClient], store: UserStore) -> None:
        client = make_client("127.0.0.1")
        resp = client.post(URL, json={"password": "a", "password_repeat": "b"})
        assert resp.status_code == 422
        assert resp.json()["outcome"] == "password_mismatch"
        assert resp.json()["message"] == "Passwords do not match"
        assert resp.json()["is_alert"] is True
        assert store.count_users() == 0

    def test_password_over_72_bytes(self, make_client: Callable[..., TestClient], store: UserStore) -> None:
        # Within the 72-character field cap, but 144 bytes as UTF-8.
        password = "\u00e9" * 72
        client = make_client("127.0.0.1")
        resp = client.post(URL, json={"password": password, "password_repeat": password})
        assert resp.status_code == 422
        assert resp.json()["outcome"] == "password_too_long"
        assert resp.json()["message"] == "Password cannot be longer than 72 bytes"
        assert resp.json()["is_alert"] is True
        assert store.count_users() == 0

    def test_empty_body_reports_empty_password(self, make_client: Callable[..., TestClient], store: UserStore) -> None:
        client = make_client("127.0.0.1")
        resp = client.post(URL, json={})
        assert resp.status_code == 422
        assert resp.json()["outcome"] == "empty_password"
        assert store.count_users() == 0

    def test_store_with_users_is_locked(self, make_client: Callable[..., TestClient], alice: User) -> None:
        client = make_client("127.0.0.1")
        resp = client.post(URL, json={"password": "secret", "password_repeat": "secret"})
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "already_initialized_or_not_local"


class TestAdminStatus:
    def test_loopback_on_empty_store(self, make_client: Callable[..., TestClient]) -> None:
        resp = make_client("127.0.0.1").get("/api/v1/signin/admin")
        assert resp.json() == {"can_create": True}

    def test_remote_client(self, make_client: Callable[..., TestClient]) -> None:
        resp = make_client("203.0.113.5").get("/api/v1/signin/admin")
        assert resp.json() == {"can_create": False}

    def test_after_bootstrap(self, make_client: Callable[..., TestClient]) -> None:
        client = make_client("127.0.0.1")
        client.post(URL, json={"password": "secret", "password_repeat": "secret"})
        assert client.get("/api/v1/signin/admin").json() == {"can_create": False}
