"""Bearer guard, request budgets and the attachment download flow."""

import os
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from vaultsync import app as app_module
from vaultsync.service.runtime import get_runtime, reset_runtime_for_tests

EMAIL = "owner@example.com"
PASSWORD_HASH = "client-master-password-hash=="


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client):
    response = client.post(
        "/api/accounts/register",
        json={
            "email": EMAIL,
            "masterPasswordHash": PASSWORD_HASH,
            "key": "2.aXY=|ZGF0YQ==|bWFj",
            "keys": {"publicKey": "cHVi", "encryptedPrivateKey": "2.aXY=|cGs=|bWFj"},
        },
    )
    assert response.status_code == 200


def _login(client) -> dict:
    response = client.post(
        "/identity/connect/token",
        data={
            "grant_type": "password",
            "username": EMAIL,
            "password": PASSWORD_HASH,
            "deviceIdentifier": "device-1",
            "deviceName": "cli",
            "deviceType": "8",
        },
    )
    assert response.status_code == 200
    return response.json()


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def token(client):
    _register(client)
    return _login(client)["access_token"]


class TestBearerGuard:
    def test_missing_token(self, client):
        response = client.get("/api/sync")
        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    def test_garbage_token(self, client):
        response = client.get("/api/devices", headers=_auth("not.a.token"))
        assert response.status_code == 401

    def test_unsafe_secret_is_checked_before_the_token(self, client, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "")
        reset_runtime_for_tests()
        response = client.get("/api/sync")
        assert response.status_code == 500
        assert response.json()["error_description"] == (
            "Server configuration error: JWT_SECRET is not set or too weak"
        )

    def test_sync_returns_profile(self, client, token):
        response = client.get("/api/sync", headers=_auth(token))
        assert response.status_code == 200
        profile = response.json()["profile"]
        assert profile["email"] == EMAIL
        assert profile["twoFactorEnabled"] is False
        assert profile["object"] == "profile"

    def test_devices(self, client, token):
        response = client.get("/api/devices", headers=_auth(token))
        assert response.status_code == 200
        body = response.json()
        assert body["object"] == "list"
        assert [d["identifier"] for d in body["data"]] == ["device-1"]
        assert body["data"][0]["type"] == 8

    def test_security_stamp_rotation_revokes_token(self, client, token):
        response = client.post("/api/accounts/security-stamp", headers=_auth(token))
        assert response.status_code == 200
        assert response.json()["securityStamp"]
        assert client.get("/api/sync", headers=_auth(token)).status_code == 401


class TestRequestBudgets:
    @pytest.fixture(autouse=True)
    def small_budgets(self, monkeypatch):
        monkeypatch.setenv("API_SYNC_RATE_LIMIT_PER_MINUTE", "3")
        monkeypatch.setenv("API_WRITE_RATE_LIMIT_PER_MINUTE", "2")
        # A long window keeps the test inside a single window.
        monkeypatch.setenv("RATE_LIMIT_WINDOW_SECONDS", "86400")
        reset_runtime_for_tests()

    def test_sync_budget(self, client, token):
        for _ in range(3):
            assert client.get("/api/sync", headers=_auth(token)).status_code == 200
        limited = client.get("/api/sync", headers=_auth(token))
        assert limited.status_code == 429
        assert int(limited.headers["Retry-After"]) > 0
        assert limited.headers["X-RateLimit-Remaining"] == "0"
        body = limited.json()
        assert body["error"] == "Too many requests"
        assert body["error_description"].startswith("Sync rate limit exceeded.")

    def test_plain_reads_are_not_charged(self, client, token):
        for _ in range(5):
            assert client.get("/api/devices", headers=_auth(token)).status_code == 200

    def test_write_budget(self, client):
        _register(client)
        for _ in range(2):
            token = _login(client)["access_token"]
            response = client.post("/api/accounts/security-stamp", headers=_auth(token))
            assert response.status_code == 200
        token = _login(client)["access_token"]
        limited = client.post("/api/accounts/security-stamp", headers=_auth(token))
        assert limited.status_code == 429
        assert limited.json()["error_description"].startswith("Rate limit exceeded.")

    def test_budgets_are_per_client_address(self, client, token):
        for _ in range(3):
            client.get("/api/sync", headers=_auth(token))
        other = client.get(
            "/api/sync", headers={**_auth(token), "CF-Connecting-IP": "198.51.100.7"}
        )
        assert other.status_code == 200


class TestAttachmentDownload:
    def _write_blob(self, cipher_id="cipher-1", attachment_id="att-1") -> Path:
        root = Path(os.environ["SHARED_FS_ROOT"]) / "attachments" / cipher_id
        root.mkdir(parents=True, exist_ok=True)
        blob = root / attachment_id
        blob.write_bytes(b"encrypted-bytes")
        return blob

    def test_mint_and_download_once(self, client, token):
        self._write_blob()
        minted = client.get("/api/ciphers/cipher-1/attachment/att-1", headers=_auth(token))
        assert minted.status_code == 200
        url = minted.json()["url"]
        assert "/api/attachments/cipher-1/att-1?token=" in url

        download = client.get(url)
        assert download.status_code == 200
        assert download.content == b"encrypted-bytes"
        assert download.headers["Cache-Control"] == "private, no-cache"
        assert download.headers["content-type"] == "application/octet-stream"

        replay = client.get(url)
        assert replay.status_code == 401
        assert replay.json()["error_description"] == "Invalid or expired token"

    def test_token_is_bound_to_attachment(self, client, token):
        self._write_blob()
        self._write_blob(attachment_id="att-2")
        url = client.get(
            "/api/ciphers/cipher-1/attachment/att-1", headers=_auth(token)
        ).json()["url"]
        query = url.split("?", 1)[1]
        response = client.get(f"/api/attachments/cipher-1/att-2?{query}")
        assert response.status_code == 401
        assert response.json()["error_description"] == "Token mismatch"

    def test_missing_token(self, client):
        response = client.get("/api/attachments/cipher-1/att-1")
        assert response.status_code == 401
        assert response.json()["error_description"] == "Token required"

    def test_missing_blob(self, client, token):
        response = client.get("/api/ciphers/cipher-9/attachment/att-9", headers=_auth(token))
        assert response.status_code == 404

    def test_missing_blob_does_not_burn_the_token(self, client, token):
        blob = self._write_blob(attachment_id="att-3")
        url = client.get(
            "/api/ciphers/cipher-1/attachment/att-3", headers=_auth(token)
        ).json()["url"]
        blob.unlink()
        assert client.get(url).status_code == 404
        self._write_blob(attachment_id="att-3")
        assert client.get(url).status_code == 200

    def test_traversal_identifiers_are_rejected(self, client):
        token = get_runtime().auth.issue_file_download_token("..", "passwd")
        response = client.get(f"/api/attachments/%2E%2E/passwd?token={token}")
        assert response.status_code in (400, 404)
