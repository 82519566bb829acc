"""Tests for security module: admin bearer key checks."""

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from metering.security import extract_bearer_token, is_admin_request, verify_admin_key


def build_app(api_key: str | None) -> FastAPI:
    app = FastAPI()

    def admin(request: Request) -> str:
        return verify_admin_key(request, api_key)

    @app.get("/admin")
    async def admin_endpoint(token: str = Depends(admin)):
        return {"ok": True}

    @app.get("/whoami")
    async def whoami(request: Request):
        return {
            "token": extract_bearer_token(request),
            "admin": is_admin_request(request, api_key),
        }

    return app


class TestVerifyAdminKey:
    """Tests for verify_admin_key."""

    @pytest.fixture
    def client(self) -> TestClient:
        return TestClient(build_app("test-secret-key"))

    def test_valid_key(self, client: TestClient) -> None:
        """Test valid key is accepted."""
        response = client.get("/admin", headers={"Authorization": "Bearer test-secret-key"})
        assert response.status_code == 200

    def test_missing_header(self, client: TestClient) -> None:
        """Test missing Authorization header returns 401."""
        response = client.get("/admin")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_malformed_header(self, client: TestClient) -> None:
        """Test non-Bearer scheme returns 401."""
        response = client.get("/admin", headers={"Authorization": "Basic dXNlcjpwYXNz"})
        assert response.status_code == 401

    def test_wrong_key(self, client: TestClient) -> None:
        """Test wrong key returns 401."""
        response = client.get("/admin", headers={"Authorization": "Bearer wrong"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid API key"

    def test_non_ascii_key(self, client: TestClient) -> None:
        """Test a token outside ASCII is rejected rather than erroring."""
        response = client.get("/admin", headers={"Authorization": "Bearer café".encode("latin-1")})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid API key"

    def test_disabled_without_key(self) -> None:
        """Test admin endpoints are unavailable when no key is configured."""
        client = TestClient(build_app(None))
        response = client.get("/admin", headers={"Authorization": "Bearer anything"})
        assert response.status_code == 503


class TestIsAdminRequest:
    """Tests for the non-raising admin check."""

    def test_admin(self) -> None:
        client = TestClient(build_app("k"))
        data = client.get("/whoami", headers={"Authorization": "Bearer k"}).json()
        assert data == {"token": "k", "admin": True}

    def test_not_admin(self) -> None:
        client = TestClient(build_app("k"))
        assert client.get("/whoami").json() == {"token": None, "admin": False}

    def test_never_admin_without_key(self) -> None:
        client = TestClient(build_app(None))
        data = client.get("/whoami", headers={"Authorization": "Bearer k"}).json()
        assert data["admin"] is False

    def test_non_ascii_token(self) -> None:
        client = TestClient(build_app("k"))
        data = client.get("/whoami", headers={"Authorization": "Bearer ké".encode("latin-1")}).json()
        assert data == {"token": "ké", "admin": False}
