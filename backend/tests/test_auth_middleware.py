"""Tests for the request authentication gate and the role dependencies."""

import time

import jwt
import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from fieldforge.auth.dependencies import require_exact_role, require_minimum_role
from fieldforge.auth.middleware import READ_ONLY_MESSAGE, AuthMiddleware, AuthSettings
from fieldforge.auth.types import LOCAL_PROVIDER, Identity
from fieldforge.core.errors import FieldForgeError

from conftest import (
    ADMIN,
    CUSTOMER_ALICE,
    DISPATCHER,
    INACTIVE_DISPATCHER,
    MANAGER,
    TECH_TINA,
    TEST_SECRET,
)


def forge(user_id=CUSTOMER_ALICE, **claims):
    """Sign an access token with arbitrary claims."""
    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "userId": user_id,
        "role": "customer",
        "provider": "auth0",
        "type": "access",
        "iat": now,
        "exp": now + 300,
    }
    payload.update(claims)
    payload = {k: v for k, v in payload.items() if v is not None}
    return {"Authorization": f"Bearer {jwt.encode(payload, TEST_SECRET, algorithm='HS256')}"}


def error_code(response):
    return response.json()["error"]["code"]


# ── Public paths ─────────────────────────────────────────────────────────────


class TestPublicPaths:
    def test_health_needs_no_token(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "entities": 6}

    def test_openapi_is_public(self, client):
        assert client.get("/openapi.json").status_code == 200

    def test_cors_preflight_passes(self, client):
        response = client.options(
            "/api/entities/work_order",
            headers={
                "Origin": "http://localhost:5173",
                "Access-Control-Request-Method": "GET",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://localhost:5173"


# ── 401: unusable credentials ────────────────────────────────────────────────


class TestUnauthenticated:
    @pytest.mark.parametrize(
        "headers",
        [
            {},
            {"Authorization": ""},
            {"Authorization": "Bearer "},
            {"Authorization": "Basic dXNlcjpwYXNz"},
            {"Authorization": "Bearer not.a.jwt"},
        ],
    )
    def test_missing_or_malformed(self, client, headers):
        response = client.get("/api/entities/work_order", headers=headers)
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"
        assert error_code(response) == "authentication_error"

    def test_expired_token(self, client):
        response = client.get("/api/entities/work_order", headers=forge(exp=int(time.time()) - 10))
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Token has expired"

    def test_refresh_token_as_bearer(self, client, token_service):
        pair = token_service.generate_token_pair(CUSTOMER_ALICE)
        response = client.get(
            "/api/entities/work_order",
            headers={"Authorization": f"Bearer {pair.refresh_token}"},
        )
        assert response.status_code == 401

    def test_unknown_provider(self, client):
        response = client.get("/api/entities/work_order", headers=forge(provider="github"))
        assert response.status_code == 401

    def test_missing_user_id(self, client):
        response = client.get("/api/entities/work_order", headers=forge(userId=None))
        assert response.status_code == 401

    def test_missing_subject(self, client):
        response = client.get("/api/entities/work_order", headers=forge(sub=""))
        assert response.status_code == 401

    def test_wrong_signature(self, client):
        token = jwt.encode(
            {"sub": "50", "userId": ADMIN, "role": "admin", "provider": "auth0",
             "type": "access", "exp": int(time.time()) + 60},
            "some-other-secret-that-is-also-32-chars",
            algorithm="HS256",
        )
        response = client.get(
            "/api/entities/work_order", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401


# ── 403: credential rejected ─────────────────────────────────────────────────


class TestCredentialRejected:
    def test_local_provider_disabled(self, client):
        response = client.get(
            "/api/entities/work_order", headers=forge(ADMIN, role="admin", provider=LOCAL_PROVIDER)
        )
        assert response.status_code == 403
        assert error_code(response) == "credential_rejected"
        assert "www-authenticate" not in response.headers

    def test_inactive_user(self, client):
        response = client.get(
            "/api/entities/work_order", headers=forge(INACTIVE_DISPATCHER, role="dispatcher")
        )
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "User account is disabled"

    def test_user_without_account(self, client):
        response = client.get("/api/entities/work_order", headers=forge(TECH_TINA, role="technician"))
        assert response.status_code == 403


class TestLocalProvider:
    @pytest.fixture
    def dev_client(self, app_factory):
        with TestClient(app_factory(dev_auth_enabled=True)) as client:
            yield client

    def test_reads_allowed(self, dev_client, auth_headers):
        response = dev_client.get(
            "/api/entities/work_order", headers=auth_headers(DISPATCHER, LOCAL_PROVIDER)
        )
        assert response.status_code == 200

    @pytest.mark.parametrize("method,path", [
        ("post", "/api/entities/work_order"),
        ("patch", "/api/entities/work_order/1"),
        ("delete", "/api/entities/work_order/1"),
        ("post", "/api/auth/logout-all"),
    ])
    def test_mutations_rejected(self, dev_client, auth_headers, method, path):
        kwargs = {"json": {"data": {"status": "x"}}} if method != "delete" else {}
        response = getattr(dev_client, method)(
            path, headers=auth_headers(ADMIN, LOCAL_PROVIDER), **kwargs
        )
        assert response.status_code == 403
        assert response.json()["error"]["message"] == READ_ONLY_MESSAGE

    def test_logout_is_exempt(self, dev_client, auth_headers):
        response = dev_client.post(
            "/api/auth/logout",
            headers=auth_headers(ADMIN, LOCAL_PROVIDER),
            json={"refresh_token": "whatever"},
        )
        assert response.status_code == 200
        assert response.json() == {"revoked": False}


# ── Identity resolution ──────────────────────────────────────────────────────


class TestIdentity:
    def test_role_comes_from_user_directory(self, client):
        # token claims admin, the account is a customer
        response = client.get("/api/entities/customer", headers=forge(CUSTOMER_ALICE, role="admin"))
        assert response.status_code == 200
        assert [c["id"] for c in response.json()["data"]] == [CUSTOMER_ALICE]

    def test_me_reports_current_account(self, client, auth_headers):
        response = client.get("/api/auth/me", headers=auth_headers(MANAGER))
        assert response.status_code == 200
        body = response.json()
        assert body["id"] == MANAGER
        assert body["role"] == "manager"
        assert body["provider"] == "auth0"


# ── Role dependencies ────────────────────────────────────────────────────────


@pytest.fixture
def role_app(token_service, resolver):
    app = FastAPI()
    app.state.permissions = resolver
    app.add_middleware(AuthMiddleware, tokens=token_service, settings=AuthSettings())

    @app.exception_handler(FieldForgeError)
    async def handler(request: Request, exc: FieldForgeError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.get("/reports")
    def reports(identity: Identity = Depends(require_minimum_role("manager"))):
        return {"role": identity.role}

    @app.get("/dispatch-board")
    def board(identity: Identity = Depends(require_exact_role("dispatcher"))):
        return {"role": identity.role}

    with TestClient(app) as client:
        yield client


class TestRoleDependencies:
    @pytest.mark.parametrize("user_id,status", [
        (DISPATCHER, 403),
        (MANAGER, 200),
        (ADMIN, 200),
        (CUSTOMER_ALICE, 403),
    ])
    def test_minimum_role(self, role_app, auth_headers, user_id, status):
        assert role_app.get("/reports", headers=auth_headers(user_id)).status_code == status

    @pytest.mark.parametrize("user_id,status", [
        (DISPATCHER, 200),
        (MANAGER, 403),
        (ADMIN, 403),
    ])
    def test_exact_role(self, role_app, auth_headers, user_id, status):
        assert role_app.get("/dispatch-board", headers=auth_headers(user_id)).status_code == status

    def test_dependency_without_identity(self, role_app):
        assert role_app.get("/reports").status_code == 401
