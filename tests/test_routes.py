"""HTTP tests for the decision and administration endpoints."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient
from starlette.requests import Request

from access_engine.features.permissions.dependencies import (
    build_request_context,
    require_all_permissions,
    require_any_permission,
)

PREFIX = "/permissions"


def as_user(user_id) -> dict:
    return {"X-User-ID": str(user_id)}


class FailingDirectory:
    async def roles_for(self, user_id):
        raise ConnectionError("database is gone")


async def setup_policy(client, admin_id) -> int:
    """Create doc:read for viewers and a viewer user via the API; returns the user id."""
    headers = as_user(admin_id)
    assert (await client.post(f"{PREFIX}/roles", json={"name": "viewer"}, headers=headers)).status_code == 201
    assert (await client.post(f"{PREFIX}/resources", json={"name": "doc"}, headers=headers)).status_code == 201
    assert (await client.post(f"{PREFIX}/actions", json={"name": "READ"}, headers=headers)).status_code == 201
    response = await client.post(
        f"{PREFIX}/grants/simple", json={"role": "viewer", "resource": "doc", "action": "read"}, headers=headers
    )
    assert response.status_code == 201
    response = await client.post(f"{PREFIX}/users", json={"username": "bob"}, headers=headers)
    assert response.status_code == 201
    user_id = response.json()["id"]
    response = await client.post(f"{PREFIX}/users/{user_id}/roles", json={"role": "viewer"}, headers=headers)
    assert response.status_code == 204
    return user_id


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


class TestDecideEndpoint:
    @pytest.mark.asyncio
    async def test_allow_and_deny(self, client, admin_id):
        user_id = await setup_policy(client, admin_id)

        response = await client.post(
            f"{PREFIX}/decide", json={"resource": "doc", "action": "read"}, headers=as_user(user_id)
        )
        assert response.status_code == 200
        body = response.json()
        assert body["allowed"] is True
        assert body["reason"] == "simple-grant-match"
        assert body["matched_grant"]["kind"] == "simple"

        response = await client.post(
            f"{PREFIX}/decide", json={"user_id": user_id, "resource": "doc", "action": "write"}, headers=as_user(user_id)
        )
        assert response.json() == {"allowed": False, "reason": "no-matching-grant", "matched_grant": None}

    @pytest.mark.asyncio
    async def test_anonymous_caller_is_401(self, client, admin_id):
        user_id = await setup_policy(client, admin_id)
        response = await client.post(f"{PREFIX}/decide", json={"user_id": user_id, "resource": "doc", "action": "read"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_deciding_for_another_user_needs_permission(self, client, admin_id, access_engine):
        user_id = await setup_policy(client, admin_id)
        other = await access_engine.admin.create_user("carol")
        decide = {"user_id": other.id, "resource": "doc", "action": "read"}

        response = await client.post(f"{PREFIX}/decide", json=decide, headers=as_user(user_id))
        assert response.status_code == 403
        await access_engine.recorder.flush()
        assert await access_engine.resolver.query_audit_trail(other.id) == []

        response = await client.post(f"{PREFIX}/decide", json=decide, headers=as_user(admin_id))
        assert response.status_code == 200
        assert response.json()["reason"] == "user-has-no-roles"

        await access_engine.admin.grant_simple("viewer", "permissions", "check")
        response = await client.post(f"{PREFIX}/decide", json=decide, headers=as_user(user_id))
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_server_context_overrides_body_context(self, client, admin_id, access_engine):
        user_id = await setup_policy(client, admin_id)
        await access_engine.admin.create_resource("vault")
        await access_engine.admin.grant_extended(
            "viewer", "vault", "read",
            [{"scope": "environment", "key": "client_ip", "comparator": "in_cidr", "value": "10.0.0.0/8"}],
        )
        body = {"resource": "vault", "action": "read", "context": {"client_ip": "10.1.2.3", "ticket": "T-1"}}

        response = await client.post(f"{PREFIX}/decide", json=body, headers=as_user(user_id))
        assert response.json()["allowed"] is False

        await access_engine.recorder.flush()
        (entry, *_) = await access_engine.resolver.query_audit_trail(user_id)
        assert entry.context["client_ip"] == "127.0.0.1"
        assert entry.context["ticket"] == "T-1"

    @pytest.mark.asyncio
    async def test_invalid_request_is_400(self, client, admin_id):
        response = await client.post(
            f"{PREFIX}/decide", json={"user_id": 0, "resource": "doc", "action": "read"}, headers=as_user(admin_id)
        )
        assert response.status_code == 400
        assert "error" in response.json()

    @pytest.mark.asyncio
    async def test_schema_validation_is_400(self, client):
        response = await client.post(f"{PREFIX}/decide", json={"user_id": 1, "action": "read"}, headers=as_user(1))
        assert response.status_code == 400
        assert "resource" in response.json()

    @pytest.mark.asyncio
    async def test_resolution_error_is_500(self, client, access_engine):
        access_engine.resolver.users = FailingDirectory()
        response = await client.post(f"{PREFIX}/decide", json={"resource": "doc", "action": "read"}, headers=as_user(1))
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to check permission"}

    @pytest.mark.asyncio
    async def test_effective_roles(self, client, admin_id):
        user_id = await setup_policy(client, admin_id)
        headers = as_user(admin_id)
        await client.post(f"{PREFIX}/roles", json={"name": "editor"}, headers=headers)
        await client.post(f"{PREFIX}/roles/hierarchy", json={"parent": "viewer", "child": "editor"}, headers=headers)
        await client.delete(f"{PREFIX}/users/{user_id}/roles/viewer", headers=headers)
        await client.post(f"{PREFIX}/users/{user_id}/roles", json={"role": "editor"}, headers=headers)

        response = await client.get(f"{PREFIX}/users/{user_id}/roles", headers=as_user(user_id))
        assert response.json() == {"user_id": user_id, "roles": ["editor", "viewer"]}

        response = await client.get(f"{PREFIX}/users/{admin_id}/roles", headers=as_user(user_id))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_user_permissions(self, client, admin_id):
        user_id = await setup_policy(client, admin_id)
        headers = as_user(admin_id)
        await client.post(f"{PREFIX}/resources", json={"name": "salary"}, headers=headers)
        await client.post(f"{PREFIX}/actions", json={"name": "view"}, headers=headers)
        await client.post(
            f"{PREFIX}/grants/extended",
            json={"role": "viewer", "resource": "salary", "action": "view", "priority": 3},
            headers=headers,
        )

        response = await client.get(f"{PREFIX}/users/{user_id}/permissions", headers=headers)
        assert response.status_code == 200
        assert [(g["kind"], g["resource"], g["action"]) for g in response.json()] == [
            ("simple", "doc", "read"),
            ("extended", "salary", "view"),
        ]

        response = await client.get(f"{PREFIX}/users/{user_id}/permissions", headers=as_user(user_id))
        assert response.status_code == 403


# ---------------------------------------------------------------------------
# Protection
# ---------------------------------------------------------------------------


class TestProtection:
    @pytest.mark.asyncio
    async def test_missing_header_is_401(self, client):
        response = await client.post(f"{PREFIX}/roles", json={"name": "viewer"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_malformed_header_is_401(self, client):
        response = await client.post(f"{PREFIX}/roles", json={"name": "viewer"}, headers={"X-User-ID": "abc"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_caller_without_permission_is_403(self, client, admin_id):
        user_id = await setup_policy(client, admin_id)
        response = await client.post(f"{PREFIX}/roles", json={"name": "intruder"}, headers=as_user(user_id))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_audit_trail_requires_audit_read(self, client, admin_id):
        user_id = await setup_policy(client, admin_id)
        await client.post(f"{PREFIX}/decide", json={"resource": "doc", "action": "read"}, headers=as_user(user_id))

        response = await client.get(f"{PREFIX}/users/{user_id}/audit?limit=1", headers=as_user(admin_id))
        assert response.status_code == 200
        (entry,) = response.json()
        assert (entry["operation"], entry["reason"]) == ("check", "simple-grant-match")

        response = await client.get(f"{PREFIX}/users/{user_id}/audit", headers=as_user(user_id))
        assert response.status_code == 403

        response = await client.get(f"{PREFIX}/users/{user_id}/audit?limit=1", headers=as_user(admin_id))
        assert (response.json()[0]["operation"], response.json()[0]["resource"]) == ("deny", "audit")


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


class TestAdministration:
    @pytest.mark.asyncio
    async def test_cycle_is_409(self, client, admin_id):
        headers = as_user(admin_id)
        for name in ("viewer", "editor"):
            await client.post(f"{PREFIX}/roles", json={"name": name}, headers=headers)
        response = await client.post(
            f"{PREFIX}/roles/hierarchy", json={"parent": "viewer", "child": "editor"}, headers=headers
        )
        assert response.status_code == 201

        response = await client.post(
            f"{PREFIX}/roles/hierarchy", json={"parent": "editor", "child": "viewer"}, headers=headers
        )
        assert response.status_code == 409

        response = await client.get(f"{PREFIX}/roles/editor/hierarchy", headers=headers)
        assert response.json() == {"role": "editor", "parents": ["viewer"], "children": [], "inherited": ["viewer"]}

    @pytest.mark.asyncio
    async def test_unknown_names_are_404(self, client, admin_id):
        headers = as_user(admin_id)
        response = await client.put(f"{PREFIX}/roles/ghost/status", json={"is_active": False}, headers=headers)
        assert response.status_code == 404
        response = await client.delete(f"{PREFIX}/grants/extended/999", headers=headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_duplicate_role_is_409(self, client, admin_id):
        headers = as_user(admin_id)
        await client.post(f"{PREFIX}/roles", json={"name": "viewer"}, headers=headers)
        response = await client.post(f"{PREFIX}/roles", json={"name": "viewer"}, headers=headers)
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_invalid_role_name_is_400(self, client, admin_id):
        response = await client.post(f"{PREFIX}/roles", json={"name": "has space"}, headers=as_user(admin_id))
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_simple_grant_names_are_normalised(self, client, admin_id):
        user_id = await setup_policy(client, admin_id)
        headers = as_user(admin_id)
        await client.post(f"{PREFIX}/actions", json={"name": "write"}, headers=headers)

        response = await client.post(
            f"{PREFIX}/grants/simple", json={"role": "viewer", "resource": "doc", "action": "Write"}, headers=headers
        )
        assert response.status_code == 201
        assert response.json()["action"] == "write"
        decide = {"resource": "doc", "action": "write"}
        response = await client.post(f"{PREFIX}/decide", json=decide, headers=as_user(user_id))
        assert response.json()["allowed"] is True

        response = await client.post(
            f"{PREFIX}/grants/simple", json={"role": "viewer", "resource": "doc:v2", "action": "read"}, headers=headers
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_extended_grant_lifecycle(self, client, admin_id):
        user_id = await setup_policy(client, admin_id)
        headers = as_user(admin_id)
        await client.post(f"{PREFIX}/resources", json={"name": "salary"}, headers=headers)
        await client.post(f"{PREFIX}/actions", json={"name": "view"}, headers=headers)
        await client.put(
            f"{PREFIX}/users/{user_id}/attributes/level", json={"value": "5", "type": "number"}, headers=headers
        )

        conditions = [{"scope": "user", "key": "level", "comparator": "gte", "value": 3}]
        response = await client.post(
            f"{PREFIX}/grants/extended",
            json={"role": "viewer", "resource": "salary", "action": "view", "conditions": conditions, "priority": 7},
            headers=headers,
        )
        assert response.status_code == 201
        grant_id = response.json()["id"]

        decide = {"user_id": user_id, "resource": "salary", "action": "view"}
        bob = as_user(user_id)
        response = await client.post(f"{PREFIX}/decide", json=decide, headers=bob)
        assert response.json()["reason"] == "extended-grant-priority-7"

        response = await client.delete(f"{PREFIX}/grants/extended/{grant_id}", headers=headers)
        assert response.json()["is_active"] is False
        assert (await client.post(f"{PREFIX}/decide", json=decide, headers=bob)).json()["allowed"] is False

    @pytest.mark.asyncio
    async def test_expression_conditions_are_400(self, client, admin_id):
        await setup_policy(client, admin_id)
        response = await client.post(
            f"{PREFIX}/grants/extended",
            json={"role": "viewer", "resource": "doc", "action": "read", "conditions": {"expression": "1 == 1"}},
            headers=as_user(admin_id),
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_attributes(self, client, admin_id):
        await setup_policy(client, admin_id)
        headers = as_user(admin_id)
        response = await client.put(
            f"{PREFIX}/resources/doc/attributes/department", json={"value": "IT"}, headers=headers
        )
        assert response.json() == {"key": "department", "type": "string", "raw": "IT", "value": "IT"}

        response = await client.get(f"{PREFIX}/resources/doc/attributes", headers=headers)
        assert list(response.json()) == ["department"]

        response = await client.put(
            f"{PREFIX}/resources/doc/attributes/level", json={"value": "3", "type": "integer"}, headers=headers
        )
        assert response.status_code == 400

        response = await client.delete(f"{PREFIX}/resources/doc/attributes/department", headers=headers)
        assert response.status_code == 204
        response = await client.delete(f"{PREFIX}/resources/doc/attributes/department", headers=headers)
        assert response.status_code == 404


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------


class TestRequestContext:
    def test_environment_attributes(self):
        scope = {
            "type": "http",
            "method": "GET",
            "path": "/docs/7",
            "query_string": b"tag=a&tag=b&page=2",
            "headers": [
                (b"user-agent", b"curl/8.0"),
                (b"authorization", b"Bearer secret"),
                (b"cookie", b"session=1"),
                (b"x-request-id", b"abc"),
            ],
            "client": ("10.0.0.5", 51000),
            "path_params": {"doc_id": 7},
        }
        now = datetime(2024, 3, 4, 14, 5, tzinfo=timezone.utc)
        context = build_request_context(Request(scope), now=now)

        assert context["client_ip"] == "10.0.0.5"
        assert context["user_agent"] == "curl/8.0"
        assert context["time"] == "14:05"
        assert context["day_of_week"] == "monday"
        assert context["query_params"] == {"tag": ["a", "b"], "page": "2"}
        assert context["path_params"] == {"doc_id": "7"}
        assert "authorization" not in context["headers"]
        assert "cookie" not in context["headers"]
        assert context["headers"]["x-request-id"] == "abc"


# ---------------------------------------------------------------------------
# Route protection helpers
# ---------------------------------------------------------------------------


class TestProtectionHelpers:
    @pytest_asyncio.fixture
    async def guarded(self, access_engine):
        app = FastAPI()
        app.state.access_engine = access_engine

        @app.get("/any")
        async def any_route(user_id: int = Depends(require_any_permission(("doc", "write"), ("doc", "read")))):
            return {"user_id": user_id}

        @app.get("/all")
        async def all_route(user_id: int = Depends(require_all_permissions(("doc", "write"), ("doc", "read")))):
            return {"user_id": user_id}

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
            yield http

    @pytest.mark.asyncio
    async def test_any_and_all(self, client, guarded, admin_id):
        user_id = await setup_policy(client, admin_id)

        response = await guarded.get("/any", headers=as_user(user_id))
        assert response.json() == {"user_id": user_id}
        assert (await guarded.get("/all", headers=as_user(user_id))).status_code == 403
        assert (await guarded.get("/any")).status_code == 401
