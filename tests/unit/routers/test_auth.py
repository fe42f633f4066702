"""Authentication and authorization tests at the HTTP boundary."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import pytest

from tests.helpers import (
    ADMIN,
    EMPLOYER,
    STUDENT,
    generate_keypair,
    make_assertion,
    tamper_assertion,
)
from tests.unit.routers.conftest import post_task, register

if TYPE_CHECKING:
    from httpx import AsyncClient

# Patterns that must never appear in error messages
_LEAK_PATTERNS = [
    re.compile(r"Traceback", re.IGNORECASE),
    re.compile(r"File\s+\"/"),
    re.compile(r"private.?key", re.IGNORECASE),
    re.compile(r"\.py\b"),
]


class TestAuthentication:
    """Every endpoint except /health needs a valid Bearer assertion."""

    @pytest.mark.unit
    async def test_missing_header(self, client: AsyncClient) -> None:
        resp = await client.get("/tasks")
        assert resp.status_code == 401
        assert resp.json() == {
            "error": "UNAUTHORIZED",
            "message": "Missing Authorization header",
            "details": {},
        }

    @pytest.mark.unit
    async def test_wrong_scheme(self, client: AsyncClient) -> None:
        resp = await client.get("/tasks", headers={"Authorization": "Basic abc"})
        assert resp.status_code == 401

    @pytest.mark.unit
    async def test_empty_bearer(self, client: AsyncClient) -> None:
        resp = await client.get("/tasks", headers={"Authorization": "Bearer   "})
        assert resp.status_code == 401

    @pytest.mark.unit
    async def test_tampered_assertion(self, client: AsyncClient, issuer_keypair) -> None:
        token = tamper_assertion(make_assertion(issuer_keypair[0], "u-1", "student"))
        resp = await client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "UNAUTHORIZED"

    @pytest.mark.unit
    async def test_foreign_signer(self, client: AsyncClient) -> None:
        other_key, _ = generate_keypair()
        token = make_assertion(other_key, "u-1", "admin")
        resp = await client.get("/users", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    @pytest.mark.unit
    async def test_error_messages_do_not_leak(self, client: AsyncClient) -> None:
        resp = await client.get("/users/me", headers={"Authorization": "Bearer a.b.c"})
        assert resp.status_code == 401
        message = resp.json()["message"]
        for pattern in _LEAK_PATTERNS:
            assert not pattern.search(message)

    @pytest.mark.unit
    async def test_first_sight_creates_user(self, client: AsyncClient, auth) -> None:
        resp = await client.get("/users/me", headers=auth(STUDENT))
        assert resp.status_code == 200
        data = resp.json()
        assert data["user_id"] == STUDENT.user_id
        assert data["role"] == "student"
        assert data["gold"] == 0


class TestAuthorization:
    """Roles are enforced by the services and surface as 403."""

    @pytest.mark.unit
    async def test_student_cannot_post_task(self, client: AsyncClient, auth) -> None:
        resp = await client.post(
            "/tasks", json={"title": "Mine", "gold": 10}, headers=auth(STUDENT)
        )
        assert resp.status_code == 403
        assert resp.json()["error"] == "FORBIDDEN"

    @pytest.mark.unit
    async def test_admin_endpoints_refuse_employers(self, client: AsyncClient, auth) -> None:
        await register(client, auth)
        for method, path in [
            ("GET", "/users"),
            ("GET", "/payments"),
            ("GET", "/disputes"),
            ("POST", "/anomalies/sweep"),
            ("POST", "/admin/audit"),
            ("POST", "/admin/cleanup"),
            ("GET", "/admin/config"),
        ]:
            resp = await client.request(method, path, headers=auth(EMPLOYER))
            assert resp.status_code == 403, path

    @pytest.mark.unit
    async def test_claimed_admin_role_is_ignored(
        self, client: AsyncClient, auth, issuer_keypair
    ) -> None:
        await register(client, auth, STUDENT)
        token = make_assertion(issuer_keypair[0], STUDENT.user_id, "admin")
        resp = await client.get("/users", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 403

    @pytest.mark.unit
    async def test_admin_can_delete_task(self, client: AsyncClient, auth) -> None:
        await register(client, auth)
        task = await post_task(client, auth)

        denied = await client.delete(f"/tasks/{task['task_id']}", headers=auth(EMPLOYER))
        assert denied.status_code == 403

        resp = await client.delete(f"/tasks/{task['task_id']}", headers=auth(ADMIN))
        assert resp.status_code == 200
        assert resp.json()["deleted"] is True
        gone = await client.get(f"/tasks/{task['task_id']}", headers=auth(ADMIN))
        assert gone.status_code == 404
        assert gone.json()["error"] == "TASK_NOT_FOUND"
