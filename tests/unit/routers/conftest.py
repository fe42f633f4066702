"""Router test fixtures: a real app on a temp database with a test identity issuer."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from task_escrow_service.app import create_app
from task_escrow_service.config import clear_settings_cache
from task_escrow_service.core.lifespan import lifespan
from task_escrow_service.core.state import reset_app_state
from tests.helpers import (
    ADMIN,
    EMPLOYER,
    OTHER_STUDENT,
    REJECTION_REASON,
    STUDENT,
    config_yaml,
    generate_keypair,
    make_assertion,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from pathlib import Path

    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

    from task_escrow_service.services.identity import Actor

MAX_BODY_SIZE = 4096


# ---------------------------------------------------------------------------
# Identity fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def issuer_keypair() -> tuple[Ed25519PrivateKey, str]:
    """The identity provider's signing keypair."""
    return generate_keypair()


@pytest.fixture
def auth(issuer_keypair: tuple[Ed25519PrivateKey, str]) -> Callable[[Actor], dict[str, str]]:
    """Build Authorization headers carrying a signed assertion for an actor."""
    private_key = issuer_keypair[0]

    def headers(actor: Actor) -> dict[str, str]:
        token = make_assertion(private_key, actor.user_id, actor.role)
        return {"Authorization": f"Bearer {token}"}

    return headers


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(
    tmp_path: Path, issuer_keypair: tuple[Ed25519PrivateKey, str]
) -> AsyncIterator[Any]:
    """Create a test app with a temp database and a known issuer key."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        config_yaml(
            str(tmp_path / "test.db"),
            issuer_keypair[1],
            max_body_size=MAX_BODY_SIZE,
            log_directory=str(tmp_path / "logs"),
        )
    )

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Task lifecycle helper functions
# ---------------------------------------------------------------------------
async def register(
    client: AsyncClient,
    auth: Callable[[Actor], dict[str, str]],
    *actors: Actor,
) -> None:
    """First sight of each actor creates their user row."""
    for actor in actors or (EMPLOYER, STUDENT, OTHER_STUDENT, ADMIN):
        resp = await client.get("/users/me", headers=auth(actor))
        assert resp.status_code == 200


async def post_task(
    client: AsyncClient,
    auth: Callable[[Actor], dict[str, str]],
    *,
    gold: int = 500,
    employer: Actor = EMPLOYER,
    **fields: Any,
) -> dict[str, Any]:
    """Post a task via POST /tasks and return its body."""
    body = {"title": "Design a flyer", "gold": gold, **fields}
    resp = await client.post("/tasks", json=body, headers=auth(employer))
    assert resp.status_code == 201, resp.text
    return resp.json()


async def start_task(
    client: AsyncClient,
    auth: Callable[[Actor], dict[str, str]],
    *,
    gold: int = 500,
    student: Actor = STUDENT,
    **fields: Any,
) -> dict[str, Any]:
    """Post a task, apply as the student and accept. Returns the started task."""
    task = await post_task(client, auth, gold=gold, **fields)
    resp = await client.post(
        f"/tasks/{task['task_id']}/applications",
        json={"message": "I can do this"},
        headers=auth(student),
    )
    assert resp.status_code == 201, resp.text
    application_id = resp.json()["application_id"]
    resp = await client.post(
        f"/applications/{application_id}/accept", headers=auth(EMPLOYER)
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


async def submit_work(
    client: AsyncClient,
    auth: Callable[[Actor], dict[str, str]],
    task_id: str,
    student: Actor = STUDENT,
) -> dict[str, Any]:
    resp = await client.post(
        f"/tasks/{task_id}/submission",
        json={"proof_url": "https://blob.example/proof.png"},
        headers=auth(student),
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


async def reject_work(
    client: AsyncClient,
    auth: Callable[[Actor], dict[str, str]],
    task_id: str,
) -> dict[str, Any]:
    resp = await client.post(
        f"/tasks/{task_id}/submission/reject",
        json={"reason": REJECTION_REASON},
        headers=auth(EMPLOYER),
    )
    assert resp.status_code == 200, resp.text
    return resp.json()
