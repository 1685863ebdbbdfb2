"""
Tests for the Tavus avatar features: key connection, stock catalogue
fallback, mirrored replicas / personas / videos and disconnect.
"""

from __future__ import annotations

import json

import httpx
import pytest
from sqlalchemy import func, select

from app.config import get_settings
from app.errors import CredentialMissing, ValidationError
from app.models.tavus import TavusConnection, TavusPersona, TavusReplica, TavusVideo
from app.schemas.tavus import PersonaCreateRequest, ReplicaCreateRequest, VideoCreateRequest
from app.services.avatar_service import STOCK_FALLBACK_WARNING, AvatarService
from app.services.tavus_api import STOCK_REPLICAS


class TavusStub:
    """Records requests; answers from ``routes`` keyed by ``(method, path)``."""

    def __init__(self, routes: dict | None = None):
        self.routes = routes or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/v2")
        response = self.routes.get((request.method, path))
        if response is not None:
            return response
        if (request.method, path) == ("GET", "/replicas"):
            return httpx.Response(200, json={"data": []})
        return httpx.Response(404, json={"message": "not found"})


def _service(db_session, stub: TavusStub) -> AvatarService:
    return AvatarService(db_session, transport=httpx.MockTransport(stub))


async def _connect(db_session, user, stub: TavusStub | None = None) -> AvatarService:
    service = _service(db_session, stub or TavusStub())
    await service.connect(user.id, "tvs-key")
    return service


async def _count(db_session, model) -> int:
    return (await db_session.execute(select(func.count()).select_from(model))).scalar_one()


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_connect_validates_and_encrypts_key(db_session, test_user):
    stub = TavusStub()
    result = await _service(db_session, stub).connect(test_user.id, " tvs-key ")

    assert result.connected is True
    assert stub.requests[0].headers["x-api-key"] == "tvs-key"
    assert stub.requests[0].url.params["replica_type"] == "user"
    conn = (await db_session.execute(select(TavusConnection))).scalar_one()
    assert conn.api_key_encrypted != "tvs-key"
    assert conn.connection_status == "connected"


@pytest.mark.parametrize(
    "status, message",
    [
        (401, "Invalid API key"),
        (403, "sufficient permissions"),
        (429, "Rate limit exceeded"),
        (500, "Failed to validate API key"),
    ],
)
@pytest.mark.asyncio
async def test_connect_error_mapping(db_session, test_user, status, message):
    stub = TavusStub({("GET", "/replicas"): httpx.Response(status, json={"message": "nope"})})
    with pytest.raises(ValidationError) as exc:
        await _service(db_session, stub).connect(test_user.id, "bad-key")

    assert message in exc.value.message
    assert exc.value.field == "api_key"
    assert await _count(db_session, TavusConnection) == 0


@pytest.mark.asyncio
async def test_connect_requires_key(db_session, test_user):
    stub = TavusStub()
    with pytest.raises(ValidationError):
        await _service(db_session, stub).connect(test_user.id, "  ")
    assert stub.requests == []


@pytest.mark.asyncio
async def test_status(db_session, test_user):
    service = _service(db_session, TavusStub())
    assert (await service.status(test_user.id)).connected is False
    await service.connect(test_user.id, "tvs-key")
    assert (await service.status(test_user.id)).connected is True


@pytest.mark.asyncio
async def test_calls_without_connection(db_session, test_user):
    with pytest.raises(CredentialMissing):
        await _service(db_session, TavusStub()).create_replica(
            test_user.id, ReplicaCreateRequest(train_video_url="https://v/x.mp4", replica_name="Me"),
        )


@pytest.mark.asyncio
async def test_disconnect_removes_user_data(db_session, test_user):
    stub = TavusStub({
        ("POST", "/replicas"): httpx.Response(200, json={"replica_id": "r-1", "status": "training"}),
        ("POST", "/videos"): httpx.Response(200, json={"video_id": "v-1", "status": "queued"}),
    })
    service = await _connect(db_session, test_user, stub)
    await service.create_replica(test_user.id, ReplicaCreateRequest(train_video_url="https://v/x.mp4", replica_name="Me"))
    await service.create_video(test_user.id, VideoCreateRequest(replica_id="r-1", script="Hi", video_name="Intro"))

    result = await service.disconnect(test_user.id)

    assert result.success is True
    assert result.errors == []
    for model in (TavusConnection, TavusReplica, TavusVideo):
        assert await _count(db_session, model) == 0


# ---------------------------------------------------------------------------
# Stock catalogue
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stock_replicas_without_global_key_falls_back(db_session, monkeypatch):
    monkeypatch.setattr(get_settings(), "tavus_api_key", "")
    stub = TavusStub()
    result = await _service(db_session, stub).stock_replicas()

    assert result.is_fallback is True
    assert result.warning == STOCK_FALLBACK_WARNING
    assert [r.replica_id for r in result.replicas] == [r["replica_id"] for r in STOCK_REPLICAS]
    assert all(r.is_stock for r in result.replicas)
    assert stub.requests == []


@pytest.mark.asyncio
async def test_stock_replicas_provider_error_falls_back(db_session, monkeypatch):
    monkeypatch.setattr(get_settings(), "tavus_api_key", "global-key")
    stub = TavusStub({("GET", "/replicas"): httpx.Response(500, json={"message": "down"})})
    result = await _service(db_session, stub).stock_replicas()

    assert result.is_fallback is True
    assert stub.requests[0].url.params["replica_type"] == "system"


@pytest.mark.asyncio
async def test_stock_replicas_from_provider(db_session, monkeypatch):
    monkeypatch.setattr(get_settings(), "tavus_api_key", "global-key")
    stub = TavusStub({("GET", "/replicas"): httpx.Response(200, json={"data": [
        {"replica_id": "r-sys", "replica_name": "System One", "status": "completed"},
    ]})})
    result = await _service(db_session, stub).stock_replicas()

    assert result.is_fallback is False
    assert result.warning is None
    assert result.replicas[0].replica_id == "r-sys"
    assert result.replicas[0].is_stock is True


def test_stock_personas():
    personas = AvatarService.stock_personas()
    assert {p.name for p in personas} == {"Sales Agent", "Customer Support Specialist", "Personal Agent"}


# ---------------------------------------------------------------------------
# Replicas, personas, videos
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_replica_mirrors(db_session, test_user):
    stub = TavusStub({("POST", "/replicas"): httpx.Response(200, json={"replica_id": "r-1", "status": "training"})})
    service = await _connect(db_session, test_user, stub)

    replica = await service.create_replica(
        test_user.id, ReplicaCreateRequest(train_video_url="https://v/x.mp4", replica_name="Me"),
    )

    assert replica.replica_id == "r-1"
    assert replica.status == "training"
    body = json.loads(stub.requests[-1].content)
    assert body == {"train_video_url": "https://v/x.mp4", "replica_name": "Me"}
    listed = await service.list_replicas(test_user.id)
    assert [r.replica_id for r in listed] == ["r-1"]


@pytest.mark.asyncio
async def test_list_replicas_falls_through_to_provider(db_session, test_user):
    stub = TavusStub()
    service = await _connect(db_session, test_user, stub)
    stub.routes[("GET", "/replicas")] = httpx.Response(200, json=[{"replica_id": "r-up", "replica_name": "Upstream"}])

    listed = await service.list_replicas(test_user.id)
    assert [r.replica_id for r in listed] == ["r-up"]


@pytest.mark.asyncio
async def test_get_replica_refreshes_local_status(db_session, test_user):
    stub = TavusStub({("POST", "/replicas"): httpx.Response(200, json={"replica_id": "r-1", "status": "training"})})
    service = await _connect(db_session, test_user, stub)
    await service.create_replica(test_user.id, ReplicaCreateRequest(train_video_url="https://v/x.mp4", replica_name="Me"))
    stub.routes[("GET", "/replicas/r-1")] = httpx.Response(200, json={"replica_id": "r-1", "status": "completed"})

    replica = await service.get_replica(test_user.id, "r-1")

    assert replica.status == "completed"
    local = (await db_session.execute(select(TavusReplica))).scalar_one()
    assert local.status == "completed"


@pytest.mark.asyncio
async def test_delete_replica(db_session, test_user):
    stub = TavusStub({
        ("POST", "/replicas"): httpx.Response(200, json={"replica_id": "r-1"}),
        ("DELETE", "/replicas/r-1"): httpx.Response(200, json={}),
    })
    service = await _connect(db_session, test_user, stub)
    await service.create_replica(test_user.id, ReplicaCreateRequest(train_video_url="https://v/x.mp4", replica_name="Me"))

    await service.delete_replica(test_user.id, "r-1")
    assert await _count(db_session, TavusReplica) == 0


@pytest.mark.asyncio
async def test_create_persona_requires_fields(db_session, test_user):
    service = await _connect(db_session, test_user)
    with pytest.raises(ValidationError) as exc:
        await service.create_persona(test_user.id, PersonaCreateRequest(persona_name="Guide"))
    assert exc.value.field == "system_prompt"


@pytest.mark.asyncio
async def test_create_persona(db_session, test_user):
    stub = TavusStub({("POST", "/personas"): httpx.Response(200, json={"persona_id": "p-1"})})
    service = await _connect(db_session, test_user, stub)

    persona = await service.create_persona(
        test_user.id, PersonaCreateRequest(persona_name="Guide", system_prompt="Be kind", default_replica_id="r-1"),
    )

    assert persona.persona_id == "p-1"
    body = json.loads(stub.requests[-1].content)
    assert body == {"persona_name": "Guide", "system_prompt": "Be kind", "context": "", "default_replica_id": "r-1"}
    assert [p.persona_id for p in await service.list_personas(test_user.id)] == ["p-1"]
    assert await _count(db_session, TavusPersona) == 1


@pytest.mark.parametrize(
    "request_fields, field",
    [
        ({"replica_id": "r-1", "video_name": "Intro"}, "script"),
        ({"replica_id": "r-1", "script": "Hi"}, "video_name"),
        ({"script": "Hi", "video_name": "Intro"}, "replica_id"),
    ],
)
@pytest.mark.asyncio
async def test_create_video_required_fields(db_session, test_user, request_fields, field):
    stub = TavusStub()
    service = await _connect(db_session, test_user, stub)
    with pytest.raises(ValidationError) as exc:
        await service.create_video(test_user.id, VideoCreateRequest(**request_fields))
    assert exc.value.field == field
    assert [r.method for r in stub.requests] == ["GET"]


@pytest.mark.asyncio
async def test_create_and_refresh_video(db_session, test_user):
    stub = TavusStub({("POST", "/videos"): httpx.Response(200, json={"video_id": "v-1", "status": "queued"})})
    service = await _connect(db_session, test_user, stub)

    video = await service.create_video(
        test_user.id, VideoCreateRequest(replica_id="r-1", script="Hi", video_name="Intro"),
    )
    assert video.status == "queued"
    assert video.mirrored is True

    stub.routes[("GET", "/videos/v-1")] = httpx.Response(200, json={
        "video_id": "v-1", "status": "ready", "download_url": "https://cdn/v-1.mp4",
    })
    refreshed = await service.get_video(test_user.id, "v-1")

    assert refreshed.status == "ready"
    assert refreshed.download_url == "https://cdn/v-1.mp4"
    assert refreshed.mirrored is True
    assert [v.status for v in await service.list_videos(test_user.id)] == ["ready"]


@pytest.mark.asyncio
async def test_get_video_without_local_row(db_session, test_user):
    stub = TavusStub({("GET", "/videos/v-9"): httpx.Response(200, json={
        "video_id": "v-9", "video_name": "Elsewhere", "status": "generating",
    })})
    service = await _connect(db_session, test_user, stub)

    video = await service.get_video(test_user.id, "v-9")

    assert video.mirrored is False
    assert video.id is None
    assert video.video_name == "Elsewhere"
    assert video.status == "generating"
