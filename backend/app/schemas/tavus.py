from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class TavusConnectRequest(BaseModel):
    api_key: str = ""


class TavusConnectionResponse(BaseModel):
    connected: bool
    connection_status: str | None = None
    last_connected_at: datetime | None = None


class TavusDisconnectResponse(BaseModel):
    success: bool
    message: str
    errors: list[dict] = []


class ReplicaCreateRequest(BaseModel):
    train_video_url: str | None = None
    replica_name: str | None = None
    callback_url: str | None = None


class ReplicaResponse(BaseModel):
    replica_id: str
    replica_name: str
    status: str = "ready"
    thumbnail_url: str | None = None
    train_video_url: str | None = None
    is_stock: bool = False
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class StockReplicasResponse(BaseModel):
    replicas: list[ReplicaResponse]
    is_fallback: bool = False
    warning: str | None = None


class PersonaCreateRequest(BaseModel):
    persona_name: str | None = None
    system_prompt: str | None = None
    context: str | None = None
    default_replica_id: str | None = None


class PersonaResponse(BaseModel):
    id: UUID
    persona_id: str
    persona_name: str
    system_prompt: str | None = None
    context: str | None = None
    default_replica_id: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class StockPersona(BaseModel):
    persona_id: str
    name: str
    description: str
    system_prompt: str
    context: str
    avatar_url: str | None = None


class VideoCreateRequest(BaseModel):
    replica_id: str | None = None
    script: str | None = None
    video_name: str | None = None
    background_url: str | None = None


class VideoResponse(BaseModel):
    id: UUID | None = None
    video_id: str
    video_name: str
    replica_id: str | None = None
    script: str
    background_url: str | None = None
    status: str
    download_url: str | None = None
    hosted_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    mirrored: bool = True

    model_config = {"from_attributes": True}
