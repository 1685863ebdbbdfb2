"""Tavus avatar routes: API key connection, replicas, personas and videos."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_current_user
from app.errors import StorageError
from app.models.user import User
from app.schemas.tavus import (
    PersonaCreateRequest,
    PersonaResponse,
    ReplicaCreateRequest,
    ReplicaResponse,
    StockPersona,
    StockReplicasResponse,
    TavusConnectionResponse,
    TavusConnectRequest,
    TavusDisconnectResponse,
    VideoCreateRequest,
    VideoResponse,
)
from app.services.avatar_service import AvatarService

router = APIRouter()


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

@router.get("/connection", response_model=TavusConnectionResponse)
async def get_connection(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await AvatarService(db).status(user.id)


@router.post("/connection", response_model=TavusConnectionResponse)
async def connect(
    body: TavusConnectRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Validate the API key against Tavus and store it encrypted."""
    return await AvatarService(db).connect(user.id, body.api_key)


@router.delete("/connection", response_model=TavusDisconnectResponse)
async def disconnect(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await AvatarService(db).disconnect(user.id)
    if not result.success:
        raise StorageError(result.message, details={"errors": result.errors})
    return result


# ---------------------------------------------------------------------------
# Replicas
# ---------------------------------------------------------------------------

@router.get("/replicas", response_model=list[ReplicaResponse])
async def list_replicas(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await AvatarService(db).list_replicas(user.id)


@router.post("/replicas", response_model=ReplicaResponse, status_code=201)
async def create_replica(
    body: ReplicaCreateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await AvatarService(db).create_replica(user.id, body)


# Declared before /replicas/{replica_id} so "stock" is not taken as an id
@router.get("/replicas/stock", response_model=StockReplicasResponse)
async def list_stock_replicas(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await AvatarService(db).stock_replicas()


@router.get("/replicas/{replica_id}", response_model=ReplicaResponse)
async def get_replica(
    replica_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await AvatarService(db).get_replica(user.id, replica_id)


@router.delete("/replicas/{replica_id}", status_code=204)
async def delete_replica(
    replica_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await AvatarService(db).delete_replica(user.id, replica_id)


# ---------------------------------------------------------------------------
# Personas
# ---------------------------------------------------------------------------

@router.get("/personas", response_model=list[PersonaResponse])
async def list_personas(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await AvatarService(db).list_personas(user.id)


@router.post("/personas", response_model=PersonaResponse, status_code=201)
async def create_persona(
    body: PersonaCreateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await AvatarService(db).create_persona(user.id, body)


@router.get("/stock-personas", response_model=list[StockPersona])
async def list_stock_personas(user: User = Depends(get_current_user)):
    return AvatarService.stock_personas()


# ---------------------------------------------------------------------------
# Videos
# ---------------------------------------------------------------------------

@router.get("/videos", response_model=list[VideoResponse])
async def list_videos(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await AvatarService(db).list_videos(user.id)


@router.post("/videos", response_model=VideoResponse, status_code=201)
async def create_video(
    body: VideoCreateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await AvatarService(db).create_video(user.id, body)


@router.get("/videos/{video_id}", response_model=VideoResponse)
async def get_video(
    video_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Video status, refreshed from Tavus."""
    return await AvatarService(db).get_video(user.id, video_id)
