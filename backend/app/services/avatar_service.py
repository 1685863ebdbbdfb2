"""Tavus avatar features: per-user API key connection, replicas, personas and
rendered videos, each mirrored locally after the provider accepts it."""

import logging
import uuid
from datetime import datetime, timezone

import httpx
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.errors import (
    AppError,
    AuthExpired,
    CredentialExpired,
    CredentialMissing,
    PermissionDenied,
    RateLimited,
    StorageError,
    ValidationError,
)
from app.models.tavus import TavusConnection, TavusPersona, TavusReplica, TavusVideo
from app.schemas.tavus import (
    PersonaCreateRequest,
    PersonaResponse,
    ReplicaCreateRequest,
    ReplicaResponse,
    StockPersona,
    StockReplicasResponse,
    TavusConnectionResponse,
    TavusDisconnectResponse,
    VideoCreateRequest,
    VideoResponse,
)
from app.services.tavus_api import STOCK_PERSONAS, STOCK_REPLICAS, TavusGateway
from app.utils.crypto import decrypt_secret, encrypt_secret
from app.utils.mirror import mirror_best_effort
from app.utils.outcome import Outcome

logger = logging.getLogger(__name__)

STOCK_FALLBACK_WARNING = "Tavus stock avatars are unavailable right now; showing the built-in catalogue."

# Children before the connection row
TAVUS_DISCONNECT_STEPS = (
    ("videos", TavusVideo),
    ("personas", TavusPersona),
    ("replicas", TavusReplica),
    ("connection", TavusConnection),
)


def _replica_fields(data: dict) -> dict:
    return {
        "replica_id": data["replica_id"],
        "replica_name": data.get("replica_name") or data["replica_id"],
        "status": data.get("status") or "training",
        "thumbnail_url": data.get("thumbnail_video_url") or data.get("avatar_url"),
    }


def _require_text(value: str | None, field: str, label: str) -> str:
    if not value or not value.strip():
        raise ValidationError(f"{label} is required", field=field)
    return value.strip()


class AvatarService:
    def __init__(self, db: AsyncSession, *, transport: httpx.AsyncBaseTransport | None = None):
        self.db = db
        self._transport = transport

    # -- Connection --------------------------------------------------------

    async def _connection(self, user_id: uuid.UUID) -> TavusConnection | None:
        result = await self.db.execute(
            select(TavusConnection).where(TavusConnection.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def _gateway_for(self, user_id: uuid.UUID) -> TavusGateway:
        conn = await self._connection(user_id)
        if conn is None or not conn.is_connected:
            raise CredentialMissing("No Tavus connection found. Please connect your Tavus account first.")
        api_key = decrypt_secret(conn.api_key_encrypted)
        if api_key is None:
            raise CredentialExpired("Stored Tavus API key could not be read. Please reconnect.")
        return TavusGateway(api_key, transport=self._transport)

    async def connect(self, user_id: uuid.UUID, api_key: str) -> TavusConnectionResponse:
        """Validate the key with a lightweight replica list, then store it."""
        api_key = _require_text(api_key, "api_key", "API key")
        try:
            await TavusGateway(api_key, transport=self._transport).list_replicas("user")
        except AuthExpired as e:
            raise ValidationError(
                "Invalid API key. Please check your Tavus API key and try again.", field="api_key"
            ) from e
        except PermissionDenied as e:
            raise ValidationError(
                "API key does not have sufficient permissions. Please check your Tavus account settings.",
                field="api_key",
            ) from e
        except RateLimited as e:
            raise ValidationError("Rate limit exceeded. Please try again later.", field="api_key") from e
        except AppError as e:
            logger.warning("Tavus key validation failed for user %s: %s", user_id, e.message)
            raise ValidationError("Failed to validate API key. Please try again.", field="api_key") from e

        now = datetime.now(timezone.utc)
        conn = await self._connection(user_id)
        if conn is None:
            conn = TavusConnection(user_id=user_id, api_key_encrypted="")
            self.db.add(conn)
        conn.api_key_encrypted = encrypt_secret(api_key)
        conn.is_connected = True
        conn.connection_status = "connected"
        conn.last_connected_at = now
        await self.db.commit()
        logger.info("User %s connected Tavus", user_id)
        return TavusConnectionResponse(connected=True, connection_status="connected", last_connected_at=now)

    async def status(self, user_id: uuid.UUID) -> TavusConnectionResponse:
        conn = await self._connection(user_id)
        if conn is None:
            return TavusConnectionResponse(connected=False)
        return TavusConnectionResponse(
            connected=conn.is_connected and conn.connection_status == "connected",
            connection_status=conn.connection_status,
            last_connected_at=conn.last_connected_at,
        )

    async def disconnect(self, user_id: uuid.UUID) -> TavusDisconnectResponse:
        """Remove videos, personas, replicas, then the connection. Only the
        connection delete decides success."""
        outcome = Outcome()
        for step, model in TAVUS_DISCONNECT_STEPS:
            try:
                async with self.db.begin_nested():
                    result = await self.db.execute(delete(model).where(model.user_id == user_id))
                outcome.succeed(step, result.rowcount or 0)
            except SQLAlchemyError as e:
                outcome.fail(step, StorageError(str(e)))
                logger.warning("Tavus disconnect step %s failed for user %s: %s", step, user_id, e)
        await self.db.commit()

        if not outcome.succeeded("connection"):
            logger.error("Tavus disconnect for user %s did not remove the connection", user_id)
            return TavusDisconnectResponse(
                success=False,
                message="Failed to delete Tavus connection",
                errors=[f.to_dict() for f in outcome.failures],
            )
        logger.info("Tavus data cleanup completed for user %s: %s", user_id, outcome.counts)
        return TavusDisconnectResponse(
            success=True,
            message="Tavus account disconnected successfully",
            errors=[f.to_dict() for f in outcome.failures],
        )

    # -- Replicas ----------------------------------------------------------

    async def create_replica(self, user_id: uuid.UUID, req: ReplicaCreateRequest) -> ReplicaResponse:
        train_video_url = _require_text(req.train_video_url, "train_video_url", "Training video URL")
        replica_name = _require_text(req.replica_name, "replica_name", "Replica name")
        gateway = await self._gateway_for(user_id)

        data = await gateway.create_replica(train_video_url, replica_name, req.callback_url)
        fields = _replica_fields({"replica_name": replica_name, **data})
        logger.info("Created Tavus replica %s for user %s", fields["replica_id"], user_id)

        replica = TavusReplica(user_id=user_id, train_video_url=train_video_url, raw_data=data, **fields)
        await mirror_best_effort(self.db, f"replica {fields['replica_id']}", replica)
        return ReplicaResponse(train_video_url=train_video_url, **fields)

    async def list_replicas(self, user_id: uuid.UUID) -> list[ReplicaResponse]:
        """Local mirror first; the provider list when nothing is mirrored yet."""
        result = await self.db.execute(
            select(TavusReplica)
            .where(TavusReplica.user_id == user_id)
            .order_by(TavusReplica.created_at.desc())
        )
        replicas = result.scalars().all()
        if replicas:
            return [ReplicaResponse.model_validate(r) for r in replicas]

        gateway = await self._gateway_for(user_id)
        return [ReplicaResponse(**_replica_fields(r)) for r in await gateway.list_replicas("user") if r.get("replica_id")]

    async def get_replica(self, user_id: uuid.UUID, replica_id: str) -> ReplicaResponse:
        gateway = await self._gateway_for(user_id)
        fields = _replica_fields({"replica_id": replica_id, **await gateway.get_replica(replica_id)})

        result = await self.db.execute(
            select(TavusReplica).where(TavusReplica.user_id == user_id, TavusReplica.replica_id == replica_id)
        )
        local = result.scalar_one_or_none()
        if local is not None and local.status != fields["status"]:
            local.status = fields["status"]
            await mirror_best_effort(self.db, f"replica {replica_id}", local)
        return ReplicaResponse(**fields)

    async def delete_replica(self, user_id: uuid.UUID, replica_id: str) -> None:
        gateway = await self._gateway_for(user_id)
        await gateway.delete_replica(replica_id)
        logger.info("Deleted Tavus replica %s for user %s", replica_id, user_id)
        await mirror_best_effort(
            self.db,
            f"replica {replica_id} removal",
            delete_stmt=delete(TavusReplica).where(
                TavusReplica.user_id == user_id, TavusReplica.replica_id == replica_id
            ),
        )

    async def stock_replicas(self) -> StockReplicasResponse:
        """Provider system replicas via the global key. Falls back to the
        built-in catalogue, flagged ``is_fallback``, when that fails."""
        api_key = get_settings().tavus_api_key
        if api_key:
            try:
                rows = await TavusGateway(api_key, transport=self._transport).list_replicas("system")
            except AppError as e:
                logger.warning("Tavus stock replica lookup failed, using built-in catalogue: %s", e.message)
            else:
                if rows:
                    return StockReplicasResponse(
                        replicas=[
                            ReplicaResponse(**_replica_fields(r), is_stock=True) for r in rows if r.get("replica_id")
                        ],
                    )
                logger.warning("Tavus returned no stock replicas, using built-in catalogue")
        else:
            logger.warning("TAVUS_API_KEY not configured, using built-in stock replica catalogue")

        return StockReplicasResponse(
            replicas=[ReplicaResponse(**r, status="ready", is_stock=True) for r in STOCK_REPLICAS],
            is_fallback=True,
            warning=STOCK_FALLBACK_WARNING,
        )

    # -- Personas ----------------------------------------------------------

    async def create_persona(self, user_id: uuid.UUID, req: PersonaCreateRequest) -> PersonaResponse:
        persona_name = _require_text(req.persona_name, "persona_name", "Persona name")
        system_prompt = _require_text(req.system_prompt, "system_prompt", "System prompt")
        gateway = await self._gateway_for(user_id)

        data = await gateway.create_persona(persona_name, system_prompt, req.context, req.default_replica_id)
        persona = TavusPersona(
            id=uuid.uuid4(),
            user_id=user_id,
            persona_id=data["persona_id"],
            persona_name=data.get("persona_name") or persona_name,
            system_prompt=system_prompt,
            context=req.context,
            default_replica_id=req.default_replica_id,
            raw_data=data,
            created_at=datetime.now(timezone.utc),
        )
        response = PersonaResponse.model_validate(persona)
        logger.info("Created Tavus persona %s for user %s", persona.persona_id, user_id)
        await mirror_best_effort(self.db, f"persona {data['persona_id']}", persona)
        return response

    async def list_personas(self, user_id: uuid.UUID) -> list[PersonaResponse]:
        result = await self.db.execute(
            select(TavusPersona)
            .where(TavusPersona.user_id == user_id)
            .order_by(TavusPersona.created_at.desc())
        )
        return [PersonaResponse.model_validate(p) for p in result.scalars().all()]

    @staticmethod
    def stock_personas() -> list[StockPersona]:
        return [StockPersona(**p) for p in STOCK_PERSONAS]

    # -- Videos ------------------------------------------------------------

    async def create_video(self, user_id: uuid.UUID, req: VideoCreateRequest) -> VideoResponse:
        script = _require_text(req.script, "script", "Script")
        video_name = _require_text(req.video_name, "video_name", "Video name")
        replica_id = _require_text(req.replica_id, "replica_id", "Replica")
        gateway = await self._gateway_for(user_id)

        data = await gateway.create_video(replica_id, script, video_name, req.background_url)
        now = datetime.now(timezone.utc)
        video = TavusVideo(
            id=uuid.uuid4(),
            user_id=user_id,
            video_id=data["video_id"],
            video_name=data.get("video_name") or video_name,
            replica_id=replica_id,
            script=script,
            background_url=req.background_url,
            status=data.get("status") or "queued",
            download_url=data.get("download_url"),
            hosted_url=data.get("hosted_url"),
            raw_data=data,
            created_at=now,
            updated_at=now,
        )
        response = VideoResponse.model_validate(video)
        logger.info("Queued Tavus video %s for user %s", video.video_id, user_id)
        response.mirrored = await mirror_best_effort(self.db, f"video {data['video_id']}", video)
        return response

    async def list_videos(self, user_id: uuid.UUID) -> list[VideoResponse]:
        result = await self.db.execute(
            select(TavusVideo)
            .where(TavusVideo.user_id == user_id)
            .order_by(TavusVideo.created_at.desc())
        )
        return [VideoResponse.model_validate(v) for v in result.scalars().all()]

    async def get_video(self, user_id: uuid.UUID, video_id: str) -> VideoResponse:
        """Fetch the latest render status and copy it onto the local row."""
        gateway = await self._gateway_for(user_id)
        data = await gateway.get_video(video_id)

        result = await self.db.execute(
            select(TavusVideo).where(TavusVideo.user_id == user_id, TavusVideo.video_id == video_id)
        )
        video = result.scalar_one_or_none()
        if video is None:
            return VideoResponse(
                video_id=video_id,
                video_name=data.get("video_name") or video_id,
                replica_id=data.get("replica_id"),
                script=data.get("script") or "",
                background_url=data.get("background_url"),
                status=data.get("status") or "unknown",
                download_url=data.get("download_url"),
                hosted_url=data.get("hosted_url"),
                mirrored=False,
            )

        video.status = data.get("status") or video.status
        video.download_url = data.get("download_url") or video.download_url
        video.hosted_url = data.get("hosted_url") or video.hosted_url
        video.raw_data = data
        video.updated_at = datetime.now(timezone.utc)
        response = VideoResponse.model_validate(video)
        response.mirrored = await mirror_best_effort(self.db, f"video {video_id}", video)
        return response
