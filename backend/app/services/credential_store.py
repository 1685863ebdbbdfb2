"""Per-user Meta credential persistence with a short-lived read-through cache.

The ``meta_credentials`` row is the single source of truth for "is this user
connected". Reads always re-check ``expires_at``: an expired credential is
treated exactly like a missing one.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.errors import CredentialExpired, CredentialMissing
from app.models.fb_ads import MetaCredential
from app.utils.crypto import decrypt_secret, encrypt_secret

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedCredential:
    user_id: uuid.UUID
    access_token: str
    expires_at: datetime
    has_ad_permissions: bool

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= datetime.now(timezone.utc)


class CredentialCache:
    """Process-local TTL cache keyed by user id."""

    def __init__(self, ttl_seconds: float):
        self.ttl = ttl_seconds
        self._entries: dict[uuid.UUID, tuple[float, ResolvedCredential]] = {}
        self._lock = threading.Lock()

    def get(self, user_id: uuid.UUID) -> ResolvedCredential | None:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            stored_at, cred = entry
            if time.monotonic() - stored_at > self.ttl:
                del self._entries[user_id]
                return None
            return cred

    def set(self, cred: ResolvedCredential) -> None:
        if self.ttl <= 0:
            return
        with self._lock:
            self._entries[cred.user_id] = (time.monotonic(), cred)

    def invalidate(self, user_id: uuid.UUID) -> None:
        with self._lock:
            self._entries.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


credential_cache = CredentialCache(get_settings().credential_cache_ttl_seconds)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class CredentialStore:
    def __init__(self, db: AsyncSession, cache: CredentialCache | None = None):
        self.db = db
        self.cache = cache if cache is not None else credential_cache

    async def _load(self, user_id: uuid.UUID, fresh: bool = False) -> ResolvedCredential | None:
        if not fresh:
            cached = self.cache.get(user_id)
            if cached is not None:
                return cached

        result = await self.db.execute(
            select(MetaCredential)
            .where(MetaCredential.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            self.cache.invalidate(user_id)
            return None

        token = decrypt_secret(row.access_token_encrypted)
        if token is None:
            logger.warning("Stored Meta token for user %s could not be decrypted", user_id)
            return None

        cred = ResolvedCredential(
            user_id=user_id,
            access_token=token,
            expires_at=as_utc(row.expires_at),
            has_ad_permissions=bool(row.has_ad_permissions),
        )
        self.cache.set(cred)
        return cred

    async def get(self, user_id: uuid.UUID) -> ResolvedCredential | None:
        """Return the usable credential, or ``None`` when absent or expired."""
        cred = await self._load(user_id)
        if cred is None or cred.is_expired:
            return None
        return cred

    async def require(self, user_id: uuid.UUID, fresh: bool = False) -> ResolvedCredential:
        """Like ``get`` but raises the reconnect-required error instead of
        returning ``None``. ``fresh`` skips the cache and re-reads the row,
        so a disconnect made by another process is seen."""
        cred = await self._load(user_id, fresh=fresh)
        if cred is None:
            raise CredentialMissing("Facebook account is not connected")
        if cred.is_expired:
            raise CredentialExpired("Facebook access token has expired. Please reconnect.")
        return cred

    async def put(
        self,
        user_id: uuid.UUID,
        access_token: str,
        expires_at: datetime,
        has_ad_permissions: bool,
        *,
        fb_user_id: str | None = None,
        fb_user_name: str | None = None,
        scopes: list[str] | None = None,
    ) -> MetaCredential:
        """Upsert the user's credential (last write wins)."""
        result = await self.db.execute(
            select(MetaCredential).where(MetaCredential.user_id == user_id)
        )
        row = result.scalar_one_or_none()
        encrypted = encrypt_secret(access_token)
        if row:
            row.access_token_encrypted = encrypted
            row.expires_at = expires_at
            row.has_ad_permissions = has_ad_permissions
            row.fb_user_id = fb_user_id or row.fb_user_id
            row.fb_user_name = fb_user_name or row.fb_user_name
            if scopes is not None:
                row.scopes = scopes
        else:
            row = MetaCredential(
                user_id=user_id,
                access_token_encrypted=encrypted,
                expires_at=expires_at,
                has_ad_permissions=has_ad_permissions,
                fb_user_id=fb_user_id,
                fb_user_name=fb_user_name,
                scopes=scopes or [],
            )
            self.db.add(row)
        await self.db.flush()
        self.cache.invalidate(user_id)
        return row

    async def delete(self, user_id: uuid.UUID) -> bool:
        """Delete the credential; returns whether a row existed."""
        result = await self.db.execute(
            delete(MetaCredential).where(MetaCredential.user_id == user_id)
        )
        self.cache.invalidate(user_id)
        return bool(result.rowcount)

    async def has_row(self, user_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            select(MetaCredential.id).where(MetaCredential.user_id == user_id)
        )
        return result.scalar_one_or_none() is not None
