from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from app.config import get_settings


def create_access_token(subject: str, expires_minutes: int | None = None) -> str:
    """Sign an access token for ``subject`` (the user id).

    Production tokens come from the external auth provider; this is used by
    scripts and tests that need a token signed with the same shared secret.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes or settings.access_token_expire_minutes)
    payload = {"sub": str(subject), "type": "access", "iat": int(now.timestamp()), "exp": int(expire.timestamp())}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict | None:
    """Return the verified payload, or ``None`` for a bad or expired token."""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def create_state_token(user_id: str, expires_minutes: int = 15) -> str:
    """OAuth ``state`` value carrying the user id, signed so the callback can trust it."""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {"sub": str(user_id), "type": "oauth_state", "exp": int(expire.timestamp())}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_state_token(state: str) -> str | None:
    payload = decode_token(state) if state else None
    if not payload or payload.get("type") != "oauth_state":
        return None
    return payload.get("sub")
