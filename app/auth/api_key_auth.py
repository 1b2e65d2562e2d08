"""
API Key Authentication
======================

Every user-facing route resolves the caller from ``X-API-Key``.

Key format: ``kl_<key_id>_<secret>``
    - key_id: 8 chars [a-z0-9], unique, indexed for O(1) lookup
    - secret: random, NEVER stored; only HMAC-SHA256(secret) is kept

The HMAC key is KLYA_APIKEY_HMAC_SECRET. When unset, one is generated and
persisted to <data_directory>/.klya_hmac_secret so issued keys survive a
restart; a WARNING is logged either way.

Validated keys are cached (TTLCache, KLYA_AUTH_CACHE_TTL seconds).
Revoking a key evicts it from the cache immediately.

Auth can only be switched off with KLYA_AUTH_ENABLED=false AND debug=True
AND environment=development; any other combination keeps it on.
"""

import hashlib
import hmac
import logging
import secrets
import string
from pathlib import Path
from typing import Optional, Tuple

from cachetools import TTLCache
from fastapi import HTTPException, Request, status
from pydantic import BaseModel
from sqlmodel import select

from app.config import settings
from app.core.database import get_session_context
from app.core.structured_logging import user_id_var
from app.core.timeutils import utcnow
from app.models.user import User, UserAPIKey

logger = logging.getLogger(__name__)

KEY_PREFIX = "kl_"
_KEY_ID_ALPHABET = string.ascii_lowercase + string.digits
_DEV_USER = "dev_user_auth_disabled"


class AuthenticatedUser(BaseModel):
    user_id: str
    key_id: str
    email: Optional[str] = None


api_key_cache = TTLCache(maxsize=1000, ttl=settings.auth_cache_ttl)


def _is_auth_enabled() -> bool:
    if settings.auth_enabled:
        return True
    if settings.debug and settings.environment.lower() == "development":
        logger.warning("AUTH DISABLED (debug, development). Every request runs as %s.", _DEV_USER)
        return False
    logger.warning(
        "Ignoring KLYA_AUTH_ENABLED=false: requires debug=True and environment=development (got debug=%s, environment=%s)",
        settings.debug,
        settings.environment,
    )
    return True


# ---------------------------------------------------------------------------
# HMAC secret
# ---------------------------------------------------------------------------

def _load_or_create_hmac_secret() -> str:
    secret_file = Path(settings.data_directory) / ".klya_hmac_secret"
    if secret_file.exists():
        stored = secret_file.read_text().strip()
        if stored:
            logger.info("Loaded API key HMAC secret from %s", secret_file)
            return stored

    generated = secrets.token_hex(32)
    try:
        secret_file.parent.mkdir(parents=True, exist_ok=True)
        secret_file.write_text(generated)
        secret_file.chmod(0o600)
    except OSError as exc:
        logger.warning("Could not persist HMAC secret to %s: %s (keys will not survive a restart)", secret_file, exc)
    logger.warning("KLYA_APIKEY_HMAC_SECRET not set; generated one at %s. Set it explicitly in production.", secret_file)
    return generated


def hmac_hash_secret(secret: str) -> str:
    if not settings.apikey_hmac_secret:
        settings.apikey_hmac_secret = _load_or_create_hmac_secret()
    return hmac.new(settings.apikey_hmac_secret.encode(), secret.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Issue / revoke / validate
# ---------------------------------------------------------------------------

def _parse_key(api_key: str) -> Optional[Tuple[str, str]]:
    """``kl_<key_id>_<secret>`` → (key_id, secret), or None if malformed."""
    if not api_key.startswith(KEY_PREFIX):
        return None
    _, key_id, secret = (api_key.split("_", 2) + ["", ""])[:3]
    if not key_id or not secret:
        return None
    return key_id, secret


def create_api_key(user_id: str, label: Optional[str] = None) -> str:
    """Issue a key for *user_id*. The raw key is returned once and never stored."""
    key_id = "".join(secrets.choice(_KEY_ID_ALPHABET) for _ in range(8))
    secret = secrets.token_urlsafe(24)
    with get_session_context() as session:
        session.add(UserAPIKey(user_id=user_id, key_id=key_id, key_hash=hmac_hash_secret(secret), label=label))
        session.commit()
    logger.info("API key issued: user=%s key_id=%s", user_id, key_id)
    return f"{KEY_PREFIX}{key_id}_{secret}"


def revoke_api_key(key_id: str) -> bool:
    """Revoke by key_id. Returns False if no active key matched."""
    with get_session_context() as session:
        record = session.exec(
            select(UserAPIKey).where(UserAPIKey.key_id == key_id, UserAPIKey.revoked_at.is_(None))  # type: ignore[union-attr]
        ).first()
        if record is None:
            return False
        record.revoked_at = utcnow()
        session.add(record)
        session.commit()

    for cached_key, cached_user in list(api_key_cache.items()):
        if cached_user.key_id == key_id:
            api_key_cache.pop(cached_key, None)
    logger.info("API key revoked: key_id=%s", key_id)
    return True


def _validate_key(api_key: str) -> Optional[AuthenticatedUser]:
    parsed = _parse_key(api_key)
    if not parsed:
        return None
    key_id, secret = parsed

    with get_session_context() as session:
        record = session.exec(
            select(UserAPIKey).where(UserAPIKey.key_id == key_id, UserAPIKey.revoked_at.is_(None))  # type: ignore[union-attr]
        ).first()
        if record is None or not hmac.compare_digest(record.key_hash, hmac_hash_secret(secret)):
            return None

        user = session.get(User, record.user_id)
        if user is None or not user.is_active:
            return None

        record.last_used_at = utcnow()
        session.add(record)
        session.commit()
        return AuthenticatedUser(user_id=user.id, key_id=record.key_id, email=user.email)


def _bind(request: Request, user: AuthenticatedUser) -> AuthenticatedUser:
    request.state.user = user
    user_id_var.set(user.user_id)
    return user


async def get_current_user(request: Request) -> AuthenticatedUser:
    """FastAPI dependency: the caller identified by ``X-API-Key``, or 401."""
    if not _is_auth_enabled():
        return _bind(request, AuthenticatedUser(user_id=_DEV_USER, key_id="dev"))

    api_key = request.headers.get("X-API-Key")
    if not api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-API-Key header is missing.")

    cached = api_key_cache.get(api_key)
    if cached:
        return _bind(request, cached)

    user = _validate_key(api_key)
    if user is None:
        logger.warning("Invalid API key received: %s...", api_key[:7])
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API Key.")

    api_key_cache[api_key] = user
    return _bind(request, user)
