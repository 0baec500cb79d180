from __future__ import annotations
import json
import logging
import math
import threading
import time
from typing import Any, Optional, Protocol

import redis

from panelhub.core.config import settings
from panelhub.core.logging import short_error

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    """Opaque per-panel session metadata, keyed by panel id."""

    def load_session_meta(self, panel_id: str) -> Optional[dict[str, Any]]: ...

    def save_session_meta(self, panel_id: str, meta: dict[str, Any]) -> None: ...


class MemorySessionStore:
    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def load_session_meta(self, panel_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            meta = self._data.get(str(panel_id))
            return dict(meta) if meta is not None else None

    def save_session_meta(self, panel_id: str, meta: dict[str, Any]) -> None:
        with self._lock:
            self._data[str(panel_id)] = dict(meta)


def _client() -> redis.Redis:
    return redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)


class RedisSessionStore:
    """Keeps panel tokens across process restarts.

    Keys expire together with the session they hold; failures are logged and
    reported as a cache miss so a dead Redis only costs a fresh login.
    """

    def __init__(self, client: redis.Redis | None = None, prefix: str | None = None):
        self._client = client or _client()
        self._prefix = prefix or settings.SESSION_META_PREFIX

    def _key(self, panel_id: str) -> str:
        return f"{self._prefix}:{panel_id}"

    def load_session_meta(self, panel_id: str) -> Optional[dict[str, Any]]:
        try:
            raw = self._client.get(self._key(panel_id))
        except redis.RedisError as e:
            logger.warning("session meta load failed panel_id=%s err=%s", panel_id, short_error(e))
            return None
        if not raw:
            return None
        try:
            meta = json.loads(raw)
        except ValueError:
            logger.warning("session meta corrupt panel_id=%s", panel_id)
            return None
        return meta if isinstance(meta, dict) else None

    def save_session_meta(self, panel_id: str, meta: dict[str, Any]) -> None:
        ttl: int | None = None
        expires_at = meta.get("expires_at")
        if expires_at is not None:
            ttl = max(1, math.ceil(float(expires_at) - time.time()))
        try:
            self._client.set(self._key(panel_id), json.dumps(meta), ex=ttl)
        except redis.RedisError as e:
            logger.warning("session meta save failed panel_id=%s err=%s", panel_id, short_error(e))
