from __future__ import annotations

import json
import logging
import threading
import uuid
from typing import Any, Optional

from pydantic import ValidationError
from redis.exceptions import RedisError

from decision_memory.models import PreferenceProfile


logger = logging.getLogger("decision_memory.profile_cache")

# Compare-and-delete in one round trip; a lock taken over after expiry is left alone
_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class ProfileCache:
    """Holds the current preference profile per scope in Redis with in-memory fallback.

    The profile is one JSON string written with a single ``SET``, so readers
    see either the previous version or the new one, never a mix. No TTL: the
    last good profile stays until a newer build replaces it.
    """

    def __init__(self, redis_client: Optional[Any] = None, *, namespace: str = "decision_memory", scope: str = "default"):
        self._redis = redis_client
        self.scope = scope
        self._key = f"{namespace}:profile:{scope}"
        self._lock_key = f"{namespace}:profile_build_lock:{scope}"
        self._memory: dict[str, str] = {}
        self._memory_lock = threading.Lock()

    def get_raw(self) -> Optional[str]:
        if self._redis is not None:
            return self._redis.get(self._key)
        return self._memory.get(self._key)

    def get_profile(self) -> Optional[PreferenceProfile]:
        """Current profile, or None when no build has ever completed."""
        try:
            raw = self.get_raw()
        except RedisError as e:
            logger.warning("[profile_cache.read.failed] scope=%s error=%s", self.scope, e)
            return None
        if not raw:
            return None
        try:
            return PreferenceProfile.model_validate_json(raw)
        except ValidationError as e:
            logger.error("[profile_cache.corrupt] scope=%s error=%s", self.scope, e)
            return None

    def current_version(self) -> int:
        """Version of the cached profile, 0 when none. Redis errors propagate."""
        raw = self.get_raw()
        if not raw:
            return 0
        try:
            return PreferenceProfile.model_validate_json(raw).profile_version
        except ValidationError:
            return 0

    def replace_profile(self, profile: PreferenceProfile) -> None:
        payload = profile.model_dump_json()
        if self._redis is not None:
            self._redis.set(self._key, payload)
        else:
            self._memory[self._key] = payload
        logger.info(
            "[profile_cache.replaced] scope=%s version=%s",
            self.scope,
            profile.profile_version,
        )

    def acquire_build_lock(self, ttl_seconds: int) -> Optional[str]:
        """Take the cross-process build lock; returns a token, or None if another build holds it."""
        token = uuid.uuid4().hex
        if self._redis is not None:
            acquired = self._redis.set(self._lock_key, token, nx=True, ex=max(1, ttl_seconds))
            return token if acquired else None
        with self._memory_lock:
            if self._lock_key in self._memory:
                return None
            self._memory[self._lock_key] = token
            return token

    def release_build_lock(self, token: str) -> None:
        if self._redis is not None:
            self._redis.eval(_RELEASE_LOCK_SCRIPT, 1, self._lock_key, token)
            return
        with self._memory_lock:
            if self._memory.get(self._lock_key) == token:
                del self._memory[self._lock_key]

    def describe(self) -> dict:
        profile = self.get_profile()
        return {
            "scope": self.scope,
            "profile_version": profile.profile_version if profile else None,
            "built_at": profile.built_at.isoformat() if profile else None,
        }
