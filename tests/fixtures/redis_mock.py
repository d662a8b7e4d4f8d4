"""Redis mock fixtures for testing."""

import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from redis.exceptions import ConnectionError as RedisConnectionError


class MockRedisClient:
    """In-memory stand-in for the subset of ``redis.Redis`` the service uses.

    Values are stored as ``str`` (the app connects with ``decode_responses=True``).
    Expiry honours ``ex``/``px`` against ``clock`` so tests can move time forward.
    Setting ``down = True`` makes every call raise a Redis connection error.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._strings: Dict[str, str] = {}
        self._expires: Dict[str, float] = {}
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("redis unavailable (mock)")

    def _expire_if_due(self, key: str) -> None:
        deadline = self._expires.get(key)
        if deadline is not None and deadline <= self._clock():
            self._strings.pop(key, None)
            self._expires.pop(key, None)

    # Strings ------------------------------------------------------------
    def ping(self) -> bool:
        self._check()
        return True

    def get(self, key: str) -> Optional[str]:
        """Mock get method."""
        self._check()
        self._expire_if_due(key)
        return self._strings.get(key)

    def set(
        self,
        key: str,
        value: Union[str, bytes, int, float],
        ex: Optional[int] = None,
        px: Optional[int] = None,
        nx: bool = False,
        xx: bool = False,
    ) -> Optional[bool]:
        """Mock set method."""
        self._check()
        self._expire_if_due(key)
        if nx and key in self._strings:
            return None
        if xx and key not in self._strings:
            return None
        self._strings[key] = value.decode() if isinstance(value, bytes) else str(value)
        self._expires.pop(key, None)
        if ex:
            self._expires[key] = self._clock() + ex
        elif px:
            self._expires[key] = self._clock() + px / 1000.0
        return True

    def delete(self, *keys: str) -> int:
        """Mock delete method."""
        self._check()
        count = 0
        for key in keys:
            for store in (self._strings, self._hashes, self._zsets):
                if key in store:
                    del store[key]
                    count += 1
            self._expires.pop(key, None)
        return count

    def eval(self, script: str, numkeys: int, *keys_and_args: Any) -> int:
        """Runs the lock compare-and-delete script; other scripts are not modelled."""
        self._check()
        if 'redis.call("get", KEYS[1]) == ARGV[1]' not in script:
            raise NotImplementedError("MockRedisClient.eval only supports compare-and-delete")
        keys, args = keys_and_args[:numkeys], keys_and_args[numkeys:]
        if self.get(keys[0]) == args[0]:
            return self.delete(keys[0])
        return 0

    # Hashes -------------------------------------------------------------
    def hset(self, key: str, field: str, value: Any) -> int:
        self._check()
        bucket = self._hashes.setdefault(key, {})
        created = field not in bucket
        bucket[field] = str(value)
        return 1 if created else 0

    def hsetnx(self, key: str, field: str, value: Any) -> int:
        self._check()
        bucket = self._hashes.setdefault(key, {})
        if field in bucket:
            return 0
        bucket[field] = str(value)
        return 1

    def hget(self, key: str, field: str) -> Optional[str]:
        self._check()
        return self._hashes.get(key, {}).get(field)

    def hdel(self, key: str, *fields: str) -> int:
        self._check()
        bucket = self._hashes.get(key, {})
        return sum(1 for field in fields if bucket.pop(field, None) is not None)

    def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        self._check()
        bucket = self._hashes.setdefault(key, {})
        value = int(bucket.get(field, 0)) + amount
        bucket[field] = str(value)
        return value

    def hvals(self, key: str) -> List[str]:
        self._check()
        return list(self._hashes.get(key, {}).values())

    def hlen(self, key: str) -> int:
        self._check()
        return len(self._hashes.get(key, {}))

    # Sorted sets --------------------------------------------------------
    def zadd(self, key: str, mapping: Dict[str, float], nx: bool = False, xx: bool = False) -> int:
        self._check()
        zset = self._zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            exists = member in zset
            if nx and exists:
                continue
            if xx and not exists:
                continue
            if not exists:
                added += 1
            zset[member] = float(score)
        return added

    def zrem(self, key: str, *members: str) -> int:
        self._check()
        zset = self._zsets.get(key, {})
        return sum(1 for member in members if zset.pop(member, None) is not None)

    def zcard(self, key: str) -> int:
        self._check()
        return len(self._zsets.get(key, {}))

    def zscore(self, key: str, member: str) -> Optional[float]:
        self._check()
        return self._zsets.get(key, {}).get(member)

    def zrangebyscore(
        self,
        key: str,
        min: Union[str, float],
        max: Union[str, float],
        start: Optional[int] = None,
        num: Optional[int] = None,
    ) -> List[str]:
        self._check()
        low = float("-inf") if min == "-inf" else float(min)
        high = float("inf") if max == "+inf" else float(max)
        ordered: List[Tuple[float, str]] = sorted(
            (score, member) for member, score in self._zsets.get(key, {}).items() if low <= score <= high
        )
        members = [member for _, member in ordered]
        if start is not None and num is not None:
            members = members[start:start + num]
        return members
