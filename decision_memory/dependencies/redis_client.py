import logging
from typing import Optional

from redis import Redis

from decision_memory.config import get_redis_socket_timeout_seconds, get_redis_url


logger = logging.getLogger("decision_memory.redis")


def get_redis_client() -> Optional[Redis]:
	"""Return a Redis client if REDIS_URL is configured; otherwise None.

	Connects and commands are bounded by REDIS_SOCKET_TIMEOUT_SECONDS, so a
	hung Redis surfaces as a ``redis.exceptions.TimeoutError`` instead of a
	stalled caller.
	"""
	redis_url = get_redis_url()
	if not redis_url:
		logger.debug("[redis.disabled] REDIS_URL unset")
		return None
	timeout = max(0.1, get_redis_socket_timeout_seconds())
	return Redis.from_url(
		redis_url,
		decode_responses=True,
		socket_timeout=timeout,
		socket_connect_timeout=timeout,
	)
