"""
Shared Redis connection
Used for real-time reservation broadcasts; callers treat Redis as optional (fail-open)
"""

import logging
import os
from threading import Lock
from typing import Optional

import redis

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None
_client_lock = Lock()


def _mask_url(redis_url: str) -> str:
    if "@" in redis_url:
        url_parts = redis_url.split("@")
        protocol = url_parts[0].split(":")[0]
        return f"{protocol}:****@{url_parts[1]}"
    return "****"


def get_redis_client() -> redis.Redis:
    """
    Get or create the Redis client
    Raises redis.RedisError when the server cannot be reached
    """
    global redis_client

    with _client_lock:
        if redis_client is not None:
            return redis_client

        logger.info("🔄 Initializing Redis connection for reservation broadcasts...")
        redis_url = os.getenv("REDIS_URL")

        if redis_url:
            logger.info(f"📡 Using Redis URL connection: {_mask_url(redis_url)}")
            client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30,
                max_connections=20,
            )
        else:
            redis_host = os.getenv("REDIS_HOST", "localhost")
            redis_port = int(os.getenv("REDIS_PORT", "6379"))
            redis_ssl = os.getenv("REDIS_SSL", "false").lower() == "true"
            logger.info(f"📡 Using Redis at {redis_host}:{redis_port} (SSL: {'on' if redis_ssl else 'off'})")
            client = redis.Redis(
                host=redis_host,
                port=redis_port,
                password=os.getenv("REDIS_PASSWORD"),
                db=int(os.getenv("REDIS_DB", "0")),
                ssl=redis_ssl,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30,
                max_connections=20,
            )

        try:
            client.ping()
        except redis.RedisError as e:
            logger.error(f"❌ Failed to connect to Redis: {e}")
            logger.error("⚠️ Reservation broadcasts are disabled until Redis is reachable (fail-open mode)")
            raise

        logger.info("✅ Redis connected successfully")
        redis_client = client
        return redis_client


def reset_redis_client() -> None:
    """Drop the cached client so the next call reconnects"""
    global redis_client
    with _client_lock:
        redis_client = None
