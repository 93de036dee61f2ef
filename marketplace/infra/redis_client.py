from typing import Optional
import redis
from marketplace.config import REDIS_URL

_redis: Optional[redis.Redis] = None

def get_redis() -> redis.Redis:
    """
    Client Redis synchrone partagé (paniers + verrous de checkout).
    - decode_responses=True: les paniers sont stockés en JSON texte.
    - timeouts courts: une panne Redis ne doit pas bloquer un worker.
    """
    global _redis
    if _redis is None:
        _redis = redis.from_url(
            REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=3,
            socket_timeout=3,
        )
    return _redis
