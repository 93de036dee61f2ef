import logging
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

import marketplace.infra.redis_client as redis_client
from marketplace.config import STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET, SUPABASE_URL
from marketplace.utils.rate_limit import rate_limit_health_info

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["Health"])

@router.get("")
def health_root():
    return {"ok": True}

@router.get("/dependencies")
def health_dependencies(request: Request):
    """État des dépendances: Redis (paniers), configuration Stripe / Supabase, rate limiting."""
    try:
        redis_ok = bool(redis_client.get_redis().ping())
    except RedisError as e:
        logger.warning("health.redis unreachable: %s", e)
        redis_ok = False
    body = {
        "redis": redis_ok,
        "stripe_configured": bool(STRIPE_SECRET_KEY),
        "webhook_secret_configured": bool(STRIPE_WEBHOOK_SECRET),
        "supabase_configured": bool(SUPABASE_URL),
        "rate_limit": rate_limit_health_info(request),
    }
    return JSONResponse(body, status_code=200 if redis_ok else 503)
