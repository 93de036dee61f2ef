"""
Lifespan FastAPI: initialisation/arrêt des ressources partagées.
- Initialise FastAPILimiter (Redis) avec options de test (fakeredis).
- Démarre la tâche de retry des webhooks en échec (WEBHOOK_AUTO_RETRY_ENABLED).
- Variables d'environnement supportées:
  - DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS=1: désactive complètement le rate limiting (tests)
  - USE_FAKE_REDIS_FOR_TESTS=1: utilise fakeredis (tests)
  - LOCAL_RATE_LIMIT_FALLBACK=1: active un fallback local si l'init échoue
"""
import asyncio
import os
import logging
from contextlib import asynccontextmanager, suppress

import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi_limiter import FastAPILimiter

from marketplace.config import RATE_LIMIT_REDIS_URL, WEBHOOK_AUTO_RETRY_ENABLED, WEBHOOK_RETRY_INTERVAL_SECONDS
from marketplace.webhooks.retry import retry_loop

async def _init_rate_limiter(app: FastAPI, logger: logging.Logger) -> None:
    """
    Configure le rate limiting et gère les fallbacks.
    - En cas d'échec de Redis et sans fallback, le rate limiting est désactivé proprement.
    """
    if os.getenv("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS") == "1":
        app.state.rate_limit_enabled = False
        logger.info("Rate limiting disabled by DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS")
        return
    try:
        if os.getenv("USE_FAKE_REDIS_FOR_TESTS") == "1":
            from fakeredis.aioredis import FakeRedis  # tests only
            r = FakeRedis(decode_responses=True)
        else:
            r = aioredis.from_url(RATE_LIMIT_REDIS_URL, encoding="utf-8", decode_responses=True)
        await FastAPILimiter.init(r)
        app.state.rate_limit_enabled = True
        logger.info("Rate limiting enabled")
    except Exception as e:
        if os.getenv("LOCAL_RATE_LIMIT_FALLBACK") == "1":
            app.state.rate_limit_enabled = True
            logger.warning("Rate limiting falling back to local in-memory due to init error: %s", e)
        else:
            app.state.rate_limit_enabled = False
            logger.warning("Rate limiting disabled due to init error: %s", e)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("uvicorn.error")
    await _init_rate_limiter(app, logger)

    retry_task = None
    if WEBHOOK_AUTO_RETRY_ENABLED:
        retry_task = asyncio.create_task(retry_loop(WEBHOOK_RETRY_INTERVAL_SECONDS))
        logger.info("Webhook auto-retry enabled interval=%ss", WEBHOOK_RETRY_INTERVAL_SECONDS)
    else:
        logger.info("Webhook auto-retry disabled")
    app.state.webhook_retry_task = retry_task

    yield

    if retry_task is not None:
        retry_task.cancel()
        with suppress(asyncio.CancelledError):
            await retry_task
