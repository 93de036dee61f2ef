from typing import Dict, Any
from fastapi import Request, HTTPException
import os
import time
import hashlib

def _user_key_from_request(req: Request) -> str:
    # Priorité: Bearer (hashé) puis IP; la clé inclut le path
    path = req.url.path
    auth = req.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        h = hashlib.sha256(auth[7:].encode("utf-8")).hexdigest()[:16]
        return f"user:{h}:{path}"
    ip = req.client.host if req.client else "local"
    return f"ip:{ip}:{path}"

def optional_rate_limit(times: int, seconds: int):
    """
    Dépendance FastAPI de rate limiting (checkout, mutations panier).
    - LOCAL_RATE_LIMIT_FALLBACK=1: fenêtre glissante en mémoire (dev/tests).
    - app.state.rate_limit_enabled False: aucune limite (Redis indisponible au démarrage).
    - Sinon: fastapi-limiter (Redis).
    """
    async def _dep(request: Request):
        if os.getenv("LOCAL_RATE_LIMIT_FALLBACK") == "1":
            now = time.time()
            key = _user_key_from_request(request)
            store = getattr(request.app.state, "_rl_store", {})
            hits = [t for t in store.get(key, []) if now - t < seconds]
            if len(hits) >= times:
                raise HTTPException(status_code=429, detail="Too Many Requests")
            hits.append(now)
            store[key] = hits
            request.app.state._rl_store = store
            return

        if getattr(request.app.state, "rate_limit_enabled", None) is False:
            return

        from fastapi_limiter.depends import RateLimiter

        async def _identifier(req: Request) -> str:
            return _user_key_from_request(req)
        return await RateLimiter(times=times, seconds=seconds, identifier=_identifier)(request)
    return _dep

def rate_limit_health_info(request: Request) -> Dict[str, Any]:
    from fastapi_limiter import FastAPILimiter
    enabled = getattr(request.app.state, "rate_limit_enabled", None)
    ready = getattr(FastAPILimiter, "redis", None) is not None
    return {
        "enabled": (bool(enabled) if enabled is not None else None),
        "ready": ready,
        "backend": "redis" if ready else None,
    }
