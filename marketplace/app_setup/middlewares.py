"""
Middlewares transverses de l'application (API JSON uniquement, pas de session cookie).
- register_basic_middlewares: CORS, TrustedHost et confiance en X-Forwarded-*.
- register_security_middleware: en-têtes de sécurité et identifiant de requête pour les logs.
"""
import logging
import time
import uuid

from fastapi import Request, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from marketplace.config import COOKIE_SECURE, CORS_ORIGINS, ALLOWED_HOSTS

logger = logging.getLogger(__name__)

def register_basic_middlewares(app: FastAPI) -> None:
    """
    - CORSMiddleware: autorise les origines définies (dev/prod).
    - TrustedHostMiddleware: limite les hôtes acceptés (défense host header).
    - ProxyHeadersMiddleware: l'IP source loggée (webhooks) est celle du client réel derrière le proxy.
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=ALLOWED_HOSTS + ["*"] if "*" in CORS_ORIGINS else ALLOWED_HOSTS,
    )
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["*"])

def register_security_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        if "X-Frame-Options" not in response.headers:
            response.headers["X-Frame-Options"] = "DENY"
        if "X-Content-Type-Options" not in response.headers:
            response.headers["X-Content-Type-Options"] = "nosniff"
        if "Referrer-Policy" not in response.headers:
            response.headers["Referrer-Policy"] = "no-referrer"
        if COOKIE_SECURE and "Strict-Transport-Security" not in response.headers:
            response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains; preload"
        # pas de cache sur les réponses API (paniers, commandes, montants)
        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store"
        logger.debug("http %s %s status=%s ms=%.1f rid=%s",
                     request.method, request.url.path, response.status_code, elapsed_ms, request_id)
        return response
