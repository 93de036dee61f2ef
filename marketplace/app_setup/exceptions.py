"""
Gestionnaires d'exceptions.
- MarketplaceError: JSON {detail, code, ...extra} avec le status porté par l'erreur.
- HTTPException: JSON {detail} standard (auth, garde interne, 429).
- Exception non prévue: loggée avec stack, 500 générique (aucun détail interne exposé).
"""
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from marketplace.errors import MarketplaceError

logger = logging.getLogger(__name__)

def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(MarketplaceError)
    async def marketplace_error(request: Request, exc: MarketplaceError):
        if exc.status_code >= 500:
            logger.warning("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Erreur interne", "code": "internal_error"})
