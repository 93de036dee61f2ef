"""
Factory d'application pour les entrypoints (marketplace.asgi, marketplace.app).
Ordonne les étapes d'initialisation de manière lisible et testable.
"""
from fastapi import FastAPI
from .lifespan import lifespan
from .middlewares import register_basic_middlewares, register_security_middleware
from .exceptions import register_exception_handlers
from .routers import register_routers

def create_app() -> FastAPI:
    """
    Construit l'app FastAPI avec le lifespan et enregistre:
      - middlewares de base et de sécurité
      - gestionnaires d'exceptions
      - tous les routers (API, admin, health)
    """
    app = FastAPI(title="Marketplace Checkout & Settlement", lifespan=lifespan)
    register_basic_middlewares(app)
    register_security_middleware(app)
    register_exception_handlers(app)
    register_routers(app)
    return app
