"""
ASGI entrypoint: expose `app` pour les process managers (ex: uvicorn marketplace.asgi:app).
Toute la configuration est centralisée dans marketplace.app_setup.factory.
"""

from marketplace.app import app
