"""
Lancement local du service checkout / règlement.

Usage:
    python -m marketplace

Variables d'environnement:
- HOST / PORT: adresse d'écoute (0.0.0.0:8000 par défaut)
- UVICORN_RELOAD: reload auto en dev ("1"/"true"/"yes")
- LOG_LEVEL: niveau de logs uvicorn (ex: "info", "debug")
- FORWARDED_ALLOW_IPS: proxys de confiance pour X-Forwarded-* (IP source des webhooks)
"""
import os

import uvicorn

def _truthy(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")

if __name__ == "__main__":
    uvicorn.run(
        "marketplace.asgi:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", 8000)),
        reload=_truthy("UVICORN_RELOAD"),
        log_level=os.environ.get("LOG_LEVEL", "info"),
        proxy_headers=True,
        forwarded_allow_ips=os.environ.get("FORWARDED_ALLOW_IPS", "127.0.0.1"),
    )
