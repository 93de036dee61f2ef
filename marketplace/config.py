# marketplace.config
from decimal import Decimal
from pathlib import Path
import os
from dotenv import load_dotenv

# Calculer le chemin du projet puis charger .env de manière explicite
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=False)

"""
Configuration centrale du backend marketplace.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise et expose les secrets/URLs (Supabase, Stripe, Redis, services internes)
- Expose les constantes métier (commission, panier, plafonds de montants, retry webhooks)
"""

def _clean_env(v: str) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")

def _env_int(name: str, default: int) -> int:
    try:
        return int(_clean_env(os.getenv(name) or "") or default)
    except ValueError:
        return default

def _env_bool(name: str, default: bool) -> bool:
    raw = _clean_env(os.getenv(name) or "").lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")

# Supabase: URL et clés (anon pour l'auth utilisateur, service pour les écritures serveur)
SUPABASE_URL = _clean_env(os.getenv("SUPABASE_URL") or "")
SUPABASE_ANON = _clean_env(os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_KEY") or "")
SUPABASE_SERVICE_KEY = _clean_env(os.getenv("SUPABASE_SERVICE_KEY") or "")
SUPABASE_TIMEOUT_SECONDS = _env_int("SUPABASE_TIMEOUT_SECONDS", 10)

if SUPABASE_URL and not SUPABASE_URL.startswith("http"):
    SUPABASE_URL = "https://" + SUPABASE_URL
if SUPABASE_URL.endswith("/"):
    SUPABASE_URL = SUPABASE_URL.rstrip("/")

# Stripe: clé secrète, secret webhook, devise et timeout réseau
STRIPE_SECRET_KEY = _clean_env(os.getenv("STRIPE_SECRET_KEY") or "")
STRIPE_WEBHOOK_SECRET = _clean_env(os.getenv("STRIPE_WEBHOOK_SECRET") or "")
STRIPE_CURRENCY = _clean_env(os.getenv("STRIPE_CURRENCY") or "usd").lower()
STRIPE_TIMEOUT_SECONDS = _env_int("STRIPE_TIMEOUT_SECONDS", 10)
STRIPE_CONNECT_COUNTRY = _clean_env(os.getenv("STRIPE_CONNECT_COUNTRY") or "US").upper()

# Redis: stockage des paniers (TTL) et rate limiting
REDIS_URL = _clean_env(os.getenv("REDIS_URL") or "redis://127.0.0.1:6379/0")
RATE_LIMIT_REDIS_URL = _clean_env(os.getenv("RATE_LIMIT_REDIS_URL") or REDIS_URL)

# Commission plateforme (%), snapshotée sur chaque sous-commande à la création
PLATFORM_COMMISSION_RATE = Decimal(_clean_env(os.getenv("PLATFORM_COMMISSION_RATE") or "10.0"))

# Panier
CART_TTL_SECONDS = _env_int("CART_TTL_SECONDS", 7 * 24 * 60 * 60)
CART_MAX_QUANTITY_PER_ITEM = _env_int("CART_MAX_QUANTITY_PER_ITEM", 100)
CART_MAX_ITEMS = _env_int("CART_MAX_ITEMS", 50)
CHECKOUT_LOCK_SECONDS = _env_int("CHECKOUT_LOCK_SECONDS", 30)

# Plafonds monétaires et lots de transferts
MAX_CHARGE_AMOUNT = Decimal(_clean_env(os.getenv("MAX_CHARGE_AMOUNT") or "999999.99"))
MAX_TRANSFERS_PER_CALL = _env_int("MAX_TRANSFERS_PER_CALL", 50)
ORDER_NUMBER_PREFIX = _clean_env(os.getenv("ORDER_NUMBER_PREFIX") or "ORD")

# Appels inter-services (credential non utilisateur, distinct des JWT)
INTERNAL_SERVICE_NAME = _clean_env(os.getenv("INTERNAL_SERVICE_NAME") or "payment-service")
INTERNAL_SERVICE_SECRET = _clean_env(os.getenv("INTERNAL_SERVICE_SECRET") or "")
INTERNAL_ALLOWED_SERVICES = [
    s.strip()
    for s in os.getenv("INTERNAL_ALLOWED_SERVICES", "payment-service,order-service").split(",")
    if s.strip()
]
ORDER_SERVICE_URL = _clean_env(os.getenv("ORDER_SERVICE_URL") or "http://localhost:8000")
INTERNAL_HTTP_TIMEOUT = float(_clean_env(os.getenv("INTERNAL_HTTP_TIMEOUT") or "5"))

# Ledger des webhooks en échec et retry automatique (backoff exponentiel)
WEBHOOK_AUTO_RETRY_ENABLED = _env_bool("WEBHOOK_AUTO_RETRY_ENABLED", True)
WEBHOOK_MAX_AUTO_RETRIES = _env_int("WEBHOOK_MAX_AUTO_RETRIES", 5)
WEBHOOK_RETRY_BASE_SECONDS = _env_int("WEBHOOK_RETRY_BASE_SECONDS", 3600)
WEBHOOK_RETRY_INTERVAL_SECONDS = _env_int("WEBHOOK_RETRY_INTERVAL_SECONDS", 300)
WEBHOOK_RETRY_BATCH_SIZE = _env_int("WEBHOOK_RETRY_BATCH_SIZE", 10)

# CORS / hôtes autorisés
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if h.strip()]
COOKIE_SECURE = (os.getenv("COOKIE_SECURE", "false").lower() == "true")

BASE_URL = _clean_env(os.getenv("BASE_URL") or "http://localhost:8000")

# Onboarding Stripe Connect: pages de retour par défaut (surchargées par la requête)
VENDOR_ONBOARDING_REFRESH_URL = _clean_env(os.getenv("VENDOR_ONBOARDING_REFRESH_URL") or f"{BASE_URL}/vendor/onboarding/refresh")
VENDOR_ONBOARDING_RETURN_URL = _clean_env(os.getenv("VENDOR_ONBOARDING_RETURN_URL") or f"{BASE_URL}/vendor/onboarding/complete")
