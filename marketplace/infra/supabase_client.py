from typing import Optional
from supabase import Client, ClientOptions, create_client
from marketplace.config import SUPABASE_ANON, SUPABASE_SERVICE_KEY, SUPABASE_TIMEOUT_SECONDS, SUPABASE_URL

_supabase: Optional[Client] = None
_service_supabase: Optional[Client] = None

def _options() -> ClientOptions:
    # timeout PostgREST borné: une base lente devient PersistenceError (503) côté repositories
    return ClientOptions(postgrest_client_timeout=SUPABASE_TIMEOUT_SECONDS, auto_refresh_token=False,
                         persist_session=False)

def get_supabase() -> Client:
    """Client 'anon': sert uniquement à résoudre les JWT acheteurs / vendeurs (auth.get_user)."""
    global _supabase
    if _supabase is None:
        _supabase = create_client(SUPABASE_URL, SUPABASE_ANON, options=_options())
    return _supabase

def get_service_supabase() -> Client:
    """
    Client service-role (bypass RLS) partagé par tous les repositories:
    commandes, sous-commandes, payouts, ledger webhooks, réservation de stock.
    Ces tables ne sont jamais écrites au nom d'un utilisateur final.
    """
    global _service_supabase
    if not SUPABASE_URL or not SUPABASE_SERVICE_KEY:
        raise RuntimeError("SUPABASE_URL / SUPABASE_SERVICE_KEY manquants pour get_service_supabase()")
    if _service_supabase is None:
        _service_supabase = create_client(SUPABASE_URL, SUPABASE_SERVICE_KEY, options=_options())
    return _service_supabase
