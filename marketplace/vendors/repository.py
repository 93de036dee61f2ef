"""
Comptes vendeurs (table 'vendors'): compte Stripe Connect et état d'onboarding.
"""
from typing import Any, Dict, Iterable, Optional
import logging
import marketplace.infra.supabase_client as supabase_client
from marketplace.errors import PersistenceError

logger = logging.getLogger(__name__)

# module marketplace.vendors.repository
def get_vendor_accounts(vendor_ids: Iterable[str]) -> Dict[str, Optional[str]]:
    """Retourne {vendor_id: stripe_account_id} (None si le vendeur n'a pas de compte connecté)."""
    ids = [str(v) for v in vendor_ids]
    if not ids:
        return {}
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("vendors")
            .select("id, stripe_account_id")
            .in_("id", ids)
            .execute()
        )
    except Exception:
        logger.exception("vendors.repository.get_vendor_accounts failed ids=%s", ids)
        raise PersistenceError("Lecture des comptes vendeurs impossible")
    return {str(v.get("id")): v.get("stripe_account_id") for v in (res.data or [])}

def set_onboarding_status(stripe_account_id: str, completed: bool) -> bool:
    """Met à jour stripe_onboarding_completed; False si aucun vendeur ne porte ce compte."""
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("vendors")
            .update({"stripe_onboarding_completed": bool(completed)})
            .eq("stripe_account_id", stripe_account_id)
            .execute()
        )
    except Exception:
        logger.exception("vendors.repository.set_onboarding_status failed account=%s", stripe_account_id)
        raise PersistenceError("Mise à jour du vendeur impossible")
    return bool(res.data)

def get_vendor(vendor_id: str) -> Optional[Dict[str, Any]]:
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("vendors")
            .select("id, stripe_account_id, stripe_onboarding_completed")
            .eq("id", str(vendor_id))
            .limit(1)
            .execute()
        )
    except Exception:
        logger.exception("vendors.repository.get_vendor failed vendor_id=%s", vendor_id)
        raise PersistenceError("Lecture du vendeur impossible")
    rows = res.data or []
    return rows[0] if rows else None

def attach_stripe_account(vendor_id: str, stripe_account_id: str) -> Optional[Dict[str, Any]]:
    """
    Enregistre le compte Connect seulement si le vendeur n'en a pas encore (update conditionnel).
    None => un compte était déjà enregistré (appel concurrent): relire le vendeur.
    """
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("vendors")
            .update({"stripe_account_id": stripe_account_id, "stripe_onboarding_completed": False})
            .eq("id", str(vendor_id))
            .is_("stripe_account_id", "null")
            .execute()
        )
    except Exception:
        logger.exception("vendors.repository.attach_stripe_account failed vendor_id=%s", vendor_id)
        raise PersistenceError("Mise à jour du vendeur impossible")
    rows = res.data or []
    return rows[0] if rows else None
