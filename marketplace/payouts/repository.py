"""
Accès aux données des payouts vendeurs (table 'vendor_payouts').
Une ligne par tentative de transfert et par sous-commande; un échec reste une ligne 'failed'
(retryable = true si Stripe a pu exécuter la requête malgré l'erreur).
"""
from typing import Any, Dict, List, Optional, Tuple
import logging
import marketplace.infra.supabase_client as supabase_client
from marketplace.errors import PersistenceError

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ["pending", "processing", "paid"]

def _db():
    return supabase_client.get_service_supabase()

# module marketplace.payouts.repository
def insert_payout(row: Dict[str, Any]) -> Dict[str, Any]:
    try:
        res = _db().table("vendor_payouts").insert(row).execute()
    except Exception:
        logger.exception("payouts.repository.insert_payout failed sub_order_id=%s status=%s",
                         row.get("sub_order_id"), row.get("status"))
        raise PersistenceError("Enregistrement du payout impossible")
    return (res.data or [row])[0]

def find_active_payout(sub_order_id: str) -> Optional[Dict[str, Any]]:
    """Payout non échoué déjà enregistré pour la sous-commande (=> ne pas retransférer)."""
    try:
        res = (
            _db()
            .table("vendor_payouts")
            .select("*")
            .eq("sub_order_id", str(sub_order_id))
            .in_("status", ACTIVE_STATUSES)
            .limit(1)
            .execute()
        )
    except Exception:
        logger.exception("payouts.repository.find_active_payout failed sub_order_id=%s", sub_order_id)
        raise PersistenceError("Lecture des payouts impossible")
    rows = res.data or []
    return rows[0] if rows else None

def count_rejected_payouts(sub_order_id: str) -> int:
    """
    Échecs définitifs de la sous-commande (retryable = false).
    Les échecs transitoires (timeout, réseau, 5xx) ne comptent pas: Stripe a pu exécuter le transfert.
    """
    try:
        res = (
            _db()
            .table("vendor_payouts")
            .select("id", count="exact")
            .eq("sub_order_id", str(sub_order_id))
            .eq("status", "failed")
            .eq("retryable", False)
            .execute()
        )
    except Exception:
        logger.exception("payouts.repository.count_rejected_payouts failed sub_order_id=%s", sub_order_id)
        raise PersistenceError("Lecture des payouts impossible")
    return res.count if res.count is not None else len(res.data or [])

def update_payout_by_transfer(stripe_transfer_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    try:
        res = (
            _db()
            .table("vendor_payouts")
            .update(fields)
            .eq("stripe_transfer_id", stripe_transfer_id)
            .execute()
        )
    except Exception:
        logger.exception("payouts.repository.update_payout_by_transfer failed transfer=%s", stripe_transfer_id)
        raise PersistenceError("Mise à jour du payout impossible")
    rows = res.data or []
    return rows[0] if rows else None

def list_vendor_payouts(vendor_id: str, page: int, limit: int,
                        status: Optional[str] = None) -> Tuple[List[Dict[str, Any]], int]:
    offset = (page - 1) * limit
    try:
        query = _db().table("vendor_payouts").select("*", count="exact").eq("vendor_id", str(vendor_id))
        if status:
            query = query.eq("status", status)
        res = query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
    except Exception:
        logger.exception("payouts.repository.list_vendor_payouts failed vendor_id=%s", vendor_id)
        raise PersistenceError("Lecture des payouts impossible")
    rows = res.data or []
    return rows, (res.count if res.count is not None else len(rows))

def fetch_vendor_payout_amounts(vendor_id: str) -> List[Dict[str, Any]]:
    """Colonnes nécessaires à l'agrégat des gains (status + montants)."""
    try:
        res = (
            _db()
            .table("vendor_payouts")
            .select("status, gross_amount, commission_amount, net_amount")
            .eq("vendor_id", str(vendor_id))
            .execute()
        )
    except Exception:
        logger.exception("payouts.repository.fetch_vendor_payout_amounts failed vendor_id=%s", vendor_id)
        raise PersistenceError("Lecture des payouts impossible")
    return res.data or []
