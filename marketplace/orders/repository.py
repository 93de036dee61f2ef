"""
Accès aux données pour la feature 'orders' (tables orders, sub_orders, order_items).

- Écritures via le client service-role.
- Les transitions d'état sont des updates conditionnels: les lignes renvoyées indiquent
  si l'appelant a gagné la transition (aucune ligne => un autre appel l'a déjà faite).
- Toute erreur Supabase est loggée puis remontée en PersistenceError.
"""
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging
import marketplace.infra.supabase_client as supabase_client
from marketplace.errors import PersistenceError

logger = logging.getLogger(__name__)

PAYABLE_STATUSES = ["pending", "processing"]
CANCELLABLE_PAYMENT_STATUSES = ["pending", "failed"]

def _db():
    return supabase_client.get_service_supabase()

# module marketplace.orders.repository
def insert_order(row: Dict[str, Any]) -> Dict[str, Any]:
    try:
        res = _db().table("orders").insert(row).execute()
    except Exception:
        logger.exception("orders.repository.insert_order failed order_number=%s", row.get("order_number"))
        raise PersistenceError("Création de commande impossible")
    return (res.data or [row])[0]

def insert_sub_order(row: Dict[str, Any]) -> Dict[str, Any]:
    try:
        res = _db().table("sub_orders").insert(row).execute()
    except Exception:
        logger.exception("orders.repository.insert_sub_order failed order_id=%s vendor_id=%s",
                         row.get("order_id"), row.get("vendor_id"))
        raise PersistenceError("Création de sous-commande impossible")
    return (res.data or [row])[0]

def insert_order_items(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not rows:
        return []
    try:
        res = _db().table("order_items").insert(rows).execute()
    except Exception:
        logger.exception("orders.repository.insert_order_items failed count=%s", len(rows))
        raise PersistenceError("Création des lignes de commande impossible")
    return res.data or rows

def update_order(order_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    try:
        res = _db().table("orders").update(fields).eq("id", str(order_id)).execute()
    except Exception:
        logger.exception("orders.repository.update_order failed order_id=%s", order_id)
        raise PersistenceError("Mise à jour de commande impossible")
    rows = res.data or []
    return rows[0] if rows else None

def delete_order_cascade(order_id: str) -> None:
    """Suppression compensatoire: lignes -> sous-commandes -> commande (pas de transaction PostgREST)."""
    try:
        _db().table("order_items").delete().eq("order_id", str(order_id)).execute()
        _db().table("sub_orders").delete().eq("order_id", str(order_id)).execute()
        _db().table("orders").delete().eq("id", str(order_id)).execute()
    except Exception:
        logger.exception("orders.repository.delete_order_cascade failed order_id=%s", order_id)
        raise PersistenceError("Rollback de commande impossible")

def get_order(order_id: str) -> Optional[Dict[str, Any]]:
    try:
        res = _db().table("orders").select("*").eq("id", str(order_id)).limit(1).execute()
    except Exception:
        logger.exception("orders.repository.get_order failed order_id=%s", order_id)
        raise PersistenceError("Lecture de commande impossible")
    rows = res.data or []
    return rows[0] if rows else None

def list_sub_orders(order_id: str) -> List[Dict[str, Any]]:
    try:
        res = (
            _db()
            .table("sub_orders")
            .select("*")
            .eq("order_id", str(order_id))
            .order("suborder_number")
            .execute()
        )
    except Exception:
        logger.exception("orders.repository.list_sub_orders failed order_id=%s", order_id)
        raise PersistenceError("Lecture des sous-commandes impossible")
    return res.data or []

def list_order_items(order_id: str) -> List[Dict[str, Any]]:
    try:
        res = _db().table("order_items").select("*").eq("order_id", str(order_id)).execute()
    except Exception:
        logger.exception("orders.repository.list_order_items failed order_id=%s", order_id)
        raise PersistenceError("Lecture des lignes de commande impossible")
    return res.data or []

def list_buyer_orders(buyer_id: str, page: int, limit: int) -> Tuple[List[Dict[str, Any]], int]:
    offset = (page - 1) * limit
    try:
        res = (
            _db()
            .table("orders")
            .select("*", count="exact")
            .eq("buyer_id", str(buyer_id))
            .order("created_at", desc=True)
            .range(offset, offset + limit - 1)
            .execute()
        )
    except Exception:
        logger.exception("orders.repository.list_buyer_orders failed buyer_id=%s", buyer_id)
        raise PersistenceError("Lecture des commandes impossible")
    rows = res.data or []
    total = res.count if res.count is not None else len(rows)
    return rows, total

def mark_order_paid(order_id: str, payment_intent_id: str, paid_at: str) -> Optional[Dict[str, Any]]:
    """pending|processing -> paid; None si la commande n'était plus payable (déjà payée, annulée...)."""
    try:
        res = (
            _db()
            .table("orders")
            .update({"payment_status": "paid", "status": "confirmed", "paid_at": paid_at})
            .eq("id", str(order_id))
            .eq("payment_intent_id", payment_intent_id)
            .in_("payment_status", PAYABLE_STATUSES)
            .execute()
        )
    except Exception:
        logger.exception("orders.repository.mark_order_paid failed order_id=%s", order_id)
        raise PersistenceError("Confirmation de paiement impossible")
    rows = res.data or []
    return rows[0] if rows else None

def mark_order_cancelled(order_id: str) -> Optional[Dict[str, Any]]:
    try:
        res = (
            _db()
            .table("orders")
            .update({"status": "cancelled", "payment_status": "failed"})
            .eq("id", str(order_id))
            .in_("payment_status", CANCELLABLE_PAYMENT_STATUSES)
            .neq("status", "cancelled")
            .execute()
        )
    except Exception:
        logger.exception("orders.repository.mark_order_cancelled failed order_id=%s", order_id)
        raise PersistenceError("Annulation de commande impossible")
    rows = res.data or []
    return rows[0] if rows else None

def update_sub_orders_status(order_id: str, status: str, from_statuses: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
    try:
        query = _db().table("sub_orders").update({"status": status}).eq("order_id", str(order_id))
        if from_statuses:
            query = query.in_("status", list(from_statuses))
        res = query.execute()
    except Exception:
        logger.exception("orders.repository.update_sub_orders_status failed order_id=%s status=%s", order_id, status)
        raise PersistenceError("Mise à jour des sous-commandes impossible")
    return res.data or []
