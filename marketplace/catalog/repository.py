"""
Accès aux données du catalogue (table 'products').
"""
from typing import Any, Dict, Iterable, List, Optional
import logging
import marketplace.infra.supabase_client as supabase_client
from marketplace.errors import PersistenceError

logger = logging.getLogger(__name__)

PRODUCT_COLUMNS = "id, vendor_id, title, price, status, track_inventory, inventory_quantity"

# module marketplace.catalog.repository
def get_product(product_id: str) -> Optional[Dict[str, Any]]:
    """
    Retourne le produit ou None s'il n'existe pas.
    - Lève PersistenceError si Supabase est indisponible (≠ produit absent).
    """
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("products")
            .select(PRODUCT_COLUMNS)
            .eq("id", str(product_id))
            .limit(1)
            .execute()
        )
    except Exception:
        logger.exception("catalog.repository.get_product failed product_id=%s", product_id)
        raise PersistenceError("Catalogue indisponible")
    rows = res.data or []
    return rows[0] if rows else None

def get_products_map(ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """Retourne {product_id: produit} pour les IDs fournis (les absents sont omis)."""
    ids = [str(i) for i in ids]
    if not ids:
        return {}
    try:
        res = (
            supabase_client.get_service_supabase()
            .table("products")
            .select(PRODUCT_COLUMNS)
            .in_("id", ids)
            .execute()
        )
    except Exception:
        logger.exception("catalog.repository.get_products_map failed ids=%s", ids)
        raise PersistenceError("Catalogue indisponible")
    return {str(p.get("id")): p for p in (res.data or [])}

def reserve_inventory(lines: List[Dict[str, Any]]) -> bool:
    """
    Décrémente atomiquement le stock des produits suivis (RPC 'reserve_inventory').
    - lines: [{product_id, quantity}]
    - False si au moins une ligne n'a plus assez de stock (rien n'est décrémenté).
    """
    if not lines:
        return True
    try:
        res = supabase_client.get_service_supabase().rpc("reserve_inventory", {"lines": lines}).execute()
    except Exception:
        logger.exception("catalog.repository.reserve_inventory failed lines=%s", lines)
        raise PersistenceError("Réservation de stock impossible")
    return bool(res.data)

def release_inventory(lines: List[Dict[str, Any]]) -> None:
    """Restitue le stock réservé (rollback checkout / annulation)."""
    if not lines:
        return
    try:
        supabase_client.get_service_supabase().rpc("release_inventory", {"lines": lines}).execute()
    except Exception:
        logger.exception("catalog.repository.release_inventory failed lines=%s", lines)
        raise PersistenceError("Restitution de stock impossible")
