"""
Service commandes: checkout (panier -> commande + sous-commandes + PaymentIntent),
lectures acheteur, annulation, et endpoints internes verify / confirm-payment.

Checkout (create_order):
- Panier vide => EmptyCart; chaque ligne est revérifiée contre le catalogue (statut + stock).
- Verrou Redis court (buyer + empreinte du panier): un second checkout concurrent du même panier
  est rejeté (CheckoutInProgress) au lieu de créer une seconde commande.
- Toute erreur après la première écriture déclenche un rollback complet: stock restitué,
  PaymentIntent annulé s'il existe, commande/sous-commandes/lignes supprimées.
- Le panier n'est vidé qu'après succès (un échec de purge est seulement loggé).
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging
import uuid

from redis.exceptions import RedisError

import marketplace.infra.redis_client as redis_client
from marketplace.cart import service as cart_service
from marketplace.catalog import repository as catalog_repository
from marketplace.config import CHECKOUT_LOCK_SECONDS, PLATFORM_COMMISSION_RATE, STRIPE_CURRENCY
from marketplace.errors import (
    AmountMismatch,
    CheckoutInProgress,
    EmptyCart,
    InsufficientInventory,
    InvalidRequest,
    MarketplaceError,
    OrderNotCancellable,
    OrderNotFound,
    PaymentReferenceMismatch,
    PersistenceError,
    ProductUnavailable,
)
from marketplace.orders import decomposer
from marketplace.orders import repository as orders_repository
from marketplace.payments import intents
from marketplace.payouts import executor as payouts_executor
from marketplace.utils.money import fmt, to_minor_units
from marketplace.utils.validators import require_uuid
from marketplace.vendors import repository as vendors_repository

logger = logging.getLogger(__name__)

# module marketplace.orders.service
def _lock_key(buyer_id: str, fingerprint: str) -> str:
    return f"checkout:{buyer_id}:{fingerprint}"

def _acquire_checkout_lock(key: str) -> None:
    try:
        acquired = redis_client.get_redis().set(key, "1", nx=True, ex=CHECKOUT_LOCK_SECONDS)
    except RedisError:
        logger.exception("orders.checkout_lock failed key=%s", key)
        raise PersistenceError("Verrou de checkout indisponible")
    if not acquired:
        raise CheckoutInProgress("Un paiement est déjà en cours pour ce panier")

def _release_checkout_lock(key: str) -> None:
    try:
        redis_client.get_redis().delete(key)
    except RedisError:
        logger.warning("orders.checkout_unlock failed key=%s (expiration automatique)", key)

def _inventory_lines(cart: Dict[str, Any]) -> List[Dict[str, Any]]:
    quantities: Dict[str, int] = {}
    for item in cart["items"]:
        quantities[item["product_id"]] = quantities.get(item["product_id"], 0) + int(item["quantity"])
    return [{"product_id": pid, "quantity": qty} for pid, qty in quantities.items()]

def validate_cart_against_catalog(cart: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Revérifie chaque produit (actif + stock) au moment du checkout; retourne les lignes de stock."""
    lines = _inventory_lines(cart)
    products = catalog_repository.get_products_map([line["product_id"] for line in lines])
    tracked = []
    for line in lines:
        product = products.get(line["product_id"])
        if not product or str(product.get("status") or "").lower() != "active":
            raise ProductUnavailable(f"Produit indisponible: {line['product_id']}")
        cart_service.check_inventory(product, line["quantity"])
        if product.get("track_inventory"):
            tracked.append(line)
    return tracked

def _order_row(order_id: str, order_number: str, buyer: Dict[str, Any], checkout: Dict[str, Any],
               plan: Dict[str, Any], fingerprint: str) -> Dict[str, Any]:
    return {
        "id": order_id,
        "order_number": order_number,
        "buyer_id": str(buyer["id"]),
        "buyer_email": buyer.get("email"),
        "shipping_address": checkout.get("shipping_address"),
        "billing_address": checkout.get("billing_address") or checkout.get("shipping_address"),
        "subtotal": fmt(plan["subtotal"]),
        "shipping_total": fmt(plan["shipping_total"]),
        "grand_total": fmt(plan["grand_total"]),
        "application_fee": fmt(plan["application_fee"]),
        "currency": STRIPE_CURRENCY,
        "payment_status": "pending",
        "status": "pending",
        "cart_fingerprint": fingerprint,
    }

def _persist_sub_orders(order_id: str, order_number: str, plan: Dict[str, Any]) -> List[Dict[str, Any]]:
    persisted = []
    for sub in plan["sub_orders"]:
        sub_order_id = str(uuid.uuid4())
        row = orders_repository.insert_sub_order({
            "id": sub_order_id,
            "order_id": order_id,
            "vendor_id": sub["vendor_id"],
            "suborder_number": decomposer.sub_order_number(order_number, sub["sequence"]),
            "subtotal": fmt(sub["subtotal"]),
            "shipping_method": sub["shipping_method"],
            "shipping_cost": fmt(sub["shipping_cost"]),
            "total": fmt(sub["total"]),
            "commission_rate": str(sub["commission_rate"]),
            "commission_amount": fmt(sub["commission_amount"]),
            "vendor_payout": fmt(sub["vendor_payout"]),
            "status": "pending",
        })
        items = orders_repository.insert_order_items([
            {
                "order_id": order_id,
                "sub_order_id": sub_order_id,
                "product_id": item["product_id"],
                "variant_id": item["variant_id"],
                "title": item["title"],
                "quantity": item["quantity"],
                "unit_price": fmt(item["unit_price"]),
                "total_price": fmt(item["total_price"]),
            }
            for item in sub["items"]
        ])
        persisted.append({**row, "items": items})
    return persisted

def _rollback_checkout(order_id: str, reserved: List[Dict[str, Any]], intent_id: Optional[str]) -> None:
    if intent_id:
        try:
            intents.cancel_intent(intent_id)
        except MarketplaceError:
            logger.exception("orders.rollback cancel_intent failed order_id=%s intent=%s", order_id, intent_id)
    if reserved:
        try:
            catalog_repository.release_inventory(reserved)
        except PersistenceError:
            logger.exception("orders.rollback release_inventory failed order_id=%s", order_id)
    try:
        orders_repository.delete_order_cascade(order_id)
    except PersistenceError:
        logger.critical("orders.rollback delete failed order_id=%s (commande pending orpheline)", order_id)

def create_order(buyer: Dict[str, Any], checkout: Dict[str, Any]) -> Dict[str, Any]:
    """
    Transforme le panier de l'acheteur en commande payable.
    Retour: {order, sub_orders, payment: {payment_intent_id, client_secret}}
    """
    buyer_id = str(buyer["id"])
    cart = cart_service.get_cart(buyer_id)
    if not cart.get("items"):
        raise EmptyCart("Le panier est vide")

    tracked_lines = validate_cart_against_catalog(cart)
    plan = decomposer.plan_order(cart, PLATFORM_COMMISSION_RATE)
    fingerprint = decomposer.cart_fingerprint(buyer_id, cart)
    lock_key = _lock_key(buyer_id, fingerprint)
    _acquire_checkout_lock(lock_key)

    order_id = str(uuid.uuid4())
    order_number = decomposer.generate_order_number()
    reserved: List[Dict[str, Any]] = []
    intent_id: Optional[str] = None
    try:
        try:
            order = orders_repository.insert_order(
                _order_row(order_id, order_number, buyer, checkout, plan, fingerprint)
            )
            sub_orders = _persist_sub_orders(order_id, order_number, plan)

            if tracked_lines:
                if not catalog_repository.reserve_inventory(tracked_lines):
                    raise InsufficientInventory("Stock insuffisant au moment du paiement")
                reserved = tracked_lines

            payment = intents.create_intent(
                order_id,
                plan["grand_total"],
                plan["application_fee"],
                {"order_number": order_number, "vendor_count": len(sub_orders), "buyer_id": buyer_id},
            )
            intent_id = payment["provider_id"]
            order = orders_repository.update_order(order_id, {"payment_intent_id": intent_id}) or {
                **order, "payment_intent_id": intent_id
            }
        except Exception:
            logger.exception("orders.create_order failed buyer_id=%s order_id=%s (rollback)", buyer_id, order_id)
            _rollback_checkout(order_id, reserved, intent_id)
            raise

        try:
            cart_service.clear_cart(buyer_id)
        except PersistenceError:
            logger.exception("orders.create_order clear_cart failed buyer_id=%s", buyer_id)
    finally:
        _release_checkout_lock(lock_key)

    logger.info("orders.created order_id=%s number=%s buyer_id=%s total=%s vendors=%s",
                order_id, order_number, buyer_id, plan["grand_total"], len(sub_orders))
    return {
        "order": order,
        "sub_orders": sub_orders,
        "payment": {"payment_intent_id": intent_id, "client_secret": payment["client_secret"]},
    }

def list_buyer_orders(buyer_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    if page < 1:
        raise InvalidRequest("page doit être >= 1")
    if limit < 1 or limit > 100:
        raise InvalidRequest("limit doit être compris entre 1 et 100")
    rows, total = orders_repository.list_buyer_orders(buyer_id, page, limit)
    return {"orders": rows, "total": total, "page": page, "limit": limit}

def _owned_order(order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    require_uuid(order_id, "order_id")
    order = orders_repository.get_order(order_id)
    # une commande d'un autre acheteur est traitée comme inexistante
    if not order or (user.get("role") != "admin" and str(order.get("buyer_id")) != str(user.get("id"))):
        raise OrderNotFound("Commande introuvable")
    return order

def get_order_details(order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    order = _owned_order(order_id, user)
    items = orders_repository.list_order_items(order_id)
    sub_orders = []
    for sub in orders_repository.list_sub_orders(order_id):
        sub_orders.append({**sub, "items": [i for i in items if i.get("sub_order_id") == sub.get("id")]})
    return {"order": order, "sub_orders": sub_orders}

def _tracked_order_lines(order_id: str) -> List[Dict[str, Any]]:
    """Lignes de la commande dont le stock est suivi (symétrique de la réservation au checkout)."""
    lines = _inventory_lines({"items": orders_repository.list_order_items(order_id)})
    products = catalog_repository.get_products_map([line["product_id"] for line in lines])
    return [line for line in lines if (products.get(str(line["product_id"])) or {}).get("track_inventory")]

def cancel_order(order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    """
    Annule une commande non payée.
    - Le PaymentIntent est annulé d'abord: s'il est déjà capturé, Stripe refuse et la commande reste intacte.
    - Sous-commandes -> cancelled, stock réservé restitué.
    """
    order = _owned_order(order_id, user)
    if order.get("payment_status") not in orders_repository.CANCELLABLE_PAYMENT_STATUSES or order.get("status") == "cancelled":
        raise OrderNotCancellable("Seule une commande non payée peut être annulée")

    intent_id = order.get("payment_intent_id")
    if intent_id:
        try:
            intents.cancel_intent(intent_id)
        except MarketplaceError as e:
            logger.warning("orders.cancel intent not cancellable order_id=%s intent=%s: %s", order_id, intent_id, e)
            raise OrderNotCancellable("Le paiement de cette commande ne peut plus être annulé")

    cancelled = orders_repository.mark_order_cancelled(order_id)
    if cancelled is None:
        raise OrderNotCancellable("La commande a changé d'état")
    orders_repository.update_sub_orders_status(order_id, "cancelled")

    try:
        tracked = _tracked_order_lines(order_id)
        catalog_repository.release_inventory(tracked)
    except PersistenceError:
        logger.exception("orders.cancel release_inventory failed order_id=%s", order_id)
    logger.info("orders.cancelled order_id=%s by=%s", order_id, user.get("id"))
    return {"status": "cancelled", "order": cancelled}

# --- Endpoints internes (appelés par le service paiement) ---
def verify_order(order_id: str) -> Dict[str, Any]:
    """Vue autoritative de la commande pour le confirmateur de webhook."""
    require_uuid(order_id, "order_id")
    order = orders_repository.get_order(order_id)
    if not order:
        raise OrderNotFound("Commande introuvable")
    return {
        "id": order["id"],
        "order_number": order.get("order_number"),
        "grand_total": fmt(order["grand_total"]),
        "payment_intent_id": order.get("payment_intent_id"),
        "payment_status": order.get("payment_status"),
        "buyer_id": order.get("buyer_id"),
    }

def build_transfers(order_id: str, sub_orders: List[Dict[str, Any]]):
    """Sépare les sous-commandes transférables de celles sans compte Stripe connecté."""
    accounts = vendors_repository.get_vendor_accounts({str(s["vendor_id"]) for s in sub_orders})
    transfers, skipped = [], []
    for sub in sub_orders:
        account = accounts.get(str(sub["vendor_id"]))
        base = {"vendor_id": str(sub["vendor_id"]), "sub_order_id": str(sub["id"])}
        if not account:
            logger.error("orders.transfer missing_account order_id=%s vendor_id=%s", order_id, sub["vendor_id"])
            skipped.append({**base, "status": "missing_account"})
            continue
        if to_minor_units(sub["vendor_payout"]) <= 0:
            skipped.append({**base, "status": "skipped"})
            continue
        transfers.append({
            **base,
            "stripe_account_id": account,
            "vendor_payout": sub["vendor_payout"],
            "commission_amount": sub["commission_amount"],
        })
    return transfers, skipped

def _run_transfers(order_id: str) -> List[Dict[str, Any]]:
    sub_orders = orders_repository.list_sub_orders(order_id)
    transfers, skipped = build_transfers(order_id, sub_orders)
    results: List[Dict[str, Any]] = []
    if transfers:
        try:
            results = payouts_executor.execute_transfers(order_id, transfers)
        except MarketplaceError as e:
            logger.exception("orders.confirm transfers rejected order_id=%s", order_id)
            results = [{"vendor_id": t["vendor_id"], "sub_order_id": t["sub_order_id"],
                        "status": "failed", "error": e.detail} for t in transfers]
    return results + skipped

def confirm_payment(order_id: str, payment_intent_id: str, amount_received: Any, currency: str) -> Dict[str, Any]:
    """
    pending|processing -> paid (transition conditionnelle: un seul appel gagnant).
    - Revalide référence et montant côté propriétaire de la commande (défense en profondeur).
    - Les montants ne sont jamais recalculés: seul le statut change.
    - Puis sous-commandes -> processing et transferts vendeurs.
    """
    require_uuid(order_id, "order_id")
    order = orders_repository.get_order(order_id)
    if not order:
        raise OrderNotFound("Commande introuvable")
    if order.get("payment_status") == "paid":
        return {"status": "already_paid", "order_id": order_id}

    if not payment_intent_id or order.get("payment_intent_id") != payment_intent_id:
        logger.critical("security.payment_reference_mismatch order_id=%s expected=%s received=%s",
                        order_id, order.get("payment_intent_id"), payment_intent_id)
        raise PaymentReferenceMismatch("Référence de paiement incohérente")
    expected = to_minor_units(order["grand_total"])
    try:
        received = int(amount_received)
    except (TypeError, ValueError):
        raise InvalidRequest("amount_received invalide")
    if received != expected:
        logger.critical("security.amount_mismatch order_id=%s expected=%s received=%s",
                        order_id, expected, received)
        raise AmountMismatch("Montant reçu différent du total de la commande")
    if str(currency or "").lower() != str(order.get("currency") or STRIPE_CURRENCY).lower():
        raise InvalidRequest("Devise incohérente")

    paid_at = datetime.now(timezone.utc).isoformat()
    paid = orders_repository.mark_order_paid(order_id, payment_intent_id, paid_at)
    if paid is None:
        logger.info("orders.confirm lost transition order_id=%s", order_id)
        return {"status": "already_paid", "order_id": order_id}

    orders_repository.update_sub_orders_status(order_id, "processing", from_statuses=["pending"])
    logger.info("orders.paid order_id=%s intent=%s amount=%s", order_id, payment_intent_id, received)
    try:
        transfers = _run_transfers(order_id)
    except Exception:
        # la commande est payée; les transferts sont rejouables via /payments/execute-transfers
        logger.exception("orders.confirm transfers not executed order_id=%s", order_id)
        transfers = []
    return {"status": "confirmed", "order_id": order_id, "paid_at": paid_at, "transfers": transfers}
