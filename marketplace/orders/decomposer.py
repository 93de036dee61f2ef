"""
Décomposition d'un panier en commande maître + sous-commandes vendeur.

Fonctions pures (aucun I/O): le service orders s'occupe de la persistance et du paiement.
- Un seul arrondi (half-up, 2 décimales) appliqué une fois à la création.
- commission + payout vendeur == total de la sous-commande, au centime.
- total commande == somme des totaux de sous-commandes.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import hashlib
import json
import secrets

from marketplace.config import ORDER_NUMBER_PREFIX
from marketplace.errors import EmptyCart, InvalidRequest
from marketplace.utils.money import ZERO, fmt, percentage_of, quantize, to_decimal

def generate_order_number(now: Optional[datetime] = None, prefix: str = ORDER_NUMBER_PREFIX) -> str:
    """ORD-YYYYMMDD-XXXXXX (date + suffixe aléatoire hexadécimal)."""
    now = now or datetime.now(timezone.utc)
    return f"{prefix}-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"

def sub_order_number(order_number: str, sequence: int) -> str:
    return f"{order_number}-{sequence}"

def cart_fingerprint(buyer_id: str, cart: Dict[str, Any]) -> str:
    """Empreinte stable d'un instantané de panier (lignes + livraison), indépendante de l'ordre JSON."""
    lines = sorted(
        (str(i["product_id"]), str(i.get("variant_id") or ""), int(i["quantity"]), fmt(i["unit_price"]))
        for i in cart.get("items") or []
    )
    shipping = sorted(
        (str(vid), str(c.get("method") or ""), fmt(c.get("cost") or ZERO))
        for vid, c in (cart.get("shipping") or {}).items()
    )
    raw = json.dumps({"buyer": str(buyer_id), "lines": lines, "shipping": shipping})
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]

def _validate_rate(rate: Any) -> Decimal:
    try:
        value = to_decimal(rate)
    except ValueError:
        raise InvalidRequest("Taux de commission invalide")
    if value < 0 or value > 100:
        raise InvalidRequest("Le taux de commission doit être compris entre 0 et 100")
    return value

def split_commission(total: Any, rate: Any) -> Dict[str, Decimal]:
    """Commission = total × taux (arrondie une fois); payout = total − commission."""
    total = quantize(total)
    commission = percentage_of(total, _validate_rate(rate))
    return {"total": total, "commission_amount": commission, "vendor_payout": total - commission}

def plan_order(cart: Dict[str, Any], commission_rate: Any) -> Dict[str, Any]:
    """
    Calcule le plan de commande à partir des partitions vendeur du panier.
    - sub_orders suivent l'ordre des partitions (séquence 1-based, déterministe pour un panier donné).
    - les lignes utilisent le prix figé dans le panier, jamais le prix catalogue courant.
    - application_fee = somme des commissions de sous-commandes (conserve les centimes).
    """
    vendors = cart.get("vendors") or []
    if not cart.get("items") or not vendors:
        raise EmptyCart("Le panier est vide")
    rate = _validate_rate(commission_rate)

    sub_orders: List[Dict[str, Any]] = []
    subtotal = ZERO
    shipping_total = ZERO
    fee = ZERO
    for sequence, partition in enumerate(vendors, start=1):
        items = []
        part_subtotal = ZERO
        for item in partition["items"]:
            unit_price = quantize(item["unit_price"])
            quantity = int(item["quantity"])
            line_total = quantize(unit_price * quantity)
            part_subtotal += line_total
            items.append({
                "product_id": str(item["product_id"]),
                "variant_id": item.get("variant_id"),
                "title": item.get("title"),
                "quantity": quantity,
                "unit_price": unit_price,
                "total_price": line_total,
            })
        shipping_cost = quantize(partition.get("shipping_cost") or ZERO)
        split = split_commission(part_subtotal + shipping_cost, rate)
        sub_orders.append({
            "vendor_id": str(partition["vendor_id"]),
            "sequence": sequence,
            "subtotal": part_subtotal,
            "shipping_method": partition.get("shipping_method"),
            "shipping_cost": shipping_cost,
            "total": split["total"],
            "commission_rate": rate,
            "commission_amount": split["commission_amount"],
            "vendor_payout": split["vendor_payout"],
            "items": items,
        })
        subtotal += part_subtotal
        shipping_total += shipping_cost
        fee += split["commission_amount"]

    return {
        "subtotal": subtotal,
        "shipping_total": shipping_total,
        "grand_total": subtotal + shipping_total,
        "application_fee": fee,
        "commission_rate": rate,
        "sub_orders": sub_orders,
    }
