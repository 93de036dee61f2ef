"""
Cas d'usage panier: validation des quantités, contrôle catalogue (statut + stock), snapshot de prix.
"""
from typing import Any, Dict, Optional
import logging

import marketplace.infra.redis_client as redis_client
from marketplace.cart.store import CartStore
from marketplace.catalog import repository as catalog_repository
from marketplace.config import CART_MAX_ITEMS, CART_MAX_QUANTITY_PER_ITEM
from marketplace.errors import (
    InsufficientInventory,
    InvalidAmount,
    InvalidQuantity,
    InvalidRequest,
    ItemNotInCart,
    ProductUnavailable,
)
from marketplace.utils.money import fmt, to_decimal

logger = logging.getLogger(__name__)

# module marketplace.cart.service
def get_store() -> CartStore:
    return CartStore(redis_client.get_redis())

def _validate_quantity(quantity: Any, *, allow_zero: bool = False) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidQuantity("La quantité doit être un entier")
    minimum = 0 if allow_zero else 1
    if quantity < minimum or quantity > CART_MAX_QUANTITY_PER_ITEM:
        raise InvalidQuantity(
            f"La quantité doit être comprise entre {minimum} et {CART_MAX_QUANTITY_PER_ITEM}"
        )
    return quantity

def _purchasable_product(product_id: str) -> Dict[str, Any]:
    product = catalog_repository.get_product(product_id)
    if not product or str(product.get("status") or "").lower() != "active":
        raise ProductUnavailable(f"Produit indisponible: {product_id}")
    return product

def check_inventory(product: Dict[str, Any], quantity: int) -> None:
    """Stock suivi insuffisant => InsufficientInventory; stock non suivi => toujours OK."""
    if not product.get("track_inventory"):
        return
    available = int(product.get("inventory_quantity") or 0)
    if quantity > available:
        raise InsufficientInventory(
            f"Stock insuffisant pour {product.get('id')}",
            extra={"available": available, "requested": quantity},
        )

def _find_line(cart: Dict[str, Any], product_id: str, variant_id: Optional[str]) -> Optional[Dict[str, Any]]:
    for item in cart["items"]:
        if item["product_id"] == str(product_id) and item.get("variant_id") == variant_id:
            return item
    return None

def get_cart(buyer_id: str) -> Dict[str, Any]:
    return get_store().load(buyer_id)

def add_item(buyer_id: str, product_id: str, quantity: int, variant_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Ajoute (ou cumule) une ligne au panier.
    - Le prix unitaire est figé au moment de l'ajout (snapshot catalogue).
    - Une ligne existante garde son snapshot; seule la quantité est cumulée.
    """
    quantity = _validate_quantity(quantity)
    product = _purchasable_product(product_id)

    def _apply(cart: Dict[str, Any]) -> None:
        line = _find_line(cart, product_id, variant_id)
        new_quantity = quantity + (int(line["quantity"]) if line else 0)
        if new_quantity > CART_MAX_QUANTITY_PER_ITEM:
            raise InvalidQuantity(f"Quantité maximale par article: {CART_MAX_QUANTITY_PER_ITEM}")
        check_inventory(product, new_quantity)
        if line:
            line["quantity"] = new_quantity
            return
        if len(cart["items"]) >= CART_MAX_ITEMS:
            raise InvalidRequest(f"Le panier est limité à {CART_MAX_ITEMS} articles")
        cart["items"].append({
            "product_id": str(product_id),
            "variant_id": variant_id,
            "vendor_id": str(product["vendor_id"]),
            "title": product.get("title"),
            "quantity": new_quantity,
            "unit_price": fmt(product["price"]),
        })

    cart = get_store().mutate(buyer_id, _apply)
    logger.info("cart.add_item buyer_id=%s product_id=%s quantity=%s", buyer_id, product_id, quantity)
    return cart

def update_quantity(buyer_id: str, product_id: str, quantity: int, variant_id: Optional[str] = None) -> Dict[str, Any]:
    """Quantité 0 => suppression; sinon le produit est revérifié (statut et stock)."""
    quantity = _validate_quantity(quantity, allow_zero=True)
    if quantity == 0:
        return remove_item(buyer_id, product_id, variant_id)
    product = _purchasable_product(product_id)

    def _apply(cart: Dict[str, Any]) -> None:
        line = _find_line(cart, product_id, variant_id)
        if line is None:
            raise ItemNotInCart(f"Article absent du panier: {product_id}")
        check_inventory(product, quantity)
        line["quantity"] = quantity

    return get_store().mutate(buyer_id, _apply)

def remove_item(buyer_id: str, product_id: str, variant_id: Optional[str] = None) -> Dict[str, Any]:
    def _apply(cart: Dict[str, Any]) -> None:
        line = _find_line(cart, product_id, variant_id)
        if line is None:
            raise ItemNotInCart(f"Article absent du panier: {product_id}")
        cart["items"].remove(line)

    return get_store().mutate(buyer_id, _apply)

def set_shipping_method(buyer_id: str, vendor_id: str, method: str, cost: Any) -> Dict[str, Any]:
    """Choix de livraison pour la partition d'un vendeur (le coût vient du service de livraison)."""
    if not method or not str(method).strip():
        raise InvalidRequest("Méthode de livraison requise")
    try:
        amount = to_decimal(cost)
    except ValueError:
        raise InvalidAmount("Frais de port invalides")
    if amount < 0:
        raise InvalidAmount("Les frais de port ne peuvent pas être négatifs")

    def _apply(cart: Dict[str, Any]) -> None:
        if not any(str(i["vendor_id"]) == str(vendor_id) for i in cart["items"]):
            raise InvalidRequest(f"Aucun article du vendeur {vendor_id} dans le panier")
        cart["shipping"][str(vendor_id)] = {"method": str(method).strip(), "cost": fmt(amount)}

    return get_store().mutate(buyer_id, _apply)

def clear_cart(buyer_id: str) -> None:
    get_store().delete(buyer_id)
    logger.info("cart.clear buyer_id=%s", buyer_id)
