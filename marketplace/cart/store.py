"""
Stockage des paniers dans Redis.

- Un document JSON par acheteur sous la clé cart:{buyer_id}, expirant après CART_TTL_SECONDS.
- Chaque lecture renouvelle le TTL (GET + EXPIRE dans un même pipeline).
- Chaque mutation passe par une boucle WATCH/MULTI/EXEC: le panier relu, muté puis recalculé
  n'est écrit que si personne ne l'a modifié entre-temps (sinon on recommence).
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import json
import logging

import redis
from redis.exceptions import RedisError, WatchError

from marketplace.config import CART_TTL_SECONDS
from marketplace.errors import PersistenceError
from marketplace.utils.money import ZERO, fmt, quantize

logger = logging.getLogger(__name__)

CART_KEY_PREFIX = "cart:"
DEFAULT_MAX_RETRIES = 10

def cart_key(buyer_id: str) -> str:
    return f"{CART_KEY_PREFIX}{buyer_id}"

def empty_cart(buyer_id: str) -> Dict[str, Any]:
    return recompute_cart({"buyer_id": str(buyer_id), "items": [], "shipping": {}})

def recompute_cart(cart: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recalcule les partitions vendeur et les totaux à partir des lignes.
    - vendors: une partition par vendeur, dans l'ordre de première apparition dans items.
    - total partition = sous-total + frais de port choisis pour ce vendeur.
    - les choix de livraison des vendeurs qui ne sont plus dans le panier sont supprimés.
    """
    items: List[Dict[str, Any]] = cart.get("items") or []
    shipping: Dict[str, Dict[str, Any]] = cart.get("shipping") or {}

    partitions: Dict[str, Dict[str, Any]] = {}
    for item in items:
        vendor_id = str(item["vendor_id"])
        part = partitions.setdefault(vendor_id, {"vendor_id": vendor_id, "items": [], "subtotal": ZERO})
        line_total = quantize(quantize(item["unit_price"]) * int(item["quantity"]))
        item["total_price"] = fmt(line_total)
        part["items"].append(item)
        part["subtotal"] += line_total

    shipping = {vid: choice for vid, choice in shipping.items() if vid in partitions}

    vendors: List[Dict[str, Any]] = []
    subtotal = ZERO
    shipping_total = ZERO
    for vendor_id, part in partitions.items():
        choice = shipping.get(vendor_id) or {}
        cost = quantize(choice.get("cost") or ZERO)
        vendors.append({
            "vendor_id": vendor_id,
            "items": part["items"],
            "subtotal": fmt(part["subtotal"]),
            "shipping_method": choice.get("method"),
            "shipping_cost": fmt(cost),
            "total": fmt(part["subtotal"] + cost),
        })
        subtotal += part["subtotal"]
        shipping_total += cost

    cart["items"] = items
    cart["shipping"] = shipping
    cart["vendors"] = vendors
    cart["item_count"] = sum(int(i["quantity"]) for i in items)
    cart["subtotal"] = fmt(subtotal)
    cart["shipping_total"] = fmt(shipping_total)
    cart["total"] = fmt(subtotal + shipping_total)
    return cart


class CartStore:
    """Accès atomique par acheteur au panier stocké dans Redis."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = CART_TTL_SECONDS,
                 max_retries: int = DEFAULT_MAX_RETRIES):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.max_retries = max_retries

    def _decode(self, buyer_id: str, raw: Optional[str]) -> Dict[str, Any]:
        if not raw:
            return empty_cart(buyer_id)
        try:
            cart = json.loads(raw)
        except ValueError:
            logger.warning("cart.store corrupted cart discarded buyer_id=%s", buyer_id)
            return empty_cart(buyer_id)
        cart.setdefault("buyer_id", str(buyer_id))
        cart.setdefault("items", [])
        cart.setdefault("shipping", {})
        return cart

    def load(self, buyer_id: str) -> Dict[str, Any]:
        """Lit le panier et renouvelle son expiration; un panier expiré est vide, pas une erreur."""
        key = cart_key(buyer_id)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.get(key)
            pipe.expire(key, self.ttl_seconds)
            raw, _ = pipe.execute()
        except RedisError:
            logger.exception("cart.store.load failed buyer_id=%s", buyer_id)
            raise PersistenceError("Stockage panier indisponible")
        return self._decode(buyer_id, raw)

    def mutate(self, buyer_id: str, mutator: Callable[[Dict[str, Any]], None]) -> Dict[str, Any]:
        """
        Applique mutator(cart) de façon atomique (compare-and-swap optimiste).
        - mutator modifie cart["items"] / cart["shipping"] en place et peut lever une MarketplaceError
          (aucune écriture n'a lieu dans ce cas).
        - le panier est recalculé avant écriture; un panier sans ligne est supprimé.
        """
        key = cart_key(buyer_id)
        for attempt in range(1, self.max_retries + 1):
            try:
                with self.client.pipeline() as pipe:
                    pipe.watch(key)
                    cart = self._decode(buyer_id, pipe.get(key))
                    mutator(cart)
                    recompute_cart(cart)
                    cart["updated_at"] = datetime.now(timezone.utc).isoformat()
                    pipe.multi()
                    if cart["items"]:
                        pipe.set(key, json.dumps(cart), ex=self.ttl_seconds)
                    else:
                        pipe.delete(key)
                    pipe.execute()
                    return cart
            except WatchError:
                logger.info("cart.store.mutate conflict buyer_id=%s attempt=%s", buyer_id, attempt)
                continue
            except RedisError:
                logger.exception("cart.store.mutate failed buyer_id=%s", buyer_id)
                raise PersistenceError("Stockage panier indisponible")
        logger.error("cart.store.mutate gave up buyer_id=%s retries=%s", buyer_id, self.max_retries)
        raise PersistenceError("Panier modifié en concurrence, réessayez")

    def delete(self, buyer_id: str) -> None:
        try:
            self.client.delete(cart_key(buyer_id))
        except RedisError:
            logger.exception("cart.store.delete failed buyer_id=%s", buyer_id)
            raise PersistenceError("Stockage panier indisponible")
