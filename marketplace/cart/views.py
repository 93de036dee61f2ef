# module marketplace.cart.views

"""Endpoints panier (/api/v1/cart).
- Toutes les routes exigent un acheteur authentifié (require_user); le panier est celui du token.
- Les mutations sont rate-limitées (optional_rate_limit).
- Les erreurs métier (MarketplaceError) sont converties en JSON par le handler global.
"""
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from marketplace.cart import service as cart_service
from marketplace.utils.rate_limit import optional_rate_limit
from marketplace.utils.security import require_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/cart", tags=["Cart API"])

class AddItemRequest(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int
    variant_id: Optional[str] = None

class UpdateQuantityRequest(BaseModel):
    quantity: int
    variant_id: Optional[str] = None

class ShippingMethodRequest(BaseModel):
    method: str = Field(min_length=1)
    cost: str

@router.get("")
def get_cart(user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    """Panier courant (vide si expiré); la lecture renouvelle l'expiration."""
    return cart_service.get_cart(user["id"])

@router.post("/items", dependencies=[Depends(optional_rate_limit(times=30, seconds=60))])
def add_item(req: AddItemRequest, user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    return cart_service.add_item(user["id"], req.product_id, req.quantity, req.variant_id)

@router.patch("/items/{product_id}", dependencies=[Depends(optional_rate_limit(times=30, seconds=60))])
def update_item(product_id: str, req: UpdateQuantityRequest, user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    """Quantité 0 => suppression de la ligne."""
    return cart_service.update_quantity(user["id"], product_id, req.quantity, req.variant_id)

@router.delete("/items/{product_id}", dependencies=[Depends(optional_rate_limit(times=30, seconds=60))])
def remove_item(product_id: str, variant_id: Optional[str] = None,
                user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    return cart_service.remove_item(user["id"], product_id, variant_id)

@router.put("/shipping/{vendor_id}", dependencies=[Depends(optional_rate_limit(times=30, seconds=60))])
def set_shipping(vendor_id: str, req: ShippingMethodRequest,
                 user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    return cart_service.set_shipping_method(user["id"], vendor_id, req.method, req.cost)

@router.delete("")
def clear_cart(user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    cart_service.clear_cart(user["id"])
    return {"status": "cleared"}
