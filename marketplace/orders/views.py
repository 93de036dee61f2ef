# module marketplace.orders.views

"""Endpoints commandes (/api/v1/orders).
- /checkout: transforme le panier de l'utilisateur en commande + PaymentIntent (rate-limité).
- lecture / annulation: restreintes au propriétaire (ou admin).
- /{id}/verify et /{id}/confirm-payment: internes, authentifiés par credential de service
  (require_internal_service), jamais par JWT utilisateur.
"""
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from marketplace.orders import service as orders_service
from marketplace.utils.rate_limit import optional_rate_limit
from marketplace.utils.security import require_internal_service, require_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/orders", tags=["Orders API"])

class CheckoutRequest(BaseModel):
    shipping_address: Dict[str, Any]
    billing_address: Optional[Dict[str, Any]] = None
    notes: Optional[str] = Field(default=None, max_length=500)

class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str = Field(min_length=1)
    amount_received: int
    currency: str = Field(min_length=3, max_length=3)

@router.post("/checkout", status_code=201, dependencies=[Depends(optional_rate_limit(times=5, seconds=60))])
def checkout(req: CheckoutRequest, user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    """
    Crée la commande maître, une sous-commande par vendeur et l'intention de paiement.
    - Réponse: {order, sub_orders, payment: {payment_intent_id, client_secret}}
    - Erreurs: 400 panier vide / produit indisponible, 409 stock ou checkout concurrent, 402 carte refusée,
      503 Stripe/Supabase indisponible (aucune commande n'est conservée dans ces cas).
    """
    return orders_service.create_order(user, req.model_dump())

@router.get("")
def list_orders(page: int = 1, limit: int = 20, user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    return orders_service.list_buyer_orders(user["id"], page, limit)

@router.get("/{order_id}")
def get_order(order_id: str, user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    return orders_service.get_order_details(order_id, user)

@router.post("/{order_id}/cancel")
def cancel_order(order_id: str, user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    return orders_service.cancel_order(order_id, user)

@router.get("/{order_id}/verify")
def verify_order(order_id: str, service: str = Depends(require_internal_service)) -> Dict[str, Any]:
    logger.info("orders.verify order_id=%s caller=%s", order_id, service)
    return orders_service.verify_order(order_id)

@router.post("/{order_id}/confirm-payment")
def confirm_payment(order_id: str, req: ConfirmPaymentRequest,
                    service: str = Depends(require_internal_service)) -> Dict[str, Any]:
    logger.info("orders.confirm_payment order_id=%s caller=%s", order_id, service)
    return orders_service.confirm_payment(order_id, req.payment_intent_id, req.amount_received, req.currency)
