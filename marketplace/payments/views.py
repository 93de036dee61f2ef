# module marketplace.payments.views

"""Endpoints internes du service paiement (/api/v1/payments).
- /create-intent: PaymentIntent idempotent par commande.
- /execute-transfers: transferts vendeurs d'une commande payée (rejeu manuel après échec partiel).
Sécurité: require_internal_service (X-Internal-Service + X-Internal-Secret).
"""
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from marketplace.payments import intents
from marketplace.payouts import executor as payouts_executor
from marketplace.utils.money import fmt
from marketplace.utils.security import require_internal_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments", tags=["Payments API"])

class CreateIntentRequest(BaseModel):
    order_id: str
    amount: str
    application_fee: str = "0"
    metadata: Optional[Dict[str, Any]] = None

class TransferItem(BaseModel):
    vendor_id: str
    sub_order_id: str
    stripe_account_id: str
    vendor_payout: str
    commission_amount: str = "0"

class ExecuteTransfersRequest(BaseModel):
    order_id: str
    transfers: List[TransferItem] = Field(default_factory=list)

@router.post("/create-intent")
def create_intent(req: CreateIntentRequest, service: str = Depends(require_internal_service)) -> Dict[str, Any]:
    result = intents.create_intent(req.order_id, req.amount, req.application_fee, req.metadata)
    return {**result, "amount": fmt(result["amount"]), "application_fee": fmt(result["application_fee"])}

@router.post("/execute-transfers")
def execute_transfers(req: ExecuteTransfersRequest, service: str = Depends(require_internal_service)) -> Dict[str, Any]:
    """Un résultat par transfert, même ordre; un échec vendeur n'interrompt pas les autres."""
    results = payouts_executor.execute_transfers(req.order_id, [t.model_dump() for t in req.transfers])
    return {
        "order_id": req.order_id,
        "results": results,
        "succeeded": sum(1 for r in results if r["status"] == "success"),
        "failed": sum(1 for r in results if r["status"] == "failed"),
    }
