# module marketplace.webhooks.views

"""Webhook Stripe (/api/v1/payments/webhook).
- Le body est lu brut (request.body()) et transmis tel quel à la vérification de signature.
- 200 si traité / ignoré, 400 si signature invalide, 500 si l'échec a été enregistré dans le ledger
  (Stripe rejoue selon sa propre politique).
"""
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from marketplace.webhooks import confirmer

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments", tags=["Payments Webhook"])

@router.post("/webhook", include_in_schema=False)
async def stripe_webhook(request: Request):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    meta = {
        "source_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }
    ack = await run_in_threadpool(confirmer.handle_event, payload, signature, meta)
    return JSONResponse(ack, status_code=200 if ack.get("received") else 500)
