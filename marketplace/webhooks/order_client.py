"""
Client HTTP vers le service propriétaire des commandes (appels internes authentifiés).

- Credential de service (X-Internal-Service / X-Internal-Secret), jamais un JWT utilisateur.
- Timeout borné: timeout / erreur réseau / 5xx => OrderServiceUnavailable (retryable),
  ce n'est la preuve ni d'un succès ni d'un échec.
"""
from typing import Any, Dict
import logging

import httpx

from marketplace.config import (
    INTERNAL_HTTP_TIMEOUT,
    INTERNAL_SERVICE_NAME,
    INTERNAL_SERVICE_SECRET,
    ORDER_SERVICE_URL,
)
from marketplace.errors import InvalidRequest, OrderNotFound, OrderServiceUnavailable
from marketplace.utils.security import internal_headers

logger = logging.getLogger(__name__)

def _client() -> httpx.Client:
    return httpx.Client(
        base_url=ORDER_SERVICE_URL,
        timeout=INTERNAL_HTTP_TIMEOUT,
        headers=internal_headers(INTERNAL_SERVICE_NAME, INTERNAL_SERVICE_SECRET),
    )

def _request(method: str, path: str, **kwargs) -> Dict[str, Any]:
    try:
        with _client() as client:
            response = client.request(method, path, **kwargs)
    except httpx.HTTPError as e:
        logger.error("order_client %s %s failed: %s", method, path, e)
        raise OrderServiceUnavailable("Service commandes injoignable")

    if response.status_code == 404:
        raise OrderNotFound("Commande introuvable")
    if response.status_code >= 500:
        logger.error("order_client %s %s status=%s", method, path, response.status_code)
        raise OrderServiceUnavailable(f"Service commandes en erreur ({response.status_code})")
    if response.status_code >= 400:
        logger.error("order_client %s %s rejected status=%s body=%s",
                     method, path, response.status_code, response.text[:500])
        raise InvalidRequest(f"Requête refusée par le service commandes ({response.status_code})")
    return response.json()

def verify_order(order_id: str) -> Dict[str, Any]:
    """{id, grand_total, payment_intent_id, payment_status, buyer_id}"""
    return _request("GET", f"/api/v1/orders/{order_id}/verify")

def confirm_order_payment(order_id: str, payment_intent_id: str, amount_received: int, currency: str) -> Dict[str, Any]:
    return _request(
        "POST",
        f"/api/v1/orders/{order_id}/confirm-payment",
        json={"payment_intent_id": payment_intent_id, "amount_received": amount_received, "currency": currency},
    )
