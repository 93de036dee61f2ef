"""
Passerelle d'intention de paiement (un seul PaymentIntent par commande maître).

- La clé d'idempotence ne dépend QUE de l'order_id: deux appels pour la même commande
  retombent sur la même autorisation côté Stripe (défense principale contre le double débit).
- Les montants partent en centimes, arrondis half-up.
- Les erreurs Stripe sont traduites: carte refusée -> PaymentRejected, requête invalide ->
  InvalidRequest, panne/timeout -> PaymentServiceUnavailable (retry à la charge de l'appelant).
"""
from typing import Any, Dict, Optional
import logging

import stripe

from marketplace.config import MAX_CHARGE_AMOUNT, STRIPE_CURRENCY
from marketplace.errors import (
    InvalidAmount,
    InvalidFee,
    InvalidRequest,
    PaymentRejected,
    PaymentServiceUnavailable,
)
from marketplace.payments import stripe_client
from marketplace.utils.money import quantize, to_decimal, to_minor_units
from marketplace.utils.validators import require_uuid

logger = logging.getLogger(__name__)

def idempotency_key_for(order_id: str) -> str:
    return f"payment_intent:{order_id}"

def transfer_group_for(order_id: str) -> str:
    return f"ORDER_{order_id}"

def _checked_amounts(amount: Any, application_fee: Any):
    try:
        amount_dec = quantize(amount)
    except ValueError:
        raise InvalidAmount("Montant invalide")
    if amount_dec <= 0 or amount_dec > MAX_CHARGE_AMOUNT:
        raise InvalidAmount(f"Le montant doit être compris entre 0.01 et {MAX_CHARGE_AMOUNT}")
    try:
        fee_dec = quantize(application_fee)
    except ValueError:
        raise InvalidFee("Commission invalide")
    if fee_dec < 0 or fee_dec > amount_dec:
        raise InvalidFee("La commission doit être comprise entre 0 et le montant")
    return amount_dec, fee_dec

def map_stripe_error(exc: Exception, context: str):
    """Traduit une erreur SDK Stripe en MarketplaceError (à lever par l'appelant)."""
    if isinstance(exc, stripe.CardError):
        return PaymentRejected(getattr(exc, "user_message", None) or "Paiement refusé")
    if isinstance(exc, (stripe.InvalidRequestError, stripe.IdempotencyError)):
        logger.error("%s invalid request: %s", context, exc)
        return InvalidRequest("Requête de paiement invalide")
    logger.error("%s provider unavailable: %s", context, exc)
    return PaymentServiceUnavailable("Service de paiement indisponible, réessayez")

def create_intent(order_id: str, amount: Any, application_fee: Any,
                  metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Crée (ou retrouve, via idempotence) l'intention de paiement d'une commande.
    - Validation avant tout appel réseau: order_id UUID, 0 < amount <= plafond, 0 <= fee <= amount.
    Retour: {provider_id, client_secret, amount, application_fee, status}
    """
    order_id = require_uuid(order_id, "order_id")
    amount_dec, fee_dec = _checked_amounts(amount, application_fee)

    meta = {str(k): str(v) for k, v in (metadata or {}).items() if v is not None}
    meta["order_id"] = order_id
    try:
        intent = stripe_client.create_payment_intent(
            amount=to_minor_units(amount_dec),
            currency=STRIPE_CURRENCY,
            application_fee_amount=to_minor_units(fee_dec),
            transfer_group=transfer_group_for(order_id),
            metadata=meta,
            idempotency_key=idempotency_key_for(order_id),
        )
    except stripe.StripeError as e:
        raise map_stripe_error(e, f"payments.create_intent order_id={order_id}")

    logger.info("payments.intent_created order_id=%s intent=%s amount=%s fee=%s",
                order_id, intent.get("id"), amount_dec, fee_dec)
    return {
        "provider_id": intent.get("id"),
        "client_secret": intent.get("client_secret"),
        "amount": amount_dec,
        "application_fee": fee_dec,
        "status": intent.get("status"),
    }

def cancel_intent(payment_intent_id: str) -> None:
    try:
        stripe_client.cancel_payment_intent(payment_intent_id)
    except stripe.StripeError as e:
        raise map_stripe_error(e, f"payments.cancel_intent intent={payment_intent_id}")
    logger.info("payments.intent_cancelled intent=%s", payment_intent_id)

def expected_minor_units(grand_total: Any) -> int:
    return to_minor_units(to_decimal(grand_total))
