"""
Vérification et traitement des webhooks Stripe.

Machine d'état par commande: pending -> paid (succès terminal); une redélivrance n'a aucun effet.
1. Signature vérifiée sur le body brut (jamais re-sérialisé): échec => InvalidSignature, rien n'est traité.
2. Type inconnu => loggé et acquitté (no-op).
3. payment_intent.succeeded: order_id en metadata (sinon MissingOrderMetadata), commande autoritative
   lue via le service commandes puis, dans l'ordre: montant exact, référence PaymentIntent,
   statut encore payable (déjà 'paid' => doublon bénin).
4. Seulement ensuite: confirmation auprès du service commandes.
5. Toute exception pendant le traitement d'un événement vérifié devient une ligne du ledger
   et l'acquittement signale l'échec (Stripe rejouera de son côté); un échec de contrôle de sécurité
   est enregistré directement 'abandoned' (metadata.security), sans retry automatique.
"""
from typing import Any, Dict, Optional, Tuple
import json
import logging
import traceback

import stripe

from marketplace.errors import (
    AmountMismatch,
    InvalidRequest,
    InvalidSignature,
    MarketplaceError,
    MissingOrderMetadata,
    PaymentReferenceMismatch,
    PayoutNotFound,
    PersistenceError,
)
from marketplace.payments import stripe_client
from marketplace.payouts import repository as payouts_repository
from marketplace.utils.money import to_minor_units
from marketplace.vendors import repository as vendors_repository
from marketplace.webhooks import ledger, order_client
from marketplace.webhooks.events import EventKind, classify, event_object

logger = logging.getLogger(__name__)

PAYABLE_STATUSES = ("pending", "processing")
# contrôles de sécurité: le payload stocké ne changera pas, un rejeu échouerait à l'identique
NON_RETRYABLE_ERRORS = (MissingOrderMetadata, AmountMismatch, PaymentReferenceMismatch)
SECURITY_ABANDON_REASON = "security check failed, not retried automatically"

def failure_disposition(error: Exception, metadata: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
    """(status ledger, metadata) pour une erreur de traitement: 'abandoned' + security=true si non rejouable."""
    if isinstance(error, NON_RETRYABLE_ERRORS):
        return "abandoned", {**metadata, "security": True, "abandon_reason": SECURITY_ABANDON_REASON}
    return "failed", metadata

def verify_event(raw_payload: bytes, signature_header: Optional[str], source_ip: Optional[str] = None) -> Dict[str, Any]:
    """Valide la signature puis retourne l'événement sous forme de dict (issu du body vérifié)."""
    try:
        stripe_client.construct_event(raw_payload, signature_header)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("security.invalid_webhook_signature ip=%s reason=%s", source_ip, e)
        raise InvalidSignature("Signature webhook invalide")
    try:
        event = json.loads(raw_payload)
    except ValueError:
        raise InvalidSignature("Payload webhook illisible")
    if not isinstance(event, dict):
        raise InvalidSignature("Payload webhook illisible")
    return event

def confirm_payment_succeeded(intent: Dict[str, Any]) -> Dict[str, Any]:
    intent_id = intent.get("id")
    order_id = (intent.get("metadata") or {}).get("order_id")
    if not order_id:
        logger.error("webhooks.payment_succeeded missing order_id intent=%s", intent_id)
        raise MissingOrderMetadata(f"order_id absent des metadata du PaymentIntent {intent_id}")

    order = order_client.verify_order(order_id)

    received = intent.get("amount_received")
    if received is None:
        received = intent.get("amount")
    expected = to_minor_units(order.get("grand_total"))
    if received is None or int(received) != expected:
        logger.critical("security.amount_mismatch order_id=%s intent=%s expected=%s received=%s",
                        order_id, intent_id, expected, received)
        raise AmountMismatch(f"Montant reçu {received} != attendu {expected}")

    if not intent_id or intent_id != order.get("payment_intent_id"):
        logger.critical("security.payment_reference_mismatch order_id=%s expected=%s received=%s",
                        order_id, order.get("payment_intent_id"), intent_id)
        raise PaymentReferenceMismatch("PaymentIntent différent de celui de la commande")

    status = order.get("payment_status")
    if status == "paid":
        logger.info("webhooks.payment_succeeded duplicate order_id=%s intent=%s", order_id, intent_id)
        return {"status": "already_paid", "order_id": order_id}
    if status not in PAYABLE_STATUSES:
        raise InvalidRequest(f"Commande {order_id} non payable (statut {status})")

    result = order_client.confirm_order_payment(order_id, intent_id, int(received), intent.get("currency") or "")
    logger.info("webhooks.payment_confirmed order_id=%s intent=%s status=%s", order_id, intent_id, result.get("status"))
    return {"status": result.get("status") or "confirmed", "order_id": order_id}

def _transfer_update(transfer: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    transfer_id = transfer.get("id")
    if not transfer_id:
        raise InvalidRequest("Transfert sans identifiant")
    payout = payouts_repository.update_payout_by_transfer(transfer_id, fields)
    if payout is None:
        # livraison avant l'enregistrement du payout: le retry du ledger rattrapera
        raise PayoutNotFound(f"Aucun payout pour le transfert {transfer_id}")
    return {"status": fields["status"], "transfer_id": transfer_id, "payout_id": payout.get("id")}

def process_verified_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """Dispatch d'un événement déjà authentifié (partagé avec le retry du ledger)."""
    kind = classify(event)
    obj = event_object(event)
    if kind is EventKind.PAYMENT_SUCCEEDED:
        return confirm_payment_succeeded(obj)
    if kind is EventKind.TRANSFER_CREATED:
        return _transfer_update(obj, {"status": "paid"})
    if kind is EventKind.TRANSFER_FAILED:
        reason = obj.get("failure_message") or event.get("type")
        # échec constaté par Stripe: un rejeu doit partir sur une nouvelle clé
        return _transfer_update(obj, {"status": "failed", "failure_reason": reason, "retryable": False})
    if kind is EventKind.ACCOUNT_UPDATED:
        completed = bool(obj.get("charges_enabled")) and bool(obj.get("payouts_enabled"))
        found = vendors_repository.set_onboarding_status(obj.get("id"), completed)
        return {"status": "account_updated", "onboarding_completed": completed, "vendor_found": found}
    logger.info("webhooks.ignored type=%s id=%s", event.get("type"), event.get("id"))
    return {"status": "ignored"}

def handle_event(raw_payload: bytes, signature_header: Optional[str],
                 request_meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Point d'entrée du webhook.
    - InvalidSignature est levée (=> 400): rien n'est enregistré.
    - Retour: {"received": True, ...} si traité (ou ignoré), {"received": False, ...} si échec enregistré.
    """
    meta = request_meta or {}
    source_ip = meta.get("source_ip")
    event = verify_event(raw_payload, signature_header, source_ip)
    event_id, event_type = event.get("id"), event.get("type")

    try:
        result = process_verified_event(event)
    except Exception as e:
        logger.exception("webhooks.processing_failed id=%s type=%s", event_id, event_type)
        reason = e.detail if isinstance(e, MarketplaceError) else (str(e) or e.__class__.__name__)
        failure_id = None
        status, metadata = failure_disposition(e, {
            "error_code": getattr(e, "code", e.__class__.__name__),
            "user_agent": meta.get("user_agent"),
        })
        try:
            failure = ledger.record_failure(
                event_type=event_type,
                event_id=event_id,
                payload=event,
                reason=reason,
                trace=traceback.format_exc(),
                source_ip=source_ip,
                metadata=metadata,
                status=status,
            )
            failure_id = failure.get("id")
        except PersistenceError:
            logger.critical("webhooks.failure_not_recorded id=%s type=%s reason=%s", event_id, event_type, reason)
        return {"received": False, "event_id": event_id, "type": event_type, "error": reason, "failure_id": failure_id}

    return {"received": True, "event_id": event_id, "type": event_type, **result}
