"""
Exécution des transferts vendeurs après paiement confirmé.

- Validation complète du lot AVANT tout transfert (InvalidRequest, aucun appel Stripe).
- Lot plafonné à MAX_TRANSFERS_PER_CALL (rejeté au-delà, jamais découpé automatiquement).
- Chaque transfert est isolé: un échec produit un payout 'failed' + raison, puis on continue.
- Résultats: un par entrée, dans le même ordre.
"""
from typing import Any, Dict, List
import logging

import stripe

from marketplace.config import MAX_CHARGE_AMOUNT, MAX_TRANSFERS_PER_CALL, STRIPE_CURRENCY
from marketplace.errors import InvalidRequest, PersistenceError
from marketplace.payments import stripe_client
from marketplace.payments.intents import transfer_group_for
from marketplace.payouts import repository as payouts_repository
from marketplace.utils.money import fmt, quantize, to_minor_units
from marketplace.utils.validators import is_stripe_account_id, require_uuid

logger = logging.getLogger(__name__)

# Stripe a pu exécuter la requête: l'issue est inconnue, le rejeu garde la même clé
TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.APIError, stripe.RateLimitError)

def transfer_idempotency_key(sub_order_id: str, attempt: int) -> str:
    """
    attempt = nombre de rejets définitifs déjà enregistrés pour la sous-commande.
    Un rejeu après timeout retombe donc sur le même transfert Stripe; seul un rejet change la clé.
    """
    return f"transfer:{sub_order_id}:{attempt}"

def validate_transfers(order_id: str, transfers: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    require_uuid(order_id, "order_id")
    if not isinstance(transfers, list) or not transfers:
        raise InvalidRequest("Au moins un transfert est requis")
    if len(transfers) > MAX_TRANSFERS_PER_CALL:
        raise InvalidRequest(f"Maximum {MAX_TRANSFERS_PER_CALL} transferts par appel")

    normalized = []
    for index, t in enumerate(transfers):
        if not isinstance(t, dict):
            raise InvalidRequest(f"transfers[{index}] invalide")
        vendor_id = require_uuid(t.get("vendor_id"), f"transfers[{index}].vendor_id")
        sub_order_id = require_uuid(t.get("sub_order_id"), f"transfers[{index}].sub_order_id")
        try:
            payout = quantize(t.get("vendor_payout"))
            commission = quantize(t.get("commission_amount") or 0)
        except ValueError:
            raise InvalidRequest(f"transfers[{index}] montant invalide")
        if payout <= 0 or payout > MAX_CHARGE_AMOUNT:
            raise InvalidRequest(f"transfers[{index}].vendor_payout hors limites")
        if commission < 0:
            raise InvalidRequest(f"transfers[{index}].commission_amount négatif")
        account = t.get("stripe_account_id")
        if not is_stripe_account_id(account):
            raise InvalidRequest(f"transfers[{index}].stripe_account_id invalide")
        normalized.append({
            "vendor_id": vendor_id,
            "sub_order_id": sub_order_id,
            "stripe_account_id": account,
            "vendor_payout": payout,
            "commission_amount": commission,
        })
    return normalized

def _payout_row(t: Dict[str, Any], status: str, **extra) -> Dict[str, Any]:
    row = {
        "vendor_id": t["vendor_id"],
        "sub_order_id": t["sub_order_id"],
        "gross_amount": fmt(t["vendor_payout"] + t["commission_amount"]),
        "commission_amount": fmt(t["commission_amount"]),
        "net_amount": fmt(t["vendor_payout"]),
        "status": status,
    }
    row.update(extra)
    return row

def _execute_one(order_id: str, t: Dict[str, Any]) -> Dict[str, Any]:
    result = {"vendor_id": t["vendor_id"], "sub_order_id": t["sub_order_id"], "amount": fmt(t["vendor_payout"])}

    existing = payouts_repository.find_active_payout(t["sub_order_id"])
    if existing:
        result.update(status="already_transferred", transfer_id=existing.get("stripe_transfer_id"))
        return result

    attempt = payouts_repository.count_rejected_payouts(t["sub_order_id"])
    try:
        transfer = stripe_client.create_transfer(
            amount=to_minor_units(t["vendor_payout"]),
            currency=STRIPE_CURRENCY,
            destination=t["stripe_account_id"],
            transfer_group=transfer_group_for(order_id),
            metadata={"order_id": order_id, "sub_order_id": t["sub_order_id"], "vendor_id": t["vendor_id"]},
            idempotency_key=transfer_idempotency_key(t["sub_order_id"], attempt),
        )
    except stripe.StripeError as e:
        reason = getattr(e, "user_message", None) or str(e) or e.__class__.__name__
        transient = isinstance(e, TRANSIENT_STRIPE_ERRORS)
        logger.error("payouts.transfer_failed order_id=%s sub_order_id=%s vendor_id=%s transient=%s reason=%s",
                     order_id, t["sub_order_id"], t["vendor_id"], transient, reason)
        payouts_repository.insert_payout(_payout_row(t, "failed", failure_reason=reason, retryable=transient))
        result.update(status="failed", error=reason, retryable=transient)
        return result

    try:
        payouts_repository.insert_payout(_payout_row(t, "processing", stripe_transfer_id=transfer.get("id")))
    except PersistenceError:
        # transfert effectué côté Stripe: ligne à réconcilier
        logger.critical("payouts.record_missing order_id=%s sub_order_id=%s transfer=%s",
                        order_id, t["sub_order_id"], transfer.get("id"))
        result.update(status="success", transfer_id=transfer.get("id"), error="payout_record_failed")
        return result
    logger.info("payouts.transfer_created order_id=%s sub_order_id=%s transfer=%s amount=%s",
                order_id, t["sub_order_id"], transfer.get("id"), t["vendor_payout"])
    result.update(status="success", transfer_id=transfer.get("id"))
    return result

def execute_transfers(order_id: str, transfers: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Transfère à chaque vendeur sa part (payout net) pour une commande payée.
    Retour: [{vendor_id, sub_order_id, amount, status: success|failed|already_transferred, transfer_id?, error?, retryable?}]
    """
    normalized = validate_transfers(order_id, transfers)
    results: List[Dict[str, Any]] = []
    for t in normalized:
        try:
            results.append(_execute_one(order_id, t))
        except Exception as e:
            # échec hors Stripe (ex: persistance): isolé comme les autres
            logger.exception("payouts.execute_transfers unexpected order_id=%s sub_order_id=%s",
                             order_id, t["sub_order_id"])
            results.append({
                "vendor_id": t["vendor_id"],
                "sub_order_id": t["sub_order_id"],
                "amount": fmt(t["vendor_payout"]),
                "status": "failed",
                "error": str(e) or e.__class__.__name__,
            })
    succeeded = sum(1 for r in results if r["status"] == "success")
    logger.info("payouts.execute_transfers order_id=%s total=%s success=%s", order_id, len(results), succeeded)
    return results
