"""
Adaptateur Stripe: centralise les appels et la configuration Stripe.
Les services n'importent jamais stripe directement pour créer des objets: ils passent par ici
(monkeypatché dans les tests).
"""
from typing import Any, Dict, Optional
import stripe

from marketplace.config import STRIPE_SECRET_KEY, STRIPE_TIMEOUT_SECONDS, STRIPE_WEBHOOK_SECRET
from marketplace.errors import PaymentServiceUnavailable

# module marketplace.payments.stripe_client
def require_stripe() -> stripe:
    """
    Prépare et retourne le module stripe prêt à l'emploi.
    - stripe.api_key depuis STRIPE_SECRET_KEY (absente => PaymentServiceUnavailable).
    - client HTTP avec timeout borné: un timeout est une erreur retryable, jamais une preuve.
    """
    if not STRIPE_SECRET_KEY:
        raise PaymentServiceUnavailable("STRIPE_SECRET_KEY manquant")
    stripe.api_key = STRIPE_SECRET_KEY
    if stripe.default_http_client is None:
        stripe.default_http_client = stripe.RequestsClient(timeout=STRIPE_TIMEOUT_SECONDS)
    return stripe

def create_payment_intent(
    *,
    amount: int,
    currency: str,
    application_fee_amount: int,
    transfer_group: str,
    metadata: Dict[str, str],
    idempotency_key: str,
) -> Dict[str, Any]:
    """
    Crée un PaymentIntent (montants en centimes).
    Retour: dict intent (ex: {"id": "pi_...", "client_secret": "...", "status": "requires_payment_method"})
    """
    require_stripe()
    intent = stripe.PaymentIntent.create(
        amount=amount,
        currency=currency,
        application_fee_amount=application_fee_amount,
        transfer_group=transfer_group,
        metadata=metadata,
        automatic_payment_methods={"enabled": True},
        idempotency_key=idempotency_key,
    )
    return dict(intent)

def cancel_payment_intent(payment_intent_id: str) -> Dict[str, Any]:
    require_stripe()
    intent = stripe.PaymentIntent.cancel(payment_intent_id)
    return dict(intent)

def create_transfer(
    *,
    amount: int,
    currency: str,
    destination: str,
    transfer_group: Optional[str],
    metadata: Dict[str, str],
    idempotency_key: str,
) -> Dict[str, Any]:
    """Transfert Connect vers le compte vendeur; retour: dict transfer ({"id": "tr_...", ...})."""
    require_stripe()
    transfer = stripe.Transfer.create(
        amount=amount,
        currency=currency,
        destination=destination,
        transfer_group=transfer_group,
        metadata=metadata,
        idempotency_key=idempotency_key,
    )
    return dict(transfer)

def construct_event(payload: bytes, sig_header: Optional[str], secret: Optional[str] = None):
    """
    Valide la signature Stripe-Signature du body brut (HMAC SHA-256, tolérance 300s).
    - Lève ValueError si aucun secret n'est configuré, stripe.SignatureVerificationError si invalide.
    """
    secret = STRIPE_WEBHOOK_SECRET if secret is None else secret
    if not secret:
        raise ValueError("STRIPE_WEBHOOK_SECRET manquant")
    if not sig_header:
        raise ValueError("En-tête Stripe-Signature manquant")
    return stripe.Webhook.construct_event(payload, sig_header, secret)

def create_connected_account(*, email: str, country: str, vendor_id: str, idempotency_key: str) -> Dict[str, Any]:
    """
    Compte Connect express du vendeur (capacités card_payments + transfers demandées).
    Retour: dict account ({"id": "acct_...", "email": ..., "charges_enabled": False, ...})
    """
    require_stripe()
    account = stripe.Account.create(
        type="express",
        country=country,
        email=email,
        capabilities={
            "card_payments": {"requested": True},
            "transfers": {"requested": True},
        },
        metadata={"vendor_id": vendor_id},
        idempotency_key=idempotency_key,
    )
    return dict(account)

def create_account_link(*, account_id: str, refresh_url: str, return_url: str) -> Dict[str, Any]:
    """Lien d'onboarding hébergé par Stripe; retour: {"url": ..., "expires_at": <epoch>}."""
    require_stripe()
    link = stripe.AccountLink.create(
        account=account_id,
        refresh_url=refresh_url,
        return_url=return_url,
        type="account_onboarding",
    )
    return dict(link)
