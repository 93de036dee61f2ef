"""
Onboarding Stripe Connect des vendeurs.

- Un seul compte Connect par vendeur: clé d'idempotence dérivée du vendor_id, enregistrement
  conditionnel (stripe_account_id encore NULL); un appel répété retourne le compte existant.
- Le lien d'onboarding est régénéré à chaque appel (Stripe le fait expirer rapidement).
- stripe_onboarding_completed est ensuite tenu à jour par le webhook account.updated.
"""
from typing import Any, Dict, Optional
import logging

import stripe

from marketplace.config import (
    STRIPE_CONNECT_COUNTRY,
    VENDOR_ONBOARDING_REFRESH_URL,
    VENDOR_ONBOARDING_RETURN_URL,
)
from marketplace.errors import InvalidRequest, VendorAccountMissing, VendorNotFound
from marketplace.payments import stripe_client
from marketplace.payments.intents import map_stripe_error
from marketplace.utils.validators import require_uuid
from marketplace.vendors import repository as vendors_repository

logger = logging.getLogger(__name__)

def account_idempotency_key(vendor_id: str) -> str:
    return f"connect_account:{vendor_id}"

def _vendor_or_404(vendor_id: str) -> Dict[str, Any]:
    vendor = vendors_repository.get_vendor(require_uuid(vendor_id, "vendor_id"))
    if not vendor:
        raise VendorNotFound("Vendeur introuvable")
    return vendor

def _account_view(vendor: Dict[str, Any], created: bool) -> Dict[str, Any]:
    return {
        "vendor_id": vendor.get("id"),
        "account_id": vendor.get("stripe_account_id"),
        "onboarding_completed": bool(vendor.get("stripe_onboarding_completed")),
        "created": created,
    }

def create_connected_account(vendor_id: str, email: str, country: Optional[str] = None) -> Dict[str, Any]:
    """Crée (ou retrouve) le compte Connect express du vendeur et l'enregistre sur la ligne 'vendors'."""
    vendor = _vendor_or_404(vendor_id)
    if vendor.get("stripe_account_id"):
        return _account_view(vendor, created=False)

    if not email:
        raise InvalidRequest("email requis pour créer le compte Stripe")
    country = (country or STRIPE_CONNECT_COUNTRY).upper()
    if len(country) != 2 or not country.isalpha():
        raise InvalidRequest("country doit être un code pays ISO à 2 lettres")
    try:
        account = stripe_client.create_connected_account(
            email=email,
            country=country,
            vendor_id=vendor["id"],
            idempotency_key=account_idempotency_key(vendor["id"]),
        )
    except stripe.StripeError as e:
        raise map_stripe_error(e, f"vendors.create_connected_account vendor_id={vendor['id']}")

    saved = vendors_repository.attach_stripe_account(vendor["id"], account["id"])
    if saved is None:
        # course perdue: un autre appel a déjà enregistré le compte
        logger.warning("vendors.connect_account concurrent vendor_id=%s account=%s", vendor["id"], account["id"])
        return _account_view(_vendor_or_404(vendor["id"]), created=False)
    logger.info("vendors.connect_account_created vendor_id=%s account=%s", vendor["id"], account["id"])
    return _account_view(saved, created=True)

def _check_url(value: str, field: str) -> str:
    if not value.startswith(("https://", "http://")):
        raise InvalidRequest(f"{field} doit être une URL http(s)")
    return value

def create_account_link(vendor_id: str, refresh_url: Optional[str] = None,
                        return_url: Optional[str] = None) -> Dict[str, Any]:
    vendor = _vendor_or_404(vendor_id)
    account_id = vendor.get("stripe_account_id")
    if not account_id:
        raise VendorAccountMissing("Aucun compte Stripe Connect pour ce vendeur")
    try:
        link = stripe_client.create_account_link(
            account_id=account_id,
            refresh_url=_check_url(refresh_url or VENDOR_ONBOARDING_REFRESH_URL, "refresh_url"),
            return_url=_check_url(return_url or VENDOR_ONBOARDING_RETURN_URL, "return_url"),
        )
    except stripe.StripeError as e:
        raise map_stripe_error(e, f"vendors.create_account_link vendor_id={vendor['id']}")
    return {"url": link.get("url"), "expires_at": link.get("expires_at"), "account_id": account_id}
