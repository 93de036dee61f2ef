"""
Taxonomie des erreurs métier du pipeline checkout / règlement.

Chaque erreur porte un status HTTP et un code stable (exploité par le handler
enregistré dans marketplace.app_setup.exceptions). Familles:
- validation d'entrée (400/422): rejetée avant toute mutation d'état
- règle métier (400/404/409): raison précise, pas de retry automatique
- dépendance externe (503): retryable côté appelant
- sécurité (400/401): jamais corrigée silencieusement, loggée en critical
"""
from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    status_code = 400
    code = "marketplace_error"
    retryable = False

    def __init__(self, detail: str = "", *, extra: Optional[Dict[str, Any]] = None):
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.extra = extra or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.detail, "code": self.code}
        if self.extra:
            body.update(self.extra)
        return body


# --- Validation d'entrée ---
class InvalidRequest(MarketplaceError):
    status_code = 422
    code = "invalid_request"


class InvalidQuantity(InvalidRequest):
    code = "invalid_quantity"


class InvalidAmount(InvalidRequest):
    code = "invalid_amount"


class InvalidFee(InvalidRequest):
    code = "invalid_fee"


# --- Règles métier ---
class ProductUnavailable(MarketplaceError):
    code = "product_unavailable"


class InsufficientInventory(MarketplaceError):
    status_code = 409
    code = "insufficient_inventory"


class ItemNotInCart(MarketplaceError):
    status_code = 404
    code = "item_not_in_cart"


class EmptyCart(MarketplaceError):
    code = "empty_cart"


class CheckoutInProgress(MarketplaceError):
    status_code = 409
    code = "checkout_in_progress"


class OrderNotFound(MarketplaceError):
    status_code = 404
    code = "order_not_found"


class OrderNotCancellable(MarketplaceError):
    status_code = 409
    code = "order_not_cancellable"


class PaymentRejected(MarketplaceError):
    status_code = 402
    code = "payment_rejected"


class VendorNotFound(MarketplaceError):
    status_code = 404
    code = "vendor_not_found"


class VendorAccountMissing(MarketplaceError):
    status_code = 409
    code = "vendor_account_missing"


# --- Dépendances externes ---
class PaymentServiceUnavailable(MarketplaceError):
    status_code = 503
    code = "payment_service_unavailable"
    retryable = True


class OrderServiceUnavailable(MarketplaceError):
    status_code = 503
    code = "order_service_unavailable"
    retryable = True


class PersistenceError(MarketplaceError):
    status_code = 503
    code = "persistence_error"
    retryable = True


# --- Sécurité ---
class InvalidSignature(MarketplaceError):
    code = "invalid_signature"


class MissingOrderMetadata(MarketplaceError):
    code = "missing_order_metadata"


class AmountMismatch(MarketplaceError):
    code = "amount_mismatch"


class PaymentReferenceMismatch(MarketplaceError):
    code = "payment_reference_mismatch"


class InternalAuthError(MarketplaceError):
    status_code = 401
    code = "internal_auth_failed"


class PayoutNotFound(MarketplaceError):
    status_code = 404
    code = "payout_not_found"
    retryable = True


class WebhookFailureNotFound(MarketplaceError):
    status_code = 404
    code = "webhook_failure_not_found"
