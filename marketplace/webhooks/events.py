"""Classification des événements Stripe en un ensemble fermé de types connus."""
from enum import Enum
from typing import Any, Dict

class EventKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    TRANSFER_CREATED = "transfer_created"
    TRANSFER_FAILED = "transfer_failed"
    ACCOUNT_UPDATED = "account_updated"
    UNKNOWN = "unknown"

EVENT_KINDS = {
    "payment_intent.succeeded": EventKind.PAYMENT_SUCCEEDED,
    "transfer.created": EventKind.TRANSFER_CREATED,
    "transfer.failed": EventKind.TRANSFER_FAILED,
    "transfer.reversed": EventKind.TRANSFER_FAILED,
    "account.updated": EventKind.ACCOUNT_UPDATED,
}

def classify(event: Dict[str, Any]) -> EventKind:
    return EVENT_KINDS.get(str((event or {}).get("type") or ""), EventKind.UNKNOWN)

def event_object(event: Dict[str, Any]) -> Dict[str, Any]:
    return ((event or {}).get("data") or {}).get("object") or {}
