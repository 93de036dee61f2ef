import re
from uuid import UUID
from typing import Any

from marketplace.errors import InvalidRequest

STRIPE_ACCOUNT_RE = re.compile(r"^acct_[A-Za-z0-9]+$")

def is_uuid(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        UUID(value)
    except ValueError:
        return False
    return True

def require_uuid(value: Any, field: str) -> str:
    if not is_uuid(value):
        raise InvalidRequest(f"{field} doit être un UUID valide")
    return str(value)

def is_stripe_account_id(value: Any) -> bool:
    return isinstance(value, str) and bool(STRIPE_ACCOUNT_RE.match(value))
