# module marketplace.payouts.views

"""Endpoints payouts vendeurs (/api/v1/payments/vendor/...).
- Lecture réservée au vendeur lui-même ou à un admin (ensure_vendor_access).
"""
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends

from marketplace.payouts import service as payouts_service
from marketplace.utils.security import ensure_vendor_access, require_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments/vendor", tags=["Payouts API"])

@router.get("/{vendor_id}/payouts")
def list_vendor_payouts(vendor_id: str, page: int = 1, limit: int = 20, status: Optional[str] = None,
                        user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    ensure_vendor_access(user, vendor_id)
    return payouts_service.list_payouts(vendor_id, page, limit, status)

@router.get("/{vendor_id}/earnings")
def vendor_earnings(vendor_id: str, user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    ensure_vendor_access(user, vendor_id)
    return payouts_service.get_earnings(vendor_id)
