# module marketplace.vendors.views

"""Onboarding Stripe Connect (/api/v1/payments/connect), vendeur concerné ou admin."""
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr

from marketplace.utils.security import ensure_vendor_access, require_user
from marketplace.vendors import service as vendors_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments/connect", tags=["Vendor Onboarding"])

class CreateAccountRequest(BaseModel):
    email: Optional[EmailStr] = None
    country: Optional[str] = None

class AccountLinkRequest(BaseModel):
    refresh_url: Optional[str] = None
    return_url: Optional[str] = None

@router.post("/{vendor_id}/account")
def create_account(vendor_id: str, req: CreateAccountRequest,
                   user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    ensure_vendor_access(user, vendor_id)
    email = req.email or user.get("email")
    return vendors_service.create_connected_account(vendor_id, email, req.country)

@router.post("/{vendor_id}/account-link")
def create_account_link(vendor_id: str, req: AccountLinkRequest,
                        user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    ensure_vendor_access(user, vendor_id)
    return vendors_service.create_account_link(vendor_id, req.refresh_url, req.return_url)
