"""Lecture des payouts et agrégat des gains d'un vendeur."""
from typing import Any, Dict
import logging

from marketplace.errors import InvalidRequest
from marketplace.payouts import repository as payouts_repository
from marketplace.utils.money import ZERO, fmt, quantize
from marketplace.utils.validators import require_uuid

logger = logging.getLogger(__name__)

PAYOUT_STATUSES = ("pending", "processing", "paid", "failed")

def check_pagination(page: int, limit: int) -> None:
    if page < 1:
        raise InvalidRequest("page doit être >= 1")
    if limit < 1 or limit > 100:
        raise InvalidRequest("limit doit être compris entre 1 et 100")

def list_payouts(vendor_id: str, page: int = 1, limit: int = 20, status: str | None = None) -> Dict[str, Any]:
    require_uuid(vendor_id, "vendor_id")
    check_pagination(page, limit)
    if status and status not in PAYOUT_STATUSES:
        raise InvalidRequest(f"status invalide: {status}")
    rows, total = payouts_repository.list_vendor_payouts(vendor_id, page, limit, status)
    return {"payouts": rows, "total": total, "page": page, "limit": limit}

def get_earnings(vendor_id: str) -> Dict[str, Any]:
    """
    Agrégat des gains:
    - total_paid: net des payouts 'paid'
    - total_pending: net des payouts 'pending' / 'processing'
    - total_failed: net des payouts 'failed' (à remédier)
    - total_commission: commission des payouts non échoués
    """
    require_uuid(vendor_id, "vendor_id")
    totals = {"paid": ZERO, "pending": ZERO, "failed": ZERO}
    commission = ZERO
    count = 0
    for row in payouts_repository.fetch_vendor_payout_amounts(vendor_id):
        status = row.get("status")
        net = quantize(row.get("net_amount") or 0)
        count += 1
        if status == "failed":
            totals["failed"] += net
            continue
        bucket = "paid" if status == "paid" else "pending"
        totals[bucket] += net
        commission += quantize(row.get("commission_amount") or 0)
    return {
        "vendor_id": vendor_id,
        "total_paid": fmt(totals["paid"]),
        "total_pending": fmt(totals["pending"]),
        "total_failed": fmt(totals["failed"]),
        "total_commission": fmt(commission),
        "payout_count": count,
    }
