# module marketplace.webhooks.admin_views

"""Administration du ledger des webhooks en échec (/api/v1/admin/webhooks), admin uniquement.
- liste filtrable (status, event_type) et paginée, détail, statistiques
- retry manuel d'une ligne (hors backoff, y compris 'abandoned'), déclenchement d'un cycle complet
"""
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool

from marketplace.config import WEBHOOK_MAX_AUTO_RETRIES
from marketplace.errors import InvalidRequest, WebhookFailureNotFound
from marketplace.utils.security import require_admin
from marketplace.utils.validators import require_uuid
from marketplace.webhooks import ledger, retry

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/admin/webhooks", tags=["Admin Webhooks"])


def _get_or_404(failure_id: str) -> Dict[str, Any]:
    require_uuid(failure_id, "failure_id")
    failure = ledger.get_failure(failure_id)
    if not failure:
        raise WebhookFailureNotFound("Échec webhook introuvable")
    return failure

@router.get("/failures")
def list_failures(status: Optional[str] = None, event_type: Optional[str] = None, page: int = 1, limit: int = 20,
                  admin: Dict[str, Any] = Depends(require_admin)) -> Dict[str, Any]:
    if status and status not in ledger.FAILURE_STATUSES:
        raise InvalidRequest(f"status invalide: {status}")
    if page < 1 or limit < 1 or limit > 100:
        raise InvalidRequest("Pagination invalide (page >= 1, 1 <= limit <= 100)")
    rows, total = ledger.list_failures(status, event_type, page, limit)
    return {"failures": rows, "total": total, "page": page, "limit": limit}

@router.get("/failures/{failure_id}")
def get_failure(failure_id: str, admin: Dict[str, Any] = Depends(require_admin)) -> Dict[str, Any]:
    failure = _get_or_404(failure_id)
    next_at = retry.next_attempt_at(failure)
    return {**failure, "next_retry_at": next_at.isoformat() if next_at else None}

@router.post("/failures/{failure_id}/retry")
def retry_one(failure_id: str, admin: Dict[str, Any] = Depends(require_admin)) -> Dict[str, Any]:
    failure = _get_or_404(failure_id)
    if failure.get("status") == "resolved":
        return {"id": failure_id, "status": "resolved", "retry_count": failure.get("retry_count") or 0}
    logger.info("webhooks.manual_retry id=%s by=%s", failure_id, admin.get("id"))
    return retry.retry_failure(failure)

@router.get("/stats")
def stats(admin: Dict[str, Any] = Depends(require_admin)) -> Dict[str, Any]:
    counts = ledger.count_by_status()
    return {"by_status": counts, "total": sum(counts.values()), "max_auto_retries": WEBHOOK_MAX_AUTO_RETRIES}

@router.post("/retry-cycle")
async def trigger_cycle(admin: Dict[str, Any] = Depends(require_admin)) -> Dict[str, Any]:
    logger.info("webhooks.manual_cycle by=%s", admin.get("id"))
    return await run_in_threadpool(retry.run_retry_cycle)
