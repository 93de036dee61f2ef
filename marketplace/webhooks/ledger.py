"""
Ledger des webhooks en échec (table 'webhook_failures').
Usage exclusivement opérationnel (retry, administration), jamais pour la logique métier.
Statuts: failed -> retrying -> resolved | failed ... -> abandoned (plafond de retries atteint,
ou échec de contrôle de sécurité qu'un rejeu ne corrigera pas).
Chaque ligne retryable porte next_retry_at: le scheduler ne lit que les lignes échues.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
import logging
import marketplace.infra.supabase_client as supabase_client
from marketplace.config import WEBHOOK_RETRY_BASE_SECONDS
from marketplace.errors import PersistenceError

logger = logging.getLogger(__name__)

FAILURE_STATUSES = ("failed", "retrying", "resolved", "abandoned")
RETRYABLE_STATUSES = ["failed", "retrying"]
MAX_REASON_LENGTH = 2000
MAX_TRACE_LENGTH = 8000

def _db():
    return supabase_client.get_service_supabase()

def backoff_delay(retry_count: int) -> timedelta:
    return timedelta(seconds=WEBHOOK_RETRY_BASE_SECONDS * (2 ** max(int(retry_count), 0)))

def next_retry_at(base: datetime, retry_count: int) -> str:
    return (base + backoff_delay(retry_count)).isoformat()

# module marketplace.webhooks.ledger
def record_failure(
    *,
    event_type: Optional[str],
    event_id: Optional[str],
    payload: Dict[str, Any],
    reason: str,
    trace: Optional[str] = None,
    source_ip: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    status: str = "failed",
) -> Dict[str, Any]:
    row = {
        "event_type": event_type or "unknown",
        "event_id": event_id,
        "payload": payload,
        "failure_reason": (reason or "unknown error")[:MAX_REASON_LENGTH],
        "stack_trace": (trace or "")[:MAX_TRACE_LENGTH] or None,
        "status": status,
        "retry_count": 0,
        "next_retry_at": next_retry_at(datetime.now(timezone.utc), 0) if status in RETRYABLE_STATUSES else None,
        "source_ip": source_ip,
        "metadata": metadata or {},
    }
    try:
        res = _db().table("webhook_failures").insert(row).execute()
    except Exception:
        logger.exception("webhooks.ledger.record_failure failed event_id=%s type=%s", event_id, event_type)
        raise PersistenceError("Ledger webhook indisponible")
    saved = (res.data or [row])[0]
    logger.warning("webhooks.failure_recorded id=%s event_id=%s type=%s status=%s reason=%s",
                   saved.get("id"), event_id, event_type, status, row["failure_reason"])
    return saved

def get_failure(failure_id: str) -> Optional[Dict[str, Any]]:
    try:
        res = _db().table("webhook_failures").select("*").eq("id", str(failure_id)).limit(1).execute()
    except Exception:
        logger.exception("webhooks.ledger.get_failure failed id=%s", failure_id)
        raise PersistenceError("Ledger webhook indisponible")
    rows = res.data or []
    return rows[0] if rows else None

def list_failures(status: Optional[str] = None, event_type: Optional[str] = None,
                  page: int = 1, limit: int = 20) -> Tuple[List[Dict[str, Any]], int]:
    offset = (page - 1) * limit
    try:
        query = _db().table("webhook_failures").select("*", count="exact")
        if status:
            query = query.eq("status", status)
        if event_type:
            query = query.eq("event_type", event_type)
        res = query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
    except Exception:
        logger.exception("webhooks.ledger.list_failures failed status=%s type=%s", status, event_type)
        raise PersistenceError("Ledger webhook indisponible")
    rows = res.data or []
    return rows, (res.count if res.count is not None else len(rows))

def list_retry_candidates(now: datetime, limit: int) -> List[Dict[str, Any]]:
    """Lignes failed/retrying échues (next_retry_at <= now), la plus en retard d'abord."""
    try:
        res = (
            _db()
            .table("webhook_failures")
            .select("*")
            .in_("status", RETRYABLE_STATUSES)
            .lte("next_retry_at", now.isoformat())
            .order("next_retry_at")
            .limit(limit)
            .execute()
        )
    except Exception:
        logger.exception("webhooks.ledger.list_retry_candidates failed")
        raise PersistenceError("Ledger webhook indisponible")
    return res.data or []

def update_failure(failure_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    try:
        res = _db().table("webhook_failures").update(fields).eq("id", str(failure_id)).execute()
    except Exception:
        logger.exception("webhooks.ledger.update_failure failed id=%s", failure_id)
        raise PersistenceError("Ledger webhook indisponible")
    rows = res.data or []
    return rows[0] if rows else None

def count_by_status() -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for status in FAILURE_STATUSES:
        try:
            res = (
                _db()
                .table("webhook_failures")
                .select("id", count="exact")
                .eq("status", status)
                .limit(1)
                .execute()
            )
        except Exception:
            logger.exception("webhooks.ledger.count_by_status failed status=%s", status)
            raise PersistenceError("Ledger webhook indisponible")
        counts[status] = res.count or 0
    return counts
