"""
Retry automatique des webhooks en échec (backoff exponentiel).

Une ligne est éligible si status in (failed, retrying) et next_retry_at <= now; la sélection se fait
dans la requête, une ligne encore en backoff ne bloque donc jamais une ligne échue plus récente.
Chaque tentative reprogramme next_retry_at = last_retry_at + WEBHOOK_RETRY_BASE_SECONDS * 2 ** retry_count.
Au plafond (retry_count >= WEBHOOK_MAX_AUTO_RETRIES), la ligne passe 'abandoned' (raison dans metadata)
et n'est plus reprise automatiquement.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import asyncio
import logging
import traceback

from marketplace.config import (
    WEBHOOK_MAX_AUTO_RETRIES,
    WEBHOOK_RETRY_BATCH_SIZE,
    WEBHOOK_RETRY_INTERVAL_SECONDS,
)
from marketplace.errors import MarketplaceError
from marketplace.webhooks import confirmer, ledger

logger = logging.getLogger(__name__)

def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)

def next_attempt_at(failure: Dict[str, Any]) -> Optional[datetime]:
    """Échéance stockée, sinon recalculée depuis last_retry_at (ou created_at)."""
    stored = _parse_ts(failure.get("next_retry_at"))
    if stored is not None:
        return stored
    base = _parse_ts(failure.get("last_retry_at")) or _parse_ts(failure.get("created_at"))
    if base is None:
        return None
    return base + ledger.backoff_delay(int(failure.get("retry_count") or 0))

def _now() -> datetime:
    return datetime.now(timezone.utc)

def retry_failure(failure: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Rejoue le traitement d'un événement enregistré (sans revérifier la signature: le payload
    stocké provient d'un événement déjà authentifié).
    Retour: {id, status: resolved|failed, retry_count, error?}
    """
    failure_id = failure["id"]
    retry_count = int(failure.get("retry_count") or 0) + 1
    started = now or _now()
    ledger.update_failure(failure_id, {
        "status": "retrying",
        "retry_count": retry_count,
        "last_retry_at": started.isoformat(),
        "next_retry_at": ledger.next_retry_at(started, retry_count),
    })
    try:
        result = confirmer.process_verified_event(failure.get("payload") or {})
    except Exception as e:
        reason = e.detail if isinstance(e, MarketplaceError) else (str(e) or e.__class__.__name__)
        status, metadata = confirmer.failure_disposition(e, dict(failure.get("metadata") or {}))
        logger.warning("webhooks.retry_failed id=%s attempt=%s status=%s reason=%s",
                       failure_id, retry_count, status, reason)
        ledger.update_failure(failure_id, {
            "status": status,
            "failure_reason": reason[:ledger.MAX_REASON_LENGTH],
            "stack_trace": traceback.format_exc()[:ledger.MAX_TRACE_LENGTH],
            "metadata": metadata,
        })
        return {"id": failure_id, "status": "failed", "retry_count": retry_count, "error": reason}

    ledger.update_failure(failure_id, {"status": "resolved", "resolved_at": _now().isoformat()})
    logger.info("webhooks.retry_resolved id=%s attempt=%s result=%s", failure_id, retry_count, result.get("status"))
    return {"id": failure_id, "status": "resolved", "retry_count": retry_count}

def abandon_failure(failure: Dict[str, Any]) -> None:
    metadata = dict(failure.get("metadata") or {})
    metadata["abandon_reason"] = f"max auto retries reached ({WEBHOOK_MAX_AUTO_RETRIES})"
    ledger.update_failure(failure["id"], {"status": "abandoned", "metadata": metadata})
    logger.error("webhooks.retry_abandoned id=%s event_id=%s type=%s",
                 failure["id"], failure.get("event_id"), failure.get("event_type"))

def run_retry_cycle(now: Optional[datetime] = None, limit: int = WEBHOOK_RETRY_BATCH_SIZE) -> Dict[str, int]:
    """Un passage du scheduler: retourne {total, resolved, failed, abandoned}."""
    now = now or _now()
    summary = {"total": 0, "resolved": 0, "failed": 0, "abandoned": 0}
    for failure in ledger.list_retry_candidates(now, limit):
        summary["total"] += 1
        if int(failure.get("retry_count") or 0) >= WEBHOOK_MAX_AUTO_RETRIES:
            abandon_failure(failure)
            summary["abandoned"] += 1
            continue
        outcome = retry_failure(failure, now)
        summary[outcome["status"]] += 1
    if summary["total"]:
        logger.info("webhooks.retry_cycle %s", summary)
    return summary

async def retry_loop(interval_seconds: int = WEBHOOK_RETRY_INTERVAL_SECONDS) -> None:
    """Tâche de fond (lifespan): un cycle toutes les interval_seconds, jusqu'à annulation."""
    logger.info("webhooks.retry_loop started interval=%ss", interval_seconds)
    while True:
        try:
            await asyncio.to_thread(run_retry_cycle)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("webhooks.retry_loop cycle failed")
        await asyncio.sleep(interval_seconds)
