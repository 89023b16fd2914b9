"""Worker routes for the message queue.

The queue delivers each job here. Status codes drive the queue:
- 200 ends the job (done, or failed for good)
- 503 asks the queue to redeliver under its backoff policy
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from inboxsync.api.task_auth import verify_task_auth
from inboxsync.infra.settings import load_store_settings, max_attempts
from inboxsync.infra.store import PgRowStore
from inboxsync.ingest.models import PROCESS_MESSAGE, QUEUE_NAME
from inboxsync.ingest.worker import IngestionWorker
from inboxsync.observability.correlation import get_correlation_id
from inboxsync.observability.logging import get_logger
from inboxsync.tasks.contracts import TaskEnvelopeV1

router = APIRouter(prefix=f"/tasks/{QUEUE_NAME}", tags=["tasks"])

logger = get_logger(__name__)

# Built once at worker startup (see init_worker), replaceable in tests
_store: PgRowStore | None = None
_worker: IngestionWorker | None = None


def init_worker() -> IngestionWorker:
    """Build the store and worker for this process.

    Raises:
        RuntimeError: Store endpoint or access key missing.
    """
    global _store, _worker
    if _worker is None:
        _store = PgRowStore.from_settings(load_store_settings())
        _worker = IngestionWorker(_store, max_attempts=max_attempts())
        logger.info(
            "ingestion worker ready",
            extra={"extra_fields": {"max_attempts": _worker.max_attempts}},
        )
    return _worker


def shutdown_worker() -> None:
    """Close the connection pool opened by init_worker()."""
    global _store, _worker
    if _store is not None:
        _store.close()
    _store = None
    _worker = None


def _get_worker() -> IngestionWorker:
    """Get the ingestion worker (allows override in tests)."""
    if _worker is None:
        return init_worker()
    return _worker


def _set_worker(worker: IngestionWorker | None) -> None:
    """Set the ingestion worker (for tests)."""
    global _worker
    _worker = worker


def attempt_from_headers(request: Request) -> int:
    """1-based attempt number of this delivery."""
    retry_count = request.headers.get("X-CloudTasks-TaskRetryCount")
    if retry_count is not None and retry_count.isdigit():
        return int(retry_count) + 1
    attempt = request.headers.get("X-Task-Attempt", "")
    if attempt.isdigit() and int(attempt) > 0:
        return int(attempt)
    return 1


@router.post(f"/{PROCESS_MESSAGE}")
def process_message(request: Request, body: dict[str, Any]) -> JSONResponse:
    """Run one queued job through the ingestion worker."""
    correlation_id = get_correlation_id()

    if not verify_task_auth(request):
        logger.warning(
            "task auth failed",
            extra={"extra_fields": {"correlationId": correlation_id}},
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        envelope = TaskEnvelopeV1.from_dict(body)
    except ValueError as e:
        # Redelivering a malformed envelope cannot help
        logger.error(
            "invalid task envelope",
            extra={"extra_fields": {"error": str(e), "raw_payload": body}},
        )
        return JSONResponse(status_code=200, content={"status": "failed", "reason": "invalid_envelope"})

    attempt = attempt_from_headers(request)
    result = _get_worker().handle_task(envelope, attempt=attempt)

    if result.outcome == "retry":
        return JSONResponse(status_code=503, content={"status": "retry", "attempt": attempt})
    if result.outcome == "failed":
        return JSONResponse(status_code=200, content={"status": "failed", "reason": result.reason})
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "message_id": result.message_id},
    )
