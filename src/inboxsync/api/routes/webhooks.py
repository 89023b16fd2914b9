"""Gateway webhook routes - Evolution API intake.

The body is enqueued verbatim and acknowledged; nothing is normalized or
written to the database here, so slow or failing processing never holds
the gateway connection open.
"""

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from inboxsync.ingest.enqueuer import IntakeEnqueuer
from inboxsync.ingest.errors import EnqueueError, InvalidPayloadError
from inboxsync.observability.correlation import get_correlation_id
from inboxsync.observability.logging import get_logger
from inboxsync.tasks.client import TasksClient

router = APIRouter(prefix="/webhook", tags=["webhooks"])

logger = get_logger(__name__)

# Same instance across requests
_tasks_client = TasksClient()


def _get_tasks_client() -> TasksClient:
    """Get tasks client instance (allows test injection)."""
    return _tasks_client


@router.post("")
async def receive_webhook(request: Request) -> JSONResponse:
    """Receive a gateway event.

    Returns:
        200 {"status": "ok"} once the event is on the queue.
        400 if the body is empty or not a JSON object.
        503 if the queue is unavailable (the gateway will retry).
    """
    correlation_id = get_correlation_id()

    try:
        payload: Any = await request.json()
    except ValueError:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": {"correlationId": correlation_id}},
        )
        return JSONResponse(status_code=400, content={"status": "invalid json"})

    enqueuer = IntakeEnqueuer(_get_tasks_client())
    try:
        ack = enqueuer.accept(payload, correlation_id=correlation_id)
    except InvalidPayloadError:
        logger.warning(
            "empty or non-object webhook body",
            extra={"extra_fields": {"correlationId": correlation_id}},
        )
        return JSONResponse(status_code=400, content={"status": "invalid payload"})
    except EnqueueError:
        logger.exception(
            "enqueue failed",
            extra={"extra_fields": {"correlationId": correlation_id}},
        )
        return JSONResponse(status_code=503, content={"status": "error"})

    return JSONResponse(status_code=200, content=ack.to_dict())


@router.get("")
def ping() -> dict:
    """Liveness for the gateway's webhook check."""
    return {"status": "ok"}
