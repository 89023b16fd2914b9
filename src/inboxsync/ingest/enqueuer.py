"""Intake enqueuer - put the raw webhook body on the queue and acknowledge."""

from __future__ import annotations

import uuid
from typing import Any

from inboxsync.observability.logging import get_logger
from inboxsync.observability.redaction import safe_log_context
from inboxsync.tasks.client import TasksClient
from inboxsync.tasks.contracts import TaskEnvelopeV1

from .errors import EnqueueError, InvalidPayloadError
from .models import PROCESS_MESSAGE, AckResult

logger = get_logger(__name__)

PROCESS_MESSAGE_PATH = f"/tasks/message-queue/{PROCESS_MESSAGE}"


def new_task_id() -> str:
    """Every delivery from the gateway becomes its own job."""
    return f"{PROCESS_MESSAGE}:{uuid.uuid4()}"


class IntakeEnqueuer:
    def __init__(self, tasks_client: TasksClient) -> None:
        self._tasks = tasks_client

    def accept(self, raw: Any, correlation_id: str | None = None) -> AckResult:
        """Enqueue a raw event verbatim.

        Raises:
            InvalidPayloadError: Body is empty or not a JSON object.
            EnqueueError: The queue did not take the job.
        """
        if not isinstance(raw, dict) or not raw:
            raise InvalidPayloadError("webhook body must be a non-empty JSON object")

        task_id = new_task_id()
        envelope = TaskEnvelopeV1(task_name=PROCESS_MESSAGE, payload=raw, task_id=task_id)

        try:
            accepted = self._tasks.enqueue_http(
                task_id=task_id,
                url_path=PROCESS_MESSAGE_PATH,
                payload=envelope.to_dict(),
                correlation_id=correlation_id,
            )
        except Exception as e:
            raise EnqueueError(f"enqueue failed: {e}") from e
        if not accepted:
            raise EnqueueError("queue refused task")

        logger.info(
            "webhook event enqueued",
            extra={
                "extra_fields": {
                    "task_id": task_id,
                    **safe_log_context(event=raw.get("event"), payload=raw),
                }
            },
        )
        return AckResult(status="ok", task_id=task_id)
