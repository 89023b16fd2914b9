"""Ingestion worker - one queued job at a time.

Job lifecycle:
    received → normalizing → resolving → persisting → done
Any step may move the job to `failed` (terminal). Transient store failures
during resolving/persisting end the attempt with outcome "retry" so the
queue redelivers it, until the attempt budget is spent.

Message rows are inserted once per successful attempt. Redelivery of the
same gateway event produces another message row with the same
whatsapp_message_id; only users and conversations are idempotent.
"""

from __future__ import annotations

from typing import Any

from inboxsync.infra.store import RowStore
from inboxsync.infra.time import utc_now, utc_now_iso
from inboxsync.observability.logging import get_logger
from inboxsync.tasks.contracts import TaskEnvelopeV1

from .errors import (
    BackendError,
    NormalizationError,
    ResolutionError,
    TransientBackendError,
)
from .models import (
    PROCESS_MESSAGE,
    Job,
    JobResult,
    JobState,
    NormalizedMessage,
    ResolvedEntities,
)
from .normalizer import normalize
from .resolver import EntityResolver

logger = get_logger(__name__)

MESSAGES = "messages"


def build_message_row(
    msg: NormalizedMessage,
    entities: ResolvedEntities,
    raw: dict[str, Any],
) -> dict[str, Any]:
    """Message row: normalized fields plus the raw event as opaque metadata."""
    processed_at = utc_now()
    external_id = msg.external_message_id or None
    return {
        "content": msg.content,
        "msg_type": msg.message_type.value,
        "msg_status": msg.delivery_status.value,
        "whatsapp_message_id": external_id,
        "evolution_message_id": external_id,
        "conversation_id": entities.conversation_id,
        "sender_id": entities.user_id,
        "processed_at": processed_at,
        "metadata": {
            "raw_event": raw,
            "instance_id": msg.instance_id,
            "sender_info": {
                "phone": msg.sender_address,
                "name": msg.sender_display_name,
                "is_from_me": msg.is_outbound,
                "clean_phone": msg.sender_key,
            },
            "processed_at": processed_at.isoformat(),
        },
    }


class IngestionWorker:
    """Normalize, resolve and persist one job.

    Args:
        store: Row store, built once at process start.
        resolver: Defaults to an EntityResolver on the same store.
        max_attempts: Job attempts before a transient failure is terminal.
    """

    def __init__(
        self,
        store: RowStore,
        resolver: EntityResolver | None = None,
        *,
        max_attempts: int = 5,
    ) -> None:
        self._store = store
        self._resolver = resolver or EntityResolver(store)
        self._max_attempts = max(1, max_attempts)

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def handle_task(self, envelope: TaskEnvelopeV1, attempt: int = 1) -> JobResult:
        """Dispatch a queued task by its job tag."""
        job = Job(job_id=envelope.task_id, payload=envelope.payload, attempt=attempt)
        if envelope.task_name != PROCESS_MESSAGE:
            result = JobResult(job_id=job.job_id, states=[JobState.RECEIVED])
            self._fail(job, result, f"unknown_task:{envelope.task_name}")
            return result
        return self.process(job)

    def process(self, job: Job) -> JobResult:
        result = JobResult(job_id=job.job_id, states=[JobState.RECEIVED])
        log_ctx = {"job_id": job.job_id, "attempt": job.attempt}

        result.states.append(JobState.NORMALIZING)
        try:
            msg = normalize(job.payload)
        except NormalizationError as e:
            # Structurally incomplete payloads cannot succeed on retry
            self._fail(job, result, e.reason, detail=e.detail)
            return result

        try:
            result.states.append(JobState.RESOLVING)
            entities = self._resolver.resolve(msg)
            result.user_id = entities.user_id
            result.conversation_id = entities.conversation_id

            result.states.append(JobState.PERSISTING)
            inserted = self._store.insert(MESSAGES, build_message_row(msg, entities, job.payload))
        except TransientBackendError as e:
            if job.attempt < self._max_attempts:
                result.outcome = "retry"
                result.reason = "transient_backend_error"
                logger.warning(
                    "transient failure, job returned to queue",
                    extra={
                        "extra_fields": {
                            **log_ctx,
                            "state": result.state.value,
                            "error": str(e),
                        }
                    },
                )
                return result
            self._fail(job, result, "retries_exhausted", detail=str(e), alert=True)
            return result
        except ResolutionError as e:
            self._fail(job, result, "resolution_error", detail=str(e))
            return result
        except BackendError as e:
            self._fail(job, result, "backend_error", detail=str(e))
            return result
        except Exception as e:
            logger.exception(
                "unexpected error while ingesting",
                extra={"extra_fields": log_ctx},
            )
            self._fail(job, result, "unexpected_error", detail=repr(e))
            return result

        result.message_id = str(inserted["id"])
        result.states.append(JobState.DONE)
        result.outcome = "done"
        logger.info(
            "message ingested",
            extra={
                "extra_fields": {
                    **log_ctx,
                    "message_id": result.message_id,
                    "conversation_id": result.conversation_id,
                    "msg_type": msg.message_type.value,
                    "msg_status": msg.delivery_status.value,
                }
            },
        )
        return result

    def _fail(
        self,
        job: Job,
        result: JobResult,
        reason: str,
        *,
        detail: str = "",
        alert: bool = False,
    ) -> None:
        """Move the job to `failed`. The raw payload is logged for manual replay."""
        failed_in = result.state.value if result.state else None
        result.states.append(JobState.FAILED)
        result.outcome = "failed"
        result.reason = reason
        fields = {
            "job_id": job.job_id,
            "attempt": job.attempt,
            "max_attempts": self._max_attempts,
            "failed_in": failed_in,
            "reason": reason,
            "detail": detail,
            "raw_payload": job.payload,
            "failed_at": utc_now_iso(),
        }
        if alert:
            logger.critical("job failed: retries exhausted", extra={"extra_fields": fields})
        else:
            logger.error("job failed", extra={"extra_fields": fields})
