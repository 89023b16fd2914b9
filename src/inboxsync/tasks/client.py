"""Tasks client - hands jobs to the durable queue.

Backends, selected via TASKS_BACKEND:
- inline (default): records tasks in memory without executing them (dev/tests)
- http: POSTs the task straight to the worker
- cloud_tasks: creates a Google Cloud Tasks task on the message queue
"""

from __future__ import annotations

import os
from collections import deque
from datetime import datetime

# Recorded inline tasks kept before the oldest are dropped
INLINE_BACKLOG = 1000


class TasksClient:
    """Tasks client dispatching to the configured backend.

    Only the inline backend keeps state: a bounded backlog of recorded tasks,
    deduplicated by task_id. The http and cloud_tasks backends keep nothing
    per task; Cloud Tasks deduplicates by task name itself.
    """

    def __init__(self, backend: str | None = None) -> None:
        self._scheduled_tasks: deque[dict] = deque(maxlen=INLINE_BACKLOG)
        self._backend = backend or os.environ.get("TASKS_BACKEND", "inline")

    @property
    def backend(self) -> str:
        return self._backend

    def enqueue_http(
        self,
        task_id: str,
        url_path: str,
        payload: dict,
        correlation_id: str | None = None,
        schedule_time: datetime | None = None,
    ) -> bool:
        """Enqueue a task for HTTP delivery to the worker.

        Args:
            task_id: Unique identifier for idempotency.
            url_path: Worker endpoint path (e.g. "/tasks/message-queue/process-message").
            payload: Task body (a serialized TaskEnvelopeV1).
            correlation_id: Optional correlation ID for tracing.
            schedule_time: Optional future execution time.

        Returns:
            True if the queue accepted the task or already holds it;
            False if the backend refused it.

        Raises:
            ValueError: If TASKS_BACKEND is unknown.
        """
        if self._backend == "inline":
            if not any(t["task_id"] == task_id for t in self._scheduled_tasks):
                self._scheduled_tasks.append({
                    "task_id": task_id,
                    "url_path": url_path,
                    "payload": payload,
                    "correlation_id": correlation_id,
                    "schedule_time": schedule_time,
                })
            return True

        if self._backend == "http":
            from inboxsync.tasks.http_backend import enqueue_http
            return enqueue_http(task_id, url_path, payload, correlation_id, schedule_time)

        if self._backend == "cloud_tasks":
            from inboxsync.tasks.cloud_tasks_backend import enqueue_cloud_task
            return enqueue_cloud_task(task_id, url_path, payload, correlation_id, schedule_time)

        raise ValueError(f"Unknown TASKS_BACKEND: {self._backend}")

    def get_scheduled_tasks(self) -> list[dict]:
        """Tasks recorded by the inline backend (useful for testing)."""
        return list(self._scheduled_tasks)

    def drain(self) -> list[dict]:
        """Return and forget the inline backend's pending tasks."""
        tasks = list(self._scheduled_tasks)
        self._scheduled_tasks.clear()
        return tasks

    def clear(self) -> None:
        """Forget recorded tasks (useful for testing)."""
        self._scheduled_tasks.clear()
