"""Task contracts v1 - the envelope every queued job travels in.

The payload of a `process-message` task is the gateway event exactly as it
was received; normalization happens only in the worker.
"""

from dataclasses import dataclass, field
from typing import Any, Literal


@dataclass(frozen=True)
class TaskEnvelopeV1:
    """Task envelope v1.

    Attributes:
        version: Contract version (always "v1").
        task_name: Job tag the worker dispatches on (e.g. "process-message").
        payload: Raw job body.
        task_id: Unique identifier of this enqueue.
    """

    version: Literal["v1"] = field(default="v1", init=False)
    task_name: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    task_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for serialization."""
        return {
            "version": self.version,
            "task_name": self.task_name,
            "payload": self.payload,
            "task_id": self.task_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskEnvelopeV1":
        """Create from dict.

        Raises:
            ValueError: Unknown version or a payload that is not an object.
        """
        if data.get("version") != "v1":
            raise ValueError(f"Unsupported version: {data.get('version')}")
        payload = data.get("payload", {})
        if not isinstance(payload, dict):
            raise ValueError("payload must be an object")
        return cls(
            task_name=data.get("task_name", ""),
            payload=payload,
            task_id=data.get("task_id", ""),
        )
