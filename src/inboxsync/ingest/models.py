"""Ingestion data model."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

RawEvent = dict[str, Any]

UNKNOWN_DISPLAY_NAME = "unknown"
DEFAULT_INSTANCE_ID = "default"
MEDIA_PLACEHOLDER = "[Media]"

# Job tag used on the queue to dispatch to the ingestion worker
PROCESS_MESSAGE = "process-message"
QUEUE_NAME = "message-queue"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"
    LOCATION = "location"
    CONTACT = "contact"
    SYSTEM = "system"


class DeliveryStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class UserRole(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"


class ParticipantRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


@dataclass(frozen=True)
class NormalizedMessage:
    """Canonical projection of a gateway event.

    `sender_address` keeps the gateway-native form for storage;
    `sender_key` is the canonical form used for user lookups.
    """

    chat_id: str
    sender_address: str
    sender_key: str
    sender_display_name: str
    is_outbound: bool
    instance_id: str
    message_type: MessageType
    content: str
    external_message_id: str
    delivery_status: DeliveryStatus


@dataclass(frozen=True)
class ResolvedEntities:
    user_id: str
    conversation_id: str


class JobState(str, Enum):
    RECEIVED = "received"
    NORMALIZING = "normalizing"
    RESOLVING = "resolving"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


JobOutcome = Literal["done", "retry", "failed"]


@dataclass(frozen=True)
class Job:
    """One delivery of a queued payload. `attempt` is 1-based."""

    job_id: str
    payload: RawEvent
    attempt: int = 1


@dataclass
class JobResult:
    job_id: str
    outcome: JobOutcome = "failed"
    reason: str | None = None
    states: list[JobState] = field(default_factory=list)
    user_id: str | None = None
    conversation_id: str | None = None
    message_id: str | None = None

    @property
    def state(self) -> JobState | None:
        """Last state reached."""
        return self.states[-1] if self.states else None


@dataclass(frozen=True)
class AckResult:
    status: Literal["ok"]
    task_id: str

    def to_dict(self) -> dict[str, str]:
        return {"status": self.status}
