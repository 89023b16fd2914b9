"""Entity resolver - idempotent find-or-create for users and conversations.

Identity resolution strategy
─────────────────────────────
Workers run concurrently and the queue may redeliver a job, so the same
sender or chat can be resolved by two workers at once. No lock is taken:

  1. SELECT by natural key (users.phone, conversations.whatsapp_chat_id).
  2. Miss → INSERT.
  3. INSERT hits the UNIQUE constraint → another worker won the race;
     SELECT again and return the winner's row.

Both workers converge on the same id and no duplicate row is created.
Transient store errors are retried here a few times before surfacing.
"""

from __future__ import annotations

import time
from typing import Any, Callable, TypeVar

from inboxsync.infra.store import Row, RowStore
from inboxsync.observability.logging import get_logger
from inboxsync.observability.redaction import safe_log_context

from .errors import (
    BackendError,
    ConstraintViolation,
    ResolutionError,
    TransientBackendError,
)
from .models import NormalizedMessage, ParticipantRole, ResolvedEntities, UserRole

logger = get_logger(__name__)

T = TypeVar("T")

USERS = "users"
CONVERSATIONS = "conversations"
PARTICIPANTS = "conversation_participants"

CONVERSATION_TYPE = "support"
PLACEHOLDER_EMAIL_DOMAIN = "whatsapp.invalid"


def placeholder_email(sender_key: str) -> str:
    """Contact address for systems that require one; never deliverable."""
    return f"{sender_key}@{PLACEHOLDER_EMAIL_DOMAIN}"


def conversation_title(display_name: str) -> str:
    return f"Chat {display_name}"


class EntityResolver:
    """Find-or-create users and conversations on a RowStore.

    Args:
        store: Row store shared by every worker thread in the process.
        attempts: Tries per store call when it fails transiently.
        backoff_seconds: Sleep before retry n is n * backoff_seconds.
        sleep: Injected for tests.
    """

    def __init__(
        self,
        store: RowStore,
        *,
        attempts: int = 3,
        backoff_seconds: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._attempts = max(1, attempts)
        self._backoff = backoff_seconds
        self._sleep = sleep

    def _call(self, op: Callable[[], T], what: str) -> T:
        """Run a store call, retrying transient failures."""
        for attempt in range(1, self._attempts + 1):
            try:
                return op()
            except TransientBackendError:
                if attempt == self._attempts:
                    raise
                logger.warning(
                    "transient store error, retrying",
                    extra={
                        "extra_fields": safe_log_context(
                            op=what, attempt=attempt, max_attempts=self._attempts
                        )
                    },
                )
                self._sleep(self._backoff * attempt)
        raise AssertionError("unreachable")

    def _select(self, table: str, column: str, value: Any) -> Row | None:
        try:
            return self._call(
                lambda: self._store.select_by_equality(table, column, value),
                f"select {table}",
            )
        except BackendError as e:
            raise ResolutionError(f"lookup in {table} failed: {e}") from e

    def _find_or_create(self, table: str, column: str, value: str, row: Row) -> tuple[str, bool]:
        """Return (id, created) for the row whose `column` equals `value`."""
        existing = self._select(table, column, value)
        if existing is not None:
            return (str(existing["id"]), False)

        try:
            inserted = self._call(lambda: self._store.insert(table, row), f"insert {table}")
            return (str(inserted["id"]), True)
        except ConstraintViolation:
            # Lost a creation race; the row exists now
            logger.info(
                "concurrent create detected, re-reading",
                extra={"extra_fields": safe_log_context(table=table, column=column)},
            )
        except BackendError as e:
            raise ResolutionError(f"insert into {table} failed: {e}") from e

        winner = self._select(table, column, value)
        if winner is None:
            raise ResolutionError(
                f"{table}.{column} reported duplicate but no row was found"
            )
        return (str(winner["id"]), False)

    def resolve_sender(self, address: str, display_name: str, is_outbound: bool) -> str:
        """Return the user id for a sender address, creating the user on first sight.

        Args:
            address: Canonical sender address (gateway suffix stripped).
            display_name: Name shown by the gateway; only used on creation.
            is_outbound: True when the message came from the agent side.

        Raises:
            ResolutionError: Malformed address or non-transient store failure.
            TransientBackendError: Store still failing after retries.
        """
        if not address or not address.strip():
            raise ResolutionError("malformed sender address")

        role = UserRole.AGENT if is_outbound else UserRole.CUSTOMER
        user_id, created = self._find_or_create(
            USERS,
            "phone",
            address,
            {
                "name": display_name,
                "phone": address,
                "email": placeholder_email(address),
                "role": role.value,
            },
        )
        if created:
            logger.info(
                "user created",
                extra={"extra_fields": {"user_id": user_id, "role": role.value}},
            )
        return user_id

    def resolve_conversation(
        self,
        chat_id: str,
        title: str,
        instance_id: str,
        creator_user_id: str | None,
        *,
        is_outbound: bool = False,
    ) -> str:
        """Return the conversation id for a chat, creating it on the first message.

        The creator is linked as a participant only by the worker that
        created the conversation. The link is best-effort.

        Raises:
            ResolutionError: Malformed chat id or non-transient store failure.
            TransientBackendError: Store still failing after retries.
        """
        if not chat_id or not chat_id.strip():
            raise ResolutionError("malformed chat id")

        conversation_id, created = self._find_or_create(
            CONVERSATIONS,
            "whatsapp_chat_id",
            chat_id,
            {
                "title": title,
                "type": CONVERSATION_TYPE,
                "whatsapp_chat_id": chat_id,
                "evolution_instance_id": instance_id,
                "created_by": creator_user_id,
            },
        )
        if created:
            logger.info(
                "conversation created",
                extra={
                    "extra_fields": {
                        "conversation_id": conversation_id,
                        **safe_log_context(instance_id=instance_id),
                    }
                },
            )
            if creator_user_id:
                role = ParticipantRole.ADMIN if is_outbound else ParticipantRole.MEMBER
                self._link_participant(conversation_id, creator_user_id, role)
        return conversation_id

    def _link_participant(self, conversation_id: str, user_id: str, role: ParticipantRole) -> None:
        row = {"conversation_id": conversation_id, "user_id": user_id, "role": role.value}
        try:
            self._call(lambda: self._store.insert(PARTICIPANTS, row), f"insert {PARTICIPANTS}")
        except (ConstraintViolation, TransientBackendError, BackendError) as e:
            # Conversation stays; participant bookkeeping can be repaired later
            logger.warning(
                "participant link failed",
                extra={
                    "extra_fields": {
                        "conversation_id": conversation_id,
                        "error_type": type(e).__name__,
                    }
                },
            )

    def resolve(self, msg: NormalizedMessage) -> ResolvedEntities:
        """Resolve sender, then conversation (which references the sender)."""
        user_id = self.resolve_sender(msg.sender_key, msg.sender_display_name, msg.is_outbound)
        conversation_id = self.resolve_conversation(
            msg.chat_id,
            conversation_title(msg.sender_display_name),
            msg.instance_id,
            user_id,
            is_outbound=msg.is_outbound,
        )
        return ResolvedEntities(user_id=user_id, conversation_id=conversation_id)
