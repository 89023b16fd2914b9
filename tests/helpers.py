"""Shared test helpers for inboxsync tests.

Regular functions and classes, not fixtures.
"""

from __future__ import annotations

import copy
import threading
import uuid
from typing import Any, Callable

from inboxsync.ingest.errors import ConstraintViolation

# Mirrors the UNIQUE constraints of migration 001_ingestion_schema
UNIQUE_KEYS: dict[str, tuple[tuple[str, ...], ...]] = {
    "users": (("phone",), ("email",)),
    "conversations": (("whatsapp_chat_id",),),
    "conversation_participants": (("conversation_id", "user_id"),),
    "messages": (),
}

EVENT_PAYLOAD = {
    "event": "messages.upsert",
    "instance": "main",
    "data": {
        "key": {
            "remoteJid": "551199999999@s.whatsapp.net",
            "fromMe": False,
            "id": "ABC1",
        },
        "pushName": "Ana",
        "message": {"conversation": "oi"},
        "messageType": "conversation",
    },
}


class FakeRowStore:
    """In-memory RowStore that enforces the schema's unique keys.

    Faults: fail_next() queues an exception for the next matching call.
    Races: before_insert runs right before a row is written, while the
    store lock is not held, so a test can slip a competing row in.
    """

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {t: [] for t in UNIQUE_KEYS}
        self.calls: list[tuple[str, str]] = []
        self.before_insert: Callable[[str, dict[str, Any]], None] | None = None
        self._faults: list[tuple[str, str, Exception]] = []
        self._lock = threading.Lock()

    def fail_next(self, op: str, table: str, exc: Exception, times: int = 1) -> None:
        for _ in range(times):
            self._faults.append((op, table, exc))

    def _maybe_fail(self, op: str, table: str) -> None:
        for i, (f_op, f_table, exc) in enumerate(self._faults):
            if f_op == op and f_table == table:
                del self._faults[i]
                raise exc

    def select_by_equality(self, table: str, column: str, value: Any) -> dict[str, Any] | None:
        with self._lock:
            self.calls.append(("select", table))
            self._maybe_fail("select", table)
            for row in self.tables.setdefault(table, []):
                if row.get(column) == value:
                    return copy.deepcopy(row)
        return None

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        if self.before_insert is not None:
            hook, self.before_insert = self.before_insert, None
            hook(table, row)
        with self._lock:
            self.calls.append(("insert", table))
            self._maybe_fail("insert", table)
            rows = self.tables.setdefault(table, [])
            for columns in UNIQUE_KEYS.get(table, ()):
                key = tuple(row.get(c) for c in columns)
                if any(tuple(r.get(c) for c in columns) == key for r in rows):
                    raise ConstraintViolation(table, f"{table}_{'_'.join(columns)}_key")
            stored = copy.deepcopy(row)
            stored.setdefault("id", str(uuid.uuid4()))
            rows.append(stored)
            return copy.deepcopy(stored)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.get(table, [])

    def count(self, op: str, table: str) -> int:
        return sum(1 for c in self.calls if c == (op, table))


def make_event(**data_overrides: Any) -> dict[str, Any]:
    """Copy of EVENT_PAYLOAD with `data` fields replaced."""
    event = copy.deepcopy(EVENT_PAYLOAD)
    event["data"].update(data_overrides)
    return event
