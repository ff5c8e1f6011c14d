"""SQL statements and a thin typed layer over the ``pogomq`` queue table."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

TABLE = "pogomq"

ENQUEUE_COLUMNS: tuple[str, ...] = (
    "auto_complete",
    "body",
    "id",
    "max_delivery_count",
    "scheduled",
    "topic",
    "ttl",
    "ttl_seconds",
)

COMPLETE_MESSAGE = """\
UPDATE
  pogomq
SET
  completed = (NOW() AT TIME ZONE 'UTC'),
  ttl = CASE WHEN ttl_seconds IS NOT NULL THEN (NOW() AT TIME ZONE 'UTC') + (ttl_seconds * INTERVAL '1 second') ELSE NULL END
WHERE
  id = $1
  AND completed IS NULL
"""

DELETE_MESSAGE = """\
DELETE FROM
  pogomq
WHERE
  id = $1
"""

FAIL_MESSAGE = """\
UPDATE
  pogomq
SET
  completed = NULL,
  scheduled = $1,
  ttl = CASE WHEN ttl_seconds IS NOT NULL THEN (NOW() AT TIME ZONE 'UTC') + (ttl_seconds * INTERVAL '1 second') ELSE NULL END
WHERE
  id = $2
  AND delivery_count < max_delivery_count
"""

MESSAGE_COUNTS = """\
WITH message_counts AS (
  SELECT
    CASE
      WHEN completed IS NULL AND delivery_count < max_delivery_count AND scheduled <= (NOW() AT TIME ZONE 'UTC') THEN 'active'
      WHEN completed IS NULL AND delivery_count >= max_delivery_count THEN 'failed'
      WHEN completed IS NULL AND scheduled > (NOW() AT TIME ZONE 'UTC') THEN 'scheduled'
      WHEN completed IS NOT NULL THEN 'completed'
      ELSE 'unknown'
    END AS message_state
  FROM
    pogomq
  WHERE
    topic = $1
)
SELECT
  COALESCE(SUM(CASE WHEN message_state = 'active' THEN 1 ELSE 0 END), 0) :: INT AS active_count,
  COALESCE(SUM(CASE WHEN message_state = 'failed' THEN 1 ELSE 0 END), 0) :: INT AS failed_count,
  COALESCE(SUM(CASE WHEN message_state = 'scheduled' THEN 1 ELSE 0 END), 0) :: INT AS scheduled_count,
  COALESCE(SUM(CASE WHEN message_state = 'completed' THEN 1 ELSE 0 END), 0) :: INT AS completed_count
FROM
  message_counts
"""

PURGE_ALL_MESSAGES = """\
DELETE FROM
  pogomq
WHERE
  topic = $1
"""

PURGE_COMPLETED_MESSAGES = """\
DELETE FROM
  pogomq
WHERE
  completed IS NOT NULL
  AND topic = $1
"""

PURGE_FAILED_MESSAGES = """\
DELETE FROM
  pogomq
WHERE
  completed IS NULL
  AND delivery_count >= max_delivery_count
  AND topic = $1
"""

PURGE_TTL_MESSAGES = """\
DELETE FROM
  pogomq
WHERE
  ttl IS NOT NULL
  AND ttl < (NOW() AT TIME ZONE 'UTC')
  AND topic = $1
"""

READ_FAILED_MESSAGES = """\
SELECT
  id,
  body,
  delivery_count,
  scheduled
FROM
  pogomq
WHERE
  topic = $2
  AND completed IS NULL
  AND delivery_count >= max_delivery_count
ORDER BY
  scheduled ASC
LIMIT $1
"""

READ_MESSAGES = """\
WITH next_scheduled AS (
  SELECT MIN(scheduled) as next_time
  FROM pogomq
  WHERE
    pogomq.topic = $2
    AND completed IS NULL
    AND scheduled > (NOW() AT TIME ZONE 'UTC')
    AND delivery_count < max_delivery_count
),
updates AS (
  UPDATE pogomq
  SET
    delivery_count = delivery_count + 1,
    completed = CASE WHEN auto_complete THEN (NOW() AT TIME ZONE 'UTC') ELSE NULL END,
    ttl = CASE WHEN ttl_seconds IS NOT NULL THEN (NOW() AT TIME ZONE 'UTC') + (ttl_seconds * INTERVAL '1 second') ELSE NULL END
  WHERE
    ctid IN (
      SELECT ctid
      FROM pogomq
      WHERE
        pogomq.topic = $2
        AND completed IS NULL
        AND scheduled <= (NOW() AT TIME ZONE 'UTC')
        AND delivery_count < max_delivery_count
      ORDER BY
        scheduled ASC
      FOR UPDATE SKIP LOCKED
      LIMIT $1
    )
  RETURNING
    id,
    body,
    delivery_count,
    scheduled
)
SELECT
  u.id,
  u.body,
  u.delivery_count,
  u.scheduled,
  (SELECT next_time FROM next_scheduled) :: TIMESTAMPTZ as next_time
FROM updates u
UNION ALL
SELECT
  '' as id,
  NULL as body,
  0 as delivery_count,
  NULL as scheduled,
  (SELECT next_time FROM next_scheduled) :: TIMESTAMPTZ as next_time
WHERE NOT EXISTS (SELECT 1 FROM updates)
LIMIT $1
"""

RESET_FAILED_MESSAGE = """\
UPDATE
  pogomq
SET
  completed = NULL,
  scheduled = (NOW() AT TIME ZONE 'UTC'),
  delivery_count = 0
WHERE
  id = $1
  AND topic = $2
  AND completed IS NOT NULL
"""

RESET_FAILED_MESSAGES = """\
UPDATE
  pogomq
SET
  completed = NULL,
  scheduled = (NOW() AT TIME ZONE 'UTC'),
  delivery_count = 0
WHERE
  topic = $1
  AND completed IS NOT NULL
"""


class _Connection(Protocol):
    """What :class:`Queries` needs from a PostgreSQL connection or pool."""

    def execute(self, query: str, *args: Any) -> Any: ...

    def fetch(self, query: str, *args: Any) -> Sequence[Sequence[Any]]: ...

    def fetchrow(self, query: str, *args: Any) -> Optional[Sequence[Any]]: ...

    def copy_records(
        self,
        table: str,
        columns: Sequence[str],
        records: Iterable[tuple[Any, ...]],
    ) -> int: ...


def _as_bytes(value: Any) -> Optional[bytes]:
    return None if value is None else bytes(value)


@dataclass(frozen=True)
class EnqueueRow:
    """One message to be bulk-copied into the queue table."""

    auto_complete: bool
    body: bytes
    id: str
    max_delivery_count: int
    scheduled: datetime
    topic: str
    ttl: Optional[datetime] = None
    ttl_seconds: Optional[int] = None

    def values(self) -> tuple[Any, ...]:
        """Column values in the order of ``ENQUEUE_COLUMNS``."""
        return (
            self.auto_complete,
            self.body,
            self.id,
            self.max_delivery_count,
            self.scheduled,
            self.topic,
            self.ttl,
            self.ttl_seconds,
        )


@dataclass(frozen=True)
class MessageCountsRow:
    """Number of messages in each state for one topic."""

    active_count: int
    failed_count: int
    scheduled_count: int
    completed_count: int


@dataclass(frozen=True)
class FailedMessageRow:
    """A message that has used up its deliveries without completing."""

    id: str
    body: bytes
    delivery_count: int
    scheduled: Optional[datetime]


@dataclass(frozen=True)
class ReadMessageRow:
    """A dequeued message, or the empty placeholder row when none is due.

    The placeholder has an empty ``id``; ``next_time`` on any row is the
    earliest future schedule in the topic, if there is one.
    """

    id: str
    body: Optional[bytes]
    delivery_count: int
    scheduled: Optional[datetime]
    next_time: Optional[datetime]

    @property
    def is_empty(self) -> bool:
        return self.id == ""


class Queries:
    """Typed queue operations over a connection using ``$n`` placeholders."""

    def __init__(self, db: _Connection) -> None:
        self.db = db

    def complete_message(self, id: str) -> None:
        self.db.execute(COMPLETE_MESSAGE, id)

    def delete_message(self, id: str) -> None:
        self.db.execute(DELETE_MESSAGE, id)

    def enqueue_messages(self, rows: Iterable[EnqueueRow]) -> int:
        """Bulk-copy the rows into the queue table; returns rows copied."""
        records = [row.values() for row in rows]
        return self.db.copy_records(TABLE, ENQUEUE_COLUMNS, records)

    def fail_message(self, id: str, scheduled: Optional[datetime]) -> None:
        self.db.execute(FAIL_MESSAGE, scheduled, id)

    def message_counts(self, topic: str) -> MessageCountsRow:
        row = self.db.fetchrow(MESSAGE_COUNTS, topic)
        if row is None:
            raise LookupError("message counts query returned no row")
        active, failed, scheduled, completed = row
        return MessageCountsRow(
            active_count=int(active),
            failed_count=int(failed),
            scheduled_count=int(scheduled),
            completed_count=int(completed),
        )

    def purge_all_messages(self, topic: str) -> None:
        self.db.execute(PURGE_ALL_MESSAGES, topic)

    def purge_completed_messages(self, topic: str) -> None:
        self.db.execute(PURGE_COMPLETED_MESSAGES, topic)

    def purge_failed_messages(self, topic: str) -> None:
        self.db.execute(PURGE_FAILED_MESSAGES, topic)

    def purge_ttl_messages(self, topic: str) -> None:
        self.db.execute(PURGE_TTL_MESSAGES, topic)

    def read_failed_messages(self, topic: str, limit: int) -> list[FailedMessageRow]:
        return [
            FailedMessageRow(
                id=id_,
                body=_as_bytes(body),
                delivery_count=int(delivery_count),
                scheduled=scheduled,
            )
            for id_, body, delivery_count, scheduled in self.db.fetch(
                READ_FAILED_MESSAGES, limit, topic
            )
        ]

    def read_messages(self, topic: str, limit: int) -> list[ReadMessageRow]:
        """Claim up to ``limit`` due messages, bumping their delivery count."""
        return [
            ReadMessageRow(
                id=id_,
                body=_as_bytes(body),
                delivery_count=int(delivery_count),
                scheduled=scheduled,
                next_time=next_time,
            )
            for id_, body, delivery_count, scheduled, next_time in self.db.fetch(
                READ_MESSAGES, limit, topic
            )
        ]

    def reset_failed_message(self, id: str, topic: str) -> None:
        self.db.execute(RESET_FAILED_MESSAGE, id, topic)

    def reset_failed_messages(self, topic: str) -> None:
        self.db.execute(RESET_FAILED_MESSAGES, topic)