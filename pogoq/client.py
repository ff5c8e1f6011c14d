"""A topic client that publishes to and consumes from the queue table."""

from __future__ import annotations

import json
import queue
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Generic, Optional, Protocol, TypeVar, Union

from .message import Completed, Failed, Message, MessageResult, _as_utc, utcnow
from .queries import EnqueueRow, Queries, ReadMessageRow

T = TypeVar("T")

Handler = Callable[[Message[Any]], MessageResult]

POLLING_CHANNEL_PREFIX = "pogomq_polling_"

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_DEBOUNCE_SECONDS = 0.1
_SLOT_WAIT_SECONDS = 0.05

_RFC3339 = re.compile(
    r"(\d{4}-\d{2}-\d{2})[Tt](\d{2}:\d{2}:\d{2})(\.\d+)?([Zz]|[+-]\d{2}:\d{2})"
)


class _Database(Protocol):
    """A connection or pool that can run queue queries and LISTEN on channels."""

    def execute(self, query: str, *args: Any) -> Any: ...

    def fetch(self, query: str, *args: Any) -> Any: ...

    def fetchrow(self, query: str, *args: Any) -> Any: ...

    def copy_records(self, table: str, columns: Any, records: Any) -> int: ...

    def listen(self, channel: str, callback: Callable[[str], None]) -> Callable[[], None]: ...


def _parse_rfc3339(text: str) -> datetime:
    match = _RFC3339.fullmatch(text.strip())
    if match is None:
        raise ValueError(f"invalid RFC 3339 timestamp: {text!r}")
    date, clock, fraction, zone = match.groups()
    micros = f".{fraction[1:7].ljust(6, '0')}" if fraction else ""
    offset = "+00:00" if zone in ("Z", "z") else zone
    return datetime.fromisoformat(f"{date}T{clock}{micros}{offset}")


@dataclass(frozen=True)
class ClientOptions:
    """Settings of a client; out-of-range values are clamped as they are set."""

    topic: str = "default"
    auto_complete: bool = False
    max_delivery_count: int = 1
    ttl: Union[int, float, timedelta] = 0
    worker_count: int = 1

    def __post_init__(self) -> None:
        seconds = self.ttl.total_seconds() if isinstance(self.ttl, timedelta) else self.ttl
        object.__setattr__(self, "ttl", max(0, int(seconds)))
        object.__setattr__(self, "max_delivery_count", max(1, int(self.max_delivery_count)))
        object.__setattr__(self, "worker_count", max(1, int(self.worker_count)))


@dataclass(frozen=True)
class MessageCounts:
    """Number of messages of a topic in each state."""

    active: int
    completed: int
    failed: int
    scheduled: int


class Subscription(Generic[T]):
    """Background consumption of a topic by a pool of worker threads.

    Errors that do not stop the subscription (failed polls, bad notifications)
    are put on :attr:`errors`; the first handler error stops it and is raised
    by :meth:`wait`.
    """

    def __init__(self, client: Client[T], handler: Callable[[Message[T]], MessageResult]) -> None:
        self._client = client
        self._handler = handler
        self.errors: queue.Queue[BaseException] = queue.Queue()
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._done = threading.Event()
        self._deadline: Optional[float] = time.time()
        self._pending: Optional[float] = None
        self._kick = False
        self._error: Optional[BaseException] = None
        workers = client.options.worker_count
        self._slots = threading.BoundedSemaphore(workers)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._unlisten: Optional[Callable[[], None]] = None
        self._poller = threading.Thread(target=self._poll_loop, name="pogoq-poller", daemon=True)
        self._debouncer = threading.Thread(
            target=self._debounce_loop, name="pogoq-debouncer", daemon=True
        )

    def _start(self) -> None:
        channel = POLLING_CHANNEL_PREFIX + self._client.options.topic
        self._unlisten = self._client.db.listen(channel, self._on_notification)
        self._executor = ThreadPoolExecutor(
            max_workers=self._client.options.worker_count,
            thread_name_prefix="pogoq-worker",
        )
        self._debouncer.start()
        self._poller.start()

    def __enter__(self) -> Subscription[T]:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Stop polling and wait for running handlers to finish."""
        self._request_stop()
        current = threading.current_thread()
        for thread in (self._poller, self._debouncer):
            if thread.is_alive() and thread is not current:
                thread.join()
        if self._poller is not current:
            self._done.wait()

    def wait(self) -> None:
        """Block until the subscription stops; raise the handler error that stopped it."""
        self._done.wait()
        if self._error is not None:
            raise self._error

    def _request_stop(self) -> None:
        self._stop.set()
        with self._cond:
            self._cond.notify_all()

    def _on_notification(self, payload: str) -> None:
        try:
            scheduled = _parse_rfc3339(payload)
        except ValueError as exc:
            self.errors.put(exc)
            return
        self._propose(scheduled.timestamp(), earlier_only=True)

    def _propose(self, at: float, *, earlier_only: bool) -> None:
        with self._cond:
            if earlier_only and self._pending is not None and at >= self._pending:
                return
            self._pending = at
            self._kick = True
            self._cond.notify_all()

    def _debounce_loop(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._kick or self._stop.is_set())
                if self._stop.is_set():
                    return
                self._kick = False
            if self._stop.wait(_DEBOUNCE_SECONDS):
                return
            with self._cond:
                now = time.time()
                pending, self._pending = self._pending, None
                self._deadline = now if pending is None else max(pending, now)
                self._cond.notify_all()

    def _wait_for_timer(self) -> bool:
        with self._cond:
            while not self._stop.is_set():
                if self._deadline is None:
                    self._cond.wait()
                    continue
                delay = self._deadline - time.time()
                if delay <= 0:
                    self._deadline = None
                    return True
                self._cond.wait(delay)
            return False

    def _poll_loop(self) -> None:
        try:
            while self._wait_for_timer():
                self._poll()
        finally:
            if self._unlisten is not None:
                try:
                    self._unlisten()
                except Exception as exc:
                    self.errors.put(exc)
            if self._executor is not None:
                self._executor.shutdown(wait=True)
            self._done.set()

    def _poll(self) -> None:
        options = self._client.options
        try:
            rows = self._client.queries.read_messages(options.topic, options.worker_count)
        except Exception as exc:
            self.errors.put(exc)
            return
        if not rows:
            return
        head = rows[0]
        if head.next_time is not None:
            self._propose(_as_utc(head.next_time).timestamp(), earlier_only=False)
        if head.is_empty:
            return
        for row in rows:
            if not self._acquire_slot():
                return
            assert self._executor is not None
            self._executor.submit(self._run, row)

    def _acquire_slot(self) -> bool:
        while not self._stop.is_set():
            if self._slots.acquire(timeout=_SLOT_WAIT_SECONDS):
                return True
        return False

    def _run(self, row: ReadMessageRow) -> None:
        try:
            self._handle(row)
        except Exception as exc:
            with self._cond:
                first = self._error is None
                if first:
                    self._error = exc
            if first:
                self.errors.put(exc)
            self._request_stop()
        finally:
            self._slots.release()

    def _handle(self, row: ReadMessageRow) -> None:
        if row.body is None:
            raise ValueError(f"message {row.id!r} has no body")
        message: Message[T] = Message(
            id=row.id,
            body=json.loads(row.body),
            delivery_count=row.delivery_count,
            scheduled=row.scheduled,
        )
        result = self._handler(message)
        queries = self._client.queries
        if isinstance(result, Completed):
            if result.deleted:
                queries.delete_message(message.id)
            elif not self._client.options.auto_complete:
                queries.complete_message(message.id)
        elif isinstance(result, Failed):
            if result.deleted:
                queries.delete_message(message.id)
            else:
                queries.fail_message(message.id, result.scheduled)
        else:
            raise TypeError(f"handler returned {type(result).__name__}, not a MessageResult")
        self._client.publish(*result.messages)


class Client(Generic[T]):
    """Publishes and consumes messages of one topic."""

    def __init__(self, db: _Database, options: Optional[ClientOptions] = None) -> None:
        self.db = db
        self.options = options if options is not None else ClientOptions()
        self.queries = Queries(db)
        self._subscriptions: list[Subscription[T]] = []

    def __enter__(self) -> Client[T]:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Stop every subscription and close the database."""
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions.clear()
        closer = getattr(self.db, "close", None)
        if callable(closer):
            closer()

    def message_counts(self) -> MessageCounts:
        row = self.queries.message_counts(self.options.topic)
        return MessageCounts(
            active=row.active_count,
            completed=row.completed_count,
            failed=row.failed_count,
            scheduled=row.scheduled_count,
        )

    def publish(self, *args: Message[T]) -> None:
        """Put messages on the queue; bodies are stored as JSON."""
        if not args:
            return
        ttl_seconds = self.options.ttl
        rows = [
            EnqueueRow(
                auto_complete=self.options.auto_complete,
                body=json.dumps(message.body, separators=(",", ":")).encode("utf-8"),
                id=message.id,
                max_delivery_count=self.options.max_delivery_count,
                scheduled=message.scheduled or _ZERO_TIME,
                topic=self.options.topic,
                ttl=utcnow() + timedelta(seconds=ttl_seconds) if ttl_seconds > 0 else None,
                ttl_seconds=ttl_seconds if ttl_seconds > 0 else None,
            )
            for message in args
        ]
        self.queries.enqueue_messages(rows)

    def purge_all_messages(self) -> None:
        self.queries.purge_all_messages(self.options.topic)

    def purge_completed_messages(self) -> None:
        self.queries.purge_completed_messages(self.options.topic)

    def purge_failed_messages(self) -> None:
        self.queries.purge_failed_messages(self.options.topic)

    def purge_ttl_messages(self) -> None:
        """Delete messages whose time to live has passed."""
        self.queries.purge_ttl_messages(self.options.topic)

    def read_failed_messages(self, limit: int) -> list[Message[T]]:
        """Up to ``limit`` messages that used up their deliveries, oldest first."""
        return [
            Message(
                id=row.id,
                body=json.loads(row.body),
                delivery_count=row.delivery_count,
                scheduled=row.scheduled,
            )
            for row in self.queries.read_failed_messages(self.options.topic, limit)
        ]

    def reset_failed_messages(self) -> None:
        self.queries.reset_failed_messages(self.options.topic)

    def reset_failed_message(self, id: str) -> None:
        self.queries.reset_failed_message(id, self.options.topic)

    def subscribe(self, handler: Callable[[Message[T]], MessageResult]) -> Subscription[T]:
        """Start handling the topic's messages on ``worker_count`` threads."""
        subscription: Subscription[T] = Subscription(self, handler)
        subscription._start()
        self._subscriptions.append(subscription)
        return subscription