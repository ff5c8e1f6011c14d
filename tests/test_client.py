import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from pogoq import queries as q
from pogoq.client import Client, ClientOptions, MessageCounts
from pogoq.message import Message, utcnow


def _fmt(value):
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class FakeDB:
    """In-memory stand-in for the queue table, with LISTEN/NOTIFY."""

    def __init__(self):
        self.lock = threading.RLock()
        self.rows = {}
        self.calls = []
        self.listeners = {}
        self.failed_rows = []
        self.closed = False

    def close(self):
        self.closed = True

    def listen(self, channel, callback):
        with self.lock:
            self.listeners.setdefault(channel, []).append(callback)

        def unlisten():
            with self.lock:
                self.listeners[channel].remove(callback)

        return unlisten

    def notify(self, channel, payload):
        with self.lock:
            callbacks = list(self.listeners.get(channel, []))
        for callback in callbacks:
            callback(payload)

    def copy_records(self, table, columns, records):
        rows = [dict(zip(columns, record)) for record in records]
        with self.lock:
            self.calls.append(("copy", table, tuple(columns), rows))
            for row in rows:
                self.rows[row["id"]] = {**row, "completed": None, "delivery_count": 0}
        for row in rows:
            self.notify("pogomq_polling_" + row["topic"], _fmt(row["scheduled"]))
        return len(rows)

    def execute(self, query, *args):
        notice = None
        with self.lock:
            self.calls.append((query, args))
            now = datetime.now(timezone.utc)
            if query == q.COMPLETE_MESSAGE:
                row = self.rows.get(args[0])
                if row and row["completed"] is None:
                    row["completed"] = now
            elif query == q.DELETE_MESSAGE:
                self.rows.pop(args[0], None)
            elif query == q.FAIL_MESSAGE:
                scheduled, id_ = args
                row = self.rows.get(id_)
                if row and row["delivery_count"] < row["max_delivery_count"]:
                    row["completed"] = None
                    row["scheduled"] = scheduled
                    notice = ("pogomq_polling_" + row["topic"], _fmt(scheduled))
        if notice:
            self.notify(*notice)

    def fetch(self, query, *args):
        with self.lock:
            self.calls.append((query, args))
            if query == q.READ_MESSAGES:
                return self._read_messages(*args)
            if query == q.READ_FAILED_MESSAGES:
                return list(self.failed_rows)
        raise AssertionError(f"unexpected query {query!r}")

    def _read_messages(self, limit, topic):
        now = datetime.now(timezone.utc)
        live = [
            r
            for r in self.rows.values()
            if r["topic"] == topic
            and r["completed"] is None
            and r["delivery_count"] < r["max_delivery_count"]
        ]
        next_time = min((r["scheduled"] for r in live if r["scheduled"] > now), default=None)
        due = sorted((r for r in live if r["scheduled"] <= now), key=lambda r: r["scheduled"])
        out = []
        for row in due[:limit]:
            row["delivery_count"] += 1
            if row["auto_complete"]:
                row["completed"] = now
            out.append((row["id"], row["body"], row["delivery_count"], row["scheduled"], next_time))
        return out or [("", None, 0, None, next_time)]

    def fetchrow(self, query, *args):
        assert query == q.MESSAGE_COUNTS
        with self.lock:
            now = datetime.now(timezone.utc)
            active = failed = scheduled = completed = 0
            for r in self.rows.values():
                if r["topic"] != args[0]:
                    continue
                if r["completed"] is not None:
                    completed += 1
                elif r["delivery_count"] >= r["max_delivery_count"]:
                    failed += 1
                elif r["scheduled"] <= now:
                    active += 1
                else:
                    scheduled += 1
            return (active, failed, scheduled, completed)


def eventually(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return condition()


def copies(db):
    return [call for call in db.calls if call[0] == "copy"]


def test_options_defaults():
    options = ClientOptions()
    assert options.topic == "default"
    assert options.auto_complete is False
    assert options.max_delivery_count == 1
    assert options.worker_count == 1
    assert options.ttl == 0


def test_options_are_clamped():
    options = ClientOptions(max_delivery_count=0, worker_count=-3, ttl=-5)
    assert options.max_delivery_count == 1
    assert options.worker_count == 1
    assert options.ttl == 0


def test_options_ttl_from_timedelta_truncates():
    assert ClientOptions(ttl=timedelta(seconds=90.7)).ttl == 90


def test_publish_nothing_is_a_no_op():
    db = FakeDB()
    Client(db).publish()
    assert copies(db) == []


def test_publish_builds_rows():
    db = FakeDB()
    client = Client(db, ClientOptions(topic="jobs", max_delivery_count=3))
    when = datetime(2030, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    client.publish(Message("a", {"n": 1}), Message("b", [1, 2]).with_scheduled(when))
    (_, table, columns, rows), = copies(db)
    assert table == "pogomq"
    assert columns == q.ENQUEUE_COLUMNS
    assert [r["id"] for r in rows] == ["a", "b"]
    assert rows[0]["body"] == b'{"n":1}'
    assert rows[1]["body"] == b"[1,2]"
    assert rows[0]["scheduled"] == datetime(1, 1, 1, tzinfo=timezone.utc)
    assert rows[1]["scheduled"] == when
    assert all(r["topic"] == "jobs" and r["max_delivery_count"] == 3 for r in rows)
    assert all(r["ttl"] is None and r["ttl_seconds"] is None for r in rows)
    assert all(r["auto_complete"] is False for r in rows)


def test_publish_with_ttl():
    db = FakeDB()
    client = Client(db, ClientOptions(ttl=60))
    before = utcnow()
    client.publish(Message("a", "x"))
    after = utcnow()
    row = copies(db)[0][3][0]
    assert row["ttl_seconds"] == 60
    assert before + timedelta(seconds=60) <= row["ttl"] <= after + timedelta(seconds=60)


def test_publish_rejects_unserialisable_body():
    with pytest.raises(TypeError):
        Client(FakeDB()).publish(Message("a", object()))


def test_message_counts():
    db = FakeDB()
    client = Client(db)
    later = utcnow() + timedelta(hours=1)
    client.publish(Message("a", 1), Message("b", 2).with_scheduled(later))
    assert client.message_counts() == MessageCounts(active=1, completed=0, failed=0, scheduled=1)


@pytest.mark.parametrize(
    "method, query",
    [
        ("purge_all_messages", q.PURGE_ALL_MESSAGES),
        ("purge_completed_messages", q.PURGE_COMPLETED_MESSAGES),
        ("purge_failed_messages", q.PURGE_FAILED_MESSAGES),
        ("purge_ttl_messages", q.PURGE_TTL_MESSAGES),
        ("reset_failed_messages", q.RESET_FAILED_MESSAGES),
    ],
)
def test_topic_maintenance_queries(method, query):
    db = FakeDB()
    getattr(Client(db, ClientOptions(topic="jobs")), method)()
    assert db.calls == [(query, ("jobs",))]


def test_reset_failed_message_passes_id_and_topic():
    db = FakeDB()
    Client(db, ClientOptions(topic="jobs")).reset_failed_message("m-1")
    assert db.calls == [(q.RESET_FAILED_MESSAGE, ("m-1", "jobs"))]


def test_read_failed_messages_decodes_bodies():
    db = FakeDB()
    when = datetime(2024, 1, 1, tzinfo=timezone.utc)
    db.failed_rows = [("m-1", b'{"k":"v"}', 1, when)]
    client = Client(db, ClientOptions(topic="jobs"))
    messages = client.read_failed_messages(10)
    assert messages == [Message("m-1", {"k": "v"}, delivery_count=1, scheduled=when)]
    assert (q.READ_FAILED_MESSAGES, (10, "jobs")) in db.calls


def test_subscribe_auto_complete_skips_complete_query():
    db = FakeDB()
    client = Client(db, ClientOptions(auto_complete=True))
    client.publish(Message("a", 1))
    with client.subscribe(lambda message: message.complete()):
        assert eventually(lambda: any(c[0] == q.READ_MESSAGES for c in db.calls))
        assert eventually(lambda: client.message_counts().completed == 1)
        time.sleep(0.2)
    assert client.message_counts() == MessageCounts(active=0, completed=1, failed=0, scheduled=0)
    assert all(call[0] != q.COMPLETE_MESSAGE for call in db.calls)


def test_subscribe_delete_removes_message():
    db = FakeDB()
    client = Client(db)
    client.publish(Message("a", 1))
    with client.subscribe(lambda message: message.complete().delete()):
        assert eventually(lambda: "a" not in db.rows)
    assert (q.DELETE_MESSAGE, ("a",)) in db.calls


def test_subscribe_fail_exhausts_deliveries():
    db = FakeDB()
    client = Client(db)
    client.publish(Message("a", 1))
    with client.subscribe(lambda message: message.fail()):
        assert eventually(lambda: client.message_counts().failed == 1)
    assert client.message_counts() == MessageCounts(active=0, completed=0, failed=1, scheduled=0)


def test_subscribe_retries_failed_message():
    db = FakeDB()
    client = Client(db, ClientOptions(max_delivery_count=2))
    counts = []

    def handler(message):
        counts.append(message.delivery_count)
        return message.fail() if message.delivery_count == 1 else message.complete()

    client.publish(Message("a", 1))
    with client.subscribe(handler):
        assert eventually(lambda: client.message_counts().completed == 1)
    assert counts == [1, 2]
    assert client.message_counts() == MessageCounts(active=0, completed=1, failed=0, scheduled=0)


def test_subscribe_waits_for_scheduled_message():
    db = FakeDB()
    client = Client(db)
    due = utcnow() + timedelta(milliseconds=300)
    handled_at = []

    def handler(message):
        handled_at.append(utcnow())
        return message.complete()

    client.publish(Message("later", 1).with_scheduled(due))
    with client.subscribe(handler):
        assert eventually(lambda: len(handled_at) == 1)
    assert handled_at[0] >= due


def test_handler_error_stops_subscription():
    db = FakeDB()
    client = Client(db)
    boom = RuntimeError("boom")

    def handler(message):
        raise boom

    client.publish(Message("a", 1))
    subscription = client.subscribe(handler)
    with pytest.raises(RuntimeError, match="boom"):
        subscription.wait()
    assert subscription.errors.get(timeout=1) is boom
    assert db.listeners["pogomq_polling_default"] == []


def test_handler_must_return_result():
    db = FakeDB()
    client = Client(db)
    client.publish(Message("a", 1))
    subscription = client.subscribe(lambda message: None)
    with pytest.raises(TypeError):
        subscription.wait()


def test_bad_notification_is_reported():
    db = FakeDB()
    client = Client(db, ClientOptions(topic="jobs"))
    with client.subscribe(lambda message: message.complete()) as subscription:
        db.notify("pogomq_polling_jobs", "not a time")
        error = subscription.errors.get(timeout=2)
        counts = client.message_counts()
    assert isinstance(error, ValueError)
    assert counts == MessageCounts(active=0, completed=0, failed=0, scheduled=0)


def test_subscribe_propagates_listen_failure():
    class BrokenDB(FakeDB):
        def listen(self, channel, callback):
            raise ConnectionError("no listen")

    with pytest.raises(ConnectionError):
        Client(BrokenDB()).subscribe(lambda message: message.complete())


def test_close_stops_subscriptions_and_db():
    db = FakeDB()
    client = Client(db)
    client.subscribe(lambda message: message.complete())
    assert eventually(lambda: len(db.listeners["pogomq_polling_default"]) == 1)
    client.close()
    assert db.closed is True
    assert db.listeners["pogomq_polling_default"] == []