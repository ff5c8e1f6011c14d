# pogoq

A small message queue that keeps its messages in a single PostgreSQL table
named `pogomq`. Messages are grouped by topic, can be scheduled for later, are
retried up to a configurable delivery count, and can expire after a
time-to-live. Consumption runs on background threads; there are no third-party
dependencies.

## Modules

- `pogoq.message` – `Message`, the handler results `Completed` and `Failed`
  (both subclasses of `MessageResult`), and `utcnow()`.
- `pogoq.client` – `Client`, `ClientOptions`, `MessageCounts` and
  `Subscription`.
- `pogoq.queries` – the SQL statements and `Queries`, a typed layer over them
  returning `MessageCountsRow`, `FailedMessageRow` and `ReadMessageRow`, and
  taking `EnqueueRow` for bulk inserts.

## Connecting to a database

`Client(db, options=None)` takes any object with these methods; queries use
`$1`, `$2`, … placeholders:

| Method                                    | Used for                                              |
|-------------------------------------------|-------------------------------------------------------|
| `execute(query, *args)`                   | updates and deletes                                   |
| `fetch(query, *args)`                     | rows as sequences of column values                    |
| `fetchrow(query, *args)`                  | a single row, or `None`                               |
| `copy_records(table, columns, records)`   | bulk insert of published messages; returns the count  |
| `listen(channel, callback)`               | calls `callback(payload)` per notification; returns a function that stops listening |

If the object also has a `close()` method, `Client.close()` calls it.

## Messages

`Message(id, body, delivery_count=0, scheduled=None, ttl=None)` is a frozen
dataclass. The body must be JSON-serialisable; it is stored as compact JSON and
decoded with `json.loads` when read back. `scheduled` is normalised to aware
UTC (naive values are taken as UTC already); `None` means due at once.

- `with_scheduled(when)` and `with_ttl(when)` return a new message.
  `Client.publish` takes expiry from the client's `ttl` option, not from
  `Message.ttl`.
- `complete()` returns `Completed()`. `.delete()` removes the message instead of
  marking it completed, and `.publish(*messages)` queues follow-up messages.
- `fail()` returns `Failed(scheduled=utcnow())`, so the message is retried at
  once while its delivery count allows. `.reschedule(when)` retries it later,
  `.delete()` drops it, and `.publish(*messages)` queues follow-up messages.

Results are immutable; each method returns a new one.

## Options

`ClientOptions` is a frozen dataclass; out-of-range values are clamped:

| Field                | Default     | Meaning                                                          |
|----------------------|-------------|------------------------------------------------------------------|
| `topic`              | `"default"` | Topic the client publishes to and reads from                     |
| `auto_complete`      | `False`     | Mark messages completed as soon as they are read                 |
| `max_delivery_count` | `1`         | Deliveries allowed before a message counts as failed (min. 1)    |
| `ttl`                | `0` (none)  | Seconds (int, float or `timedelta`, truncated) a message is kept after its last change |
| `worker_count`       | `1`         | Messages read per poll and handled concurrently (min. 1)         |

## Handling messages

```python
from pogoq.client import Client, ClientOptions
from pogoq.message import Message


def handle(message):
    if message.body.get("ok"):
        return message.complete().publish(Message("next-step", {"ok": True}))
    return message.fail()


with Client(db, ClientOptions(topic="orders", worker_count=4)) as client:
    client.publish(Message("order-1", {"ok": True}))
    subscription = client.subscribe(handle)
    subscription.wait()
```

`Client.subscribe(handler)` listens on the channel `pogomq_polling_<topic>`,
polls straight away, and returns a running `Subscription`. After each poll it
waits for the earliest future schedule in the topic, or for a notification
whose payload is an RFC 3339 timestamp, whichever is sooner; timer changes are
debounced by 100 ms.

- Errors that do not stop the subscription (a failed poll, an unparsable
  notification) are put on `Subscription.errors`, a `queue.Queue`.
- The first exception raised while handling a message, including a handler
  returning something other than a `MessageResult`, stops the subscription and
  is also put on `errors`.
- `Subscription.wait()` blocks until the subscription stops and raises that
  exception. `Subscription.close()` stops polling and waits for running
  handlers; a `Subscription` is also a context manager.
- `Client.close()` closes every subscription, then the database object.

## Managing the queue

- `Client.publish(*messages)` – add messages to the topic.
- `Client.message_counts()` – a `MessageCounts` with `active`, `completed`,
  `failed` and `scheduled` totals.
- `Client.read_failed_messages(limit)` – up to `limit` uncompleted messages that
  used up their deliveries, oldest schedule first.
- `Client.reset_failed_messages()` / `Client.reset_failed_message(id)` – for
  rows of the topic that have a completion time, clear it, set the delivery
  count to 0 and schedule them for now.
- `Client.purge_all_messages()`, `Client.purge_completed_messages()`,
  `Client.purge_failed_messages()`, `Client.purge_ttl_messages()` – delete
  messages from the topic.

## What the package does not do

- It ships no PostgreSQL driver; you supply the database object described above.
- It does not create the `pogomq` table or any migration for it. The table needs
  the columns `auto_complete`, `body`, `completed`, `delivery_count`, `id`,
  `max_delivery_count`, `scheduled`, `topic`, `ttl` and `ttl_seconds`.
- It does not send notifications on the polling channel; it only listens. Without
  something that notifies, new messages are picked up only at the next scheduled
  poll time.
- There is no command-line tool.

## Running the tests

```
pip install -e ".[test]"
pytest
```