"""Queue messages and the results a handler returns for them."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    """The current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise to aware UTC; naive datetimes are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Message(Generic[T]):
    """A message with a JSON-serialisable body.

    ``scheduled`` is when the message becomes due (``None`` means at once);
    ``delivery_count`` is filled in for messages handed to a subscriber.
    """

    id: str
    body: T
    delivery_count: int = 0
    scheduled: Optional[datetime] = None
    ttl: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "scheduled", _as_utc(self.scheduled))

    def with_scheduled(self, scheduled: datetime) -> Message[T]:
        """A copy of the message due at ``scheduled`` (stored as UTC)."""
        return replace(self, scheduled=scheduled)

    def with_ttl(self, ttl: datetime) -> Message[T]:
        """A copy of the message carrying the given expiry time."""
        return replace(self, ttl=ttl)

    def complete(self) -> Completed:
        """Mark the message as completed."""
        return Completed()

    def fail(self) -> Failed:
        """Mark the message as failed, to be retried immediately."""
        return Failed(scheduled=utcnow())


class MessageResult:
    """Base of the outcomes a message handler may return."""

    __slots__ = ()


@dataclass(frozen=True)
class Completed(MessageResult):
    """The message was handled successfully."""

    deleted: bool = False
    messages: tuple[Message[Any], ...] = ()

    def delete(self) -> Completed:
        """Remove the message from the queue instead of keeping it as completed."""
        return replace(self, deleted=True)

    def publish(self, *args: Message[Any]) -> Completed:
        """Publish further messages once this one is settled."""
        return replace(self, messages=self.messages + args)


@dataclass(frozen=True)
class Failed(MessageResult):
    """The message could not be handled and may be retried at ``scheduled``."""

    scheduled: datetime = field(default_factory=utcnow)
    deleted: bool = False
    messages: tuple[Message[Any], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "scheduled", _as_utc(self.scheduled))

    def delete(self) -> Failed:
        """Remove the message from the queue instead of retrying it."""
        return replace(self, deleted=True)

    def publish(self, *args: Message[Any]) -> Failed:
        """Publish further messages once this one is settled."""
        return replace(self, messages=self.messages + args)

    def reschedule(self, scheduled: datetime) -> Failed:
        """Retry the message at ``scheduled`` rather than at once."""
        return replace(self, scheduled=scheduled)