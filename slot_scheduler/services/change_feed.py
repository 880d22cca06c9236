"""
Row-level change feed.

Stores publish an event for every committed INSERT/UPDATE/DELETE on
``scheduling_slots`` and ``orders``. Subscribers register a handler scoped
to a table and to column equality filters (for example establishment id
and slot date); an UPDATE matches when either the old or the new row
satisfies the filters, so a row moving out of scope is still delivered.

Handlers run synchronously on the publishing thread after the commit.
A failing handler is logged and never affects the writer.

With ``REDIS_URL`` set the feed is shared between processes: every local
event is also published on a Redis channel, and events published there by
other workers or by the order subsystem are delivered to local subscribers.
Each feed tags what it sends with its origin and skips its own echoes.
"""

import itertools
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from threading import Lock
from typing import Callable

import redis
from redis.exceptions import RedisError

from slot_scheduler.core import config

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
EVENT_TYPES = (INSERT, UPDATE, DELETE)


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str
    new: dict | None = None
    old: dict | None = None

    @property
    def record(self) -> dict:
        return self.new if self.new is not None else (self.old or {})

    @property
    def record_id(self):
        return self.record.get("id")


def _encode_value(value):
    if isinstance(value, datetime):
        return {"__type__": "datetime", "value": value.isoformat()}
    if isinstance(value, date):
        return {"__type__": "date", "value": value.isoformat()}
    if isinstance(value, time):
        return {"__type__": "time", "value": value.isoformat()}
    if isinstance(value, Decimal):
        return {"__type__": "decimal", "value": str(value)}
    raise TypeError(f"Cannot encode {type(value).__name__} in a change event")


_DECODERS = {
    "datetime": datetime.fromisoformat,
    "date": date.fromisoformat,
    "time": time.fromisoformat,
    "decimal": Decimal,
}


def _decode_object(obj: dict):
    kind = obj.get("__type__")
    if kind in _DECODERS and set(obj) == {"__type__", "value"}:
        return _DECODERS[kind](obj["value"])
    return obj


def encode_event(event: ChangeEvent, origin: str) -> str:
    return json.dumps(
        {
            "origin": origin,
            "table": event.table,
            "event_type": event.event_type,
            "new": event.new,
            "old": event.old,
        },
        default=_encode_value,
    )


def decode_event(payload: str | bytes) -> tuple[str | None, ChangeEvent]:
    message = json.loads(payload, object_hook=_decode_object)
    event_type = message["event_type"]
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type!r}")
    event = ChangeEvent(
        table=message["table"],
        event_type=event_type,
        new=message.get("new"),
        old=message.get("old"),
    )
    return message.get("origin"), event


class RedisTransport:
    """Carries encoded events over a Redis pub/sub channel."""

    def __init__(self, url: str, channel: str | None = None, client=None):
        self.channel = channel or config.CHANGE_FEED_CHANNEL
        self._client = client or redis.from_url(url, decode_responses=True)
        self._pubsub = None
        self._worker = None

    def send(self, payload: str) -> None:
        self._client.publish(self.channel, payload)

    def start(self, deliver: Callable[[str], None]) -> None:
        self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(**{self.channel: lambda message: deliver(message["data"])})
        self._worker = self._pubsub.run_in_thread(sleep_time=1.0, daemon=True)
        logger.info("Change feed listening on Redis channel %s", self.channel)

    def stop(self) -> None:
        if self._worker is not None:
            self._worker.stop()
            self._worker = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None


@dataclass(eq=False)
class Subscription:
    id: int
    table: str
    handler: Callable[[ChangeEvent], None]
    event_types: frozenset = frozenset(EVENT_TYPES)
    filters: dict = field(default_factory=dict)

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.event_type not in self.event_types:
            return False
        return any(
            row is not None and all(row.get(key) == value for key, value in self.filters.items())
            for row in (event.new, event.old)
        )


class ChangeFeed:
    def __init__(self, transport=None):
        self.origin = uuid.uuid4().hex
        self._lock = Lock()
        self._ids = itertools.count(1)
        self._subscriptions: dict[int, Subscription] = {}
        self._transport = None
        if transport is not None:
            self.attach(transport)

    def attach(self, transport) -> None:
        """Share events with other processes through ``transport``."""
        self.detach()
        transport.start(self.receive)
        self._transport = transport

    def detach(self) -> None:
        if self._transport is not None:
            self._transport.stop()
            self._transport = None

    def subscribe(
        self,
        table: str,
        handler: Callable[[ChangeEvent], None],
        *,
        event_types: tuple[str, ...] = EVENT_TYPES,
        **filters,
    ) -> Subscription:
        unknown = set(event_types) - set(EVENT_TYPES)
        if unknown:
            raise ValueError(f"Unknown event types: {sorted(unknown)}")

        with self._lock:
            subscription = Subscription(
                id=next(self._ids),
                table=table,
                handler=handler,
                event_types=frozenset(event_types),
                filters=filters,
            )
            self._subscriptions[subscription.id] = subscription

        logger.debug("Subscribed #%s to %s %s", subscription.id, table, filters)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)
        logger.debug("Unsubscribed #%s from %s", subscription.id, subscription.table)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> None:
        self._dispatch(event)
        if self._transport is None:
            return
        try:
            self._transport.send(encode_event(event, self.origin))
        except RedisError:
            logger.exception("Could not share %s %s id=%s with other processes", event.event_type, event.table, event.record_id)

    def publish_all(self, events: list[ChangeEvent]) -> None:
        for event in events:
            self.publish(event)

    def receive(self, payload: str | bytes) -> None:
        """Deliver an event published by another process."""
        try:
            origin, event = decode_event(payload)
        except (ValueError, KeyError, TypeError):
            logger.warning("Dropping malformed change event: %r", payload)
            return
        if origin == self.origin:
            return
        self._dispatch(event)

    def _dispatch(self, event: ChangeEvent) -> None:
        with self._lock:
            targets = [s for s in self._subscriptions.values() if s.matches(event)]

        for subscription in targets:
            try:
                subscription.handler(event)
            except Exception:
                logger.exception(
                    "Change feed subscriber #%s failed on %s %s id=%s",
                    subscription.id,
                    event.event_type,
                    event.table,
                    event.record_id,
                )


change_feed = ChangeFeed()


def connect_change_feed(feed: ChangeFeed = change_feed) -> bool:
    """Attach the Redis transport when REDIS_URL is configured."""
    if not config.REDIS_URL:
        logger.info("REDIS_URL not set; change feed is local to this process")
        return False
    feed.attach(RedisTransport(config.REDIS_URL))
    return True
