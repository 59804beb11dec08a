"""
Booking change notifications.

Route handlers publish an event whenever a creative's bookings or
availability change; open booking sessions subscribe per creative and
refresh the slot list for the date they are showing.

Delivery:
- local: subscribers and listeners in this process get the event at once
- redis: the event is also published to `booking-changes:<creative_id>`;
  the relay loop in every other worker hands it to its own local
  subscribers (messages carrying this worker's origin are skipped)

Events:
- booking_created        (booking_date set)
- booking_status_changed (booking_date set)
- availability_changed   (booking_date None: every date is affected)
"""

import asyncio
import json
import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import date
from threading import Lock

import redis.asyncio as aioredis
from redis import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from brand_connect.core import config
from brand_connect.redis_client import redis_client

logger = logging.getLogger(__name__)

BOOKING_CREATED = "booking_created"
BOOKING_STATUS_CHANGED = "booking_status_changed"
AVAILABILITY_CHANGED = "availability_changed"

RELAY_RETRY_SECONDS = 5


def channel_for(creative_id: int) -> str:
    return f"{config.BOOKING_EVENTS_CHANNEL}:{creative_id}"


@dataclass(frozen=True)
class BookingChangeEvent:
    type: str
    creative_id: int
    booking_date: date | None = None
    booking_id: int | None = None
    status: str | None = None

    def to_message(self) -> dict:
        message = asdict(self)
        if self.booking_date is not None:
            message["booking_date"] = self.booking_date.isoformat()
        return message

    @classmethod
    def from_message(cls, message: dict) -> "BookingChangeEvent":
        booking_date = message.get("booking_date")
        return cls(
            type=message["type"],
            creative_id=int(message["creative_id"]),
            booking_date=date.fromisoformat(booking_date) if booking_date else None,
            booking_id=message.get("booking_id"),
            status=message.get("status"),
        )


class Subscription:
    """Queue of events for one creative, bound to the loop that created it."""

    def __init__(self, creative_id: int, loop: asyncio.AbstractEventLoop):
        self.creative_id = creative_id
        self.loop = loop
        self.queue: asyncio.Queue[BookingChangeEvent] = asyncio.Queue()

    async def get(self) -> BookingChangeEvent:
        return await self.queue.get()


class BookingChangeNotifier:
    def __init__(self, redis: Redis | None = None):
        self.redis = redis
        self.origin = uuid.uuid4().hex
        self._lock = Lock()
        self._subscriptions: dict[int, set[Subscription]] = defaultdict(set)
        self._listeners: dict[int, list[Callable[[BookingChangeEvent], None]]] = defaultdict(list)

    def subscribe(self, creative_id: int) -> Subscription:
        """Must be called from a running event loop."""
        subscription = Subscription(creative_id, asyncio.get_running_loop())
        with self._lock:
            self._subscriptions[creative_id].add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(subscription.creative_id)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscriptions[subscription.creative_id]

    def add_listener(self, creative_id: int, callback: Callable[[BookingChangeEvent], None]) -> None:
        with self._lock:
            self._listeners[creative_id].append(callback)

    def remove_listener(self, creative_id: int, callback: Callable[[BookingChangeEvent], None]) -> None:
        with self._lock:
            listeners = self._listeners.get(creative_id, [])
            if callback in listeners:
                listeners.remove(callback)
            if not listeners:
                self._listeners.pop(creative_id, None)

    def subscriber_count(self, creative_id: int) -> int:
        with self._lock:
            return len(self._subscriptions.get(creative_id, ())) + len(self._listeners.get(creative_id, ()))

    def publish(self, event: BookingChangeEvent) -> None:
        self.dispatch(event)
        if self.redis is None:
            return

        payload = json.dumps({**event.to_message(), "origin": self.origin})
        try:
            self.redis.publish(channel_for(event.creative_id), payload)
        except RedisError as e:
            logger.error(f"Failed to publish {event.type} for creative {event.creative_id}: {e}")

    def receive_remote(self, raw: str) -> bool:
        """Dispatch an event relayed from Redis; returns False for our own or unreadable messages."""
        try:
            message = json.loads(raw)
            if message.get("origin") == self.origin:
                return False
            event = BookingChangeEvent.from_message(message)
        except (ValueError, KeyError, TypeError, AttributeError):
            logger.warning("Ignoring malformed booking change message: %r", raw)
            return False

        self.dispatch(event)
        return True

    def dispatch(self, event: BookingChangeEvent) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.get(event.creative_id, ()))
            listeners = list(self._listeners.get(event.creative_id, ()))

        for subscription in subscriptions:
            try:
                subscription.loop.call_soon_threadsafe(subscription.queue.put_nowait, event)
            except RuntimeError:
                # Loop already closed; the session is gone.
                logger.warning("Dropping %s for closed subscription on creative %s", event.type, event.creative_id)
                self.unsubscribe(subscription)

        for callback in listeners:
            try:
                callback(event)
            except Exception:
                logger.exception("Booking change listener failed for creative %s", event.creative_id)

        logger.info(
            "Event dispatched: %s creative=%s date=%s (%d receivers)",
            event.type,
            event.creative_id,
            event.booking_date,
            len(subscriptions) + len(listeners),
        )


async def subscribe_remote_changes(r: aioredis.Redis) -> PubSub:
    pubsub = r.pubsub()
    await pubsub.psubscribe(f"{config.BOOKING_EVENTS_CHANNEL}:*")
    return pubsub


async def relay_remote_changes(pubsub: PubSub, target: BookingChangeNotifier) -> None:
    async for message in pubsub.listen():
        if message.get("type") != "pmessage":
            continue
        target.receive_remote(message["data"])


async def booking_change_relay_loop(redis_url: str, target: BookingChangeNotifier) -> None:
    """
    Feed events published by other workers into this worker's sessions.

    Started as an asyncio task on app startup; reconnects after Redis errors.
    """
    r = aioredis.from_url(redis_url, decode_responses=True)
    logger.info("booking_change_relay_loop started")

    try:
        while True:
            pubsub = None
            try:
                pubsub = await subscribe_remote_changes(r)
                await relay_remote_changes(pubsub, target)
            except asyncio.CancelledError:
                logger.info("booking_change_relay_loop cancelled")
                raise
            except RedisError:
                logger.exception(f"booking_change_relay_loop error, retrying in {RELAY_RETRY_SECONDS}s")
                await asyncio.sleep(RELAY_RETRY_SECONDS)
            finally:
                if pubsub is not None:
                    await pubsub.aclose()
    finally:
        await r.aclose()


notifier = BookingChangeNotifier(redis_client)
