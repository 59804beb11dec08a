import asyncio
import json
from datetime import date

import fakeredis

from brand_connect.events import (
    AVAILABILITY_CHANGED,
    BOOKING_CREATED,
    BookingChangeEvent,
    BookingChangeNotifier,
    relay_remote_changes,
    subscribe_remote_changes,
)


def test_event_message_serializes_date() -> None:
    event = BookingChangeEvent(type=BOOKING_CREATED, creative_id=3, booking_date=date(2026, 1, 5), booking_id=9)

    assert event.to_message() == {
        'type': 'booking_created',
        'creative_id': 3,
        'booking_date': '2026-01-05',
        'booking_id': 9,
        'status': None,
    }


def test_publish_reaches_listeners_of_that_creative_only() -> None:
    notifier = BookingChangeNotifier()
    received: list[BookingChangeEvent] = []
    notifier.add_listener(3, received.append)
    notifier.add_listener(4, lambda event: received.append(('wrong creative', event)))

    event = BookingChangeEvent(type=AVAILABILITY_CHANGED, creative_id=3)
    notifier.publish(event)

    assert received == [event]


def test_failing_listener_does_not_block_others() -> None:
    notifier = BookingChangeNotifier()
    received: list[BookingChangeEvent] = []

    def broken_listener(_event):
        raise RuntimeError('boom')

    notifier.add_listener(3, broken_listener)
    notifier.add_listener(3, received.append)

    notifier.publish(BookingChangeEvent(type=BOOKING_CREATED, creative_id=3, booking_date=date(2026, 1, 5)))

    assert len(received) == 1


def test_remove_listener_stops_delivery() -> None:
    notifier = BookingChangeNotifier()
    received: list[BookingChangeEvent] = []
    notifier.add_listener(3, received.append)
    notifier.remove_listener(3, received.append)

    notifier.publish(BookingChangeEvent(type=BOOKING_CREATED, creative_id=3))

    assert received == []
    assert notifier.subscriber_count(3) == 0


def test_subscription_receives_events_published_from_another_thread() -> None:
    notifier = BookingChangeNotifier()
    event = BookingChangeEvent(type=BOOKING_CREATED, creative_id=5, booking_date=date(2026, 1, 5))

    async def scenario():
        subscription = notifier.subscribe(5)
        assert notifier.subscriber_count(5) == 1

        await asyncio.get_running_loop().run_in_executor(None, notifier.publish, event)
        received = await asyncio.wait_for(subscription.get(), timeout=1)

        notifier.unsubscribe(subscription)
        return received

    assert asyncio.run(scenario()) == event
    assert notifier.subscriber_count(5) == 0


def _next_message(pubsub) -> dict | None:
    for _ in range(20):
        message = pubsub.get_message(timeout=0.05)
        if message is not None:
            return message
    return None


def test_event_round_trips_through_message() -> None:
    event = BookingChangeEvent(type=BOOKING_CREATED, creative_id=3, booking_date=date(2026, 1, 5), booking_id=9, status='pending')

    assert BookingChangeEvent.from_message(json.loads(json.dumps(event.to_message()))) == event


def test_publish_sends_event_to_creative_channel_in_redis() -> None:
    redis = fakeredis.FakeRedis(decode_responses=True)
    pubsub = redis.pubsub(ignore_subscribe_messages=True)
    pubsub.subscribe('booking-changes:3')
    notifier = BookingChangeNotifier(redis)
    received: list[BookingChangeEvent] = []
    notifier.add_listener(3, received.append)

    event = BookingChangeEvent(type=BOOKING_CREATED, creative_id=3, booking_date=date(2026, 1, 5), booking_id=9)
    notifier.publish(event)

    message = _next_message(pubsub)
    assert message is not None
    payload = json.loads(message['data'])
    assert payload['origin'] == notifier.origin
    assert payload['booking_date'] == '2026-01-05'
    assert received == [event]


def test_publish_still_dispatches_locally_when_redis_is_down() -> None:
    server = fakeredis.FakeServer()
    server.connected = False
    notifier = BookingChangeNotifier(fakeredis.FakeRedis(server=server, decode_responses=True))
    received: list[BookingChangeEvent] = []
    notifier.add_listener(3, received.append)

    notifier.publish(BookingChangeEvent(type=AVAILABILITY_CHANGED, creative_id=3))

    assert len(received) == 1


def test_receive_remote_skips_own_and_malformed_messages() -> None:
    notifier = BookingChangeNotifier()
    received: list[BookingChangeEvent] = []
    notifier.add_listener(3, received.append)
    event = BookingChangeEvent(type=BOOKING_CREATED, creative_id=3, booking_date=date(2026, 1, 5))

    assert notifier.receive_remote(json.dumps({**event.to_message(), 'origin': notifier.origin})) is False
    assert notifier.receive_remote('not json') is False
    assert notifier.receive_remote(json.dumps({'creative_id': 3})) is False
    assert notifier.receive_remote(json.dumps({**event.to_message(), 'origin': 'other-worker'})) is True
    assert received == [event]


def test_relay_delivers_events_published_by_another_worker() -> None:
    notifier = BookingChangeNotifier()
    event = BookingChangeEvent(type=BOOKING_CREATED, creative_id=5, booking_date=date(2026, 1, 5), booking_id=1)

    async def scenario():
        redis = fakeredis.FakeAsyncRedis(decode_responses=True)
        subscription = notifier.subscribe(5)
        pubsub = await subscribe_remote_changes(redis)
        relay = asyncio.create_task(relay_remote_changes(pubsub, notifier))
        try:
            await redis.publish('booking-changes:5', json.dumps({**event.to_message(), 'origin': 'other-worker'}))
            return await asyncio.wait_for(subscription.get(), timeout=2)
        finally:
            relay.cancel()
            await asyncio.gather(relay, return_exceptions=True)
            notifier.unsubscribe(subscription)
            await pubsub.aclose()
            await redis.aclose()

    assert asyncio.run(scenario()) == event
