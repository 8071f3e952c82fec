"""
Event Emitter Tests
===================

Run with: pytest test_events.py
"""

import asyncio

from events import AUTO_MODE_EVENT, FEATURE_START, EventEmitter


def test_subscribe_and_unsubscribe():
    emitter = EventEmitter()
    received = []
    unsubscribe = emitter.subscribe(lambda name, payload: received.append((name, payload)))

    emitter.emit_auto_mode_event(FEATURE_START, featureId="feat-1")
    unsubscribe()
    emitter.emit_auto_mode_event(FEATURE_START, featureId="feat-2")

    assert received == [(AUTO_MODE_EVENT, {"type": FEATURE_START, "featureId": "feat-1"})]


def test_failing_subscriber_does_not_block_others():
    emitter = EventEmitter()
    received = []

    def broken(name, payload):
        raise RuntimeError("subscriber bug")

    emitter.subscribe(broken)
    emitter.subscribe(lambda name, payload: received.append(payload["type"]))

    emitter.emit_auto_mode_event(FEATURE_START)
    assert received == [FEATURE_START]


def test_async_subscribers_run_on_loop():
    emitter = EventEmitter()
    received = []

    async def on_event(name, payload):
        await asyncio.sleep(0)
        received.append(payload["featureId"])

    async def failing(name, payload):
        raise RuntimeError("async subscriber bug")

    emitter.subscribe(on_event)
    emitter.subscribe(failing)

    async def scenario():
        emitter.emit_auto_mode_event(FEATURE_START, featureId="feat-1")
        await asyncio.sleep(0.01)

    asyncio.run(scenario())
    assert received == ["feat-1"]


def test_async_subscriber_without_loop_is_dropped():
    emitter = EventEmitter()

    async def on_event(name, payload):
        raise AssertionError("should not run")

    emitter.subscribe(on_event)
    emitter.emit_auto_mode_event(FEATURE_START)
