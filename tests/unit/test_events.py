"""Event sink tests."""

import pytest

from stepwise.events.inmemory import InMemoryEventSink
from stepwise.models import LifecycleEvent


@pytest.mark.asyncio
async def test_inmemory_sink_basic():
    sink = InMemoryEventSink()
    await sink.publish(LifecycleEvent(topic="execution.started", execution_id="e1"))
    await sink.publish(LifecycleEvent(topic="execution.completed", execution_id="e1"))
    await sink.publish(LifecycleEvent(topic="execution.started", execution_id="e2"))

    assert sink.topics("e1") == ["execution.started", "execution.completed"]
    assert len(sink.topics()) == 3

    received = []
    async for event in sink.subscribe("execution.started", lifespan=0.2):
        received.append(event.execution_id)
        if len(received) == 2:
            break
    assert received == ["e1", "e2"]


@pytest.mark.asyncio
async def test_subscribe_stops_after_lifespan():
    sink = InMemoryEventSink()
    received = [e async for e in sink.subscribe("nothing", lifespan=0.1)]
    assert received == []


def test_event_json_round_trip():
    event = LifecycleEvent(topic="approval.requested", execution_id="e1", data={"step_id": "ok"})
    assert LifecycleEvent.from_json(event.to_json()) == event


@pytest.mark.asyncio
async def test_redis_sink_publishes_to_prefixed_channel(monkeypatch):
    from stepwise.events import redis as redis_sink

    published = []

    class FakeRedis:
        def __init__(self, **kwargs):
            self.kwargs = kwargs

        async def ping(self):
            return True

        async def publish(self, channel, message):
            published.append((channel, message))
            return 1

        async def aclose(self):
            pass

    monkeypatch.setattr(redis_sink.redis, "Redis", FakeRedis)
    sink = redis_sink.RedisEventSink(channel_prefix="wf")
    event = LifecycleEvent(topic="execution.failed", execution_id="e1")

    await sink.publish(event)
    await sink.disconnect()

    assert published == [("wf:execution.failed", event.to_json())]


@pytest.mark.asyncio
async def test_inmemory_sink_keeps_only_recent_events():
    sink = InMemoryEventSink(max_events=3)
    for n in range(10):
        await sink.publish(LifecycleEvent(topic="execution.started", execution_id=f"e{n}"))

    assert [e.execution_id for e in sink.events] == ["e7", "e8", "e9"]
    received = [e.execution_id async for e in sink.subscribe("execution.started", lifespan=0.2)]
    assert received == ["e7", "e8", "e9"]


def test_get_event_sink_applies_buffer_size(tmp_path, monkeypatch):
    from stepwise.config import StepwiseConfig
    from stepwise.events import get_event_sink

    monkeypatch.delenv("STEPWISE_EVENTS", raising=False)
    config = StepwiseConfig(events={"backend": "inmemory", "buffer_size": 5})

    sink = get_event_sink(config=config)

    assert isinstance(sink, InMemoryEventSink)
    assert sink.events.maxlen == 5
