import pytest

from procura.streaming.activity import ActivityFeed, ActivityTracker, Service
from procura.streaming.bus import StreamBus
from procura.streaming.contracts import RunEventType


def _drain(queue):
    return [queue.get_nowait() for _ in range(queue.qsize())]


@pytest.mark.asyncio
async def test_overlapping_activations_publish_only_on_flips():
    bus = StreamBus()
    tracker = ActivityTracker(bus)
    queue = await bus.subscribe("r1")

    await tracker.acquire("r1", Service.VOICE)
    await tracker.acquire("r1", Service.VOICE)
    await tracker.release("r1", Service.VOICE)
    assert tracker.snapshot("r1")["voice"] is True
    await tracker.release("r1", Service.VOICE)

    events = _drain(queue)
    assert [event.event_type for event in events] == [RunEventType.SERVICES_CHANGE] * 2
    assert events[0].payload["voice"] is True
    assert events[1].payload["voice"] is False
    assert tracker.snapshot("r1") == {"memory": False, "reasoning": False, "voice": False, "mail": False}


@pytest.mark.asyncio
async def test_release_without_acquire_is_ignored():
    bus = StreamBus()
    tracker = ActivityTracker(bus)
    queue = await bus.subscribe("r1")
    await tracker.release("r1", Service.MAIL)
    assert queue.empty()


@pytest.mark.asyncio
async def test_active_context_releases_on_error():
    bus = StreamBus()
    tracker = ActivityTracker(bus)
    with pytest.raises(RuntimeError):
        async with tracker.active("r1", Service.REASONING):
            assert tracker.snapshot("r1")["reasoning"] is True
            raise RuntimeError("provider exploded")
    assert tracker.snapshot("r1")["reasoning"] is False


@pytest.mark.asyncio
async def test_feed_publishes_activity_and_update_with_same_id():
    bus = StreamBus()
    feed = ActivityFeed(bus)
    queue = await bus.subscribe("r1")

    activity_id = await feed.start("r1", kind="call", title="Calling Acme", tool="voice")
    await feed.update("r1", activity_id, status="done")
    await feed.stage("r1", "negotiating")

    started, updated, stage = _drain(queue)
    assert started.payload["id"] == activity_id
    assert started.payload["status"] == "running"
    assert updated.event_type == RunEventType.UPDATE_ACTIVITY
    assert updated.payload == {"id": activity_id, "updates": {"status": "done"}}
    assert stage.payload == {"stage": "negotiating"}
