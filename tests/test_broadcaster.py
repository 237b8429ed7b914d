import asyncio

from glassops.models.activity import NotificationSeverity
from glassops.services.activity_service import ActivityService
from glassops.services.broadcaster import (
    NotificationBroadcaster,
    notification_frame,
    notification_update_frame,
)


class Observer:
    def __init__(self, fail=False):
        self.fail = fail
        self.frames = []

    async def send(self, frame):
        if self.fail:
            raise ConnectionError("socket closed")
        await asyncio.sleep(0)
        self.frames.append(frame)


class StalledObserver:
    """Accepts the frame but never finishes sending."""

    def __init__(self):
        self.release = asyncio.Event()

    async def send(self, frame):
        await self.release.wait()


async def test_frames_arrive_in_publish_order():
    hub = NotificationBroadcaster()
    observer = Observer()
    hub.register("a", observer.send)

    await asyncio.gather(*(hub.broadcast({"seq": i}) for i in range(5)))

    assert [frame["seq"] for frame in observer.frames] == [0, 1, 2, 3, 4]


async def test_failing_observer_is_pruned_without_affecting_others():
    hub = NotificationBroadcaster()
    healthy, broken = Observer(), Observer(fail=True)
    hub.register("healthy", healthy.send)
    hub.register("broken", broken.send)

    delivered = await hub.broadcast({"type": "ping"})

    assert delivered == 1
    assert hub.observer_count == 1
    assert healthy.frames == [{"type": "ping"}]
    assert await hub.broadcast({"type": "ping"}) == 1


async def test_stalled_observer_is_pruned_after_send_timeout():
    hub = NotificationBroadcaster(send_timeout=0.05)
    stalled, healthy = StalledObserver(), Observer()
    hub.register("stalled", stalled.send)
    hub.register("healthy", healthy.send)

    delivered = await asyncio.wait_for(hub.broadcast({"seq": 1}), timeout=2)

    assert delivered == 1
    assert hub.observer_count == 1
    assert await asyncio.wait_for(hub.broadcast({"seq": 2}), timeout=2) == 1
    assert [frame["seq"] for frame in healthy.frames] == [1, 2]


async def test_unregister_is_idempotent():
    hub = NotificationBroadcaster()
    hub.register("a", Observer().send)

    hub.unregister("a")
    hub.unregister("a")

    assert hub.observer_count == 0
    assert await hub.broadcast({"type": "ping"}) == 0


def test_frame_shapes():
    assert notification_frame({"id": "n1"}) == {"type": "notification", "notification": {"id": "n1"}}
    assert notification_update_frame("n1", {"resolved": True}) == {
        "type": "notification_update",
        "notificationId": "n1",
        "updates": {"resolved": True},
    }


async def test_notify_and_resolve_reach_observers(db):
    hub = NotificationBroadcaster()
    observer = Observer()
    hub.register("dashboard", observer.send)
    activity = ActivityService(db, hub)

    notification = await activity.notify(
        type="dead_letter",
        severity=NotificationSeverity.CRITICAL,
        title="Retry exhausted",
        message="process_transaction for transaction 9 needs attention",
        transaction_id=9,
    )
    await activity.resolve_notification(notification.id, resolved_by="ops@example.com")

    created, updated = observer.frames
    assert created["notification"]["severity"] == "critical"
    assert created["notification"]["transactionId"] == 9
    assert updated["type"] == "notification_update"
    assert updated["notificationId"] == notification.id
    assert updated["updates"]["resolvedBy"] == "ops@example.com"
    assert await activity.unresolved_notifications() == []


async def test_recent_activity_filters_by_prefix(activity):
    await activity.log("retry_scheduled", "queued", transaction_id=1)
    await activity.log("retry_deadletter", "gave up", transaction_id=1)
    await activity.log("form_received", "hello", transaction_id=2)

    retries = await activity.recent_activity(type_prefix="retry_")

    assert [entry.type for entry in retries] == ["retry_deadletter", "retry_scheduled"]
    assert len(await activity.recent_activity(transaction_id=2)) == 1
