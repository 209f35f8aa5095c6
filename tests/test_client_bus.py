import asyncio

from subsync.client.bus import ChangeEvent, EventBus, PushChannelAdapter

WINDOW = 0.05


def _push(row_id=1, updated_at="2025-06-01T00:00:00+00:00", user_id="user_1", table="user_subscriptions"):
    return {"eventType": "UPDATE", "table": table, "new": {"id": row_id, "updated_at": updated_at, "user_id": user_id}, "old": {}}


def _collector():
    seen = []

    async def consumer(event):
        seen.append(event)

    return seen, consumer


def test_change_event_from_push_message():
    event = ChangeEvent.from_push(_push(row_id=7))
    assert event.key == ("UPDATE", 7, "2025-06-01T00:00:00+00:00")
    assert event.user_id == "user_1"
    assert event.table == "user_subscriptions"
    assert event.source == "push"


def test_identical_keys_inside_window_delivered_once():
    async def scenario():
        seen, consumer = _collector()
        bus = EventBus(consumer, user_id="user_1", window_s=WINDOW)
        event = ChangeEvent.from_push(_push())
        assert bus.publish(event) is True
        assert bus.publish(event) is False
        await asyncio.sleep(WINDOW * 3)
        await bus.close()
        return seen, bus.delivered

    seen, delivered = asyncio.run(scenario())
    assert delivered == 1
    assert len(seen) == 1


def test_burst_of_distinct_events_coalesces_to_trailing_call():
    async def scenario():
        seen, consumer = _collector()
        bus = EventBus(consumer, user_id="user_1", window_s=WINDOW)
        bus.publish(ChangeEvent.from_push(_push(updated_at="a")))
        bus.publish(ChangeEvent.from_push(_push(updated_at="b")))
        bus.publish(ChangeEvent.manual("user_1", "c"))
        await asyncio.sleep(WINDOW * 3)
        await bus.close()
        return seen

    seen = asyncio.run(scenario())
    assert len(seen) == 1
    assert seen[0].source == "manual"


def test_same_key_after_window_is_delivered_again():
    async def scenario():
        seen, consumer = _collector()
        bus = EventBus(consumer, user_id="user_1", window_s=WINDOW)
        event = ChangeEvent.from_push(_push())
        bus.publish(event)
        await asyncio.sleep(WINDOW * 3)
        bus.publish(event)
        await asyncio.sleep(WINDOW * 3)
        await bus.close()
        return seen

    assert len(asyncio.run(scenario())) == 2


def test_other_users_events_ignored():
    async def scenario():
        seen, consumer = _collector()
        bus = EventBus(consumer, user_id="user_1", window_s=WINDOW)
        accepted = bus.publish(ChangeEvent.from_push(_push(user_id="user_2")))
        await asyncio.sleep(WINDOW * 3)
        await bus.close()
        return accepted, seen

    accepted, seen = asyncio.run(scenario())
    assert accepted is False
    assert seen == []


def test_close_drops_pending_delivery():
    async def scenario():
        seen, consumer = _collector()
        bus = EventBus(consumer, user_id="user_1", window_s=WINDOW)
        bus.publish(ChangeEvent.from_push(_push()))
        assert bus.pending
        await bus.close()
        await asyncio.sleep(WINDOW * 3)
        return seen

    assert asyncio.run(scenario()) == []


class _FakeChannel:
    def __init__(self):
        self.subscribed = {}
        self.unsubscribed = []

    async def subscribe(self, table, user_id, callback):
        self.subscribed[table] = callback

        async def unsubscribe():
            self.unsubscribed.append(table)

        return unsubscribe


def test_push_adapter_forwards_row_changes():
    async def scenario():
        seen, consumer = _collector()
        bus = EventBus(consumer, user_id="user_1", window_s=WINDOW)
        channel = _FakeChannel()
        adapter = PushChannelAdapter(channel, bus, "user_1")
        await adapter.start()
        assert set(channel.subscribed) == {"user_subscriptions", "subscription_enhanced_status"}

        message = _push(table="subscription_enhanced_status")
        message["new"].pop("user_id")
        channel.subscribed["subscription_enhanced_status"](message)
        await asyncio.sleep(WINDOW * 3)
        await adapter.stop()
        await bus.close()
        return seen, channel.unsubscribed

    seen, unsubscribed = asyncio.run(scenario())
    assert len(seen) == 1
    assert seen[0].user_id == "user_1"
    assert sorted(unsubscribed) == ["subscription_enhanced_status", "user_subscriptions"]
