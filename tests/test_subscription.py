"""Tests for WatermarkSubscription -- filtering, watermark, restarts."""
import pytest

from roomrelay.observability.metrics import RelayMetrics
from roomrelay.relay.subscription import WatermarkSubscription


def make_subscription(store, room="ABCD", metrics=None):
    received = []
    sub = WatermarkSubscription(
        store=store,
        collection="Messages",
        room_code=room,
        on_entry=received.append,
        metrics=metrics,
    )
    return sub, received


def payloads(entries):
    return [e.payload for e in entries]


class TestWatermarkSubscriptionLifecycle:
    @pytest.mark.asyncio
    async def test_start_opens_one_handle(self, store, at):
        sub, _ = make_subscription(store)
        await sub.start(at(100))
        assert sub.is_open
        assert sub.watermark == at(100)
        assert store.active_listeners == 1
        q = sub.handle.query
        assert q.equals == (("roomCode", "ABCD"),)
        assert q.bound_field == "timestamp" and q.bound == at(100)
        assert q.order_field == "timestamp"

    @pytest.mark.asyncio
    async def test_start_twice_without_stop_raises(self, store, at):
        sub, _ = make_subscription(store)
        await sub.start(at(100))
        with pytest.raises(RuntimeError):
            await sub.start(at(200))

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, store, at):
        sub, _ = make_subscription(store)
        await sub.stop()  # never started
        await sub.start(at(100))
        handle = sub.handle
        await sub.stop()
        await sub.stop()
        assert not sub.is_open
        assert handle.done()
        assert store.active_listeners == 0

    @pytest.mark.asyncio
    async def test_restart_with_older_watermark_keeps_current(self, store, at):
        sub, _ = make_subscription(store)
        await sub.start(at(200))
        await sub.stop()
        await sub.start(at(100))
        assert sub.watermark == at(200)


class TestWatermarkSubscriptionDelivery:
    @pytest.mark.asyncio
    async def test_historical_entries_excluded(self, store, at, make_doc, settle):
        await store.append("Messages", make_doc("ABCD", 100, "hello"))
        sub, received = make_subscription(store)
        await sub.start(at(101))
        await settle()
        assert received == []

    @pytest.mark.asyncio
    async def test_single_batch_out_of_append_order(self, store, at, make_doc, wait_until):
        sub, received = make_subscription(store)
        await sub.start(at(100))

        # Appended back to back, so both land in one delivery
        await store.append("Messages", make_doc("ABCD", 150, "x"))
        await store.append("Messages", make_doc("ABCD", 120, "y"))

        await wait_until(lambda: len(received) == 2)
        assert payloads(received) == ["y", "x"]
        assert sub.watermark == at(150)
        assert sub.stats["restarts"] == 1

    @pytest.mark.asyncio
    async def test_restart_redelivers_boundary_but_does_not_emit_it(
        self, store, at, make_doc, wait_until, settle
    ):
        sub, received = make_subscription(store)
        await sub.start(at(100))
        first_handle = sub.handle

        await store.append("Messages", make_doc("ABCD", 150, "x"))
        await wait_until(lambda: sub.stats["stale"] >= 1)
        await settle()

        assert payloads(received) == ["x"]
        assert sub.handle is not first_handle
        assert first_handle.done()
        assert sub.handle.query.bound == at(150)
        assert store.active_listeners == 1

    @pytest.mark.asyncio
    async def test_every_entry_delivered_once_in_order(self, store, at, make_doc, wait_until):
        sub, received = make_subscription(store)
        await sub.start(at(100))

        expected = []
        for i in range(1, 8):
            payload = f"m{i}"
            expected.append(payload)
            await store.append("Messages", make_doc("ABCD", 100 + i, payload))
            await wait_until(lambda: len(received) == len(expected))

        assert payloads(received) == expected
        assert sub.watermark == at(107)

    @pytest.mark.asyncio
    async def test_cross_room_isolation(self, store, at, make_doc, settle):
        sub, received = make_subscription(store, room="WXYZ")
        await sub.start(at(100))
        await store.append("Messages", make_doc("ABCD", 150, "not for you"))
        await settle()
        assert received == []
        assert sub.watermark == at(100)


class TestOnBatch:
    @pytest.mark.asyncio
    async def test_batch_emits_in_order_and_advances(self, store, at, make_doc):
        sub, received = make_subscription(store)
        await sub.start(at(100))

        emitted = await sub.on_batch([
            ("y", make_doc("ABCD", 120, "y")),
            ("x", make_doc("ABCD", 150, "x")),
        ])
        assert payloads(emitted) == ["y", "x"]
        assert payloads(received) == ["y", "x"]
        assert sub.watermark == at(150)

    @pytest.mark.asyncio
    async def test_boundary_entry_is_stale(self, store, at, make_doc):
        sub, received = make_subscription(store)
        await sub.start(at(100))
        handle = sub.handle

        emitted = await sub.on_batch([("b", make_doc("ABCD", 100, "boundary"))])
        assert emitted == []
        assert received == []
        assert sub.watermark == at(100)
        assert sub.handle is handle  # no restart

    @pytest.mark.asyncio
    async def test_watermark_never_decreases(self, store, at, make_doc):
        sub, _ = make_subscription(store)
        await sub.start(at(100))

        history = [sub.watermark]
        for batch in (
            [("a", make_doc("ABCD", 130, "a"))],
            [("b", make_doc("ABCD", 110, "b"))],
            [("c", make_doc("ABCD", 130, "c")), ("d", make_doc("ABCD", 125, "d"))],
            [],
            [("e", make_doc("ABCD", 140, "e"))],
        ):
            await sub.on_batch(batch)
            history.append(sub.watermark)

        assert history == sorted(history)
        assert sub.watermark == at(140)

    @pytest.mark.asyncio
    async def test_malformed_document_skipped(self, store, at, make_doc):
        sub, received = make_subscription(store)
        await sub.start(at(100))

        emitted = await sub.on_batch([
            ("bad", {"roomCode": "ABCD", "timestamp": at(110).isoformat()}),
            ("good", make_doc("ABCD", 120, "ok")),
        ])
        assert payloads(emitted) == ["ok"]
        assert sub.stats["decode_errors"] == 1

    @pytest.mark.asyncio
    async def test_batch_after_stop_is_dropped(self, store, at, make_doc):
        sub, received = make_subscription(store)
        await sub.start(at(100))
        await sub.stop()

        assert await sub.on_batch([("x", make_doc("ABCD", 150, "x"))]) == []
        assert received == []
        assert not sub.is_open

    @pytest.mark.asyncio
    async def test_batch_before_start_raises(self, store, make_doc):
        sub, _ = make_subscription(store)
        with pytest.raises(RuntimeError):
            await sub.on_batch([("x", make_doc("ABCD", 150, "x"))])

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, store, at, make_doc):
        metrics = RelayMetrics()
        sub, _ = make_subscription(store, metrics=metrics)
        await sub.start(at(100))

        await sub.on_batch([
            ("s", make_doc("ABCD", 100, "stale")),
            ("a", make_doc("ABCD", 120, "a")),
            ("b", make_doc("ABCD", 150, "b")),
        ])

        labels = {"room": "ABCD"}
        get = metrics.registry.get_sample_value
        assert get("relay_messages_delivered_total", labels) == 2.0
        assert get("relay_entries_stale_total", labels) == 1.0
        assert get("relay_subscription_restarts_total", labels) == 1.0
        assert get("relay_watermark_seconds", labels) == 150.0

    @pytest.mark.asyncio
    async def test_failed_reopen_is_recorded(self, refusing_store, at, make_doc):
        sub, received = make_subscription(refusing_store)
        await sub.start(at(100))

        emitted = await sub.on_batch([("x", make_doc("ABCD", 150, "x"))])
        assert payloads(emitted) == ["x"]
        assert payloads(received) == ["x"]
        assert sub.watermark == at(150)
        assert not sub.is_open
        assert isinstance(sub.reopen_error, RuntimeError)
        assert sub.stats["restarts"] == 0

        await sub.stop()
        assert sub.reopen_error is None
