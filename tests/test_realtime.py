"""
Tests for change events, the change stream, debouncing and the
notification listener.

Debounce tests use short real windows (50 ms).
"""

import asyncio

import pytest

from tourdash.realtime.debounce import DebounceState, Debouncer
from tourdash.realtime.events import ChangeEvent, ChangeKind
from tourdash.realtime.listener import ChangeNotificationListener
from tourdash.realtime.stream import ChangeStream, change_channel, for_tables


WINDOW = 0.05


class TestChangeEvent:
    """Test event parsing."""

    def test_json_round_trip(self):
        event = ChangeEvent(table="leads", kind=ChangeKind.INSERT, payload={"id": "l1"})
        parsed = ChangeEvent.from_json(event.to_json())
        assert parsed.table == "leads"
        assert parsed.kind is ChangeKind.INSERT
        assert parsed.payload == {"id": "l1"}

    def test_from_bytes_and_uppercase_kind(self):
        parsed = ChangeEvent.from_json(b'{"table": "projects", "kind": "UPDATE"}')
        assert parsed.kind is ChangeKind.UPDATE
        assert parsed.payload == {}

    @pytest.mark.parametrize("raw", ["not json", '{"kind": "insert"}', '{"table": "x", "kind": "upsert"}', "[]"])
    def test_malformed_raises_value_error(self, raw):
        with pytest.raises(ValueError):
            ChangeEvent.from_json(raw)

    def test_resource_mapping(self):
        assert ChangeEvent(table="end_clients", kind=ChangeKind.UPDATE).resource == "clients"
        assert ChangeEvent(table="leads", kind=ChangeKind.UPDATE).resource == "leads"

    def test_channel_name(self):
        assert change_channel("tourdash", "leads") == "tourdash:changes:leads"


class TestChangeStream:
    """Test fan-out and cancellation."""

    async def test_publish_to_matching_subscribers(self):
        stream = ChangeStream()
        leads = stream.subscribe(for_tables(["leads"]))
        everything = stream.subscribe()

        delivered = stream.emit("leads", ChangeKind.INSERT)
        stream.emit("projects")

        assert delivered == 2
        assert (await leads.get()).table == "leads"
        assert (await everything.get()).table == "leads"
        assert (await everything.get()).table == "projects"
        assert leads.queue.empty()

    async def test_cancel_wakes_blocked_consumer(self):
        stream = ChangeStream()
        sub = stream.subscribe()
        waiter = asyncio.create_task(sub.get())
        await asyncio.sleep(0)
        sub.cancel()
        assert await asyncio.wait_for(waiter, timeout=1) is None

    async def test_cancel_is_idempotent(self):
        stream = ChangeStream()
        sub = stream.subscribe()
        sub.cancel()
        sub.cancel()
        assert stream.subscriber_count == 0
        assert stream.emit("leads") == 0

    async def test_async_iteration_ends_on_cancel(self):
        stream = ChangeStream()
        sub = stream.subscribe()
        stream.emit("a")
        stream.emit("b")
        sub.cancel()
        tables = [event.table async for event in sub]
        assert tables == ["a", "b"]

    async def test_close_cancels_all(self):
        stream = ChangeStream()
        subs = [stream.subscribe() for _ in range(3)]
        stream.close()
        assert all(s.closed for s in subs)
        assert stream.subscriber_count == 0


class TestDebouncer:
    """Test the debounce state machine."""

    async def test_burst_fires_once(self):
        fired = []
        debouncer = Debouncer(WINDOW, lambda: fired.append(1))
        for _ in range(5):
            debouncer.trigger()
            await asyncio.sleep(WINDOW / 5)
        assert debouncer.state is DebounceState.PENDING
        await asyncio.sleep(WINDOW * 3)
        assert fired == [1]
        assert debouncer.state is DebounceState.IDLE

    async def test_spaced_triggers_fire_each_time(self):
        fired = []
        debouncer = Debouncer(WINDOW, lambda: fired.append(1))
        for _ in range(3):
            debouncer.trigger()
            await asyncio.sleep(WINDOW * 3)
        assert len(fired) == 3
        assert debouncer.fire_count == 3

    async def test_cancel_drops_pending(self):
        fired = []
        debouncer = Debouncer(WINDOW, lambda: fired.append(1))
        debouncer.trigger()
        debouncer.cancel()
        debouncer.cancel()
        await asyncio.sleep(WINDOW * 3)
        assert fired == []
        assert debouncer.state is DebounceState.CANCELLED
        assert debouncer.trigger() is False

    async def test_async_callback_awaited(self):
        done = []

        async def callback():
            await asyncio.sleep(0)
            done.append(1)

        debouncer = Debouncer(WINDOW, callback)
        debouncer.trigger()
        await asyncio.sleep(WINDOW * 2)
        await debouncer.wait()
        assert done == [1]
        assert debouncer.state is DebounceState.IDLE

    async def test_failing_callback_returns_to_idle(self):
        def callback():
            raise RuntimeError("boom")

        debouncer = Debouncer(WINDOW, callback)
        debouncer.trigger()
        await asyncio.sleep(WINDOW * 3)
        assert debouncer.state is DebounceState.IDLE
        assert debouncer.trigger() is True

    async def test_burst_during_callback_runs_after_it(self):
        """Async callbacks are serialized; a burst in between runs once more."""
        release = asyncio.Event()
        running = []
        overlap = []
        runs = []

        async def callback():
            running.append(1)
            overlap.append(len(running))
            runs.append(len(runs) + 1)
            if len(runs) == 1:
                await release.wait()
            running.pop()

        debouncer = Debouncer(WINDOW, callback)
        debouncer.trigger()
        await asyncio.sleep(WINDOW * 2)
        assert debouncer.is_running

        # Two more windows elapse while the first run is blocked
        for _ in range(2):
            debouncer.trigger()
            await asyncio.sleep(WINDOW * 2)
        assert runs == [1]
        assert debouncer.state is DebounceState.FIRED

        release.set()
        await debouncer.wait()
        assert runs == [1, 2]
        assert max(overlap) == 1
        assert debouncer.fire_count == 2
        assert debouncer.state is DebounceState.IDLE

    async def test_cancel_drops_queued_run(self):
        release = asyncio.Event()
        runs = []

        async def callback():
            runs.append(1)
            await release.wait()

        debouncer = Debouncer(WINDOW, callback)
        debouncer.trigger()
        await asyncio.sleep(WINDOW * 2)
        debouncer.trigger()
        await asyncio.sleep(WINDOW * 2)
        debouncer.cancel()
        release.set()
        await debouncer.wait()
        assert runs == [1]


class TestChangeNotificationListener:
    """Test debounced bursts per subscription."""

    async def test_n_events_in_window_give_one_burst(self):
        stream = ChangeStream()
        listener = ChangeNotificationListener(stream, window=WINDOW)
        bursts = []
        sub = listener.subscribe(["leads", "projects"], bursts.append)
        await asyncio.sleep(0)

        for i in range(10):
            stream.emit("leads" if i % 2 else "projects")
        await asyncio.sleep(WINDOW * 4)

        assert len(bursts) == 1
        assert bursts[0] == frozenset({"leads", "projects"})
        assert sub.events_seen == 10
        sub.cancel()

    async def test_spaced_events_give_one_burst_each(self):
        stream = ChangeStream()
        listener = ChangeNotificationListener(stream, window=WINDOW)
        bursts = []
        sub = listener.subscribe(["leads"], bursts.append)

        for _ in range(3):
            stream.emit("leads")
            await asyncio.sleep(WINDOW * 4)

        assert len(bursts) == 3
        assert sub.bursts == 3
        sub.cancel()

    async def test_unrelated_tables_ignored(self):
        stream = ChangeStream()
        listener = ChangeNotificationListener(stream, window=WINDOW)
        bursts = []
        sub = listener.subscribe(["leads"], bursts.append)
        stream.emit("assets")
        await asyncio.sleep(WINDOW * 3)
        assert bursts == []
        sub.cancel()

    async def test_subscriptions_have_independent_windows(self):
        stream = ChangeStream()
        listener = ChangeNotificationListener(stream, window=WINDOW)
        first, second = [], []
        sub_a = listener.subscribe(["leads"], first.append)
        sub_b = listener.subscribe(["leads"], second.append)
        await asyncio.sleep(0)
        stream.emit("leads")
        await asyncio.sleep(0)
        sub_b.cancel()
        await asyncio.sleep(WINDOW * 3)
        assert len(first) == 1
        assert second == []
        sub_a.cancel()

    async def test_cancel_is_idempotent_and_drops_pending_burst(self):
        stream = ChangeStream()
        listener = ChangeNotificationListener(stream, window=WINDOW)
        bursts = []
        sub = listener.subscribe(["leads"], bursts.append)
        await asyncio.sleep(0)
        stream.emit("leads")
        await asyncio.sleep(0)
        sub.cancel()
        sub.cancel()
        await asyncio.sleep(WINDOW * 3)
        assert bursts == []
        assert listener.subscription_count == 0
        assert stream.subscriber_count == 0

    async def test_empty_tables_rejected(self):
        listener = ChangeNotificationListener(ChangeStream(), window=WINDOW)
        with pytest.raises(ValueError):
            listener.subscribe([], lambda tables: None)

    async def test_window_defaults_from_config(self, cache_config):
        listener = ChangeNotificationListener(ChangeStream(), config=cache_config)
        assert listener.window == cache_config.debounce_seconds

    async def test_close(self):
        stream = ChangeStream()
        listener = ChangeNotificationListener(stream, window=WINDOW)
        subs = [listener.subscribe(["leads"], lambda t: None) for _ in range(2)]
        listener.close()
        assert not any(s.active for s in subs)
