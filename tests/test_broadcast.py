"""Tests for the pairing artifact broadcast channel."""

import asyncio
from unittest.mock import MagicMock

import pytest

from devlink.broadcast import ArtifactUpdate, BroadcastChannel
from devlink.linking.session import PairingArtifact


def code_artifact(session_id: str = "s1", value: str = "ABCDEFGH") -> PairingArtifact:
    return PairingArtifact(session_id=session_id, kind="code", value=value)


class TestSubscribe:
    """Tests for subscribe/unsubscribe."""

    def test_subscribe_adds(self):
        """Subscribers are counted."""
        channel = BroadcastChannel()
        channel.subscribe()
        channel.subscribe()
        assert len(channel) == 2

    @pytest.mark.asyncio
    async def test_late_joiner_gets_current(self):
        """New subscriber receives the cached artifact immediately."""
        channel = BroadcastChannel()
        channel.publish(code_artifact(value="FIRST123"))
        channel.publish(code_artifact(value="SECOND12"))

        subscriber = channel.subscribe()
        update = await asyncio.wait_for(subscriber.get(), timeout=1.0)

        assert update.value == "SECOND12"
        assert update.display == "SECO-ND12"
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(subscriber.get(), timeout=0.05)

    @pytest.mark.asyncio
    async def test_no_catch_up_when_empty(self):
        """Nothing is delivered if nothing was published."""
        subscriber = BroadcastChannel().subscribe()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(subscriber.get(), timeout=0.05)

    @pytest.mark.asyncio
    async def test_unsubscribe_idempotent(self):
        """Unsubscribing twice is safe and ends the stream."""
        channel = BroadcastChannel()
        subscriber = channel.subscribe()

        channel.unsubscribe(subscriber)
        channel.unsubscribe(subscriber)

        assert len(channel) == 0
        assert await subscriber.get() is None

    @pytest.mark.asyncio
    async def test_subscribe_after_close(self):
        """Subscribing to a closed channel yields an ended stream."""
        channel = BroadcastChannel()
        channel.close()

        subscriber = channel.subscribe()

        assert len(channel) == 0
        assert await subscriber.get() is None


class TestPublish:
    """Tests for publishing."""

    @pytest.mark.asyncio
    async def test_fans_out(self):
        """Every subscriber receives the update."""
        channel = BroadcastChannel()
        subscribers = [channel.subscribe() for _ in range(3)]

        delivered = channel.publish(code_artifact())

        assert delivered == 3
        for subscriber in subscribers:
            update = await subscriber.get()
            assert update == ArtifactUpdate("s1", "code", "ABCDEFGH", "ABCD-EFGH")

    def test_render_failure_isolated(self):
        """A bad artifact is skipped; later publishes still work."""
        renderer = MagicMock(side_effect=[ValueError("bad"), "ok"])
        channel = BroadcastChannel(renderer=renderer)
        channel.subscribe()

        assert channel.publish(code_artifact(value="bad")) == 0
        assert channel.current is None
        assert channel.publish(code_artifact(value="good")) == 1
        assert channel.current.display == "ok"

    @pytest.mark.asyncio
    async def test_slow_subscriber_does_not_block(self):
        """A full queue drops its oldest update instead of blocking."""
        channel = BroadcastChannel(queue_size=2)
        slow = channel.subscribe()
        fast = channel.subscribe()

        for i in range(5):
            channel.publish(code_artifact(value=f"CODE000{i}"))
            assert (await fast.get()).value == f"CODE000{i}"

        assert (await slow.get()).value == "CODE0003"
        assert (await slow.get()).value == "CODE0004"

    def test_publish_after_close_ignored(self):
        """Closed channel drops publishes."""
        channel = BroadcastChannel()
        channel.close()
        assert channel.publish(code_artifact()) == 0
        assert channel.current is None

    @pytest.mark.asyncio
    async def test_unsubscribe_during_publish_snapshot(self):
        """Publishing iterates a snapshot of subscribers."""
        channel = BroadcastChannel()
        first = channel.subscribe()
        second = channel.subscribe()

        original = first.deliver

        def deliver_and_unsubscribe(update):
            original(update)
            channel.unsubscribe(second)

        first.deliver = deliver_and_unsubscribe

        assert channel.publish(code_artifact()) == 2
        assert len(channel) == 1


class TestClear:
    """Tests for clearing per-session cache."""

    def test_clear_matching_session(self):
        """Cache is dropped when its session ends."""
        channel = BroadcastChannel()
        channel.publish(code_artifact(session_id="s1"))

        channel.clear("s1")

        assert channel.current is None

    def test_clear_other_session_keeps_cache(self):
        """Clearing another session leaves the cache."""
        channel = BroadcastChannel()
        channel.publish(code_artifact(session_id="s1"))

        channel.clear("s2")

        assert channel.current.session_id == "s1"

    @pytest.mark.asyncio
    async def test_clear_drops_queued_updates(self):
        """A slow reader never gets updates of a terminated session."""
        channel = BroadcastChannel()
        subscriber = channel.subscribe()
        channel.publish(code_artifact(session_id="s1"))
        channel.publish(code_artifact(session_id="s2", value="WXYZWXYZ"))

        channel.clear("s1")

        update = await subscriber.get()
        assert update.session_id == "s2"
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(subscriber.get(), timeout=0.05)

    @pytest.mark.asyncio
    async def test_clear_keeps_end_of_stream(self):
        """Clearing after close still lets the reader see end-of-stream."""
        channel = BroadcastChannel()
        subscriber = channel.subscribe()
        channel.publish(code_artifact(session_id="s1"))
        subscriber.close()

        assert subscriber.discard("s1") == 1
        assert await subscriber.get() is None

    @pytest.mark.asyncio
    async def test_close_ends_all_streams(self):
        """Shutdown wakes every subscriber with end-of-stream."""
        channel = BroadcastChannel()
        subscribers = [channel.subscribe() for _ in range(2)]

        channel.close()

        assert len(channel) == 0
        for subscriber in subscribers:
            assert await subscriber.get() is None
