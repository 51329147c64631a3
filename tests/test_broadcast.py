"""Validate the ZeroMQ broadcast transport between display processes."""

import time

import pytest
import zmq

from linacsim.core.config import SyncConfig
from linacsim.core.exceptions import BroadcastError
from linacsim.data.broadcast import ZmqBroadcaster, create_broadcaster
from linacsim.data.shared_state import InMemoryStore, SharedStateChannel, create_channel

LOOPBACK = "tcp://127.0.0.1:*"
STATE_MESSAGE = {"type": "state", "scenarioId": "A1"}


class QuietStore(InMemoryStore):
    """Shared store that never reports changes, so only the broadcast can."""

    def changed_keys(self):
        return []


def _exchange(sender, receiver, message, attempts=100):
    """Publish until the subscriber has joined and the message arrives."""
    for _ in range(attempts):
        sender.publish(message)
        time.sleep(0.02)
        received = receiver.receive()
        if received:
            return received
    return []


@pytest.fixture
def broadcasters():
    opened = []

    def _open(peers=()):
        b = ZmqBroadcaster(LOOPBACK, list(peers))
        opened.append(b)
        return b

    yield _open
    for b in opened:
        b.close()


class TestZmqBroadcaster:
    """Test PUB/SUB publish and receive."""

    def test_round_trip(self, broadcasters):
        sender = broadcasters()
        receiver = broadcasters([sender.bound_endpoint])

        received = _exchange(sender, receiver, STATE_MESSAGE)

        assert received
        assert all(msg == STATE_MESSAGE for msg in received)
        assert sender.receive() == []

    def test_wildcard_port_is_resolved(self, broadcasters):
        b = broadcasters()
        assert b.bound_endpoint.startswith("tcp://127.0.0.1:")
        assert not b.bound_endpoint.endswith("*")

    def test_unreadable_messages_are_skipped(self, broadcasters):
        raw = zmq.Context.instance().socket(zmq.PUB)
        raw.setsockopt(zmq.LINGER, 0)
        port = raw.bind_to_random_port("tcp://127.0.0.1")
        receiver = broadcasters([f"tcp://127.0.0.1:{port}"])
        try:
            received = []
            for _ in range(100):
                raw.send(b"not json")
                raw.send_json([1, 2, 3])
                raw.send_json(STATE_MESSAGE)
                time.sleep(0.02)
                received = receiver.receive()
                if received:
                    break
        finally:
            raw.close()

        assert received
        assert all(msg == STATE_MESSAGE for msg in received)

    def test_close(self, broadcasters):
        b = broadcasters()
        b.close()

        assert b.closed
        assert b.receive() == []
        with pytest.raises(BroadcastError):
            b.publish(STATE_MESSAGE)

    def test_bind_collision_raises(self, broadcasters):
        first = broadcasters()
        with pytest.raises(BroadcastError):
            ZmqBroadcaster(first.bound_endpoint, [])


class TestCreateBroadcaster:
    """Test the configured broadcaster factory."""

    def test_disabled_without_endpoint(self):
        assert create_broadcaster(SyncConfig(SYNC_ENDPOINT=None)) is None

    def test_bind_collision_falls_back_to_polling(self, broadcasters):
        first = broadcasters()
        assert create_broadcaster(SyncConfig(SYNC_ENDPOINT=first.bound_endpoint)) is None

    def test_channel_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LINAC_STATE_DIR", str(tmp_path))
        monkeypatch.setenv("SYNC_ENDPOINT", LOOPBACK)
        monkeypatch.setenv("SYNC_PEERS", "tcp://127.0.0.1:5591, tcp://127.0.0.1:5592")

        channel = create_channel(SyncConfig())
        try:
            assert isinstance(channel.broadcaster, ZmqBroadcaster)
            assert channel.broadcaster.peers == ["tcp://127.0.0.1:5591", "tcp://127.0.0.1:5592"]
        finally:
            channel.close()


class TestChannelOverZmq:
    """Test that a broadcast alone wakes the other display."""

    def test_write_reaches_other_display(self, broadcasters):
        backing = {}
        console_bus = broadcasters()
        imaging_bus = broadcasters([console_bus.bound_endpoint])
        console_side = SharedStateChannel(QuietStore(backing), console_bus)
        imaging_side = SharedStateChannel(QuietStore(backing), imaging_bus)
        seen = []
        imaging_side.subscribe("A1", seen.append)

        notified = 0
        for _ in range(100):
            console_side.write("A1", {"couchShift": {"vertical": 1.0}})
            time.sleep(0.02)
            notified = imaging_side.poll()
            if notified:
                break

        assert notified == 1
        assert seen[-1].couch_shift.vertical == 1.0
