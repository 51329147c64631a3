"""
Out-of-band change broadcasts between display processes.

The broadcast only says "scenario X changed"; receivers re-read the record
from the shared store. Delivery is best-effort: a lost message is recovered
by the store's own change polling.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Sequence

import structlog
import zmq

from linacsim.core.config import SyncConfig
from linacsim.core.exceptions import BroadcastError

logger = structlog.get_logger(__name__)

Message = Dict[str, Any]


class Broadcaster(ABC):
    """Fire-and-forget fan-out to the other displays."""

    @abstractmethod
    def publish(self, message: Message) -> None:
        """Send ``message`` to every peer. Raises BroadcastError on failure."""

    @abstractmethod
    def receive(self) -> List[Message]:
        """Drain messages that arrived since the last call, without blocking."""

    def close(self) -> None:
        pass


class InMemoryBroadcastHub:
    """In-process stand-in for a broadcast bus; each endpoint hears the others."""

    def __init__(self):
        self._endpoints: List["InMemoryBroadcaster"] = []

    def connect(self) -> "InMemoryBroadcaster":
        endpoint = InMemoryBroadcaster(self)
        self._endpoints.append(endpoint)
        return endpoint

    def _deliver(self, sender: "InMemoryBroadcaster", message: Message) -> None:
        for endpoint in self._endpoints:
            if endpoint is not sender and not endpoint.closed:
                endpoint._inbox.append(dict(message))

    def _detach(self, endpoint: "InMemoryBroadcaster") -> None:
        if endpoint in self._endpoints:
            self._endpoints.remove(endpoint)


class InMemoryBroadcaster(Broadcaster):
    def __init__(self, hub: InMemoryBroadcastHub):
        self._hub = hub
        self._inbox: Deque[Message] = deque()
        self.closed = False

    def publish(self, message: Message) -> None:
        if self.closed:
            raise BroadcastError("Broadcaster is closed")
        self._hub._deliver(self, message)

    def receive(self) -> List[Message]:
        messages = list(self._inbox)
        self._inbox.clear()
        return messages

    def close(self) -> None:
        self.closed = True
        self._hub._detach(self)


class ZmqBroadcaster(Broadcaster):
    """
    ZeroMQ PUB/SUB broadcaster.

    Each display binds a PUB socket on its own endpoint and subscribes to the
    peers' endpoints. PUB/SUB drops messages sent before a subscriber has
    joined, which the store polling fallback covers.
    """

    def __init__(
        self,
        endpoint: str,
        peers: Sequence[str],
        context: Optional[zmq.Context] = None,
    ):
        self.endpoint = endpoint
        self.peers = list(peers)
        self._context = context or zmq.Context.instance()
        self._pub = self._sub = None
        try:
            self._pub = self._context.socket(zmq.PUB)
            self._pub.setsockopt(zmq.LINGER, 0)
            self._pub.bind(endpoint)
            # Resolves wildcard ports such as "tcp://127.0.0.1:*"
            self.bound_endpoint = self._pub.getsockopt_string(zmq.LAST_ENDPOINT)

            self._sub = self._context.socket(zmq.SUB)
            self._sub.setsockopt(zmq.LINGER, 0)
            self._sub.setsockopt(zmq.SUBSCRIBE, b"")
            for peer in self.peers:
                self._sub.connect(peer)
        except zmq.ZMQError as e:
            self.close()
            raise BroadcastError(f"Cannot open broadcast on {endpoint}: {e}") from e

        logger.info("Broadcast channel open", endpoint=self.bound_endpoint, peers=self.peers)

    @property
    def closed(self) -> bool:
        return self._pub is None or self._pub.closed

    def publish(self, message: Message) -> None:
        if self.closed:
            raise BroadcastError("Broadcaster is closed")
        try:
            self._pub.send_json(message, zmq.NOBLOCK)
        except zmq.ZMQError as e:
            raise BroadcastError(f"Broadcast send failed: {e}") from e

    def receive(self) -> List[Message]:
        messages = []
        if self._sub is None or self._sub.closed:
            return messages
        while True:
            try:
                msg = self._sub.recv_json(zmq.NOBLOCK)
            except zmq.Again:
                break
            except zmq.ZMQError as e:
                logger.warning("Broadcast receive failed", error=str(e))
                break
            except ValueError as e:
                logger.warning("Dropping unreadable broadcast", error=str(e))
                continue
            if isinstance(msg, dict):
                messages.append(msg)
        return messages

    def close(self) -> None:
        for sock in (self._pub, self._sub):
            if sock is not None:
                sock.close()


def create_broadcaster(config: SyncConfig) -> Optional[Broadcaster]:
    """Build the configured broadcaster, or None to run on store polling alone."""
    if not config.endpoint:
        logger.info("Broadcast disabled; relying on store change polling")
        return None
    try:
        return ZmqBroadcaster(config.endpoint, config.peers)
    except BroadcastError as e:
        logger.warning("Broadcast unavailable; relying on store change polling", error=str(e))
        return None
