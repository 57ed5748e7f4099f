"""
Secure peer channel contract

The negotiator and the transfer engine only talk to these two interfaces. The
cryptographic handshake, congestion control and NAT traversal live behind them
(see aiortc_channel.py for the WebRTC implementation).

Events
------
PeerSession:  "icecandidate" (candidate: dict), "datachannel" (DataChannel),
              "connectionstatechange" (state: str)
DataChannel:  "open", "message" (str | bytes), "close", "bufferedamountlow"

Chunk frames carry no sequence numbers, so a DataChannel used for transfers
must be ordered and fully reliable.
"""

import asyncio
from collections import defaultdict
from typing import Callable, Optional

from logging_config import get_logger

logger = get_logger(__name__)


class EventSource:
    """Minimal ``on``/``emit`` event registry. Coroutine handlers are scheduled as tasks."""

    def __init__(self):
        self._handlers = defaultdict(list)

    def on(self, event: str, handler: Optional[Callable] = None):
        def register(f):
            self._handlers[event].append(f)
            return f

        if handler is None:
            return register
        return register(handler)

    def emit(self, event: str, *args):
        for handler in list(self._handlers[event]):
            result = handler(*args)
            if asyncio.iscoroutine(result):
                asyncio.ensure_future(result)


class DataChannel(EventSource):
    """Bidirectional message channel with a queryable outbound buffer."""

    label: str = ""

    @property
    def ready_state(self) -> str:
        """One of "connecting", "open", "closing", "closed"."""
        raise NotImplementedError

    @property
    def buffered_amount(self) -> int:
        raise NotImplementedError

    @property
    def buffered_amount_low_threshold(self) -> int:
        raise NotImplementedError

    @buffered_amount_low_threshold.setter
    def buffered_amount_low_threshold(self, value: int):
        raise NotImplementedError

    @property
    def ordered(self) -> bool:
        raise NotImplementedError

    @property
    def reliable(self) -> bool:
        raise NotImplementedError

    def send(self, data):
        raise NotImplementedError

    def close(self):
        raise NotImplementedError


class PeerSession(EventSource):
    """One secure-channel session with the remote peer."""

    @property
    def connection_state(self) -> str:
        """One of "new", "connecting", "connected", "failed", "closed"."""
        raise NotImplementedError

    async def create_offer(self) -> dict:
        """Generate and apply the local offer description."""
        raise NotImplementedError

    async def accept_offer(self, offer: dict) -> dict:
        """Apply the remote offer and return the local answer description."""
        raise NotImplementedError

    async def accept_answer(self, answer: dict):
        raise NotImplementedError

    async def add_candidate(self, candidate: dict):
        """Apply one remote network-path candidate. Raises CandidateRejected."""
        raise NotImplementedError

    def create_data_channel(self, label: str, ordered: bool = True) -> DataChannel:
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError
