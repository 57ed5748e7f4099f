import asyncio
import json
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Set

from constants import DATA_CHANNEL_LABEL
from errors import CandidateRejected, NegotiationFailed
from logging_config import get_logger
from peer.channel import DataChannel, PeerSession
from peer.transfer import ChunkedTransferEngine

logger = get_logger(__name__)

EmitFunc = Callable[[str, dict], Awaitable[Any]]
SessionFactory = Callable[[], PeerSession]


class NegotiationState(Enum):
    IDLE = "idle"
    OFFERING = "offering"
    ANSWERING = "answering"
    NEGOTIATING = "negotiating"
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"


# states from which a new member-joined or offer may start a fresh session
RESTARTABLE = {NegotiationState.IDLE, NegotiationState.CLOSED, NegotiationState.FAILED}


class TransportNegotiator:
    """
    Drives the offer/answer/candidate handshake for one room on one peer.

    The peer that sees member-joined offers; the peer that receives the offer
    answers. Signaling goes out through ``emit(event, data)``; the resulting
    open data channel is handed to the transfer engine.
    """

    def __init__(self, room_id: str, emit: EmitFunc, session_factory: SessionFactory,
                 engine: ChunkedTransferEngine,
                 on_state_change: Optional[Callable[[NegotiationState], None]] = None):
        self.room_id = room_id
        self.emit = emit
        self.session_factory = session_factory
        self.engine = engine
        self.on_state_change = on_state_change
        self.state = NegotiationState.IDLE
        self.session: Optional[PeerSession] = None
        self.channel: Optional[DataChannel] = None
        self.remote_id: Optional[str] = None
        self.rejected_candidates = 0
        self._applied_candidates: Set[str] = set()
        self._connected = False
        self._state_changed = asyncio.Event()

    def transition_to(self, new_state: NegotiationState):
        if new_state == self.state:
            return
        logger.info(f"Negotiation state: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self._state_changed.set()
        if self.on_state_change:
            self.on_state_change(new_state)

    async def wait_until_open(self, timeout: Optional[float] = None):
        """Wait for the data channel to open. Raises NegotiationFailed if negotiation fails first."""
        async def wait():
            while self.state != NegotiationState.OPEN:
                if self.state == NegotiationState.FAILED:
                    raise NegotiationFailed(f"Connection failed in room {self.room_id}")
                self._state_changed.clear()
                await self._state_changed.wait()

        await asyncio.wait_for(wait(), timeout)

    # Signaling events

    async def on_member_joined(self, member_id: str):
        logger.info(f"Member {member_id} joined room {self.room_id}. Initiating connection...")
        self._reset_for_new_session()
        self.remote_id = member_id
        session = self._start_session()

        channel = session.create_data_channel(DATA_CHANNEL_LABEL, ordered=True)
        self._setup_channel(channel)
        if self.session is not session:
            return
        try:
            offer = await session.create_offer()
        except Exception as e:
            self.fail(f"Error creating offer: {e}")
            return
        if self.session is not session:
            return
        self.transition_to(NegotiationState.OFFERING)
        logger.debug("Sending offer")
        await self.emit("offer", {"roomId": self.room_id, "offer": offer})

    async def on_offer(self, sender_id: str, offer: dict):
        logger.info(f"Received offer from {sender_id}")
        self._reset_for_new_session()
        self.remote_id = sender_id
        session = self._start_session()

        @session.on("datachannel")
        def on_datachannel(channel: DataChannel):
            if self.session is session:
                logger.info(f"Received data channel {channel.label}")
                self._setup_channel(channel)

        try:
            answer = await session.accept_offer(offer)
        except Exception as e:
            self.fail(f"Error handling offer: {e}")
            return
        if self.session is not session:
            return
        if self.state not in (NegotiationState.NEGOTIATING, NegotiationState.OPEN):
            self.transition_to(NegotiationState.ANSWERING)
        logger.debug("Sending answer")
        await self.emit("answer", {"roomId": self.room_id, "answer": answer})

    async def on_answer(self, sender_id: str, answer: dict):
        logger.info(f"Received answer from {sender_id}")
        if self.state != NegotiationState.OFFERING or self.session is None:
            logger.warning(f"Ignoring answer from {sender_id} in state {self.state.value}")
            return
        session = self.session
        try:
            await session.accept_answer(answer)
        except Exception as e:
            self.fail(f"Error handling answer: {e}")
            return
        if self.session is session and self.state == NegotiationState.OFFERING:
            self.transition_to(NegotiationState.NEGOTIATING)

    async def on_candidate(self, sender_id: str, candidate: dict):
        """Apply one remote candidate. Duplicates are no-ops; a rejected candidate never aborts the session."""
        if self.session is None:
            logger.warning(f"Candidate from {sender_id} rejected: no active session")
            self.rejected_candidates += 1
            return
        key = json.dumps(candidate, sort_keys=True, default=str)
        if key in self._applied_candidates:
            logger.debug(f"Ignoring duplicate candidate from {sender_id}")
            return
        try:
            await self.session.add_candidate(candidate)
        except CandidateRejected as e:
            self.rejected_candidates += 1
            logger.warning(f"Error adding ICE candidate: {e}")
            return
        self._applied_candidates.add(key)

    async def on_member_left(self, member_id: str):
        logger.info(f"Member {member_id} left room {self.room_id}")
        if self.state in RESTARTABLE and self.session is None:
            return
        self._teardown("peer left")
        self.transition_to(NegotiationState.CLOSED)

    # Session and channel wiring

    def _start_session(self) -> PeerSession:
        session = self.session_factory()
        self.session = session
        self._connected = False

        @session.on("icecandidate")
        async def on_icecandidate(candidate: dict):
            if self.session is session and candidate:
                await self.emit("ice-candidate", {"roomId": self.room_id, "candidate": candidate})

        @session.on("connectionstatechange")
        def on_connection_state_change(state: str):
            if self.session is session:
                self._on_connection_state(state)

        return session

    def _setup_channel(self, channel: DataChannel):
        if not channel.ordered or not channel.reliable:
            self.fail(f"Data channel {channel.label} is not ordered and reliable")
            return
        self.channel = channel

        @channel.on("open")
        def on_open():
            if self.channel is channel:
                logger.info("Data channel open")
                self._maybe_open()

        @channel.on("close")
        def on_close():
            if self.channel is not channel:
                return
            logger.info("Data channel closed")
            if self.state == NegotiationState.OPEN:
                self._teardown("data channel closed")
                self.transition_to(NegotiationState.CLOSED)
            elif self.state not in RESTARTABLE:
                self.fail("data channel closed before open")

        # the remote-created channel may already be open when announced
        if channel.ready_state == "open":
            self._maybe_open()

    def _on_connection_state(self, state: str):
        logger.debug(f"Connection state: {state}")
        if state == "connecting":
            if self.state in (NegotiationState.OFFERING, NegotiationState.ANSWERING):
                self.transition_to(NegotiationState.NEGOTIATING)
        elif state == "connected":
            self._connected = True
            self._maybe_open()
        elif state == "failed":
            self.fail("connectivity check failed")
        elif state == "closed":
            if self.state == NegotiationState.OPEN:
                self._teardown("connection closed")
                self.transition_to(NegotiationState.CLOSED)
            elif self.state not in RESTARTABLE:
                self.fail("connection closed before open")

    def _maybe_open(self):
        channel = self.channel
        if self.state == NegotiationState.OPEN or channel is None:
            return
        if not self._connected or channel.ready_state != "open":
            return
        self.transition_to(NegotiationState.OPEN)
        self.engine.attach(channel)

    # Teardown

    def fail(self, reason: str):
        logger.error(f"Negotiation failed in room {self.room_id}: {reason}")
        self._teardown(reason)
        self.transition_to(NegotiationState.FAILED)

    async def close(self):
        """Leave the negotiation for good, closing the session."""
        session = self.session
        self._teardown("closed locally", close_session=False)
        if session is not None:
            await session.close()
        self.transition_to(NegotiationState.CLOSED)

    def _reset_for_new_session(self):
        if self.session is not None:
            logger.warning(f"Replacing live session in state {self.state.value}")
            self._teardown("replaced by a new negotiation")
        self.transition_to(NegotiationState.IDLE)

    def _teardown(self, reason: str, close_session: bool = True):
        # Transfer state is dropped synchronously; closing the session may finish later
        self.engine.detach()
        session, channel = self.session, self.channel
        self.session = None
        self.channel = None
        self.remote_id = None
        self._connected = False
        self._applied_candidates.clear()
        if channel is not None and channel.ready_state not in ("closing", "closed"):
            channel.close()
        if session is not None and close_session:
            logger.debug(f"Closing secure session: {reason}")
            asyncio.ensure_future(self._close_session(session))

    async def _close_session(self, session: PeerSession):
        try:
            await session.close()
        except Exception as e:
            logger.warning(f"Error closing secure session: {e}")

