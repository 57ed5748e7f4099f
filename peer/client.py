import asyncio
import hashlib
from typing import Callable, Optional

from errors import REJECTIONS_BY_MESSAGE, NegotiationFailed, RendezvousError, TransferAborted, TransferError
from logging_config import get_logger
from peer.channel import PeerSession
from peer.negotiator import NegotiationState, TransportNegotiator
from peer.signaling import SignalingClient
from peer.transfer import ChunkedTransferEngine, OutgoingFile, ReceivedFile, Role

logger = get_logger(__name__)


def hash_password(password: Optional[str]) -> Optional[str]:
    """One-way hash applied before a password leaves the peer. Empty means no password."""
    if not password:
        return None
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


class PeerClient:
    """
    One peer: a relay connection, the negotiator for the joined room and the
    transfer engine that takes over the data channel once it opens.
    """

    def __init__(self, signaling: SignalingClient, session_factory: Callable[[], PeerSession],
                 engine: Optional[ChunkedTransferEngine] = None):
        self.signaling = signaling
        self.session_factory = session_factory
        self.engine = engine or ChunkedTransferEngine()
        self.negotiator: Optional[TransportNegotiator] = None
        self.room_id: Optional[str] = None
        # completed files, or the error that ended the wait for one
        self._received: asyncio.Queue = asyncio.Queue()

        previous_on_file = self.engine.on_file

        def on_file(received: ReceivedFile):
            if previous_on_file:
                previous_on_file(received)
            self._received.put_nowait(received)

        self.engine.on_file = on_file

        previous_on_error = self.engine.on_error

        def on_error(error: TransferError):
            if previous_on_error:
                previous_on_error(error)
            logger.warning(f"Transfer error: {error}")
            # an aborted incoming file will never complete; aborts while switching rooms are not reported
            if isinstance(error, TransferAborted) and self.negotiator is not None:
                self._received.put_nowait(error)

        self.engine.on_error = on_error
        if self.engine.on_progress is None:
            self.engine.on_progress = self._log_progress

        self.signaling.on("member-joined", self._on_member_joined)
        self.signaling.on("member-left", self._on_member_left)
        self.signaling.on("offer", self._on_offer)
        self.signaling.on("answer", self._on_answer)
        self.signaling.on("ice-candidate", self._on_candidate)
        self.signaling.on("disconnect", self._on_disconnect)

    @property
    def state(self) -> NegotiationState:
        return self.negotiator.state if self.negotiator else NegotiationState.IDLE

    async def create_room(self, room_id: Optional[str] = None, password: Optional[str] = None) -> str:
        ack = await self.signaling.request("create-room", {"roomId": room_id, "passwordHash": hash_password(password)})
        return await self._enter_room(ack)

    async def join_room(self, room_id: str, password: Optional[str] = None) -> str:
        ack = await self.signaling.request("join-room", {"roomId": room_id, "passwordHash": hash_password(password)})
        return await self._enter_room(ack)

    async def _enter_room(self, ack: dict) -> str:
        if not ack.get("success"):
            message = ack.get("message") or "Request rejected"
            logger.warning(f"Room request rejected: {message}")
            raise REJECTIONS_BY_MESSAGE.get(message, RendezvousError)(message)
        previous, self.negotiator = self.negotiator, None
        if previous is not None:
            logger.info(f"Leaving negotiation in room {previous.room_id}")
            await previous.close()
        self.room_id = ack["roomId"]
        self.negotiator = self._new_negotiator(self.room_id)
        logger.info(f"In room {self.room_id}")
        return self.room_id

    def _new_negotiator(self, room_id: str) -> TransportNegotiator:
        negotiator: Optional[TransportNegotiator] = None
        last_state = NegotiationState.IDLE

        def on_state_change(state: NegotiationState):
            nonlocal last_state
            previous_state, last_state = last_state, state
            if negotiator is None or negotiator is not self.negotiator:
                return
            if state == NegotiationState.FAILED:
                self._received.put_nowait(NegotiationFailed(f"Connection failed in room {room_id}"))
            elif state == NegotiationState.CLOSED and previous_state == NegotiationState.OPEN:
                # an aborted incoming transfer has already been queued
                if self._received.empty():
                    self._received.put_nowait(TransferAborted(f"Peer connection in room {room_id} closed"))

        negotiator = TransportNegotiator(room_id, self.signaling.emit, self.session_factory, self.engine,
                                         on_state_change=on_state_change)
        return negotiator

    async def wait_until_open(self, timeout: Optional[float] = None):
        if self.negotiator is None:
            raise RuntimeError("Create or join a room first")
        await self.negotiator.wait_until_open(timeout)

    async def send_file(self, file: OutgoingFile):
        await self.engine.send(file)

    async def wait_for_file(self, timeout: Optional[float] = None) -> ReceivedFile:
        """Wait for the next incoming file. Raises the transfer or negotiation error that ended the wait."""
        item = await asyncio.wait_for(self._received.get(), timeout)
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        if self.negotiator:
            await self.negotiator.close()
        await self.signaling.disconnect()

    def _log_progress(self, role: Role, percent: int):
        logger.info(f"{role.value} progress: {percent}%")

    # Relay events

    async def _on_member_joined(self, data: dict):
        if self.negotiator:
            await self.negotiator.on_member_joined(data.get("memberId"))

    async def _on_member_left(self, data: dict):
        if self.negotiator:
            await self.negotiator.on_member_left(data.get("memberId"))

    async def _on_offer(self, data: dict):
        if self.negotiator:
            await self.negotiator.on_offer(data.get("senderId"), data.get("offer"))

    async def _on_answer(self, data: dict):
        if self.negotiator:
            await self.negotiator.on_answer(data.get("senderId"), data.get("answer"))

    async def _on_candidate(self, data: dict):
        if self.negotiator:
            await self.negotiator.on_candidate(data.get("senderId"), data.get("candidate"))

    async def _on_disconnect(self, data: dict):
        if self.negotiator and self.negotiator.state not in (NegotiationState.CLOSED, NegotiationState.FAILED):
            logger.warning("Lost the rendezvous server")
