"""WebRTC implementation of the secure peer channel contract, on top of aiortc."""

from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from constants import ICE_SERVERS
from errors import CandidateRejected
from logging_config import get_logger
from peer.channel import DataChannel, PeerSession

logger = get_logger(__name__)


def _get_rtc_config(ice_servers: List[str]) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])


class AiortcDataChannel(DataChannel):
    def __init__(self, channel):
        super().__init__()
        self._channel = channel
        self.label = channel.label

    def on(self, event: str, handler=None):
        # aiortc channels are pyee emitters already; register there directly
        if handler is None:
            return self._channel.on(event)
        return self._channel.on(event, handler)

    def emit(self, event: str, *args):
        self._channel.emit(event, *args)

    @property
    def ready_state(self) -> str:
        return self._channel.readyState

    @property
    def buffered_amount(self) -> int:
        return self._channel.bufferedAmount

    @property
    def buffered_amount_low_threshold(self) -> int:
        return self._channel.bufferedAmountLowThreshold

    @buffered_amount_low_threshold.setter
    def buffered_amount_low_threshold(self, value: int):
        self._channel.bufferedAmountLowThreshold = value

    @property
    def ordered(self) -> bool:
        return self._channel.ordered

    @property
    def reliable(self) -> bool:
        return self._channel.maxRetransmits is None and self._channel.maxPacketLifeTime is None

    def send(self, data):
        self._channel.send(data)

    def close(self):
        self._channel.close()


class AiortcPeerSession(PeerSession):
    """
    aiortc gathers candidates while setting the local description and ships
    them inside the SDP, so this session never emits "icecandidate". Remote
    candidates trickled by browser peers are still applied.
    """

    def __init__(self, ice_servers: Optional[List[str]] = None):
        super().__init__()
        self.pc = RTCPeerConnection(configuration=_get_rtc_config(ice_servers or ICE_SERVERS))

        @self.pc.on("connectionstatechange")
        def on_connection_state_change():
            logger.debug(f"Peer connection state: {self.pc.connectionState}")
            self.emit("connectionstatechange", self.pc.connectionState)

        @self.pc.on("datachannel")
        def on_datachannel(channel):
            logger.debug(f"Remote data channel {channel.label} announced")
            self.emit("datachannel", AiortcDataChannel(channel))

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    def _local_description(self) -> dict:
        description = self.pc.localDescription
        return {"type": description.type, "sdp": description.sdp}

    async def create_offer(self) -> dict:
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return self._local_description()

    async def accept_offer(self, offer: dict) -> dict:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type=offer["type"]))
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return self._local_description()

    async def accept_answer(self, answer: dict):
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=answer["sdp"], type=answer["type"]))

    async def add_candidate(self, candidate: dict):
        try:
            sdp = candidate["candidate"]
            if not sdp:
                # end-of-candidates marker
                return
            if sdp.startswith("candidate:"):
                sdp = sdp[len("candidate:"):]
            ice_candidate = candidate_from_sdp(sdp)
            ice_candidate.sdpMid = candidate.get("sdpMid")
            ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
            await self.pc.addIceCandidate(ice_candidate)
        except (AssertionError, KeyError, IndexError, TypeError, ValueError) as e:
            raise CandidateRejected(f"Invalid candidate {candidate!r}: {e}") from e

    def create_data_channel(self, label: str, ordered: bool = True) -> DataChannel:
        return AiortcDataChannel(self.pc.createDataChannel(label, ordered=ordered))

    async def close(self):
        await self.pc.close()
