"""
Chunked Transfer Engine

Sends or receives one file at a time over an open DataChannel.

Wire format:
- one metadata text frame: {"kind": "metadata", "fileName", "fileSize", "mimeType"}
- ordered binary chunk frames of at most CHUNK_SIZE bytes, no sequence numbers

Byte order on the receiving side is the frame arrival order, so the channel
must deliver in order and reliably. The negotiator refuses any other channel.

The sender never writes a chunk while the channel's buffered byte count is
above the low threshold; it waits for "bufferedamountlow" instead. At most
one chunk can therefore be queued past the threshold.

There is no transfer timeout: a channel that stalls without closing wedges
the transfer until it is closed.
"""

import asyncio
import mimetypes
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import BinaryIO, Callable, List, Optional, Union

from pydantic import ValidationError

from constants import CHUNK_SIZE, LOW_THRESHOLD
from errors import ChannelNotReady, ParseError, ProtocolViolation, TransferAborted, TransferError, TransferInProgress
from logging_config import get_logger
from peer.channel import DataChannel
from schemas.frames import MetadataFrame

logger = get_logger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


class Role(Enum):
    SENDER = "sender"
    RECEIVER = "receiver"


def percent(done: int, total: int) -> int:
    """done/total as a whole percentage, halves rounded up."""
    if total <= 0:
        return 100
    return (200 * done + total) // (2 * total)


@dataclass
class OutgoingFile:
    name: str
    size: int
    stream: BinaryIO
    mime_type: str = DEFAULT_MIME_TYPE

    @classmethod
    def from_path(cls, path: str, stream: BinaryIO) -> "OutgoingFile":
        mime_type, _ = mimetypes.guess_type(path)
        return cls(
            name=os.path.basename(path),
            size=os.path.getsize(path),
            stream=stream,
            mime_type=mime_type or DEFAULT_MIME_TYPE,
        )


@dataclass
class ReceivedFile:
    name: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class TransferSession:
    role: Role
    file_name: str
    file_size: int
    mime_type: str
    bytes_transferred: int = 0
    # receiver only
    chunks: List[bytes] = field(default_factory=list)

    @property
    def progress(self) -> int:
        return percent(self.bytes_transferred, self.file_size)

    def release(self):
        self.chunks = []
        self.bytes_transferred = 0


class Idle:
    def __repr__(self):
        return "Idle"


IDLE = Idle()


@dataclass
class Sending:
    session: TransferSession


@dataclass
class Receiving:
    session: TransferSession


TransferState = Union[Idle, Sending, Receiving]


class ChunkedTransferEngine:
    """
    Per-channel transfer state machine: Idle | Sending(session) | Receiving(session).

    Callbacks:
        on_progress(role, percent)
        on_file(ReceivedFile)      a completed incoming file
        on_error(TransferError)    a session-scoped failure; the channel stays usable
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE, low_threshold: int = LOW_THRESHOLD,
                 on_progress: Optional[Callable[[Role, int], None]] = None,
                 on_file: Optional[Callable[[ReceivedFile], None]] = None,
                 on_error: Optional[Callable[[TransferError], None]] = None):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size
        self.low_threshold = low_threshold
        self.on_progress = on_progress
        self.on_file = on_file
        self.on_error = on_error
        self.channel: Optional[DataChannel] = None
        self.state: TransferState = IDLE
        self._drained = asyncio.Event()

    @property
    def is_transferring(self) -> bool:
        return not isinstance(self.state, Idle)

    def attach(self, channel: DataChannel):
        """Take over an open channel. Any previous channel is detached first."""
        if self.channel is not None:
            self.detach()
        self.channel = channel
        channel.buffered_amount_low_threshold = self.low_threshold

        def handle_message(frame):
            if self.channel is channel:
                self.on_frame(frame)

        def handle_buffered_amount_low():
            if self.channel is channel:
                self._drained.set()

        def handle_close():
            if self.channel is channel:
                logger.info(f"Data channel {channel.label} closed")
                self.detach()

        channel.on("message", handle_message)
        channel.on("bufferedamountlow", handle_buffered_amount_low)
        channel.on("close", handle_close)
        logger.info(f"Transfer engine attached to data channel {channel.label}")

    def detach(self):
        """Forget the channel, aborting whatever transfer is in flight."""
        self.abort("channel closed")
        self.channel = None

    def abort(self, reason: str):
        """Discard the active session and release its buffered chunks."""
        state = self.state
        if isinstance(state, Idle):
            return
        self.state = IDLE
        state.session.release()
        # wake a sender waiting for the buffer to drain so it notices the abort
        self._drained.set()
        logger.warning(f"{state.session.role.value.capitalize()} transfer of {state.session.file_name} aborted: {reason}")
        if isinstance(state, Receiving):
            self._report_error(TransferAborted(f"Transfer of {state.session.file_name} aborted: {reason}"))

    # Sending

    async def send(self, file: OutgoingFile):
        channel = self.channel
        if channel is None or channel.ready_state != "open":
            raise ChannelNotReady("Connection not ready")
        if self.is_transferring:
            raise TransferInProgress(f"A transfer is already active: {self.state!r}")

        session = TransferSession(role=Role.SENDER, file_name=file.name, file_size=file.size,
                                  mime_type=file.mime_type)
        state = Sending(session)
        self.state = state
        logger.info(f"Starting file transfer: {file.name} ({file.size} bytes)")

        try:
            await self._wait_for_room(channel, state)
            channel.send(MetadataFrame(file_name=file.name, file_size=file.size, mime_type=file.mime_type).to_wire())
            await self._send_chunks(channel, file.stream, state)
        finally:
            if self.state is state:
                self.state = IDLE
        logger.info(f"File sending complete: {file.name}")

    async def _send_chunks(self, channel: DataChannel, stream: BinaryIO, state: Sending):
        session = state.session
        while session.bytes_transferred < session.file_size:
            await self._wait_for_room(channel, state)
            remaining = session.file_size - session.bytes_transferred
            chunk = stream.read(min(self.chunk_size, remaining))
            if not chunk:
                raise TransferAborted(f"{session.file_name} ended after {session.bytes_transferred} "
                                      f"of {session.file_size} bytes")
            channel.send(chunk)
            session.bytes_transferred += len(chunk)
            self._report_progress(session)
            # let close and drain events through between chunks
            await asyncio.sleep(0)

    async def _wait_for_room(self, channel: DataChannel, state: Sending):
        """Block until the channel buffer is at or below the low threshold. Every frame goes through here."""
        session = state.session
        while True:
            if self.state is not state or channel.ready_state != "open":
                raise TransferAborted(f"Transfer of {session.file_name} aborted at "
                                      f"{session.bytes_transferred}/{session.file_size} bytes")
            if channel.buffered_amount <= self.low_threshold:
                return
            self._drained.clear()
            logger.debug(f"Buffer full ({channel.buffered_amount} bytes), waiting for drain")
            await self._drained.wait()

    # Receiving

    def on_frame(self, frame):
        """Handle one inbound data-channel message."""
        try:
            if isinstance(frame, str):
                self._on_metadata(frame)
            elif isinstance(frame, (bytes, bytearray, memoryview)):
                self._on_chunk(bytes(frame))
            else:
                raise ProtocolViolation(f"Unsupported frame type {type(frame).__name__}")
        except TransferError as e:
            logger.warning(f"Dropped frame: {e}")
            self._report_error(e)

    def _on_metadata(self, text: str):
        try:
            metadata = MetadataFrame.model_validate_json(text)
        except ValidationError as e:
            raise ParseError(f"Error parsing metadata frame: {e}") from e

        state = self.state
        if isinstance(state, Receiving):
            self.state = IDLE
            state.session.release()
            raise ProtocolViolation(f"Metadata for {metadata.file_name} arrived while receiving "
                                    f"{state.session.file_name}; both dropped")
        if isinstance(state, Sending):
            raise ProtocolViolation(f"Metadata for {metadata.file_name} arrived while sending "
                                    f"{state.session.file_name}")

        session = TransferSession(role=Role.RECEIVER, file_name=metadata.file_name,
                                  file_size=metadata.file_size, mime_type=metadata.mime_type)
        self.state = Receiving(session)
        logger.info(f"Received metadata: {session.file_name} ({session.file_size} bytes, {session.mime_type})")
        if session.file_size == 0:
            self._report_progress(session)
            self._complete(session)

    def _on_chunk(self, data: bytes):
        state = self.state
        if not isinstance(state, Receiving):
            raise ProtocolViolation(f"Chunk of {len(data)} bytes without an incoming transfer")
        self._append_chunk(state.session, data)

    def _append_chunk(self, session: TransferSession, data: bytes):
        if session.bytes_transferred + len(data) > session.file_size:
            overrun = session.bytes_transferred + len(data)
            self.state = IDLE
            session.release()
            raise ProtocolViolation(f"Received {overrun} bytes for {session.file_name}, "
                                    f"declared {session.file_size}")

        session.chunks.append(data)
        session.bytes_transferred += len(data)
        self._report_progress(session)
        if session.bytes_transferred == session.file_size:
            self._complete(session)

    def _complete(self, session: TransferSession):
        logger.info(f"File reception complete. Assembling {session.file_name}")
        received = ReceivedFile(name=session.file_name, mime_type=session.mime_type,
                                data=b"".join(session.chunks))
        session.release()
        self.state = IDLE
        if self.on_file:
            self.on_file(received)

    def _report_progress(self, session: TransferSession):
        logger.debug(f"{session.role.value} {session.file_name}: {session.bytes_transferred}/{session.file_size} bytes")
        if self.on_progress:
            self.on_progress(session.role, session.progress)

    def _report_error(self, error: TransferError):
        if self.on_error:
            self.on_error(error)
