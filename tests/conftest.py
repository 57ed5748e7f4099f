import pytest

from errors import CandidateRejected
from peer.channel import DataChannel, PeerSession


class FakeDataChannel(DataChannel):
    """In-memory channel. With auto_drain the buffer empties on every send."""

    def __init__(self, label="file-transfer", ordered=True, reliable=True, ready_state="open", auto_drain=True):
        super().__init__()
        self.label = label
        self._ordered = ordered
        self._reliable = reliable
        self._ready_state = ready_state
        self._threshold = 0
        self.auto_drain = auto_drain
        self.sent = []
        self.buffered = 0
        self.max_buffered = 0
        self.sends_over_threshold = 0

    @property
    def ready_state(self):
        return self._ready_state

    @property
    def buffered_amount(self):
        return self.buffered

    @property
    def buffered_amount_low_threshold(self):
        return self._threshold

    @buffered_amount_low_threshold.setter
    def buffered_amount_low_threshold(self, value):
        self._threshold = value

    @property
    def ordered(self):
        return self._ordered

    @property
    def reliable(self):
        return self._reliable

    def send(self, data):
        if self._ready_state != "open":
            raise RuntimeError("channel is not open")
        if self.buffered > self._threshold:
            self.sends_over_threshold += 1
        self.sent.append(data)
        if not self.auto_drain:
            self.buffered += len(data.encode() if isinstance(data, str) else data)
            self.max_buffered = max(self.max_buffered, self.buffered)

    def drain(self):
        self.buffered = 0
        self.emit("bufferedamountlow")

    def open(self):
        self._ready_state = "open"
        self.emit("open")

    def close(self):
        if self._ready_state == "closed":
            return
        self._ready_state = "closed"
        self.emit("close")

    @property
    def chunks(self):
        return [frame for frame in self.sent if isinstance(frame, bytes)]


class FakePeerSession(PeerSession):
    def __init__(self, channel_kwargs=None, fail_offer=False):
        super().__init__()
        self.state = "new"
        self.channel_kwargs = channel_kwargs or {}
        self.fail_offer = fail_offer
        self.remote_description = None
        self.candidates = []
        self.channels = []
        self.closed = False

    @property
    def connection_state(self):
        return self.state

    async def create_offer(self):
        if self.fail_offer:
            raise RuntimeError("no local description")
        return {"type": "offer", "sdp": "v=0 fake-offer"}

    async def accept_offer(self, offer):
        self.remote_description = offer
        return {"type": "answer", "sdp": "v=0 fake-answer"}

    async def accept_answer(self, answer):
        self.remote_description = answer

    async def add_candidate(self, candidate):
        if not isinstance(candidate, dict) or candidate.get("candidate") in (None, "stale"):
            raise CandidateRejected(f"cannot apply {candidate!r}")
        self.candidates.append(candidate)

    def create_data_channel(self, label, ordered=True):
        kwargs = {"ready_state": "connecting", **self.channel_kwargs}
        kwargs.setdefault("ordered", ordered)
        channel = FakeDataChannel(label, **kwargs)
        self.channels.append(channel)
        return channel

    async def close(self):
        self.closed = True

    def set_state(self, state):
        self.state = state
        self.emit("connectionstatechange", state)


class EmitRecorder:
    def __init__(self):
        self.events = []

    async def __call__(self, event, data):
        self.events.append((event, data))

    def named(self, event):
        return [data for name, data in self.events if name == event]


class SendRecorder:
    def __init__(self):
        self.messages = []

    async def __call__(self, message):
        self.messages.append(message)

    def events(self, name):
        return [m["data"] for m in self.messages if m["event"] == name]


@pytest.fixture
def emit():
    return EmitRecorder()
