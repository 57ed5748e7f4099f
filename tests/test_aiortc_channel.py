from types import SimpleNamespace

import pytest

from errors import CandidateRejected
from peer.aiortc_channel import AiortcDataChannel, AiortcPeerSession

HOST_CANDIDATE = "candidate:842163049 1 udp 1677729535 203.0.113.7 46154 typ srflx raddr 10.0.0.2 rport 46154"


@pytest.fixture
async def session():
    session = AiortcPeerSession(ice_servers=[])
    applied = []

    async def add_ice_candidate(candidate):
        applied.append(candidate)

    session.pc.addIceCandidate = add_ice_candidate
    session.applied = applied
    yield session
    await session.close()


async def test_browser_candidate_is_parsed(session):
    await session.add_candidate({"candidate": HOST_CANDIDATE, "sdpMid": "0", "sdpMLineIndex": 0})

    [candidate] = session.applied
    assert candidate.foundation == "842163049"
    assert candidate.ip == "203.0.113.7"
    assert candidate.port == 46154
    assert candidate.type == "srflx"
    assert candidate.relatedAddress == "10.0.0.2"
    assert candidate.sdpMid == "0"
    assert candidate.sdpMLineIndex == 0


async def test_candidate_without_prefix_is_accepted(session):
    await session.add_candidate({"candidate": HOST_CANDIDATE[len("candidate:"):], "sdpMid": "0"})
    assert [c.ip for c in session.applied] == ["203.0.113.7"]


async def test_end_of_candidates_marker_is_ignored(session):
    await session.add_candidate({"candidate": "", "sdpMid": "0", "sdpMLineIndex": 0})
    assert session.applied == []


@pytest.mark.parametrize("candidate", [
    {"candidate": "candidate:garbage"},
    {"candidate": "candidate:1 one udp 2 10.0.0.1 9 typ host"},
    {"sdpMid": "0"},
    "candidate:842163049 1 udp",
])
async def test_malformed_candidate_is_rejected(session, candidate):
    with pytest.raises(CandidateRejected):
        await session.add_candidate(candidate)
    assert session.applied == []


@pytest.mark.parametrize("max_retransmits, max_packet_life_time, reliable", [
    (None, None, True),
    (0, None, False),
    (None, 500, False),
])
def test_channel_reliability_follows_retransmit_limits(max_retransmits, max_packet_life_time, reliable):
    raw = SimpleNamespace(label="file-transfer", ordered=True, maxRetransmits=max_retransmits,
                          maxPacketLifeTime=max_packet_life_time)
    channel = AiortcDataChannel(raw)
    assert channel.reliable is reliable
    assert channel.ordered is True
