from __future__ import annotations

import asyncio
import sys
from collections import defaultdict
from pathlib import Path
from typing import List

import pytest
from aiortc import RTCSessionDescription

BACKEND_PATH = Path(__file__).resolve().parents[1]
if str(BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(BACKEND_PATH))

from peercall.call import CallStateMachine  # noqa: E402
from peercall.media import LocalStream, MediaConstraints, MediaStreamRegistry  # noqa: E402
from peercall.shared.errors import MediaUnavailable  # noqa: E402
from peercall.signaling import MemoryDocumentStore, SignalingChannel, SignalingSettings  # noqa: E402


def build_sdp(kind: str, host: str) -> str:
    """m-line 두 개(audio, video)와 host 후보 3개를 가진 SDP."""
    return "\r\n".join([
        "v=0",
        f"o=- 0 0 IN IP4 {host}",
        "s=-",
        "t=0 0",
        "m=audio 9 UDP/TLS/RTP/SAVPF 111",
        "a=mid:0",
        f"a=candidate:1 1 udp 2122260223 {host} 54400 typ host",
        f"a=candidate:2 1 udp 2122260223 {host} 54402 typ host",
        "m=video 9 UDP/TLS/RTP/SAVPF 96",
        "a=mid:1",
        f"a=candidate:3 1 udp 2122260223 {host} 54404 typ host",
        f"a=x-role:{kind}",
        "",
    ])


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakePeerConnection:
    """RTCPeerConnection과 같은 모양의 테스트 더블 (pyee 이벤트 포함)."""

    def __init__(self, host: str = "192.168.1.2") -> None:
        self.host = host
        self._listeners = defaultdict(list)
        self.connectionState = "new"
        self.iceGatheringState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.tracks: List = []
        self.remote_descriptions: List = []
        self.ice_candidates: List = []
        self.closed = False

    # pyee 호환
    def on(self, event, f=None):
        if f is None:
            def decorator(func):
                self._listeners[event].append(func)
                return func
            return decorator
        self._listeners[event].append(f)
        return f

    def remove_listener(self, event, f) -> None:
        if f in self._listeners[event]:
            self._listeners[event].remove(f)

    def emit(self, event, *args) -> None:
        for listener in list(self._listeners[event]):
            listener(*args)

    def listener_count(self, event) -> int:
        return len(self._listeners[event])

    def addTrack(self, track) -> None:
        self.tracks.append(track)

    async def createOffer(self):
        return RTCSessionDescription(sdp=build_sdp("offer", self.host), type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp=build_sdp("answer", self.host), type="answer")

    async def setLocalDescription(self, description) -> None:
        self.localDescription = description
        self.iceGatheringState = "complete"

    async def setRemoteDescription(self, description) -> None:
        self.remote_descriptions.append(description)
        self.remoteDescription = description

    async def addIceCandidate(self, candidate) -> None:
        self.ice_candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True
        self.set_connection_state("closed")

    def set_connection_state(self, state: str) -> None:
        self.connectionState = state
        self.emit("connectionstatechange")


class PeerFactory:
    """생성한 FakePeerConnection을 기록하는 peer_factory."""

    def __init__(self, host: str) -> None:
        self.host = host
        self.created: List[FakePeerConnection] = []

    def __call__(self) -> FakePeerConnection:
        pc = FakePeerConnection(self.host)
        self.created.append(pc)
        return pc

    @property
    def last(self) -> FakePeerConnection:
        return self.created[-1]


class FakeMediaCapture:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.open_calls = 0
        self.streams: List[LocalStream] = []

    async def open(self, constraints: MediaConstraints) -> LocalStream:
        self.open_calls += 1
        if self.fail:
            raise MediaUnavailable("권한 거부")
        tracks = []
        if constraints.audio:
            tracks.append(FakeTrack("audio"))
        if constraints.video:
            tracks.append(FakeTrack("video"))
        stream = LocalStream(tracks=tracks)
        self.streams.append(stream)
        return stream


async def settle(rounds: int = 50) -> None:
    """이벤트 루프에 예약된 콜백과 태스크가 모두 진행되도록 양보합니다."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture()
def settings() -> SignalingSettings:
    return SignalingSettings(
        STORE_BACKEND="memory",
        CHANNELS_COLLECTION="channels",
        CANDIDATE_APPEND_MAX_RETRIES=3,
        CANDIDATE_APPEND_BACKOFF_SECONDS=0.0,
    )


@pytest.fixture()
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture()
def channel(store, settings) -> SignalingChannel:
    return SignalingChannel(store, settings)


def make_machine(channel: SignalingChannel, host: str, capture: FakeMediaCapture = None):
    capture = capture or FakeMediaCapture()
    peers = PeerFactory(host)
    machine = CallStateMachine(
        signaling=channel,
        media=MediaStreamRegistry(capture),
        peer_factory=peers,
    )
    return machine, capture, peers


@pytest.fixture()
async def caller(channel):
    machine, capture, peers = make_machine(channel, "192.168.1.2")
    yield machine, capture, peers
    await machine.hang_up()


@pytest.fixture()
async def callee(store, settings):
    # 같은 저장소를 쓰는 별도 SignalingChannel (두 번째 피어)
    machine, capture, peers = make_machine(SignalingChannel(store, settings), "192.168.1.3")
    yield machine, capture, peers
    await machine.hang_up()
