from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeMediaCapture, FakeTrack, PeerFactory, make_machine, settle
from peercall.call import CallPhase, CallRole, CallStateMachine
from peercall.media import MediaStreamRegistry
from peercall.shared.dto import IceCandidatePayload
from peercall.shared.errors import (
    CallInProgress,
    ChannelNotFound,
    InvalidChannelId,
    MediaUnavailable,
    StoreUnavailable,
)
from peercall.signaling import SignalingRole

ANSWER_WIRE = {"type": "answer", "sdp": "v=0\r\no=- 9 9 IN IP4 10.0.0.9\r\n"}


class GatedCapture(FakeMediaCapture):
    """gate가 열릴 때까지 캡처 완료를 미루는 캡처 더블."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()

    async def open(self, constraints):
        await self.gate.wait()
        return await super().open(constraints)


class FakeSink:
    def __init__(self) -> None:
        self.tracks = []
        self.started = False
        self.stopped = False

    def add_track(self, track) -> None:
        self.tracks.append(track)

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True


async def start_call(caller, callee) -> str:
    caller_machine = caller[0]
    callee_machine = callee[0]
    channel_id = await caller_machine.create_call()
    await settle()
    await callee_machine.join_call(channel_id)
    await settle()
    return channel_id


async def test_idle_snapshot(caller):
    machine = caller[0]

    snapshot = machine.snapshot()

    assert snapshot["phase"] == "idle"
    assert snapshot["role"] == "none"
    assert snapshot["channel_id"] is None
    assert snapshot["local_tracks"] == []


async def test_create_call_publishes_offer_and_local_candidates(caller, store):
    machine, capture, peers = caller

    channel_id = await machine.create_call()
    await settle()

    assert machine.phase is CallPhase.OFFERING
    assert machine.session.role is CallRole.CALLER
    data = await store.get(f"channels/{channel_id}")
    assert data["offer"]["type"] == "offer"
    assert "answer" not in data
    assert store.count(f"channels/{channel_id}/offerCandidates") == 3
    assert [t.kind for t in peers.last.tracks] == ["audio", "video"]
    assert machine.snapshot()["local_tracks"] == ["audio", "video"]


async def test_callee_join_exchanges_answer_and_candidates(caller, callee, store):
    channel_id = await start_call(caller, callee)
    caller_machine, _, caller_peers = caller
    callee_machine, _, callee_peers = callee

    assert callee_machine.phase is CallPhase.JOINING
    assert callee_machine.session.role is CallRole.CALLEE
    data = await store.get(f"channels/{channel_id}")
    assert data["offer"]["type"] == "offer"
    assert data["answer"]["type"] == "answer"
    assert store.count(f"channels/{channel_id}/answerCandidates") == 3

    caller_pc = caller_peers.last
    callee_pc = callee_peers.last
    assert [d.type for d in caller_pc.remote_descriptions] == ["answer"]
    assert [d.type for d in callee_pc.remote_descriptions] == ["offer"]
    assert [c.port for c in callee_pc.ice_candidates] == [54400, 54402, 54404]
    assert {c.ip for c in callee_pc.ice_candidates} == {"192.168.1.2"}
    assert [c.port for c in caller_pc.ice_candidates] == [54400, 54402, 54404]
    assert {c.ip for c in caller_pc.ice_candidates} == {"192.168.1.3"}


async def test_connected_state_moves_both_sides_to_connected(caller, callee):
    await start_call(caller, callee)

    for machine, _, peers in (caller, callee):
        peers.last.set_connection_state("connecting")
        peers.last.set_connection_state("connected")
        assert machine.phase is CallPhase.CONNECTED
        assert machine.snapshot()["connection_state"] == "connected"


async def test_second_answer_is_not_applied(caller, callee, store):
    channel_id = await start_call(caller, callee)
    caller_pc = caller[2].last

    await store.update(f"channels/{channel_id}", {"answer": ANSWER_WIRE})
    await settle()

    assert len(caller_pc.remote_descriptions) == 1
    assert caller[0].phase is CallPhase.OFFERING


async def test_hang_up_releases_everything_and_deletes_channel(caller, channel, store):
    machine, capture, peers = caller
    channel_id = await machine.create_call()
    await settle()
    handle = channel.handle_for(channel_id)
    for n in range(2):
        await channel.add_candidate(handle, SignalingRole.ANSWERER, IceCandidatePayload(
            candidate=f"candidate:{n} 1 udp 2122260223 10.0.0.9 {6000 + n} typ host",
            sdpMid="0",
            sdpMLineIndex=0,
        ))

    await machine.hang_up()

    assert machine.phase is CallPhase.IDLE
    assert await store.get(f"channels/{channel_id}") is None
    assert store.count(f"channels/{channel_id}/offerCandidates") == 0
    assert store.count(f"channels/{channel_id}/answerCandidates") == 0
    assert peers.last.closed is True
    assert all(track.stopped for track in capture.streams[0].tracks)

    # Idle 상태에서 다시 호출해도 아무 일 없음
    await machine.hang_up()
    assert machine.phase is CallPhase.IDLE


async def test_remote_hang_up_is_detected_by_connection_state(caller, callee, store):
    channel_id = await start_call(caller, callee)
    caller_machine = caller[0]
    callee_machine, callee_capture, callee_peers = callee

    await caller_machine.hang_up()
    callee_peers.last.set_connection_state("disconnected")
    await asyncio.wait_for(callee_machine.wait_until_idle(), timeout=1)

    assert callee_machine.phase is CallPhase.IDLE
    assert callee_peers.last.closed is True
    assert all(track.stopped for track in callee_capture.streams[0].tracks)
    # 두 번째 정리도 오류 없이 끝남
    assert await store.get(f"channels/{channel_id}") is None


async def test_failed_connection_hangs_up(caller, store):
    machine, _, peers = caller
    channel_id = await machine.create_call()
    await settle()

    peers.last.set_connection_state("failed")
    await asyncio.wait_for(machine.wait_until_idle(), timeout=1)

    assert machine.phase is CallPhase.IDLE
    assert await store.get(f"channels/{channel_id}") is None


async def test_concurrent_hang_ups_share_one_teardown(caller):
    machine = caller[0]
    await machine.create_call()
    await settle()

    with patch.object(machine.signaling, "teardown", wraps=machine.signaling.teardown) as spy:
        await asyncio.gather(machine.hang_up(), machine.hang_up())

    assert spy.await_count == 1
    assert machine.phase is CallPhase.IDLE


async def test_teardown_failure_is_logged_and_call_still_ends(caller):
    machine, _, peers = caller
    await machine.create_call()
    await settle()

    with patch.object(machine.signaling, "teardown", AsyncMock(side_effect=StoreUnavailable())):
        await machine.hang_up()

    assert machine.phase is CallPhase.IDLE
    assert peers.last.closed is True


async def test_join_with_empty_id_touches_nothing(callee, store):
    machine, capture, peers = callee

    with pytest.raises(InvalidChannelId):
        await machine.join_call("   ")

    assert machine.phase is CallPhase.IDLE
    assert capture.open_calls == 0
    assert peers.created == []
    assert store.count("channels") == 0


async def test_join_unknown_channel_keeps_media_for_retry(caller, callee):
    machine, capture, peers = callee

    with pytest.raises(ChannelNotFound):
        await machine.join_call("no-such-channel")

    assert machine.phase is CallPhase.CAPTURING_MEDIA
    assert capture.streams[0].released is False

    channel_id = await caller[0].create_call()
    await settle()
    await machine.join_call(channel_id)

    assert machine.phase is CallPhase.JOINING
    assert capture.open_calls == 1
    assert len(peers.created) == 1

    await machine.hang_up()
    assert capture.streams[0].released is True


async def test_media_failure_returns_to_idle_without_channel(channel, store):
    machine, _, peers = make_machine(channel, "192.168.1.2", FakeMediaCapture(fail=True))

    with pytest.raises(MediaUnavailable):
        await machine.create_call()

    assert machine.phase is CallPhase.IDLE
    assert peers.created == []
    assert store.count("channels") == 0


async def test_new_call_rejected_while_active(caller):
    machine = caller[0]
    await machine.create_call()

    with pytest.raises(CallInProgress):
        await machine.create_call()
    with pytest.raises(CallInProgress):
        await machine.join_call("other")

    await machine.hang_up()


async def test_answer_negotiation_failure_hangs_up(caller, store):
    machine, _, peers = caller
    channel_id = await machine.create_call()
    await settle()
    peers.last.setRemoteDescription = AsyncMock(side_effect=ValueError("bad sdp"))

    await store.update(f"channels/{channel_id}", {"answer": ANSWER_WIRE})
    await asyncio.wait_for(machine.wait_until_idle(), timeout=1)

    assert machine.phase is CallPhase.IDLE
    assert await store.get(f"channels/{channel_id}") is None


async def test_remote_tracks_feed_stream_and_sink(channel):
    peers = PeerFactory("192.168.1.2")
    sinks = []

    def sink_factory():
        sink = FakeSink()
        sinks.append(sink)
        return sink

    machine = CallStateMachine(
        signaling=channel,
        media=MediaStreamRegistry(FakeMediaCapture()),
        peer_factory=peers,
        sink_factory=sink_factory,
    )
    await machine.create_call()
    pc = peers.last

    track = FakeTrack("video")
    pc.emit("track", track)
    pc.set_connection_state("connected")
    await settle()

    assert machine.snapshot()["remote_tracks"] == ["video"]
    assert sinks[0].tracks == [track]
    assert sinks[0].started is True

    await machine.hang_up()

    assert sinks[0].stopped is True
    pc.emit("track", FakeTrack("audio"))
    assert machine.snapshot()["remote_tracks"] == []


async def test_hang_up_during_capture_releases_late_stream(channel, store):
    capture = GatedCapture()
    machine, _, peers = make_machine(channel, "192.168.1.2", capture)
    pending = asyncio.create_task(machine.create_call())
    await settle()
    assert machine.phase is CallPhase.CAPTURING_MEDIA

    await machine.hang_up()
    capture.gate.set()

    assert await pending is None
    assert machine.phase is CallPhase.IDLE
    assert capture.streams[0].released is True
    assert all(track.stopped for track in capture.streams[0].tracks)
    assert peers.created == []
    assert store.count("channels") == 0


async def test_hang_up_during_channel_creation_deletes_late_channel(caller, store):
    machine, capture, peers = caller
    gate = asyncio.Event()
    original_create = store.create

    async def gated_create(collection, fields=None):
        await gate.wait()
        return await original_create(collection, fields)

    with patch.object(store, "create", gated_create):
        pending = asyncio.create_task(machine.create_call())
        await settle()
        assert machine.phase is CallPhase.OFFERING

        await machine.hang_up()
        gate.set()
        assert await pending is None

    assert machine.phase is CallPhase.IDLE
    assert store.count("channels") == 0
    assert peers.last.closed is True
    assert all(track.stopped for track in capture.streams[0].tracks)


async def test_hang_up_during_join_returns_quietly(caller, callee, store):
    channel_id = await caller[0].create_call()
    await settle()
    machine, capture, peers = callee
    gate = asyncio.Event()
    original_get = store.get

    async def gated_get(path):
        await gate.wait()
        return await original_get(path)

    with patch.object(store, "get", gated_get):
        pending = asyncio.create_task(machine.join_call(channel_id))
        await settle()
        assert machine.phase is CallPhase.JOINING

        await machine.hang_up()
        gate.set()
        assert await pending is None

    assert machine.phase is CallPhase.IDLE
    assert peers.last.closed is True
    assert capture.streams[0].released is True
    # caller의 채널은 그대로 남아 다른 참가자를 기다림
    data = await store.get(f"channels/{channel_id}")
    assert data["offer"]["type"] == "offer"
    assert "answer" not in data


async def test_late_remote_candidates_after_hang_up_are_ignored(caller, callee, store):
    channel_id = await start_call(caller, callee)
    machine, _, peers = caller
    old_session = machine.session
    pc = peers.last
    applied = len(pc.ice_candidates)
    late = IceCandidatePayload(
        candidate="candidate:9 1 udp 2122260223 10.0.0.9 6009 typ host",
        sdpMid="0",
        sdpMLineIndex=0,
    )

    await machine.hang_up()
    await machine._on_remote_candidate(old_session, late)
    await store.add(f"channels/{channel_id}/answerCandidates", late.to_wire())
    await settle()

    assert len(pc.ice_candidates) == applied
    assert machine.phase is CallPhase.IDLE


async def test_unexpected_teardown_error_does_not_escape_hang_up(caller):
    machine, capture, _ = caller
    await machine.create_call()
    await settle()

    with patch.object(machine.signaling, "teardown", AsyncMock(side_effect=ChannelNotFound())):
        await machine.hang_up()

    assert machine.phase is CallPhase.IDLE
    assert capture.streams[0].released is True
