from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import settle
from peercall.shared.dto import IceCandidatePayload, SessionDescription
from peercall.shared.errors import (
    ChannelNotFound,
    InvalidChannelId,
    ProtocolError,
    StoreUnavailable,
)
from peercall.signaling import SignalingChannel, SignalingRole, SignalingSettings, validate_channel_id

OFFER = SessionDescription(type="offer", sdp="v=0\r\no=- 1 1 IN IP4 0.0.0.0\r\n")
ANSWER = SessionDescription(type="answer", sdp="v=0\r\no=- 2 2 IN IP4 0.0.0.0\r\n")


def candidate(n: int) -> IceCandidatePayload:
    return IceCandidatePayload(
        candidate=f"candidate:{n} 1 udp 2122260223 192.168.1.2 {5000 + n} typ host",
        sdpMid="0",
        sdpMLineIndex=0,
    )


async def offered_channel(channel: SignalingChannel):
    channel_id = await channel.create_channel()
    handle = channel.handle_for(channel_id)
    await channel.publish_offer(handle, OFFER)
    return handle


@pytest.mark.parametrize("raw", ["", "   ", None, "a/b", ".", "..", "__reserved__", "x" * 1501])
def test_validate_channel_id_rejects(raw):
    with pytest.raises(InvalidChannelId):
        validate_channel_id(raw)


def test_validate_channel_id_strips_whitespace():
    assert validate_channel_id("  abc123 ") == "abc123"


def test_role_collections_are_mirrored():
    assert SignalingRole.OFFERER.own_collection == "offerCandidates"
    assert SignalingRole.OFFERER.remote_collection == "answerCandidates"
    assert SignalingRole.ANSWERER.own_collection == "answerCandidates"
    assert SignalingRole.ANSWERER.remote_collection == "offerCandidates"


async def test_create_and_open_channel(channel, store):
    channel_id = await channel.create_channel()

    assert await store.get(f"channels/{channel_id}") == {}
    handle = await channel.open_channel(channel_id)
    assert handle.channel_id == channel_id
    assert handle.offer is None and handle.answer is None


async def test_open_unknown_channel(channel):
    with pytest.raises(ChannelNotFound):
        await channel.open_channel("does-not-exist")


async def test_offer_is_published_once(channel, store):
    handle = await offered_channel(channel)

    data = await store.get(handle.path)
    assert data["offer"] == {"type": "offer", "sdp": OFFER.sdp}

    with pytest.raises(ProtocolError):
        await channel.publish_offer(handle, OFFER)


async def test_answer_requires_offer_and_keeps_it(channel, store):
    channel_id = await channel.create_channel()
    empty = channel.handle_for(channel_id)
    with pytest.raises(ProtocolError):
        await channel.publish_answer(empty, ANSWER)

    handle = await offered_channel(channel)
    joined = await channel.open_channel(handle.channel_id)
    await channel.publish_answer(joined, ANSWER)

    data = await store.get(handle.path)
    assert data["offer"]["sdp"] == OFFER.sdp
    assert data["answer"]["type"] == "answer"

    with pytest.raises(ProtocolError):
        await channel.publish_answer(joined, ANSWER)


async def test_publish_rejects_wrong_description_kind(channel):
    handle = channel.handle_for(await channel.create_channel())
    with pytest.raises(ProtocolError):
        await channel.publish_offer(handle, ANSWER)


async def test_wait_for_answer(channel):
    handle = await offered_channel(channel)
    joined = await channel.open_channel(handle.channel_id)

    waiter = asyncio.create_task(channel.wait_for_answer(handle))
    await settle()
    assert not waiter.done()

    await channel.publish_answer(joined, ANSWER)
    assert await asyncio.wait_for(waiter, timeout=1) == ANSWER
    assert handle.answer == ANSWER


async def test_watch_answer_delivers_exactly_once(channel, store):
    handle = await offered_channel(channel)
    received = []
    subscription = channel.watch_answer(handle, received.append)

    await store.update(handle.path, {"answer": ANSWER.to_wire()})
    await settle()
    await store.update(handle.path, {"answer": {"type": "answer", "sdp": "v=0\r\nsecond"}})
    await settle()

    assert received == [ANSWER]
    subscription.unsubscribe()
    subscription.unsubscribe()


async def test_add_candidate_writes_own_collection(channel, store):
    handle = await offered_channel(channel)

    doc_id = await channel.add_candidate(handle, SignalingRole.OFFERER, candidate(1))

    assert store.count(f"{handle.path}/offerCandidates") == 1
    assert store.count(f"{handle.path}/answerCandidates") == 0
    data = await store.get(f"{handle.path}/offerCandidates/{doc_id}")
    assert data["candidate"] == candidate(1).candidate
    assert "usernameFragment" not in data


async def test_add_candidate_retries_on_store_unavailable(channel, store):
    handle = await offered_channel(channel)
    flaky = AsyncMock(side_effect=[StoreUnavailable(), StoreUnavailable(), "cand-1"])

    with patch.object(store, "add", flaky):
        doc_id = await channel.add_candidate(handle, SignalingRole.ANSWERER, candidate(1))

    assert doc_id == "cand-1"
    assert flaky.await_count == 3


async def test_add_candidate_gives_up_after_max_retries(store):
    settings = SignalingSettings(CANDIDATE_APPEND_MAX_RETRIES=2, CANDIDATE_APPEND_BACKOFF_SECONDS=0.0)
    channel = SignalingChannel(store, settings)
    handle = await offered_channel(channel)
    down = AsyncMock(side_effect=StoreUnavailable())

    with patch.object(store, "add", down):
        with pytest.raises(StoreUnavailable):
            await channel.add_candidate(handle, SignalingRole.OFFERER, candidate(1))

    assert down.await_count == 3


async def test_watch_candidates_delivers_existing_and_new_once_in_order(channel):
    handle = await offered_channel(channel)
    await channel.add_candidate(handle, SignalingRole.OFFERER, candidate(1))
    await channel.add_candidate(handle, SignalingRole.OFFERER, candidate(2))

    received = []
    subscription = channel.watch_candidates(handle, SignalingRole.ANSWERER, received.append)
    await settle()
    await channel.add_candidate(handle, SignalingRole.OFFERER, candidate(3))
    # 자기 역할 컬렉션의 후보는 전달되지 않음
    await channel.add_candidate(handle, SignalingRole.ANSWERER, candidate(9))
    await settle()

    assert [c.candidate for c in received] == [candidate(n).candidate for n in (1, 2, 3)]

    subscription.unsubscribe()
    await channel.add_candidate(handle, SignalingRole.OFFERER, candidate(4))
    await settle()
    assert len(received) == 3


async def test_watch_candidates_skips_invalid_documents_and_handler_errors(channel, store):
    handle = await offered_channel(channel)
    await store.add(f"{handle.path}/offerCandidates", {"candidate": 123, "sdpMLineIndex": "x"})
    await channel.add_candidate(handle, SignalingRole.OFFERER, candidate(1))
    await channel.add_candidate(handle, SignalingRole.OFFERER, candidate(2))

    received = []

    async def on_added(c: IceCandidatePayload) -> None:
        if c.candidate == candidate(1).candidate:
            raise RuntimeError("boom")
        received.append(c)

    subscription = channel.watch_candidates(handle, SignalingRole.ANSWERER, on_added)
    await settle()

    assert [c.candidate for c in received] == [candidate(2).candidate]
    subscription.unsubscribe()


async def test_teardown_removes_candidates_then_document(channel, store):
    handle = await offered_channel(channel)
    for n in range(3):
        await channel.add_candidate(handle, SignalingRole.OFFERER, candidate(n))
    for n in range(2):
        await channel.add_candidate(handle, SignalingRole.ANSWERER, candidate(10 + n))

    assert await channel.teardown(handle) == 5

    assert await store.get(handle.path) is None
    assert store.count(f"{handle.path}/offerCandidates") == 0
    assert store.count(f"{handle.path}/answerCandidates") == 0

    # 두 번째 정리는 오류 없이 끝남
    assert await channel.teardown(handle) == 0


async def test_teardown_propagates_store_failure(channel, store):
    handle = await offered_channel(channel)

    with patch.object(store, "delete", AsyncMock(side_effect=StoreUnavailable())):
        with pytest.raises(StoreUnavailable):
            await channel.teardown(handle)
