"""시그널링 채널 모듈.

문서 저장소를 시그널링 릴레이로 사용해 두 피어가 SDP offer/answer와
ICE candidate를 교환하도록 하는 얇은 프로토콜 클라이언트입니다.

채널 구조:
    channels/{channelId}                    {offer, answer?}
    channels/{channelId}/offerCandidates    caller가 쓰고 callee가 읽음
    channels/{channelId}/answerCandidates   callee가 쓰고 caller가 읽음

Protocol:
    1. caller: create_channel() → publish_offer() → wait_for_answer()
       → watch_candidates(OFFERER)
    2. callee: open_channel() → publish_answer() → watch_candidates(ANSWERER)
    3. 양쪽 모두 로컬 후보를 add_candidate()로 자기 역할의 컬렉션에 추가
    4. 종료 시 teardown(): 후보 컬렉션 → 채널 문서 순서로 삭제

Examples:
    >>> channel = SignalingChannel(MemoryDocumentStore())
    >>> channel_id = await channel.create_channel()
    >>> handle = await channel.open_channel(channel_id)
    >>> await channel.publish_offer(handle, offer)
    >>> answer = await channel.wait_for_answer(handle)
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set, Union

from pydantic import ValidationError

from ..shared.dto import IceCandidatePayload, SessionDescription
from ..shared.errors import (
    ChannelNotFound,
    InvalidChannelId,
    ProtocolError,
    StoreUnavailable,
)
from .config import SignalingSettings, get_signaling_settings
from .store import DocumentChange, DocumentStore

logger = logging.getLogger(__name__)

MAX_CHANNEL_ID_BYTES = 1500

AnswerHandler = Callable[[SessionDescription], Union[None, Awaitable[None]]]
CandidateHandler = Callable[[IceCandidatePayload], Union[None, Awaitable[None]]]


class SignalingRole(str, Enum):
    """채널에서의 역할. 쓰는 후보 컬렉션과 구독하는 컬렉션을 결정합니다."""

    OFFERER = "offerer"
    ANSWERER = "answerer"

    @property
    def own_collection(self) -> str:
        return "offerCandidates" if self is SignalingRole.OFFERER else "answerCandidates"

    @property
    def remote_collection(self) -> str:
        return "answerCandidates" if self is SignalingRole.OFFERER else "offerCandidates"


def validate_channel_id(channel_id: Optional[str]) -> str:
    """채널 ID 형식을 검증하고 앞뒤 공백을 제거한 값을 반환합니다.

    Raises:
        InvalidChannelId: 빈 값이거나 Firestore 문서 ID로 쓸 수 없는 경우
    """
    if channel_id is None:
        raise InvalidChannelId("채널 ID가 비어 있습니다.")
    value = channel_id.strip()
    if not value:
        raise InvalidChannelId("채널 ID가 비어 있습니다.")
    if "/" in value or value in (".", ".."):
        raise InvalidChannelId(f"채널 ID에 사용할 수 없는 형식입니다: {value!r}")
    if value.startswith("__") and value.endswith("__"):
        raise InvalidChannelId(f"예약된 채널 ID 형식입니다: {value!r}")
    if len(value.encode("utf-8")) > MAX_CHANNEL_ID_BYTES:
        raise InvalidChannelId("채널 ID가 너무 깁니다.")
    return value


@dataclass
class ChannelHandle:
    """열린 채널 참조."""

    channel_id: str
    path: str
    offer: Optional[SessionDescription] = None
    answer: Optional[SessionDescription] = None

    def candidates_path(self, role: SignalingRole, remote: bool = False) -> str:
        collection = role.remote_collection if remote else role.own_collection
        return f"{self.path}/{collection}"


class Subscription:
    """저장소 구독 1건. unsubscribe()는 여러 번 호출해도 안전합니다."""

    def __init__(self, description: str):
        self.description = description
        self._store_unsubscribe: Optional[Callable[[], None]] = None
        self._task: Optional[asyncio.Task] = None
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def _stop_listening(self) -> None:
        if self._store_unsubscribe is not None:
            self._store_unsubscribe()
            self._store_unsubscribe = None

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._stop_listening()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.debug(f"[Signaling] 구독 해제: {self.description}")


async def _invoke(handler, value) -> None:
    result = handler(value)
    if inspect.isawaitable(result):
        await result


def _parse_description(raw) -> Optional[SessionDescription]:
    if not raw:
        return None
    try:
        return SessionDescription.model_validate(raw)
    except ValidationError as e:
        raise ProtocolError(f"잘못된 session description: {e}") from e


class SignalingChannel:
    """문서 저장소 위의 시그널링 프로토콜 클라이언트.

    Attributes:
        store (DocumentStore): 문서 저장소 구현
        collection (str): 채널 문서 컬렉션 이름

    Note:
        - 후보 추가만 일시 장애 시 자체 재시도하며, 나머지 저장소 오류는
          StoreUnavailable로 호출자에게 전달됨
        - 구독 콜백은 동기/비동기 함수 모두 허용되며, 후보는 구독마다
          하나의 태스크에서 순차적으로 전달됨
    """

    def __init__(self, store: DocumentStore, settings: Optional[SignalingSettings] = None):
        self.store = store
        self._settings = settings or get_signaling_settings()
        self.collection = self._settings.CHANNELS_COLLECTION

    def _path(self, channel_id: str) -> str:
        return f"{self.collection}/{channel_id}"

    # ------------------------------------------------------------
    # 채널 생성/조회
    # ------------------------------------------------------------

    async def create_channel(self) -> str:
        """빈 채널 문서를 만들고 저장소가 부여한 ID를 반환합니다.

        Raises:
            StoreUnavailable: 저장소 연결 실패
        """
        channel_id = await self.store.create(self.collection, {})
        logger.info(f"[Signaling] 채널 생성: {channel_id}")
        return channel_id

    def handle_for(self, channel_id: str) -> ChannelHandle:
        """저장소 조회 없이 방금 만든 채널의 핸들을 만듭니다."""
        return ChannelHandle(channel_id=channel_id, path=self._path(channel_id))

    async def open_channel(self, channel_id: str) -> ChannelHandle:
        """기존 채널을 엽니다.

        Raises:
            InvalidChannelId: ID 형식 오류
            ChannelNotFound: 채널 문서가 없는 경우
        """
        channel_id = validate_channel_id(channel_id)
        data = await self.store.get(self._path(channel_id))
        if data is None:
            raise ChannelNotFound(f"채널 {channel_id}을(를) 찾을 수 없습니다.")

        handle = ChannelHandle(
            channel_id=channel_id,
            path=self._path(channel_id),
            offer=_parse_description(data.get("offer")),
            answer=_parse_description(data.get("answer")),
        )
        logger.info(
            f"[Signaling] 채널 열기: {channel_id} (offer={handle.offer is not None}, "
            f"answer={handle.answer is not None})"
        )
        return handle

    # ------------------------------------------------------------
    # offer / answer
    # ------------------------------------------------------------

    async def publish_offer(self, channel: ChannelHandle, description: SessionDescription) -> None:
        """채널 문서에 offer를 기록합니다. 채널당 한 번만 허용됩니다.

        Raises:
            ProtocolError: 이미 offer가 있거나 description 종류가 offer가 아닌 경우
            ChannelNotFound: 채널 문서가 없는 경우
        """
        if description.type != "offer":
            raise ProtocolError(f"offer 필드에 {description.type}을(를) 기록할 수 없습니다.")

        data = await self.store.get(channel.path)
        if data is None:
            raise ChannelNotFound(f"채널 {channel.channel_id}을(를) 찾을 수 없습니다.")
        if channel.offer is not None or data.get("offer"):
            raise ProtocolError(f"채널 {channel.channel_id}에 offer가 이미 게시되었습니다.")

        await self.store.update(channel.path, {"offer": description.to_wire()})
        channel.offer = description
        logger.info(f"[Signaling] offer 게시: {channel.channel_id}")

    async def publish_answer(self, channel: ChannelHandle, description: SessionDescription) -> None:
        """채널 문서에 answer를 추가합니다. offer 필드는 변경하지 않습니다.

        Raises:
            ProtocolError: offer가 없거나 answer가 이미 있는 경우
            ChannelNotFound: 채널 문서가 없는 경우
        """
        if description.type != "answer":
            raise ProtocolError(f"answer 필드에 {description.type}을(를) 기록할 수 없습니다.")

        data = await self.store.get(channel.path)
        if data is None:
            raise ChannelNotFound(f"채널 {channel.channel_id}을(를) 찾을 수 없습니다.")
        if not data.get("offer"):
            raise ProtocolError(f"채널 {channel.channel_id}에 offer가 없습니다.")
        if channel.answer is not None or data.get("answer"):
            raise ProtocolError(f"채널 {channel.channel_id}에 answer가 이미 게시되었습니다.")

        await self.store.update(channel.path, {"answer": description.to_wire()})
        channel.answer = description
        logger.info(f"[Signaling] answer 게시: {channel.channel_id}")

    def watch_answer(self, channel: ChannelHandle, on_answer: AnswerHandler) -> Subscription:
        """answer가 처음 기록되는 순간 on_answer를 정확히 한 번 호출합니다.

        이후의 문서 변경은 무시됩니다.
        """
        subscription = Subscription(f"answer:{channel.channel_id}")
        loop = asyncio.get_running_loop()
        received: asyncio.Future = loop.create_future()

        def on_snapshot(data: Optional[dict]) -> None:
            if received.done() or not subscription.active:
                return
            if not data or not data.get("answer"):
                return
            try:
                received.set_result(_parse_description(data["answer"]))
            except ProtocolError as e:
                logger.warning(f"[Signaling] 잘못된 answer 무시 {channel.channel_id}: {e.detail}")

        async def deliver() -> None:
            answer = await received
            subscription._stop_listening()
            logger.info(f"[Signaling] answer 수신: {channel.channel_id}")
            channel.answer = answer
            await _invoke(on_answer, answer)

        subscription._store_unsubscribe = self.store.watch_document(channel.path, on_snapshot)
        subscription._task = asyncio.create_task(deliver())
        return subscription

    async def wait_for_answer(self, channel: ChannelHandle) -> SessionDescription:
        """answer가 기록될 때까지 기다립니다 (타임아웃 없음).

        취소되면 문서 구독도 함께 해제됩니다.
        """
        loop = asyncio.get_running_loop()
        received: asyncio.Future = loop.create_future()

        def on_answer(answer: SessionDescription) -> None:
            if not received.done():
                received.set_result(answer)

        subscription = self.watch_answer(channel, on_answer)
        try:
            return await received
        finally:
            subscription.unsubscribe()

    # ------------------------------------------------------------
    # ICE candidate
    # ------------------------------------------------------------

    async def add_candidate(
        self,
        channel: ChannelHandle,
        role: SignalingRole,
        candidate: IceCandidatePayload,
    ) -> str:
        """역할별 후보 컬렉션에 후보를 추가합니다.

        저장소 일시 장애(StoreUnavailable) 시 지수 백오프로 재시도합니다.

        Returns:
            str: 추가된 후보 문서 ID

        Raises:
            StoreUnavailable: 최대 재시도 횟수를 넘긴 경우
        """
        collection = channel.candidates_path(role)
        max_retries = self._settings.CANDIDATE_APPEND_MAX_RETRIES
        backoff = self._settings.CANDIDATE_APPEND_BACKOFF_SECONDS

        retry_count = 0
        while True:
            try:
                doc_id = await self.store.add(collection, candidate.to_wire())
                logger.debug(f"[Signaling] 후보 추가: {collection}/{doc_id}")
                return doc_id
            except StoreUnavailable as e:
                if retry_count >= max_retries:
                    logger.error(f"[Signaling] 후보 추가 최대 재시도 횟수 도달: {collection}")
                    raise
                delay = backoff * (2 ** retry_count)
                retry_count += 1
                logger.warning(
                    f"[Signaling] 후보 추가 실패, {delay:.2f}초 후 재시도 "
                    f"({retry_count}/{max_retries}): {e.detail}"
                )
                await asyncio.sleep(delay)

    def watch_candidates(
        self,
        channel: ChannelHandle,
        role: SignalingRole,
        on_added: CandidateHandler,
    ) -> Subscription:
        """상대 역할의 후보 컬렉션을 구독합니다.

        구독 전에 이미 존재하던 후보도 "added"로 전달되며, 같은 후보 문서는
        한 번만 전달됩니다. 전달 순서는 저장소에서 관찰된 추가 순서를 따릅니다.
        """
        collection = channel.candidates_path(role, remote=True)
        subscription = Subscription(f"candidates:{collection}")
        queue: asyncio.Queue = asyncio.Queue()
        delivered: Set[str] = set()

        def on_changes(changes: List[DocumentChange]) -> None:
            if not subscription.active:
                return
            for change in changes:
                if change.type != "added" or change.doc_id in delivered:
                    continue
                delivered.add(change.doc_id)
                queue.put_nowait(change)

        async def deliver() -> None:
            while True:
                change = await queue.get()
                try:
                    candidate = IceCandidatePayload.model_validate(change.data)
                except ValidationError as e:
                    logger.warning(f"[Signaling] 잘못된 후보 문서 무시 {change.doc_id}: {e}")
                    continue
                try:
                    await _invoke(on_added, candidate)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(
                        f"[Signaling] 후보 처리 중 오류 {change.doc_id}: {type(e).__name__}: {e}",
                        exc_info=True,
                    )

        subscription._store_unsubscribe = self.store.watch_collection(collection, on_changes)
        subscription._task = asyncio.create_task(deliver())
        logger.info(f"[Signaling] 후보 구독 시작: {collection}")
        return subscription

    # ------------------------------------------------------------
    # 정리
    # ------------------------------------------------------------

    async def teardown(self, channel: ChannelHandle) -> int:
        """채널의 후보 컬렉션 두 개와 채널 문서를 삭제합니다.

        하위 컬렉션을 먼저 지우고 문서를 마지막에 지웁니다. 이미 삭제된 채널에
        다시 호출해도 오류 없이 끝납니다.

        Returns:
            int: 삭제된 후보 문서 수

        Raises:
            StoreUnavailable: 삭제 도중 저장소 오류 (빈 하위 컬렉션을 가진
                채널 문서가 남을 수 있음)
        """
        deleted = 0
        try:
            for role in (SignalingRole.OFFERER, SignalingRole.ANSWERER):
                collection = channel.candidates_path(role)
                for doc_id, _ in await self.store.list(collection):
                    await self.store.delete(f"{collection}/{doc_id}")
                    deleted += 1
            await self.store.delete(channel.path)
        except StoreUnavailable:
            logger.warning(
                f"[Signaling] 채널 {channel.channel_id} 정리 중단 (후보 {deleted}개 삭제됨), "
                f"채널 문서가 남아 있을 수 있습니다."
            )
            raise

        logger.info(f"[Signaling] 채널 {channel.channel_id} 정리 완료 (후보 {deleted}개 삭제)")
        return deleted
