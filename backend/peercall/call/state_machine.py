"""통화 상태 머신 모듈.

미디어 캡처, 시그널링 채널, 피어 세션을 묶어 caller/callee 흐름과
통화 종료 정리를 담당하는 최상위 오케스트레이터입니다.

상태 전이:
    Idle → CapturingMedia → Offering  (create_call)
    Idle → CapturingMedia → Joining   (join_call)
    Offering | Joining → Connected    (연결 상태 "connected")
    * → HangingUp → Idle              (hang_up, "disconnected", "failed", 설정 오류)

Caller 흐름:
    1. 로컬 스트림 획득 → 피어 세션 생성 → 로컬 트랙 추가
    2. 채널 생성 → 로컬 후보 전송 시작 (offerCandidates)
    3. offer 생성/게시
    4. (백그라운드) answer 대기 → 원격 answer 적용 → answerCandidates 구독

Callee 흐름:
    1. 채널 ID 검증 → 로컬 스트림 획득 → 피어 세션 생성
    2. 채널 열기 → 로컬 후보 전송 시작 (answerCandidates)
    3. 원격 offer 적용 → answer 생성/게시 → offerCandidates 구독
"""

import asyncio
import logging
from typing import Callable, Optional

from ..media.registry import MediaConstraints, MediaStreamRegistry
from ..media.sink import RemoteMediaSink
from ..shared.dto import IceCandidatePayload
from ..shared.errors import (
    CallError,
    CallInProgress,
    ChannelNotFound,
    NegotiationError,
    ProtocolError,
    SessionClosed,
    StoreUnavailable,
)
from ..signaling.channel import SignalingChannel, validate_channel_id
from ..webrtc.peer_session import PeerSessionController, create_peer_connection
from .session import CallPhase, CallRole, CallSession

logger = logging.getLogger(__name__)

HANGUP_CONNECTION_STATES = ("disconnected", "failed")


class CallStateMachine:
    """통화 하나를 처음부터 끝까지 관리하는 상태 머신.

    동시에 하나의 통화만 진행합니다. 진행 중인 통화가 있으면 create_call/join_call은
    CallInProgress를 발생시킵니다.

    Attributes:
        signaling (SignalingChannel): 시그널링 프로토콜 클라이언트
        media (MediaStreamRegistry): 로컬/원격 스트림 관리
        session (CallSession): 현재 세션 (통화가 없으면 Idle 세션)

    Examples:
        >>> machine = CallStateMachine(SignalingChannel(store), MediaStreamRegistry())
        >>> channel_id = await machine.create_call()
        >>> ...
        >>> await machine.hang_up()
    """

    def __init__(
        self,
        signaling: SignalingChannel,
        media: MediaStreamRegistry,
        peer_factory: Callable = create_peer_connection,
        sink_factory: Optional[Callable[[], RemoteMediaSink]] = None,
    ):
        self.signaling = signaling
        self.media = media
        self._peer_factory = peer_factory
        self._sink_factory = sink_factory

        self.session = CallSession()
        self._hangup_task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def phase(self) -> CallPhase:
        return self.session.phase

    def _is_current(self, session: CallSession) -> bool:
        return session is self.session and session.is_active

    def _ensure_idle(self) -> None:
        if self.session.phase != CallPhase.IDLE:
            raise CallInProgress(f"현재 상태({self.session.phase.value})에서는 새 통화를 시작할 수 없습니다.")

    # ------------------------------------------------------------
    # 통화 시작
    # ------------------------------------------------------------

    async def create_call(self, constraints: Optional[MediaConstraints] = None) -> Optional[str]:
        """caller로 새 통화를 시작하고 상대에게 전달할 채널 ID를 반환합니다.

        answer 대기는 백그라운드에서 진행되므로 offer 게시 직후 반환됩니다.
        설정 도중 hang_up이 먼저 끝나면 만든 자원을 정리하고 None을 반환합니다.

        Raises:
            CallInProgress: 이미 통화가 진행 중인 경우
            MediaUnavailable: 로컬 미디어를 얻지 못한 경우
            StoreUnavailable: 채널 생성/offer 게시 실패
            NegotiationError: offer 생성 실패
        """
        self._ensure_idle()
        session = await self._prepare_session(CallRole.CALLER, constraints)
        if session is None:
            return None

        channel_id = None
        try:
            session.phase = CallPhase.OFFERING
            channel_id = await self.signaling.create_channel()
            self._ensure_current(session)
            session.channel = self.signaling.handle_for(channel_id)
            self._start_candidate_forwarding(session)

            offer = await session.controller.create_offer()
            await self.signaling.publish_offer(session.channel, offer)
            self._ensure_current(session)
        except Exception as e:
            if not self._is_current(session):
                await self._release_interrupted(session, channel_id)
                return None
            logger.error(f"[Call] 통화 생성 실패: {type(e).__name__}: {e}")
            await self._abort(session)
            raise

        self._spawn(session, self._await_answer(session))
        logger.info(f"[Call] 통화 생성 완료, 채널: {channel_id}")
        return channel_id

    async def join_call(self, channel_id: str, constraints: Optional[MediaConstraints] = None) -> None:
        """callee로 기존 채널에 참가합니다.

        채널을 찾지 못하면 캡처한 미디어를 유지한 채 CapturingMedia 상태로 남으므로
        다른 ID로 다시 join_call을 호출하거나 hang_up으로 정리할 수 있습니다.

        Raises:
            InvalidChannelId: ID 형식 오류 (어떤 자원도 만들지 않음)
            ChannelNotFound: 채널이 없는 경우
            CallInProgress: 이미 통화가 진행 중인 경우
            ProtocolError: 채널에 offer가 없거나 이미 answer가 있는 경우
        """
        channel_id = validate_channel_id(channel_id)

        session = self.session
        retrying = (
            session.phase == CallPhase.CAPTURING_MEDIA
            and session.role == CallRole.CALLEE
            and session.channel is None
        )
        if not retrying:
            self._ensure_idle()
            session = await self._prepare_session(CallRole.CALLEE, constraints)
            if session is None:
                return

        session.phase = CallPhase.JOINING
        try:
            handle = await self.signaling.open_channel(channel_id)
        except Exception as e:
            if not self._is_current(session):
                await self._release_interrupted(session)
                return
            if isinstance(e, ChannelNotFound):
                session.phase = CallPhase.CAPTURING_MEDIA
                logger.warning(f"[Call] 채널 {channel_id}을(를) 찾을 수 없어 참가 대기 상태로 돌아감")
                raise
            logger.error(f"[Call] 채널 열기 실패: {type(e).__name__}: {e}")
            await self._abort(session)
            raise

        try:
            self._ensure_current(session)
            if handle.offer is None:
                raise ProtocolError(f"채널 {channel_id}에 offer가 없습니다.")
            if handle.answer is not None:
                raise ProtocolError(f"채널 {channel_id}은(는) 이미 다른 참가자가 응답했습니다.")

            session.channel = handle
            self._start_candidate_forwarding(session)

            await session.controller.set_remote_description(handle.offer)
            answer = await session.controller.create_answer()
            await self.signaling.publish_answer(handle, answer)
            self._ensure_current(session)

            subscription = self.signaling.watch_candidates(
                handle,
                session.role.signaling_role,
                lambda candidate: self._on_remote_candidate(session, candidate),
            )
            session.subscriptions.append(subscription)
        except Exception as e:
            if not self._is_current(session):
                await self._release_interrupted(session)
                return
            logger.error(f"[Call] 통화 참가 실패: {type(e).__name__}: {e}")
            await self._abort(session)
            raise

        logger.info(f"[Call] 채널 {channel_id} 참가 완료, 연결 대기 중")

    async def _prepare_session(
        self, role: CallRole, constraints: Optional[MediaConstraints]
    ) -> Optional[CallSession]:
        """Idle → CapturingMedia: 로컬 스트림과 피어 세션을 준비합니다.

        캡처를 기다리는 사이 hang_up으로 세션이 끝났으면 None을 반환합니다.
        """
        session = CallSession(role=role, phase=CallPhase.CAPTURING_MEDIA)
        session.outbound_candidates = asyncio.Queue()
        self.session = session
        self._idle.clear()
        logger.info(f"[Call] 세션 {session.session_id[:8]} 시작 ({role.value})")

        try:
            session.local_stream = await self.media.acquire_local(constraints)
            self._ensure_current(session)

            controller = PeerSessionController(self._peer_factory(), label=session.session_id[:8])
            session.controller = controller
            session.remote_stream = self.media.remote_for(session.session_id)
            if self._sink_factory is not None:
                session.sink = self._sink_factory()

            session.unsubscribers.extend([
                controller.on_remote_track(lambda track: self._on_remote_track(session, track)),
                controller.on_local_candidate(lambda candidate: self._on_local_candidate(session, candidate)),
                controller.on_connection_state_change(lambda state: self._on_connection_state(session, state)),
            ])
            controller.attach_local_tracks(session.local_stream)
        except Exception as e:
            if not self._is_current(session):
                await self._release_interrupted(session)
                return None
            logger.error(f"[Call] 세션 준비 실패: {type(e).__name__}: {e}")
            await self._abort(session)
            raise

        return session

    def _ensure_current(self, session: CallSession) -> None:
        if not self._is_current(session):
            raise SessionClosed("통화 설정 중 세션이 종료되었습니다.")

    async def _release_interrupted(self, session: CallSession, channel_id: Optional[str] = None) -> None:
        """설정 중 hang_up이 먼저 끝난 세션에서 그 이후에 얻은 자원을 해제합니다.

        정리 태스크는 당시 세션에 붙어 있던 자원만 보므로, 대기 중이던 캡처나
        채널 생성이 나중에 끝나면 여기서 직접 해제해야 합니다. 모든 해제는 중복 호출에 안전합니다.
        """
        logger.info(f"[Call] 세션 {session.session_id[:8]} 설정 중 종료됨, 늦게 얻은 자원 정리")

        if session.controller is not None:
            await session.controller.close()
        self.media.release_local(session.local_stream)
        self.media.release_remote(session.session_id)

        if channel_id is not None:
            try:
                await self.signaling.teardown(self.signaling.handle_for(channel_id))
            except CallError as e:
                logger.error(f"[Call] 채널 {channel_id} 정리 실패: {e.detail}")

    # ------------------------------------------------------------
    # 백그라운드 작업
    # ------------------------------------------------------------

    def _spawn(self, session: CallSession, coro, fatal: bool = True) -> asyncio.Task:
        """세션 소유 백그라운드 태스크를 시작합니다.

        fatal 태스크가 예외로 끝나면 통화를 종료합니다.
        """
        task = asyncio.create_task(coro)
        session.tasks.add(task)

        def on_done(done: asyncio.Task) -> None:
            session.tasks.discard(done)
            if done.cancelled():
                return
            error = done.exception()
            if error is None:
                return
            logger.error(f"[Call] 백그라운드 작업 오류: {type(error).__name__}: {error}")
            if fatal and self._is_current(session):
                self._schedule_hang_up()

        task.add_done_callback(on_done)
        return task

    async def _await_answer(self, session: CallSession) -> None:
        """Offering: answer 수신 시 한 번만 적용하고 상대 후보 구독을 시작합니다."""
        answer = await self.signaling.wait_for_answer(session.channel)
        if not self._is_current(session):
            return

        try:
            await session.controller.set_remote_description(answer)
        except SessionClosed:
            logger.debug(f"[Call] 세션 {session.session_id[:8]} 종료 후 answer 도착, 무시")
            return
        except NegotiationError as e:
            logger.error(f"[Call] 원격 answer 적용 실패, 통화 종료: {e.detail}")
            self._schedule_hang_up()
            return

        subscription = self.signaling.watch_candidates(
            session.channel,
            session.role.signaling_role,
            lambda candidate: self._on_remote_candidate(session, candidate),
        )
        session.subscriptions.append(subscription)
        logger.info(f"[Call] answer 적용 완료, 상대 후보 구독 시작: {session.channel_id}")

    def _start_candidate_forwarding(self, session: CallSession) -> None:
        if session.forwarding_started:
            return
        session.forwarding_started = True
        self._spawn(session, self._forward_local_candidates(session))

    async def _forward_local_candidates(self, session: CallSession) -> None:
        """로컬 후보를 발견 순서대로 자기 역할의 후보 컬렉션에 기록합니다."""
        role = session.role.signaling_role
        while True:
            candidate = await session.outbound_candidates.get()
            if not self._is_current(session):
                return
            try:
                await self.signaling.add_candidate(session.channel, role, candidate)
            except StoreUnavailable as e:
                logger.error(f"[Call] 로컬 후보 전송 실패 (재시도 소진): {e.detail}")

    # ------------------------------------------------------------
    # 피어 세션 이벤트
    # ------------------------------------------------------------

    def _on_local_candidate(self, session: CallSession, candidate: IceCandidatePayload) -> None:
        if not self._is_current(session):
            return
        session.outbound_candidates.put_nowait(candidate)

    async def _on_remote_candidate(self, session: CallSession, candidate: IceCandidatePayload) -> None:
        if not self._is_current(session):
            return
        try:
            await session.controller.add_remote_candidate(candidate)
        except SessionClosed:
            logger.debug(f"[Call] 세션 {session.session_id[:8]} 종료 후 후보 도착, 무시")

    def _on_remote_track(self, session: CallSession, track) -> None:
        if not self._is_current(session):
            return
        if session.remote_stream.add_track(track) and session.sink is not None:
            session.sink.add_track(track)

    def _on_connection_state(self, session: CallSession, state: str) -> None:
        if not self._is_current(session):
            return

        if state == "connected" and session.phase in (CallPhase.OFFERING, CallPhase.JOINING):
            session.phase = CallPhase.CONNECTED
            logger.info(f"[Call] 통화 연결됨: {session.channel_id}")
            if session.sink is not None:
                self._spawn(session, session.sink.start(), fatal=False)
        elif state in HANGUP_CONNECTION_STATES:
            logger.warning(f"[Call] 연결 상태 {state}, 통화 종료")
            self._schedule_hang_up()

    # ------------------------------------------------------------
    # 종료
    # ------------------------------------------------------------

    def _begin_hang_up(self) -> Optional[asyncio.Task]:
        """HangingUp으로 전이하고 정리 태스크를 시작합니다. 이미 진행 중이면 그 태스크를 반환합니다."""
        session = self.session
        if session.phase == CallPhase.IDLE:
            return None
        if session.phase == CallPhase.HANGING_UP:
            return self._hangup_task
        session.phase = CallPhase.HANGING_UP
        self._hangup_task = asyncio.create_task(self._teardown(session))
        return self._hangup_task

    def _schedule_hang_up(self) -> None:
        self._begin_hang_up()

    async def _abort(self, session: CallSession) -> None:
        if session is self.session and session.phase != CallPhase.IDLE:
            await self.hang_up()

    async def hang_up(self) -> None:
        """통화를 종료하고 모든 자원을 해제합니다.

        어느 상태에서든 호출할 수 있으며, 동시에 여러 번 호출되어도 정리는 한 번만
        수행됩니다. 반환 시점에는 Idle 상태입니다.
        """
        task = self._begin_hang_up()
        if task is None:
            return
        await asyncio.shield(task)

    async def _teardown(self, session: CallSession) -> None:
        label = session.session_id[:8]
        logger.info(f"[Call] 세션 {label} 종료 시작 (채널: {session.channel_id})")

        try:
            # 1. 구독과 백그라운드 작업 중단
            for subscription in session.subscriptions:
                subscription.unsubscribe()
            for unsubscribe in session.unsubscribers:
                unsubscribe()
            tasks = [task for task in session.tasks if not task.done()]
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

            # 2. 피어 연결 종료
            if session.controller is not None:
                await session.controller.close()

            # 3. 미디어 해제
            if session.sink is not None:
                await session.sink.stop()
            self.media.release_local(session.local_stream)
            self.media.release_remote(session.session_id)

            # 4. 시그널링 데이터 삭제
            if session.channel is not None:
                try:
                    await self.signaling.teardown(session.channel)
                except CallError as e:
                    logger.error(f"[Call] 채널 {session.channel_id} 정리 실패: {type(e).__name__}: {e.detail}")
        finally:
            session.phase = CallPhase.IDLE
            self.session = CallSession()
            self._idle.set()
            logger.info(f"[Call] 세션 {label} 종료 완료")

    async def wait_until_idle(self) -> None:
        """진행 중인 종료 작업이 끝나 Idle이 될 때까지 기다립니다."""
        await self._idle.wait()

    # ------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------

    def snapshot(self) -> dict:
        """현재 통화 상태 요약을 반환합니다."""
        session = self.session
        controller = session.controller
        return {
            "session_id": session.session_id,
            "phase": session.phase.value,
            "role": session.role.value,
            "channel_id": session.channel_id,
            "connection_state": controller.connection_state if controller is not None else "new",
            "local_tracks": session.local_stream.kinds() if session.local_stream is not None else [],
            "remote_tracks": (
                [track.kind for track in session.remote_stream.tracks]
                if session.remote_stream is not None else []
            ),
        }
