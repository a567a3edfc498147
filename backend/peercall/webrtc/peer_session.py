"""WebRTC 피어 세션 관리 모듈.

이 모듈은 통화 세션 하나가 소유하는 단일 RTCPeerConnection을 감싸서
SDP offer/answer 생성, 원격 description 적용, ICE candidate 교환,
연결 상태 추적을 담당합니다.

주요 기능:
    - 로컬 트랙 추가 (offer/answer 생성 전)
    - offer/answer 생성과 local description 설정을 한 단계로 처리
    - 원격 description 1회 적용 보장 (중복 answer 방지)
    - 원격 ICE candidate 버퍼링 (remote description 설정 전 도착분)
    - 로컬 ICE candidate 이벤트 발생
    - 연결 상태 변경 이벤트 전달

Architecture:
    - 모듈 전역 RTCPeerConnection을 두지 않고, CallSession마다
      create_peer_connection()으로 새 연결을 만들어 컨트롤러에 주입
    - 이벤트 핸들러는 on_*() 등록 시 해제 함수를 반환하며,
      close() 시 모든 핸들러와 aiortc 리스너를 먼저 해제

Note:
    aiortc는 trickle ICE 이벤트를 발생시키지 않고 setLocalDescription()
    단계에서 후보 수집을 끝낸 뒤 SDP에 포함시킵니다. 따라서 local description
    설정 직후 SDP의 a=candidate 라인을 추출해 로컬 후보 이벤트로 내보냅니다.

See Also:
    aiortc Documentation: https://aiortc.readthedocs.io/
"""
import asyncio
import logging
from typing import Callable, List, Optional, Set

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import candidate_from_sdp

from ..shared.dto import IceCandidatePayload, SessionDescription
from ..shared.errors import NegotiationError, SessionClosed
from .config import ice_config

logger = logging.getLogger(__name__)

TrackHandler = Callable[[object], None]
CandidateHandler = Callable[[IceCandidatePayload], None]
StateHandler = Callable[[str], None]


def create_peer_connection() -> RTCPeerConnection:
    """ICE 서버 설정을 적용한 새 RTCPeerConnection을 생성합니다.

    Returns:
        RTCPeerConnection: STUN(및 설정 시 TURN) 서버가 적용된 연결 객체

    Note:
        - aiortc RTCConfiguration은 iceCandidatePoolSize를 지원하지 않으므로
          풀 크기 힌트는 로그로만 남김
    """
    ice_servers = []

    if ice_config.STUN_SERVER_URL:
        ice_servers.append(RTCIceServer(urls=[ice_config.STUN_SERVER_URL]))
        logger.info(f"[WebRTC] 커스텀 STUN 서버 설정: {ice_config.STUN_SERVER_URL}")

    ice_servers.append(RTCIceServer(urls=list(ice_config.DEFAULT_STUN_SERVERS)))

    if ice_config.has_turn_server:
        ice_servers.append(RTCIceServer(
            urls=[ice_config.TURN_SERVER_URL],
            username=ice_config.TURN_USERNAME,
            credential=ice_config.TURN_CREDENTIAL
        ))
        logger.info(f"[WebRTC] TURN 서버 설정: {ice_config.TURN_SERVER_URL}")

    pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=ice_servers))
    logger.info(
        f"[WebRTC] RTCPeerConnection 생성 완료 "
        f"(ICE 서버 {len(ice_servers)}개, pool 힌트={ice_config.ICE_CANDIDATE_POOL_SIZE})"
    )
    return pc


def extract_candidates_from_sdp(sdp: str) -> List[IceCandidatePayload]:
    """SDP 본문에서 a=candidate 라인을 추출합니다.

    Args:
        sdp (str): local description SDP

    Returns:
        List[IceCandidatePayload]: m-line 순서대로 정렬된 후보 목록.
            sdpMid는 해당 미디어 섹션의 a=mid 값, sdpMLineIndex는 m-line 순번
    """
    sections: List[dict] = []
    for raw_line in sdp.splitlines():
        line = raw_line.strip()
        if line.startswith("m="):
            sections.append({"mid": None, "candidates": []})
        elif not sections:
            continue
        elif line.startswith("a=mid:"):
            sections[-1]["mid"] = line[len("a=mid:"):]
        elif line.startswith("a=candidate:"):
            sections[-1]["candidates"].append(line[len("a="):])

    candidates = []
    for index, section in enumerate(sections):
        for candidate in section["candidates"]:
            candidates.append(IceCandidatePayload(
                candidate=candidate,
                sdpMid=section["mid"],
                sdpMLineIndex=index,
            ))
    return candidates


class PeerSessionController:
    """통화 세션 하나의 RTCPeerConnection을 관리하는 클래스.

    Attributes:
        label (str): 로그 식별용 세션 라벨
        connection_state (str): 마지막으로 관찰된 연결 상태

    Connection Lifecycle:
        new → connecting → connected → disconnected | failed | closed

    Examples:
        >>> controller = PeerSessionController(create_peer_connection(), label="abcd1234")
        >>> controller.attach_local_tracks(local_stream)
        >>> offer = await controller.create_offer()
        >>> await controller.set_remote_description(answer)
        >>> await controller.close()
    """

    def __init__(self, pc, label: str = ""):
        self._pc = pc
        self.label = label
        self._closed = False

        self._local_description: Optional[SessionDescription] = None
        self._remote_description: Optional[SessionDescription] = None

        # remote description 적용 전 도착한 원격 후보 (FIFO)
        self._pending_candidates: List[IceCandidatePayload] = []
        self._flushing = False
        self._seen_candidates: Set[tuple] = set()

        self._track_handlers: List[TrackHandler] = []
        self._candidate_handlers: List[CandidateHandler] = []
        self._state_handlers: List[StateHandler] = []

        self.connection_state: str = getattr(pc, "connectionState", "new")

        self._pc.on("track", self._on_track)
        self._pc.on("connectionstatechange", self._on_connection_state_change)

    # ------------------------------------------------------------
    # 상태 조회
    # ------------------------------------------------------------

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def local_description(self) -> Optional[SessionDescription]:
        return self._local_description

    @property
    def remote_description(self) -> Optional[SessionDescription]:
        return self._remote_description

    @property
    def pending_candidate_count(self) -> int:
        return len(self._pending_candidates)

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosed(f"피어 세션 {self.label}은(는) 이미 종료되었습니다.")

    # ------------------------------------------------------------
    # 이벤트 등록
    # ------------------------------------------------------------

    @staticmethod
    def _register(handlers: list, callback) -> Callable[[], None]:
        handlers.append(callback)

        def unsubscribe() -> None:
            if callback in handlers:
                handlers.remove(callback)

        return unsubscribe

    def on_remote_track(self, callback: TrackHandler) -> Callable[[], None]:
        """원격 트랙 수신 핸들러를 등록합니다."""
        self._ensure_open()
        return self._register(self._track_handlers, callback)

    def on_local_candidate(self, callback: CandidateHandler) -> Callable[[], None]:
        """로컬 ICE candidate 발견 핸들러를 등록합니다."""
        self._ensure_open()
        return self._register(self._candidate_handlers, callback)

    def on_connection_state_change(self, callback: StateHandler) -> Callable[[], None]:
        """연결 상태 변경 핸들러를 등록합니다."""
        self._ensure_open()
        return self._register(self._state_handlers, callback)

    def _on_track(self, track) -> None:
        if self._closed:
            return
        logger.info(f"[WebRTC] 세션 {self.label} {track.kind} 트랙 수신")
        for handler in list(self._track_handlers):
            handler(track)

    def _on_connection_state_change(self) -> None:
        if self._closed:
            return
        state = self._pc.connectionState
        if state == self.connection_state:
            return
        logger.info(f"[WebRTC] 세션 {self.label} 연결 상태: {self.connection_state} -> {state}")
        self.connection_state = state
        for handler in list(self._state_handlers):
            handler(state)

    # ------------------------------------------------------------
    # 로컬 미디어
    # ------------------------------------------------------------

    def attach_local_tracks(self, stream) -> int:
        """로컬 스트림의 모든 트랙을 연결에 추가합니다.

        Args:
            stream: LocalStream (tracks 속성 보유)

        Returns:
            int: 추가된 트랙 수

        Raises:
            NegotiationError: 이미 local description이 설정된 경우
                (이후 추가된 트랙은 SDP에 반영되지 않음)
        """
        self._ensure_open()
        if self._local_description is not None:
            raise NegotiationError("local description 설정 이후에는 트랙을 추가할 수 없습니다.")

        count = 0
        for track in stream.tracks:
            self._pc.addTrack(track)
            count += 1
        logger.info(f"[WebRTC] 세션 {self.label} 로컬 트랙 {count}개 추가")
        return count

    # ------------------------------------------------------------
    # SDP 협상
    # ------------------------------------------------------------

    async def create_offer(self) -> SessionDescription:
        """offer를 생성하고 local description으로 설정합니다.

        Returns:
            SessionDescription: ICE 후보가 포함된 최종 local description

        Raises:
            NegotiationError: 이미 협상이 시작된 경우
            SessionClosed: close() 이후 호출된 경우
        """
        self._ensure_open()
        if self._local_description is not None or self._remote_description is not None:
            raise NegotiationError("offer는 협상 시작 전에 한 번만 생성할 수 있습니다.")

        try:
            offer = await self._pc.createOffer()
            await self._pc.setLocalDescription(offer)
        except (InvalidStateError, ValueError) as e:
            raise NegotiationError(f"offer 생성 실패: {e}") from e

        return self._commit_local_description()

    async def create_answer(self) -> SessionDescription:
        """원격 offer에 대한 answer를 생성하고 local description으로 설정합니다.

        Raises:
            NegotiationError: 원격 offer가 적용되지 않았거나 이미 answer를 만든 경우
            SessionClosed: close() 이후 호출된 경우
        """
        self._ensure_open()
        if self._remote_description is None or self._remote_description.type != "offer":
            raise NegotiationError("원격 offer 적용 전에는 answer를 생성할 수 없습니다.")
        if self._local_description is not None:
            raise NegotiationError("answer가 이미 생성되었습니다.")

        try:
            answer = await self._pc.createAnswer()
            await self._pc.setLocalDescription(answer)
        except (InvalidStateError, ValueError) as e:
            raise NegotiationError(f"answer 생성 실패: {e}") from e

        return self._commit_local_description()

    def _commit_local_description(self) -> SessionDescription:
        local = self._pc.localDescription
        description = SessionDescription(type=local.type, sdp=local.sdp)
        self._local_description = description

        candidates = extract_candidates_from_sdp(description.sdp)
        logger.info(
            f"[WebRTC] 세션 {self.label} local {description.type} 설정 완료, "
            f"gathering={getattr(self._pc, 'iceGatheringState', '?')}, 후보수={len(candidates)}"
        )
        for candidate in candidates:
            for handler in list(self._candidate_handlers):
                handler(candidate)
        return description

    async def set_remote_description(self, description: SessionDescription) -> None:
        """원격 offer/answer를 적용합니다.

        원격 description은 세션당 한 번만 적용됩니다. 두 번째 호출은 기존 상태를
        건드리지 않고 NegotiationError를 발생시킵니다.

        Raises:
            NegotiationError: 이미 적용된 경우, 또는 로컬 description과 종류가 충돌하는 경우
            SessionClosed: close() 이후 호출된 경우
        """
        self._ensure_open()
        if self._remote_description is not None:
            raise NegotiationError(
                f"원격 {self._remote_description.type}이(가) 이미 적용되어 있습니다 "
                f"(수신: {description.type})."
            )

        expected = "answer" if self._local_description is not None else "offer"
        if description.type != expected:
            raise NegotiationError(f"현재 단계에서는 원격 {expected}만 적용할 수 있습니다 (수신: {description.type}).")

        try:
            await self._pc.setRemoteDescription(
                RTCSessionDescription(sdp=description.sdp, type=description.type)
            )
        except (InvalidStateError, ValueError) as e:
            raise NegotiationError(f"원격 {description.type} 적용 실패: {e}") from e

        self._remote_description = description
        logger.info(f"[WebRTC] 세션 {self.label} 원격 {description.type} 적용 완료")

        await self._flush_pending_candidates()

    # ------------------------------------------------------------
    # ICE candidate
    # ------------------------------------------------------------

    async def add_remote_candidate(self, candidate: IceCandidatePayload) -> bool:
        """원격 ICE candidate를 연결에 추가합니다.

        remote description이 아직 없으면 내부 버퍼에 보관했다가 적용 직후
        도착 순서대로 추가합니다. 같은 후보는 한 번만 추가됩니다.

        Returns:
            bool: 새 후보로 수락되었으면 True (중복/종료 마커면 False)
        """
        self._ensure_open()

        if candidate.is_end_of_candidates:
            logger.debug(f"[WebRTC] 세션 {self.label} end-of-candidates 수신")
            return False

        if candidate.key in self._seen_candidates:
            logger.debug(f"[WebRTC] 세션 {self.label} 중복 후보 무시: {candidate.candidate[:40]}")
            return False
        self._seen_candidates.add(candidate.key)

        if self._remote_description is None or self._flushing or self._pending_candidates:
            self._pending_candidates.append(candidate)
            logger.debug(
                f"[WebRTC] 세션 {self.label} 후보 버퍼링 (대기 {len(self._pending_candidates)}개)"
            )
            if self._remote_description is not None and not self._flushing:
                await self._flush_pending_candidates()
            return True

        await self._apply_candidate(candidate)
        return True

    async def _flush_pending_candidates(self) -> None:
        if self._flushing:
            return
        self._flushing = True
        try:
            flushed = 0
            while self._pending_candidates and not self._closed:
                candidate = self._pending_candidates.pop(0)
                await self._apply_candidate(candidate)
                flushed += 1
            if flushed:
                logger.info(f"[WebRTC] 세션 {self.label} 버퍼링된 후보 {flushed}개 적용")
        finally:
            self._flushing = False

    async def _apply_candidate(self, candidate: IceCandidatePayload) -> None:
        sdp_line = candidate.candidate.strip()
        if sdp_line.startswith("a="):
            sdp_line = sdp_line[2:]
        if sdp_line.startswith("candidate:"):
            sdp_line = sdp_line[len("candidate:"):]

        try:
            ice_candidate = candidate_from_sdp(sdp_line)
            ice_candidate.sdpMid = candidate.sdpMid
            ice_candidate.sdpMLineIndex = candidate.sdpMLineIndex
            await self._pc.addIceCandidate(ice_candidate)
        except (AssertionError, ValueError, IndexError, InvalidStateError) as e:
            logger.warning(f"[WebRTC] 세션 {self.label} 후보 적용 실패: {type(e).__name__}: {e}")
            return

        logger.debug(f"[WebRTC] 세션 {self.label} 원격 후보 적용: {sdp_line[:40]}")

    # ------------------------------------------------------------
    # 종료
    # ------------------------------------------------------------

    async def close(self) -> None:
        """피어 연결을 종료하고 모든 핸들러를 해제합니다.

        Note:
            - 여러 번 호출해도 안전함
            - aiortc 리스너를 먼저 해제하므로 종료 중 발생한 "closed" 상태
              이벤트는 등록된 핸들러에 전달되지 않음
        """
        if self._closed:
            return
        self._closed = True

        self._track_handlers.clear()
        self._candidate_handlers.clear()
        self._state_handlers.clear()
        self._pending_candidates.clear()

        self._pc.remove_listener("track", self._on_track)
        self._pc.remove_listener("connectionstatechange", self._on_connection_state_change)

        try:
            await self._pc.close()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[WebRTC] 세션 {self.label} 연결 종료 중 오류: {type(e).__name__}: {e}")

        self.connection_state = "closed"
        logger.info(f"[WebRTC] 세션 {self.label} 연결 종료")
