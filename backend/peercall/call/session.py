"""통화 세션 상태 모델."""

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Set

from ..signaling.channel import ChannelHandle, SignalingRole, Subscription


class CallPhase(str, Enum):
    """통화 진행 단계.

    Idle → CapturingMedia → {Offering | Joining} → Connected → HangingUp → Idle
    """

    IDLE = "idle"
    CAPTURING_MEDIA = "capturing_media"
    OFFERING = "offering"
    JOINING = "joining"
    CONNECTED = "connected"
    HANGING_UP = "hanging_up"


class CallRole(str, Enum):
    NONE = "none"
    CALLER = "caller"
    CALLEE = "callee"

    @property
    def signaling_role(self) -> SignalingRole:
        if self is CallRole.CALLER:
            return SignalingRole.OFFERER
        if self is CallRole.CALLEE:
            return SignalingRole.ANSWERER
        raise ValueError("역할이 정해지지 않은 세션입니다.")


@dataclass
class CallSession:
    """CallStateMachine이 소유하는 메모리 내 통화 세션.

    Attributes:
        session_id (str): 세션 식별자 (원격 스트림 키, 로그 라벨)
        role (CallRole): caller / callee / none
        phase (CallPhase): 현재 단계
        channel (Optional[ChannelHandle]): 생성했거나 참가한 채널
        local_stream: 캡처된 로컬 스트림
        remote_stream: 원격 트랙 누적 스트림
        controller: 이 세션 전용 PeerSessionController
        sink: 원격 미디어 소비자 (선택)
    """

    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    role: CallRole = CallRole.NONE
    phase: CallPhase = CallPhase.IDLE
    channel: Optional[ChannelHandle] = None
    local_stream: Optional[object] = None
    remote_stream: Optional[object] = None
    controller: Optional[object] = None
    sink: Optional[object] = None

    # 해제 대상
    subscriptions: List[Subscription] = field(default_factory=list)
    unsubscribers: List[Callable[[], None]] = field(default_factory=list)
    tasks: Set[asyncio.Task] = field(default_factory=set)

    # 채널 확정 전 발견된 로컬 후보까지 담는 송신 큐
    outbound_candidates: Optional[asyncio.Queue] = None
    forwarding_started: bool = False

    @property
    def channel_id(self) -> Optional[str]:
        return self.channel.channel_id if self.channel else None

    @property
    def is_active(self) -> bool:
        return self.phase not in (CallPhase.IDLE, CallPhase.HANGING_UP)
