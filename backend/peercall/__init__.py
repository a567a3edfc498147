"""Peercall 패키지.

Firestore 문서를 시그널링 릴레이로 사용하는 1:1 WebRTC 통화 백엔드입니다.

Modules:
    media: 로컬 캡처 / 원격 트랙 관리
    signaling: 문서 저장소 기반 시그널링 프로토콜
    webrtc: 피어 연결 관리
    call: 통화 상태 머신
    shared: 공용 DTO와 예외
"""

from .call import CallStateMachine, CallSession, CallPhase, CallRole
from .media import MediaStreamRegistry, MediaConstraints, RemoteMediaSink
from .signaling import (
    SignalingChannel,
    SignalingRole,
    MemoryDocumentStore,
    create_document_store,
    get_signaling_settings,
)
from .webrtc import PeerSessionController, create_peer_connection, ice_config
from .shared import CallError

__all__ = [
    # Call
    "CallStateMachine",
    "CallSession",
    "CallPhase",
    "CallRole",
    # Media
    "MediaStreamRegistry",
    "MediaConstraints",
    "RemoteMediaSink",
    # Signaling
    "SignalingChannel",
    "SignalingRole",
    "MemoryDocumentStore",
    "create_document_store",
    "get_signaling_settings",
    # WebRTC
    "PeerSessionController",
    "create_peer_connection",
    "ice_config",
    # Errors
    "CallError",
]
