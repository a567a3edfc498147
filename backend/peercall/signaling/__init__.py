"""시그널링 모듈.

실시간 문서 저장소(Firestore)를 시그널링 릴레이로 사용하는 프로토콜 클라이언트를 제공합니다.

Classes:
    SignalingChannel: 채널 생성/열기, offer/answer 게시, 후보 교환, 정리
    ChannelHandle: 열린 채널 참조
    SignalingRole: offerer / answerer
    Subscription: 저장소 구독 핸들
    DocumentStore: 문서 저장소 인터페이스
    MemoryDocumentStore: 프로세스 내 저장소 구현

Config:
    get_signaling_settings: 시그널링 설정
"""

from .store import DocumentStore, DocumentChange, create_document_store
from .memory_store import MemoryDocumentStore
from .channel import (
    SignalingChannel,
    ChannelHandle,
    SignalingRole,
    Subscription,
    validate_channel_id,
)
from .config import SignalingSettings, get_signaling_settings

__all__ = [
    # Classes
    "SignalingChannel",
    "ChannelHandle",
    "SignalingRole",
    "Subscription",
    "DocumentStore",
    "DocumentChange",
    "MemoryDocumentStore",
    # Functions
    "create_document_store",
    "validate_channel_id",
    # Config
    "SignalingSettings",
    "get_signaling_settings",
]
