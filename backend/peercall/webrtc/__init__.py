"""WebRTC 모듈.

통화 세션 하나가 소유하는 피어 연결 관리 기능을 제공합니다.

Classes:
    PeerSessionController: RTCPeerConnection 래퍼 (SDP 협상, ICE 후보, 연결 상태)

Functions:
    create_peer_connection: ICE 설정이 적용된 RTCPeerConnection 생성
    extract_candidates_from_sdp: SDP의 a=candidate 라인 추출

Config:
    ice_config: ICE 서버 설정
    media_config: 미디어 캡처 설정
"""

from .peer_session import (
    PeerSessionController,
    create_peer_connection,
    extract_candidates_from_sdp,
)
from .config import (
    ice_config,
    media_config,
    ICEServerConfig,
    MediaConfig,
)

__all__ = [
    # Classes
    "PeerSessionController",
    # Functions
    "create_peer_connection",
    "extract_candidates_from_sdp",
    # Config
    "ice_config",
    "media_config",
    "ICEServerConfig",
    "MediaConfig",
]
