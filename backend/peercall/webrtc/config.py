"""WebRTC 모듈 설정.

STUN/TURN 서버, ICE 후보 풀 크기, 미디어 캡처 장치 등 환경변수 기반 설정.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional

# 환경변수 로드
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _parse_bool(value: Optional[str], default: bool = True) -> bool:
    """문자열을 bool로 변환."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


# ============================================================
# ICE Server 설정
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """ICE 서버 설정."""

    # TURN 서버
    TURN_SERVER_URL: Optional[str] = os.getenv("TURN_SERVER_URL")
    TURN_USERNAME: Optional[str] = os.getenv("TURN_USERNAME")
    TURN_CREDENTIAL: Optional[str] = os.getenv("TURN_CREDENTIAL")

    # STUN 서버
    STUN_SERVER_URL: Optional[str] = os.getenv("STUN_SERVER_URL")

    # 기본 공개 STUN 서버 (fallback)
    DEFAULT_STUN_SERVERS: tuple = (
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
    )

    # 사전 수집할 ICE 후보 풀 크기 (힌트)
    ICE_CANDIDATE_POOL_SIZE: int = int(os.getenv("ICE_CANDIDATE_POOL_SIZE", "10"))

    @property
    def has_turn_server(self) -> bool:
        """TURN 서버 설정 완료 여부."""
        return all([self.TURN_SERVER_URL, self.TURN_USERNAME, self.TURN_CREDENTIAL])

    def as_dicts(self) -> List[dict]:
        """브라우저 RTCPeerConnection에 그대로 넘길 수 있는 iceServers 목록."""
        servers: List[dict] = []
        if self.STUN_SERVER_URL:
            servers.append({"urls": [self.STUN_SERVER_URL]})
        servers.append({"urls": list(self.DEFAULT_STUN_SERVERS)})
        if self.has_turn_server:
            servers.append({
                "urls": [self.TURN_SERVER_URL],
                "username": self.TURN_USERNAME,
                "credential": self.TURN_CREDENTIAL,
            })
        return servers


# ============================================================
# 미디어 캡처 설정
# ============================================================

@dataclass(frozen=True)
class MediaConfig:
    """로컬 미디어 캡처 및 원격 미디어 처리 설정."""

    # 비디오 캡처 장치 (예: Linux v4l2 "/dev/video0", Windows dshow "video=HD Webcam")
    VIDEO_DEVICE: str = os.getenv("VIDEO_DEVICE", "/dev/video0")
    VIDEO_FORMAT: Optional[str] = os.getenv("VIDEO_FORMAT", "v4l2")
    VIDEO_SIZE: str = os.getenv("VIDEO_SIZE", "640x480")
    VIDEO_FRAMERATE: str = os.getenv("VIDEO_FRAMERATE", "30")

    # 오디오 캡처 장치 (예: pulse "default", alsa "hw:0")
    AUDIO_DEVICE: str = os.getenv("AUDIO_DEVICE", "default")
    AUDIO_FORMAT: Optional[str] = os.getenv("AUDIO_FORMAT", "pulse")

    # 기본 캡처 제약 조건
    CAPTURE_AUDIO: bool = field(
        default_factory=lambda: _parse_bool(os.getenv("CAPTURE_AUDIO"), default=True)
    )
    CAPTURE_VIDEO: bool = field(
        default_factory=lambda: _parse_bool(os.getenv("CAPTURE_VIDEO"), default=True)
    )

    # 원격 미디어 녹화 경로 (없으면 MediaBlackhole로 소비만 함)
    REMOTE_RECORD_PATH: Optional[str] = os.getenv("REMOTE_RECORD_PATH")


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_config = ICEServerConfig()
media_config = MediaConfig()


# ============================================================
# 설정 로드 확인 로그
# ============================================================

logger.info(f"[WebRTC Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(f"[WebRTC Config] TURN 서버 설정 완료: {ice_config.has_turn_server}")
if ice_config.STUN_SERVER_URL:
    logger.info(f"[WebRTC Config] STUN URL: {ice_config.STUN_SERVER_URL}")
else:
    logger.info(f"[WebRTC Config] STUN URL: 기본 Google STUN 사용")
logger.info(
    f"[WebRTC Config] 캡처 장치: video={media_config.VIDEO_DEVICE} ({media_config.VIDEO_FORMAT}), "
    f"audio={media_config.AUDIO_DEVICE} ({media_config.AUDIO_FORMAT})"
)
