"""미디어 모듈.

로컬 장치 캡처와 원격 트랙 누적/소비를 담당합니다.

Classes:
    MediaStreamRegistry: 로컬/원격 스트림 생명주기 관리
    MediaConstraints: 캡처 조건
    LocalStream: 로컬 트랙 묶음
    RemoteStream: 원격 트랙 누적 스트림
    PlayerMediaCapture: aiortc MediaPlayer 기반 캡처
    RemoteMediaSink: 원격 트랙 소비 (녹화 또는 버림)
"""

from .registry import (
    MediaStreamRegistry,
    MediaConstraints,
    MediaCapture,
    LocalStream,
    RemoteStream,
    PlayerMediaCapture,
)
from .sink import RemoteMediaSink

__all__ = [
    "MediaStreamRegistry",
    "MediaConstraints",
    "MediaCapture",
    "LocalStream",
    "RemoteStream",
    "PlayerMediaCapture",
    "RemoteMediaSink",
]
