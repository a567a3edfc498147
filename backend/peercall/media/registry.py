"""로컬/원격 미디어 스트림 관리 모듈.

장치 캡처로 얻은 로컬 스트림과, 트랜스포트가 전달하는 원격 트랙을 모으는
원격 스트림의 생명주기를 관리합니다.

Classes:
    MediaConstraints: 캡처 요청 조건 ({audio, video})
    LocalStream: 캡처된 로컬 트랙 묶음
    RemoteStream: 수신 트랙 누적 스트림
    PlayerMediaCapture: aiortc MediaPlayer 기반 장치 캡처
    MediaStreamRegistry: 스트림 획득/해제
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from aiortc.contrib.media import MediaPlayer

from ..shared.errors import MediaUnavailable
from ..webrtc.config import media_config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MediaConstraints:
    """getUserMedia 제약 조건."""

    audio: bool = True
    video: bool = True

    @classmethod
    def from_config(cls) -> "MediaConstraints":
        return cls(audio=media_config.CAPTURE_AUDIO, video=media_config.CAPTURE_VIDEO)


@dataclass
class LocalStream:
    """캡처된 로컬 미디어 트랙 묶음. 통화 시작 시 한 번 만들어지고 종료 시 해제됩니다."""

    tracks: List = field(default_factory=list)
    released: bool = False

    def kinds(self) -> List[str]:
        return [track.kind for track in self.tracks]


@dataclass
class RemoteStream:
    """원격 트랙 누적 스트림. 트랙은 도착 순서대로 추가되며 개별 제거되지 않습니다."""

    session_id: str
    tracks: List = field(default_factory=list)
    released: bool = False

    def add_track(self, track) -> bool:
        if self.released or track in self.tracks:
            return False
        self.tracks.append(track)
        logger.info(f"[Media] 세션 {self.session_id[:8]} 원격 {track.kind} 트랙 추가 (총 {len(self.tracks)}개)")
        return True


class MediaCapture(Protocol):
    """장치 캡처 기능."""

    async def open(self, constraints: MediaConstraints) -> LocalStream:
        ...


class PlayerMediaCapture:
    """aiortc MediaPlayer로 카메라/마이크를 여는 캡처 구현.

    Note:
        - 비디오/오디오 장치를 각각 별도의 MediaPlayer로 엶
        - MediaPlayer 생성은 장치를 동기적으로 열기 때문에 스레드에서 실행
    """

    def __init__(self, config=media_config):
        self._config = config

    def _open_video(self) -> MediaPlayer:
        return MediaPlayer(
            self._config.VIDEO_DEVICE,
            format=self._config.VIDEO_FORMAT,
            options={
                "video_size": self._config.VIDEO_SIZE,
                "framerate": self._config.VIDEO_FRAMERATE,
            },
        )

    def _open_audio(self) -> MediaPlayer:
        return MediaPlayer(self._config.AUDIO_DEVICE, format=self._config.AUDIO_FORMAT)

    async def open(self, constraints: MediaConstraints) -> LocalStream:
        if not (constraints.audio or constraints.video):
            raise MediaUnavailable("오디오/비디오 중 하나 이상을 요청해야 합니다.")

        stream = LocalStream()
        try:
            if constraints.video:
                player = await asyncio.to_thread(self._open_video)
                if player.video is None:
                    raise MediaUnavailable(f"비디오 장치에서 트랙을 찾을 수 없습니다: {self._config.VIDEO_DEVICE}")
                stream.tracks.append(player.video)

            if constraints.audio:
                player = await asyncio.to_thread(self._open_audio)
                if player.audio is None:
                    raise MediaUnavailable(f"오디오 장치에서 트랙을 찾을 수 없습니다: {self._config.AUDIO_DEVICE}")
                stream.tracks.append(player.audio)
        except MediaUnavailable:
            _stop_tracks(stream.tracks)
            raise
        except Exception as e:
            _stop_tracks(stream.tracks)
            raise MediaUnavailable(f"미디어 장치 열기 실패: {type(e).__name__}: {e}") from e

        return stream


def _stop_tracks(tracks: List) -> None:
    for track in tracks:
        try:
            track.stop()
        except Exception as e:
            logger.warning(f"[Media] 트랙 정지 중 오류: {type(e).__name__}: {e}")


class MediaStreamRegistry:
    """로컬/원격 스트림 핸들과 생명주기를 관리하는 클래스.

    Attributes:
        capture (MediaCapture): 장치 캡처 구현

    Examples:
        >>> registry = MediaStreamRegistry()
        >>> local = await registry.acquire_local(MediaConstraints(audio=True, video=False))
        >>> remote = registry.remote_for("session-1")
        >>> registry.release_local(local)
        >>> registry.release_remote("session-1")
    """

    def __init__(self, capture: Optional[MediaCapture] = None):
        self.capture = capture or PlayerMediaCapture()
        # session_id -> RemoteStream
        self._remote_streams: Dict[str, RemoteStream] = {}

    async def acquire_local(self, constraints: Optional[MediaConstraints] = None) -> LocalStream:
        """장치 캡처를 요청해 로컬 스트림을 반환합니다.

        Raises:
            MediaUnavailable: 권한 거부 또는 조건에 맞는 장치가 없는 경우
        """
        constraints = constraints or MediaConstraints.from_config()
        stream = await self.capture.open(constraints)
        if not stream.tracks:
            raise MediaUnavailable("캡처된 트랙이 없습니다.")
        logger.info(f"[Media] 로컬 스트림 획득: {stream.kinds()}")
        return stream

    def release_local(self, stream: Optional[LocalStream]) -> None:
        """로컬 스트림의 장치 자원을 해제합니다. None이나 이미 해제된 스트림은 무시합니다."""
        if stream is None or stream.released:
            return
        stream.released = True
        _stop_tracks(stream.tracks)
        logger.info(f"[Media] 로컬 스트림 해제: {stream.kinds()}")

    def remote_for(self, session_id: str) -> RemoteStream:
        """세션의 원격 스트림을 반환합니다 (없으면 생성)."""
        stream = self._remote_streams.get(session_id)
        if stream is None:
            stream = RemoteStream(session_id=session_id)
            self._remote_streams[session_id] = stream
        return stream

    def release_remote(self, session_id: str) -> None:
        """세션의 원격 스트림을 비우고 등록을 해제합니다."""
        stream = self._remote_streams.pop(session_id, None)
        if stream is None:
            return
        stream.released = True
        count = len(stream.tracks)
        stream.tracks.clear()
        logger.info(f"[Media] 세션 {session_id[:8]} 원격 스트림 해제 (트랙 {count}개)")
