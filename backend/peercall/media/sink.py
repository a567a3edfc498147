"""원격 미디어 소비 모듈.

aiortc는 수신 트랙을 누군가 recv()로 소비해야 프레임을 계속 전달합니다.
화면 렌더링 대신 MediaRecorder(파일 저장) 또는 MediaBlackhole(버림)로
원격 트랙을 소비합니다.
"""

import asyncio
import logging
from typing import List, Optional

from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from ..webrtc.config import media_config

logger = logging.getLogger(__name__)


class RemoteMediaSink:
    """원격 트랙 소비자.

    Attributes:
        record_path (Optional[str]): 녹화 파일 경로 (None이면 MediaBlackhole)

    Note:
        - MediaRecorder는 start() 이전에 추가된 트랙만 기록하므로 연결 완료 시점에 시작
        - 시작 이후 도착한 트랙은 개별 MediaBlackhole로 소비
    """

    def __init__(self, record_path: Optional[str] = None):
        self.record_path = record_path if record_path is not None else media_config.REMOTE_RECORD_PATH
        self._pending_tracks: List = []
        self._consumers: List = []
        self._tasks: List[asyncio.Task] = []
        self._started = False
        self._stopped = False

    def add_track(self, track) -> None:
        if self._stopped:
            return
        if not self._started:
            self._pending_tracks.append(track)
            return

        blackhole = MediaBlackhole()
        blackhole.addTrack(track)
        self._consumers.append(blackhole)
        self._tasks.append(asyncio.create_task(blackhole.start()))
        logger.info(f"[Media] 시작 이후 도착한 {track.kind} 트랙을 MediaBlackhole로 소비")

    async def start(self) -> None:
        if self._started or self._stopped:
            return
        self._started = True

        consumer = MediaRecorder(self.record_path) if self.record_path else MediaBlackhole()
        for track in self._pending_tracks:
            consumer.addTrack(track)
        self._consumers.append(consumer)
        await consumer.start()

        target = self.record_path or "blackhole"
        logger.info(f"[Media] 원격 미디어 소비 시작: 트랙 {len(self._pending_tracks)}개 -> {target}")
        self._pending_tracks.clear()

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True

        for task in self._tasks:
            if not task.done():
                task.cancel()
        for consumer in self._consumers:
            try:
                await consumer.stop()
            except Exception as e:
                logger.warning(f"[Media] 원격 미디어 소비자 정지 중 오류: {type(e).__name__}: {e}")
        self._consumers.clear()
        self._pending_tracks.clear()
        logger.info("[Media] 원격 미디어 소비 중지")
