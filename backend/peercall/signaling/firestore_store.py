"""Cloud Firestore 문서 저장소.

firebase-admin SDK의 동기 Firestore 클라이언트를 asyncio에서 사용할 수 있도록
감싼 DocumentStore 구현입니다.

Firestore 구조:
    channels/{channelId}: {offer: {type, sdp}, answer?: {type, sdp}}
    channels/{channelId}/offerCandidates/{autoId}: RTCIceCandidate JSON
    channels/{channelId}/answerCandidates/{autoId}: RTCIceCandidate JSON

Note:
    - 블로킹 호출은 asyncio.to_thread()로 실행
    - on_snapshot 콜백은 SDK 스레드에서 호출되므로
      loop.call_soon_threadsafe()로 이벤트 루프에 넘김
    - 후보 문서에는 createdAt 서버 타임스탬프를 함께 기록하고,
      같은 스냅샷 안의 추가분은 이 값으로 정렬
"""

import asyncio
import logging
import os
from typing import Optional

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core import exceptions as google_exceptions

from ..shared.errors import ChannelNotFound, StoreUnavailable
from .config import SignalingSettings, get_signaling_settings
from .store import (
    CollectionCallback,
    DocumentCallback,
    DocumentChange,
    DocumentStore,
    Unsubscribe,
)

logger = logging.getLogger(__name__)

CREATED_AT_FIELD = "createdAt"


def get_firebase_app(settings: SignalingSettings):
    """Firebase Admin 앱을 반환합니다 (없으면 초기화).

    Raises:
        StoreUnavailable: 자격 증명을 찾을 수 없는 경우
    """
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    logger.info(
        f"[Firestore] 초기화: use_emulator={settings.FIREBASE_USE_EMULATOR}, "
        f"project_id={settings.FIREBASE_PROJECT_ID}"
    )

    if settings.FIREBASE_USE_EMULATOR:
        # 에뮬레이터 모드 - 초기화 전에 환경변수 설정 필요
        os.environ["FIRESTORE_EMULATOR_HOST"] = settings.FIRESTORE_EMULATOR_HOST
        app = firebase_admin.initialize_app(
            options={"projectId": settings.FIREBASE_PROJECT_ID or "demo-project"}
        )
        logger.info(f"[Firestore] 에뮬레이터 연결: {settings.FIRESTORE_EMULATOR_HOST}")
        return app

    path = settings.FIREBASE_SERVICE_ACCOUNT_PATH
    if path and os.path.exists(path):
        app = firebase_admin.initialize_app(credentials.Certificate(path))
        logger.info(f"[Firestore] 서비스 계정으로 초기화: {path}")
        return app

    if os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
        app = firebase_admin.initialize_app(
            options={"projectId": settings.FIREBASE_PROJECT_ID} if settings.FIREBASE_PROJECT_ID else None
        )
        logger.info("[Firestore] Application Default Credentials로 초기화")
        return app

    raise StoreUnavailable("Firebase 자격 증명을 찾을 수 없습니다.")


class FirestoreDocumentStore(DocumentStore):
    """firebase-admin 기반 DocumentStore 구현."""

    name = "firestore"

    def __init__(self, client=None, settings: Optional[SignalingSettings] = None):
        self._settings = settings or get_signaling_settings()
        self._client = client

    @property
    def db(self):
        """Firestore 클라이언트 (지연 초기화)."""
        if self._client is None:
            app = get_firebase_app(self._settings)
            self._client = firestore.client(app)
        return self._client

    async def _run(self, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except google_exceptions.NotFound as e:
            raise ChannelNotFound(f"문서를 찾을 수 없습니다: {e.message}") from e
        except (google_exceptions.GoogleAPICallError, google_exceptions.RetryError) as e:
            logger.warning(f"[Firestore] 요청 실패: {type(e).__name__}: {e}")
            raise StoreUnavailable(f"Firestore 요청 실패: {e}") from e

    @staticmethod
    def _strip(data: Optional[dict]) -> dict:
        data = dict(data or {})
        data.pop(CREATED_AT_FIELD, None)
        return data

    # ------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------

    async def create(self, collection: str, fields: Optional[dict] = None) -> str:
        ref = self.db.collection(collection).document()
        await self._run(ref.set, fields or {})
        return ref.id

    async def get(self, path: str) -> Optional[dict]:
        snapshot = await self._run(self.db.document(path).get)
        return snapshot.to_dict() if snapshot.exists else None

    async def set(self, path: str, fields: dict) -> None:
        await self._run(self.db.document(path).set, fields)

    async def update(self, path: str, fields: dict) -> None:
        await self._run(self.db.document(path).update, fields)

    async def delete(self, path: str) -> None:
        await self._run(self.db.document(path).delete)

    async def add(self, collection: str, data: dict) -> str:
        payload = dict(data)
        payload[CREATED_AT_FIELD] = firestore.SERVER_TIMESTAMP
        _, ref = await self._run(self.db.collection(collection).add, payload)
        return ref.id

    async def list(self, collection: str) -> list:
        def _collect():
            return [
                (snapshot.id, self._strip(snapshot.to_dict()))
                for snapshot in self.db.collection(collection).stream()
            ]

        return await self._run(_collect)

    # ------------------------------------------------------------
    # 구독
    # ------------------------------------------------------------

    def watch_document(self, path: str, callback: DocumentCallback) -> Unsubscribe:
        loop = asyncio.get_running_loop()

        def on_snapshot(doc_snapshots, changes, read_time):
            for snapshot in doc_snapshots:
                data = snapshot.to_dict() if snapshot.exists else None
                loop.call_soon_threadsafe(callback, data)

        watch = self.db.document(path).on_snapshot(on_snapshot)
        logger.debug(f"[Firestore] 문서 구독 시작: {path}")
        return watch.unsubscribe

    def watch_collection(self, collection: str, callback: CollectionCallback) -> Unsubscribe:
        loop = asyncio.get_running_loop()

        def sort_key(change):
            created_at = (change.document.to_dict() or {}).get(CREATED_AT_FIELD)
            return (created_at is None, created_at.timestamp() if created_at else 0.0)

        def on_snapshot(col_snapshot, changes, read_time):
            added = sorted((c for c in changes if c.type.name == "ADDED"), key=sort_key)
            others = [c for c in changes if c.type.name != "ADDED"]
            converted = [
                DocumentChange(
                    type=change.type.name.lower(),
                    doc_id=change.document.id,
                    data=self._strip(change.document.to_dict()),
                )
                for change in added + others
            ]
            if converted:
                loop.call_soon_threadsafe(callback, converted)

        watch = self.db.collection(collection).on_snapshot(on_snapshot)
        logger.debug(f"[Firestore] 컬렉션 구독 시작: {collection}")
        return watch.unsubscribe
