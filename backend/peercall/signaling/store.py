"""실시간 문서 저장소 인터페이스.

시그널링 채널이 사용하는 최소한의 문서 저장소 기능을 정의합니다.
Firestore 구현(firestore_store.py)과 프로세스 내 구현(memory_store.py)이
같은 인터페이스를 따릅니다.

경로 규칙:
    - 문서: "channels/{channel_id}"
    - 하위 컬렉션: "channels/{channel_id}/offerCandidates"

구독 콜백은 항상 이벤트 루프 스레드에서 호출됩니다.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Literal, Optional

ChangeType = Literal["added", "modified", "removed"]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class DocumentChange:
    """컬렉션 구독에서 전달되는 변경 1건."""

    type: ChangeType
    doc_id: str
    data: dict


DocumentCallback = Callable[[Optional[dict]], None]
CollectionCallback = Callable[[list], None]


class DocumentStore(ABC):
    """시그널링용 문서 저장소 추상 클래스."""

    name: str = "abstract"

    @abstractmethod
    async def create(self, collection: str, fields: Optional[dict] = None) -> str:
        """저장소가 부여한 ID로 새 문서를 만들고 ID를 반환합니다."""

    @abstractmethod
    async def get(self, path: str) -> Optional[dict]:
        """문서 필드를 반환합니다. 문서가 없으면 None."""

    @abstractmethod
    async def set(self, path: str, fields: dict) -> None:
        """문서를 fields로 덮어씁니다 (없으면 생성)."""

    @abstractmethod
    async def update(self, path: str, fields: dict) -> None:
        """기존 문서의 필드를 갱신합니다. 문서가 없으면 ChannelNotFound."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """문서를 삭제합니다. 없는 문서면 아무 일도 하지 않습니다."""

    @abstractmethod
    async def add(self, collection: str, data: dict) -> str:
        """컬렉션에 문서를 추가하고 부여된 ID를 반환합니다."""

    @abstractmethod
    async def list(self, collection: str) -> list:
        """컬렉션의 (doc_id, data) 목록을 추가 순서대로 반환합니다."""

    @abstractmethod
    def watch_document(self, path: str, callback: DocumentCallback) -> Unsubscribe:
        """문서 변경을 구독합니다. 현재 스냅샷이 먼저 한 번 전달됩니다."""

    @abstractmethod
    def watch_collection(self, collection: str, callback: CollectionCallback) -> Unsubscribe:
        """컬렉션 변경을 구독합니다.

        이미 존재하는 문서는 첫 호출에서 "added" 변경으로 전달되며,
        이후 추가/수정/삭제가 DocumentChange 목록으로 전달됩니다.
        """

    async def close(self) -> None:
        """저장소 연결을 정리합니다."""
        return None


def create_document_store(backend: Optional[str] = None) -> DocumentStore:
    """설정된 저장소 구현을 생성합니다.

    Args:
        backend: "firestore" 또는 "memory". None이면 STORE_BACKEND 설정값 사용
    """
    from .config import get_signaling_settings

    backend = backend or get_signaling_settings().STORE_BACKEND
    if backend == "memory":
        from .memory_store import MemoryDocumentStore
        return MemoryDocumentStore()
    if backend == "firestore":
        from .firestore_store import FirestoreDocumentStore
        return FirestoreDocumentStore()
    raise ValueError(f"알 수 없는 저장소 종류: {backend}")
