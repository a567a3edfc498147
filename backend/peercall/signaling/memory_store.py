"""프로세스 내 문서 저장소.

Firestore와 같은 경로/구독 의미를 따르는 메모리 구현입니다.
한 프로세스 안에서 caller/callee 두 세션을 붙여 보는 로컬 데모와
테스트에서 사용합니다 (STORE_BACKEND=memory).

Note:
    - 문서를 삭제해도 하위 컬렉션은 남습니다 (Firestore와 동일)
    - 구독 알림은 loop.call_soon()으로 예약되어 호출 순서대로 전달됩니다
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from ..shared.errors import ChannelNotFound
from .store import (
    CollectionCallback,
    DocumentCallback,
    DocumentChange,
    DocumentStore,
    Unsubscribe,
)

logger = logging.getLogger(__name__)


def _split(path: str) -> Tuple[str, str]:
    collection, _, doc_id = path.strip("/").rpartition("/")
    if not collection or not doc_id:
        raise ValueError(f"문서 경로가 아닙니다: {path}")
    return collection, doc_id


class MemoryDocumentStore(DocumentStore):
    """메모리 기반 DocumentStore 구현."""

    name = "memory"

    def __init__(self):
        # collection path -> {doc_id: data} (삽입 순서 유지)
        self._collections: Dict[str, Dict[str, dict]] = defaultdict(dict)
        self._doc_watchers: Dict[str, List[DocumentCallback]] = defaultdict(list)
        self._collection_watchers: Dict[str, List[CollectionCallback]] = defaultdict(list)

    # ------------------------------------------------------------
    # 알림
    # ------------------------------------------------------------

    @staticmethod
    def _schedule(callback, payload) -> None:
        asyncio.get_running_loop().call_soon(callback, payload)

    def _notify(self, collection: str, doc_id: str, change_type: str) -> None:
        data = self._collections.get(collection, {}).get(doc_id)
        path = f"{collection}/{doc_id}"

        for callback in list(self._doc_watchers.get(path, [])):
            self._schedule(callback, copy.deepcopy(data))

        change = DocumentChange(type=change_type, doc_id=doc_id, data=copy.deepcopy(data or {}))
        for callback in list(self._collection_watchers.get(collection, [])):
            self._schedule(callback, [change])

    # ------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------

    async def create(self, collection: str, fields: Optional[dict] = None) -> str:
        doc_id = uuid.uuid4().hex[:20]
        self._collections[collection][doc_id] = copy.deepcopy(fields or {})
        self._notify(collection, doc_id, "added")
        return doc_id

    async def get(self, path: str) -> Optional[dict]:
        collection, doc_id = _split(path)
        data = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    async def set(self, path: str, fields: dict) -> None:
        collection, doc_id = _split(path)
        existed = doc_id in self._collections[collection]
        self._collections[collection][doc_id] = copy.deepcopy(fields)
        self._notify(collection, doc_id, "modified" if existed else "added")

    async def update(self, path: str, fields: dict) -> None:
        collection, doc_id = _split(path)
        document = self._collections.get(collection, {}).get(doc_id)
        if document is None:
            raise ChannelNotFound(f"문서가 존재하지 않습니다: {path}")
        document.update(copy.deepcopy(fields))
        self._notify(collection, doc_id, "modified")

    async def delete(self, path: str) -> None:
        collection, doc_id = _split(path)
        documents = self._collections.get(collection)
        if not documents or doc_id not in documents:
            return
        data = documents.pop(doc_id)

        path_key = f"{collection}/{doc_id}"
        for callback in list(self._doc_watchers.get(path_key, [])):
            self._schedule(callback, None)
        change = DocumentChange(type="removed", doc_id=doc_id, data=data)
        for callback in list(self._collection_watchers.get(collection, [])):
            self._schedule(callback, [change])

    async def add(self, collection: str, data: dict) -> str:
        return await self.create(collection, data)

    async def list(self, collection: str) -> list:
        return [
            (doc_id, copy.deepcopy(data))
            for doc_id, data in self._collections.get(collection, {}).items()
        ]

    # ------------------------------------------------------------
    # 구독
    # ------------------------------------------------------------

    def watch_document(self, path: str, callback: DocumentCallback) -> Unsubscribe:
        collection, doc_id = _split(path)
        watchers = self._doc_watchers[path.strip("/")]
        watchers.append(callback)

        data = self._collections.get(collection, {}).get(doc_id)
        self._schedule(callback, copy.deepcopy(data))

        def unsubscribe() -> None:
            if callback in watchers:
                watchers.remove(callback)

        return unsubscribe

    def watch_collection(self, collection: str, callback: CollectionCallback) -> Unsubscribe:
        watchers = self._collection_watchers[collection]
        watchers.append(callback)

        initial = [
            DocumentChange(type="added", doc_id=doc_id, data=copy.deepcopy(data))
            for doc_id, data in self._collections.get(collection, {}).items()
        ]
        if initial:
            self._schedule(callback, initial)

        def unsubscribe() -> None:
            if callback in watchers:
                watchers.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------
    # 테스트/디버그용 조회
    # ------------------------------------------------------------

    def count(self, collection: str) -> int:
        return len(self._collections.get(collection, {}))
