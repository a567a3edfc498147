from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from firebase_admin import firestore
from google.api_core import exceptions as google_exceptions

from conftest import settle
from peercall.shared.errors import ChannelNotFound, StoreUnavailable
from peercall.signaling import SignalingSettings
from peercall.signaling.firestore_store import FirestoreDocumentStore, get_firebase_app


@pytest.fixture()
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture()
def firestore_store(client) -> FirestoreDocumentStore:
    return FirestoreDocumentStore(client=client, settings=SignalingSettings())


def change(kind: str, doc_id: str, data: dict):
    return SimpleNamespace(
        type=SimpleNamespace(name=kind),
        document=SimpleNamespace(id=doc_id, to_dict=lambda: dict(data)),
    )


async def test_create_uses_auto_id(firestore_store, client):
    ref = client.collection.return_value.document.return_value
    ref.id = "auto123"

    assert await firestore_store.create("channels") == "auto123"
    client.collection.assert_called_with("channels")
    ref.set.assert_called_once_with({})


async def test_get_missing_document_returns_none(firestore_store, client):
    client.document.return_value.get.return_value = SimpleNamespace(exists=False, to_dict=lambda: None)

    assert await firestore_store.get("channels/nope") is None


async def test_backend_errors_are_translated(firestore_store, client):
    client.document.return_value.update.side_effect = google_exceptions.NotFound("gone")
    with pytest.raises(ChannelNotFound):
        await firestore_store.update("channels/nope", {"answer": {}})

    client.document.return_value.set.side_effect = google_exceptions.ServiceUnavailable("down")
    with pytest.raises(StoreUnavailable):
        await firestore_store.set("channels/x", {})


async def test_add_stamps_created_at_and_list_strips_it(firestore_store, client):
    collection = client.collection.return_value
    collection.add.return_value = (None, SimpleNamespace(id="cand1"))

    assert await firestore_store.add("channels/x/offerCandidates", {"candidate": "c"}) == "cand1"
    payload = collection.add.call_args.args[0]
    assert payload["createdAt"] is firestore.SERVER_TIMESTAMP

    collection.stream.return_value = [
        SimpleNamespace(id="cand1", to_dict=lambda: {"candidate": "c", "createdAt": datetime.now(timezone.utc)}),
    ]
    assert await firestore_store.list("channels/x/offerCandidates") == [("cand1", {"candidate": "c"})]


async def test_watch_collection_orders_added_by_created_at(firestore_store, client):
    listeners = []
    watch = MagicMock()

    def on_snapshot(callback):
        listeners.append(callback)
        return watch

    client.collection.return_value.on_snapshot.side_effect = on_snapshot
    batches = []
    unsubscribe = firestore_store.watch_collection("channels/x/answerCandidates", batches.append)

    early = datetime(2024, 1, 1, 0, 0, 1, tzinfo=timezone.utc)
    late = datetime(2024, 1, 1, 0, 0, 2, tzinfo=timezone.utc)
    listeners[0](None, [
        change("ADDED", "b", {"candidate": "b", "createdAt": late}),
        change("ADDED", "a", {"candidate": "a", "createdAt": early}),
    ], None)
    await settle()

    assert [(c.type, c.doc_id, c.data) for c in batches[0]] == [
        ("added", "a", {"candidate": "a"}),
        ("added", "b", {"candidate": "b"}),
    ]
    unsubscribe()
    watch.unsubscribe.assert_called_once()


def test_missing_credentials_raise_store_unavailable(monkeypatch):
    monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS", raising=False)
    settings = SignalingSettings(FIREBASE_USE_EMULATOR=False, FIREBASE_SERVICE_ACCOUNT_PATH=None)

    with patch("peercall.signaling.firestore_store.firebase_admin.get_app", side_effect=ValueError):
        with pytest.raises(StoreUnavailable):
            get_firebase_app(settings)
