import pytest

from src.inflow.infrastructure import chat_store
from src.inflow.infrastructure.chat_store import DuplicateMessageError, InMemoryChatStore
from src.inflow.infrastructure.chat_store_mongo import MongoChatStore
from tests.utils import FakeMongoClient


def test_insert_with_client_id_and_sequence():
    store = InMemoryChatStore()
    first = store.insert_message("m1", "c1", "user", "hi")
    second = store.insert_message("m2", "c1", "assistant", "hello")
    assert (first.sequence, second.sequence) == (1, 2)
    assert [m.id for m in store.list_messages("c1")] == ["m1", "m2"]
    assert first.created_at.endswith("Z")


def test_duplicate_id_raises_and_keeps_one_row():
    store = InMemoryChatStore()
    store.insert_message("m1", "c1", "user", "hi")
    with pytest.raises(DuplicateMessageError):
        store.insert_message("m1", "c1", "user", "hi")
    assert len(store.list_messages("c1")) == 1


def test_append_and_bulk_delete():
    store = InMemoryChatStore()
    a = store.append_message("c1", "user", "one")
    store.append_message("c1", "user", "two")
    assert store.bulk_delete([a.id, "missing"]) == 1
    assert [m.content for m in store.list_messages("c1")] == ["two"]
    assert store.get_message(a.id) is None


def test_mongo_store_maps_duplicate_key():
    store = MongoChatStore(client=FakeMongoClient())
    store.insert_message("m1", "c1", "user", "hi")
    with pytest.raises(DuplicateMessageError):
        store.insert_message("m1", "c1", "user", "hi")
    store.insert_message("m2", "c1", "assistant", "hello")
    assert [(m.id, m.sequence) for m in store.list_messages("c1")] == [("m1", 1), ("m2", 2)]
    assert store.get_message("m2").role == "assistant"
    assert store.bulk_delete(["m1"]) == 1


def test_mongo_store_falls_back_to_memory_when_unreachable():
    store = MongoChatStore(client=FakeMongoClient(reachable=False))
    store.insert_message("m1", "c1", "user", "hi")
    assert store.get_message("m1").content == "hi"


def test_factory_selects_mongo(monkeypatch):
    monkeypatch.setenv("INFLOW_CHAT_STORE_IMPL", "mongo")
    import src.inflow.infrastructure.chat_store_mongo as mod

    monkeypatch.setattr(mod, "MongoClient", lambda *a, **k: FakeMongoClient())
    assert isinstance(chat_store.get_chat_store(), MongoChatStore)
