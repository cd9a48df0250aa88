from __future__ import annotations

import asyncio
import json

import pytest

from quiz_coach.errors import PersistenceError
from quiz_coach.quizzer.store import (
    DocumentStore,
    mistakes_collection,
    sessions_collection,
)

MISTAKES = mistakes_collection("u1")


async def _settle() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


def test_collection_paths_are_scoped_by_owner():
    assert sessions_collection("abc") == "users/abc/practice_sessions"
    assert mistakes_collection("abc") == "users/abc/mistakes"


def test_add_get_and_update(store):
    async def scenario():
        doc_id = await store.add(
            MISTAKES, {"question": "Q", "diagnosis": None}
        )
        await store.update(MISTAKES, doc_id, {"diagnosis": {"reasons": []}})
        return doc_id, await store.get(MISTAKES, doc_id)

    doc_id, doc = asyncio.run(scenario())

    assert doc_id
    assert doc == {"question": "Q", "diagnosis": {"reasons": []}}


def test_get_returns_copies(store):
    async def scenario():
        doc_id = await store.add(MISTAKES, {"tags": ["a"]})
        first = await store.get(MISTAKES, doc_id)
        first["tags"].append("b")
        return await store.get(MISTAKES, doc_id)

    assert asyncio.run(scenario()) == {"tags": ["a"]}


def test_query_filters_by_equality(store):
    async def scenario():
        await store.add(MISTAKES, {"session_id": "s1"})
        await store.add(MISTAKES, {"session_id": "s2"})
        await store.add(MISTAKES, {"session_id": "s1"})
        return (
            await store.query(MISTAKES, "session_id", "s1"),
            await store.query(MISTAKES),
            await store.query("users/nobody/mistakes"),
        )

    matching, everything, missing = asyncio.run(scenario())

    assert len(matching) == 2
    assert len(everything) == 3
    assert missing == []


def test_batch_is_all_or_nothing(store):
    async def scenario():
        batch = store.batch()
        batch.set(MISTAKES, {"question": "kept?"})
        batch.update(MISTAKES, "missing", {"diagnosis": None})
        with pytest.raises(PersistenceError, match="missing"):
            await batch.commit()
        return await store.query(MISTAKES)

    assert asyncio.run(scenario()) == []


def test_batch_cannot_commit_twice(store):
    async def scenario():
        batch = store.batch()
        batch.set(MISTAKES, {"question": "Q"}, doc_id="fixed")
        await batch.commit()
        with pytest.raises(PersistenceError):
            await batch.commit()
        return len(batch)

    assert asyncio.run(scenario()) == 1


def test_subscription_delivers_initial_and_changed_sets(store):
    snapshots = []

    def on_snapshot(snapshot):
        snapshots.append(sorted(doc["question"] for _, doc in snapshot))

    async def scenario():
        await store.add(MISTAKES, {"session_id": "s1", "question": "Q1"})
        subscription = store.subscribe(
            MISTAKES, "session_id", "s1", on_snapshot
        )
        await _settle()
        batch = store.batch()
        batch.set(MISTAKES, {"session_id": "s1", "question": "Q2"})
        batch.set(MISTAKES, {"session_id": "s1", "question": "Q3"})
        await batch.commit()
        await _settle()
        await store.add(MISTAKES, {"session_id": "other", "question": "X"})
        await _settle()
        subscription.unsubscribe()
        await store.add(MISTAKES, {"session_id": "s1", "question": "Q4"})
        await _settle()
        return subscription

    subscription = asyncio.run(scenario())

    assert snapshots == [["Q1"], ["Q1", "Q2", "Q3"]]
    assert subscription.active is False


def test_notification_follows_the_write(store):
    order = []

    async def scenario():
        store.subscribe(
            MISTAKES, "session_id", "s1", lambda snap: order.append("notified")
        )
        await _settle()
        order.clear()
        await store.add(MISTAKES, {"session_id": "s1"})
        order.append("written")
        await _settle()

    asyncio.run(scenario())

    assert order == ["written", "notified"]


def test_document_leaving_filter_is_reported(store):
    snapshots = []

    async def scenario():
        doc_id = await store.add(MISTAKES, {"session_id": "s1"})
        store.subscribe(MISTAKES, "session_id", "s1", snapshots.append)
        await _settle()
        await store.update(MISTAKES, doc_id, {"session_id": "s2"})
        await _settle()

    asyncio.run(scenario())

    assert [len(snapshot) for snapshot in snapshots] == [1, 0]


def test_failing_subscriber_does_not_break_writes(store):
    def explode(snapshot):
        raise RuntimeError("subscriber bug")

    async def scenario():
        store.subscribe(MISTAKES, "session_id", "s1", explode)
        await _settle()
        doc_id = await store.add(MISTAKES, {"session_id": "s1"})
        await _settle()
        return await store.get(MISTAKES, doc_id)

    assert asyncio.run(scenario()) == {"session_id": "s1"}


def test_file_backed_store_persists_and_reloads(tmp_path):
    path = tmp_path / "store" / "quiz.json"

    async def write():
        return await DocumentStore(path).add(MISTAKES, {"question": "Q"})

    doc_id = asyncio.run(write())

    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk[MISTAKES][doc_id] == {"question": "Q"}
    reloaded = DocumentStore(path)
    assert asyncio.run(reloaded.get(MISTAKES, doc_id)) == {"question": "Q"}


def test_failed_file_write_leaves_memory_untouched(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    store = DocumentStore(blocker / "quiz.json")

    async def scenario():
        with pytest.raises(PersistenceError):
            await store.add(MISTAKES, {"question": "Q"})
        return await store.query(MISTAKES)

    assert asyncio.run(scenario()) == []


def test_corrupt_store_file_is_reported(tmp_path):
    path = tmp_path / "quiz.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(PersistenceError, match="parse"):
        DocumentStore(path)
