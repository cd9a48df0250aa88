"""In-process document store with atomic batches and live subscriptions.

Documents live in named collections (``users/<owner>/mistakes``) and are
plain JSON-compatible mappings. Subscribers register an equality filter and
receive the full matching set, never a diff, once on subscribe and again on
every write that touches it. Callbacks are scheduled on the running event
loop, so a notification is always a separate suspension point from the write
that caused it.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, MutableMapping, Optional

from ..core.logging import get_logger
from ..errors import PersistenceError

__all__ = [
    "Document",
    "DocumentStore",
    "Subscription",
    "WriteBatch",
    "mistakes_collection",
    "sessions_collection",
]

Document = Mapping[str, Any]
SnapshotCallback = Callable[[List[tuple[str, Document]]], None]


def sessions_collection(owner_id: str) -> str:
    return f"users/{owner_id}/practice_sessions"


def mistakes_collection(owner_id: str) -> str:
    return f"users/{owner_id}/mistakes"


@dataclass
class _Listener:
    collection: str
    field: str
    value: Any
    callback: SnapshotCallback
    active: bool = True

    def matches(self, collection: str, doc: Document) -> bool:
        return collection == self.collection and doc.get(self.field) == (
            self.value
        )


class Subscription:
    """Handle returned by :meth:`DocumentStore.subscribe`."""

    def __init__(self, store: "DocumentStore", listener: _Listener) -> None:
        self._store = store
        self._listener = listener

    @property
    def active(self) -> bool:
        return self._listener.active

    def unsubscribe(self) -> None:
        self._store._remove_listener(self._listener)


class WriteBatch:
    """Collects writes that :meth:`commit` applies all-or-nothing."""

    def __init__(self, store: "DocumentStore") -> None:
        self._store = store
        self._ops: List[tuple[str, str, str, Dict[str, Any]]] = []
        self._committed = False

    def set(
        self,
        collection: str,
        data: Mapping[str, Any],
        *,
        doc_id: Optional[str] = None,
    ) -> str:
        """Queue a full document write and return its (generated) id."""

        target = doc_id or _new_id()
        self._ops.append(("set", collection, target, dict(data)))
        return target

    def update(
        self, collection: str, doc_id: str, fields: Mapping[str, Any]
    ) -> None:
        self._ops.append(("update", collection, doc_id, dict(fields)))

    def __len__(self) -> int:
        return len(self._ops)

    async def commit(self) -> None:
        if self._committed:
            raise PersistenceError("Write batch already committed.")
        self._committed = True
        await self._store._apply(self._ops)


class DocumentStore:
    """Point reads, atomic writes and equality-filtered subscriptions.

    When ``path`` is given the whole store is mirrored to that JSON file after
    every successful write (temp file plus ``os.replace``), and loaded from
    it on construction.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._path = path
        self._logger = logger or get_logger("store")
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._listeners: List[_Listener] = []
        if path is not None and path.is_file():
            self._collections = _read_snapshot(path)

    @property
    def path(self) -> Optional[Path]:
        return self._path

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def add(self, collection: str, data: Mapping[str, Any]) -> str:
        batch = self.batch()
        doc_id = batch.set(collection, data)
        await batch.commit()
        return doc_id

    async def update(
        self, collection: str, doc_id: str, fields: Mapping[str, Any]
    ) -> None:
        batch = self.batch()
        batch.update(collection, doc_id, fields)
        await batch.commit()

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def query(
        self,
        collection: str,
        field: Optional[str] = None,
        value: Any = None,
    ) -> List[tuple[str, Document]]:
        """Return ``(id, document)`` pairs, optionally filtered by equality."""

        docs = self._collections.get(collection, {})
        return [
            (doc_id, copy.deepcopy(doc))
            for doc_id, doc in docs.items()
            if field is None or doc.get(field) == value
        ]

    def subscribe(
        self,
        collection: str,
        field: str,
        value: Any,
        callback: SnapshotCallback,
    ) -> Subscription:
        """Register ``callback`` for the set where ``doc[field] == value``.

        Must be called from inside a running event loop. The first delivery
        carries the current matching set.
        """

        listener = _Listener(collection, field, value, callback)
        self._listeners.append(listener)
        self._schedule(listener)
        return Subscription(self, listener)

    async def _apply(
        self, ops: List[tuple[str, str, str, Dict[str, Any]]]
    ) -> None:
        staged = copy.deepcopy(self._collections)
        touched: List[tuple[str, Document]] = []
        for kind, collection, doc_id, data in ops:
            docs = staged.setdefault(collection, {})
            if kind == "set":
                before = docs.get(doc_id)
                docs[doc_id] = copy.deepcopy(data)
            else:
                before = docs.get(doc_id)
                if before is None:
                    raise PersistenceError(
                        f"No document '{doc_id}' in '{collection}' to update."
                    )
                before = copy.deepcopy(before)
                docs[doc_id].update(copy.deepcopy(data))
            if before is not None:
                touched.append((collection, before))
            touched.append((collection, docs[doc_id]))

        if self._path is not None:
            try:
                _atomic_write_json(self._path, staged)
            except (OSError, TypeError, ValueError) as exc:
                raise PersistenceError(
                    f"Failed to write store file {self._path}: {exc}"
                ) from exc
        self._collections = staged
        self._notify(touched)

    def _notify(self, touched: List[tuple[str, Document]]) -> None:
        for listener in list(self._listeners):
            if any(listener.matches(col, doc) for col, doc in touched):
                self._schedule(listener)

    def _schedule(self, listener: _Listener) -> None:
        loop = asyncio.get_running_loop()
        loop.call_soon(self._deliver, listener)

    def _deliver(self, listener: _Listener) -> None:
        if not listener.active:
            return
        snapshot = [
            (doc_id, copy.deepcopy(doc))
            for doc_id, doc in self._collections.get(
                listener.collection, {}
            ).items()
            if doc.get(listener.field) == listener.value
        ]
        try:
            listener.callback(snapshot)
        except Exception:  # noqa: BLE001 - a bad subscriber must not break writers
            self._logger.exception(
                "Subscription callback failed",
                extra={"collection": listener.collection},
            )

    def _remove_listener(self, listener: _Listener) -> None:
        listener.active = False
        if listener in self._listeners:
            self._listeners.remove(listener)


def _new_id() -> str:
    return uuid.uuid4().hex


def _read_snapshot(path: Path) -> Dict[str, Dict[str, Dict[str, Any]]]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise PersistenceError(f"Failed to parse store file: {path}") from exc
    if not isinstance(payload, dict):
        raise PersistenceError(f"Store file must contain an object: {path}")
    return payload


def _atomic_write_json(path: Path, payload: MutableMapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "w",
        delete=False,
        encoding="utf-8",
        dir=str(path.parent),
    )
    try:
        json.dump(payload, handle, indent=2, sort_keys=True)
        handle.flush()
        os.fsync(handle.fileno())
    except BaseException:
        handle.close()
        Path(handle.name).unlink(missing_ok=True)
        raise
    handle.close()
    os.replace(handle.name, path)
    try:
        path.chmod(0o600)
    except PermissionError:  # pragma: no cover - depends on filesystem
        pass
