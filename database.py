"""
Document store used by the ledger.

Store is the abstract interface: point reads, filtered queries, push
subscriptions, and all-or-nothing batch commits of SetOp / DeleteOp /
IncrementOp. MongoStore backs it with MongoDB (multi-document transactions,
change streams); MemoryStore keeps everything in process and is used when no
DATABASE_URL is configured and in tests.
"""

import copy
import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field as dataclass_field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

from ledger_errors import StoreUnavailable
from settings import Settings

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class SetOp:
    collection: str
    doc_id: str
    value: Document
    merge: bool = False
    # False only updates a document that already exists
    upsert: bool = True


@dataclass(frozen=True)
class DeleteOp:
    collection: str
    doc_id: str
    # only delete when this numeric field is missing or <= 0
    when_exhausted: Optional[str] = None


@dataclass(frozen=True)
class IncrementOp:
    collection: str
    doc_id: str
    field: str
    delta: int
    floor: Optional[int] = None
    # document body used when the target is missing; None means "no upsert"
    on_insert: Optional[Document] = None
    extra: Document = dataclass_field(default_factory=dict)

    def __post_init__(self):
        if self.floor is not None and self.on_insert is not None:
            raise ValueError("IncrementOp cannot combine floor with on_insert")


Op = Union[SetOp, DeleteOp, IncrementOp]


class Store(ABC):
    name = "store"

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    def commit(self, ops: Sequence[Op]) -> None:
        """Apply every op or none of them."""

    @abstractmethod
    def query(
        self,
        collection: str,
        filters: Optional[Document] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        id_prefix: Optional[str] = None,
    ) -> List[Document]:
        ...

    @abstractmethod
    def subscribe(
        self,
        collection: str,
        filters: Optional[Document],
        callback: Callable[[List[Document]], None],
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> Unsubscribe:
        ...

    def describe(self) -> Dict[str, Any]:
        return {"backend": self.name}

    def set(self, collection: str, doc_id: str, value: Document, merge: bool = False) -> None:
        self.commit([SetOp(collection, doc_id, value, merge)])

    def delete(self, collection: str, doc_id: str) -> None:
        self.commit([DeleteOp(collection, doc_id)])

    def increment(self, collection: str, doc_id: str, field_name: str, delta: int) -> None:
        self.commit([IncrementOp(collection, doc_id, field_name, delta)])


# In-memory backend

def _matches(doc: Document, filters: Optional[Document], id_prefix: Optional[str]) -> bool:
    if id_prefix is not None and not str(doc.get("_id", "")).startswith(id_prefix):
        return False
    for key, expected in (filters or {}).items():
        if doc.get(key) != expected:
            return False
    return True


def _order(docs: List[Document], order_by: Optional[str], descending: bool, limit: Optional[int]) -> List[Document]:
    if order_by:
        present = [d for d in docs if d.get(order_by) is not None]
        missing = [d for d in docs if d.get(order_by) is None]
        present.sort(key=lambda d: d[order_by], reverse=descending)
        docs = present + missing
    if limit is not None:
        docs = docs[:limit]
    return docs


def _apply(data: Dict[str, Dict[str, Document]], op: Op) -> None:
    if not isinstance(op, (SetOp, DeleteOp, IncrementOp)):
        raise TypeError(f"unknown store op {op!r}")
    coll = data.setdefault(op.collection, {})
    current = coll.get(op.doc_id)
    if isinstance(op, SetOp):
        if current is None and not op.upsert:
            return
        value = copy.deepcopy(op.value)
        if op.merge and current is not None:
            current.update(value)
        else:
            value["_id"] = op.doc_id
            coll[op.doc_id] = value
    elif isinstance(op, DeleteOp):
        if current is None:
            return
        if op.when_exhausted is not None and (current.get(op.when_exhausted) or 0) > 0:
            return
        del coll[op.doc_id]
    elif isinstance(op, IncrementOp):
        if current is None:
            if op.on_insert is None:
                return
            current = copy.deepcopy(op.on_insert)
            current["_id"] = op.doc_id
            current[op.field] = 0
            coll[op.doc_id] = current
        value = (current.get(op.field) or 0) + op.delta
        if op.floor is not None:
            value = max(op.floor, value)
        current[op.field] = value
        current.update(copy.deepcopy(op.extra))


class MemoryStore(Store):
    name = "memory"

    def __init__(self):
        self._data: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.RLock()
        self._subscribers: List[dict] = []
        self.commit_count = 0

    def get(self, collection, doc_id):
        with self._lock:
            doc = self._data.get(collection, {}).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def commit(self, ops):
        if not ops:
            return
        with self._lock:
            staged = copy.deepcopy(self._data)
            for op in ops:
                _apply(staged, op)
            self._data = staged
            self.commit_count += 1
            touched = {op.collection for op in ops}
            listeners = [s for s in self._subscribers if s["collection"] in touched]
        for sub in listeners:
            self._notify(sub)

    def query(self, collection, filters=None, order_by=None, descending=False, limit=None, id_prefix=None):
        with self._lock:
            docs = [
                copy.deepcopy(d)
                for d in self._data.get(collection, {}).values()
                if _matches(d, filters, id_prefix)
            ]
        return _order(docs, order_by, descending, limit)

    def subscribe(self, collection, filters, callback, order_by=None, descending=False, limit=None):
        sub = {
            "collection": collection,
            "filters": dict(filters or {}),
            "callback": callback,
            "order_by": order_by,
            "descending": descending,
            "limit": limit,
        }
        with self._lock:
            self._subscribers.append(sub)
        self._notify(sub)

        def unsubscribe():
            with self._lock:
                if sub in self._subscribers:
                    self._subscribers.remove(sub)

        return unsubscribe

    def _notify(self, sub):
        docs = self.query(sub["collection"], sub["filters"], sub["order_by"], sub["descending"], sub["limit"])
        if "last" in sub and sub["last"] == docs:
            return
        sub["last"] = docs
        try:
            sub["callback"](docs)
        except Exception:
            logger.exception("Subscriber callback failed for %s", sub["collection"])

    def describe(self):
        with self._lock:
            collections = sorted(name for name, docs in self._data.items() if docs)
        return {"backend": self.name, "collections": collections}


# MongoDB backend

class MongoStore(Store):
    name = "mongodb"

    def __init__(self, client: MongoClient, database_name: str):
        self._client = client
        self._db = client[database_name]

    @classmethod
    def from_url(cls, url: str, database_name: str) -> "MongoStore":
        return cls(MongoClient(url), database_name)

    def get(self, collection, doc_id):
        try:
            return self._db[collection].find_one({"_id": doc_id})
        except PyMongoError as exc:
            raise StoreUnavailable(f"read {collection}/{doc_id} failed: {exc}") from exc

    def commit(self, ops):
        if not ops:
            return
        try:
            with self._client.start_session() as session:
                session.with_transaction(lambda s: self._apply_all(ops, s))
        except PyMongoError as exc:
            raise StoreUnavailable(f"batch of {len(ops)} ops failed: {exc}") from exc

    def _apply_all(self, ops, session):
        for op in ops:
            coll = self._db[op.collection]
            if isinstance(op, SetOp):
                if op.merge:
                    coll.update_one({"_id": op.doc_id}, {"$set": op.value}, upsert=op.upsert, session=session)
                else:
                    coll.replace_one({"_id": op.doc_id}, dict(op.value), upsert=op.upsert, session=session)
            elif isinstance(op, DeleteOp):
                selector = {"_id": op.doc_id}
                if op.when_exhausted is not None:
                    selector[op.when_exhausted] = {"$not": {"$gt": 0}}
                coll.delete_one(selector, session=session)
            elif isinstance(op, IncrementOp):
                coll.update_one(
                    {"_id": op.doc_id},
                    increment_update(op),
                    upsert=op.on_insert is not None,
                    session=session,
                )
            else:
                raise TypeError(f"unknown store op {op!r}")

    def query(self, collection, filters=None, order_by=None, descending=False, limit=None, id_prefix=None):
        selector = dict(filters or {})
        if id_prefix is not None:
            selector["_id"] = {"$regex": "^" + re.escape(id_prefix)}
        try:
            cursor = self._db[collection].find(selector)
            if order_by:
                cursor = cursor.sort(order_by, DESCENDING if descending else ASCENDING)
            if limit is not None:
                cursor = cursor.limit(limit)
            return list(cursor)
        except PyMongoError as exc:
            raise StoreUnavailable(f"query on {collection} failed: {exc}") from exc

    def subscribe(self, collection, filters, callback, order_by=None, descending=False, limit=None):
        stop = threading.Event()

        def push():
            callback(self.query(collection, filters, order_by, descending, limit))

        def watch():
            try:
                with self._db[collection].watch(max_await_time_ms=1000) as stream:
                    while not stop.is_set() and stream.alive:
                        if stream.try_next() is None or stop.is_set():
                            continue
                        try:
                            push()
                        except Exception:
                            logger.exception("Subscriber update failed for %s", collection)
            except PyMongoError:
                logger.exception("Change stream on %s closed", collection)

        push()
        thread = threading.Thread(target=watch, name=f"watch-{collection}", daemon=True)
        thread.start()
        return stop.set

    def describe(self):
        info = {"backend": self.name, "database_name": self._db.name}
        try:
            info["collections"] = self._db.list_collection_names()[:10]
        except PyMongoError as exc:
            info["error"] = str(exc)[:50]
        return info


def increment_update(op: IncrementOp):
    """Translate an IncrementOp into a MongoDB update document or pipeline."""
    if op.floor is not None:
        new_value = {"$max": [op.floor, {"$add": [{"$ifNull": ["$" + op.field, 0]}, op.delta]}]}
        return [{"$set": {op.field: new_value, **op.extra}}]
    update: Document = {"$inc": {op.field: op.delta}}
    if op.extra:
        update["$set"] = dict(op.extra)
    if op.on_insert is not None:
        on_insert = {k: v for k, v in op.on_insert.items() if k != op.field and k not in op.extra}
        if on_insert:
            update["$setOnInsert"] = on_insert
    return update


def open_store(settings: Settings) -> Store:
    if settings.database_url:
        logger.info("Using MongoDB store %s", settings.database_name)
        return MongoStore.from_url(settings.database_url, settings.database_name)
    logger.warning("DATABASE_URL not set, using in-memory store")
    return MemoryStore()
