"""
Document store access.

`db` is the process-wide store. It talks to MongoDB when DATABASE_URL is
configured and falls back to an in-memory store otherwise. Paths are
slash-separated and alternate collection/document segments, e.g.
"listings/active/{itemId}/bidders/{bidId}".
"""

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

from config import get_settings
from errors import NotFoundError, StoreUnavailable, WriteConflict

logger = logging.getLogger(__name__)

Filter = Tuple[str, str, Any]
OrderBy = Tuple[str, str]

NOTIFICATIONS = "notifications"
USERS = "users"


def listing_collection(status: str) -> str:
    return f"listings/{status}"


def listing_path(status: str, item_id: str) -> str:
    return f"listings/{status}/{item_id}"


def bidders_path(status: str, item_id: str) -> str:
    return f"listings/{status}/{item_id}/bidders"


def user_path(user_id: str) -> str:
    return f"{USERS}/{user_id}"


def user_active_path(user_id: str) -> str:
    return f"{USERS}/{user_id}/active"


def user_past_path(user_id: str) -> str:
    return f"{USERS}/{user_id}/past"


def split_path(path: str) -> Tuple[str, str]:
    collection, _, doc_id = path.strip("/").rpartition("/")
    if not collection or not doc_id:
        raise ValueError(f"not a document path: {path!r}")
    return collection, doc_id


_OPS = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<": lambda a, b: a is not None and a < b,
    "<=": lambda a, b: a is not None and a <= b,
    ">": lambda a, b: a is not None and a > b,
    ">=": lambda a, b: a is not None and a >= b,
}


class DocumentStore(ABC):
    """Contract every backend satisfies. Documents are plain dicts with an `id`."""

    name = "abstract"

    @abstractmethod
    def get(self, path: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    def set(self, path: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def delete(self, path: str) -> None:
        ...

    @abstractmethod
    def query(self, collection: str, filters: Optional[Sequence[Filter]] = None,
              order_by: Optional[Sequence[OrderBy]] = None,
              limit: Optional[int] = None) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def conditional_update(self, path: str, expected: Dict[str, Any],
                           patch: Dict[str, Any]) -> Dict[str, Any]:
        """Apply `patch` only if the stored fields equal `expected`, else WriteConflict."""

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        self.set(f"{collection}/{doc_id}", data)
        return doc_id

    def collections(self) -> List[str]:
        return []

    def exists(self, path: str) -> bool:
        try:
            self.get(path)
        except NotFoundError:
            return False
        return True


class MemoryStore(DocumentStore):
    """In-process store used for development and tests"""

    name = "memory"

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def get(self, path):
        collection, doc_id = split_path(path)
        with self._lock:
            doc = self._collections.get(collection, {}).get(doc_id)
            if doc is None:
                raise NotFoundError(path)
            return {"id": doc_id, **copy.deepcopy(doc)}

    def set(self, path, data):
        collection, doc_id = split_path(path)
        data = {k: v for k, v in data.items() if k != "id"}
        with self._lock:
            self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(data)

    def delete(self, path):
        collection, doc_id = split_path(path)
        with self._lock:
            self._collections.get(collection, {}).pop(doc_id, None)

    def query(self, collection, filters=None, order_by=None, limit=None):
        collection = collection.strip("/")
        with self._lock:
            docs = [
                {"id": doc_id, **copy.deepcopy(doc)}
                for doc_id, doc in self._collections.get(collection, {}).items()
            ]
        for field, op, value in filters or ():
            check = _OPS[op]
            docs = [d for d in docs if check(d.get(field), value)]
        # Stable sorts applied from the last key to the first
        for field, direction in reversed(list(order_by or ())):
            docs.sort(key=lambda d: (d.get(field) is None, d.get(field)), reverse=direction == "desc")
        if limit is not None:
            docs = docs[:limit]
        return docs

    def conditional_update(self, path, expected, patch):
        collection, doc_id = split_path(path)
        with self._lock:
            doc = self._collections.get(collection, {}).get(doc_id)
            if doc is None:
                raise NotFoundError(path)
            if any(doc.get(k) != v for k, v in expected.items()):
                raise WriteConflict(path, expected)
            doc.update(copy.deepcopy(patch))
            return {"id": doc_id, **copy.deepcopy(doc)}

    def collections(self) -> List[str]:
        with self._lock:
            return sorted(c for c, docs in self._collections.items() if docs)


class MongoStore(DocumentStore):
    """
    One MongoDB collection per collection path, named by joining the path
    segments with dots ("listings.active.<itemId>.bidders").
    """

    name = "mongo"

    def __init__(self, url: str, database_name: str, client: Optional[MongoClient] = None):
        self.client = client or MongoClient(url, tz_aware=True)
        self.db = self.client[database_name]

    def _collection(self, collection: str):
        return self.db[collection.strip("/").replace("/", ".")]

    @staticmethod
    def _to_dict(doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id"))
        return doc

    def get(self, path):
        collection, doc_id = split_path(path)
        try:
            doc = self._collection(collection).find_one({"_id": doc_id})
        except PyMongoError as e:
            raise StoreUnavailable(f"get {path}: {e}") from e
        if doc is None:
            raise NotFoundError(path)
        return self._to_dict(doc)

    def set(self, path, data):
        collection, doc_id = split_path(path)
        body = {k: v for k, v in data.items() if k != "id"}
        try:
            self._collection(collection).replace_one({"_id": doc_id}, body, upsert=True)
        except PyMongoError as e:
            raise StoreUnavailable(f"set {path}: {e}") from e

    def delete(self, path):
        collection, doc_id = split_path(path)
        try:
            self._collection(collection).delete_one({"_id": doc_id})
        except PyMongoError as e:
            raise StoreUnavailable(f"delete {path}: {e}") from e

    def query(self, collection, filters=None, order_by=None, limit=None):
        criteria: Dict[str, Any] = {}
        mongo_ops = {"==": "$eq", "!=": "$ne", "<": "$lt", "<=": "$lte", ">": "$gt", ">=": "$gte"}
        for field, op, value in filters or ():
            criteria.setdefault(field, {})[mongo_ops[op]] = value
        try:
            cursor = self._collection(collection).find(criteria)
            if order_by:
                cursor = cursor.sort([(f, DESCENDING if d == "desc" else ASCENDING) for f, d in order_by])
            if limit is not None:
                cursor = cursor.limit(limit)
            return [self._to_dict(d) for d in cursor]
        except PyMongoError as e:
            raise StoreUnavailable(f"query {collection}: {e}") from e

    def conditional_update(self, path, expected, patch):
        collection, doc_id = split_path(path)
        coll = self._collection(collection)
        try:
            result = coll.update_one({"_id": doc_id, **expected}, {"$set": patch})
            if result.matched_count == 0:
                if coll.count_documents({"_id": doc_id}, limit=1) == 0:
                    raise NotFoundError(path)
                raise WriteConflict(path, expected)
            doc = coll.find_one({"_id": doc_id})
        except PyMongoError as e:
            raise StoreUnavailable(f"conditional update {path}: {e}") from e
        return self._to_dict(doc)

    def add(self, collection, data):
        body = {k: v for k, v in data.items() if k != "id"}
        body["_id"] = uuid.uuid4().hex
        try:
            self._collection(collection).insert_one(body)
        except PyMongoError as e:
            raise StoreUnavailable(f"add {collection}: {e}") from e
        return body["_id"]

    def collections(self) -> List[str]:
        return self.db.list_collection_names()


def connect(settings=None) -> DocumentStore:
    settings = settings or get_settings()
    if settings.store_backend == "mongo":
        logger.info("Using MongoDB store %s", settings.database_name)
        return MongoStore(settings.database_url, settings.database_name)
    logger.info("DATABASE_URL not set, using in-memory store")
    return MemoryStore()


db: DocumentStore = connect()


def create_document(collection: str, data, store: Optional[DocumentStore] = None) -> str:
    """Insert a pydantic model or dict into a collection and return its new id"""
    store = store or db
    if hasattr(data, "to_document"):
        data = data.to_document()
    elif hasattr(data, "model_dump"):
        data = data.model_dump()
    return store.add(collection, data)


def get_documents(collection: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, store: Optional[DocumentStore] = None) -> List[Dict[str, Any]]:
    """Equality-filtered listing of a collection"""
    store = store or db
    filters: Iterable[Filter] = [(k, "==", v) for k, v in (filter_dict or {}).items()]
    return store.query(collection, list(filters), limit=limit)
