"""
MongoDB access for the delivery service.

Each collection name is the lowercase name of the schema it stores
(Order -> "order", Delivery -> "delivery"). Cross-document references are
kept as string ids; `_id` stays a native ObjectId.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from config import DATABASE_URL, DATABASE_NAME

logger = logging.getLogger(__name__)

# MongoClient connects lazily, so importing this module never blocks on the server.
client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
db = client[DATABASE_NAME]


def utcnow() -> datetime:
    """Current time as naive UTC, the form MongoDB hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_dict(data) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


def to_object_id(value) -> Optional[ObjectId]:
    """Parse a path/body id; None when it is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def find_by_id(target, collection_name: str, doc_id) -> Optional[dict]:
    oid = to_object_id(doc_id)
    if oid is None:
        return None
    return target[collection_name].find_one({"_id": oid})


def create_document(target, collection_name: str, data) -> str:
    doc = _as_dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = target[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(target, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None, sort=None, skip: int = 0) -> List[dict]:
    cursor = target[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize(value):
    """Make a stored document JSON friendly: ObjectId -> str, `_id` -> `id`."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            out["id" if key == "_id" else key] = serialize(item)
        return out
    if isinstance(value, (list, tuple)):
        return [serialize(item) for item in value]
    return value


class UnitOfWork:
    """
    Groups the writes of one operation across collections.

    MongoDB only offers multi-document transactions on replica sets, so each
    write records a compensation instead: inserts are undone by deleting the
    new document, updates by restoring the pre-image. When the `with` block
    raises, compensations run newest first and the exception propagates.
    """

    def __init__(self, target):
        self.db = target
        self._undo: List[tuple] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            logger.warning("Rolling back %d write(s) after %s", len(self._undo), exc_type.__name__)
            self.rollback()
        return False

    def insert(self, collection_name: str, data) -> str:
        inserted_id = create_document(self.db, collection_name, data)
        self._undo.append((collection_name, ObjectId(inserted_id), None))
        return inserted_id

    def update(self, collection_name: str, filter_dict: dict, update: dict) -> bool:
        """Apply `update` to one document matching `filter_dict`.

        Returns False (and records nothing) when no document matched, which is
        how callers detect losing a compare-and-set race.
        """
        before = self.db[collection_name].find_one(filter_dict)
        if before is None:
            return False
        update = dict(update)
        update["$set"] = {**update.get("$set", {}), "updated_at": utcnow()}
        result = self.db[collection_name].update_one({**filter_dict, "_id": before["_id"]}, update)
        if result.matched_count == 0:
            return False
        self._undo.append((collection_name, before["_id"], before))
        return True

    def rollback(self) -> None:
        while self._undo:
            collection_name, doc_id, before = self._undo.pop()
            try:
                if before is None:
                    self.db[collection_name].delete_one({"_id": doc_id})
                else:
                    self.db[collection_name].replace_one({"_id": doc_id}, before)
            except PyMongoError:
                logger.exception("Compensation failed for %s %s", collection_name, doc_id)
