"""
MongoDB persistence for encounter records.

Each record model maps to one collection. A stored row has one key per
declared field (snake_case), `_id` in place of `id`, nested measurement pairs
as sub-documents, and dates/times as ISO strings; unset optionals are null.
Reading a row back gives a record equal to the one written.
"""

import logging
import os
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from errors import NotFoundError, PersistenceError
from schemas import Appointment, Examination, Record, SOAPNote, utcnow

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)

COLLECTIONS: Dict[Type[Record], str] = {
    Appointment: "appointment",
    Examination: "examination",
    SOAPNote: "soap_note",
}

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    try:
        _client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
        db = _client[DATABASE_NAME]
    except PyMongoError as e:
        logger.error("Could not configure MongoDB client: %s", e)
        db = None


def _collection(name: str):
    if db is None:
        raise PersistenceError("Database is not configured (set DATABASE_URL and DATABASE_NAME)")
    return db[name]


def _oid(record_id: str) -> ObjectId:
    try:
        return ObjectId(record_id)
    except (InvalidId, TypeError):
        raise NotFoundError("record", str(record_id))


def to_row(record: Record) -> Dict[str, Any]:
    row = record.model_dump(mode="json", exclude={"id"})
    if record.id:
        row["_id"] = _oid(record.id)
    return row


def from_row(model: Type[R], row: Dict[str, Any]) -> R:
    data = dict(row)
    if "_id" in data:
        data["id"] = str(data.pop("_id"))
    return model.model_validate(data)


# Document level

def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, Record):
        row = to_row(data)
    elif isinstance(data, BaseModel):
        row = data.model_dump()
    else:
        row = dict(data)
    row.pop("_id", None)
    try:
        result = _collection(collection_name).insert_one(row)
    except PyMongoError as e:
        raise PersistenceError(f"Insert into {collection_name} failed: {e}") from e
    return str(result.inserted_id)


def get_document(collection_name: str, record_id: str) -> Dict[str, Any]:
    try:
        doc = _collection(collection_name).find_one({"_id": _oid(record_id)})
    except NotFoundError:
        raise NotFoundError(collection_name, record_id)
    except PyMongoError as e:
        raise PersistenceError(f"Read from {collection_name} failed: {e}") from e
    if not doc:
        raise NotFoundError(collection_name, record_id)
    return doc


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    try:
        cursor = _collection(collection_name).find(filter_dict or {})
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)
    except PyMongoError as e:
        raise PersistenceError(f"Query on {collection_name} failed: {e}") from e


def update_document(collection_name: str, record_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    updates = {k: v for k, v in updates.items() if k != "_id"}
    updates.setdefault("updated_at", utcnow().isoformat())
    try:
        res = _collection(collection_name).update_one({"_id": _oid(record_id)}, {"$set": updates})
    except NotFoundError:
        raise NotFoundError(collection_name, record_id)
    except PyMongoError as e:
        raise PersistenceError(f"Update of {collection_name} failed: {e}") from e
    if res.matched_count == 0:
        raise NotFoundError(collection_name, record_id)
    return get_document(collection_name, record_id)


def count_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
    try:
        return _collection(collection_name).count_documents(filter_dict or {})
    except PyMongoError as e:
        raise PersistenceError(f"Count on {collection_name} failed: {e}") from e


# Record level

def save_record(record: R) -> R:
    """Insert a record without id, otherwise overwrite the stored row."""
    collection_name = COLLECTIONS[type(record)]
    if not record.id:
        new_id = create_document(collection_name, record)
        logger.info("Created %s %s", collection_name, new_id)
        return record.model_copy(update={"id": new_id})
    update_document(collection_name, record.id, to_row(record))
    return record


def load_record(model: Type[R], record_id: str) -> R:
    return from_row(model, get_document(COLLECTIONS[model], record_id))


def find_records(model: Type[R], limit: Optional[int] = None, **filters: Any) -> List[R]:
    query = {k: v for k, v in filters.items() if v is not None}
    return [from_row(model, row) for row in get_documents(COLLECTIONS[model], query, limit=limit)]
