"""
Database access

Opens the MongoDB connection described by DATABASE_URL / DATABASE_NAME and
wraps it in DocumentStore, the small get/list/create/update surface every
service talks to. Documents come back as plain dicts whose primary key is
exposed as "id".
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

import config

logger = logging.getLogger(__name__)

db: Optional[Database] = None
if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]


class Query:
    """One filter, ordering or paging clause for DocumentStore.list."""

    __slots__ = ("method", "attribute", "value")

    def __init__(self, method: str, attribute: Optional[str] = None, value: Any = None):
        self.method = method
        self.attribute = attribute
        self.value = value

    def __repr__(self):
        return f"Query.{self.method}({self.attribute!r}, {self.value!r})"

    @classmethod
    def equal(cls, attribute: str, value: Any) -> "Query":
        """Match a value, or any of a list of values."""
        return cls("equal", attribute, value)

    @classmethod
    def not_equal(cls, attribute: str, value: Any) -> "Query":
        return cls("not_equal", attribute, value)

    @classmethod
    def greater_than(cls, attribute: str, value: Any) -> "Query":
        return cls("greater_than", attribute, value)

    @classmethod
    def less_than(cls, attribute: str, value: Any) -> "Query":
        return cls("less_than", attribute, value)

    @classmethod
    def limit(cls, count: int) -> "Query":
        return cls("limit", value=count)

    @classmethod
    def offset(cls, count: int) -> "Query":
        return cls("offset", value=count)

    @classmethod
    def order_asc(cls, attribute: str) -> "Query":
        return cls("order_asc", attribute)

    @classmethod
    def order_desc(cls, attribute: str) -> "Query":
        return cls("order_desc", attribute)

    @property
    def is_membership(self) -> bool:
        return isinstance(self.value, (list, tuple, set, frozenset))


def _key(attribute: str) -> str:
    return "_id" if attribute == "id" else attribute


def compile_queries(queries: Iterable[Query]) -> Tuple[Dict[str, Any], List[Tuple[str, int]], int, int]:
    """Translate queries into a pymongo (filter, sort, skip, limit) tuple."""
    clauses: List[Dict[str, Any]] = []
    sort: List[Tuple[str, int]] = []
    skip = 0
    limit = 0
    for query in queries:
        if query.method == "limit":
            limit = int(query.value)
            continue
        if query.method == "offset":
            skip = int(query.value)
            continue
        key = _key(query.attribute)
        if query.method == "order_asc":
            sort.append((key, ASCENDING))
        elif query.method == "order_desc":
            sort.append((key, DESCENDING))
        elif query.method == "equal":
            clauses.append({key: {"$in": list(query.value)}} if query.is_membership else {key: query.value})
        elif query.method == "not_equal":
            clauses.append({key: {"$nin": list(query.value)}} if query.is_membership else {key: {"$ne": query.value}})
        elif query.method == "greater_than":
            clauses.append({key: {"$gt": query.value}})
        elif query.method == "less_than":
            clauses.append({key: {"$lt": query.value}})
        else:
            raise ValueError(f"Unsupported query method: {query.method}")

    spec: Dict[str, Any] = {}
    for clause in clauses:
        (key, condition), = clause.items()
        if key in spec:
            # Two conditions on one field: fall back to an explicit $and.
            return {"$and": clauses}, sort, skip, limit
        spec[key] = condition
    return spec, sort, skip, limit


def _has_empty_membership(queries: Iterable[Query]) -> bool:
    return any(q.method == "equal" and q.is_membership and not q.value for q in queries)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_dict(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True)
    else:
        doc = dict(data)
    doc.pop("id", None)
    return doc


def _serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


class DocumentStore:
    """Generic CRUD over named collections of the configured database."""

    def __init__(self, database: Database):
        self.database = database

    def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        return _serialize(self.database[collection].find_one({"_id": document_id}))

    def list(self, collection: str, queries: Iterable[Query] = ()) -> List[Dict[str, Any]]:
        queries = list(queries)
        if _has_empty_membership(queries):
            logger.debug("Skipping %s lookup with an empty membership filter", collection)
            return []
        spec, sort, skip, limit = compile_queries(queries)
        cursor = self.database[collection].find(spec)
        if sort:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return [_serialize(doc) for doc in cursor]

    def first(self, collection: str, queries: Iterable[Query]) -> Optional[Dict[str, Any]]:
        docs = self.list(collection, [*queries, Query.limit(1)])
        return docs[0] if docs else None

    def create(
        self,
        collection: str,
        data: Union[BaseModel, Dict[str, Any]],
        document_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        doc = _to_dict(data)
        doc["_id"] = document_id or str(ObjectId())
        doc["created_at"] = doc["updated_at"] = _now()
        self.database[collection].insert_one(doc)
        return _serialize(doc)

    def update(
        self,
        collection: str,
        document_id: str,
        data: Dict[str, Any],
        where: Iterable[Query] = (),
    ) -> Optional[Dict[str, Any]]:
        """Set fields on one document; None if it is missing or fails `where`."""
        spec, _, _, _ = compile_queries(where)
        if "_id" in spec or "$and" in spec:
            spec = {"$and": [{"_id": document_id}, spec]}
        else:
            spec["_id"] = document_id
        doc = self.database[collection].find_one_and_update(
            spec,
            {"$set": {**_to_dict(data), "updated_at": _now()}},
            return_document=ReturnDocument.AFTER,
        )
        return _serialize(doc)

    def update_many(self, collection: str, queries: Iterable[Query], data: Dict[str, Any]) -> int:
        queries = list(queries)
        if _has_empty_membership(queries):
            return 0
        spec, _, _, _ = compile_queries(queries)
        result = self.database[collection].update_many(spec, {"$set": {**data, "updated_at": _now()}})
        return result.matched_count

    def upsert(
        self,
        collection: str,
        queries: Iterable[Query],
        data: Optional[Dict[str, Any]] = None,
        defaults: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Create the document matching `queries` if absent, then set `data` on it.

        `defaults` are written only on insert. Returns True when a new
        document was created. Inserted rows get a server-generated key unless
        `queries` pins the id.
        """
        spec, _, _, _ = compile_queries(queries)
        data = dict(data or {})
        on_insert = {k: v for k, v in (defaults or {}).items() if k not in data}
        on_insert["created_at"] = _now()
        result = self.database[collection].update_one(
            spec,
            {"$set": {**data, "updated_at": _now()}, "$setOnInsert": on_insert},
            upsert=True,
        )
        return result.upserted_id is not None

    def increment(
        self,
        collection: str,
        document_id: str,
        field: str,
        amount: int = 1,
        below: Optional[int] = None,
    ) -> bool:
        """
        Atomically add `amount` to a numeric field.

        With `below`, the increment only applies while the current value is
        under that ceiling. Negative amounts only apply while the value is
        positive, so counters stepped down by one never drop below zero.
        Returns whether the document was changed.
        """
        spec: Dict[str, Any] = {"_id": document_id}
        if below is not None:
            spec["$or"] = [{field: {"$lt": below}}, {field: {"$exists": False}}]
        if amount < 0:
            spec[field] = {"$gt": 0}
        result = self.database[collection].update_one(
            spec, {"$inc": {field: amount}, "$set": {"updated_at": _now()}}
        )
        return result.matched_count == 1
