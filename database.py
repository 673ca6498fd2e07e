"""
Database helpers

MongoDB access for the service. Collections are named after the lowercased
schema class (Product -> "product", Order -> "order").

Standalone Mongo servers have no multi-document transactions, so writes that
must be all-or-nothing go through Transaction: every write is filtered on the
document's `version` field (compare-and-swap) and journals an undo step that
runs if the unit fails.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError

from config import get_settings
from errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)

db = None

_settings = get_settings()
if _settings.database_url and _settings.database_name:
    client = MongoClient(_settings.database_url)
    db = client[_settings.database_name]


def get_db():
    """FastAPI dependency returning the configured database handle."""
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data, database=None) -> str:
    """Insert a document with timestamps and a fresh version counter"""
    target = database if database is not None else db
    if target is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    if hasattr(data, "model_dump"):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    data_dict.setdefault("version", 0)
    data_dict["created_at"] = utcnow()
    data_dict["updated_at"] = utcnow()

    result = target[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  database=None) -> List[dict]:
    target = database if database is not None else db
    if target is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    cursor = target[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def parse_object_id(value: Any, label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label}")


def serialize_doc(value: Any) -> Any:
    """Make a Mongo document JSON serializable (ObjectId -> str, `_id` -> `id`)."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [serialize_doc(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            out["id" if key == "_id" else key] = serialize_doc(item)
        return out
    return value


def version_filter(doc: dict) -> dict:
    """Filter matching `doc` only if nobody wrote it since it was read."""
    if "version" in doc:
        return {"_id": doc["_id"], "version": doc["version"]}
    return {"_id": doc["_id"], "version": {"$exists": False}}


class Transaction:
    """
    Unit of work over several collections.

    Use as a context manager. Each write is version-checked; a lost race raises
    ConflictError. If the block raises, the journaled undo steps run in
    reverse order and the exception propagates. Callbacks registered with
    after_commit run only when the block completes; their errors are logged
    and never raised.
    """

    def __init__(self, database):
        self.db = database
        self._undo: List[Callable[[], None]] = []
        self._after_commit: List[Callable[[], None]] = []
        self.committed = False

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            self.rollback()
            return False
        self.commit()
        return False

    def insert(self, collection: str, doc: dict) -> dict:
        doc = dict(doc)
        doc.setdefault("version", 0)
        doc.setdefault("created_at", utcnow())
        doc["updated_at"] = utcnow()
        try:
            result = self.db[collection].insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError(collection, doc.get("_id"))
        doc["_id"] = result.inserted_id
        self._undo.append(lambda: self.db[collection].delete_one({"_id": result.inserted_id}))
        return doc

    def update(self, collection: str, doc: dict, set_fields: Optional[Dict[str, Any]] = None,
               inc: Optional[Dict[str, int]] = None, guard: Optional[dict] = None) -> dict:
        """Versioned update of `doc`; returns the document as written."""
        set_fields = dict(set_fields or {})
        set_fields["updated_at"] = utcnow()
        inc = dict(inc or {})

        query = version_filter(doc)
        if guard:
            query.update(guard)
        result = self.db[collection].update_one(
            query, {"$set": set_fields, "$inc": {**inc, "version": 1}}
        )
        if result.matched_count == 0:
            raise ConflictError(collection, doc["_id"])

        restore = {k: doc[k] for k in set_fields if k in doc}
        drop = {k: "" for k in set_fields if k not in doc}
        undo_inc = {k: -v for k, v in inc.items()}
        undo_inc["version"] = 1

        def undo():
            update = {"$inc": undo_inc}
            if restore:
                update["$set"] = restore
            if drop:
                update["$unset"] = drop
            self.db[collection].update_one({"_id": doc["_id"]}, update)

        self._undo.append(undo)

        written = dict(doc)
        written.update(set_fields)
        for key, delta in inc.items():
            written[key] = doc.get(key, 0) + delta
        written["version"] = doc.get("version", 0) + 1
        return written

    def delete(self, collection: str, doc: dict) -> None:
        result = self.db[collection].delete_one(version_filter(doc))
        if result.deleted_count == 0:
            raise ConflictError(collection, doc["_id"])
        snapshot = dict(doc)
        self._undo.append(lambda: self.db[collection].insert_one(dict(snapshot)))

    def after_commit(self, callback: Callable[[], None]) -> None:
        self._after_commit.append(callback)

    def commit(self) -> None:
        self._undo.clear()
        self.committed = True
        callbacks, self._after_commit = self._after_commit, []
        # the writes are final at this point; a failing callback must not reach the caller
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("After-commit callback failed")

    def rollback(self) -> None:
        steps, self._undo = self._undo, []
        for step in reversed(steps):
            try:
                step()
            except Exception:
                logger.exception("Rollback step failed; continuing with remaining steps")
        self._after_commit.clear()


def run_in_transaction(database, operation: Callable[[Transaction], Any], max_attempts: int = 3,
                       backoff: float = 0.1) -> Any:
    """
    Run `operation` in a fresh Transaction, retrying the whole unit on
    ConflictError with a linearly increasing sleep. The last ConflictError
    propagates once attempts run out. Any other error propagates at once.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            with Transaction(database) as txn:
                return operation(txn)
        except ConflictError as exc:
            if attempt >= max_attempts:
                logger.warning("Giving up after %d attempts: %s", attempt, exc.message)
                raise
            logger.info("Write conflict on %s %s, retrying (attempt %d)", exc.collection, exc.doc_id, attempt)
            time.sleep(backoff * attempt)


def ensure_indexes(database) -> None:
    database["cart"].create_index("user_id", unique=True)
    database["order"].create_index("buyer_id")
    database["order"].create_index("items.product_id")
    database["order"].create_index([("created_at", DESCENDING)])
    database["product"].create_index("farmer_id")
    database["notification"].create_index([("user_id", ASCENDING), ("read", ASCENDING)])
    database["user"].create_index("token")
