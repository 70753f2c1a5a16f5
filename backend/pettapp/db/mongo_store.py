import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

from bson import ObjectId
from pymongo import GEOSPHERE, MongoClient
from pymongo import errors as mongo_errors

from pettapp.db.base import DEFAULT_LOCK_TTL_SECONDS, DocumentStore, GeoNear, IndexInfo, SortSpec, geo_index_name
from pettapp.errors import (
    ConflictError,
    GeoIndexMissingError,
    InvalidDocumentError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)

LOCKS_COLLECTION = "maintenance_locks"

INDEX_NOT_FOUND = 27
NAMESPACE_NOT_FOUND = 26
INDEX_OPTIONS_CONFLICT = 85
INDEX_KEY_SPECS_CONFLICT = 86
NO_QUERY_EXECUTION_PLANS = 291
CANNOT_EXTRACT_GEO_KEYS = 16755


def build_geo_near_pipeline(geo: GeoNear, filter: Dict[str, Any], skip: int, limit: int) -> List[Dict[str, Any]]:
    return [
        {
            "$geoNear": {
                "near": geo.near,
                "key": geo.key,
                "distanceField": "distance",
                "maxDistance": geo.max_distance_m,
                "spherical": True,
                "query": filter,
            }
        },
        {"$sort": {"distance": 1, "_id": 1}},
        {
            "$facet": {
                "data": [{"$skip": skip}, {"$limit": limit}],
                "total": [{"$count": "count"}],
            }
        },
    ]


def _object_id(doc_id: Any) -> Any:
    if isinstance(doc_id, str) and ObjectId.is_valid(doc_id):
        return ObjectId(doc_id)
    return doc_id


def _export(document: Dict[str, Any]) -> Dict[str, Any]:
    document["_id"] = str(document["_id"])
    return document


class MongoDocumentStore(DocumentStore):
    backend_name = "mongo"

    def __init__(self, client: MongoClient, db_name: str):
        self._client = client
        self._db = client[db_name]

    @classmethod
    def from_uri(cls, uri: str, db_name: str, timeout_ms: int = 5000) -> "MongoDocumentStore":
        client = MongoClient(uri, serverSelectionTimeoutMS=timeout_ms, tz_aware=True)
        logger.info("MongoDB client created for database %s", db_name)
        return cls(client, db_name)

    @contextmanager
    def _driver_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except mongo_errors.DuplicateKeyError as exc:
            raise ConflictError(f"Duplicate key during {operation}") from exc
        except mongo_errors.WriteError as exc:
            if exc.code == CANNOT_EXTRACT_GEO_KEYS:
                raise InvalidDocumentError(str(exc)) from exc
            logger.exception("MongoDB write failed during %s", operation)
            raise StoreUnavailableError(f"MongoDB write failed during {operation}") from exc
        except mongo_errors.ConnectionFailure as exc:
            logger.exception("MongoDB unreachable during %s", operation)
            raise StoreUnavailableError(f"MongoDB unreachable during {operation}") from exc
        except mongo_errors.PyMongoError as exc:
            logger.exception("MongoDB error during %s", operation)
            raise StoreUnavailableError(f"MongoDB error during {operation}") from exc

    def close(self) -> None:
        self._client.close()
        logger.info("MongoDB client closed")

    def ping(self) -> None:
        with self._driver_errors("ping"):
            self._client.admin.command("ping")

    def insert_document(self, collection: str, document: Dict[str, Any]) -> str:
        doc = dict(document)
        if "_id" in doc:
            doc["_id"] = _object_id(doc["_id"])
        with self._driver_errors("insert"):
            result = self._db[collection].insert_one(doc)
        return str(result.inserted_id)

    def find_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._driver_errors("find"):
            document = self._db[collection].find_one({"_id": _object_id(doc_id)})
        return _export(document) if document else None

    def update_document(
        self,
        collection: str,
        doc_id: str,
        set_fields: Optional[Dict[str, Any]] = None,
        unset_fields: Optional[List[str]] = None,
    ) -> bool:
        update: Dict[str, Any] = {}
        if set_fields:
            update["$set"] = dict(set_fields)
        if unset_fields:
            update["$unset"] = {path: "" for path in unset_fields}
        with self._driver_errors("update"):
            if not update:
                return self._db[collection].count_documents({"_id": _object_id(doc_id)}, limit=1) > 0
            result = self._db[collection].update_one({"_id": _object_id(doc_id)}, update)
        return result.matched_count > 0

    def iter_documents(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        with self._driver_errors("scan"):
            for document in self._db[collection].find(filter or {}):
                yield _export(document)

    def count_documents(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> int:
        with self._driver_errors("count"):
            return self._db[collection].count_documents(filter or {})

    def find_page(
        self,
        collection: str,
        filter: Dict[str, Any],
        sort: SortSpec,
        skip: int,
        limit: int,
    ) -> List[Dict[str, Any]]:
        with self._driver_errors("find"):
            cursor = self._db[collection].find(filter).sort(sort).skip(skip).limit(limit)
            return [_export(document) for document in cursor]

    def geo_near_page(
        self,
        collection: str,
        geo: GeoNear,
        filter: Dict[str, Any],
        skip: int,
        limit: int,
    ) -> Tuple[List[Dict[str, Any]], int]:
        pipeline = build_geo_near_pipeline(geo, filter, skip, limit)
        with self._driver_errors("geo search"):
            try:
                results = list(self._db[collection].aggregate(pipeline))
            except mongo_errors.OperationFailure as exc:
                if exc.code == NO_QUERY_EXECUTION_PLANS or "unable to find index" in str(exc).lower():
                    logger.error("No 2dsphere index on %s.%s; run the coordinate migration", collection, geo.key)
                    raise GeoIndexMissingError(collection, geo.key) from exc
                raise
        if not results:
            return [], 0
        facet = results[0]
        counts = facet.get("total") or []
        total = int(counts[0]["count"]) if counts else 0
        return [_export(document) for document in facet.get("data", [])], total

    def list_indexes(self, collection: str) -> List[IndexInfo]:
        with self._driver_errors("list indexes"):
            info = self._db[collection].index_information()
        return [
            IndexInfo(
                name=name,
                key=tuple(tuple(part) for part in spec.get("key", [])),
                sparse=bool(spec.get("sparse", False)),
            )
            for name, spec in info.items()
        ]

    def drop_index(self, collection: str, name: str) -> bool:
        with self._driver_errors("drop index"):
            try:
                self._db[collection].drop_index(name)
            except mongo_errors.OperationFailure as exc:
                if exc.code in (INDEX_NOT_FOUND, NAMESPACE_NOT_FOUND) or "index not found" in str(exc).lower():
                    return False
                raise
        return True

    def create_geo_index(self, collection: str, key: str, sparse: bool = True, name: Optional[str] = None) -> str:
        index_name = name or geo_index_name(key)
        with self._driver_errors("create index"):
            try:
                return self._db[collection].create_index([(key, GEOSPHERE)], sparse=sparse, name=index_name)
            except mongo_errors.OperationFailure as exc:
                if exc.code in (INDEX_OPTIONS_CONFLICT, INDEX_KEY_SPECS_CONFLICT):
                    raise ConflictError(f"Index {index_name} already exists with different options") from exc
                if exc.code == CANNOT_EXTRACT_GEO_KEYS:
                    raise InvalidDocumentError(str(exc)) from exc
                raise

    def acquire_lock(self, name: str, holder: str, ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS) -> bool:
        now = datetime.now(timezone.utc)
        locks = self._db[LOCKS_COLLECTION]
        with self._driver_errors("acquire lock"):
            stale = locks.find_one_and_delete({"_id": name, "expiresAt": {"$lte": now}})
            if stale is not None:
                logger.warning("taking over expired lock %s from %s", name, stale.get("holder"))
            try:
                locks.insert_one(
                    {
                        "_id": name,
                        "holder": holder,
                        "acquiredAt": now,
                        "expiresAt": now + timedelta(seconds=ttl_seconds),
                    }
                )
            except mongo_errors.DuplicateKeyError:
                return False
        return True

    def release_lock(self, name: str, holder: str) -> None:
        with self._driver_errors("release lock"):
            self._db[LOCKS_COLLECTION].delete_one({"_id": name, "holder": holder})

    def break_lock(self, name: str) -> bool:
        with self._driver_errors("break lock"):
            result = self._db[LOCKS_COLLECTION].delete_one({"_id": name})
        return result.deleted_count > 0
