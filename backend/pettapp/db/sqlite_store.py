import copy
import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional, Tuple
from uuid import uuid4

from bson import json_util

from pettapp.db.base import (
    DEFAULT_LOCK_TTL_SECONDS,
    GEO_INDEX_KIND,
    DocumentStore,
    GeoNear,
    IndexInfo,
    SortSpec,
    geo_index_name,
)
from pettapp.db.matcher import get_path, haversine_km, matches, set_path, sort_documents, unset_path
from pettapp.errors import (
    ConflictError,
    GeoIndexMissingError,
    InvalidDocumentError,
    InvalidQueryError,
    StoreUnavailableError,
)
from pettapp.locations import MISSING, GeoJsonPoint, classify_location

logger = logging.getLogger(__name__)

ID_INDEX = IndexInfo(name="_id_", key=(("_id", 1),))


class SqliteDocumentStore(DocumentStore):
    """Document store on a single SQLite file.

    Documents are kept as extended JSON. The index catalog reproduces the
    parts of 2dsphere behavior the directory relies on: geo searches need an
    index on the key, index builds and writes reject malformed points, and
    documents without the field are simply not indexed.
    """

    backend_name = "sqlite"

    def __init__(self, db_path: str):
        self._lock = Lock()
        self._closed = False
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        if self._closed:
            raise StoreUnavailableError("Document store is closed")
        try:
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Cannot open {self.db_path}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as exc:
            conn.rollback()
            logger.exception("SQLite operation failed")
            raise StoreUnavailableError("SQLite operation failed") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS documents (
                        collection TEXT NOT NULL,
                        id TEXT NOT NULL,
                        body TEXT NOT NULL,
                        PRIMARY KEY (collection, id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS indexes (
                        collection TEXT NOT NULL,
                        name TEXT NOT NULL,
                        key_json TEXT NOT NULL,
                        sparse INTEGER NOT NULL DEFAULT 0,
                        PRIMARY KEY (collection, name)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS maintenance_locks (
                        name TEXT PRIMARY KEY,
                        holder TEXT NOT NULL,
                        acquired_at TEXT NOT NULL,
                        expires_at REAL NOT NULL
                    )
                    """
                )

    def close(self) -> None:
        self._closed = True

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _load(self, row: sqlite3.Row) -> Dict[str, Any]:
        document = json_util.loads(row["body"])
        document["_id"] = row["id"]
        return document

    def _dump(self, document: Dict[str, Any]) -> str:
        body = {key: value for key, value in document.items() if key != "_id"}
        return json_util.dumps(body)

    def _all(self, conn: sqlite3.Connection, collection: str) -> List[Dict[str, Any]]:
        rows = conn.execute(
            "SELECT id, body FROM documents WHERE collection = ? ORDER BY id",
            (collection,),
        ).fetchall()
        return [self._load(row) for row in rows]

    def _indexes(self, conn: sqlite3.Connection, collection: str) -> List[IndexInfo]:
        rows = conn.execute(
            "SELECT name, key_json, sparse FROM indexes WHERE collection = ? ORDER BY name",
            (collection,),
        ).fetchall()
        result = [ID_INDEX]
        for row in rows:
            key = tuple(tuple(part) for part in json.loads(row["key_json"]))
            result.append(IndexInfo(name=row["name"], key=key, sparse=bool(row["sparse"])))
        return result

    def _check_geo_values(self, conn: sqlite3.Connection, collection: str, document: Dict[str, Any]) -> None:
        for index in self._indexes(conn, collection):
            for field, kind in index.key:
                if kind != GEO_INDEX_KIND:
                    continue
                value = get_path(document, field)
                if value is MISSING:
                    continue
                shape = classify_location(value)
                if not isinstance(shape, GeoJsonPoint):
                    raise InvalidDocumentError(
                        f"Can't extract geo keys for {collection}.{field} on {document.get('_id')}: {value!r}"
                    )

    def insert_document(self, collection: str, document: Dict[str, Any]) -> str:
        doc = copy.deepcopy(document)
        doc_id = str(doc.get("_id") or uuid4().hex[:24])
        doc["_id"] = doc_id
        with self._lock:
            with self._connect() as conn:
                self._check_geo_values(conn, collection, doc)
                try:
                    conn.execute(
                        "INSERT INTO documents (collection, id, body) VALUES (?, ?, ?)",
                        (collection, doc_id, self._dump(doc)),
                    )
                except sqlite3.IntegrityError as exc:
                    raise ConflictError(f"Duplicate _id {doc_id} in {collection}") from exc
        return doc_id

    def find_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, body FROM documents WHERE collection = ? AND id = ?",
                    (collection, str(doc_id)),
                ).fetchone()
        return self._load(row) if row else None

    def update_document(
        self,
        collection: str,
        doc_id: str,
        set_fields: Optional[Dict[str, Any]] = None,
        unset_fields: Optional[List[str]] = None,
    ) -> bool:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, body FROM documents WHERE collection = ? AND id = ?",
                    (collection, str(doc_id)),
                ).fetchone()
                if not row:
                    return False
                document = self._load(row)
                for path in unset_fields or []:
                    unset_path(document, path)
                for path, value in (set_fields or {}).items():
                    set_path(document, path, copy.deepcopy(value))
                self._check_geo_values(conn, collection, document)
                conn.execute(
                    "UPDATE documents SET body = ? WHERE collection = ? AND id = ?",
                    (self._dump(document), collection, str(doc_id)),
                )
        return True

    def iter_documents(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                documents = self._all(conn, collection)
        for document in documents:
            if matches(document, filter or {}):
                yield document

    def count_documents(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> int:
        return sum(1 for _ in self.iter_documents(collection, filter))

    def find_page(
        self,
        collection: str,
        filter: Dict[str, Any],
        sort: SortSpec,
        skip: int,
        limit: int,
    ) -> List[Dict[str, Any]]:
        ordered = sort_documents(self.iter_documents(collection, filter), sort)
        return ordered[skip : skip + limit]

    def geo_near_page(
        self,
        collection: str,
        geo: GeoNear,
        filter: Dict[str, Any],
        skip: int,
        limit: int,
    ) -> Tuple[List[Dict[str, Any]], int]:
        center = classify_location(geo.near)
        if not isinstance(center, GeoJsonPoint):
            raise InvalidQueryError("location", f"invalid $geoNear point {geo.near!r}")
        with self._lock:
            with self._connect() as conn:
                indexes = self._indexes(conn, collection)
                if not any(index.is_geo_on(geo.key) for index in indexes):
                    raise GeoIndexMissingError(collection, geo.key)
                documents = self._all(conn, collection)

        hits: List[Dict[str, Any]] = []
        for document in documents:
            point = classify_location(get_path(document, geo.key))
            if not isinstance(point, GeoJsonPoint):
                continue
            if not matches(document, filter):
                continue
            distance_m = haversine_km(center.latitude, center.longitude, point.latitude, point.longitude) * 1000
            if distance_m > geo.max_distance_m:
                continue
            document["distance"] = distance_m
            hits.append(document)

        hits.sort(key=lambda doc: (doc["distance"], doc["_id"]))
        return hits[skip : skip + limit], len(hits)

    def list_indexes(self, collection: str) -> List[IndexInfo]:
        with self._lock:
            with self._connect() as conn:
                return self._indexes(conn, collection)

    def drop_index(self, collection: str, name: str) -> bool:
        if name == ID_INDEX.name:
            raise ConflictError("cannot drop _id index")
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM indexes WHERE collection = ? AND name = ?",
                    (collection, name),
                )
                return cursor.rowcount > 0

    def create_geo_index(self, collection: str, key: str, sparse: bool = True, name: Optional[str] = None) -> str:
        index_name = name or geo_index_name(key)
        key_spec = ((key, GEO_INDEX_KIND),)
        with self._lock:
            with self._connect() as conn:
                for existing in self._indexes(conn, collection):
                    if existing.name != index_name:
                        continue
                    if existing.key == key_spec and existing.sparse == sparse:
                        return index_name
                    raise ConflictError(f"Index {index_name} already exists with different options")

                for document in self._all(conn, collection):
                    value = get_path(document, key)
                    if value is MISSING:
                        continue
                    if not isinstance(classify_location(value), GeoJsonPoint):
                        raise InvalidDocumentError(
                            f"Can't extract geo keys for {collection}.{key} on {document['_id']}: {value!r}"
                        )

                conn.execute(
                    "INSERT INTO indexes (collection, name, key_json, sparse) VALUES (?, ?, ?, ?)",
                    (collection, index_name, json.dumps([list(part) for part in key_spec]), int(sparse)),
                )
        return index_name

    def acquire_lock(self, name: str, holder: str, ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS) -> bool:
        now = time.time()
        with self._lock:
            with self._connect() as conn:
                stale = conn.execute(
                    "SELECT holder FROM maintenance_locks WHERE name = ? AND expires_at <= ?",
                    (name, now),
                ).fetchone()
                if stale is not None:
                    logger.warning("taking over expired lock %s from %s", name, stale[0])
                    conn.execute("DELETE FROM maintenance_locks WHERE name = ?", (name,))
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO maintenance_locks (name, holder, acquired_at, expires_at) VALUES (?, ?, ?, ?)",
                    (name, holder, datetime.now(timezone.utc).isoformat(), now + ttl_seconds),
                )
                return cursor.rowcount == 1

    def release_lock(self, name: str, holder: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM maintenance_locks WHERE name = ? AND holder = ?",
                    (name, holder),
                )

    def break_lock(self, name: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM maintenance_locks WHERE name = ?", (name,))
                return cursor.rowcount > 0
