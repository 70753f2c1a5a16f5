from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pettapp.config import Settings

GEO_INDEX_KIND = "2dsphere"
DEFAULT_LOCK_TTL_SECONDS = 3600.0

SortSpec = List[Tuple[str, int]]


def geo_index_name(key: str) -> str:
    return f"{key}_{GEO_INDEX_KIND}"


@dataclass(frozen=True)
class IndexInfo:
    name: str
    key: Tuple[Tuple[str, Any], ...]
    sparse: bool = False

    @property
    def is_geo(self) -> bool:
        return any(kind == GEO_INDEX_KIND for _, kind in self.key)

    def is_geo_on(self, field: str) -> bool:
        return any(name == field and kind == GEO_INDEX_KIND for name, kind in self.key)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "key": [list(part) for part in self.key], "sparse": self.sparse}


@dataclass(frozen=True)
class GeoNear:
    """Radius constraint for a geo search.

    ``near`` is a GeoJSON point (longitude first) and ``max_distance_m`` is in
    meters, the unit 2dsphere indexes measure in.
    """

    key: str
    near: Dict[str, Any]
    max_distance_m: float


class DocumentStore(ABC):
    """A handle on a document database. Close it when done."""

    backend_name = "abstract"

    def __enter__(self) -> "DocumentStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @abstractmethod
    def close(self) -> None: ...

    @abstractmethod
    def ping(self) -> None: ...

    @abstractmethod
    def insert_document(self, collection: str, document: Dict[str, Any]) -> str: ...

    @abstractmethod
    def find_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def update_document(
        self,
        collection: str,
        doc_id: str,
        set_fields: Optional[Dict[str, Any]] = None,
        unset_fields: Optional[List[str]] = None,
    ) -> bool: ...

    @abstractmethod
    def iter_documents(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]: ...

    @abstractmethod
    def count_documents(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> int: ...

    @abstractmethod
    def find_page(
        self,
        collection: str,
        filter: Dict[str, Any],
        sort: SortSpec,
        skip: int,
        limit: int,
    ) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def geo_near_page(
        self,
        collection: str,
        geo: GeoNear,
        filter: Dict[str, Any],
        skip: int,
        limit: int,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Return one page of documents within range plus the total match count.

        Documents come back ordered by ascending ``distance`` (meters), ties
        broken by ``_id``. Documents without a value under ``geo.key`` never
        match.
        """

    @abstractmethod
    def list_indexes(self, collection: str) -> List[IndexInfo]: ...

    @abstractmethod
    def drop_index(self, collection: str, name: str) -> bool:
        """Drop an index by name. Returns False when it did not exist."""

    @abstractmethod
    def create_geo_index(self, collection: str, key: str, sparse: bool = True, name: Optional[str] = None) -> str: ...

    @abstractmethod
    def acquire_lock(self, name: str, holder: str, ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS) -> bool:
        """Take a named lease. A lease past its expiry is taken over."""

    @abstractmethod
    def release_lock(self, name: str, holder: str) -> None: ...

    @abstractmethod
    def break_lock(self, name: str) -> bool:
        """Remove a lease whoever holds it. Returns False when none was held."""


def open_store(settings: Settings) -> DocumentStore:
    if settings.store_backend == "mongo":
        from pettapp.db.mongo_store import MongoDocumentStore

        return MongoDocumentStore.from_uri(
            settings.mongodb_uri,
            settings.mongodb_name,
            timeout_ms=settings.mongodb_timeout_ms,
        )
    from pettapp.db.sqlite_store import SqliteDocumentStore

    return SqliteDocumentStore(db_path=settings.sqlite_path)
