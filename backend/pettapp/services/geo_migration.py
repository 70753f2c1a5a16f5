"""Coordinate migration: legacy ``{latitude, longitude}`` objects to GeoJSON.

The procedure runs five steps against one collection. Each step is safe to
re-run, so a failed run can simply be started again from the top:

1. inspect   - list indexes, find geo indexes on the target field
2. drop      - drop those indexes (absent is fine)
3. normalize - map every stored location to the canonical shape
4. rebuild   - create a sparse 2dsphere index on the target field
5. verify    - re-read the indexes and confirm the sparse geo index exists

A maintenance lock keyed on the collection keeps two runs from overlapping.
The lock is a lease: a run that dies without releasing it blocks others only
until the lease expires, or until an operator breaks it.
"""
import logging
import os
import socket
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, TypeVar

from pettapp.db.base import DEFAULT_LOCK_TTL_SECONDS, GEO_INDEX_KIND, DocumentStore, IndexInfo, geo_index_name
from pettapp.db.matcher import get_path
from pettapp.errors import ConflictError, MigrationStepFailedError, StoreUnavailableError
from pettapp.locations import (
    AbsentLocation,
    GeoJsonPoint,
    LegacyPoint,
    LocationAction,
    LocationShape,
    MalformedLocation,
    NormalizePolicy,
    canonicalize,
    classify_location,
)
from pettapp.services.geo_query import (
    BUSINESS_COLLECTION,
    BUSINESS_GEO_KEY,
    SERVICE_COLLECTION,
    SERVICE_GEO_KEY,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

STEP_NAMES = {1: "inspect", 2: "drop", 3: "normalize", 4: "rebuild", 5: "verify"}


@dataclass(frozen=True)
class GeoFieldSpec:
    """Where a collection keeps its canonical point and where legacy data lived.

    Businesses stored the legacy object at the same path as the GeoJSON point.
    Services kept it one level up, directly under ``location``.
    """

    collection: str
    field: str
    legacy_field: str


GEO_FIELDS: Dict[str, GeoFieldSpec] = {
    BUSINESS_COLLECTION: GeoFieldSpec(BUSINESS_COLLECTION, BUSINESS_GEO_KEY, BUSINESS_GEO_KEY),
    SERVICE_COLLECTION: GeoFieldSpec(SERVICE_COLLECTION, SERVICE_GEO_KEY, "location"),
}


def locate(document: Dict[str, Any], spec: GeoFieldSpec) -> LocationShape:
    shape = classify_location(get_path(document, spec.field))
    if spec.legacy_field != spec.field and isinstance(shape, AbsentLocation):
        container = get_path(document, spec.legacy_field)
        if isinstance(container, dict) and ("latitude" in container or "longitude" in container):
            return LegacyPoint(latitude=container.get("latitude"), longitude=container.get("longitude"))
    return shape


def _candidates_filter(spec: GeoFieldSpec) -> Dict[str, Any]:
    if spec.legacy_field == spec.field:
        return {spec.field: {"$exists": True}}
    return {"$or": [{spec.field: {"$exists": True}}, {spec.legacy_field: {"$exists": True}}]}


@dataclass
class MigrationReport:
    collection: str
    field: str
    policy: str
    indexes_before: List[IndexInfo] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    scanned: int = 0
    kept: int = 0
    reprojected: int = 0
    removed: int = 0
    index: Optional[IndexInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["indexes_before"] = [index.to_dict() for index in self.indexes_before]
        payload["index"] = self.index.to_dict() if self.index else None
        return payload


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class CoordinateMigration:
    def __init__(
        self,
        store: DocumentStore,
        spec: GeoFieldSpec,
        policy: NormalizePolicy = NormalizePolicy.REPROJECT,
        holder: Optional[str] = None,
        lock_ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS,
    ):
        self.store = store
        self.spec = spec
        self.policy = NormalizePolicy(policy)
        self.holder = holder or default_holder()
        self.lock_ttl_seconds = lock_ttl_seconds

    @property
    def lock_name(self) -> str:
        return f"geo-migration:{self.spec.collection}"

    @property
    def index_name(self) -> str:
        return geo_index_name(self.spec.field)

    def run(self) -> MigrationReport:
        if not self.store.acquire_lock(self.lock_name, self.holder, self.lock_ttl_seconds):
            raise ConflictError(f"Coordinate migration already running on {self.spec.collection}")
        logger.info(
            "coordinate migration on %s.%s (policy=%s, holder=%s)",
            self.spec.collection,
            self.spec.field,
            self.policy.value,
            self.holder,
        )
        report = MigrationReport(collection=self.spec.collection, field=self.spec.field, policy=self.policy.value)
        try:
            report.indexes_before = self._step(1, self.inspect)
            report.dropped = self._step(2, self.drop, report.indexes_before)
            self._step(3, self.normalize, report)
            self._step(4, self.rebuild)
            report.index = self._step(5, self.verify)
        finally:
            self._release_lock()
        logger.info(
            "coordinate migration on %s done: scanned=%d kept=%d reprojected=%d removed=%d",
            self.spec.collection,
            report.scanned,
            report.kept,
            report.reprojected,
            report.removed,
        )
        return report

    def _release_lock(self) -> None:
        try:
            self.store.release_lock(self.lock_name, self.holder)
        except StoreUnavailableError:
            # Any error already in flight wins; the lease lapses on its own.
            logger.exception(
                "[%s] could not release lock %s; it expires after %ss",
                self.spec.collection,
                self.lock_name,
                self.lock_ttl_seconds,
            )

    def break_lock(self) -> bool:
        broken = self.store.break_lock(self.lock_name)
        if broken:
            logger.warning("[%s] broke lock %s", self.spec.collection, self.lock_name)
        return broken

    def _step(self, number: int, func: Callable[..., T], *args: Any) -> T:
        name = STEP_NAMES[number]
        logger.info("[%s] step %d/5 %s", self.spec.collection, number, name)
        try:
            return func(*args)
        except MigrationStepFailedError:
            raise
        except Exception as exc:
            logger.exception("[%s] step %d (%s) failed", self.spec.collection, number, name)
            raise MigrationStepFailedError(number, name, exc) from exc

    def inspect(self) -> List[IndexInfo]:
        indexes = self.store.list_indexes(self.spec.collection)
        for index in indexes:
            logger.info("[%s] index %s key=%s sparse=%s", self.spec.collection, index.name, index.key, index.sparse)
        return indexes

    def drop(self, indexes: List[IndexInfo]) -> List[str]:
        targets = [index.name for index in indexes if index.is_geo_on(self.spec.field)]
        if self.index_name not in targets:
            targets.append(self.index_name)
        dropped = []
        for name in targets:
            if self.store.drop_index(self.spec.collection, name):
                logger.info("[%s] dropped index %s", self.spec.collection, name)
                dropped.append(name)
            else:
                logger.info("[%s] index %s not present", self.spec.collection, name)
        return dropped

    def normalize(self, report: MigrationReport) -> None:
        spec = self.spec
        for document in self.store.iter_documents(spec.collection, _candidates_filter(spec)):
            report.scanned += 1
            shape = locate(document, spec)
            action, point = canonicalize(shape, self.policy)
            if action is LocationAction.KEEP:
                report.kept += 1
                continue
            if action is LocationAction.NONE:
                continue
            if action is LocationAction.REWRITE:
                assert point is not None
                unset_fields = []
                if spec.legacy_field != spec.field:
                    unset_fields = [f"{spec.legacy_field}.latitude", f"{spec.legacy_field}.longitude"]
                self.store.update_document(
                    spec.collection,
                    document["_id"],
                    set_fields={spec.field: point.to_document()},
                    unset_fields=unset_fields,
                )
                report.reprojected += 1
                continue
            unset_path = spec.legacy_field if isinstance(shape, LegacyPoint) else spec.field
            self.store.update_document(spec.collection, document["_id"], unset_fields=[unset_path])
            report.removed += 1
            logger.info("[%s] removed location from %s (%s)", spec.collection, document["_id"], _describe(shape))

    def rebuild(self) -> str:
        return self.store.create_geo_index(self.spec.collection, self.spec.field, sparse=True, name=self.index_name)

    def verify(self) -> IndexInfo:
        expected_key = ((self.spec.field, GEO_INDEX_KIND),)
        for index in self.store.list_indexes(self.spec.collection):
            if index.name == self.index_name and index.key == expected_key and index.sparse:
                break
        else:
            raise MigrationStepFailedError(5, STEP_NAMES[5], LookupError(f"sparse index {self.index_name} not found"))
        remaining = sum(
            1
            for document in self.store.iter_documents(self.spec.collection, _candidates_filter(self.spec))
            if isinstance(locate(document, self.spec), (LegacyPoint, MalformedLocation))
        )
        if remaining:
            raise MigrationStepFailedError(
                5,
                STEP_NAMES[5],
                ValueError(f"{remaining} documents still hold non-canonical locations"),
            )
        return index


def _describe(shape: LocationShape) -> str:
    if isinstance(shape, LegacyPoint):
        return f"legacy point lat={shape.latitude!r} lng={shape.longitude!r}"
    if isinstance(shape, MalformedLocation):
        return shape.reason
    return type(shape).__name__


def shape_counts(store: DocumentStore, spec: GeoFieldSpec) -> Dict[str, int]:
    counts: Counter = Counter()
    for document in store.iter_documents(spec.collection):
        shape = locate(document, spec)
        if isinstance(shape, GeoJsonPoint):
            counts["geojson"] += 1
        elif isinstance(shape, LegacyPoint):
            counts["legacy"] += 1
        elif isinstance(shape, MalformedLocation):
            counts["malformed"] += 1
        else:
            counts["absent"] += 1
    return {key: counts.get(key, 0) for key in ("geojson", "legacy", "malformed", "absent")}


def diagnose(store: DocumentStore, spec: GeoFieldSpec) -> Dict[str, Any]:
    """Read-only view of a collection's geo indexes and location shapes."""
    indexes = store.list_indexes(spec.collection)
    return {
        "collection": spec.collection,
        "field": spec.field,
        "indexes": [index.to_dict() for index in indexes],
        "geo_index": next((index.to_dict() for index in indexes if index.is_geo_on(spec.field)), None),
        "shapes": shape_counts(store, spec),
    }
