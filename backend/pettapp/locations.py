"""Location shapes as stored on business and service documents.

The canonical stored shape is a GeoJSON point, ``{"type": "Point",
"coordinates": [longitude, latitude]}``. Longitude comes first at the storage
boundary even though callers speak (latitude, longitude) everywhere else.
An unknown location is an absent field, never ``None`` and never ``(0, 0)``.

Older documents carry a bare ``{"latitude": .., "longitude": ..}`` object.
``classify_location`` turns any raw stored value into one of the variants
below so the migration can map each of them explicitly.
"""
import math
from dataclasses import dataclass
from enum import Enum
from numbers import Real
from typing import Any, Dict, Optional, Tuple, Union

MIN_LATITUDE, MAX_LATITUDE = -90.0, 90.0
MIN_LONGITUDE, MAX_LONGITUDE = -180.0, 180.0


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool) and math.isfinite(float(value))


def is_valid_latitude(value: Any) -> bool:
    return _is_number(value) and MIN_LATITUDE <= float(value) <= MAX_LATITUDE


def is_valid_longitude(value: Any) -> bool:
    return _is_number(value) and MIN_LONGITUDE <= float(value) <= MAX_LONGITUDE


@dataclass(frozen=True)
class GeoJsonPoint:
    longitude: float
    latitude: float

    def to_document(self) -> Dict[str, Any]:
        return {"type": "Point", "coordinates": [float(self.longitude), float(self.latitude)]}


@dataclass(frozen=True)
class LatLng:
    """A point in caller order."""

    latitude: float
    longitude: float

    def to_point(self) -> GeoJsonPoint:
        return GeoJsonPoint(longitude=float(self.longitude), latitude=float(self.latitude))


@dataclass(frozen=True)
class LegacyPoint:
    latitude: Any
    longitude: Any

    def reprojectable(self) -> bool:
        return is_valid_latitude(self.latitude) and is_valid_longitude(self.longitude)


@dataclass(frozen=True)
class MalformedLocation:
    raw: Any
    reason: str


@dataclass(frozen=True)
class AbsentLocation:
    pass


ABSENT = AbsentLocation()

LocationShape = Union[GeoJsonPoint, LegacyPoint, MalformedLocation, AbsentLocation]

MISSING: Any = object()


def classify_location(raw: Any = MISSING) -> LocationShape:
    if raw is MISSING:
        return ABSENT
    if raw is None:
        return MalformedLocation(raw, "null location")
    if not isinstance(raw, dict):
        return MalformedLocation(raw, f"unexpected {type(raw).__name__} value")
    if "type" in raw:
        if raw.get("type") != "Point":
            return MalformedLocation(raw, f"unsupported geometry type {raw.get('type')!r}")
        coordinates = raw.get("coordinates")
        if not isinstance(coordinates, (list, tuple)) or len(coordinates) != 2:
            return MalformedLocation(raw, "coordinates must be [longitude, latitude]")
        longitude, latitude = coordinates
        if not is_valid_longitude(longitude) or not is_valid_latitude(latitude):
            return MalformedLocation(raw, "coordinates out of range")
        return GeoJsonPoint(longitude=float(longitude), latitude=float(latitude))
    if "latitude" in raw or "longitude" in raw:
        return LegacyPoint(latitude=raw.get("latitude"), longitude=raw.get("longitude"))
    return MalformedLocation(raw, "no recognizable coordinates")


def read_point(raw: Any = MISSING) -> Optional[GeoJsonPoint]:
    shape = classify_location(raw)
    return shape if isinstance(shape, GeoJsonPoint) else None


class NormalizePolicy(str, Enum):
    REPROJECT = "reproject"
    DROP = "drop"


class LocationAction(str, Enum):
    KEEP = "keep"
    REWRITE = "rewrite"
    REMOVE = "remove"
    NONE = "none"


def canonicalize(shape: LocationShape, policy: NormalizePolicy) -> Tuple[LocationAction, Optional[GeoJsonPoint]]:
    """Map every location variant to what the canonical store should hold."""
    if isinstance(shape, GeoJsonPoint):
        return LocationAction.KEEP, shape
    if isinstance(shape, AbsentLocation):
        return LocationAction.NONE, None
    if isinstance(shape, LegacyPoint):
        if policy is NormalizePolicy.REPROJECT and shape.reprojectable():
            return LocationAction.REWRITE, GeoJsonPoint(
                longitude=float(shape.longitude),
                latitude=float(shape.latitude),
            )
        return LocationAction.REMOVE, None
    return LocationAction.REMOVE, None
