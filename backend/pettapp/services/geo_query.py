"""Turns caller search parameters into store-level search plans.

Callers give coordinates as (latitude, longitude) and radii in kilometers.
The plan carries a GeoJSON point in [longitude, latitude] order and a radius
in meters, which is what 2dsphere indexes expect.
"""
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pettapp.config import Settings
from pettapp.db.base import GeoNear, SortSpec
from pettapp.errors import InvalidQueryError
from pettapp.locations import LatLng, is_valid_latitude, is_valid_longitude
from pettapp.models import BUSINESS_TYPES, PET_TYPES, SERVICE_CATEGORIES

BUSINESS = "business"
SERVICE = "service"

BUSINESS_COLLECTION = "businesses"
SERVICE_COLLECTION = "services"

BUSINESS_GEO_KEY = "address.coordinates"
SERVICE_GEO_KEY = "location.coordinates"

DEFAULT_ORDER: SortSpec = [("createdAt", -1), ("_id", 1)]


def km_to_meters(radius_km: float) -> float:
    return radius_km * 1000


@dataclass(frozen=True)
class SearchQuery:
    entity: str
    center: Optional[LatLng] = None
    radius_km: Optional[float] = None
    category: Optional[str] = None
    search: Optional[str] = None
    city: Optional[str] = None
    business_id: Optional[str] = None
    pet_type: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    page: int = 1
    limit: int = 12

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(frozen=True)
class SearchPlan:
    collection: str
    filter: Dict[str, Any]
    sort: SortSpec = field(default_factory=lambda: list(DEFAULT_ORDER))
    skip: int = 0
    limit: int = 12
    geo: Optional[GeoNear] = None


def _finite(value: float, name: str) -> float:
    if value is None or not math.isfinite(value):
        raise InvalidQueryError(name, "must be a finite number")
    return float(value)


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def build_search_query(
    entity: str,
    *,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    radius: Optional[float] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    city: Optional[str] = None,
    business_id: Optional[str] = None,
    pet_type: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    page: Optional[int] = None,
    limit: Optional[int] = None,
    settings: Optional[Settings] = None,
) -> SearchQuery:
    settings = settings or Settings()
    if entity not in {BUSINESS, SERVICE}:
        raise InvalidQueryError("entity", f"must be one of {BUSINESS}, {SERVICE}")

    center = None
    radius_km = None
    if latitude is not None or longitude is not None:
        if latitude is None:
            raise InvalidQueryError("latitude", "is required together with longitude")
        if longitude is None:
            raise InvalidQueryError("longitude", "is required together with latitude")
        if not is_valid_latitude(_finite(latitude, "latitude")):
            raise InvalidQueryError("latitude", "must be between -90 and 90")
        if not is_valid_longitude(_finite(longitude, "longitude")):
            raise InvalidQueryError("longitude", "must be between -180 and 180")
        center = LatLng(latitude=float(latitude), longitude=float(longitude))
        radius_km = settings.default_radius_km if radius is None else _finite(radius, "radius")
        if radius_km <= 0:
            raise InvalidQueryError("radius", "must be greater than 0")
    elif radius is not None and (not math.isfinite(radius) or radius <= 0):
        raise InvalidQueryError("radius", "must be greater than 0")

    category = _clean_text(category)
    if category is not None:
        allowed = BUSINESS_TYPES if entity == BUSINESS else SERVICE_CATEGORIES
        if category not in allowed:
            raise InvalidQueryError("category", f"must be one of {', '.join(allowed)}")

    pet_type = _clean_text(pet_type)
    if pet_type is not None:
        if entity != SERVICE:
            raise InvalidQueryError("petType", "is only supported for services")
        if pet_type not in PET_TYPES:
            raise InvalidQueryError("petType", f"must be one of {', '.join(PET_TYPES)}")

    if min_price is not None or max_price is not None:
        if entity != SERVICE:
            raise InvalidQueryError("price", "price bounds are only supported for services")
        if min_price is not None and _finite(min_price, "minPrice") < 0:
            raise InvalidQueryError("minPrice", "must be 0 or greater")
        if max_price is not None and _finite(max_price, "maxPrice") < 0:
            raise InvalidQueryError("maxPrice", "must be 0 or greater")
        if min_price is not None and max_price is not None and min_price > max_price:
            raise InvalidQueryError("maxPrice", "must be greater than or equal to minPrice")

    page = 1 if page is None else page
    if page < 1:
        raise InvalidQueryError("page", "must be 1 or greater")
    limit = settings.default_page_limit if limit is None else limit
    if limit < 1 or limit > settings.max_page_limit:
        raise InvalidQueryError("limit", f"must be between 1 and {settings.max_page_limit}")

    return SearchQuery(
        entity=entity,
        center=center,
        radius_km=radius_km,
        category=category,
        search=_clean_text(search),
        city=_clean_text(city),
        business_id=_clean_text(business_id),
        pet_type=pet_type,
        min_price=min_price,
        max_price=max_price,
        page=page,
        limit=limit,
    )


def _contains(term: str) -> Dict[str, str]:
    return {"$regex": re.escape(term), "$options": "i"}


def _text_predicate(term: str, fields: List[str]) -> Dict[str, Any]:
    return {"$or": [{name: _contains(term)} for name in fields]}


def _geo_near(query: SearchQuery, key: str) -> Optional[GeoNear]:
    if query.center is None:
        return None
    assert query.radius_km is not None
    return GeoNear(
        key=key,
        near=query.center.to_point().to_document(),
        max_distance_m=km_to_meters(query.radius_km),
    )


def _plan(query: SearchQuery, collection: str, filter: Dict[str, Any], geo_key: str) -> SearchPlan:
    geo = _geo_near(query, geo_key)
    sort: SortSpec = [("distance", 1), ("_id", 1)] if geo else list(DEFAULT_ORDER)
    return SearchPlan(
        collection=collection,
        filter=filter,
        sort=sort,
        skip=query.skip,
        limit=query.limit,
        geo=geo,
    )


def build_business_plan(query: SearchQuery, verified_only: bool = True) -> SearchPlan:
    filter: Dict[str, Any] = {"isActive": True}
    if verified_only:
        filter["isVerified"] = True
    if query.category:
        filter["businessType"] = query.category
    if query.city:
        filter["address.city"] = _contains(query.city)
    if query.search:
        filter.update(_text_predicate(query.search, ["businessName", "description"]))
    return _plan(query, BUSINESS_COLLECTION, filter, BUSINESS_GEO_KEY)


def build_service_plan(query: SearchQuery) -> SearchPlan:
    filter: Dict[str, Any] = {"isActive": True}
    if query.business_id:
        filter["businessId"] = query.business_id
    if query.category:
        filter["category"] = query.category
    if query.pet_type:
        filter["requirements.petTypes"] = query.pet_type
    if query.min_price is not None or query.max_price is not None:
        bounds: Dict[str, float] = {}
        if query.min_price is not None:
            bounds["$gte"] = float(query.min_price)
        if query.max_price is not None:
            bounds["$lte"] = float(query.max_price)
        filter["price.amount"] = bounds
    if query.search:
        filter.update(_text_predicate(query.search, ["name", "description"]))
    return _plan(query, SERVICE_COLLECTION, filter, SERVICE_GEO_KEY)


def build_plan(query: SearchQuery, verified_only: bool = True) -> SearchPlan:
    if query.entity == BUSINESS:
        return build_business_plan(query, verified_only=verified_only)
    return build_service_plan(query)
