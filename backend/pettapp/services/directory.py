import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from pettapp.config import Settings
from pettapp.db.base import DocumentStore
from pettapp.db.matcher import get_path
from pettapp.errors import NotFoundError, StoredDocumentError
from pettapp.locations import read_point
from pettapp.models import (
    Business,
    BusinessCreateRequest,
    BusinessSummary,
    GeoPoint,
    Location,
    Pagination,
    Service,
    ServiceCreateRequest,
)
from pettapp.services.geo_query import (
    BUSINESS_COLLECTION,
    BUSINESS_GEO_KEY,
    SERVICE,
    SERVICE_COLLECTION,
    SearchPlan,
    SearchQuery,
    build_business_plan,
    build_search_query,
    build_service_plan,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


@dataclass
class SearchPage(Generic[T]):
    items: List[T]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def pagination(self) -> Pagination:
        return Pagination(page=self.page, limit=self.limit, total=self.total, pages=self.pages)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _distance_km(document: Dict[str, Any]) -> Optional[float]:
    distance = document.get("distance")
    return round(float(distance) / 1000, 3) if distance is not None else None


def _validated(model: Type[M], data: Dict[str, Any], collection: str) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        logger.error("%s document %s does not fit %s: %s", collection, data.get("id"), model.__name__, exc)
        raise StoredDocumentError(collection, str(data.get("id"))) from exc


def _readable(documents: Iterable[Dict[str, Any]], convert: Callable[[Dict[str, Any]], T]) -> List[T]:
    items = []
    for document in documents:
        try:
            items.append(convert(document))
        except StoredDocumentError:
            continue
    return items


def _address_from_document(raw: Any) -> Dict[str, Any]:
    address = dict(raw) if isinstance(raw, dict) else {}
    # Only canonical points are exposed; anything else reads as "no location".
    point = read_point(get_path(address, "coordinates"))
    address.pop("coordinates", None)
    if point is not None:
        address["coordinates"] = GeoPoint.from_point(point)
    return address


def business_from_document(document: Dict[str, Any]) -> Business:
    data = {key: value for key, value in document.items() if key not in {"_id", "distance"}}
    data["id"] = str(document["_id"])
    data["address"] = _address_from_document(document.get("address"))
    data["distanceKm"] = _distance_km(document)
    return _validated(Business, data, BUSINESS_COLLECTION)


def business_summary_from_document(document: Dict[str, Any]) -> BusinessSummary:
    return _validated(
        BusinessSummary,
        {
            "id": str(document["_id"]),
            "businessName": document.get("businessName", ""),
            "businessType": document.get("businessType", "other"),
            "address": _address_from_document(document.get("address")),
            "ratings": document.get("ratings") or {},
        },
        BUSINESS_COLLECTION,
    )


def service_from_document(document: Dict[str, Any], business: Optional[BusinessSummary] = None) -> Service:
    data = {key: value for key, value in document.items() if key not in {"_id", "distance", "location"}}
    data["id"] = str(document["_id"])
    point = read_point(get_path(document, "location.coordinates"))
    if point is not None:
        data["location"] = {"coordinates": GeoPoint.from_point(point)}
    data["distanceKm"] = _distance_km(document)
    data["business"] = business
    return _validated(Service, data, SERVICE_COLLECTION)


class Directory:
    """Business and service lookups over a document store handle."""

    def __init__(self, store: DocumentStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or Settings()

    def _run(self, plan: SearchPlan) -> Tuple[List[Dict[str, Any]], int]:
        logger.debug("search plan: %s", plan)
        if plan.geo is not None:
            return self.store.geo_near_page(plan.collection, plan.geo, plan.filter, plan.skip, plan.limit)
        documents = self.store.find_page(plan.collection, plan.filter, plan.sort, plan.skip, plan.limit)
        return documents, self.store.count_documents(plan.collection, plan.filter)

    def search_businesses(self, query: SearchQuery) -> SearchPage[Business]:
        plan = build_business_plan(query, verified_only=not self.settings.skip_business_verification)
        documents, total = self._run(plan)
        return SearchPage(
            items=_readable(documents, business_from_document),
            page=query.page,
            limit=query.limit,
            total=total,
        )

    def search_services(self, query: SearchQuery) -> SearchPage[Service]:
        documents, total = self._run(build_service_plan(query))
        summaries = self._business_summaries({str(doc.get("businessId", "")) for doc in documents})
        return SearchPage(
            items=_readable(
                documents,
                lambda doc: service_from_document(doc, summaries.get(str(doc.get("businessId", "")))),
            ),
            page=query.page,
            limit=query.limit,
            total=total,
        )

    def list_services_for_business(
        self,
        business_id: str,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> SearchPage[Service]:
        self.get_business(business_id, public=False)
        query = build_search_query(SERVICE, business_id=business_id, page=page, limit=limit, settings=self.settings)
        return self.search_services(query)

    def _business_summaries(self, business_ids: set) -> Dict[str, BusinessSummary]:
        summaries: Dict[str, BusinessSummary] = {}
        for business_id in sorted(business_ids):
            if not business_id:
                continue
            document = self.store.find_document(BUSINESS_COLLECTION, business_id)
            if not document:
                continue
            try:
                summaries[business_id] = business_summary_from_document(document)
            except StoredDocumentError:
                continue
        return summaries

    def _business_document(self, business_id: str, public: bool) -> Dict[str, Any]:
        document = self.store.find_document(BUSINESS_COLLECTION, business_id)
        if not document:
            raise NotFoundError("Business not found")
        if public:
            if not document.get("isActive", True):
                raise NotFoundError("Business not found")
            if not self.settings.skip_business_verification and not document.get("isVerified", False):
                raise NotFoundError("Business not found")
        return document

    def get_business(self, business_id: str, public: bool = True) -> Business:
        return business_from_document(self._business_document(business_id, public))

    def create_business(self, request: BusinessCreateRequest) -> Business:
        now = _now()
        address = request.address.model_dump(by_alias=True, exclude={"location"})
        if request.address.location is not None:
            address["coordinates"] = request.address.location.to_lat_lng().to_point().to_document()
        document = {
            "ownerId": request.owner_id,
            "businessName": request.business_name.strip(),
            "businessType": request.business_type,
            "contactInfo": request.contact_info.model_dump(by_alias=True, exclude_none=True),
            "address": address,
            "businessHours": request.business_hours.model_dump(by_alias=True),
            "credentials": request.credentials.model_dump(by_alias=True, exclude_none=True),
            "ratings": {"averageRating": 0.0, "totalReviews": 0},
            "isVerified": False,
            "isActive": True,
            "createdAt": now,
            "updatedAt": now,
        }
        if request.description:
            document["description"] = request.description.strip()
        business_id = self.store.insert_document(BUSINESS_COLLECTION, document)
        logger.info("business %s created for owner %s", business_id, request.owner_id)
        return self.get_business(business_id, public=False)

    def set_business_location(self, business_id: str, location: Optional[Location]) -> Business:
        self._business_document(business_id, public=False)
        if location is None:
            updated = self.store.update_document(
                BUSINESS_COLLECTION,
                business_id,
                set_fields={"updatedAt": _now()},
                unset_fields=[BUSINESS_GEO_KEY],
            )
        else:
            updated = self.store.update_document(
                BUSINESS_COLLECTION,
                business_id,
                set_fields={
                    BUSINESS_GEO_KEY: location.to_lat_lng().to_point().to_document(),
                    "updatedAt": _now(),
                },
            )
        if not updated:
            raise NotFoundError("Business not found")
        return self.get_business(business_id, public=False)

    def verify_business(self, business_id: str) -> Business:
        if not self.store.update_document(
            BUSINESS_COLLECTION,
            business_id,
            set_fields={"isVerified": True, "updatedAt": _now()},
        ):
            raise NotFoundError("Business not found")
        return self.get_business(business_id, public=False)

    def deactivate_business(self, business_id: str) -> None:
        if not self.store.update_document(
            BUSINESS_COLLECTION,
            business_id,
            set_fields={"isActive": False, "updatedAt": _now()},
        ):
            raise NotFoundError("Business not found")

    def get_service(self, service_id: str) -> Service:
        document = self.store.find_document(SERVICE_COLLECTION, service_id)
        if not document or not document.get("isActive", True):
            raise NotFoundError("Service not found")
        business_id = str(document.get("businessId", ""))
        return service_from_document(document, self._business_summaries({business_id}).get(business_id))

    def create_service(self, request: ServiceCreateRequest) -> Service:
        self._business_document(request.business_id, public=False)
        now = _now()
        document: Dict[str, Any] = {
            "businessId": request.business_id,
            "name": request.name.strip(),
            "category": request.category,
            "description": request.description.strip(),
            "duration": request.duration,
            "price": request.price.model_dump(by_alias=True),
            "availability": request.availability.model_dump(by_alias=True),
            "requirements": request.requirements.model_dump(by_alias=True, exclude_none=True),
            "isActive": True,
            "createdAt": now,
            "updatedAt": now,
        }
        if request.location is not None:
            document["location"] = {"coordinates": request.location.to_lat_lng().to_point().to_document()}
        service_id = self.store.insert_document(SERVICE_COLLECTION, document)
        logger.info("service %s created for business %s", service_id, request.business_id)
        return self.get_service(service_id)

    def deactivate_service(self, service_id: str) -> None:
        if not self.store.update_document(
            SERVICE_COLLECTION,
            service_id,
            set_fields={"isActive": False, "updatedAt": _now()},
        ):
            raise NotFoundError("Service not found")
