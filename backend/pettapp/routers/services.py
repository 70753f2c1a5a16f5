from typing import Optional

from fastapi import APIRouter, Depends, Query

from pettapp.errors import PetTappError
from pettapp.models import (
    SERVICE_CATEGORIES,
    ItemResponse,
    ListResponse,
    MessageResponse,
    Service,
    ServiceCreateRequest,
)
from pettapp.routers.common import _raise_http_error, get_directory
from pettapp.services.directory import Directory, SearchPage
from pettapp.services.geo_query import SERVICE, build_search_query

router = APIRouter(tags=["services"])


def _list_response(page: SearchPage[Service]) -> ListResponse[Service]:
    return ListResponse[Service](data=page.items, pagination=page.pagination())


@router.get("", response_model=ListResponse[Service])
def search_services(
    latitude: Optional[float] = Query(default=None),
    longitude: Optional[float] = Query(default=None),
    radius: Optional[float] = Query(default=None, description="kilometers"),
    category: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None),
    business_id: Optional[str] = Query(default=None, alias="businessId"),
    pet_type: Optional[str] = Query(default=None, alias="petType"),
    min_price: Optional[float] = Query(default=None, alias="minPrice"),
    max_price: Optional[float] = Query(default=None, alias="maxPrice"),
    page: Optional[int] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    directory: Directory = Depends(get_directory),
):
    try:
        query = build_search_query(
            SERVICE,
            latitude=latitude,
            longitude=longitude,
            radius=radius,
            category=category,
            search=search,
            business_id=business_id,
            pet_type=pet_type,
            min_price=min_price,
            max_price=max_price,
            page=page,
            limit=limit,
            settings=directory.settings,
        )
        return _list_response(directory.search_services(query))
    except PetTappError as exc:
        _raise_http_error(exc)


@router.get("/categories")
def service_categories():
    return {"success": True, "data": list(SERVICE_CATEGORIES)}


@router.get("/business/{business_id}", response_model=ListResponse[Service])
def services_for_business(
    business_id: str,
    page: Optional[int] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    directory: Directory = Depends(get_directory),
):
    try:
        return _list_response(directory.list_services_for_business(business_id, page=page, limit=limit))
    except PetTappError as exc:
        _raise_http_error(exc)


@router.get("/{service_id}", response_model=ItemResponse[Service])
def get_service(service_id: str, directory: Directory = Depends(get_directory)):
    try:
        return ItemResponse[Service](data=directory.get_service(service_id))
    except PetTappError as exc:
        _raise_http_error(exc)


@router.post("", response_model=ItemResponse[Service], status_code=201)
def create_service(request: ServiceCreateRequest, directory: Directory = Depends(get_directory)):
    try:
        service = directory.create_service(request)
    except PetTappError as exc:
        _raise_http_error(exc)
    return ItemResponse[Service](message="Service created", data=service)


@router.delete("/{service_id}", response_model=MessageResponse)
def deactivate_service(service_id: str, directory: Directory = Depends(get_directory)):
    try:
        directory.deactivate_service(service_id)
    except PetTappError as exc:
        _raise_http_error(exc)
    return MessageResponse(message="Service deactivated")
