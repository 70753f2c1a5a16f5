from typing import Optional

from fastapi import APIRouter, Depends, Query

from pettapp.errors import PetTappError
from pettapp.models import (
    BUSINESS_TYPES,
    Business,
    BusinessCreateRequest,
    ItemResponse,
    ListResponse,
    LocationUpdateRequest,
    MessageResponse,
)
from pettapp.routers.common import _raise_http_error, get_directory
from pettapp.services.directory import Directory, SearchPage
from pettapp.services.geo_query import BUSINESS, build_search_query

router = APIRouter(tags=["businesses"])


def _list_response(page: SearchPage[Business]) -> ListResponse[Business]:
    return ListResponse[Business](data=page.items, pagination=page.pagination())


@router.get("/search", response_model=ListResponse[Business])
def search_businesses(
    latitude: Optional[float] = Query(default=None),
    longitude: Optional[float] = Query(default=None),
    radius: Optional[float] = Query(default=None, description="kilometers"),
    business_type: Optional[str] = Query(default=None, alias="businessType"),
    category: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None),
    city: Optional[str] = Query(default=None),
    page: Optional[int] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    directory: Directory = Depends(get_directory),
):
    try:
        query = build_search_query(
            BUSINESS,
            latitude=latitude,
            longitude=longitude,
            radius=radius,
            category=business_type or category,
            search=search,
            city=city,
            page=page,
            limit=limit,
            settings=directory.settings,
        )
        return _list_response(directory.search_businesses(query))
    except PetTappError as exc:
        _raise_http_error(exc)


@router.get("", response_model=ListResponse[Business])
def list_businesses(
    business_type: Optional[str] = Query(default=None, alias="businessType"),
    search: Optional[str] = Query(default=None),
    city: Optional[str] = Query(default=None),
    page: Optional[int] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    directory: Directory = Depends(get_directory),
):
    try:
        query = build_search_query(
            BUSINESS,
            category=business_type,
            search=search,
            city=city,
            page=page,
            limit=limit,
            settings=directory.settings,
        )
        return _list_response(directory.search_businesses(query))
    except PetTappError as exc:
        _raise_http_error(exc)


@router.get("/types")
def business_types():
    return {"success": True, "data": list(BUSINESS_TYPES)}


@router.get("/{business_id}", response_model=ItemResponse[Business])
def get_business(business_id: str, directory: Directory = Depends(get_directory)):
    try:
        return ItemResponse[Business](data=directory.get_business(business_id))
    except PetTappError as exc:
        _raise_http_error(exc)


@router.post("", response_model=ItemResponse[Business], status_code=201)
def create_business(request: BusinessCreateRequest, directory: Directory = Depends(get_directory)):
    try:
        business = directory.create_business(request)
    except PetTappError as exc:
        _raise_http_error(exc)
    return ItemResponse[Business](message="Business created; pending verification", data=business)


@router.put("/{business_id}/location", response_model=ItemResponse[Business])
def update_business_location(
    business_id: str,
    request: LocationUpdateRequest,
    directory: Directory = Depends(get_directory),
):
    try:
        business = directory.set_business_location(business_id, request.location)
    except PetTappError as exc:
        _raise_http_error(exc)
    message = "Location updated" if request.location is not None else "Location cleared"
    return ItemResponse[Business](message=message, data=business)


@router.post("/{business_id}/verify", response_model=ItemResponse[Business])
def verify_business(business_id: str, directory: Directory = Depends(get_directory)):
    try:
        return ItemResponse[Business](message="Business verified", data=directory.verify_business(business_id))
    except PetTappError as exc:
        _raise_http_error(exc)


@router.delete("/{business_id}", response_model=MessageResponse)
def deactivate_business(business_id: str, directory: Directory = Depends(get_directory)):
    try:
        directory.deactivate_business(business_id)
    except PetTappError as exc:
        _raise_http_error(exc)
    return MessageResponse(message="Business deactivated")
