import logging
from typing import NoReturn

from fastapi import HTTPException, Request

from pettapp.errors import (
    ConflictError,
    InvalidDocumentError,
    InvalidQueryError,
    NotFoundError,
    PetTappError,
    StoreUnavailableError,
)
from pettapp.services.directory import Directory

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "Service temporarily unavailable"


def get_directory(request: Request) -> Directory:
    return Directory(request.app.state.store, request.app.state.settings)


def validation_detail(field: str, message: str) -> dict:
    return {"message": f"Invalid {field}", "errors": [{"field": field, "message": message}]}


def _raise_http_error(exc: PetTappError) -> NoReturn:
    if isinstance(exc, InvalidQueryError):
        raise HTTPException(status_code=400, detail=validation_detail(exc.field, exc.message))
    if isinstance(exc, InvalidDocumentError):
        raise HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StoreUnavailableError):
        # Driver detail stays in the logs.
        logger.error("store unavailable: %s", exc)
        raise HTTPException(status_code=503, detail=UNAVAILABLE_MESSAGE)
    logger.error("unhandled directory error: %s", exc)
    raise HTTPException(status_code=500, detail="Internal server error")
