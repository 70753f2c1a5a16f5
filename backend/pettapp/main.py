import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.trustedhost import TrustedHostMiddleware

from pettapp.config import Settings, configure_logging, load_settings
from pettapp.db.base import DocumentStore, open_store
from pettapp.errors import StoreUnavailableError
from pettapp.routers import businesses, services
from pettapp.routers.common import UNAVAILABLE_MESSAGE

logger = logging.getLogger(__name__)


def _field_name(loc: tuple) -> str:
    parts = [str(part) for part in loc if part not in ("query", "body", "path")]
    return ".".join(parts) or "request"


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        content = {"success": False, **exc.detail}
    else:
        content = {"success": False, "message": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [{"field": _field_name(tuple(error.get("loc", ()))), "message": error.get("msg", "")} for error in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Validation failed", "errors": errors},
    )


def create_app(store: Optional[DocumentStore] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.store is None
        if owned:
            app.state.store = open_store(settings)
            logger.info("opened %s document store", app.state.store.backend_name)
        try:
            yield
        finally:
            if owned:
                app.state.store.close()
                app.state.store = None

    app = FastAPI(title="PetTapp API", version="0.1.0", lifespan=lifespan)
    app.state.store = store
    app.state.settings = settings

    allow_any_origin = len(settings.cors_origins) == 1 and settings.cors_origins[0] == "*"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        # Browsers reject wildcard CORS with credentials enabled.
        allow_credentials=not allow_any_origin,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if not (len(settings.trusted_hosts) == 1 and settings.trusted_hosts[0] == "*"):
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_hosts)

    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)

    app.include_router(businesses.router, prefix="/businesses")
    app.include_router(services.router, prefix="/services")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/ready")
    def ready(request: Request):
        current = request.app.state.store
        if current is None:
            return JSONResponse(status_code=503, content={"status": "unavailable", "message": UNAVAILABLE_MESSAGE})
        try:
            current.ping()
        except StoreUnavailableError as exc:
            logger.error("readiness check failed: %s", exc)
            return JSONResponse(status_code=503, content={"status": "unavailable", "message": UNAVAILABLE_MESSAGE})
        return {"status": "ready", "store": current.backend_name}

    return app


settings = load_settings()
configure_logging(settings.log_level)
app = create_app(settings=settings)
