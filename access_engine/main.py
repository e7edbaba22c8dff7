from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from access_engine.core import config
from access_engine.core.database.engine import AsyncSessionLocal, init_db
from access_engine.core.exceptions import (
    AccessEngineError,
    ConflictError,
    CycleError,
    InvalidRequestError,
    NotFoundError,
    ResolutionError,
)
from access_engine.features.permissions.routes import router as permission_router
from access_engine.features.permissions.service import create_access_engine
from access_engine.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="Access Decision Engine",
    description="RBAC with role inheritance, ABAC conditions and audited decisions",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.access_engine.features."), timing=timing, tags=tags))


app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    origins = [config.ALLOW_ORIGIN]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        key = error["loc"][-1]
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


_STATUS_CODES = {
    InvalidRequestError: 400,
    NotFoundError: 404,
    CycleError: 409,
    ConflictError: 409,
    ResolutionError: 500,
}


@app.exception_handler(AccessEngineError)
async def access_engine_exception_handler(_request: Request, exc: AccessEngineError):
    status_code = next((code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500)
    if status_code >= 500:
        log.error("Access engine failure: %s", exc.message)
        return JSONResponse(status_code=status_code, content={"error": "Failed to check permission"})
    log.info("%s: %s", type(exc).__name__, exc.message)
    return JSONResponse(status_code=status_code, content={"error": exc.message})


@app.on_event("startup")
async def startup():
    """Initialize database and load the policy on application startup."""
    log.info("Initializing database...")
    await init_db()
    engine = create_access_engine(AsyncSessionLocal)
    await engine.start()
    app.state.access_engine = engine
    log.info("Access engine ready")


@app.on_event("shutdown")
async def shutdown():
    """Drain pending audit entries."""
    engine = getattr(app.state, "access_engine", None)
    if engine is not None:
        await engine.stop()


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Access Decision Engine API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "The caller is identified by the X-User-ID header set by the identity layer",
            "protected_endpoints": [
                "/permissions/roles/*", "/permissions/grants/*",
                "/permissions/users/{id}/audit", "/permissions/users/{id}/permissions",
            ],
            "self_service_endpoints": ["/permissions/decide", "/permissions/users/{id}/roles"]
        },
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Permission routes (RBAC/ABAC)
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])
