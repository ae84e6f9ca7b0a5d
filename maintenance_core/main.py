"""Main FastAPI application entry point."""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from maintenance_core.api.routes import router
from maintenance_core.api.schemas import ErrorResponse
from maintenance_core.database import Base, engine
from maintenance_core.errors import (
    AlreadyDeleted,
    ConcurrencyConflict,
    CoreError,
    Forbidden,
    InvalidTransition,
    NotDeleted,
    NotFound,
    OperationTimeout,
    TenantMismatch,
    ValidationFailed,
)
from maintenance_core.logging import RequestIdMiddleware, setup_logging
# Import models to register them with SQLAlchemy Base
from maintenance_core.models import domain, history  # noqa: F401

logger = structlog.get_logger(__name__)

STATUS_CODES = {
    NotFound: 404,
    TenantMismatch: 403,
    Forbidden: 403,
    ConcurrencyConflict: 409,
    AlreadyDeleted: 409,
    NotDeleted: 409,
    InvalidTransition: 409,
    ValidationFailed: 422,
    OperationTimeout: 504,
}


def status_code_for(exc: CoreError) -> int:
    for error_class in type(exc).__mro__:
        if error_class in STATUS_CODES:
            return STATUS_CODES[error_class]
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    # Create database tables
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title="Maintenance Core",
    description="Versioned, tenant-isolated, auditable records for facility maintenance.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestIdMiddleware)


@app.exception_handler(CoreError)
async def core_error_handler(request: Request, exc: CoreError):
    status_code = status_code_for(exc)
    logger.info("request_refused", path=request.url.path, error=exc.code, status_code=status_code)
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(
            ErrorResponse(error=exc.code, message=exc.message, details=exc.details, retryable=exc.retryable)
        ),
    )


app.include_router(router, prefix="/api", tags=["maintenance"])


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "maintenance-core"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
