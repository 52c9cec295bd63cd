import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tiresync.api.endpoints import cache, fetch_jobs, health, price_rules, supplier_products, sync
from tiresync.db import engine
from tiresync.exceptions import (
    ConcurrencyConflict,
    ConfigurationError,
    InvalidJobTransition,
    NotFoundError,
    TireSyncError,
)
from tiresync.models import Base

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)

app = FastAPI(title="TireSync")

app.include_router(health.router, prefix="/api/health", tags=["Health"])
app.include_router(fetch_jobs.router, prefix="/api/fetch-jobs", tags=["Fetch Jobs"])
app.include_router(sync.router, prefix="/api/sync", tags=["Sync"])
app.include_router(price_rules.router, prefix="/api/price-rules", tags=["Price Rules"])
app.include_router(supplier_products.router, prefix="/api/supplier-products", tags=["Supplier Products"])
app.include_router(cache.router, prefix="/api/cache", tags=["Cache"])


EXCEPTION_STATUS_CODES: dict[type[TireSyncError], int] = {
    ConcurrencyConflict: 409,
    InvalidJobTransition: 409,
    NotFoundError: 404,
    ConfigurationError: 503,
}


def _error_response(status_code: int, exc: TireSyncError) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "error": exc.to_dict()})


for _exc_class, _status_code in EXCEPTION_STATUS_CODES.items():
    app.add_exception_handler(
        _exc_class,
        lambda request, exc, status_code=_status_code: _error_response(status_code, exc),
    )


@app.exception_handler(ValueError)
def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.on_event("startup")
def on_startup() -> None:
    if os.getenv("DB_AUTO_CREATE_TABLES", "").strip() in ("1", "true", "TRUE", "yes", "YES"):
        Base.metadata.create_all(bind=engine)
