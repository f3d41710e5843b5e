# backend/stockdb/main.py
import logging
import os
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import StockError

from .apps.locations.router import router as locations_router
from .apps.ledger.router import router as ledger_router
from .apps.allocations.router import router as allocations_router
from .apps.receipts.router import router as receipts_router
from .apps.reconciliation.router import router as reconciliation_router

logger = logging.getLogger(__name__)


def _allowed_origins() -> List[str]:
    """
    Parse CORS_ALLOWED_ORIGINS from env.

    Accepts comma-separated origins. If unset, defaults to local dev ports.
    """
    raw = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if raw:
        origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
        if origins:
            return origins
    return [
        "http://127.0.0.1:5173",
        "http://localhost:5173",
        "http://localhost:4173",
    ]


app = FastAPI(title="Stock Ledger API", version="1.0.0")
cors_origins = _allowed_origins()
allow_credentials = "*" not in cors_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StockError)
def handle_stock_error(request: Request, exc: StockError) -> JSONResponse:
    logger.info(
        "Request rejected",
        extra={"path": request.url.path, "code": exc.code, "status_code": exc.status_code},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/", tags=["health"])
def read_root():
    return {"status": "ok", "message": "Stock ledger backend is running"}


@app.get("/health", tags=["health"])
def health():
    return {"status": "ok"}


app.include_router(locations_router)
app.include_router(ledger_router)
app.include_router(allocations_router)
app.include_router(receipts_router)
app.include_router(reconciliation_router)
