"""PaperDesk — FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text

from app.api import policy, trading
from app.config import settings
from app.database import engine
from app.services.errors import (
    BrokerRequestError,
    GatewayUnavailable,
    OrderNotFound,
    OrderRejected,
    PersistenceError,
    TradingError,
    ValidationError,
)

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

_ERROR_STATUS = {
    ValidationError: 422,
    OrderRejected: 400,
    OrderNotFound: 404,
    GatewayUnavailable: 503,
    BrokerRequestError: 502,
    PersistenceError: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: verify DB connection. Shutdown: dispose engine and Redis pool."""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connected successfully")
    except Exception as e:
        logger.error("Database connection failed: %s", e)
        raise
    yield
    await trading.get_exit_guard().close()
    await engine.dispose()
    logger.info("Database engine disposed")


app = FastAPI(
    title="PaperDesk",
    description="Paper-trading dashboard backend: manual orders, position reconciliation, automated exits",
    version="0.3.0",
    lifespan=lifespan,
)

# CORS: restrict in production, allow localhost in development
_allowed_origins = (
    ["http://localhost:8000", "http://localhost:3000", "http://localhost:5173"]
    if settings.app_env == "development"
    else settings.allowed_hosts.split(",")
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Content-Type", "X-API-Key", "X-User-Id"],
)


@app.exception_handler(TradingError)
async def trading_error_handler(request: Request, exc: TradingError) -> JSONResponse:
    """Surface trading errors to the dashboard. Broker rejections keep the raw reason."""
    status_code = next(
        (code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 500
    )
    message = exc.reason if isinstance(exc, OrderRejected) else str(exc)
    if status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, message)
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


app.include_router(trading.router)
app.include_router(policy.router)


@app.get("/metrics")
async def metrics():
    """Prometheus scrape endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/api")
async def api_root():
    return {
        "name": "PaperDesk",
        "version": "0.3.0",
        "status": "running",
        "broker": settings.alpaca_base_url,
    }
