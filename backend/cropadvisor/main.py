"""FastAPI application entry point for CropAdvisor."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from cropadvisor.agents.analysis_agent import AnalysisAgent
from cropadvisor.api.routes import router
from cropadvisor.config import Settings, settings
from cropadvisor.db import AnalysisStore, db_path_from_url
from cropadvisor.errors import AnalysisError
from cropadvisor.models.gemini import GeminiVisionWrapper
from cropadvisor.models.local_vlm import LocalVisionWrapper
from cropadvisor.services.payment import GaslessPaymentCoordinator, LedgerPaymentCoordinator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Service construction
# ---------------------------------------------------------------------------


def build_inference(config: Settings) -> GeminiVisionWrapper | LocalVisionWrapper:
    if config.INFERENCE_BACKEND == "local":
        return LocalVisionWrapper(config.LOCAL_MODEL, config.DEVICE, mock=config.MOCK_MODELS)
    return GeminiVisionWrapper(
        config.GEMINI_MODEL,
        config.GEMINI_API_KEY,
        timeout_s=config.INFERENCE_TIMEOUT_S,
        mock=config.MOCK_MODELS,
    )


def build_payments(config: Settings) -> LedgerPaymentCoordinator | GaslessPaymentCoordinator:
    if config.PAYMENT_MODE == "gasless":
        logger.warning("Payment mode is 'gasless': payments will be refused until it is implemented.")
        return GaslessPaymentCoordinator()
    return LedgerPaymentCoordinator.from_rpc(
        config.LEDGER_RPC_URL,
        config.CONTRACT_ADDRESS,
        gas_limit=config.TX_GAS_LIMIT,
        receipt_timeout=config.TX_RECEIPT_TIMEOUT_S,
    )


def build_agent(config: Settings) -> AnalysisAgent:
    """Construct and open every service handle, then build the agent."""
    logger.info(
        "Initializing services (inference=%s, mock=%s, payment=%s).",
        config.INFERENCE_BACKEND, config.MOCK_MODELS, config.PAYMENT_MODE,
    )
    store = AnalysisStore(db_path_from_url(config.DATABASE_URL))
    store.init_db()

    inference = build_inference(config)
    inference.load()

    payments = build_payments(config)
    agent = AnalysisAgent(store=store, payments=payments, inference=inference)
    logger.info("AnalysisAgent ready.")
    return agent


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    logger.info("Starting CropAdvisor API.")
    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    app.state.agent = build_agent(settings)

    yield

    # Shutdown
    logger.info("Shutting down CropAdvisor API.")
    app.state.agent.inference.close()
    app.state.agent.payments.close()
    app.state.agent = None


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="CropAdvisor API",
    version="0.1.0",
    description="Pay-per-analysis crop disease diagnosis.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api")


# ---------------------------------------------------------------------------
# Error rendering: every failure reaches the client as {"error": ...}
# ---------------------------------------------------------------------------

@app.exception_handler(AnalysisError)
async def analysis_error_handler(request: Request, exc: AnalysisError) -> JSONResponse:
    logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    missing = [".".join(str(p) for p in err["loc"][1:]) for err in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={"error": f"Invalid or missing fields: {', '.join(missing) or 'request'}"},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Analysis failed. Please try again later."})


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/api/health")
def health_check() -> dict[str, Any]:
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "mock_mode": settings.MOCK_MODELS,
        "payment_mode": settings.PAYMENT_MODE,
    }
