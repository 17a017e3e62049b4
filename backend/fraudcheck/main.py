import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fraudcheck.config import settings
from fraudcheck.database import create_tables
from fraudcheck.routers import fraud_check, settings as settings_router
from fraudcheck.services.dispatch import (
    ChainDispatcher,
    ChainQueue,
    HttpSelfDispatcher,
    set_dispatcher,
)
from fraudcheck.services.fraud_check import record_step_failure, run_step_job
from fraudcheck.services.reconciler import reconcile_loop, reconciler_state

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_dispatcher() -> ChainDispatcher:
    """Build the step dispatcher selected by ``chain_dispatch_mode``."""
    common = dict(
        retries=settings.chain_dispatch_retries,
        backoff_seconds=settings.chain_retry_backoff_seconds,
        delay_seconds=settings.step_delay_seconds,
        on_failure=record_step_failure,
    )
    if settings.chain_dispatch_mode == "http":
        return HttpSelfDispatcher(
            base_url=settings.public_base_url,
            timeout=settings.chain_request_timeout,
            **common,
        )
    if settings.chain_dispatch_mode != "queue":
        raise ValueError(f"Unknown chain_dispatch_mode: {settings.chain_dispatch_mode}")
    return ChainQueue(step_runner=run_step_job, workers=settings.chain_workers, **common)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: create tables, start dispatcher and reconciler
    await create_tables()
    dispatcher = create_dispatcher()
    await dispatcher.start()
    set_dispatcher(dispatcher)
    logger.info(f"Chain dispatch mode: {settings.chain_dispatch_mode}")

    if settings.reconcile_interval_minutes > 0:
        loop = asyncio.get_running_loop()
        reconciler_state["task"] = loop.create_task(reconcile_loop(settings.reconcile_interval_minutes))

    yield

    # Shutdown
    task = reconciler_state.get("task")
    if task:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        reconciler_state["task"] = None
    await dispatcher.stop()
    set_dispatcher(None)


app = FastAPI(
    title=settings.app_name,
    description="Chained AI fraud analysis of loan application documents",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed requests answer with the same ``{"error": ...}`` shape as everything else."""
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else first.get("msg", "Invalid request")
    else:
        message = "Invalid request"
    return JSONResponse({"error": message}, status_code=400)


# Include routers
app.include_router(fraud_check.router, prefix="/api/fraud-check", tags=["Fraud Check"])
app.include_router(settings_router.router, prefix="/api/settings", tags=["Settings"])


@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "service": settings.app_name,
        "dispatch_mode": settings.chain_dispatch_mode,
        "reconciler_running": reconciler_state["running"],
    }
