"""
Credit Ledger API - FastAPI Backend
Main application entry point: credits, billable consumption and OAuth handoff claims.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
import models  # noqa: F401
from routers import admin, billing, connections, health
from services.errors import LedgerError, StoreUnavailable
from services.pending_claims import expire_stale_claims


async def run_claim_sweep() -> None:
    async with async_session_maker() as db:
        result = await expire_stale_claims(db)
    if result.expired_count or result.deleted_count:
        print(
            f"🧹 Pending claim sweep: expired={result.expired_count} "
            f"deleted={result.deleted_count}"
        )


async def _periodic_claim_sweep() -> None:
    interval_minutes = max(int(settings.CLAIM_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            await run_claim_sweep()
        except StoreUnavailable as exc:
            print(f"⚠️ Pending claim sweep tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Credit Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    sweep_task = None
    if int(settings.CLAIM_SWEEP_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_claim_sweep())
        print(
            "📅 Pending claim sweep loop enabled "
            f"(every {int(settings.CLAIM_SWEEP_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Credit Ledger API",
    description="Prepaid credit ledger with success-gated consumption and single-use OAuth handoff claims",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    headers = {"Retry-After": "1"} if isinstance(exc, StoreUnavailable) else None
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()}, headers=headers)


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(connections.router, prefix="/connections", tags=["Connections"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Credit Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
