"""
RIA Hunter Credits API - FastAPI Backend
Credits ledger, subscription status and billing webhook ingestion.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import billing, credits, health
from services.credits import InsufficientCreditsError, InvalidAmountError, StoreUnavailableError


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    print("🚀 Starting RIA Hunter Credits API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    yield
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="RIA Hunter Credits API",
    description="Credits ledger and subscription gating for RIA Hunter search",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(InvalidAmountError)
async def invalid_amount_handler(request: Request, exc: InvalidAmountError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc), "code": "INVALID_AMOUNT"})


@app.exception_handler(InsufficientCreditsError)
async def insufficient_credits_handler(request: Request, exc: InsufficientCreditsError) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={
            "detail": "Insufficient credits",
            "code": "INSUFFICIENT_CREDITS",
            "credits": exc.balance,
            "requested": exc.requested,
        },
    )


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"detail": str(exc), "code": "STORE_UNAVAILABLE"})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "RIA Hunter Credits API",
        "version": "0.1.0",
        "status": "running"
    }
