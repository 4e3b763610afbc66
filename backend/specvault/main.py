"""
SpecVault - FastAPI Application

Main entry point for the SpecVault backend.

Architecture:
- Registration lookup → IdentityCache (core identity, 24h window)
- IdentityCache → Fingerprint → SnapshotStore (reuse or fetch)
- Entitlements + CreditLedger → allow/deny
- SpecUnlockService → UnlockRecord (one transaction per call)
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers import unlock_router
from .database import init_db

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="SpecVault",
    description="""
    SpecVault - Vehicle Specification Unlocks

    Grants or denies access to fetched vehicle specifications per
    registration, enforcing premium allowances, paid credits and
    provider retention policy.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(unlock_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m specvault.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
