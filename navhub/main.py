"""
FastAPI application entry point.
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from navhub.core.config import settings
from navhub.core.logging_config import setup_logging, get_main_logger
from navhub.core.exceptions import register_exception_handlers

# Initialize logging before anything else
setup_logging()
logger = get_main_logger()
from navhub.api.v1.sync import router as sync_router
from navhub.db.database import engine, Base
import navhub.db.models  # Ensure models are registered
from navhub.services.nav_service import build_default_orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tables on startup
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    app.state.orchestrator = build_default_orchestrator()
    yield

    orchestrator = app.state.orchestrator
    if orchestrator.is_running:
        logger.info("Shutting down with a sync run in progress, waiting for the current batch")
        orchestrator.request_stop()
        if not await orchestrator.wait_stopped(settings.shutdown_drain_timeout_seconds):
            logger.warning(
                f"Sync run still active after {settings.shutdown_drain_timeout_seconds}s, abandoning it"
            )


# Create FastAPI app
app = FastAPI(
    title="NAV Hub API",
    description="Mutual fund NAV ingestion and returns API",
    version="1.0.0",
    lifespan=lifespan
)

# Register global exception handlers
register_exception_handlers(app)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(sync_router, prefix=settings.api_v1_prefix)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "NAV Hub API", "version": "1.0.0"}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}
