"""Hookwatch - FastAPI application.

Webhook reliability and health monitoring: signed test calls with
bounded retries, live event delivery, and per-endpoint health scores
and alerts computed from the delivery log.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.settings import settings_manager
from .monitoring.aggregator import get_aggregator
from .webhooks.router import router as webhooks_router

VERSION = "0.1.0"

app = FastAPI(
    title="Hookwatch",
    description="Webhook reliability engine with signed test calls, retrying "
                "delivery, and health scoring over delivery logs.",
    version=VERSION,
)

# CORS middleware for dashboard integration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks_router)


@app.on_event("startup")
async def startup_event():
    """Initialize logging and start background monitoring."""
    from .core.logging_config import setup_logging
    settings = settings_manager.get()
    setup_logging(settings.log_level, settings.log_file)
    await get_aggregator().start()


@app.on_event("shutdown")
async def shutdown_event():
    """Stop background monitoring."""
    await get_aggregator().stop()


@app.get("/")
def root() -> dict[str, str]:
    """Root endpoint returning service info.

    Returns:
        dict: Status and welcome message.
    """
    return {
        "status": "ok",
        "message": "Hookwatch webhook monitoring",
        "version": VERSION,
        "docs": "/docs",
    }


@app.get("/health")
def health() -> dict[str, str]:
    """Health check endpoint for load balancers.

    Returns:
        dict: Health status indicator.
    """
    return {"status": "healthy"}
