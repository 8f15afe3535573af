"""
ClockWork - Main FastAPI Application
Billing and capacity backend for fitness businesses
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from contextlib import asynccontextmanager
import logging

from clockwork.config.settings import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Import API routers
from clockwork.api import auth, billing, clients, stripe_webhook, usage
from clockwork.errors import register_exception_handlers
from clockwork.services.scheduler import build_scheduler
from clockwork.utils.database import engine, create_tables


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    await create_tables()
    scheduler = None
    if settings.enable_billing:
        scheduler = build_scheduler()
        scheduler.start()
    app.state.scheduler = scheduler
    yield
    # Shutdown
    if scheduler:
        await scheduler.stop()
    await engine.dispose()


# Initialize FastAPI app
app = FastAPI(
    title="ClockWork",
    description="Subscription billing and client capacity for fitness businesses",
    version="1.0.0",
    docs_url="/api/docs" if settings.debug else None,
    lifespan=lifespan
)

# Middleware
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.cors_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Billing-Tier", "X-Client-Count", "X-Client-Limit", "X-Account-Restricted"],
)

register_exception_handlers(app)

# API Routes
app.include_router(auth.router, prefix="/api/v1")
app.include_router(stripe_webhook.router, prefix="/api/v1")
app.include_router(billing.router, prefix="/api/v1")
app.include_router(clients.router, prefix="/api/v1")
app.include_router(usage.router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "clockwork-api"}


@app.get("/api/v1/health")
async def api_health():
    """API health check"""
    return {"status": "healthy", "version": "1.0.0"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "clockwork.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug
    )
