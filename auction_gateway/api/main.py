"""FastAPI application factory"""

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from auction_gateway.api.middleware import RequestIDMiddleware, MetricsMiddleware
from auction_gateway.api.v1 import admin, auctions, payments
from auction_gateway.infrastructure.cache.redis_client import close_redis
from auction_gateway.infrastructure.observability.logging import setup_logging
from auction_gateway.config import settings

# Setup structured logging
setup_logging(settings.log_level)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Auction Gateway",
        description="Bidding, wallet top-up screening and settlement service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    @app.on_event("shutdown")
    def shutdown():
        close_redis()

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(auctions.router, prefix="/v1", tags=["auctions"])
    app.include_router(payments.router, prefix="/v1", tags=["payments"])
    app.include_router(admin.router, prefix="/v1", tags=["admin"])

    return app


app = create_app()
