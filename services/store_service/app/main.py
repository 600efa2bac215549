"""FastAPI application for the Store Service."""

from fastapi import FastAPI
from libs.common.error_handler import add_exception_handlers
from libs.common.middleware import add_observability_middleware
from libs.common.rate_limit import limiter, rate_limit_exceeded_handler
from services.store_service.errors import StoreError
from services.store_service.routers import (
    admin_router,
    orders_router,
    webhooks_router,
)
from slowapi.errors import RateLimitExceeded


def create_app() -> FastAPI:
    """Create and configure the Store Service FastAPI app."""
    app = FastAPI(
        title="Store Service",
        version="0.1.0",
        description="Order fulfillment: pricing, reservations, payments, settlement.",
    )

    # Add rate limiter state to app
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    # Add observability (request ids + completion logs)
    add_observability_middleware(app)

    # Consistent {"detail", "code"} error bodies
    add_exception_handlers(app, domain_errors=(StoreError,))

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "store"}

    # Public store routes (checkout, payment, orders)
    app.include_router(orders_router, prefix="/store")
    app.include_router(webhooks_router, prefix="/store")

    # Admin routes
    app.include_router(admin_router, prefix="/admin/store")

    return app


app = create_app()
