"""FastAPI application factory"""

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from peerloan_gateway.api.middleware import RequestIDMiddleware, MetricsMiddleware
from peerloan_gateway.api.v1 import backings, jobs, loans, offers
from peerloan_gateway.infrastructure.observability.logging import setup_logging
from peerloan_gateway.config import settings

# Setup structured logging
setup_logging(settings.log_level)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Peer Loan Gateway",
        description="Lender match cascade and backer accountability service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Last added runs first
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(offers.router, prefix="/v1", tags=["offers"])
    app.include_router(loans.router, prefix="/v1", tags=["loans"])
    app.include_router(jobs.router, prefix="/v1", tags=["jobs"])
    app.include_router(backings.router, prefix="/v1", tags=["backings"])

    return app


app = create_app()
