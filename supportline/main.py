"""FastAPI application wiring for supportline.

The HTTP process is thin: it accepts provider webhooks and publishes them to
the inbound topic, applies delivery receipts, and serves the operator query
surface. Inbound events are processed by ``worker.py``.

- Configures logging, Prometheus metrics and rate limiting.
- Mounts the webhook, conversation and metrics routers.
"""

import logging

from dotenv import load_dotenv
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .routers import conversations, metrics, webhooks
from .routers.deps import limiter

load_dotenv()

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Build the FastAPI application with logging, limits and routers."""
    app = FastAPI(title="supportline", version=__version__)
    init_logging(app)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    app.include_router(webhooks.router)
    app.include_router(conversations.router)
    app.include_router(metrics.router)

    @app.get("/api/health")
    async def health():
        """Liveness/readiness probe with a minimal JSON body."""
        return {"status": "ok"}

    @app.get("/api/version")
    async def version():
        """Return version information for the application."""
        return {
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }

    # Expose Prometheus metrics
    Instrumentator().instrument(app).expose(
        app, include_in_schema=False, endpoint="/api/metrics"
    )
    return app


app = create_app()
