"""
audittrail - Administrative Service

Exposes verification, export and checkpointing over HTTP for operators.

Run with:
    uvicorn audittrail.main:app
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from . import __version__
from .api import router as audit_router
from .core import AuditTrail
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)
from .shared_trail import get_trail

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Recover the chain before serving; a broken chain stops startup."""
    trail = get_trail()
    logger.info(
        "Application startup complete",
        next_sequence_index=trail.head.next_sequence_index,
        store_type=type(trail.store).__name__,
    )

    yield

    trail.store.close()
    logger.info("Application shutdown complete")


def create_app(configure_logging: bool = True, recover_on_startup: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        configure_logging: Install the root and integrity log handlers
        recover_on_startup: Bootstrap the shared trail in the lifespan hook.
            Tests that override get_trail pass False.
    """
    if configure_logging:
        setup_logging()

    app = FastAPI(
        title="audittrail",
        description="""
## Tamper-Evident Audit Trail

Every recorded action is an entry in a SHA-256 hash chain.
Editing or deleting a stored entry breaks the chain at that entry.

### Endpoints

- **Verify**: recompute every link, report the first break
- **Export**: entries as stored plus a manifest for offline checks
- **Checkpoint**: summarize a verified prefix so it can be retired
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan if recover_on_startup else None,
    )

    app.add_middleware(RequestContextMiddleware)
    app.include_router(audit_router)

    @app.get("/health", tags=["System"])
    def health(verify: bool = False, trail: AuditTrail = Depends(get_trail)):
        """
        Health check.

        ?verify=true also walks the whole chain (expensive).
        Returns 200 if healthy, 503 if not.
        """
        health_status = check_health(trail, verify_chain=verify)
        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    def metrics():
        """Counters and latency percentiles."""
        return get_metrics().snapshot()

    return app


app = create_app()
