"""
Credential Registry - Verifiable Credential Service

Main application entry point.

An authority issues credential types and assigns them to addresses.
Anyone can check an assignment against the published Merkle root.

Run with:
    CREDREGISTRY_AUTHORITY=0x... uvicorn credregistry.main:app
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.routes import register_error_handlers, router
from .core.service import RegistryService
from .db.config import RegistryConfig
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)

logger = get_logger(__name__)


def load_service(config: RegistryConfig) -> RegistryService:
    """Open the configured stores and load the registry from them."""
    store = config.create_ledger_store()
    accumulator_store = config.create_accumulator_store()
    service = RegistryService.load(
        store,
        config.require_authority(),
        accumulator_store=accumulator_store,
        max_name_length=config.max_name_length,
        sync_policy=config.sync_policy(),
        reconcile_on_start=config.reconcile_on_start,
    )
    logger.info(
        "Registry service ready",
        ledger=store.describe(),
        accumulator=accumulator_store.describe(),
        event_count=store.get_event_count(),
    )
    return service


def create_app(
    config: Optional[RegistryConfig] = None,
    service: Optional[RegistryService] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Used at startup to load the service. Read from the
            environment when omitted.
        service: A ready service. Skips loading entirely (tests, embedding).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "service", None) is None:
            app.state.service = load_service(config or RegistryConfig.from_env())
        logger.info("Application startup complete")
        yield
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Credential Registry",
        description="""
## Verifiable Credential Registry

An authority creates named credential types and assigns them to user
addresses. Every assignment becomes a leaf in a Merkle tree whose root is
published to the ledger.

### Verification

Fetch a proof with `GET /api/getProof/{user}/{id}` and check it with
`POST /api/verifyCredential`. A proof is valid only against the root that
was current when it was issued.

### Authority

Write operations require the `X-Caller-Address` header to carry the
authority address.
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    if service is not None:
        app.state.service = service

    app.add_middleware(RequestContextMiddleware)
    register_error_handlers(app)
    app.include_router(router, prefix="/api")

    @app.get("/health", tags=["System"])
    def health(request: Request):
        """
        Health check.

        Returns 200 if the ledger chain verifies, 503 otherwise.
        An accumulator that is out of sync is reported but not fatal.
        """
        health_status = check_health(request.app.state.service)
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
        return get_metrics().get_summary()

    return app


setup_logging()
app = create_app()
