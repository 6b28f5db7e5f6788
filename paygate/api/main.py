"""
FastAPI application entry point.

Payment-gated job API: requesters create a job, pay its price in USDC
on-chain, and confirm the payment; the job is then fulfilled locally or
by a registered remote provider.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from paygate import __version__
from paygate.config import load_settings
from paygate.infra.logging_config import setup_logging

from ._pipeline_state import init_orchestrator, shutdown_orchestrator
from .dependencies.auth import API_AUTH_ENABLED, verify_api_key
from .routers import jobs, services, webhooks

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown of resources:
    - Logging setup from settings
    - Orchestrator (job store, verifier, dispatcher, notifier)
    - Webhook delivery worker
    """
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_dir)

    orchestrator = init_orchestrator(settings)
    if orchestrator.notifier is not None:
        orchestrator.notifier.start()

    logger.info(f"Paygate API {__version__} started ({settings.environment})")

    yield

    await shutdown_orchestrator()


# Tag metadata for Swagger UI
tags_metadata = [
    {
        "name": "services",
        "description": "Service catalog - purchasable services and their USDC prices",
    },
    {
        "name": "jobs",
        "description": "Job lifecycle - create, pay, poll, and remote completion callbacks",
    },
    {
        "name": "webhooks",
        "description": "Counterparty registration - signed job event delivery and remote fulfillment",
    },
]

app = FastAPI(
    title="Paygate API",
    lifespan=lifespan,
    description="""
## Paygate API

Payment-gated job pipeline. Each job has a fixed USDC price; a job runs
only after its payment transaction is verified on-chain.

### Authentication
When `API_AUTH_ENABLED=true`, all endpoints except `/health` require an
`X-API-Key` header matching the `API_KEY` environment variable.
Remote providers additionally present `X-Provider-Key` on
`POST /jobs/{job_id}/complete`. `POST /webhooks` always needs the
operator key for a new provider or the platform wallet, and the
operator key or the current `X-Provider-Key` to replace a registration.

### Flow
1. `POST /jobs` - create a pending job (price copied from the catalog)
2. Transfer `price` USDC to the job's `provider` address
3. `POST /jobs/{job_id}/pay` with the transaction hash
4. Poll `GET /jobs/{job_id}` (remote providers) or read the pay response

### Usage
```bash
uvicorn paygate.api.main:app --host 127.0.0.1 --port 8000

curl -X POST http://localhost:8000/jobs \\
  -H "Content-Type: application/json" \\
  -d '{"service_key": "brainstorm", "requester": "0x...", "input": {"prompt": "..."}}'
```
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=tags_metadata,
)


# Health check - NO authentication (operational endpoint)
@app.get("/health")
async def health_check():
    """Health check endpoint. Not authenticated."""
    return {"status": "ok", "version": __version__}


# Include routers WITH authentication dependency (when enabled)
auth_dependency = [Depends(verify_api_key)] if API_AUTH_ENABLED else []

app.include_router(
    services.router, prefix="/services", tags=["services"], dependencies=auth_dependency
)
app.include_router(
    jobs.router, prefix="/jobs", tags=["jobs"], dependencies=auth_dependency
)
app.include_router(
    webhooks.router, prefix="/webhooks", tags=["webhooks"], dependencies=auth_dependency
)


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        app,
        host=os.getenv("PAYGATE_HOST", "127.0.0.1"),
        port=int(os.getenv("PAYGATE_PORT", "8000")),
    )


if __name__ == "__main__":
    run()
