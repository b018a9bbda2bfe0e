"""Research Vault API.

Thin HTTP surface over the vault:
- Research tasks (submit, poll, cancel)
- Knowledge documents (query, read, revise, link)
- Synthesis scans and job history
- Capability profiles
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from research_vault import __version__
from research_vault.api.routes import capabilities, knowledge, synthesis, tasks
from research_vault.service import get_vault

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    vault = get_vault()
    vault.boot()
    logger.info(f"Loaded {vault.registry.count()} capability profiles")
    logger.info("Research Vault API ready")
    yield
    logger.info("Shutting down Research Vault API")
    vault.shutdown()


app = FastAPI(
    title="Research Vault API",
    description="""
## Shared research knowledge for a fleet of agent workers

Requests are deduplicated against the vault, routed to the least-privileged
capable worker, and their findings committed as versioned documents.

### Key Endpoints

- `POST /v1/tasks` - Submit a research request
- `GET /v1/tasks/{id}` - Poll a task
- `GET /v1/knowledge?topic=&tags=` - Query accumulated findings
- `POST /v1/synthesis/scan` - Synthesize clusters of related findings
""",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(tasks.router, prefix="/v1")
app.include_router(knowledge.router, prefix="/v1")
app.include_router(synthesis.router, prefix="/v1")
app.include_router(capabilities.router, prefix="/v1")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Research Vault API",
        "version": __version__,
        "docs": "/docs",
        "endpoints": {
            "tasks": "/v1/tasks",
            "knowledge": "/v1/knowledge",
            "synthesis": "/v1/synthesis",
            "capabilities": "/v1/capabilities",
        },
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    vault = get_vault()
    return {
        "status": "healthy",
        "capability_profiles": vault.registry.count(),
        "pool_in_flight": vault.pool.in_flight,
        "pool_capacity": vault.pool.capacity,
        "tasks_by_state": vault.scheduler.task_counts(),
        "documents": vault.store.status().total_documents,
    }


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "research_vault.api.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("VAULT_PORT", "8001")),
        reload=False,
    )
