"""
Application lifecycle integration for the connection registry.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, FastAPI
from fastapi.responses import JSONResponse

from mongocrud.db.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


def registry_lifespan(registry: ConnectionRegistry):
    """
    FastAPI lifespan that connects the registry and holds startup until every schema is open.

    Usage:
        app = FastAPI(lifespan=registry_lifespan(registry))
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        registry.connect()
        logger.info(f"Waiting for MongoDB schemas: {', '.join(registry.schema_names)}")
        await registry.wait_until_ready()
        logger.info("MongoDB connections ready")
        try:
            yield
        finally:
            await registry.close()

    return lifespan


def build_health_router(registry: ConnectionRegistry, prefix: Optional[str] = None) -> APIRouter:
    """GET /health: 200 when every schema is open, 503 otherwise"""
    router = APIRouter(prefix=prefix or "", tags=["Health"])

    @router.get('/health')
    async def health() -> Any:
        healthy = registry.health_status()
        content = {
            "status": "healthy" if healthy else "unhealthy",
            "schemas": {name: state.value for name, state in registry.states().items()},
        }
        if healthy:
            return content
        return JSONResponse(status_code=503, content=content)

    return router
