"""
MCP credential service — application entry point.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from api.routes import router as credentials_router
from config.settings import config
from connectors.base import http_client_kwargs
from connectors.registry import ConnectorRegistry
from credentials.adapter import ServiceAdapter
from credentials.service import CredentialService
from credentials.store import CredentialStore
from database.helpers import SqlCredentialStore
from database.session import dispose_engine
from utils.client_pool import ClientPool

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "asyncio"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def build_credential_services(store: Optional[CredentialStore] = None) -> Dict[str, CredentialService]:
    """One CredentialService per enabled, configured connector."""
    registry = ConnectorRegistry()
    registry.discover()
    store = store or SqlCredentialStore()
    services: Dict[str, CredentialService] = {}
    for name in registry.list_configured():
        connector = registry.get(name)
        pool = ClientPool(name, max_idle=float(config.http_client_max_idle_seconds), **http_client_kwargs())
        connector.client_pool = pool
        services[name] = CredentialService(
            ServiceAdapter.from_connector(connector), store, config, client_pool=pool
        )
    return services


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = build_credential_services()
    app.state.credential_services = services
    for service in services.values():
        await service.init()
    logger.info("Credential services ready: %s", ", ".join(services) or "none")

    try:
        yield
    finally:
        for service in services.values():
            await service.shutdown()
        await dispose_engine()
        logger.info("Credential services stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="MCP Credential Service",
        version="1.0.0",
        description="OAuth credential cache, refresh watcher and database sync for MCP connectors.",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Routes
    app.include_router(credentials_router, prefix="/api/v1/credentials")

    @app.get("/health")
    async def health():
        services = getattr(app.state, "credential_services", {})
        return {"status": "ok", "services": sorted(services)}

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
