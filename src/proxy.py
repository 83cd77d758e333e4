import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request, WebSocket
from pydantic import ValidationError

from config.config import Config
from config.logging_config import setup_logging
from contracts.settings import ProxySettings
from core.backend_proxy import BackendProxy
from core.failover_router import FailoverRouter
from core.health_monitor import HealthMonitor
from core.shared_status import SharedStatus

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "TRACE"]


def create_app(
    settings: ProxySettings,
    client: Optional[httpx.AsyncClient] = None,
    probe_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Build the failover proxy application.

    Args:
        settings (ProxySettings): Validated startup configuration.
        client (httpx.AsyncClient): Optional client for forwarded requests.
        probe_client (httpx.AsyncClient): Optional client for health probes.

    Returns:
        FastAPI: The application, with the health monitor bound to its lifespan.
    """
    if client is None:
        client = httpx.AsyncClient(follow_redirects=False)

    status = SharedStatus()
    monitor = HealthMonitor(
        settings.primary,
        status,
        check_interval=settings.check_interval,
        probe_timeout=settings.probe_timeout,
        client=probe_client,
    )
    proxies = [
        BackendProxy(
            target,
            client,
            timeout=settings.upstream_timeout,
            connect_timeout=settings.upstream_connect_timeout,
        )
        for target in (settings.primary, settings.secondary)
    ]
    router = FailoverRouter(status, *proxies)

    @asynccontextmanager
    async def lifespan(app):
        await monitor.start()
        yield
        await monitor.stop()
        await client.aclose()

    app = FastAPI(lifespan=lifespan, openapi_url=None, docs_url=None, redoc_url=None)
    app.state.status = status
    app.state.monitor = monitor
    app.state.router = router

    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request, path: str):
        return await router.route(request)

    @app.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket, path: str):
        await router.route_websocket(websocket)

    return app


def main():
    setup_logging()
    try:
        settings = ProxySettings.from_config(Config)
    except ValidationError as e:
        logger.critical(f"Invalid proxy configuration: {e}")
        sys.exit(1)

    logger.info(f"Starting reverse proxy on {settings.host}:{settings.port}")
    logger.info(f"Primary target: {settings.primary.url}")
    logger.info(f"Fallback target: {settings.secondary.url}")
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
