import logging

from fastapi import Request, Response, WebSocket

from core.backend_proxy import BackendProxy
from core.shared_status import SharedStatus

logger = logging.getLogger(__name__)


class FailoverRouter:
    """
    Sends each request to the primary backend while it is online and to the
    secondary otherwise. The choice is made per request, with no stickiness.
    """

    def __init__(self, status: SharedStatus, primary: BackendProxy, secondary: BackendProxy):
        self.status = status
        self.primary = primary
        self.secondary = secondary

    def select(self) -> BackendProxy:
        return self.primary if self.status.read() else self.secondary

    async def route(self, request: Request) -> Response:
        proxy = self.select()
        logger.info(
            f"Received request: {request.method} {request.url.path} -> {proxy.target}"
        )
        return await proxy.forward(request)

    async def route_websocket(self, websocket: WebSocket):
        proxy = self.select()
        logger.info(f"Received WebSocket upgrade: {websocket.url.path} -> {proxy.target}")
        await proxy.forward_websocket(websocket)
