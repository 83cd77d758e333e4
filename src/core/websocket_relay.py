import asyncio
import logging
from typing import List, Optional, Tuple

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from contracts.backend import BackendTarget
from core.headers import strip_hop_by_hop

logger = logging.getLogger(__name__)

# Close code for "the server was acting as a gateway and got an invalid response"
BAD_GATEWAY_CLOSE_CODE = 1014

# Headers the upstream handshake generates itself
HANDSHAKE_HEADERS = frozenset(
    {
        "host",
        "content-length",
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
        "sec-websocket-accept",
    }
)


def sendable_close_code(code: Optional[int]) -> int:
    """
    Map a received close code to one that may be sent in a close frame.
    1005, 1006 and 1015 are reserved for local reporting only.
    """
    if code is None or code in (1004, 1005, 1006, 1015):
        return 1000
    if 1000 <= code <= 1014 or 3000 <= code <= 4999:
        return code
    return 1000


def handshake_headers(headers: List[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """
    End-to-end headers from the client handshake to repeat upstream
    (cookies, authorization, origin and the like).
    """
    return [(k, v) for k, v in strip_hop_by_hop(headers) if k.lower() not in HANDSHAKE_HEADERS]


def requested_subprotocols(headers) -> List[str]:
    value = headers.get("sec-websocket-protocol", "")
    return [p.strip() for p in value.split(",") if p.strip()]


class WebSocketRelay:
    """
    Opens an upstream WebSocket for an upgraded client connection and pumps
    messages both ways until either side closes.
    """

    def __init__(self, target: BackendTarget, open_timeout: float = 5.0):
        self.target = target
        self.open_timeout = open_timeout

    async def open_upstream(self, url: str, websocket: WebSocket) -> ClientConnection:
        subprotocols = requested_subprotocols(websocket.headers)
        return await connect(
            url,
            additional_headers=handshake_headers(websocket.headers.items()),
            subprotocols=subprotocols or None,
            user_agent_header=None,
            compression=None,
            open_timeout=self.open_timeout,
            max_size=None,
        )

    async def serve(self, websocket: WebSocket, url: str):
        """
        Relay one client session to the upstream at url.

        If the upstream handshake fails the client handshake is rejected with
        close code 1014 and nothing is relayed.
        """
        try:
            upstream = await self.open_upstream(url, websocket)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error(f"WebSocket handshake with {self.target} failed: {e!r}")
            await websocket.close(code=BAD_GATEWAY_CLOSE_CODE)
            return

        logger.info(f"WebSocket connection established with {self.target} ({url})")
        try:
            await websocket.accept(subprotocol=upstream.subprotocol)
            await self.pump(websocket, upstream)
        finally:
            await upstream.close()

    async def pump(self, websocket: WebSocket, upstream: ClientConnection):
        """
        Copy messages in both directions concurrently. When one direction
        finishes the other is cancelled and both ends are closed.
        """
        client_to_upstream = asyncio.create_task(self._client_to_upstream(websocket, upstream))
        upstream_to_client = asyncio.create_task(self._upstream_to_client(websocket, upstream))
        try:
            await asyncio.wait(
                {client_to_upstream, upstream_to_client},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (client_to_upstream, upstream_to_client):
                task.cancel()
            await asyncio.gather(client_to_upstream, upstream_to_client, return_exceptions=True)

        code = None
        if client_to_upstream.done() and not client_to_upstream.cancelled():
            code = client_to_upstream.result()
        if code is not None:
            logger.info(f"WebSocket client closed ({code}); closing {self.target} side")
            await upstream.close(code=sendable_close_code(code))
        else:
            code = upstream.close_code
            logger.info(f"WebSocket upstream {self.target} closed ({code}); closing client side")
            await self._close_client(websocket, sendable_close_code(code))

    async def _client_to_upstream(
        self, websocket: WebSocket, upstream: ClientConnection
    ) -> Optional[int]:
        """
        Returns the client's close code once it disconnects, or None if the
        upstream closed first.
        """
        while True:
            try:
                message = await websocket.receive()
            except (WebSocketDisconnect, RuntimeError):
                return 1006
            if message["type"] == "websocket.disconnect":
                return message.get("code", 1000)
            try:
                if message.get("bytes") is not None:
                    await upstream.send(message["bytes"])
                elif message.get("text") is not None:
                    await upstream.send(message["text"])
            except ConnectionClosed:
                return None

    async def _upstream_to_client(self, websocket: WebSocket, upstream: ClientConnection):
        try:
            async for data in upstream:
                if isinstance(data, bytes):
                    await websocket.send_bytes(data)
                else:
                    await websocket.send_text(data)
        except ConnectionClosed as e:
            logger.debug(f"WebSocket upstream {self.target} closed abnormally: {e}")
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"WebSocket client went away while relaying: {e!r}")

    async def _close_client(self, websocket: WebSocket, code: int):
        if (
            websocket.client_state == WebSocketState.DISCONNECTED
            or websocket.application_state == WebSocketState.DISCONNECTED
        ):
            return
        try:
            await websocket.close(code=code)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"WebSocket client already closed: {e!r}")
