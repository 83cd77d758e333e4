import asyncio
import logging
from typing import List, Optional, Tuple

import anyio
import httpx
from fastapi import Request, Response, WebSocket
from fastapi.responses import StreamingResponse
from starlette.requests import ClientDisconnect

from contracts.backend import BackendTarget
from core.headers import is_websocket_request, strip_hop_by_hop
from core.websocket_relay import WebSocketRelay

logger = logging.getLogger(__name__)

# nginx's status for a client that hung up before the response was ready
CLIENT_CLOSED_REQUEST = 499


def request_path(scope) -> str:
    """
    The request path as sent by the client, without percent-decoding.
    """
    raw_path = scope.get("raw_path")
    if raw_path:
        return raw_path.decode("latin-1")
    return scope.get("path", "/")


class ProxyPipeline:
    """
    Request and response rewriting rules for a single backend.
    """

    def __init__(self, target: BackendTarget):
        self.target = target

    def rewrite_request_headers(
        self, headers: List[Tuple[str, str]], client_host: Optional[str] = None
    ) -> List[Tuple[str, str]]:
        """
        Prepare inbound headers for the upstream request.

        Upgrade requests keep their Connection/Upgrade headers, normalized to
        "Upgrade"/"websocket"; all other requests lose hop-by-hop headers.
        The client address is appended to X-Forwarded-For.
        """
        if is_websocket_request(headers):
            rewritten = []
            for key, value in headers:
                lowered = key.lower()
                if lowered == "connection" and value:
                    value = "Upgrade"
                elif lowered == "upgrade" and value:
                    value = "websocket"
                rewritten.append((key, value))
        else:
            rewritten = strip_hop_by_hop(headers)

        if client_host:
            prior = [v for k, v in rewritten if k.lower() == "x-forwarded-for"]
            rewritten = [(k, v) for k, v in rewritten if k.lower() != "x-forwarded-for"]
            rewritten.append(("x-forwarded-for", ", ".join(prior + [client_host])))
        return rewritten

    def rewrite_response_headers(self, resp: httpx.Response) -> List[Tuple[bytes, bytes]]:
        """
        Upstream response headers minus hop-by-hop ones, repeated headers kept.
        """
        if resp.status_code == 101:
            logger.info(f"WebSocket connection established with {self.target}")
            return list(resp.headers.raw)
        headers = [
            (k.decode("latin-1"), v.decode("latin-1")) for k, v in resp.headers.raw
        ]
        return [
            (k.encode("latin-1"), v.encode("latin-1"))
            for k, v in strip_hop_by_hop(headers)
        ]


class BackendProxy:
    """
    Forwards requests to one fixed backend and streams the responses back.
    """

    def __init__(
        self,
        target: BackendTarget,
        client: httpx.AsyncClient,
        timeout: float = 30.0,
        connect_timeout: float = 5.0,
    ):
        self.target = target
        self.pipeline = ProxyPipeline(target)
        self.client = client
        self.timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self.relay = WebSocketRelay(target, open_timeout=connect_timeout)

    async def forward(self, request: Request) -> Response:
        """
        Proxy an incoming HTTP request to the backend.

        Args:
            request (Request): The incoming FastAPI request object.

        Returns:
            Response: The streamed backend response, or a 502/504 error response.
        """
        url = self.target.build_url(request_path(request.scope), request.url.query)
        client_host = request.client.host if request.client else None
        headers = self.pipeline.rewrite_request_headers(
            request.headers.items(), client_host
        )
        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        body_sent = asyncio.Event()
        if not has_body:
            body_sent.set()
        logger.debug(f"Proxying {request.method} request to {url}")

        try:
            upstream_request = self.client.build_request(
                request.method,
                url,
                headers=headers,
                content=self._request_body(request, body_sent) if has_body else None,
                timeout=self.timeout,
            )
            resp = await self._send_until_disconnect(request, upstream_request, body_sent)
        except ClientDisconnect:
            resp = None
        except httpx.TimeoutException as e:
            logger.error(f"Upstream timeout from {self.target}: {e!r}")
            return Response(content=f"Upstream timeout: {e}", status_code=504)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"Upstream error from {self.target}: {e!r}")
            return Response(content=f"Upstream error: {e!r}", status_code=502)

        if resp is None:
            logger.info(
                f"Client disconnected before {self.target} responded; "
                f"{request.method} {url} aborted"
            )
            return Response(status_code=CLIENT_CLOSED_REQUEST)

        if resp.status_code == 101:
            # Upgrades are relayed on the WebSocket route; a bare 101 here has no duplex path
            await resp.aclose()
            logger.error(f"{self.target} switched protocols on a plain HTTP request")
            return Response(content="Upstream error: unexpected 101", status_code=502)

        response = StreamingResponse(self._relay_body(resp), status_code=resp.status_code)
        response.raw_headers = self.pipeline.rewrite_response_headers(resp)
        return response

    async def _request_body(self, request: Request, body_sent: asyncio.Event):
        try:
            async for chunk in request.stream():
                yield chunk
        finally:
            body_sent.set()

    async def _send_until_disconnect(
        self, request: Request, upstream_request: httpx.Request, body_sent: asyncio.Event
    ) -> Optional[httpx.Response]:
        """
        Send the upstream request, abandoning it if the client hangs up first.

        Returns:
            httpx.Response: The streaming upstream response, or None if the
            client disconnected before it arrived.
        """
        send = asyncio.create_task(self.client.send(upstream_request, stream=True))
        watch = asyncio.create_task(self._wait_for_disconnect(request, body_sent))
        try:
            await asyncio.wait({send, watch}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watch.cancel()
            if not send.done():
                send.cancel()
            await asyncio.gather(send, watch, return_exceptions=True)
        if send.cancelled():
            return None
        return send.result()

    async def _wait_for_disconnect(self, request: Request, body_sent: asyncio.Event):
        # The body stream owns receive() until it has been fully read
        await body_sent.wait()
        while True:
            message = await request.receive()
            if message["type"] == "http.disconnect":
                return

    async def _relay_body(self, resp: httpx.Response):
        try:
            async for chunk in resp.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            logger.error(f"Upstream body from {self.target} ended early: {e!r}")
        finally:
            # Runs on client disconnect too, when the surrounding scope is cancelled
            with anyio.CancelScope(shield=True):
                await resp.aclose()

    async def forward_websocket(self, websocket: WebSocket):
        """
        Relay an upgraded WebSocket session to the backend.
        """
        if not is_websocket_request(websocket.headers):
            logger.debug(
                f"Upgrade headers on {websocket.url.path} are not the canonical "
                f"\"Upgrade: websocket\" / \"Connection: Upgrade\" pair"
            )
        url = self.target.websocket_url(request_path(websocket.scope), websocket.url.query)
        await self.relay.serve(websocket, url)
