from typing import List, Tuple

import httpx

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-connection",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)


def is_websocket_request(headers) -> bool:
    """
    An upgrade request carries exactly "Upgrade: websocket" and
    "Connection: Upgrade". Names are case-insensitive, values are not.
    """
    headers = httpx.Headers(headers)
    return headers.get("upgrade") == "websocket" and headers.get("connection") == "Upgrade"


def connection_tokens(headers: List[Tuple[str, str]]) -> set:
    """
    Header names listed in Connection, which are hop-by-hop for this message.
    """
    tokens = set()
    for key, value in headers:
        if key.lower() == "connection":
            tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
    return tokens


def strip_hop_by_hop(headers: List[Tuple[str, str]]) -> List[Tuple[str, str]]:
    drop = HOP_BY_HOP_HEADERS | connection_tokens(headers)
    return [(k, v) for k, v in headers if k.lower() not in drop]
