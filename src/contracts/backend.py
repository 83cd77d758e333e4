from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict

WEBSOCKET_SCHEMES = {"http": "ws", "https": "wss"}


def join_paths(base: str, path: str) -> str:
    """
    Join a base path and a request path with exactly one slash between them.
    """
    base_slash = base.endswith("/")
    path_slash = path.startswith("/")
    if base_slash and path_slash:
        return base + path[1:]
    if not base_slash and not path_slash:
        return f"{base}/{path}"
    return base + path


class BackendTarget(BaseModel):
    """
    Immutable description of an upstream backend, resolved once at startup.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    scheme: str
    host: str
    base_path: str = ""
    query: str = ""

    @classmethod
    def from_url(cls, name: str, url: str) -> "BackendTarget":
        """
        Parse an absolute http(s) URL into a target.

        Raises:
            ValueError: If the URL has no scheme or host, or is not http(s).
        """
        parts = urlsplit(url.strip())
        if not parts.scheme or not parts.netloc:
            raise ValueError(f"{name} backend URL must be absolute, got {url!r}")
        scheme = parts.scheme.lower()
        if scheme not in WEBSOCKET_SCHEMES:
            raise ValueError(
                f"{name} backend URL must use http or https, got {parts.scheme!r}"
            )
        return cls(
            name=name,
            scheme=scheme,
            host=parts.netloc,
            base_path=parts.path,
            query=parts.query,
        )

    @property
    def url(self) -> str:
        url = f"{self.scheme}://{self.host}{self.base_path or '/'}"
        if self.query:
            url = f"{url}?{self.query}"
        return url

    def build_url(self, path: str, query: str = "") -> str:
        """
        Compose the upstream URL for a request path and raw query string.
        The target's own query comes first when both are present.
        """
        full_path = join_paths(self.base_path, path) if self.base_path else path
        if not full_path.startswith("/"):
            full_path = "/" + full_path
        url = f"{self.scheme}://{self.host}{full_path}"
        combined = "&".join(q for q in (self.query, query) if q)
        if combined:
            url = f"{url}?{combined}"
        return url

    def websocket_url(self, path: str, query: str = "") -> str:
        url = self.build_url(path, query)
        return WEBSOCKET_SCHEMES[self.scheme] + url[len(self.scheme):]

    def __str__(self):
        return f"{self.name} ({self.scheme}://{self.host}{self.base_path})"
