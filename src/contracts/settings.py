from typing import Tuple

from pydantic import BaseModel, ConfigDict, PositiveFloat, model_validator

from contracts.backend import BackendTarget


def parse_listen_addr(listen_addr: str) -> Tuple[str, int]:
    """
    Split a listen address into host and port. Accepts "8080", ":8080" and
    "host:port"; a missing host means all interfaces.

    Raises:
        ValueError: If the port is not a number in 1-65535.
    """
    host, _, port = listen_addr.strip().rpartition(":")
    host = host.strip("[]") or "0.0.0.0"
    if not port.isdigit() or not 0 < int(port) < 65536:
        raise ValueError(f"invalid listen address {listen_addr!r}")
    return host, int(port)


class ProxySettings(BaseModel):
    """
    Validated startup configuration for the failover proxy.
    """

    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = 8080
    primary: BackendTarget
    secondary: BackendTarget
    check_interval: PositiveFloat = 5.0
    probe_timeout: PositiveFloat = 2.0
    upstream_timeout: PositiveFloat = 30.0
    upstream_connect_timeout: PositiveFloat = 5.0

    @model_validator(mode="after")
    def check_probe_timeout(self):
        # A probe must finish before the next cycle is due
        if self.probe_timeout >= self.check_interval:
            raise ValueError(
                f"probe timeout ({self.probe_timeout}s) must be shorter than "
                f"the check interval ({self.check_interval}s)"
            )
        return self

    @classmethod
    def from_config(cls, config) -> "ProxySettings":
        """
        Build settings from a Config-like object.

        Raises:
            pydantic.ValidationError: On any invalid value.
        """
        return cls.model_validate(
            {
                "listen_addr": config.LISTEN_ADDR,
                "primary_url": config.PRIMARY_URL,
                "secondary_url": config.SECONDARY_URL,
                "check_interval": config.CHECK_INTERVAL_SECONDS,
                "probe_timeout": config.PROBE_TIMEOUT_SECONDS,
                "upstream_timeout": config.UPSTREAM_TIMEOUT_SECONDS,
                "upstream_connect_timeout": config.UPSTREAM_CONNECT_TIMEOUT_SECONDS,
            }
        )

    @model_validator(mode="before")
    @classmethod
    def resolve_raw_values(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "listen_addr" in data:
            data["host"], data["port"] = parse_listen_addr(data.pop("listen_addr"))
        if "primary_url" in data:
            data["primary"] = BackendTarget.from_url("primary", data.pop("primary_url"))
        if "secondary_url" in data:
            data["secondary"] = BackendTarget.from_url(
                "secondary", data.pop("secondary_url")
            )
        return data
