import os

from dotenv import load_dotenv

load_dotenv()


class Config:
    """
    Configuration class for environment variables and default settings.
    """

    # Bare port ("8080" or ":8080") binds all interfaces; "host:port" binds one
    LISTEN_ADDR = os.environ.get("LISTEN_ADDR", "8080")

    # Primary is preferred while reachable, secondary takes over otherwise
    PRIMARY_URL = os.environ.get("SERVER_A_ADDR", "")
    SECONDARY_URL = os.environ.get("SERVER_B_ADDR", "")

    # Durations stay raw strings; ProxySettings parses and validates them
    CHECK_INTERVAL_SECONDS = os.environ.get("CHECK_INTERVAL_SECONDS", "5")
    PROBE_TIMEOUT_SECONDS = os.environ.get("PROBE_TIMEOUT_SECONDS", "2")

    UPSTREAM_TIMEOUT_SECONDS = os.environ.get("UPSTREAM_TIMEOUT_SECONDS", "30")
    UPSTREAM_CONNECT_TIMEOUT_SECONDS = os.environ.get("UPSTREAM_CONNECT_TIMEOUT_SECONDS", "5")
