"""Runtime configuration loaded from environment variables."""

import os
from dataclasses import dataclass
from typing import Optional

# Christchurch Metro GTFS-Realtime vehicle positions
DEFAULT_VEHICLE_FEED_URL = "https://apis.metroinfo.co.nz/rti/gtfsrt/v1/vehicle-positions.pb"
DEFAULT_FEED_KEY_HEADER = "Ocp-Apim-Subscription-Key"
DEFAULT_API_BASE = "http://localhost:8000"

STORE_BACKENDS = ("memory", "directory", "cloudflare")


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Invalid {name}: {raw!r} is not a number")


def _get_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Invalid {name}: {raw!r} is not an integer")


@dataclass
class Settings:
    """
    Process-wide settings.

    Environment Variables:
        METROMAP_STORE: Store backend ("memory", "directory" or "cloudflare")
        METROMAP_STORE_DIR: Directory for the directory backend
        CLOUDFLARE_ACCOUNT_ID, CLOUDFLARE_KV_NAMESPACE_ID, CLOUDFLARE_API_TOKEN:
            Credentials for the cloudflare backend
        VEHICLE_FEED_URL: GTFS-Realtime vehicle positions URL
        OCP_APIM_SUBSCRIPTION_KEY: Credential sent with every feed request
        FEED_KEY_HEADER: Header name carrying that credential
        FEED_TIMEOUT: Seconds before an upstream feed request is abandoned
        STOP_TIMES_MAX_CHUNKS: Optional cap on stop_times chunks read per request
        METROMAP_API_BASE: Base URL of the Read API for map clients
        REFRESH_INTERVAL: Seconds between vehicle refreshes
        HOST, PORT: Bind address for the HTTP server
    """
    store_backend: str = "directory"
    store_dir: str = "data/kv"
    cloudflare_account_id: str = ""
    cloudflare_namespace_id: str = ""
    cloudflare_api_token: str = ""
    vehicle_feed_url: str = DEFAULT_VEHICLE_FEED_URL
    feed_api_key: str = ""
    feed_key_header: str = DEFAULT_FEED_KEY_HEADER
    feed_timeout: float = 10.0
    stop_times_max_chunks: Optional[int] = None
    api_base: str = DEFAULT_API_BASE
    refresh_interval: float = 30.0
    host: str = "127.0.0.1"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from the current environment.

        Raises:
            ValueError: If a variable holds an invalid value.
        """
        backend = os.getenv("METROMAP_STORE", "directory").lower().strip()
        if backend not in STORE_BACKENDS:
            raise ValueError(
                f"Invalid METROMAP_STORE: {backend}. Must be one of {', '.join(STORE_BACKENDS)}"
            )

        max_chunks = _get_int("STOP_TIMES_MAX_CHUNKS", None)
        if max_chunks is not None and max_chunks < 1:
            raise ValueError("STOP_TIMES_MAX_CHUNKS must be at least 1")

        return cls(
            store_backend=backend,
            store_dir=os.getenv("METROMAP_STORE_DIR", "data/kv"),
            cloudflare_account_id=os.getenv("CLOUDFLARE_ACCOUNT_ID", ""),
            cloudflare_namespace_id=os.getenv("CLOUDFLARE_KV_NAMESPACE_ID", ""),
            cloudflare_api_token=os.getenv("CLOUDFLARE_API_TOKEN", ""),
            vehicle_feed_url=os.getenv("VEHICLE_FEED_URL", DEFAULT_VEHICLE_FEED_URL),
            feed_api_key=os.getenv("OCP_APIM_SUBSCRIPTION_KEY", ""),
            feed_key_header=os.getenv("FEED_KEY_HEADER", DEFAULT_FEED_KEY_HEADER),
            feed_timeout=_get_float("FEED_TIMEOUT", 10.0),
            stop_times_max_chunks=max_chunks,
            api_base=os.getenv("METROMAP_API_BASE", DEFAULT_API_BASE).rstrip("/"),
            refresh_interval=_get_float("REFRESH_INTERVAL", 30.0),
            host=os.getenv("HOST", "127.0.0.1"),
            port=_get_int("PORT", 8000),
        )
