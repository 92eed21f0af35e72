"""metromap - GTFS static Read API, realtime vehicle proxy and map views."""

__version__ = "0.1.0"

from .models import (
    BoundingBox,
    ChunkMetadata,
    Pagination,
    RouteShape,
    StopRoute,
    TableResult,
    VehicleMarker,
)
from .storage import CloudflareKVStore, DirectoryStore, InMemoryStore, KeyValueStore
from .gtfs_api import GTFSReadAPI
from .feed_client import VehicleFeedClient
from .api_client import MetroAPIClient

__all__ = [
    "GTFSReadAPI",
    "VehicleFeedClient",
    "MetroAPIClient",
    "KeyValueStore",
    "InMemoryStore",
    "DirectoryStore",
    "CloudflareKVStore",
    "BoundingBox",
    "ChunkMetadata",
    "Pagination",
    "RouteShape",
    "StopRoute",
    "TableResult",
    "VehicleMarker",
]
