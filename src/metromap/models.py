"""Data models for metromap."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# GTFS records are kept as parsed: field name -> string value
Record = Dict[str, Any]


@dataclass
class Pagination:
    """Page window over a filtered table."""
    page: int
    limit: int
    total: int
    total_pages: int

    def to_dict(self) -> dict:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "totalPages": self.total_pages,
        }


@dataclass
class TableResult:
    """Result of a Read API table query."""
    data: List[Record]
    total: int
    pagination: Optional[Pagination] = None
    partial: bool = False  # True when a capped chunk scan stopped early

    def to_dict(self) -> dict:
        """Serialize to the JSON envelope returned over HTTP."""
        if self.pagination is not None:
            body = {"data": self.data, "pagination": self.pagination.to_dict()}
        else:
            body = {"data": self.data, "total": self.total}
        if self.partial:
            body["partial"] = True
        return body


@dataclass
class ChunkMetadata:
    """Describes a table stored as numbered chunks."""
    total_records: int
    chunk_count: int
    chunk_size: int

    def to_dict(self) -> dict:
        return {
            "totalRecords": self.total_records,
            "chunkCount": self.chunk_count,
            "chunkSize": self.chunk_size,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChunkMetadata":
        return cls(
            total_records=int(data["totalRecords"]),
            chunk_count=int(data["chunkCount"]),
            chunk_size=int(data["chunkSize"]),
        )


@dataclass
class BoundingBox:
    """Inclusive lat/lon rectangle."""
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def contains(self, lat: float, lon: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lon <= lon <= self.max_lon


@dataclass(frozen=True)
class StopRoute:
    """Route identity attached to a stop, derived from the trips serving it."""
    route_id: str
    route_short_name: Optional[str] = None
    route_headsign: Optional[str] = None


@dataclass
class RouteShape:
    """Ordered polyline for one shape_id."""
    shape_id: str
    points: List[Tuple[float, float]] = field(default_factory=list)  # (lat, lon)


@dataclass
class VehicleMarker:
    """Map marker for a live vehicle position."""
    position: Tuple[float, float]  # (lat, lon)
    vehicle_id: str
    route_id: str
    popup: str
