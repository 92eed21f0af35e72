"""Read API over pre-ingested static GTFS tables."""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

from .errors import BadRequestError, NotFoundError, StoreError
from .models import BoundingBox, ChunkMetadata, Pagination, Record, TableResult
from .storage import MAX_CHUNKS, KeyValueStore, chunk_key, metadata_key, table_key

logger = logging.getLogger(__name__)

Predicate = Callable[[Record], bool]

BBOX_PARAMS = ("min_lat", "max_lat", "min_lon", "max_lon")


class QueryContext:
    """Per-request state shared by the filter builders of one query."""

    def __init__(self, api: "GTFSReadAPI", params: Mapping[str, str]):
        self.api = api
        self.params = params
        self.partial = False

    def param(self, name: str) -> Optional[str]:
        """Return a query parameter, treating empty strings as absent."""
        value = self.params.get(name)
        if value is None:
            return None
        value = str(value).strip()
        return value or None


FilterBuilder = Callable[[QueryContext], Optional[Predicate]]


def _text(value) -> str:
    return "" if value is None else str(value)


def _to_float(value) -> Optional[float]:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def equals(field: str, param: Optional[str] = None) -> FilterBuilder:
    """Exact string match of a record field against a query parameter."""
    param = param or field

    def build(ctx: QueryContext) -> Optional[Predicate]:
        value = ctx.param(param)
        if value is None:
            return None
        return lambda record: _text(record.get(field)) == value

    return build


def contains(param: str, *fields: str) -> FilterBuilder:
    """Case-insensitive substring match against any of the given fields."""

    def build(ctx: QueryContext) -> Optional[Predicate]:
        value = ctx.param(param)
        if value is None:
            return None
        needle = value.lower()
        return lambda record: any(needle in _text(record.get(f)).lower() for f in fields)

    return build


def parse_bounding_box(ctx: QueryContext) -> Optional[BoundingBox]:
    """
    Parse min_lat/max_lat/min_lon/max_lon.

    Returns:
        BoundingBox, or None when none of the four bounds are given.

    Raises:
        BadRequestError: If only some bounds are given, a bound is not a finite
            number, or a minimum exceeds its maximum.
    """
    raw = {name: ctx.param(name) for name in BBOX_PARAMS}
    supplied = [name for name, value in raw.items() if value is not None]
    if not supplied:
        return None
    if len(supplied) != len(BBOX_PARAMS):
        missing = ", ".join(name for name in BBOX_PARAMS if raw[name] is None)
        raise BadRequestError(f"Bounding box requires all of {', '.join(BBOX_PARAMS)}; missing {missing}")

    bounds = {}
    for name, value in raw.items():
        number = _to_float(value)
        if number is None:
            raise BadRequestError(f"Invalid {name}: {value!r} is not a number")
        bounds[name] = number

    bbox = BoundingBox(**bounds)
    if bbox.min_lat > bbox.max_lat or bbox.min_lon > bbox.max_lon:
        raise BadRequestError("Bounding box minimum exceeds maximum")
    return bbox


def within_bounds(ctx: QueryContext) -> Optional[Predicate]:
    bbox = parse_bounding_box(ctx)
    if bbox is None:
        return None

    def predicate(record: Record) -> bool:
        lat = _to_float(record.get("stop_lat"))
        lon = _to_float(record.get("stop_lon"))
        if lat is None or lon is None:
            return False
        return bbox.contains(lat, lon)

    return predicate


def stops_on_route(ctx: QueryContext) -> Optional[Predicate]:
    route_id = ctx.param("route_id")
    if route_id is None:
        return None
    stop_ids = ctx.api.stop_ids_for_route(route_id, ctx)
    return lambda record: _text(record.get("stop_id")) in stop_ids


def stop_times_on_route(ctx: QueryContext) -> Optional[Predicate]:
    route_id = ctx.param("route_id")
    if route_id is None:
        return None
    trip_ids = ctx.api.trip_ids_for_route(route_id)
    return lambda record: _text(record.get("trip_id")) in trip_ids


@dataclass
class TableSpec:
    """How one GTFS table is served."""
    name: str
    filters: Tuple[FilterBuilder, ...] = ()
    paginated: bool = False
    default_limit: int = 0
    cache_seconds: int = 3600
    capped: bool = False

    @property
    def label(self) -> str:
        # "stop_times" -> "Stop times"
        return self.name.replace("_", " ").capitalize()


TABLES: Dict[str, TableSpec] = {
    spec.name: spec
    for spec in (
        TableSpec(
            "stops",
            filters=(within_bounds, contains("search", "stop_name", "stop_code"), stops_on_route),
            paginated=True,
            default_limit=100,
            cache_seconds=300,
        ),
        TableSpec("routes", filters=(contains("search", "route_long_name", "route_short_name"),)),
        TableSpec("agency", cache_seconds=86400),
        TableSpec("calendar"),
        TableSpec("shapes", filters=(equals("shape_id"),)),
        TableSpec(
            "stop_times",
            filters=(equals("stop_id"), equals("trip_id"), stop_times_on_route),
            paginated=True,
            default_limit=1000,
            cache_seconds=300,
            capped=True,
        ),
        TableSpec("trips", filters=(equals("route_id"), equals("service_id")), cache_seconds=1800),
    )
}


def parse_positive_int(ctx: QueryContext, name: str, default: int) -> int:
    raw = ctx.param(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise BadRequestError(f"Invalid {name}: {raw!r} is not an integer")
    if value < 1:
        raise BadRequestError(f"Invalid {name}: must be at least 1")
    return value


def paginate(records: List[Record], page: int, limit: int) -> Tuple[List[Record], Pagination]:
    """Slice the 1-indexed page out of records."""
    start = (page - 1) * limit
    total = len(records)
    pagination = Pagination(
        page=page,
        limit=limit,
        total=total,
        total_pages=math.ceil(total / limit),
    )
    return records[start:start + limit], pagination


class GTFSReadAPI:
    """
    Serves GTFS tables from a key-value store with filtering and pagination.

    Every query is independent: the store is read on each call and nothing is
    cached between requests.
    """

    def __init__(self, store: KeyValueStore, max_stop_time_chunks: Optional[int] = None):
        """
        Args:
            store: Store holding the ingested tables.
            max_stop_time_chunks: Optional cap on chunks read for capped tables
                (stop_times). Results built from a capped scan are flagged partial.
        """
        self.store = store
        self.max_stop_time_chunks = max_stop_time_chunks

    def query(self, table: str, params: Optional[Mapping[str, str]] = None) -> TableResult:
        """
        Run a table query.

        Args:
            table: One of TABLES.
            params: Query parameters (filters, page, limit).

        Returns:
            TableResult with the filtered (and, for paginated tables, sliced) records.

        Raises:
            NotFoundError: If the table, or a table a filter joins through, is not stored.
            BadRequestError: If a parameter is malformed.
        """
        spec = TABLES.get(table)
        if spec is None:
            raise NotFoundError(f"Unknown table: {table}")

        ctx = QueryContext(self, params or {})
        if spec.paginated:
            page = parse_positive_int(ctx, "page", 1)
            limit = parse_positive_int(ctx, "limit", spec.default_limit)

        records = self._load(spec, ctx)

        predicates = [p for p in (build(ctx) for build in spec.filters) if p is not None]
        if predicates:
            records = [r for r in records if all(p(r) for p in predicates)]

        logger.debug(f"{table}: {len(records)} records after {len(predicates)} filters")

        if not spec.paginated:
            return TableResult(data=records, total=len(records), partial=ctx.partial)

        data, pagination = paginate(records, page, limit)
        return TableResult(data=data, total=pagination.total, pagination=pagination, partial=ctx.partial)

    def _load(self, spec: TableSpec, ctx: QueryContext) -> List[Record]:
        cap = self.max_stop_time_chunks if spec.capped else None
        records, partial = self.load_chunked(spec.name, cap)
        ctx.partial = ctx.partial or partial
        if records is None:
            raise NotFoundError(f"{spec.label} data not found")
        return records

    def _get_array(self, key: str) -> Optional[List[Record]]:
        value = self.store.get_json(key)
        if value is not None and not isinstance(value, list):
            raise StoreError(f"Expected a JSON array at {key}, got {type(value).__name__}")
        return value

    def load_chunked(self, table: str, cap: Optional[int] = None) -> Tuple[Optional[List[Record]], bool]:
        """
        Load a table that may be stored whole or split into chunks.

        Chunks are read in ascending index order. The chunk count comes from the
        metadata record when present; otherwise chunk keys are probed until the
        first missing one.

        Args:
            table: GTFS table name.
            cap: Optional maximum number of chunks to read.

        Returns:
            (records or None if nothing is stored, partial flag)
        """
        whole = self._get_array(table_key(table))
        if whole is not None:
            return whole, False

        metadata_value = self.store.get_json(metadata_key(table))
        if metadata_value is not None:
            chunk_count = ChunkMetadata.from_dict(metadata_value).chunk_count
            probing = False
        else:
            chunk_count = MAX_CHUNKS
            probing = True

        to_read = chunk_count if cap is None else min(chunk_count, cap)

        records: List[Record] = []
        found_any = False
        exhausted = False
        for index in range(to_read):
            chunk = self._get_array(chunk_key(table, index))
            if chunk is None:
                if probing:
                    exhausted = True
                    break
                logger.warning(f"Missing {chunk_key(table, index)} (metadata lists {chunk_count} chunks)")
                continue
            found_any = True
            records.extend(chunk)

        if not found_any:
            return None, False

        partial = False
        if to_read < chunk_count and not exhausted:
            if probing:
                partial = self.store.get(chunk_key(table, to_read)) is not None
            else:
                partial = True
        if partial:
            logger.info(f"{table}: chunk scan capped at {to_read} chunks, result is partial")
        return records, partial

    def trip_ids_for_route(self, route_id: str) -> Set[str]:
        """Trip IDs whose route_id matches."""
        trips, _ = self.load_chunked("trips")
        if trips is None:
            raise NotFoundError("Trips data not found")
        return {_text(t.get("trip_id")) for t in trips if _text(t.get("route_id")) == route_id}

    def stop_ids_for_route(self, route_id: str, ctx: Optional[QueryContext] = None) -> Set[str]:
        """Stop IDs visited by any trip of the route, resolved through stop_times."""
        trip_ids = self.trip_ids_for_route(route_id)
        stop_times, partial = self.load_chunked("stop_times", self.max_stop_time_chunks)
        if stop_times is None:
            raise NotFoundError("Stop times data not found")
        if ctx is not None:
            ctx.partial = ctx.partial or partial
        return {
            _text(st.get("stop_id"))
            for st in stop_times
            if _text(st.get("trip_id")) in trip_ids
        }
