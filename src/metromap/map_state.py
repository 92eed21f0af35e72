"""Map-ready views built from Read API tables and the vehicle feed."""

import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional

from .api_client import MetroAPIClient
from .errors import APIError
from .models import BoundingBox, Record, RouteShape, StopRoute, VehicleMarker

logger = logging.getLogger(__name__)

DEFAULT_COLORS = [
    "#3B82F6", "#EF4444", "#10B981", "#F59E0B", "#8B5CF6",
    "#EC4899", "#06B6D4", "#84CC16", "#F97316", "#6366F1",
]


def _number(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def routes_by_stop(stop_times: Iterable[Record], trips: Iterable[Record]) -> Dict[str, List[StopRoute]]:
    """
    Join stop_times -> trips and group the resulting routes by stop_id.

    Stop times whose trip is unknown are dropped.
    """
    trip_routes = {
        trip.get("trip_id"): StopRoute(
            route_id=trip.get("route_id"),
            route_short_name=trip.get("trip_short_name"),
            route_headsign=trip.get("trip_headsign"),
        )
        for trip in trips
    }

    connections: Dict[str, List[StopRoute]] = {}
    for stop_time in stop_times:
        route = trip_routes.get(stop_time.get("trip_id"))
        if route is None:
            continue
        routes = connections.setdefault(stop_time.get("stop_id"), [])
        if route not in routes:
            routes.append(route)
    return connections


def stops_for_route(
    route_id: str,
    trips: Iterable[Record],
    stop_times: Iterable[Record],
    stops: Iterable[Record],
) -> List[Record]:
    """
    Stops served by a route, ordered by the lowest stop_sequence seen for each.

    Each returned stop carries the ``stop_sequence`` and ``trip_id`` of that
    lowest observation.
    """
    trip_ids = {trip.get("trip_id") for trip in trips if trip.get("route_id") == route_id}

    first_seen: Dict[str, dict] = {}
    for stop_time in stop_times:
        if stop_time.get("trip_id") not in trip_ids:
            continue
        sequence = _number(stop_time.get("stop_sequence"))
        if sequence is None:
            continue
        stop_id = stop_time.get("stop_id")
        current = first_seen.get(stop_id)
        if current is None or sequence < current["sequence"]:
            first_seen[stop_id] = {
                "sequence": sequence,
                "stop_sequence": stop_time.get("stop_sequence"),
                "trip_id": stop_time.get("trip_id"),
            }

    route_stops = []
    for stop in stops:
        info = first_seen.get(stop.get("stop_id"))
        if info is None:
            continue
        route_stops.append((info["sequence"], {**stop, "stop_sequence": info["stop_sequence"], "trip_id": info["trip_id"]}))

    route_stops.sort(key=lambda item: item[0])
    return [stop for _, stop in route_stops]


def shape_ids_for_route(trips: Iterable[Record]) -> List[str]:
    """Unique non-empty shape_ids in first-seen order."""
    shape_ids: List[str] = []
    for trip in trips:
        shape_id = trip.get("shape_id")
        if shape_id and shape_id not in shape_ids:
            shape_ids.append(shape_id)
    return shape_ids


def shape_polyline(shape_id: str, points: Iterable[Record]) -> RouteShape:
    """Sort shape points by shape_pt_sequence and project them to (lat, lon)."""
    ordered = []
    for point in points:
        sequence = _number(point.get("shape_pt_sequence"))
        lat = _number(point.get("shape_pt_lat"))
        lon = _number(point.get("shape_pt_lon"))
        if sequence is None or lat is None or lon is None:
            continue
        ordered.append((sequence, (lat, lon)))
    ordered.sort(key=lambda item: item[0])
    return RouteShape(shape_id=shape_id, points=[coords for _, coords in ordered])


def vehicle_markers(feed: dict) -> List[VehicleMarker]:
    """Markers for every feed entity that carries a vehicle position."""
    markers = []
    for entity in feed.get("entity") or []:
        vehicle = entity.get("vehicle") or {}
        position = vehicle.get("position")
        if not position:
            continue
        latitude = position.get("latitude")
        longitude = position.get("longitude")
        if latitude is None or longitude is None:
            continue

        vehicle_id = (vehicle.get("vehicle") or {}).get("id") or "Unknown"
        route_id = (vehicle.get("trip") or {}).get("routeId") or "Unknown"
        markers.append(
            VehicleMarker(
                position=(latitude, longitude),
                vehicle_id=vehicle_id,
                route_id=route_id,
                popup=f"<b>Vehicle:</b> {vehicle_id}<br><b>Route:</b> {route_id}",
            )
        )
    return markers


def stops_in_bounds(stops: Iterable[Record], bbox: BoundingBox) -> List[Record]:
    result = []
    for stop in stops:
        lat = _number(stop.get("stop_lat"))
        lon = _number(stop.get("stop_lon"))
        if lat is not None and lon is not None and bbox.contains(lat, lon):
            result.append(stop)
    return result


def fallback_color(route_id: str) -> str:
    """Stable palette colour for a route without one of its own."""
    # 32-bit string hash, same sequence of values as the web client's
    h = 0
    for ch in route_id:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return DEFAULT_COLORS[abs(h) % len(DEFAULT_COLORS)]


def route_color(route_id: str, routes: Iterable[Record]) -> str:
    """The route's GTFS colour as "#RRGGBB", or a fallback palette colour."""
    for route in routes:
        if route.get("route_id") == route_id and route.get("route_color"):
            color = route["route_color"]
            return color if color.startswith("#") else f"#{color}"
    return fallback_color(route_id)


def fetch_all_pages(fetch: Callable[..., dict], **params) -> List[Record]:
    """Collect every page of a paginated endpoint."""
    records: List[Record] = []
    page = 1
    while True:
        envelope = fetch(page=page, **params)
        records.extend(envelope.get("data") or [])
        total_pages = (envelope.get("pagination") or {}).get("totalPages", 1)
        if page >= total_pages:
            return records
        page += 1


class RouteStopsView:
    """
    Stops of a selected route, in travel order.

    When the API fails or the route has no stops, ``route_stops`` is empty and
    ``degraded`` is set so the UI can show that it has no data.
    """

    def __init__(self, client: MetroAPIClient):
        self.client = client
        self.routes: List[Record] = []
        self.route_stops: List[Record] = []
        self.selected_route: Optional[str] = None
        self.error: Optional[str] = None
        self.degraded = False

    def fetch_routes(self) -> List[Record]:
        try:
            self.routes = self.client.get_routes()
        except APIError as e:
            logger.error(f"Error fetching routes: {e}")
            self.error = "Failed to fetch routes"
            raise
        self.error = None
        return self.routes

    def fetch_route_stops(self, route_id: str) -> List[Record]:
        if not route_id:
            self.error = "Route ID is required"
            return []

        self.selected_route = route_id
        self.error = None
        try:
            trips = self.client.get_trips(route_id=route_id)
            stop_times = fetch_all_pages(self.client.get_stop_times, route_id=route_id)
            stops = fetch_all_pages(self.client.get_stops, route_id=route_id)
        except APIError as e:
            logger.error(f"Error fetching stops for route {route_id}: {e}")
            self.error = str(e)
            self.route_stops = []
            self.degraded = True
            return []

        self.route_stops = stops_for_route(route_id, trips, stop_times, stops)
        self.degraded = not self.route_stops
        if self.degraded:
            logger.warning(f"No stops found for route {route_id}")
        return self.route_stops

    def clear(self) -> None:
        self.route_stops = []
        self.selected_route = None
        self.error = None
        self.degraded = False

    @property
    def stops_count(self) -> int:
        return len(self.route_stops)

    @property
    def has_stops(self) -> bool:
        return bool(self.route_stops)


class RouteShapesView:
    """Cached route polylines."""

    def __init__(self, client: MetroAPIClient):
        self.client = client
        self.route_shapes: Dict[str, List[RouteShape]] = {}
        self.error: Optional[str] = None
        self.degraded = False

    def get_route_shapes(self, route_id: str) -> List[RouteShape]:
        if route_id in self.route_shapes:
            logger.debug(f"Using cached shapes for route {route_id}")
            return self.route_shapes[route_id]

        self.error = None
        try:
            shape_ids = shape_ids_for_route(self.client.get_trips(route_id=route_id))
        except APIError as e:
            logger.error(f"Error getting shape IDs for route {route_id}: {e}")
            self.error = str(e)
            self.degraded = True
            return []

        shapes = []
        for shape_id in shape_ids:
            try:
                points = self.client.get_shapes(shape_id=shape_id)
            except APIError as e:
                logger.warning(f"Failed to fetch shape {shape_id}: {e}")
                continue
            shapes.append(shape_polyline(shape_id, points))
            logger.debug(f"Loaded shape {shape_id} with {len(points)} points")

        self.degraded = not shapes
        if shapes:
            self.route_shapes[route_id] = shapes
        else:
            logger.warning(f"No shapes found for route {route_id}")
        return shapes

    def clear(self, route_id: Optional[str] = None) -> None:
        if route_id:
            self.route_shapes.pop(route_id, None)
        else:
            self.route_shapes.clear()

    def get_route_color(self, route_id: str) -> str:
        try:
            routes = self.client.get_routes()
        except APIError as e:
            logger.warning(f"Could not fetch route color: {e}")
            routes = []
        return route_color(route_id, routes)


class MapStopsView:
    """Stops shown on the map, with the routes serving each."""

    def __init__(self, client: MetroAPIClient):
        self.client = client
        self.stops: List[Record] = []
        self.connections: Dict[str, List[StopRoute]] = {}
        self.error: Optional[str] = None

    def fetch_all_stops(self, limit: int = 500) -> List[Record]:
        try:
            envelope = self.client.get_stops(limit=limit)
        except APIError as e:
            logger.error(f"Error fetching stops: {e}")
            self.error = str(e)
            return self.stops
        self.stops = envelope.get("data") or []
        total = (envelope.get("pagination") or {}).get("total", len(self.stops))
        logger.info(f"Fetched {len(self.stops)} stops for map ({total} total available)")
        return self.stops

    def fetch_stop_route_connections(self, limit: int = 1000) -> Dict[str, List[StopRoute]]:
        try:
            stop_times = self.client.get_stop_times(limit=limit).get("data") or []
            trips = self.client.get_trips()
        except APIError as e:
            logger.error(f"Error fetching stop route connections: {e}")
            self.error = str(e)
            return self.connections
        self.connections = routes_by_stop(stop_times, trips)
        logger.info(f"Built route connections for {len(self.connections)} stops")
        return self.connections

    def initialize(self) -> None:
        self.fetch_all_stops()
        self.fetch_stop_route_connections()

    def routes_for_stop(self, stop_id: str) -> List[StopRoute]:
        return self.connections.get(stop_id, [])

    def stops_with_routes(self) -> List[Record]:
        result = []
        for stop in self.stops:
            routes = self.routes_for_stop(stop.get("stop_id"))
            result.append({**stop, "routes": routes, "routeCount": len(routes)})
        return result

    def stops_by_route(self, route_id: str) -> List[Record]:
        return [
            stop for stop in self.stops_with_routes()
            if any(route.route_id == route_id for route in stop["routes"])
        ]

    def stops_in_bounds(self, bbox: BoundingBox) -> List[Record]:
        return stops_in_bounds(self.stops_with_routes(), bbox)

    def load_more_stops(self, bbox: BoundingBox, limit: int = 1000) -> List[Record]:
        """Fetch stops inside the viewport and merge those not already loaded."""
        try:
            envelope = self.client.get_stops(
                limit=limit,
                min_lat=bbox.min_lat,
                max_lat=bbox.max_lat,
                min_lon=bbox.min_lon,
                max_lon=bbox.max_lon,
            )
        except APIError as e:
            logger.error(f"Error loading more stops: {e}")
            return []

        known = {stop.get("stop_id") for stop in self.stops}
        new_stops = [stop for stop in envelope.get("data") or [] if stop.get("stop_id") not in known]
        self.stops = self.stops + new_stops
        logger.debug(f"Loaded {len(new_stops)} additional stops for viewport")
        return new_stops


class VehiclePoller:
    """
    Refreshes vehicle markers on a fixed interval in a background thread.

    The last good markers are kept when a refresh fails.
    """

    def __init__(self, client: MetroAPIClient, interval: float = 30.0):
        self.client = client
        self.interval = interval
        self.vehicles: List[dict] = []
        self.error: Optional[str] = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def refresh(self, stop_event: Optional[threading.Event] = None) -> None:
        """
        Fetch the feed once.

        Args:
            stop_event: When given and set by the time the fetch returns, the
                result is dropped.
        """
        try:
            feed = self.client.get_vehicles()
        except APIError as e:
            logger.error(f"Error loading vehicles: {e}")
            with self._lock:
                if stop_event is None or not stop_event.is_set():
                    self.error = str(e) or "Failed to fetch vehicle data"
            return
        with self._lock:
            if stop_event is not None and stop_event.is_set():
                return
            self.vehicles = feed.get("entity") or []
            self.error = None

    def markers(self) -> List[VehicleMarker]:
        with self._lock:
            entities = list(self.vehicles)
        return vehicle_markers({"entity": entities})

    def _run(self, stop_event: threading.Event) -> None:
        while True:
            try:
                self.refresh(stop_event)
            except Exception as e:
                logger.exception(f"Unexpected error refreshing vehicles: {e}")
                with self._lock:
                    if not stop_event.is_set():
                        self.error = "Failed to fetch vehicle data"
            if stop_event.wait(self.interval):
                return

    def start(self) -> None:
        """Refresh now and then every ``interval`` seconds. Restarts if already running."""
        self.stop()
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stop_event,), name="vehicle-poller", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Cancel the timer.

        A refresh still in flight never writes its result. Pass ``timeout`` to
        also wait for the thread to exit.
        """
        with self._lock:
            self._stop_event.set()
        thread, self._thread = self._thread, None
        if timeout is not None and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()
