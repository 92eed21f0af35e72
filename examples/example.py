"""Example usage of the metromap Read API and map views."""

import logging
import sys
from pathlib import Path

# Add src to path so we can import metromap
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from metromap.gtfs_api import GTFSReadAPI
from metromap.ingest import load_bundle
from metromap.map_state import routes_by_stop, stops_for_route
from metromap.storage import InMemoryStore

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def print_route(api: GTFSReadAPI, route_id: str):
    """
    Print a route's stops in travel order.

    Args:
        api: Read API over a loaded store.
        route_id: GTFS route_id (e.g., "3")
    """
    print(f"\n{'='*70}")
    print(f"Route: {route_id}")
    print(f"{'='*70}\n")

    trips = api.query("trips", {"route_id": route_id}).data
    stop_times = api.query("stop_times", {"route_id": route_id, "limit": "100000"}).data
    stops = api.query("stops", {"route_id": route_id, "limit": "100000"}).data

    route_stops = stops_for_route(route_id, trips, stop_times, stops)
    if not route_stops:
        print("  No stops found")
        return

    connections = routes_by_stop(stop_times, trips)
    for stop in route_stops:
        served_by = ", ".join(sorted({r.route_id for r in connections.get(stop["stop_id"], [])}))
        print(f"  {stop['stop_sequence']:>3}. {stop['stop_name']} ({stop['stop_id']}) [{served_by}]")


def main():
    """Load a GTFS bundle into memory and print a few routes."""
    if len(sys.argv) < 2:
        print("Usage: python example.py <gtfs.zip> [route_id ...]")
        sys.exit(1)

    store = InMemoryStore()
    report = load_bundle(sys.argv[1], store)
    if not report.ok:
        logger.error(f"Failed to load {len(report.failed)} keys")
        sys.exit(1)

    api = GTFSReadAPI(store)
    route_ids = sys.argv[2:] or [r["route_id"] for r in api.query("routes").data[:3]]
    for route_id in route_ids:
        print_route(api, route_id)


if __name__ == "__main__":
    main()
