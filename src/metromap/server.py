"""HTTP surface: GTFS Read API and vehicle feed proxy."""

import logging
from datetime import datetime, timezone
from typing import Optional

from flask import Flask, Response, jsonify, request
from flask_cors import CORS

from . import __version__
from .config import Settings
from .errors import BadRequestError, FeedError, NotFoundError
from .feed_client import VehicleFeedClient
from .gtfs_api import TABLES, GTFSReadAPI
from .storage import KeyValueStore, store_from_settings

logger = logging.getLogger(__name__)

API_NAME = "Metro GTFS API"

TABLE_ENDPOINTS = {
    "/api/stops": "stops",
    "/api/routes": "routes",
    "/api/agency": "agency",
    "/api/calendar": "calendar",
    "/api/shapes": "shapes",
    "/api/stop-times": "stop_times",
    "/api/trips": "trips",
}

ENDPOINT_DESCRIPTIONS = [
    "GET /api/stops - Get bus stops (route_id, search, min_lat/max_lat/min_lon/max_lon, page, limit)",
    "GET /api/routes - Get routes (search)",
    "GET /api/agency - Get agency information",
    "GET /api/calendar - Get service calendar",
    "GET /api/shapes - Get route shapes (shape_id)",
    "GET /api/stop-times - Get stop times (stop_id, trip_id, route_id, page, limit)",
    "GET /api/trips - Get trips (route_id, service_id)",
    "GET /api/health - Health check",
    "GET /vehicles - Live vehicle positions",
]


def _table_view(api: GTFSReadAPI, table: str):
    spec = TABLES[table]

    def view():
        try:
            result = api.query(table, request.args.to_dict())
        except NotFoundError as e:
            return jsonify({"error": str(e)}), 404
        except BadRequestError as e:
            return jsonify({"error": str(e)}), 400
        except Exception:
            logger.exception(f"{spec.label} request failed")
            return jsonify({"error": f"Failed to fetch {spec.label.lower()} data"}), 500

        response = jsonify(result.to_dict())
        response.headers["Cache-Control"] = f"public, max-age={spec.cache_seconds}"
        return response

    view.__name__ = f"get_{table}"
    return view


def create_app(
    store: Optional[KeyValueStore] = None,
    feed_client: Optional[VehicleFeedClient] = None,
    settings: Optional[Settings] = None,
) -> Flask:
    """
    Build the Flask application.

    Args:
        store: Store holding ingested GTFS tables. Built from settings if omitted.
        feed_client: Vehicle feed client. Built from settings if omitted.
        settings: Runtime settings. Read from the environment if omitted.
    """
    settings = settings or Settings.from_env()
    if store is None:
        store = store_from_settings(settings)
    if feed_client is None:
        feed_client = VehicleFeedClient.from_settings(settings)

    api = GTFSReadAPI(store, max_stop_time_chunks=settings.stop_times_max_chunks)

    app = Flask(__name__)
    app.json.sort_keys = False
    CORS(app, methods=["GET", "OPTIONS"], allow_headers=["Content-Type", "Authorization"])
    app.extensions["metromap"] = {"api": api, "feed_client": feed_client}

    @app.before_request
    def preflight():
        # Answer every preflight before routing, including unknown paths
        if request.method == "OPTIONS":
            return Response(status=204)
        return None

    for path, table in TABLE_ENDPOINTS.items():
        app.add_url_rule(path, f"table_{table}", _table_view(api, table), methods=["GET"])

    @app.route("/api/health")
    def health():
        return jsonify({"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()})

    @app.route("/")
    def index():
        return jsonify({"name": API_NAME, "version": __version__, "endpoints": ENDPOINT_DESCRIPTIONS})

    @app.route("/vehicles")
    def vehicles():
        try:
            feed = feed_client.get_vehicles()
        except FeedError:
            return jsonify({"error": "Failed to fetch vehicles"}), 500

        response = jsonify(feed)
        response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
        return response

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(_error):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_error(_error):
        return jsonify({"error": "Internal server error"}), 500

    return app
