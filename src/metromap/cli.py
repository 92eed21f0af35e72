"""Command-line entry point: serve the API and run ingestion jobs."""

import argparse
import logging
import sys
import time
from typing import List, Optional

from dotenv import load_dotenv

from .api_client import MetroAPIClient
from .config import Settings
from .errors import MetroMapError
from .ingest import clean_store, load_bundle, prepare_bundle, upload_prepared
from .map_state import VehiclePoller
from .storage import store_from_settings

logger = logging.getLogger(__name__)

DEFAULT_ZIP_PATH = "data/gtfs/gtfs.zip"
DEFAULT_OUTPUT_DIR = "data/gtfs/kv-ready"


def _serve(args, settings: Settings) -> int:
    from .server import create_app

    app = create_app(settings=settings)
    app.run(host=args.host or settings.host, port=args.port or settings.port)
    return 0


def _prepare(args, settings: Settings) -> int:
    summary = prepare_bundle(args.zip_path, args.output_dir)
    print(f"\n{'File':<20} {'Records':>8}  Key")
    print("-" * 60)
    for filename, info in summary.items():
        chunks = f" ({info['chunks']} chunks)" if info["chunked"] else ""
        print(f"{filename:<20} {info['records']:>8}  {info['key']}{chunks}")
    print(f"\nFiles saved to: {args.output_dir}")
    return 0


def _report(report, action: str) -> int:
    print(f"\n{action} summary: {len(report.succeeded)} succeeded, {len(report.failed)} failed")
    for key in report.failed:
        print(f"  failed: {key}")
    return 0 if report.ok else 1


def _upload(args, settings: Settings) -> int:
    return _report(upload_prepared(args.output_dir, store_from_settings(settings)), "Upload")


def _load(args, settings: Settings) -> int:
    return _report(load_bundle(args.zip_path, store_from_settings(settings)), "Load")


def _clean(args, settings: Settings) -> int:
    return _report(clean_store(store_from_settings(settings)), "Cleanup")


def _vehicles(args, settings: Settings) -> int:
    poller = VehiclePoller(MetroAPIClient.from_settings(settings), interval=settings.refresh_interval)
    if not args.watch:
        poller.refresh()
        if poller.error:
            print(f"Error: {poller.error}")
            return 1
        for marker in poller.markers():
            lat, lon = marker.position
            print(f"{marker.vehicle_id:<12} route {marker.route_id:<8} {lat:.5f}, {lon:.5f}")
        return 0

    poller.start()
    try:
        while True:
            time.sleep(settings.refresh_interval)
            print(f"{time.strftime('%H:%M:%S')} {len(poller.markers())} vehicles")
    except KeyboardInterrupt:
        pass
    finally:
        poller.stop(timeout=settings.feed_timeout)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="metromap", description="Transit map GTFS API and ingestion tools")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the Read API and vehicle proxy")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.set_defaults(func=_serve)

    prepare = sub.add_parser("prepare", help="Convert a GTFS zip into upload-ready JSON")
    prepare.add_argument("zip_path", nargs="?", default=DEFAULT_ZIP_PATH)
    prepare.add_argument("output_dir", nargs="?", default=DEFAULT_OUTPUT_DIR)
    prepare.set_defaults(func=_prepare)

    upload = sub.add_parser("upload", help="Upload prepared JSON into the configured store")
    upload.add_argument("output_dir", nargs="?", default=DEFAULT_OUTPUT_DIR)
    upload.set_defaults(func=_upload)

    load = sub.add_parser("load", help="Prepare a GTFS zip straight into the configured store")
    load.add_argument("zip_path", nargs="?", default=DEFAULT_ZIP_PATH)
    load.set_defaults(func=_load)

    clean = sub.add_parser("clean", help="Delete all GTFS keys from the configured store")
    clean.set_defaults(func=_clean)

    vehicles = sub.add_parser("vehicles", help="Print live vehicle positions from the API")
    vehicles.add_argument("--watch", action="store_true", help="Keep polling until interrupted")
    vehicles.set_defaults(func=_vehicles)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        settings = Settings.from_env()
        return args.func(args, settings)
    except (MetroMapError, ValueError) as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
