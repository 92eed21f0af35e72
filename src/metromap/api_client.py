"""HTTP client for the Read API and the vehicle feed proxy."""

import logging
from typing import List, Optional

import requests

from .errors import APIError
from .models import Record

logger = logging.getLogger(__name__)


class MetroAPIClient:
    """Thin wrapper around the Read API endpoints used by map views."""

    def __init__(
        self,
        base_url: str,
        vehicles_url: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            base_url: Read API root, e.g. "http://localhost:8000".
            vehicles_url: Feed proxy URL. Defaults to ``<base_url>/vehicles``.
            timeout: Seconds per request.
            session: Optional requests session (injected in tests).
        """
        self.base_url = base_url.rstrip("/")
        self.vehicles_url = vehicles_url or f"{self.base_url}/vehicles"
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings) -> "MetroAPIClient":
        return cls(settings.api_base, timeout=settings.feed_timeout)

    def _get(self, url: str, params: Optional[dict] = None) -> dict:
        params = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Request to {url} failed: {e}")
            raise APIError(f"Request to {url} failed: {e}") from e

        if not response.ok:
            try:
                body = response.json()
            except ValueError:
                body = None
            message = body.get("error", "") if isinstance(body, dict) else ""
            raise APIError(
                f"HTTP error! status: {response.status_code} {message}".strip(),
                status_code=response.status_code,
            )

        # requests.JSONDecodeError subclasses ValueError
        try:
            body = response.json()
        except ValueError as e:
            logger.error(f"Invalid JSON from {url}: {e}")
            raise APIError(f"Invalid JSON from {url}: {e}", status_code=response.status_code) from e
        if not isinstance(body, dict):
            raise APIError(
                f"Expected a JSON object from {url}, got {type(body).__name__}",
                status_code=response.status_code,
            )
        return body

    def _table(self, path: str, **params) -> List[Record]:
        return self._get(f"{self.base_url}{path}", params).get("data") or []

    def get_routes(self, search: Optional[str] = None) -> List[Record]:
        return self._table("/api/routes", search=search)

    def get_trips(self, route_id: Optional[str] = None, service_id: Optional[str] = None) -> List[Record]:
        return self._table("/api/trips", route_id=route_id, service_id=service_id)

    def get_stops(self, **params) -> dict:
        """Return the full stops envelope (data + pagination)."""
        return self._get(f"{self.base_url}/api/stops", params)

    def get_stop_times(self, **params) -> dict:
        """Return the full stop-times envelope (data + pagination)."""
        return self._get(f"{self.base_url}/api/stop-times", params)

    def get_shapes(self, shape_id: Optional[str] = None) -> List[Record]:
        return self._table("/api/shapes", shape_id=shape_id)

    def get_vehicles(self) -> dict:
        """Return the decoded GTFS-Realtime feed."""
        return self._get(self.vehicles_url)
