"""GTFS-Realtime vehicle positions fetcher and decoder."""

import logging
from typing import Optional

import requests
from google.protobuf.json_format import MessageToDict
from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

from .config import DEFAULT_FEED_KEY_HEADER, DEFAULT_VEHICLE_FEED_URL
from .errors import FeedError

logger = logging.getLogger(__name__)


def decode_feed(feed_data: bytes) -> dict:
    """
    Decode a GTFS-Realtime FeedMessage into plain JSON-compatible data.

    Field names follow the protobuf JSON mapping (lowerCamelCase), so a
    vehicle's route is found at ``entity[i].vehicle.trip.routeId``.

    Args:
        feed_data: Raw protobuf bytes.

    Returns:
        Dict with ``header`` and ``entity`` keys.

    Raises:
        FeedError: If the payload is not a valid FeedMessage.
    """
    feed = gtfs_realtime_pb2.FeedMessage()
    try:
        feed.ParseFromString(feed_data)
    except DecodeError as e:
        raise FeedError(f"Invalid GTFS-Realtime payload: {e}") from e
    return MessageToDict(feed)


class VehicleFeedClient:
    """Fetches the upstream vehicle positions feed and returns it decoded."""

    def __init__(
        self,
        url: str = DEFAULT_VEHICLE_FEED_URL,
        api_key: str = "",
        header_name: str = DEFAULT_FEED_KEY_HEADER,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the feed client.

        Args:
            url: Upstream GTFS-Realtime URL.
            api_key: Credential sent in ``header_name`` on every request.
            header_name: Header carrying the credential.
            timeout: Seconds before the upstream request is abandoned.
            session: Optional requests session (injected in tests).
        """
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._headers = {header_name: api_key} if api_key else {}
        if not api_key:
            logger.warning("No feed API key configured; upstream may reject requests")

    @classmethod
    def from_settings(cls, settings) -> "VehicleFeedClient":
        return cls(
            url=settings.vehicle_feed_url,
            api_key=settings.feed_api_key,
            header_name=settings.feed_key_header,
            timeout=settings.feed_timeout,
        )

    def fetch_feed(self) -> bytes:
        """
        Fetch the raw feed.

        Returns:
            Raw protobuf bytes.
        """
        logger.debug(f"Fetching {self.url}")
        response = self.session.get(self.url, headers=self._headers, timeout=self.timeout)
        response.raise_for_status()
        return response.content

    def get_vehicles(self) -> dict:
        """
        Fetch and decode the vehicle positions feed.

        No retries and no caching: each call hits the upstream once.

        Raises:
            FeedError: If the fetch or the decode fails.
        """
        try:
            feed = decode_feed(self.fetch_feed())
        except FeedError as e:
            logger.error(f"Failed to decode {self.url}: {e}")
            raise
        except requests.RequestException as e:
            logger.error(f"Failed to fetch {self.url}: {e}")
            raise FeedError(f"Failed to fetch {self.url}: {e}") from e

        logger.debug(f"Decoded {len(feed.get('entity', []))} feed entities")
        return feed
