"""Exception hierarchy for metromap."""


class MetroMapError(Exception):
    """Base class for all metromap errors."""


class StoreError(MetroMapError):
    """A key-value store operation failed."""


class NotFoundError(MetroMapError):
    """Requested GTFS data is not present in the store."""


class BadRequestError(MetroMapError):
    """Query parameters could not be parsed or are inconsistent."""


class FeedError(MetroMapError):
    """The GTFS-Realtime feed could not be fetched or decoded."""


class APIError(MetroMapError):
    """A call to the Read API or feed proxy failed."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class IngestError(MetroMapError):
    """A GTFS bundle could not be prepared or uploaded."""
