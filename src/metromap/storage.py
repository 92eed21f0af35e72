"""Key-value storage backends for pre-ingested GTFS tables."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterator, Optional
from urllib.parse import quote

import requests

from .errors import StoreError

logger = logging.getLogger(__name__)

KEY_PREFIX = "gtfs"
MAX_CHUNKS = 32  # chunk indices 0..31

GTFS_TABLES = (
    "agency",
    "calendar",
    "routes",
    "shapes",
    "stops",
    "trips",
    "stop_times",
)

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"


def table_key(table: str) -> str:
    return f"{KEY_PREFIX}:{table}"


def chunk_key(table: str, index: int) -> str:
    return f"{KEY_PREFIX}:{table}:chunk:{index}"


def metadata_key(table: str) -> str:
    return f"{KEY_PREFIX}:{table}:metadata"


class KeyValueStore:
    """
    Storage port used by the Read API and ingestion jobs.

    Values are raw bytes; GTFS tables are stored as UTF-8 JSON arrays.
    """

    def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def put(self, key: str, value: bytes) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        """Delete a key. Returns False if it did not exist."""
        raise NotImplementedError

    def get_json(self, key: str) -> Optional[Any]:
        """
        Fetch and decode a JSON value.

        Returns:
            Decoded value, or None if the key is absent.

        Raises:
            StoreError: If the stored value is not valid JSON.
        """
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            raise StoreError(f"Value for {key} is not valid JSON: {e}") from e

    def put_json(self, key: str, value: Any) -> None:
        self.put(key, json.dumps(value, separators=(",", ":")).encode("utf-8"))


class InMemoryStore(KeyValueStore):
    """Dict-backed store, mainly for tests and local demos."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, bytes] = {}
        for key, value in (initial or {}).items():
            if isinstance(value, bytes):
                self._data[key] = value
            else:
                self.put_json(key, value)

    def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    def put(self, key: str, value: bytes) -> None:
        self._data[key] = value

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self) -> Iterator[str]:
        return iter(sorted(self._data))


class DirectoryStore(KeyValueStore):
    """One JSON file per key under a root directory."""

    def __init__(self, root: str):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        # "gtfs:stop_times:chunk:3" -> "gtfs__stop_times__chunk__3.json"
        return self.root / (key.replace(":", "__") + ".json")

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error(f"Failed to read {path}: {e}")
            raise StoreError(f"Failed to read {key}: {e}") from e

    def put(self, key: str, value: bytes) -> None:
        path = self._path(key)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_bytes(value)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Failed to write {path}: {e}")
            raise StoreError(f"Failed to write {key}: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            self._path(key).unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StoreError(f"Failed to delete {key}: {e}") from e


class CloudflareKVStore(KeyValueStore):
    """Cloudflare Workers KV namespace accessed through the REST API."""

    def __init__(
        self,
        account_id: str,
        namespace_id: str,
        api_token: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        if not (account_id and namespace_id and api_token):
            raise ValueError(
                "Cloudflare store requires CLOUDFLARE_ACCOUNT_ID, "
                "CLOUDFLARE_KV_NAMESPACE_ID and CLOUDFLARE_API_TOKEN"
            )
        self.base_url = (
            f"{CLOUDFLARE_API_BASE}/accounts/{account_id}/storage/kv/namespaces/{namespace_id}"
        )
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers["Authorization"] = f"Bearer {api_token}"

    def _url(self, key: str) -> str:
        return f"{self.base_url}/values/{quote(key, safe='')}"

    def _request(self, method: str, key: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, self._url(key), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error(f"KV {method} {key} failed: {e}")
            raise StoreError(f"KV {method} {key} failed: {e}") from e

    def get(self, key: str) -> Optional[bytes]:
        response = self._request("GET", key)
        if response.status_code == 404:
            return None
        if not response.ok:
            raise StoreError(f"KV GET {key} returned HTTP {response.status_code}")
        return response.content

    def put(self, key: str, value: bytes) -> None:
        response = self._request(
            "PUT", key, data=value, headers={"Content-Type": "application/octet-stream"}
        )
        if not response.ok:
            raise StoreError(f"KV PUT {key} returned HTTP {response.status_code}")

    def delete(self, key: str) -> bool:
        response = self._request("DELETE", key)
        if response.status_code == 404:
            return False
        if not response.ok:
            raise StoreError(f"KV DELETE {key} returned HTTP {response.status_code}")
        return True


def store_from_settings(settings) -> KeyValueStore:
    """Build the store backend named in settings."""
    if settings.store_backend == "memory":
        logger.warning("Using in-memory store; data is lost on exit")
        return InMemoryStore()
    if settings.store_backend == "cloudflare":
        return CloudflareKVStore(
            settings.cloudflare_account_id,
            settings.cloudflare_namespace_id,
            settings.cloudflare_api_token,
        )
    return DirectoryStore(settings.store_dir)
