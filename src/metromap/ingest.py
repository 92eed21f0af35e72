"""Offline ingestion: GTFS zip bundle -> per-table JSON in a key-value store."""

import io
import json
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from .errors import IngestError, StoreError
from .models import ChunkMetadata, Record
from .storage import (
    GTFS_TABLES,
    MAX_CHUNKS,
    KeyValueStore,
    chunk_key,
    metadata_key,
    table_key,
)

logger = logging.getLogger(__name__)

MAX_VALUE_BYTES = 25 * 1024 * 1024  # per-key size limit of the KV backend
CHUNK_SIZE = 10000  # records per chunk

MANIFEST_FILE = "manifest.json"
SUMMARY_FILE = "summary.json"


@dataclass
class PreparedTable:
    """A parsed table ready to be written, whole or as chunks."""
    name: str
    records: List[Record]
    size: int  # serialized bytes
    chunks: Optional[List[List[Record]]] = None
    metadata: Optional[ChunkMetadata] = None

    @property
    def chunked(self) -> bool:
        return self.chunks is not None

    def items(self) -> Dict[str, object]:
        """Store key -> JSON value for every key this table occupies."""
        if not self.chunked:
            return {table_key(self.name): self.records}
        values: Dict[str, object] = {
            chunk_key(self.name, i): chunk for i, chunk in enumerate(self.chunks)
        }
        values[metadata_key(self.name)] = self.metadata.to_dict()
        return values

    def summary(self) -> dict:
        info = {
            "key": table_key(self.name),
            "records": len(self.records),
            "size": self.size,
            "chunked": self.chunked,
        }
        if self.chunked:
            info["chunks"] = len(self.chunks)
        return info


@dataclass
class UploadReport:
    """Outcome of a batch of store writes or deletes."""
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def extract_tables(zip_path: str) -> Dict[str, bytes]:
    """
    Read every .txt member of a GTFS bundle.

    Returns:
        {member basename: raw bytes}
    """
    logger.info(f"Extracting {zip_path}")
    try:
        with zipfile.ZipFile(zip_path) as zip_file:
            tables = {}
            for info in zip_file.infolist():
                if info.is_dir() or not info.filename.endswith(".txt"):
                    continue
                name = Path(info.filename).name
                tables[name] = zip_file.read(info)
                logger.debug(f"Extracted {name}: {info.file_size} bytes")
    except (OSError, zipfile.BadZipFile) as e:
        logger.error(f"Failed to read GTFS bundle {zip_path}: {e}")
        raise IngestError(f"Failed to read GTFS bundle {zip_path}: {e}") from e

    logger.info(f"Extracted {len(tables)} GTFS files")
    return tables


def parse_table(content: bytes) -> List[Record]:
    """Parse a GTFS CSV table into records keyed by the header row."""
    if not content.strip():
        return []
    frame = pd.read_csv(
        io.BytesIO(content),
        dtype=str,
        keep_default_na=False,
        encoding="utf-8-sig",
        skipinitialspace=True,
    )
    frame.columns = [column.strip() for column in frame.columns]
    return frame.to_dict(orient="records")


def serialized_size(records: List[Record]) -> int:
    return len(json.dumps(records, separators=(",", ":")).encode("utf-8"))


def prepare_table(
    name: str,
    records: List[Record],
    max_bytes: int = MAX_VALUE_BYTES,
    chunk_size: int = CHUNK_SIZE,
) -> PreparedTable:
    """
    Decide how a table is stored.

    Tables whose serialized size exceeds ``max_bytes`` are split into chunks of
    ``chunk_size`` records plus a metadata record.
    """
    size = serialized_size(records)
    if size <= max_bytes:
        return PreparedTable(name=name, records=records, size=size)

    chunks = [records[i:i + chunk_size] for i in range(0, len(records), chunk_size)]
    if len(chunks) > MAX_CHUNKS:
        logger.warning(
            f"{name} needs {len(chunks)} chunks; readers probing without metadata stop at {MAX_CHUNKS}"
        )
    logger.info(f"{name}: {size / 1024 / 1024:.1f} MB, split into {len(chunks)} chunks")
    return PreparedTable(
        name=name,
        records=records,
        size=size,
        chunks=chunks,
        metadata=ChunkMetadata(total_records=len(records), chunk_count=len(chunks), chunk_size=chunk_size),
    )


def prepare_tables(
    zip_path: str,
    max_bytes: int = MAX_VALUE_BYTES,
    chunk_size: int = CHUNK_SIZE,
) -> List[PreparedTable]:
    """Extract, parse and size every table in a bundle. Empty tables are skipped."""
    prepared = []
    for filename, content in extract_tables(zip_path).items():
        name = filename[: -len(".txt")]
        try:
            records = parse_table(content)
        except (ValueError, pd.errors.ParserError) as e:
            logger.error(f"Failed to parse {filename}: {e}")
            raise IngestError(f"Failed to parse {filename}: {e}") from e

        if not records:
            logger.warning(f"No data found in {filename}")
            continue
        prepared.append(prepare_table(name, records, max_bytes, chunk_size))
        logger.info(f"Parsed {filename}: {len(records)} records")
    return prepared


def _output_filename(key: str, table: str) -> str:
    # gtfs:stops -> stops.json, gtfs:stop_times:chunk:3 -> stop_times_chunk_3.json
    suffix = key[len(table_key(table)):].replace(":", "_")
    return f"{table}{suffix}.json"


def prepare_bundle(
    zip_path: str,
    output_dir: str,
    max_bytes: int = MAX_VALUE_BYTES,
    chunk_size: int = CHUNK_SIZE,
) -> Dict[str, dict]:
    """
    Convert a GTFS bundle into upload-ready JSON files.

    Writes one file per store key, a manifest (store key -> file name) and a
    summary of what was produced.

    Returns:
        Summary keyed by source file name.
    """
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)

    manifest: Dict[str, str] = {}
    summary: Dict[str, dict] = {}
    for table in prepare_tables(zip_path, max_bytes, chunk_size):
        for key, value in table.items().items():
            filename = _output_filename(key, table.name)
            with open(out / filename, "w", encoding="utf-8") as f:
                json.dump(value, f, separators=(",", ":"))
            manifest[key] = filename
        summary[f"{table.name}.txt"] = table.summary()

    with open(out / MANIFEST_FILE, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2)
    with open(out / SUMMARY_FILE, "w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2)

    total = sum(info["records"] for info in summary.values())
    logger.info(f"Prepared {total} records across {len(summary)} files in {out}")
    return summary


def upload_prepared(output_dir: str, store: KeyValueStore) -> UploadReport:
    """
    Upload the files listed in a prepared directory's manifest.

    A failed key is logged and counted; remaining keys are still attempted.
    """
    out = Path(output_dir)
    try:
        with open(out / MANIFEST_FILE, "r", encoding="utf-8") as f:
            manifest = json.load(f)
    except FileNotFoundError:
        raise IngestError(f"No {MANIFEST_FILE} in {out}; run prepare first")

    report = UploadReport()
    for index, (key, filename) in enumerate(manifest.items(), start=1):
        logger.info(f"Uploading {index}/{len(manifest)}: {key}")
        try:
            store.put(key, (out / filename).read_bytes())
        except (OSError, StoreError) as e:
            logger.error(f"Failed to upload {key}: {e}")
            report.failed.append(key)
            continue
        report.succeeded.append(key)

    logger.info(f"Upload finished: {len(report.succeeded)} succeeded, {len(report.failed)} failed")
    return report


def load_bundle(
    zip_path: str,
    store: KeyValueStore,
    max_bytes: int = MAX_VALUE_BYTES,
    chunk_size: int = CHUNK_SIZE,
) -> UploadReport:
    """Prepare a bundle and write it straight into a store."""
    report = UploadReport()
    for table in prepare_tables(zip_path, max_bytes, chunk_size):
        for key, value in table.items().items():
            try:
                store.put_json(key, value)
            except StoreError as e:
                logger.error(f"Failed to write {key}: {e}")
                report.failed.append(key)
                continue
            report.succeeded.append(key)
    logger.info(f"Loaded bundle: {len(report.succeeded)} keys written, {len(report.failed)} failed")
    return report


def gtfs_keys() -> List[str]:
    """Every key a full ingestion may have written."""
    keys = []
    for table in GTFS_TABLES:
        keys.append(table_key(table))
        keys.append(metadata_key(table))
        keys.extend(chunk_key(table, i) for i in range(MAX_CHUNKS))
    return keys


def clean_store(store: KeyValueStore) -> UploadReport:
    """Delete all GTFS keys. Keys that were already absent count as succeeded."""
    keys = gtfs_keys()
    report = UploadReport()
    for key in keys:
        try:
            existed = store.delete(key)
        except StoreError as e:
            logger.error(f"Failed to delete {key}: {e}")
            report.failed.append(key)
            continue
        logger.debug(f"{'Deleted' if existed else 'Absent'}: {key}")
        report.succeeded.append(key)
    logger.info(f"Cleaned {len(report.succeeded)}/{len(keys)} keys")
    return report
