"""Scrape output files: ``{"metadata": {...}, "data": [...]}``."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from .checkpoint import atomic_write_json

logger = logging.getLogger(__name__)

FILE_PREFIXES = {
    "drugs": "drugs_data",
    "historical": "historical_catalysts",
}

# metadata keys written by the earlier Node.js scraper
_CAMEL_CASE_KEYS = {
    "totalRecords": "total_records",
    "recordsFetched": "records_fetched",
    "pagesProcessed": "pages_processed",
    "scrapedAt": "scraped_at",
}


class ScrapeFileError(Exception):
    """Raised when a scrape file is missing or cannot be parsed."""
    pass


@dataclass
class ScrapeFile:
    data: List[Any]
    metadata: Dict[str, Any] = field(default_factory=dict)


def scrape_file_name(resource: str, day=None) -> str:
    prefix = FILE_PREFIXES.get(resource)
    if prefix is None:
        raise ValueError(f"Unknown resource: {resource!r}")
    day = day or datetime.now(timezone.utc).date()
    return f"{prefix}_{day.isoformat()}.json"


def write_scrape_file(output_dir: Path | str, resource: str,
                      items: List[Dict[str, Any]], progress) -> Path:
    """Persist a finished crawl next to its run metadata and return the path."""
    now = datetime.now(timezone.utc)
    path = Path(output_dir) / scrape_file_name(resource, now.date())
    metadata = {
        "resource": resource,
        "run_id": progress.run_id,
        "total_records": progress.total_count,
        "records_fetched": progress.records_fetched,
        "pages_processed": progress.pages_processed,
        "started_at": progress.started_at.isoformat(),
        "scraped_at": now.isoformat(),
        "duration_seconds": round(progress.elapsed_seconds(now), 1),
        "errors": list(progress.errors),
    }
    atomic_write_json(path, {"metadata": metadata, "data": items})
    logger.info(f"Data saved to: {path} ({len(items)} records)")
    return path


def _normalize_metadata(raw: Dict[str, Any]) -> Dict[str, Any]:
    metadata = {}
    for key, value in raw.items():
        metadata[_CAMEL_CASE_KEYS.get(key, key)] = value
    duration = metadata.pop("duration", None)
    if duration is not None and "duration_seconds" not in metadata:
        # e.g. "123.4s"
        try:
            metadata["duration_seconds"] = float(str(duration).rstrip("s"))
        except ValueError:
            metadata["duration"] = duration
    return metadata


def read_scrape_file(path: Path | str) -> ScrapeFile:
    """
    Load a scrape file.

    Accepts the ``{metadata, data}`` envelope (snake_case or camelCase
    metadata) or a bare JSON list of records.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except FileNotFoundError:
        raise ScrapeFileError(f"File not found: {path}")
    except (OSError, json.JSONDecodeError) as e:
        raise ScrapeFileError(f"Could not read {path}: {e}") from e

    if isinstance(payload, list):
        return ScrapeFile(data=payload)
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        raw_metadata = payload.get("metadata") or {}
        if not isinstance(raw_metadata, dict):
            raise ScrapeFileError(f"{path}: metadata must be an object")
        return ScrapeFile(data=payload["data"], metadata=_normalize_metadata(raw_metadata))
    raise ScrapeFileError(f"{path}: expected a list of records or an object with a 'data' list")
