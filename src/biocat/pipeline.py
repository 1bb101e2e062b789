"""
Scrape -> file -> import -> run record orchestration.

Both entry points (importing a saved file, scraping live) end the same
way: one UpsertEngine batch and one scrape_history row.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.engine import Engine

from .ingest.checkpoint import CheckpointStore
from .ingest.client import BpiqClient, FetchError
from .ingest.crawler import CrawlPolicy, CrawlProgress, Crawler
from .ingest.files import read_scrape_file, write_scrape_file
from .load.history import RUN_TYPES, RunRecorder
from .load.upsert import ImportStats, UpsertEngine

logger = logging.getLogger(__name__)

# metadata copied from a scrape file into the run record
_CARRIED_METADATA = ("run_id", "pages_processed", "scraped_at", "total_records")


@dataclass
class ScrapeOutcome:
    resource: str
    path: Path
    progress: CrawlProgress
    stats: Optional[ImportStats] = None
    run_record_id: Optional[int] = None


def load_batch(engine: Engine, kind: str, payloads: Sequence[Any], metadata: Dict[str, Any],
               started_at: Optional[datetime] = None) -> Tuple[ImportStats, Optional[int]]:
    """
    Apply one batch and record the run; returns the stats and run row id.

    An interrupt rolls the batch back, leaves a failed run record and is
    re-raised.
    """
    if started_at is None:
        started_at = datetime.now(timezone.utc)
    recorder = RunRecorder(engine)
    try:
        stats = UpsertEngine(engine).apply(kind, payloads)
    except KeyboardInterrupt:
        logger.warning(f"Interrupted while importing {kind}; batch rolled back")
        recorder.record_failure(RUN_TYPES[kind], "Interrupted during import", metadata, started_at=started_at)
        raise
    run_record_id = recorder.record(RUN_TYPES[kind], stats, metadata, started_at=started_at)
    return stats, run_record_id


def import_file(engine: Engine, kind: str, path: Path | str) -> Tuple[ImportStats, Optional[int]]:
    """
    Import a saved scrape file.

    The run starts now; the file's own scrape start is kept in metadata as
    ``scrape_started_at``.

    Raises:
        ScrapeFileError: if the file is missing or unreadable.
    """
    started_at = datetime.now(timezone.utc)
    scrape = read_scrape_file(path)
    logger.info(f"Loaded {len(scrape.data)} {kind} records from {path}")
    metadata: Dict[str, Any] = {"file_path": str(path)}
    for key in _CARRIED_METADATA:
        if key in scrape.metadata:
            metadata[key] = scrape.metadata[key]
    if "started_at" in scrape.metadata:
        metadata["scrape_started_at"] = scrape.metadata["started_at"]
    return load_batch(engine, kind, scrape.data, metadata, started_at=started_at)


def _record_crawl_failure(engine: Engine, resource: str, crawler: Crawler, error: str) -> None:
    progress = crawler.progress
    metadata: Dict[str, Any] = {"resource": resource, "run_id": crawler.run_id}
    started_at = None
    if progress is not None:
        started_at = progress.started_at
        metadata.update(pages_processed=progress.pages_processed, crawl_errors=progress.errors)
    RunRecorder(engine).record_failure(RUN_TYPES[resource], error, metadata, started_at=started_at)


def scrape_resource(
    config: Dict[str, Any],
    resource: str,
    client: BpiqClient,
    engine: Optional[Engine] = None,
    resume: bool = False,
    load: bool = False,
    output_dir: Optional[Path] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ScrapeOutcome:
    """
    Crawl one resource, save the scrape file and optionally import it.

    With an engine, a fatal or interrupted crawl still leaves a failed run
    record before the error propagates.
    """
    paths = config.get("paths", {})
    store = CheckpointStore(paths.get("state_dir", ".state"), resource)
    crawler = Crawler(
        client,
        resource,
        policy=CrawlPolicy.from_config(config.get("crawl", {})),
        checkpoint_store=store,
        sleep=sleep,
    )

    try:
        result = crawler.run(resume=resume)
    except FetchError as e:
        if engine is not None:
            _record_crawl_failure(engine, resource, crawler, f"Fatal error during scrape: {e}")
        raise
    except KeyboardInterrupt:
        if engine is not None:
            _record_crawl_failure(engine, resource, crawler, "Interrupted during scrape")
        raise

    path = write_scrape_file(output_dir or paths.get("output_dir", "data"), resource,
                             result.items, result.progress)
    outcome = ScrapeOutcome(resource=resource, path=path, progress=result.progress)

    if load and engine is not None:
        progress = result.progress
        metadata = {
            "file_path": str(path),
            "run_id": progress.run_id,
            "pages_processed": progress.pages_processed,
            "total_records": progress.total_count,
            # recovered transient errors; they do not fail the run
            "crawl_errors": progress.errors,
        }
        # the run covers the crawl, so it starts when the crawl did
        outcome.stats, outcome.run_record_id = load_batch(
            engine, resource, result.items, metadata, started_at=progress.started_at)

    return outcome


def scrape_targets(target: str) -> List[str]:
    if target == "all":
        return ["drugs", "historical"]
    if target in RUN_TYPES:
        return [target]
    raise ValueError(f"Unknown scrape target: {target!r}")
