"""Append-only run audit in ``scrape_history``."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..db.models import ScrapeHistory
from ..db.session import session_scope
from .upsert import ImportStats

logger = logging.getLogger(__name__)

# scrape_history.scrape_type per record kind
RUN_TYPES = {
    "drugs": "drugs",
    "historical": "historical_catalysts",
}


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


class RunRecorder:
    """Writes one summary row per ingestion run; failures are only logged."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def record(
        self,
        run_type: str,
        stats: ImportStats,
        metadata: Optional[Dict[str, Any]] = None,
        started_at: Optional[datetime] = None,
        pages_processed: Optional[int] = None,
    ) -> Optional[int]:
        """
        Append a run row and return its id, or None if the write failed.

        Status is ``completed`` when ``stats.errors`` is empty, else ``failed``.
        """
        # round-trip through JSON so paths and datetimes are stored as text
        metadata = json.loads(json.dumps(metadata or {}, default=str))
        completed_at = datetime.now(timezone.utc)
        if started_at is None:
            started_at = _as_datetime(metadata.get("started_at")) or completed_at
        if pages_processed is None:
            pages_processed = int(metadata.get("pages_processed") or 0)

        row = ScrapeHistory(
            scrape_type=run_type,
            started_at=started_at,
            completed_at=completed_at,
            records_fetched=stats.records_processed(run_type),
            pages_processed=pages_processed,
            errors=list(stats.errors),
            status=stats.status,
            metadata_json=metadata,
        )
        try:
            with session_scope(self.engine) as session:
                session.add(row)
                session.flush()
                run_id = row.id
        except SQLAlchemyError as e:
            logger.warning(f"Error recording scrape history: {e}")
            return None

        logger.info(f"Recorded {run_type} run {run_id} (status={row.status})")
        return run_id

    def record_failure(self, run_type: str, error: str,
                       metadata: Optional[Dict[str, Any]] = None,
                       started_at: Optional[datetime] = None) -> Optional[int]:
        """Record a run that failed or was interrupted before anything was imported."""
        return self.record(run_type, ImportStats(errors=[error]), metadata, started_at=started_at)
