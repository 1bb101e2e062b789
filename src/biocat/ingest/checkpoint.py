"""Crawl checkpoint persistence.

A checkpoint holds the crawl progress plus every item accumulated so far,
so an interrupted crawl can pick up where it stopped. Each save fully
replaces the previous file through a temp-file-and-rename, so readers
never see a half-written checkpoint.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class CheckpointError(Exception):
    """Raised when a checkpoint cannot be read or would lose progress."""
    pass


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON to ``path`` via ``<path>.part`` + fsync + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_file = path.with_name(path.name + ".part")
    try:
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_file, path)
    except BaseException:
        if temp_file.exists():
            temp_file.unlink()
        raise


@dataclass
class Checkpoint:
    """A saved crawl snapshot."""
    progress: Dict[str, Any]
    items: List[Dict[str, Any]] = field(default_factory=list)
    status: str = "in_progress"
    saved_at: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.status == "completed"


class CheckpointStore:
    """Filesystem-backed checkpoint for one crawl resource."""

    def __init__(self, state_dir: Path | str, resource: str) -> None:
        self.state_dir = Path(state_dir)
        self.resource = resource
        self.path = self.state_dir / f"checkpoint_{resource}.json"

    def save(self, progress: Dict[str, Any], items: List[Dict[str, Any]],
             status: str = "in_progress") -> None:
        """
        Atomically replace the checkpoint.

        Raises:
            CheckpointError: if the new snapshot would move the same run backwards.
        """
        previous = self._read_if_readable()
        if previous is not None and previous.progress.get("run_id") == progress.get("run_id"):
            if (progress.get("pages_processed", 0) < previous.progress.get("pages_processed", 0)
                    or len(items) < len(previous.items)):
                raise CheckpointError(
                    f"Refusing to overwrite checkpoint for run {progress.get('run_id')}: "
                    f"new snapshot has less progress than {self.path}"
                )

        payload = {
            "progress": progress,
            "status": status,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "items": items,
        }
        atomic_write_json(self.path, payload)
        logger.info(f"Checkpoint saved to {self.path} ({len(items)} records, status={status})")

    def load(self) -> Optional[Checkpoint]:
        """Return the saved checkpoint, or None when there is none."""
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            return Checkpoint(
                progress=dict(payload["progress"]),
                items=list(payload["items"]),
                status=str(payload.get("status", "in_progress")),
                saved_at=payload.get("saved_at"),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as error:
            raise CheckpointError(
                f"Failed to read checkpoint at {self.path}: {error}. "
                "Delete the file and retry without --resume."
            ) from error

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()

    def _read_if_readable(self) -> Optional[Checkpoint]:
        try:
            return self.load()
        except CheckpointError:
            logger.warning(f"Existing checkpoint at {self.path} is unreadable; replacing it")
            return None
