"""
Full traversal of a paginated BPIQ collection.

The crawler walks offsets 0, limit, 2*limit, ... until the API reports no
next page, accumulating items in arrival order. Progress is checkpointed
periodically and before every cooldown so an interrupted crawl can resume.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .checkpoint import CheckpointError, CheckpointStore
from .client import BpiqClient, FatalFetchError, RetryableFetchError
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


def make_run_id() -> str:
    # e.g., 20250818T052310Z
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


class CrawlState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    ACCUMULATING = "accumulating"
    CHECKPOINTING = "checkpointing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class CrawlPolicy:
    """Pacing and checkpoint settings for one crawl."""
    page_size: int = 100
    checkpoint_every: int = 10
    min_request_interval: float = 0.5
    cooldown: float = 5.0
    max_consecutive_failures: Optional[int] = None

    def __post_init__(self):
        if self.page_size <= 0:
            raise ValueError("page_size must be positive")
        if self.checkpoint_every <= 0:
            raise ValueError("checkpoint_every must be positive")
        if self.min_request_interval < 0 or self.cooldown < 0:
            raise ValueError("delays must not be negative")
        if self.max_consecutive_failures is not None and self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be at least 1")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "CrawlPolicy":
        """Build from the ``crawl`` configuration section."""
        return cls(
            page_size=int(config.get("page_size", 100)),
            checkpoint_every=int(config.get("checkpoint_every", 10)),
            min_request_interval=float(config.get("min_request_interval_seconds", 0.5)),
            cooldown=float(config.get("cooldown_seconds", 5.0)),
            max_consecutive_failures=config.get("max_consecutive_failures"),
        )

    def check_cooldown(self, retry_policy: RetryPolicy) -> None:
        """The crawl-level wait must outlast any per-request retry wait."""
        longest = retry_policy.longest_delay()
        if self.cooldown <= longest:
            raise ValueError(
                f"cooldown ({self.cooldown}s) must be longer than the longest "
                f"retry delay ({longest}s)"
            )


@dataclass
class CrawlProgress:
    """Serializable crawl progress, stored inside checkpoints."""
    resource: str
    run_id: str
    limit: int
    total_count: int = 0
    records_fetched: int = 0
    pages_processed: int = 0
    next_offset: int = 0
    last_offset: int = 0
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None

    @property
    def percent_complete(self) -> float:
        if self.total_count <= 0:
            return 0.0
        return round(self.records_fetched / self.total_count * 100, 1)

    def elapsed_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "run_id": self.run_id,
            "limit": self.limit,
            "total_count": self.total_count,
            "records_fetched": self.records_fetched,
            "pages_processed": self.pages_processed,
            "next_offset": self.next_offset,
            "last_offset": self.last_offset,
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrawlProgress":
        try:
            updated_at = data.get("updated_at")
            return cls(
                resource=str(data["resource"]),
                run_id=str(data["run_id"]),
                limit=int(data["limit"]),
                total_count=int(data.get("total_count", 0)),
                records_fetched=int(data.get("records_fetched", 0)),
                pages_processed=int(data.get("pages_processed", 0)),
                next_offset=int(data.get("next_offset", 0)),
                last_offset=int(data.get("last_offset", 0)),
                errors=list(data.get("errors", [])),
                started_at=datetime.fromisoformat(data["started_at"]),
                updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CheckpointError(f"Invalid checkpoint progress: {e}") from e


@dataclass
class CrawlResult:
    items: List[Dict[str, Any]]
    progress: CrawlProgress


class Crawler:
    """Drives a complete, sequential traversal of one resource."""

    def __init__(
        self,
        client: BpiqClient,
        resource: str,
        policy: Optional[CrawlPolicy] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        run_id: Optional[str] = None,
    ) -> None:
        self.client = client
        self.resource = resource
        self.policy = policy or CrawlPolicy()
        self.checkpoint_store = checkpoint_store
        self.sleep = sleep
        self.run_id = run_id or make_run_id()
        self.state = CrawlState.IDLE
        self.progress: Optional[CrawlProgress] = None

        retry_policy = getattr(client, "retry_policy", None)
        if isinstance(retry_policy, RetryPolicy):
            self.policy.check_cooldown(retry_policy)

    def run(self, resume: bool = False) -> CrawlResult:
        """
        Fetch every page of the resource.

        Args:
            resume: Continue from an unfinished checkpoint when one exists.

        Returns:
            All items in arrival order plus the final progress.

        Raises:
            FatalFetchError: on authorization or contract failures (after a checkpoint).
            RetryableFetchError: once ``max_consecutive_failures`` is reached.
            CheckpointError: if the checkpoint to resume from is incompatible.
        """
        items, progress = self._start(resume)
        self.progress = progress
        limit = self.policy.page_size
        offset = progress.next_offset
        has_next = True
        requested = False
        consecutive_failures = 0

        logger.info(f"Starting {self.resource} crawl (run {progress.run_id}) at offset {offset}")
        try:
            while has_next:
                if requested and self.policy.min_request_interval > 0:
                    self.sleep(self.policy.min_request_interval)
                requested = True

                self.state = CrawlState.FETCHING
                logger.debug(f"Fetching page {progress.pages_processed + 1} (offset: {offset})...")
                try:
                    page = self.client.fetch_page(self.resource, offset, limit)
                except RetryableFetchError as e:
                    consecutive_failures += 1
                    self._record_error(progress, offset, e)
                    self._checkpoint(progress, items)
                    limit_reached = self.policy.max_consecutive_failures
                    if limit_reached is not None and consecutive_failures >= limit_reached:
                        logger.error(f"Giving up after {consecutive_failures} consecutive failures")
                        self.state = CrawlState.FAILED
                        raise
                    logger.info(f"Waiting {self.policy.cooldown:g} seconds before retry...")
                    self.sleep(self.policy.cooldown)
                    continue
                except FatalFetchError as e:
                    self._record_error(progress, offset, e)
                    self._checkpoint(progress, items)
                    self.state = CrawlState.FAILED
                    raise

                consecutive_failures = 0
                self.state = CrawlState.ACCUMULATING
                items.extend(page.items)
                progress.total_count = page.total_count
                progress.records_fetched += len(page.items)
                progress.pages_processed += 1
                progress.last_offset = offset
                offset += limit
                progress.next_offset = offset
                has_next = page.has_next

                logger.info(
                    f"Progress: {progress.records_fetched}/{progress.total_count} "
                    f"({progress.percent_complete:.1f}%) - {progress.elapsed_seconds():.1f}s elapsed"
                )

                if has_next and not page.items:
                    logger.warning(
                        f"Empty page at offset {progress.last_offset} still points to a next page; stopping"
                    )
                    has_next = False

                if progress.pages_processed % self.policy.checkpoint_every == 0:
                    self._checkpoint(progress, items)
        except KeyboardInterrupt:
            logger.warning(f"Interrupted at offset {offset}; saving checkpoint")
            self._checkpoint(progress, items)
            self.state = CrawlState.FAILED
            raise

        self.state = CrawlState.COMPLETED
        self._checkpoint(progress, items, status="completed")
        logger.info(
            f"Crawl complete: {len(items)} records, {progress.pages_processed} pages, "
            f"{len(progress.errors)} errors"
        )
        return CrawlResult(items=items, progress=progress)

    def _start(self, resume: bool):
        if resume and self.checkpoint_store is not None:
            checkpoint = self.checkpoint_store.load()
            if checkpoint is not None and not checkpoint.completed:
                progress = CrawlProgress.from_dict(checkpoint.progress)
                if progress.resource != self.resource:
                    raise CheckpointError(
                        f"Checkpoint is for {progress.resource!r}, not {self.resource!r}"
                    )
                if progress.limit != self.policy.page_size:
                    raise CheckpointError(
                        f"Checkpoint was taken with page size {progress.limit}, "
                        f"current page size is {self.policy.page_size}"
                    )
                self.run_id = progress.run_id
                logger.info(
                    f"Resuming {self.resource} run {progress.run_id} at offset "
                    f"{progress.next_offset} with {len(checkpoint.items)} records"
                )
                return list(checkpoint.items), progress
            logger.info("No unfinished checkpoint found; starting from offset 0")

        progress = CrawlProgress(
            resource=self.resource,
            run_id=self.run_id,
            limit=self.policy.page_size,
        )
        return [], progress

    def _record_error(self, progress: CrawlProgress, offset: int, error: Exception) -> None:
        message = f"Error at offset {offset}: {error}"
        logger.error(message)
        progress.errors.append(message)

    def _checkpoint(self, progress: CrawlProgress, items: List[Dict[str, Any]],
                    status: str = "in_progress") -> None:
        if self.checkpoint_store is None:
            return
        previous_state = self.state
        self.state = CrawlState.CHECKPOINTING
        progress.updated_at = datetime.now(timezone.utc)
        try:
            self.checkpoint_store.save(progress.to_dict(), items, status=status)
        except (CheckpointError, OSError) as e:
            # a lost checkpoint costs only redundant work on the next run
            logger.warning(f"Failed to save checkpoint: {e}")
        finally:
            self.state = previous_state
