"""
Idempotent loading of drug and historical-catalyst batches.

A batch is written inside one transaction: every row commits together or
none does. Rows are keyed by the source's ids, so re-applying the same
batch updates descriptive fields in place and never duplicates anything.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import Table, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db.models import (
    Company as CompanyRow,
    Drug as DrugRow,
    DrugIndication as DrugIndicationRow,
    HistoricalCatalyst as HistoricalCatalystRow,
    Indication as IndicationRow,
    StageEvent as StageEventRow,
)
from ..db.session import session_scope
from ..ingest.types import (
    Company,
    Drug,
    HistoricalCatalyst,
    Indication,
    StageEvent,
    parse_records,
)

logger = logging.getLogger(__name__)

# entity whose count is reported as "records processed" for a run type
PRIMARY_ENTITY = {
    "drugs": "drugs",
    "historical": "historical_catalysts",
    "historical_catalysts": "historical_catalysts",
}

# columns overwritten when a row already exists
MUTABLE_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "companies": ("ticker", "name"),
    "indications": ("title", "nickname", "updated_at"),
    "stage_events": (
        "label", "stage_label", "stage", "event_label", "event", "score", "updated_at",
    ),
    "drugs": (
        "stage_event_id", "drug_name", "ticker", "is_big_mover", "is_suspected_mover",
        "mechanism_of_action", "note", "catalyst_date", "catalyst_date_text",
        "indications_text", "has_catalyst", "catalyst_source", "market",
        "last_name_updated", "updated_at", "scraped_at",
    ),
    "historical_catalysts": (
        "ticker", "drug_name", "drug_indication", "stage", "catalyst_date",
        "catalyst_source", "catalyst_text", "scraped_at",
    ),
}

_ID_CHUNK = 500


@dataclass
class EntityCounts:
    inserted: int = 0
    updated: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated


@dataclass
class ImportStats:
    """Per-entity write counts plus errors for one applied batch."""
    companies: EntityCounts = field(default_factory=EntityCounts)
    indications: EntityCounts = field(default_factory=EntityCounts)
    stage_events: EntityCounts = field(default_factory=EntityCounts)
    drugs: EntityCounts = field(default_factory=EntityCounts)
    # "updated" counts associations that already existed
    drug_indications: EntityCounts = field(default_factory=EntityCounts)
    historical_catalysts: EntityCounts = field(default_factory=EntityCounts)
    errors: List[str] = field(default_factory=list)

    ENTITIES = (
        "companies", "indications", "stage_events", "drugs",
        "drug_indications", "historical_catalysts",
    )

    @property
    def status(self) -> str:
        return "failed" if self.errors else "completed"

    def records_processed(self, kind: str) -> int:
        entity = PRIMARY_ENTITY.get(kind)
        if entity is None:
            raise ValueError(f"Unknown record kind: {kind!r}")
        return getattr(self, entity).total

    def reset_counts(self) -> None:
        for name in self.ENTITIES:
            setattr(self, name, EntityCounts())

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for name in self.ENTITIES:
            counts = getattr(self, name)
            result[name] = {"inserted": counts.inserted, "updated": counts.updated}
        result["errors"] = list(self.errors)
        result["status"] = self.status
        return result


class _BatchContext:
    """Ids already present in the store or written earlier in this batch."""

    def __init__(self, session: Session, now: datetime):
        self.session = session
        self.now = now
        self.known: Dict[str, Set[int]] = {}
        self.known_links: Set[Tuple[int, int]] = set()

    def preload(self, table: Table, ids: Iterable[int]) -> None:
        wanted = sorted(set(ids))
        found = self.known.setdefault(table.name, set())
        for start in range(0, len(wanted), _ID_CHUNK):
            chunk = wanted[start:start + _ID_CHUNK]
            rows = self.session.execute(select(table.c.id).where(table.c.id.in_(chunk)))
            found.update(row[0] for row in rows)

    def preload_links(self, drug_ids: Iterable[int]) -> None:
        table = DrugIndicationRow.__table__
        wanted = sorted(set(drug_ids))
        for start in range(0, len(wanted), _ID_CHUNK):
            chunk = wanted[start:start + _ID_CHUNK]
            rows = self.session.execute(
                select(table.c.drug_id, table.c.indication_id).where(table.c.drug_id.in_(chunk))
            )
            self.known_links.update((r[0], r[1]) for r in rows)

    def mark(self, table_name: str, row_id: int) -> bool:
        """Record a write; True if the row existed before it."""
        ids = self.known.setdefault(table_name, set())
        existed = row_id in ids
        ids.add(row_id)
        return existed


class UpsertEngine:
    """
    Applies validated batches to the relational store.

    The engine is passed in explicitly; each ``apply*`` call opens its own
    transaction on it.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        dialect = engine.dialect.name
        if dialect == "postgresql":
            self._insert = postgresql.insert
        elif dialect == "sqlite":
            self._insert = sqlite.insert
        else:
            raise ValueError(f"Unsupported database dialect for upserts: {dialect}")

    # -----------------------------
    # Public API
    # -----------------------------

    def apply(self, kind: str, payloads: Sequence[Any]) -> ImportStats:
        """
        Validate raw payloads and apply them as one batch.

        A batch with any invalid record is rejected before the transaction
        opens; its ``errors`` list names every bad record.
        """
        records, errors = parse_records(kind, payloads)
        if errors:
            stats = ImportStats(errors=errors)
            logger.error(f"Rejected {kind} batch: {len(errors)} of {len(payloads)} records failed validation")
            for err in errors[:10]:
                logger.error(f"  - {err}")
            return stats

        if kind == "drugs":
            return self.apply_drugs(records)
        return self.apply_historical(records)

    def apply_drugs(self, drugs: Sequence[Drug]) -> ImportStats:
        logger.info(f"Importing {len(drugs)} drugs...")

        def preload(ctx: _BatchContext) -> None:
            ctx.preload(CompanyRow.__table__, (d.company.id for d in drugs if d.company))
            ctx.preload(StageEventRow.__table__, (d.stage_event.id for d in drugs if d.stage_event))
            ctx.preload(IndicationRow.__table__, (i.id for d in drugs for i in d.indications))
            ctx.preload(DrugRow.__table__, (d.id for d in drugs))
            ctx.preload_links(d.id for d in drugs)

        return self._run("drug", drugs, preload, self._write_drug)

    def apply_historical(self, catalysts: Sequence[HistoricalCatalyst]) -> ImportStats:
        logger.info(f"Importing {len(catalysts)} historical catalysts...")

        def preload(ctx: _BatchContext) -> None:
            ctx.preload(CompanyRow.__table__, (c.company.id for c in catalysts if c.company))
            ctx.preload(HistoricalCatalystRow.__table__, (c.id for c in catalysts))

        return self._run("historical catalyst", catalysts, preload, self._write_historical)

    # -----------------------------
    # Transaction handling
    # -----------------------------

    def _run(self, label: str, records, preload, writer) -> ImportStats:
        stats = ImportStats()
        try:
            with session_scope(self.engine) as session:
                ctx = _BatchContext(session, datetime.now(timezone.utc))
                preload(ctx)
                for record in records:
                    try:
                        writer(ctx, record, stats)
                    except SQLAlchemyError as e:
                        stats.errors.append(f"Error importing {label} {record.id}: {_short_error(e)}")
                        raise
        except SQLAlchemyError as e:
            if not stats.errors:
                stats.errors.append(_short_error(e))
            stats.reset_counts()
            logger.error(f"Import of {label} batch rolled back: {stats.errors[-1]}")
            return stats

        logger.info(f"Import of {len(records)} {label} records committed")
        return stats

    # -----------------------------
    # Per-record writes (FK order)
    # -----------------------------

    def _write_drug(self, ctx: _BatchContext, drug: Drug, stats: ImportStats) -> None:
        if drug.company is not None:
            self._upsert_company(ctx, drug.company, stats)
        if drug.stage_event is not None:
            self._upsert_stage_event(ctx, drug.stage_event, stats)
        for indication in drug.indications:
            self._upsert_indication(ctx, indication, stats)

        values = {
            "id": drug.id,
            "company_id": drug.company.id if drug.company else None,
            "stage_event_id": drug.stage_event.id if drug.stage_event else None,
            "wix_id": drug.wix_id,
            "drug_name": drug.drug_name,
            "ticker": drug.ticker,
            "is_big_mover": drug.is_big_mover,
            "is_suspected_mover": drug.is_suspected_mover,
            "mechanism_of_action": drug.mechanism_of_action,
            "note": drug.note,
            "catalyst_date": drug.catalyst_date,
            "catalyst_date_text": drug.catalyst_date_text,
            "indications_text": drug.indications_text,
            "has_catalyst": drug.has_catalyst,
            "catalyst_source": drug.catalyst_source,
            "market": drug.market,
            "last_name_updated": drug.last_name_updated,
            "created_at": drug.created_at,
            "updated_at": drug.updated_at,
            "scraped_at": ctx.now,
        }
        self._upsert(ctx, DrugRow.__table__, values, stats.drugs)

        for indication in drug.indications:
            self._link(ctx, drug.id, indication.id, stats)

    def _write_historical(self, ctx: _BatchContext, catalyst: HistoricalCatalyst,
                          stats: ImportStats) -> None:
        if catalyst.company is not None:
            self._upsert_company(ctx, catalyst.company, stats)

        values = {
            "id": catalyst.id,
            "company_id": catalyst.company.id if catalyst.company else None,
            "ticker": catalyst.ticker,
            "drug_name": catalyst.drug_name,
            "drug_indication": catalyst.drug_indication,
            "stage": catalyst.stage,
            "catalyst_date": catalyst.catalyst_date,
            "catalyst_source": catalyst.catalyst_source,
            "catalyst_text": catalyst.catalyst_text,
            "scraped_at": ctx.now,
        }
        self._upsert(ctx, HistoricalCatalystRow.__table__, values, stats.historical_catalysts)

    def _upsert_company(self, ctx: _BatchContext, company: Company, stats: ImportStats) -> None:
        values = {"id": company.id, "ticker": company.ticker, "name": company.name}
        self._upsert(ctx, CompanyRow.__table__, values, stats.companies)

    def _upsert_stage_event(self, ctx: _BatchContext, event: StageEvent, stats: ImportStats) -> None:
        values = {
            "id": event.id,
            "wix_id": event.wix_id,
            "label": event.label,
            "stage_label": event.stage_label,
            "stage": event.stage,
            "event_label": event.event_label,
            "event": event.event,
            "score": event.score,
            "created_at": event.created_at,
            "updated_at": event.updated_at,
        }
        self._upsert(ctx, StageEventRow.__table__, values, stats.stage_events)

    def _upsert_indication(self, ctx: _BatchContext, indication: Indication, stats: ImportStats) -> None:
        values = {
            "id": indication.id,
            "wix_id": indication.wix_id,
            "title": indication.title,
            "nickname": indication.nickname,
            "created_at": indication.created_at,
            "updated_at": indication.updated_at,
        }
        self._upsert(ctx, IndicationRow.__table__, values, stats.indications)

    def _upsert(self, ctx: _BatchContext, table: Table, values: Dict[str, Any],
                counts: EntityCounts) -> None:
        stmt = self._insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.id],
            set_={col: stmt.excluded[col] for col in MUTABLE_COLUMNS[table.name]},
        )
        ctx.session.execute(stmt)
        if ctx.mark(table.name, values["id"]):
            counts.updated += 1
        else:
            counts.inserted += 1

    def _link(self, ctx: _BatchContext, drug_id: int, indication_id: int, stats: ImportStats) -> None:
        table = DrugIndicationRow.__table__
        stmt = (
            self._insert(table)
            .values(drug_id=drug_id, indication_id=indication_id)
            .on_conflict_do_nothing(index_elements=[table.c.drug_id, table.c.indication_id])
        )
        ctx.session.execute(stmt)
        key = (drug_id, indication_id)
        if key in ctx.known_links:
            stats.drug_indications.updated += 1
        else:
            ctx.known_links.add(key)
            stats.drug_indications.inserted += 1


def _short_error(error: SQLAlchemyError) -> str:
    orig: Optional[BaseException] = getattr(error, "orig", None)
    return str(orig) if orig is not None else str(error)
