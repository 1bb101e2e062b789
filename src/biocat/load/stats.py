"""Row counts and yearly catalyst breakdown for the ``stats`` command."""

from __future__ import annotations

from typing import List, Tuple

from sqlalchemy import distinct, func, select
from sqlalchemy.orm import Session

from ..db.models import (
    Company, Drug, DrugIndication, HistoricalCatalyst, Indication, ScrapeHistory, StageEvent,
)


def _count(session: Session, stmt) -> int:
    return int(session.execute(stmt).scalar_one() or 0)


def collect_database_stats(session: Session) -> List[Tuple[str, int]]:
    """Ordered ``(metric, value)`` pairs."""
    return [
        ("Companies", _count(session, select(func.count()).select_from(Company))),
        ("Indications", _count(session, select(func.count()).select_from(Indication))),
        ("Stage events", _count(session, select(func.count()).select_from(StageEvent))),
        ("Drugs", _count(session, select(func.count()).select_from(Drug))),
        ("Drug indications", _count(session, select(func.count()).select_from(DrugIndication))),
        ("Drugs with catalyst", _count(
            session, select(func.count()).select_from(Drug).where(Drug.has_catalyst.is_(True)))),
        ("Big movers", _count(
            session, select(func.count()).select_from(Drug).where(Drug.is_big_mover.is_(True)))),
        ("Historical catalysts", _count(session, select(func.count()).select_from(HistoricalCatalyst))),
        ("Historical tickers", _count(session, select(func.count(distinct(HistoricalCatalyst.ticker))))),
        ("Scrape runs", _count(session, select(func.count()).select_from(ScrapeHistory))),
    ]


def catalysts_by_year(session: Session) -> List[Tuple[int, int, int]]:
    """``(year, event_count, unique_companies)`` for dated historical catalysts."""
    year = func.extract("year", HistoricalCatalyst.catalyst_date).label("year")
    stmt = (
        select(
            year,
            func.count(HistoricalCatalyst.id),
            func.count(distinct(HistoricalCatalyst.ticker)),
        )
        .where(HistoricalCatalyst.catalyst_date.is_not(None))
        .group_by(year)
        .order_by(year)
    )
    return [(int(y), int(events), int(companies)) for y, events, companies in session.execute(stmt)]
