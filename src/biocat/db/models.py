# src/biocat/db/models.py
"""
Relational schema for the drug-pipeline catalog.

Identifiers of companies, indications, stage events, drugs and historical
catalysts are issued by the remote source and stored as-is; nothing here
generates them. ``scrape_history`` is the append-only audit trail of runs.
"""

from __future__ import annotations
from datetime import datetime, date
from typing import Optional, List

from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    String, Text, Boolean, Date, DateTime, ForeignKey, Index, Integer,
    BigInteger, Numeric, JSON, PrimaryKeyConstraint, func,
)
from sqlalchemy.dialects.postgresql import JSONB

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    """SQLAlchemy declarative base for biocat models."""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# ---------------------------------------------------------------------------
# Reference entities
# ---------------------------------------------------------------------------

class Company(Base):
    """Companies referenced by drugs and historical catalysts"""
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    ticker: Mapped[Optional[str]] = mapped_column(String(32))
    name: Mapped[Optional[str]] = mapped_column(Text)

    drugs: Mapped[List["Drug"]] = relationship(back_populates="company")
    historical_catalysts: Mapped[List["HistoricalCatalyst"]] = relationship(back_populates="company")

    __table_args__ = (
        Index("idx_companies_ticker", "ticker"),
    )


class Indication(Base):
    """Disease indications, many-to-many with drugs"""
    __tablename__ = "indications"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    wix_id: Mapped[Optional[str]] = mapped_column(Text)
    title: Mapped[Optional[str]] = mapped_column(Text)
    nickname: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class StageEvent(Base):
    """Development stage / event pairs with their impact score"""
    __tablename__ = "stage_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    wix_id: Mapped[Optional[str]] = mapped_column(Text)
    label: Mapped[Optional[str]] = mapped_column(Text)
    stage_label: Mapped[Optional[str]] = mapped_column(Text)
    stage: Mapped[Optional[str]] = mapped_column(Text)
    event_label: Mapped[Optional[str]] = mapped_column(Text)
    event: Mapped[Optional[str]] = mapped_column(Text)
    score: Mapped[Optional[float]] = mapped_column(Numeric(10, 4, asdecimal=False))
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

# ---------------------------------------------------------------------------
# Pipeline records
# ---------------------------------------------------------------------------

class Drug(Base):
    """Core pipeline record: one drug program with its next catalyst"""
    __tablename__ = "drugs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    company_id: Mapped[Optional[int]] = mapped_column(ForeignKey("companies.id"))
    stage_event_id: Mapped[Optional[int]] = mapped_column(ForeignKey("stage_events.id"))
    wix_id: Mapped[Optional[str]] = mapped_column(Text)
    drug_name: Mapped[Optional[str]] = mapped_column(Text)
    ticker: Mapped[Optional[str]] = mapped_column(String(32))
    is_big_mover: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_suspected_mover: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    mechanism_of_action: Mapped[Optional[str]] = mapped_column(Text)
    note: Mapped[Optional[str]] = mapped_column(Text)
    catalyst_date: Mapped[Optional[date]] = mapped_column(Date)
    catalyst_date_text: Mapped[Optional[str]] = mapped_column(Text)
    indications_text: Mapped[Optional[str]] = mapped_column(Text)
    has_catalyst: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    catalyst_source: Mapped[Optional[str]] = mapped_column(Text)
    market: Mapped[Optional[str]] = mapped_column(Text)
    last_name_updated: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    scraped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())

    company: Mapped[Optional["Company"]] = relationship(back_populates="drugs")
    stage_event: Mapped[Optional["StageEvent"]] = relationship()
    indications: Mapped[List["Indication"]] = relationship(secondary="drug_indications", viewonly=True)

    __table_args__ = (
        Index("idx_drugs_company_id", "company_id"),
        Index("idx_drugs_ticker", "ticker"),
        Index("idx_drugs_catalyst_date", "catalyst_date"),
    )


class DrugIndication(Base):
    """Pure association between drugs and indications"""
    __tablename__ = "drug_indications"

    drug_id: Mapped[int] = mapped_column(ForeignKey("drugs.id", ondelete="CASCADE"), nullable=False)
    indication_id: Mapped[int] = mapped_column(ForeignKey("indications.id", ondelete="CASCADE"), nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("drug_id", "indication_id", name="pk_drug_indications"),
        Index("idx_drug_indications_indication_id", "indication_id"),
    )


class HistoricalCatalyst(Base):
    """Past catalyst events, independent of the drug records"""
    __tablename__ = "historical_catalysts"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    company_id: Mapped[Optional[int]] = mapped_column(ForeignKey("companies.id"))
    ticker: Mapped[Optional[str]] = mapped_column(String(32))
    drug_name: Mapped[Optional[str]] = mapped_column(Text)
    drug_indication: Mapped[Optional[str]] = mapped_column(Text)
    stage: Mapped[Optional[str]] = mapped_column(Text)
    catalyst_date: Mapped[Optional[date]] = mapped_column(Date)
    catalyst_source: Mapped[Optional[str]] = mapped_column(Text)
    catalyst_text: Mapped[Optional[str]] = mapped_column(Text)
    scraped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())

    company: Mapped[Optional["Company"]] = relationship(back_populates="historical_catalysts")

    __table_args__ = (
        Index("idx_historical_catalysts_ticker", "ticker"),
        Index("idx_historical_catalysts_catalyst_date", "catalyst_date"),
    )

# ---------------------------------------------------------------------------
# Run audit
# ---------------------------------------------------------------------------

class ScrapeHistory(Base):
    """One append-only row per ingestion run"""
    __tablename__ = "scrape_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scrape_type: Mapped[str] = mapped_column(String(64), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    records_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pages_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    # "metadata" is reserved on declarative classes
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JSONType)

    __table_args__ = (
        Index("idx_scrape_history_type_started", "scrape_type", "started_at"),
    )
