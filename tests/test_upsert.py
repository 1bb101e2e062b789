"""
Tests for the UpsertEngine: idempotence, write ordering, atomicity and
per-entity counts. Runs against in-memory SQLite with foreign keys on.
"""

from unittest.mock import Mock, patch

import pytest
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError

from biocat.db.models import Company, Drug, DrugIndication, HistoricalCatalyst, Indication, StageEvent
from biocat.db.session import session_scope
from biocat.load.upsert import ImportStats, UpsertEngine


def count(engine, model):
    with session_scope(engine) as s:
        return s.execute(select(func.count()).select_from(model)).scalar_one()


class TestDrugImport:
    """Test applying drug batches."""

    def test_250_drugs_in_one_batch(self, engine, drug_payload):
        payloads = [drug_payload(drug_id=i) for i in range(1, 251)]

        stats = UpsertEngine(engine).apply("drugs", payloads)

        assert stats.errors == []
        assert stats.status == "completed"
        assert stats.drugs.inserted == 250
        assert stats.drugs.updated == 0
        assert stats.companies.inserted == 1
        assert stats.companies.updated == 249
        assert stats.records_processed("drugs") == 250
        assert count(engine, Drug) == 250
        assert count(engine, Company) == 1

    def test_idempotent_reapply(self, engine, drug_payload):
        payloads = [drug_payload(drug_id=i, indication_ids=(100, 101)) for i in range(1, 4)]
        upserter = UpsertEngine(engine)
        upserter.apply("drugs", payloads)

        with session_scope(engine) as s:
            before = {d.id: (d.drug_name, d.created_at, d.is_big_mover) for d in s.scalars(select(Drug))}

        stats = upserter.apply("drugs", payloads)

        assert stats.drugs.inserted == 0
        assert stats.drugs.updated == 3
        assert stats.drug_indications.inserted == 0
        assert stats.drug_indications.updated == 6
        assert count(engine, Drug) == 3
        assert count(engine, DrugIndication) == 6
        assert count(engine, Indication) == 2
        with session_scope(engine) as s:
            after = {d.id: (d.drug_name, d.created_at, d.is_big_mover) for d in s.scalars(select(Drug))}
        assert after == before

    def test_mutable_fields_updated_identity_kept(self, engine, drug_payload):
        upserter = UpsertEngine(engine)
        upserter.apply("drugs", [drug_payload(drug_id=1)])

        changed = drug_payload(
            drug_id=1,
            company_id=11,
            drug_name="ACM-1 (renamed)",
            note="Delayed",
            created_at="2030-01-01T00:00:00Z",
            updated_at="2024-09-01T00:00:00Z",
            wix_id="changed",
        )
        stats = upserter.apply("drugs", [changed])

        assert stats.drugs.updated == 1
        with session_scope(engine) as s:
            drug = s.get(Drug, 1)
            assert drug.drug_name == "ACM-1 (renamed)"
            assert drug.note == "Delayed"
            assert drug.updated_at.year == 2024 and drug.updated_at.month == 9
            assert drug.created_at.year == 2024
            assert drug.wix_id == "drug-1"
            assert drug.company_id == 10
            assert drug.scraped_at is not None

    def test_dependencies_written_first(self, engine, drug_payload):
        stats = UpsertEngine(engine).apply("drugs", [drug_payload(drug_id=5, company_id=77, stage_event_id=88)])

        assert stats.errors == []
        with session_scope(engine) as s:
            drug = s.get(Drug, 5)
            assert s.get(Company, 77) is not None
            assert s.get(StageEvent, 88) is not None
            assert drug.company.id == 77
            assert [i.id for i in drug.indications] == [100]

    def test_foreign_keys_are_enforced(self, engine):
        with pytest.raises(IntegrityError):
            with session_scope(engine) as s:
                s.add(Drug(id=1, company_id=999))

    def test_duplicate_indication_links_ignored(self, engine, drug_payload):
        stats = UpsertEngine(engine).apply("drugs", [drug_payload(drug_id=1, indication_ids=(100, 100))])

        assert stats.drug_indications.inserted == 1
        assert stats.drug_indications.updated == 1
        assert count(engine, DrugIndication) == 1

    def test_drug_without_relations(self, engine, drug_payload):
        stats = UpsertEngine(engine).apply("drugs", [drug_payload(company=None, stage_event=None, indications=[])])
        assert stats.drugs.inserted == 1
        with session_scope(engine) as s:
            assert s.get(Drug, 1).company_id is None


class TestAtomicity:
    """Test all-or-nothing batches."""

    def test_write_error_rolls_back_whole_batch(self, engine, drug_payload):
        upserter = UpsertEngine(engine)
        original = upserter._write_drug

        def failing(ctx, drug, stats):
            if drug.id == 3:
                raise IntegrityError("INSERT INTO drugs", {}, Exception("constraint failed"))
            return original(ctx, drug, stats)

        with patch.object(upserter, "_write_drug", side_effect=failing):
            stats = upserter.apply("drugs", [drug_payload(drug_id=i) for i in range(1, 6)])

        assert stats.status == "failed"
        assert stats.errors == ["Error importing drug 3: constraint failed"]
        assert stats.drugs.inserted == 0
        assert stats.companies.total == 0
        assert count(engine, Drug) == 0
        assert count(engine, Company) == 0

    def test_database_rejection_rolls_back_whole_batch(self, engine, drug_payload):
        with engine.begin() as conn:
            conn.execute(text(
                "CREATE TRIGGER reject_drug_3 BEFORE INSERT ON drugs WHEN NEW.id = 3 "
                "BEGIN SELECT RAISE(ABORT, 'drug 3 rejected'); END"
            ))

        stats = UpsertEngine(engine).apply("drugs", [drug_payload(drug_id=i) for i in range(1, 6)])

        assert stats.status == "failed"
        assert stats.errors == ["Error importing drug 3: drug 3 rejected"]
        assert stats.drugs.total == 0
        assert stats.indications.total == 0
        assert count(engine, Drug) == 0
        assert count(engine, Company) == 0
        assert count(engine, Indication) == 0
        assert count(engine, DrugIndication) == 0

    def test_invalid_record_rejects_batch(self, engine, drug_payload):
        payloads = [drug_payload(drug_id=1), drug_payload(drug_id="two")]

        stats = UpsertEngine(engine).apply("drugs", payloads)

        assert stats.status == "failed"
        assert len(stats.errors) == 1
        assert stats.errors[0].startswith("record 1 (id='two')")
        assert count(engine, Drug) == 0


class TestHistoricalImport:
    """Test applying historical catalyst batches."""

    def test_insert_then_update(self, engine, catalyst_payload):
        upserter = UpsertEngine(engine)
        payloads = [
            catalyst_payload(catalyst_id=1, company_id=10, ticker="ACME"),
            catalyst_payload(catalyst_id=2, company_id=20, ticker="BETA"),
        ]

        first = upserter.apply("historical", payloads)
        payloads[0]["catalyst_text"] = "Missed primary endpoint"
        second = upserter.apply("historical", payloads)

        assert first.historical_catalysts.inserted == 2
        assert first.companies.inserted == 2
        assert second.historical_catalysts.updated == 2
        assert second.records_processed("historical") == 2
        assert count(engine, HistoricalCatalyst) == 2
        with session_scope(engine) as s:
            assert s.get(HistoricalCatalyst, 1).catalyst_text == "Missed primary endpoint"

    def test_same_id_twice_in_batch(self, engine, catalyst_payload):
        stats = UpsertEngine(engine).apply("historical", [catalyst_payload(catalyst_id=1)] * 2)
        assert stats.historical_catalysts.inserted == 1
        assert stats.historical_catalysts.updated == 1
        assert count(engine, HistoricalCatalyst) == 1


class TestImportStats:
    """Test ImportStats helpers."""

    def test_to_dict(self):
        stats = ImportStats()
        stats.drugs.inserted = 2
        stats.errors.append("boom")

        data = stats.to_dict()

        assert data["drugs"] == {"inserted": 2, "updated": 0}
        assert data["status"] == "failed"
        assert set(ImportStats.ENTITIES) <= set(data)

    def test_reset_counts_keeps_errors(self):
        stats = ImportStats(errors=["x"])
        stats.companies.updated = 3
        stats.reset_counts()
        assert stats.companies.total == 0
        assert stats.errors == ["x"]

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            ImportStats().records_processed("trials")


def test_unsupported_dialect():
    engine = Mock()
    engine.dialect.name = "mysql"
    with pytest.raises(ValueError, match="mysql"):
        UpsertEngine(engine)
