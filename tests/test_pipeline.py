"""
End-to-end tests: crawl a fake source, write the scrape file, import it
and record the run.
"""

import copy
import json
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import func, select

from biocat.config import DEFAULT_CONFIG
from biocat.db.models import Drug, HistoricalCatalyst, ScrapeHistory
from biocat.db.session import session_scope
from biocat.ingest.client import FatalFetchError
from biocat.ingest.files import ScrapeFileError
from biocat.ingest.types import Page
from biocat.load.upsert import UpsertEngine
from biocat.pipeline import import_file, scrape_resource, scrape_targets


class PayloadSource:
    """Serves pre-built payloads page by page."""

    def __init__(self, payloads, fail_at=None, error=None):
        self.payloads = payloads
        self.fail_at = fail_at
        self.error = error
        self.calls = []

    def fetch_page(self, resource, offset, limit):
        self.calls.append((resource, offset))
        if offset == self.fail_at:
            raise self.error or FatalFetchError("API Error: 401 Unauthorized", 401)
        items = self.payloads[offset:offset + limit]
        has_next = offset + limit < len(self.payloads)
        return Page(total_count=len(self.payloads), items=items, has_next=has_next,
                    next_url="next" if has_next else None)


@pytest.fixture
def config(tmp_path):
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["crawl"]["page_size"] = 2
    config["paths"] = {"state_dir": str(tmp_path / "state"), "output_dir": str(tmp_path / "data")}
    return config


def history(engine):
    with session_scope(engine) as s:
        return list(s.scalars(select(ScrapeHistory)))


class TestImportFile:
    """Test importing a saved scrape file."""

    def test_import_and_record(self, engine, tmp_path, catalyst_payload):
        path = tmp_path / "historical_catalysts_2024-01-01.json"
        path.write_text(json.dumps({
            "metadata": {"totalRecords": 2, "pagesProcessed": 1},
            "data": [catalyst_payload(catalyst_id=1), catalyst_payload(catalyst_id=2)],
        }))

        stats, run_record_id = import_file(engine, "historical", path)

        assert stats.historical_catalysts.inserted == 2
        [row] = history(engine)
        assert row.id == run_record_id
        assert row.scrape_type == "historical_catalysts"
        assert row.records_fetched == 2
        assert row.pages_processed == 1
        assert row.metadata_json["file_path"] == str(path)

    def test_run_starts_at_import_time(self, engine, tmp_path, drug_payload):
        path = tmp_path / "drugs_data_2020-01-01.json"
        path.write_text(json.dumps({
            "metadata": {"started_at": "2020-01-01T00:00:00+00:00", "pages_processed": 1},
            "data": [drug_payload(drug_id=1)],
        }))
        # SQLite hands back naive UTC datetimes
        before = datetime.now(timezone.utc).replace(tzinfo=None)

        import_file(engine, "drugs", path)
        import_file(engine, "drugs", path)

        first, second = sorted(history(engine), key=lambda row: row.id)
        assert first.metadata_json["scrape_started_at"] == "2020-01-01T00:00:00+00:00"
        assert "started_at" not in first.metadata_json
        for row in (first, second):
            assert row.started_at.replace(tzinfo=None) >= before
            assert row.completed_at >= row.started_at
        assert second.started_at >= first.started_at

    def test_interrupted_import_records_failed_run(self, engine, tmp_path, drug_payload):
        path = tmp_path / "drugs.json"
        path.write_text(json.dumps({"metadata": {}, "data": [drug_payload(drug_id=i) for i in range(1, 4)]}))

        with patch.object(UpsertEngine, "_write_drug", side_effect=KeyboardInterrupt()):
            with pytest.raises(KeyboardInterrupt):
                import_file(engine, "drugs", path)

        [row] = history(engine)
        assert row.status == "failed"
        assert row.errors == ["Interrupted during import"]
        assert row.records_fetched == 0
        assert row.metadata_json["file_path"] == str(path)
        with session_scope(engine) as s:
            assert s.execute(select(func.count()).select_from(Drug)).scalar_one() == 0

    def test_missing_file(self, engine, tmp_path):
        with pytest.raises(ScrapeFileError):
            import_file(engine, "drugs", tmp_path / "missing.json")


class TestScrapeResource:
    """Test scrape -> file -> import."""

    def test_scrape_and_load(self, engine, config, drug_payload):
        source = PayloadSource([drug_payload(drug_id=i) for i in range(1, 6)])

        outcome = scrape_resource(config, "drugs", source, engine=engine, load=True, sleep=Mock())

        assert [offset for _, offset in source.calls] == [0, 2, 4]
        assert outcome.path.exists()
        assert len(json.loads(outcome.path.read_text())["data"]) == 5
        assert outcome.stats.drugs.inserted == 5
        with session_scope(engine) as s:
            assert s.execute(select(func.count()).select_from(Drug)).scalar_one() == 5
        [row] = history(engine)
        assert row.id == outcome.run_record_id
        assert row.status == "completed"
        assert row.pages_processed == 3

    def test_scrape_without_load(self, engine, config, catalyst_payload):
        source = PayloadSource([catalyst_payload(catalyst_id=1)])

        outcome = scrape_resource(config, "historical", source, engine=engine, load=False, sleep=Mock())

        assert outcome.stats is None
        assert outcome.path.name.startswith("historical_catalysts_")
        with session_scope(engine) as s:
            assert s.execute(select(func.count()).select_from(HistoricalCatalyst)).scalar_one() == 0

    def test_fatal_crawl_records_failed_run(self, engine, config, drug_payload):
        source = PayloadSource([drug_payload(drug_id=i) for i in range(1, 6)], fail_at=2)

        with pytest.raises(FatalFetchError):
            scrape_resource(config, "drugs", source, engine=engine, load=True, sleep=Mock())

        [row] = history(engine)
        assert row.status == "failed"
        assert row.errors == ["Fatal error during scrape: API Error: 401 Unauthorized"]
        assert row.pages_processed == 1

    def test_interrupted_crawl_records_failed_run(self, engine, config, drug_payload):
        source = PayloadSource([drug_payload(drug_id=i) for i in range(1, 6)], fail_at=2,
                               error=KeyboardInterrupt())

        with pytest.raises(KeyboardInterrupt):
            scrape_resource(config, "drugs", source, engine=engine, load=True, sleep=Mock())

        [row] = history(engine)
        assert row.status == "failed"
        assert row.errors == ["Interrupted during scrape"]
        assert row.pages_processed == 1
        with session_scope(engine) as s:
            assert s.execute(select(func.count()).select_from(Drug)).scalar_one() == 0

    def test_interrupted_crawl_without_engine_leaves_no_record(self, engine, config, drug_payload):
        source = PayloadSource([drug_payload(drug_id=i) for i in range(1, 6)], fail_at=2,
                               error=KeyboardInterrupt())

        with pytest.raises(KeyboardInterrupt):
            scrape_resource(config, "drugs", source, sleep=Mock())

        assert history(engine) == []


def test_scrape_targets():
    assert scrape_targets("all") == ["drugs", "historical"]
    assert scrape_targets("drugs") == ["drugs"]
    with pytest.raises(ValueError):
        scrape_targets("trials")
