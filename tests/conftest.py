"""
Shared fixtures: in-memory SQLite store and BPIQ payload factories.
"""

import pytest

from biocat.db.session import create_all, create_db_engine
from biocat.ingest.types import Page


def make_drug_payload(drug_id=1, company_id=10, stage_event_id=50, indication_ids=(100,), **overrides):
    payload = {
        "id": drug_id,
        "company": {"id": company_id, "ticker": "ACME", "name": "Acme Biosciences"},
        "stage_event": {
            "id": stage_event_id,
            "wix_id": f"se-{stage_event_id}",
            "label": "Phase 3 topline",
            "stage_label": "Phase 3",
            "stage": "P3",
            "event_label": "Topline data",
            "event": "topline",
            "score": 7.5,
            "created_at": "2024-01-01T00:00:00Z",
            "updated_at": "2024-02-01T00:00:00Z",
        },
        "indications": [
            {
                "id": ind_id,
                "wix_id": f"ind-{ind_id}",
                "title": f"Indication {ind_id}",
                "nickname": None,
                "created_at": "2024-01-01T00:00:00Z",
                "updated_at": "2024-01-15T00:00:00Z",
            }
            for ind_id in indication_ids
        ],
        "wix_id": f"drug-{drug_id}",
        "drug_name": f"ACM-{drug_id}",
        "ticker": "ACME",
        "is_big_mover": True,
        "is_suspected_mover": None,
        "mechanism_of_action": "PD-1 inhibitor",
        "note": "Pivotal readout",
        "catalyst_date": "2025-06-30",
        "catalyst_date_text": "Q2 2025",
        "indications_text": "NSCLC",
        "has_catalyst": True,
        "catalyst_source": "Press release",
        "market": "US",
        "last_name_updated": None,
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": "2024-03-01T00:00:00Z",
    }
    payload.update(overrides)
    return payload


def make_catalyst_payload(catalyst_id=1, company_id=10, ticker="ACME", catalyst_date="2023-05-01", **overrides):
    payload = {
        "id": catalyst_id,
        "company": {"id": company_id, "ticker": ticker, "name": f"{ticker} Inc"},
        "ticker": ticker,
        "drug_name": "ACM-1",
        "drug_indication": "NSCLC",
        "stage": "Phase 3",
        "catalyst_date": catalyst_date,
        "catalyst_source": "8-K",
        "catalyst_text": "Met primary endpoint",
    }
    payload.update(overrides)
    return payload


class FakeSource:
    """
    In-memory paginated source with the BpiqClient.fetch_page signature.

    ``failures`` maps an offset to exceptions raised (in order) before the
    page at that offset is served.
    """

    def __init__(self, total, failures=None):
        self.records = [{"id": i + 1} for i in range(total)]
        self.failures = {offset: list(errors) for offset, errors in (failures or {}).items()}
        self.calls = []

    def fetch_page(self, resource, offset, limit):
        self.calls.append(offset)
        pending = self.failures.get(offset)
        if pending:
            raise pending.pop(0)
        items = self.records[offset:offset + limit]
        has_next = offset + limit < len(self.records)
        return Page(
            total_count=len(self.records),
            items=items,
            has_next=has_next,
            next_url=f"https://example.test/?offset={offset + limit}" if has_next else None,
        )


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database with all tables."""
    engine = create_db_engine("sqlite://")
    create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def drug_payload():
    return make_drug_payload


@pytest.fixture
def catalyst_payload():
    return make_catalyst_payload


@pytest.fixture
def fake_source():
    return FakeSource
