"""
Typed records for the BPIQ drug-pipeline API.

Payloads from the remote source (or from a saved scrape file) are validated
here, at the ingestion boundary, before anything reaches the database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union


class RecordValidationError(ValueError):
    """Raised when a source payload does not match the expected shape."""
    pass


# -----------------------------
# Field coercion helpers
# -----------------------------

def _require_id(payload: Dict[str, Any], key: str = "id") -> int:
    value = payload.get(key)
    # bool is a subclass of int; a flag is never an identifier
    if isinstance(value, bool) or not isinstance(value, int):
        raise RecordValidationError(f"{key} must be an integer, got {value!r}")
    return value


def _opt_str(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        raise RecordValidationError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _flag(payload: Dict[str, Any], key: str) -> bool:
    value = payload.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise RecordValidationError(f"{key} must be a boolean, got {value!r}")
    return value


def _opt_number(payload: Dict[str, Any], key: str) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RecordValidationError(f"{key} must be a number, got {value!r}")
    return float(value)


def parse_timestamp(value: Optional[str], key: str = "timestamp") -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; a bare date becomes midnight."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if not isinstance(value, str):
        raise RecordValidationError(f"{key} must be an ISO-8601 string, got {value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        raise RecordValidationError(f"{key} is not an ISO-8601 timestamp: {value!r}")


def parse_date(value: Optional[str], key: str = "date") -> Optional[date]:
    """Parse YYYY-MM-DD (or a full timestamp, keeping its date part)."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if not isinstance(value, str):
        raise RecordValidationError(f"{key} must be an ISO-8601 string, got {value!r}")
    text = value.strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        raise RecordValidationError(f"{key} is not an ISO-8601 date: {value!r}")


def _nested(payload: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise RecordValidationError(f"{key} must be an object, got {type(value).__name__}")
    return value


# -----------------------------
# Entities
# -----------------------------

@dataclass(frozen=True)
class Company:
    id: int
    ticker: Optional[str]
    name: Optional[str]

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Company":
        return cls(
            id=_require_id(payload),
            ticker=_opt_str(payload, "ticker"),
            name=_opt_str(payload, "name"),
        )


@dataclass(frozen=True)
class Indication:
    id: int
    wix_id: Optional[str]
    title: Optional[str]
    nickname: Optional[str]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Indication":
        return cls(
            id=_require_id(payload),
            wix_id=_opt_str(payload, "wix_id"),
            title=_opt_str(payload, "title"),
            nickname=_opt_str(payload, "nickname"),
            created_at=parse_timestamp(payload.get("created_at"), "created_at"),
            updated_at=parse_timestamp(payload.get("updated_at"), "updated_at"),
        )


@dataclass(frozen=True)
class StageEvent:
    id: int
    wix_id: Optional[str]
    label: Optional[str]
    stage_label: Optional[str]
    stage: Optional[str]
    event_label: Optional[str]
    event: Optional[str]
    score: Optional[float]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "StageEvent":
        return cls(
            id=_require_id(payload),
            wix_id=_opt_str(payload, "wix_id"),
            label=_opt_str(payload, "label"),
            stage_label=_opt_str(payload, "stage_label"),
            stage=_opt_str(payload, "stage"),
            event_label=_opt_str(payload, "event_label"),
            event=_opt_str(payload, "event"),
            score=_opt_number(payload, "score"),
            created_at=parse_timestamp(payload.get("created_at"), "created_at"),
            updated_at=parse_timestamp(payload.get("updated_at"), "updated_at"),
        )


@dataclass(frozen=True)
class Drug:
    """A drug program as returned by ``/drugs/``."""
    id: int
    company: Optional[Company]
    stage_event: Optional[StageEvent]
    indications: Tuple[Indication, ...]
    wix_id: Optional[str]
    drug_name: Optional[str]
    ticker: Optional[str]
    is_big_mover: bool
    is_suspected_mover: bool
    mechanism_of_action: Optional[str]
    note: Optional[str]
    catalyst_date: Optional[date]
    catalyst_date_text: Optional[str]
    indications_text: Optional[str]
    has_catalyst: bool
    catalyst_source: Optional[str]
    market: Optional[str]
    last_name_updated: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Drug":
        company = _nested(payload, "company")
        stage_event = _nested(payload, "stage_event")
        indications = payload.get("indications") or []
        if not isinstance(indications, list):
            raise RecordValidationError("indications must be a list")
        for item in indications:
            if not isinstance(item, dict):
                raise RecordValidationError("indications must contain objects")

        return cls(
            id=_require_id(payload),
            company=Company.from_payload(company) if company else None,
            stage_event=StageEvent.from_payload(stage_event) if stage_event else None,
            indications=tuple(Indication.from_payload(i) for i in indications),
            wix_id=_opt_str(payload, "wix_id"),
            drug_name=_opt_str(payload, "drug_name"),
            ticker=_opt_str(payload, "ticker"),
            is_big_mover=_flag(payload, "is_big_mover"),
            is_suspected_mover=_flag(payload, "is_suspected_mover"),
            mechanism_of_action=_opt_str(payload, "mechanism_of_action"),
            note=_opt_str(payload, "note"),
            catalyst_date=parse_date(payload.get("catalyst_date"), "catalyst_date"),
            catalyst_date_text=_opt_str(payload, "catalyst_date_text"),
            indications_text=_opt_str(payload, "indications_text"),
            has_catalyst=_flag(payload, "has_catalyst"),
            catalyst_source=_opt_str(payload, "catalyst_source"),
            market=_opt_str(payload, "market"),
            last_name_updated=parse_timestamp(payload.get("last_name_updated"), "last_name_updated"),
            created_at=parse_timestamp(payload.get("created_at"), "created_at"),
            updated_at=parse_timestamp(payload.get("updated_at"), "updated_at"),
        )


@dataclass(frozen=True)
class HistoricalCatalyst:
    """A past catalyst event as returned by ``/historical-catalysts/screener/``."""
    id: int
    company: Optional[Company]
    ticker: Optional[str]
    drug_name: Optional[str]
    drug_indication: Optional[str]
    stage: Optional[str]
    catalyst_date: Optional[date]
    catalyst_source: Optional[str]
    catalyst_text: Optional[str]

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "HistoricalCatalyst":
        company = _nested(payload, "company")
        return cls(
            id=_require_id(payload),
            company=Company.from_payload(company) if company else None,
            ticker=_opt_str(payload, "ticker"),
            drug_name=_opt_str(payload, "drug_name"),
            drug_indication=_opt_str(payload, "drug_indication"),
            stage=_opt_str(payload, "stage"),
            catalyst_date=parse_date(payload.get("catalyst_date"), "catalyst_date"),
            catalyst_source=_opt_str(payload, "catalyst_source"),
            catalyst_text=_opt_str(payload, "catalyst_text"),
        )


Record = Union[Drug, HistoricalCatalyst]

RECORD_TYPES = {
    "drugs": Drug,
    "historical": HistoricalCatalyst,
}


# -----------------------------
# Pages
# -----------------------------

@dataclass
class Page:
    """One page of the paginated API envelope."""
    total_count: int
    items: List[Dict[str, Any]] = field(default_factory=list)
    has_next: bool = False
    next_url: Optional[str] = None
    previous_url: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "Page":
        if not isinstance(payload, dict):
            raise RecordValidationError("page must be a JSON object")
        count = payload.get("count")
        results = payload.get("results")
        if isinstance(count, bool) or not isinstance(count, int):
            raise RecordValidationError(f"page count must be an integer, got {count!r}")
        if not isinstance(results, list):
            raise RecordValidationError("page results must be a list")
        next_url = payload.get("next")
        return cls(
            total_count=count,
            items=list(results),
            has_next=next_url is not None,
            next_url=next_url,
            previous_url=payload.get("previous"),
        )


def parse_records(kind: str, payloads: Sequence[Any]) -> Tuple[List[Record], List[str]]:
    """
    Validate a whole batch of raw payloads.

    Returns the parsed records and one error string per rejected payload.
    """
    if kind not in RECORD_TYPES:
        raise ValueError(f"Unknown record kind: {kind!r}")
    record_cls = RECORD_TYPES[kind]

    records: List[Record] = []
    errors: List[str] = []
    for index, payload in enumerate(payloads):
        if not isinstance(payload, dict):
            errors.append(f"record {index}: expected an object, got {type(payload).__name__}")
            continue
        try:
            records.append(record_cls.from_payload(payload))
        except RecordValidationError as e:
            errors.append(f"record {index} (id={payload.get('id')!r}): {e}")
    return records, errors
