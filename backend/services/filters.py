from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from models import Provenance, TestStatus

PROVENANCE_ALL = "all"

PENDING = "pending"
IN_PROGRESS = "inProgress"
READY_FOR_RESULTS = "readyForResults"
COMPLETED = "completed"
BUCKETS = (PENDING, IN_PROGRESS, READY_FOR_RESULTS, COMPLETED)

BUCKET_BY_STATUS = {
    TestStatus.CONFIRMED.value: COMPLETED,
    TestStatus.REPORTED.value: READY_FOR_RESULTS,
    TestStatus.SAMPLE_PROCESSING.value: IN_PROGRESS,
    TestStatus.SAMPLE_TAKEN.value: IN_PROGRESS,
}

MIN_SEARCH_CHARS = 2


@dataclass
class TestFilter:
    provenance: str = PROVENANCE_ALL
    status: Optional[str] = None
    search: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None


@dataclass
class Board:
    buckets: dict[str, list] = field(default_factory=lambda: {name: [] for name in BUCKETS})

    @property
    def counts(self) -> dict[str, int]:
        return {name: len(items) for name, items in self.buckets.items()}

    @property
    def total(self) -> int:
        return sum(self.counts.values())


def search_words(search: Optional[str]) -> list[str]:
    """Lower-cased words of a search term, or [] when it is too short to search."""
    term = (search or "").strip().lower()
    if len("".join(term.split())) < MIN_SEARCH_CHARS:
        return []
    return term.split()


def searchable_fields(record) -> list[str]:
    return [
        (record.patient_name or "").lower(),
        (record.patient_email or "").lower(),
        (record.doctor_name or "").lower(),
        (record.test_name or "").lower(),
    ]


def matches_search(record, words: list[str]) -> bool:
    """Every word must appear in at least one field."""
    if not words:
        return True
    fields = searchable_fields(record)
    return all(any(word in value for value in fields) for word in words)


def reference_date(record) -> Optional[date]:
    moment = record.appointment_date or record.created_at
    return moment.date() if moment else None


def matches_date_range(record, date_from: Optional[date], date_to: Optional[date]) -> bool:
    if date_from is None and date_to is None:
        return True
    day = reference_date(record)
    if day is None:
        return False
    if date_from is not None and day < date_from:
        return False
    if date_to is not None and day > date_to:
        return False
    return True


def matches_provenance(record, provenance: Optional[str]) -> bool:
    if not provenance or provenance == PROVENANCE_ALL:
        return True
    return record.provenance == Provenance(provenance)


def apply_filters(records: Iterable, test_filter: TestFilter) -> list:
    words = search_words(test_filter.search)
    status = (test_filter.status or "").strip().lower()
    if status == "all":
        status = ""

    results = []
    for record in records:
        if not matches_provenance(record, test_filter.provenance):
            continue
        if status and record.status != status:
            continue
        if not matches_search(record, words):
            continue
        if not matches_date_range(record, test_filter.date_from, test_filter.date_to):
            continue
        results.append(record)
    return results


def bucket_for(record) -> str:
    return BUCKET_BY_STATUS.get(record.status, PENDING)


def categorize(records: Iterable) -> Board:
    """Split records into the four workflow tabs. Rebuilt from scratch on every call."""
    board = Board()
    for record in records:
        board.buckets[bucket_for(record)].append(record)
    return board


def build_board(records: Iterable, test_filter: TestFilter, tab_searches: Optional[dict[str, str]] = None) -> Board:
    """Filter, categorize, then narrow each tab by its own search term."""
    board = categorize(apply_filters(records, test_filter))
    for name, term in (tab_searches or {}).items():
        if name not in board.buckets:
            continue
        words = search_words(term)
        board.buckets[name] = [record for record in board.buckets[name] if matches_search(record, words)]
    return board
