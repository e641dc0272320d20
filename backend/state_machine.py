from __future__ import annotations

import logging

from config import CURRENCY_SYMBOL, PROCESSING_THRESHOLD
from errors import PreconditionFailed, ValidationError
from models import TestStatus
from services.ledger import paid_amount, percent, required_amount, shortfall

logger = logging.getLogger("labflow")

VALID_TRANSITIONS: dict[str, list[str]] = {
    TestStatus.ORDERED: [TestStatus.APPROVED, TestStatus.CANCELLED],
    TestStatus.APPROVED: [TestStatus.SAMPLE_PROCESSING, TestStatus.CANCELLED],
    TestStatus.SAMPLE_PROCESSING: [TestStatus.SAMPLE_TAKEN, TestStatus.CANCELLED],
    TestStatus.SAMPLE_TAKEN: [TestStatus.REPORTED, TestStatus.CANCELLED],
    TestStatus.REPORTED: [TestStatus.CONFIRMED, TestStatus.CANCELLED],
    # Revert edge, used to undo a premature confirmation.
    TestStatus.CONFIRMED: [TestStatus.REPORTED],
    TestStatus.CANCELLED: [],
}

INITIAL_STATE = TestStatus.ORDERED
TERMINAL_STATES: set[str] = {TestStatus.CONFIRMED, TestStatus.CANCELLED}


def normalize_status(value: str) -> TestStatus:
    raw = (value or "").strip().lower()
    try:
        return TestStatus(raw)
    except ValueError as exc:
        allowed = [status.value for status in TestStatus]
        raise ValidationError(f"Unknown status '{value}'. Allowed: {allowed}", status=value) from exc


def allowed_targets(current_status: str) -> list[str]:
    return [TestStatus(s).value for s in VALID_TRANSITIONS.get(current_status, [])]


def _value(status) -> str:
    return status.value if isinstance(status, TestStatus) else str(status)


def validate_transition(current_status: str, new_status: str) -> bool:
    """Return True if the edge exists in the graph, raise PreconditionFailed otherwise."""
    current_status = _value(current_status)
    new_status = _value(new_status)
    if current_status == TestStatus.CANCELLED:
        raise PreconditionFailed(
            "Cancelled tests accept no further status changes",
            current_status=current_status,
            requested_status=new_status,
        )

    allowed = VALID_TRANSITIONS.get(current_status)
    if allowed is None:
        raise PreconditionFailed(
            f"No transitions from status '{current_status}'",
            current_status=current_status,
            requested_status=new_status,
        )

    if new_status not in allowed:
        targets = allowed_targets(current_status)
        raise PreconditionFailed(
            f"Invalid transition: cannot go from '{current_status}' to '{new_status}'. Allowed: {targets}",
            current_status=current_status,
            requested_status=new_status,
            allowed=targets,
        )

    return True


def _require_processing_payment(record):
    if shortfall(record, PROCESSING_THRESHOLD) > 0:
        missing = shortfall(record, PROCESSING_THRESHOLD)
        raise PreconditionFailed(
            f"Additional {CURRENCY_SYMBOL}{missing} required to reach "
            f"{percent(PROCESSING_THRESHOLD)} minimum payment before sample processing",
            current_status=record.status,
            requested_status=TestStatus.SAMPLE_PROCESSING.value,
            paid_amount=float(paid_amount(record)),
            required_amount=float(required_amount(record, PROCESSING_THRESHOLD)),
            shortfall=float(missing),
        )


def _require_reports(record, new_status: str):
    if not record.test_reports:
        raise PreconditionFailed(
            f"At least one report file is required before moving to '{new_status}'",
            current_status=record.status,
            requested_status=new_status,
        )


GUARDS = {
    TestStatus.SAMPLE_PROCESSING: _require_processing_payment,
    TestStatus.REPORTED: lambda record: _require_reports(record, TestStatus.REPORTED.value),
    TestStatus.CONFIRMED: lambda record: _require_reports(record, TestStatus.CONFIRMED.value),
}


def check_transition(record, new_status: str) -> bool:
    """Validate the edge and its guard against the record's current state."""
    new_status = normalize_status(new_status)
    try:
        validate_transition(record.status, new_status)
        # Reverting keeps the uploaded reports, no guard applies.
        if record.status != TestStatus.CONFIRMED:
            guard = GUARDS.get(new_status)
            if guard is not None:
                guard(record)
    except PreconditionFailed as exc:
        logger.warning("[GUARD] %s -> %s rejected for %s: %s", record.status, new_status.value, record.id, exc.message)
        raise
    return True
