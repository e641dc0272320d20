from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Optional

from sqlmodel import Session

from config import CURRENCY_SYMBOL, PROCESSING_THRESHOLD
from errors import NotFound, PreconditionFailed, ValidationError
from models import PaymentMethod, PaymentStatus, Provenance, TestStatus, User
from services import cache, ledger
from services.aggregator import merge_records
from services.auth import actor_label
from services.confirmation import confirm, notes_suffix, revert
from services.filters import Board, TestFilter, apply_filters, build_board
from services.identifiers import parse_test_id
from services.notifications import notify_board
from services.records import ReportFile, TestRecord
from services.store import LabStore, run_command
from services.summary import build_summary
from state_machine import check_transition, normalize_status

logger = logging.getLogger("labflow")



# --- read views ---

def unified_view(session: Session) -> list[TestRecord]:
    store = LabStore(session)

    def _load():
        ordered = cache.view_cache.get(cache.LAB_ORDERS, store.list_ordered)
        prescribed = cache.view_cache.get(cache.PRESCRIPTION_LAB_TESTS, store.list_prescribed)
        return merge_records(ordered, prescribed)

    return cache.view_cache.get(cache.UNIFIED_VIEW, _load)


def list_unified(session: Session, test_filter: TestFilter) -> list[TestRecord]:
    return apply_filters(unified_view(session), test_filter)


def lab_board(session: Session, test_filter: TestFilter, tab_searches: Optional[dict[str, str]] = None) -> Board:
    return build_board(unified_view(session), test_filter, tab_searches)


def admin_summary(session: Session) -> dict:
    return cache.view_cache.get(cache.ADMIN_SUMMARY, lambda: build_summary(unified_view(session)))


def get_record(session: Session, test_id: str) -> TestRecord:
    return LabStore(session).load(parse_test_id(test_id))


# --- commands ---

async def advance_status(
    session: Session,
    test_id: str,
    target_status: str,
    actor: Optional[User] = None,
    notes: str = "",
):
    """Move a test one step along the status graph."""
    ref = parse_test_id(test_id)
    target = normalize_status(target_status)
    if target == TestStatus.CONFIRMED:
        return await confirm(session, test_id, actor, notes=notes)

    store = LabStore(session)
    current = store.load(ref)
    if current.status == TestStatus.CONFIRMED and target == TestStatus.REPORTED:
        return await revert(session, test_id, actor, notes=notes)

    def attempt():
        record = store.load(ref)
        check_transition(record, target)
        changes = {"status": target.value}
        if target == TestStatus.SAMPLE_PROCESSING and not record.sample_id:
            changes["sample_id"] = store.next_sample_id()
        return record, store.update_record(record, changes)

    previous, record = run_command(session, attempt)
    cache.invalidate_for("advance_status")
    logger.info(
        "[TRANSITION] %s: %s -> %s by %s%s",
        record.id,
        previous.status,
        record.status,
        actor_label(actor),
        notes_suffix(notes),
    )
    await notify_board(record)
    return record


def _payment_method(method) -> PaymentMethod:
    try:
        return PaymentMethod(str(getattr(method, "value", method) or "").strip().lower())
    except ValueError as exc:
        allowed = [m.value for m in PaymentMethod]
        raise ValidationError(f"Unknown payment method '{method}'. Allowed: {allowed}", method=str(method)) from exc


def _check_payment_admissible(record, amount):
    if record.status == TestStatus.CANCELLED:
        raise PreconditionFailed(
            "Payments cannot be recorded for a cancelled test",
            current_status=record.status,
        )

    due = ledger.due_amount(record)
    if due <= 0:
        raise PreconditionFailed(
            f"{record.id} is already fully paid",
            current_status=record.status,
            due_amount=float(due),
        )
    if amount > due:
        raise PreconditionFailed(
            f"Payment of {CURRENCY_SYMBOL}{amount} exceeds the outstanding {CURRENCY_SYMBOL}{due}",
            due_amount=float(due),
            amount=float(amount),
        )
    if not ledger.meets_threshold(record, PROCESSING_THRESHOLD, pending=amount):
        required = ledger.required_amount(record, PROCESSING_THRESHOLD)
        missing = ledger.shortfall(record, PROCESSING_THRESHOLD, pending=amount)
        raise PreconditionFailed(
            f"Payment must bring the total paid to at least {ledger.percent(PROCESSING_THRESHOLD)} "
            f"({CURRENCY_SYMBOL}{required}); additional {CURRENCY_SYMBOL}{missing} required",
            paid_amount=float(ledger.paid_amount(record)),
            required_amount=float(required),
            shortfall=float(missing),
        )


def _legacy_payment(record) -> Optional[dict]:
    """Prescribed entries from before per-payment tracking only carry a total."""
    if record.provenance != Provenance.PRESCRIBED or record.payments:
        return None
    carried = ledger.clamp(ledger.to_money(record.stored_paid_amount))
    if carried <= 0:
        return None
    return {
        "amount": str(carried),
        "method": "legacy",
        "status": "completed",
        "transactionId": None,
        "notes": "Carried over from recorded paid amount",
        "paidAt": (record.updated_at or record.created_at or datetime.utcnow()).isoformat(),
    }


async def record_payment(
    session: Session,
    test_id: str,
    amount,
    method,
    actor: Optional[User] = None,
    transaction_id: Optional[str] = None,
    notes: str = "",
):
    ref = parse_test_id(test_id)
    amount = ledger.to_money(amount)
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than zero", amount=float(amount))
    method = _payment_method(method)
    transaction_id = (transaction_id or "").strip() or None
    if transaction_id is None:
        if method != PaymentMethod.CASH:
            raise ValidationError(f"Transaction id is required for {method.value} payments", method=method.value)
        transaction_id = f"CASH-{int(time.time() * 1000)}"

    store = LabStore(session)

    def attempt():
        record = store.load(ref)
        _check_payment_admissible(record, amount)
        new_paid = ledger.paid_amount(record) + amount
        new_due = ledger.clamp(ledger.to_money(record.total_amount) - new_paid)
        status = PaymentStatus.PAID if new_due <= 0 else PaymentStatus.PARTIALLY_PAID
        payment = {
            "amount": amount,
            "method": method,
            "status": "completed",
            "transactionId": transaction_id,
            "notes": (notes or "").strip(),
            "processedBy": actor.id if actor else None,
            "paidAt": datetime.utcnow(),
        }
        return store.append_payment(record, payment, new_paid, new_due, status.value, _legacy_payment(record))

    record = run_command(session, attempt)
    cache.invalidate_for("record_payment")
    logger.info(
        "[PAYMENT] %s: %s%s via %s (paid %s, due %s) by %s",
        record.id,
        CURRENCY_SYMBOL,
        amount,
        method.value,
        record.paid_amount,
        record.due_amount,
        actor_label(actor),
    )
    await notify_board(record)
    return record


async def attach_reports(session: Session, test_id: str, files: list[ReportFile], actor: Optional[User] = None):
    """Attach result files to a test in ``sample_taken`` and move it to ``reported``."""
    ref = parse_test_id(test_id)
    if not files:
        raise ValidationError("At least one report file is required")

    store = LabStore(session)
    uploaded_at = datetime.utcnow()
    stamped = [f.model_copy(update={"uploaded_at": f.uploaded_at or uploaded_at}) for f in files]

    def attempt():
        record = store.load(ref)
        if record.status != TestStatus.SAMPLE_TAKEN:
            raise PreconditionFailed(
                f"Reports can only be attached while status is 'sample_taken' (current: '{record.status}')",
                current_status=record.status,
            )
        reports = list(record.test_reports) + stamped
        check_transition(record.model_copy(update={"test_reports": reports}), TestStatus.REPORTED)
        return store.update_record(record, {"status": TestStatus.REPORTED.value, "test_reports": reports})

    record = run_command(session, attempt)
    cache.invalidate_for("attach_reports")
    logger.info("[REPORTS] %s: attached %d file(s) by %s", record.id, len(stamped), actor_label(actor))
    await notify_board(record)
    return record


async def remove_report(session: Session, test_id: str, report_index: int, actor: Optional[User] = None):
    ref = parse_test_id(test_id)
    store = LabStore(session)

    def attempt():
        record = store.load(ref)
        if record.status != TestStatus.REPORTED:
            raise PreconditionFailed(
                f"Reports can only be removed while status is 'reported' (current: '{record.status}')",
                current_status=record.status,
            )
        if report_index < 0 or report_index >= len(record.test_reports):
            raise NotFound(
                f"Report #{report_index} not found on {record.id}",
                report_index=report_index,
                report_count=len(record.test_reports),
            )
        if len(record.test_reports) == 1:
            raise PreconditionFailed(
                "At least one report must remain; upload a replacement first",
                report_count=1,
            )
        reports =[r for i, r in enumerate(record.test_reports) if i != report_index]
        return store.update_record(record, {"test_reports": reports})

    record = run_command(session, attempt)
    cache.invalidate_for("remove_report")
    logger.info("[REPORTS] %s: removed report #%d by %s", record.id, report_index, actor_label(actor))
    await notify_board(record)
    return record
