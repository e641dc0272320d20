"""Confirm (release results to the patient) and its inverse, revert."""
from __future__ import annotations

import logging
from typing import Optional

from sqlmodel import Session

from errors import PreconditionFailed
from models import TestStatus, User
from services import cache
from services.auth import actor_label
from services.identifiers import parse_test_id
from services.notifications import notify_board, notify_reports_confirmed
from services.store import LabStore, run_command
from state_machine import check_transition

logger = logging.getLogger("labflow")


def notes_suffix(notes: str) -> str:
    notes = (notes or "").strip()
    return f" ({notes})" if notes else ""


async def confirm(session: Session, test_id: str, actor: Optional[User] = None, notes: str = ""):
    """Move ``reported`` to ``confirmed``.

    Confirming an already confirmed test returns it unchanged and sends no
    notification, including when a concurrent confirm won the race.
    """
    ref = parse_test_id(test_id)
    store = LabStore(session)

    def attempt():
        record = store.load(ref)
        if record.status == TestStatus.CONFIRMED:
            return record, False
        check_transition(record, TestStatus.CONFIRMED)
        return store.update_record(record, {"status": TestStatus.CONFIRMED.value}), True

    record, changed = run_command(session, attempt)
    if not changed:
        logger.info("[CONFIRM] %s already confirmed, nothing to do", record.id)
        return record

    cache.invalidate_for("confirm")
    logger.info(
        "[CONFIRM] %s released to patient #%s by %s%s",
        record.id,
        record.patient_id,
        actor_label(actor),
        notes_suffix(notes),
    )
    await notify_reports_confirmed(record)
    await notify_board(record)
    return record


async def revert(session: Session, test_id: str, actor: Optional[User] = None, notes: str = ""):
    """Undo a confirmation. Uploaded reports are kept."""
    ref = parse_test_id(test_id)
    store = LabStore(session)

    def attempt():
        record = store.load(ref)
        if record.status != TestStatus.CONFIRMED:
            raise PreconditionFailed(
                f"Can only revert from 'confirmed' (current: '{record.status}')",
                current_status=record.status,
            )
        check_transition(record, TestStatus.REPORTED)
        return store.update_record(record, {"status": TestStatus.REPORTED.value})

    record = run_command(session, attempt)
    cache.invalidate_for("revert")
    logger.info(
        "[REVERT] %s returned to reported by %s%s", record.id, actor_label(actor), notes_suffix(notes)
    )
    await notify_board(record)
    return record
