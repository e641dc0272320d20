"""Reads and conditional writes against the two upstream collections.

Every write is conditioned on the version the caller read, so a guard checked
against a record and the mutation it allows always refer to the same state.
"""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from config import MAX_COMMAND_RETRIES
from errors import ConcurrentUpdate, LabWorkflowError, NotFound, TransientStoreError
from models import Appointment, Doctor, LabOrder, LabPayment, Patient, PaymentMethod, Prescription
from services import aggregator
from services.identifiers import OrderRef, PrescribedRef, TestRef, format_test_id
from services.records import ReportFile

logger = logging.getLogger("labflow")

SAMPLE_PREFIX = "SMP"


@contextmanager
def store_errors(session: Session, operation: str):
    try:
        yield
    except LabWorkflowError:
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("[STORE] %s failed: %s", operation, exc)
        raise TransientStoreError(f"Storage error during {operation}; please retry", operation=operation) from exc


def run_command(session: Session, attempt: Callable, retries: int = MAX_COMMAND_RETRIES):
    """Run read-check-write ``attempt`` again when its conditional write loses a race.

    Each attempt re-reads the record, so a writer that lost observes the new
    state and its guard decides whether the command still applies.
    """
    for tries in range(1, retries + 1):
        try:
            return attempt()
        except ConcurrentUpdate:
            session.rollback()
            if tries == retries:
                raise
            logger.info("[STORE] concurrent update detected, retrying (%s/%s)", tries, retries)


def _reports_payload(reports: list[ReportFile]) -> list[dict]:
    return [report.stored() for report in reports]


class LabStore:
    def __init__(self, session: Session):
        self.session = session

    # --- reads ---

    def _descriptive_rows(self, snapshot: aggregator.SourceSnapshot, appointment_ids: set[int], patient_ids: set[int]):
        if appointment_ids:
            appointments = self.session.exec(
                select(Appointment).where(Appointment.id.in_(appointment_ids))  # type: ignore[union-attr]
            ).all()
            snapshot.appointments = {a.id: a for a in appointments if a.id is not None}
            patient_ids |= {a.patient_id for a in appointments}
            doctor_ids = {a.doctor_id for a in appointments if a.doctor_id is not None}
            if doctor_ids:
                doctors = self.session.exec(select(Doctor).where(Doctor.id.in_(doctor_ids))).all()  # type: ignore[union-attr]
                snapshot.doctors = {d.id: d for d in doctors if d.id is not None}
        if patient_ids:
            patients = self.session.exec(select(Patient).where(Patient.id.in_(patient_ids))).all()  # type: ignore[union-attr]
            snapshot.patients = {p.id: p for p in patients if p.id is not None}

    def snapshot(
        self,
        *,
        include_orders: bool = True,
        include_prescriptions: bool = True,
        order_ids: Optional[list[int]] = None,
        prescription_ids: Optional[list[int]] = None,
    ) -> aggregator.SourceSnapshot:
        snapshot = aggregator.SourceSnapshot()
        with store_errors(self.session, "read"):
            if include_orders:
                query = select(LabOrder).execution_options(populate_existing=True)
                if order_ids is not None:
                    query = query.where(LabOrder.id.in_(order_ids))  # type: ignore[union-attr]
                snapshot.orders = list(self.session.exec(query).all())
                ids = [o.id for o in snapshot.orders]
                if ids:
                    payments = self.session.exec(
                        select(LabPayment)
                        .where(LabPayment.lab_order_id.in_(ids))  # type: ignore[union-attr]
                        .order_by(LabPayment.paid_at.asc(), LabPayment.id.asc())  # type: ignore[union-attr]
                    ).all()
                    for payment in payments:
                        snapshot.order_payments.setdefault(payment.lab_order_id, []).append(payment)
            if include_prescriptions:
                query = select(Prescription).execution_options(populate_existing=True)
                if prescription_ids is not None:
                    query = query.where(Prescription.id.in_(prescription_ids))  # type: ignore[union-attr]
                snapshot.prescriptions = list(self.session.exec(query).all())

            appointment_ids = {o.appointment_id for o in snapshot.orders if o.appointment_id is not None}
            appointment_ids |= {p.appointment_id for p in snapshot.prescriptions}
            patient_ids = {o.patient_id for o in snapshot.orders}
            self._descriptive_rows(snapshot, appointment_ids, patient_ids)
        return snapshot

    def list_ordered(self) -> list:
        return aggregator.ordered_records(self.snapshot(include_prescriptions=False))

    def list_prescribed(self) -> list:
        return aggregator.prescribed_records(self.snapshot(include_orders=False))

    def load(self, ref: TestRef):
        test_id = format_test_id(ref)
        if isinstance(ref, OrderRef):
            snapshot = self.snapshot(include_prescriptions=False, order_ids=[ref.order_id])
            if not snapshot.orders:
                raise NotFound(f"Lab order '{test_id}' not found", test_id=test_id)
            return aggregator.order_to_record(snapshot.orders[0], snapshot)

        snapshot = self.snapshot(include_orders=False, prescription_ids=[ref.prescription_id])
        if not snapshot.prescriptions:
            raise NotFound(f"Prescription #{ref.prescription_id} not found", test_id=test_id)
        for record in aggregator.prescription_to_records(snapshot.prescriptions[0], snapshot):
            if record.test_name == ref.test_name:
                return record
        raise NotFound(
            f"Test '{ref.test_name}' not found in prescription #{ref.prescription_id}",
            test_id=test_id,
        )

    # --- writes ---

    def _conditional_update(self, model, row_id: int, expected_version: int, values: dict, test_id: str):
        stmt = (
            update(model)
            .where(model.id == row_id, model.version == expected_version)
            .values(version=expected_version + 1, updated_at=datetime.utcnow(), **values)
        )
        result = self.session.exec(stmt)  # type: ignore[call-overload]
        if result.rowcount != 1:
            raise ConcurrentUpdate(
                f"'{test_id}' was changed by someone else; reload and retry",
                test_id=test_id,
                expected_version=expected_version,
            )

    def _order_values(self, changes: dict) -> dict:
        values: dict = {}
        for key, value in changes.items():
            if key == "test_reports":
                values["test_reports_json"] = json.dumps(_reports_payload(value))
                # Keep the single-file column pointing at the first report.
                values["result_url"] = value[0].path if value else None
            elif key in {"status", "sample_id", "paid_amount", "due_amount"}:
                values[key] = value
            else:
                raise ValueError(f"Unsupported lab order change: {key}")
        return values

    def _prescribed_entry_update(self, entry: dict, changes: dict) -> dict:
        for key, value in changes.items():
            if key == "test_reports":
                entry["testReports"] = _reports_payload(value)
            elif key == "status":
                entry["status"] = value
            elif key == "sample_id":
                entry["sampleId"] = value
            elif key == "payments":
                entry["payments"] = value
            elif key == "paid_amount":
                entry["paidAmount"] = str(value)
            elif key == "payment_status":
                entry["paymentStatus"] = value
            elif key in {"due_amount"}:
                continue
            else:
                raise ValueError(f"Unsupported prescribed test change: {key}")
        entry["updatedAt"] = datetime.utcnow().isoformat()
        return entry

    def _write_prescribed(self, record, changes: dict, extra: Optional[Callable[[dict], None]] = None):
        ref: PrescribedRef = record.ref
        prescription = self.session.exec(
            select(Prescription)
            .where(Prescription.id == ref.prescription_id)
            .execution_options(populate_existing=True)
        ).first()
        if prescription is None:
            raise NotFound(f"Prescription #{ref.prescription_id} not found", test_id=record.id)
        if prescription.version != record.version:
            raise ConcurrentUpdate(f"'{record.id}' was changed by someone else; reload and retry", test_id=record.id)

        tests = prescription.tests
        for index, raw in enumerate(tests):
            entry = aggregator.normalize_prescribed_entry(raw)
            if entry is not None and str(entry["name"]).strip() == ref.test_name:
                if extra is not None:
                    extra(entry)
                tests[index] = self._prescribed_entry_update(entry, changes)
                break
        else:
            raise NotFound(f"Test '{ref.test_name}' not found in prescription #{ref.prescription_id}", test_id=record.id)

        self._conditional_update(Prescription, ref.prescription_id, record.version, {"tests_json": json.dumps(tests)}, record.id)

    def update_record(self, record, changes: dict):
        """Apply ``changes`` if the record is still at the version it was read at."""
        with store_errors(self.session, "update"):
            if isinstance(record.ref, OrderRef):
                self._conditional_update(LabOrder, record.order_id, record.version, self._order_values(changes), record.id)
            else:
                self._write_prescribed(record, changes)
            self.session.commit()
        return self.load(record.ref)

    def append_payment(self, record, payment: dict, new_paid: Decimal, new_due: Decimal, payment_status: str, legacy_payment: Optional[dict] = None):
        """Record one payment and the new running totals in a single transaction."""
        with store_errors(self.session, "payment"):
            if isinstance(record.ref, OrderRef):
                self.session.add(
                    LabPayment(
                        lab_order_id=record.order_id,
                        amount=payment["amount"],
                        method=PaymentMethod(payment["method"]),
                        status=payment["status"],
                        transaction_id=payment["transactionId"],
                        notes=payment["notes"],
                        processed_by=payment.get("processedBy"),
                        paid_at=payment["paidAt"],
                    )
                )
                self.session.flush()
                self._conditional_update(
                    LabOrder,
                    record.order_id,
                    record.version,
                    self._order_values({"paid_amount": new_paid, "due_amount": new_due}),
                    record.id,
                )
            else:
                def _append(entry: dict):
                    payments = list(entry.get("payments") or [])
                    if legacy_payment is not None and not payments:
                        payments.append(legacy_payment)
                    payments.append(
                        {
                            **payment,
                            "amount": str(payment["amount"]),
                            "method": PaymentMethod(payment["method"]).value,
                            "paidAt": payment["paidAt"].isoformat(),
                        }
                    )
                    entry["payments"] = payments

                self._write_prescribed(
                    record,
                    {"paid_amount": new_paid, "payment_status": payment_status},
                    extra=_append,
                )
            self.session.commit()
        return self.load(record.ref)

    def next_sample_id(self, today: Optional[date] = None) -> str:
        """``SMP-YYYYMMDD-NNNN``, numbered per day across both sources."""
        day = (today or datetime.utcnow().date()).strftime("%Y%m%d")
        prefix = f"{SAMPLE_PREFIX}-{day}-"
        with store_errors(self.session, "sample id"):
            orders = self.session.exec(
                select(LabOrder.sample_id).where(LabOrder.sample_id.like(f"{prefix}%"))  # type: ignore[union-attr]
            ).all()
            prescriptions = self.session.exec(
                select(Prescription).where(Prescription.tests_json.like(f"%{prefix}%"))  # type: ignore[union-attr]
            ).all()
        used = len(orders)
        for prescription in prescriptions:
            for raw in prescription.tests:
                entry = aggregator.normalize_prescribed_entry(raw)
                if entry and str(entry.get("sampleId") or "").startswith(prefix):
                    used += 1
        return f"{prefix}{used + 1:04d}"
