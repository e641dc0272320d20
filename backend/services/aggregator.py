"""Merge lab orders and prescribed tests into one list of unified records.

Everything here is a pure function of its inputs: the store collects rows into
a ``SourceSnapshot`` and the functions below only map and merge them.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from config import RELEASE_THRESHOLD
from models import Appointment, Doctor, LabOrder, LabPayment, Patient, Prescription, TestStatus
from services import ledger
from services.identifiers import OrderRef, PrescribedRef, format_test_id, prescription_order_number
from services.records import OrderedTest, PaymentView, PrescribedTest, ReportFile

logger = logging.getLogger("labflow")

SELF_ORDERED_LABEL = "Self-Ordered"
RELEASED_STATES = {TestStatus.CONFIRMED.value}


@dataclass
class SourceSnapshot:
    orders: list[LabOrder] = field(default_factory=list)
    order_payments: dict[int, list[LabPayment]] = field(default_factory=dict)
    prescriptions: list[Prescription] = field(default_factory=list)
    appointments: dict[int, Appointment] = field(default_factory=dict)
    patients: dict[int, Patient] = field(default_factory=dict)
    doctors: dict[int, Doctor] = field(default_factory=dict)


def _parse_datetime(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        logger.warning("Ignoring unparseable timestamp %r", value)
        return None


def _report_from_path(path: str) -> ReportFile:
    name = os.path.basename(path) or path
    return ReportFile(filename=name, original_name=name, path=path)


def parse_report_files(items) -> list[ReportFile]:
    reports = []
    for item in items or []:
        if isinstance(item, str):
            reports.append(_report_from_path(item))
            continue
        if not isinstance(item, dict):
            continue
        path = item.get("path") or item.get("url") or ""
        filename = item.get("filename") or os.path.basename(path)
        if not path or not filename:
            continue
        reports.append(
            ReportFile(
                filename=filename,
                original_name=item.get("originalName") or item.get("original_name") or filename,
                path=path,
                uploaded_at=_parse_datetime(item.get("uploadedAt") or item.get("uploaded_at")),
            )
        )
    return reports


def parse_legacy_result_url(result_url: Optional[str]) -> list[ReportFile]:
    """``result_url`` holds either a single path or a JSON array of file descriptors."""
    raw = (result_url or "").strip()
    if not raw:
        return []
    if raw.startswith("["):
        try:
            return parse_report_files(json.loads(raw))
        except json.JSONDecodeError:
            logger.warning("result_url looks like JSON but does not parse; treating it as a path")
    return [_report_from_path(raw)]


def order_reports(order: LabOrder) -> list[ReportFile]:
    reports = parse_report_files(order.test_reports)
    if reports:
        return reports
    return parse_legacy_result_url(order.result_url)


def _order_test_name(order: LabOrder) -> str:
    names = []
    for item in order.tests:
        if isinstance(item, str):
            names.append(item)
        elif isinstance(item, dict) and item.get("name"):
            names.append(str(item["name"]))
    return ", ".join(names) or order.order_number


def _doctor_for(appointment: Optional[Appointment], snapshot: SourceSnapshot) -> Optional[Doctor]:
    if appointment is None or appointment.doctor_id is None:
        return None
    return snapshot.doctors.get(appointment.doctor_id)


def _reports_available(record) -> bool:
    return record.status in RELEASED_STATES and bool(record.test_reports) and ledger.meets_threshold(
        record, RELEASE_THRESHOLD
    )


def _finish(record):
    """Fill the derived ledger fields of a freshly mapped record."""
    record.paid_amount = ledger.paid_amount(record)
    record.due_amount = ledger.due_amount(record)
    record.payment_status = ledger.payment_status(record).value
    record.reports_available = _reports_available(record)
    drift = ledger.ledger_drift(record)
    if drift:
        logger.warning("[LEDGER] %s stored paid amount differs from payments by %s", record.id, drift)
    return record


def order_to_record(order: LabOrder, snapshot: SourceSnapshot) -> OrderedTest:
    appointment = snapshot.appointments.get(order.appointment_id) if order.appointment_id else None
    doctor = _doctor_for(appointment, snapshot)
    patient = snapshot.patients.get(order.patient_id)
    payments = snapshot.order_payments.get(order.id, [])

    record = OrderedTest(
        id=format_test_id(OrderRef(order_id=order.id)),
        order_id=order.id,
        order_number=order.order_number,
        test_name=_order_test_name(order),
        status=order.status,
        payment_status="",
        total_amount=ledger.to_money(order.total_amount),
        paid_amount=ledger.ZERO,
        due_amount=ledger.ZERO,
        stored_paid_amount=ledger.to_money(order.paid_amount),
        sample_id=order.sample_id,
        test_reports=order_reports(order),
        payments=[
            PaymentView(
                amount=ledger.to_money(payment.amount),
                method=payment.method.value if hasattr(payment.method, "value") else str(payment.method),
                status=payment.status,
                transaction_id=payment.transaction_id,
                notes=payment.notes,
                paid_at=payment.paid_at,
            )
            for payment in payments
        ],
        patient_id=order.patient_id,
        patient_name=patient.name if patient else "",
        patient_email=patient.email if patient else "",
        doctor_name=doctor.name if doctor else SELF_ORDERED_LABEL,
        appointment_id=order.appointment_id,
        appointment_date=appointment.appointment_date if appointment else None,
        created_at=order.created_at,
        updated_at=order.updated_at,
        version=order.version,
    )
    return _finish(record)


def normalize_prescribed_entry(entry) -> Optional[dict]:
    """Older prescriptions stored bare test names instead of objects."""
    if isinstance(entry, str):
        name = entry.strip()
        return {"name": name, "status": TestStatus.ORDERED.value, "testReports": []} if name else None
    if isinstance(entry, dict) and str(entry.get("name") or "").strip():
        return entry
    return None


def prescribed_status(entry: dict) -> str:
    status = str(entry.get("status") or "").strip().lower()
    if status:
        return status
    if entry.get("testReports"):
        return TestStatus.REPORTED.value
    return TestStatus.ORDERED.value


def prescribed_payments(entry: dict) -> list[PaymentView]:
    return [
        PaymentView(
            amount=ledger.to_money(payment.get("amount")),
            method=str(payment.get("method") or payment.get("paymentMethod") or "unknown"),
            status=str(payment.get("status") or "completed"),
            transaction_id=payment.get("transactionId"),
            notes=str(payment.get("notes") or ""),
            paid_at=_parse_datetime(payment.get("paidAt")),
        )
        for payment in entry.get("payments") or []
        if isinstance(payment, dict)
    ]


def prescribed_entry_to_record(
    prescription: Prescription,
    entry: dict,
    snapshot: SourceSnapshot,
) -> PrescribedTest:
    appointment = snapshot.appointments.get(prescription.appointment_id)
    doctor = _doctor_for(appointment, snapshot)
    patient = snapshot.patients.get(appointment.patient_id) if appointment else None
    name = str(entry["name"]).strip()
    stored_paid = entry.get("paidAmount")

    record = PrescribedTest(
        id=format_test_id(PrescribedRef(prescription_id=prescription.id, test_name=name)),
        prescription_id=prescription.id,
        order_number=prescription_order_number(prescription.id),
        test_name=name,
        status=prescribed_status(entry),
        payment_status="",
        total_amount=ledger.to_money(entry.get("price", entry.get("totalAmount"))),
        paid_amount=ledger.ZERO,
        due_amount=ledger.ZERO,
        stored_paid_amount=ledger.to_money(stored_paid) if stored_paid not in (None, "") else None,
        sample_id=entry.get("sampleId"),
        test_reports=parse_report_files(entry.get("testReports")),
        payments=prescribed_payments(entry),
        patient_id=appointment.patient_id if appointment else None,
        patient_name=patient.name if patient else "",
        patient_email=patient.email if patient else "",
        doctor_name=doctor.name if doctor else "",
        appointment_id=prescription.appointment_id,
        appointment_date=appointment.appointment_date if appointment else None,
        created_at=_parse_datetime(entry.get("createdAt")) or prescription.created_at,
        updated_at=_parse_datetime(entry.get("updatedAt")) or prescription.updated_at,
        version=prescription.version,
    )
    return _finish(record)


def prescription_to_records(prescription: Prescription, snapshot: SourceSnapshot) -> list[PrescribedTest]:
    records = []
    seen: set[str] = set()
    for raw in prescription.tests:
        entry = normalize_prescribed_entry(raw)
        if entry is None:
            continue
        name = str(entry["name"]).strip()
        # Commands address entries by name; the first one with a given name wins.
        if name in seen:
            logger.warning("Prescription #%s lists '%s' more than once; keeping the first", prescription.id, name)
            continue
        seen.add(name)
        records.append(prescribed_entry_to_record(prescription, entry, snapshot))
    return records


def ordered_records(snapshot: SourceSnapshot) -> list[OrderedTest]:
    return [order_to_record(order, snapshot) for order in snapshot.orders]


def prescribed_records(snapshot: SourceSnapshot) -> list[PrescribedTest]:
    records: list[PrescribedTest] = []
    for prescription in snapshot.prescriptions:
        records.extend(prescription_to_records(prescription, snapshot))
    return records


def merge_records(ordered: list, prescribed: list) -> list:
    """Newest first; ties keep ordered tests ahead of prescribed ones."""
    merged = list(ordered) + list(prescribed)
    merged.sort(key=lambda record: record.created_at or datetime.min, reverse=True)
    return merged


def aggregate(snapshot: SourceSnapshot) -> list:
    return merge_records(ordered_records(snapshot), prescribed_records(snapshot))
