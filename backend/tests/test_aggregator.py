import json
from datetime import datetime
from decimal import Decimal

from models import Appointment, Doctor, LabOrder, LabPayment, Patient, PaymentMethod, Prescription, Provenance
from services.aggregator import (
    SELF_ORDERED_LABEL,
    SourceSnapshot,
    aggregate,
    parse_legacy_result_url,
    prescription_to_records,
)
from services.identifiers import parse_test_id


def _snapshot() -> SourceSnapshot:
    patient = Patient(id=1, name="John Carter", email="john.carter@example.com")
    doctor = Doctor(id=3, name="Dr. Farhana Islam", department="Endocrinology")
    appointment = Appointment(id=5, patient_id=1, doctor_id=3, appointment_date=datetime(2025, 1, 9, 10, 0))
    return SourceSnapshot(
        patients={1: patient},
        doctors={3: doctor},
        appointments={5: appointment},
    )


def _order(order_id=1, appointment_id=None, created_at=datetime(2025, 1, 10, 9, 0), **kwargs) -> LabOrder:
    values = {
        "order_number": f"LAB-{order_id}",
        "patient_id": 1,
        "appointment_id": appointment_id,
        "tests_json": json.dumps([{"name": "Complete Blood Count", "price": "400"}, {"name": "Lipid Profile"}]),
        "total_amount": Decimal("1000.00"),
        "paid_amount": Decimal("400.00"),
        "due_amount": Decimal("600.00"),
        "status": "approved",
        "created_at": created_at,
    }
    values.update(kwargs)
    return LabOrder(id=order_id, **values)


def _prescription(prescription_id=7, tests=None, created_at=datetime(2025, 1, 9, 11, 0)) -> Prescription:
    return Prescription(
        id=prescription_id,
        appointment_id=5,
        tests_json=json.dumps(tests or []),
        created_at=created_at,
    )


def test_order_without_appointment_is_self_ordered():
    snapshot = _snapshot()
    snapshot.orders = [_order()]

    [record] = aggregate(snapshot)

    assert record.provenance == Provenance.ORDERED
    assert record.id == "order-1"
    assert record.doctor_name == SELF_ORDERED_LABEL
    assert record.test_name == "Complete Blood Count, Lipid Profile"
    assert record.patient_name == "John Carter"
    assert record.paid_amount == Decimal("400.00")
    assert record.due_amount == Decimal("600.00")
    assert record.payment_status == "partially_paid"


def test_order_with_appointment_takes_doctor_name():
    snapshot = _snapshot()
    snapshot.orders = [_order(appointment_id=5)]

    [record] = aggregate(snapshot)

    assert record.doctor_name == "Dr. Farhana Islam"
    assert record.appointment_date == datetime(2025, 1, 9, 10, 0)


def test_order_payments_are_attached():
    snapshot = _snapshot()
    snapshot.orders = [_order()]
    snapshot.order_payments = {
        1: [LabPayment(id=1, lab_order_id=1, amount=Decimal("400.00"), method=PaymentMethod.BKASH, transaction_id="TX1")]
    }

    [record] = aggregate(snapshot)

    assert [(p.amount, p.method) for p in record.payments] == [(Decimal("400.00"), "bkash")]


def test_prescribed_entries_become_one_record_per_test():
    snapshot = _snapshot()
    snapshot.prescriptions = [
        _prescription(
            tests=[
                {"name": "Diabetes Panel (HbA1c + Glucose)", "price": "1200", "status": "approved",
                 "payments": [{"amount": "600", "method": "cash"}]},
                "Thyroid-Stimulating Hormone",
            ]
        )
    ]

    records = aggregate(snapshot)

    assert [r.test_name for r in records] == ["Diabetes Panel (HbA1c + Glucose)", "Thyroid-Stimulating Hormone"]
    diabetes, thyroid = records
    assert diabetes.provenance == Provenance.PRESCRIBED
    assert diabetes.order_number == "PRES-7"
    assert diabetes.doctor_name == "Dr. Farhana Islam"
    assert diabetes.patient_id == 1
    assert diabetes.paid_amount == Decimal("600.00")
    assert diabetes.due_amount == Decimal("600.00")

    ref = parse_test_id(diabetes.id)
    assert (ref.prescription_id, ref.test_name) == (7, "Diabetes Panel (HbA1c + Glucose)")

    assert thyroid.status == "ordered"
    assert thyroid.total_amount == Decimal("0.00")


def test_prescribed_status_defaults_from_reports():
    snapshot = _snapshot()
    entry = {"name": "Lipid Profile", "price": "500", "testReports": [{"filename": "lp.pdf", "path": "/u/lp.pdf"}]}
    [record] = prescription_to_records(_prescription(tests=[entry]), snapshot)
    assert record.status == "reported"
    assert record.test_reports[0].filename == "lp.pdf"


def test_duplicate_names_keep_the_first_entry():
    snapshot = _snapshot()
    prescription = _prescription(
        tests=[{"name": "CBC", "price": "300"}, {"name": "CBC", "price": "900"}]
    )
    [record] = prescription_to_records(prescription, snapshot)
    assert record.total_amount == Decimal("300.00")


def test_legacy_result_url_single_path_and_json_array():
    [single] = parse_legacy_result_url("/uploads/lab-results/cbc.pdf")
    assert single.filename == "cbc.pdf"
    assert single.path == "/uploads/lab-results/cbc.pdf"

    files = parse_legacy_result_url(
        json.dumps([
            {"filename": "a.pdf", "originalName": "A.pdf", "path": "/uploads/a.pdf"},
            {"filename": "b.pdf", "path": "/uploads/b.pdf"},
        ])
    )
    assert [(f.filename, f.original_name) for f in files] == [("a.pdf", "A.pdf"), ("b.pdf", "b.pdf")]

    assert parse_legacy_result_url(None) == []
    assert parse_legacy_result_url("   ") == []


def test_order_reports_fall_back_to_result_url():
    snapshot = _snapshot()
    snapshot.orders = [_order(status="reported", result_url="/uploads/old.pdf")]
    [record] = aggregate(snapshot)
    assert [r.path for r in record.test_reports] == ["/uploads/old.pdf"]


def test_merge_orders_newest_first():
    snapshot = _snapshot()
    snapshot.orders = [
        _order(order_id=1, created_at=datetime(2025, 1, 1)),
        _order(order_id=2, created_at=datetime(2025, 1, 20)),
    ]
    snapshot.prescriptions = [
        _prescription(tests=[{"name": "CBC", "price": "300", "createdAt": "2025-01-10T08:00:00"}]),
    ]

    assert [r.id for r in aggregate(snapshot)] == ["order-2", "prescription-7-CBC", "order-1"]


def test_reports_available_needs_confirmation_and_full_payment():
    snapshot = _snapshot()
    reports = json.dumps([{"filename": "cbc.pdf", "path": "/u/cbc.pdf"}])
    snapshot.orders = [
        _order(order_id=1, status="confirmed", test_reports_json=reports, paid_amount=Decimal("1000.00")),
        _order(order_id=2, status="confirmed", test_reports_json=reports, paid_amount=Decimal("999.99")),
        _order(order_id=3, status="reported", test_reports_json=reports, paid_amount=Decimal("1000.00")),
    ]

    available = {r.id: r.reports_available for r in aggregate(snapshot)}

    assert available == {"order-1": True, "order-2": False, "order-3": False}


def test_aggregate_does_not_mutate_inputs():
    snapshot = _snapshot()
    order = _order()
    prescription = _prescription(tests=["CBC", {"name": "Lipid Profile", "price": "500"}])
    snapshot.orders = [order]
    snapshot.prescriptions = [prescription]
    before = (order.tests_json, order.paid_amount, prescription.tests_json)

    first = aggregate(snapshot)
    second = aggregate(snapshot)

    assert (order.tests_json, order.paid_amount, prescription.tests_json) == before
    assert [r.model_dump() for r in first] == [r.model_dump() for r in second]
