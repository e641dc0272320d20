from datetime import datetime
from decimal import Decimal

from services.records import OrderedTest, PaymentView, PrescribedTest, ReportFile


def ordered_record(
    *,
    order_id: int = 1,
    total: str = "1000.00",
    paid: str = "0.00",
    status: str = "ordered",
    reports: int = 0,
    patient_name: str = "John Carter",
    patient_email: str = "",
    doctor_name: str = "Self-Ordered",
    test_name: str = "Complete Blood Count",
    created_at: datetime | None = None,
    appointment_date: datetime | None = None,
) -> OrderedTest:
    return OrderedTest(
        id=f"order-{order_id}",
        order_id=order_id,
        order_number=f"LAB-{order_id}",
        test_name=test_name,
        status=status,
        payment_status="",
        total_amount=Decimal(total),
        paid_amount=Decimal("0"),
        due_amount=Decimal("0"),
        stored_paid_amount=Decimal(paid),
        test_reports=[
            ReportFile(filename=f"r{i}.pdf", path=f"/uploads/r{i}.pdf") for i in range(reports)
        ],
        patient_name=patient_name,
        patient_email=patient_email,
        doctor_name=doctor_name,
        created_at=created_at or datetime(2025, 1, 10, 9, 0),
        appointment_date=appointment_date,
    )


def prescribed_record(
    *,
    prescription_id: int = 7,
    test_name: str = "Diabetes Panel (HbA1c + Glucose)",
    total: str = "1200.00",
    payments: list[str] | None = None,
    stored_paid: str | None = None,
    status: str = "ordered",
    patient_name: str = "John Carter",
    doctor_name: str = "Dr. Farhana Islam",
    created_at: datetime | None = None,
    appointment_date: datetime | None = None,
) -> PrescribedTest:
    return PrescribedTest(
        id=f"prescription-{prescription_id}-x",
        prescription_id=prescription_id,
        order_number=f"PRES-{prescription_id}",
        test_name=test_name,
        status=status,
        payment_status="",
        total_amount=Decimal(total),
        paid_amount=Decimal("0"),
        due_amount=Decimal("0"),
        stored_paid_amount=Decimal(stored_paid) if stored_paid is not None else None,
        payments=[PaymentView(amount=Decimal(amount), method="cash") for amount in payments or []],
        patient_name=patient_name,
        doctor_name=doctor_name,
        created_at=created_at or datetime(2025, 1, 10, 9, 0),
        appointment_date=appointment_date,
    )
