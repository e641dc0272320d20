import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field


class UserRole(str, Enum):
    ADMIN = "admin"
    LAB_TECH = "lab_tech"
    DOCTOR = "doctor"
    PATIENT = "patient"


class TestStatus(str, Enum):
    ORDERED = "ordered"
    APPROVED = "approved"
    SAMPLE_PROCESSING = "sample_processing"
    SAMPLE_TAKEN = "sample_taken"
    REPORTED = "reported"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    NOT_PAID = "not_paid"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"


class PaymentMethod(str, Enum):
    CASH = "cash"
    ONLINE = "online"
    BKASH = "bkash"
    CARD = "card"


class Provenance(str, Enum):
    ORDERED = "ordered"
    PRESCRIBED = "prescribed"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(unique=True, index=True)
    password_hash: str
    role: UserRole
    patient_id: Optional[int] = Field(default=None, foreign_key="patient.id")
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Patient(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = ""
    phone: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Doctor(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    department: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Appointment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="patient.id")
    doctor_id: Optional[int] = Field(default=None, foreign_key="doctor.id")
    appointment_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class LabOrder(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    order_number: str = Field(index=True)
    patient_id: int = Field(foreign_key="patient.id")
    appointment_id: Optional[int] = Field(default=None, foreign_key="appointment.id")
    tests_json: str = Field(default="[]")
    total_amount: Decimal = Field(default=Decimal("0"), max_digits=10, decimal_places=2)
    paid_amount: Decimal = Field(default=Decimal("0"), max_digits=10, decimal_places=2)
    due_amount: Decimal = Field(default=Decimal("0"), max_digits=10, decimal_places=2)
    status: str = Field(default="ordered", index=True)
    sample_id: Optional[str] = Field(default=None, index=True)
    test_reports_json: str = Field(default="[]")
    # Older rows keep a single path or a JSON array of file descriptors here.
    result_url: Optional[str] = None
    version: int = 1
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = Field(default_factory=datetime.utcnow)

    @property
    def tests(self) -> list[dict]:
        return json.loads(self.tests_json or "[]")

    @tests.setter
    def tests(self, val: list[dict]):
        self.tests_json = json.dumps(val)

    @property
    def test_reports(self) -> list[dict]:
        return json.loads(self.test_reports_json or "[]")

    @test_reports.setter
    def test_reports(self, val: list[dict]):
        self.test_reports_json = json.dumps(val)


class LabPayment(SQLModel, table=True):
    """Append-only; corrections are recorded as new rows."""

    id: Optional[int] = Field(default=None, primary_key=True)
    lab_order_id: int = Field(foreign_key="laborder.id", index=True)
    amount: Decimal = Field(max_digits=10, decimal_places=2)
    method: PaymentMethod
    status: str = "completed"
    transaction_id: Optional[str] = None
    notes: str = ""
    processed_by: Optional[int] = Field(default=None, foreign_key="user.id")
    paid_at: datetime = Field(default_factory=datetime.utcnow)


class Prescription(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    appointment_id: int = Field(foreign_key="appointment.id")
    # One entry per prescribed test: name, price, status, sampleId,
    # payments[], paidAmount (legacy), testReports[], createdAt, updatedAt.
    tests_json: str = Field(default="[]")
    version: int = 1
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = Field(default_factory=datetime.utcnow)

    @property
    def tests(self) -> list[dict]:
        return json.loads(self.tests_json or "[]")

    @tests.setter
    def tests(self, val: list[dict]):
        self.tests_json = json.dumps(val)
