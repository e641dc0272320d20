from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

from models import Provenance
from services.identifiers import OrderRef, PrescribedRef

Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class ReportFile(BaseModel):
    """Uploaded result document. Persisted with camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    filename: str = Field(min_length=1, max_length=255)
    original_name: str = Field(default="", max_length=255, alias="originalName")
    path: str = Field(min_length=1, max_length=1024)
    uploaded_at: Optional[datetime] = Field(default=None, alias="uploadedAt")

    def stored(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class PaymentView(BaseModel):
    amount: Money
    method: str
    status: str = "completed"
    transaction_id: Optional[str] = None
    notes: str = ""
    paid_at: Optional[datetime] = None


class TestRecordBase(BaseModel):
    id: str
    order_number: str
    test_name: str
    status: str
    payment_status: str
    total_amount: Money
    paid_amount: Money
    due_amount: Money
    # Running total as stored upstream; the ledger decides how it is used.
    stored_paid_amount: Optional[Decimal] = Field(default=None, exclude=True)
    sample_id: Optional[str] = None
    test_reports: list[ReportFile] = Field(default_factory=list)
    payments: list[PaymentView] = Field(default_factory=list)
    reports_available: bool = False
    patient_id: Optional[int] = None
    patient_name: str = ""
    patient_email: str = ""
    doctor_name: str = ""
    appointment_id: Optional[int] = None
    appointment_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1


class OrderedTest(TestRecordBase):
    provenance: Literal[Provenance.ORDERED] = Provenance.ORDERED
    order_id: int

    @property
    def ref(self) -> OrderRef:
        return OrderRef(order_id=self.order_id)


class PrescribedTest(TestRecordBase):
    provenance: Literal[Provenance.PRESCRIBED] = Provenance.PRESCRIBED
    prescription_id: int

    @property
    def ref(self) -> PrescribedRef:
        return PrescribedRef(prescription_id=self.prescription_id, test_name=self.test_name)


TestRecord = Annotated[Union[OrderedTest, PrescribedTest], Field(discriminator="provenance")]
