from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from urllib.parse import quote

import pytest
import httpx
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from database import get_session
from main import app
from models import Appointment, Doctor, LabOrder, LabPayment, Patient, PaymentMethod, Prescription, User, UserRole
from services.auth import hash_password
from services.cache import view_cache

TEST_ENGINE = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


def _override_get_session():
    with Session(TEST_ENGINE) as session:
        yield session


@pytest.fixture(autouse=True)
def reset_db():
    SQLModel.metadata.drop_all(TEST_ENGINE)
    SQLModel.metadata.create_all(TEST_ENGINE)
    view_cache.clear()


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def client():
    app.dependency_overrides[get_session] = _override_get_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client():
    app.dependency_overrides[get_session] = _override_get_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def session():
    with Session(TEST_ENGINE) as db_session:
        yield db_session


@pytest.fixture
def patient():
    with Session(TEST_ENGINE) as db_session:
        row = Patient(name="John Carter", email="john.carter@example.com")
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row


@pytest.fixture
def doctor():
    with Session(TEST_ENGINE) as db_session:
        row = Doctor(name="Dr. Farhana Islam", department="Endocrinology")
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row


@pytest.fixture
def seeded_users(patient):
    users = {
        "admin": {
            "name": "Admin",
            "email": "admin@labflow.local",
            "password": "admin123",
            "role": UserRole.ADMIN,
        },
        "lab_tech": {
            "name": "Lab Tech",
            "email": "lab@labflow.local",
            "password": "lab123",
            "role": UserRole.LAB_TECH,
        },
        "doctor": {
            "name": "Doctor",
            "email": "doctor@labflow.local",
            "password": "doctor123",
            "role": UserRole.DOCTOR,
        },
        "patient": {
            "name": "John Carter",
            "email": "john.carter@example.com",
            "password": "patient123",
            "role": UserRole.PATIENT,
            "patient_id": patient.id,
        },
    }

    with Session(TEST_ENGINE) as db_session:
        for spec in users.values():
            user = User(
                name=spec["name"],
                email=spec["email"],
                password_hash=hash_password(spec["password"]),
                role=spec["role"],
                patient_id=spec.get("patient_id"),
            )
            db_session.add(user)
        db_session.commit()

    return users


def _login(client: TestClient, email: str, password: str) -> dict[str, str]:
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    token = response.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["admin"]["email"], seeded_users["admin"]["password"])


@pytest.fixture
def lab_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["lab_tech"]["email"], seeded_users["lab_tech"]["password"])


@pytest.fixture
def doctor_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["doctor"]["email"], seeded_users["doctor"]["password"])


@pytest.fixture
def patient_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["patient"]["email"], seeded_users["patient"]["password"])


def url_id(test_id: str) -> str:
    """Encode a lab test id as a single URL path segment."""
    return quote(test_id, safe="")


def create_order(
    patient_id: int,
    *,
    total: str = "1000.00",
    paid: str = "0.00",
    status: str = "ordered",
    tests: list | None = None,
    reports: list | None = None,
    result_url: str | None = None,
    appointment_id: int | None = None,
    payments: list[str] | None = None,
    created_at: datetime | None = None,
) -> int:
    with Session(TEST_ENGINE) as db_session:
        total_amount = Decimal(total)
        paid_amount = Decimal(paid)
        order = LabOrder(
            order_number="LAB-TEST-0001",
            patient_id=patient_id,
            appointment_id=appointment_id,
            tests_json=json.dumps(tests or [{"name": "Complete Blood Count", "price": total}]),
            total_amount=total_amount,
            paid_amount=paid_amount,
            due_amount=max(Decimal("0"), total_amount - paid_amount),
            status=status,
            test_reports_json=json.dumps(reports or []),
            result_url=result_url,
            created_at=created_at or datetime.utcnow(),
        )
        db_session.add(order)
        db_session.commit()
        db_session.refresh(order)
        for amount in payments or []:
            db_session.add(
                LabPayment(
                    lab_order_id=order.id,
                    amount=Decimal(amount),
                    method=PaymentMethod.CASH,
                    transaction_id="CASH-SEED",
                )
            )
        db_session.commit()
        return order.id


def create_prescription(
    patient_id: int,
    tests: list,
    *,
    doctor_id: int | None = None,
    appointment_date: datetime | None = None,
) -> int:
    with Session(TEST_ENGINE) as db_session:
        appointment = Appointment(
            patient_id=patient_id,
            doctor_id=doctor_id,
            appointment_date=appointment_date or datetime.utcnow(),
        )
        db_session.add(appointment)
        db_session.commit()
        db_session.refresh(appointment)
        prescription = Prescription(appointment_id=appointment.id, tests_json=json.dumps(tests))
        db_session.add(prescription)
        db_session.commit()
        db_session.refresh(prescription)
        return prescription.id


def report_file(name: str = "cbc.pdf") -> dict:
    return {"filename": name, "original_name": name, "path": f"/uploads/lab-results/{name}"}
