import json
import os
from datetime import datetime, timedelta
from decimal import Decimal

from sqlmodel import Session, select

from database import engine, create_db
from models import (
    Appointment,
    Doctor,
    LabOrder,
    Patient,
    Prescription,
    TestStatus,
    User,
    UserRole,
)
from services.auth import hash_password


DEMO_USERS = [
    {
        "name": "Admin Sahana",
        "email": "admin@labflow.local",
        "password": "admin123",
        "role": UserRole.ADMIN,
    },
    {
        "name": "Lab Tech Meera",
        "email": "lab@labflow.local",
        "password": "lab123",
        "role": UserRole.LAB_TECH,
    },
    {
        "name": "Dr. Priya",
        "email": "doctor@labflow.local",
        "password": "doctor123",
        "role": UserRole.DOCTOR,
    },
]

DEMO_PATIENTS = [
    {"name": "Aarav Mehta", "email": "aarav@example.com", "password": "patient123"},
    {"name": "Nisha Verma", "email": "nisha@example.com", "password": "patient123"},
]

DEMO_DOCTORS = [
    {"name": "Dr. Priya Rahman", "department": "Medicine"},
]

DEMO_ORDER_TESTS = [
    {"name": "Complete Blood Count", "price": "400.00"},
    {"name": "Lipid Profile", "price": "600.00"},
]

DEMO_PRESCRIBED_TESTS = [
    {"name": "Diabetes Panel (HbA1c + Glucose)", "price": "1200.00"},
    {"name": "Thyroid-Stimulating Hormone", "price": "800.00"},
]


def run_seed(seed_lab_tests: bool = False):
    create_db()

    with Session(engine) as session:
        existing_user = session.exec(select(User)).first()
        existing_patient = session.exec(select(Patient)).first()
        if existing_user or existing_patient:
            print("Database already seeded. Skipping.")
            return

        for spec in DEMO_USERS:
            user = User(
                name=spec["name"],
                email=spec["email"],
                password_hash=hash_password(spec["password"]),
                role=spec["role"],
            )
            session.add(user)
            session.commit()
            session.refresh(user)
            print(f"Created user: {user.email} ({user.role.value})")

        patients: list[Patient] = []
        for spec in DEMO_PATIENTS:
            patient = Patient(name=spec["name"], email=spec["email"])
            session.add(patient)
            session.commit()
            session.refresh(patient)
            patients.append(patient)
            session.add(
                User(
                    name=spec["name"],
                    email=spec["email"],
                    password_hash=hash_password(spec["password"]),
                    role=UserRole.PATIENT,
                    patient_id=patient.id,
                )
            )
            session.commit()
            print(f"Created patient: {patient.name} (id={patient.id})")

        doctors: list[Doctor] = []
        for spec in DEMO_DOCTORS:
            doctor = Doctor(name=spec["name"], department=spec["department"])
            session.add(doctor)
            session.commit()
            session.refresh(doctor)
            doctors.append(doctor)

        if seed_lab_tests:
            total = sum(Decimal(t["price"]) for t in DEMO_ORDER_TESTS)
            order = LabOrder(
                order_number=f"LAB-{datetime.utcnow():%Y%m%d}-0001",
                patient_id=patients[0].id,
                tests_json=json.dumps(DEMO_ORDER_TESTS),
                total_amount=total,
                paid_amount=Decimal("0"),
                due_amount=total,
                status=TestStatus.ORDERED.value,
            )
            session.add(order)

            appointment = Appointment(
                patient_id=patients[1].id,
                doctor_id=doctors[0].id,
                appointment_date=datetime.utcnow() - timedelta(days=1),
            )
            session.add(appointment)
            session.commit()
            session.refresh(appointment)

            now = datetime.utcnow().isoformat()
            prescription = Prescription(
                appointment_id=appointment.id,
                tests_json=json.dumps(
                    [
                        {**test, "status": TestStatus.ORDERED.value, "payments": [], "testReports": [], "createdAt": now}
                        for test in DEMO_PRESCRIBED_TESTS
                    ]
                ),
            )
            session.add(prescription)
            session.commit()
            print(f"  Created lab order {order.order_number} and prescription with {len(DEMO_PRESCRIBED_TESTS)} tests")
        else:
            print("No demo lab tests seeded (clean slate).")

        print("Demo credentials:")
        for spec in DEMO_USERS + DEMO_PATIENTS:
            print(f"  {spec['email']} / {spec['password']}")
        print("Seed complete.")


if __name__ == "__main__":
    run_seed(seed_lab_tests=os.getenv("LABFLOW_SEED_LAB_TESTS", "0") == "1")
