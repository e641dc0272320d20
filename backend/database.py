import logging

from sqlalchemy import inspect
from sqlmodel import SQLModel, Session, create_engine

from config import DB_FILE

DATABASE_URL = f"sqlite:///{DB_FILE}"

engine = create_engine(DATABASE_URL, echo=False)
logger = logging.getLogger("labflow")


REQUIRED_COLUMNS = {
    "user": {"id", "name", "email", "password_hash", "role", "patient_id", "is_active", "created_at"},
    "patient": {"id", "name", "email", "created_at"},
    "laborder": {
        "id",
        "order_number",
        "patient_id",
        "appointment_id",
        "tests_json",
        "total_amount",
        "paid_amount",
        "due_amount",
        "status",
        "sample_id",
        "test_reports_json",
        "result_url",
        "version",
        "created_at",
    },
    "labpayment": {"id", "lab_order_id", "amount", "method", "status", "transaction_id", "paid_at"},
    "prescription": {"id", "appointment_id", "tests_json", "version", "created_at"},
}


def _schema_needs_rebuild() -> bool:
    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())

    for table_name, required_cols in REQUIRED_COLUMNS.items():
        if table_name not in existing_tables:
            continue
        existing_cols = {col["name"] for col in inspector.get_columns(table_name)}
        if not required_cols.issubset(existing_cols):
            return True

    return False


def create_db():
    if _schema_needs_rebuild():
        logger.warning("[DB] Schema mismatch detected. Rebuilding local SQLite schema.")
        SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session
