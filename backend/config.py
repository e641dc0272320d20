import os
from decimal import Decimal
from pathlib import Path

DB_FILE = Path(os.getenv("LABFLOW_DB_FILE", str(Path(__file__).resolve().parent / "labflow.db")))

AUTH_SECRET = os.getenv("LABFLOW_AUTH_SECRET", "labflow-dev-secret-change-me")
TOKEN_TTL_SECONDS = int(os.getenv("LABFLOW_TOKEN_TTL_SECONDS", str(12 * 60 * 60)))

# Fractions of the total amount that must be paid before a step is allowed.
PROCESSING_THRESHOLD = Decimal(os.getenv("LABFLOW_PROCESSING_THRESHOLD", "0.5"))
RELEASE_THRESHOLD = Decimal(os.getenv("LABFLOW_RELEASE_THRESHOLD", "1.0"))

REFRESH_INTERVAL_SECONDS = int(os.getenv("LABFLOW_REFRESH_INTERVAL_SECONDS", "30"))
STALENESS_TOLERANCE_SECONDS = int(os.getenv("LABFLOW_STALENESS_TOLERANCE_SECONDS", "60"))

MAX_COMMAND_RETRIES = int(os.getenv("LABFLOW_MAX_COMMAND_RETRIES", "3"))
CURRENCY_SYMBOL = os.getenv("LABFLOW_CURRENCY_SYMBOL", "৳")

ENABLE_DEMO_RESET = os.getenv("LABFLOW_ENABLE_DEMO_RESET", "0") == "1"
