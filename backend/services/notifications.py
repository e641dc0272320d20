from __future__ import annotations

from datetime import datetime

from ws import manager


def _payload(event: str, record) -> dict:
    return {
        "event": event,
        "test_id": record.id,
        "provenance": record.provenance.value,
        "patient_id": record.patient_id,
        "status": record.status,
        "payment_status": record.payment_status,
        "timestamp": datetime.utcnow().isoformat(),
    }


async def notify_board(record, event: str = "lab_test_updated"):
    await manager.broadcast_board(_payload(event, record))


async def notify_reports_confirmed(record):
    """Tell the patient their results are released. Sent once per confirmation."""
    if record.patient_id is None:
        return
    payload = _payload("reports_confirmed", record)
    payload["test_name"] = record.test_name
    payload["reports_available"] = record.reports_available
    await manager.broadcast_patient(record.patient_id, payload)
