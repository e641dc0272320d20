import pytest

from services import confirmation
from tests.conftest import create_order, create_prescription, report_file, url_id

DIABETES_PANEL = "Diabetes Panel (HbA1c + Glucose)"


@pytest.fixture
def confirmed_notifications(monkeypatch):
    sent = []

    async def _record(record):
        sent.append(record.id)

    monkeypatch.setattr(confirmation, "notify_reports_confirmed", _record)
    return sent


def _reported_prescription(client, headers, patient_id, paid="1200"):
    create_prescription(
        patient_id,
        [
            {
                "name": DIABETES_PANEL,
                "price": "1200",
                "status": "reported",
                "paidAmount": paid,
                "sampleId": "SMP-20250110-0001",
                "testReports": [report_file("hba1c.pdf"), report_file("glucose.pdf")],
            }
        ],
    )
    listing = client.get("/lab-tests", params={"provenance": "prescribed"}, headers=headers).json()
    return listing[0]["id"]


def test_confirm_prescribed_test_routes_by_identifier(client, lab_headers, patient, confirmed_notifications):
    test_id = _reported_prescription(client, lab_headers, patient.id)

    response = client.post(f"/lab-tests/{url_id(test_id)}/confirm", headers=lab_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["id"] == test_id
    assert data["test_name"] == DIABETES_PANEL
    assert data["status"] == "confirmed"
    assert data["reports_available"] is True
    assert confirmed_notifications == [test_id]


def test_confirm_twice_is_a_noop(client, lab_headers, patient, confirmed_notifications):
    order_id = create_order(patient.id, status="reported", paid="1000.00", reports=[report_file()])
    url = f"/lab-tests/order-{order_id}/confirm"

    first = client.post(url, headers=lab_headers)
    second = client.post(url, headers=lab_headers)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["status"] == "confirmed"
    assert second.json()["version"] == first.json()["version"]
    assert confirmed_notifications == [f"order-{order_id}"]


def test_confirm_through_status_endpoint(client, lab_headers, patient, confirmed_notifications):
    order_id = create_order(patient.id, status="reported", reports=[report_file()])

    response = client.post(f"/lab-tests/order-{order_id}/status", json={"status": "confirmed"}, headers=lab_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "confirmed"
    # Not fully paid: confirmed but not yet visible to the patient.
    assert response.json()["reports_available"] is False
    assert confirmed_notifications == [f"order-{order_id}"]


def test_confirm_requires_reported_state(client, lab_headers, patient, confirmed_notifications):
    order_id = create_order(patient.id, status="sample_taken", paid="1000.00")

    response = client.post(f"/lab-tests/order-{order_id}/confirm", headers=lab_headers)

    assert response.status_code == 409
    assert response.json()["details"]["current_status"] == "sample_taken"
    assert confirmed_notifications == []


def test_confirm_requires_report_files(client, lab_headers, patient):
    order_id = create_order(patient.id, status="reported", paid="1000.00")
    response = client.post(f"/lab-tests/order-{order_id}/confirm", headers=lab_headers)
    assert response.status_code == 409
    assert "report file" in response.json()["message"]


def test_revert_keeps_reports(client, lab_headers, patient, confirmed_notifications):
    test_id = _reported_prescription(client, lab_headers, patient.id)
    url = f"/lab-tests/{url_id(test_id)}"
    before = client.get(url, headers=lab_headers).json()

    client.post(f"{url}/confirm", headers=lab_headers)
    reverted = client.post(f"{url}/revert", headers=lab_headers)

    assert reverted.status_code == 200
    after = reverted.json()
    assert after["status"] == "reported"
    assert after["test_reports"] == before["test_reports"]
    assert after["sample_id"] == before["sample_id"]


def test_revert_through_status_endpoint(client, lab_headers, patient):
    order_id = create_order(patient.id, status="confirmed", paid="1000.00", reports=[report_file()])

    response = client.post(f"/lab-tests/order-{order_id}/status", json={"status": "reported"}, headers=lab_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "reported"
    assert len(response.json()["test_reports"]) == 1


def test_revert_requires_confirmed(client, lab_headers, patient):
    order_id = create_order(patient.id, status="reported", reports=[report_file()])
    response = client.post(f"/lab-tests/order-{order_id}/revert", headers=lab_headers)
    assert response.status_code == 409
    assert "confirmed" in response.json()["message"]


def test_confirmed_cannot_be_cancelled(client, admin_headers, patient):
    order_id = create_order(patient.id, status="confirmed", reports=[report_file()])
    response = client.post(f"/lab-tests/order-{order_id}/status", json={"status": "cancelled"}, headers=admin_headers)
    assert response.status_code == 409


def test_confirm_and_revert_unknown_ids(client, lab_headers):
    for action in ["confirm", "revert"]:
        assert client.post(f"/lab-tests/order-404/{action}", headers=lab_headers).status_code == 404
        assert client.post(f"/lab-tests/prescription-404-CBC/{action}", headers=lab_headers).status_code == 404


def test_confirm_invalidates_cached_views(client, lab_headers, patient):
    order_id = create_order(patient.id, status="reported", paid="1000.00", reports=[report_file()])
    board = client.get("/lab-tests/board", headers=lab_headers).json()
    assert board["counts"]["readyForResults"] == 1

    client.post(f"/lab-tests/order-{order_id}/confirm", headers=lab_headers)

    board = client.get("/lab-tests/board", headers=lab_headers).json()
    assert board["counts"]["readyForResults"] == 0
    assert board["counts"]["completed"] == 1


@pytest.mark.anyio
async def test_async_client_confirm_notifies_once(async_client, lab_headers, patient, confirmed_notifications):
    order_id = create_order(patient.id, status="reported", paid="1000.00", reports=[report_file()])
    url = f"/lab-tests/order-{order_id}/confirm"

    first = await async_client.post(url, headers=lab_headers)
    second = await async_client.post(url, headers=lab_headers)

    assert (first.status_code, second.status_code) == (200, 200)
    assert second.json() == first.json()
    assert confirmed_notifications == [f"order-{order_id}"]
