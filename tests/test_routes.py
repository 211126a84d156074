"""API tests for the booking, slot and escrow routes."""

import pytest

from carebook.domain.escrow import EscrowLedger


def book(client, start: str = "10:00", end: str = "10:30", patient_id: str = "patient_1", **extra):
    payload = {
        "patientId": patient_id,
        "doctorId": "doctor_1",
        "slot": {"slotDate": "2030-01-15", "startTime": start, "endTime": end},
        "consultationFee": 1000,
    }
    payload.update(extra)
    return client.post("/appointments", json=payload)


def operator_headers(token: str = "operator-test-token") -> dict:
    return {"Authorization": f"Bearer {token}"}


def hold_payment(session_factory, txn_id: str) -> None:
    session = session_factory()
    try:
        EscrowLedger(session).confirm_hold(txn_id, gateway_payment_id="pay_1")
    finally:
        session.close()


def finish(client, appointment_id: str) -> None:
    """Accept, schedule and complete as the booked doctor."""
    client.post(f"/appointments/{appointment_id}/respond", json={"decision": "accept"})
    client.post(f"/appointments/{appointment_id}/schedule")
    response = client.post(f"/appointments/{appointment_id}/complete")
    assert response.json()["status"] == "COMPLETED"


@pytest.fixture
def paid_booking(client, session_factory) -> dict:
    """A booking made through the API whose payment was captured."""
    booking = book(client).json()
    hold_payment(session_factory, booking["escrowTxnId"])
    return booking


@pytest.fixture
def disputed_txn(client, session_factory) -> str:
    """Escrow id of a paid booking the patient disputes via the API."""
    booking = book(client).json()
    hold_payment(session_factory, booking["escrowTxnId"])
    response = client.post(
        f"/appointments/{booking['appointmentId']}/dispute",
        json={"reason": "Doctor never joined the call", "patientId": "patient_1"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "DISPUTED"
    return booking["escrowTxnId"]


class TestBookingRoutes:
    """Tests for /appointments."""

    def test_create_booking(self, client) -> None:
        response = book(client)
        assert response.status_code == 201
        body = response.json()
        assert body["amount"] == 1050
        assert body["fees"]["platformFee"] == 50
        assert body["appointmentId"].startswith("appt_")

    def test_same_slot_conflict(self, client) -> None:
        """Second booking of a held slot is a 409 with a stable code."""
        book(client)
        response = book(client, patient_id="patient_2")
        assert response.status_code == 409
        assert response.json()["code"] == "slot_unavailable"

    @pytest.mark.parametrize("override", [
        {"consultationFee": 0},
        {"consultationFee": -5},
        {"slot": {"slotDate": "2030-01-15", "startTime": "11:00", "endTime": "10:00"}},
        {"slot": {"slotDate": "2030-01-15", "startTime": "25:00", "endTime": "26:00"}},
    ])
    def test_invalid_booking_request(self, client, override) -> None:
        response = book(client, **override)
        assert response.status_code == 422

    def test_get_and_list(self, client) -> None:
        appointment_id = book(client).json()["appointmentId"]

        response = client.get(f"/appointments/{appointment_id}")
        assert response.status_code == 200
        assert response.json()["status"] == "REQUESTED"

        listed = client.get("/appointments", params={"patient_id": "patient_1"}).json()
        assert [a["id"] for a in listed] == [appointment_id]

    def test_unknown_appointment(self, client) -> None:
        response = client.get("/appointments/appt_missing")
        assert response.status_code == 404
        assert response.json()["code"] == "appointment_not_found"

    def test_doctor_flow(self, client) -> None:
        """Accept, schedule and complete through the API."""
        appointment_id = book(client).json()["appointmentId"]

        accepted = client.post(
            f"/appointments/{appointment_id}/respond",
            json={"decision": "accept", "doctorId": "doctor_1"},
        )
        assert accepted.status_code == 200
        assert accepted.json()["status"] == "ACCEPTED"

        again = client.post(f"/appointments/{appointment_id}/respond", json={"decision": "reject"})
        assert again.status_code == 409
        assert again.json()["code"] == "invalid_transition"

        assert client.post(f"/appointments/{appointment_id}/schedule").json()["status"] == "SCHEDULED"
        completed = client.post(
            f"/appointments/{appointment_id}/complete", json={"doctorId": "doctor_1"}
        )
        assert completed.json()["status"] == "COMPLETED"

        history = client.get(f"/appointments/{appointment_id}/history").json()
        assert [h["toStatus"] for h in history] == ["REQUESTED", "ACCEPTED", "SCHEDULED", "COMPLETED"]

    def test_wrong_doctor_forbidden(self, client) -> None:
        appointment_id = book(client).json()["appointmentId"]
        response = client.post(
            f"/appointments/{appointment_id}/respond",
            json={"decision": "ACCEPT", "doctorId": "doctor_2"},
        )
        assert response.status_code == 403

    def test_cancel_reopens_slot(self, client) -> None:
        appointment_id = book(client).json()["appointmentId"]
        response = client.post(f"/appointments/{appointment_id}/cancel", json={"reason": "sick"})
        assert response.json()["status"] == "CANCELLED"
        assert book(client, patient_id="patient_2").status_code == 201

    def test_patient_releases_after_completion(self, client, paid_booking) -> None:
        """The patient confirms the consultation and the doctor is paid at once."""
        appointment_id = paid_booking["appointmentId"]
        finish(client, appointment_id)

        response = client.post(
            f"/appointments/{appointment_id}/release", json={"patientId": "patient_1"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "RELEASED"
        assert response.json()["releasedBy"] == "patient"
        earnings = client.get("/escrow/doctors/doctor_1/earnings").json()
        assert earnings["totalReleased"] == 1000

    def test_patient_release_before_completion(self, client, paid_booking) -> None:
        response = client.post(
            f"/appointments/{paid_booking['appointmentId']}/release",
            json={"patientId": "patient_1"},
        )
        assert response.status_code == 409
        assert response.json()["code"] == "release_not_allowed"

    def test_other_patient_cannot_release(self, client, paid_booking) -> None:
        appointment_id = paid_booking["appointmentId"]
        finish(client, appointment_id)
        response = client.post(
            f"/appointments/{appointment_id}/release", json={"patientId": "patient_2"}
        )
        assert response.status_code == 403
        assert client.get(f"/escrow/{paid_booking['escrowTxnId']}").json()["status"] == "HELD"


class TestSlotRoutes:
    """Tests for /slots."""

    def test_publish_and_list(self, client) -> None:
        response = client.post(
            "/slots/availability",
            json={
                "doctorId": "doctor_1",
                "slotDate": "2030-01-15",
                "windows": [
                    {"startTime": "09:00", "endTime": "09:30"},
                    {"startTime": "09:30", "endTime": "10:00"},
                ],
            },
        )
        assert response.status_code == 201
        assert len(response.json()) == 2

        book(client, start="09:00", end="09:30")
        open_slots = client.get(
            "/slots", params={"doctor_id": "doctor_1", "date": "2030-01-15", "status": "OPEN"}
        ).json()
        assert [s["startTime"] for s in open_slots] == ["09:30"]

    def test_reset_period(self, client) -> None:
        client.post(
            "/slots/availability",
            json={
                "doctorId": "doctor_1",
                "slotDate": "2030-01-01",
                "windows": [{"startTime": "09:00", "endTime": "09:30"}],
            },
        )
        response = client.post(
            "/slots/reset", json={"doctorId": "doctor_1", "beforeDate": "2030-01-10"}
        )
        assert response.json() == {"doctorId": "doctor_1", "deleted": 1}


class TestEscrowRoutes:
    """Tests for /escrow, including operator-only actions."""

    def test_by_appointment(self, client) -> None:
        booking = book(client).json()
        response = client.get(f"/escrow/by-appointment/{booking['appointmentId']}")
        assert response.json()["id"] == booking["escrowTxnId"]
        assert response.json()["status"] == "INITIATED"

    def test_listing_requires_filter(self, client) -> None:
        assert client.get("/escrow").status_code == 400

    def test_resolve_requires_operator(self, client, disputed_txn) -> None:
        """No token is 401, a wrong token 403."""
        payload = {"resolution": "Refund approved", "refund": True}
        assert client.post(f"/escrow/{disputed_txn}/resolve", json=payload).status_code == 401
        wrong = client.post(
            f"/escrow/{disputed_txn}/resolve", json=payload, headers=operator_headers("nope")
        )
        assert wrong.status_code == 403
        assert client.get(f"/escrow/{disputed_txn}").json()["status"] == "DISPUTED"

    def test_operator_resolves_dispute(self, client, disputed_txn) -> None:
        disputes = client.get("/escrow/disputes", headers=operator_headers()).json()
        assert [t["id"] for t in disputes] == [disputed_txn]

        response = client.post(
            f"/escrow/{disputed_txn}/resolve",
            json={"resolution": "Consultation happened", "refund": False},
            headers=operator_headers(),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "RELEASED"
        assert response.json()["releasedBy"] == "operator"

        earnings = client.get("/escrow/doctors/doctor_1/earnings").json()
        assert earnings["totalReleased"] == 1000

    def test_disputed_funds_cannot_be_released(self, client, paid_booking) -> None:
        finish(client, paid_booking["appointmentId"])
        client.post(
            f"/appointments/{paid_booking['appointmentId']}/dispute",
            json={"reason": "Prescription never arrived"},
        )
        response = client.post(
            f"/escrow/{paid_booking['escrowTxnId']}/release", headers=operator_headers()
        )
        assert response.status_code == 409
        assert response.json()["code"] == "disputed_cannot_release"

    def test_operator_release_needs_completed_consultation(self, client, paid_booking) -> None:
        """Held funds of an unfinished appointment stay held."""
        txn_id = paid_booking["escrowTxnId"]
        client.post(
            f"/appointments/{paid_booking['appointmentId']}/respond",
            json={"decision": "accept"},
        )

        response = client.post(f"/escrow/{txn_id}/release", headers=operator_headers())

        assert response.status_code == 409
        assert response.json()["code"] == "release_not_allowed"
        assert client.get(f"/escrow/{txn_id}").json()["status"] == "HELD"

    def test_operator_release_after_completion(self, client, paid_booking) -> None:
        finish(client, paid_booking["appointmentId"])
        response = client.post(
            f"/escrow/{paid_booking['escrowTxnId']}/release",
            json={"idempotencyKey": "ops-1"},
            headers=operator_headers(),
        )
        assert response.status_code == 200
        assert response.json()["releasedBy"] == "operator"

    def test_release_requires_operator(self, client, paid_booking) -> None:
        response = client.post(f"/escrow/{paid_booking['escrowTxnId']}/release")
        assert response.status_code == 401

    def test_operator_endpoints_disabled_without_token(self, client, monkeypatch) -> None:
        from carebook import config

        monkeypatch.setattr(config, "OPERATOR_API_TOKEN", None)
        response = client.get("/escrow/disputes", headers=operator_headers())
        assert response.status_code == 503


def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "healthy"}
