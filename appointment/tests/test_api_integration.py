"""
API Integration Tests for the Appointment Booking Service

Tests the FastAPI endpoints with the dict-backed Redis mock and the seeded
scheduling database. The lifespan does not run: module globals are patched
by the ``client`` fixture in conftest.py.
"""

import pytest
from unittest.mock import patch

from .conftest import TUESDAY


# ============================================================================
# Service Endpoints
# ============================================================================

class TestServiceEndpoints:
    """Root, health and metrics endpoints"""

    @pytest.mark.asyncio
    async def test_root_endpoint(self, client):
        response = await client.get("/")
        assert response.status_code == 200

        data = response.json()
        assert data["service"] == "Hospital Appointment Booking Service"
        assert data["endpoints"]["no_show"] == "POST /api/v1/appointments/{appointment_id}/no-show"

    @pytest.mark.asyncio
    async def test_health_endpoint(self, client):
        response = await client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["redis_connected"] is True
        assert data["config_valid"] is True
        assert data["uptime_seconds"] >= 0

    @pytest.mark.asyncio
    async def test_health_degraded_without_redis(self, client):
        with patch('appointment.app.redis_client', None):
            data = (await client.get("/health")).json()

        assert data["status"] == "degraded"
        assert data["redis_connected"] is False

    @pytest.mark.asyncio
    async def test_metrics_after_a_turn(self, client):
        session_id = (await client.post("/api/v1/session/create")).json()["session_id"]
        await client.post(f"/api/v1/session/{session_id}/process", json={"user_input": "hello"})

        data = (await client.get("/metrics")).json()

        assert data["intent_classifier"]["total_requests"] == 1
        assert "entity_extractor" in data

    @pytest.mark.asyncio
    async def test_metrics_without_conversations(self, client):
        with patch('appointment.app.orchestrator', None):
            data = (await client.get("/metrics")).json()
        assert "error" in data


# ============================================================================
# Conversation Endpoints
# ============================================================================

class TestConversationEndpoints:
    """Session lifecycle over HTTP"""

    @pytest.mark.asyncio
    async def test_create_session(self, client):
        response = await client.post("/api/v1/session/create")
        assert response.status_code == 200

        data = response.json()
        assert data["state"] == "greeting"
        assert data["session_id"]
        assert "How may I help you today?" in data["response"]

    @pytest.mark.asyncio
    async def test_create_session_with_call_id(self, client):
        response = await client.post("/api/v1/session/create", json={"call_id": 7})
        session_id = response.json()["session_id"]

        status = (await client.get(f"/api/v1/session/{session_id}/status")).json()
        assert status["state"] == "greeting"
        assert status["turn_count"] == 0

    @pytest.mark.asyncio
    async def test_process_input(self, client):
        session_id = (await client.post("/api/v1/session/create")).json()["session_id"]

        response = await client.post(
            f"/api/v1/session/{session_id}/process",
            json={"user_input": "I want to book an appointment"}
        )
        assert response.status_code == 200

        data = response.json()
        assert data["success"] is True
        assert data["intent"] == "book_appointment"
        assert data["previous_state"] == "greeting"
        assert data["state"] == "book_appointment"
        assert data["turn_number"] == 1
        assert data["complete"] is False
        assert "full name" in data["response"]

    @pytest.mark.asyncio
    async def test_booking_conversation_over_http(self, client, appointment_service):
        session_id = (await client.post("/api/v1/session/create")).json()["session_id"]
        messages = [
            "I want to book an appointment",
            "Jane Doe",
            "May 15, 1990",
            "70 123 456",
            "Dr. Johnson",
            "tomorrow",
            "10 am",
            "yes",
        ]

        for message in messages:
            response = await client.post(
                f"/api/v1/session/{session_id}/process", json={"user_input": message}
            )
            assert response.status_code == 200

        data = response.json()
        assert data["state"] == "closing"
        assert "Appointment ID: 1" in data["response"]

        appointment = await appointment_service.get_appointment(1)
        assert appointment.start_time.strftime("%H:%M") == "10:00"

        status = (await client.get(f"/api/v1/session/{session_id}/status")).json()
        assert status["data"]["appointment_id"] == 1
        assert status["patient_id"] == appointment.patient_id

    @pytest.mark.asyncio
    async def test_session_persistence_across_requests(self, client, mock_redis_client):
        session_id = (await client.post("/api/v1/session/create")).json()["session_id"]

        await client.post(f"/api/v1/session/{session_id}/process", json={"user_input": "hello"})

        assert f"appointment:session:{session_id}" in mock_redis_client.stored_data
        status = (await client.get(f"/api/v1/session/{session_id}/status")).json()
        assert status["turn_count"] == 1
        assert status["ttl_seconds"] == 1800

    @pytest.mark.asyncio
    async def test_goodbye_completes_conversation(self, client):
        session_id = (await client.post("/api/v1/session/create")).json()["session_id"]

        data = (await client.post(
            f"/api/v1/session/{session_id}/process", json={"user_input": "goodbye"}
        )).json()

        assert data["complete"] is True
        assert data["state"] == "end"

    @pytest.mark.asyncio
    async def test_delete_session(self, client):
        session_id = (await client.post("/api/v1/session/create")).json()["session_id"]

        response = await client.delete(f"/api/v1/session/{session_id}")
        assert response.status_code == 200

        response = await client.get(f"/api/v1/session/{session_id}/status")
        assert response.status_code == 404


class TestConversationErrors:
    @pytest.mark.asyncio
    async def test_process_missing_session(self, client):
        response = await client.post("/api/v1/session/unknown/process", json={"user_input": "hello"})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_process_empty_input(self, client):
        session_id = (await client.post("/api/v1/session/create")).json()["session_id"]

        response = await client.post(f"/api/v1/session/{session_id}/process", json={"user_input": ""})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_delete_missing_session(self, client):
        assert (await client.delete("/api/v1/session/unknown")).status_code == 404

    @pytest.mark.asyncio
    async def test_service_unavailable_without_store(self, client):
        with patch('appointment.app.orchestrator', None):
            response = await client.post("/api/v1/session/create")

        assert response.status_code == 503
        assert response.json()["detail"] == "Session store unavailable"


# ============================================================================
# Scheduling Endpoints
# ============================================================================

class TestSchedulingEndpoints:
    """Direct booking on the scheduling core"""

    @pytest.mark.asyncio
    async def test_list_doctors(self, client):
        data = (await client.get("/api/v1/doctors")).json()

        names = [doctor["name"] for doctor in data["doctors"]]
        assert names == ["Dr. Sarah Johnson", "Dr. John Smith"]
        assert data["doctors"][0]["department"] == "General Medicine"
        assert data["departments"] == ["General Medicine"]

    @pytest.mark.asyncio
    async def test_list_doctors_by_department(self, client):
        data = (await client.get("/api/v1/doctors", params={"department": "Cardiology"})).json()

        assert data["doctors"] == []

    @pytest.mark.asyncio
    async def test_doctor_slots(self, client):
        response = await client.get("/api/v1/doctors/2/slots", params={"date": TUESDAY.isoformat()})
        assert response.status_code == 200

        data = response.json()
        assert data["slot_count"] == 4
        assert data["slots"][0]["start_time"] == "08:00"
        assert data["slots"][0]["end_time"] == "09:00"
        assert data["slots"][0]["duration_minutes"] == 60

    @pytest.mark.asyncio
    async def test_doctor_slots_unknown_doctor(self, client):
        response = await client.get("/api/v1/doctors/99/slots", params={"date": TUESDAY.isoformat()})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_doctor_slots_invalid_date(self, client):
        response = await client.get("/api/v1/doctors/1/slots", params={"date": "someday"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_block_slot(self, client):
        response = await client.post("/api/v1/doctors/1/slots/block", json={
            "date": TUESDAY.isoformat(),
            "start_time": "09:00",
            "reason": "Staff meeting",
        })
        assert response.status_code == 200
        assert response.json()["slot_number"] == 5
        assert response.json()["status"] == "blocked"

        slots = (await client.get(
            "/api/v1/doctors/1/slots", params={"date": TUESDAY.isoformat()}
        )).json()["slots"]
        starts = [slot["start_time"] for slot in slots]
        assert "08:45" not in starts
        assert "09:00" not in starts

    @pytest.mark.asyncio
    async def test_block_slot_off_grid(self, client):
        response = await client.post("/api/v1/doctors/1/slots/block", json={
            "date": TUESDAY.isoformat(),
            "start_time": "09:10",
        })
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_book_appointment(self, client, patient):
        response = await client.post("/api/v1/appointments", json={
            "patient_id": patient.id,
            "doctor_id": 1,
            "date": TUESDAY.isoformat(),
            "start_time": "09:00",
            "reason": "Check-up",
        })
        assert response.status_code == 201

        data = response.json()
        assert data["start_time"] == "09:00"
        assert data["end_time"] == "09:30"
        assert data["slot_count"] == 2
        assert data["status"] == "scheduled"

        slots = (await client.get(
            "/api/v1/doctors/1/slots", params={"date": TUESDAY.isoformat()}
        )).json()["slots"]
        assert "09:00" not in [slot["start_time"] for slot in slots]

    @pytest.mark.asyncio
    async def test_book_in_the_past(self, client, patient):
        response = await client.post("/api/v1/appointments", json={
            "patient_id": patient.id,
            "doctor_id": 1,
            "date": "2030-01-06",
            "start_time": "09:00",
        })
        assert response.status_code == 422
        assert response.json()["detail"]["message"] == "Cannot book appointments in the past."

    @pytest.mark.asyncio
    async def test_book_unknown_patient(self, client):
        response = await client.post("/api/v1/appointments", json={
            "patient_id": 999,
            "doctor_id": 1,
            "date": TUESDAY.isoformat(),
            "start_time": "09:00",
        })
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_twice(self, client, booked_appointment):
        url = f"/api/v1/appointments/{booked_appointment.id}/cancel"

        first = await client.post(url, json={"reason": "Feeling better"})
        second = await client.post(url)

        assert first.status_code == 200
        assert first.json()["status"] == "cancelled"
        assert first.json()["cancellation_reason"] == "Feeling better"
        assert second.status_code == 422

    @pytest.mark.asyncio
    async def test_reschedule(self, client, booked_appointment):
        response = await client.post(
            f"/api/v1/appointments/{booked_appointment.id}/reschedule",
            json={"date": TUESDAY.isoformat(), "start_time": "11:00"}
        )
        assert response.status_code == 200

        data = response.json()
        assert data["start_time"] == "11:00"
        assert data["end_time"] == "11:30"
        assert data["status"] == "scheduled"


class TestAppointmentStatusEndpoints:
    """confirm, complete and no-show"""

    @pytest.mark.asyncio
    async def test_confirm(self, client, booked_appointment):
        response = await client.post(f"/api/v1/appointments/{booked_appointment.id}/confirm")

        assert response.status_code == 200
        assert response.json()["status"] == "confirmed"

    @pytest.mark.asyncio
    async def test_completed_appointment_is_closed(self, client, booked_appointment):
        base = f"/api/v1/appointments/{booked_appointment.id}"

        completed = await client.post(f"{base}/complete")
        cancel = await client.post(f"{base}/cancel")
        reschedule = await client.post(
            f"{base}/reschedule", json={"date": TUESDAY.isoformat(), "start_time": "11:00"}
        )

        assert completed.json()["status"] == "completed"
        assert cancel.status_code == 422
        assert cancel.json()["detail"]["rule"] == "appointment_open"
        assert reschedule.status_code == 422

    @pytest.mark.asyncio
    async def test_no_show_frees_the_time(self, client, booked_appointment):
        response = await client.post(f"/api/v1/appointments/{booked_appointment.id}/no-show")
        assert response.json()["status"] == "no_show"

        slots = (await client.get(
            "/api/v1/doctors/1/slots", params={"date": TUESDAY.isoformat()}
        )).json()["slots"]
        assert "09:00" in [slot["start_time"] for slot in slots]

    @pytest.mark.asyncio
    async def test_status_change_on_missing_appointment(self, client):
        response = await client.post("/api/v1/appointments/999/confirm")
        assert response.status_code == 404
