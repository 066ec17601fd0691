"""
Conversation tests for the turn orchestrator

Full multi-turn flows against the seeded scheduling core, with the
rules-only NLU and the dict-backed Redis mock. Expected replies are the
template texts, since Gemini rephrasing is disabled.
"""

import pytest
from unittest.mock import AsyncMock

from intent import IntentClassifier
from scheduling.models import AppointmentStatus

from ..config import AppointmentConfig
from ..models import ConversationState as S, IntentType
from ..orchestrator import (
    IDENTITY_PROMPT,
    MAX_TURNS_REACHED,
    TECHNICAL_DIFFICULTY,
    TurnOrchestrator,
    build_human_ranges,
)
from ..session_store import SessionNotFoundError
from .conftest import TUESDAY


async def start_in(orchestrator, state, data, intent="book_appointment"):
    """Create a session already parked in ``state``"""
    session, _ = await orchestrator.start_session(initial_data=data)
    await orchestrator.store.update(session.session_id, {"conversation_state": state, "intent": intent})
    return session.session_id


def verified(patient, **extra):
    data = {
        "patient_id": patient.id,
        "patient_name": "Jane Doe",
        "phone": "+96170123456",
        "date_of_birth": "1990-05-15",
    }
    data.update(extra)
    return data


# ============================================================================
# Booking
# ============================================================================

class TestBookingFlow:
    @pytest.mark.asyncio
    async def test_start_session_greets(self, orchestrator):
        session, greeting = await orchestrator.start_session(call_id=42)

        stored = await orchestrator.store.get(session.session_id)
        assert greeting == "Hello! Thank you for calling City Hospital. How may I help you today?"
        assert stored.conversation_state == S.GREETING
        assert stored.call_id == 42
        assert stored.conversation_history[0]["role"] == "assistant"

    @pytest.mark.asyncio
    async def test_full_booking(self, orchestrator, appointment_service):
        session, _ = await orchestrator.start_session()
        sid = session.session_id

        turn = await orchestrator.process_turn(sid, "I want to book an appointment")
        assert turn.conversation_state == S.BOOK_APPOINTMENT
        assert turn.system_response == "I'd be happy to help you book an appointment. May I have your full name?"

        turn = await orchestrator.process_turn(sid, "Jane Doe")
        assert turn.intent.name == IntentType.PROVIDE_INFO
        assert turn.entities == {"patient_name": "Jane Doe"}
        assert turn.conversation_state == S.COLLECT_PATIENT_DOB
        assert turn.system_response == "Thank you, Jane. What's your date of birth?"

        turn = await orchestrator.process_turn(sid, "May 15, 1990")
        assert turn.entities == {"date_of_birth": "1990-05-15"}
        assert turn.conversation_state == S.COLLECT_PATIENT_PHONE

        turn = await orchestrator.process_turn(sid, "70 123 456")
        assert turn.conversation_state == S.SELECT_DOCTOR
        assert turn.system_response.startswith("Thank you! I've verified your information.")

        turn = await orchestrator.process_turn(sid, "Dr. Johnson")
        assert turn.conversation_state == S.SELECT_DATE
        assert turn.system_response == "What date would you like to see Dr. Sarah Johnson?"

        turn = await orchestrator.process_turn(sid, "tomorrow")
        assert turn.conversation_state == S.SELECT_SLOT
        assert turn.system_response == (
            "Dr. Sarah Johnson is available on Tuesday, January 08, 2030 at 08:00 AM - 02:00 PM. "
            "What time works best for you?"
        )

        turn = await orchestrator.process_turn(sid, "9 am")
        assert turn.conversation_state == S.CONFIRM_BOOKING
        assert turn.system_response == (
            "Let me confirm: an appointment for Jane Doe with Dr. Sarah Johnson on "
            "Tuesday, January 08, 2030 from 09:00 AM to 10:00 AM. Shall I book it?"
        )

        turn = await orchestrator.process_turn(sid, "yes")
        assert turn.conversation_state == S.CLOSING
        assert "Appointment ID: 1" in turn.system_response

        turn = await orchestrator.process_turn(sid, "no thanks, bye")
        assert turn.conversation_state == S.END
        assert turn.is_complete

        appointment = await appointment_service.get_appointment(1)
        assert appointment.doctor_id == 2
        assert appointment.date == TUESDAY
        assert appointment.slot_count == 4
        assert appointment.status == AppointmentStatus.SCHEDULED

        stored = await orchestrator.store.get(sid)
        assert stored.turn_count == 9
        assert stored.patient_id == appointment.patient_id

    @pytest.mark.asyncio
    async def test_ambiguous_doctor_asks_which_one(self, orchestrator, repository, patient):
        department = (await repository.list_departments())[0]
        await repository.add_doctor("Emily", "Smith", department=department)
        sid = await start_in(orchestrator, "select_doctor", verified(patient))

        turn = await orchestrator.process_turn(sid, "Dr. Smith")

        assert turn.conversation_state == S.SELECT_DOCTOR
        assert turn.system_response.startswith("I found several doctors with that name:")
        assert "Dr. John Smith" in turn.system_response
        assert "Dr. Emily Smith" in turn.system_response

        turn = await orchestrator.process_turn(sid, "John Smith")

        assert turn.conversation_state == S.SELECT_DATE
        assert turn.system_response == "What date would you like to see Dr. John Smith?"
        assert (await orchestrator.store.get(sid)).collected_data["doctor_id"] == 1

    @pytest.mark.asyncio
    async def test_unknown_doctor(self, orchestrator, patient):
        sid = await start_in(orchestrator, "select_doctor", verified(patient))

        turn = await orchestrator.process_turn(sid, "Dr. Brown")

        assert turn.conversation_state == S.SELECT_DOCTOR
        assert "couldn't find a doctor" in turn.system_response
        assert "General Medicine" in turn.system_response

    @pytest.mark.asyncio
    async def test_past_date_is_rejected(self, orchestrator, patient):
        sid = await start_in(
            orchestrator, "select_date", verified(patient, doctor_id=1, doctor_name="Dr. John Smith")
        )

        turn = await orchestrator.process_turn(sid, "yesterday")

        assert turn.conversation_state == S.SELECT_DATE
        assert turn.system_response == "Cannot book appointments in the past. What other date would you like?"
        assert "date" not in (await orchestrator.store.get(sid)).collected_data

    @pytest.mark.asyncio
    async def test_weekend_has_no_slots(self, orchestrator, patient):
        sid = await start_in(
            orchestrator, "select_date", verified(patient, doctor_id=1, doctor_name="Dr. John Smith")
        )

        turn = await orchestrator.process_turn(sid, "Saturday")

        assert turn.conversation_state == S.SELECT_DATE
        assert turn.system_response.startswith("I'm sorry")

    @pytest.mark.asyncio
    async def test_time_outside_hours_asks_again(self, orchestrator, patient):
        data = verified(patient, doctor_id=1, doctor_name="Dr. John Smith", date="2030-01-08")
        sid = await start_in(orchestrator, "select_slot", data)

        turn = await orchestrator.process_turn(sid, "7 pm")

        assert turn.conversation_state == S.SELECT_SLOT
        assert turn.system_response.startswith("I'm sorry, 07:00 PM doesn't work:")
        stored = await orchestrator.store.get(sid)
        assert stored.collected_data["last_rejected_time"] == "19:00"
        assert "time" not in stored.collected_data

    @pytest.mark.asyncio
    async def test_taken_slot_is_rejected(self, orchestrator, patient, booked_appointment, patient_registry):
        other = await patient_registry.create_patient("Mark", "Lee", "+96171999888")
        data = {
            "patient_id": other.id, "patient_name": "Mark Lee", "phone": "+96171999888",
            "doctor_id": 1, "doctor_name": "Dr. John Smith", "date": "2030-01-08",
        }
        sid = await start_in(orchestrator, "select_slot", data)

        turn = await orchestrator.process_turn(sid, "9 am")

        assert turn.conversation_state == S.SELECT_SLOT
        assert "doesn't work" in turn.system_response

    @pytest.mark.asyncio
    async def test_denied_summary_returns_to_slot_choice(self, orchestrator, patient):
        data = verified(
            patient, doctor_id=1, doctor_name="Dr. John Smith", date="2030-01-08",
            time="09:00", validated_time="09:00", end_time="09:30", slot_count=2,
        )
        sid = await start_in(orchestrator, "confirm_booking", data)

        turn = await orchestrator.process_turn(sid, "no")

        assert turn.conversation_state == S.SELECT_SLOT
        stored = await orchestrator.store.get(sid)
        assert "time" not in stored.collected_data
        assert "validated_time" not in stored.collected_data


# ============================================================================
# Corrections
# ============================================================================

class TestCorrections:
    @pytest.mark.asyncio
    async def test_name_correction_reverifies(self, orchestrator, patient):
        sid = await start_in(
            orchestrator, "select_date", verified(patient, doctor_id=1, doctor_name="Dr. John Smith")
        )

        turn = await orchestrator.process_turn(sid, "Actually my name is Janet Doe")

        assert turn.conversation_state == S.VERIFY_PATIENT
        assert turn.system_response == (
            "I've updated your name to Janet Doe. Let me verify your information again."
        )
        stored = await orchestrator.store.get(sid)
        assert stored.collected_data["patient_name"] == "Janet Doe"
        assert "patient_id" not in stored.collected_data

        turn = await orchestrator.process_turn(sid, "ok")

        assert turn.conversation_state == S.SELECT_DATE
        assert turn.system_response == (
            "Perfect! I've updated your information and verified your record. "
            "What date would you like to see Dr. John Smith?"
        )
        assert (await orchestrator.store.get(sid)).collected_data.get("patient_id")

    @pytest.mark.asyncio
    async def test_day_first_birthday_correction(self, orchestrator, patient):
        sid = await start_in(
            orchestrator, "select_date", verified(patient, doctor_id=1, doctor_name="Dr. John Smith")
        )

        turn = await orchestrator.process_turn(sid, "actually my birthday is 31/12/1990")

        assert turn.conversation_state == S.VERIFY_PATIENT
        assert turn.system_response.startswith("I've updated your date of birth to")
        assert "December 31, 1990" in turn.system_response
        stored = await orchestrator.store.get(sid)
        assert stored.collected_data["date_of_birth"] == "1990-12-31"
        assert "patient_id" not in stored.collected_data

    @pytest.mark.asyncio
    async def test_unreadable_birthday_asks_again(self, orchestrator, patient):
        sid = await start_in(
            orchestrator, "select_date", verified(patient, doctor_id=1, doctor_name="Dr. John Smith")
        )

        turn = await orchestrator.process_turn(sid, "actually my birthday is 45/45/1990")

        assert turn.conversation_state == S.SELECT_DATE
        assert turn.system_response.startswith("I couldn't understand that date of birth.")
        stored = await orchestrator.store.get(sid)
        assert stored.conversation_state == S.SELECT_DATE
        assert stored.collected_data["date_of_birth"] == "1990-05-15"
        assert stored.collected_data["patient_id"] == patient.id


# ============================================================================
# Returning callers
# ============================================================================

class TestSecondBooking:
    @pytest.mark.asyncio
    async def test_verified_caller_skips_identity(self, orchestrator, patient):
        data = verified(patient, appointment_id=1, doctor_id=1, doctor_name="Dr. John Smith")
        sid = await start_in(orchestrator, "closing", data)

        turn = await orchestrator.process_turn(sid, "I want to book another appointment")

        assert turn.conversation_state == S.SELECT_DOCTOR
        assert turn.system_response == (
            "Which doctor would you like to see, or do you have a preference for a department?"
        )
        assert "name" not in turn.system_response
        stored = await orchestrator.store.get(sid)
        assert stored.collected_data["patient_id"] == patient.id
        assert "doctor_id" not in stored.collected_data

    @pytest.mark.asyncio
    async def test_second_booking_end_to_end(self, orchestrator, patient, booked_appointment,
                                             appointment_service):
        sid = await start_in(orchestrator, "closing", verified(patient))

        await orchestrator.process_turn(sid, "I want to book another appointment")
        turn = await orchestrator.process_turn(sid, "Dr. Johnson")
        assert turn.conversation_state == S.SELECT_DATE

        await orchestrator.process_turn(sid, "Wednesday")
        await orchestrator.process_turn(sid, "10 am")
        turn = await orchestrator.process_turn(sid, "yes")

        assert turn.conversation_state == S.CLOSING
        upcoming = await appointment_service.get_patient_appointments(patient.id)
        assert [a.doctor_id for a in upcoming] == [1, 2]


# ============================================================================
# Cancel, reschedule, check
# ============================================================================

class TestExistingAppointments:
    @pytest.mark.asyncio
    async def test_cancel(self, orchestrator, booked_appointment, appointment_service):
        session, _ = await orchestrator.start_session()
        sid = session.session_id

        turn = await orchestrator.process_turn(sid, "I need to cancel my appointment")
        assert turn.conversation_state == S.CANCEL_APPOINTMENT
        assert turn.system_response == IDENTITY_PROMPT

        turn = await orchestrator.process_turn(sid, "My name is Jane Doe and my phone is 70 123 456")
        assert turn.conversation_state == S.CANCEL_APPOINTMENT
        assert turn.system_response.startswith(
            "You have an appointment on Tuesday, January 08, 2030 at 09:00 AM. Would you like me to cancel it?"
        )

        turn = await orchestrator.process_turn(sid, "yes")
        assert turn.conversation_state == S.CLOSING
        assert turn.system_response.startswith("Your appointment has been successfully cancelled.")

        cancelled = await appointment_service.get_appointment(booked_appointment.id)
        assert cancelled.status == AppointmentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_unknown_caller(self, orchestrator, booked_appointment):
        sid = await start_in(orchestrator, "cancel_appointment", {}, intent="cancel_appointment")

        turn = await orchestrator.process_turn(sid, "My name is Bob Stone and my phone is 79 555 444")

        assert turn.conversation_state == S.CANCEL_APPOINTMENT
        assert turn.system_response.startswith("I couldn't find a patient record")

    @pytest.mark.asyncio
    async def test_reschedule(self, orchestrator, patient, booked_appointment, appointment_service):
        sid = await start_in(
            orchestrator, "reschedule_appointment", verified(patient), intent="reschedule_appointment"
        )

        turn = await orchestrator.process_turn(sid, "the one on Tuesday")
        assert turn.conversation_state == S.RESCHEDULE_APPOINTMENT
        assert turn.system_response.startswith("Your appointment is on Tuesday, January 08, 2030 at 09:00 AM")

        turn = await orchestrator.process_turn(sid, "Wednesday at 11:00")
        assert turn.system_response == (
            "I can move your appointment to Wednesday, January 09, 2030 at 11:00 AM. "
            "Shall I go ahead? Please say 'yes' to confirm."
        )

        turn = await orchestrator.process_turn(sid, "yes")
        assert turn.conversation_state == S.CLOSING
        assert turn.system_response.startswith("Your appointment has been moved to Wednesday, January 09, 2030")

        moved = await appointment_service.get_appointment(booked_appointment.id)
        assert moved.date.isoformat() == "2030-01-09"
        assert moved.start_time.strftime("%H:%M") == "11:00"

    @pytest.mark.asyncio
    async def test_check_appointments(self, orchestrator, booked_appointment):
        session, _ = await orchestrator.start_session()
        sid = session.session_id

        turn = await orchestrator.process_turn(sid, "When is my appointment?")
        assert turn.conversation_state == S.GENERAL_INQUIRY
        assert turn.system_response == IDENTITY_PROMPT

        turn = await orchestrator.process_turn(sid, "Jane Doe, 70 123 456")
        assert turn.conversation_state == S.CLOSING
        assert turn.system_response.startswith(
            "You have 1 upcoming appointment: Tuesday, January 08, 2030 at 09:00 AM with Dr. John Smith."
        )

    @pytest.mark.asyncio
    async def test_general_inquiry(self, orchestrator):
        session, _ = await orchestrator.start_session()

        turn = await orchestrator.process_turn(session.session_id, "What are your opening hours?")

        assert turn.conversation_state == S.CLOSING
        assert "Monday to Friday, 08:00 to 14:00" in turn.system_response


# ============================================================================
# Failure handling and limits
# ============================================================================

class TestTurnFailures:
    @pytest.mark.asyncio
    async def test_unknown_session(self, orchestrator):
        with pytest.raises(SessionNotFoundError):
            await orchestrator.process_turn("missing", "hello")

    @pytest.mark.asyncio
    async def test_nlu_failure_uses_fallback(self, orchestrator, intent_config):
        failing = AsyncMock()
        failing.parse.side_effect = RuntimeError("model unavailable")
        orchestrator.intent_parser = failing
        orchestrator.fallback_parser = IntentClassifier(intent_config, use_llm=False)
        session, _ = await orchestrator.start_session()

        turn = await orchestrator.process_turn(session.session_id, "I want to book an appointment")

        assert turn.conversation_state == S.BOOK_APPOINTMENT

    @pytest.mark.asyncio
    async def test_nlu_failure_without_fallback(self, orchestrator):
        failing = AsyncMock()
        failing.parse.side_effect = RuntimeError("model unavailable")
        orchestrator.intent_parser = failing
        session, _ = await orchestrator.start_session()

        turn = await orchestrator.process_turn(session.session_id, "I want to book an appointment")

        assert turn.system_response == TECHNICAL_DIFFICULTY
        assert turn.conversation_state == S.GREETING
        stored = await orchestrator.store.get(session.session_id)
        assert stored.conversation_state == S.GREETING
        assert stored.intent is None
        assert stored.turn_count == 1

    @pytest.mark.asyncio
    async def test_max_turns(self, session_store, intent_config, dialogue_manager,
                             appointment_service, doctor_directory, patient_registry, orchestrator):
        limited = TurnOrchestrator(
            session_store=session_store,
            intent_parser=orchestrator.intent_parser,
            entity_extractor=orchestrator.entity_extractor,
            dialogue_manager=dialogue_manager,
            appointment_service=appointment_service,
            doctor_directory=doctor_directory,
            patient_registry=patient_registry,
            config=AppointmentConfig(max_turns=1, log_state_transitions=False),
        )
        session, _ = await limited.start_session()

        await limited.process_turn(session.session_id, "hello")
        turn = await limited.process_turn(session.session_id, "I want to book an appointment")

        assert turn.system_response == MAX_TURNS_REACHED
        assert turn.conversation_state == S.END

    @pytest.mark.asyncio
    async def test_ended_conversation_stays_ended(self, orchestrator):
        sid = await start_in(orchestrator, "end", {})

        turn = await orchestrator.process_turn(sid, "hello again")

        assert turn.conversation_state == S.END
        assert turn.system_response == "Thank you for calling. Have a great day!"

    @pytest.mark.asyncio
    async def test_end_session(self, orchestrator):
        session, _ = await orchestrator.start_session()

        assert await orchestrator.end_session(session.session_id) is True
        assert await orchestrator.store.get(session.session_id) is None


class TestSlotDisplay:
    @pytest.mark.asyncio
    async def test_contiguous_slots_merge(self, appointment_service):
        slots = await appointment_service.allocator.available_slots(1, TUESDAY)

        assert build_human_ranges(slots) == ["08:00 AM - 02:00 PM"]

    @pytest.mark.asyncio
    async def test_booked_slots_split_ranges(self, appointment_service, booked_appointment):
        slots = await appointment_service.allocator.available_slots(1, TUESDAY)

        assert build_human_ranges(slots) == ["08:00 AM - 09:00 AM", "09:30 AM - 02:00 PM"]
