"""
Turn Orchestrator

Drives one request/response cycle of the booking conversation:

1. Resolve the intent (sticky inside a collection flow, NLU otherwise)
2. Detect late corrections of patient identity
3. Extract entities, scoped by a per-state whitelist
4. Advance the dialogue state machine
5. Run the state's business step (verify patient, pick doctor, list slots,
   validate, confirm, book, cancel, reschedule, answer inquiries)
6. Persist the session and return a TurnRecord

A failing turn leaves the stored conversation state untouched and answers
with an apology.
"""

import copy
import logging
import re
import time as time_module
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from appointment.config import AppointmentConfig
from appointment.dialogue_manager import DialogueManager
from appointment.models import (
    ENTITY_KEYS,
    FLOW_INTENTS,
    Continue,
    ConversationState,
    EntityBag,
    Intent,
    IntentType,
    Respond,
    Session,
    StepResult,
    TurnRecord,
)
from appointment.responses import ResponseGenerator
from appointment.session_store import SessionNotFoundError, SessionStore
from appointment.validation import (
    detect_patient_correction,
    format_date_long,
    format_time_12h,
    normalize_date,
    normalize_name,
    normalize_phone,
    normalize_time,
    parse_date,
    validate_name,
    validate_phone,
)
from scheduling import AppointmentService, DoctorDirectory, PatientRegistry
from scheduling.exceptions import ResourceConflictError, SchedulingError
from scheduling.models import Appointment, Doctor
from shared.errors import CollaboratorError, ServiceError

logger = logging.getLogger(__name__)

S = ConversationState


# ============================================================================
# Conversation Tables
# ============================================================================

# States whose intent is inherited from the session while data is collected
STICKY_INTENT_STATES = (
    S.COLLECT_PATIENT_NAME,
    S.COLLECT_PATIENT_DOB,
    S.COLLECT_PATIENT_PHONE,
    S.SELECT_DOCTOR,
    S.SELECT_DATE,
    S.SELECT_SLOT,
)

# States from which a flow intent starts a new flow
FLOW_ENTRY_STATES = (S.GREETING, S.DETECT_INTENT, S.CLOSING)

_IDENTITY_ENTITIES = ("patient_name", "date", "time", "phone", "doctor_name")

# Entity keys accepted in each state; unlisted states accept every key
ALLOWED_ENTITIES: Dict[ConversationState, Tuple[str, ...]] = {
    S.GREETING: (),
    S.COLLECT_PATIENT_NAME: ("patient_name",),
    S.COLLECT_PATIENT_DOB: ("date_of_birth",),
    S.COLLECT_PATIENT_PHONE: ("phone",),
    S.VERIFY_PATIENT: (),
    S.SELECT_DOCTOR: ("doctor_name", "department"),
    S.SELECT_DATE: ("date",),
    S.SHOW_AVAILABLE_SLOTS: ("time",),
    S.SELECT_SLOT: ("time",),
    S.CONFIRM_BOOKING: (),
    S.EXECUTE_BOOKING: (),
    S.CLOSING: (),
    S.CANCEL_APPOINTMENT: _IDENTITY_ENTITIES,
    S.RESCHEDULE_APPOINTMENT: _IDENTITY_ENTITIES,
}

IDENTITY_KEYS = ("patient_name", "date_of_birth", "phone", "patient_id")

# Cleared whenever a new booking, cancellation or reschedule flow starts
FLOW_KEYS = (
    "doctor_id", "doctor_name", "department", "date", "time", "end_time",
    "slot_count", "validated_time", "available_slots", "slot_ranges",
    "human_ranges", "slots_count", "no_slots_available", "last_error",
    "last_rejected_time", "cancel_appointment_id", "reschedule_appointment_id",
    "reschedule_pending", "pending_check",
)

# Rules whose failure means the date itself has to change
DATE_RULES = ("not_in_past", "advance_limit", "not_weekend", "doctor_day_off", "doctor_active")

CORRECTION_LABELS = {
    "patient_name": "name",
    "date_of_birth": "date of birth",
    "phone": "phone number",
}

UNREADABLE_CORRECTIONS = {
    "date_of_birth": (
        "I couldn't understand that date of birth. "
        "Could you say it again, for example May 15, 1990?"
    ),
}

IDENTITY_PROMPT = "I need to verify your identity first. Could you please provide your full name and phone number?"
TECHNICAL_DIFFICULTY = (
    "I'm having some technical difficulties right now. Please try again in a moment, "
    "or you can call our reception desk directly for immediate assistance."
)
MAX_TURNS_REACHED = (
    "I'm sorry, we've reached the limit for this call. "
    "Please call us again if you need anything else. Have a great day!"
)

_HOUR_REFERENCE = re.compile(r"\b(\d{1,2})(?::\d{2})?\s*([ap])\.?m\b", re.IGNORECASE)

# Business steps run at most this many times per turn
MAX_STEPS_PER_TURN = 4


# ============================================================================
# Slot Display Helpers
# ============================================================================

def build_slot_ranges(groups: List[List[Any]]) -> List[str]:
    """One "09:00 AM - 09:30 AM" entry per bookable group of consecutive slots"""
    ranges = []
    for group in groups:
        start = format_time_12h(group[0].start_time)
        end = format_time_12h(group[-1].end_time)
        ranges.append(start if start == end else f"{start} - {end}")
    return ranges


def build_human_ranges(slots: List[Any]) -> List[str]:
    """Merge contiguous available slots into spoken ranges"""
    runs: List[List[Any]] = []
    for slot in sorted(slots, key=lambda s: s.start_time):
        if runs and runs[-1][-1].end_time == slot.start_time:
            runs[-1].append(slot)
        else:
            runs.append([slot])

    ranges = []
    for run in runs:
        start = format_time_12h(run[0].start_time)
        if len(run) == 1:
            ranges.append(start)
        else:
            ranges.append(f"{start} - {format_time_12h(run[-1].end_time)}")
    return ranges


def _spoken_date(value: Any) -> str:
    if isinstance(value, str):
        parsed = parse_date(value)
        if parsed is None:
            return value
        value = parsed
    return format_date_long(value)


def _spoken_time(value: Any) -> str:
    if isinstance(value, str):
        value = datetime.strptime(value, "%H:%M").time()
    return format_time_12h(value)


@dataclass
class TurnContext:
    """Mutable view of the turn handed to business steps"""
    session: Session
    intent: Intent
    entities: Dict[str, Any]
    message: str

    @property
    def data(self) -> Dict[str, Any]:
        return self.session.collected_data


class TurnOrchestrator:
    """
    Conversational booking engine.

    Args:
        session_store: Session persistence
        intent_parser: NLU collaborator with ``async parse(text, context) -> Intent``
        entity_extractor: NLU collaborator with ``async extract(text, context) -> EntityBag``
        dialogue_manager: State machine and templates
        appointment_service: Booking contract
        doctor_directory: Doctor search
        patient_registry: Patient lookup and registration
        config: Conversation settings
        response_generator: Optional reply phrasing
        fallback_parser: Rule-based parser used when ``intent_parser`` fails
        fallback_extractor: Rule-based extractor used when ``entity_extractor`` fails
    """

    def __init__(
        self,
        session_store: SessionStore,
        intent_parser: Any,
        entity_extractor: Any,
        dialogue_manager: DialogueManager,
        appointment_service: AppointmentService,
        doctor_directory: DoctorDirectory,
        patient_registry: PatientRegistry,
        config: AppointmentConfig,
        response_generator: Optional[ResponseGenerator] = None,
        fallback_parser: Any = None,
        fallback_extractor: Any = None,
    ):
        self.store = session_store
        self.intent_parser = intent_parser
        self.entity_extractor = entity_extractor
        self.dialogue = dialogue_manager
        self.appointments = appointment_service
        self.doctors = doctor_directory
        self.patients = patient_registry
        self.config = config
        self.responses = response_generator
        self.fallback_parser = fallback_parser
        self.fallback_extractor = fallback_extractor

        self._steps: Dict[ConversationState, Callable[[TurnContext], Awaitable[StepResult]]] = {
            S.VERIFY_PATIENT: self._step_verify_patient,
            S.SELECT_DOCTOR: self._step_select_doctor,
            S.SELECT_DATE: self._step_select_date,
            S.SHOW_AVAILABLE_SLOTS: self._step_show_slots,
            S.SELECT_SLOT: self._step_select_slot,
            S.CONFIRM_BOOKING: self._step_confirm_booking,
            S.EXECUTE_BOOKING: self._step_execute_booking,
            S.CANCEL_APPOINTMENT: self._step_cancel,
            S.RESCHEDULE_APPOINTMENT: self._step_reschedule,
            S.GENERAL_INQUIRY: self._step_general_inquiry,
            S.DETECT_INTENT: self._step_detect_intent,
        }

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_session(
        self, call_id: Optional[int] = None, initial_data: Optional[Dict[str, Any]] = None
    ) -> Tuple[Session, str]:
        """Create a session in GREETING and return it with the greeting"""
        session_id = str(uuid.uuid4())
        seed = {
            "conversation_state": S.GREETING.value,
            "collected_data": dict(initial_data or {}),
            "call_id": call_id,
        }
        session = await self.store.create(session_id, seed)
        greeting = self.dialogue.greeting()
        self.store.add_message(session, "assistant", greeting)
        await self.store.save(session)
        return session, greeting

    async def end_session(self, session_id: str) -> bool:
        return await self.store.delete(session_id)

    # ------------------------------------------------------------------
    # Turn processing
    # ------------------------------------------------------------------

    async def process_turn(self, session_id: str, user_message: str) -> TurnRecord:
        """
        Process one user message.

        Raises:
            SessionNotFoundError: If the session expired or never existed
            CollaboratorError: If the session store is unreachable
        """
        start_time = time_module.time()

        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        previous_state = session.conversation_state
        message = (user_message or "").strip()

        if previous_state.is_terminal:
            text, state = self.dialogue.generate_response(S.END), S.END
            intent, entities = Intent(IntentType.GOODBYE, 1.0, "Conversation already ended"), {}
            working = session
        elif session.turn_count >= self.config.max_turns:
            logger.info(f"Session {session_id} reached max turns ({self.config.max_turns})")
            text, state = MAX_TURNS_REACHED, S.END
            intent, entities = Intent(IntentType.GOODBYE, 1.0, "Turn limit reached"), {}
            working = session
        else:
            # Work on a copy so a failed turn keeps the stored state
            working = Session.from_dict(copy.deepcopy(session.to_dict()))
            try:
                intent, entities, text, state = await self._run_turn(working, message)
            except CollaboratorError as e:
                logger.error(f"Collaborator failure in session {session_id}: {e}")
                working = session
                intent, entities = Intent(IntentType.UNKNOWN, 0.0, str(e)), {}
                text, state = TECHNICAL_DIFFICULTY, previous_state
            except Exception as e:
                logger.error(f"Turn failed in session {session_id}: {e}", exc_info=True)
                working = session
                intent, entities = Intent(IntentType.UNKNOWN, 0.0, str(e)), {}
                text, state = self.dialogue.error_response(), previous_state

        working.conversation_state = state
        patient_id = working.collected_data.get("patient_id")
        working.patient_id = patient_id
        self.store.add_message(working, "user", message)
        self.store.add_message(working, "assistant", text)
        await self.store.save(working)

        record = TurnRecord(
            session_id=session_id,
            turn_number=working.turn_count,
            user_message=message,
            system_response=text,
            intent=intent,
            entities=entities,
            conversation_state=state,
            previous_state=previous_state,
            processing_time_ms=(time_module.time() - start_time) * 1000,
        )
        logger.info(
            f"Turn {record.turn_number} [{session_id[:8]}]: {previous_state.value} -> {state.value} "
            f"(intent={intent.name.value}, {record.processing_time_ms:.1f}ms)"
        )
        return record

    async def _run_turn(self, session: Session, message: str) -> Tuple[Intent, Dict[str, Any], str, ConversationState]:
        state = session.conversation_state

        intent = await self._resolve_intent(session, message)

        correction = detect_patient_correction(message, state)
        if correction is not None and correction[1] is None:
            intent = Intent(IntentType.PROVIDE_INFO, 0.6, "Unreadable correction")
            return intent, {}, UNREADABLE_CORRECTIONS[correction[0]], state
        if correction is not None:
            text = self._apply_correction(session, *correction)
            intent = Intent(IntentType.PROVIDE_INFO, 0.9, "Patient corrected their information")
            return intent, {}, text, S.VERIFY_PATIENT

        if intent.name in FLOW_INTENTS and state in FLOW_ENTRY_STATES:
            self._start_flow(session, intent.name)

        if state == S.CONFIRM_BOOKING and intent.name == IntentType.DENY:
            # A rejected summary must not auto-advance back into confirmation
            for key in ("time", "validated_time", "end_time"):
                session.collected_data.pop(key, None)

        entities = await self._extract_entities(session, message)
        await self._merge_entities(session, entities)

        if state == S.GENERAL_INQUIRY and session.collected_data.get("pending_check") \
                and intent.name not in (IntentType.GOODBYE, IntentType.DENY):
            new_state = S.GENERAL_INQUIRY
        else:
            roster = await self.doctors.list_active()
            new_state = self.dialogue.advance(
                state,
                intent.name,
                entities,
                session.collected_data,
                doctor_lookup=lambda name: DoctorDirectory.match(roster, name),
            )

        ctx = TurnContext(session=session, intent=intent, entities=entities, message=message)
        text, new_state = await self._run_steps(ctx, new_state)

        if self.responses is not None:
            text = await self.responses.render(
                text,
                session.recent_history(self.config.nlu_history_window),
                session.collected_data,
            )
        return intent, entities, text, new_state

    async def _run_steps(self, ctx: TurnContext, state: ConversationState) -> Tuple[str, ConversationState]:
        for _ in range(MAX_STEPS_PER_TURN):
            step = self._steps.get(state)
            if step is None:
                break
            result = await step(ctx)
            if isinstance(result, Respond):
                return result.text, result.state
            state = result.next_state
        return self.dialogue.generate_response(state, ctx.data), state

    # ------------------------------------------------------------------
    # NLU
    # ------------------------------------------------------------------

    def _nlu_context(self, session: Session) -> Dict[str, Any]:
        state = session.conversation_state
        return {
            "conversation_state": state.value,
            "history": session.recent_history(self.config.nlu_history_window),
            "collected_data": {k: v for k, v in session.collected_data.items() if k in ENTITY_KEYS},
            "expected_entities": list(ALLOWED_ENTITIES.get(state, ENTITY_KEYS)),
            "session_intent": session.intent,
        }

    async def _call_nlu(self, method: str, primary: Any, fallback: Any, message: str, context: Dict[str, Any]):
        try:
            return await getattr(primary, method)(message, context)
        except Exception as e:
            if fallback is None:
                raise CollaboratorError("nlu", f"{method} failed: {e}") from e
            logger.warning(f"NLU {method} failed ({e}), using rule-based fallback")
            try:
                return await getattr(fallback, method)(message, context)
            except Exception as fallback_error:
                raise CollaboratorError("nlu", f"fallback {method} failed: {fallback_error}") from fallback_error

    async def _resolve_intent(self, session: Session, message: str) -> Intent:
        if session.conversation_state in STICKY_INTENT_STATES and session.intent:
            return Intent(IntentType.parse(session.intent), 0.95, "Flow continuation")
        return await self._call_nlu(
            "parse", self.intent_parser, self.fallback_parser, message, self._nlu_context(session)
        )

    async def _extract_entities(self, session: Session, message: str) -> Dict[str, Any]:
        bag: EntityBag = await self._call_nlu(
            "extract", self.entity_extractor, self.fallback_extractor, message, self._nlu_context(session)
        )
        allowed = ALLOWED_ENTITIES.get(session.conversation_state, ENTITY_KEYS)
        return self._normalize_entities(bag.filtered(allowed).to_dict())

    @staticmethod
    def _normalize_entities(entities: Dict[str, str]) -> Dict[str, str]:
        normalized = {}
        for key, value in entities.items():
            if key == "phone":
                if validate_phone(value)[0]:
                    normalized[key] = normalize_phone(value)
            elif key == "date":
                parsed = normalize_date(value, two_digit_century=2000)
                if parsed:
                    normalized[key] = parsed
            elif key == "date_of_birth":
                parsed = normalize_date(value)
                if parsed:
                    normalized[key] = parsed
            elif key == "time":
                parsed = normalize_time(value)
                if parsed:
                    normalized[key] = parsed
            elif key == "patient_name":
                normalized[key] = normalize_name(value)
            else:
                normalized[key] = value
        return normalized

    # ------------------------------------------------------------------
    # Collected data
    # ------------------------------------------------------------------

    def _apply_correction(self, session: Session, field: str, value: str) -> str:
        data = session.collected_data
        data[field] = value
        data.pop("patient_id", None)
        data.pop("validated_time", None)
        data["correction_pending"] = True
        session.patient_id = None
        logger.info(f"Patient correction in session {session.session_id}: {field}")

        spoken = _spoken_date(value) if field == "date_of_birth" else value
        return (
            f"I've updated your {CORRECTION_LABELS[field]} to {spoken}. "
            "Let me verify your information again."
        )

    def _start_flow(self, session: Session, intent: IntentType):
        data = session.collected_data
        for key in FLOW_KEYS:
            data.pop(key, None)
        session.intent = intent.value
        logger.info(f"Session {session.session_id} started flow: {intent.value}")

    async def _merge_entities(self, session: Session, entities: Dict[str, Any]):
        data = session.collected_data
        new_name = entities.get("doctor_name")
        if new_name and new_name != data.get("doctor_name"):
            data.pop("doctor_id", None)

        data.update(entities)

        if new_name and not data.get("doctor_id"):
            matches = await self.doctors.search(new_name)
            if len(matches) == 1:
                self._select_doctor(data, matches[0])

    @staticmethod
    def _select_doctor(data: Dict[str, Any], doctor: Doctor):
        data["doctor_id"] = doctor.id
        data["doctor_name"] = doctor.display_name
        if doctor.department_name:
            data["department"] = doctor.department_name

    def _reject_time(self, data: Dict[str, Any], error: ServiceError):
        data["last_error"] = error.message
        if data.get("time"):
            data["last_rejected_time"] = data.pop("time")
        data.pop("validated_time", None)
        data.pop("end_time", None)

    async def _identify_patient(self, ctx: TurnContext) -> Optional[int]:
        """Known patient id, or verify name and phone without registering"""
        data = ctx.data
        if data.get("patient_id"):
            return data["patient_id"]
        if not (data.get("patient_name") and data.get("phone")):
            return None

        first_name, last_name = self.patients.split_name(data["patient_name"])
        match = await self.patients.verify_identity(data["phone"], first_name, last_name)
        if not match.verified:
            return None
        data["patient_id"] = match.patient.id
        return match.patient.id

    # ------------------------------------------------------------------
    # Business steps
    # ------------------------------------------------------------------

    async def _step_detect_intent(self, ctx: TurnContext) -> StepResult:
        if ctx.intent.name == IntentType.UNKNOWN:
            return Respond(self.dialogue.clarification(), S.DETECT_INTENT)
        return Respond(self.dialogue.generate_response(S.DETECT_INTENT, ctx.data), S.DETECT_INTENT)

    async def _step_verify_patient(self, ctx: TurnContext) -> StepResult:
        data = ctx.data

        name_ok, name_error = validate_name(data.get("patient_name", ""))
        if not name_ok:
            data.pop("patient_name", None)
            return Respond(name_error, S.COLLECT_PATIENT_NAME)
        if not data.get("phone"):
            return Respond(self.dialogue.prompt_for_missing(["phone"], S.COLLECT_PATIENT_PHONE), S.COLLECT_PATIENT_PHONE)

        dob = parse_date(data["date_of_birth"]) if data.get("date_of_birth") else None
        if data.get("date_of_birth") and dob is None:
            data.pop("date_of_birth")
            return Respond(UNREADABLE_CORRECTIONS["date_of_birth"], S.COLLECT_PATIENT_DOB)
        patient, created = await self.patients.find_or_create(data["patient_name"], data["phone"], dob)
        data["patient_id"] = patient.id
        ctx.session.patient_id = patient.id

        if data.pop("correction_pending", False):
            opening = "Perfect! I've updated your information and verified your record."
        elif created:
            opening = "Thank you! I've verified your information."
        else:
            opening = "Thank you! I've found your record."

        if data.get("doctor_id"):
            if data.get("date"):
                return Continue(S.SHOW_AVAILABLE_SLOTS)
            return Respond(
                f"{opening} What date would you like to see {data['doctor_name']}?", S.SELECT_DATE
            )
        return Respond(
            f"{opening} Which doctor would you like to see, or do you have a preference for a department?",
            S.SELECT_DOCTOR,
        )

    async def _step_select_doctor(self, ctx: TurnContext) -> StepResult:
        data = ctx.data
        if data.get("doctor_id"):
            return Continue(S.SELECT_DATE)

        if data.get("doctor_name"):
            matches = await self.doctors.search(data["doctor_name"])
            if len(matches) == 1:
                self._select_doctor(data, matches[0])
                return Continue(S.SELECT_DATE)
            if matches:
                names = ", ".join(self.doctors.display_label(d) for d in matches)
                return Respond(
                    f"I found several doctors with that name: {names}. Which one would you prefer?",
                    S.SELECT_DOCTOR,
                )
            data.pop("doctor_name", None)
            departments = ", ".join(await self.doctors.departments())
            return Respond(
                "I couldn't find a doctor with that name. Could you try the full name or tell me "
                f"which department you prefer? We have: {departments}.",
                S.SELECT_DOCTOR,
            )

        if data.get("department"):
            matches = await self.doctors.find_by_department(data["department"])
            if len(matches) == 1:
                self._select_doctor(data, matches[0])
                return Continue(S.SELECT_DATE)
            if matches:
                names = ", ".join(d.display_name for d in matches)
                return Respond(
                    f"In {matches[0].department_name} we have {names}. Which one would you prefer?",
                    S.SELECT_DOCTOR,
                )
            requested = data.pop("department")
            departments = ", ".join(await self.doctors.departments())
            return Respond(
                f"I'm sorry, we don't have a {requested} department. We have: {departments}. "
                "Which would you prefer?",
                S.SELECT_DOCTOR,
            )

        return Respond(self.dialogue.generate_response(S.SELECT_DOCTOR, data), S.SELECT_DOCTOR)

    async def _step_select_date(self, ctx: TurnContext) -> StepResult:
        data = ctx.data
        if data.get("date"):
            return Continue(S.SHOW_AVAILABLE_SLOTS)
        return Respond(self.dialogue.generate_response(S.SELECT_DATE, {
            **data, "doctor_display_name": data.get("doctor_name"),
        }), S.SELECT_DATE)

    async def _step_show_slots(self, ctx: TurnContext) -> StepResult:
        data = ctx.data
        if not data.get("doctor_id"):
            return Continue(S.SELECT_DOCTOR)
        if not data.get("date"):
            return Continue(S.SELECT_DATE)

        day = date.fromisoformat(data["date"])
        doctor = await self.doctors.get(data["doctor_id"])
        allocator = self.appointments.allocator

        if day < self.appointments.validator.clock().date():
            data["last_error"] = "Cannot book appointments in the past."
            data.pop("date")
            return Respond(
                "Cannot book appointments in the past. What other date would you like?", S.SELECT_DATE
            )

        try:
            available = await allocator.available_slots(doctor.id, day)
            groups = await allocator.consecutive_groups(doctor.id, day, doctor.slots_per_appointment)
        except SchedulingError as e:
            logger.warning(f"Slot lookup failed for doctor {doctor.id} on {day}: {e}")
            data.pop("date")
            return Respond(f"I'm sorry, {e.message} Would you like to try another doctor or date?", S.SELECT_DATE)

        data["available_slots"] = [format_time_12h(s.start_time) for s in available]
        data["slot_ranges"] = build_slot_ranges(groups)
        data["human_ranges"] = build_human_ranges(available)
        data["slots_count"] = len(available)

        if not groups:
            data["no_slots_available"] = True
            data.pop("date")
            return Respond(
                f"I'm sorry, {doctor.display_name} has no available times on {format_date_long(day)}. "
                "Would you like to try another date?",
                S.SELECT_DATE,
            )

        data.pop("no_slots_available", None)
        if data.get("time"):
            return Continue(S.SELECT_SLOT)

        return Respond(
            f"{doctor.display_name} is available on {format_date_long(day)} at "
            f"{', '.join(data['human_ranges'])}. What time works best for you?",
            S.SELECT_SLOT,
        )

    async def _step_select_slot(self, ctx: TurnContext) -> StepResult:
        data = ctx.data
        if not data.get("time"):
            if data.get("human_ranges"):
                return Respond(
                    f"The available times are {', '.join(data['human_ranges'])}. What time works best for you?",
                    S.SELECT_SLOT,
                )
            return Respond(self.dialogue.prompt_for_missing(["time"], S.SELECT_SLOT), S.SELECT_SLOT)

        doctor = await self.doctors.get(data["doctor_id"])
        day = date.fromisoformat(data["date"])
        start = datetime.strptime(data["time"], "%H:%M").time()

        try:
            candidate = await self.appointments.validator.validate_booking(
                data["patient_id"], doctor.id, day, start, doctor.slots_per_appointment
            )
        except SchedulingError as e:
            self._reject_time(data, e)
            if getattr(e, "rule", None) in DATE_RULES:
                data.pop("date", None)
                return Respond(f"I'm sorry, {e.message} What other date would you like?", S.SELECT_DATE)
            return Respond(
                f"I'm sorry, {_spoken_time(start)} doesn't work: {e.message} "
                "Would you like to try a different time?",
                S.SELECT_SLOT,
            )

        data["end_time"] = candidate.end_time.strftime("%H:%M")
        data["slot_count"] = candidate.slot_count
        data["validated_time"] = data["time"]
        data.pop("last_error", None)
        return Continue(S.CONFIRM_BOOKING)

    async def _step_confirm_booking(self, ctx: TurnContext) -> StepResult:
        data = ctx.data
        if data.get("validated_time") != data.get("time"):
            return Continue(S.SELECT_SLOT)

        return Respond(
            f"Let me confirm: an appointment for {data.get('patient_name')} with {data.get('doctor_name')} "
            f"on {_spoken_date(data['date'])} from {_spoken_time(data['time'])} to "
            f"{_spoken_time(data['end_time'])}. Shall I book it?",
            S.CONFIRM_BOOKING,
        )

    async def _step_execute_booking(self, ctx: TurnContext) -> StepResult:
        data = ctx.data
        day = date.fromisoformat(data["date"])
        start = datetime.strptime(data["time"], "%H:%M").time()

        try:
            appointment = await self.appointments.book_appointment(
                data["patient_id"], data["doctor_id"], day, start, data.get("slot_count")
            )
        except ResourceConflictError as e:
            self._reject_time(data, e)
            return Respond(
                f"I'm sorry, that time slot is no longer available. {e.message} "
                "Would you like to try a different time?",
                S.SELECT_SLOT,
            )
        except SchedulingError as e:
            self._reject_time(data, e)
            data.pop("date", None)
            return Respond(
                f"I couldn't complete your appointment booking: {e.message.rstrip('.')}. "
                "Would you like to try a different date or time?",
                S.SELECT_DATE,
            )

        data["appointment_id"] = appointment.id
        for key in ("available_slots", "slot_ranges", "human_ranges"):
            data.pop(key, None)

        return Respond(
            f"Your appointment is confirmed: {data.get('patient_name')} with {data.get('doctor_name')} "
            f"on {_spoken_date(appointment.date)} at {_spoken_time(appointment.start_time)}. "
            f"Appointment ID: {appointment.id}. Is there anything else I can help you with?",
            S.CLOSING,
        )

    async def _describe(self, appointment: Appointment) -> str:
        doctor = await self.doctors.repository.get_doctor(appointment.doctor_id)
        label = f" with {doctor.display_name}" if doctor else ""
        return f"{_spoken_date(appointment.date)} at {_spoken_time(appointment.start_time)}{label}"

    def _match_appointment(self, appointments: List[Appointment], ctx: TurnContext) -> Optional[Appointment]:
        """Pick an appointment by the date or time the caller mentioned"""
        if len(appointments) == 1:
            return appointments[0]

        wanted_date = ctx.entities.get("date")
        wanted_time = ctx.entities.get("time")
        candidates = appointments
        if wanted_date:
            candidates = [a for a in candidates if a.date.isoformat() == wanted_date]
        if wanted_time:
            exact = [a for a in candidates if a.start_time.strftime("%H:%M") == wanted_time]
            candidates = exact or [a for a in candidates if a.start_time.hour == int(wanted_time[:2])]
        elif not wanted_date:
            reference = _HOUR_REFERENCE.search(ctx.message)
            if not reference:
                return None
            hour = int(reference.group(1)) % 12 + (12 if reference.group(2).lower() == "p" else 0)
            candidates = [a for a in candidates if a.start_time.hour == hour]

        return candidates[0] if len(candidates) == 1 else None

    async def _select_existing_appointment(self, ctx: TurnContext, key: str, verb: str) -> StepResult:
        """Resolve which upcoming appointment the caller means, stored under ``key``"""
        data = ctx.data
        patient_id = await self._identify_patient(ctx)
        if patient_id is None:
            if data.get("patient_name") and data.get("phone"):
                data.pop("phone", None)
                return Respond(
                    "I couldn't find a patient record with that name and phone number. "
                    "Could you please repeat your phone number?",
                    self._flow_state(verb),
                )
            return Respond(IDENTITY_PROMPT, self._flow_state(verb))

        upcoming = await self.appointments.get_upcoming_appointments(patient_id)
        if not upcoming:
            return Respond(
                f"I couldn't find any upcoming appointments to {verb}. Is there anything else I can help you with?",
                S.CLOSING,
            )

        selected = self._match_appointment(upcoming, ctx)
        if selected is None:
            options = "; ".join([await self._describe(a) for a in upcoming])
            return Respond(
                f"You have multiple upcoming appointments: {options}. Which one would you like to {verb}?",
                self._flow_state(verb),
            )

        data[key] = selected.id
        return Continue(self._flow_state(verb))

    @staticmethod
    def _flow_state(verb: str) -> ConversationState:
        return S.CANCEL_APPOINTMENT if verb == "cancel" else S.RESCHEDULE_APPOINTMENT

    async def _step_cancel(self, ctx: TurnContext) -> StepResult:
        data = ctx.data
        appointment_id = data.get("cancel_appointment_id")

        if appointment_id is None:
            result = await self._select_existing_appointment(ctx, "cancel_appointment_id", "cancel")
            if isinstance(result, Respond):
                return result
            appointment = await self.appointments.get_appointment(data["cancel_appointment_id"])
            return Respond(
                f"You have an appointment on {_spoken_date(appointment.date)} at "
                f"{_spoken_time(appointment.start_time)}. Would you like me to cancel it? "
                "Please say 'yes' to confirm.",
                S.CANCEL_APPOINTMENT,
            )

        if ctx.intent.name not in (IntentType.CONFIRM, IntentType.CANCEL_APPOINTMENT):
            appointment = await self.appointments.get_appointment(appointment_id)
            return Respond(
                f"Just to confirm, would you like me to cancel your appointment on {await self._describe(appointment)}? "
                "Please say 'yes' to confirm.",
                S.CANCEL_APPOINTMENT,
            )

        try:
            await self.appointments.cancel_appointment(appointment_id, "Cancelled by patient over the phone")
        except SchedulingError as e:
            data.pop("cancel_appointment_id", None)
            return Respond(
                f"I couldn't cancel that appointment: {e.message} Is there anything else I can help you with?",
                S.CLOSING,
            )

        data.pop("cancel_appointment_id", None)
        return Respond(
            "Your appointment has been successfully cancelled. Is there anything else I can help you with?",
            S.CLOSING,
        )

    async def _step_reschedule(self, ctx: TurnContext) -> StepResult:
        data = ctx.data
        if data.get("reschedule_appointment_id") is None:
            result = await self._select_existing_appointment(ctx, "reschedule_appointment_id", "reschedule")
            if isinstance(result, Respond):
                return result
            # The date/time used to pick the appointment is not the new slot
            for key in ("date", "time"):
                data.pop(key, None)
            appointment = await self.appointments.get_appointment(data["reschedule_appointment_id"])
            return Respond(
                f"Your appointment is on {await self._describe(appointment)}. "
                "What new date and time would you like?",
                S.RESCHEDULE_APPOINTMENT,
            )

        appointment_id = data["reschedule_appointment_id"]
        pending = data.get("reschedule_pending")
        if pending and ctx.intent.name == IntentType.CONFIRM:
            try:
                appointment = await self.appointments.reschedule_appointment(
                    appointment_id,
                    date.fromisoformat(pending["date"]),
                    datetime.strptime(pending["time"], "%H:%M").time(),
                )
            except SchedulingError as e:
                data.pop("reschedule_pending", None)
                self._reject_time(data, e)
                return Respond(
                    f"I couldn't move your appointment: {e.message} Would you like to try a different date or time?",
                    S.RESCHEDULE_APPOINTMENT,
                )
            for key in ("reschedule_appointment_id", "reschedule_pending", "date", "time"):
                data.pop(key, None)
            return Respond(
                f"Your appointment has been moved to {await self._describe(appointment)}. "
                "Is there anything else I can help you with?",
                S.CLOSING,
            )

        if not data.get("date") or not data.get("time"):
            missing = "date" if not data.get("date") else "time"
            return Respond(
                f"What new {missing} would you like for your appointment?", S.RESCHEDULE_APPOINTMENT
            )

        new_date = date.fromisoformat(data["date"])
        new_time = datetime.strptime(data["time"], "%H:%M").time()
        try:
            await self.appointments.validator.validate_reschedule(appointment_id, new_date, new_time)
        except SchedulingError as e:
            data.pop("reschedule_pending", None)
            self._reject_time(data, e)
            if getattr(e, "rule", None) in DATE_RULES:
                data.pop("date", None)
            return Respond(
                f"I'm sorry, {e.message} Would you like to try a different date or time?",
                S.RESCHEDULE_APPOINTMENT,
            )

        data["reschedule_pending"] = {"date": data["date"], "time": data["time"]}
        return Respond(
            f"I can move your appointment to {_spoken_date(new_date)} at {_spoken_time(new_time)}. "
            "Shall I go ahead? Please say 'yes' to confirm.",
            S.RESCHEDULE_APPOINTMENT,
        )

    async def _step_general_inquiry(self, ctx: TurnContext) -> StepResult:
        data = ctx.data
        checking = ctx.intent.name == IntentType.CHECK_APPOINTMENT or data.get("pending_check")
        if not checking:
            return Respond(await self._inquiry_answer(ctx.message), S.CLOSING)

        patient_id = await self._identify_patient(ctx)
        if patient_id is None:
            data["pending_check"] = True
            return Respond(IDENTITY_PROMPT, S.GENERAL_INQUIRY)

        data.pop("pending_check", None)
        upcoming = await self.appointments.get_upcoming_appointments(patient_id)
        if not upcoming:
            return Respond(
                "You don't have any upcoming appointments. Is there anything else I can help you with?",
                S.CLOSING,
            )
        listing = "; ".join([await self._describe(a) for a in upcoming])
        plural = "appointment" if len(upcoming) == 1 else "appointments"
        return Respond(
            f"You have {len(upcoming)} upcoming {plural}: {listing}. Is there anything else I can help you with?",
            S.CLOSING,
        )

    async def _inquiry_answer(self, message: str) -> str:
        lowered = message.lower()
        if "department" in lowered or "doctor" in lowered or "specialist" in lowered:
            departments = ", ".join(await self.doctors.departments())
            roster = await self.doctors.list_active()
            doctors = ", ".join(self.doctors.display_label(d) for d in roster)
            return (
                f"We have the following departments: {departments}. Our doctors are {doctors}. "
                "Is there anything else I can help you with?"
            )
        return self.dialogue.generate_response(S.GENERAL_INQUIRY)
