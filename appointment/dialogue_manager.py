"""
Dialogue State Machine for the booking conversation

A pure decision layer: given the current state, the turn's intent, the
entities accepted this turn and the data collected so far, it answers which
state comes next, whether a state has what it needs, and what to ask for
when it does not.

Transitions are an explicit table from state to a small transition function,
so the whole graph can be inspected and tested state by state.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from appointment.models import ConversationState, IntentType

logger = logging.getLogger(__name__)

S = ConversationState

# Resolves a spoken doctor name to the matching doctors
DoctorLookup = Callable[[str], Sequence[Any]]


@dataclass(frozen=True)
class TransitionContext:
    """Everything a transition function may look at"""
    intent: IntentType
    entities: Dict[str, Any] = field(default_factory=dict)
    collected_data: Dict[str, Any] = field(default_factory=dict)
    doctor_lookup: Optional[DoctorLookup] = None

    def has(self, key: str) -> bool:
        return bool(self.entities.get(key)) or bool(self.collected_data.get(key))

    def value(self, key: str) -> Any:
        return self.entities.get(key) or self.collected_data.get(key)

    def doctor_resolved(self) -> bool:
        """A doctor id is known, or the doctor name matches exactly one doctor"""
        if self.collected_data.get("doctor_id") or self.entities.get("doctor_id"):
            return True
        name = self.value("doctor_name")
        if not name:
            return False
        if self.doctor_lookup is None:
            return True
        return len(self.doctor_lookup(name)) == 1


Transition = Callable[[TransitionContext], ConversationState]


# ============================================================================
# Transition Functions
# ============================================================================

def _always(target: ConversationState) -> Transition:
    return lambda ctx: target


def _requires(key: str, current: ConversationState, target: ConversationState) -> Transition:
    return lambda ctx: target if ctx.has(key) else current


INTENT_ROUTES: Dict[IntentType, ConversationState] = {
    IntentType.BOOK_APPOINTMENT: S.BOOK_APPOINTMENT,
    IntentType.CANCEL_APPOINTMENT: S.CANCEL_APPOINTMENT,
    IntentType.RESCHEDULE_APPOINTMENT: S.RESCHEDULE_APPOINTMENT,
    IntentType.CHECK_APPOINTMENT: S.GENERAL_INQUIRY,
    IntentType.GENERAL_INQUIRY: S.GENERAL_INQUIRY,
    IntentType.GOODBYE: S.END,
}


def _detect_intent(ctx: TransitionContext) -> ConversationState:
    return INTENT_ROUTES.get(ctx.intent, S.DETECT_INTENT)


def _book_appointment(ctx: TransitionContext) -> ConversationState:
    # A caller verified earlier in the session goes straight to doctor choice
    return S.SELECT_DOCTOR if ctx.has("patient_id") else S.COLLECT_PATIENT_NAME


def _select_doctor(ctx: TransitionContext) -> ConversationState:
    return S.SELECT_DATE if ctx.doctor_resolved() else S.SELECT_DOCTOR


def _confirm_booking(ctx: TransitionContext) -> ConversationState:
    if ctx.intent == IntentType.CONFIRM:
        return S.EXECUTE_BOOKING
    if ctx.intent == IntentType.DENY:
        return S.SELECT_SLOT
    return S.CONFIRM_BOOKING


def _change_flow(current: ConversationState) -> Transition:
    def transition(ctx: TransitionContext) -> ConversationState:
        if ctx.intent == IntentType.GOODBYE:
            return S.END
        if ctx.intent == IntentType.DENY:
            return S.CLOSING
        return current
    return transition


def _closing(ctx: TransitionContext) -> ConversationState:
    return INTENT_ROUTES.get(ctx.intent, S.DETECT_INTENT)


TRANSITIONS: Dict[ConversationState, Transition] = {
    S.GREETING: _always(S.DETECT_INTENT),
    S.DETECT_INTENT: _detect_intent,
    S.BOOK_APPOINTMENT: _book_appointment,
    S.COLLECT_PATIENT_NAME: _requires("patient_name", S.COLLECT_PATIENT_NAME, S.COLLECT_PATIENT_DOB),
    S.COLLECT_PATIENT_DOB: _requires("date_of_birth", S.COLLECT_PATIENT_DOB, S.COLLECT_PATIENT_PHONE),
    S.COLLECT_PATIENT_PHONE: _requires("phone", S.COLLECT_PATIENT_PHONE, S.VERIFY_PATIENT),
    S.VERIFY_PATIENT: _requires("patient_id", S.VERIFY_PATIENT, S.SELECT_DOCTOR),
    S.SELECT_DOCTOR: _select_doctor,
    S.SELECT_DATE: _requires("date", S.SELECT_DATE, S.SHOW_AVAILABLE_SLOTS),
    S.SHOW_AVAILABLE_SLOTS: _always(S.SELECT_SLOT),
    S.SELECT_SLOT: _requires("time", S.SELECT_SLOT, S.CONFIRM_BOOKING),
    S.CONFIRM_BOOKING: _confirm_booking,
    S.EXECUTE_BOOKING: _always(S.CLOSING),
    S.CANCEL_APPOINTMENT: _change_flow(S.CANCEL_APPOINTMENT),
    S.RESCHEDULE_APPOINTMENT: _change_flow(S.RESCHEDULE_APPOINTMENT),
    S.GENERAL_INQUIRY: _always(S.CLOSING),
    S.CLOSING: _closing,
    S.END: _always(S.END),
}

# Data a state needs before the conversation may leave it
REQUIRED_ENTITIES: Dict[ConversationState, Tuple[str, ...]] = {
    S.COLLECT_PATIENT_NAME: ("patient_name",),
    S.COLLECT_PATIENT_DOB: ("date_of_birth",),
    S.COLLECT_PATIENT_PHONE: ("phone",),
    S.VERIFY_PATIENT: ("patient_id",),
    S.SELECT_DOCTOR: ("doctor_id", "doctor_name"),
    S.SELECT_DATE: ("date",),
    S.SELECT_SLOT: ("time",),
}

# Keys of which any one satisfies the state
EITHER_OR_STATES = (S.SELECT_DOCTOR,)

# States whose business step must run before the conversation moves on
HOLD_STATES = (
    S.SHOW_AVAILABLE_SLOTS,
    S.EXECUTE_BOOKING,
    S.CANCEL_APPOINTMENT,
    S.RESCHEDULE_APPOINTMENT,
    S.GENERAL_INQUIRY,
)

MISSING_PROMPTS = {
    "patient_name": "May I have your full name please?",
    "date_of_birth": "What's your date of birth?",
    "phone": "What's the best phone number to reach you?",
    "patient_id": "Let me verify your information.",
    "doctor_id": "Which doctor would you like to see?",
    "doctor_name": "Which doctor would you like to see?",
    "department": "Which department would you like to visit?",
    "date": "What date would you like for your appointment?",
    "time": "What time works best for you?",
}


class DialogueManager:
    """
    Table-driven dialogue state machine with response templates.

    Args:
        hospital_name: Used in the greeting and inquiry answers
        working_hours: Human readable opening hours, e.g. "08:00 to 14:00"
        doctor_lookup: Optional collaborator resolving a doctor name to matches
    """

    def __init__(
        self,
        hospital_name: str = "City Hospital",
        working_hours: str = "08:00 to 14:00",
        doctor_lookup: Optional[DoctorLookup] = None,
        log_transitions: bool = True,
    ):
        self.hospital_name = hospital_name
        self.working_hours = working_hours
        self.doctor_lookup = doctor_lookup
        self.log_transitions = log_transitions

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def next_state(
        self,
        current: ConversationState,
        intent: IntentType,
        entities: Optional[Dict[str, Any]] = None,
        collected_data: Optional[Dict[str, Any]] = None,
        doctor_lookup: Optional[DoctorLookup] = None,
    ) -> ConversationState:
        ctx = TransitionContext(
            intent=intent,
            entities=dict(entities or {}),
            collected_data=dict(collected_data or {}),
            doctor_lookup=doctor_lookup or self.doctor_lookup,
        )
        return TRANSITIONS[current](ctx)

    def required_entities(self, state: ConversationState) -> Tuple[str, ...]:
        return REQUIRED_ENTITIES.get(state, ())

    def missing_entities(self, state: ConversationState, collected_data: Dict[str, Any]) -> List[str]:
        required = self.required_entities(state)
        missing = [key for key in required if not collected_data.get(key)]
        if state in EITHER_OR_STATES and len(missing) < len(required):
            return []
        return missing

    def can_proceed(self, state: ConversationState, collected_data: Dict[str, Any]) -> bool:
        return not self.missing_entities(state, collected_data)

    def advance(
        self,
        current: ConversationState,
        intent: IntentType,
        entities: Optional[Dict[str, Any]] = None,
        collected_data: Optional[Dict[str, Any]] = None,
        doctor_lookup: Optional[DoctorLookup] = None,
    ) -> ConversationState:
        """
        Next state plus at most one auto-advance hop.

        The hop is taken when the new state's requirements are already met by
        the collected data. It is never taken out of a state whose business
        step still has to run. ``doctor_lookup`` overrides the instance
        lookup for this call.
        """
        data = dict(collected_data or {})
        data.update({k: v for k, v in (entities or {}).items() if v})

        new_state = self.next_state(current, intent, entities, data, doctor_lookup)
        if (
            new_state != current
            and new_state not in HOLD_STATES
            and self.can_proceed(new_state, data)
        ):
            hopped = self.next_state(new_state, intent, entities, data, doctor_lookup)
            if self.log_transitions and hopped != new_state:
                logger.info(f"Auto-advance: {new_state.value} -> {hopped.value}")
            new_state = hopped

        if self.log_transitions and new_state != current:
            logger.info(f"State transition: {current.value} -> {new_state.value} (intent={intent.value})")
        return new_state

    # ------------------------------------------------------------------
    # Prompts and templates
    # ------------------------------------------------------------------

    def prompt_for_missing(self, missing_keys: Iterable[str], state: ConversationState) -> str:
        """Canned question for the first missing key"""
        for key in missing_keys:
            if key in MISSING_PROMPTS:
                return MISSING_PROMPTS[key]
        return self.generate_response(state, {})

    def greeting(self) -> str:
        return f"Hello! Thank you for calling {self.hospital_name}. How may I help you today?"

    def clarification(self) -> str:
        return "I'm sorry, I didn't quite understand. Could you please rephrase that?"

    def error_response(self) -> str:
        return "I'm sorry, I encountered an error. Could you please try again?"

    def generate_response(self, state: ConversationState, collected_data: Optional[Dict[str, Any]] = None) -> str:
        """Template reply for a state, acknowledging data already given"""
        data = collected_data or {}
        first_name = (data.get("patient_name") or "").split(" ")[0]

        if state == S.GREETING:
            return self.greeting()
        if state == S.DETECT_INTENT:
            return "How may I help you? I can book, cancel or reschedule an appointment."
        if state == S.BOOK_APPOINTMENT:
            return "I'd be happy to help you book an appointment. May I have your full name?"
        if state == S.COLLECT_PATIENT_NAME:
            return "May I have your full name please?"
        if state == S.COLLECT_PATIENT_DOB:
            if first_name:
                return f"Thank you, {first_name}. What's your date of birth?"
            return "What's your date of birth?"
        if state == S.COLLECT_PATIENT_PHONE:
            return "What's the best phone number to reach you?"
        if state == S.VERIFY_PATIENT:
            return "Let me verify your information."
        if state == S.SELECT_DOCTOR:
            return "Which doctor would you like to see, or do you have a preference for a department?"
        if state == S.SELECT_DATE:
            if data.get("doctor_display_name"):
                return f"What date would you like to see {data['doctor_display_name']}?"
            return "What date would you like for your appointment?"
        if state == S.SHOW_AVAILABLE_SLOTS:
            return "Let me check available times for you."
        if state == S.SELECT_SLOT:
            return "What time works best for you?"
        if state == S.CONFIRM_BOOKING:
            return "Great! Let me confirm your appointment. Is this correct?"
        if state == S.EXECUTE_BOOKING:
            return "Perfect! Your appointment has been booked."
        if state == S.CANCEL_APPOINTMENT:
            return "I can help you cancel your appointment."
        if state == S.RESCHEDULE_APPOINTMENT:
            return "I can help you reschedule your appointment."
        if state == S.GENERAL_INQUIRY:
            return (
                f"{self.hospital_name} is open Monday to Friday, {self.working_hours}. "
                "Is there anything else I can help you with?"
            )
        if state == S.CLOSING:
            return "Is there anything else I can help you with?"
        if state == S.END:
            return "Thank you for calling. Have a great day!"
        return "How may I help you?"
