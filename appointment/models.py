"""
Data models for the conversational appointment booking service

Contains the conversation enums, the session and turn dataclasses, the tagged
step results used by the orchestrator, and Pydantic models for the API.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field


# ============================================================================
# Enums
# ============================================================================

class ConversationState(Enum):
    """Dialogue states of a booking conversation"""
    GREETING = "greeting"
    DETECT_INTENT = "detect_intent"
    BOOK_APPOINTMENT = "book_appointment"
    COLLECT_PATIENT_NAME = "collect_patient_name"
    COLLECT_PATIENT_DOB = "collect_patient_dob"
    COLLECT_PATIENT_PHONE = "collect_patient_phone"
    VERIFY_PATIENT = "verify_patient"
    SELECT_DOCTOR = "select_doctor"
    SELECT_DATE = "select_date"
    SHOW_AVAILABLE_SLOTS = "show_available_slots"
    SELECT_SLOT = "select_slot"
    CONFIRM_BOOKING = "confirm_booking"
    EXECUTE_BOOKING = "execute_booking"
    CANCEL_APPOINTMENT = "cancel_appointment"
    RESCHEDULE_APPOINTMENT = "reschedule_appointment"
    GENERAL_INQUIRY = "general_inquiry"
    CLOSING = "closing"
    END = "end"

    @property
    def is_terminal(self) -> bool:
        return self == ConversationState.END


class IntentType(Enum):
    """User intents recognized by the NLU collaborator"""
    BOOK_APPOINTMENT = "book_appointment"
    CANCEL_APPOINTMENT = "cancel_appointment"
    RESCHEDULE_APPOINTMENT = "reschedule_appointment"
    CHECK_APPOINTMENT = "check_appointment"
    GENERAL_INQUIRY = "general_inquiry"
    GREETING = "greeting"
    CONFIRM = "confirm"
    DENY = "deny"
    PROVIDE_INFO = "provide_info"
    GOODBYE = "goodbye"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "IntentType":
        """Lenient lookup by value or name; unknown strings map to UNKNOWN"""
        if not value:
            return cls.UNKNOWN
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return cls.UNKNOWN


# ============================================================================
# Constants
# ============================================================================

ENTITY_KEYS = (
    "patient_name",
    "date_of_birth",
    "phone",
    "doctor_name",
    "department",
    "date",
    "time",
)

# Intents that start a multi-turn flow and stay sticky while data is collected
FLOW_INTENTS = (
    IntentType.BOOK_APPOINTMENT,
    IntentType.CANCEL_APPOINTMENT,
    IntentType.RESCHEDULE_APPOINTMENT,
)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class Intent:
    """Classified intent of one user message"""
    name: IntentType
    confidence: float
    reasoning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.name.value,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }


@dataclass
class EntityBag:
    """Sparse set of entities recognized in one message"""
    patient_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    phone: Optional[str] = None
    doctor_name: Optional[str] = None
    department: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EntityBag":
        data = data or {}
        return cls(**{
            key: str(data[key]).strip()
            for key in ENTITY_KEYS
            if data.get(key) not in (None, "")
        })

    def to_dict(self) -> Dict[str, str]:
        """Only the keys that carry a value"""
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name)}

    def has(self, key: str) -> bool:
        return bool(getattr(self, key, None))

    def filtered(self, allowed: Iterable[str]) -> "EntityBag":
        allowed = set(allowed)
        return EntityBag(**{k: v for k, v in self.to_dict().items() if k in allowed})

    def merged(self, other: "EntityBag") -> "EntityBag":
        """Values of ``other`` fill the gaps of this bag"""
        combined = other.to_dict()
        combined.update(self.to_dict())
        return EntityBag(**combined)

    def is_empty(self) -> bool:
        return not self.to_dict()


@dataclass
class Session:
    """Conversation session persisted in Redis"""
    session_id: str
    conversation_state: ConversationState = ConversationState.GREETING
    collected_data: Dict[str, Any] = field(default_factory=dict)
    conversation_history: List[Dict[str, str]] = field(default_factory=list)
    turn_count: int = 0
    intent: Optional[str] = None
    patient_id: Optional[int] = None
    call_id: Optional[int] = None
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    last_activity_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "conversation_state": self.conversation_state.value,
            "collected_data": self.collected_data,
            "conversation_history": self.conversation_history,
            "turn_count": self.turn_count,
            "intent": self.intent,
            "patient_id": self.patient_id,
            "call_id": self.call_id,
            "started_at": self.started_at,
            "last_activity_at": self.last_activity_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            session_id=data["session_id"],
            conversation_state=ConversationState(data.get("conversation_state", "greeting")),
            collected_data=dict(data.get("collected_data") or {}),
            conversation_history=list(data.get("conversation_history") or []),
            turn_count=int(data.get("turn_count", 0)),
            intent=data.get("intent"),
            patient_id=data.get("patient_id"),
            call_id=data.get("call_id"),
            started_at=data.get("started_at") or datetime.now().isoformat(),
            last_activity_at=data.get("last_activity_at") or datetime.now().isoformat(),
        )

    def recent_history(self, limit: int) -> List[Dict[str, str]]:
        if limit <= 0:
            return []
        return self.conversation_history[-limit:]

    def last_assistant_message(self) -> Optional[str]:
        for message in reversed(self.conversation_history):
            if message.get("role") == "assistant":
                return message.get("content")
        return None


@dataclass
class TurnRecord:
    """Outcome of one processed user message"""
    session_id: str
    turn_number: int
    user_message: str
    system_response: str
    intent: Intent
    entities: Dict[str, Any]
    conversation_state: ConversationState
    previous_state: ConversationState
    processing_time_ms: float
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def is_complete(self) -> bool:
        return self.conversation_state.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "turn_number": self.turn_number,
            "user_message": self.user_message,
            "system_response": self.system_response,
            "intent": self.intent.to_dict(),
            "entities": self.entities,
            "conversation_state": self.conversation_state.value,
            "previous_state": self.previous_state.value,
            "processing_time_ms": self.processing_time_ms,
            "timestamp": self.timestamp,
        }


# ============================================================================
# Step Results
# ============================================================================

@dataclass(frozen=True)
class Continue:
    """The step has nothing to say; the turn moves on to ``next_state``"""
    next_state: ConversationState


@dataclass(frozen=True)
class Respond:
    """The step produced the reply and the state to persist"""
    text: str
    state: ConversationState


StepResult = Union[Continue, Respond]


# ============================================================================
# Pydantic Models for API
# ============================================================================

class SessionCreateRequest(BaseModel):
    """Request model for creating a new conversation session"""
    call_id: Optional[int] = Field(None, description="Optional call identifier")
    initial_data: Optional[Dict[str, Any]] = Field(None, description="Optional pre-collected data")


class SessionCreateResponse(BaseModel):
    """Response model for session creation"""
    session_id: str = Field(..., description="Unique session identifier")
    state: str = Field(..., description="Current conversation state")
    response: str = Field(..., description="Greeting to speak to the caller")


class ProcessInputRequest(BaseModel):
    """Request model for processing user input"""
    user_input: str = Field(..., min_length=1, description="User's spoken/typed input")


class ProcessInputResponse(BaseModel):
    """Response model for input processing"""
    response: str = Field(..., description="System response to user")
    state: str = Field(..., description="Conversation state after the turn")
    previous_state: str = Field(..., description="Conversation state before the turn")
    intent: str = Field(..., description="Resolved intent")
    confidence: float = Field(..., description="Intent confidence")
    entities: Dict[str, Any] = Field(default_factory=dict, description="Entities accepted this turn")
    turn_number: int = Field(..., description="Turn counter after this turn")
    processing_time_ms: float = Field(..., description="Turn processing time")
    complete: bool = Field(..., description="Whether the conversation has ended")
    success: bool = Field(..., description="Whether the input was processed successfully")


class SessionStatusResponse(BaseModel):
    """Response model for session status query"""
    session_id: str = Field(..., description="Session identifier")
    state: str = Field(..., description="Current conversation state")
    data: Dict[str, Any] = Field(..., description="Collected data")
    turn_count: int = Field(..., description="Turns processed so far")
    patient_id: Optional[int] = Field(None, description="Verified patient identifier")
    created_at: str = Field(..., description="Session creation timestamp")
    updated_at: str = Field(..., description="Last activity timestamp")
    ttl_seconds: int = Field(..., description="Seconds until the session expires")


class BookAppointmentRequest(BaseModel):
    """Request model for direct booking"""
    patient_id: int = Field(..., description="Registered patient")
    doctor_id: int = Field(..., description="Doctor to book")
    date: str = Field(..., description="Appointment date (YYYY-MM-DD)")
    start_time: str = Field(..., description="Start time (HH:MM, 24h)")
    slot_count: Optional[int] = Field(None, ge=1, description="Slots to reserve (defaults to the doctor's)")
    reason: Optional[str] = Field(None, description="Reason for the visit")


class CancelAppointmentRequest(BaseModel):
    """Request model for cancellation"""
    reason: Optional[str] = Field(None, description="Cancellation reason")


class RescheduleAppointmentRequest(BaseModel):
    """Request model for rescheduling"""
    date: str = Field(..., description="New date (YYYY-MM-DD)")
    start_time: str = Field(..., description="New start time (HH:MM, 24h)")


class BlockSlotRequest(BaseModel):
    """Request model for taking a slot out of circulation"""
    date: str = Field(..., description="Date (YYYY-MM-DD)")
    start_time: str = Field(..., description="Slot start time (HH:MM, 24h)")
    reason: Optional[str] = Field(None, description="Why the slot is blocked")


class AppointmentResponse(BaseModel):
    """Response model for an appointment"""
    id: int
    patient_id: int
    doctor_id: int
    date: str
    start_time: str
    end_time: str
    slot_count: int
    status: str
    reason: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancellation_reason: Optional[str] = None


class SlotOption(BaseModel):
    """One bookable start time"""
    start_time: str = Field(..., description="Start time (HH:MM)")
    end_time: str = Field(..., description="End time (HH:MM)")
    slot_number: int = Field(..., description="First slot of the group")
    duration_minutes: int = Field(..., description="Appointment length")


class SlotsResponse(BaseModel):
    """Response model for slot availability"""
    doctor_id: int
    date: str
    slot_count: int
    slots: List[SlotOption]


class HealthResponse(BaseModel):
    """Response model for health check"""
    status: str = Field(..., description="Service status: healthy/degraded/unhealthy")
    redis_connected: bool = Field(..., description="Redis connectivity status")
    config_valid: bool = Field(..., description="Configuration validation status")
    uptime_seconds: float = Field(..., description="Service uptime in seconds")
