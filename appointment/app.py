"""
Hospital Appointment Booking Service - FastAPI Application

Conversational booking over HTTP with Redis-backed sessions, plus direct
booking endpoints on the scheduling core.
"""

import os
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
import redis.asyncio as redis

from appointment.config import AppointmentConfig
from appointment.dialogue_manager import DialogueManager
from appointment.models import (
    SessionCreateRequest, SessionCreateResponse,
    ProcessInputRequest, ProcessInputResponse,
    SessionStatusResponse, HealthResponse,
    BookAppointmentRequest, CancelAppointmentRequest,
    RescheduleAppointmentRequest, AppointmentResponse,
    BlockSlotRequest,
    SlotOption, SlotsResponse,
)
from appointment.orchestrator import TurnOrchestrator
from appointment.responses import ResponseGenerator
from appointment.session_store import SessionNotFoundError, SessionStore
from appointment.validation import parse_date, parse_time
from intent import EntityExtractor, IntentClassifier, IntentConfig
from scheduling import (
    AppointmentService,
    DoctorDirectory,
    PatientRegistry,
    SchedulingConfig,
    SchedulingRepository,
    SchedulingValidator,
    SlotAllocator,
    close_database,
    init_database,
)
from scheduling.exceptions import (
    CapacityError,
    PatientConflictError,
    ResourceConflictError,
    SchedulingPolicyError,
)
from scheduling.seed import seed_demo_data
from shared.errors import CollaboratorError, NotFoundError, ServiceError
from shared.redis_client import RedisConfig, close_redis_client, get_redis_client

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Global state
redis_client: Optional[redis.Redis] = None
config: Optional[AppointmentConfig] = None
session_store: Optional[SessionStore] = None
orchestrator: Optional[TurnOrchestrator] = None
appointment_service: Optional[AppointmentService] = None
doctor_directory: Optional[DoctorDirectory] = None
patient_registry: Optional[PatientRegistry] = None
app_start_time: float = 0.0


def build_orchestrator(
    store: SessionStore,
    appointment_config: AppointmentConfig,
    intent_config: IntentConfig,
    scheduling_config: SchedulingConfig,
    service: AppointmentService,
    directory: DoctorDirectory,
    registry: PatientRegistry,
) -> TurnOrchestrator:
    """Wire the NLU, dialogue manager and scheduling core into a TurnOrchestrator"""
    clock = service.validator.clock
    dialogue = DialogueManager(
        hospital_name=scheduling_config.hospital_name,
        working_hours=scheduling_config.working_hours_label,
        log_transitions=appointment_config.log_state_transitions,
    )

    # Rules-only collaborators back up the Gemini-enabled ones
    fallback_parser = fallback_extractor = None
    if intent_config.llm_enabled:
        fallback_parser = IntentClassifier(intent_config, use_llm=False)
        fallback_extractor = EntityExtractor(intent_config, clock=clock, use_llm=False)

    return TurnOrchestrator(
        session_store=store,
        intent_parser=IntentClassifier(intent_config),
        entity_extractor=EntityExtractor(intent_config, clock=clock),
        dialogue_manager=dialogue,
        appointment_service=service,
        doctor_directory=directory,
        patient_registry=registry,
        config=appointment_config,
        response_generator=ResponseGenerator(appointment_config),
        fallback_parser=fallback_parser,
        fallback_extractor=fallback_extractor,
    )


# ============================================================================
# Lifespan Management
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage service lifecycle (startup/shutdown)
    """
    global redis_client, config, session_store, orchestrator
    global appointment_service, doctor_directory, patient_registry, app_start_time

    logger.info("Starting appointment booking service...")
    app_start_time = time.time()

    # Load configuration
    try:
        config = AppointmentConfig.from_env()
        intent_config = IntentConfig.from_env()
        scheduling_config = SchedulingConfig.from_env()
        logger.info("Configuration loaded")
    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        raise

    # Scheduling core; an empty database gets the demo doctors
    await init_database(scheduling_config.database_url)
    repository = SchedulingRepository()
    if not await repository.list_doctors(active_only=False):
        await seed_demo_data(repository)
    allocator = SlotAllocator(repository, scheduling_config)
    validator = SchedulingValidator(repository, allocator, scheduling_config)
    appointment_service = AppointmentService(repository, allocator, validator, scheduling_config)
    doctor_directory = DoctorDirectory(repository)
    patient_registry = PatientRegistry(repository)

    # Initialize Redis client
    try:
        redis_config = RedisConfig.from_env()
        redis_config.url = redis_config.url or config.redis_url
        redis_client = await get_redis_client(redis_config)
        logger.info("Redis connected")
    except Exception as e:
        logger.warning(f"Redis connection failed: {e} - conversation endpoints disabled")
        redis_client = None

    if redis_client:
        session_store = SessionStore(redis_client, config)
        orchestrator = build_orchestrator(
            session_store, config, intent_config, scheduling_config,
            appointment_service, doctor_directory, patient_registry,
        )

    logger.info("Appointment booking service ready")

    yield

    # Shutdown
    logger.info("Shutting down appointment booking service...")

    if redis_client:
        await close_redis_client()
        logger.info("Redis connection closed")

    await close_database()

    logger.info("Service stopped")


# ============================================================================
# FastAPI Application
# ============================================================================

app = FastAPI(
    title="Hospital Appointment Booking Service",
    description="Conversational appointment booking with Redis-backed sessions",
    version="1.0.0",
    lifespan=lifespan
)


def _require_conversation() -> TurnOrchestrator:
    if not config:
        raise HTTPException(status_code=503, detail="Service not configured")
    if not orchestrator:
        raise HTTPException(status_code=503, detail="Session store unavailable")
    return orchestrator


def _require_scheduling() -> AppointmentService:
    if not appointment_service:
        raise HTTPException(status_code=503, detail="Service not configured")
    return appointment_service


def _http_error(error: ServiceError) -> HTTPException:
    """Map the error taxonomy onto HTTP status codes"""
    if isinstance(error, NotFoundError):
        status_code = 404
    elif isinstance(error, SchedulingPolicyError):
        status_code = 422
    elif isinstance(error, (ResourceConflictError, PatientConflictError, CapacityError)):
        status_code = 409
    elif isinstance(error, CollaboratorError):
        status_code = 503
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail=error.to_dict())


def _parse_day(value: str):
    day = parse_date(value)
    if day is None:
        raise HTTPException(status_code=422, detail=f"Invalid date: {value}")
    return day


def _parse_clock(value: str):
    parsed = parse_time(value)
    if parsed is None:
        raise HTTPException(status_code=422, detail=f"Invalid time: {value}")
    return parsed


# ============================================================================
# Conversation Endpoints
# ============================================================================

@app.post("/api/v1/session/create", response_model=SessionCreateResponse)
async def create_session(request: Optional[SessionCreateRequest] = None):
    """
    Create a new booking conversation.

    Returns:
        Session ID, initial state and the greeting
    """
    engine = _require_conversation()
    request = request or SessionCreateRequest()

    try:
        session, greeting = await engine.start_session(request.call_id, request.initial_data)
    except ServiceError as e:
        logger.error(f"Failed to create session: {e}")
        raise _http_error(e)

    return SessionCreateResponse(
        session_id=session.session_id,
        state=session.conversation_state.value,
        response=greeting
    )


@app.post("/api/v1/session/{session_id}/process", response_model=ProcessInputResponse)
async def process_input(session_id: str, request: ProcessInputRequest):
    """
    Process one caller message.

    Returns:
        Reply, state transition and NLU result of the turn
    """
    engine = _require_conversation()

    try:
        record = await engine.process_turn(session_id, request.user_input)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found or expired")
    except ServiceError as e:
        logger.error(f"Failed to process input for session {session_id}: {e}")
        raise _http_error(e)

    return ProcessInputResponse(
        response=record.system_response,
        state=record.conversation_state.value,
        previous_state=record.previous_state.value,
        intent=record.intent.name.value,
        confidence=record.intent.confidence,
        entities=record.entities,
        turn_number=record.turn_number,
        processing_time_ms=record.processing_time_ms,
        complete=record.is_complete,
        success=record.intent.confidence > 0.0,
    )


@app.get("/api/v1/session/{session_id}/status", response_model=SessionStatusResponse)
async def get_session_status(session_id: str):
    """
    Get status of an existing session.

    Returns current state, collected data, and timestamps.
    """
    _require_conversation()

    try:
        session = await session_store.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found or expired")
        ttl = await session_store.ttl(session_id)
    except CollaboratorError as e:
        raise _http_error(e)

    return SessionStatusResponse(
        session_id=session.session_id,
        state=session.conversation_state.value,
        data=session.collected_data,
        turn_count=session.turn_count,
        patient_id=session.patient_id,
        created_at=session.started_at,
        updated_at=session.last_activity_at,
        ttl_seconds=max(ttl, 0)
    )


@app.delete("/api/v1/session/{session_id}")
async def delete_session(session_id: str):
    """
    Delete an existing session.
    """
    engine = _require_conversation()

    try:
        deleted = await engine.end_session(session_id)
    except CollaboratorError as e:
        raise _http_error(e)

    if not deleted:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"message": "Session deleted successfully"}


# ============================================================================
# Scheduling Endpoints
# ============================================================================

@app.get("/api/v1/doctors")
async def list_doctors(department: Optional[str] = None):
    """Active doctors, optionally filtered by department"""
    _require_scheduling()

    doctors = (
        await doctor_directory.find_by_department(department)
        if department else await doctor_directory.list_active()
    )
    return {
        "doctors": [doctor.to_dict() for doctor in doctors],
        "departments": await doctor_directory.departments(),
    }


@app.get("/api/v1/doctors/{doctor_id}/slots", response_model=SlotsResponse)
async def get_doctor_slots(
    doctor_id: int,
    date: str = Query(..., description="Date (YYYY-MM-DD)"),
    slot_count: Optional[int] = Query(None, ge=1, description="Consecutive slots needed"),
):
    """
    Bookable start times for a doctor on a date.

    ``slot_count`` defaults to the doctor's appointment length.
    """
    service = _require_scheduling()
    day = _parse_day(date)

    try:
        doctor = await doctor_directory.get(doctor_id)
        count = slot_count or doctor.slots_per_appointment
        options = await service.allocator.available_time_slots(doctor_id, day, count)
    except ServiceError as e:
        raise _http_error(e)

    return SlotsResponse(
        doctor_id=doctor_id,
        date=day.isoformat(),
        slot_count=count,
        slots=[SlotOption(**option) for option in options]
    )


@app.post("/api/v1/appointments", response_model=AppointmentResponse, status_code=201)
async def book_appointment(request: BookAppointmentRequest):
    """Book directly on the scheduling core"""
    service = _require_scheduling()

    try:
        appointment = await service.book_appointment(
            patient_id=request.patient_id,
            doctor_id=request.doctor_id,
            day=_parse_day(request.date),
            start_time=_parse_clock(request.start_time),
            slot_count=request.slot_count,
            reason=request.reason,
        )
    except ServiceError as e:
        logger.warning(f"Booking rejected: {e}")
        raise _http_error(e)

    return AppointmentResponse(**appointment.to_dict())


@app.post("/api/v1/appointments/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(appointment_id: int, request: Optional[CancelAppointmentRequest] = None):
    """Cancel an appointment and release its slots"""
    service = _require_scheduling()
    reason = request.reason if request else None

    try:
        appointment = await service.cancel_appointment(appointment_id, reason)
    except ServiceError as e:
        raise _http_error(e)

    return AppointmentResponse(**appointment.to_dict())


@app.post("/api/v1/appointments/{appointment_id}/reschedule", response_model=AppointmentResponse)
async def reschedule_appointment(appointment_id: int, request: RescheduleAppointmentRequest):
    """Move an appointment to a new date and time"""
    service = _require_scheduling()

    try:
        appointment = await service.reschedule_appointment(
            appointment_id,
            _parse_day(request.date),
            _parse_clock(request.start_time),
        )
    except ServiceError as e:
        raise _http_error(e)

    return AppointmentResponse(**appointment.to_dict())


async def _change_status(appointment_id: int, action: str) -> AppointmentResponse:
    service = _require_scheduling()
    actions = {
        "confirm": service.confirm_appointment,
        "complete": service.mark_completed,
        "no-show": service.mark_no_show,
    }

    try:
        appointment = await actions[action](appointment_id)
    except ServiceError as e:
        raise _http_error(e)

    return AppointmentResponse(**appointment.to_dict())


@app.post("/api/v1/appointments/{appointment_id}/confirm", response_model=AppointmentResponse)
async def confirm_appointment(appointment_id: int):
    """Patient confirmed they will attend"""
    return await _change_status(appointment_id, "confirm")


@app.post("/api/v1/appointments/{appointment_id}/complete", response_model=AppointmentResponse)
async def complete_appointment(appointment_id: int):
    """Visit took place"""
    return await _change_status(appointment_id, "complete")


@app.post("/api/v1/appointments/{appointment_id}/no-show", response_model=AppointmentResponse)
async def no_show_appointment(appointment_id: int):
    """Patient did not attend; the slots are released"""
    return await _change_status(appointment_id, "no-show")


@app.post("/api/v1/doctors/{doctor_id}/slots/block")
async def block_doctor_slot(doctor_id: int, request: BlockSlotRequest):
    """Take one slot of a doctor's day out of circulation"""
    service = _require_scheduling()
    day = _parse_day(request.date)
    start = _parse_clock(request.start_time)

    try:
        number = await service.allocator.slot_number_at(doctor_id, day, start)
        if number is None:
            raise HTTPException(status_code=422, detail=f"No slot starts at {request.start_time}")
        slot = await service.allocator.block_slot(doctor_id, day, number, request.reason)
    except ServiceError as e:
        raise _http_error(e)

    return slot.to_dict()


# ============================================================================
# Health
# ============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint.

    Checks service status, Redis connectivity, and configuration.
    """
    redis_connected = False
    if redis_client:
        try:
            await asyncio.wait_for(redis_client.ping(), timeout=1.0)
            redis_connected = True
        except (redis.RedisError, OSError, asyncio.TimeoutError):
            redis_connected = False

    config_valid = config is not None

    # Determine overall status
    if not config_valid:
        status = "unhealthy"
    elif not redis_connected:
        status = "degraded"  # Direct booking works, conversations don't
    else:
        status = "healthy"

    uptime_seconds = time.time() - app_start_time

    return HealthResponse(
        status=status,
        redis_connected=redis_connected,
        config_valid=config_valid,
        uptime_seconds=uptime_seconds
    )


@app.get("/metrics")
async def get_metrics():
    """
    NLU and response generation statistics.

    Returns:
        dict: Per-collaborator counters, empty when conversations are disabled
    """
    if not orchestrator:
        return {"error": "Conversation engine not initialized"}

    metrics = {"uptime_seconds": time.time() - app_start_time}
    for name, collaborator, method in (
        ("intent_classifier", orchestrator.intent_parser, "get_performance_stats"),
        ("entity_extractor", orchestrator.entity_extractor, "get_stats"),
        ("response_generator", orchestrator.responses, "get_stats"),
    ):
        if collaborator is not None and hasattr(collaborator, method):
            metrics[name] = getattr(collaborator, method)()
    return metrics


@app.get("/")
async def root():
    """
    Service information endpoint
    """
    return {
        "service": "Hospital Appointment Booking Service",
        "version": "1.0.0",
        "status": "operational",
        "timestamp": datetime.now().isoformat(),
        "endpoints": {
            "create_session": "POST /api/v1/session/create",
            "process_input": "POST /api/v1/session/{session_id}/process",
            "get_status": "GET /api/v1/session/{session_id}/status",
            "delete_session": "DELETE /api/v1/session/{session_id}",
            "list_doctors": "GET /api/v1/doctors",
            "doctor_slots": "GET /api/v1/doctors/{doctor_id}/slots?date=YYYY-MM-DD",
            "book": "POST /api/v1/appointments",
            "cancel": "POST /api/v1/appointments/{appointment_id}/cancel",
            "reschedule": "POST /api/v1/appointments/{appointment_id}/reschedule",
            "confirm": "POST /api/v1/appointments/{appointment_id}/confirm",
            "complete": "POST /api/v1/appointments/{appointment_id}/complete",
            "no_show": "POST /api/v1/appointments/{appointment_id}/no-show",
            "block_slot": "POST /api/v1/doctors/{doctor_id}/slots/block",
            "metrics": "GET /metrics",
            "health": "GET /health"
        }
    }


if __name__ == "__main__":
    # Local development only
    import uvicorn
    port = int(os.getenv("PORT", "8005"))
    workers = int(os.getenv("WORKERS", "1"))

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=port,
        workers=workers,
        log_level="info"
    )
