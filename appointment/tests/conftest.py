"""
Test configuration and fixtures for appointment service tests.

Mocks the Redis client with a dict-backed AsyncMock and wires a real
orchestrator on top of the scheduling core, seeded into a fresh in-memory
SQLite database per test. The clock is
fixed at Monday 2030-01-07 07:00, so Tuesday 2030-01-08 is a normal working
day for both demo doctors.
"""

import httpx
import pytest
import pytest_asyncio
from datetime import date, datetime, time
from unittest.mock import AsyncMock, patch

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
from scheduling.seed import seed_demo_data

from ..app import app
from ..config import AppointmentConfig
from ..dialogue_manager import DialogueManager
from ..orchestrator import TurnOrchestrator
from ..session_store import SessionStore

NOW = datetime(2030, 1, 7, 7, 0)
TUESDAY = date(2030, 1, 8)


@pytest.fixture
def test_config():
    """Test configuration fixture"""
    return AppointmentConfig(
        redis_url="redis://localhost:6379",
        session_ttl=1800,
        log_state_transitions=False,
    )


@pytest.fixture
def mock_redis_client():
    """Mock Redis client for testing"""
    mock_client = AsyncMock()
    # Store for session data persistence across calls
    stored_data = {}

    async def mock_get(key):
        return stored_data.get(key)

    async def mock_setex(key, ttl, value):
        stored_data[key] = value
        return True

    async def mock_delete(key):
        if key in stored_data:
            del stored_data[key]
            return 1
        return 0

    async def mock_exists(key):
        return 1 if key in stored_data else 0

    async def mock_expire(key, ttl):
        return key in stored_data

    async def mock_ttl(key):
        return 1800 if key in stored_data else -2

    async def mock_scan(cursor, match=None, count=None):
        prefix = (match or "*").rstrip("*")
        return 0, [key for key in stored_data if key.startswith(prefix)]

    mock_client.get.side_effect = mock_get
    mock_client.setex.side_effect = mock_setex
    mock_client.delete.side_effect = mock_delete
    mock_client.exists.side_effect = mock_exists
    mock_client.expire.side_effect = mock_expire
    mock_client.ttl.side_effect = mock_ttl
    mock_client.scan.side_effect = mock_scan
    mock_client.ping.return_value = True
    mock_client.stored_data = stored_data
    return mock_client


@pytest.fixture
def session_store(mock_redis_client, test_config):
    return SessionStore(mock_redis_client, test_config)


# ============================================================================
# Scheduling core
# ============================================================================

@pytest.fixture
def scheduling_config():
    return SchedulingConfig()


@pytest_asyncio.fixture
async def database():
    await init_database("sqlite://:memory:")
    yield
    await close_database()


@pytest_asyncio.fixture
async def repository(database):
    """Dr. John Smith (id 1, 2 slots) and Dr. Sarah Johnson (id 2, 4 slots)"""
    return await seed_demo_data(SchedulingRepository())


@pytest.fixture
def appointment_service(repository, scheduling_config):
    allocator = SlotAllocator(repository, scheduling_config)
    validator = SchedulingValidator(repository, allocator, scheduling_config, clock=lambda: NOW)
    return AppointmentService(repository, allocator, validator, scheduling_config)


@pytest.fixture
def doctor_directory(repository):
    return DoctorDirectory(repository)


@pytest.fixture
def patient_registry(repository):
    return PatientRegistry(repository)


@pytest_asyncio.fixture
async def patient(patient_registry):
    """Registered patient Jane Doe"""
    return await patient_registry.create_patient("Jane", "Doe", "+96170123456", date(1990, 5, 15))


@pytest_asyncio.fixture
async def booked_appointment(appointment_service, patient):
    """Jane Doe with Dr. John Smith on Tuesday at 09:00"""
    return await appointment_service.book_appointment(patient.id, 1, TUESDAY, time(9, 0))


# ============================================================================
# Conversation
# ============================================================================

@pytest.fixture
def intent_config():
    return IntentConfig(gemini_api_key=None, log_classifications=False)


@pytest.fixture
def dialogue_manager():
    return DialogueManager(log_transitions=False)


@pytest.fixture
def orchestrator(
    session_store, test_config, intent_config, dialogue_manager,
    appointment_service, doctor_directory, patient_registry,
):
    """Orchestrator with rules-only NLU"""
    return TurnOrchestrator(
        session_store=session_store,
        intent_parser=IntentClassifier(intent_config, use_llm=False),
        entity_extractor=EntityExtractor(intent_config, clock=lambda: NOW, use_llm=False),
        dialogue_manager=dialogue_manager,
        appointment_service=appointment_service,
        doctor_directory=doctor_directory,
        patient_registry=patient_registry,
        config=test_config,
    )


@pytest_asyncio.fixture
async def client(
    mock_redis_client, test_config, session_store, orchestrator,
    appointment_service, doctor_directory, patient_registry,
):
    """Async HTTP client on the app with mocked dependencies"""
    with patch('appointment.app.redis_client', mock_redis_client), \
         patch('appointment.app.config', test_config), \
         patch('appointment.app.session_store', session_store), \
         patch('appointment.app.orchestrator', orchestrator), \
         patch('appointment.app.appointment_service', appointment_service), \
         patch('appointment.app.doctor_directory', doctor_directory), \
         patch('appointment.app.patient_registry', patient_registry):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
            yield http_client
