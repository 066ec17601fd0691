"""
Test configuration and fixtures for the scheduling core.

Every test gets a fresh in-memory SQLite database seeded with the demo
doctors, and a fixed clock: "now" is Monday 2030-01-07 07:00, so Tuesday
2030-01-08 is a normal working day for both demo doctors.
"""

import pytest
import pytest_asyncio
from datetime import date, datetime

from ..appointment_service import AppointmentService
from ..config import SchedulingConfig
from ..database import close_database, init_database
from ..directory import DoctorDirectory, PatientRegistry
from ..repository import SchedulingRepository
from ..seed import seed_demo_data
from ..slot_allocator import SlotAllocator
from ..validator import SchedulingValidator

NOW = datetime(2030, 1, 7, 7, 0)
MONDAY = date(2030, 1, 7)
TUESDAY = date(2030, 1, 8)
WEDNESDAY = date(2030, 1, 9)
SATURDAY = date(2030, 1, 12)


@pytest.fixture
def scheduling_config():
    """Default booking policy"""
    return SchedulingConfig()


@pytest_asyncio.fixture
async def database():
    await init_database("sqlite://:memory:")
    yield
    await close_database()


@pytest_asyncio.fixture
async def repository(database):
    """Repository seeded with Dr. John Smith (id 1) and Dr. Sarah Johnson (id 2)"""
    return await seed_demo_data(SchedulingRepository())


@pytest.fixture
def allocator(repository, scheduling_config):
    return SlotAllocator(repository, scheduling_config)


@pytest.fixture
def validator(repository, allocator, scheduling_config):
    return SchedulingValidator(repository, allocator, scheduling_config, clock=lambda: NOW)


@pytest.fixture
def service(repository, allocator, validator, scheduling_config):
    return AppointmentService(repository, allocator, validator, scheduling_config)


@pytest.fixture
def directory(repository):
    return DoctorDirectory(repository)


@pytest.fixture
def registry(repository):
    return PatientRegistry(repository)


@pytest_asyncio.fixture
async def patient(registry):
    """Registered patient Jane Doe"""
    return await registry.create_patient("Jane", "Doe", "+96170123456", date(1990, 5, 15))


@pytest_asyncio.fixture
async def other_patient(registry):
    return await registry.create_patient("Ali", "Haddad", "+96171987654", date(1985, 3, 2))
