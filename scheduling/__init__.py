"""
Scheduling core: slot allocation, booking validation and appointments.
"""

from .appointment_service import AppointmentService
from .config import SchedulingConfig
from .database import close_database, init_database
from .directory import DoctorDirectory, PatientRegistry
from .repository import SchedulingRepository
from .slot_allocator import SlotAllocator
from .validator import SchedulingValidator

__all__ = [
    "AppointmentService",
    "DoctorDirectory",
    "PatientRegistry",
    "SchedulingConfig",
    "SchedulingRepository",
    "SchedulingValidator",
    "SlotAllocator",
    "close_database",
    "init_database",
]
