"""
Demo data for local runs and conversation tests.

One department with two doctors working Monday to Friday, 08:00 to 14:00.
"""

import logging
from datetime import time

from .models import WorkingHours
from .repository import SchedulingRepository

logger = logging.getLogger(__name__)

WEEKDAY_HOURS = WorkingHours(start=time(8, 0), end=time(14, 0))


async def seed_demo_data(repository: SchedulingRepository) -> SchedulingRepository:
    """Populate a repository with the demo department and doctors"""
    general = await repository.add_department(
        "General Medicine", "Primary care and internal medicine consultations"
    )
    schedule = {weekday: WEEKDAY_HOURS for weekday in range(5)}

    await repository.add_doctor(
        first_name="John",
        last_name="Smith",
        department=general,
        specialization="General Practitioner",
        slots_per_appointment=2,
        max_appointments_per_day=12,
        weekly_schedule=schedule,
    )
    await repository.add_doctor(
        first_name="Sarah",
        last_name="Johnson",
        department=general,
        specialization="Internal Medicine",
        slots_per_appointment=4,
        max_appointments_per_day=6,
        weekly_schedule=schedule,
    )

    logger.info("Demo data seeded: 1 department, 2 doctors")
    return repository
