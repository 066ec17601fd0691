"""
Configuration for the scheduling core

Hospital booking policy consumed by the slot allocator and the validator.
The config object is frozen: it is built once at startup and passed into the
components that need it.
"""

import os
import logging
from dataclasses import dataclass
from datetime import datetime, time
from typing import Tuple

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def parse_clock(value: str) -> time:
    """Parse an 'HH:MM' or 'HH:MM:SS' string into a time"""
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(value.strip(), fmt).time()
        except ValueError:
            continue
    raise ValueError(f"Invalid clock time '{value}', expected HH:MM")


@dataclass(frozen=True)
class SchedulingConfig:
    """
    Booking policy for the hospital.

    Attributes:
        hospital_name: Name used in conversation prompts
        slot_duration_minutes: Length of one slot (default: 15)
        day_start: Opening time of the slot grid (default: 08:00)
        day_end: Closing time of the slot grid (default: 14:00)
        block_weekends: Reject bookings on weekend days (default: True)
        weekend_days: Python weekday numbers treated as weekend (default: Sat, Sun)
        booking_advance_days: Furthest bookable day from today (default: 90)
        minimum_notice_hours: Minimum lead time for a booking (default: 2)
        max_appointments_per_patient_per_day: Daily cap per patient (default: 2)
        min_slots_per_appointment: Smallest appointment in slots (default: 1)
        max_slots_per_appointment: Largest appointment in slots (default: 4)
        database_url: Tortoise connection URL of the scheduling store
            (default: sqlite://:memory:)
    """

    hospital_name: str = "City Hospital"
    slot_duration_minutes: int = 15
    day_start: time = time(8, 0)
    day_end: time = time(14, 0)
    block_weekends: bool = True
    weekend_days: Tuple[int, ...] = (5, 6)
    booking_advance_days: int = 90
    minimum_notice_hours: int = 2
    max_appointments_per_patient_per_day: int = 2
    min_slots_per_appointment: int = 1
    max_slots_per_appointment: int = 4
    database_url: str = "sqlite://:memory:"

    def __post_init__(self):
        """Validate configuration after initialization"""
        if self.slot_duration_minutes <= 0:
            raise ValueError(
                f"slot_duration_minutes must be positive, got {self.slot_duration_minutes}"
            )

        if self.day_start >= self.day_end:
            raise ValueError(
                f"day_start must be before day_end, got {self.day_start} >= {self.day_end}"
            )

        if any(day not in range(7) for day in self.weekend_days):
            raise ValueError(
                f"weekend_days must be weekday numbers 0-6, got {self.weekend_days}"
            )

        if self.booking_advance_days < 0:
            raise ValueError(
                f"booking_advance_days must not be negative, got {self.booking_advance_days}"
            )

        if self.minimum_notice_hours < 0:
            raise ValueError(
                f"minimum_notice_hours must not be negative, got {self.minimum_notice_hours}"
            )

        if self.max_appointments_per_patient_per_day < 1:
            raise ValueError(
                f"max_appointments_per_patient_per_day must be at least 1, "
                f"got {self.max_appointments_per_patient_per_day}"
            )

        if not 1 <= self.min_slots_per_appointment <= self.max_slots_per_appointment:
            raise ValueError(
                f"slot count range is invalid: "
                f"[{self.min_slots_per_appointment}, {self.max_slots_per_appointment}]"
            )

    @property
    def working_hours_label(self) -> str:
        """Human readable opening hours, e.g. '08:00 to 14:00'"""
        return f"{self.day_start.strftime('%H:%M')} to {self.day_end.strftime('%H:%M')}"

    @property
    def weekend_label(self) -> str:
        return ", ".join(WEEKDAY_NAMES[day] for day in sorted(self.weekend_days))

    @staticmethod
    def from_env() -> "SchedulingConfig":
        """
        Load configuration from environment variables.

        Environment Variables:
            SCHEDULING_HOSPITAL_NAME: Hospital name (default: City Hospital)
            SCHEDULING_SLOT_DURATION_MINUTES: Slot length (default: 15)
            SCHEDULING_DAY_START: Grid opening time HH:MM (default: 08:00)
            SCHEDULING_DAY_END: Grid closing time HH:MM (default: 14:00)
            SCHEDULING_BLOCK_WEEKENDS: Reject weekend bookings (default: true)
            SCHEDULING_WEEKEND_DAYS: Comma separated weekday numbers (default: 5,6)
            SCHEDULING_ADVANCE_DAYS: Booking horizon in days (default: 90)
            SCHEDULING_MINIMUM_NOTICE_HOURS: Minimum notice (default: 2)
            SCHEDULING_MAX_PER_PATIENT_PER_DAY: Daily cap per patient (default: 2)
            SCHEDULING_MIN_SLOTS: Minimum slots per appointment (default: 1)
            SCHEDULING_MAX_SLOTS: Maximum slots per appointment (default: 4)
            SCHEDULING_DATABASE_URL: Scheduling store URL (default: sqlite://:memory:)

        Returns:
            SchedulingConfig instance loaded from environment
        """
        def _int(name: str, default: int) -> int:
            try:
                return int(os.getenv(name, str(default)))
            except ValueError:
                logger.warning(f"Invalid {name}, using default {default}")
                return default

        def _clock(name: str, default: time) -> time:
            raw = os.getenv(name)
            if not raw:
                return default
            try:
                return parse_clock(raw)
            except ValueError:
                logger.warning(f"Invalid {name}, using default {default.strftime('%H:%M')}")
                return default

        raw_weekend = os.getenv("SCHEDULING_WEEKEND_DAYS", "5,6")
        try:
            weekend_days = tuple(int(day) for day in raw_weekend.split(",") if day.strip())
        except ValueError:
            logger.warning("Invalid SCHEDULING_WEEKEND_DAYS, using default 5,6")
            weekend_days = (5, 6)

        block_weekends = os.getenv(
            "SCHEDULING_BLOCK_WEEKENDS", "true"
        ).lower() in ("true", "1", "yes")

        return SchedulingConfig(
            hospital_name=os.getenv("SCHEDULING_HOSPITAL_NAME", "City Hospital"),
            slot_duration_minutes=_int("SCHEDULING_SLOT_DURATION_MINUTES", 15),
            day_start=_clock("SCHEDULING_DAY_START", time(8, 0)),
            day_end=_clock("SCHEDULING_DAY_END", time(14, 0)),
            block_weekends=block_weekends,
            weekend_days=weekend_days,
            booking_advance_days=_int("SCHEDULING_ADVANCE_DAYS", 90),
            minimum_notice_hours=_int("SCHEDULING_MINIMUM_NOTICE_HOURS", 2),
            max_appointments_per_patient_per_day=_int("SCHEDULING_MAX_PER_PATIENT_PER_DAY", 2),
            min_slots_per_appointment=_int("SCHEDULING_MIN_SLOTS", 1),
            max_slots_per_appointment=_int("SCHEDULING_MAX_SLOTS", 4),
            database_url=os.getenv("SCHEDULING_DATABASE_URL", "sqlite://:memory:"),
        )
