"""
Scheduling Validator

Gates every booking and reschedule through an ordered, fail-fast chain of
named rules. The first violated rule raises its own error type; nothing is
mutated by validation.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Awaitable, Callable, List, Optional, Tuple

from .config import SchedulingConfig
from .exceptions import (
    AdvanceLimitError,
    AlreadyCancelledError,
    AppointmentClosedError,
    AppointmentNotFoundError,
    CapacityError,
    DoctorDayOffError,
    DoctorNotFoundError,
    InactiveDoctorError,
    InsufficientSlotsError,
    InvalidSlotCountError,
    MinimumNoticeError,
    OutsideWorkingHoursError,
    PastBookingError,
    PatientConflictError,
    WeekendError,
)
from .models import (
    ACTIVE_APPOINTMENT_STATUSES,
    CLOSED_APPOINTMENT_STATUSES,
    Appointment,
    AppointmentStatus,
    Doctor,
    ScheduleExceptionType,
)
from .repository import SchedulingRepository
from .slot_allocator import SlotAllocator

logger = logging.getLogger(__name__)

Rule = Callable[["BookingCandidate"], Awaitable[None]]


@dataclass(frozen=True)
class BookingCandidate:
    """A reservation under validation"""
    patient_id: int
    doctor_id: int
    date: date
    start_time: time
    slot_count: int
    slot_duration_minutes: int
    exclude_appointment_id: Optional[int] = None

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.date, self.start_time)

    @property
    def end_at(self) -> datetime:
        return self.start_at + timedelta(minutes=self.slot_count * self.slot_duration_minutes)

    @property
    def end_time(self) -> time:
        return self.end_at.time()


class SchedulingValidator:
    """
    Ordered booking rule chain.

    Rules run in this order:
        1. not_in_past
        2. advance_limit
        3. doctor_active
        4. minimum_notice
        5. not_weekend
        6. doctor_day_off
        7. working_hours
        8. consecutive_slots
        9. patient_conflict
        10. daily_cap
        11. slot_count
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        allocator: SlotAllocator,
        config: SchedulingConfig,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.allocator = allocator
        self.config = config
        self.clock = clock or datetime.now

        self.rules: Tuple[Tuple[str, Rule], ...] = (
            ("not_in_past", self._check_not_in_past),
            ("advance_limit", self._check_advance_limit),
            ("doctor_active", self._check_doctor_active),
            ("minimum_notice", self._check_minimum_notice),
            ("not_weekend", self._check_not_weekend),
            ("doctor_day_off", self._check_day_off),
            ("working_hours", self._check_working_hours),
            ("consecutive_slots", self._check_consecutive_slots),
            ("patient_conflict", self._check_patient_conflict),
            ("daily_cap", self._check_daily_cap),
            ("slot_count", self._check_slot_count),
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def validate_booking(
        self,
        patient_id: int,
        doctor_id: int,
        day: date,
        start_time: time,
        slot_count: int,
        exclude_appointment_id: Optional[int] = None,
    ) -> BookingCandidate:
        """Run the full rule chain; returns the validated candidate"""
        candidate = BookingCandidate(
            patient_id=patient_id,
            doctor_id=doctor_id,
            date=day,
            start_time=start_time,
            slot_count=slot_count,
            slot_duration_minutes=self.config.slot_duration_minutes,
            exclude_appointment_id=exclude_appointment_id,
        )

        for name, rule in self.rules:
            try:
                await rule(candidate)
            except Exception as e:
                logger.info(f"Booking rejected by rule '{name}': {e}")
                raise

        return candidate

    async def validate_reschedule(self, appointment_id: int, new_date: date, new_start_time: time) -> BookingCandidate:
        """Same chain as a booking; the moved appointment is ignored by rules 8-10"""
        appointment = await self.validate_can_cancel(appointment_id)
        return await self.validate_booking(
            appointment.patient_id,
            appointment.doctor_id,
            new_date,
            new_start_time,
            appointment.slot_count,
            exclude_appointment_id=appointment.id,
        )

    async def validate_can_cancel(self, appointment_id: int) -> Appointment:
        """An appointment that may still be cancelled or moved"""
        appointment = await self.repository.get_appointment(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)
        if appointment.status == AppointmentStatus.CANCELLED:
            raise AlreadyCancelledError()
        if appointment.status in CLOSED_APPOINTMENT_STATUSES:
            raise AppointmentClosedError(appointment.status.value)
        return appointment

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    async def _doctor(self, candidate: BookingCandidate) -> Doctor:
        doctor = await self.repository.get_doctor(candidate.doctor_id)
        if doctor is None:
            raise DoctorNotFoundError(candidate.doctor_id)
        return doctor

    async def _check_not_in_past(self, candidate: BookingCandidate):
        if candidate.start_at < self.clock():
            raise PastBookingError()

    async def _check_advance_limit(self, candidate: BookingCandidate):
        horizon = self.clock().date() + timedelta(days=self.config.booking_advance_days)
        if candidate.date > horizon:
            raise AdvanceLimitError(self.config.booking_advance_days)

    async def _check_doctor_active(self, candidate: BookingCandidate):
        if not (await self._doctor(candidate)).is_active:
            raise InactiveDoctorError()

    async def _check_minimum_notice(self, candidate: BookingCandidate):
        earliest = self.clock() + timedelta(hours=self.config.minimum_notice_hours)
        if candidate.start_at < earliest:
            raise MinimumNoticeError(self.config.minimum_notice_hours)

    async def _check_not_weekend(self, candidate: BookingCandidate):
        if self.allocator.is_weekend(candidate.date):
            raise WeekendError()

    async def _check_day_off(self, candidate: BookingCandidate):
        exception = await self.repository.get_schedule_exception(candidate.doctor_id, candidate.date)
        if exception is not None and exception.type == ScheduleExceptionType.DAY_OFF:
            raise DoctorDayOffError()

    async def _check_working_hours(self, candidate: BookingCandidate):
        hours = await self.allocator.working_hours_for(await self._doctor(candidate), candidate.date)
        if hours is None:
            raise OutsideWorkingHoursError()

        opens = datetime.combine(candidate.date, hours.start)
        closes = datetime.combine(candidate.date, hours.end)
        if candidate.start_at < opens or candidate.end_at > closes:
            raise OutsideWorkingHoursError()

    async def _check_consecutive_slots(self, candidate: BookingCandidate):
        start_slot = await self.allocator.slot_number_at(
            candidate.doctor_id, candidate.date, candidate.start_time
        )
        if start_slot is None:
            raise InsufficientSlotsError(candidate.slot_count)

        groups = await self.allocator.consecutive_groups(
            candidate.doctor_id,
            candidate.date,
            candidate.slot_count,
            include_appointment_id=candidate.exclude_appointment_id,
        )
        if not any(group[0].slot_number == start_slot for group in groups):
            raise InsufficientSlotsError(candidate.slot_count)

    async def _patient_day_appointments(self, candidate: BookingCandidate) -> List[Appointment]:
        return [
            a for a in await self.repository.list_appointments(
                patient_id=candidate.patient_id,
                day=candidate.date,
                statuses=ACTIVE_APPOINTMENT_STATUSES,
            )
            if a.id != candidate.exclude_appointment_id
        ]

    async def _check_patient_conflict(self, candidate: BookingCandidate):
        for existing in await self._patient_day_appointments(candidate):
            existing_start = datetime.combine(existing.date, existing.start_time)
            existing_end = datetime.combine(existing.date, existing.end_time)
            # Covers containment in either direction and overlap on either edge
            if candidate.start_at < existing_end and candidate.end_at > existing_start:
                raise PatientConflictError()

    async def _check_daily_cap(self, candidate: BookingCandidate):
        cap = self.config.max_appointments_per_patient_per_day
        if len(await self._patient_day_appointments(candidate)) >= cap:
            raise CapacityError(cap)

    async def _check_slot_count(self, candidate: BookingCandidate):
        low = self.config.min_slots_per_appointment
        high = self.config.max_slots_per_appointment
        if not low <= candidate.slot_count <= high:
            raise InvalidSlotCountError(low, high)
