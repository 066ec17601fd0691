"""
Appointment (booking) service

Booking contract exposed to the conversation layer and the HTTP layer:
book, cancel and reschedule, plus appointment queries and status changes.
Each mutation runs the validator first and then commits the appointment
record and the slot changes in one repository transaction.
"""

import logging
from datetime import date, datetime, time
from typing import List, Optional

from .config import SchedulingConfig
from .exceptions import AlreadyCancelledError, AppointmentNotFoundError, PatientNotFoundError
from .models import ACTIVE_APPOINTMENT_STATUSES, Appointment, AppointmentStatus, to_minutes
from .repository import SchedulingRepository
from .slot_allocator import SlotAllocator
from .validator import SchedulingValidator

logger = logging.getLogger(__name__)


class AppointmentService:
    """Creates and manages appointments on top of the allocator and validator"""

    def __init__(
        self,
        repository: SchedulingRepository,
        allocator: SlotAllocator,
        validator: SchedulingValidator,
        config: SchedulingConfig,
    ):
        self.repository = repository
        self.allocator = allocator
        self.validator = validator
        self.config = config

    def _now(self) -> datetime:
        return self.validator.clock()

    async def _get(self, appointment_id: int, lock: bool = False) -> Appointment:
        appointment = await self.repository.get_appointment(appointment_id, lock=lock)
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)
        return appointment

    # ------------------------------------------------------------------
    # Booking contract
    # ------------------------------------------------------------------

    async def book_appointment(
        self,
        patient_id: int,
        doctor_id: int,
        day: date,
        start_time: time,
        slot_count: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Appointment:
        """
        Book an appointment.

        Args:
            patient_id: Existing patient
            doctor_id: Doctor to book
            day: Appointment date
            start_time: Start of the first slot
            slot_count: Number of slots (defaults to the doctor's slots_per_appointment)
            reason: Optional visit reason

        Returns:
            The scheduled Appointment

        Raises:
            PatientNotFoundError, SchedulingPolicyError subclasses,
            PatientConflictError, CapacityError, ResourceConflictError
        """
        if await self.repository.get_patient(patient_id) is None:
            raise PatientNotFoundError(patient_id)

        if slot_count is None:
            doctor = await self.repository.get_doctor(doctor_id)
            slot_count = doctor.slots_per_appointment if doctor else self.config.min_slots_per_appointment

        candidate = await self.validator.validate_booking(patient_id, doctor_id, day, start_time, slot_count)
        start_slot = await self.allocator.slot_number_at(doctor_id, day, start_time)

        async with self.repository.transaction():
            appointment = await self.repository.add_appointment(
                patient_id=patient_id,
                doctor_id=doctor_id,
                date=day,
                start_minute=to_minutes(candidate.start_time),
                end_minute=to_minutes(candidate.end_time),
                slot_count=slot_count,
                reason=reason,
            )
            await self.allocator.book(doctor_id, day, start_slot, slot_count, appointment.id)

        logger.info(
            f"Appointment {appointment.id} booked: patient {patient_id} with doctor {doctor_id} "
            f"on {day} {candidate.start_time.strftime('%H:%M')}-{candidate.end_time.strftime('%H:%M')}"
        )
        return appointment

    async def cancel_appointment(self, appointment_id: int, reason: Optional[str] = None) -> Appointment:
        """Cancel an appointment and release its slots atomically"""
        await self.validator.validate_can_cancel(appointment_id)

        async with self.repository.transaction():
            appointment = await self._get(appointment_id, lock=True)
            await self.allocator.release(appointment.id)
            appointment.status = AppointmentStatus.CANCELLED
            appointment.cancelled_at = self._now()
            appointment.cancellation_reason = reason
            await appointment.save()

        logger.info(f"Appointment {appointment_id} cancelled")
        return appointment

    async def reschedule_appointment(self, appointment_id: int, new_date: date, new_start_time: time) -> Appointment:
        """
        Move an appointment; release and rebook happen in one transaction.

        A moved appointment is scheduled again, so an earlier confirmation
        does not carry over to the new time.
        """
        candidate = await self.validator.validate_reschedule(appointment_id, new_date, new_start_time)

        async with self.repository.transaction():
            appointment = await self._get(appointment_id, lock=True)
            old = (appointment.date, appointment.start_time)
            await self.allocator.release(appointment.id)
            start_slot = await self.allocator.slot_number_at(appointment.doctor_id, new_date, new_start_time)
            appointment.date = new_date
            appointment.start_minute = to_minutes(candidate.start_time)
            appointment.end_minute = to_minutes(candidate.end_time)
            appointment.status = AppointmentStatus.SCHEDULED
            await appointment.save()
            await self.allocator.book(
                appointment.doctor_id, new_date, start_slot, appointment.slot_count, appointment.id
            )

        logger.info(
            f"Appointment {appointment_id} rescheduled from {old[0]} {old[1].strftime('%H:%M')} "
            f"to {new_date} {new_start_time.strftime('%H:%M')}"
        )
        return appointment

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    async def _set_status(self, appointment_id: int, status: AppointmentStatus, release: bool = False) -> Appointment:
        async with self.repository.transaction():
            appointment = await self._get(appointment_id, lock=True)
            if appointment.status == AppointmentStatus.CANCELLED:
                raise AlreadyCancelledError()
            if release:
                await self.allocator.release(appointment.id)
            appointment.status = status
            await appointment.save()

        logger.info(f"Appointment {appointment_id} marked {status.value}")
        return appointment

    async def confirm_appointment(self, appointment_id: int) -> Appointment:
        return await self._set_status(appointment_id, AppointmentStatus.CONFIRMED)

    async def mark_completed(self, appointment_id: int) -> Appointment:
        return await self._set_status(appointment_id, AppointmentStatus.COMPLETED)

    async def mark_no_show(self, appointment_id: int) -> Appointment:
        return await self._set_status(appointment_id, AppointmentStatus.NO_SHOW, release=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_appointment(self, appointment_id: int) -> Appointment:
        return await self._get(appointment_id)

    async def get_upcoming_appointments(self, patient_id: int) -> List[Appointment]:
        """Scheduled or confirmed appointments that have not started yet"""
        now = self._now()
        return [
            a for a in await self.repository.list_appointments(
                patient_id=patient_id, statuses=ACTIVE_APPOINTMENT_STATUSES
            )
            if a.starts_at >= now
        ]

    async def get_patient_appointments(self, patient_id: int) -> List[Appointment]:
        return await self.repository.list_appointments(patient_id=patient_id)

    async def get_doctor_appointments(self, doctor_id: int, day: Optional[date] = None) -> List[Appointment]:
        return await self.repository.list_appointments(
            doctor_id=doctor_id, day=day, statuses=ACTIVE_APPOINTMENT_STATUSES
        )
