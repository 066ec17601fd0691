"""
Scheduling repository

Async data access for departments, doctors, patients, the slot grid and
appointments on top of Tortoise ORM. Mutations that must be atomic run
inside ``transaction()``; nested calls join the outer transaction, and a
raised exception rolls the whole block back.

Slot rows are locked with ``SELECT ... FOR UPDATE`` ordered by slot number,
so two transactions over overlapping ranges serialize instead of
deadlocking. SQLite has no row locks and serializes whole transactions.
"""

import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from .models import (
    Appointment,
    AppointmentStatus,
    Department,
    Doctor,
    DoctorSchedule,
    Patient,
    ScheduleException,
    ScheduleExceptionType,
    Slot,
    WorkingHours,
    to_minutes,
)

logger = logging.getLogger(__name__)


class SchedulingRepository:
    """Store for the scheduling domain"""

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        async with in_transaction() as connection:
            yield connection

    # ------------------------------------------------------------------
    # Departments and doctors
    # ------------------------------------------------------------------

    async def add_department(self, name: str, description: Optional[str] = None) -> Department:
        return await Department.create(name=name, description=description)

    async def list_departments(self) -> List[Department]:
        return await Department.all().order_by("name")

    async def add_doctor(
        self,
        first_name: str,
        last_name: str,
        department: Optional[Department] = None,
        specialization: Optional[str] = None,
        slots_per_appointment: int = 2,
        max_appointments_per_day: int = 12,
        is_active: bool = True,
        weekly_schedule: Optional[Dict[int, WorkingHours]] = None,
    ) -> Doctor:
        if not 1 <= slots_per_appointment <= 4:
            raise ValueError(f"slots_per_appointment must be 1-4, got {slots_per_appointment}")

        async with self.transaction():
            doctor = await Doctor.create(
                first_name=first_name,
                last_name=last_name,
                department=department,
                specialization=specialization,
                slots_per_appointment=slots_per_appointment,
                max_appointments_per_day=max_appointments_per_day,
                is_active=is_active,
            )
            for weekday, hours in (weekly_schedule or {}).items():
                await DoctorSchedule.create(
                    doctor=doctor,
                    weekday=weekday,
                    start_minute=to_minutes(hours.start),
                    end_minute=to_minutes(hours.end),
                )
        return doctor

    async def get_doctor(self, doctor_id: int) -> Optional[Doctor]:
        return await Doctor.get_or_none(id=doctor_id).prefetch_related("department")

    async def list_doctors(self, active_only: bool = True) -> List[Doctor]:
        query = Doctor.filter(is_active=True) if active_only else Doctor.all()
        return await query.order_by("last_name", "first_name", "id").prefetch_related("department")

    async def set_doctor_active(self, doctor_id: int, is_active: bool):
        await Doctor.filter(id=doctor_id).update(is_active=is_active)

    async def get_weekly_hours(self, doctor_id: int, weekday: int) -> Optional[WorkingHours]:
        row = await DoctorSchedule.get_or_none(doctor_id=doctor_id, weekday=weekday)
        return row.hours if row else None

    async def add_schedule_exception(
        self,
        doctor_id: int,
        day: date,
        exception_type: ScheduleExceptionType,
        hours: Optional[WorkingHours] = None,
        reason: Optional[str] = None,
    ) -> ScheduleException:
        return await ScheduleException.create(
            doctor_id=doctor_id,
            date=day,
            type=exception_type,
            start_minute=to_minutes(hours.start) if hours else None,
            end_minute=to_minutes(hours.end) if hours else None,
            reason=reason,
        )

    async def get_schedule_exception(self, doctor_id: int, day: date) -> Optional[ScheduleException]:
        """Exception registered for a date, day-off first"""
        exceptions = await ScheduleException.filter(doctor_id=doctor_id, date=day).order_by("id")
        for exception in exceptions:
            if exception.type == ScheduleExceptionType.DAY_OFF:
                return exception
        return exceptions[0] if exceptions else None

    # ------------------------------------------------------------------
    # Patients
    # ------------------------------------------------------------------

    async def add_patient(
        self,
        first_name: str,
        last_name: str,
        phone: str,
        date_of_birth: Optional[date] = None,
        email: Optional[str] = None,
    ) -> Patient:
        return await Patient.create(
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            date_of_birth=date_of_birth,
            email=email,
        )

    async def get_patient(self, patient_id: int) -> Optional[Patient]:
        return await Patient.get_or_none(id=patient_id)

    async def list_patients(self) -> List[Patient]:
        return await Patient.all().order_by("id")

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------

    async def add_appointment(self, **values) -> Appointment:
        return await Appointment.create(**values)

    async def get_appointment(self, appointment_id: int, lock: bool = False) -> Optional[Appointment]:
        query = Appointment.filter(id=appointment_id)
        if lock:
            query = query.select_for_update()
        return await query.first()

    async def list_appointments(
        self,
        patient_id: Optional[int] = None,
        doctor_id: Optional[int] = None,
        day: Optional[date] = None,
        statuses: Optional[Iterable[AppointmentStatus]] = None,
    ) -> List[Appointment]:
        """Filter appointments, ordered by date then start time"""
        filters: Dict[str, Any] = {}
        if patient_id is not None:
            filters["patient_id"] = patient_id
        if doctor_id is not None:
            filters["doctor_id"] = doctor_id
        if day is not None:
            filters["date"] = day
        if statuses is not None:
            filters["status__in"] = list(statuses)
        return await Appointment.filter(**filters).order_by("date", "start_minute", "id")

    # ------------------------------------------------------------------
    # Slot grid
    # ------------------------------------------------------------------

    async def get_day_slots(self, doctor_id: int, day: date) -> List[Slot]:
        """Slots of one doctor/day ordered by slot number, empty if not generated"""
        return await Slot.filter(doctor_id=doctor_id, date=day).order_by("slot_number")

    async def lock_slots(self, doctor_id: int, day: date, slot_numbers: Iterable[int]) -> List[Slot]:
        """Lock and return the given rows of a day; must run inside a transaction"""
        return await (
            Slot.filter(doctor_id=doctor_id, date=day, slot_number__in=sorted(set(slot_numbers)))
            .order_by("slot_number")
            .select_for_update()
        )

    async def store_day_slots(self, doctor_id: int, day: date, slots: List[Slot], replace: bool = False) -> List[Slot]:
        """
        Store a generated day.

        Without ``replace`` an already stored day wins, so concurrent lazy
        materialization converges on a single grid.
        """
        try:
            async with self.transaction():
                existing = await Slot.filter(doctor_id=doctor_id, date=day).select_for_update()
                if existing and not replace:
                    return sorted(existing, key=lambda s: s.slot_number)
                if existing:
                    await Slot.filter(doctor_id=doctor_id, date=day).delete()
                if slots:
                    await Slot.bulk_create(slots)
        except IntegrityError:
            if replace:
                raise
            logger.debug(f"Slots for doctor {doctor_id} on {day} were stored concurrently")
        return await self.get_day_slots(doctor_id, day)

    async def save_slots(self, slots: Iterable[Slot]):
        for slot in slots:
            await slot.save()

    async def slots_for_appointment(self, appointment_id: int, lock: bool = False) -> List[Slot]:
        query = Slot.filter(appointment_id=appointment_id).order_by("slot_number")
        if lock:
            query = query.select_for_update()
        return await query
