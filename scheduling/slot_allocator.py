"""
Slot Allocator

Owns each doctor's per-day time grid: generates the slots for a date from the
doctor's schedule, answers availability queries and atomically books and
releases contiguous slot ranges.

Days are materialized lazily the first time they are read. ``book()`` locks
exactly the target rows before verifying and flipping them.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from .config import SchedulingConfig
from .exceptions import DoctorNotFoundError, InactiveDoctorError, ResourceConflictError
from .models import Doctor, ScheduleExceptionType, Slot, SlotStatus, WorkingHours, to_minutes
from .repository import SchedulingRepository

logger = logging.getLogger(__name__)


class SlotAllocator:
    """Generates, queries and reserves doctor slots"""

    def __init__(self, repository: SchedulingRepository, config: SchedulingConfig):
        self.repository = repository
        self.config = config
        self._duration = timedelta(minutes=config.slot_duration_minutes)

    # ------------------------------------------------------------------
    # Schedule resolution
    # ------------------------------------------------------------------

    async def _get_doctor(self, doctor_id: int) -> Doctor:
        doctor = await self.repository.get_doctor(doctor_id)
        if doctor is None:
            raise DoctorNotFoundError(doctor_id)
        return doctor

    def is_weekend(self, day: date) -> bool:
        return self.config.block_weekends and day.weekday() in self.config.weekend_days

    async def working_hours_for(self, doctor: Doctor, day: date) -> Optional[WorkingHours]:
        """
        Working hours of a doctor on a date.

        Custom-hours exceptions win over the weekly schedule. Returns None for
        weekends, day-off exceptions and days without a schedule.
        """
        if self.is_weekend(day):
            return None

        exception = await self.repository.get_schedule_exception(doctor.id, day)
        if exception is not None:
            if exception.type == ScheduleExceptionType.DAY_OFF:
                return None
            if exception.hours is not None:
                return exception.hours

        return await self.repository.get_weekly_hours(doctor.id, day.weekday())

    # ------------------------------------------------------------------
    # Generation and queries
    # ------------------------------------------------------------------

    async def _build_slots(self, doctor: Doctor, day: date) -> List[Slot]:
        hours = await self.working_hours_for(doctor, day)
        if hours is None:
            return []

        slots = []
        cursor = datetime.combine(day, hours.start)
        close = datetime.combine(day, hours.end)
        number = 1
        while cursor + self._duration <= close:
            slots.append(Slot(
                doctor_id=doctor.id,
                date=day,
                slot_number=number,
                start_minute=to_minutes(cursor.time()),
                end_minute=to_minutes((cursor + self._duration).time()),
            ))
            cursor += self._duration
            number += 1
        return slots

    async def generate_slots(self, doctor_id: int, day: date) -> List[Slot]:
        """
        (Re)generate the slot grid of a doctor for a date.

        An empty list means the doctor does not work that day. Regenerating a
        day that holds booked slots raises ResourceConflictError.
        """
        doctor = await self._get_doctor(doctor_id)
        if not doctor.is_active:
            raise InactiveDoctorError()

        slots = await self._build_slots(doctor, day)

        async with self.repository.transaction():
            existing = await self.repository.get_day_slots(doctor_id, day)
            locked = await self.repository.lock_slots(doctor_id, day, [s.slot_number for s in existing])
            if any(s.status == SlotStatus.BOOKED for s in locked):
                raise ResourceConflictError(
                    "Cannot regenerate slots for a day with booked appointments.",
                    {"doctor_id": doctor_id, "date": day.isoformat()},
                )
            stored = await self.repository.store_day_slots(doctor_id, day, slots, replace=True)

        logger.info(f"Generated {len(stored)} slots for doctor {doctor_id} on {day}")
        return stored

    async def _day_slots(self, doctor_id: int, day: date) -> List[Slot]:
        day_slots = await self.repository.get_day_slots(doctor_id, day)
        if not day_slots:
            doctor = await self._get_doctor(doctor_id)
            if not doctor.is_active:
                raise InactiveDoctorError()
            built = await self._build_slots(doctor, day)
            if built:
                day_slots = await self.repository.store_day_slots(doctor_id, day, built)
        return day_slots

    async def get_slots(self, doctor_id: int, day: date) -> List[Slot]:
        """Every slot of the day regardless of status"""
        return await self._day_slots(doctor_id, day)

    async def available_slots(
        self, doctor_id: int, day: date, include_appointment_id: Optional[int] = None
    ) -> List[Slot]:
        """
        Available slots ordered by slot number.

        Slots held by ``include_appointment_id`` count as available, which lets
        a reschedule overlap the appointment's own current range.
        """
        return [
            slot for slot in await self.get_slots(doctor_id, day)
            if slot.is_available
            or (include_appointment_id is not None and slot.appointment_id == include_appointment_id)
        ]

    async def consecutive_groups(
        self,
        doctor_id: int,
        day: date,
        count: int,
        include_appointment_id: Optional[int] = None,
    ) -> List[List[Slot]]:
        """Every window of ``count`` available slots with sequential numbers"""
        if count < 1:
            return []

        available = await self.available_slots(doctor_id, day, include_appointment_id)
        groups = []
        for i in range(len(available) - count + 1):
            window = available[i:i + count]
            if all(
                window[j + 1].slot_number == window[j].slot_number + 1
                for j in range(count - 1)
            ):
                groups.append(window)
        return groups

    async def slot_number_at(self, doctor_id: int, day: date, start: time) -> Optional[int]:
        """Slot number of the day's slot starting exactly at ``start``"""
        number = await self.time_to_slot_number(start, doctor_id, day)
        if number is None or await self.slot_number_to_time(number, doctor_id, day) != start:
            return None
        for slot in await self.get_slots(doctor_id, day):
            if slot.slot_number == number and slot.start_time == start:
                return number
        return None

    async def available_time_slots(self, doctor_id: int, day: date, count: int) -> List[Dict[str, Any]]:
        """Consecutive groups as start/end time records"""
        return [
            {
                "start_time": group[0].start_time.strftime("%H:%M"),
                "end_time": group[-1].end_time.strftime("%H:%M"),
                "slot_number": group[0].slot_number,
                "duration_minutes": count * self.config.slot_duration_minutes,
            }
            for group in await self.consecutive_groups(doctor_id, day, count)
        ]

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------

    async def book(
        self, doctor_id: int, day: date, start_slot_number: int, count: int, appointment_id: int
    ) -> List[Slot]:
        """
        Reserve ``count`` slots starting at ``start_slot_number``.

        Locks exactly the target rows, then verifies that all of them exist and
        are available before flipping them to booked. Any mismatch raises
        ResourceConflictError and nothing is changed.
        """
        if count < 1:
            raise ResourceConflictError(
                "The requested slot is not available.", {"slot_count": count}
            )

        await self._day_slots(doctor_id, day)
        numbers = list(range(start_slot_number, start_slot_number + count))

        async with self.repository.transaction():
            rows = await self.repository.lock_slots(doctor_id, day, numbers)

            if len(rows) != count:
                logger.warning(
                    f"Slot conflict: doctor {doctor_id} {day} slots {numbers} do not all exist"
                )
                raise ResourceConflictError(
                    "The requested slot is not available.",
                    {"doctor_id": doctor_id, "date": day.isoformat(), "slots": numbers},
                )

            taken = [s.slot_number for s in rows if not s.is_available]
            if taken:
                logger.warning(
                    f"Slot conflict: doctor {doctor_id} {day} slots {taken} already taken"
                )
                raise ResourceConflictError(
                    "The requested slot is already booked.",
                    {"doctor_id": doctor_id, "date": day.isoformat(), "slots": taken},
                )

            for slot in rows:
                slot.status = SlotStatus.BOOKED
                slot.appointment_id = appointment_id
            await self.repository.save_slots(rows)

        logger.info(
            f"Booked slots {numbers[0]}-{numbers[-1]} for doctor {doctor_id} on {day} "
            f"(appointment {appointment_id})"
        )
        return rows

    async def release(self, appointment_id: int) -> int:
        """Return every slot of an appointment to available; returns the count"""
        async with self.repository.transaction():
            slots = await self.repository.slots_for_appointment(appointment_id, lock=True)
            for slot in slots:
                slot.status = SlotStatus.AVAILABLE
                slot.appointment_id = None
            await self.repository.save_slots(slots)

        logger.info(f"Released {len(slots)} slots of appointment {appointment_id}")
        return len(slots)

    async def block_slot(self, doctor_id: int, day: date, slot_number: int, reason: Optional[str] = None) -> Slot:
        """Take a single slot out of circulation"""
        await self._day_slots(doctor_id, day)

        async with self.repository.transaction():
            rows = await self.repository.lock_slots(doctor_id, day, [slot_number])
            if not rows:
                raise ResourceConflictError("The requested slot is not available.")
            slot = rows[0]
            if slot.status == SlotStatus.BOOKED:
                raise ResourceConflictError("The requested slot is already booked.")

            slot.status = SlotStatus.BLOCKED
            slot.block_reason = reason
            await slot.save()

        logger.info(f"Blocked slot {slot_number} for doctor {doctor_id} on {day}")
        return slot

    # ------------------------------------------------------------------
    # Time mapping
    # ------------------------------------------------------------------

    async def _grid_start(self, doctor_id: Optional[int], day: Optional[date]) -> Optional[time]:
        if doctor_id is None or day is None:
            return self.config.day_start
        hours = await self.working_hours_for(await self._get_doctor(doctor_id), day)
        return hours.start if hours else None

    async def time_to_slot_number(
        self, value: time, doctor_id: Optional[int] = None, day: Optional[date] = None
    ) -> Optional[int]:
        """
        1-based slot index of a wall-clock time.

        With a doctor and a day the index is taken on that doctor's grid for
        the day (None when the doctor does not work); otherwise on the
        configured day start.
        """
        start = await self._grid_start(doctor_id, day)
        if start is None:
            return None
        elapsed = datetime.combine(date.min, value) - datetime.combine(date.min, start)
        return int(elapsed // self._duration) + 1

    async def slot_number_to_time(
        self, slot_number: int, doctor_id: Optional[int] = None, day: Optional[date] = None
    ) -> Optional[time]:
        """Start time of a slot number, on the same grid as ``time_to_slot_number``"""
        start = await self._grid_start(doctor_id, day)
        if start is None or slot_number < 1:
            return None
        return (datetime.combine(date.min, start) + (slot_number - 1) * self._duration).time()
