"""
Data models for the scheduling core

Doctors, their weekly schedules and date exceptions, patients, the per-day
slot grid and appointments, stored through Tortoise ORM.

Clock times are stored as minutes after midnight and exposed as ``time``
values through properties.
"""

from dataclasses import dataclass
from datetime import datetime, time
from enum import Enum
from typing import Any, Dict, Optional

from tortoise import fields, models
from tortoise.indexes import Index


# ============================================================================
# Enums
# ============================================================================

class SlotStatus(str, Enum):
    """Lifecycle of one slot in a doctor's day"""
    AVAILABLE = "available"
    BOOKED = "booked"
    BLOCKED = "blocked"


class AppointmentStatus(str, Enum):
    """Lifecycle of an appointment"""
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class ScheduleExceptionType(str, Enum):
    """Date-specific override of a doctor's weekly schedule"""
    DAY_OFF = "day_off"
    CUSTOM_HOURS = "custom_hours"


# Appointments that still hold slots and count against the patient's day
ACTIVE_APPOINTMENT_STATUSES = (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)

# Appointments that can no longer be cancelled or moved
CLOSED_APPOINTMENT_STATUSES = (AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW)


def to_minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def from_minutes(value: int) -> time:
    return time(value // 60, value % 60)


@dataclass(frozen=True)
class WorkingHours:
    """Opening hours for one day"""
    start: time
    end: time

    def __post_init__(self):
        if self.start >= self.end:
            raise ValueError(f"Working hours start {self.start} must be before end {self.end}")


# ============================================================================
# Doctors
# ============================================================================

class Department(models.Model):
    id = fields.IntField(pk=True)
    name = fields.CharField(max_length=100, unique=True)
    description = fields.TextField(null=True)

    class Meta:
        table = "departments"


class Doctor(models.Model):
    """A doctor; weekly hours live in DoctorSchedule rows"""
    id = fields.IntField(pk=True)
    first_name = fields.CharField(max_length=100)
    last_name = fields.CharField(max_length=100)
    department = fields.ForeignKeyField(
        "models.Department", related_name="doctors", null=True, on_delete=fields.SET_NULL
    )
    specialization = fields.CharField(max_length=100, null=True)
    slots_per_appointment = fields.IntField(default=2)
    max_appointments_per_day = fields.IntField(default=12)
    is_active = fields.BooleanField(default=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "doctors"

    @property
    def display_name(self) -> str:
        return f"Dr. {self.first_name} {self.last_name}"

    @property
    def department_name(self) -> Optional[str]:
        # Only set when the department relation has been fetched
        department = self.department
        return department.name if isinstance(department, Department) else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.display_name,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "department": self.department_name,
            "specialization": self.specialization,
            "slots_per_appointment": self.slots_per_appointment,
            "max_appointments_per_day": self.max_appointments_per_day,
            "is_active": self.is_active,
        }


class DoctorSchedule(models.Model):
    """Working hours of a doctor for one Python weekday (Monday=0)"""
    id = fields.IntField(pk=True)
    doctor = fields.ForeignKeyField("models.Doctor", related_name="schedule", on_delete=fields.CASCADE)
    weekday = fields.IntField()
    start_minute = fields.IntField()
    end_minute = fields.IntField()

    class Meta:
        table = "doctor_schedules"
        unique_together = (("doctor_id", "weekday"),)

    @property
    def hours(self) -> WorkingHours:
        return WorkingHours(from_minutes(self.start_minute), from_minutes(self.end_minute))


class ScheduleException(models.Model):
    """Day off or custom hours for a specific date"""
    id = fields.IntField(pk=True)
    doctor = fields.ForeignKeyField("models.Doctor", related_name="exceptions", on_delete=fields.CASCADE)
    date = fields.DateField()
    type = fields.CharEnumField(ScheduleExceptionType)
    start_minute = fields.IntField(null=True)
    end_minute = fields.IntField(null=True)
    reason = fields.CharField(max_length=255, null=True)

    class Meta:
        table = "schedule_exceptions"
        indexes = [Index(fields=["doctor_id", "date"])]

    @property
    def hours(self) -> Optional[WorkingHours]:
        if self.start_minute is None or self.end_minute is None:
            return None
        return WorkingHours(from_minutes(self.start_minute), from_minutes(self.end_minute))


# ============================================================================
# Patients
# ============================================================================

class Patient(models.Model):
    id = fields.IntField(pk=True)
    first_name = fields.CharField(max_length=100)
    last_name = fields.CharField(max_length=100)
    phone = fields.CharField(max_length=32, index=True)
    date_of_birth = fields.DateField(null=True)
    email = fields.CharField(max_length=255, null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "patients"

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "date_of_birth": self.date_of_birth.isoformat() if self.date_of_birth else None,
            "email": self.email,
        }


# ============================================================================
# Slot grid and appointments
# ============================================================================

class Slot(models.Model):
    """One fixed-duration unit of a doctor's day"""
    id = fields.IntField(pk=True)
    doctor = fields.ForeignKeyField("models.Doctor", related_name="slots", on_delete=fields.CASCADE)
    date = fields.DateField()
    slot_number = fields.IntField()
    start_minute = fields.IntField()
    end_minute = fields.IntField()
    status = fields.CharEnumField(SlotStatus, default=SlotStatus.AVAILABLE)
    appointment = fields.ForeignKeyField(
        "models.Appointment", related_name="slots", null=True, on_delete=fields.SET_NULL
    )
    block_reason = fields.CharField(max_length=255, null=True)

    class Meta:
        table = "slots"
        unique_together = (("doctor_id", "date", "slot_number"),)

    @property
    def start_time(self) -> time:
        return from_minutes(self.start_minute)

    @property
    def end_time(self) -> time:
        return from_minutes(self.end_minute)

    @property
    def is_available(self) -> bool:
        return self.status == SlotStatus.AVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "doctor_id": self.doctor_id,
            "date": self.date.isoformat(),
            "slot_number": self.slot_number,
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "status": self.status.value,
            "appointment_id": self.appointment_id,
        }


class Appointment(models.Model):
    id = fields.IntField(pk=True)
    patient = fields.ForeignKeyField("models.Patient", related_name="appointments", on_delete=fields.CASCADE)
    doctor = fields.ForeignKeyField("models.Doctor", related_name="appointments", on_delete=fields.CASCADE)
    date = fields.DateField()
    start_minute = fields.IntField()
    end_minute = fields.IntField()
    slot_count = fields.IntField()
    status = fields.CharEnumField(AppointmentStatus, default=AppointmentStatus.SCHEDULED)
    reason = fields.TextField(null=True)
    cancelled_at = fields.DatetimeField(null=True)
    cancellation_reason = fields.TextField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "appointments"
        indexes = [
            Index(fields=["patient_id", "date"]),
            Index(fields=["doctor_id", "date"]),
        ]

    @property
    def start_time(self) -> time:
        return from_minutes(self.start_minute)

    @property
    def end_time(self) -> time:
        return from_minutes(self.end_minute)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_APPOINTMENT_STATUSES

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.date, self.start_time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "doctor_id": self.doctor_id,
            "date": self.date.isoformat(),
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "slot_count": self.slot_count,
            "status": self.status.value,
            "reason": self.reason,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "cancellation_reason": self.cancellation_reason,
        }
