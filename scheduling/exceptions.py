"""
Error taxonomy of the scheduling core

Each validator rule has its own SchedulingPolicyError subclass carrying the
rule name, so callers can tell which rule stopped a reservation.
"""

from typing import Any, Dict, Optional

from shared.errors import NotFoundError, ServiceError


class SchedulingError(ServiceError):
    """Base class for booking failures"""

    code = "scheduling_error"


# ============================================================================
# Policy violations (one per validator rule)
# ============================================================================

class SchedulingPolicyError(SchedulingError):
    """A booking request violates a scheduling rule"""

    code = "policy_violation"
    rule = "policy"

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["rule"] = self.rule
        return payload


class PastBookingError(SchedulingPolicyError):
    rule = "not_in_past"

    def __init__(self):
        super().__init__("Cannot book appointments in the past.")


class AdvanceLimitError(SchedulingPolicyError):
    rule = "advance_limit"

    def __init__(self, days: int):
        super().__init__(f"Cannot book appointments more than {days} days in advance.", {"days": days})


class InactiveDoctorError(SchedulingPolicyError):
    rule = "doctor_active"

    def __init__(self):
        super().__init__("The selected doctor is not currently active.")


class MinimumNoticeError(SchedulingPolicyError):
    rule = "minimum_notice"

    def __init__(self, hours: int):
        super().__init__(f"Appointments require at least {hours} hours notice.", {"hours": hours})


class WeekendError(SchedulingPolicyError):
    rule = "not_weekend"

    def __init__(self):
        super().__init__("Cannot book appointments on weekends.")


class DoctorDayOffError(SchedulingPolicyError):
    rule = "doctor_day_off"

    def __init__(self):
        super().__init__("The doctor is not available on this date (day off).")


class OutsideWorkingHoursError(SchedulingPolicyError):
    rule = "working_hours"

    def __init__(self):
        super().__init__("The requested time is outside working hours.")


class InsufficientSlotsError(SchedulingPolicyError):
    rule = "consecutive_slots"

    def __init__(self, required: int):
        super().__init__(
            f"Unable to find {required} consecutive available slots.", {"required": required}
        )


class InvalidSlotCountError(SchedulingPolicyError):
    rule = "slot_count"

    def __init__(self, minimum: int, maximum: int):
        super().__init__(
            f"Slot count must be between {minimum} and {maximum}.",
            {"min": minimum, "max": maximum},
        )


class AlreadyCancelledError(SchedulingPolicyError):
    rule = "not_cancelled"

    def __init__(self):
        super().__init__("This appointment has already been cancelled.")


class AppointmentClosedError(SchedulingPolicyError):
    rule = "appointment_open"

    def __init__(self, status: str):
        label = "marked as a no-show" if status == "no_show" else status
        super().__init__(
            f"This appointment was {label} and can no longer be changed.", {"status": status}
        )


# ============================================================================
# Conflicts and capacity
# ============================================================================

class ResourceConflictError(SchedulingError):
    """Target slots were not available at commit time"""

    code = "slot_conflict"

    def __init__(self, message: str = "The requested slot is not available.",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class PatientConflictError(SchedulingError):
    code = "patient_conflict"

    def __init__(self):
        super().__init__("Patient has a conflicting appointment at this time.")


class CapacityError(SchedulingError):
    code = "capacity_reached"

    def __init__(self, maximum: int):
        super().__init__(
            f"Patient has reached the maximum of {maximum} appointments per day.",
            {"max": maximum},
        )


# ============================================================================
# Missing records
# ============================================================================

class DoctorNotFoundError(NotFoundError):
    def __init__(self, doctor_id: Optional[int] = None):
        super().__init__("The specified doctor was not found.", {"doctor_id": doctor_id})


class PatientNotFoundError(NotFoundError):
    def __init__(self, patient_id: Optional[int] = None):
        super().__init__("The specified patient was not found.", {"patient_id": patient_id})


class AppointmentNotFoundError(NotFoundError):
    def __init__(self, appointment_id: Optional[int] = None):
        super().__init__(
            "The specified appointment was not found.", {"appointment_id": appointment_id}
        )
