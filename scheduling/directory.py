"""
Doctor directory and patient registry

Lookup services the conversation layer uses to resolve a spoken doctor name
and to match a caller against existing patient records.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Iterable, List, Optional, Tuple

from .exceptions import DoctorNotFoundError, PatientNotFoundError
from .models import Doctor, Patient
from .repository import SchedulingRepository

logger = logging.getLogger(__name__)

_DOCTOR_PREFIX = re.compile(r"^\s*(?:dr\.?|doctor)\s+", re.IGNORECASE)


def strip_doctor_prefix(name: str) -> str:
    """'Dr. Smith' -> 'Smith'"""
    return _DOCTOR_PREFIX.sub("", name or "").strip()


def phone_digits(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


class DoctorDirectory:
    """Search and display helpers over active doctors"""

    def __init__(self, repository: SchedulingRepository):
        self.repository = repository

    async def get(self, doctor_id: int) -> Doctor:
        doctor = await self.repository.get_doctor(doctor_id)
        if doctor is None:
            raise DoctorNotFoundError(doctor_id)
        return doctor

    async def list_active(self) -> List[Doctor]:
        return await self.repository.list_doctors(active_only=True)

    @staticmethod
    def match(doctors: Iterable[Doctor], term: str) -> List[Doctor]:
        """
        Case-insensitive match of a spoken name against a doctor list.

        Matches the first name, last name, full name or specialization. A
        leading "Dr." or "Doctor" is ignored.
        """
        needle = strip_doctor_prefix(term).lower()
        if not needle:
            return []

        matches = []
        for doctor in doctors:
            full_name = f"{doctor.first_name} {doctor.last_name}".lower()
            fields = (
                doctor.first_name.lower(),
                doctor.last_name.lower(),
                full_name,
                (doctor.specialization or "").lower(),
            )
            if any(needle in field for field in fields):
                matches.append(doctor)

        logger.debug(f"Doctor search '{term}' -> {len(matches)} matches")
        return matches

    async def search(self, term: str) -> List[Doctor]:
        return self.match(await self.list_active(), term)

    async def resolve(self, term: str) -> Optional[Doctor]:
        """The doctor a name refers to, or None when zero or several match"""
        matches = await self.search(term)
        return matches[0] if len(matches) == 1 else None

    async def find_by_department(self, department: str) -> List[Doctor]:
        needle = (department or "").strip().lower()
        return [
            d for d in await self.list_active()
            if d.department_name and needle and needle in d.department_name.lower()
        ]

    async def departments(self) -> List[str]:
        return [d.name for d in await self.repository.list_departments()]

    @staticmethod
    def display_label(doctor: Doctor) -> str:
        """'Dr. John Smith (General Medicine)'"""
        if doctor.department_name:
            return f"{doctor.display_name} ({doctor.department_name})"
        return doctor.display_name


@dataclass
class IdentityMatch:
    """Result of a patient identity verification"""
    verified: bool
    patient: Optional[Patient] = None
    confidence: float = 0.0


class PatientRegistry:
    """Patient lookup, identity verification and registration"""

    def __init__(self, repository: SchedulingRepository):
        self.repository = repository

    async def get(self, patient_id: int) -> Patient:
        patient = await self.repository.get_patient(patient_id)
        if patient is None:
            raise PatientNotFoundError(patient_id)
        return patient

    async def lookup_by_phone(self, phone: str) -> List[Patient]:
        digits = phone_digits(phone)
        if not digits:
            return []
        return [p for p in await self.repository.list_patients() if phone_digits(p.phone) == digits]

    @staticmethod
    def split_name(full_name: str) -> Tuple[str, str]:
        parts = (full_name or "").split()
        if not parts:
            return "", ""
        return parts[0], " ".join(parts[1:])

    @staticmethod
    def match_confidence(patient: Patient, first_name: str, last_name: str) -> float:
        """0.5 per exact name part, 0.3 per partial one, capped at 1.0"""
        confidence = 0.0
        for stored, given in ((patient.first_name, first_name), (patient.last_name, last_name)):
            stored, given = stored.lower(), (given or "").lower()
            if not given:
                continue
            if stored == given:
                confidence += 0.5
            elif given in stored:
                confidence += 0.3
        return min(confidence, 1.0)

    async def verify_identity(self, phone: str, first_name: str, last_name: str) -> IdentityMatch:
        """
        Match a caller against patients sharing the phone number.

        Exact (case-insensitive) first and last name matches win; otherwise a
        partial match on both name parts is accepted.
        """
        candidates = await self.lookup_by_phone(phone)

        exact = [
            p for p in candidates
            if p.first_name.lower() == (first_name or "").lower()
            and p.last_name.lower() == (last_name or "").lower()
        ]
        partial = [
            p for p in candidates
            if first_name and last_name
            and first_name.lower() in p.first_name.lower()
            and last_name.lower() in p.last_name.lower()
        ]

        patient = (exact or partial or [None])[0]
        if patient is None:
            return IdentityMatch(verified=False)

        confidence = self.match_confidence(patient, first_name, last_name)
        logger.info(f"Patient {patient.id} verified (confidence {confidence:.1f})")
        return IdentityMatch(verified=True, patient=patient, confidence=confidence)

    async def create_patient(
        self,
        first_name: str,
        last_name: str,
        phone: str,
        date_of_birth: Optional[date] = None,
        email: Optional[str] = None,
    ) -> Patient:
        patient = await self.repository.add_patient(
            first_name=first_name.strip().title(),
            last_name=last_name.strip().title(),
            phone=phone,
            date_of_birth=date_of_birth,
            email=email,
        )
        logger.info(f"Patient {patient.id} registered")
        return patient

    async def find_or_create(
        self, full_name: str, phone: str, date_of_birth: Optional[date] = None
    ) -> Tuple[Patient, bool]:
        """Verified existing patient, or a newly registered one; the flag is True when created"""
        first_name, last_name = self.split_name(full_name)
        match = await self.verify_identity(phone, first_name, last_name)
        if match.verified:
            patient = match.patient
            if date_of_birth and patient.date_of_birth is None:
                patient.date_of_birth = date_of_birth
                await patient.save(update_fields=["date_of_birth"])
            return patient, False
        return await self.create_patient(first_name, last_name, phone, date_of_birth), True
