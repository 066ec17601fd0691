"""
Validation utilities for the conversational booking service

Normalizes the free-form values the NLU hands back (phone numbers, dates,
times), formats values for read-back, and detects patient-identity
corrections made late in the booking flow.
"""

import re
from datetime import date, datetime, time
from typing import Optional, Tuple

from appointment.models import ConversationState


# ============================================================================
# Patterns
# ============================================================================

NAME_PATTERN = re.compile(r"^[a-zA-Z\s\-']{2,50}$")
TWO_DIGIT_YEAR_DATE = re.compile(r"^(\d{1,2})[/\-\s](\d{1,2})[/\-\s](\d{2})$")
TIME_12H = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*([ap])\.?\s*m\.?$", re.IGNORECASE)
TIME_24H = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")

DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m-%d-%Y",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%B %d %Y",
    "%B %d, %Y",
    "%b %d %Y",
    "%b %d, %Y",
    "%d %B %Y",
)

# States in which a volunteered identity detail is treated as a correction
CORRECTION_STATES = (
    ConversationState.SELECT_DOCTOR,
    ConversationState.SELECT_DATE,
    ConversationState.SHOW_AVAILABLE_SLOTS,
    ConversationState.SELECT_SLOT,
    ConversationState.CONFIRM_BOOKING,
)

CORRECTION_PHRASES = {
    "patient_name": [
        "my name is", "name is", "actually my name", "my real name",
        "call me", "wrong name", "correct name", "my name's",
    ],
    "date_of_birth": [
        "my date of birth", "my birthday", "my dob", "actually my birthday",
        "wrong birthday", "correct dob",
    ],
    "phone": [
        "my phone", "my number", "my phone number", "actually my phone",
        "wrong phone", "correct phone",
    ],
}

CORRECTED_VALUE_PATTERNS = {
    "patient_name": re.compile(
        r"(?:my name is|name is|call me|actually.*?name.*?is|name's)\s+([A-Za-z\s]{2,50})",
        re.IGNORECASE,
    ),
    "date_of_birth": re.compile(
        r"(?:birthday|dob|date of birth)[^\d]*"
        r"(\d{1,2}[/\-\s]\d{1,2}[/\-\s]\d{2,4}|\d{4}[/\-\s]\d{1,2}[/\-\s]\d{1,2})",
        re.IGNORECASE,
    ),
    "phone": re.compile(r"(?:phone|number|contact)[^\d+]*(\+?\d{8,15})", re.IGNORECASE),
}


# ============================================================================
# Validation Functions
# ============================================================================

def validate_name(name: str) -> Tuple[bool, str]:
    """
    Validate a spoken full name.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not name or not NAME_PATTERN.match(name.strip()):
        return False, "I didn't quite catch your name."

    if len(name.split()) < 2:
        return False, "Could you give me your full name (first and last)?"

    return True, ""


def validate_phone(phone: str) -> Tuple[bool, str]:
    """
    Validate phone number length.

    Returns:
        Tuple of (is_valid, error_message)
    """
    digits_only = re.sub(r"\D", "", phone or "")
    if len(digits_only) < 8 or len(digits_only) > 15:
        return False, "That phone number doesn't look right. Could you repeat it?"
    return True, ""


# ============================================================================
# Normalization
# ============================================================================

def normalize_phone(phone: str) -> str:
    """
    Normalize a phone number to E.164.

    Local 8-digit numbers get the 961 country code.
    """
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 8 and not digits.startswith("961"):
        digits = "961" + digits
    return "+" + digits


def normalize_name(name: str) -> str:
    """'  jane   DOE ' -> 'Jane Doe'"""
    return " ".join(part.capitalize() for part in (name or "").split())


def parse_date(value: str, two_digit_century: int = 1900) -> Optional[date]:
    """
    Parse a date in ISO, numeric or month-name form.

    Numeric dates are read month-first and fall back to day-first when the
    first number cannot be a month (31/12/1990). Two-digit years are placed
    in ``two_digit_century``.
    """
    if not value:
        return None
    cleaned = re.sub(r"(\d)(st|nd|rd|th)\b", r"\1", value.strip(), flags=re.IGNORECASE)

    match = TWO_DIGIT_YEAR_DATE.match(cleaned)
    if match:
        first, second, year = (int(g) for g in match.groups())
        for month, day in ((first, second), (second, first)):
            try:
                return date(two_digit_century + year, month, day)
            except ValueError:
                continue
        return None

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    return None


def normalize_date(value: str, two_digit_century: int = 1900) -> Optional[str]:
    """Normalize a date to YYYY-MM-DD, None if unparseable"""
    parsed = parse_date(value, two_digit_century)
    return parsed.isoformat() if parsed else None


def parse_time(value: str) -> Optional[time]:
    """Parse '9am', '9:30 pm', '09:00' or '14:15'"""
    if not value:
        return None
    cleaned = value.strip().lower()

    match = TIME_12H.match(cleaned)
    if match:
        hour, minute, meridiem = int(match.group(1)), int(match.group(2) or 0), match.group(3)
        if not 1 <= hour <= 12 or minute > 59:
            return None
        if meridiem == "p" and hour != 12:
            hour += 12
        elif meridiem == "a" and hour == 12:
            hour = 0
        return time(hour, minute)

    match = TIME_24H.match(cleaned)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            return None
        return time(hour, minute)

    return None


def normalize_time(value: str) -> Optional[str]:
    """Normalize a time to HH:MM (24h), None if unparseable"""
    parsed = parse_time(value)
    return parsed.strftime("%H:%M") if parsed else None


# ============================================================================
# Read-back Formatting
# ============================================================================

def format_time_12h(value: time) -> str:
    """time(9, 0) -> '09:00 AM'"""
    return value.strftime("%I:%M %p")


def format_date_long(value: date) -> str:
    """date(2030, 1, 8) -> 'Tuesday, January 08, 2030'"""
    return value.strftime("%A, %B %d, %Y")


# ============================================================================
# Correction Detection
# ============================================================================

def extract_corrected_value(message: str, field: str) -> Optional[str]:
    """Pull the corrected value for a field out of the message"""
    pattern = CORRECTED_VALUE_PATTERNS.get(field)
    if pattern is None:
        return None

    match = pattern.search(message)
    if not match:
        return None

    raw = match.group(1).strip()
    if field == "patient_name":
        return normalize_name(raw) if len(raw) >= 2 else None
    if field == "date_of_birth":
        return normalize_date(raw)
    return normalize_phone(raw)


def detect_patient_correction(
    message: str, state: ConversationState
) -> Optional[Tuple[str, Optional[str]]]:
    """
    Detect a patient-identity correction.

    Only runs in the doctor/date/slot selection and confirmation states. The
    first phrase that matches and yields an extractable value wins.

    Returns:
        (field, value) where field is patient_name, date_of_birth or phone.
        A date of birth that was given but cannot be read comes back as
        ("date_of_birth", None).
    """
    if state not in CORRECTION_STATES:
        return None

    lowered = (message or "").lower()
    for field, phrases in CORRECTION_PHRASES.items():
        for phrase in phrases:
            if phrase in lowered:
                value = extract_corrected_value(message, field)
                if value is not None:
                    return field, value
                if field == "date_of_birth" and CORRECTED_VALUE_PATTERNS[field].search(message):
                    return field, None
    return None
