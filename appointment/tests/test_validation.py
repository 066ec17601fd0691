"""
Tests for value normalization and correction detection
"""

import pytest
from datetime import date, time

from ..models import ConversationState
from ..validation import (
    detect_patient_correction,
    extract_corrected_value,
    format_date_long,
    format_time_12h,
    normalize_date,
    normalize_name,
    normalize_phone,
    normalize_time,
    validate_name,
    validate_phone,
)


class TestValidation:
    def test_full_name_required(self):
        assert validate_name("Jane Doe") == (True, "")
        assert validate_name("Jane")[0] is False
        assert validate_name("J4ne Doe")[0] is False

    @pytest.mark.parametrize("phone,valid", [
        ("70 123 456", True),
        ("+44 20 7946 0958", True),
        ("12345", False),
        ("1234567890123456", False),
    ])
    def test_phone_length(self, phone, valid):
        assert validate_phone(phone)[0] is valid


class TestNormalization:
    def test_local_phone_gets_country_code(self):
        assert normalize_phone("70-123-456") == "+96170123456"

    def test_international_phone_kept(self):
        assert normalize_phone("+44 20 7946 0958") == "+442079460958"

    def test_name_casing(self):
        assert normalize_name("  jane   DOE ") == "Jane Doe"

    @pytest.mark.parametrize("raw,expected", [
        ("1990-05-15", "1990-05-15"),
        ("05/15/1990", "1990-05-15"),
        ("May 15, 1990", "1990-05-15"),
        ("May 15th 1990", "1990-05-15"),
        ("15 May 1990", "1990-05-15"),
        ("5/15/90", "1990-05-15"),
        ("31/12/1990", "1990-12-31"),
        ("31-12-1990", "1990-12-31"),
        ("25/5/90", "1990-05-25"),
    ])
    def test_dates(self, raw, expected):
        assert normalize_date(raw) == expected

    def test_two_digit_year_for_appointments(self):
        assert normalize_date("1/8/30", two_digit_century=2000) == "2030-01-08"

    def test_unparseable_date(self):
        assert normalize_date("sometime soon") is None
        assert normalize_date("02/30/2030") is None
        assert normalize_date("45/45/1990") is None

    def test_month_first_wins_when_both_fit(self):
        assert normalize_date("04/05/1990") == "1990-04-05"

    @pytest.mark.parametrize("raw,expected", [
        ("9am", "09:00"),
        ("9:30 pm", "21:30"),
        ("12 pm", "12:00"),
        ("12 am", "00:00"),
        ("14:15", "14:15"),
    ])
    def test_times(self, raw, expected):
        assert normalize_time(raw) == expected

    def test_invalid_time(self):
        assert normalize_time("25:00") is None
        assert normalize_time("13 pm") is None

    def test_read_back_formatting(self):
        assert format_time_12h(time(14, 30)) == "02:30 PM"
        assert format_date_long(date(2030, 1, 8)) == "Tuesday, January 08, 2030"


class TestCorrectionDetection:
    def test_name_correction_while_selecting_date(self):
        correction = detect_patient_correction("Actually my name is janet doe", ConversationState.SELECT_DATE)

        assert correction == ("patient_name", "Janet Doe")

    def test_phone_correction(self):
        correction = detect_patient_correction(
            "sorry, my phone number is 71234567", ConversationState.CONFIRM_BOOKING
        )

        assert correction == ("phone", "+96171234567")

    def test_birthday_correction(self):
        correction = detect_patient_correction(
            "wait, my birthday is 05/15/1990", ConversationState.SELECT_SLOT
        )

        assert correction == ("date_of_birth", "1990-05-15")

    def test_not_detected_while_collecting(self):
        assert detect_patient_correction("my name is Jane Doe", ConversationState.COLLECT_PATIENT_NAME) is None

    def test_phrase_without_value(self):
        assert detect_patient_correction("what's my number again?", ConversationState.SELECT_DATE) is None

    def test_day_first_birthday_correction(self):
        correction = detect_patient_correction(
            "actually my birthday is 31/12/1990", ConversationState.SELECT_DATE
        )

        assert correction == ("date_of_birth", "1990-12-31")

    def test_unreadable_birthday_is_flagged(self):
        correction = detect_patient_correction(
            "actually my birthday is 45/45/1990", ConversationState.SELECT_DATE
        )

        assert correction == ("date_of_birth", None)

    def test_corrected_value_is_normalized(self):
        assert extract_corrected_value("my dob is 1990-5-15", "date_of_birth") == "1990-05-15"
        assert extract_corrected_value("my dob is 45/45/1990", "date_of_birth") is None
        assert extract_corrected_value("call me maybe", "unknown_field") is None
