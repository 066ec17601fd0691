"""
Entity extraction for the booking line

Regex extraction runs on every message and resolves relative dates against
an injectable clock. When Gemini is configured, its extraction is merged on
top, with the regex values kept for keys Gemini leaves out.
"""

import re
import json
import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import google.generativeai as genai

from shared.errors import CollaboratorError

from .config import IntentConfig
from .intent_classifier import extract_json, generate_with_retry
from .patterns import compile_patterns, get_extraction_prompt, load_intent_patterns

logger = logging.getLogger(__name__)


MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

# Words that surround a bare answer ("it's John Smith please")
FILLER_WORDS = {
    "a", "an", "the", "it", "it's", "its", "is", "i", "i'm", "im", "am", "my", "name",
    "please", "with", "to", "see", "want", "would", "like", "prefer", "dr", "doctor",
    "sure", "yes", "ok", "okay", "um", "uh", "well", "hi", "hello", "thanks", "thank",
    "you", "book", "appointment", "for", "me", "and", "this", "that",
}

# First words that show "I'm ..." is not an introduction
NOT_A_NAME = {
    "not", "looking", "calling", "trying", "here", "fine", "good", "available",
    "free", "sorry", "going", "sure", "just", "also", "having", "feeling", "booking",
    "interested", "a", "an", "the", "in", "at", "on", "so", "very", "still",
    "for", "about", "hoping", "wondering", "new", "ready", "ok", "okay", "done",
    "correct", "right", "great", "urgent",
}

# Words that end a name captured after "my name is"
NAME_TERMINATORS = {
    "and", "i", "my", "phone", "born", "date", "number", "from", "with", "please",
    "calling", "want", "would", "need", "to", "dob", "birthday", "on", "at",
}


class EntityExtractor:
    """
    Extracts patient and booking details from one caller message.

    ``extract`` never raises for regex-only extraction. With Gemini enabled,
    a Gemini failure falls back to the regex result.
    """

    def __init__(
        self,
        config: IntentConfig,
        clock: Optional[Callable[[], datetime]] = None,
        use_llm: bool = True,
    ):
        self.config = config
        self.clock = clock or datetime.now

        patterns = load_intent_patterns()
        compiled = compile_patterns(patterns)
        self.entity_patterns = compiled["entities"]
        self.department_patterns = compiled["departments"]
        self.time_of_day = patterns["time_of_day"]
        self.name_stopwords = {word.lower() for word in patterns["name_stopwords"]}

        self.model = None
        self.llm_ready = False
        if use_llm and config.use_llm_extraction and config.gemini_api_key:
            try:
                genai.configure(api_key=config.gemini_api_key)
                self.model = genai.GenerativeModel(config.gemini_model)
                self.llm_ready = True
                logger.info(f"LLM entity extraction initialized: {config.gemini_model}")
            except Exception as e:
                logger.warning(f"Gemini initialization failed: {e}. Using regex extraction.")

        self.regex_count = 0
        self.llm_count = 0
        self.llm_failures = 0

    async def extract(self, text: str, context: Optional[Dict[str, Any]] = None):
        """
        NLU contract: extract entities from a message.

        Args:
            text: Caller message
            context: conversation_state, history, expected_entities

        Returns:
            appointment.models.EntityBag
        """
        from appointment.models import EntityBag

        context = context or {}
        entities = self.extract_regex(text, context)
        self.regex_count += 1

        if self.llm_ready and text and text.strip():
            try:
                llm_entities = await self._extract_llm(text, context)
                self.llm_count += 1
                entities = {**entities, **llm_entities}
            except (CollaboratorError, ValueError) as e:
                self.llm_failures += 1
                logger.warning(f"LLM extraction failed: {e}. Using regex entities.")

        if self.config.log_classifications and entities:
            logger.info(f"Entities: {sorted(entities)}")

        return EntityBag.from_dict(entities)

    # ------------------------------------------------------------------
    # Regex extraction
    # ------------------------------------------------------------------

    def extract_regex(self, text: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        """Extract entities with the regex patterns only"""
        context = context or {}
        if not text or not text.strip():
            return {}

        expected = list(context.get("expected_entities") or [])
        last_question = self._last_assistant_message(context).lower()
        asks_name = "name" in last_question or expected == ["patient_name"]
        asks_dob = "birth" in last_question or "dob" in last_question or expected == ["date_of_birth"]
        asks_doctor = (
            "doctor" in last_question or "department" in last_question
            or (bool(expected) and set(expected) <= {"doctor_name", "department"})
        )
        asks_time = "time" in last_question or expected == ["time"]

        entities: Dict[str, str] = {}
        remaining = text

        # Dates and times first so their digits are not read as a phone number
        found_date, remaining = self._extract_date(remaining)
        if found_date:
            is_dob = asks_dob or bool(self.entity_patterns["dob_cue"].search(text))
            entities["date_of_birth" if is_dob else "date"] = found_date

        found_time, remaining = self._extract_time(remaining, asks_time)
        if found_time:
            entities["time"] = found_time

        phone = self._extract_phone(remaining)
        if phone:
            entities["phone"] = phone

        department = self._extract_department(text)
        if department:
            entities["department"] = department

        doctor = self._extract_doctor(remaining, asks_doctor and not department)
        if doctor:
            entities["doctor_name"] = doctor

        name = self._extract_name(remaining, asks_name, doctor)
        if name:
            entities["patient_name"] = name

        return entities

    def _extract_date(self, text: str):
        patterns = self.entity_patterns
        today = self.clock().date()
        lowered = text.lower()

        for word, offset in (("today", 0), ("tomorrow", 1), ("yesterday", -1)):
            match = re.search(rf"\b{word}\b", lowered)
            if match:
                return (today + timedelta(days=offset)).isoformat(), self._blank(text, match)

        for key in ("iso_date", "us_date"):
            match = patterns[key].search(text)
            if match:
                return match.group(0), self._blank(text, match)

        match = patterns["month_day"].search(text)
        if match:
            resolved = self._month_day(today, match.group(1), match.group(2), match.group(3))
            if resolved:
                return resolved, self._blank(text, match)

        match = patterns["day_month"].search(text)
        if match:
            resolved = self._month_day(today, match.group(2), match.group(1), match.group(3))
            if resolved:
                return resolved, self._blank(text, match)

        match = patterns["weekday"].search(text)
        if match:
            qualifier = (match.group(1) or "").lower()
            target = WEEKDAYS.index(match.group(2).lower())
            days_ahead = (target - today.weekday()) % 7
            if days_ahead == 0 and qualifier != "this":
                days_ahead = 7
            return (today + timedelta(days=days_ahead)).isoformat(), self._blank(text, match)

        return None, text

    @staticmethod
    def _month_day(today: date, month_name: str, day: str, year: Optional[str]) -> Optional[str]:
        month = MONTHS.get(month_name.lower()[:3])
        try:
            if year:
                return date(int(year), month, int(day)).isoformat()
            candidate = date(today.year, month, int(day))
            if candidate < today:
                candidate = date(today.year + 1, month, int(day))
            return candidate.isoformat()
        except (TypeError, ValueError):
            return None

    def _extract_time(self, text: str, asks_time: bool):
        match = self.entity_patterns["time_12h"].search(text)
        if match:
            hour, minute, meridiem = int(match.group(1)), int(match.group(2) or 0), match.group(3).lower()
            if 1 <= hour <= 12 and minute < 60:
                return f"{hour}:{minute:02d} {meridiem}m", self._blank(text, match)

        match = self.entity_patterns["time_24h"].search(text)
        if match:
            return f"{int(match.group(1)):02d}:{match.group(2)}", self._blank(text, match)

        lowered = text.lower()
        for word, value in self.time_of_day.items():
            match = re.search(rf"\b{word}\b", lowered)
            if match:
                return value, self._blank(text, match)

        # Bare hour ("at 10"); 1-6 read as afternoon
        match = re.search(r"\bat\s+(\d{1,2})\b", lowered) if asks_time or "at " in lowered else None
        if match:
            hour = int(match.group(1))
            if 1 <= hour <= 6:
                hour += 12
            if 0 <= hour <= 23:
                return f"{hour:02d}:00", self._blank(text, match)

        return None, text

    def _extract_phone(self, text: str) -> Optional[str]:
        for match in self.entity_patterns["phone"].finditer(text):
            digits = re.sub(r"\D", "", match.group(1))
            if 8 <= len(digits) <= 15:
                if len(digits) == 8:
                    digits = self.config.default_country_code + digits
                return "+" + digits
        return None

    def _extract_department(self, text: str) -> Optional[str]:
        for department, patterns in self.department_patterns.items():
            if any(pattern.search(text) for pattern in patterns):
                return department
        return None

    def _extract_doctor(self, text: str, asks_doctor: bool) -> Optional[str]:
        match = self.entity_patterns["doctor"].search(text)
        if match:
            words = []
            for word in match.group(1).split():
                if word.lower() in FILLER_WORDS | NAME_TERMINATORS | NOT_A_NAME or self._extract_department(word):
                    break
                words.append(word)
            if words:
                return " ".join(w.capitalize() for w in words)

        if asks_doctor:
            words = self._bare_words(text)
            if 1 <= len(words) <= 2:
                return " ".join(w.capitalize() for w in words)
        return None

    def _extract_name(self, text: str, asks_name: bool, doctor: Optional[str]) -> Optional[str]:
        match = self.entity_patterns["name_phrase"].search(text)
        if match:
            words = []
            for word in match.group(1).split():
                if word.lower() in NAME_TERMINATORS:
                    break
                words.append(word)
            if words and words[0].lower() not in NOT_A_NAME:
                return " ".join(w.capitalize() for w in words)

        if not asks_name:
            return None

        for match in self.entity_patterns["capitalized_name"].finditer(text):
            words = [w for w in match.group(1).split() if w.lower() not in self.name_stopwords]
            candidate = " ".join(words)
            if len(words) >= 2 and candidate != doctor:
                return candidate

        words = self._bare_words(text)
        if 1 <= len(words) <= 3 and not doctor:
            return " ".join(w.capitalize() for w in words)
        return None

    def _bare_words(self, text: str) -> List[str]:
        """Alphabetic words of a short answer, without filler"""
        words = re.findall(r"[A-Za-z][A-Za-z'\-]*", text)
        if len(words) > 6:
            return []
        return [
            w for w in words
            if w.lower() not in FILLER_WORDS and w.lower() not in self.name_stopwords
        ]

    @staticmethod
    def _blank(text: str, match) -> str:
        start, end = match.span()
        return text[:start] + " " * (end - start) + text[end:]

    @staticmethod
    def _last_assistant_message(context: Dict[str, Any]) -> str:
        for message in reversed(context.get("history") or []):
            if message.get("role") == "assistant":
                return message.get("content") or ""
        return ""

    # ------------------------------------------------------------------
    # LLM extraction
    # ------------------------------------------------------------------

    async def _extract_llm(self, text: str, context: Dict[str, Any]) -> Dict[str, str]:
        today = self.clock().date().isoformat()
        context_info = ""
        if context.get("history"):
            context_info = f"Conversation: {json.dumps(context['history'], default=str)}\n"
        if context.get("expected_entities"):
            context_info += f"The assistant is waiting for: {', '.join(context['expected_entities'])}\n"

        prompt = f"{get_extraction_prompt(today)}\n\n{context_info}Caller message: '{text}'"
        response_text = await generate_with_retry(self.model, prompt, self.config, max_output_tokens=200)
        result = extract_json(response_text)

        return {
            key: str(value).strip()
            for key, value in result.items()
            if value not in (None, "") and isinstance(value, (str, int, float))
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "llm_ready": self.llm_ready,
            "regex_count": self.regex_count,
            "llm_count": self.llm_count,
            "llm_failures": self.llm_failures,
        }
