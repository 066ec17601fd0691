"""
Intent and entity patterns for the hospital booking line

Keyword lists and regexes for the regex layer, plus the Gemini prompts used
by the LLM layer for classification and entity extraction.
"""

from typing import Any, Dict, List
import re


# Order matters: the first intent whose keywords or regexes match wins
INTENT_ORDER = [
    "goodbye",
    "cancel_appointment",
    "reschedule_appointment",
    "book_appointment",
    "check_appointment",
    "general_inquiry",
    "confirm",
    "deny",
]

# Intents answered first while the caller is asked a yes/no question
CONFIRMATION_INTENTS = ["confirm", "deny"]


def load_intent_patterns() -> Dict[str, Any]:
    """
    Load intent patterns for regex classification.

    Pattern Categories:
        - greeting: Standalone social pleasantries (strict)
        - goodbye .. deny: One entry per intent with keywords, regexes and confidence
        - entities: Entity extraction patterns shared with the extractor

    Returns:
        Dictionary with pattern categories for fast classification
    """
    patterns = {
        "greeting": {
            "keywords": [
                "hello", "hi", "hey", "good morning", "good afternoon",
                "good evening", "greetings",
            ],
            "regex_patterns": [
                r"^(hello|hi|hey|greetings)\b",
                r"\bgood\s+(morning|afternoon|evening|day)\b",
            ],
            "confidence": 0.95,
            "max_words": 4,
        },

        "goodbye": {
            "keywords": [
                "bye", "goodbye", "see you", "have a good", "that's all",
                "that is all", "nothing else", "no more questions",
            ],
            "regex_patterns": [
                r"\b(thanks?|thank you).*(bye|goodbye)\b",
                r"\bhave\s+a\s+(good|great|nice)\s+(day|night|one)\b",
            ],
            "confidence": 0.95,
        },

        "cancel_appointment": {
            "keywords": [
                "cancel", "delete", "remove", "don't need", "can't make it",
                "cannot make it", "call off",
            ],
            "regex_patterns": [
                r"\bcancel(l?ing|l?ed)?\b",
                r"\b(won'?t|can'?t|cannot)\s+(make|come|attend)\b",
            ],
            "confidence": 0.85,
        },

        "reschedule_appointment": {
            "keywords": [
                "reschedule", "different time", "different day", "another time",
                "another day", "move my appointment", "change my appointment",
            ],
            "regex_patterns": [
                r"\b(change|move|switch|push)\s+(my\s+|the\s+)?(appointment|booking|visit)\b",
                r"\bre-?schedul(e|ing)\b",
            ],
            "confidence": 0.85,
        },

        "book_appointment": {
            "keywords": [
                "book", "schedule", "make an appointment", "need an appointment",
                "want an appointment", "want to see", "need to see", "see a doctor",
                "see the doctor",
            ],
            "regex_patterns": [
                r"\b(book|schedule|make|set up|arrange)\s+(an?\s+|the\s+)?(appointment|visit|consultation)\b",
                r"\b(want|need|like)\s+to\s+(book|schedule|see)\b",
                r"\bappointment\s+with\b",
            ],
            "confidence": 0.85,
        },

        "check_appointment": {
            "keywords": [
                "check", "when is", "what time is", "my appointment", "my appointments",
                "do i have",
            ],
            "regex_patterns": [
                r"\b(when|what time)\s+is\s+my\s+appointment\b",
                r"\bdo\s+i\s+have\s+(an?\s+)?appointments?\b",
            ],
            "confidence": 0.80,
        },

        "general_inquiry": {
            "keywords": [
                "hours", "open", "close", "closing time", "location", "address",
                "where are you", "insurance", "accept", "parking", "departments",
                "which doctors", "what doctors",
            ],
            "regex_patterns": [
                r"\b(what|when)\s+(time\s+)?(do|are)\s+you\s+(open|close)\b",
                r"\bwhere\s+(are\s+you|is\s+the\s+hospital)\b",
            ],
            "confidence": 0.80,
        },

        "confirm": {
            "keywords": [
                "yes", "yeah", "yep", "yup", "sure", "correct", "right",
                "that's right", "sounds good", "ok", "okay", "please do",
                "go ahead", "confirm",
            ],
            "regex_patterns": [
                r"^(yes|yeah|yep|yup|sure|ok(ay)?)\b",
            ],
            "confidence": 0.90,
        },

        "deny": {
            "keywords": [
                "no", "nope", "not", "wrong", "incorrect", "don't",
            ],
            "regex_patterns": [
                r"^(no|nope|nah)\b",
            ],
            "confidence": 0.90,
        },

        # Entity extraction patterns
        "entities": {
            "name_phrase": r"\b(?:my name is|my name's|i am|i'm|this is|name is)\s+([a-z][a-z'\-]+(?:\s+[a-z][a-z'\-]+){0,2})",
            "capitalized_name": r"\b([A-Z][a-z'\-]+(?:\s+[A-Z][a-z'\-]+){1,2})\b",
            "doctor": r"\b(?:dr\.?|doctor)\s+([a-z][a-z'\-]+(?:\s+[a-z][a-z'\-]+)?)",
            "phone": r"(\+?\d[\d\s\-().]{6,18}\d)",
            "iso_date": r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b",
            "us_date": r"\b(\d{1,2})/(\d{1,2})/(\d{2,4})\b",
            "month_day": r"\b(january|february|march|april|may|june|july|august|september|october|november|december|jan|feb|mar|apr|jun|jul|aug|sep|sept|oct|nov|dec)\.?\s+(\d{1,2})(?:st|nd|rd|th)?(?:,?\s+(\d{4}))?\b",
            "day_month": r"\b(\d{1,2})(?:st|nd|rd|th)?\s+(?:of\s+)?(january|february|march|april|may|june|july|august|september|october|november|december)(?:,?\s+(\d{4}))?\b",
            "weekday": r"\b(?:(next|this)\s+)?(monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b",
            "time_12h": r"\b(\d{1,2})(?::(\d{2}))?\s*([ap])\.?\s*m\b\.?",
            "time_24h": r"\b([01]?\d|2[0-3]):([0-5]\d)\b",
            "dob_cue": r"\b(born|birth|birthday|dob)\b",
        },

        "departments": {
            "Cardiology": ["cardiology", "cardiologist", "heart", "cardiac"],
            "Dermatology": ["dermatology", "dermatologist", "skin"],
            "General Medicine": ["general medicine", "general", "family", "primary care", "gp"],
            "Pediatrics": ["pediatrics", "pediatrician", "children", "child", "kids"],
            "Orthopedics": ["orthopedics", "orthopedic", "bone", "joint"],
        },

        "time_of_day": {
            "morning": "09:00",
            "afternoon": "14:00",
            "noon": "12:00",
        },

        # Capitalized words that are never part of a person's name
        "name_stopwords": [
            "Hi", "Hello", "Hey", "Yes", "No", "Ok", "Okay", "Dr", "Doctor", "I",
            "My", "The", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday",
            "Saturday", "Sunday", "Thanks", "Thank", "Please", "Sure",
        ],
    }

    return patterns


def _keyword_regex(keyword: str) -> str:
    return r"\b" + re.escape(keyword).replace(r"\ ", r"\s+") + r"\b"


def compile_patterns(patterns: Dict[str, Any]) -> Dict[str, Any]:
    """
    Compile regex patterns for performance.

    Keywords are compiled to word-boundary regexes so short keywords such as
    "no" or "ok" do not match inside longer words.

    Args:
        patterns: Raw patterns dictionary from load_intent_patterns()

    Returns:
        Patterns dictionary with compiled regex objects
    """
    compiled = {}

    for intent_name, intent_data in patterns.items():
        if intent_name == "entities":
            flags = {"capitalized_name": 0}
            compiled[intent_name] = {
                entity_name: re.compile(entity_pattern, flags.get(entity_name, re.IGNORECASE))
                for entity_name, entity_pattern in intent_data.items()
            }
            continue

        if intent_name == "departments":
            compiled[intent_name] = {
                department: [re.compile(_keyword_regex(kw), re.IGNORECASE) for kw in keywords]
                for department, keywords in intent_data.items()
            }
            continue

        if not isinstance(intent_data, dict) or "keywords" not in intent_data:
            compiled[intent_name] = intent_data
            continue

        compiled[intent_name] = dict(intent_data)
        compiled[intent_name]["keyword_patterns"] = [
            re.compile(_keyword_regex(kw), re.IGNORECASE) for kw in intent_data["keywords"]
        ]
        compiled[intent_name]["regex_patterns"] = [
            re.compile(pattern, re.IGNORECASE) for pattern in intent_data["regex_patterns"]
        ]

    return compiled


def matching_keywords(text: str, compiled_intent: Dict[str, Any]) -> List[str]:
    """Keywords of an intent found in the text"""
    return [
        keyword
        for keyword, pattern in zip(compiled_intent["keywords"], compiled_intent["keyword_patterns"])
        if pattern.search(text)
    ]


def get_system_prompt() -> str:
    """
    Get Gemini system prompt for LLM intent classification.

    Returns:
        System prompt string with classification rules
    """
    prompt = """You are the intent classifier of a hospital's phone booking line.

Classify the caller's LAST message into exactly one intent, using the
conversation context when it is given.

INTENTS
1. BOOK_APPOINTMENT: wants a new appointment with a doctor or department
2. CANCEL_APPOINTMENT: wants to cancel an existing appointment
3. RESCHEDULE_APPOINTMENT: wants to move an existing appointment to another date or time
4. CHECK_APPOINTMENT: asks when or whether they have an appointment
5. GENERAL_INQUIRY: asks about opening hours, location, departments, doctors, insurance
6. GREETING: standalone greeting with no request
7. CONFIRM: agrees with or confirms the assistant's last question ("yes", "that's right")
8. DENY: rejects the assistant's last question ("no", "that's wrong")
9. PROVIDE_INFO: answers a question with data (name, date of birth, phone, date, time, doctor)
10. GOODBYE: wants to end the call
11. UNKNOWN: genuinely unclear

RULES
- If the assistant just asked a yes/no question, short answers are CONFIRM or DENY.
- If the assistant just asked for a detail and the caller gives it, the intent is PROVIDE_INFO.
- A message that both greets and makes a request is classified by the request.

OUTPUT FORMAT (JSON)
Return ONLY valid JSON (no markdown, no code blocks):

{
  "intent": "BOOK_APPOINTMENT" | "CANCEL_APPOINTMENT" | "RESCHEDULE_APPOINTMENT" | "CHECK_APPOINTMENT" | "GENERAL_INQUIRY" | "GREETING" | "CONFIRM" | "DENY" | "PROVIDE_INFO" | "GOODBYE" | "UNKNOWN",
  "confidence": 0.0-1.0,
  "reasoning": "brief explanation of classification decision"
}"""

    return prompt


def get_extraction_prompt(today: str) -> str:
    """
    Get Gemini system prompt for LLM entity extraction.

    Args:
        today: Current date (YYYY-MM-DD) used to resolve relative dates

    Returns:
        System prompt string with extraction rules
    """
    return f"""You extract booking details from a caller's message to a hospital phone line.
Today is {today}.

Return ONLY valid JSON (no markdown) with any of these keys that the message states:

{{
  "patient_name": "caller's full name",
  "date_of_birth": "YYYY-MM-DD",
  "phone": "phone number with country code, e.g. +96170123456",
  "doctor_name": "doctor's name without title, e.g. Smith or John Smith",
  "department": "medical department, e.g. Cardiology",
  "date": "requested appointment date, YYYY-MM-DD (resolve 'tomorrow', 'next Monday')",
  "time": "requested appointment time, HH:MM 24h"
}}

RULES
- Omit keys the message does not state; never guess.
- A doctor's name is never the patient's name.
- A date of birth is never the appointment date."""
