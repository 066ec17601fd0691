"""
Booking NLU for the hospital appointment line

Turns one caller message into an intent and a set of entities. Regex
patterns answer the common phrasings; Gemini handles the rest when an API
key is configured.

Components:
    - IntentClassifier: Intent classification (regex + Gemini fallback)
    - EntityExtractor: Name, DOB, phone, doctor, department, date and time extraction
    - IntentConfig: Configuration dataclass with environment variable loading
"""

from .intent_classifier import IntentClassifier
from .entity_extractor import EntityExtractor
from .config import IntentConfig

__all__ = [
    "IntentClassifier",
    "EntityExtractor",
    "IntentConfig",
]
