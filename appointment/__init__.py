"""
Hospital Appointment Booking Service - conversational booking with Redis persistence

Manages multi-turn phone conversations that collect patient identity, pick a
doctor, date and time, and book, cancel or reschedule appointments on the
scheduling core.

Key Features:
- Explicit dialogue state machine with bounded auto-advance
- Per-state entity whitelists and late identity corrections
- Redis-based session persistence with TTL
- Gemini-assisted NLU with a rule-based fallback
- Slot validation against the doctor's consecutive free slots

Architecture:
- FastAPI web framework for REST endpoints
- Redis for session state management
- TurnOrchestrator for the per-turn pipeline
- DialogueManager for transitions and reply templates
- Pydantic models for API contracts
"""

__version__ = "1.0.0"
