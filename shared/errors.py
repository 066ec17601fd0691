"""
Base error classes shared by the booking services.

Every error raised by the scheduling core, the session store and the NLU layer
derives from ServiceError so the conversation layer and the HTTP layer can
translate failures without inspecting message text.
"""

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Root of the service error hierarchy."""

    code: str = "service_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API error payloads"""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(ServiceError):
    """A doctor, patient, appointment or session does not exist."""

    code = "not_found"


class CollaboratorError(ServiceError):
    """An external collaborator (NLU model, session store) failed."""

    code = "collaborator_error"

    def __init__(self, collaborator: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"{collaborator}: {message}", details)
        self.collaborator = collaborator
