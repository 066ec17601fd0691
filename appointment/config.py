"""
Configuration for the conversational appointment booking service

Session storage, conversation limits and response generation settings.
Booking policy lives in scheduling.config.SchedulingConfig.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class AppointmentConfig:
    """
    Configuration for the conversation service.

    Attributes:
        redis_url: Redis connection URL (default: redis://localhost:6379/0)
        session_ttl: Session TTL in seconds (default: 3600)
        session_prefix: Redis key prefix for sessions (default: appointment:session:)
        auto_extend_ttl: Refresh the TTL on every read (default: True)
        max_history: Conversation messages kept per session (default: 10)
        max_turns: Turns before the conversation is closed (default: 50)
        nlu_history_window: Messages passed to the NLU as context (default: 6)
        use_llm_responses: Phrase replies with Gemini when a key is set (default: False)
        gemini_api_key: API key for response generation (optional)
        gemini_model: Gemini model for response generation
        response_timeout: Timeout for a generated reply in seconds (default: 5.0)
        log_state_transitions: Log dialogue state transitions (default: True)
    """

    redis_url: str = "redis://localhost:6379/0"
    session_ttl: int = 3600
    session_prefix: str = "appointment:session:"
    auto_extend_ttl: bool = True
    max_history: int = 10
    max_turns: int = 50
    nlu_history_window: int = 6
    use_llm_responses: bool = False
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash-lite"
    response_timeout: float = 5.0
    log_state_transitions: bool = True

    def __post_init__(self):
        """Validate configuration after initialization"""
        if self.session_ttl <= 0:
            raise ValueError(
                f"session_ttl must be positive, got {self.session_ttl}"
            )

        if self.max_history < 2:
            raise ValueError(
                f"max_history must be at least 2, got {self.max_history}"
            )

        if self.max_turns < 1:
            raise ValueError(
                f"max_turns must be at least 1, got {self.max_turns}"
            )

        if self.nlu_history_window < 0:
            raise ValueError(
                f"nlu_history_window must not be negative, got {self.nlu_history_window}"
            )

        if self.response_timeout <= 0:
            raise ValueError(
                f"response_timeout must be positive, got {self.response_timeout}"
            )

        if not self.redis_url.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError(
                f"redis_url must start with redis://, rediss://, or unix://, got {self.redis_url}"
            )

        if self.use_llm_responses and not self.gemini_api_key:
            logger.warning(
                "GEMINI_API_KEY not set but use_llm_responses=True. "
                "Template responses will be used."
            )

        if self.log_state_transitions:
            logger.info(
                f"AppointmentConfig loaded: redis_url={self.redis_url}, "
                f"session_ttl={self.session_ttl}s, max_history={self.max_history}, "
                f"max_turns={self.max_turns}, llm_responses={self.use_llm_responses}"
            )

    @staticmethod
    def from_env() -> "AppointmentConfig":
        """
        Load configuration from environment variables.

        Environment Variables:
            APPOINTMENT_REDIS_HOST: Redis host (default: localhost)
            APPOINTMENT_REDIS_PORT: Redis port (default: 6379)
            APPOINTMENT_REDIS_DB: Redis database (default: 0)
            APPOINTMENT_SESSION_TTL: Session TTL in seconds (default: 3600)
            APPOINTMENT_SESSION_PREFIX: Session key prefix (default: appointment:session:)
            APPOINTMENT_AUTO_EXTEND_TTL: Refresh TTL on read (default: true)
            APPOINTMENT_MAX_HISTORY: Messages kept per session (default: 10)
            APPOINTMENT_MAX_TURNS: Turns per conversation (default: 50)
            APPOINTMENT_NLU_HISTORY_WINDOW: Messages sent to the NLU (default: 6)
            APPOINTMENT_USE_LLM_RESPONSES: Generate replies with Gemini (default: false)
            GEMINI_API_KEY: Gemini API key (optional)
            APPOINTMENT_GEMINI_MODEL: Gemini model (default: gemini-2.0-flash-lite)
            APPOINTMENT_RESPONSE_TIMEOUT: Reply generation timeout (default: 5.0)
            APPOINTMENT_LOG_STATE_TRANSITIONS: Log state transitions (default: true)

        Returns:
            AppointmentConfig instance loaded from environment
        """
        redis_host = os.getenv("APPOINTMENT_REDIS_HOST", "localhost")
        try:
            redis_port = int(os.getenv("APPOINTMENT_REDIS_PORT", "6379"))
        except ValueError:
            logger.warning("Invalid APPOINTMENT_REDIS_PORT, using default 6379")
            redis_port = 6379
        try:
            redis_db = int(os.getenv("APPOINTMENT_REDIS_DB", "0"))
        except ValueError:
            logger.warning("Invalid APPOINTMENT_REDIS_DB, using default 0")
            redis_db = 0
        redis_url = f"redis://{redis_host}:{redis_port}/{redis_db}"

        try:
            session_ttl = int(os.getenv("APPOINTMENT_SESSION_TTL", "3600"))
        except ValueError:
            logger.warning("Invalid APPOINTMENT_SESSION_TTL, using default 3600")
            session_ttl = 3600

        try:
            max_history = int(os.getenv("APPOINTMENT_MAX_HISTORY", "10"))
        except ValueError:
            logger.warning("Invalid APPOINTMENT_MAX_HISTORY, using default 10")
            max_history = 10

        try:
            max_turns = int(os.getenv("APPOINTMENT_MAX_TURNS", "50"))
        except ValueError:
            logger.warning("Invalid APPOINTMENT_MAX_TURNS, using default 50")
            max_turns = 50

        try:
            nlu_history_window = int(os.getenv("APPOINTMENT_NLU_HISTORY_WINDOW", "6"))
        except ValueError:
            logger.warning("Invalid APPOINTMENT_NLU_HISTORY_WINDOW, using default 6")
            nlu_history_window = 6

        try:
            response_timeout = float(os.getenv("APPOINTMENT_RESPONSE_TIMEOUT", "5.0"))
        except ValueError:
            logger.warning("Invalid APPOINTMENT_RESPONSE_TIMEOUT, using default 5.0")
            response_timeout = 5.0

        auto_extend_ttl = os.getenv(
            "APPOINTMENT_AUTO_EXTEND_TTL", "true"
        ).lower() in ("true", "1", "yes")

        use_llm_responses = os.getenv(
            "APPOINTMENT_USE_LLM_RESPONSES", "false"
        ).lower() in ("true", "1", "yes")

        log_state_transitions = os.getenv(
            "APPOINTMENT_LOG_STATE_TRANSITIONS", "true"
        ).lower() in ("true", "1", "yes")

        return AppointmentConfig(
            redis_url=redis_url,
            session_ttl=session_ttl,
            session_prefix=os.getenv("APPOINTMENT_SESSION_PREFIX", "appointment:session:"),
            auto_extend_ttl=auto_extend_ttl,
            max_history=max_history,
            max_turns=max_turns,
            nlu_history_window=nlu_history_window,
            use_llm_responses=use_llm_responses,
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            gemini_model=os.getenv("APPOINTMENT_GEMINI_MODEL", "gemini-2.0-flash-lite"),
            response_timeout=response_timeout,
            log_state_transitions=log_state_transitions,
        )
