"""
Configuration for the booking NLU (intent classification and entity extraction)

Two layers: regex patterns answer the common phrasings instantly, Gemini
handles the rest when an API key is configured.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class IntentConfig:
    """
    Configuration for the NLU collaborator.

    Attributes:
        gemini_api_key: Gemini API key for the LLM layer (optional; rules-only without it)
        gemini_model: Gemini model name (default: gemini-2.0-flash-lite)
        layer1_regex_threshold: Regex confidence needed to skip the LLM (default: 0.8)
        gemini_timeout: Gemini API timeout in seconds (default: 5.0)
        max_retries: Gemini attempts for retryable errors (default: 3)
        use_llm_extraction: Extract entities with Gemini when available (default: True)
        log_classifications: Log all classifications (default: True)
        enable_cache: Enable LRU cache for repeated messages (default: True)
        cache_max_size: Maximum cache size (default: 128)
        cache_ttl_seconds: Cache TTL in seconds (default: 300)
        default_country_code: Prefix for local 8-digit phone numbers (default: 961)
    """

    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash-lite"
    layer1_regex_threshold: float = 0.8
    gemini_timeout: float = 5.0
    max_retries: int = 3
    use_llm_extraction: bool = True
    log_classifications: bool = True
    enable_cache: bool = True
    cache_max_size: int = 128
    cache_ttl_seconds: float = 300.0
    default_country_code: str = "961"

    def __post_init__(self):
        """Validate configuration after initialization"""
        if not 0.0 <= self.layer1_regex_threshold <= 1.0:
            raise ValueError(
                f"layer1_regex_threshold must be between 0.0 and 1.0, got {self.layer1_regex_threshold}"
            )

        if self.gemini_timeout <= 0:
            raise ValueError(
                f"gemini_timeout must be positive, got {self.gemini_timeout}"
            )

        if self.max_retries < 1:
            raise ValueError(
                f"max_retries must be at least 1, got {self.max_retries}"
            )

        if self.cache_max_size <= 0:
            raise ValueError(
                f"cache_max_size must be positive, got {self.cache_max_size}"
            )

        if self.cache_ttl_seconds <= 0:
            raise ValueError(
                f"cache_ttl_seconds must be positive, got {self.cache_ttl_seconds}"
            )

        if not self.default_country_code.isdigit():
            raise ValueError(
                f"default_country_code must be digits only, got {self.default_country_code}"
            )

        if not self.gemini_api_key:
            logger.warning(
                "GEMINI_API_KEY not set. The LLM layer is disabled; "
                "only regex classification and extraction will be available."
            )

        if self.log_classifications:
            logger.info(
                f"IntentConfig loaded: model={self.gemini_model}, "
                f"L1_threshold={self.layer1_regex_threshold}, timeout={self.gemini_timeout}s, "
                f"llm_extraction={self.use_llm_extraction}, "
                f"cache_enabled={self.enable_cache}, cache_size={self.cache_max_size}"
            )

    @property
    def llm_enabled(self) -> bool:
        return bool(self.gemini_api_key)

    @staticmethod
    def from_env() -> "IntentConfig":
        """
        Load configuration from environment variables.

        Environment Variables:
            GEMINI_API_KEY: Gemini API key (optional)
            GEMINI_MODEL: Gemini model name (default: gemini-2.0-flash-lite)
            INTENT_LAYER1_THRESHOLD: Regex threshold (default: 0.8)
            INTENT_GEMINI_TIMEOUT: Gemini timeout in seconds (default: 5.0)
            INTENT_MAX_RETRIES: Gemini attempts (default: 3)
            INTENT_USE_LLM_EXTRACTION: Extract entities with Gemini (default: true)
            INTENT_LOG_CLASSIFICATIONS: Log classifications (default: true)
            INTENT_CACHE_ENABLED: Enable LRU cache (default: true)
            INTENT_CACHE_MAX_SIZE: Maximum cache size (default: 128)
            INTENT_CACHE_TTL: Cache TTL in seconds (default: 300)
            INTENT_DEFAULT_COUNTRY_CODE: Country code for local numbers (default: 961)

        Returns:
            IntentConfig instance loaded from environment
        """
        try:
            layer1_regex_threshold = float(os.getenv("INTENT_LAYER1_THRESHOLD", "0.8"))
        except ValueError:
            logger.warning("Invalid INTENT_LAYER1_THRESHOLD, using default 0.8")
            layer1_regex_threshold = 0.8

        try:
            gemini_timeout = float(os.getenv("INTENT_GEMINI_TIMEOUT", "5.0"))
        except ValueError:
            logger.warning("Invalid INTENT_GEMINI_TIMEOUT, using default 5.0")
            gemini_timeout = 5.0

        try:
            max_retries = int(os.getenv("INTENT_MAX_RETRIES", "3"))
        except ValueError:
            logger.warning("Invalid INTENT_MAX_RETRIES, using default 3")
            max_retries = 3

        use_llm_extraction = os.getenv(
            "INTENT_USE_LLM_EXTRACTION", "true"
        ).lower() in ("true", "1", "yes")

        log_classifications = os.getenv(
            "INTENT_LOG_CLASSIFICATIONS", "true"
        ).lower() in ("true", "1", "yes")

        enable_cache = os.getenv(
            "INTENT_CACHE_ENABLED", "true"
        ).lower() in ("true", "1", "yes")

        try:
            cache_max_size = int(os.getenv("INTENT_CACHE_MAX_SIZE", "128"))
        except ValueError:
            logger.warning("Invalid INTENT_CACHE_MAX_SIZE, using default 128")
            cache_max_size = 128

        try:
            cache_ttl_seconds = float(os.getenv("INTENT_CACHE_TTL", "300"))
        except ValueError:
            logger.warning("Invalid INTENT_CACHE_TTL, using default 300")
            cache_ttl_seconds = 300.0

        return IntentConfig(
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash-lite"),
            layer1_regex_threshold=layer1_regex_threshold,
            gemini_timeout=gemini_timeout,
            max_retries=max_retries,
            use_llm_extraction=use_llm_extraction,
            log_classifications=log_classifications,
            enable_cache=enable_cache,
            cache_max_size=cache_max_size,
            cache_ttl_seconds=cache_ttl_seconds,
            default_country_code=os.getenv("INTENT_DEFAULT_COUNTRY_CODE", "961"),
        )
