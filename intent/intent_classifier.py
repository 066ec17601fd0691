"""
Intent Classification Core Logic - 2-Layer Architecture

- Layer 1 (Regex): Fast keyword/pattern matching (<5ms) for the common phrasings
- Layer 3 (LLM): Gemini fallback for everything the patterns cannot settle

Layer numbering is kept from the original three-layer design; the semantic
middle layer is not part of this service.
"""

import re
import json
import time
import asyncio
import logging
import hashlib
from typing import Dict, Any, Optional
from collections import OrderedDict
import google.generativeai as genai

from shared.errors import CollaboratorError

from .config import IntentConfig
from .patterns import (
    CONFIRMATION_INTENTS,
    INTENT_ORDER,
    compile_patterns,
    get_system_prompt,
    load_intent_patterns,
    matching_keywords,
)

logger = logging.getLogger(__name__)

# Canonical intent labels (lowercase values of appointment.models.IntentType)
INTENT_LABELS = (
    "book_appointment",
    "cancel_appointment",
    "reschedule_appointment",
    "check_appointment",
    "general_inquiry",
    "greeting",
    "confirm",
    "deny",
    "provide_info",
    "goodbye",
    "unknown",
)

# Conversation states in which the caller is answering a yes/no question
YES_NO_STATES = ("confirm_booking", "cancel_appointment", "reschedule_appointment")

QUESTION_WORDS = re.compile(r"\b(what|when|where|who|why|how|can you|could you)\b", re.IGNORECASE)


def extract_json(response_text: str) -> Dict[str, Any]:
    """
    Robust JSON extraction from an LLM reply.

    Strips code fences, then tries the whole text, the first balanced object
    and finally the widest {...} block.

    Raises:
        ValueError: If no JSON object can be found
    """
    response_text = re.sub(r'^```(?:json)?\s*', '', response_text.strip())
    response_text = re.sub(r'\s*```$', '', response_text).strip()

    try:
        result = json.loads(response_text)
        if isinstance(result, dict):
            return result
    except json.JSONDecodeError:
        pass

    json_match = re.search(r'\{(?:[^{}]|(?:\{(?:[^{}]|(?:\{[^{}]*\})*)*\}))*\}', response_text, re.DOTALL)
    if not json_match:
        json_match = re.search(r'\{.*\}', response_text, re.DOTALL)
    if not json_match:
        raise ValueError("No JSON found in Gemini response")

    return json.loads(json_match.group(0))


async def generate_with_retry(model, prompt: str, config: IntentConfig, max_output_tokens: int = 300) -> str:
    """
    Call Gemini with a timeout and exponential backoff.

    Retries timeouts and 429/503/quota errors.

    Raises:
        CollaboratorError: When all attempts fail or the error is not retryable
    """
    base_delay = 1.0

    for attempt in range(config.max_retries):
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    model.generate_content,
                    prompt,
                    generation_config=genai.types.GenerationConfig(
                        temperature=0.1,  # Low temperature for consistent output
                        max_output_tokens=max_output_tokens
                    )
                ),
                timeout=config.gemini_timeout
            )
            return response.text.strip()

        except asyncio.TimeoutError:
            if attempt < config.max_retries - 1:
                delay = base_delay * (2 ** attempt)
                logger.warning(f"Gemini timeout (attempt {attempt + 1}/{config.max_retries}), retrying in {delay}s...")
                await asyncio.sleep(delay)
                continue
            raise CollaboratorError("gemini", f"timed out after {config.max_retries} attempts")

        except Exception as e:
            error_str = str(e).lower()
            is_retryable = ("429" in error_str or "503" in error_str or
                            "quota" in error_str or "rate limit" in error_str or
                            "service unavailable" in error_str)

            if is_retryable and attempt < config.max_retries - 1:
                delay = base_delay * (2 ** attempt)
                logger.warning(f"Gemini API error (attempt {attempt + 1}/{config.max_retries}): {str(e)[:100]}... Retrying in {delay}s...")
                await asyncio.sleep(delay)
                continue
            raise CollaboratorError("gemini", str(e)[:200]) from e

    raise CollaboratorError("gemini", "no attempts made")


class IntentClassifier:
    """
    2-layer intent classifier for the booking line.

    Classification Strategy:
        1. Layer 1 (Regex): ordered keyword/pattern matching, history-aware
        2. Layer 3 (LLM): Gemini when the regex confidence is below threshold

    Without a Gemini key (or with ``use_llm=False``) the classifier is
    rules-only, which is what the orchestrator uses as its fallback parser.
    """

    def __init__(self, config: IntentConfig, use_llm: bool = True):
        """
        Initialize the classifier.

        Args:
            config: Intent configuration with thresholds, Gemini API key, etc.
            use_llm: Allow the Gemini layer when a key is configured
        """
        self.config = config

        self.patterns = load_intent_patterns()
        self.compiled_patterns = compile_patterns(self.patterns)

        # === LAYER 3: Initialize Gemini client ===
        self.model = None
        self.llm_ready = False
        if use_llm and config.gemini_api_key:
            try:
                genai.configure(api_key=config.gemini_api_key)
                self.model = genai.GenerativeModel(config.gemini_model)
                self.llm_ready = True
                logger.info(f"Layer 3 (LLM) initialized: {config.gemini_model}")
            except Exception as e:
                logger.warning(f"Gemini initialization failed: {e}. Layer 3 disabled.")
        elif use_llm:
            logger.warning("No Gemini API key. Layer 3 (LLM) disabled.")

        # LRU Cache for repeated queries
        self.classification_cache = OrderedDict() if config.enable_cache else None
        self.cache_hits = 0

        # Performance tracking
        self.layer1_count = 0
        self.layer3_count = 0
        self.llm_failures = 0
        self.total_confidence = 0.0

        logger.info(
            f"IntentClassifier initialized: "
            f"L1_threshold={config.layer1_regex_threshold}, "
            f"L3_ready={self.llm_ready}, "
            f"cache_enabled={config.enable_cache}"
        )

    async def parse(self, text: str, context: Optional[Dict[str, Any]] = None):
        """
        NLU contract: classify a message into an Intent.

        Args:
            text: Caller message
            context: conversation_state, history and collected_data

        Returns:
            appointment.models.Intent
        """
        from appointment.models import Intent, IntentType

        result = await self.classify_intent(text, context)
        return Intent(
            name=IntentType.parse(result["intent"]),
            confidence=float(result["confidence"]),
            reasoning=result.get("reasoning"),
        )

    async def classify_intent(self, text: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Classify user intent.

        Returns:
            Dictionary with:
                - intent: str (lowercase intent label)
                - confidence: float (0.0-1.0)
                - reasoning: str (classification explanation)
                - layer_type: str (L1, L3, CACHE)
                - response_time: float (seconds)
        """
        start_time = time.time()

        if not text or not text.strip():
            return {
                "intent": "unknown",
                "confidence": 0.0,
                "reasoning": "Empty or whitespace-only input",
                "layer_type": "L1",
                "response_time": time.time() - start_time
            }

        cache_key = None
        if self.config.enable_cache:
            cache_key = self._cache_key(text, context)
            cached = self._cached(cache_key)
            if cached is not None:
                cached["response_time"] = time.time() - start_time
                return cached

        # === LAYER 1: Fast Regex Classification ===
        layer1_result = self._layer_1_regex(text, context)

        if layer1_result and layer1_result["confidence"] > self.config.layer1_regex_threshold:
            return self._finish(layer1_result, "L1", text, cache_key, start_time)

        # === LAYER 3: LLM Fallback (Gemini) ===
        if self.llm_ready:
            try:
                layer3_result = await self._layer_3_llm(text, context)
                return self._finish(layer3_result, "L3", text, cache_key, start_time)
            except (CollaboratorError, ValueError) as e:
                self.llm_failures += 1
                logger.warning(f"Layer 3 (LLM) failed: {e}")
                # Fall through to the regex result

        # === FALLBACK: Use Layer 1 result if available, else UNKNOWN ===
        if layer1_result:
            return self._finish(layer1_result, "L1", text, cache_key, start_time)

        return self._finish({
            "intent": "unknown",
            "confidence": 0.5,
            "reasoning": "No clear pattern matched",
        }, "L1", text, cache_key, start_time)

    def _finish(
        self, result: Dict[str, Any], layer: str, text: str, cache_key: Optional[str], start_time: float
    ) -> Dict[str, Any]:
        if layer == "L3":
            self.layer3_count += 1
        else:
            self.layer1_count += 1
        self.total_confidence += result["confidence"]
        result["layer_type"] = layer
        result["response_time"] = time.time() - start_time

        if cache_key is not None:
            self._cache_result(cache_key, result)

        if self.config.log_classifications:
            logger.info(
                f"{layer}: {result['intent']} "
                f"(conf={result['confidence']:.2f}, "
                f"time={result['response_time']*1000:.1f}ms)"
            )
        return result

    def _layer_1_regex(self, text: str, context: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """
        Layer 1: ordered keyword and regex matching.

        Args:
            text: User input text
            context: Optional conversation context

        Returns:
            Classification result dict or None if no match
        """
        context = context or {}
        text_lower = re.sub(r'[?!.,;]', '', text.lower().strip())
        word_count = len(text_lower.split())

        # Greeting: standalone only
        greeting = self.compiled_patterns["greeting"]
        if word_count <= greeting["max_words"] and not QUESTION_WORDS.search(text_lower):
            if matching_keywords(text_lower, greeting) or any(
                p.search(text_lower) for p in greeting["regex_patterns"]
            ):
                others = [name for name in INTENT_ORDER if self._matches(name, text_lower)]
                if not others:
                    return self._result("greeting", greeting["confidence"], "Greeting detected")

        order = list(INTENT_ORDER)
        if context.get("conversation_state") in YES_NO_STATES:
            order = CONFIRMATION_INTENTS + [name for name in order if name not in CONFIRMATION_INTENTS]

        for intent_name in order:
            if self._matches(intent_name, text_lower):
                keywords = matching_keywords(text_lower, self.compiled_patterns[intent_name])
                return self._result(
                    intent_name,
                    self.compiled_patterns[intent_name]["confidence"],
                    f"{intent_name} keywords detected: {keywords}" if keywords else f"{intent_name} pattern matched",
                )

        # Answer to the assistant's last question
        last_question = self._last_assistant_message(context).lower()
        if "name" in last_question or "who" in last_question:
            return self._result("provide_info", 0.9, "User answering name question")
        if "birth" in last_question or "dob" in last_question:
            return self._result("provide_info", 0.9, "User answering DOB question")

        if re.search(r"\d", text_lower) or re.search(r"\b(dr|doctor)\b", text_lower):
            return self._result("provide_info", 0.7, "Message carries details")

        return None

    def _matches(self, intent_name: str, text_lower: str) -> bool:
        compiled = self.compiled_patterns[intent_name]
        return bool(matching_keywords(text_lower, compiled)) or any(
            pattern.search(text_lower) for pattern in compiled["regex_patterns"]
        )

    @staticmethod
    def _result(intent: str, confidence: float, reasoning: str) -> Dict[str, Any]:
        return {"intent": intent, "confidence": confidence, "reasoning": reasoning}

    @staticmethod
    def _last_assistant_message(context: Dict[str, Any]) -> str:
        for message in reversed(context.get("history") or []):
            if message.get("role") == "assistant":
                return message.get("content") or ""
        return ""

    @classmethod
    def _cache_key(cls, text: str, context: Optional[Dict[str, Any]]) -> str:
        """
        Cache key of a classification.

        Short answers ("yes", "tomorrow") mean different things in different
        states, so the key covers the conversation state and the question
        being answered.
        """
        context = context or {}
        parts = (
            text.lower().strip(),
            str(context.get("conversation_state") or ""),
            cls._last_assistant_message(context).lower().strip(),
        )
        return hashlib.md5("\x1f".join(parts).encode()).hexdigest()

    async def _layer_3_llm(self, text: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Layer 3: LLM-based classification using Gemini with retry logic.

        Raises:
            CollaboratorError: Gemini unavailable after retries
            ValueError: Reply was not parseable JSON
        """
        system_prompt = get_system_prompt()

        context_info = ""
        if context:
            context_info = f"Context: {json.dumps(context, default=str)}. "

        full_prompt = f"{system_prompt}\n\n{context_info}User input: '{text}'. Classify this input:"

        response_text = await generate_with_retry(self.model, full_prompt, self.config)
        result = extract_json(response_text)

        intent = str(result.get("intent", "unknown")).strip().lower()
        if intent not in INTENT_LABELS:
            intent = "unknown"

        try:
            confidence = float(result.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5

        return {
            "intent": intent,
            "confidence": max(0.0, min(confidence, 1.0)),
            "reasoning": result.get("reasoning") or "Gemini classification",
        }

    def _cached(self, cache_key: str) -> Optional[Dict[str, Any]]:
        if self.classification_cache is None or cache_key not in self.classification_cache:
            return None

        cached_result, cache_time = self.classification_cache[cache_key]
        if time.time() - cache_time >= self.config.cache_ttl_seconds:
            del self.classification_cache[cache_key]
            return None

        self.cache_hits += 1
        self.classification_cache.move_to_end(cache_key)
        result = dict(cached_result)
        result["layer_type"] = "CACHE"

        if self.config.log_classifications:
            logger.debug(f"CACHE HIT: {result['intent']}")
        return result

    def _cache_result(self, cache_key: str, result: Dict[str, Any]):
        """
        Cache classification result with LRU eviction.
        """
        result_copy = result.copy()
        result_copy.pop("response_time", None)

        self.classification_cache[cache_key] = (result_copy, time.time())

        if len(self.classification_cache) > self.config.cache_max_size:
            self.classification_cache.popitem(last=False)

    def get_performance_stats(self) -> Dict[str, Any]:
        """
        Get classification performance statistics.

        Returns:
            Dictionary with performance metrics:
                - total_requests: Total number of classifications
                - layer1_count / layer3_count: Hits per layer
                - layer1_percentage / layer3_percentage: Share per layer
                - cache_hits / cache_hit_rate: Cache usage
                - llm_failures: Gemini calls that fell back to regex
                - average_confidence: Average classification confidence
        """
        total_requests = self.layer1_count + self.layer3_count
        layer1_percentage = (self.layer1_count / total_requests * 100) if total_requests > 0 else 0
        layer3_percentage = (self.layer3_count / total_requests * 100) if total_requests > 0 else 0
        cache_hit_rate = (self.cache_hits / (total_requests + self.cache_hits) * 100) if (total_requests + self.cache_hits) > 0 else 0
        average_confidence = (self.total_confidence / total_requests) if total_requests > 0 else 0

        return {
            "total_requests": total_requests,
            "layer1_count": self.layer1_count,
            "layer3_count": self.layer3_count,
            "cache_hits": self.cache_hits,
            "llm_failures": self.llm_failures,
            "layer1_percentage": round(layer1_percentage, 2),
            "layer3_percentage": round(layer3_percentage, 2),
            "cache_hit_rate": round(cache_hit_rate, 2),
            "average_confidence": round(average_confidence, 3),
            "cache_enabled": self.config.enable_cache,
            "cache_size": len(self.classification_cache) if self.classification_cache else 0
        }
