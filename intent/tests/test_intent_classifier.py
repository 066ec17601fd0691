"""
Tests for the booking intent classifier

Regex layer behavior, context-aware classification, Gemini fallback
handling and the LRU cache. Gemini is never called: the model is replaced
with a MagicMock where the LLM layer is exercised.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from appointment.models import IntentType

from ..config import IntentConfig
from ..intent_classifier import IntentClassifier, extract_json


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def test_config():
    """Rules-only configuration"""
    return IntentConfig(gemini_api_key=None, log_classifications=False)


@pytest.fixture
def classifier(test_config):
    return IntentClassifier(test_config, use_llm=False)


@pytest.fixture
def llm_classifier(test_config):
    """Classifier with a mocked Gemini model"""
    classifier = IntentClassifier(test_config, use_llm=False)
    classifier.model = MagicMock()
    classifier.llm_ready = True
    return classifier


def gemini_reply(text):
    response = MagicMock()
    response.text = text
    return response


# ============================================================================
# Layer 1 - Regex
# ============================================================================

class TestRegexLayer:
    """Keyword and pattern classification"""

    @pytest.mark.asyncio
    async def test_book_appointment(self, classifier):
        result = await classifier.classify_intent("I want to book an appointment")

        assert result["intent"] == "book_appointment"
        assert result["confidence"] >= 0.85
        assert result["layer_type"] == "L1"

    @pytest.mark.asyncio
    async def test_cancel_wins_over_book(self, classifier):
        result = await classifier.classify_intent("I need to cancel my appointment")

        assert result["intent"] == "cancel_appointment"

    @pytest.mark.asyncio
    async def test_reschedule(self, classifier):
        result = await classifier.classify_intent("Can I move my appointment to Friday?")

        assert result["intent"] == "reschedule_appointment"

    @pytest.mark.asyncio
    async def test_greeting_standalone(self, classifier):
        result = await classifier.classify_intent("hello")

        assert result["intent"] == "greeting"
        assert result["confidence"] >= 0.9

    @pytest.mark.asyncio
    async def test_greeting_with_request_is_request(self, classifier):
        result = await classifier.classify_intent("hello, I want to book an appointment")

        assert result["intent"] == "book_appointment"

    @pytest.mark.asyncio
    async def test_goodbye(self, classifier):
        result = await classifier.classify_intent("thanks, bye")

        assert result["intent"] == "goodbye"

    @pytest.mark.asyncio
    async def test_general_inquiry(self, classifier):
        result = await classifier.classify_intent("What are your opening hours?")

        assert result["intent"] == "general_inquiry"

    @pytest.mark.asyncio
    async def test_confirm_and_deny(self, classifier):
        confirm = await classifier.classify_intent("yes please")
        deny = await classifier.classify_intent("no")

        assert confirm["intent"] == "confirm"
        assert deny["intent"] == "deny"

    @pytest.mark.asyncio
    async def test_short_keywords_need_word_boundaries(self, classifier):
        """'no' inside 'know' is not a denial"""
        result = await classifier.classify_intent("I know what I want, book it")

        assert result["intent"] == "book_appointment"

    @pytest.mark.asyncio
    async def test_unclear_nonsense(self, classifier):
        result = await classifier.classify_intent("blah xyz qwerty")

        assert result["intent"] == "unknown"
        assert result["confidence"] <= 0.5

    @pytest.mark.asyncio
    async def test_empty_input(self, classifier):
        result = await classifier.classify_intent("   ")

        assert result["intent"] == "unknown"
        assert result["confidence"] == 0.0


class TestContextAwareness:
    """Conversation context changes how short answers are read"""

    @pytest.mark.asyncio
    async def test_confirmation_first_while_confirming(self, classifier):
        context = {"conversation_state": "cancel_appointment", "history": []}

        in_flow = await classifier.classify_intent("yes cancel it", context)
        cold = await classifier.classify_intent("yes cancel it")

        assert in_flow["intent"] == "confirm"
        assert cold["intent"] == "cancel_appointment"

    @pytest.mark.asyncio
    async def test_answer_to_name_question(self, classifier):
        context = {
            "conversation_state": "detect_intent",
            "history": [{"role": "assistant", "content": "May I have your full name?"}],
        }

        result = await classifier.classify_intent("John Smith", context)

        assert result["intent"] == "provide_info"
        assert result["confidence"] == 0.9

    @pytest.mark.asyncio
    async def test_message_with_digits_is_info(self, classifier):
        result = await classifier.classify_intent("70 123 456")

        assert result["intent"] == "provide_info"
        assert result["confidence"] == 0.7

    @pytest.mark.asyncio
    async def test_parse_returns_intent(self, classifier):
        intent = await classifier.parse("I'd like to book an appointment with Dr. Smith")

        assert intent.name == IntentType.BOOK_APPOINTMENT
        assert intent.confidence >= 0.85
        assert intent.reasoning


# ============================================================================
# Layer 3 - Gemini
# ============================================================================

class TestLLMLayer:
    """Gemini fallback with a mocked model"""

    @pytest.mark.asyncio
    async def test_llm_used_below_threshold(self, llm_classifier):
        llm_classifier.model.generate_content.return_value = gemini_reply(
            '```json\n{"intent": "CHECK_APPOINTMENT", "confidence": 0.88, "reasoning": "asks about visit"}\n```'
        )

        result = await llm_classifier.classify_intent("remind me about my visit thing")

        assert result["intent"] == "check_appointment"
        assert result["confidence"] == 0.88
        assert result["layer_type"] == "L3"

    @pytest.mark.asyncio
    async def test_llm_skipped_for_confident_regex(self, llm_classifier):
        result = await llm_classifier.classify_intent("I want to book an appointment")

        assert result["layer_type"] == "L1"
        llm_classifier.model.generate_content.assert_not_called()

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back_to_regex(self, llm_classifier):
        llm_classifier.model.generate_content.side_effect = Exception("500 internal error")

        result = await llm_classifier.classify_intent("blah xyz qwerty")

        assert result["intent"] == "unknown"
        assert result["layer_type"] == "L1"
        assert llm_classifier.llm_failures == 1

    @pytest.mark.asyncio
    async def test_llm_retries_rate_limit(self, llm_classifier):
        llm_classifier.model.generate_content.side_effect = [
            Exception("429 quota exceeded"),
            gemini_reply('{"intent": "GENERAL_INQUIRY", "confidence": 0.9, "reasoning": "hours"}'),
        ]

        with patch.object(asyncio, "sleep", new=AsyncMock()):
            result = await llm_classifier.classify_intent("something odd about the place")

        assert result["intent"] == "general_inquiry"
        assert llm_classifier.model.generate_content.call_count == 2

    @pytest.mark.asyncio
    async def test_unknown_llm_label_maps_to_unknown(self, llm_classifier):
        llm_classifier.model.generate_content.return_value = gemini_reply(
            '{"intent": "ORDER_PIZZA", "confidence": 0.99}'
        )

        result = await llm_classifier.classify_intent("blah xyz qwerty")

        assert result["intent"] == "unknown"


class TestExtractJson:
    def test_fenced_json(self):
        assert extract_json('```json\n{"intent": "GREETING"}\n```') == {"intent": "GREETING"}

    def test_json_inside_prose(self):
        text = 'Sure! Here it is: {"intent": "DENY", "confidence": 0.7} Hope that helps.'

        assert extract_json(text)["intent"] == "DENY"

    def test_no_json_raises(self):
        with pytest.raises(ValueError):
            extract_json("no json here")


# ============================================================================
# Cache & Stats
# ============================================================================

class TestCache:
    @pytest.mark.asyncio
    async def test_repeated_query_hits_cache(self, classifier):
        first = await classifier.classify_intent("I want to book an appointment")
        second = await classifier.classify_intent("  I want to book an appointment ")

        assert first["layer_type"] == "L1"
        assert second["layer_type"] == "CACHE"
        assert second["intent"] == first["intent"]
        assert classifier.get_performance_stats()["cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_same_state_hits_cache(self, classifier):
        context = {
            "conversation_state": "confirm_booking",
            "history": [{"role": "assistant", "content": "Shall I book it?"}],
        }

        await classifier.classify_intent("yes", context)
        result = await classifier.classify_intent("yes", dict(context))

        assert result["layer_type"] == "CACHE"
        assert result["intent"] == "confirm"
        assert classifier.cache_hits == 1

    @pytest.mark.asyncio
    async def test_different_state_misses_cache(self, classifier):
        await classifier.classify_intent("yes", {"conversation_state": "confirm_booking", "history": []})
        result = await classifier.classify_intent("yes", {"conversation_state": "closing", "history": []})

        assert result["layer_type"] == "L1"
        assert classifier.cache_hits == 0

    @pytest.mark.asyncio
    async def test_different_question_misses_cache(self, classifier):
        asked_name = {
            "conversation_state": "collect_patient_name",
            "history": [{"role": "assistant", "content": "May I have your full name please?"}],
        }
        asked_dob = {
            "conversation_state": "collect_patient_name",
            "history": [{"role": "assistant", "content": "What's your date of birth?"}],
        }

        await classifier.classify_intent("john smith", asked_name)
        result = await classifier.classify_intent("john smith", asked_dob)

        assert result["layer_type"] == "L1"
        assert classifier.cache_hits == 0

    @pytest.mark.asyncio
    async def test_lru_eviction(self):
        config = IntentConfig(gemini_api_key=None, log_classifications=False, cache_max_size=2)
        classifier = IntentClassifier(config, use_llm=False)

        await classifier.classify_intent("hello")
        await classifier.classify_intent("bye")
        await classifier.classify_intent("cancel it")

        assert len(classifier.classification_cache) == 2

    @pytest.mark.asyncio
    async def test_performance_stats(self, classifier):
        await classifier.classify_intent("hello")
        await classifier.classify_intent("I want to book an appointment")

        stats = classifier.get_performance_stats()

        assert stats["total_requests"] == 2
        assert stats["layer1_count"] == 2
        assert stats["layer1_percentage"] == 100.0
        assert stats["average_confidence"] > 0.8
