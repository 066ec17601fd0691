"""
Reply phrasing for the booking conversation

Templates from the dialogue manager are always available. When a Gemini key
is configured and LLM responses are enabled, the template is rephrased into a
more natural spoken reply; any failure falls back to the template text.
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

import google.generativeai as genai

from appointment.config import AppointmentConfig

logger = logging.getLogger(__name__)


RESPONSE_SYSTEM_PROMPT = """You are the phone receptionist of a hospital booking line.
Rewrite the DRAFT reply so it sounds natural when spoken aloud.

Rules:
- Keep every fact from the draft: names, dates, times, appointment IDs, lists of options.
- Do not add facts, promises or medical advice.
- Keep the question the draft asks, if any.
- One or two short sentences, no markdown, no emojis.
- Reply with the rewritten text only."""


class ResponseGenerator:
    """Template replies, optionally rephrased by Gemini"""

    def __init__(self, config: AppointmentConfig):
        self.config = config
        self.model = None
        self.llm_ready = False

        if config.use_llm_responses and config.gemini_api_key:
            try:
                genai.configure(api_key=config.gemini_api_key)
                self.model = genai.GenerativeModel(config.gemini_model)
                self.llm_ready = True
                logger.info(f"Response generator using Gemini: {config.gemini_model}")
            except Exception as e:
                logger.warning(f"Gemini initialization failed: {e}. Using template responses.")

        self.generated_count = 0
        self.fallback_count = 0

    async def render(
        self,
        template: str,
        history: Optional[List[Dict[str, str]]] = None,
        collected_data: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Return the reply to speak, the template itself when Gemini is off or fails"""
        if not self.llm_ready:
            return template

        prompt = self._build_prompt(template, history or [], collected_data or {})
        text = await self._generate(prompt)
        if not text:
            self.fallback_count += 1
            return template

        self.generated_count += 1
        return text

    def _build_prompt(self, template: str, history: List[Dict[str, str]], collected_data: Dict[str, Any]) -> str:
        lines = [RESPONSE_SYSTEM_PROMPT, ""]
        if history:
            lines.append("Conversation so far:")
            for message in history:
                lines.append(f"{message.get('role', 'user')}: {message.get('content', '')}")
            lines.append("")
        if collected_data.get("patient_name"):
            lines.append(f"Caller: {collected_data['patient_name']}")
        lines.append(f"DRAFT: {template}")
        return "\n".join(lines)

    async def _generate(self, prompt: str) -> Optional[str]:
        max_retries = 3
        base_delay = 0.5

        for attempt in range(max_retries):
            try:
                response = await asyncio.wait_for(
                    asyncio.to_thread(
                        self.model.generate_content,
                        prompt,
                        generation_config=genai.types.GenerationConfig(
                            temperature=0.3,
                            max_output_tokens=200
                        )
                    ),
                    timeout=self.config.response_timeout
                )
            except asyncio.TimeoutError:
                if attempt < max_retries - 1:
                    delay = base_delay * (2 ** attempt)
                    logger.warning(f"Gemini response timeout (attempt {attempt + 1}/{max_retries}), retrying in {delay}s...")
                    await asyncio.sleep(delay)
                    continue
                logger.warning(f"Gemini response timed out after {max_retries} attempts")
                return None
            except Exception as e:
                error_str = str(e).lower()
                is_retryable = ("429" in error_str or "503" in error_str or
                                "quota" in error_str or "rate limit" in error_str or
                                "service unavailable" in error_str)
                if is_retryable and attempt < max_retries - 1:
                    delay = base_delay * (2 ** attempt)
                    logger.warning(f"Gemini API error (attempt {attempt + 1}/{max_retries}): {str(e)[:100]}... Retrying in {delay}s...")
                    await asyncio.sleep(delay)
                    continue
                logger.warning(f"Gemini API error: {e}")
                return None

            try:
                text = (response.text or "").strip()
            except ValueError as e:
                # Blocked candidates have no text
                logger.warning(f"Gemini returned no text: {e}")
                return None
            text = re.sub(r"^```\w*\s*|\s*```$", "", text).strip()
            return text or None

        return None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "llm_ready": self.llm_ready,
            "generated_count": self.generated_count,
            "fallback_count": self.fallback_count,
        }
