"""Gemini-backed decision, summarization and narration calls."""

from __future__ import annotations

import logging
import time

from google import genai
from google.genai import types

from .errors import DecisionModelUnavailable
from .prompts import NARRATOR_SYSTEM_PROMPT
from .terminal_text import extract_agent_response, format_for_speech

logger = logging.getLogger(__name__)


class GeminiDecisionModel:
    """Text generation through the google-genai async client."""

    def __init__(
        self,
        api_key: str | None,
        decision_model: str = "gemini-2.5-flash",
        summarizer_model: str = "gemini-2.5-flash",
        narrator_model: str = "gemini-2.5-flash",
    ):
        """Initialize the model wrapper.

        Args:
            api_key: Google API key, or None when no model is configured
            decision_model: Model for per-utterance decisions
            summarizer_model: Model for memory compaction
            narrator_model: Model for spoken narration
        """
        self.decision_model = decision_model
        self.summarizer_model = summarizer_model
        self.narrator_model = narrator_model
        self.client = genai.Client(api_key=api_key) if api_key else None

    @property
    def available(self) -> bool:
        return self.client is not None

    async def _generate(
        self,
        model: str,
        system: str,
        parts: list,
        max_tokens: int,
        temperature: float,
        json_output: bool = False,
    ) -> str:
        if self.client is None:
            raise DecisionModelUnavailable("GOOGLE_API_KEY not set")
        config = types.GenerateContentConfig(
            system_instruction=system,
            max_output_tokens=max_tokens,
            temperature=temperature,
            response_mime_type="application/json" if json_output else None,
        )
        response = await self.client.aio.models.generate_content(
            model=model,
            contents=[types.Content(role="user", parts=parts)],
            config=config,
        )
        return (response.text or "").strip()

    async def decide(
        self,
        system: str,
        context: str,
        utterance: str,
        image: bytes | None = None,
    ) -> str:
        """Ask for a structured decision about one utterance.

        Args:
            system: System instructions
            context: Assembled context block
            utterance: What the user said
            image: Optional screenshot from the client

        Returns:
            Raw model text, expected to be a JSON decision
        """
        parts = [types.Part(text=f'{context}\n\nUser just said: "{utterance}"\n\nOutput JSON only:')]
        if image:
            parts.append(types.Part.from_bytes(data=image, mime_type="image/png"))
        started = time.monotonic()
        text = await self._generate(self.decision_model, system, parts, 1024, 0.2, json_output=True)
        logger.info(f"Decision model answered in {time.monotonic() - started:.2f}s")
        return text

    async def summarize(self, system: str, text: str) -> str:
        """Long-form summary used by memory compaction."""
        return await self._generate(self.summarizer_model, system, [types.Part(text=text)], 4000, 0.3)

    async def narrate(self, response: str, utterance: str) -> str:
        prompt = f'The user asked: "{utterance}"\n\nAgent output:\n{response[:3000]}'
        return await self._generate(
            self.narrator_model, NARRATOR_SYSTEM_PROMPT, [types.Part(text=prompt)], 300, 0.4
        )


class Narrator:
    """Turns agent output into something worth saying out loud."""

    def __init__(self, model: GeminiDecisionModel | None = None):
        self.model = model

    async def present(self, response: str, utterance: str) -> str:
        """Spoken rendition of an agent response against the user's request.

        Falls back to plain speech formatting when the model is unavailable
        or fails.
        """
        cleaned = extract_agent_response(response) or response
        if self.model is not None and self.model.available:
            try:
                spoken = await self.model.narrate(cleaned, utterance)
                if spoken:
                    return format_for_speech(spoken)
            except Exception as e:
                logger.warning(f"Narration failed, reading output directly: {e}")
        return format_for_speech(cleaned)[:600]
