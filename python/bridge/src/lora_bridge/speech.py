"""Speech-to-text and text-to-speech over the OpenAI audio API."""

from __future__ import annotations

import logging
import time

import httpx

from .errors import SpeechUnavailable, TranscriptionUnavailable

logger = logging.getLogger(__name__)

_EXTENSIONS = {"wav": "wav", "mp3": "mp3", "mpeg": "mp3", "m4a": "m4a", "mp4": "m4a", "webm": "webm"}


def _extension_for(mime_type: str) -> str:
    for key, ext in _EXTENSIONS.items():
        if key in mime_type:
            return ext
    return "wav"


class OpenAISpeechClient:
    """Transcription (Whisper) and synthesis (TTS) client.

    Without an API key both calls raise a ``ConfigurationError`` subclass.
    The missing key is logged once, then callers treat the capability as
    unavailable for the life of the process.
    """

    def __init__(
        self,
        api_key: str | None,
        base_url: str = "https://api.openai.com",
        stt_model: str = "whisper-1",
        tts_model: str = "tts-1",
        voice: str = "nova",
    ):
        """Initialize speech client.

        Args:
            api_key: OpenAI API key, or None when speech is not configured
            base_url: API base URL
            stt_model: Transcription model
            tts_model: Speech synthesis model
            voice: Synthesis voice
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.stt_model = stt_model
        self.tts_model = tts_model
        self.voice = voice
        self.client = httpx.AsyncClient(timeout=60)
        self._reported_missing = False

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    def _require_key(self, error: type[Exception]) -> None:
        if self.api_key:
            return
        if not self._reported_missing:
            logger.error("OPENAI_API_KEY not set; speech is unavailable")
            self._reported_missing = True
        raise error("OPENAI_API_KEY not set")

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def transcribe(self, audio: bytes, mime_type: str = "audio/wav") -> str:
        """Transcribe recorded audio.

        Args:
            audio: Raw audio bytes
            mime_type: Audio MIME type reported by the client

        Returns:
            Transcribed text
        """
        self._require_key(TranscriptionUnavailable)
        started = time.monotonic()
        files = {"file": (f"audio.{_extension_for(mime_type)}", audio, mime_type)}
        data = {"model": self.stt_model, "language": "en"}
        response = await self.client.post(
            f"{self.base_url}/v1/audio/transcriptions",
            headers=self._headers,
            files=files,
            data=data,
        )
        response.raise_for_status()
        text = response.json().get("text", "")
        logger.info(f"Transcribed {len(audio)} bytes in {time.monotonic() - started:.2f}s: {text!r}")
        return text

    async def synthesize(self, text: str) -> bytes:
        """Render text as mp3 audio."""
        self._require_key(SpeechUnavailable)
        started = time.monotonic()
        response = await self.client.post(
            f"{self.base_url}/v1/audio/speech",
            headers=self._headers,
            json={
                "model": self.tts_model,
                "input": text,
                "voice": self.voice,
                "response_format": "mp3",
            },
        )
        response.raise_for_status()
        logger.debug(f"Synthesized {len(text)} chars in {time.monotonic() - started:.2f}s")
        return response.content
