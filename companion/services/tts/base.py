"""
Base TTS Provider

Abstract base class and shared implementation for TTS providers.
Providers only implement the raw API call; the base class handles length
limits, timing, event logging and turning failures into an error value.
"""
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from ...constants import TTS_MAX_CHARS
from ...utils.text_utils import truncate_for_tts


def _get_event_logger():
    """Lazy import of event_logger"""
    try:
        from ... import event_logger as el
        return el
    except ImportError:
        return None


class SynthesisError(Exception):
    """A provider could not turn text into audio."""


class BaseTTSProvider(ABC):
    """
    Abstract base class for TTS providers.

    Implements the shared synthesize() contract: text in, (audio bytes, error)
    out, never raising. Subclasses implement synthesize_bytes().
    """

    # Container of the bytes returned by synthesize_bytes()
    audio_extension = ".mp3"

    # ----------------------------------------
    # Abstract Properties/Methods (MUST override)
    # ----------------------------------------

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name for logging (e.g., 'OpenAI TTS', 'ElevenLabs')."""
        pass

    @abstractmethod
    def get_config(self) -> Dict:
        """Get provider configuration from settings."""
        pass

    @abstractmethod
    def synthesize_bytes(self, text: str) -> bytes:
        """
        Call the provider API.

        Returns:
            Encoded audio bytes

        Raises:
            SynthesisError (or any transport exception) on failure
        """
        pass

    # ----------------------------------------
    # Optional Hooks (CAN override)
    # ----------------------------------------

    def is_configured(self) -> bool:
        """True if credentials are present. Override per provider."""
        return bool(self.get_config().get("api_key"))

    def get_max_chars(self) -> int:
        return int(self.get_config().get("max_chars") or TTS_MAX_CHARS)

    # ----------------------------------------
    # Shared Implementation
    # ----------------------------------------

    def synthesize(self, text: str) -> Tuple[bytes, Optional[str]]:
        """
        Synthesize text to encoded audio.

        Returns:
            (audio_bytes, None) on success, (b"", error message) on failure
        """
        original_length = len(text)
        text = truncate_for_tts(text, self.get_max_chars())
        if len(text) < original_length:
            print(f"[{self.name}] Truncated text from {original_length} to {len(text)} chars")

        start_time = time.time()
        try:
            audio = self.synthesize_bytes(text)
            if not audio:
                raise SynthesisError("No audio data received")
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            print(f"[{self.name}] Synthesis failed: {e}")
            self._log(text, 0, duration_ms, "error", str(e))
            return b"", str(e)

        duration_ms = (time.time() - start_time) * 1000
        print(f"[{self.name}] Synthesized {len(text)} chars -> {len(audio)} bytes ({duration_ms:.0f}ms)")
        self._log(text, len(audio), duration_ms, "success", None)
        return audio, None

    def _log(self, text, audio_bytes, duration_ms, status, error):
        el = _get_event_logger()
        if el:
            el.log_tts_event(
                provider=self.name,
                text_excerpt=text[:100],
                audio_bytes=audio_bytes,
                text_length=len(text),
                duration_ms=duration_ms,
                status=status,
                error=error
            )
