"""
OpenAI TTS Provider

Speech synthesis through the OpenAI audio API (or a compatible endpoint).
Returns MP3 bytes.
"""
import os
from typing import Dict

from openai import OpenAI

from .base import BaseTTSProvider, SynthesisError
from ...utils.settings import load_settings


def _get_openai_tts_config():
    """Get OpenAI TTS configuration from settings, fallback to .env"""
    settings = load_settings()
    tts_settings = settings.get('tts', {})
    openai_settings = tts_settings.get('openai', {})
    llm_openai = settings.get('llm', {}).get('openai', {})

    return {
        # Falls back to the LLM key - same account in most setups
        "api_key": (openai_settings.get('api_key') or os.getenv("OPENAI_API_KEY", "")
                    or llm_openai.get('api_key', "")),
        "api_url": openai_settings.get('api_url') or os.getenv("OPENAI_TTS_API_URL", "https://api.openai.com/v1"),
        "model": openai_settings.get('model') or "tts-1",
        "voice": openai_settings.get('voice') or "nova",
        "speed": float(openai_settings.get('speed', 1.0)),
        "max_chars": tts_settings.get('max_chars'),
    }


class OpenAITTSProvider(BaseTTSProvider):
    """OpenAI speech endpoint, MP3 output."""

    @property
    def name(self) -> str:
        return "OpenAI TTS"

    def get_config(self) -> Dict:
        return _get_openai_tts_config()

    def synthesize_bytes(self, text: str) -> bytes:
        config = self.get_config()
        if not config["api_key"]:
            raise SynthesisError("OpenAI API key not configured (set tts.openai.api_key or OPENAI_API_KEY)")

        client = OpenAI(api_key=config["api_key"], base_url=config["api_url"])
        response = client.audio.speech.create(
            model=config["model"],
            voice=config["voice"],
            input=text,
            speed=config["speed"],
            response_format="mp3",
        )
        return response.content
