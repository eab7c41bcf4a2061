"""
ElevenLabs TTS Provider

Speech synthesis using the ElevenLabs HTTP API (pure requests, no SDK).
Requests MP3 output so every provider hands the pipeline the same container.
"""
import os
from typing import Dict

import requests

from .base import BaseTTSProvider, SynthesisError
from ...utils.settings import load_settings


def _get_elevenlabs_config():
    """Get ElevenLabs configuration from settings, fallback to .env"""
    settings = load_settings()
    tts_settings = settings.get('tts', {})
    elevenlabs_settings = tts_settings.get('elevenlabs', {})

    return {
        "api_url": elevenlabs_settings.get('api_url') or os.getenv("ELEVENLABS_API_URL", "https://api.elevenlabs.io"),
        "api_key": elevenlabs_settings.get('api_key') or os.getenv("ELEVENLABS_API_KEY", ""),
        "voice_id": elevenlabs_settings.get('voice_id') or os.getenv("ELEVENLABS_VOICE_ID", ""),
        "model": elevenlabs_settings.get('model') or os.getenv("ELEVENLABS_MODEL", "eleven_flash_v2_5"),
        "stability": float(elevenlabs_settings.get('stability', 0.5)),
        "similarity_boost": float(elevenlabs_settings.get('similarity_boost', 0.75)),
        "output_format": elevenlabs_settings.get('output_format') or "mp3_44100_128",
        "max_chars": tts_settings.get('max_chars'),
    }


class ElevenLabsProvider(BaseTTSProvider):
    """ElevenLabs text-to-speech, single voice configured in settings."""

    @property
    def name(self) -> str:
        return "ElevenLabs"

    def get_config(self) -> Dict:
        return _get_elevenlabs_config()

    def is_configured(self) -> bool:
        config = self.get_config()
        return bool(config["api_key"] and config["voice_id"])

    def synthesize_bytes(self, text: str) -> bytes:
        config = self.get_config()
        if not config["api_key"]:
            raise SynthesisError("ElevenLabs API key not configured (set in settings or .env)")
        if not config["voice_id"]:
            raise SynthesisError("ElevenLabs voice_id not configured")

        api_url = config["api_url"].rstrip('/')
        url = f"{api_url}/v1/text-to-speech/{config['voice_id']}?output_format={config['output_format']}"

        payload = {
            "text": text,
            "model_id": config["model"],
            "voice_settings": {
                "stability": config["stability"],
                "similarity_boost": config["similarity_boost"],
            }
        }

        headers = {
            "xi-api-key": config["api_key"],
            "Content-Type": "application/json",
            "Accept": "audio/mpeg",
        }

        response = requests.post(url, json=payload, headers=headers, timeout=60)
        if response.status_code != 200:
            print(f"[ElevenLabs] HTTP Error: {response.status_code}")
            print(f"[ElevenLabs] Body: {response.text[:500]}")
            raise SynthesisError(f"ElevenLabs HTTP {response.status_code}")

        return response.content
