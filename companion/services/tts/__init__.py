"""
TTS Provider Package

Provides a unified interface for text-to-speech providers (OpenAI, ElevenLabs).
"""
from ...utils.settings import load_settings

from .base import BaseTTSProvider, SynthesisError

# Cached provider instances
_providers = {}


def get_provider_name() -> str:
    """Get current provider name."""
    settings = load_settings()
    return settings.get('tts', {}).get('provider', 'openai')


def get_provider() -> BaseTTSProvider:
    """Get the configured TTS provider instance (cached)."""
    provider_name = get_provider_name()

    if provider_name not in _providers:
        if provider_name == 'elevenlabs':
            from .elevenlabs import ElevenLabsProvider
            _providers[provider_name] = ElevenLabsProvider()
        else:
            from .openai_tts import OpenAITTSProvider
            _providers[provider_name] = OpenAITTSProvider()

    return _providers[provider_name]


def synthesize(text):
    """
    Synthesize text with the active provider.

    Returns:
        (audio_bytes, error) - error is None on success, audio_bytes is b"" on failure
    """
    return get_provider().synthesize(text)


def is_available() -> bool:
    """Check if TTS is properly configured."""
    return get_provider().is_configured()
