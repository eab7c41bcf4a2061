"""
Settings management for Companion.
Handles loading, saving, and merging of configuration settings.
"""

import os
import copy
import json

from dotenv import load_dotenv

from ..constants import (
    TTS_MAX_CHARS,
    MIN_CUE_SECONDS,
    MAX_CUE_GAP_SECONDS,
    NEUTRAL_SHAPE,
    WORKSPACE_MAX_AGE_MINUTES,
    WORKSPACE_CLEANUP_INTERVAL_SECONDS,
    PROBE_TIMEOUT_SECONDS,
    PROCESS_TIMEOUT_SECONDS,
    MAX_REPLY_MESSAGES,
)

# Directory constants
COMPANION_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
PROJECT_DIR = os.path.dirname(COMPANION_DIR)

# Load .env from the project root (and the current directory) before reading env overrides
load_dotenv(os.path.join(PROJECT_DIR, ".env"))
load_dotenv()

DATA_DIR = os.getenv("COMPANION_DATA_DIR") or os.path.join(PROJECT_DIR, "data")
SETTINGS_FILE = os.path.join(DATA_DIR, "settings.json")

DEFAULT_SYSTEM_PROMPT = (
    "You are Kiko, {userName}'s cheerful virtual girlfriend. It is {currentTime}. "
    "The user is {userMood}. {moodContext} Reply warmly and briefly.\n\n"
    "Always answer with a JSON object of the form {\"messages\": [...]} containing at most "
    "{maxMessages} messages. Each message has a \"text\", a \"facialExpression\" and an "
    "\"animation\". Facial expressions: smile, sad, angry, surprised, funnyFace, default. "
    "Animations: Talking_0, Talking_1, Talking_2, Crying, Laughing, Rumba, Idle, Terrified, Angry."
)

DEFAULT_SETTINGS = {
    "server": {
        "host": "127.0.0.1",
        "port": 5000
    },
    "tts": {
        "provider": "openai",  # openai | elevenlabs
        "max_chars": TTS_MAX_CHARS,
        "openai": {"api_key": "", "api_url": "", "model": "tts-1", "voice": "nova", "speed": 1.0},
        "elevenlabs": {"api_url": "https://api.elevenlabs.io", "api_key": "", "voice_id": "", "model": "eleven_flash_v2_5", "stability": 0.5, "similarity_boost": 0.75, "output_format": "mp3_44100_128"}
    },
    "llm": {
        "provider": "openai",  # openai | openrouter
        "openai": {
            "api_key": "",
            "api_url": ""
        },
        "openrouter": {
            "api_key": ""
        }
    },
    "conversation": {
        "chat_model": "gpt-4o-mini",
        "temperature": 0.9,
        "max_tokens": 1024,
        "max_messages": MAX_REPLY_MESSAGES,
        "system_prompt": DEFAULT_SYSTEM_PROMPT
    },
    "binaries": {
        "ffmpeg_path": "",  # Empty = probe conventional install locations
        "rhubarb_path": "",
        "probe_timeout_seconds": PROBE_TIMEOUT_SECONDS,
        "process_timeout_seconds": PROCESS_TIMEOUT_SECONDS
    },
    "lipsync": {
        "enabled": True,
        "recognizer": "phonetic",  # phonetic | pocketSphinx
        "min_cue_seconds": MIN_CUE_SECONDS,
        "max_gap_seconds": MAX_CUE_GAP_SECONDS,
        "neutral_shape": NEUTRAL_SHAPE
    },
    "speech": {
        "skip_unspeakable": True  # Emoji-only lines get no audio at all
    },
    "workspace": {
        "root_dir": "",  # Empty = <system temp>/companion
        "max_age_minutes": WORKSPACE_MAX_AGE_MINUTES,
        "cleanup_interval_seconds": WORKSPACE_CLEANUP_INTERVAL_SECONDS
    },
    "pipeline": {
        "max_workers": MAX_REPLY_MESSAGES
    }
}


def deep_merge(base, override):
    """Return base with override merged in; nested dicts merge, anything else replaces."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        merged[key] = deep_merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


def load_settings():
    """Settings from SETTINGS_FILE layered over DEFAULT_SETTINGS (defaults alone if unreadable)."""
    defaults = copy.deepcopy(DEFAULT_SETTINGS)
    if not os.path.exists(SETTINGS_FILE):
        return defaults
    try:
        with open(SETTINGS_FILE, encoding='utf-8') as f:
            stored = json.load(f)
    except (OSError, ValueError) as e:
        print(f"[Settings] Could not read {SETTINGS_FILE}: {e}")
        return defaults
    if not isinstance(stored, dict):
        print(f"[Settings] Ignoring {SETTINGS_FILE}: not a JSON object")
        return defaults
    return deep_merge(defaults, stored)


def save_settings(settings):
    """Write settings as JSON. Returns False if the file could not be written."""
    try:
        os.makedirs(os.path.dirname(SETTINGS_FILE), exist_ok=True)
        with open(SETTINGS_FILE, 'w', encoding='utf-8') as f:
            json.dump(settings, f, indent=2)
    except (OSError, TypeError) as e:
        print(f"[Settings] Could not save {SETTINGS_FILE}: {e}")
        return False
    return True


def get_setting(path, default=None):
    """Get a setting by dot-notation path (e.g., 'lipsync.recognizer')"""
    node = load_settings()
    for part in path.split('.'):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node
