"""
Shared constants for Companion modules.
"""

# Version
VERSION = "1.0.0"

# Speech synthesis
TTS_MAX_CHARS = 2500  # Providers reject long inputs; text is truncated before the call
TTS_TRUNCATION_SUFFIX = "..."

# Mouth cue post-processing (seconds)
MIN_CUE_SECONDS = 0.05  # Shorter cues are stretched to this floor
MAX_CUE_GAP_SECONDS = 0.1  # Longer gaps get an explicit neutral cue
NEUTRAL_SHAPE = "X"  # Rhubarb's rest/idle mouth shape

# Closed viseme alphabet produced by Rhubarb Lip Sync (extended shapes G, H, X included)
MOUTH_SHAPES = ("A", "B", "C", "D", "E", "F", "G", "H", "X")

# Temp workspace
WORKSPACE_DIR_NAME = "companion"
WORKSPACE_MAX_AGE_MINUTES = 30
WORKSPACE_CLEANUP_INTERVAL_SECONDS = 300

# Helper processes
PROBE_TIMEOUT_SECONDS = 5
PROCESS_TIMEOUT_SECONDS = 60
PROCESS_POLL_SECONDS = 0.1

# Chat request limits
MAX_MESSAGE_CHARS = 200
MAX_MOOD_CHARS = 50
MAX_REPLY_MESSAGES = 3
