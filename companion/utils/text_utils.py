"""
Text processing utilities for Companion.
Cleans utterance text before it is handed to a speech provider.
"""

import re

from ..constants import TTS_MAX_CHARS, TTS_TRUNCATION_SUFFIX

# Anything outside printable ASCII, Latin letters with diacritics (Latin-1 letters,
# Latin Extended-A/B) and whitespace is dropped: emoji, dingbats, CJK, box drawing...
_UNSPEAKABLE = re.compile(r'[^\x20-\x7EÀ-ÖØ-öø-ɏ\s]')
_WHITESPACE = re.compile(r'\s+')


def sanitize_for_speech(text):
    """
    Restrict text to characters a speech engine can pronounce.

    Disallowed characters are removed, whitespace runs collapse to a single
    space and the ends are trimmed. Never raises; non-string input yields "".
    """
    if not isinstance(text, str) or not text:
        return ""
    text = _UNSPEAKABLE.sub('', text)
    return _WHITESPACE.sub(' ', text).strip()


def truncate_for_tts(text, max_chars=TTS_MAX_CHARS):
    """Cut text to max_chars, marking the cut with an ellipsis."""
    if len(text) <= max_chars:
        return text
    keep = max(0, max_chars - len(TTS_TRUNCATION_SUFFIX))
    return text[:keep] + TTS_TRUNCATION_SUFFIX
