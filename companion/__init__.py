"""
Companion - virtual companion chat backend.

Turns an AI reply (a short list of utterances) into speech audio and
mouth-cue timelines so a 3D avatar can lip-sync while it talks.
"""

from .constants import VERSION

__version__ = VERSION
