"""
Audio helpers: external binaries, transcoding and mouth cue extraction.
"""

from .binaries import BinaryResolver, ProcessCancelled, run_binary
from .transcode import AudioTranscoder
from .lipsync import LipsyncGenerator, parse_rhubarb_json, post_process_cues
