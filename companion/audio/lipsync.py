"""
Mouth Cue Lip Sync Module

Runs Rhubarb Lip Sync against an audio file and turns its JSON output into a
clean mouth cue timeline for the avatar:

    [{"start": 0.0, "end": 0.12, "value": "B"}, {"start": 0.12, ...}, ...]

Raw Rhubarb cues are jittery, so they are post-processed:
- sorted by start time
- stretched to a minimum duration (50ms)
- gaps longer than 100ms are filled with the neutral shape (X)
- anything still under the minimum duration is dropped
"""
import json
import os
import subprocess
import time
from typing import Dict, List, Optional

from .binaries import BinaryResolver, run_binary, default_rhubarb_candidates
from ..constants import (
    MIN_CUE_SECONDS,
    MAX_CUE_GAP_SECONDS,
    NEUTRAL_SHAPE,
    MOUTH_SHAPES,
    PROCESS_TIMEOUT_SECONDS,
)

# Float noise allowance when comparing cue lengths against the floor
_EPSILON = 1e-9


def _get_event_logger():
    """Lazy import of event_logger"""
    try:
        from .. import event_logger as el
        return el
    except ImportError:
        return None


# ============================================
# Parsing
# ============================================

def parse_rhubarb_json(content: str, neutral_shape: str = NEUTRAL_SHAPE) -> List[Dict]:
    """
    Parse Rhubarb's JSON export into raw cues.

    Cues missing start/end are skipped; unknown or missing shapes become the
    neutral shape.

    Raises:
        ValueError: if content is not a JSON object or its mouthCues is not a list
    """
    root = json.loads(content)
    if not isinstance(root, dict):
        raise ValueError("Rhubarb output is not a JSON object")

    mouth_cues = root.get("mouthCues")
    if mouth_cues is None:
        mouth_cues = []
    elif not isinstance(mouth_cues, list):
        raise ValueError("Rhubarb mouthCues is not a list")

    cues = []
    for cue in mouth_cues:
        if not isinstance(cue, dict):
            continue
        try:
            start = float(cue["start"])
            end = float(cue["end"])
        except (KeyError, TypeError, ValueError):
            continue
        value = cue.get("value")
        if value not in MOUTH_SHAPES:
            value = neutral_shape
        cues.append({"start": start, "end": end, "value": value})
    return cues


# ============================================
# Post-processing
# ============================================

def post_process_cues(cues: List[Dict],
                      min_duration: float = MIN_CUE_SECONDS,
                      max_gap: float = MAX_CUE_GAP_SECONDS,
                      neutral_shape: str = NEUTRAL_SHAPE) -> List[Dict]:
    """
    Turn raw cues into a monotonic, gap-bounded timeline.

    Guarantees on the result: sorted by start, no overlaps, every cue at least
    min_duration long, no gap between neighbours larger than max_gap.
    """
    if not cues:
        return []

    ordered = sorted(cues, key=lambda c: c["start"])
    processed: List[Dict] = []

    for raw in ordered:
        cue = {"start": max(0.0, raw["start"]), "end": raw["end"], "value": raw["value"]}

        if processed:
            previous = processed[-1]
            # A stretched predecessor may now overlap this cue
            if cue["start"] < previous["end"]:
                cue["start"] = previous["end"]
                if cue["end"] - cue["start"] < min_duration - _EPSILON:
                    continue
            elif cue["start"] - previous["end"] > max_gap:
                # Gap too short to hold a cue of its own
                if cue["start"] - previous["end"] < min_duration:
                    previous["end"] = cue["start"]
                else:
                    processed.append({
                        "start": previous["end"],
                        "end": cue["start"],
                        "value": neutral_shape
                    })

        if cue["end"] - cue["start"] < min_duration:
            cue["end"] = cue["start"] + min_duration

        processed.append(cue)

    return [c for c in processed if c["end"] - c["start"] >= min_duration - _EPSILON]


def timeline_duration(cues: List[Dict]) -> float:
    """End of the last cue, rounded to centiseconds."""
    if not cues:
        return 0.0
    return round(max(c["end"] for c in cues), 2)


# ============================================
# Generator
# ============================================

class LipsyncGenerator:
    """Wraps the Rhubarb binary: audio file in, post-processed cue list out."""

    def __init__(self, resolver=None, recognizer="phonetic",
                 min_duration=MIN_CUE_SECONDS, max_gap=MAX_CUE_GAP_SECONDS,
                 neutral_shape=NEUTRAL_SHAPE, timeout=PROCESS_TIMEOUT_SECONDS):
        self.resolver = resolver or BinaryResolver(
            "rhubarb", candidates=default_rhubarb_candidates(), version_args=("--version",))
        self.recognizer = recognizer
        self.min_duration = min_duration
        self.max_gap = max_gap
        self.neutral_shape = neutral_shape
        self.timeout = timeout

    def is_available(self):
        return self.resolver.resolve() is not None

    def build_command(self, rhubarb, audio_path, output_path):
        return [
            rhubarb,
            "-f", "json",
            "-o", output_path,
            "-r", self.recognizer,
            "--machineReadable",
            audio_path
        ]

    def generate(self, audio_path: str, cancel_event=None) -> Optional[List[Dict]]:
        """
        Extract mouth cues for one audio file.

        Returns:
            Post-processed cue list, or None if extraction failed for any reason

        Raises:
            ProcessCancelled: if cancel_event fired while Rhubarb was running
        """
        if not os.path.isfile(audio_path):
            print(f"[Lipsync] Audio file not found: {audio_path}")
            return None

        rhubarb = self.resolver.resolve()
        if not rhubarb:
            print("[Lipsync] ERROR: Rhubarb binary not found - check binaries.rhubarb_path")
            self._log(audio_path, 0, None, None, "error", "rhubarb not found")
            return None

        output_path = f"{audio_path}.json"
        start_time = time.time()
        try:
            try:
                result = run_binary(
                    self.build_command(rhubarb, audio_path, output_path),
                    cancel_event=cancel_event,
                    timeout=self.timeout
                )
            except (subprocess.TimeoutExpired, OSError) as e:
                print(f"[Lipsync] ERROR: Rhubarb failed to run: {e}")
                self._log(audio_path, 0, None, None, "error", str(e))
                return None

            if result.returncode != 0:
                error = (result.stderr or "").strip()[:500]
                print(f"[Lipsync] ERROR: Rhubarb exit {result.returncode}: {error}")
                self._log(audio_path, 0, None, None, "error", error or f"exit code {result.returncode}")
                return None

            if not os.path.isfile(output_path):
                print(f"[Lipsync] ERROR: Rhubarb output not found: {output_path}")
                self._log(audio_path, 0, None, None, "error", "output file missing")
                return None

            try:
                with open(output_path, 'r', encoding='utf-8') as f:
                    raw_cues = parse_rhubarb_json(f.read(), self.neutral_shape)
            except (OSError, ValueError) as e:
                print(f"[Lipsync] ERROR: Could not parse Rhubarb output: {e}")
                self._log(audio_path, 0, None, None, "error", f"parse error: {e}")
                return None
        finally:
            _remove_quietly(output_path)

        cues = post_process_cues(raw_cues, self.min_duration, self.max_gap, self.neutral_shape)
        elapsed_ms = (time.time() - start_time) * 1000
        print(f"[Lipsync] {os.path.basename(audio_path)}: {len(raw_cues)} raw -> {len(cues)} cues ({elapsed_ms:.0f}ms)")
        self._log(audio_path, len(cues), timeline_duration(cues), elapsed_ms, "success", None)
        return cues

    def _log(self, audio_path, cue_count, duration, elapsed_ms, status, error):
        el = _get_event_logger()
        if el:
            el.log_lipsync_event(audio_file=audio_path, cue_count=cue_count,
                                 duration_seconds=duration, elapsed_ms=elapsed_ms,
                                 status=status, error=error)


def _remove_quietly(path):
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        print(f"[Lipsync] WARNING: Failed to delete temporary JSON file {path}: {e}")
