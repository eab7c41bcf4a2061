"""
Audio transcoding via ffmpeg.

Rhubarb only reads WAV/OGG, speech providers hand back MP3. Conversion is
best-effort: when ffmpeg is missing or fails, the original file is passed
through and the lip sync step gets whatever it can make of it.
"""
import os
import subprocess
import time

from .binaries import BinaryResolver, ProcessCancelled, run_binary, FFMPEG_CANDIDATES
from ..constants import PROCESS_TIMEOUT_SECONDS


def _get_event_logger():
    """Lazy import of event_logger"""
    try:
        from .. import event_logger as el
        return el
    except ImportError:
        return None


class AudioTranscoder:
    """Converts synthesized audio into the format the viseme extractor reads."""

    def __init__(self, resolver=None, target_ext=".wav", timeout=PROCESS_TIMEOUT_SECONDS):
        self.resolver = resolver or BinaryResolver("ffmpeg", candidates=FFMPEG_CANDIDATES)
        self.target_ext = target_ext
        self.timeout = timeout

    def is_available(self):
        return self.resolver.resolve() is not None

    def build_command(self, ffmpeg, source_path, output_path):
        return [
            ffmpeg, "-y", "-hide_banner", "-loglevel", "error",
            "-i", source_path,
            "-acodec", "pcm_s16le", "-ac", "1",
            output_path
        ]

    def to_extractor_format(self, source_path, cancel_event=None):
        """
        Convert source_path to the target format next to it.

        Returns:
            Path of the converted file, or source_path unchanged if it already
            has the target extension or conversion was not possible.

        Raises:
            ProcessCancelled: if cancel_event fired while ffmpeg was running
        """
        if source_path.lower().endswith(self.target_ext):
            return source_path

        ffmpeg = self.resolver.resolve()
        if not ffmpeg:
            print(f"[Transcode] WARNING: ffmpeg unavailable, passing through {os.path.basename(source_path)}")
            self._log(source_path, None, None, "warning", "ffmpeg not found")
            return source_path

        output_path = os.path.splitext(source_path)[0] + self.target_ext
        start_time = time.time()
        try:
            result = run_binary(
                self.build_command(ffmpeg, source_path, output_path),
                cancel_event=cancel_event,
                timeout=self.timeout
            )
        except ProcessCancelled:
            _remove_quietly(output_path)
            raise
        except (subprocess.TimeoutExpired, OSError) as e:
            print(f"[Transcode] WARNING: ffmpeg failed to run ({e}), passing through original")
            _remove_quietly(output_path)
            self._log(source_path, None, None, "warning", str(e))
            return source_path

        duration_ms = (time.time() - start_time) * 1000
        if result.returncode != 0 or not os.path.isfile(output_path):
            error = (result.stderr or "").strip()[:500] or f"exit code {result.returncode}"
            print(f"[Transcode] WARNING: ffmpeg exit {result.returncode}: {error}")
            _remove_quietly(output_path)
            self._log(source_path, None, duration_ms, "warning", error)
            return source_path

        print(f"[Transcode] {os.path.basename(source_path)} -> {os.path.basename(output_path)} ({duration_ms:.0f}ms)")
        self._log(source_path, output_path, duration_ms, "success", None)
        return output_path

    def _log(self, source, output, duration_ms, status, error):
        el = _get_event_logger()
        if el:
            el.log_transcode_event(source=source, output=output, duration_ms=duration_ms,
                                   status=status, error=error)


def _remove_quietly(path):
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        print(f"[Transcode] Could not remove partial output {path}: {e}")
