"""
External helper binaries (ffmpeg, Rhubarb Lip Sync).

Locates executables by probing a configured path and a short list of
conventional install locations, and runs them as child processes that are
always reaped, even on cancellation or timeout.
"""
import os
import shutil
import subprocess
import sys
import threading
import time
from typing import List, Optional, Sequence

from ..constants import PROBE_TIMEOUT_SECONDS, PROCESS_TIMEOUT_SECONDS, PROCESS_POLL_SECONDS

FFMPEG_CANDIDATES = [
    "/usr/bin/ffmpeg",
    "/usr/local/bin/ffmpeg",
    "/opt/homebrew/bin/ffmpeg",
    "ffmpeg",
]


def default_rhubarb_candidates() -> List[str]:
    """Bundled binary for the current platform first, then system installs."""
    if sys.platform == "darwin":
        bundled = "./bin/rhubarb-macos"
    else:
        # Windows dev boxes fall back to the Linux build used in production
        bundled = "./bin/rhubarb-linux"
    return [bundled, "/usr/local/bin/rhubarb", "rhubarb"]


class ProcessCancelled(Exception):
    """A child process was terminated because its run was cancelled."""


class BinaryResolver:
    """
    Find a working executable: configured override first, then candidates.

    Each candidate is verified by running it with version_args; the first one
    that exits 0 wins and is cached for the lifetime of the resolver.
    Failed lookups are not cached, so installing the binary later is picked up.
    """

    def __init__(self, name: str, configured_path: Optional[str] = None,
                 candidates: Optional[Sequence[str]] = None,
                 version_args: Sequence[str] = ("-version",),
                 probe_timeout: float = PROBE_TIMEOUT_SECONDS):
        self.name = name
        self.configured_path = configured_path or None
        self.candidates = list(candidates or [])
        self.version_args = list(version_args)
        self.probe_timeout = probe_timeout
        self._resolved: Optional[str] = None
        self._lock = threading.Lock()

    def candidate_paths(self) -> List[str]:
        paths = []
        if self.configured_path:
            paths.append(self.configured_path)
        paths.extend(p for p in self.candidates if p not in paths)
        return paths

    def resolve(self) -> Optional[str]:
        """Path of a working binary, or None if no candidate passes the probe."""
        if self._resolved:
            return self._resolved
        with self._lock:
            if self._resolved:
                return self._resolved
            for candidate in self.candidate_paths():
                path = self._locate(candidate)
                if path and self.probe(path):
                    print(f"[Binaries] Using {self.name}: {path}")
                    self._resolved = path
                    return path
        print(f"[Binaries] {self.name} not found (tried: {', '.join(self.candidate_paths()) or 'nothing'})")
        return None

    def reset(self):
        """Forget the cached path (e.g. after settings change)."""
        with self._lock:
            self._resolved = None

    def probe(self, path: str) -> bool:
        """Run the version probe; True if it exits successfully."""
        try:
            result = subprocess.run(
                [path] + self.version_args,
                capture_output=True,
                timeout=self.probe_timeout
            )
            return result.returncode == 0
        except subprocess.TimeoutExpired:
            print(f"[Binaries] {self.name} probe timed out: {path}")
            return False
        except OSError:
            return False

    @staticmethod
    def _locate(candidate: str) -> Optional[str]:
        # Bare names ("ffmpeg") are looked up on PATH, paths must exist as files
        if os.path.dirname(candidate):
            return candidate if os.path.isfile(candidate) else None
        return shutil.which(candidate)


def run_binary(cmd: Sequence[str], cancel_event: Optional[threading.Event] = None,
               timeout: float = PROCESS_TIMEOUT_SECONDS) -> subprocess.CompletedProcess:
    """
    Run a child process to completion with captured stdout/stderr.

    Polls cancel_event while waiting. The child is killed and reaped if the run
    is cancelled (ProcessCancelled), exceeds timeout (subprocess.TimeoutExpired)
    or anything else goes wrong; no child outlives this call.
    """
    cmd = [str(part) for part in cmd]
    proc = subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors='replace'
    )
    deadline = time.monotonic() + timeout
    try:
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=PROCESS_POLL_SECONDS)
                return subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    raise ProcessCancelled(f"{os.path.basename(cmd[0])} cancelled")
                if time.monotonic() >= deadline:
                    raise subprocess.TimeoutExpired(cmd, timeout)
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.communicate()
