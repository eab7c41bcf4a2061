"""
Temp workspace for Companion pipeline runs.

One scratch root per process, one lazily created subdirectory per
conversation. Files created during a run are deleted by the run itself;
the periodic sweep only catches what leaked.
"""

import os
import re
import shutil
import tempfile
import threading
import time
import uuid

from ..constants import WORKSPACE_DIR_NAME

_SAFE_ID = re.compile(r'[^A-Za-z0-9_-]+')


def _safe_dir_name(conversation_id):
    """Reduce a conversation id to something usable as a directory name."""
    name = _SAFE_ID.sub('_', str(conversation_id or '')).strip('_')
    return name[:64] or "default"


class TempWorkspace:
    """Owns the scratch root directory and its per-conversation children."""

    def __init__(self, root_dir=None):
        self.root_dir = root_dir or os.path.join(tempfile.gettempdir(), WORKSPACE_DIR_NAME)
        self._root_lock = threading.Lock()
        self._root_created = False

    def ensure_root_dir(self):
        """Create the root directory exactly once (safe under concurrent first use)."""
        if self._root_created:
            return self.root_dir
        with self._root_lock:
            if not self._root_created:
                os.makedirs(self.root_dir, exist_ok=True)
                self._root_created = True
                print(f"[Workspace] Root directory ready: {self.root_dir}")
        return self.root_dir

    def conversation_dir(self, conversation_id):
        """Get (creating on demand) the scratch directory for one conversation."""
        path = os.path.join(self.ensure_root_dir(), _safe_dir_name(conversation_id))
        os.makedirs(path, exist_ok=True)
        return path

    def new_file_path(self, directory, suffix):
        """Unique file path inside directory; the file itself is not created."""
        return os.path.join(directory, f"{uuid.uuid4().hex}{suffix}")

    def write_file(self, directory, data, suffix):
        """Write bytes to a fresh file in directory (re-created if swept) and return its path."""
        os.makedirs(directory, exist_ok=True)
        path = self.new_file_path(directory, suffix)
        with open(path, 'wb') as f:
            f.write(data)
        return path

    def delete_file(self, path):
        """Best-effort delete. Returns True if the file is gone afterwards."""
        if not path:
            return True
        try:
            os.remove(path)
            return True
        except FileNotFoundError:
            return True
        except OSError as e:
            print(f"[Workspace] Failed to delete {path}: {e}")
            return False

    def cleanup_older_than(self, max_age_seconds):
        """
        Delete files last modified more than max_age_seconds ago, then remove
        conversation directories this sweep emptied. An empty directory that
        was itself touched within max_age_seconds belongs to a run in progress
        and is kept. Never raises.

        Returns:
            {"files_deleted": int, "dirs_removed": int, "errors": int}
        """
        stats = {"files_deleted": 0, "dirs_removed": 0, "errors": 0}
        cutoff = time.time() - max_age_seconds

        try:
            if not os.path.isdir(self.root_dir):
                return stats
            entries = list(os.scandir(self.root_dir))
        except OSError as e:
            print(f"[Workspace] Cleanup could not list {self.root_dir}: {e}")
            stats["errors"] += 1
            return stats

        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                self._sweep_conversation_dir(entry.path, cutoff, stats)
            elif self._sweep_file(entry.path, cutoff, stats):
                stats["files_deleted"] += 1

        if stats["files_deleted"] or stats["dirs_removed"] or stats["errors"]:
            print(f"[Workspace] Cleanup: {stats['files_deleted']} files, "
                  f"{stats['dirs_removed']} dirs removed, {stats['errors']} errors")
        return stats

    def _sweep_conversation_dir(self, path, cutoff, stats):
        try:
            stale = os.stat(path).st_mtime < cutoff
            entries = list(os.scandir(path))
        except OSError as e:
            print(f"[Workspace] Cleanup could not list {path}: {e}")
            stats["errors"] += 1
            return

        removed = 0
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                try:
                    if os.stat(entry.path).st_mtime < cutoff:
                        shutil.rmtree(entry.path)
                        removed += 1
                        stats["dirs_removed"] += 1
                except OSError as e:
                    print(f"[Workspace] Failed to remove {entry.path}: {e}")
                    stats["errors"] += 1
            elif self._sweep_file(entry.path, cutoff, stats):
                removed += 1
                stats["files_deleted"] += 1

        if not (removed or stale):
            return
        try:
            if not os.listdir(path):
                os.rmdir(path)
                stats["dirs_removed"] += 1
        except OSError as e:
            # Another run may have just written into it
            print(f"[Workspace] Could not remove {path}: {e}")
            stats["errors"] += 1

    def _sweep_file(self, path, cutoff, stats):
        """Delete path if stale. True if this call removed it."""
        try:
            if os.stat(path).st_mtime < cutoff:
                os.remove(path)
                return True
        except FileNotFoundError:
            pass
        except OSError as e:
            print(f"[Workspace] Failed to delete {path}: {e}")
            stats["errors"] += 1
        return False


def start_cleanup_job(get_workspace, max_age_seconds, interval_seconds, stop_event=None):
    """
    Run cleanup_older_than on a timer in a daemon thread.

    Args:
        get_workspace: zero-argument callable returning the workspace to sweep,
            looked up on every tick so a rebuilt workspace is picked up

    Returns:
        (thread, stop_event) - set stop_event to end the loop
    """
    stop_event = stop_event or threading.Event()

    def cleanup_loop():
        while not stop_event.wait(interval_seconds):
            try:
                get_workspace().cleanup_older_than(max_age_seconds)
            except Exception as e:
                print(f"[Workspace] Cleanup job error: {e}")

    thread = threading.Thread(target=cleanup_loop, name="workspace-cleanup", daemon=True)
    thread.start()
    print(f"[Workspace] Cleanup job every {interval_seconds}s (max age {max_age_seconds}s)")
    return thread, stop_event
