"""
Event log for Companion.

A bounded JSON file of recent system events (LLM calls, speech synthesis,
transcodes, mouth cue extraction and whole pipeline runs). Served as-is by
GET /api/system-events, newest first.

Each event:
    {"id": "evt_<ms>_<hex>", "timestamp": <epoch>, "type": ..., "status": ...,
     "data": {...}, "error": <str or null>}
"""
import json
import os
import threading
import time
import uuid
from pathlib import Path
from typing import Optional, Dict, Any, List

from .utils.settings import DATA_DIR

EVENTS_FILE = Path(DATA_DIR) / "system_events.json"
MAX_EVENTS = 100

# Guards the read-modify-write of EVENTS_FILE
_events_lock = threading.Lock()


def _new_event(event_type: str, status: str, data: Optional[Dict[str, Any]], error: Optional[str]) -> Dict[str, Any]:
    now = time.time()
    return {
        "id": f"evt_{int(now * 1000)}_{uuid.uuid4().hex[:8]}",
        "timestamp": now,
        "type": event_type,
        "status": status,
        "data": data or {},
        "error": error,
    }


def _read_all() -> List[Dict[str, Any]]:
    if not EVENTS_FILE.exists():
        return []
    try:
        raw = EVENTS_FILE.read_text(encoding='utf-8')
        events = json.loads(raw) if raw.strip() else []
    except (OSError, ValueError) as e:
        print(f"[EventLogger] Could not read {EVENTS_FILE.name}: {e}")
        return []
    return events if isinstance(events, list) else []


def _write_all(events: List[Dict[str, Any]]) -> None:
    """Write the newest MAX_EVENTS events, replacing the file in one step."""
    tmp_path = EVENTS_FILE.with_suffix(".tmp")
    try:
        EVENTS_FILE.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(json.dumps(events[-MAX_EVENTS:], indent=2), encoding='utf-8')
        os.replace(tmp_path, EVENTS_FILE)
    except OSError as e:
        print(f"[EventLogger] Could not write {EVENTS_FILE.name}: {e}")


def log_event(event_type: str, status: str = "success", data: Optional[Dict[str, Any]] = None, error: Optional[str] = None) -> str:
    """
    Append an event to the log.

    Args:
        event_type: "llm" | "tts" | "transcode" | "lipsync" | "pipeline"
        status: "success" | "error" | "warning" | "cancelled"
        data: Type-specific payload
        error: Error message, if any

    Returns:
        Event ID
    """
    event = _new_event(event_type, status, data, error)
    with _events_lock:
        events = _read_all()
        events.append(event)
        _write_all(events)
    return event["id"]


def get_recent_events(limit: int = MAX_EVENTS) -> List[Dict[str, Any]]:
    """Newest first."""
    with _events_lock:
        events = _read_all()
    return events[::-1][:limit]


def clear_events() -> None:
    with _events_lock:
        _write_all([])


# ============================================
# Typed events
# ============================================

def _file_name(path: Optional[str]) -> Optional[str]:
    return os.path.basename(path) if path else None


def log_llm_event(model: str, context: str, input_tokens: Optional[int] = None,
                  output_tokens: Optional[int] = None, total_tokens: Optional[int] = None,
                  duration_ms: Optional[float] = None, status: str = "success",
                  error: Optional[str] = None) -> str:
    """One chat completion call; token counts are None when the API omits usage."""
    tokens = {"input": input_tokens, "output": output_tokens, "total": total_tokens}
    return log_event("llm", status, {"model": model, "context": context, "tokens": tokens,
                                     "duration_ms": duration_ms}, error)


def log_tts_event(provider: str, text_excerpt: str, audio_bytes: int, text_length: Optional[int] = None,
                  duration_ms: Optional[float] = None, status: str = "success",
                  error: Optional[str] = None) -> str:
    """
    One speech synthesis request.

    Args:
        provider: Display name of the provider ("OpenAI TTS", "ElevenLabs")
        text_excerpt: Start of the synthesized text (cut to 100 chars)
        audio_bytes: Size of the returned audio, 0 on failure
        text_length: Full length of the synthesized text
        duration_ms: Request latency
    """
    return log_event("tts", status, {
        "provider": provider,
        "text_excerpt": text_excerpt[:100],
        "text_length": text_length,
        "audio_bytes": audio_bytes,
        "duration_ms": duration_ms,
    }, error)


def log_transcode_event(source: str, output: Optional[str], duration_ms: Optional[float] = None,
                        status: str = "success", error: Optional[str] = None) -> str:
    """status "warning" means the source was passed through unconverted."""
    return log_event("transcode", status, {
        "source": _file_name(source),
        "output": _file_name(output),
        "duration_ms": duration_ms,
    }, error)


def log_lipsync_event(audio_file: str, cue_count: int, duration_seconds: Optional[float] = None,
                      elapsed_ms: Optional[float] = None, status: str = "success",
                      error: Optional[str] = None) -> str:
    return log_event("lipsync", status, {
        "audio_file": _file_name(audio_file),
        "cue_count": cue_count,
        "duration_seconds": duration_seconds,
        "elapsed_ms": elapsed_ms,
    }, error)


def log_pipeline_event(conversation_id: str, utterances: List[Dict[str, Any]],
                       duration_ms: Optional[float] = None, status: str = "success",
                       error: Optional[str] = None) -> str:
    """
    One render run.

    utterances holds the per-message stage outcomes, e.g.
    {"index": 0, "synthesis": "synthesized", "transcode": "transcoded", "lipsync": "generated"}
    """
    return log_event("pipeline", status, {
        "conversation_id": conversation_id,
        "utterance_count": len(utterances),
        "utterances": utterances,
        "duration_ms": duration_ms,
    }, error)
