"""
Companion Server - HTTP server for the virtual companion chat backend.

Generates the companion's reply, renders every message to speech and mouth
cues, and returns the enriched message list to the avatar client.
"""
import os
import json
import threading
import uuid

from flask import Flask, request, jsonify

from . import event_logger
from . import llm
from .constants import (
    VERSION,
    MAX_MESSAGE_CHARS,
    MAX_MOOD_CHARS,
    WORKSPACE_MAX_AGE_MINUTES,
    WORKSPACE_CLEANUP_INTERVAL_SECONDS,
)
from .pipeline import PipelineCancelled, get_pipeline, parse_reply, reset_pipeline
from .services import tts
from .utils.settings import load_settings, save_settings, deep_merge
from .utils.workspace import start_cleanup_job

app = Flask(__name__)

MASK = '********'

# Nginx-style "client closed request"
STATUS_CANCELLED = 499

# conversation id -> cancel events of its in-flight runs
_active_runs = {}
_active_runs_lock = threading.Lock()


def _register_run(conversation_id):
    cancel_event = threading.Event()
    with _active_runs_lock:
        _active_runs.setdefault(conversation_id, set()).add(cancel_event)
    return cancel_event


def _unregister_run(conversation_id, cancel_event):
    with _active_runs_lock:
        events = _active_runs.get(conversation_id)
        if events is not None:
            events.discard(cancel_event)
            if not events:
                del _active_runs[conversation_id]


def cancel_runs(conversation_id):
    """Signal every in-flight run of a conversation. Returns how many were signalled."""
    with _active_runs_lock:
        events = list(_active_runs.get(conversation_id, ()))
    for event in events:
        event.set()
    return len(events)


def validate_chat_request(data):
    """Returns a list of error strings (empty when the body is valid)."""
    errors = []

    message = data.get('message')
    if not isinstance(message, str) or not message.strip():
        errors.append("message is required")
    elif len(message) > MAX_MESSAGE_CHARS:
        errors.append(f"message must be at most {MAX_MESSAGE_CHARS} characters")

    user_mood = data.get('userMood')
    if user_mood is not None:
        if not isinstance(user_mood, str):
            errors.append("userMood must be a string")
        elif len(user_mood) > MAX_MOOD_CHARS:
            errors.append(f"userMood must be at most {MAX_MOOD_CHARS} characters")

    for field in ('userName', 'conversationId'):
        if data.get(field) is not None and not isinstance(data.get(field), str):
            errors.append(f"{field} must be a string")

    if not isinstance(data.get('includeAudio', True), bool):
        errors.append("includeAudio must be a boolean")

    return errors


# ============================================
# Endpoints
# ============================================
@app.route('/health', methods=['GET'])
def health():
    pipeline = get_pipeline()
    return jsonify({
        "status": "ok",
        "version": VERSION,
        "tts": tts.is_available(),
        "tts_provider": tts.get_provider_name(),
        "ffmpeg": pipeline.transcoder.is_available() if pipeline.transcoder else False,
        "rhubarb": pipeline.lipsync.is_available() if pipeline.lipsync else False,
    })


@app.route('/api/ai/chat', methods=['POST'])
def chat():
    print("\n" + "=" * 40)
    print("[Chat] HTTP Request received")

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400

    errors = validate_chat_request(data)
    if errors:
        print(f"[Chat] Rejected: {'; '.join(errors)}")
        return jsonify({"error": "Invalid request", "details": errors}), 400

    conversation_id = data.get('conversationId') or uuid.uuid4().hex
    include_audio = data.get('includeAudio', True)

    cancel_event = _register_run(conversation_id)
    try:
        raw_reply = llm.generate_reply(
            data['message'].strip(),
            user_name=data.get('userName'),
            user_mood=data.get('userMood')
        )
        if cancel_event.is_set():
            print(f"[Chat] Cancelled before rendering ({conversation_id})")
            return jsonify({"error": "cancelled"}), STATUS_CANCELLED
        if not raw_reply:
            return jsonify({"error": "No reply from language model"}), 502

        if not include_audio:
            messages = parse_reply(raw_reply)
            return jsonify(messages if messages is not None else raw_reply)

        result = get_pipeline().render_reply(raw_reply, conversation_id, cancel_event)
    except PipelineCancelled:
        print(f"[Chat] Cancelled ({conversation_id})")
        return jsonify({"error": "cancelled"}), STATUS_CANCELLED
    finally:
        _unregister_run(conversation_id, cancel_event)

    print(f"[Chat] Returning {len(result) if isinstance(result, list) else 'raw'} messages")
    print("=" * 40 + "\n")
    return jsonify(result)


@app.route('/api/ai/stop', methods=['POST'])
def stop():
    data = request.get_json(silent=True) or {}
    conversation_id = data.get('conversationId')
    if not conversation_id:
        return jsonify({"error": "conversationId is required"}), 400
    cancelled = cancel_runs(conversation_id)
    print(f"[Chat] Stop requested for {conversation_id}: {cancelled} run(s) signalled")
    return jsonify({"status": "ok", "cancelled": cancelled})


# ============================================
# Config Endpoints
# ============================================
def _api_key_sections(settings):
    """(section, provider) pairs that may carry an api_key."""
    for section in ('tts', 'llm'):
        providers = settings.get(section)
        if not isinstance(providers, dict):
            continue
        for provider, value in providers.items():
            if isinstance(value, dict) and 'api_key' in value:
                yield section, provider


@app.route('/api/config', methods=['GET'])
def get_config():
    masked = json.loads(json.dumps(load_settings()))
    for section, provider in _api_key_sections(masked):
        if masked[section][provider].get('api_key'):
            masked[section][provider]['api_key'] = MASK
    return jsonify(masked)


@app.route('/api/config', methods=['POST'])
def save_config():
    new_settings = request.get_json(silent=True)
    if not isinstance(new_settings, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400

    existing = load_settings()
    # Masked keys coming back from the UI keep the stored value
    for section, provider in list(_api_key_sections(new_settings)):
        if new_settings[section][provider].get('api_key') == MASK:
            new_settings[section][provider]['api_key'] = existing.get(section, {}).get(provider, {}).get('api_key', '')

    merged = deep_merge(existing, new_settings)
    if not save_settings(merged):
        return jsonify({"error": "Failed to save settings"}), 500

    # Binary paths and lipsync options are read when the pipeline is built
    reset_pipeline()
    print("[Settings] Saved")
    return jsonify({"status": "saved"})


# ============================================
# System Events
# ============================================
@app.route('/api/system-events', methods=['GET'])
def get_system_events():
    limit = request.args.get('limit', 100, type=int)
    return jsonify(event_logger.get_recent_events(limit=limit))


@app.route('/api/system-events', methods=['DELETE'])
def clear_system_events():
    event_logger.clear_events()
    return jsonify({"status": "cleared"})


def main():
    settings = load_settings()
    server_settings = settings.get('server', {})
    workspace_settings = settings.get('workspace', {})
    host = os.getenv("COMPANION_SERVER_HOST") or server_settings.get('host', '127.0.0.1')
    port = int(os.getenv("COMPANION_SERVER_PORT") or server_settings.get('port', 5000))

    # Periodic sweep of leaked temp files; POST /api/config may rebuild the workspace
    get_pipeline().workspace.ensure_root_dir()
    start_cleanup_job(
        lambda: get_pipeline().workspace,
        max_age_seconds=float(workspace_settings.get('max_age_minutes', WORKSPACE_MAX_AGE_MINUTES)) * 60,
        interval_seconds=float(workspace_settings.get('cleanup_interval_seconds', WORKSPACE_CLEANUP_INTERVAL_SECONDS))
    )

    print(f"[Server] Companion {VERSION} on http://{host}:{port}")
    print(f"[Server] TTS provider: {tts.get_provider_name()} (configured: {tts.is_available()})")
    app.run(host=host, port=port, debug=False, use_reloader=False, threaded=True)


if __name__ == "__main__":
    main()
