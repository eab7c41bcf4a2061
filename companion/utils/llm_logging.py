"""
Chat reply logging for Companion.
Appends every reply request and its outcome to a per-day text file in logs/.
"""

import os
import time

from .settings import PROJECT_DIR

LOGS_DIR = os.getenv("COMPANION_LOGS_DIR") or os.path.join(PROJECT_DIR, "logs")

_RULE = "-" * 60


def get_llm_log_path():
    """logs/llm_YYYY-MM-DD.txt (logs dir created on demand)"""
    os.makedirs(LOGS_DIR, exist_ok=True)
    return os.path.join(LOGS_DIR, f"llm_{time.strftime('%Y-%m-%d')}.txt")


def log_llm(payload, response=None, error=None, duration_ms=None):
    """
    Append one exchange to today's log. Never raises.

    Args:
        payload: the request dict (model, temperature, max_tokens, messages)
        response: reply text on success
        error: error description on failure
        duration_ms: request latency, if known
    """
    lines = [
        _RULE,
        f"{time.strftime('%Y-%m-%d %H:%M:%S')}  model={payload.get('model')}  "
        f"temperature={payload.get('temperature')}  max_tokens={payload.get('max_tokens')}",
    ]
    if duration_ms is not None:
        lines.append(f"latency={duration_ms:.0f}ms")
    lines.append(_RULE)

    for msg in payload.get('messages', []):
        lines.append(f"[{msg.get('role', '?')}]")
        lines.append(str(msg.get('content', '')))
        lines.append("")

    if response:
        lines.append("[reply]")
        lines.append(response)
    elif error:
        lines.append("[error]")
        lines.append(str(error))

    try:
        with open(get_llm_log_path(), 'a', encoding='utf-8') as f:
            f.write("\n".join(lines) + "\n\n")
    except OSError as e:
        print(f"[LLM] Failed to write log: {e}")
