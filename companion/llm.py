"""
Chat reply source for Companion.
Asks an OpenAI-compatible chat API (OpenAI or OpenRouter) for the companion's
reply as a JSON object: {"messages": [{"text", "facialExpression", "animation"}, ...]}
"""
import os
import time
from typing import Optional, List, Dict, Any, Tuple

from openai import OpenAI

from .utils.llm_logging import log_llm
from .utils.prompts import build_system_prompt
from .utils.settings import load_settings

OPENAI_API_URL = "https://api.openai.com/v1"
OPENROUTER_API_URL = "https://openrouter.ai/api/v1"

API_KEY_ENV_VARS = {
    'openai': 'OPENAI_API_KEY',
    'openrouter': 'OPENROUTER_API_KEY',
}


def _get_event_logger():
    """Lazy import of event_logger"""
    try:
        from . import event_logger as el
        return el
    except ImportError:
        return None


def _get_api_key(llm_settings: Dict[str, Any], provider: str) -> str:
    """Key from settings, else the provider's environment variable"""
    return (llm_settings.get(provider, {}).get('api_key')
            or os.getenv(API_KEY_ENV_VARS.get(provider, ''), ''))


def _create_client() -> Optional[OpenAI]:
    """OpenAI SDK client pointed at the configured provider, None without a key"""
    llm_settings = load_settings().get('llm', {})
    provider = llm_settings.get('provider', 'openai')

    api_key = _get_api_key(llm_settings, provider)
    if not api_key:
        print(f"[LLM] Warning: No API key configured for {provider}")
        return None

    if provider == 'openrouter':
        base_url = OPENROUTER_API_URL
    else:
        base_url = (llm_settings.get('openai', {}).get('api_url') or '').strip() or OPENAI_API_URL
    return OpenAI(api_key=api_key, base_url=base_url)


def _first_choice(response) -> Tuple[Optional[str], Optional[str]]:
    """(content, finish_reason) of the first choice"""
    if not response.choices:
        return None, None
    choice = response.choices[0]
    content = choice.message.content if choice.message else None
    return content, getattr(choice, 'finish_reason', None)


def _record(payload: Dict[str, Any], context: str, duration_ms: Optional[float] = None,
            reply: Optional[str] = None, error: Optional[str] = None, usage=None):
    """Write the exchange to the daily log and the event log"""
    log_llm(payload, response=reply, error=error, duration_ms=duration_ms)

    el = _get_event_logger()
    if not el:
        return
    el.log_llm_event(
        model=payload["model"],
        context=context,
        input_tokens=getattr(usage, 'prompt_tokens', None),
        output_tokens=getattr(usage, 'completion_tokens', None),
        total_tokens=getattr(usage, 'total_tokens', None),
        duration_ms=duration_ms,
        status="error" if error else "success",
        error=error
    )


def chat(messages: List[Dict[str, Any]],
         model: str = None,
         temperature: float = None,
         max_tokens: int = None,
         context: str = "chat",
         json_mode: bool = True) -> Optional[str]:
    """
    Send a chat completion request to the configured LLM provider.

    Args:
        messages: List of message dicts with role/content
        model: Model ID (default from settings)
        temperature: Sampling temperature (default from settings)
        max_tokens: Max response tokens (default from settings)
        context: Label for the event log
        json_mode: Ask the API for a JSON object response

    Returns:
        Response text or None on failure
    """
    conv_settings = load_settings().get('conversation', {})
    payload = {
        "model": model or conv_settings.get('chat_model', 'gpt-4o-mini'),
        "temperature": temperature if temperature is not None else conv_settings.get('temperature', 0.9),
        "max_tokens": max_tokens or conv_settings.get('max_tokens', 1024),
        "messages": messages,
    }
    model = payload["model"]

    client = _create_client()
    if client is None:
        return None

    request = dict(payload)
    if json_mode:
        request["response_format"] = {"type": "json_object"}

    print(f"[LLM] Request: {model} ({context})")
    start_time = time.time()
    try:
        response = client.chat.completions.create(**request)
    except Exception as e:
        print(f"[LLM] Error from {model}: {e}")
        _record(payload, context, error=str(e))
        return None
    duration_ms = (time.time() - start_time) * 1000

    content, finish_reason = _first_choice(response)
    if not content:
        error = f"Empty content (finish_reason={finish_reason})"
        print(f"[LLM] {error} from {model}")
        _record(payload, context, duration_ms=duration_ms, error=error)
        return None

    reply = content.strip()
    _record(payload, context, duration_ms=duration_ms, reply=reply, usage=response.usage)
    print(f"[LLM] Response: {model} ({len(reply)} chars, {duration_ms:.0f}ms)")
    return reply


def generate_reply(message: str, user_name: str = None, user_mood: str = None) -> Optional[str]:
    """
    Get the companion's reply to one user message.

    Returns:
        Raw reply text (expected to be a {"messages": [...]} JSON object), or None on failure
    """
    messages = [
        {"role": "system", "content": build_system_prompt(user_name=user_name, user_mood=user_mood)},
        {"role": "user", "content": message},
    ]
    return chat(messages, context="chat")
