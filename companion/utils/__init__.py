"""
Companion utility modules.

Re-exports all public functions from submodules for convenient imports.
"""

from .settings import (
    COMPANION_DIR,
    PROJECT_DIR,
    DATA_DIR,
    SETTINGS_FILE,
    DEFAULT_SETTINGS,
    load_settings,
    save_settings,
    deep_merge,
    get_setting,
)

from .text_utils import (
    sanitize_for_speech,
    truncate_for_tts,
)

from .workspace import (
    TempWorkspace,
    start_cleanup_job,
)

from .prompts import (
    MOOD_PHRASES,
    substitute_placeholders,
    get_mood_phrase,
    get_mood_instruction,
    format_current_time,
    build_system_prompt,
)

from .llm_logging import (
    LOGS_DIR,
    log_llm,
)
