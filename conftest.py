import stat
import sys
from pathlib import Path

import pytest

from companion import event_logger
from companion import pipeline
from companion.services import tts
from companion.utils import llm_logging
from companion.utils import settings


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    """Keep settings, the event log and LLM logs out of the real data dir."""
    data_dir = tmp_path / "data"
    monkeypatch.setattr(settings, "DATA_DIR", str(data_dir))
    monkeypatch.setattr(settings, "SETTINGS_FILE", str(data_dir / "settings.json"))
    monkeypatch.setattr(event_logger, "EVENTS_FILE", Path(data_dir) / "system_events.json")
    monkeypatch.setattr(llm_logging, "LOGS_DIR", str(tmp_path / "logs"))
    for var in ("OPENAI_API_KEY", "OPENROUTER_API_KEY", "ELEVENLABS_API_KEY",
                "ELEVENLABS_VOICE_ID", "FFMPEG_PATH", "RHUBARB_PATH"):
        monkeypatch.delenv(var, raising=False)
    tts._providers.clear()
    pipeline.reset_pipeline()
    yield data_dir
    tts._providers.clear()
    pipeline.reset_pipeline()


@pytest.fixture
def make_script(tmp_path):
    """Write an executable /bin/sh script standing in for a helper binary."""
    if sys.platform == "win32":
        pytest.skip("shell script stand-ins need a POSIX shell")

    def _make(name, body):
        path = tmp_path / "bin" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make
