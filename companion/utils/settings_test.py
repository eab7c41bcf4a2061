import json
import os

from companion.utils import settings


def test_load_settings_defaults_when_missing():
    loaded = settings.load_settings()
    assert loaded == settings.DEFAULT_SETTINGS
    # Callers may mutate what they get back
    loaded["lipsync"]["min_cue_seconds"] = 1
    assert settings.DEFAULT_SETTINGS["lipsync"]["min_cue_seconds"] == 0.05


def test_default_thresholds():
    assert settings.get_setting("lipsync.min_cue_seconds") == 0.05
    assert settings.get_setting("lipsync.max_gap_seconds") == 0.1
    assert settings.get_setting("lipsync.neutral_shape") == "X"
    assert settings.get_setting("tts.max_chars") == 2500


def test_save_and_load_merges_with_defaults():
    assert settings.save_settings({"lipsync": {"recognizer": "pocketSphinx"}})

    loaded = settings.load_settings()

    assert loaded["lipsync"]["recognizer"] == "pocketSphinx"
    assert loaded["lipsync"]["min_cue_seconds"] == 0.05
    assert loaded["tts"]["provider"] == "openai"


def test_load_settings_survives_corrupt_file():
    os.makedirs(settings.DATA_DIR, exist_ok=True)
    with open(settings.SETTINGS_FILE, "w", encoding="utf-8") as f:
        f.write("{not json")

    assert settings.load_settings() == settings.DEFAULT_SETTINGS


def test_save_settings_writes_json():
    settings.save_settings({"server": {"port": 8080}})
    with open(settings.SETTINGS_FILE, encoding="utf-8") as f:
        assert json.load(f) == {"server": {"port": 8080}}


def test_get_setting_missing_path():
    assert settings.get_setting("lipsync.nope") is None
    assert settings.get_setting("lipsync.recognizer.deeper", "fallback") == "fallback"


def test_deep_merge():
    base = {"a": {"b": 1, "c": 2}, "d": 3}
    merged = settings.deep_merge(base, {"a": {"c": 5}, "e": 6})
    assert merged == {"a": {"b": 1, "c": 5}, "d": 3, "e": 6}
    assert base == {"a": {"b": 1, "c": 2}, "d": 3}
