import base64
import json
import os
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from companion import event_logger
from companion import pipeline
from companion.audio import BinaryResolver, LipsyncGenerator, ProcessCancelled
from companion.pipeline import PipelineCancelled, RenderPipeline, assemble, parse_reply
from companion.services import tts
from companion.utils.workspace import TempWorkspace

SILENCE = b"\x00" * 100
STUB_CUES = [{"start": 0, "end": 0.3, "value": "B"}]


class _StubSynthesizer:
    """Deterministic synthesizer: fixed bytes, optional per-text failures."""

    def __init__(self, audio=SILENCE, fail_on=(), raise_on=(), delays=None):
        self.audio = audio
        self.fail_on = set(fail_on)
        self.raise_on = set(raise_on)
        self.delays = delays or {}
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, text):
        with self._lock:
            self.calls.append(text)
        time.sleep(self.delays.get(text, 0))
        if text in self.raise_on:
            raise RuntimeError(f"exploded on {text}")
        if text in self.fail_on:
            return b"", "provider said no"
        return self.audio + text.encode("utf-8"), None


class _StubLipsync:
    """Stands in for LipsyncGenerator; checks the audio file exists when called."""

    def __init__(self, cues=None, result=None, side_effect=None):
        self.cues = cues if cues is not None else STUB_CUES
        self.result = result
        self.side_effect = side_effect
        self.paths = []

    def generate(self, audio_path, cancel_event=None):
        assert os.path.isfile(audio_path)
        self.paths.append(audio_path)
        if self.side_effect:
            raise self.side_effect
        if self.result is not None:
            return self.result
        return [dict(c) for c in self.cues]


class _StubTranscoder:
    target_ext = ".wav"

    def __init__(self):
        self.sources = []

    def to_extractor_format(self, source_path, cancel_event=None):
        self.sources.append(source_path)
        output = os.path.splitext(source_path)[0] + ".wav"
        with open(output, "wb") as f:
            f.write(b"RIFF")
        return output


def _pipeline(tmp_path, synthesizer=None, lipsync=None, transcoder=None, **kwargs):
    return RenderPipeline(
        synthesizer=synthesizer or _StubSynthesizer(),
        transcoder=transcoder,
        lipsync=lipsync if lipsync is not None else _StubLipsync(),
        workspace=TempWorkspace(str(tmp_path / "scratch")),
        **kwargs
    )


def _leftover_files(tmp_path):
    found = []
    for root, _, files in os.walk(tmp_path / "scratch"):
        found.extend(os.path.join(root, f) for f in files)
    return found


# ============================================
# parse_reply / assemble
# ============================================

def test_parse_reply():
    raw = json.dumps({"messages": [{"text": "a"}, {"text": "b"}]})
    assert parse_reply(raw) == [{"text": "a"}, {"text": "b"}]


def test_parse_reply_accepts_code_fenced_json():
    raw = '```json\n{"messages": [{"text": "a"}]}\n```'
    assert parse_reply(raw) == [{"text": "a"}]


@pytest.mark.parametrize("raw", [
    None,
    "",
    "Hello there!",
    "[{\"text\": \"a\"}]",
    "{\"messages\": \"hi\"}",
    "{\"reply\": []}",
    "{\"messages\": [\"hi\"]}",
    "{\"messages\": [{\"text\": \"a\"}",
])
def test_parse_reply_rejects_other_shapes(raw):
    assert parse_reply(raw) is None


def test_assemble_adds_exactly_two_fields():
    original = {"text": "x", "facialExpression": "smile", "animation": "Idle"}
    enriched = assemble(original, "QUJD", STUB_CUES)

    assert enriched == {**original, "audioBase64": "QUJD", "lipsync": STUB_CUES}
    assert "audioBase64" not in original


def test_assemble_defaults():
    assert assemble({"text": "x"}) == {"text": "x", "audioBase64": "", "lipsync": []}


# ============================================
# render
# ============================================

def test_single_message_scenario(tmp_path):
    raw = json.dumps({"messages": [
        {"text": "Hi there!", "facialExpression": "smile", "animation": "Talking_0"}
    ]})
    render = _pipeline(tmp_path, synthesizer=lambda text: (SILENCE, None))

    result = render.render_reply(raw, conversation_id="conv-1")

    assert result == [{
        "text": "Hi there!",
        "facialExpression": "smile",
        "animation": "Talking_0",
        "audioBase64": base64.b64encode(SILENCE).decode("ascii"),
        "lipsync": [{"start": 0, "end": 0.3, "value": "B"}],
    }]


def test_malformed_reply_returns_raw_string(tmp_path):
    synthesizer = _StubSynthesizer()
    render = _pipeline(tmp_path, synthesizer=synthesizer)

    assert render.render_reply("Sorry, I can't do JSON today") == "Sorry, I can't do JSON today"
    assert render.render_reply('{"messages": 5}') == '{"messages": 5}'
    assert synthesizer.calls == []


def test_emoji_only_message_is_never_synthesized(tmp_path):
    synthesizer = _StubSynthesizer()
    lipsync = _StubLipsync()
    render = _pipeline(tmp_path, synthesizer=synthesizer, lipsync=lipsync)

    result = render.render_utterances([{"text": "😀😀", "animation": "Laughing"}])

    assert result == [{"text": "😀😀", "animation": "Laughing", "audioBase64": "", "lipsync": []}]
    assert synthesizer.calls == []
    assert lipsync.paths == []


def test_text_is_sanitized_before_synthesis(tmp_path):
    synthesizer = _StubSynthesizer()
    render = _pipeline(tmp_path, synthesizer=synthesizer)

    render.render_utterances([{"text": "  Love   you 💕 "}])

    assert synthesizer.calls == ["Love you"]


@pytest.mark.parametrize("text", [None, 42, "", "   "])
def test_missing_or_non_string_text_is_skipped(tmp_path, text):
    synthesizer = _StubSynthesizer()
    render = _pipeline(tmp_path, synthesizer=synthesizer)

    result = render.render_utterances([{"text": text}])

    assert result == [{"text": text, "audioBase64": "", "lipsync": []}]
    assert synthesizer.calls == []


def test_synthesis_failure_is_isolated(tmp_path):
    utterances = [{"text": "one"}, {"text": "two"}, {"text": "three"}]
    render = _pipeline(tmp_path, synthesizer=_StubSynthesizer(fail_on={"two"}))

    result = render.render_utterances(utterances)

    assert [r["text"] for r in result] == ["one", "two", "three"]
    assert result[0]["audioBase64"] and result[2]["audioBase64"]
    assert result[1]["audioBase64"] == ""
    assert result[1]["lipsync"] == []
    assert result[0]["lipsync"] == STUB_CUES


def test_synthesizer_exception_is_isolated(tmp_path):
    utterances = [{"text": "one"}, {"text": "two"}, {"text": "three"}]
    render = _pipeline(tmp_path, synthesizer=_StubSynthesizer(raise_on={"two"}))

    result = render.render_utterances(utterances)

    assert result[1]["audioBase64"] == ""
    assert result[0]["audioBase64"] and result[2]["audioBase64"]
    event = event_logger.get_recent_events()[0]
    assert event["type"] == "pipeline"
    assert event["data"]["utterances"][1]["synthesis"] == "failed"


def test_lipsync_failure_keeps_audio(tmp_path):
    render = _pipeline(tmp_path, lipsync=_StubLipsync(side_effect=RuntimeError("boom")))

    result = render.render_utterances([{"text": "hello"}])

    assert result[0]["audioBase64"]
    assert result[0]["lipsync"] == []


def test_lipsync_none_result_means_empty_cues(tmp_path):
    lipsync = _StubLipsync()
    lipsync.generate = lambda path, cancel_event=None: None
    render = _pipeline(tmp_path, lipsync=lipsync)

    result = render.render_utterances([{"text": "hello"}])

    assert result[0]["lipsync"] == []
    assert result[0]["audioBase64"]


def test_missing_extractor_binary_degrades_to_empty_cues(tmp_path):
    generator = LipsyncGenerator(resolver=BinaryResolver(
        "rhubarb", configured_path=str(tmp_path / "no-rhubarb"), candidates=[]))
    render = _pipeline(tmp_path, lipsync=generator)

    result = render.render_utterances([{"text": "one"}, {"text": "two"}])

    for item in result:
        assert item["audioBase64"]
        assert item["lipsync"] == []


def test_lipsync_disabled_skips_second_phase(tmp_path):
    render = RenderPipeline(synthesizer=_StubSynthesizer(), lipsync=None,
                            workspace=TempWorkspace(str(tmp_path / "scratch")))

    result = render.render_utterances([{"text": "hello"}])

    assert result[0]["audioBase64"]
    assert result[0]["lipsync"] == []
    assert not os.path.exists(tmp_path / "scratch")


def test_order_and_types_are_preserved(tmp_path):
    utterances = [
        {"text": "slow", "n": 1, "ok": True, "extra": None, "nested": {"a": [1, {"b": "c"}]}},
        {"text": "medium", "n": 2.5, "ok": False, "tags": ["x", "y"]},
        {"text": "fast", "n": -3, "ok": True, "facialExpression": "smile"},
    ]
    snapshot = json.loads(json.dumps(utterances))
    synthesizer = _StubSynthesizer(delays={"slow": 0.3, "medium": 0.15})
    render = _pipeline(tmp_path, synthesizer=synthesizer)

    result = render.render_utterances(utterances)

    assert len(result) == 3
    for original, enriched in zip(snapshot, result):
        assert set(enriched) == set(original) | {"audioBase64", "lipsync"}
        for key, value in original.items():
            assert enriched[key] == value
            assert type(enriched[key]) is type(value)
    # Inputs are not modified
    assert utterances == snapshot


def test_rendering_is_idempotent_with_deterministic_stubs(tmp_path):
    utterances = [{"text": "one"}, {"text": "😀"}, {"text": "three"}]
    render = _pipeline(tmp_path)

    first = render.render_utterances(utterances)
    second = render.render_utterances(utterances)

    assert first == second


def test_temp_files_are_removed(tmp_path):
    transcoder = _StubTranscoder()
    lipsync = _StubLipsync()
    render = _pipeline(tmp_path, transcoder=transcoder, lipsync=lipsync)

    render.render_utterances([{"text": "one"}, {"text": "two"}], conversation_id="c1")

    assert len(transcoder.sources) == 2
    assert all(p.endswith(".wav") for p in lipsync.paths)
    assert _leftover_files(tmp_path) == []


def test_temp_files_are_removed_when_lipsync_fails(tmp_path):
    render = _pipeline(tmp_path, transcoder=_StubTranscoder(),
                       lipsync=_StubLipsync(side_effect=RuntimeError("boom")))

    render.render_utterances([{"text": "one"}])

    assert _leftover_files(tmp_path) == []


def test_pipeline_event_records_stage_outcomes(tmp_path):
    render = _pipeline(tmp_path, transcoder=_StubTranscoder())

    render.render_utterances([{"text": "one"}, {"text": "😀"}], conversation_id="c9")

    event = event_logger.get_recent_events()[0]
    assert event["type"] == "pipeline"
    assert event["status"] == "success"
    assert event["data"]["conversation_id"] == "c9"
    states = event["data"]["utterances"]
    assert states[0]["synthesis"] == "synthesized"
    assert states[0]["transcode"] == "transcoded"
    assert states[0]["lipsync"] == "generated"
    assert states[1]["synthesis"] == "skipped"
    assert states[1]["lipsync"] == "skipped"


def test_skip_unspeakable_disabled_sends_raw_text(tmp_path):
    synthesizer = _StubSynthesizer()
    render = _pipeline(tmp_path, synthesizer=synthesizer, skip_unspeakable=False)

    render.render_utterances([{"text": " 😀😀 "}, {"text": "   "}])

    assert synthesizer.calls == ["😀😀"]


def test_empty_message_list(tmp_path):
    assert _pipeline(tmp_path).render_reply('{"messages": []}') == []


# ============================================
# cancellation
# ============================================

def test_cancelled_before_start(tmp_path):
    synthesizer = _StubSynthesizer()
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(PipelineCancelled):
        _pipeline(tmp_path, synthesizer=synthesizer).render_utterances(
            [{"text": "hello"}], cancel_event=cancel_event)

    assert synthesizer.calls == []
    assert event_logger.get_recent_events()[0]["status"] == "cancelled"


def test_cancelled_during_synthesis(tmp_path):
    cancel_event = threading.Event()

    def slow_synthesizer(text):
        cancel_event.set()
        time.sleep(1)
        return SILENCE, None

    start = time.monotonic()
    with pytest.raises(PipelineCancelled):
        _pipeline(tmp_path, synthesizer=slow_synthesizer).render_utterances(
            [{"text": "a"}, {"text": "b"}], cancel_event=cancel_event)

    assert time.monotonic() - start < 0.9


def test_cancelled_extraction_aborts_run_and_cleans_up(tmp_path):
    render = _pipeline(tmp_path, lipsync=_StubLipsync(side_effect=ProcessCancelled("rhubarb cancelled")))

    with pytest.raises(PipelineCancelled):
        render.render_utterances([{"text": "hello"}], cancel_event=threading.Event())

    # The worker deletes its files on the way out
    deadline = time.time() + 2
    while _leftover_files(tmp_path) and time.time() < deadline:
        time.sleep(0.01)
    assert _leftover_files(tmp_path) == []


# ============================================
# wiring
# ============================================

def test_create_pipeline_from_settings(monkeypatch):
    monkeypatch.setenv("RHUBARB_PATH", "/opt/rhubarb/rhubarb")
    settings = {
        "binaries": {"ffmpeg_path": "/opt/ffmpeg", "rhubarb_path": ""},
        "lipsync": {"enabled": True, "recognizer": "pocketSphinx",
                    "min_cue_seconds": 0.08, "max_gap_seconds": 0.2, "neutral_shape": "A"},
        "workspace": {"root_dir": "/tmp/companion-test"},
        "pipeline": {"max_workers": 2},
        "speech": {"skip_unspeakable": True},
    }

    render = pipeline.create_pipeline(settings)

    assert render.transcoder.resolver.configured_path == "/opt/ffmpeg"
    assert render.lipsync.resolver.configured_path == "/opt/rhubarb/rhubarb"
    assert render.lipsync.recognizer == "pocketSphinx"
    assert render.lipsync.min_duration == 0.08
    assert render.lipsync.max_gap == 0.2
    assert render.lipsync.neutral_shape == "A"
    assert render.workspace.root_dir == "/tmp/companion-test"
    assert render.max_workers == 2
    assert render.audio_extension == ".mp3"


def test_create_pipeline_uses_provider_audio_container():
    with patch.object(tts, "get_provider", return_value=MagicMock(audio_extension=".ogg")):
        render = pipeline.create_pipeline({"lipsync": {"enabled": False}})

    assert render.audio_extension == ".ogg"


def test_create_pipeline_with_lipsync_disabled():
    render = pipeline.create_pipeline({"lipsync": {"enabled": False}})
    assert render.lipsync is None
    assert render.transcoder is None


def test_get_pipeline_is_cached():
    with patch.object(pipeline, "create_pipeline", side_effect=lambda: object()) as create:
        first = pipeline.get_pipeline()
        second = pipeline.get_pipeline()
        pipeline.reset_pipeline()
        third = pipeline.get_pipeline()

    assert first is second
    assert third is not first
    assert create.call_count == 2
