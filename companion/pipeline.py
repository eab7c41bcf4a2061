"""
Reply rendering pipeline.

Turns the AI reply (a JSON object with a "messages" list) into the list the
avatar client plays back: every message keeps all of its fields and gains
"audioBase64" and "lipsync".

Two concurrent phases per run:
    1. sanitize + synthesize every message
    2. write audio to the workspace, transcode, extract mouth cues

Every stage failure is local to its message. Only an unparseable reply is
visible to the caller (the raw reply string is returned as-is), and a
cancelled run raises PipelineCancelled.
"""

import base64
import json
import os
import re
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_COMPLETED
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .audio import AudioTranscoder, BinaryResolver, LipsyncGenerator, ProcessCancelled
from .audio.binaries import FFMPEG_CANDIDATES, default_rhubarb_candidates
from .constants import (
    MAX_REPLY_MESSAGES,
    MIN_CUE_SECONDS,
    MAX_CUE_GAP_SECONDS,
    NEUTRAL_SHAPE,
    PROBE_TIMEOUT_SECONDS,
    PROCESS_TIMEOUT_SECONDS,
    PROCESS_POLL_SECONDS,
)
from .utils.settings import load_settings
from .utils.text_utils import sanitize_for_speech
from .utils.workspace import TempWorkspace

# ```json ... ``` wrappers some models put around JSON output
_CODE_FENCE = re.compile(r'^\s*```(?:json)?\s*(.*?)\s*```\s*$', re.DOTALL | re.IGNORECASE)


def _get_event_logger():
    """Lazy import of event_logger"""
    try:
        from . import event_logger as el
        return el
    except ImportError:
        return None


class PipelineCancelled(Exception):
    """The run was cancelled; no partial output is produced."""


# ============================================
# Parsing / Assembly
# ============================================

def parse_reply(raw_reply) -> Optional[List[Dict[str, Any]]]:
    """
    Parse the AI reply into its list of message objects.

    Returns:
        The "messages" list, or None if the reply is not a JSON object whose
        "messages" is a list of objects
    """
    if not isinstance(raw_reply, str):
        return None

    text = raw_reply
    fenced = _CODE_FENCE.match(text)
    if fenced:
        text = fenced.group(1)

    try:
        root = json.loads(text)
    except ValueError:
        return None

    if not isinstance(root, dict):
        return None
    messages = root.get("messages")
    if not isinstance(messages, list):
        return None
    if not all(isinstance(m, dict) for m in messages):
        return None
    return messages


def assemble(original: Dict[str, Any], audio_base64: str = "",
             mouth_cues: Optional[List[Dict]] = None) -> Dict[str, Any]:
    """Copy of original with audioBase64 and lipsync set. Other fields are untouched."""
    enriched = dict(original)
    enriched["audioBase64"] = audio_base64 or ""
    enriched["lipsync"] = list(mouth_cues) if mouth_cues else []
    return enriched


# ============================================
# Pipeline
# ============================================

class RenderPipeline:
    """
    Renders reply messages to audio + mouth cues.

    Args:
        synthesizer: callable text -> (audio_bytes, error)
        transcoder: AudioTranscoder, or None to hand audio to lipsync untouched
        lipsync: LipsyncGenerator, or None to skip mouth cues
        workspace: TempWorkspace for per-run scratch files
        max_workers: thread pool size for each phase
        skip_unspeakable: never call the synthesizer for lines with nothing speakable left
        audio_extension: container of the synthesizer's output
    """

    def __init__(self, synthesizer: Callable[[str], Tuple[bytes, Optional[str]]],
                 transcoder: Optional[AudioTranscoder] = None,
                 lipsync: Optional[LipsyncGenerator] = None,
                 workspace: Optional[TempWorkspace] = None,
                 max_workers: int = MAX_REPLY_MESSAGES,
                 skip_unspeakable: bool = True,
                 audio_extension: str = ".mp3"):
        self.synthesizer = synthesizer
        self.transcoder = transcoder
        self.lipsync = lipsync
        self.workspace = workspace or TempWorkspace()
        self.max_workers = max(1, int(max_workers))
        self.skip_unspeakable = skip_unspeakable
        self.audio_extension = audio_extension

    def render_reply(self, raw_reply: str, conversation_id: Optional[str] = None,
                     cancel_event: Optional[threading.Event] = None) -> Union[List[Dict[str, Any]], str]:
        """
        Parse and render an AI reply.

        Returns:
            Enriched message list, or raw_reply unchanged if it cannot be parsed

        Raises:
            PipelineCancelled: if cancel_event fires during the run
        """
        messages = parse_reply(raw_reply)
        if messages is None:
            print(f"[Pipeline] WARNING: Reply is not a messages object, returning raw text ({len(str(raw_reply))} chars)")
            return raw_reply
        return self.render_utterances(messages, conversation_id, cancel_event)

    def render_utterances(self, utterances: List[Dict[str, Any]], conversation_id: Optional[str] = None,
                          cancel_event: Optional[threading.Event] = None) -> List[Dict[str, Any]]:
        """Render already-parsed messages. Output order matches input order."""
        conversation_id = conversation_id or uuid.uuid4().hex
        start_time = time.time()
        states = [{"index": i, "synthesis": "pending", "transcode": "skipped", "lipsync": "skipped"}
                  for i in range(len(utterances))]

        try:
            self._check_cancelled(cancel_event)

            # Phase 1: synthesis
            synth_results = self._fan_out(self._synthesize_one, utterances, cancel_event)
            audio: List[bytes] = []
            for state, (value, error) in zip(states, synth_results):
                if error is not None:
                    state["synthesis"] = "failed"
                    state["error"] = str(error)
                    audio.append(b"")
                    continue
                status, data, synth_error = value
                state["synthesis"] = status
                if synth_error:
                    state["error"] = synth_error
                audio.append(data)

            self._check_cancelled(cancel_event)

            # Phase 2: transcode + mouth cues, only for messages that got audio
            cues: List[List[Dict]] = [[] for _ in utterances]
            if self.lipsync is not None:
                jobs = [(i, data) for i, data in enumerate(audio) if data]
                cue_results = self._fan_out(
                    lambda job: self._extract_one(job[1], conversation_id, cancel_event),
                    jobs, cancel_event)
                for (i, _), (value, error) in zip(jobs, cue_results):
                    if error is not None:
                        print(f"[Pipeline] Message {i}: mouth cues failed: {error}")
                        states[i]["lipsync"] = "failed"
                        states[i]["error"] = str(error)
                        continue
                    transcode_status, lipsync_status, result = value
                    states[i]["transcode"] = transcode_status
                    states[i]["lipsync"] = lipsync_status
                    cues[i] = result
        except PipelineCancelled:
            duration_ms = (time.time() - start_time) * 1000
            print(f"[Pipeline] Run {conversation_id} cancelled after {duration_ms:.0f}ms")
            self._log(conversation_id, states, duration_ms, "cancelled", "cancelled")
            raise

        enriched = [
            assemble(utterance, base64.b64encode(data).decode('ascii') if data else "", cues[i])
            for i, (utterance, data) in enumerate(zip(utterances, audio))
        ]

        duration_ms = (time.time() - start_time) * 1000
        print(f"[Pipeline] Rendered {len(enriched)} messages for {conversation_id} ({duration_ms:.0f}ms)")
        self._log(conversation_id, states, duration_ms, "success", None)
        return enriched

    # ----------------------------------------
    # Per-message stages
    # ----------------------------------------

    def _synthesize_one(self, utterance: Dict[str, Any]) -> Tuple[str, bytes, Optional[str]]:
        """Returns (status, audio_bytes, error)."""
        text = utterance.get("text")
        if not isinstance(text, str):
            text = ""

        speech = sanitize_for_speech(text)
        if not speech and not self.skip_unspeakable:
            speech = text.strip()
        if not speech:
            return "skipped", b"", None

        data, error = self.synthesizer(speech)
        if error or not data:
            return "failed", b"", error or "no audio"
        return "synthesized", data, None

    def _extract_one(self, data: bytes, conversation_id: str,
                     cancel_event: Optional[threading.Event]) -> Tuple[str, str, List[Dict]]:
        """Returns (transcode_status, lipsync_status, cues). Temp files never outlive the call."""
        directory = self.workspace.conversation_dir(conversation_id)
        created = []
        try:
            source_path = self.workspace.write_file(directory, data, self.audio_extension)
            created.append(source_path)

            audio_path = source_path
            transcode_status = "skipped"
            if self.transcoder is not None:
                audio_path = self.transcoder.to_extractor_format(source_path, cancel_event)
                if audio_path != source_path:
                    created.append(audio_path)
                    transcode_status = "transcoded"
                elif not source_path.lower().endswith(self.transcoder.target_ext):
                    transcode_status = "fallback"

            cues = self.lipsync.generate(audio_path, cancel_event)
            if cues is None:
                return transcode_status, "failed", []
            return transcode_status, "generated", cues
        except ProcessCancelled:
            raise PipelineCancelled()
        finally:
            for path in created:
                self.workspace.delete_file(path)

    # ----------------------------------------
    # Fan-out / fan-in
    # ----------------------------------------

    def _fan_out(self, func, items, cancel_event) -> List[Tuple[Any, Optional[BaseException]]]:
        """
        Run func over items concurrently.

        Returns:
            [(value, error)] in item order; a failing item never affects the others

        Raises:
            PipelineCancelled: cancel_event fired, or a worker was cancelled
        """
        results: List[Tuple[Any, Optional[BaseException]]] = [(None, None)] * len(items)
        if not items:
            return results

        executor = ThreadPoolExecutor(max_workers=min(self.max_workers, len(items)),
                                      thread_name_prefix="pipeline")
        futures = {executor.submit(func, item): i for i, item in enumerate(items)}
        pending = set(futures)
        try:
            while pending:
                self._check_cancelled(cancel_event)
                done, pending = wait(pending, timeout=PROCESS_POLL_SECONDS, return_when=FIRST_COMPLETED)
                for future in done:
                    index = futures[future]
                    try:
                        results[index] = (future.result(), None)
                    except (PipelineCancelled, ProcessCancelled):
                        raise PipelineCancelled()
                    except Exception as e:
                        results[index] = (None, e)
        except PipelineCancelled:
            # Running workers see cancel_event themselves; queued ones never start
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        executor.shutdown(wait=True)
        return results

    @staticmethod
    def _check_cancelled(cancel_event):
        if cancel_event is not None and cancel_event.is_set():
            raise PipelineCancelled()

    def _log(self, conversation_id, states, duration_ms, status, error):
        el = _get_event_logger()
        if el:
            el.log_pipeline_event(conversation_id=conversation_id, utterances=states,
                                  duration_ms=duration_ms, status=status, error=error)


# ============================================
# Default wiring from settings
# ============================================

_pipeline = None
_pipeline_lock = threading.Lock()


def create_pipeline(settings=None) -> RenderPipeline:
    """Build a pipeline from settings (binary paths fall back to FFMPEG_PATH / RHUBARB_PATH)."""
    from .services import tts

    settings = settings or load_settings()
    binaries = settings.get('binaries', {})
    lipsync_settings = settings.get('lipsync', {})
    workspace_settings = settings.get('workspace', {})

    probe_timeout = float(binaries.get('probe_timeout_seconds', PROBE_TIMEOUT_SECONDS))
    process_timeout = float(binaries.get('process_timeout_seconds', PROCESS_TIMEOUT_SECONDS))

    transcoder = None
    lipsync = None
    if lipsync_settings.get('enabled', True):
        transcoder = AudioTranscoder(
            resolver=BinaryResolver(
                "ffmpeg",
                configured_path=binaries.get('ffmpeg_path') or os.getenv("FFMPEG_PATH"),
                candidates=FFMPEG_CANDIDATES,
                probe_timeout=probe_timeout
            ),
            timeout=process_timeout
        )
        lipsync = LipsyncGenerator(
            resolver=BinaryResolver(
                "rhubarb",
                configured_path=binaries.get('rhubarb_path') or os.getenv("RHUBARB_PATH"),
                candidates=default_rhubarb_candidates(),
                version_args=("--version",),
                probe_timeout=probe_timeout
            ),
            recognizer=lipsync_settings.get('recognizer', 'phonetic'),
            min_duration=float(lipsync_settings.get('min_cue_seconds', MIN_CUE_SECONDS)),
            max_gap=float(lipsync_settings.get('max_gap_seconds', MAX_CUE_GAP_SECONDS)),
            neutral_shape=lipsync_settings.get('neutral_shape') or NEUTRAL_SHAPE,
            timeout=process_timeout
        )

    return RenderPipeline(
        synthesizer=tts.synthesize,
        transcoder=transcoder,
        lipsync=lipsync,
        workspace=TempWorkspace(workspace_settings.get('root_dir') or None),
        max_workers=settings.get('pipeline', {}).get('max_workers', MAX_REPLY_MESSAGES),
        skip_unspeakable=settings.get('speech', {}).get('skip_unspeakable', True),
        audio_extension=tts.get_provider().audio_extension,
    )


def get_pipeline() -> RenderPipeline:
    """Process-wide pipeline (cached so resolved binary paths are probed once)."""
    global _pipeline
    if _pipeline is None:
        with _pipeline_lock:
            if _pipeline is None:
                _pipeline = create_pipeline()
    return _pipeline


def reset_pipeline():
    """Drop the cached pipeline so the next get_pipeline() re-reads settings."""
    global _pipeline
    with _pipeline_lock:
        _pipeline = None
