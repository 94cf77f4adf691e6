"""
Engine adapters wrapping the external transcription and transcoding capabilities.

Every adapter exposes the same coroutine, ``invoke(resolved_input, request, workdir)``,
and reports failures as EngineError with any diagnostic text attached. Budgets
and cancellation are enforced by the pipeline, not here: an adapter only has to
release its external resources when its task is cancelled.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from common.errors import EngineError
from common.job_schema import JobKind, Transcript, Word
from common.logging_config import get_logger
from common.payloads import ClipRequest, WorkerRequest
from common.storage import ArtifactRef

logger = get_logger(__name__)

DIAGNOSTICS_TAIL = 2000


class InputMode(str, Enum):
    LOCAL_FILE = "local_file"
    SIGNED_URL = "signed_url"


class OutputMode(str, Enum):
    ARTIFACT = "artifact"
    STRUCTURED = "structured"


@dataclass
class ResolvedInput:
    ref: ArtifactRef
    local_path: Optional[Path] = None
    url: Optional[str] = None


@dataclass
class EngineResult:
    output_path: Optional[Path] = None
    transcript: Optional[Transcript] = None
    content_type: str = "application/octet-stream"
    diagnostics: str = ""


def _tail(text: str, limit: int = DIAGNOSTICS_TAIL) -> str:
    text = (text or "").strip()
    return text if len(text) <= limit else "..." + text[-limit:]


class EngineAdapter:
    kind: JobKind
    input_mode: InputMode
    output_mode: OutputMode
    output_prefix: str

    async def invoke(self, resolved: ResolvedInput, request: WorkerRequest, workdir: Path) -> EngineResult:
        raise NotImplementedError


# ------------------------------------------------------------------------------
# FFMPEG (clip worker)
# ------------------------------------------------------------------------------

class FFmpegClipEngine(EngineAdapter):
    """Cuts ``[startTime, endTime)`` out of a local file with ffmpeg.

    The engine always receives seek + duration (``-ss START -t END-START``),
    never an absolute end timestamp. ``-ss`` is placed after ``-i`` so the seek
    is frame-accurate.
    """

    kind = JobKind.CLIP
    input_mode = InputMode.LOCAL_FILE
    output_mode = OutputMode.ARTIFACT
    output_prefix = "clips"

    def __init__(self, binary: str = "ffmpeg"):
        self.binary = binary

    @staticmethod
    def output_name(input_name: str, output_format: str) -> str:
        return f"clip_{Path(input_name).stem}.{output_format}"

    def build_command(self, input_path: Path, output_path: Path, request: ClipRequest) -> List[str]:
        return [
            self.binary,
            "-y",
            "-hide_banner",
            "-i", str(input_path),
            "-ss", f"{request.start_time:.3f}",
            "-t", f"{request.duration:.3f}",
            str(output_path),
        ]

    async def transcode(self, input_path: Path, request: ClipRequest, workdir: Path) -> EngineResult:
        if request.duration <= 0:
            raise EngineError(f"Invalid duration calculated: {request.duration}")
        output_path = workdir / self.output_name(input_path.name, request.output_format)
        cmd = self.build_command(input_path, output_path, request)
        logger.info(f"Executing FFmpeg: {' '.join(cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EngineError(f"Could not start {self.binary}: {e}") from e

        try:
            stdout, stderr = await proc.communicate()
        finally:
            if proc.returncode is None:
                # Cancelled (budget expired) or interrupted: kill the child, never orphan it.
                proc.kill()
                await proc.wait()
                logger.warning(f"Killed FFmpeg process {proc.pid}")

        diagnostics = stderr.decode(errors="replace")
        if proc.returncode != 0:
            raise EngineError(
                f"FFmpeg exited with code {proc.returncode}",
                diagnostics=_tail(diagnostics),
            )
        return EngineResult(
            output_path=output_path,
            content_type=f"video/{request.output_format}",
            diagnostics=_tail(diagnostics),
        )

    async def invoke(self, resolved: ResolvedInput, request: WorkerRequest, workdir: Path) -> EngineResult:
        if resolved.local_path is None:
            raise EngineError("FFmpeg needs a local input file")
        return await self.transcode(resolved.local_path, request, workdir)


# ------------------------------------------------------------------------------
# DEEPGRAM (transcription worker)
# ------------------------------------------------------------------------------

DEEPGRAM_LISTEN_URL = "https://api.deepgram.com/v1/listen"

DEFAULT_DEEPGRAM_OPTIONS = {
    "model": "nova-2",
    "smart_format": "true",
    "punctuate": "true",
    "diarize": "true",
    "utterances": "true",
    "numerals": "true",
}


def _word(dg_word: Dict[str, Any], speaker: Optional[int]) -> Word:
    return Word(
        text=dg_word["word"],
        start=dg_word["start"],
        end=dg_word["end"],
        confidence=dg_word.get("confidence"),
        speaker=speaker,
        punctuated_word=dg_word.get("punctuated_word") or dg_word["word"],
    )


def parse_deepgram_words(payload: Any) -> Transcript:
    """Flatten a pre-recorded response into timed words.

    Utterances carry the diarized speaker; without them the first channel's
    first alternative is used. A response without a ``results`` object is
    malformed. A well-formed response with no words yields an empty transcript.
    """
    results = payload.get("results") if isinstance(payload, dict) else None
    if not isinstance(results, dict):
        raise EngineError("Deepgram transcription result is empty or malformed (no 'results' object).")

    words = []
    try:
        utterances = results.get("utterances") or []
        if utterances:
            for utterance in utterances:
                for dg_word in utterance.get("words") or []:
                    words.append(_word(dg_word, utterance.get("speaker")))
        else:
            channels = results.get("channels") or []
            alternatives = (channels[0].get("alternatives") or []) if channels else []
            for dg_word in (alternatives[0].get("words") or []) if alternatives else []:
                words.append(_word(dg_word, dg_word.get("speaker")))
    except (KeyError, TypeError, AttributeError, ValueError) as e:
        raise EngineError(f"Deepgram returned a malformed word entry: {e}") from e
    return Transcript(words=words)


class DeepgramTranscriptionEngine(EngineAdapter):
    kind = JobKind.TRANSCRIPTION
    input_mode = InputMode.SIGNED_URL
    output_mode = OutputMode.STRUCTURED
    output_prefix = "transcripts"

    def __init__(
        self,
        api_key: str,
        options: Optional[Dict[str, str]] = None,
        base_url: str = DEEPGRAM_LISTEN_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ValueError("DEEPGRAM_API_KEY environment variable not set.")
        self.api_key = api_key
        self.options = dict(options or DEFAULT_DEEPGRAM_OPTIONS)
        self.base_url = base_url
        self.transport = transport

    async def transcribe(self, url: str, options: Dict[str, str]) -> Transcript:
        headers = {"Authorization": f"Token {self.api_key}"}
        # No read timeout: the pipeline budget bounds the whole call.
        timeout = httpx.Timeout(None, connect=10.0)
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as client:
                resp = await client.post(self.base_url, params=options, headers=headers, json={"url": url})
        except httpx.HTTPError as e:
            raise EngineError(f"Deepgram request failed: {e}") from e

        if resp.is_error:
            raise EngineError(
                f"Deepgram API Error ({resp.status_code})",
                diagnostics=_tail(resp.text),
            )
        try:
            payload = resp.json()
        except ValueError as e:
            raise EngineError("Deepgram returned a non-JSON response.", diagnostics=_tail(resp.text)) from e
        return parse_deepgram_words(payload)

    async def invoke(self, resolved: ResolvedInput, request: WorkerRequest, workdir: Path) -> EngineResult:
        if not resolved.url:
            raise EngineError("Deepgram needs a signed URL for the input")
        logger.info(f"Sending audio to Deepgram. Options: {self.options}")
        transcript = await self.transcribe(resolved.url, self.options)
        return EngineResult(transcript=transcript, content_type="application/json")
