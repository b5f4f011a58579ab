"""
Job runner: turns a download or info request into one yt-dlp process,
drains its output and classifies the outcome.

Every job owns its process and its output file name, so concurrent jobs never
share state. The only shared resource is the admission semaphore that caps
how many tool processes run at once.
"""

import asyncio
import codecs
import json
import logging
import shlex
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from errors import (
    ExecutionError,
    InfoParseError,
    JobTimeoutError,
    PostconditionError,
    ServiceError,
    ToolUnavailableError,
    ValidationError,
)
from store import FileStore

logger = logging.getLogger(__name__)

VIDEO_FORMATS = {"mp4", "mkv", "webm"}
AUDIO_FORMATS = {"mp3", "m4a", "opus", "wav", "flac", "aac"}

# asyncio's default 64 KiB line limit is too small for long progress lines
STREAM_LIMIT = 1024 * 1024
READ_CHUNK = 64 * 1024
VERSION_TIMEOUT_SECONDS = 10

# -------------------- Job Model --------------------


class JobKind(str, Enum):
    VIDEO = "video-download"
    AUDIO = "audio-download"
    INFO = "info-query"


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ID_PREFIXES = {
    JobKind.VIDEO: "video",
    JobKind.AUDIO: "audio",
    JobKind.INFO: "info",
}


@dataclass
class Job:
    id: str
    kind: JobKind
    arguments: Tuple[str, ...]
    output_path: Optional[Path] = None
    output_pattern: Optional[str] = None
    state: JobState = JobState.PENDING
    stderr: List[str] = field(default_factory=list)
    process: Optional[asyncio.subprocess.Process] = None


@dataclass
class JobResult:
    job_id: str
    state: JobState
    file_name: Optional[str] = None
    error: Optional[ServiceError] = None
    payload: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.state == JobState.SUCCEEDED


def new_job_id(kind: JobKind) -> str:
    millis = int(time.time() * 1000)
    return f"{ID_PREFIXES[kind]}_{millis}_{uuid.uuid4().hex[:9]}"


# -------------------- Argument Mapping --------------------

def video_format_selector(output_format: str, quality: str) -> str:
    if quality == "best":
        if output_format == "mp4":
            return "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best"
        return "bestvideo+bestaudio/best"
    if quality in {"1080p", "720p", "480p"}:
        height = quality[:-1]
        return f"bestvideo[height<={height}]+bestaudio/best[height<={height}]"
    return "bestvideo+bestaudio/best"


def build_video_args(url: str, output: str, output_format: str = "mp4",
                     quality: str = "best", newline: bool = False) -> Tuple[str, ...]:
    args = [
        "-f", video_format_selector(output_format, quality),
        "--merge-output-format", output_format,
        "-o", output,
        "--no-playlist",
    ]
    if newline:
        args.append("--newline")
    args.append(url)
    return tuple(args)


def build_audio_args(url: str, output: str, audio_format: str = "mp3") -> Tuple[str, ...]:
    return (
        "-x",
        "--audio-format", audio_format,
        "--audio-quality", "0",
        "-o", output,
        "--no-playlist",
        url,
    )


def build_info_args(url: str) -> Tuple[str, ...]:
    return ("--dump-json", "--no-playlist", url)


def project_info(info: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce a yt-dlp ``--dump-json`` document to the fields the API exposes."""
    formats = []
    for f in info.get("formats") or []:
        if not isinstance(f, dict) or not f.get("format_id"):
            continue
        formats.append({
            "format_id": str(f["format_id"]),
            "ext": f.get("ext"),
            "resolution": f.get("resolution"),
            "filesize": f.get("filesize"),
        })

    return {
        "title": info.get("title"),
        "duration": info.get("duration"),
        "thumbnail": info.get("thumbnail"),
        "description": info.get("description"),
        "uploader": info.get("uploader"),
        "upload_date": info.get("upload_date"),
        "view_count": info.get("view_count"),
        "formats": formats,
    }


def _require_url(url: Optional[str]) -> str:
    if url is None or not url.strip():
        raise ValidationError("URL is required")
    return url.strip()


def _require_format(value: str, allowed: set, label: str) -> str:
    if value not in allowed:
        raise ValidationError(
            f"Unsupported {label} format '{value}'. Available: {sorted(allowed)}"
        )
    return value


# -------------------- Runner --------------------

class JobRunner:
    def __init__(self, store: FileStore, command: Sequence[str],
                 timeout: Optional[float] = None, max_concurrent: int = 4):
        self.store = store
        self.command = list(command)
        self.timeout = timeout
        self.admission = asyncio.Semaphore(max_concurrent)

    # ---- job construction (validation happens here, before any spawn) ----

    def create_video_job(self, url: Optional[str], output_format: str = "mp4",
                         quality: str = "best", streaming: bool = False) -> Job:
        url = _require_url(url)
        output_format = _require_format(output_format, VIDEO_FORMATS, "video")
        job_id = new_job_id(JobKind.VIDEO)

        if streaming:
            # extension is only known once yt-dlp picks the container
            pattern = f"{job_id}.%(ext)s"
            args = build_video_args(url, str(self.store.path_for(pattern)),
                                    output_format, quality, newline=True)
            return Job(id=job_id, kind=JobKind.VIDEO, arguments=args, output_pattern=pattern)

        output_path = self.store.path_for(f"{job_id}.{output_format}")
        args = build_video_args(url, str(output_path), output_format, quality)
        return Job(id=job_id, kind=JobKind.VIDEO, arguments=args, output_path=output_path)

    def create_audio_job(self, url: Optional[str], audio_format: str = "mp3") -> Job:
        url = _require_url(url)
        audio_format = _require_format(audio_format, AUDIO_FORMATS, "audio")
        job_id = new_job_id(JobKind.AUDIO)
        output_path = self.store.path_for(f"{job_id}.{audio_format}")
        args = build_audio_args(url, str(output_path), audio_format)
        return Job(id=job_id, kind=JobKind.AUDIO, arguments=args, output_path=output_path)

    def create_info_job(self, url: Optional[str]) -> Job:
        url = _require_url(url)
        return Job(id=new_job_id(JobKind.INFO), kind=JobKind.INFO, arguments=build_info_args(url))

    # ---- process control ----

    async def spawn(self, job: Job) -> asyncio.subprocess.Process:
        argv = self.command + list(job.arguments)
        logger.info("[%s] Executing: %s", job.id, shlex.join(argv))
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            logger.error("[%s] Could not start %s: %s", job.id, self.command[0], e)
            raise ToolUnavailableError(f"yt-dlp is not available: {e}", job_id=job.id) from e

        job.process = process
        job.state = JobState.RUNNING
        return process

    async def kill(self, job: Job) -> None:
        """
        Kill the tool process and wait for it to exit.

        The exit is only reported once both pipes reach EOF, so whoever reads
        the job's output must keep reading until this returns.
        """
        process = job.process
        if process is None or process.returncode is not None:
            return
        logger.warning("[%s] Killing yt-dlp process %s", job.id, process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()

    # ---- outcome classification ----

    def fail(self, job: Job, error: ServiceError) -> JobResult:
        job.state = JobState.FAILED
        error.job_id = job.id
        logger.warning("[%s] ✗ Job failed: %s", job.id, error.message[:200])
        return JobResult(job_id=job.id, state=JobState.FAILED, error=error)

    def timed_out(self, job: Job) -> JobResult:
        return self.fail(job, JobTimeoutError(
            f"yt-dlp did not finish within {self.timeout:g} seconds"
        ))

    def resolve(self, job: Job, returncode: int) -> JobResult:
        """Classify a finished process and locate the file it produced."""
        if returncode != 0:
            diagnostic = "".join(job.stderr).strip()
            return self.fail(job, ExecutionError(
                diagnostic or f"Process exited with code {returncode}"
            ))

        file_name = None
        if job.output_path is not None and job.output_path.is_file():
            file_name = job.output_path.name
        else:
            file_name = self.store.find_by_prefix(f"{job.id}.")

        if file_name is None:
            return self.fail(job, PostconditionError("Download completed but file not found"))

        job.state = JobState.SUCCEEDED
        logger.info("[%s] ✓ Job completed: %s", job.id, file_name)
        return JobResult(job_id=job.id, state=JobState.SUCCEEDED, file_name=file_name)

    # ---- execution ----

    async def _drain(self, stream: asyncio.StreamReader,
                     sink: Callable[[str], None]) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    sink(tail)
                return
            sink(decoder.decode(chunk))

    async def _execute(self, job: Job, on_stdout: Callable[[str], None],
                       on_stderr: Callable[[str], None]) -> Optional[int]:
        """
        Drain both pipes until the process exits and return its exit code,
        or None if it was killed for running past the timeout.
        """
        process = job.process
        readers = asyncio.gather(
            self._drain(process.stdout, on_stdout),
            self._drain(process.stderr, on_stderr),
        )

        async def finish() -> int:
            await readers
            return await process.wait()

        done = asyncio.ensure_future(finish())
        try:
            return await asyncio.wait_for(asyncio.shield(done), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self.kill(job)
            await done
            return None
        except asyncio.CancelledError:
            await self.kill(job)
            await done
            raise

    async def run(self, job: Job) -> JobResult:
        """Run a download job to completion. Never raises for job failures."""

        def on_stdout(text: str) -> None:
            logger.debug("[%s] %s", job.id, text.rstrip())

        def on_stderr(text: str) -> None:
            job.stderr.append(text)
            logger.debug("[%s] %s", job.id, text.rstrip())

        async with self.admission:
            try:
                await self.spawn(job)
            except ToolUnavailableError as e:
                return self.fail(job, e)
            returncode = await self._execute(job, on_stdout, on_stderr)

        if returncode is None:
            return self.timed_out(job)
        return self.resolve(job, returncode)

    async def info(self, job: Job) -> JobResult:
        """Run a metadata-only query and return the projected document as payload."""
        stdout: List[str] = []

        async with self.admission:
            try:
                await self.spawn(job)
            except ToolUnavailableError as e:
                return self.fail(job, e)
            returncode = await self._execute(job, stdout.append, job.stderr.append)

        if returncode is None:
            return self.timed_out(job)
        if returncode != 0:
            return self.resolve(job, returncode)

        try:
            info = json.loads("".join(stdout))
        except ValueError as e:
            return self.fail(job, InfoParseError(f"Could not parse yt-dlp output: {e}"))
        if not isinstance(info, dict):
            return self.fail(job, InfoParseError("Could not parse yt-dlp output: expected a JSON object"))

        job.state = JobState.SUCCEEDED
        return JobResult(job_id=job.id, state=JobState.SUCCEEDED, payload=project_info(info))

    async def tool_version(self) -> Optional[str]:
        """Return the tool's version string, or None when it cannot be run."""
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command, "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError:
            return None

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=VERSION_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return None

        if process.returncode != 0:
            return None
        return stdout.decode("utf-8", errors="replace").strip() or None
