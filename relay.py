"""
Progress relay for the streaming download.

yt-dlp runs with ``--newline`` so every progress update arrives as its own
stdout line. stdout lines become ``progress`` events, stderr lines become
``log`` events, and exactly one terminal ``complete`` or ``error`` event closes
the stream. If the consumer goes away before that, the process is killed.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional

from errors import ToolUnavailableError
from worker import READ_CHUNK, Job, JobRunner

logger = logging.getLogger(__name__)

PROGRESS = "progress"
LOG = "log"
COMPLETE = "complete"
ERROR = "error"

TERMINAL_TYPES = {COMPLETE, ERROR}

# longer lines are cut to this size and the remainder discarded
MAX_LINE_BYTES = 64 * 1024


@dataclass
class Event:
    type: str
    job_id: str
    message: Optional[str] = None
    file_name: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_TYPES


def encode_sse(event: Event, download_url: Optional[str] = None) -> str:
    if event.type == COMPLETE:
        data = {
            "type": COMPLETE,
            "success": True,
            "jobId": event.job_id,
            "fileName": event.file_name,
            "downloadUrl": download_url,
        }
    elif event.type == ERROR:
        data = {"type": ERROR, "success": False, "jobId": event.job_id, "message": event.message}
    else:
        data = {"type": event.type, "message": event.message}
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


class ProgressRelay:
    def __init__(self, runner: JobRunner):
        self.runner = runner

    async def _emit(self, job: Job, raw_line: bytes, event_type: str,
                    queue: asyncio.Queue) -> None:
        line = raw_line.decode("utf-8", errors="replace").rstrip("\r")
        if not line:
            return
        if event_type == LOG:
            job.stderr.append(line + "\n")
        await queue.put(Event(type=event_type, job_id=job.id, message=line))

    async def _pump(self, job: Job, stream: asyncio.StreamReader, event_type: str,
                    queue: asyncio.Queue) -> None:
        pending = bytearray()
        # set while discarding the rest of an overlong line
        skipping = False
        try:
            while True:
                chunk = await stream.read(READ_CHUNK)
                if not chunk:
                    break
                pending += chunk
                while True:
                    end = pending.find(b"\n")
                    if end < 0:
                        break
                    raw_line = bytes(pending[:end])
                    del pending[:end + 1]
                    if skipping:
                        skipping = False
                        continue
                    await self._emit(job, raw_line, event_type, queue)
                if len(pending) > MAX_LINE_BYTES:
                    if not skipping:
                        logger.warning("[%s] Truncated %s line longer than %d bytes",
                                       job.id, event_type, MAX_LINE_BYTES)
                        await self._emit(job, bytes(pending[:MAX_LINE_BYTES]), event_type, queue)
                        skipping = True
                    pending.clear()
            if pending and not skipping:
                await self._emit(job, bytes(pending), event_type, queue)
        finally:
            queue.put_nowait(None)

    async def _stop(self, readers: List[asyncio.Task]) -> None:
        for reader in readers:
            reader.cancel()
        await asyncio.gather(*readers, return_exceptions=True)

    def _remaining(self, deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(0.0, deadline - asyncio.get_running_loop().time())

    async def stream(self, job: Job) -> AsyncIterator[Event]:
        async with self.runner.admission:
            try:
                process = await self.runner.spawn(job)
            except ToolUnavailableError as e:
                result = self.runner.fail(job, e)
                yield Event(type=ERROR, job_id=job.id, message=result.error.message)
                return

            queue: asyncio.Queue = asyncio.Queue()
            readers = [
                asyncio.create_task(self._pump(job, process.stdout, PROGRESS, queue)),
                asyncio.create_task(self._pump(job, process.stderr, LOG, queue)),
            ]
            deadline = None
            if self.runner.timeout is not None:
                deadline = asyncio.get_running_loop().time() + self.runner.timeout

            try:
                open_channels = len(readers)
                try:
                    while open_channels:
                        item = await asyncio.wait_for(queue.get(), timeout=self._remaining(deadline))
                        if item is None:
                            open_channels -= 1
                            continue
                        yield item
                    returncode = await asyncio.wait_for(process.wait(), timeout=self._remaining(deadline))
                except asyncio.TimeoutError:
                    # the readers keep draining until the killed process closes its pipes
                    await self.runner.kill(job)
                    result = self.runner.timed_out(job)
                else:
                    result = self.runner.resolve(job, returncode)

                if result.succeeded:
                    yield Event(type=COMPLETE, job_id=job.id, file_name=result.file_name)
                else:
                    yield Event(type=ERROR, job_id=job.id, message=result.error.message)
            finally:
                if process.returncode is None:
                    logger.info("[%s] Stream closed before yt-dlp finished", job.id)
                    await self.runner.kill(job)
                await self._stop(readers)

    async def sse(self, job: Job, url_for_file: Callable[[str], str]) -> AsyncIterator[str]:
        events = self.stream(job)
        try:
            async for event in events:
                download_url = url_for_file(event.file_name) if event.type == COMPLETE else None
                yield encode_sse(event, download_url)
        finally:
            await events.aclose()
