import asyncio
import json

from conftest import MISSING_TOOL
from fake_ytdlp import FRAGMENT_LINES
from relay import COMPLETE, ERROR, LOG, MAX_LINE_BYTES, PROGRESS, Event, ProgressRelay, encode_sse
from worker import JobRunner, JobState


async def collect(relay, job):
    return [event async for event in relay.stream(job)]


def test_stream_success(runner):
    relay = ProgressRelay(runner)
    job = runner.create_video_job("https://example.com/ok", streaming=True)

    events = asyncio.run(collect(relay, job))

    progress = [e.message for e in events if e.type == PROGRESS]
    assert progress == [
        "[download] Destination: media",
        "[download] 10.0% of 1.00MiB",
        "[download] 55.5% of 1.00MiB",
        "[download] 100.0% of 1.00MiB",
    ]
    assert [e.message for e in events if e.type == LOG] == ["WARNING: fake extractor in use"]

    terminal = [e for e in events if e.terminal]
    assert len(terminal) == 1
    assert events[-1].type == COMPLETE
    assert events[-1].file_name == f"{job.id}.mp4"
    assert job.state == JobState.SUCCEEDED


def test_stream_failure_ends_with_error(runner):
    relay = ProgressRelay(runner)
    job = runner.create_video_job("https://example.com/fail", streaming=True)

    events = asyncio.run(collect(relay, job))

    assert [e.type for e in events].count(ERROR) == 1
    assert events[-1].type == ERROR
    assert "Unsupported URL" in events[-1].message
    assert not any(e.type == COMPLETE for e in events)


def test_stream_missing_output(runner):
    relay = ProgressRelay(runner)
    job = runner.create_video_job("https://example.com/nofile", streaming=True)

    events = asyncio.run(collect(relay, job))

    assert events[-1].type == ERROR
    assert events[-1].message == "Download completed but file not found"


def test_stream_missing_tool(store):
    runner = JobRunner(store, MISSING_TOOL)
    relay = ProgressRelay(runner)
    job = runner.create_video_job("https://example.com/ok", streaming=True)

    events = asyncio.run(collect(relay, job))

    assert len(events) == 1
    assert events[0].type == ERROR


def test_stream_timeout(store, fake_command):
    runner = JobRunner(store, fake_command, timeout=1.5)
    relay = ProgressRelay(runner)
    job = runner.create_video_job("https://example.com/hang", streaming=True)

    events = asyncio.run(collect(relay, job))

    assert events[0].type == PROGRESS
    assert events[-1].type == ERROR
    assert "did not finish" in events[-1].message
    assert job.process.returncode is not None


def test_closing_stream_early_kills_process(runner):
    relay = ProgressRelay(runner)
    job = runner.create_video_job("https://example.com/hang", streaming=True)

    async def consume_one_then_disconnect():
        events = relay.stream(job)
        first = await events.__anext__()
        await events.aclose()
        return first

    first = asyncio.run(consume_one_then_disconnect())

    assert first.type == PROGRESS
    assert job.process.returncode is not None


def test_encode_sse():
    progress = encode_sse(Event(type=PROGRESS, job_id="video_1", message="[download] 1%"))
    assert progress == 'data: {"type": "progress", "message": "[download] 1%"}\n\n'

    complete = encode_sse(
        Event(type=COMPLETE, job_id="video_1", file_name="video_1.mp4"),
        "http://testserver/api/file/video_1.mp4",
    )
    assert complete.startswith("data: ") and complete.endswith("\n\n")
    assert json.loads(complete[len("data: "):]) == {
        "type": "complete",
        "success": True,
        "jobId": "video_1",
        "fileName": "video_1.mp4",
        "downloadUrl": "http://testserver/api/file/video_1.mp4",
    }


def test_overlong_line_is_truncated_and_streaming_continues(runner):
    relay = ProgressRelay(runner)
    job = runner.create_video_job("https://example.com/longline", streaming=True)

    events = asyncio.run(collect(relay, job))

    progress = [e.message for e in events if e.type == PROGRESS]
    assert [m for m in progress if m.startswith("xxx")] == ["x" * MAX_LINE_BYTES]
    assert sum(1 for m in progress if m.startswith("[download] fragment ")) == FRAGMENT_LINES
    assert progress[-1] == "[download] 100.0% of 1.00MiB"
    assert events[-1].type == COMPLETE
    assert len([e for e in events if e.terminal]) == 1
