import os
import sys
import tempfile
from pathlib import Path

import pytest

# main builds a module-level app on import; keep it out of the working tree
os.environ.setdefault("DOWNLOADS_DIR", tempfile.mkdtemp(prefix="ytdlp-api-"))

from fastapi.testclient import TestClient

from config import Settings
from main import create_app
from store import LocalFileStore
from worker import JobRunner

FAKE_TOOL = Path(__file__).parent / "fake_ytdlp.py"
MISSING_TOOL = ["/nonexistent/bin/yt-dlp"]


@pytest.fixture
def fake_command():
    return [sys.executable, str(FAKE_TOOL)]


@pytest.fixture
def downloads_dir(tmp_path):
    return tmp_path / "downloads"


@pytest.fixture
def store(downloads_dir):
    return LocalFileStore(downloads_dir)


@pytest.fixture
def runner(store, fake_command):
    return JobRunner(store, fake_command, timeout=30, max_concurrent=2)


@pytest.fixture
def settings(downloads_dir, fake_command):
    return Settings(
        downloads_dir=downloads_dir,
        ytdlp_command=fake_command,
        job_timeout_seconds=30,
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    return TestClient(app)
