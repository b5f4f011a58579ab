import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

# -------------------- Defaults --------------------

DEFAULT_PORT = 3000
DEFAULT_RETENTION_SECONDS = 2 * 60 * 60
DEFAULT_CLEANUP_INTERVAL_SECONDS = 30 * 60
DEFAULT_JOB_TIMEOUT_SECONDS = 60 * 60
DEFAULT_MAX_CONCURRENT_JOBS = 4


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


@dataclass(frozen=True)
class Settings:
    port: int = DEFAULT_PORT
    host: str = "0.0.0.0"
    downloads_dir: Path = Path("downloads")
    ytdlp_command: List[str] = field(default_factory=lambda: ["yt-dlp"])
    retention_seconds: int = DEFAULT_RETENTION_SECONDS
    cleanup_interval_seconds: int = DEFAULT_CLEANUP_INTERVAL_SECONDS
    job_timeout_seconds: Optional[float] = DEFAULT_JOB_TIMEOUT_SECONDS
    max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        command = shlex.split(os.getenv("YTDLP_COMMAND", "yt-dlp"))
        if not command:
            raise ValueError("YTDLP_COMMAND must not be empty")

        timeout = _int_env("JOB_TIMEOUT_SECONDS", DEFAULT_JOB_TIMEOUT_SECONDS)
        origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

        return cls(
            port=_int_env("PORT", DEFAULT_PORT),
            host=os.getenv("HOST", "0.0.0.0"),
            downloads_dir=Path(os.getenv("DOWNLOADS_DIR", "downloads")).resolve(),
            ytdlp_command=command,
            retention_seconds=_int_env("FILE_RETENTION_SECONDS", DEFAULT_RETENTION_SECONDS),
            cleanup_interval_seconds=_int_env("CLEANUP_INTERVAL_SECONDS", DEFAULT_CLEANUP_INTERVAL_SECONDS),
            job_timeout_seconds=timeout if timeout > 0 else None,
            max_concurrent_jobs=max(1, _int_env("MAX_CONCURRENT_JOBS", DEFAULT_MAX_CONCURRENT_JOBS)),
            cors_origins=origins or ["*"],
        )


def configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
