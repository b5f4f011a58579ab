import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, configure_logging
from errors import ServiceError
from relay import ProgressRelay
from schema import *
from store import FileStore, get_file_store
from worker import JobRunner

logger = logging.getLogger(__name__)

INSTALL_HINT = (
    "yt-dlp not found! Install it:\n"
    "   - Ubuntu/Debian: sudo apt install yt-dlp\n"
    "   - macOS: brew install yt-dlp\n"
    "   - pip: pip install yt-dlp"
)

# -------------------- Cleanup --------------------

async def cleanup_loop(store: FileStore, interval: float, retention: float) -> None:
    """Remove stored files older than the retention window, forever."""
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(store.sweep, retention)
        except OSError as e:
            logger.error("Cleanup of old files failed: %s", e)
            continue
        if removed:
            logger.info("Cleanup removed %d file(s)", len(removed))


# -------------------- App Factory --------------------

def create_app(settings: Settings) -> FastAPI:
    store = get_file_store(settings)
    runner = JobRunner(
        store,
        settings.ytdlp_command,
        timeout=settings.job_timeout_seconds,
        max_concurrent=settings.max_concurrent_jobs,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        version = await runner.tool_version()
        logger.info("yt-dlp installed: %s%s", version is not None, f" ({version})" if version else "")
        if version is None:
            logger.warning(INSTALL_HINT)

        cleanup = asyncio.create_task(
            cleanup_loop(store, settings.cleanup_interval_seconds, settings.retention_seconds)
        )
        try:
            yield
        finally:
            cleanup.cancel()

    app = FastAPI(title="yt-dlp API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.store = store
    app.state.runner = runner
    app.state.relay = ProgressRelay(runner)

    register_handlers(app)
    register_routes(app)
    return app


# -------------------- Error Responses --------------------

def error_response(status_code: int, message: str, job_id: Optional[str] = None) -> JSONResponse:
    content = {"success": False, "error": message}
    if job_id:
        content["jobId"] = job_id
    return JSONResponse(status_code=status_code, content=content)


def register_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        return error_response(exc.status_code, exc.message, exc.job_id)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
            message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
        else:
            message = "Invalid request"
        return error_response(400, message)


# -------------------- API Endpoints --------------------

def _file_url(request: Request, file_name: str) -> str:
    return str(request.url_for("get_file", file_name=file_name))


def register_routes(app: FastAPI) -> None:

    @app.get("/api/health", response_model=HealthResponse)
    async def health(request: Request):
        version = await request.app.state.runner.tool_version()
        return HealthResponse(
            message="API is running",
            ytdlp_installed=version is not None,
            version=version,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @app.post("/api/info", response_model=InfoResponse)
    async def video_info(body: InfoRequest, request: Request):
        runner: JobRunner = request.app.state.runner
        job = runner.create_info_job(body.url)
        result = await runner.info(job)
        if not result.succeeded:
            raise result.error
        return InfoResponse(data=VideoInfo(**result.payload))

    @app.post("/api/download", response_model=DownloadResponse)
    async def download_video(body: DownloadRequest, request: Request):
        runner: JobRunner = request.app.state.runner
        job = runner.create_video_job(body.url, body.format, body.quality)
        result = await runner.run(job)
        if not result.succeeded:
            raise result.error
        return DownloadResponse(
            message="Download completed",
            job_id=result.job_id,
            file_name=result.file_name,
            download_url=_file_url(request, result.file_name),
        )

    @app.post("/api/download-audio", response_model=DownloadResponse)
    async def download_audio(body: AudioRequest, request: Request):
        runner: JobRunner = request.app.state.runner
        job = runner.create_audio_job(body.url, body.format)
        result = await runner.run(job)
        if not result.succeeded:
            raise result.error
        return DownloadResponse(
            message="Audio download completed",
            job_id=result.job_id,
            file_name=result.file_name,
            download_url=_file_url(request, result.file_name),
        )

    @app.post("/api/download-stream")
    async def download_stream(body: DownloadRequest, request: Request):
        runner: JobRunner = request.app.state.runner
        relay: ProgressRelay = request.app.state.relay
        job = runner.create_video_job(body.url, body.format, body.quality, streaming=True)

        return StreamingResponse(
            relay.sse(job, lambda file_name: _file_url(request, file_name)),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/api/file/{file_name}")
    def get_file(file_name: str, request: Request):
        stored = request.app.state.store.get(file_name)
        return FileResponse(
            path=str(stored.path),
            filename=stored.name,
            media_type="application/octet-stream",
        )

    @app.get("/api/files", response_model=FileListResponse)
    def list_files(request: Request):
        files = [
            FileEntry(
                name=f.name,
                size=f.size,
                created=f.created,
                download_url=_file_url(request, f.name),
            )
            for f in request.app.state.store.list()
        ]
        return FileListResponse(files=files)

    @app.delete("/api/file/{file_name}", response_model=MessageResponse)
    def delete_file(file_name: str, request: Request):
        request.app.state.store.delete(file_name)
        return MessageResponse(message="File deleted successfully")


configure_logging()
settings = Settings.from_env()
app = create_app(settings)


if __name__ == "__main__":
    logger.info("yt-dlp API Server running on port %s", settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)
