from datetime import datetime
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import List, Optional


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InfoRequest(BaseModel):
    url: Optional[str] = None


class DownloadRequest(BaseModel):
    url: Optional[str] = None
    format: str = "mp4"
    quality: str = "best"


class AudioRequest(BaseModel):
    url: Optional[str] = None
    format: str = "mp3"


class HealthResponse(ApiModel):
    success: bool = True
    message: str
    ytdlp_installed: bool
    version: Optional[str] = None
    timestamp: str


class FormatInfo(BaseModel):
    format_id: str
    ext: Optional[str] = None
    resolution: Optional[str] = None
    filesize: Optional[int] = None


class VideoInfo(BaseModel):
    title: Optional[str] = None
    duration: Optional[float] = None
    thumbnail: Optional[str] = None
    description: Optional[str] = None
    uploader: Optional[str] = None
    upload_date: Optional[str] = None
    view_count: Optional[int] = None
    formats: List[FormatInfo] = []


class InfoResponse(ApiModel):
    success: bool = True
    data: VideoInfo


class DownloadResponse(ApiModel):
    success: bool = True
    message: str
    job_id: str
    file_name: str
    download_url: str


class FileEntry(ApiModel):
    name: str
    size: int
    created: datetime
    download_url: str


class FileListResponse(ApiModel):
    success: bool = True
    files: List[FileEntry]


class MessageResponse(ApiModel):
    success: bool = True
    message: str
