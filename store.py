import logging
import time

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from config import Settings
from errors import FileNotFoundInStoreError

logger = logging.getLogger(__name__)

# yt-dlp working files that never count as a finished download
PARTIAL_SUFFIXES = (".part", ".ytdl", ".temp")


@dataclass
class StoredFile:
    name: str
    size: int
    created: datetime
    path: Path


class FileStore(ABC):
    @abstractmethod
    def path_for(self, file_name: str) -> Path:
        pass

    @abstractmethod
    def find_by_prefix(self, prefix: str) -> Optional[str]:
        pass

    @abstractmethod
    def get(self, file_name: str) -> StoredFile:
        pass

    @abstractmethod
    def list(self) -> List[StoredFile]:
        pass

    @abstractmethod
    def delete(self, file_name: str) -> None:
        pass

    @abstractmethod
    def sweep(self, max_age_seconds: float) -> List[str]:
        pass


class LocalFileStore(FileStore):
    """
    Directory of job outputs, one file per successful job, named
    ``{job_id}.{ext}``.

    Names handed in by callers are never trusted: anything that does not
    resolve to a direct child of the directory is reported as not found.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory).resolve()
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, file_name: str) -> Path:
        return self.directory / file_name

    def _resolve(self, file_name: str) -> Path:
        if not file_name or file_name in {".", ".."} or any(c in file_name for c in "/\\\x00"):
            raise FileNotFoundInStoreError("File not found")
        try:
            path = (self.directory / file_name).resolve()
        except (OSError, ValueError):
            raise FileNotFoundInStoreError("File not found")
        if path.parent != self.directory or not path.is_file():
            raise FileNotFoundInStoreError("File not found")
        return path

    def _describe(self, path: Path) -> StoredFile:
        stat = path.stat()
        # st_birthtime only exists on some platforms
        created = getattr(stat, "st_birthtime", None) or stat.st_ctime
        return StoredFile(
            name=path.name,
            size=stat.st_size,
            created=datetime.fromtimestamp(created, tz=timezone.utc),
            path=path,
        )

    def find_by_prefix(self, prefix: str) -> Optional[str]:
        matches = sorted(
            entry.name for entry in self.directory.iterdir()
            if entry.is_file() and entry.name.startswith(prefix)
            and not entry.name.endswith(PARTIAL_SUFFIXES)
        )
        return matches[0] if matches else None

    def get(self, file_name: str) -> StoredFile:
        return self._describe(self._resolve(file_name))

    def list(self) -> List[StoredFile]:
        files = []
        for entry in sorted(self.directory.iterdir()):
            try:
                if entry.is_file():
                    files.append(self._describe(entry))
            except FileNotFoundError:
                # removed between listing and stat
                continue
        return files

    def delete(self, file_name: str) -> None:
        path = self._resolve(file_name)
        try:
            path.unlink()
        except FileNotFoundError:
            raise FileNotFoundInStoreError("File not found")
        logger.info("Deleted file: %s", file_name)

    def sweep(self, max_age_seconds: float) -> List[str]:
        now = time.time()
        removed = []
        for entry in self.directory.iterdir():
            try:
                if not entry.is_file():
                    continue
                if now - entry.stat().st_mtime > max_age_seconds:
                    entry.unlink()
                    removed.append(entry.name)
                    logger.info("Deleted old file: %s", entry.name)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Could not remove %s: %s", entry.name, e)
        return removed


def get_file_store(settings: Settings) -> FileStore:
    directory = Path(settings.downloads_dir)
    logger.info("DOWNLOADS_DIR: %s", directory)
    return LocalFileStore(directory)