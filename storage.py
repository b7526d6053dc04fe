import logging
import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)


class StorageUnavailable(RuntimeError):
    pass


def _safe_name(filename: str) -> str:
    name = Path(filename or "import").name
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return name or "import"


class FileStorage(ABC):
    """Opaque byte store for uploaded exports."""

    @abstractmethod
    def upload(self, content: bytes, filename: str) -> str:
        """Store ``content`` and return the path to hand back to ``download``."""

    @abstractmethod
    def download(self, path: str) -> bytes:
        """Return stored bytes. Raises StorageUnavailable on any failure."""


class LocalFileStorage(FileStorage):
    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise StorageUnavailable(f"Path escapes storage root: {path}")
        return target

    def upload(self, content: bytes, filename: str) -> str:
        stamp = datetime.utcnow().strftime("%Y%m%d%H%M%S%f")
        relative = f"{stamp}_{_safe_name(filename)}"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self._resolve(relative).write_bytes(content)
        except OSError as exc:
            logger.error(f"storage_upload_failed: path={relative} error={exc}")
            raise StorageUnavailable(f"Could not store file: {exc}") from exc
        return relative

    def download(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except OSError as exc:
            logger.error(f"storage_download_failed: path={path} error={exc}")
            raise StorageUnavailable(f"Could not read file: {exc}") from exc


class InMemoryFileStorage(FileStorage):
    def __init__(self) -> None:
        self._files: dict[str, bytes] = {}
        self._lock = threading.Lock()
        self._counter = 0

    def upload(self, content: bytes, filename: str) -> str:
        with self._lock:
            self._counter += 1
            path = f"{self._counter:06d}_{_safe_name(filename)}"
            self._files[path] = bytes(content)
        return path

    def download(self, path: str) -> bytes:
        with self._lock:
            if path not in self._files:
                raise StorageUnavailable(f"File not found: {path}")
            return self._files[path]

    def remove(self, path: str) -> None:
        with self._lock:
            self._files.pop(path, None)
