"""File system operations for managed artifact directories."""

import logging
import shutil
import time
from pathlib import Path
from typing import Dict, Iterator, Optional

from app.config import Settings
from app.errors import ErrorContext, ValidationError

logger = logging.getLogger(__name__)


class FileService:
    """Resolves and deletes artifacts inside the managed directories."""

    def __init__(self, settings: Settings):
        self.uploads_dir = Path(settings.UPLOADS_DIR)
        self.clips_dir = Path(settings.CLIPS_DIR)
        self.thumbnails_dir = Path(settings.THUMBNAILS_DIR)
        self.temp_dir = Path(settings.TEMP_DIR)
        self.backup_dir = Path(settings.BACKUP_DIR)
        self.logs_dir = Path(settings.LOGS_DIR)

    def _is_safe_path(self, path: Path, root: Path) -> bool:
        """
        Check if path is within root (security check).

        Args:
            path: Path to check
            root: Directory the path must stay inside

        Returns:
            True if safe, False otherwise
        """
        try:
            return path.resolve().is_relative_to(root.resolve())
        except (ValueError, RuntimeError):
            return False

    def _resolve(self, root: Path, name: str) -> Path:
        path = root / name
        if not self._is_safe_path(path, root):
            raise ValidationError(
                f"Invalid path outside managed directory: {name}",
                context=ErrorContext(path=name, operation="resolve"),
            )
        return path

    def upload_path(self, name: str) -> Path:
        return self._resolve(self.uploads_dir, name)

    def clip_path(self, filename: str) -> Path:
        return self._resolve(self.clips_dir, filename)

    def thumbnail_path(self, filename: str) -> Path:
        return self._resolve(self.thumbnails_dir, filename)

    def subtitle_sidecar(self, upload_name: str) -> Optional[Path]:
        """Subtitle file uploaded next to the source video, if any."""
        candidate = self.upload_path(upload_name).with_suffix(".srt")
        return candidate if candidate.is_file() else None

    def safe_delete_file(self, path: Path) -> bool:
        """
        Delete a file.

        Returns:
            True if deleted, False if it did not exist

        Raises:
            OSError: for any failure other than the file being absent
        """
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug(f"Deleted file: {path}")
        return True

    def delete_artifacts(self, *paths: Optional[Path]) -> int:
        """Best-effort delete; missing files are ignored, other errors logged."""
        deleted = 0
        for path in paths:
            if path is None:
                continue
            try:
                if self.safe_delete_file(path):
                    deleted += 1
            except OSError as e:
                logger.error(f"Error deleting file {path}: {e}")
        return deleted

    def delete_clip_artifacts(self, filename: str, thumbnail: Optional[str]) -> int:
        return self.delete_artifacts(
            self.clip_path(filename),
            self.thumbnail_path(thumbnail) if thumbnail else None,
        )

    def delete_entry(self, path: Path):
        """Delete a file or a whole directory tree."""
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            self.safe_delete_file(path)

    @staticmethod
    def age_seconds(path: Path, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - path.stat().st_mtime

    @staticmethod
    def iter_entries(directory: Path) -> Iterator[Path]:
        if not directory.exists():
            return iter(())
        return iter(sorted(directory.iterdir()))

    def directory_size(self, directory: Path) -> int:
        """Total size in bytes of all files below ``directory``."""
        total = 0
        if not directory.exists():
            return 0
        for item in directory.rglob("*"):
            try:
                if item.is_file():
                    total += item.stat().st_size
            except OSError:
                continue
        return total

    def get_storage_stats(self) -> Dict[str, int]:
        stats = {
            "uploads": self.directory_size(self.uploads_dir),
            "clips": self.directory_size(self.clips_dir),
            "thumbnails": self.directory_size(self.thumbnails_dir),
            "temp": self.directory_size(self.temp_dir),
            "backups": self.directory_size(self.backup_dir),
            "logs": self.directory_size(self.logs_dir),
        }
        stats["total"] = sum(stats.values())
        return stats
