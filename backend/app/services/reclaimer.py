"""Storage reclamation, datastore upkeep, health sampling and backups."""

import asyncio
import json
import logging
import os
import shutil
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy import delete, func, select, text, update

from app.config import Settings
from app.database import Database, utcnow
from app.errors import Severity
from app.models.activity import ActivityLog
from app.models.clip import Clip
from app.models.error_record import ErrorRecord
from app.models.job import Job, JobStatus
from app.services.error_handler import ErrorHandler
from app.services.file_service import FileService
from app.services.scheduler import PeriodicScheduler

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "backup_"
BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"
ARCHIVE_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

SWEEP_NAMES = (
    "expired_clips",
    "temp_files",
    "orphan_files",
    "log_archive",
    "datastore_maintenance",
    "health_sample",
    "backup",
)


@dataclass
class SweepResult:
    name: str
    scanned: int = 0
    removed: int = 0
    archived: int = 0
    skipped: int = 0
    errors: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class HealthSample:
    timestamp: str
    disk_usage_percent: float
    memory_usage_percent: Optional[float]
    active_jobs: int
    active_clips: int
    errors_last_hour: int
    warnings: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "degraded" if self.warnings else "healthy"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status
        return data


def _epoch(now: datetime) -> float:
    """Seconds since the epoch for a naive UTC datetime."""
    return now.replace(tzinfo=timezone.utc).timestamp()


def memory_usage_percent() -> Optional[float]:
    """System memory in use, or None where sysconf does not expose it."""
    try:
        total = os.sysconf("SC_PHYS_PAGES")
        available = os.sysconf("SC_AVPHYS_PAGES")
    except (ValueError, OSError, AttributeError):
        return None
    if total <= 0:
        return None
    return round((total - available) / total * 100, 1)


def _sqlite_backup(source: Path, target: Path):
    src = sqlite3.connect(str(source))
    try:
        dst = sqlite3.connect(str(target))
        try:
            src.backup(dst)
        finally:
            dst.close()
    finally:
        src.close()


class ResourceReclaimer:
    """Each sweep is idempotent and safe to run at any time."""

    def __init__(
        self,
        database: Database,
        settings: Settings,
        files: FileService,
        error_handler: Optional[ErrorHandler] = None,
    ):
        self.database = database
        self.settings = settings
        self.files = files
        self.error_handler = error_handler
        self.last_sample: Optional[HealthSample] = None
        self.sweeps: Dict[str, Callable[..., Awaitable[SweepResult]]] = {
            "expired_clips": self.sweep_expired_clips,
            "temp_files": self.sweep_temp_files,
            "orphan_files": self.sweep_orphan_files,
            "log_archive": self.archive_logs,
            "datastore_maintenance": self.maintain_datastore,
            "health_sample": self.sample_health,
            "backup": self.backup,
        }

    def intervals(self) -> Dict[str, int]:
        s = self.settings
        return {
            "expired_clips": s.EXPIRED_CLIPS_INTERVAL,
            "temp_files": s.TEMP_FILES_INTERVAL,
            "orphan_files": s.ORPHAN_FILES_INTERVAL,
            "log_archive": s.LOG_ARCHIVE_INTERVAL,
            "datastore_maintenance": s.DATASTORE_MAINTENANCE_INTERVAL,
            "health_sample": s.HEALTH_SAMPLE_INTERVAL,
            "backup": s.BACKUP_INTERVAL,
        }

    def register(self, scheduler: PeriodicScheduler):
        """Add every sweep to ``scheduler`` on its configured cadence."""
        for name, interval in self.intervals().items():
            scheduler.add(name, interval, self.sweeps[name])

    async def run(self, name: str) -> SweepResult:
        return await self.sweeps[name]()

    async def sweep_expired_clips(self, now: Optional[datetime] = None) -> SweepResult:
        """Archive clips past their expiry and delete their files."""
        now = now or utcnow()
        result = SweepResult("expired_clips")

        async with self.database.session() as db:
            expired = await db.execute(
                select(Clip.id, Clip.filename, Clip.thumbnail)
                .where(Clip.is_archived.is_(False))
                .where(Clip.expires_at < now)
            )
            clips = expired.all()
        result.scanned = len(clips)
        if not clips:
            return result

        result.removed = await asyncio.to_thread(
            lambda: sum(self.files.delete_clip_artifacts(c.filename, c.thumbnail) for c in clips)
        )

        async with self.database.session() as db:
            archived = await db.execute(
                update(Clip)
                .where(Clip.id.in_([clip.id for clip in clips]))
                .where(Clip.is_archived.is_(False))
                .values(is_archived=True)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        result.archived = archived.rowcount

        logger.info(f"Archived {result.archived} expired clips, removed {result.removed} files")
        return result

    def _remove_stale_temp_entries(self, now_ts: float, result: SweepResult):
        for entry in self.files.iter_entries(self.files.temp_dir):
            result.scanned += 1
            try:
                if self.files.age_seconds(entry, now_ts) <= self.settings.TEMP_FILE_MAX_AGE:
                    continue
                self.files.delete_entry(entry)
                result.removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                result.errors += 1
                logger.error(f"Error cleaning temp entry {entry}: {e}")

    async def sweep_temp_files(self, now: Optional[datetime] = None) -> SweepResult:
        """Remove temp entries older than ``TEMP_FILE_MAX_AGE``."""
        result = SweepResult("temp_files")
        await asyncio.to_thread(self._remove_stale_temp_entries, _epoch(now or utcnow()), result)

        if result.removed:
            logger.info(f"Removed {result.removed} stale temp entries")
        return result

    async def _referenced_names(self) -> Dict[Path, Set[str]]:
        async with self.database.session() as db:
            clip_rows = (await db.execute(select(Clip.filename, Clip.thumbnail))).all()
            uploads = (await db.execute(select(Job.input_file))).scalars().all()

        upload_names: Set[str] = set()
        for name in uploads:
            upload_names.add(name)
            upload_names.add(str(Path(name).with_suffix(".srt")))

        return {
            self.files.clips_dir: {row.filename for row in clip_rows},
            self.files.thumbnails_dir: {row.thumbnail for row in clip_rows if row.thumbnail},
            self.files.uploads_dir: upload_names,
        }

    def _remove_orphans(
        self, directory: Path, referenced: Set[str], now_ts: float, result: SweepResult
    ) -> int:
        removed = 0
        for entry in self.files.iter_entries(directory):
            if not entry.is_file():
                continue
            result.scanned += 1
            if entry.name in referenced:
                continue
            try:
                # Files still being written have no row yet
                if self.files.age_seconds(entry, now_ts) < self.settings.ORPHAN_GRACE_SECONDS:
                    result.skipped += 1
                    continue
                if self.files.safe_delete_file(entry):
                    removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                result.errors += 1
                logger.error(f"Error removing orphan file {entry}: {e}")
        return removed

    async def sweep_orphan_files(self, now: Optional[datetime] = None) -> SweepResult:
        """Delete files no clip or job refers to, once past the grace period."""
        now_ts = _epoch(now or utcnow())
        result = SweepResult("orphan_files")
        removed_by_dir: Dict[str, int] = {}

        for directory, referenced in (await self._referenced_names()).items():
            removed = await asyncio.to_thread(
                self._remove_orphans, directory, referenced, now_ts, result
            )
            removed_by_dir[directory.name] = removed
            result.removed += removed

        result.details = removed_by_dir
        if result.removed:
            logger.info(f"Removed {result.removed} orphan files: {removed_by_dir}")
        return result

    def _move_old_logs(self, now_ts: float, prefix: str, result: SweepResult):
        max_age = self.settings.LOG_RETENTION_DAYS * 86400
        archive_dir = self.files.logs_dir / "archive"
        for entry in self.files.iter_entries(self.files.logs_dir):
            if not entry.is_file():
                continue
            result.scanned += 1
            try:
                if self.files.age_seconds(entry, now_ts) <= max_age:
                    continue
                archive_dir.mkdir(parents=True, exist_ok=True)
                shutil.move(str(entry), str(archive_dir / f"{prefix}_{entry.name}"))
                result.archived += 1
            except OSError as e:
                result.errors += 1
                logger.error(f"Error archiving log file {entry}: {e}")

    async def archive_logs(self, now: Optional[datetime] = None) -> SweepResult:
        """Move log files older than the retention window into ``logs/archive``."""
        now = now or utcnow()
        result = SweepResult("log_archive")
        await asyncio.to_thread(
            self._move_old_logs, _epoch(now), now.strftime(ARCHIVE_TIMESTAMP_FORMAT), result
        )

        if result.archived:
            logger.info(f"Archived {result.archived} log files")
        return result

    async def maintain_datastore(self, now: Optional[datetime] = None) -> SweepResult:
        """Purge old activity and non-critical error rows, then VACUUM."""
        now = now or utcnow()
        result = SweepResult("datastore_maintenance")
        activity_cutoff = now - timedelta(days=self.settings.ACTIVITY_RETENTION_DAYS)
        error_cutoff = now - timedelta(days=self.settings.ERROR_RETENTION_DAYS)

        async with self.database.session() as db:
            activity = await db.execute(delete(ActivityLog).where(ActivityLog.created_at < activity_cutoff))
            errors = await db.execute(
                delete(ErrorRecord)
                .where(ErrorRecord.created_at < error_cutoff)
                .where(ErrorRecord.severity != Severity.CRITICAL.value)
            )
            await db.commit()

        result.details = {"activity": activity.rowcount, "errors": errors.rowcount}
        result.removed = activity.rowcount + errors.rowcount

        if self.database.is_sqlite:
            # VACUUM cannot run inside a transaction
            async with self.database.engine.connect() as conn:
                conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
                await conn.execute(text("VACUUM"))
            result.details["vacuum"] = True

        logger.info(f"Datastore maintenance removed {result.details}")
        return result

    async def sample_health(self, now: Optional[datetime] = None) -> SweepResult:
        """Record disk, memory, workload and error-rate figures."""
        now = now or utcnow()
        s = self.settings

        usage = shutil.disk_usage(s.DATA_DIR)
        disk_percent = round(usage.used / usage.total * 100, 1) if usage.total else 0.0
        memory_percent = memory_usage_percent()

        async with self.database.session() as db:
            active_jobs = (
                await db.execute(
                    select(func.count()).select_from(Job).where(Job.status == JobStatus.PROCESSING.value)
                )
            ).scalar() or 0
            active_clips = (
                await db.execute(select(func.count()).select_from(Clip).where(Clip.is_archived.is_(False)))
            ).scalar() or 0

        errors_last_hour = 0
        if self.error_handler:
            errors_last_hour = await self.error_handler.count_recent(now - timedelta(hours=1))

        warnings = []
        if disk_percent > s.DISK_USAGE_WARN_PERCENT:
            warnings.append(f"Disk usage high: {disk_percent}%")
        if memory_percent is not None and memory_percent > s.MEMORY_USAGE_WARN_PERCENT:
            warnings.append(f"Memory usage high: {memory_percent}%")
        if errors_last_hour > s.ERROR_RATE_WARN_PER_HOUR:
            warnings.append(f"Error rate high: {errors_last_hour} errors in the last hour")

        sample = HealthSample(
            timestamp=now.replace(tzinfo=timezone.utc).isoformat(),
            disk_usage_percent=disk_percent,
            memory_usage_percent=memory_percent,
            active_jobs=active_jobs,
            active_clips=active_clips,
            errors_last_hour=errors_last_hour,
            warnings=warnings,
        )
        self.last_sample = sample
        for warning in warnings:
            logger.warning(warning)

        return SweepResult("health_sample", scanned=1, details=sample.to_dict())

    def _copy_config_files(self, target: Path) -> List[Dict[str, Any]]:
        copied = []
        for config_file in self.settings.BACKUP_CONFIG_FILES:
            source = Path(config_file)
            if not source.is_file():
                logger.debug(f"Backup skipped missing config file: {source}")
                continue
            shutil.copy2(source, target / source.name)
            copied.append({"name": source.name, "kind": "config", "size": source.stat().st_size})
        return copied

    def _prune_backups(self, keep: Path, cutoff: datetime, result: SweepResult):
        for entry in self.files.iter_entries(self.files.backup_dir):
            if not entry.is_dir() or not entry.name.startswith(BACKUP_PREFIX) or entry == keep:
                continue
            try:
                created = datetime.strptime(entry.name[len(BACKUP_PREFIX):], BACKUP_TIMESTAMP_FORMAT)
            except ValueError:
                continue
            if created >= cutoff:
                continue
            try:
                shutil.rmtree(entry)
                result.removed += 1
            except OSError as e:
                result.errors += 1
                logger.error(f"Error pruning backup {entry}: {e}")

    async def backup(self, now: Optional[datetime] = None) -> SweepResult:
        """Copy the database and config files, then prune old backups."""
        now = now or utcnow()
        result = SweepResult("backup")
        target = self.files.backup_dir / f"{BACKUP_PREFIX}{now.strftime(BACKUP_TIMESTAMP_FORMAT)}"
        target.mkdir(parents=True, exist_ok=True)

        copied: List[Dict[str, Any]] = []
        db_path = self.database.sqlite_path
        if db_path is not None and db_path.exists():
            db_target = target / db_path.name
            await asyncio.to_thread(_sqlite_backup, db_path, db_target)
            copied.append({"name": db_path.name, "kind": "database", "size": db_target.stat().st_size})

        copied += await asyncio.to_thread(self._copy_config_files, target)

        manifest = {
            "created_at": now.replace(tzinfo=timezone.utc).isoformat(),
            "files": copied,
        }
        (target / "manifest.json").write_text(json.dumps(manifest, indent=2))
        result.scanned = len(copied)
        result.details = {"path": str(target), "files": [f["name"] for f in copied]}

        cutoff = now - timedelta(days=self.settings.BACKUP_RETENTION_DAYS)
        await asyncio.to_thread(self._prune_backups, target, cutoff, result)

        logger.info(f"Backup written to {target} ({len(copied)} files, pruned {result.removed})")
        return result
