"""Job database model and lifecycle transitions."""
import enum
import json
import uuid
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, utcnow


class JobStatus(str, enum.Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.UPLOADED: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

ACTIVE_STATUSES = (JobStatus.UPLOADED.value, JobStatus.PROCESSING.value)


def can_transition(current: str, target: str) -> bool:
    """Return True if ``current -> target`` is a defined lifecycle edge."""
    try:
        return JobStatus(target) in ALLOWED_TRANSITIONS[JobStatus(current)]
    except ValueError:
        return False


def sources_for(target: JobStatus) -> List[str]:
    """Statuses from which ``target`` can be reached."""
    return [
        source.value
        for source, targets in ALLOWED_TRANSITIONS.items()
        if target in targets
    ]


class Job(Base):
    """Clip production job model."""

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Source upload (file name relative to the uploads directory)
    input_file: Mapped[str] = mapped_column(String(500), nullable=False)

    # JSON blobs: produced clips and upload/processing settings
    output_files: Mapped[str] = mapped_column(Text, default="[]")
    settings: Mapped[str] = mapped_column(Text, default="{}")

    # Status tracking
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.UPLOADED.value
    )
    progress: Mapped[int] = mapped_column(Integer, default=0)
    credits_charged: Mapped[int] = mapped_column(Integer, default=0)

    # Error handling
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_jobs_status", "status"),
        Index("idx_jobs_created_at", "created_at"),
    )

    @property
    def settings_dict(self) -> Dict[str, Any]:
        return json.loads(self.settings) if self.settings else {}

    @property
    def output_list(self) -> List[Dict[str, Any]]:
        return json.loads(self.output_files) if self.output_files else []
