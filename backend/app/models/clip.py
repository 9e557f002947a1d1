"""Clip database model."""
import json
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base

CLIP_RETENTION = timedelta(days=30)


class Clip(Base):
    """One produced segment of a job."""

    __tablename__ = "clips"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("jobs.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    thumbnail: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    duration: Mapped[float] = mapped_column(Float, nullable=False)
    size: Mapped[int] = mapped_column(Integer, default=0)
    clip_metadata: Mapped[str] = mapped_column("metadata", Text, default="{}")

    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_clips_expiry", "is_archived", "expires_at"),
    )

    @classmethod
    def expiry_for(cls, created_at: datetime) -> datetime:
        return created_at + CLIP_RETENTION

    @property
    def metadata_dict(self) -> Dict[str, Any]:
        return json.loads(self.clip_metadata) if self.clip_metadata else {}

    @property
    def thumbnail_url(self) -> Optional[str]:
        return f"/api/clips/{self.id}/thumbnail" if self.thumbnail else None
