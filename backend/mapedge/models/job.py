"""SQLAlchemy model & helpers for export job checkpoints.

One row per in-flight export job.  The row is created on the first step of a
job, rewritten after every persisted chunk and deleted once the document is
published.  ``version`` is SQLAlchemy's ``version_id_col``: an UPDATE or DELETE
only succeeds when the row still carries the version that was read, so two
concurrent steps of the same job cannot both commit.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from mapedge.db.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Lifecycle of an export job."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ExportJobState(Base):
    """Persistent checkpoint of one export run."""

    __tablename__ = "export_job_states"

    job_id: str = Column(String(64), primary_key=True)
    publisher: str = Column(String(64), nullable=False)
    object_key: str = Column(String(255), nullable=False, index=True)
    cursor: Optional[str] = Column(Text, nullable=True)
    chunk_keys: list = Column(JSON, nullable=False, default=list)
    chunk_count: int = Column(Integer, nullable=False, default=0)
    total_features: int = Column(Integer, nullable=False, default=0)
    created_at: datetime = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: datetime = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    version: int = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def status(self) -> JobStatus:
        if self.cursor is None and not self.chunk_count:
            return JobStatus.NOT_STARTED
        return JobStatus.IN_PROGRESS

    def is_expired(self, ttl: timedelta, now: Optional[datetime] = None) -> bool:
        updated = self.updated_at
        # SQLite hands back naive datetimes.
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        return updated < (now or utcnow()) - ttl

    def to_dict(self) -> dict:
        return {
            "jobId": self.job_id,
            "publisher": self.publisher,
            "objectKey": self.object_key,
            "status": self.status.value,
            "cursor": self.cursor,
            "chunkKeys": list(self.chunk_keys or []),
            "chunkCount": self.chunk_count,
            "totalFeatures": self.total_features,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
