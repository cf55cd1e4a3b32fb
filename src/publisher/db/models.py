"""ORM models for the scheduling context."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    JSON,
    func
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from publisher.db.base import Base
from publisher import state

# Utility for cross-dialect JSON support (JSONB on Postgres, JSON on SQLite)
JSON_VARIANT = JSON().with_variant(JSONB, "postgresql")


class Schedule(Base):
    """Instruction to publish one post variant via one channel connection at one instant."""

    __tablename__ = "schedules"

    __table_args__ = (
        Index("idx_schedules_status", "status"),
        Index("idx_schedules_run_at", "run_at"),
        Index("idx_schedules_status_run_at", "status", "run_at"),
        Index("idx_schedules_post_variant_id", "post_variant_id"),
        Index("idx_schedules_channel_connection_id", "channel_connection_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Rows owned by the posts/channels contexts
    post_variant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    channel_connection_id: Mapped[int] = mapped_column(Integer, nullable=False)

    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)  # UTC
    timezone: Mapped[str] = mapped_column(String(50), nullable=False)  # display/audit only

    status: Mapped[str] = mapped_column(String(20), default=state.ScheduleStatus.PENDING, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    publish_events: Mapped[List["PublishEvent"]] = relationship(
        back_populates="schedule",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PublishEvent.attempt_index",
    )

    def can_cancel(self) -> bool:
        return state.can_cancel(self.status)

    def can_reschedule(self) -> bool:
        return state.can_reschedule(self.status)

    def is_final(self) -> bool:
        return state.is_final(self.status)

    def is_due(self, now: datetime) -> bool:
        return state.is_due(self.status, self.run_at, now)

    def can_retry(self, max_attempts: int = 5) -> bool:
        return state.can_retry(self.status, self.attempt_count, max_attempts)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "post_variant_id": self.post_variant_id,
            "channel_connection_id": self.channel_connection_id,
            "run_at": _iso(self.run_at),
            "timezone": self.timezone,
            "status": self.status,
            "attempt_count": self.attempt_count,
            "last_attempt_at": _iso(self.last_attempt_at),
            "error_code": self.error_code,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class PublishEvent(Base):
    """Append-only record of one dispatch attempt's outcome."""

    __tablename__ = "publish_events"

    __table_args__ = (
        UniqueConstraint("schedule_id", "attempt_index", name="uq_publish_events_schedule_attempt"),
        Index("idx_publish_events_schedule_id", "schedule_id"),
        Index("idx_publish_events_timestamp", "timestamp"),
        Index("idx_publish_events_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    schedule_id: Mapped[int] = mapped_column(ForeignKey("schedules.id", ondelete="CASCADE"), nullable=False)
    attempt_index: Mapped[int] = mapped_column(Integer, nullable=False)  # 1-based

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    external_post_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    external_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    schedule: Mapped["Schedule"] = relationship(back_populates="publish_events")

    def is_success(self) -> bool:
        return self.status == state.PublishEventStatus.SUCCESS

    def is_failure(self) -> bool:
        return self.status == state.PublishEventStatus.FAILED

    def is_retry(self) -> bool:
        return self.status == state.PublishEventStatus.RETRIED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "schedule_id": self.schedule_id,
            "attempt_index": self.attempt_index,
            "timestamp": _iso(self.timestamp),
            "status": self.status,
            "external_post_id": self.external_post_id,
            "external_url": self.external_url,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


class DomainEvent(Base):
    """Outbox of domain facts emitted by the schedule service."""

    __tablename__ = "domain_events"

    __table_args__ = (
        Index("idx_domain_events_entity", "entity_type", "entity_id"),
        Index("idx_domain_events_name_created", "event_name", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_name: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    principal_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column("metadata", JSON_VARIANT, nullable=True)


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = state.as_utc(value)
    return value.isoformat() if value else None
