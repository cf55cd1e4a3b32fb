"""Append-only log of dispatch attempt outcomes."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.orm import Session

from publisher.db.models import PublishEvent
from publisher.state import PublishEventStatus, as_utc, utc_now

RAW_RESPONSE_MAX_CHARS = 4000


class PublishEventLog:
    """Service for writing to and reading the publish_events table.

    Rows are never updated or deleted here; they only go away through the
    ``ON DELETE CASCADE`` of a hard-deleted schedule.
    """

    @staticmethod
    def create(
        session: Session,
        *,
        schedule_id: int,
        attempt_index: int,
        status: str,
        timestamp: Optional[datetime] = None,
        external_post_id: Optional[str] = None,
        external_url: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        raw_response: Optional[str] = None,
    ) -> PublishEvent:
        """Append an event. Flushes, the caller commits with the schedule update."""
        if status not in PublishEventStatus.ALL:
            raise ValueError(f"Unknown publish event status: {status}")
        if attempt_index < 1:
            raise ValueError("attempt_index is 1-based")

        timestamp = as_utc(timestamp) or utc_now()
        is_success = status == PublishEventStatus.SUCCESS

        event = PublishEvent(
            schedule_id=schedule_id,
            attempt_index=attempt_index,
            status=status,
            timestamp=timestamp,
            external_post_id=external_post_id if is_success else None,
            external_url=external_url if is_success else None,
            error_code=None if is_success else error_code,
            error_message=None if is_success else error_message,
            raw_response=None if is_success or raw_response is None else raw_response[:RAW_RESPONSE_MAX_CHARS],
            created_at=timestamp,
            updated_at=timestamp,
        )
        session.add(event)
        session.flush()
        return event

    @staticmethod
    def find_by_id(session: Session, event_id: int) -> Optional[PublishEvent]:
        return session.get(PublishEvent, event_id)

    @staticmethod
    def list_by_schedule(session: Session, schedule_id: int) -> List[PublishEvent]:
        query = (
            select(PublishEvent)
            .where(PublishEvent.schedule_id == schedule_id)
            .order_by(PublishEvent.attempt_index.asc())
        )
        return list(session.execute(query).scalars().all())

    @staticmethod
    def get_latest_by_schedule(session: Session, schedule_id: int) -> Optional[PublishEvent]:
        query = (
            select(PublishEvent)
            .where(PublishEvent.schedule_id == schedule_id)
            .order_by(desc(PublishEvent.attempt_index))
            .limit(1)
        )
        return session.execute(query).scalar_one_or_none()

    @staticmethod
    def _apply_filters(query, filters: Dict[str, Any]):
        if filters.get("schedule_id") is not None:
            query = query.where(PublishEvent.schedule_id == filters["schedule_id"])
        if filters.get("status"):
            query = query.where(PublishEvent.status == filters["status"])
        if filters.get("timestamp_from") is not None:
            query = query.where(PublishEvent.timestamp >= as_utc(filters["timestamp_from"]))
        if filters.get("timestamp_to") is not None:
            query = query.where(PublishEvent.timestamp <= as_utc(filters["timestamp_to"]))
        return query

    @staticmethod
    def list(
        session: Session,
        filters: Optional[Dict[str, Any]] = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> List[PublishEvent]:
        """Events matching the filters, newest first."""
        query = PublishEventLog._apply_filters(select(PublishEvent), filters or {})
        query = query.order_by(desc(PublishEvent.timestamp), desc(PublishEvent.id)).limit(limit).offset(offset)
        return list(session.execute(query).scalars().all())

    @staticmethod
    def count(session: Session, filters: Optional[Dict[str, Any]] = None) -> int:
        query = PublishEventLog._apply_filters(select(func.count(PublishEvent.id)), filters or {})
        return int(session.execute(query).scalar_one())
