"""Schedule store: persistence, state writes and row locking for schedules."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from publisher.db.models import Schedule
from publisher.state import ScheduleStatus, as_utc, can_transition, is_final, utc_now


def _touch(schedule: Schedule, now: datetime) -> None:
    # Flagged before assigning so an unchanged value still lands in the UPDATE;
    # otherwise onupdate=func.now() replaces the injected clock
    flag_modified(schedule, "updated_at")
    schedule.updated_at = now


class ScheduleStore:
    """Data access for the ``schedules`` table.

    Methods flush but never commit: the caller owns the transaction, which is
    what lets a row lock, a status re-check and the write that follows share
    one unit of work.
    """

    UPDATABLE_FIELDS = (
        "run_at",
        "timezone",
        "status",
        "attempt_count",
        "last_attempt_at",
        "error_code",
        "error_message",
    )

    @staticmethod
    def create(
        session: Session,
        *,
        post_variant_id: int,
        channel_connection_id: int,
        run_at: datetime,
        timezone: str,
        now: Optional[datetime] = None,
    ) -> Schedule:
        """Insert a new pending schedule."""
        now = now or utc_now()
        schedule = Schedule(
            post_variant_id=post_variant_id,
            channel_connection_id=channel_connection_id,
            run_at=as_utc(run_at),
            timezone=timezone,
            status=ScheduleStatus.PENDING,
            attempt_count=0,
            is_deleted=False,
            created_at=now,
            updated_at=now,
        )
        session.add(schedule)
        session.flush()
        return schedule

    @staticmethod
    def find_by_id(session: Session, schedule_id: int, *, include_deleted: bool = False) -> Optional[Schedule]:
        query = select(Schedule).where(Schedule.id == schedule_id)
        if not include_deleted:
            query = query.where(Schedule.is_deleted.is_(False))
        return session.execute(query).scalar_one_or_none()

    @staticmethod
    def find_by_id_for_update(
        session: Session,
        schedule_id: int,
        *,
        skip_locked: bool = True,
        include_deleted: bool = False,
    ) -> Optional[Schedule]:
        """Load a schedule under an exclusive row lock.

        Must run inside a transaction. With ``skip_locked`` a row already
        locked by another worker yields ``None`` instead of blocking.
        ``include_deleted`` is for closing an attempt that started before
        the schedule was tombstoned.
        """
        query = select(Schedule).where(Schedule.id == schedule_id)
        if not include_deleted:
            query = query.where(Schedule.is_deleted.is_(False))
        return session.execute(
            query.with_for_update(skip_locked=skip_locked).execution_options(populate_existing=True)
        ).scalar_one_or_none()

    @staticmethod
    def find_due_schedules(session: Session, now: datetime, limit: int = 100) -> List[Schedule]:
        """Pending schedules whose ``run_at`` has passed, oldest first. Takes no locks."""
        query = (
            select(Schedule)
            .where(
                Schedule.status == ScheduleStatus.PENDING,
                Schedule.run_at <= as_utc(now),
                Schedule.is_deleted.is_(False),
            )
            .order_by(Schedule.run_at.asc(), Schedule.id.asc())
            .limit(limit)
        )
        return list(session.execute(query).scalars().all())

    @staticmethod
    def find_stuck(session: Session, now: datetime, timeout: timedelta, limit: int = 100) -> List[Schedule]:
        """Schedules left in ``processing`` or ``queued`` for longer than ``timeout``.

        Tombstoned rows still count while ``processing``: their open attempt
        has to be closed in the event log.
        """
        cutoff = as_utc(now) - timeout
        query = (
            select(Schedule)
            .where(
                or_(
                    and_(
                        Schedule.status == ScheduleStatus.PROCESSING,
                        Schedule.last_attempt_at <= cutoff,
                    ),
                    and_(
                        Schedule.status == ScheduleStatus.QUEUED,
                        Schedule.updated_at <= cutoff,
                        Schedule.is_deleted.is_(False),
                    ),
                ),
            )
            .order_by(Schedule.id.asc())
            .limit(limit)
        )
        return list(session.execute(query).scalars().all())

    @staticmethod
    def _apply_filters(query, filters: Dict[str, Any]):
        query = query.where(Schedule.is_deleted.is_(False))

        if filters.get("post_variant_id") is not None:
            query = query.where(Schedule.post_variant_id == filters["post_variant_id"])
        if filters.get("post_variant_ids") is not None:
            query = query.where(Schedule.post_variant_id.in_(list(filters["post_variant_ids"])))
        if filters.get("channel_connection_id") is not None:
            query = query.where(Schedule.channel_connection_id == filters["channel_connection_id"])
        if filters.get("status"):
            query = query.where(Schedule.status == filters["status"])
        if filters.get("run_at_from") is not None:
            query = query.where(Schedule.run_at >= as_utc(filters["run_at_from"]))
        if filters.get("run_at_to") is not None:
            query = query.where(Schedule.run_at <= as_utc(filters["run_at_to"]))
        return query

    @staticmethod
    def list(
        session: Session,
        filters: Optional[Dict[str, Any]] = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Schedule]:
        query = ScheduleStore._apply_filters(select(Schedule), filters or {})
        query = query.order_by(Schedule.run_at.asc(), Schedule.id.asc()).limit(limit).offset(offset)
        return list(session.execute(query).scalars().all())

    @staticmethod
    def count(session: Session, filters: Optional[Dict[str, Any]] = None) -> int:
        query = ScheduleStore._apply_filters(select(func.count(Schedule.id)), filters or {})
        return int(session.execute(query).scalar_one())

    @staticmethod
    def update(
        session: Session,
        schedule_id: int,
        fields: Dict[str, Any],
        *,
        now: Optional[datetime] = None,
        include_deleted: bool = False,
    ) -> Optional[Schedule]:
        """Apply whitelisted field changes. Returns None if the schedule is gone.

        Raises ValueError for a status change the state machine does not
        allow, for any write to a terminal schedule, and for a decreasing
        ``attempt_count``.
        """
        changes = {k: v for k, v in fields.items() if k in ScheduleStore.UPDATABLE_FIELDS}
        if not changes:
            raise ValueError("No valid fields to update")

        schedule = ScheduleStore.find_by_id(session, schedule_id, include_deleted=include_deleted)
        if not schedule:
            return None

        if is_final(schedule.status):
            raise ValueError(f"Schedule {schedule_id} is {schedule.status} and cannot change")
        new_status = changes.get("status", schedule.status)
        if new_status != schedule.status and not can_transition(schedule.status, new_status):
            raise ValueError(f"Invalid status transition {schedule.status} -> {new_status}")
        if changes.get("attempt_count") is not None and changes["attempt_count"] < schedule.attempt_count:
            raise ValueError("attempt_count cannot decrease")

        for key, value in changes.items():
            if key in ("run_at", "last_attempt_at"):
                value = as_utc(value)
            setattr(schedule, key, value)

        _touch(schedule, now or utc_now())
        session.flush()
        return schedule

    @staticmethod
    def update_status(
        session: Session,
        schedule_id: int,
        status: str,
        error_details: Optional[Dict[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
        include_deleted: bool = False,
    ) -> Optional[Schedule]:
        """Set the status plus any of ``error_code``/``error_message``/``last_attempt_at``."""
        fields: Dict[str, Any] = {"status": status}
        for key in ("error_code", "error_message", "last_attempt_at"):
            if error_details and error_details.get(key) is not None:
                fields[key] = error_details[key]
        return ScheduleStore.update(session, schedule_id, fields, now=now, include_deleted=include_deleted)

    @staticmethod
    def increment_attempt(
        session: Session,
        schedule_id: int,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Schedule]:
        """Bump ``attempt_count`` and stamp ``last_attempt_at``."""
        schedule = ScheduleStore.find_by_id(session, schedule_id)
        if not schedule:
            return None

        now = now or utc_now()
        schedule.attempt_count += 1
        schedule.last_attempt_at = now
        _touch(schedule, now)
        session.flush()
        return schedule

    @staticmethod
    def delete(session: Session, schedule_id: int, *, now: Optional[datetime] = None) -> bool:
        """Soft delete. Returns False when the schedule is missing or already deleted."""
        schedule = ScheduleStore.find_by_id(session, schedule_id)
        if not schedule:
            return False

        now = now or utc_now()
        schedule.is_deleted = True
        schedule.deleted_at = now
        _touch(schedule, now)
        session.flush()
        return True

    @staticmethod
    def get_post_variant_id(session: Session, schedule_id: int) -> Optional[int]:
        return session.execute(
            select(Schedule.post_variant_id).where(
                Schedule.id == schedule_id,
                Schedule.is_deleted.is_(False),
            )
        ).scalar_one_or_none()
