"""User-facing schedule operations: create, read, list, reschedule, cancel, delete."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger
from sqlalchemy.orm import Session

from publisher.config import Settings, load_settings
from publisher.db.base import SessionLocal
from publisher.db.models import Schedule
from publisher.errors import ScheduleError
from publisher.services.collaborators import EventSink, PostRepository, Principal, Variant, VariantAccess
from publisher.services.domain_events import DomainEventService
from publisher.services.publish_events import PublishEventLog
from publisher.services.schedules import ScheduleStore
from publisher.state import ScheduleStatus, as_utc, utc_now

DEFAULT_TIMEZONE = "UTC"
CALENDAR_LIMIT = 1000
MAX_PAGE_SIZE = 200
USER_EDITABLE_FIELDS = ("run_at", "timezone")


class ScheduleService:
    """Principal-scoped operations over schedules.

    Ownership is never stored on the schedule itself: it is checked by
    resolving the schedule's variant through ``variant_access`` for the
    acting principal.

    Domain events go to the outbox table in the same transaction as the
    change unless an explicit ``event_sink`` is given, in which case they
    are handed to it after the commit.
    """

    def __init__(
        self,
        variant_access: VariantAccess,
        post_repository: PostRepository,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        event_sink: Optional[EventSink] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.variant_access = variant_access
        self.post_repository = post_repository
        self.session_factory = session_factory
        self.event_sink = event_sink
        self.settings = settings or load_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_schedule(self, principal: Principal, schedule_data: Dict[str, Any]) -> Schedule:
        logger.info("[SCHEDULE] Creating schedule for principal {}", principal.id)

        required = ("post_variant_id", "channel_connection_id", "run_at")
        if any(not schedule_data.get(field) for field in required):
            raise ScheduleError(
                "Required fields missing: post_variant_id, channel_connection_id, run_at",
                ScheduleError.REQUIRED_FIELDS_MISSING,
            )

        if schedule_data.get("timezone"):
            timezone, timezone_source = schedule_data["timezone"], "explicit"
        elif principal.timezone:
            timezone, timezone_source = principal.timezone, "principal_default"
        else:
            timezone, timezone_source = DEFAULT_TIMEZONE, "system_default"
        zone = self._resolve_zone(timezone)

        variant = self._get_variant(principal, schedule_data["post_variant_id"])
        if not variant:
            raise ScheduleError.variant_not_found()

        now = self.clock()
        run_at = self._parse_run_at(schedule_data["run_at"], zone)
        self._validate_run_at(run_at, now)

        with self.session_factory() as session:
            schedule = ScheduleStore.create(
                session,
                post_variant_id=schedule_data["post_variant_id"],
                channel_connection_id=schedule_data["channel_connection_id"],
                run_at=run_at,
                timezone=timezone,
                now=now,
            )
            event = self._stage_event(
                session,
                principal,
                DomainEventService.EVENT_SCHEDULE_CREATED,
                schedule.id,
                {
                    "post_variant_id": schedule.post_variant_id,
                    "channel_connection_id": schedule.channel_connection_id,
                    "run_at": as_utc(schedule.run_at).isoformat(),
                    "timezone": schedule.timezone,
                    "timezone_source": timezone_source,
                },
            )
            session.commit()
        self._dispatch_event(event)

        post = self.post_repository.find_by_id(variant.post_id)
        if post and post.status == "draft":
            self.post_repository.update(variant.post_id, {"status": "scheduled"})
            logger.info("[SCHEDULE] Post {} promoted to scheduled", variant.post_id)

        logger.info("[SCHEDULE] Schedule {} created for {} ({})", schedule.id, schedule.run_at, timezone)
        return schedule

    def update_schedule(self, principal: Principal, schedule_id: int, updates: Dict[str, Any]) -> Schedule:
        """Reschedule a pending or failed schedule."""
        logger.info("[SCHEDULE] Updating schedule {} for principal {}", schedule_id, principal.id)

        with self.session_factory() as session:
            schedule = self._load_owned(session, principal, schedule_id)

            # Re-read under the lock so a concurrent dispatcher claim is seen
            schedule = ScheduleStore.find_by_id_for_update(session, schedule_id, skip_locked=False)
            if not schedule:
                raise ScheduleError.not_found()
            if not schedule.can_reschedule():
                raise ScheduleError(
                    "Schedule cannot be modified", ScheduleError.CANNOT_BE_MODIFIED, status_code=409
                )

            changes = {k: v for k, v in updates.items() if k in USER_EDITABLE_FIELDS and v}
            if not changes:
                raise ScheduleError(
                    "No updatable fields provided (run_at, timezone)", ScheduleError.NO_UPDATES
                )

            previous_status = schedule.status
            zone = self._resolve_zone(changes.get("timezone") or schedule.timezone)
            if "run_at" in changes:
                now = self.clock()
                changes["run_at"] = self._parse_run_at(changes["run_at"], zone)
                self._validate_run_at(changes["run_at"], now)

                if schedule.status == ScheduleStatus.FAILED:
                    changes.update(status=ScheduleStatus.PENDING, error_code=None, error_message=None)

            updated = ScheduleStore.update(session, schedule_id, changes, now=self.clock())
            event = self._stage_event(
                session,
                principal,
                DomainEventService.EVENT_SCHEDULE_UPDATED,
                schedule_id,
                {
                    "updated_fields": sorted(k for k in updates if k in USER_EDITABLE_FIELDS),
                    "previous_status": previous_status,
                },
            )
            session.commit()
        self._dispatch_event(event)

        logger.info("[SCHEDULE] Schedule {} updated", schedule_id)
        return updated

    def cancel_schedule(self, principal: Principal, schedule_id: int) -> Schedule:
        logger.info("[SCHEDULE] Cancelling schedule {} for principal {}", schedule_id, principal.id)

        with self.session_factory() as session:
            self._load_owned(session, principal, schedule_id)

            schedule = ScheduleStore.find_by_id_for_update(session, schedule_id, skip_locked=False)
            if not schedule:
                raise ScheduleError.not_found()
            if not schedule.can_cancel():
                raise ScheduleError(
                    "Schedule cannot be cancelled", ScheduleError.CANNOT_BE_CANCELLED, status_code=409
                )

            previous_status = schedule.status
            cancelled = ScheduleStore.update_status(
                session, schedule_id, ScheduleStatus.CANCELLED, now=self.clock()
            )
            event = self._stage_event(
                session,
                principal,
                DomainEventService.EVENT_SCHEDULE_CANCELLED,
                schedule_id,
                {"previous_status": previous_status},
            )
            session.commit()
        self._dispatch_event(event)

        logger.info("[SCHEDULE] Schedule {} cancelled (was {})", schedule_id, previous_status)
        return cancelled

    def delete_schedule(self, principal: Principal, schedule_id: int) -> bool:
        """Soft delete regardless of status."""
        logger.info("[SCHEDULE] Deleting schedule {} for principal {}", schedule_id, principal.id)

        with self.session_factory() as session:
            schedule = self._load_owned(session, principal, schedule_id)
            status = schedule.status

            deleted = ScheduleStore.delete(session, schedule_id, now=self.clock())
            event = self._stage_event(
                session,
                principal,
                DomainEventService.EVENT_SCHEDULE_DELETED,
                schedule_id,
                {"status": status},
            )
            session.commit()
        self._dispatch_event(event)

        logger.info("[SCHEDULE] Schedule {} deleted", schedule_id)
        return deleted

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_schedule(self, principal: Principal, schedule_id: int) -> Dict[str, Any]:
        """Schedule plus its full publish-event history."""
        with self.session_factory() as session:
            schedule = self._load_owned(session, principal, schedule_id)
            publish_events = PublishEventLog.list_by_schedule(session, schedule_id)

        return {"schedule": schedule, "publish_events": publish_events}

    def list_schedules(
        self,
        principal: Principal,
        filters: Optional[Dict[str, Any]] = None,
        pagination: Optional[Dict[str, int]] = None,
    ) -> Tuple[List[Schedule], int]:
        pagination = pagination or {}
        limit = min(max(int(pagination.get("limit") or 50), 1), MAX_PAGE_SIZE)
        offset = max(int(pagination.get("offset") or 0), 0)

        scoped = self._scope_filters(principal, filters)
        with self.session_factory() as session:
            schedules = ScheduleStore.list(session, scoped, limit=limit, offset=offset)
            total = ScheduleStore.count(session, scoped)

        logger.debug("[SCHEDULE] Listed {} of {} schedules for principal {}", len(schedules), total, principal.id)
        return schedules, total

    def list_by_date_range(
        self,
        principal: Principal,
        from_date: Any,
        to_date: Any,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Schedule]:
        """Calendar view: schedules whose run_at falls within [from_date, to_date]."""
        if not from_date or not to_date:
            raise ScheduleError("from_date and to_date are required", ScheduleError.MISSING_DATE_RANGE)

        utc = ZoneInfo("UTC")
        scoped = self._scope_filters(principal, filters)
        scoped["run_at_from"] = self._parse_run_at(from_date, utc)
        scoped["run_at_to"] = self._parse_run_at(to_date, utc)

        with self.session_factory() as session:
            return ScheduleStore.list(session, scoped, limit=CALENDAR_LIMIT)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_variant(self, principal: Principal, variant_id: int) -> Optional[Variant]:
        return self.variant_access.get_variant(principal, variant_id)

    def _load_owned(self, session: Session, principal: Principal, schedule_id: int) -> Schedule:
        """Find the schedule (404) and confirm the principal can reach its variant (403)."""
        schedule = ScheduleStore.find_by_id(session, schedule_id)
        if not schedule:
            raise ScheduleError.not_found()

        try:
            variant = self._get_variant(principal, schedule.post_variant_id)
        except ScheduleError as e:
            if e.error_code != ScheduleError.VARIANT_NOT_FOUND:
                raise
            variant = None

        if not variant:
            logger.warning("[SCHEDULE] Principal {} denied access to schedule {}", principal.id, schedule_id)
            raise ScheduleError.access_denied()
        return schedule

    def _scope_filters(self, principal: Principal, filters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        allowed = ("post_variant_id", "channel_connection_id", "status", "run_at_from", "run_at_to")
        scoped = {k: v for k, v in (filters or {}).items() if k in allowed and v is not None}

        variant_ids = self.variant_access.accessible_variant_ids(principal)
        if variant_ids is not None:
            scoped["post_variant_ids"] = list(variant_ids)
        return scoped

    @staticmethod
    def _resolve_zone(name: str) -> ZoneInfo:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            raise ScheduleError(f"Unknown timezone: {name}", ScheduleError.INVALID_TIMEZONE)

    @staticmethod
    def _parse_run_at(raw: Any, zone: ZoneInfo) -> datetime:
        """Accept a datetime or ISO-8601 string; naive values are local to ``zone``."""
        if isinstance(raw, datetime):
            value = raw
        elif isinstance(raw, str):
            try:
                value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            except ValueError:
                raise ScheduleError(f"Invalid schedule time: {raw}", ScheduleError.INVALID_TIME)
        else:
            raise ScheduleError(f"Invalid schedule time: {raw!r}", ScheduleError.INVALID_TIME)

        if value.tzinfo is None:
            value = value.replace(tzinfo=zone)
        return as_utc(value)

    def _validate_run_at(self, run_at: datetime, now: datetime) -> None:
        if run_at <= as_utc(now):
            raise ScheduleError("Schedule time must be in the future", ScheduleError.TIME_MUST_BE_FUTURE)

        horizon = self.settings.max_schedule_horizon_days
        if run_at > as_utc(now) + timedelta(days=horizon):
            raise ScheduleError(
                f"Schedule time too far in the future ({horizon} days max)", ScheduleError.TIME_TOO_FAR
            )

    def _stage_event(
        self,
        session: Session,
        principal: Principal,
        event_name: str,
        schedule_id: int,
        metadata: Dict[str, Any],
    ) -> Dict[str, Any]:
        event = {
            "event_type": "schedule",
            "event_name": event_name,
            "entity_type": "schedule",
            "entity_id": schedule_id,
            "principal_id": principal.id,
            "metadata": metadata,
        }
        if self.event_sink is None:
            DomainEventService.log_event(session, **event)
        return event

    def _dispatch_event(self, event: Dict[str, Any]) -> None:
        if self.event_sink is not None:
            self.event_sink.record_event(event)
