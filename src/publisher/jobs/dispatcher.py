"""Job runner that dispatches due schedules to their channel publishers."""
from __future__ import annotations

import argparse
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from publisher.channel_adapters import (
    AdapterRegistry,
    ChannelPublisher,
    ChannelPublishError,
    PublishResult,
    default_registry,
)
from publisher.channel_adapters.http import classify_exception
from publisher.config import Settings, load_settings
from publisher.db.base import build_engine, build_session_factory
from publisher.db.models import Schedule
from publisher.services.collaborators import PostRepository, PublishContext, PublishContextResolver, load_object
from publisher.services.publish_events import PublishEventLog
from publisher.services.schedules import ScheduleStore
from publisher.state import PublishEventStatus, ScheduleStatus, as_utc, backoff_delay, utc_now

ATTEMPT_TIMEOUT_CODE = "PUBLISH_ATTEMPT_TIMEOUT"
CONTEXT_UNAVAILABLE_CODE = "PUBLISH_CONTEXT_UNAVAILABLE"
PUBLISH_TIMEOUT_CODE = "PUBLISH_TIMEOUT"

# Outcomes reported by execute_schedule
OUTCOME_SUCCESS = "success"
OUTCOME_RETRY = "retry"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_DISCARDED = "discarded"
OUTCOME_ERROR = "error"


class Dispatcher:
    """Scanner, executor and watchdog for scheduled publishes.

    Every state change happens under the schedule's row lock in a short
    transaction of its own. No transaction is open while a platform API is
    being called.

    Adapter calls run on a dedicated pool so the executor stops waiting
    ``publish_timeout_seconds`` plus ``deadline_grace_seconds`` after the call
    starts, even when an adapter ignores its ``timeout``. An overrunning call
    keeps its thread until it returns; its result is dropped.
    """

    deadline_grace_seconds = 1.0

    def __init__(
        self,
        adapters: AdapterRegistry,
        context_resolver: PublishContextResolver,
        post_repository: Optional[PostRepository] = None,
        *,
        session_factory: Callable[[], Session],
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.adapters = adapters
        self.context_resolver = context_resolver
        self.post_repository = post_repository
        self.session_factory = session_factory
        self.settings = settings or load_settings()
        self.config = self.settings.dispatch
        self.clock = clock
        self._publish_pool = ThreadPoolExecutor(
            max_workers=self.config.worker_pool_size, thread_name_prefix="publish"
        )

    def close(self) -> None:
        """Stop the adapter pool without waiting for overrunning calls."""
        self._publish_pool.shutdown(wait=False, cancel_futures=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Dispatcher":
        """Wire collaborators from the configured import paths."""
        if not settings.context_resolver_path:
            raise RuntimeError("PUBLISHER_CONTEXT_RESOLVER is not configured")

        context_resolver = load_object(settings.context_resolver_path)
        post_repository = load_object(settings.post_repository_path) if settings.post_repository_path else None
        session_factory = build_session_factory(build_engine(settings.database_url))

        return cls(
            default_registry(settings.channels),
            context_resolver,
            post_repository,
            session_factory=session_factory,
            settings=settings,
        )

    # ------------------------------------------------------------------
    # Scanner
    # ------------------------------------------------------------------

    def scan(self, limit: Optional[int] = None) -> List[int]:
        """Ids of due pending schedules. Takes no locks."""
        with self.session_factory() as session:
            due = ScheduleStore.find_due_schedules(session, self.clock(), limit=limit or self.config.batch_limit)
            return [schedule.id for schedule in due]

    def claim(self, schedule_id: int) -> bool:
        """Move a due schedule to ``queued`` under its row lock."""
        with self.session_factory() as session:
            try:
                schedule = ScheduleStore.find_by_id_for_update(session, schedule_id, skip_locked=True)
                if not schedule:
                    logger.debug("[DISPATCH] Schedule {} locked elsewhere or gone, skipping", schedule_id)
                    session.rollback()
                    return False

                now = self.clock()
                if not schedule.is_due(now):
                    logger.debug("[DISPATCH] Schedule {} no longer due ({}), skipping", schedule_id, schedule.status)
                    session.rollback()
                    return False

                ScheduleStore.update_status(session, schedule_id, ScheduleStatus.QUEUED, now=now)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                logger.exception("[DISPATCH] Failed to claim schedule {}", schedule_id)
                return False

        logger.info("[DISPATCH] Claimed schedule {}", schedule_id)
        return True

    # ------------------------------------------------------------------
    # Executor
    # ------------------------------------------------------------------

    def execute_schedule(self, schedule_id: int) -> Dict[str, Any]:
        """Run one publish attempt for a queued schedule."""
        try:
            started = self._start_attempt(schedule_id)
        except SQLAlchemyError:
            logger.exception("[DISPATCH] Failed to start attempt for schedule {}", schedule_id)
            return {"schedule_id": schedule_id, "status": OUTCOME_ERROR}

        if started is None:
            return {"schedule_id": schedule_id, "status": OUTCOME_SKIPPED}
        schedule, attempt_index = started

        context: Optional[PublishContext] = None
        result: Optional[PublishResult] = None
        error: Optional[ChannelPublishError] = None

        try:
            context = self.context_resolver.resolve(schedule)
        except Exception as e:
            error = ChannelPublishError(
                f"Publish context unavailable: {e}", code=CONTEXT_UNAVAILABLE_CODE, retryable=False
            )

        if context is not None:
            platform = context.connection.platform_key
            logger.info(
                "[DISPATCH] Publishing schedule {} to {} (attempt {})", schedule_id, platform, attempt_index
            )
            try:
                result = self._publish(self.adapters.get(platform), context)
            except Exception as e:
                error = classify_exception(e, platform)

        try:
            outcome = self._record_outcome(schedule_id, attempt_index, result, error)
        except SQLAlchemyError:
            # Row stays in processing; the watchdog closes the attempt
            logger.exception("[DISPATCH] Failed to record outcome for schedule {}", schedule_id)
            return {"schedule_id": schedule_id, "status": OUTCOME_ERROR}

        if outcome == OUTCOME_SUCCESS and context is not None:
            self._mark_post_published(context.post_id)

        return {"schedule_id": schedule_id, "status": outcome, "attempt": attempt_index}

    def _publish(self, adapter: ChannelPublisher, context: PublishContext) -> PublishResult:
        timeout = self.config.publish_timeout_seconds
        future = self._publish_pool.submit(adapter.publish, context.connection, context.content, timeout=timeout)
        try:
            return future.result(timeout=timeout + self.deadline_grace_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise ChannelPublishError(
                f"No response from {context.connection.platform_key} within {timeout}s",
                code=PUBLISH_TIMEOUT_CODE,
                retryable=True,
                platform=context.connection.platform_key,
            ) from None

    def _start_attempt(self, schedule_id: int) -> Optional[tuple[Schedule, int]]:
        # Blocks behind a concurrent cancel or watchdog lock, then re-checks the status
        with self.session_factory() as session:
            schedule = ScheduleStore.find_by_id_for_update(session, schedule_id, skip_locked=False)
            if not schedule or schedule.status != ScheduleStatus.QUEUED:
                status = schedule.status if schedule else None
                logger.info("[DISPATCH] Schedule {} not queued ({}), skipping", schedule_id, status)
                session.rollback()
                return None

            now = self.clock()
            ScheduleStore.update_status(session, schedule_id, ScheduleStatus.PROCESSING, now=now)
            schedule = ScheduleStore.increment_attempt(session, schedule_id, now=now)
            attempt_index = schedule.attempt_count
            session.commit()

        return schedule, attempt_index

    def _record_outcome(
        self,
        schedule_id: int,
        attempt_index: int,
        result: Optional[PublishResult],
        error: Optional[ChannelPublishError],
    ) -> str:
        """Write the attempt's event and the schedule's next state in one transaction.

        A schedule soft-deleted mid-attempt still gets its attempt closed.
        """
        with self.session_factory() as session:
            schedule = ScheduleStore.find_by_id_for_update(
                session, schedule_id, skip_locked=False, include_deleted=True
            )
            if (
                not schedule
                or schedule.status != ScheduleStatus.PROCESSING
                or schedule.attempt_count != attempt_index
            ):
                logger.warning(
                    "[DISPATCH] Discarding outcome of attempt {} for schedule {}: attempt already closed",
                    attempt_index,
                    schedule_id,
                )
                session.rollback()
                return OUTCOME_DISCARDED

            now = self.clock()
            if result is not None:
                PublishEventLog.create(
                    session,
                    schedule_id=schedule_id,
                    attempt_index=attempt_index,
                    status=PublishEventStatus.SUCCESS,
                    timestamp=now,
                    external_post_id=result.external_post_id,
                    external_url=result.external_url,
                )
                ScheduleStore.update(
                    session,
                    schedule_id,
                    {"status": ScheduleStatus.SUCCESS, "error_code": None, "error_message": None},
                    now=now,
                    include_deleted=True,
                )
                outcome = OUTCOME_SUCCESS
                logger.info("[DISPATCH] Schedule {} published as {}", schedule_id, result.external_post_id)
            else:
                PublishEventLog.create(
                    session,
                    schedule_id=schedule_id,
                    attempt_index=attempt_index,
                    status=PublishEventStatus.FAILED,
                    timestamp=now,
                    error_code=error.code,
                    error_message=str(error),
                    raw_response=error.raw_response,
                )
                fields: Dict[str, Any] = {"error_code": error.code, "error_message": str(error)}
                if error.retryable and attempt_index < self.config.max_attempts:
                    delay = backoff_delay(
                        attempt_index, self.config.backoff_base_seconds, self.config.backoff_max_seconds
                    )
                    fields.update(status=ScheduleStatus.PENDING, run_at=as_utc(now) + delay)
                    outcome = OUTCOME_RETRY
                    logger.warning(
                        "[DISPATCH] Schedule {} attempt {} failed ({}), retrying in {}",
                        schedule_id,
                        attempt_index,
                        error.code,
                        delay,
                    )
                else:
                    fields["status"] = ScheduleStatus.FAILED
                    outcome = OUTCOME_FAILED
                    logger.error(
                        "[DISPATCH] Schedule {} failed permanently on attempt {}: {} {}",
                        schedule_id,
                        attempt_index,
                        error.code,
                        error,
                    )
                ScheduleStore.update(session, schedule_id, fields, now=now, include_deleted=True)

            session.commit()
        return outcome

    def _mark_post_published(self, post_id: Optional[int]) -> None:
        if self.post_repository is None or post_id is None:
            return
        try:
            self.post_repository.update(post_id, {"status": "published"})
        except Exception:
            logger.exception("[DISPATCH] Could not mark post {} published", post_id)

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    def recover_stuck(self) -> Dict[str, int]:
        """Return schedules abandoned in ``queued``/``processing`` to the queue."""
        now = self.clock()
        timeout = timedelta(seconds=self.config.processing_timeout_seconds)
        cutoff = as_utc(now) - timeout

        with self.session_factory() as session:
            stuck_ids = [s.id for s in ScheduleStore.find_stuck(session, now, timeout, limit=self.config.batch_limit)]

        stats = {"requeued": 0, "retried": 0, "failed": 0}
        for schedule_id in stuck_ids:
            with self.session_factory() as session:
                try:
                    schedule = ScheduleStore.find_by_id_for_update(
                        session, schedule_id, skip_locked=True, include_deleted=True
                    )
                    if not schedule:
                        session.rollback()
                        continue

                    if (
                        schedule.status == ScheduleStatus.QUEUED
                        and not schedule.is_deleted
                        and as_utc(schedule.updated_at) <= cutoff
                    ):
                        ScheduleStore.update_status(session, schedule_id, ScheduleStatus.PENDING, now=now)
                        stats["requeued"] += 1
                        logger.warning("[WATCHDOG] Schedule {} stuck in queued, back to pending", schedule_id)
                    elif (
                        schedule.status == ScheduleStatus.PROCESSING
                        and schedule.last_attempt_at is not None
                        and as_utc(schedule.last_attempt_at) <= cutoff
                    ):
                        stats[self._close_orphaned_attempt(session, schedule, now)] += 1
                    else:
                        session.rollback()
                        continue

                    session.commit()
                except SQLAlchemyError:
                    session.rollback()
                    logger.exception("[WATCHDOG] Failed to recover schedule {}", schedule_id)

        if any(stats.values()):
            logger.info("[WATCHDOG] Recovery complete: {}", stats)
        return stats

    def _close_orphaned_attempt(self, session: Session, schedule: Schedule, now: datetime) -> str:
        message = f"No outcome within {self.config.processing_timeout_seconds}s"
        PublishEventLog.create(
            session,
            schedule_id=schedule.id,
            attempt_index=schedule.attempt_count,
            status=PublishEventStatus.RETRIED,
            timestamp=now,
            error_code=ATTEMPT_TIMEOUT_CODE,
            error_message=message,
        )

        fields: Dict[str, Any] = {"error_code": ATTEMPT_TIMEOUT_CODE, "error_message": message}
        if schedule.attempt_count < self.config.max_attempts:
            delay = backoff_delay(
                schedule.attempt_count, self.config.backoff_base_seconds, self.config.backoff_max_seconds
            )
            fields.update(status=ScheduleStatus.PENDING, run_at=as_utc(now) + delay)
            logger.warning(
                "[WATCHDOG] Schedule {} attempt {} timed out, retrying in {}", schedule.id, schedule.attempt_count, delay
            )
            key = "retried"
        else:
            fields["status"] = ScheduleStatus.FAILED
            logger.error(
                "[WATCHDOG] Schedule {} attempt {} timed out, attempts exhausted", schedule.id, schedule.attempt_count
            )
            key = "failed"

        ScheduleStore.update(session, schedule.id, fields, now=now, include_deleted=True)
        return key

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run_cycle(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Scan, claim and execute one batch."""
        stats = {
            "due": 0,
            "claimed": 0,
            OUTCOME_SUCCESS: 0,
            OUTCOME_RETRY: 0,
            OUTCOME_FAILED: 0,
            OUTCOME_SKIPPED: 0,
            OUTCOME_DISCARDED: 0,
            OUTCOME_ERROR: 0,
        }

        try:
            due_ids = self.scan(limit)
        except SQLAlchemyError:
            logger.exception("[DISPATCH] Scan failed")
            stats[OUTCOME_ERROR] += 1
            return stats

        stats["due"] = len(due_ids)
        if not due_ids:
            logger.debug("[DISPATCH] No due schedules")
            return stats

        claimed = [schedule_id for schedule_id in due_ids if self.claim(schedule_id)]
        stats["claimed"] = len(claimed)

        with ThreadPoolExecutor(max_workers=self.config.worker_pool_size) as pool:
            futures = {pool.submit(self.execute_schedule, schedule_id): schedule_id for schedule_id in claimed}
            for future in as_completed(futures):
                try:
                    outcome = future.result()
                except Exception:
                    logger.exception("[DISPATCH] Worker crashed on schedule {}", futures[future])
                    stats[OUTCOME_ERROR] += 1
                    continue
                stats[outcome["status"]] += 1

        logger.info("[DISPATCH] Cycle complete: {}", stats)
        return stats

    def run_forever(
        self,
        limit: Optional[int] = None,
        max_cycles: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Poll on the scan interval; the watchdog runs on the first cycle and every N after."""
        logger.info(
            "[DISPATCH] Starting polling loop (every {}s, {} workers)",
            self.config.scan_interval_seconds,
            self.config.worker_pool_size,
        )
        cycle = 0
        while max_cycles is None or cycle < max_cycles:
            if cycle % self.config.watchdog_interval_cycles == 0:
                try:
                    self.recover_stuck()
                except SQLAlchemyError:
                    logger.exception("[WATCHDOG] Sweep failed")

            self.run_cycle(limit)
            cycle += 1
            sleep(self.config.scan_interval_seconds)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Scheduled publish dispatcher")
    parser.add_argument("--schedule-id", type=int, help="Claim and execute a specific due schedule")
    parser.add_argument("--limit", type=int, help="Max due schedules per cycle")
    parser.add_argument("--loop", action="store_true", help="Run in a loop")
    parser.add_argument("--watchdog", action="store_true", help="Only recover stuck schedules")

    args = parser.parse_args(argv)

    settings = load_settings()
    logger.remove()
    logger.add(sys.stdout, level=settings.log_level)

    try:
        dispatcher = Dispatcher.from_settings(settings)
    except (RuntimeError, ImportError, AttributeError, ValueError) as exc:
        logger.error("[DISPATCH] Cannot start dispatcher: {}", exc)
        return 1

    try:
        if args.schedule_id:
            dispatcher.claim(args.schedule_id)
            result = dispatcher.execute_schedule(args.schedule_id)
            logger.info("[DISPATCH] Result: {}", result)
        elif args.watchdog:
            dispatcher.recover_stuck()
        elif args.loop:
            dispatcher.run_forever(limit=args.limit)
        else:
            dispatcher.recover_stuck()
            dispatcher.run_cycle(limit=args.limit)
    finally:
        dispatcher.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
