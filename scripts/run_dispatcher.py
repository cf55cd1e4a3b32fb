#!/usr/bin/env python3
import sys
import os

# Add src to path
sys.path.append(os.path.join(os.path.dirname(__file__), '../src'))

from loguru import logger

from publisher.config import load_settings
from publisher.jobs.dispatcher import Dispatcher
from publisher.services.schedules import ScheduleStore

MAX_SCHEDULES_PER_INVOCATION = 10


def has_due_schedules(dispatcher: Dispatcher) -> bool:
    with dispatcher.session_factory() as session:
        return bool(ScheduleStore.find_due_schedules(session, dispatcher.clock(), limit=1))


def main() -> int:
    # Setup logger to stdout/stderr for systemd
    settings = load_settings()
    logger.remove()
    logger.add(sys.stdout, level=settings.log_level)

    try:
        dispatcher = Dispatcher.from_settings(settings)
    except Exception as exc:
        print(f"[worker] ERROR: {exc}", file=sys.stderr)
        return 1

    # Stuck rows are recovered even when nothing is due
    dispatcher.recover_stuck()

    if not has_due_schedules(dispatcher):
        print("[worker] No due schedules, exiting")
        dispatcher.close()
        return 0

    try:
        result = dispatcher.run_cycle(limit=MAX_SCHEDULES_PER_INVOCATION)
        print(f"[worker] Result: {result}")
    except Exception as exc:
        print(f"[worker] ERROR: {exc}", file=sys.stderr)
        logger.exception("Worker failed")
        return 1
    finally:
        dispatcher.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
