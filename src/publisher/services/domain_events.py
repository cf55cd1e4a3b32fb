"""Service for recording schedule domain events in the outbox table."""
from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from loguru import logger
from sqlalchemy.orm import Session

from publisher.db.models import DomainEvent
from publisher.state import utc_now


class DomainEventService:
    """Service for logging events to the domain_events table."""

    # Standard event names
    EVENT_SCHEDULE_CREATED = "SCHEDULE_CREATED"
    EVENT_SCHEDULE_UPDATED = "SCHEDULE_UPDATED"
    EVENT_SCHEDULE_CANCELLED = "SCHEDULE_CANCELLED"
    EVENT_SCHEDULE_DELETED = "SCHEDULE_DELETED"

    @staticmethod
    def log_event(
        session: Session,
        *,
        event_type: str,
        event_name: str,
        entity_type: str,
        entity_id: Optional[Any] = None,
        principal_id: Optional[Any] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DomainEvent:
        """Add an event row to the current transaction."""
        now = utc_now()
        event = DomainEvent(
            event_type=event_type,
            event_name=event_name,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            principal_id=str(principal_id) if principal_id is not None else None,
            payload=metadata,
            created_at=now,
            updated_at=now,
        )
        session.add(event)
        session.flush()
        return event


class OutboxEventSink:
    """EventSink that writes each event in its own short transaction."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def record_event(self, event: Dict[str, Any]) -> None:
        with self.session_factory() as session:
            DomainEventService.log_event(
                session,
                event_type=event["event_type"],
                event_name=event["event_name"],
                entity_type=event["entity_type"],
                entity_id=event.get("entity_id"),
                principal_id=event.get("principal_id"),
                metadata=event.get("metadata"),
            )
            session.commit()
        logger.debug("[SCHEDULE] Recorded {} for {} {}", event["event_name"], event["entity_type"], event.get("entity_id"))
