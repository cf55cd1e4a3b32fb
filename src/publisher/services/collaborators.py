"""Interfaces of the contexts the scheduling pipeline depends on.

Posts, variants, channel connections and credential storage are owned
elsewhere; the pipeline only sees them through these protocols.
"""
from __future__ import annotations

import importlib
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from publisher.channel_adapters.base import ChannelConnection, PublishContent


@dataclass
class Principal:
    """Authenticated caller (user or service account)."""

    id: Any
    timezone: Optional[str] = None


@dataclass
class Variant:
    id: int
    post_id: int
    channel_id: Optional[int] = None
    content: Optional[str] = None


@dataclass
class Post:
    id: int
    status: str  # draft, scheduled, published, ...


@dataclass
class PublishContext:
    """Everything one publish attempt needs. Built fresh for every attempt."""

    connection: ChannelConnection
    content: PublishContent
    post_id: Optional[int] = None


class VariantAccess(Protocol):
    def get_variant(self, principal: Principal, variant_id: int) -> Optional[Variant]:
        """Return the variant if the principal may access it.

        Implementations may return None or raise ScheduleError(VARIANT_NOT_FOUND).
        """
        ...

    def accessible_variant_ids(self, principal: Principal) -> Optional[List[int]]:
        """Variant ids visible to the principal, or None for unrestricted access."""
        ...


class PostRepository(Protocol):
    def find_by_id(self, post_id: int) -> Optional[Post]:
        ...

    def update(self, post_id: int, fields: Dict[str, Any]) -> Any:
        ...


class PublishContextResolver(Protocol):
    def resolve(self, schedule: Any) -> PublishContext:
        """Load the connection (with decrypted credentials) and variant content for a schedule."""
        ...


class EventSink(Protocol):
    def record_event(self, event: Dict[str, Any]) -> None:
        """Persist a domain event: event_type, event_name, entity_type, entity_id, principal_id, metadata."""
        ...


def load_object(path: str) -> Any:
    """Import ``package.module:attribute`` and return the attribute.

    A class or factory function found there is called without arguments.
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Expected 'module:attribute', got '{path}'")

    target = getattr(importlib.import_module(module_name), attr)
    return target() if callable(target) else target
