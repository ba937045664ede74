from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from matcycle.domain.models import EventEnvelope, EventRecord
from matcycle.infra.db import get_engine
from matcycle.infra.logging import get_logger

EventHandler = Callable[[EventEnvelope], None]

CYCLE_CHANGED = "cycle.changed"
BATCH_CHANGED = "batch.changed"
ASSET_CHANGED = "asset.changed"

logger = get_logger(__name__)


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._subscribers and handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        should_commit = session is None
        if session is None:
            session = Session(get_engine())
        try:
            record = EventRecord(
                event_id=event.event_id,
                event_type=event.event_type,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                ts=event.ts,
                actor_id=event.actor_id,
                payload=event.payload,
            )
            session.add(record)
            if should_commit:
                session.commit()
        finally:
            if should_commit:
                session.close()

        self._dispatch(event)

    def _dispatch(self, event: EventEnvelope) -> None:
        handlers = [*self._subscribers.get(event.event_type, []), *self._subscribers.get("*", [])]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "event subscriber failed",
                    event_type=event.event_type,
                    entity_id=event.entity_id,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                )

    def publish_change(
        self,
        event_type: str,
        entity_type: str,
        entity_id: str,
        *,
        actor_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> EventEnvelope:
        event = EventEnvelope(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            payload=payload or {},
        )
        try:
            self.publish(event)
        except SQLAlchemyError:
            logger.exception(
                "change notification not persisted",
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
            )
            self._dispatch(event)
        return event


event_bus = EventBus()
