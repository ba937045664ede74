from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlmodel import col

from matcycle.domain.filters import CycleFilter, HistoryFilter
from matcycle.domain.models import (
    Cycle,
    HistoryEvent,
    TimelineEntryRead,
    TurnaroundRead,
    as_utc,
    now_utc,
)
from matcycle.domain.state_machine import CycleStatus
from matcycle.infra.gateway import PersistenceGateway, SqlGateway
from matcycle.infra.logging import get_logger
from matcycle.services.errors import ConflictError

ACTION_PUT_ON_TEST = "put_on_test"
ACTION_MARKED_DIRTY = "marked_dirty"
ACTION_CONTRACT_SIGNED = "contract_signed"
ACTION_CONTRACT_MARKED = "contract_marked"
ACTION_PICKUP_REQUESTED = "pickup_requested"
ACTION_PICKUP_CANCELLED = "pickup_cancelled"
ACTION_COMPLETED = "completed"
ACTION_TEST_EXTENDED = "test_extended"

_CHRONOLOGICAL = (col(HistoryEvent.at).asc(), col(HistoryEvent.seq).asc())
_IN_SEQUENCE = (col(HistoryEvent.seq).asc(),)
SEQ_ATTEMPTS = 3

logger = get_logger(__name__)


class AuditTrail:
    """Append-only store of cycle transitions.

    There is no update or delete path. Recorded events are only read back,
    either raw or folded into timelines and turnaround figures.
    """

    def __init__(self, gateway: PersistenceGateway | None = None) -> None:
        self._gateway = gateway or SqlGateway()

    def record(
        self,
        *,
        cycle_id: str,
        action: str,
        old_status: str | None,
        new_status: str,
        performed_by: str,
        metadata: dict[str, Any] | None = None,
        at: datetime | None = None,
    ) -> HistoryEvent:
        attempt = 1
        while True:
            seq = self._gateway.count(HistoryEvent, HistoryFilter(cycle_id=cycle_id)) + 1
            event = HistoryEvent(
                cycle_id=cycle_id,
                seq=seq,
                action=action,
                old_status=None if old_status is None else str(old_status),
                new_status=str(new_status),
                detail=metadata or {},
                performed_by=performed_by,
                at=at or now_utc(),
            )
            try:
                return self._gateway.create(event)
            except ConflictError:
                if attempt >= SEQ_ATTEMPTS:
                    raise
                logger.info("history sequence taken, retrying", cycle_id=cycle_id, seq=seq, attempt=attempt)
                attempt += 1

    def history_for_cycle(self, cycle_id: str) -> list[HistoryEvent]:
        return self._gateway.find_all(HistoryEvent, HistoryFilter(cycle_id=cycle_id), order_by=_IN_SEQUENCE)

    def events_by_actor(
        self,
        performed_by: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[HistoryEvent]:
        return self.events(HistoryFilter(performed_by=performed_by, start=start, end=end))

    def events(
        self,
        spec: HistoryFilter,
        *,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[HistoryEvent]:
        return self._gateway.find_all(
            HistoryEvent,
            spec,
            order_by=_CHRONOLOGICAL,
            limit=limit,
            offset=offset,
        )

    def timeline(self, cycle_id: str) -> list[TimelineEntryRead]:
        entries: list[TimelineEntryRead] = []
        for event in self.history_for_cycle(cycle_id):
            entered_at = as_utc(event.at) or now_utc()
            if entries and entries[-1].status == event.new_status:
                # same-status events (extensions) do not open a new interval
                continue
            if entries:
                entries[-1].left_at = entered_at
            entries.append(
                TimelineEntryRead(
                    status=event.new_status,
                    entered_at=entered_at,
                    left_at=None,
                    entered_by=event.performed_by,
                    action=event.action,
                )
            )
        return entries

    def average_days_to_pickup(
        self,
        owner_id: str | None = None,
        company_id: str | None = None,
    ) -> TurnaroundRead:
        cycles = self._gateway.find_all(
            Cycle,
            CycleFilter(owner_id=owner_id, company_id=company_id, statuses=(CycleStatus.COMPLETED,)),
        )
        if not cycles:
            return TurnaroundRead(completed_cycles=0, average_days_to_pickup=None)

        events = self.events(
            HistoryFilter(
                cycle_ids=tuple(cycle.id for cycle in cycles),
                actions=(ACTION_PUT_ON_TEST, ACTION_COMPLETED),
            )
        )
        started: dict[str, datetime] = {}
        finished: dict[str, datetime] = {}
        for event in events:
            at = as_utc(event.at)
            if at is None:
                continue
            if event.action == ACTION_PUT_ON_TEST:
                started.setdefault(event.cycle_id, at)
            elif event.action == ACTION_COMPLETED:
                finished[event.cycle_id] = at

        durations: list[timedelta] = [
            finished[cycle_id] - started[cycle_id] for cycle_id in finished if cycle_id in started
        ]
        if not durations:
            return TurnaroundRead(completed_cycles=len(cycles), average_days_to_pickup=None)
        total_days = sum(item.total_seconds() for item in durations) / 86400
        return TurnaroundRead(
            completed_cycles=len(cycles),
            average_days_to_pickup=round(total_days / len(durations), 2),
        )
