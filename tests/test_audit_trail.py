from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

import pytest
from sqlalchemy.engine import Engine

from matcycle.domain.filters import FilterSpec, HistoryFilter
from matcycle.infra.gateway import M, SqlGateway
from matcycle.services.asset_ledger import AssetLedger
from matcycle.services.audit_trail import AuditTrail
from matcycle.services.cycle_manager import CycleManager


@pytest.fixture()
def services(sqlite_engine: Engine, clock: Callable[[], datetime]) -> tuple[CycleManager, AssetLedger, AuditTrail]:
    ledger = AssetLedger()
    audit = AuditTrail()
    return CycleManager(ledger=ledger, audit=audit, clock=clock), ledger, audit


def _completed_cycle(manager: CycleManager, ledger: AssetLedger, company_id: str = "company-1") -> str:
    (asset,) = ledger.allocate("op-1", "MAT", 1)
    cycle = manager.open_cycle(asset.id, "user-1")
    manager.assign_to_trial(cycle.id, "user-1", company_id)
    manager.mark_soiled(cycle.id, "user-2")
    manager.request_pickup(cycle.id, "user-2")
    manager.complete(cycle.id, "driver-1")
    return cycle.id


def test_timeline_reconstructs_status_intervals(services: tuple[CycleManager, AssetLedger, AuditTrail]) -> None:
    manager, ledger, audit = services
    (asset,) = ledger.allocate("op-1", "MAT", 1)
    cycle = manager.open_cycle(asset.id, "user-1")
    manager.assign_to_trial(cycle.id, "user-1", "company-1")
    manager.extend(cycle.id, "user-1", days=3)
    manager.mark_soiled(cycle.id, "user-2")

    timeline = audit.timeline(cycle.id)
    assert [entry.status for entry in timeline] == ["on_test", "dirty"]
    assert timeline[0].left_at == timeline[1].entered_at
    assert timeline[0].entered_by == "user-1"
    assert timeline[1].left_at is None
    assert timeline[1].action == "marked_dirty"


def test_events_by_actor_with_time_window(services: tuple[CycleManager, AssetLedger, AuditTrail]) -> None:
    manager, ledger, audit = services
    _completed_cycle(manager, ledger)

    by_user2 = audit.events_by_actor("user-2")
    assert [item.action for item in by_user2] == ["marked_dirty", "pickup_requested"]

    first_at = by_user2[0].at
    windowed = audit.events_by_actor("user-2", start=first_at + timedelta(minutes=1))
    assert [item.action for item in windowed] == ["pickup_requested"]

    filtered = audit.events(HistoryFilter(actions=("completed",)))
    assert len(filtered) == 1
    assert filtered[0].performed_by == "driver-1"


def test_average_days_to_pickup(services: tuple[CycleManager, AssetLedger, AuditTrail]) -> None:
    manager, ledger, audit = services
    # step clock: put_on_test and completed are three readings (hours) apart
    _completed_cycle(manager, ledger)
    _completed_cycle(manager, ledger, company_id="company-2")

    overall = audit.average_days_to_pickup(owner_id="op-1")
    assert overall.completed_cycles == 2
    assert overall.average_days_to_pickup == round(3 / 24, 2)

    scoped = audit.average_days_to_pickup(company_id="company-2")
    assert scoped.completed_cycles == 1

    empty = audit.average_days_to_pickup(owner_id="nobody")
    assert empty.completed_cycles == 0
    assert empty.average_days_to_pickup is None


def test_record_is_append_only_sink(sqlite_engine: Engine) -> None:
    audit = AuditTrail()
    assert not hasattr(audit, "update")
    assert not hasattr(audit, "delete")
    assert audit.history_for_cycle("missing") == []


def test_record_retries_when_sequence_is_taken(services: tuple[CycleManager, AssetLedger, AuditTrail]) -> None:
    class StaleCountGateway(SqlGateway):
        def __init__(self) -> None:
            self.stale_counts = 0

        def count(self, model: type[M], spec: FilterSpec | None = None) -> int:
            actual = super().count(model, spec)
            if self.stale_counts:
                self.stale_counts -= 1
                return actual - 1
            return actual

    manager, ledger, _ = services
    (asset,) = ledger.allocate("op-1", "MAT", 1)
    cycle = manager.open_cycle(asset.id, "user-1")
    manager.assign_to_trial(cycle.id, "user-1", "company-1")
    gateway = StaleCountGateway()
    gateway.stale_counts = 1
    audit = AuditTrail(gateway)

    event = audit.record(
        cycle_id=cycle.id,
        action="test_extended",
        old_status="on_test",
        new_status="on_test",
        performed_by="user-1",
        metadata={"days": 3},
    )

    assert event.seq == 2
    assert [item.seq for item in audit.history_for_cycle(cycle.id)] == [1, 2]
