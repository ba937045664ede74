from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import pytest
from sqlalchemy.engine import Engine

from matcycle.services.asset_ledger import AssetLedger
from matcycle.services.cycle_manager import CycleManager
from matcycle.services.reporting_service import ReportingService

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


@dataclass
class Fleet:
    long_trial: str
    recent_trial: str
    signed: str
    soiled: str
    clean: str
    finished: str


def _on_test(manager: CycleManager, ledger: AssetLedger, owner_id: str, company_id: str, start: datetime) -> str:
    (asset,) = ledger.allocate(owner_id, "MAT", 1)
    cycle = manager.open_cycle(asset.id, "user-1")
    manager.assign_to_trial(cycle.id, "user-1", company_id, start_at=start)
    return cycle.id


@pytest.fixture()
def fleet(sqlite_engine: Engine, clock: Callable[[], datetime]) -> Fleet:
    ledger = AssetLedger()
    manager = CycleManager(ledger=ledger, clock=clock)

    long_trial = _on_test(manager, ledger, "op-1", "company-1", datetime(2026, 3, 1, 9, 0, tzinfo=UTC))
    recent_trial = _on_test(manager, ledger, "op-1", "company-1", datetime(2026, 3, 5, 12, 0, tzinfo=UTC))

    signed = _on_test(manager, ledger, "op-1", "company-2", datetime(2026, 3, 9, 9, 0, tzinfo=UTC))
    manager.sign_contract(signed, "user-1", "weekly")

    soiled = _on_test(manager, ledger, "op-1", "company-2", datetime(2026, 3, 2, 9, 0, tzinfo=UTC))
    manager.mark_soiled(soiled, "user-1")

    (asset,) = ledger.allocate("op-2", "RUG", 1)
    clean = manager.open_cycle(asset.id, "user-2").id

    finished = _on_test(manager, ledger, "op-1", "company-3", datetime(2026, 2, 1, 9, 0, tzinfo=UTC))
    manager.request_pickup(finished, "user-1")
    manager.complete(finished, "driver-1")

    return Fleet(long_trial, recent_trial, signed, soiled, clean, finished)


def test_status_counts_cover_open_cycles_only(fleet: Fleet) -> None:
    reporting = ReportingService()

    overall = reporting.status_counts()
    assert (overall.clean, overall.on_test, overall.dirty, overall.waiting_driver) == (1, 2, 1, 1)
    assert overall.signed == 1
    assert overall.total == 5

    scoped = reporting.status_counts(owner_id="op-1")
    assert scoped.clean == 0
    assert scoped.total == 4

    by_company = reporting.status_counts(company_id="company-2")
    assert (by_company.dirty, by_company.waiting_driver, by_company.total) == (1, 1, 2)


def test_counts_by_company_and_operator(fleet: Fleet) -> None:
    reporting = ReportingService()

    companies = reporting.counts_by_company()
    assert [(row.company_id, row.on_test, row.signed, row.total) for row in companies] == [
        ("company-1", 2, 0, 2),
        ("company-2", 0, 1, 2),
    ]

    operators = {row.owner_id: row for row in reporting.counts_by_operator()}
    assert set(operators) == {"op-1", "op-2"}
    assert (operators["op-1"].on_test, operators["op-1"].dirty, operators["op-1"].waiting_driver) == (2, 1, 1)
    assert operators["op-1"].total == 4
    assert (operators["op-2"].clean, operators["op-2"].total) == (1, 1)


def test_overdue_cycles_uses_whole_days(fleet: Fleet) -> None:
    reporting = ReportingService()

    overdue = reporting.overdue_cycles(7, now=NOW)
    assert [(row.cycle_id, row.days_on_test) for row in overdue] == [(fleet.long_trial, 9)]

    wider = reporting.overdue_cycles(4, now=NOW)
    assert [row.cycle_id for row in wider] == [fleet.long_trial, fleet.recent_trial]
    assert [row.days_on_test for row in wider] == [9, 5]

    assert reporting.overdue_cycles(7, owner_id="op-2", now=NOW) == []


def test_expiring_trials_include_past_deadlines(fleet: Fleet) -> None:
    reporting = ReportingService()

    expiring = reporting.expiring_trials(2, now=NOW)
    assert [(row.cycle_id, row.days_remaining) for row in expiring] == [
        (fleet.long_trial, -2),
        (fleet.recent_trial, 2),
    ]
    assert expiring[0].deadline == datetime(2026, 3, 8, 9, 0, tzinfo=UTC)

    assert [row.cycle_id for row in reporting.expiring_trials(1, now=NOW)] == [fleet.long_trial]
