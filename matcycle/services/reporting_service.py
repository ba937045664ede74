from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any

from matcycle.domain.filters import CycleFilter
from matcycle.domain.models import (
    CompanyCountsRead,
    Cycle,
    ExpiringTrialRead,
    OperatorCountsRead,
    OverdueCycleRead,
    StatusCountsRead,
    as_utc,
    now_utc,
)
from matcycle.domain.state_machine import CycleStatus
from matcycle.infra.gateway import PersistenceGateway, SqlGateway
from matcycle.services.cycle_manager import OPEN_CYCLE_STATUSES, TRIAL_LENGTH

_SECONDS_PER_DAY = 86400


class ReportingService:
    def __init__(self, gateway: PersistenceGateway | None = None) -> None:
        self._gateway = gateway or SqlGateway()

    def _open_cycles(self, owner_id: str | None = None, company_id: str | None = None) -> list[Cycle]:
        return self._gateway.find_all(
            Cycle,
            CycleFilter(owner_id=owner_id, company_id=company_id, statuses=OPEN_CYCLE_STATUSES),
        )

    def _on_test(self, owner_id: str | None) -> list[Cycle]:
        return self._gateway.find_all(Cycle, CycleFilter(owner_id=owner_id, statuses=(CycleStatus.ON_TEST,)))

    def status_counts(self, owner_id: str | None = None, company_id: str | None = None) -> StatusCountsRead:
        cycles = self._open_cycles(owner_id, company_id)
        counts: dict[str, int] = {status.value: 0 for status in OPEN_CYCLE_STATUSES}
        for cycle in cycles:
            counts[str(cycle.status)] = counts.get(str(cycle.status), 0) + 1
        return StatusCountsRead(
            clean=counts[CycleStatus.CLEAN],
            on_test=counts[CycleStatus.ON_TEST],
            dirty=counts[CycleStatus.DIRTY],
            waiting_driver=counts[CycleStatus.WAITING_DRIVER],
            signed=len([item for item in cycles if item.contract_signed]),
            total=len(cycles),
        )

    def counts_by_company(self, owner_id: str | None = None) -> list[CompanyCountsRead]:
        grouped: dict[str, dict[str, Any]] = {}
        for cycle in self._open_cycles(owner_id):
            if cycle.company_id is None:
                continue
            bucket = grouped.setdefault(cycle.company_id, {"on_test": 0, "signed": 0, "total": 0})
            bucket["total"] += 1
            if cycle.status == CycleStatus.ON_TEST:
                bucket["on_test"] += 1
            if cycle.contract_signed:
                bucket["signed"] += 1
        return [CompanyCountsRead(company_id=key, **grouped[key]) for key in sorted(grouped.keys())]

    def counts_by_operator(self) -> list[OperatorCountsRead]:
        grouped: dict[str, dict[str, int]] = {}
        for cycle in self._open_cycles():
            bucket = grouped.setdefault(
                cycle.owner_id,
                {"clean": 0, "on_test": 0, "dirty": 0, "waiting_driver": 0, "total": 0},
            )
            bucket[str(cycle.status)] += 1
            bucket["total"] += 1
        return [OperatorCountsRead(owner_id=key, **grouped[key]) for key in sorted(grouped.keys())]

    def overdue_cycles(
        self,
        threshold_days: int,
        owner_id: str | None = None,
        now: datetime | None = None,
    ) -> list[OverdueCycleRead]:
        current = as_utc(now) or now_utc()
        rows: list[OverdueCycleRead] = []
        for cycle in self._on_test(owner_id):
            start = as_utc(cycle.test_start_at)
            if start is None:
                continue
            days_on_test = (current - start).days
            if days_on_test <= threshold_days:
                continue
            rows.append(
                OverdueCycleRead(
                    cycle_id=cycle.id,
                    asset_id=cycle.asset_id,
                    owner_id=cycle.owner_id,
                    company_id=cycle.company_id,
                    test_start_at=start,
                    days_on_test=days_on_test,
                )
            )
        rows.sort(key=lambda item: item.days_on_test, reverse=True)
        return rows

    def expiring_trials(
        self,
        within_days: int,
        owner_id: str | None = None,
        now: datetime | None = None,
    ) -> list[ExpiringTrialRead]:
        """On-test cycles whose seven-day window closes within ``within_days``.

        Trials already past their deadline are included with a negative
        ``days_remaining``.
        """
        current = as_utc(now) or now_utc()
        rows: list[ExpiringTrialRead] = []
        for cycle in self._on_test(owner_id):
            start = as_utc(cycle.test_start_at)
            if start is None:
                continue
            deadline = start + TRIAL_LENGTH
            days_remaining = math.ceil((deadline - current) / timedelta(seconds=_SECONDS_PER_DAY))
            if days_remaining > within_days:
                continue
            rows.append(
                ExpiringTrialRead(
                    cycle_id=cycle.id,
                    asset_id=cycle.asset_id,
                    owner_id=cycle.owner_id,
                    company_id=cycle.company_id,
                    deadline=deadline,
                    days_remaining=days_remaining,
                )
            )
        rows.sort(key=lambda item: item.deadline)
        return rows
