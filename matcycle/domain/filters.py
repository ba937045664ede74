from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import col

from matcycle.domain.models import Asset, Cycle, HistoryEvent, PickupBatch, PickupItem
from matcycle.domain.state_machine import AssetStatus, BatchStatus, CycleStatus


class FilterSpec(Protocol):
    def clauses(self) -> list[ColumnElement[bool]]: ...


def _in(column: Any, values: Iterable[str] | None) -> list[ColumnElement[bool]]:
    if values is None:
        return []
    return [col(column).in_([str(value) for value in values])]


@dataclass(frozen=True)
class AssetFilter:
    owner_id: str | None = None
    statuses: tuple[AssetStatus, ...] | None = None
    code: str | None = None
    code_prefix: str | None = None
    order_ref: str | None = None
    ids: tuple[str, ...] | None = None

    def clauses(self) -> list[ColumnElement[bool]]:
        result: list[ColumnElement[bool]] = []
        if self.owner_id is not None:
            result.append(col(Asset.owner_id) == self.owner_id)
        result.extend(_in(Asset.status, self.statuses))
        if self.code is not None:
            result.append(col(Asset.code) == self.code)
        if self.code_prefix is not None:
            result.append(col(Asset.code).startswith(f"{self.code_prefix}-", autoescape=True))
        if self.order_ref is not None:
            result.append(col(Asset.order_ref) == self.order_ref)
        result.extend(_in(Asset.id, self.ids))
        return result


@dataclass(frozen=True)
class CycleFilter:
    asset_id: str | None = None
    owner_id: str | None = None
    company_id: str | None = None
    statuses: tuple[CycleStatus, ...] | None = None
    exclude_statuses: tuple[CycleStatus, ...] | None = None
    ids: tuple[str, ...] | None = None
    contract_signed: bool | None = None

    def clauses(self) -> list[ColumnElement[bool]]:
        result: list[ColumnElement[bool]] = []
        if self.asset_id is not None:
            result.append(col(Cycle.asset_id) == self.asset_id)
        if self.owner_id is not None:
            result.append(col(Cycle.owner_id) == self.owner_id)
        if self.company_id is not None:
            result.append(col(Cycle.company_id) == self.company_id)
        result.extend(_in(Cycle.status, self.statuses))
        if self.exclude_statuses is not None:
            result.append(col(Cycle.status).not_in([str(item) for item in self.exclude_statuses]))
        result.extend(_in(Cycle.id, self.ids))
        if self.contract_signed is not None:
            result.append(col(Cycle.contract_signed) == self.contract_signed)
        return result


@dataclass(frozen=True)
class BatchFilter:
    statuses: tuple[BatchStatus, ...] | None = None
    assigned_driver: str | None = None
    ids: tuple[str, ...] | None = None

    def clauses(self) -> list[ColumnElement[bool]]:
        result: list[ColumnElement[bool]] = []
        result.extend(_in(PickupBatch.status, self.statuses))
        if self.assigned_driver is not None:
            result.append(col(PickupBatch.assigned_driver) == self.assigned_driver)
        result.extend(_in(PickupBatch.id, self.ids))
        return result


@dataclass(frozen=True)
class PickupItemFilter:
    batch_id: str | None = None
    cycle_ids: tuple[str, ...] | None = None
    batch_ids: tuple[str, ...] | None = None

    def clauses(self) -> list[ColumnElement[bool]]:
        result: list[ColumnElement[bool]] = []
        if self.batch_id is not None:
            result.append(col(PickupItem.batch_id) == self.batch_id)
        result.extend(_in(PickupItem.cycle_id, self.cycle_ids))
        result.extend(_in(PickupItem.batch_id, self.batch_ids))
        return result


@dataclass(frozen=True)
class HistoryFilter:
    cycle_id: str | None = None
    cycle_ids: tuple[str, ...] | None = None
    performed_by: str | None = None
    actions: tuple[str, ...] | None = None
    start: datetime | None = None
    end: datetime | None = None

    def clauses(self) -> list[ColumnElement[bool]]:
        result: list[ColumnElement[bool]] = []
        if self.cycle_id is not None:
            result.append(col(HistoryEvent.cycle_id) == self.cycle_id)
        result.extend(_in(HistoryEvent.cycle_id, self.cycle_ids))
        if self.performed_by is not None:
            result.append(col(HistoryEvent.performed_by) == self.performed_by)
        result.extend(_in(HistoryEvent.action, self.actions))
        if self.start is not None:
            result.append(col(HistoryEvent.at) >= self.start)
        if self.end is not None:
            result.append(col(HistoryEvent.at) <= self.end)
        return result
