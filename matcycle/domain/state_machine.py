from __future__ import annotations

from enum import StrEnum


class CycleStatus(StrEnum):
    CLEAN = "clean"
    ON_TEST = "on_test"
    DIRTY = "dirty"
    WAITING_DRIVER = "waiting_driver"
    COMPLETED = "completed"


class CycleEvent(StrEnum):
    ASSIGN_TO_TRIAL = "assign_to_trial"
    MARK_SOILED = "mark_soiled"
    SIGN_CONTRACT = "sign_contract"
    REQUEST_PICKUP = "request_pickup"
    CANCEL_PICKUP = "cancel_pickup"
    COMPLETE = "complete"
    EXTEND = "extend"


# (source, event) -> target. Pairs missing here are illegal.
CYCLE_TRANSITIONS: dict[tuple[CycleStatus, CycleEvent], CycleStatus] = {
    (CycleStatus.CLEAN, CycleEvent.ASSIGN_TO_TRIAL): CycleStatus.ON_TEST,
    (CycleStatus.ON_TEST, CycleEvent.MARK_SOILED): CycleStatus.DIRTY,
    (CycleStatus.ON_TEST, CycleEvent.SIGN_CONTRACT): CycleStatus.WAITING_DRIVER,
    (CycleStatus.DIRTY, CycleEvent.SIGN_CONTRACT): CycleStatus.WAITING_DRIVER,
    (CycleStatus.ON_TEST, CycleEvent.REQUEST_PICKUP): CycleStatus.WAITING_DRIVER,
    (CycleStatus.DIRTY, CycleEvent.REQUEST_PICKUP): CycleStatus.WAITING_DRIVER,
    (CycleStatus.WAITING_DRIVER, CycleEvent.CANCEL_PICKUP): CycleStatus.DIRTY,
    (CycleStatus.WAITING_DRIVER, CycleEvent.COMPLETE): CycleStatus.COMPLETED,
    (CycleStatus.ON_TEST, CycleEvent.EXTEND): CycleStatus.ON_TEST,
}

TERMINAL_CYCLE_STATUSES: frozenset[CycleStatus] = frozenset({CycleStatus.COMPLETED})


def cycle_target(source: CycleStatus | str, event: CycleEvent) -> CycleStatus | None:
    return CYCLE_TRANSITIONS.get((CycleStatus(source), event))


def can_cycle_transition(source: CycleStatus | str, event: CycleEvent) -> bool:
    return cycle_target(source, event) is not None


def sources_for(event: CycleEvent) -> set[CycleStatus]:
    return {source for (source, item), _ in CYCLE_TRANSITIONS.items() if item == event}


class BatchStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


BATCH_ALLOWED_TRANSITIONS: dict[BatchStatus, set[BatchStatus]] = {
    BatchStatus.PENDING: {BatchStatus.IN_PROGRESS, BatchStatus.COMPLETED},
    BatchStatus.IN_PROGRESS: {BatchStatus.COMPLETED},
    BatchStatus.COMPLETED: set(),
}


def can_batch_transition(source: BatchStatus | str, target: BatchStatus) -> bool:
    return target in BATCH_ALLOWED_TRANSITIONS.get(BatchStatus(source), set())


class AssetStatus(StrEnum):
    PENDING = "pending"
    AVAILABLE = "available"
    ASSIGNED = "assigned"


ASSET_ALLOWED_TRANSITIONS: dict[AssetStatus, set[AssetStatus]] = {
    AssetStatus.PENDING: {AssetStatus.AVAILABLE},
    AssetStatus.AVAILABLE: {AssetStatus.ASSIGNED, AssetStatus.PENDING},
    AssetStatus.ASSIGNED: {AssetStatus.AVAILABLE},
}


def can_asset_transition(source: AssetStatus | str, target: AssetStatus) -> bool:
    return target in ASSET_ALLOWED_TRANSITIONS.get(AssetStatus(source), set())
