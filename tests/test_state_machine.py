from __future__ import annotations

import pytest

from matcycle.domain.state_machine import (
    CYCLE_TRANSITIONS,
    AssetStatus,
    BatchStatus,
    CycleEvent,
    CycleStatus,
    can_asset_transition,
    can_batch_transition,
    can_cycle_transition,
    cycle_target,
    sources_for,
)


def test_cycle_transition_table_matches_lifecycle() -> None:
    assert cycle_target(CycleStatus.CLEAN, CycleEvent.ASSIGN_TO_TRIAL) == CycleStatus.ON_TEST
    assert cycle_target(CycleStatus.ON_TEST, CycleEvent.MARK_SOILED) == CycleStatus.DIRTY
    assert cycle_target(CycleStatus.DIRTY, CycleEvent.SIGN_CONTRACT) == CycleStatus.WAITING_DRIVER
    assert cycle_target(CycleStatus.ON_TEST, CycleEvent.REQUEST_PICKUP) == CycleStatus.WAITING_DRIVER
    assert cycle_target(CycleStatus.WAITING_DRIVER, CycleEvent.CANCEL_PICKUP) == CycleStatus.DIRTY
    assert cycle_target(CycleStatus.WAITING_DRIVER, CycleEvent.COMPLETE) == CycleStatus.COMPLETED
    assert cycle_target(CycleStatus.ON_TEST, CycleEvent.EXTEND) == CycleStatus.ON_TEST
    assert len(CYCLE_TRANSITIONS) == 9


def test_completed_is_terminal() -> None:
    for cycle_event in CycleEvent:
        assert not can_cycle_transition(CycleStatus.COMPLETED, cycle_event)


def test_cycle_target_accepts_raw_status_strings() -> None:
    assert cycle_target("dirty", CycleEvent.REQUEST_PICKUP) == CycleStatus.WAITING_DRIVER
    assert cycle_target("clean", CycleEvent.COMPLETE) is None


def test_sources_for_events() -> None:
    assert sources_for(CycleEvent.SIGN_CONTRACT) == {CycleStatus.ON_TEST, CycleStatus.DIRTY}
    assert sources_for(CycleEvent.COMPLETE) == {CycleStatus.WAITING_DRIVER}


@pytest.mark.parametrize(
    ("source", "target", "allowed"),
    [
        (BatchStatus.PENDING, BatchStatus.IN_PROGRESS, True),
        (BatchStatus.PENDING, BatchStatus.COMPLETED, True),
        (BatchStatus.IN_PROGRESS, BatchStatus.COMPLETED, True),
        (BatchStatus.IN_PROGRESS, BatchStatus.PENDING, False),
        (BatchStatus.COMPLETED, BatchStatus.IN_PROGRESS, False),
    ],
)
def test_batch_transitions(source: BatchStatus, target: BatchStatus, allowed: bool) -> None:
    assert can_batch_transition(source, target) is allowed


def test_asset_transitions() -> None:
    assert can_asset_transition(AssetStatus.PENDING, AssetStatus.AVAILABLE)
    assert can_asset_transition(AssetStatus.AVAILABLE, AssetStatus.ASSIGNED)
    assert can_asset_transition(AssetStatus.ASSIGNED, AssetStatus.AVAILABLE)
    assert not can_asset_transition(AssetStatus.PENDING, AssetStatus.ASSIGNED)
    assert not can_asset_transition(AssetStatus.ASSIGNED, AssetStatus.PENDING)
