from __future__ import annotations

import itertools

import pytest
from sqlalchemy.engine import Engine

from matcycle.domain.filters import AssetFilter
from matcycle.domain.models import Asset, Cycle
from matcycle.domain.state_machine import AssetStatus, CycleStatus
from matcycle.infra.gateway import SqlGateway
from matcycle.services.asset_ledger import (
    CODE_ALPHABET,
    AssetLedger,
    generate_unique_codes,
    normalize_prefix,
)
from matcycle.services.errors import ConflictError, ValidationError


def test_generate_unique_codes_skips_existing_and_repeats() -> None:
    suffixes = iter(["2222", "3333", "2222", "4444"])
    codes = generate_unique_codes("MAT", 2, ["MAT-3333"], suffix_factory=lambda: next(suffixes))
    assert codes == ["MAT-2222", "MAT-4444"]


def test_generate_unique_codes_stops_at_attempt_budget() -> None:
    calls = itertools.count()

    def same_suffix() -> str:
        next(calls)
        return "2222"

    codes = generate_unique_codes("MAT", 2, [], suffix_factory=same_suffix, attempts_per_code=5)
    assert codes == ["MAT-2222"]
    assert next(calls) == 10


def test_normalize_prefix() -> None:
    assert normalize_prefix(" mat ") == "MAT"
    with pytest.raises(ValidationError):
        normalize_prefix("MAT-1")
    with pytest.raises(ValidationError):
        normalize_prefix("ABCDEFGHIJK")


def test_allocate_generates_codes_from_alphabet(sqlite_engine: Engine) -> None:
    ledger = AssetLedger()
    assets = ledger.allocate("op-1", "mat", 25)

    assert len(assets) == 25
    codes = {asset.code for asset in assets}
    assert len(codes) == 25
    for code in codes:
        prefix, suffix = code.split("-")
        assert prefix == "MAT"
        assert len(suffix) == 4
        assert set(suffix) <= set(CODE_ALPHABET)
    assert all(asset.status == AssetStatus.AVAILABLE for asset in assets)
    assert all(asset.received_at is not None for asset in assets)


def test_allocate_shortfall_persists_nothing(sqlite_engine: Engine) -> None:
    suffixes = itertools.cycle(["2222", "3333", "4444", "5555", "6666", "7777", "8888"])
    ledger = AssetLedger(suffix_factory=lambda: next(suffixes))

    with pytest.raises(ValidationError) as exc_info:
        ledger.allocate("op-1", "MAT", 10)

    assert exc_info.value.detail["generated"] == 7
    assert SqlGateway().count(Asset) == 0


def test_allocate_avoids_codes_already_in_use(sqlite_engine: Engine) -> None:
    gateway = SqlGateway()
    gateway.create(Asset(code="MAT-2222", owner_id="op-9"))
    suffixes = iter(["2222", "3333"])
    ledger = AssetLedger(suffix_factory=lambda: next(suffixes))

    assets = ledger.allocate("op-1", "MAT", 1)
    assert [asset.code for asset in assets] == ["MAT-3333"]


def test_allocate_rejects_bad_count(sqlite_engine: Engine) -> None:
    ledger = AssetLedger()
    with pytest.raises(ValidationError):
        ledger.allocate("op-1", "MAT", 0)


def test_pending_reserve_assign_release_workflow(sqlite_engine: Engine) -> None:
    ledger = AssetLedger()
    (asset,) = ledger.allocate("op-1", "MAT", 1, pending=True, order_ref="PO-1")
    assert asset.status == AssetStatus.PENDING
    assert asset.received_at is None

    with pytest.raises(ValidationError):
        ledger.assign(asset.id)

    reserved = ledger.reserve(asset.id)
    assert reserved.status == AssetStatus.AVAILABLE
    assert reserved.received_at is not None

    assigned = ledger.assign(asset.id)
    assert assigned.status == AssetStatus.ASSIGNED

    released = ledger.release(asset.id)
    assert released.status == AssetStatus.AVAILABLE
    assert released.last_reset_at is not None

    with pytest.raises(ValidationError):
        ledger.release(asset.id)
    assert ledger.ensure_released(asset.id) is False

    pending_again = ledger.mark_pending(asset.id)
    assert pending_again.status == AssetStatus.PENDING


def test_ensure_released_skips_asset_with_open_cycle(sqlite_engine: Engine) -> None:
    gateway = SqlGateway()
    ledger = AssetLedger(gateway)
    (asset,) = ledger.allocate("op-1", "MAT", 1)
    ledger.assign(asset.id)
    gateway.create(Cycle(asset_id=asset.id, owner_id="op-1", status=CycleStatus.WAITING_DRIVER))

    assert ledger.ensure_released(asset.id) is False
    refreshed = ledger.get_asset(asset.id)
    assert refreshed is not None
    assert refreshed.status == AssetStatus.ASSIGNED


def test_storage_rejects_second_open_cycle(sqlite_engine: Engine) -> None:
    gateway = SqlGateway()
    (asset,) = AssetLedger(gateway).allocate("op-1", "MAT", 1)

    gateway.create(Cycle(asset_id=asset.id, owner_id="op-1", status=CycleStatus.CLEAN))
    with pytest.raises(ConflictError):
        gateway.create(Cycle(asset_id=asset.id, owner_id="op-1", status=CycleStatus.DIRTY))

    # completed cycles do not count against the index
    gateway.create(Cycle(asset_id=asset.id, owner_id="op-1", status=CycleStatus.COMPLETED))
    assert gateway.count(Cycle) == 2


def test_discard_only_unused_codes(sqlite_engine: Engine) -> None:
    gateway = SqlGateway()
    ledger = AssetLedger(gateway)
    unused, used = ledger.allocate("op-1", "MAT", 2)
    gateway.create(Cycle(asset_id=used.id, owner_id="op-1", status=CycleStatus.COMPLETED))

    ledger.discard(unused.id)
    assert ledger.get_asset(unused.id) is None

    with pytest.raises(ValidationError):
        ledger.discard(used.id)


def test_find_by_code_stats_and_listing(sqlite_engine: Engine) -> None:
    ledger = AssetLedger()
    available = ledger.allocate("op-1", "MAT", 3)
    ledger.allocate("op-1", "MAT", 2, pending=True)
    ledger.allocate("op-2", "RUG", 1)
    ledger.assign(available[0].id)

    found = ledger.find_by_code(available[1].code.lower())
    assert found is not None
    assert found.id == available[1].id
    assert ledger.find_by_code("MAT-0000") is None

    stats = ledger.stats("op-1")
    assert (stats.available, stats.active, stats.pending, stats.total) == (2, 1, 2, 5)

    listed = ledger.list_assets(AssetFilter(owner_id="op-1", statuses=(AssetStatus.PENDING,)))
    assert len(listed) == 2
    assert [item.code for item in listed] == sorted(item.code for item in listed)
