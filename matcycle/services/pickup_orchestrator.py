from __future__ import annotations

import os
from collections.abc import Sequence
from datetime import date
from typing import Any

from sqlmodel import col

from matcycle.domain.filters import BatchFilter, CycleFilter, PickupItemFilter
from matcycle.domain.models import (
    BatchDetailRead,
    BatchDetailsUpdate,
    BatchOperationResult,
    Cycle,
    CycleFailure,
    PickupBatch,
    PickupBatchRead,
    PickupItem,
    PickupItemRead,
    now_utc,
)
from matcycle.domain.state_machine import (
    BatchStatus,
    CycleEvent,
    CycleStatus,
    can_batch_transition,
    can_cycle_transition,
)
from matcycle.infra.events import BATCH_CHANGED, EventBus, event_bus
from matcycle.infra.gateway import PersistenceGateway, SqlGateway
from matcycle.infra.logging import get_logger
from matcycle.services.asset_ledger import AssetLedger
from matcycle.services.cycle_manager import CycleManager
from matcycle.services.errors import (
    ConflictError,
    LifecycleError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)

CANCEL_REVERT_ATTEMPTS = int(os.getenv("CANCEL_REVERT_ATTEMPTS", "3"))
SYSTEM_ACTOR = "system"

BATCHABLE_CYCLE_STATUSES: tuple[CycleStatus, ...] = (CycleStatus.DIRTY, CycleStatus.WAITING_DRIVER)
OPEN_BATCH_STATUSES: tuple[BatchStatus, ...] = (BatchStatus.PENDING, BatchStatus.IN_PROGRESS)

logger = get_logger(__name__)


def _failure(cycle_id: str, exc: LifecycleError) -> CycleFailure:
    return CycleFailure(cycle_id=cycle_id, error=type(exc).__name__, detail=exc.as_dict())


class PickupOrchestrator:
    """Groups ready cycles into pickup runs and drives them as a unit.

    None of the batch workflows is atomic. Steps are ordered so that stopping
    after any of them leaves a state the same call can finish on retry, and
    per-cycle outcomes are reported in a ``BatchOperationResult`` instead of
    being rolled back.
    """

    def __init__(
        self,
        gateway: PersistenceGateway | None = None,
        cycles: CycleManager | None = None,
        ledger: AssetLedger | None = None,
        bus: EventBus | None = None,
        revert_attempts: int = CANCEL_REVERT_ATTEMPTS,
    ) -> None:
        self._gateway = gateway or SqlGateway()
        self._bus = bus or event_bus
        self._ledger = ledger or AssetLedger(self._gateway, self._bus)
        self._cycles = cycles or CycleManager(self._gateway, ledger=self._ledger, bus=self._bus)
        self._revert_attempts = max(1, revert_attempts)

    def _require(self, batch_id: str) -> PickupBatch:
        batch = self._gateway.find_by_id(PickupBatch, batch_id)
        if batch is None:
            raise NotFoundError("pickup batch not found", entity_type="pickup_batches", entity_id=batch_id)
        return batch

    def _items(self, batch_id: str) -> list[PickupItem]:
        return self._gateway.find_all(
            PickupItem,
            PickupItemFilter(batch_id=batch_id),
            order_by=(col(PickupItem.id).asc(),),
        )

    def _notify(self, batch_id: str, actor_id: str | None, **payload: Any) -> None:
        self._bus.publish_change(BATCH_CHANGED, "pickup_batch", batch_id, actor_id=actor_id, payload=payload)

    def _ensure_not_completed(self, batch: PickupBatch, attempted: str) -> None:
        if batch.status == BatchStatus.COMPLETED:
            raise ValidationError(
                "pickup batch is already completed",
                entity_type="pickup_batches",
                entity_id=batch.id,
                attempted=attempted,
                observed=str(batch.status),
            )

    def _discard_orphan_batch(self, batch_id: str) -> None:
        try:
            self._gateway.delete(PickupBatch, batch_id)
        except LifecycleError:
            logger.exception("orphan pickup batch could not be removed", batch_id=batch_id)
        else:
            logger.info("orphan pickup batch removed", batch_id=batch_id)

    def _claim(self, cycle: Cycle, batch_id: str) -> None:
        """Mark ``cycle`` as belonging to ``batch_id`` unless another batch got there first."""
        try:
            self._gateway.update(
                Cycle,
                cycle.id,
                {"pickup_batch_id": batch_id},
                expected={"pickup_batch_id": cycle.pickup_batch_id, "status": BATCHABLE_CYCLE_STATUSES},
            )
        except ConflictError as exc:
            current = self._gateway.find_by_id(Cycle, cycle.id)
            raise ConflictError(
                "cycle was taken by another pickup batch",
                entity_type="cycles",
                entity_id=cycle.id,
                attempted="create_batch",
                observed=exc.observed,
                detail={"pickup_batch_id": None if current is None else current.pickup_batch_id},
            ) from exc

    def _drop_item(self, batch_id: str, cycle_id: str | None = None) -> None:
        spec = PickupItemFilter(batch_id=batch_id, cycle_ids=None if cycle_id is None else (cycle_id,))
        try:
            self._gateway.delete_where(PickupItem, spec)
        except LifecycleError:
            logger.exception("pickup items could not be removed", batch_id=batch_id, cycle_id=cycle_id)

    def create_batch(
        self,
        cycle_ids: Sequence[str],
        scheduled_date: date | None = None,
        assigned_driver: str | None = None,
        notes: str | None = None,
        created_by: str | None = None,
    ) -> BatchOperationResult:
        ids = list(cycle_ids)
        if not ids:
            raise ValidationError("a pickup batch needs at least one cycle", entity_type="pickup_batches")
        if len(set(ids)) != len(ids):
            duplicates = sorted({cycle_id for cycle_id in ids if ids.count(cycle_id) > 1})
            raise ValidationError(
                "cycle ids must be distinct",
                entity_type="pickup_batches",
                attempted="create_batch",
                detail={"duplicates": duplicates},
            )

        cycles = {cycle.id: cycle for cycle in self._gateway.find_all(Cycle, CycleFilter(ids=tuple(ids)))}
        missing = [cycle_id for cycle_id in ids if cycle_id not in cycles]
        if missing:
            raise NotFoundError(
                "some cycles do not exist",
                entity_type="cycles",
                entity_id=missing[0],
                attempted="create_batch",
                detail={"missing": missing},
            )
        not_ready = {
            cycle_id: str(cycle.status)
            for cycle_id, cycle in cycles.items()
            if cycle.status not in BATCHABLE_CYCLE_STATUSES
        }
        if not_ready:
            raise ValidationError(
                "only dirty or waiting_driver cycles can be picked up",
                entity_type="cycles",
                attempted="create_batch",
                detail={"statuses": not_ready},
            )

        claims = {cycle.id: cycle.pickup_batch_id for cycle in cycles.values() if cycle.pickup_batch_id is not None}
        if claims:
            open_batches = {
                batch.id
                for batch in self._gateway.find_all(
                    PickupBatch,
                    BatchFilter(ids=tuple(set(claims.values())), statuses=OPEN_BATCH_STATUSES),
                )
            }
            conflicts = {cycle_id: claim for cycle_id, claim in claims.items() if claim in open_batches}
            if conflicts:
                raise ConflictError(
                    "some cycles already belong to an open pickup batch",
                    entity_type="cycles",
                    attempted="create_batch",
                    detail={"linked": conflicts},
                )

        actor = created_by or SYSTEM_ACTOR
        batch = self._gateway.create(
            PickupBatch(
                status=BatchStatus.PENDING,
                scheduled_date=scheduled_date,
                assigned_driver=assigned_driver,
                notes=notes,
                created_by=created_by,
            )
        )
        try:
            self._gateway.create_many([PickupItem(batch_id=batch.id, cycle_id=cycle_id) for cycle_id in ids])
        except LifecycleError as exc:
            logger.error("pickup items could not be created", batch_id=batch.id, cycles=len(ids), error=str(exc))
            self._discard_orphan_batch(batch.id)
            raise UpstreamError(
                "pickup batch could not be created",
                entity_type="pickup_batches",
                entity_id=batch.id,
                attempted="create_batch",
                detail={"cause": exc.as_dict()},
            ) from exc

        result = BatchOperationResult(batch_id=batch.id, status=BatchStatus.PENDING)
        claimed: list[str] = []
        for cycle_id in ids:
            try:
                self._claim(cycles[cycle_id], batch.id)
            except LifecycleError as exc:
                logger.warning("cycle claimed elsewhere", batch_id=batch.id, cycle_id=cycle_id, error=str(exc))
                result.failed.append(_failure(cycle_id, exc))
                self._drop_item(batch.id, cycle_id)
            else:
                claimed.append(cycle_id)

        if not claimed:
            self._drop_item(batch.id)
            self._discard_orphan_batch(batch.id)
            raise ConflictError(
                "none of the cycles could be added to the pickup batch",
                entity_type="pickup_batches",
                entity_id=batch.id,
                attempted="create_batch",
                detail={"failed": [failure.model_dump() for failure in result.failed]},
            )

        for cycle_id in claimed:
            if cycles[cycle_id].status == CycleStatus.WAITING_DRIVER:
                result.succeeded.append(cycle_id)
                result.skipped.append(cycle_id)
                continue
            try:
                self._cycles.request_pickup(cycle_id, actor, batch_id=batch.id)
            except LifecycleError as exc:
                logger.warning(
                    "cycle could not join pickup batch",
                    batch_id=batch.id,
                    cycle_id=cycle_id,
                    error=str(exc),
                )
                result.failed.append(_failure(cycle_id, exc))
            else:
                result.succeeded.append(cycle_id)

        logger.info(
            "pickup batch created",
            batch_id=batch.id,
            cycles=len(ids),
            succeeded=len(result.succeeded),
            failed=len(result.failed),
        )
        self._notify(batch.id, created_by, action="created", status=str(batch.status))
        return result

    def start_batch(self, batch_id: str, performed_by: str | None = None) -> PickupBatch:
        batch = self._require(batch_id)
        if not can_batch_transition(batch.status, BatchStatus.IN_PROGRESS):
            raise ValidationError(
                f"cannot start a batch that is {batch.status}",
                entity_type="pickup_batches",
                entity_id=batch_id,
                attempted="start_batch",
                observed=str(batch.status),
            )
        try:
            updated = self._gateway.update(
                PickupBatch,
                batch_id,
                {"status": BatchStatus.IN_PROGRESS, "started_at": now_utc()},
                expected={"status": BatchStatus.PENDING},
            )
        except ConflictError as exc:
            raise ConflictError(
                "pickup batch changed before it could start",
                entity_type="pickup_batches",
                entity_id=batch_id,
                attempted="start_batch",
                observed=exc.observed,
            ) from exc
        logger.info("pickup batch started", batch_id=batch_id)
        self._notify(batch_id, performed_by, action="started", status=str(updated.status))
        return updated

    def toggle_item_picked(
        self,
        item_id: str,
        picked: bool,
        notes: str | None = None,
        performed_by: str | None = None,
    ) -> PickupItem:
        item = self._gateway.find_by_id(PickupItem, item_id)
        if item is None:
            raise NotFoundError("pickup item not found", entity_type="pickup_items", entity_id=item_id)
        batch = self._require(item.batch_id)
        self._ensure_not_completed(batch, "toggle_item_picked")

        fields: dict[str, Any] = {"picked_up": picked, "picked_up_at": now_utc() if picked else None}
        if notes is not None:
            fields["notes"] = notes
        updated = self._gateway.update(PickupItem, item_id, fields)
        self._notify(batch.id, performed_by, action="item_picked", item_id=item_id, picked=picked)
        return updated

    def complete_batch(self, batch_id: str, performed_by: str = SYSTEM_ACTOR) -> BatchOperationResult:
        batch = self._require(batch_id)
        if batch.status == BatchStatus.COMPLETED:
            return BatchOperationResult(batch_id=batch_id, status=BatchStatus.COMPLETED, noop=True)

        items = self._items(batch_id)
        cycles = {
            cycle.id: cycle
            for cycle in self._gateway.find_all(Cycle, CycleFilter(ids=tuple(item.cycle_id for item in items)))
        }
        result = BatchOperationResult(batch_id=batch_id, status=BatchStatus(batch.status))
        for item in items:
            cycle = cycles.get(item.cycle_id)
            try:
                if cycle is None:
                    raise NotFoundError("cycle not found", entity_type="cycles", entity_id=item.cycle_id)
                if cycle.status == CycleStatus.COMPLETED:
                    # completed earlier; repeat only the steps that may have been missed
                    self._cycles.complete(cycle.id, performed_by, batch_id=batch_id)
                    result.skipped.append(cycle.id)
                elif cycle.pickup_batch_id != batch_id:
                    logger.warning(
                        "cycle belongs to another pickup batch",
                        batch_id=batch_id,
                        cycle_id=cycle.id,
                        pickup_batch_id=cycle.pickup_batch_id,
                    )
                    result.skipped.append(cycle.id)
                    continue
                elif cycle.status == CycleStatus.WAITING_DRIVER:
                    self._cycles.complete(cycle.id, performed_by, batch_id=batch_id)
                    result.succeeded.append(cycle.id)
                else:
                    raise ValidationError(
                        "cycle is not waiting for a driver",
                        entity_type="cycles",
                        entity_id=cycle.id,
                        attempted="complete",
                        observed=str(cycle.status),
                    )
                if not item.picked_up:
                    self._gateway.update(PickupItem, item.id, {"picked_up": True, "picked_up_at": now_utc()})
            except LifecycleError as exc:
                logger.warning("cycle not completed", batch_id=batch_id, cycle_id=item.cycle_id, error=str(exc))
                result.failed.append(_failure(item.cycle_id, exc))

        if result.failed:
            logger.warning(
                "pickup batch left open",
                batch_id=batch_id,
                succeeded=len(result.succeeded),
                failed=len(result.failed),
            )
            return result

        try:
            self._gateway.update(
                PickupBatch,
                batch_id,
                {"status": BatchStatus.COMPLETED, "completed_at": now_utc()},
                expected={"status": OPEN_BATCH_STATUSES},
            )
        except ConflictError as exc:
            if exc.observed != BatchStatus.COMPLETED:
                raise
            logger.info("pickup batch completed concurrently", batch_id=batch_id)
        result.status = BatchStatus.COMPLETED
        logger.info("pickup batch completed", batch_id=batch_id, cycles=len(items), skipped=len(result.skipped))
        self._notify(batch_id, performed_by, action="completed", status=str(BatchStatus.COMPLETED))
        return result

    def _revert_once(self, cycle_id: str, batch_id: str, performed_by: str) -> bool:
        cycle = self._gateway.find_by_id(Cycle, cycle_id)
        if cycle is None:
            raise NotFoundError("cycle not found", entity_type="cycles", entity_id=cycle_id)
        if cycle.pickup_batch_id != batch_id:
            # never joined this batch, or already released by an earlier attempt
            return False
        if cycle.status == CycleStatus.DIRTY:
            self._gateway.update(
                Cycle,
                cycle_id,
                {"pickup_batch_id": None},
                expected={"pickup_batch_id": batch_id, "status": CycleStatus.DIRTY},
            )
            return False
        if not can_cycle_transition(cycle.status, CycleEvent.CANCEL_PICKUP):
            raise ValidationError(
                "cycle can no longer be returned to dirty",
                entity_type="cycles",
                entity_id=cycle_id,
                attempted="cancel_pickup",
                observed=str(cycle.status),
            )
        self._cycles.cancel_pickup(cycle_id, performed_by, batch_id=batch_id)
        return True

    def _revert(self, cycle_id: str, batch_id: str, performed_by: str) -> bool:
        """Force one cycle back to dirty. Returns ``False`` if it already was."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._revert_once(cycle_id, batch_id, performed_by)
            except (UpstreamError, ConflictError) as exc:
                if attempt >= self._revert_attempts:
                    raise
                logger.warning(
                    "cycle revert attempt failed",
                    batch_id=batch_id,
                    cycle_id=cycle_id,
                    attempt=attempt,
                    error=str(exc),
                )

    def cancel_batch(self, batch_id: str, performed_by: str = SYSTEM_ACTOR) -> BatchOperationResult:
        batch = self._require(batch_id)
        self._ensure_not_completed(batch, "cancel_batch")

        items = self._items(batch_id)
        result = BatchOperationResult(batch_id=batch_id, status=BatchStatus(batch.status))
        for item in items:
            try:
                reverted = self._revert(item.cycle_id, batch_id, performed_by)
            except LifecycleError as exc:
                result.failed.append(_failure(item.cycle_id, exc))
                continue
            if reverted:
                result.succeeded.append(item.cycle_id)
            else:
                result.skipped.append(item.cycle_id)

        if result.failed:
            result.partially_reverted = True
            logger.warning(
                "pickup batch partially reverted",
                batch_id=batch_id,
                reverted=len(result.succeeded) + len(result.skipped),
                failed=len(result.failed),
            )
            self._notify(batch_id, performed_by, action="cancel_failed", status=str(batch.status))
            return result

        self._gateway.delete_where(PickupItem, PickupItemFilter(batch_id=batch_id))
        self._gateway.delete(PickupBatch, batch_id)
        result.status = None
        result.deleted = True
        logger.info("pickup batch cancelled", batch_id=batch_id, cycles=len(items))
        self._notify(batch_id, performed_by, action="cancelled", deleted=True)
        return result

    def update_batch(self, batch_id: str, update: BatchDetailsUpdate, performed_by: str | None = None) -> PickupBatch:
        batch = self._require(batch_id)
        self._ensure_not_completed(batch, "update_batch")
        fields = {name: getattr(update, name) for name in update.model_fields_set}
        if not fields:
            return batch
        try:
            updated = self._gateway.update(PickupBatch, batch_id, fields, expected={"status": OPEN_BATCH_STATUSES})
        except ConflictError as exc:
            raise ConflictError(
                "pickup batch completed before the edit could apply",
                entity_type="pickup_batches",
                entity_id=batch_id,
                attempted="update_batch",
                observed=exc.observed,
            ) from exc
        self._notify(batch_id, performed_by, action="updated", fields=sorted(fields))
        return updated

    def get_batch(self, batch_id: str) -> BatchDetailRead | None:
        batch = self._gateway.find_by_id(PickupBatch, batch_id)
        if batch is None:
            return None
        return BatchDetailRead(
            batch=PickupBatchRead.model_validate(batch),
            items=[PickupItemRead.model_validate(item) for item in self._items(batch_id)],
        )

    def list_batches(self, statuses: Sequence[BatchStatus] | None = None) -> list[PickupBatch]:
        return self._gateway.find_all(
            PickupBatch,
            BatchFilter(statuses=None if statuses is None else tuple(statuses)),
            order_by=(col(PickupBatch.created_at).desc(),),
        )

    def list_active_batches(self) -> list[PickupBatch]:
        return self.list_batches(OPEN_BATCH_STATUSES)
