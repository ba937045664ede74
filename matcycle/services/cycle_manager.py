from __future__ import annotations

import os
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlmodel import col

from matcycle.domain.filters import CycleFilter
from matcycle.domain.models import (
    Cycle,
    CycleDetailsUpdate,
    GeoPoint,
    as_utc,
    now_utc,
)
from matcycle.domain.state_machine import (
    TERMINAL_CYCLE_STATUSES,
    AssetStatus,
    CycleEvent,
    CycleStatus,
    cycle_target,
    sources_for,
)
from matcycle.infra.events import CYCLE_CHANGED, EventBus, event_bus
from matcycle.infra.gateway import PersistenceGateway, SqlGateway
from matcycle.infra.logging import get_logger
from matcycle.services.asset_ledger import AssetLedger
from matcycle.services.audit_trail import (
    ACTION_COMPLETED,
    ACTION_CONTRACT_MARKED,
    ACTION_CONTRACT_SIGNED,
    ACTION_MARKED_DIRTY,
    ACTION_PICKUP_CANCELLED,
    ACTION_PICKUP_REQUESTED,
    ACTION_PUT_ON_TEST,
    ACTION_TEST_EXTENDED,
    AuditTrail,
)
from matcycle.services.errors import (
    ConflictError,
    LifecycleError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)

TRIAL_LENGTH = timedelta(days=7)
MAX_EXTENSION_DAYS = int(os.getenv("MAX_EXTENSION_DAYS", "365"))

OPEN_CYCLE_STATUSES: tuple[CycleStatus, ...] = tuple(
    status for status in CycleStatus if status not in TERMINAL_CYCLE_STATUSES
)

Clock = Callable[[], datetime]
# (fields to write, history metadata) for one transition
ChangeBuilder = Callable[[Cycle, datetime], tuple[dict[str, Any], dict[str, Any]]]

logger = get_logger(__name__)


def _iso(value: datetime | None) -> str | None:
    normalized = as_utc(value)
    return None if normalized is None else normalized.isoformat()


class CycleManager:
    """Owns the status of every cycle.

    Each transition is a conditional write on the status observed just before
    it, followed by exactly one history record and one ``cycle.changed``
    notification. Illegal (status, event) pairs raise ``ValidationError``
    before anything is written.
    """

    def __init__(
        self,
        gateway: PersistenceGateway | None = None,
        ledger: AssetLedger | None = None,
        audit: AuditTrail | None = None,
        bus: EventBus | None = None,
        clock: Clock = now_utc,
    ) -> None:
        self._gateway = gateway or SqlGateway()
        self._bus = bus or event_bus
        self._ledger = ledger or AssetLedger(self._gateway, self._bus)
        self._audit = audit or AuditTrail(self._gateway)
        self._clock = clock

    def _require(self, cycle_id: str) -> Cycle:
        cycle = self._gateway.find_by_id(Cycle, cycle_id)
        if cycle is None:
            raise NotFoundError("cycle not found", entity_type="cycles", entity_id=cycle_id)
        return cycle

    def _notify(self, cycle: Cycle, performed_by: str | None, **payload: Any) -> None:
        self._bus.publish_change(
            CYCLE_CHANGED,
            "cycle",
            cycle.id,
            actor_id=performed_by,
            payload={"status": str(cycle.status), "asset_id": cycle.asset_id, **payload},
        )

    def _transition(
        self,
        cycle_id: str,
        event: CycleEvent,
        action: str,
        performed_by: str,
        build: ChangeBuilder,
        *,
        guard_fields: Sequence[str] = (),
        after: Callable[[Cycle], None] | None = None,
    ) -> Cycle:
        cycle = self._require(cycle_id)
        source = CycleStatus(cycle.status)
        target = cycle_target(source, event)
        if target is None:
            raise ValidationError(
                f"cannot {event} a cycle that is {source}",
                entity_type="cycles",
                entity_id=cycle_id,
                attempted=str(event),
                observed=str(source),
                detail={"allowed_from": sorted(str(item) for item in sources_for(event))},
            )

        now = self._clock()
        fields, metadata = build(cycle, now)
        fields = {**fields, "status": target, "updated_at": now}
        expected: dict[str, Any] = {"status": source}
        for name in guard_fields:
            expected[name] = getattr(cycle, name)

        try:
            updated = self._gateway.update(Cycle, cycle_id, fields, expected=expected)
        except ConflictError as exc:
            logger.info(
                "cycle transition lost a race",
                cycle_id=cycle_id,
                cycle_event=str(event),
                expected_status=str(source),
                observed_status=exc.observed,
            )
            raise ConflictError(
                f"cycle changed before {event} could apply",
                entity_type="cycles",
                entity_id=cycle_id,
                attempted=str(event),
                observed=exc.observed,
                detail=exc.detail,
            ) from exc

        try:
            self._audit.record(
                cycle_id=cycle_id,
                action=action,
                old_status=source,
                new_status=target,
                performed_by=performed_by,
                metadata=metadata,
                at=now,
            )
        except (UpstreamError, ConflictError) as exc:
            logger.error(
                "cycle transition applied without history",
                cycle_id=cycle_id,
                cycle_event=str(event),
                old_status=str(source),
                new_status=str(target),
            )
            if after is not None:
                # status is already written; run the follow-up step anyway
                try:
                    after(updated)
                except LifecycleError:
                    logger.exception("post-transition step failed", cycle_id=cycle_id, cycle_event=str(event))
            raise UpstreamError(
                "transition applied but its history record could not be written",
                entity_type="cycles",
                entity_id=cycle_id,
                attempted=str(event),
                observed=str(target),
                detail={"transition_applied": True, "action": action},
            ) from exc

        logger.info(
            "cycle transition",
            cycle_id=cycle_id,
            cycle_event=str(event),
            old_status=str(source),
            new_status=str(target),
            performed_by=performed_by,
        )
        if after is not None:
            after(updated)
        self._notify(updated, performed_by, event=str(event), previous_status=str(source))
        return updated

    def open_cycle(
        self,
        asset_id: str,
        performed_by: str,
        mat_type: str | None = None,
        notes: str | None = None,
    ) -> Cycle:
        asset = self._ledger.get_asset(asset_id)
        if asset is None:
            raise NotFoundError("asset not found", entity_type="assets", entity_id=asset_id)

        existing = self._gateway.find_all(
            Cycle,
            CycleFilter(asset_id=asset_id, exclude_statuses=(CycleStatus.COMPLETED,)),
            limit=1,
        )
        if existing:
            cycle = existing[0]
            if cycle.status == CycleStatus.CLEAN and asset.status == AssetStatus.AVAILABLE:
                # cycle row written, asset flip missing: finish the earlier attempt
                logger.warning("resuming interrupted open_cycle", asset_id=asset_id, cycle_id=cycle.id)
                self._ledger.assign(asset_id)
                self._notify(cycle, performed_by, event="open")
                return cycle
            raise ConflictError(
                "asset already has an open cycle",
                entity_type="assets",
                entity_id=asset_id,
                attempted="open_cycle",
                observed=str(asset.status),
                detail={"cycle_id": cycle.id, "cycle_status": str(cycle.status)},
            )

        if asset.status != AssetStatus.AVAILABLE:
            raise ValidationError(
                "only available codes can be put into use",
                entity_type="assets",
                entity_id=asset_id,
                attempted="open_cycle",
                observed=str(asset.status),
            )

        now = self._clock()
        cycle = self._gateway.create(
            Cycle(
                asset_id=asset_id,
                owner_id=asset.owner_id,
                status=CycleStatus.CLEAN,
                mat_type=mat_type,
                notes=notes,
                created_at=now,
                updated_at=now,
            )
        )
        self._ledger.assign(asset_id)
        logger.info("cycle opened", cycle_id=cycle.id, asset_id=asset_id, code=asset.code, performed_by=performed_by)
        self._notify(cycle, performed_by, event="open")
        return cycle

    def assign_to_trial(
        self,
        cycle_id: str,
        performed_by: str,
        company_id: str,
        contact_id: str | None = None,
        start_at: datetime | None = None,
        location: GeoPoint | None = None,
        notes: str | None = None,
    ) -> Cycle:
        if not company_id:
            raise ValidationError(
                "company_id is required",
                entity_type="cycles",
                entity_id=cycle_id,
                attempted=str(CycleEvent.ASSIGN_TO_TRIAL),
            )

        def build(cycle: Cycle, now: datetime) -> tuple[dict[str, Any], dict[str, Any]]:
            fields: dict[str, Any] = {
                "company_id": company_id,
                "contact_id": contact_id,
                "test_start_at": as_utc(start_at) or now,
            }
            if location is not None:
                fields["location_lat"] = location.lat
                fields["location_lng"] = location.lng
            if notes is not None:
                fields["notes"] = notes
            return fields, {"company_id": company_id, "contact_id": contact_id}

        return self._transition(cycle_id, CycleEvent.ASSIGN_TO_TRIAL, ACTION_PUT_ON_TEST, performed_by, build)

    def mark_soiled(self, cycle_id: str, performed_by: str) -> Cycle:
        def build(cycle: Cycle, now: datetime) -> tuple[dict[str, Any], dict[str, Any]]:
            return {"test_end_at": now}, {"test_end_at": _iso(now)}

        return self._transition(cycle_id, CycleEvent.MARK_SOILED, ACTION_MARKED_DIRTY, performed_by, build)

    def sign_contract(self, cycle_id: str, performed_by: str, frequency: str) -> Cycle:
        if not frequency or not frequency.strip():
            raise ValidationError(
                "contract frequency is required",
                entity_type="cycles",
                entity_id=cycle_id,
                attempted=str(CycleEvent.SIGN_CONTRACT),
            )
        value = frequency.strip()

        def build(cycle: Cycle, now: datetime) -> tuple[dict[str, Any], dict[str, Any]]:
            fields = {
                "contract_signed": True,
                "contract_signed_at": now,
                "contract_frequency": value,
                "pickup_requested_at": now,
            }
            return fields, {"frequency": value}

        return self._transition(cycle_id, CycleEvent.SIGN_CONTRACT, ACTION_CONTRACT_SIGNED, performed_by, build)

    def mark_contract_signed(self, cycle_id: str, performed_by: str, frequency: str | None = None) -> Cycle:
        """Record a signed contract without moving the cycle.

        For cycles already waiting for a driver, where ``sign_contract`` no
        longer applies.
        """
        cycle = self._require(cycle_id)
        if cycle.status in TERMINAL_CYCLE_STATUSES:
            raise ValidationError(
                "completed cycles cannot take a contract",
                entity_type="cycles",
                entity_id=cycle_id,
                attempted="mark_contract_signed",
                observed=str(cycle.status),
            )
        value = frequency.strip() if frequency and frequency.strip() else cycle.contract_frequency
        now = self._clock()
        fields = {
            "contract_signed": True,
            "contract_signed_at": now,
            "contract_frequency": value,
            "updated_at": now,
        }
        try:
            updated = self._gateway.update(Cycle, cycle_id, fields, expected={"status": cycle.status})
        except ConflictError as exc:
            raise ConflictError(
                "cycle changed before the contract could be recorded",
                entity_type="cycles",
                entity_id=cycle_id,
                attempted="mark_contract_signed",
                observed=exc.observed,
            ) from exc
        self._audit.record(
            cycle_id=cycle_id,
            action=ACTION_CONTRACT_MARKED,
            old_status=cycle.status,
            new_status=cycle.status,
            performed_by=performed_by,
            metadata={"frequency": value},
            at=now,
        )
        logger.info("contract recorded", cycle_id=cycle_id, status=str(cycle.status), performed_by=performed_by)
        self._notify(updated, performed_by, event="mark_contract_signed")
        return updated

    def request_pickup(self, cycle_id: str, performed_by: str, batch_id: str | None = None) -> Cycle:
        def build(cycle: Cycle, now: datetime) -> tuple[dict[str, Any], dict[str, Any]]:
            return {"pickup_requested_at": now}, _batch_metadata(batch_id)

        return self._transition(cycle_id, CycleEvent.REQUEST_PICKUP, ACTION_PICKUP_REQUESTED, performed_by, build)

    def cancel_pickup(self, cycle_id: str, performed_by: str, batch_id: str | None = None) -> Cycle:
        def build(cycle: Cycle, now: datetime) -> tuple[dict[str, Any], dict[str, Any]]:
            if cycle.pickup_batch_id is not None and cycle.pickup_batch_id != batch_id:
                raise ValidationError(
                    "cycle belongs to a pickup batch; cancel the batch instead",
                    entity_type="cycles",
                    entity_id=cycle.id,
                    attempted=str(CycleEvent.CANCEL_PICKUP),
                    observed=str(cycle.status),
                    detail={"pickup_batch_id": cycle.pickup_batch_id},
                )
            return {"pickup_requested_at": None, "pickup_batch_id": None}, _batch_metadata(batch_id)

        return self._transition(
            cycle_id,
            CycleEvent.CANCEL_PICKUP,
            ACTION_PICKUP_CANCELLED,
            performed_by,
            build,
            guard_fields=("pickup_batch_id",),
        )

    def _release_asset(self, cycle: Cycle) -> None:
        try:
            released = self._ledger.ensure_released(cycle.asset_id)
        except (UpstreamError, ConflictError) as exc:
            logger.error("asset release failed after completion", cycle_id=cycle.id, asset_id=cycle.asset_id)
            raise UpstreamError(
                "cycle completed but its asset could not be released",
                entity_type="assets",
                entity_id=cycle.asset_id,
                attempted="release",
                observed=exc.observed,
                detail={"cycle_id": cycle.id, "cycle_completed": True},
            ) from exc
        if released:
            logger.info("asset released", cycle_id=cycle.id, asset_id=cycle.asset_id)

    def _finish_completion(self, cycle: Cycle, performed_by: str, batch_id: str | None) -> Cycle:
        """Repeat the follow-up steps of an earlier ``complete`` that stopped midway."""
        history = self._audit.history_for_cycle(cycle.id)
        if not any(item.action == ACTION_COMPLETED for item in history):
            self._audit.record(
                cycle_id=cycle.id,
                action=ACTION_COMPLETED,
                old_status=CycleStatus.WAITING_DRIVER,
                new_status=CycleStatus.COMPLETED,
                performed_by=performed_by,
                metadata={"asset_id": cycle.asset_id, "batch_id": batch_id, "recovered": True},
                at=as_utc(cycle.driver_pickup_at) or self._clock(),
            )
            logger.warning("missing completion history recorded", cycle_id=cycle.id)
        self._release_asset(cycle)
        return cycle

    def complete(self, cycle_id: str, performed_by: str, batch_id: str | None = None) -> Cycle:
        cycle = self._require(cycle_id)
        if cycle.status == CycleStatus.COMPLETED:
            return self._finish_completion(cycle, performed_by, batch_id)

        def build(cycle: Cycle, now: datetime) -> tuple[dict[str, Any], dict[str, Any]]:
            return {"driver_pickup_at": now}, {"asset_id": cycle.asset_id, "batch_id": batch_id}

        try:
            return self._transition(
                cycle_id,
                CycleEvent.COMPLETE,
                ACTION_COMPLETED,
                performed_by,
                build,
                after=self._release_asset,
            )
        except ConflictError as exc:
            if exc.observed != CycleStatus.COMPLETED:
                raise
            return self._finish_completion(self._require(cycle_id), performed_by, batch_id)

    def extend(self, cycle_id: str, performed_by: str, days: int = 7) -> Cycle:
        if isinstance(days, bool) or not isinstance(days, int) or not 1 <= days <= MAX_EXTENSION_DAYS:
            raise ValidationError(
                f"days must be an integer between 1 and {MAX_EXTENSION_DAYS}",
                entity_type="cycles",
                entity_id=cycle_id,
                attempted=str(CycleEvent.EXTEND),
                detail={"days": days},
            )

        def build(cycle: Cycle, now: datetime) -> tuple[dict[str, Any], dict[str, Any]]:
            start = as_utc(cycle.test_start_at)
            if start is None:
                raise ValidationError(
                    "trial has no start date to extend",
                    entity_type="cycles",
                    entity_id=cycle.id,
                    attempted=str(CycleEvent.EXTEND),
                    observed=str(cycle.status),
                )
            new_end = start + TRIAL_LENGTH + timedelta(days=days)
            new_start = new_end - TRIAL_LENGTH
            count = cycle.extensions_count + 1
            fields = {"test_start_at": new_start, "extensions_count": count}
            return fields, {"days": days, "new_end_date": _iso(new_end), "extensions_count": count}

        return self._transition(
            cycle_id,
            CycleEvent.EXTEND,
            ACTION_TEST_EXTENDED,
            performed_by,
            build,
            guard_fields=("extensions_count",),
        )

    def update_details(
        self,
        cycle_id: str,
        update: CycleDetailsUpdate,
        performed_by: str | None = None,
    ) -> Cycle:
        cycle = self._require(cycle_id)
        if cycle.status in TERMINAL_CYCLE_STATUSES:
            raise ValidationError(
                "completed cycles cannot be edited",
                entity_type="cycles",
                entity_id=cycle_id,
                attempted="update_details",
                observed=str(cycle.status),
            )

        fields: dict[str, Any] = {}
        for name in update.model_fields_set:
            if name == "location":
                fields["location_lat"] = update.location.lat if update.location else None
                fields["location_lng"] = update.location.lng if update.location else None
            elif name == "test_start_at":
                fields["test_start_at"] = as_utc(update.test_start_at)
            else:
                fields[name] = getattr(update, name)
        if not fields:
            return cycle
        fields["updated_at"] = self._clock()

        try:
            updated = self._gateway.update(Cycle, cycle_id, fields, expected={"status": OPEN_CYCLE_STATUSES})
        except ConflictError as exc:
            raise ConflictError(
                "cycle completed before the edit could apply",
                entity_type="cycles",
                entity_id=cycle_id,
                attempted="update_details",
                observed=exc.observed,
                detail=exc.detail,
            ) from exc
        logger.info("cycle details updated", cycle_id=cycle_id, fields=sorted(update.model_fields_set))
        self._notify(updated, performed_by, event="update_details")
        return updated

    def get_cycle(self, cycle_id: str) -> Cycle | None:
        return self._gateway.find_by_id(Cycle, cycle_id)

    def list_cycles(
        self,
        spec: CycleFilter | None = None,
        *,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Cycle]:
        return self._gateway.find_all(
            Cycle,
            spec,
            order_by=(col(Cycle.created_at).desc(),),
            limit=limit,
            offset=offset,
        )

    def list_active(self, owner_id: str) -> list[Cycle]:
        return self.list_cycles(CycleFilter(owner_id=owner_id, exclude_statuses=(CycleStatus.COMPLETED,)))


def _batch_metadata(batch_id: str | None) -> dict[str, Any]:
    return {} if batch_id is None else {"batch_id": batch_id}
