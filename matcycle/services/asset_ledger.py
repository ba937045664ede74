from __future__ import annotations

import os
import re
import secrets
from collections.abc import Callable, Iterable
from typing import Any

from sqlmodel import col

from matcycle.domain.filters import AssetFilter, CycleFilter
from matcycle.domain.models import Asset, AssetStatsRead, Cycle, now_utc
from matcycle.domain.state_machine import AssetStatus, CycleStatus, can_asset_transition
from matcycle.infra.events import ASSET_CHANGED, EventBus, event_bus
from matcycle.infra.gateway import PersistenceGateway, SqlGateway
from matcycle.infra.logging import get_logger
from matcycle.services.errors import ConflictError, NotFoundError, ValidationError

CODE_ALPHABET = "23456789ABCDEFGHJKMNPQRSTUVWXYZ"
CODE_SUFFIX_LENGTH = 4
CODE_ATTEMPTS_PER_CODE = int(os.getenv("CODE_ATTEMPTS_PER_CODE", "100"))
MAX_CODES_PER_ALLOCATION = int(os.getenv("MAX_CODES_PER_ALLOCATION", "1000"))

_PREFIX_PATTERN = re.compile(r"^[A-Z0-9]{1,10}$")

SuffixFactory = Callable[[], str]

logger = get_logger(__name__)


def random_suffix() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_SUFFIX_LENGTH))


def normalize_prefix(prefix: str) -> str:
    value = (prefix or "").strip().upper()
    if not _PREFIX_PATTERN.match(value):
        raise ValidationError(
            "code prefix must be 1 to 10 letters or digits",
            entity_type="assets",
            attempted="allocate",
            detail={"prefix": prefix},
        )
    return value


def generate_unique_codes(
    prefix: str,
    count: int,
    existing: Iterable[str],
    *,
    suffix_factory: SuffixFactory = random_suffix,
    attempts_per_code: int = CODE_ATTEMPTS_PER_CODE,
) -> list[str]:
    """Draw up to ``count`` fresh ``PREFIX-XXXX`` codes.

    Codes already in ``existing`` or drawn earlier in the same call are
    rejected. Drawing stops after ``count * attempts_per_code`` attempts, so the
    result may be shorter than ``count`` when the suffix space is exhausted.
    """
    taken = set(existing)
    codes: list[str] = []
    budget = count * attempts_per_code
    attempts = 0
    while len(codes) < count and attempts < budget:
        attempts += 1
        code = f"{prefix}-{suffix_factory()}"
        if code in taken:
            continue
        taken.add(code)
        codes.append(code)
    return codes


class AssetLedger:
    def __init__(
        self,
        gateway: PersistenceGateway | None = None,
        bus: EventBus | None = None,
        suffix_factory: SuffixFactory | None = None,
    ) -> None:
        self._gateway = gateway or SqlGateway()
        self._bus = bus or event_bus
        self._suffix_factory = suffix_factory or random_suffix

    def _require(self, asset_id: str) -> Asset:
        asset = self._gateway.find_by_id(Asset, asset_id)
        if asset is None:
            raise NotFoundError("asset not found", entity_type="assets", entity_id=asset_id)
        return asset

    def _notify(self, asset: Asset, action: str, actor_id: str | None = None) -> None:
        self._bus.publish_change(
            ASSET_CHANGED,
            "asset",
            asset.id,
            actor_id=actor_id,
            payload={"action": action, "code": asset.code, "status": str(asset.status)},
        )

    def _flip(
        self,
        asset_id: str,
        source: AssetStatus,
        target: AssetStatus,
        attempted: str,
        extra: dict[str, Any] | None = None,
    ) -> Asset:
        asset = self._require(asset_id)
        if asset.status != source or not can_asset_transition(source, target):
            raise ValidationError(
                f"{attempted} needs a {source} asset, found {asset.status}",
                entity_type="assets",
                entity_id=asset_id,
                attempted=attempted,
                observed=str(asset.status),
            )
        fields: dict[str, Any] = {"status": target, "updated_at": now_utc(), **(extra or {})}
        try:
            updated = self._gateway.update(Asset, asset_id, fields, expected={"status": source})
        except ConflictError as exc:
            raise ConflictError(
                f"asset changed before {attempted} could apply",
                entity_type="assets",
                entity_id=asset_id,
                attempted=attempted,
                observed=exc.observed,
                detail=exc.detail,
            ) from exc
        logger.info(
            "asset status changed",
            asset_id=asset_id,
            code=updated.code,
            old_status=str(asset.status),
            new_status=str(target),
            action=attempted,
        )
        self._notify(updated, attempted)
        return updated

    def _has_open_cycle(self, asset_id: str) -> bool:
        return self._gateway.exists(
            Cycle,
            CycleFilter(asset_id=asset_id, exclude_statuses=(CycleStatus.COMPLETED,)),
        )

    def allocate(
        self,
        owner_id: str,
        prefix: str,
        count: int,
        pending: bool = False,
        order_ref: str | None = None,
    ) -> list[Asset]:
        normalized = normalize_prefix(prefix)
        if count < 1 or count > MAX_CODES_PER_ALLOCATION:
            raise ValidationError(
                f"count must be between 1 and {MAX_CODES_PER_ALLOCATION}",
                entity_type="assets",
                attempted="allocate",
                detail={"count": count},
            )

        existing = [asset.code for asset in self._gateway.find_all(Asset, AssetFilter(code_prefix=normalized))]
        codes = generate_unique_codes(
            normalized,
            count,
            existing,
            suffix_factory=self._suffix_factory,
        )
        if len(codes) < count:
            logger.warning(
                "code space exhausted",
                prefix=normalized,
                requested=count,
                generated=len(codes),
                existing=len(existing),
            )
            raise ValidationError(
                f"could only generate {len(codes)} of {count} unique codes for prefix {normalized}",
                entity_type="assets",
                attempted="allocate",
                detail={"prefix": normalized, "requested": count, "generated": len(codes)},
            )

        now = now_utc()
        status = AssetStatus.PENDING if pending else AssetStatus.AVAILABLE
        rows = [
            Asset(
                code=code,
                owner_id=owner_id,
                status=status,
                order_ref=order_ref,
                received_at=None if pending else now,
                created_at=now,
                updated_at=now,
            )
            for code in codes
        ]
        created = self._gateway.create_many(rows)
        logger.info(
            "codes allocated",
            owner_id=owner_id,
            prefix=normalized,
            count=len(created),
            status=str(status),
            order_ref=order_ref,
        )
        for asset in created:
            self._notify(asset, "allocated", actor_id=owner_id)
        return created

    def assign(self, asset_id: str) -> Asset:
        return self._flip(asset_id, AssetStatus.AVAILABLE, AssetStatus.ASSIGNED, "assign")

    def release(self, asset_id: str) -> Asset:
        return self._flip(
            asset_id,
            AssetStatus.ASSIGNED,
            AssetStatus.AVAILABLE,
            "release",
            {"last_reset_at": now_utc()},
        )

    def ensure_released(self, asset_id: str) -> bool:
        """Release the asset unless it is already free or still in use.

        Returns ``True`` only when this call performed the release.
        """
        asset = self._require(asset_id)
        if asset.status != AssetStatus.ASSIGNED:
            return False
        if self._has_open_cycle(asset_id):
            return False
        try:
            self.release(asset_id)
        except ConflictError as exc:
            if exc.observed == AssetStatus.AVAILABLE:
                return False
            raise
        return True

    def reserve(self, asset_id: str) -> Asset:
        return self._flip(asset_id, AssetStatus.PENDING, AssetStatus.AVAILABLE, "reserve", {"received_at": now_utc()})

    def mark_pending(self, asset_id: str) -> Asset:
        if self._has_open_cycle(asset_id):
            raise ValidationError(
                "asset has an open cycle",
                entity_type="assets",
                entity_id=asset_id,
                attempted="mark_pending",
            )
        return self._flip(asset_id, AssetStatus.AVAILABLE, AssetStatus.PENDING, "mark_pending", {"received_at": None})

    def discard(self, asset_id: str) -> None:
        asset = self._require(asset_id)
        if asset.status == AssetStatus.ASSIGNED or self._gateway.exists(Cycle, CycleFilter(asset_id=asset_id)):
            raise ValidationError(
                "asset has been used and cannot be discarded",
                entity_type="assets",
                entity_id=asset_id,
                attempted="discard",
                observed=str(asset.status),
            )
        self._gateway.delete(Asset, asset_id)
        logger.info("asset discarded", asset_id=asset_id, code=asset.code)
        self._notify(asset, "discarded")

    def get_asset(self, asset_id: str) -> Asset | None:
        return self._gateway.find_by_id(Asset, asset_id)

    def find_by_code(self, code: str) -> Asset | None:
        rows = self._gateway.find_all(Asset, AssetFilter(code=code.strip().upper()), limit=1)
        return rows[0] if rows else None

    def list_assets(
        self,
        spec: AssetFilter | None = None,
        *,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Asset]:
        return self._gateway.find_all(
            Asset,
            spec,
            order_by=(col(Asset.code).asc(),),
            limit=limit,
            offset=offset,
        )

    def stats(self, owner_id: str) -> AssetStatsRead:
        counts = {
            status: self._gateway.count(Asset, AssetFilter(owner_id=owner_id, statuses=(status,)))
            for status in AssetStatus
        }
        return AssetStatsRead(
            owner_id=owner_id,
            available=counts[AssetStatus.AVAILABLE],
            active=counts[AssetStatus.ASSIGNED],
            pending=counts[AssetStatus.PENDING],
            total=sum(counts.values()),
        )
