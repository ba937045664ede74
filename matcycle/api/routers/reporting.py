from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from matcycle.domain.filters import HistoryFilter
from matcycle.domain.models import (
    CompanyCountsRead,
    ExpiringTrialRead,
    HistoryEventRead,
    OperatorCountsRead,
    OverdueCycleRead,
    StatusCountsRead,
    TurnaroundRead,
)
from matcycle.services.audit_trail import AuditTrail
from matcycle.services.reporting_service import ReportingService

router = APIRouter()


def get_reporting_service() -> ReportingService:
    return ReportingService()


def get_audit_trail() -> AuditTrail:
    return AuditTrail()


Service = Annotated[ReportingService, Depends(get_reporting_service)]
Audit = Annotated[AuditTrail, Depends(get_audit_trail)]


@router.get("/status-counts", response_model=StatusCountsRead)
def status_counts(service: Service, owner_id: str | None = None, company_id: str | None = None) -> StatusCountsRead:
    return service.status_counts(owner_id=owner_id, company_id=company_id)


@router.get("/by-company", response_model=list[CompanyCountsRead])
def counts_by_company(service: Service, owner_id: str | None = None) -> list[CompanyCountsRead]:
    return service.counts_by_company(owner_id=owner_id)


@router.get("/by-operator", response_model=list[OperatorCountsRead])
def counts_by_operator(service: Service) -> list[OperatorCountsRead]:
    return service.counts_by_operator()


@router.get("/overdue", response_model=list[OverdueCycleRead])
def overdue_cycles(
    service: Service,
    threshold_days: Annotated[int, Query(ge=0)],
    owner_id: str | None = None,
) -> list[OverdueCycleRead]:
    return service.overdue_cycles(threshold_days, owner_id=owner_id)


@router.get("/expiring", response_model=list[ExpiringTrialRead])
def expiring_trials(
    service: Service,
    within_days: Annotated[int, Query(ge=0)] = 2,
    owner_id: str | None = None,
) -> list[ExpiringTrialRead]:
    return service.expiring_trials(within_days, owner_id=owner_id)


@router.get("/turnaround", response_model=TurnaroundRead)
def turnaround(audit: Audit, owner_id: str | None = None, company_id: str | None = None) -> TurnaroundRead:
    return audit.average_days_to_pickup(owner_id=owner_id, company_id=company_id)


@router.get("/history", response_model=list[HistoryEventRead])
def history(
    audit: Audit,
    performed_by: str | None = None,
    cycle_id: str | None = None,
    action: Annotated[list[str] | None, Query()] = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 200,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[HistoryEventRead]:
    spec = HistoryFilter(
        cycle_id=cycle_id,
        performed_by=performed_by,
        actions=None if not action else tuple(action),
        start=start,
        end=end,
    )
    rows = audit.events(spec, limit=limit, offset=offset)
    return [HistoryEventRead.model_validate(item) for item in rows]
