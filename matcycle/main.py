from __future__ import annotations

from fastapi import FastAPI, HTTPException

from matcycle.api.routers import assets, cycles, pickups, reporting
from matcycle.infra.db import check_db_ready
from matcycle.infra.logging import setup_logging

setup_logging()

app = FastAPI(
    title="matcycle",
    description="Rental mat lifecycle: trial cycles, pickup batches, code ledger and audit trail.",
    version="0.1.0",
)

app.include_router(assets.router, prefix="/api/assets", tags=["assets"])
app.include_router(cycles.router, prefix="/api/cycles", tags=["cycles"])
app.include_router(pickups.router, prefix="/api/pickups", tags=["pickups"])
app.include_router(reporting.router, prefix="/api/reporting", tags=["reporting"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
