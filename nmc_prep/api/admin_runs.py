from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from nmc_prep.core.auth import require_roles
from nmc_prep.core.database import get_db
from nmc_prep.models.orm import CorrectionRun

router = APIRouter()

class RunRow(BaseModel):
    id: str; session_id: Optional[str] = None; status: str; total_processed: int; total_failed: int
    created_at: datetime; started_at: Optional[datetime] = None; finished_at: Optional[datetime] = None

class RunDetail(RunRow):
    total_succeeded: int; errors: list

def _row(r: CorrectionRun, cls=RunRow):
    fields = {k: getattr(r, k) for k in cls.model_fields}
    if "errors" in fields: fields["errors"] = fields["errors"] or []
    return cls(**fields)

@router.get("/corrections/runs", response_model=List[RunRow], dependencies=[Depends(require_roles("admin"))])
def list_runs(status: Optional[str] = None, session_id: Optional[str] = None, start: Optional[datetime] = Query(None),
              end: Optional[datetime] = Query(None), page: int = Query(1, ge=1), page_size: int = Query(25, ge=1, le=200),
              db: Session = Depends(get_db)):
    stmt = select(CorrectionRun)
    if status: stmt = stmt.where(CorrectionRun.status == status)
    if session_id: stmt = stmt.where(CorrectionRun.session_id == session_id)
    if start: stmt = stmt.where(CorrectionRun.created_at >= start)
    if end: stmt = stmt.where(CorrectionRun.created_at < end)
    stmt = stmt.order_by(CorrectionRun.created_at.desc()).limit(page_size).offset((page - 1) * page_size)
    return [_row(r) for r in db.scalars(stmt)]

@router.get("/corrections/runs/{run_id}", response_model=RunDetail, dependencies=[Depends(require_roles("admin"))])
def run_detail(run_id: str, db: Session = Depends(get_db)):
    r = db.get(CorrectionRun, run_id)
    if not r: raise HTTPException(404, "Run not found")
    return _row(r, RunDetail)
