"""
Analytics routes — org rollups, CSV export and branch summaries.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from chitfund.database import get_db
from chitfund.errors import ValidationFailed
from chitfund.services import rollup
from chitfund.services.rollup import Period, Scope

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


def _filters(level: Optional[str], node_id: Optional[int],
             start: Optional[date], end: Optional[date]) -> tuple[Optional[Scope], Period]:
    if (level is None) != (node_id is None):
        raise ValidationFailed("level and id must be given together")
    scope = Scope(level, node_id) if level is not None else None
    return scope, Period(start, end)


@router.get("/rollup")
def get_rollup(level: Optional[str] = None, id: Optional[int] = None,
               start: Optional[date] = None, end: Optional[date] = None,
               db: Session = Depends(get_db)):
    """Totals and breakdowns for the whole org or one department / mandal / branch / group."""
    scope, period = _filters(level, id, start, end)
    return rollup.aggregate(db, scope, period).as_dict()


@router.get("/export")
def export_csv(level: Optional[str] = None, id: Optional[int] = None,
               start: Optional[date] = None, end: Optional[date] = None,
               db: Session = Depends(get_db)):
    scope, period = _filters(level, id, start, end)
    body = rollup.to_csv(rollup.export_rows(db, scope, period))
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="collections.csv"'},
    )


@router.get("/branches/{branch_id}/summary")
def branch_summary(branch_id: int, db: Session = Depends(get_db)):
    return rollup.branch_summary(db, branch_id)
