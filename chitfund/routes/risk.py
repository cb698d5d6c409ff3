"""
Risk routes — member and agent risk tiers, the flag log and reminders.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chitfund.database import get_db
from chitfund.models import FlagStatus, FlagSubject, User
from chitfund.schemas import FlagResponse
from chitfund.services import risk
from chitfund.services.ledger import fetch
from chitfund.services.notifications import build_overdue_reminders, dispatch, get_messenger

router = APIRouter(prefix="/api/risk", tags=["risk"])


@router.get("/members/{member_id}")
def member_assessment(member_id: int, db: Session = Depends(get_db)):
    """Current stored tier plus a fresh score of the history. Read-only."""
    user = fetch(db, User, member_id, "Member")
    assessment = risk.score(risk.member_history(db, member_id))
    return {"member_id": member_id, "risk_level": user.risk_level.value, **assessment.as_dict()}


@router.post("/members/{member_id}/evaluate")
def evaluate_member(member_id: int, db: Session = Depends(get_db)):
    return risk.evaluate_member(db, member_id, get_messenger()).as_dict()


@router.post("/members/rescore")
def rescore_members(db: Session = Depends(get_db)):
    return {"changed": risk.rescore_members(db, get_messenger())}


@router.get("/agents/{agent_id}")
def agent_performance(agent_id: int, db: Session = Depends(get_db)):
    return risk.agent_performance(db, agent_id)


@router.post("/agents/{agent_id}/evaluate")
def evaluate_agent(agent_id: int, db: Session = Depends(get_db)):
    return risk.evaluate_agent(db, agent_id).as_dict()


@router.get("/flags", response_model=list[FlagResponse])
def list_flags(status: Optional[FlagStatus] = None, subject_type: Optional[FlagSubject] = None,
               subject_id: Optional[int] = None, db: Session = Depends(get_db)):
    return risk.list_flags(db, status, subject_type, subject_id)


@router.post("/flags/{flag_id}/resolve", response_model=FlagResponse)
def resolve_flag(flag_id: int, db: Session = Depends(get_db)):
    return risk.resolve_flag(db, flag_id)


@router.post("/reminders")
def send_reminders(as_of: Optional[date] = None, db: Session = Depends(get_db)):
    """Build overdue reminders and hand them to the configured messenger."""
    messages = build_overdue_reminders(db, as_of or date.today())
    sent = dispatch(get_messenger(), messages)
    return {"built": len(messages), "sent": sent, "messages": [m.as_dict() for m in messages]}
