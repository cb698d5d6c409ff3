"""
Chit group routes — lifecycle, membership and per-cycle reconciliation.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chitfund.database import get_db
from chitfund.models import ChitGroup, Membership
from chitfund.schemas import GroupCreate, GroupResponse, MembershipCreate, MembershipResponse
from chitfund.services import groups
from chitfund.services.ledger import fetch
from chitfund.services.reconciliation import reconcile

router = APIRouter(prefix="/api/groups", tags=["groups"])


@router.post("", response_model=GroupResponse, status_code=201)
def create_group(data: GroupCreate, db: Session = Depends(get_db)):
    return groups.create_group(
        db,
        name=data.name,
        branch_id=data.branch_id,
        chit_value=data.chit_value,
        commission_percentage=data.commission_percentage,
        duration=data.duration,
        max_members=data.max_members,
        start_date=data.start_date,
        contribution_amount=data.contribution_amount,
    )


@router.get("/{group_id}", response_model=GroupResponse)
def get_group(group_id: int, db: Session = Depends(get_db)):
    return fetch(db, ChitGroup, group_id, "Chit group")


@router.post("/{group_id}/activate", response_model=GroupResponse)
def activate_group(group_id: int, db: Session = Depends(get_db)):
    return groups.activate_group(db, group_id)


@router.post("/{group_id}/cancel", response_model=GroupResponse)
def cancel_group(group_id: int, db: Session = Depends(get_db)):
    return groups.cancel_group(db, group_id)


@router.post("/{group_id}/members", response_model=MembershipResponse, status_code=201)
def add_member(group_id: int, data: MembershipCreate, db: Session = Depends(get_db)):
    return groups.add_member(db, group_id, data.member_id)


@router.get("/{group_id}/members", response_model=list[MembershipResponse])
def list_members(group_id: int, db: Session = Depends(get_db)):
    fetch(db, ChitGroup, group_id, "Chit group")
    return db.query(Membership).filter(Membership.group_id == group_id).order_by(Membership.id).all()


@router.get("/{group_id}/members/{member_id}/cycles/{cycle}")
def reconcile_cycle(group_id: int, member_id: int, cycle: int, as_of: Optional[date] = None,
                    db: Session = Depends(get_db)):
    """Collection state (paid / pending / overdue) of one member for one cycle."""
    return reconcile(db, member_id, group_id, cycle, as_of or date.today()).as_dict()
