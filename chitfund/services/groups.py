"""
Group administration — org hierarchy, members and chit group lifecycle.

Group status machine:

  pending ──▶ active ──▶ completed
     │          │
     └────┬─────┘
          ▼
      cancelled   (terminal, unreachable once completed)
"""
import logging
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from chitfund.errors import InvalidState, Ineligible, ValidationFailed
from chitfund.models import (
    Department, Mandal, Branch, User, UserRole, ChitGroup, GroupStatus,
    Membership, Auction, AuctionStatus, utcnow,
)
from chitfund.services.ledger import fetch, insert, log_activity

logger = logging.getLogger("chitfund.groups")

GROUP_TRANSITIONS = {
    GroupStatus.PENDING: {GroupStatus.ACTIVE, GroupStatus.CANCELLED},
    GroupStatus.ACTIVE: {GroupStatus.COMPLETED, GroupStatus.CANCELLED},
    GroupStatus.COMPLETED: set(),
    GroupStatus.CANCELLED: set(),
}


# ═══════════════════════════════════════════════
#  ORG NODES
# ═══════════════════════════════════════════════

def create_department(db: Session, name: str) -> Department:
    dept = insert(db, Department(name=name))
    db.commit()
    return dept


def create_mandal(db: Session, name: str, department_id: int) -> Mandal:
    fetch(db, Department, department_id)
    mandal = insert(db, Mandal(name=name, department_id=department_id))
    db.commit()
    return mandal


def create_branch(db: Session, name: str, mandal_id: int, code: Optional[str] = None) -> Branch:
    fetch(db, Mandal, mandal_id)
    branch = insert(db, Branch(name=name, mandal_id=mandal_id, code=code))
    db.commit()
    return branch


def create_user(db: Session, name: str, role: UserRole = UserRole.MEMBER,
                branch_id: Optional[int] = None, phone: Optional[str] = None) -> User:
    if branch_id is not None:
        fetch(db, Branch, branch_id)
    user = insert(db, User(name=name, role=role, branch_id=branch_id, phone=phone))
    db.commit()
    return user


# ═══════════════════════════════════════════════
#  CHIT GROUPS
# ═══════════════════════════════════════════════

def create_group(
    db: Session,
    name: str,
    branch_id: int,
    chit_value: float,
    commission_percentage: float,
    duration: int,
    max_members: int,
    start_date: date,
    contribution_amount: Optional[float] = None,
) -> ChitGroup:
    """Create a pending chit group under a branch."""
    fetch(db, Branch, branch_id)
    if chit_value <= 0:
        raise ValidationFailed("chit_value must be positive")
    if not 0 <= commission_percentage < 100:
        raise ValidationFailed("commission_percentage must be in [0, 100)")
    if duration < 1 or max_members < 1:
        raise ValidationFailed("duration and max_members must be at least 1")
    if contribution_amount is None:
        contribution_amount = round(chit_value / max_members, 2)

    group = insert(db, ChitGroup(
        name=name,
        branch_id=branch_id,
        chit_value=chit_value,
        commission_percentage=commission_percentage,
        contribution_amount=contribution_amount,
        duration=duration,
        max_members=max_members,
        current_cycle=0,
        start_date=start_date,
        status=GroupStatus.PENDING,
    ))
    log_activity(db, "group", group.id, "group.create", f"Chit group '{name}' created",
                 metadata={"chit_value": chit_value, "duration": duration})
    db.commit()
    logger.info(f"Group #{group.id} created under branch #{branch_id}")
    return group


def transition_group(db: Session, group: ChitGroup, new_status: GroupStatus) -> ChitGroup:
    """Move a group along its one-directional status machine (no commit)."""
    if new_status not in GROUP_TRANSITIONS[group.status]:
        raise InvalidState(f"Group {group.id} cannot move from '{group.status.value}' to '{new_status.value}'")
    previous = group.status
    group.status = new_status
    log_activity(db, "group", group.id, f"group.{new_status.value}",
                 f"Group status {previous.value} → {new_status.value}")
    return group


def activate_group(db: Session, group_id: int) -> ChitGroup:
    group = fetch(db, ChitGroup, group_id, "Chit group")
    transition_group(db, group, GroupStatus.ACTIVE)
    db.commit()
    return group


def cancel_group(db: Session, group_id: int) -> ChitGroup:
    """Cancel a group and any auction that has not settled yet."""
    group = fetch(db, ChitGroup, group_id, "Chit group")
    transition_group(db, group, GroupStatus.CANCELLED)
    open_auctions = db.query(Auction).filter(
        Auction.group_id == group_id,
        Auction.status.in_([AuctionStatus.SCHEDULED, AuctionStatus.ACTIVE]),
    ).all()
    for auction in open_auctions:
        auction.status = AuctionStatus.CANCELLED
    db.commit()
    logger.info(f"Group #{group_id} cancelled ({len(open_auctions)} open auctions cancelled)")
    return group


def add_member(db: Session, group_id: int, member_id: int) -> Membership:
    group = fetch(db, ChitGroup, group_id, "Chit group")
    member = fetch(db, User, member_id, "Member")
    if group.status not in (GroupStatus.PENDING, GroupStatus.ACTIVE):
        raise InvalidState(f"Cannot join a {group.status.value} group")
    if member.role != UserRole.MEMBER:
        raise Ineligible(f"User {member_id} is not a member account")

    existing = db.query(Membership).filter(
        Membership.group_id == group_id,
        Membership.member_id == member_id,
    ).first()
    if existing:
        return existing

    count = db.query(Membership).filter(Membership.group_id == group_id).count()
    if count >= group.max_members:
        raise Ineligible(f"Group {group_id} is full ({group.max_members} members)")

    membership = insert(db, Membership(group_id=group_id, member_id=member_id, joined_at=utcnow()))
    log_activity(db, "group", group_id, "group.member_added", f"Member #{member_id} joined",
                 user_id=member_id)
    db.commit()
    return membership


def get_membership(db: Session, group_id: int, member_id: int) -> Optional[Membership]:
    return db.query(Membership).filter(
        Membership.group_id == group_id,
        Membership.member_id == member_id,
    ).first()
