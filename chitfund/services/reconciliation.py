"""
Collection Reconciler
═════════════════════
Answers "has this member paid for this cycle?" and records payments.

  Cycle N of a group is due on DUE_DAY (15th) of the calendar month
  start_date + (N - 1) months. A member is:

    paid     — an approved collection exists with payment_date ≤ as_of
    overdue  — no such collection and as_of is past the due date
    pending  — otherwise

Fines follow a tiered schedule (days late → flat amount). A collection's
fine is computed exactly once, when the payment is recorded, and is keyed
by the caller's receipt number so a retried request never double-charges.
"""
import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chitfund import config
from chitfund.errors import Conflict, Ineligible, InvalidState, ValidationFailed
from chitfund.models import (
    ChitGroup, GroupStatus, Collection, CollectionStatus, PaymentMode, PaymentState, User, utcnow,
)
from chitfund.services.groups import get_membership
from chitfund.services.ledger import fetch, log_activity

logger = logging.getLogger("chitfund.reconciliation")


@dataclass(frozen=True)
class Reconciliation:
    member_id: int
    group_id: int
    cycle: int
    as_of: date
    status: PaymentState
    fine: float
    due_date: date
    days_late: int
    collection_id: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            "member_id": self.member_id,
            "group_id": self.group_id,
            "cycle": self.cycle,
            "as_of": self.as_of.isoformat(),
            "status": self.status.value,
            "fine": self.fine,
            "due_date": self.due_date.isoformat(),
            "days_late": self.days_late,
            "collection_id": self.collection_id,
        }


# ═══════════════════════════════════════════════
#  DUE DATES + FINES
# ═══════════════════════════════════════════════

def due_date_for(start_date: date, cycle: int, due_day: Optional[int] = None) -> date:
    """Due date of a cycle; day is clamped to the month's last day."""
    if cycle < 1:
        raise ValidationFailed(f"Cycle numbers start at 1, got {cycle}")
    day = due_day or config.DUE_DAY
    return start_date.replace(day=1) + relativedelta(months=cycle - 1, day=day)


def cycle_due_date(group: ChitGroup, cycle: int, due_day: Optional[int] = None) -> date:
    return due_date_for(group.start_date, cycle, due_day)


def compute_fine(due_date: date, settled_on: date,
                 schedule: Optional[list[tuple[int, float]]] = None) -> tuple[float, int]:
    """Return (fine, days_late). Fine is the highest tier reached, 0 if on time."""
    tiers = schedule if schedule is not None else config.FINE_SCHEDULE
    days_late = max(0, (settled_on - due_date).days)
    fine = 0.0
    for threshold, amount in tiers:
        if days_late >= threshold:
            fine = amount
    return fine, days_late


# ═══════════════════════════════════════════════
#  RECONCILE
# ═══════════════════════════════════════════════

def reconcile(db: Session, member_id: int, group_id: int, cycle: int, as_of: date) -> Reconciliation:
    """Derive the collection state of one member for one cycle. Read-only."""
    group = fetch(db, ChitGroup, group_id, "Chit group")
    if cycle > group.duration:
        raise ValidationFailed(f"Group {group_id} only has {group.duration} cycles")
    due = cycle_due_date(group, cycle)

    paid = db.query(Collection).filter(
        Collection.member_id == member_id,
        Collection.group_id == group_id,
        Collection.cycle_number == cycle,
        Collection.status == CollectionStatus.APPROVED,
        Collection.payment_date <= as_of,
    ).order_by(Collection.payment_date.asc(), Collection.id.asc()).first()

    if paid:
        _, days_late = compute_fine(due, paid.payment_date)
        return Reconciliation(member_id, group_id, cycle, as_of, PaymentState.PAID, paid.fine or 0.0,
                              due, days_late, paid.id)

    if as_of > due:
        fine, days_late = compute_fine(due, as_of)
        return Reconciliation(member_id, group_id, cycle, as_of, PaymentState.OVERDUE, fine, due, days_late)

    return Reconciliation(member_id, group_id, cycle, as_of, PaymentState.PENDING, 0.0, due, 0)


# ═══════════════════════════════════════════════
#  RECORD / APPROVE / REJECT
# ═══════════════════════════════════════════════

def record_collection(
    db: Session,
    member_id: int,
    group_id: int,
    cycle: int,
    amount: float,
    payment_date: date,
    payment_mode: PaymentMode,
    receipt_number: str,
    agent_id: Optional[int] = None,
    remarks: Optional[str] = None,
    screenshot_url: Optional[str] = None,
    approve: bool = False,
) -> Collection:
    """
    Record a member payment. Idempotent on `receipt_number`: replaying the
    same receipt returns the stored collection untouched.
    """
    existing = db.query(Collection).filter(Collection.receipt_number == receipt_number).first()
    if existing:
        _ensure_same_payment(existing, member_id, group_id, cycle)
        logger.info(f"Receipt {receipt_number} already recorded as collection #{existing.id}")
        return existing

    group = fetch(db, ChitGroup, group_id, "Chit group")
    fetch(db, User, member_id, "Member")
    if group.status != GroupStatus.ACTIVE:
        raise InvalidState(f"Group {group_id} is {group.status.value}; collections need an active group")
    if not 1 <= cycle <= group.duration:
        raise ValidationFailed(f"Cycle {cycle} outside 1..{group.duration}")
    if amount <= 0:
        raise ValidationFailed("Amount must be positive")
    if get_membership(db, group_id, member_id) is None:
        raise Ineligible(f"User {member_id} is not a member of group {group_id}")
    if agent_id is not None:
        fetch(db, User, agent_id, "Agent")

    fine, days_late = compute_fine(cycle_due_date(group, cycle), payment_date)
    collection = Collection(
        member_id=member_id,
        group_id=group_id,
        cycle_number=cycle,
        amount=amount,
        payment_date=payment_date,
        payment_mode=payment_mode,
        status=CollectionStatus.APPROVED if approve else CollectionStatus.PENDING,
        fine=fine,
        agent_id=agent_id,
        receipt_number=receipt_number,
        remarks=remarks,
        screenshot_url=screenshot_url,
        approved_at=utcnow() if approve else None,
    )
    db.add(collection)
    try:
        db.flush()
    except IntegrityError:
        # Lost an insert race on the same receipt number; hand back the winner's row
        db.rollback()
        winner = db.query(Collection).filter(Collection.receipt_number == receipt_number).first()
        if winner is None:
            raise
        _ensure_same_payment(winner, member_id, group_id, cycle)
        return winner

    log_activity(db, "collection", collection.id, "collection.record",
                 f"₹{amount:,.2f} for cycle {cycle} ({payment_mode.value})",
                 user_id=agent_id,
                 metadata={"receipt_number": receipt_number, "fine": fine, "days_late": days_late})
    db.commit()
    logger.info(f"Collection #{collection.id} recorded: member #{member_id} group #{group_id} "
                f"cycle {cycle} fine={fine}")
    return collection


def _ensure_same_payment(existing: Collection, member_id: int, group_id: int, cycle: int):
    if (existing.member_id, existing.group_id, existing.cycle_number) != (member_id, group_id, cycle):
        raise Conflict(f"Receipt {existing.receipt_number} already used for a different payment")


def approve_collection(db: Session, collection_id: int) -> Collection:
    collection = fetch(db, Collection, collection_id)
    if collection.status == CollectionStatus.APPROVED:
        return collection
    if collection.status != CollectionStatus.PENDING:
        raise InvalidState(f"Collection {collection_id} is {collection.status.value}")
    collection.status = CollectionStatus.APPROVED
    collection.approved_at = utcnow()
    log_activity(db, "collection", collection.id, "collection.approve", "Collection approved")
    db.commit()
    return collection


def reject_collection(db: Session, collection_id: int, reason: Optional[str] = None) -> Collection:
    collection = fetch(db, Collection, collection_id)
    if collection.status != CollectionStatus.PENDING:
        raise InvalidState(f"Collection {collection_id} is {collection.status.value} and cannot be rejected")
    collection.status = CollectionStatus.REJECTED
    log_activity(db, "collection", collection.id, "collection.reject", reason or "Collection rejected")
    db.commit()
    return collection


# ═══════════════════════════════════════════════
#  PASSBOOK
# ═══════════════════════════════════════════════

def member_passbook(db: Session, member_id: int) -> list[dict]:
    """All non-rejected collections of a member, newest first."""
    fetch(db, User, member_id, "Member")
    rows = db.query(Collection).filter(
        Collection.member_id == member_id,
        Collection.status != CollectionStatus.REJECTED,
    ).order_by(Collection.payment_date.desc(), Collection.id.desc()).all()

    entries = []
    for c in rows:
        receipt = c.receipts[-1] if c.receipts else None
        entries.append({
            "collection_id": c.id,
            "date": c.payment_date.isoformat(),
            "group_id": c.group_id,
            "cycle": c.cycle_number,
            "amount": c.amount,
            "fine": c.fine,
            "mode": c.payment_mode.value,
            "status": c.status.value,
            "receipt_url": receipt.receipt_url if receipt else None,
        })
    return entries
