"""
Org Rollup Aggregator
═════════════════════
Read-only financial rollups over approved collections.

  department ─┬─ mandal ─┬─ branch ─┬─ group ─── collections
              │          │          └─ group
              │          └─ branch
              └─ mandal

Every level is produced by the same fold over one flat list of collection
facts, keyed by a level selector. A parent's totals therefore always equal
the sum of its children's, and the payment-mode split always closes on the
scope total.

Totals are Decimals so that sums stay exact across levels.
"""
import csv
import io
import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, Hashable, Iterable, Optional

from sqlalchemy import func as sa_func
from sqlalchemy.orm import Session, aliased

from chitfund import config
from chitfund.errors import Cancelled, ValidationFailed
from chitfund.models import (
    Branch, ChitGroup, Collection, CollectionStatus, Department, FlagStatus,
    FlagSubject, Loan, Mandal, Membership, PaymentMode, RiskFlag, RiskTier, User,
)
from chitfund.money import ZERO, to_money
from chitfund.services.ledger import fetch
from chitfund.services.reconciliation import due_date_for

logger = logging.getLogger("chitfund.rollup")

LEVELS = ("group", "branch", "mandal", "department")
CSV_COLUMNS = ["Date", "Member", "Amount", "Fine", "Agent", "Group"]


@dataclass(frozen=True)
class Scope:
    level: str
    id: int

    def __post_init__(self):
        if self.level not in LEVELS:
            raise ValidationFailed(f"Unknown scope level '{self.level}'; expected one of {', '.join(LEVELS)}")

    def as_dict(self) -> dict:
        return {"level": self.level, "id": self.id}


@dataclass(frozen=True)
class Period:
    """Inclusive date range over payment_date. Either end may be open."""
    start: Optional[date] = None
    end: Optional[date] = None

    def __post_init__(self):
        if self.start and self.end and self.end < self.start:
            raise ValidationFailed("Period end is before its start")

    def contains(self, day: date) -> bool:
        if self.start and day < self.start:
            return False
        if self.end and day > self.end:
            return False
        return True

    def as_dict(self) -> dict:
        return {
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


@dataclass(frozen=True)
class CollectionFact:
    collection_id: int
    payment_date: date
    cycle: int
    amount: Decimal
    fine: Decimal
    payment_mode: PaymentMode
    overdue: bool
    member_id: int
    member_name: str
    agent_id: Optional[int]
    agent_name: Optional[str]
    group_id: int
    group_name: str
    branch_id: int
    mandal_id: int
    department_id: int


@dataclass
class Totals:
    amount: Decimal = ZERO
    fines: Decimal = ZERO
    collections: int = 0
    missed: int = 0
    overdue: int = 0
    mode_amounts: dict = field(default_factory=lambda: {mode: ZERO for mode in PaymentMode})
    mode_counts: dict = field(default_factory=lambda: {mode: 0 for mode in PaymentMode})

    def add(self, fact: CollectionFact):
        self.amount += fact.amount
        self.fines += fact.fine
        self.collections += 1
        if fact.fine > 0:
            self.missed += 1
        if fact.overdue:
            self.overdue += 1
        self.mode_amounts[fact.payment_mode] += fact.amount
        self.mode_counts[fact.payment_mode] += 1

    def as_dict(self) -> dict:
        return {
            "total_paid": float(self.amount),
            "total_fines": float(self.fines),
            "collections": self.collections,
            "missed": self.missed,
            "overdue": self.overdue,
        }

    def modes_dict(self) -> dict:
        return {
            mode.value: {"count": self.mode_counts[mode], "amount": float(self.mode_amounts[mode])}
            for mode in PaymentMode
        }


# Level selectors: fact → node id at that level
SELECTORS: dict[str, Callable[[CollectionFact], int]] = {
    "group": lambda f: f.group_id,
    "branch": lambda f: f.branch_id,
    "mandal": lambda f: f.mandal_id,
    "department": lambda f: f.department_id,
}


class CancelGuard:
    """Checked between rows; trips on an external Event or a monotonic deadline."""

    def __init__(self, cancel: Optional[threading.Event] = None, deadline: Optional[float] = None):
        self.cancel = cancel
        self.deadline = deadline

    def check(self):
        if self.cancel is not None and self.cancel.is_set():
            raise Cancelled("Rollup cancelled by caller")
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise Cancelled("Rollup exceeded its time budget")


def fold(facts: Iterable[CollectionFact], selector: Callable[[CollectionFact], Hashable],
         guard: Optional[CancelGuard] = None) -> dict:
    """Group facts by `selector(fact)` and total each bucket."""
    buckets = defaultdict(Totals)
    for fact in facts:
        if guard is not None:
            guard.check()
        buckets[selector(fact)].add(fact)
    return dict(buckets)


@dataclass
class Rollup:
    scope: Optional[Scope]
    period: Period
    totals: Totals
    members: int
    agents: int
    loans: int
    high_risk_members: int
    nodes: dict  # level → {id: name}
    breakdowns: dict  # level → {id: Totals}
    by_month: dict  # "YYYY-MM" → Totals
    overdue_members: list
    top_agents: list

    def breakdown(self, level: str) -> list[dict]:
        rows = []
        for node_id, name in self.nodes[level].items():
            totals = self.breakdowns[level].get(node_id) or Totals()
            rows.append({"id": node_id, "name": name, **totals.as_dict()})
        return rows

    def mode_stack(self, level: str) -> list[dict]:
        rows = []
        for node_id, name in self.nodes[level].items():
            totals = self.breakdowns[level].get(node_id) or Totals()
            rows.append({"id": node_id, "name": name,
                         **{mode.value: float(amount) for mode, amount in totals.mode_amounts.items()}})
        return rows

    def as_dict(self) -> dict:
        return {
            "scope": self.scope.as_dict() if self.scope else None,
            "period": self.period.as_dict(),
            "totals": {
                **self.totals.as_dict(),
                "members": self.members,
                "agents": self.agents,
                "loans": self.loans,
                "high_risk_members": self.high_risk_members,
            },
            "breakdowns": {level: self.breakdown(level) for level in LEVELS},
            "payment_modes": self.totals.modes_dict(),
            "mode_stacks": {level: self.mode_stack(level) for level in LEVELS},
            "collections_by_month": [
                {"month": month, "amount": float(totals.amount), "collections": totals.collections}
                for month, totals in sorted(self.by_month.items())
            ],
            "leaderboards": {
                "overdue_members": self.overdue_members,
                "agents": self.top_agents,
            },
        }


# ═══════════════════════════════════════════════
#  SCOPE RESOLUTION
# ═══════════════════════════════════════════════

def _org_nodes(db: Session, scope: Optional[Scope]) -> dict:
    """Every org node inside the scope (including empty ones), ordered by id."""
    nodes = {level: {} for level in LEVELS}

    if scope is not None and scope.level == "group":
        group = fetch(db, ChitGroup, scope.id, "Chit group")
        branch = group.branch
        mandal = branch.mandal
        nodes["group"][group.id] = group.name
        nodes["branch"][branch.id] = branch.name
        nodes["mandal"][mandal.id] = mandal.name
        nodes["department"][mandal.department.id] = mandal.department.name
        return nodes

    if scope is not None:
        model = {"branch": Branch, "mandal": Mandal, "department": Department}[scope.level]
        fetch(db, model, scope.id, scope.level.capitalize())

    query = db.query(
        Department.id.label("department_id"), Department.name.label("department_name"),
        Mandal.id.label("mandal_id"), Mandal.name.label("mandal_name"),
        Branch.id.label("branch_id"), Branch.name.label("branch_name"),
        ChitGroup.id.label("group_id"), ChitGroup.name.label("group_name"),
    ).outerjoin(Mandal, Mandal.department_id == Department.id) \
     .outerjoin(Branch, Branch.mandal_id == Mandal.id) \
     .outerjoin(ChitGroup, ChitGroup.branch_id == Branch.id)
    if scope is not None:
        column = {"branch": Branch.id, "mandal": Mandal.id, "department": Department.id}[scope.level]
        query = query.filter(column == scope.id)

    for row in query.all():
        for level in ("department", "mandal", "branch", "group"):
            node_id = getattr(row, f"{level}_id")
            if node_id is not None:
                nodes[level][node_id] = getattr(row, f"{level}_name")

    return {level: dict(sorted(found.items())) for level, found in nodes.items()}


def load_facts(db: Session, scope: Optional[Scope] = None, period: Optional[Period] = None,
               guard: Optional[CancelGuard] = None) -> list[CollectionFact]:
    """Approved collections in scope and period, joined up the org tree."""
    member = aliased(User)
    agent = aliased(User)
    query = db.query(
        Collection.id, Collection.payment_date, Collection.cycle_number, Collection.amount,
        Collection.fine, Collection.payment_mode, Collection.member_id, Collection.agent_id,
        member.name.label("member_name"), agent.name.label("agent_name"),
        ChitGroup.id.label("group_id"), ChitGroup.name.label("group_name"), ChitGroup.start_date,
        Branch.id.label("branch_id"), Mandal.id.label("mandal_id"), Mandal.department_id,
    ).join(ChitGroup, Collection.group_id == ChitGroup.id) \
     .join(Branch, ChitGroup.branch_id == Branch.id) \
     .join(Mandal, Branch.mandal_id == Mandal.id) \
     .join(member, Collection.member_id == member.id) \
     .outerjoin(agent, Collection.agent_id == agent.id) \
     .filter(Collection.status == CollectionStatus.APPROVED)

    if scope is not None:
        column = {"group": ChitGroup.id, "branch": Branch.id,
                  "mandal": Mandal.id, "department": Mandal.department_id}[scope.level]
        query = query.filter(column == scope.id)
    if period is not None and period.start:
        query = query.filter(Collection.payment_date >= period.start)
    if period is not None and period.end:
        query = query.filter(Collection.payment_date <= period.end)

    facts = []
    for row in query.order_by(Collection.payment_date.asc(), Collection.id.asc()).all():
        if guard is not None:
            guard.check()
        facts.append(CollectionFact(
            collection_id=row.id,
            payment_date=row.payment_date,
            cycle=row.cycle_number,
            amount=to_money(row.amount),
            fine=to_money(row.fine),
            payment_mode=row.payment_mode,
            overdue=row.payment_date > due_date_for(row.start_date, row.cycle_number),
            member_id=row.member_id,
            member_name=row.member_name,
            agent_id=row.agent_id,
            agent_name=row.agent_name,
            group_id=row.group_id,
            group_name=row.group_name,
            branch_id=row.branch_id,
            mandal_id=row.mandal_id,
            department_id=row.department_id,
        ))
    return facts


# ═══════════════════════════════════════════════
#  AGGREGATE
# ═══════════════════════════════════════════════

def _count_loans(db: Session, group_ids: list[int], period: Period) -> int:
    if not group_ids:
        return 0
    query = db.query(Loan.requested_on).filter(Loan.group_id.in_(group_ids))
    return sum(1 for (requested_on,) in query.all() if period.contains(requested_on.date()))


def _count_high_risk(db: Session, group_ids: list[int]) -> int:
    if not group_ids:
        return 0
    return db.query(sa_func.count(sa_func.distinct(Membership.member_id))) \
        .join(User, Membership.member_id == User.id) \
        .filter(Membership.group_id.in_(group_ids), User.risk_level == RiskTier.HIGH) \
        .scalar() or 0


def _overdue_leaderboard(facts: list[CollectionFact], guard: CancelGuard) -> list[dict]:
    late = [f for f in facts if f.overdue]
    per_member = fold(late, lambda f: f.member_id, guard)
    names = {f.member_id: f.member_name for f in late}
    ranked = sorted(per_member.items(), key=lambda item: (-item[1].fines, item[0]))
    return [{
        "member_id": member_id,
        "name": names[member_id],
        "fines": float(totals.fines),
        "overdue_payments": totals.overdue,
    } for member_id, totals in ranked[:config.LEADERBOARD_SIZE]]


def _agent_leaderboard(facts: list[CollectionFact], guard: CancelGuard) -> list[dict]:
    collected = [f for f in facts if f.agent_id is not None]
    per_agent = fold(collected, lambda f: f.agent_id, guard)
    names = {f.agent_id: f.agent_name for f in collected}
    ranked = sorted(per_agent.items(), key=lambda item: (-item[1].amount, item[0]))
    return [{
        "agent_id": agent_id,
        "name": names[agent_id],
        "amount": float(totals.amount),
        "collections": totals.collections,
    } for agent_id, totals in ranked[:config.LEADERBOARD_SIZE]]


def aggregate(db: Session, scope: Optional[Scope] = None, period: Optional[Period] = None,
              cancel: Optional[threading.Event] = None, deadline: Optional[float] = None) -> Rollup:
    """
    Build the rollup for `scope` (whole organisation when None) over `period`.
    `deadline` is a time.monotonic() value; it defaults to
    ROLLUP_TIMEOUT_SECONDS from now. Raises Cancelled when either trips.
    """
    period = period or Period()
    if deadline is None:
        deadline = time.monotonic() + config.ROLLUP_TIMEOUT_SECONDS
    guard = CancelGuard(cancel, deadline)

    nodes = _org_nodes(db, scope)
    facts = load_facts(db, scope, period, guard)

    totals = fold(facts, lambda f: "all", guard).get("all") or Totals()
    breakdowns = {level: fold(facts, SELECTORS[level], guard) for level in LEVELS}
    by_month = fold(facts, lambda f: f.payment_date.strftime("%Y-%m"), guard)

    group_ids = list(nodes["group"])
    rollup = Rollup(
        scope=scope,
        period=period,
        totals=totals,
        members=len({f.member_id for f in facts}),
        agents=len({f.agent_id for f in facts if f.agent_id is not None}),
        loans=_count_loans(db, group_ids, period),
        high_risk_members=_count_high_risk(db, group_ids),
        nodes=nodes,
        breakdowns=breakdowns,
        by_month=by_month,
        overdue_members=_overdue_leaderboard(facts, guard),
        top_agents=_agent_leaderboard(facts, guard),
    )
    logger.info(f"Rollup {scope.as_dict() if scope else 'org'}: {totals.collections} collections, "
                f"₹{totals.amount} paid")
    return rollup


# ═══════════════════════════════════════════════
#  EXPORT
# ═══════════════════════════════════════════════

def export_rows(db: Session, scope: Optional[Scope] = None, period: Optional[Period] = None) -> list[dict]:
    facts = load_facts(db, scope, period)
    return [{
        "Date": f.payment_date.isoformat(),
        "Member": f.member_name,
        "Amount": f"{f.amount:.2f}",
        "Fine": f"{f.fine:.2f}",
        "Agent": f.agent_name or "",
        "Group": f.group_name,
    } for f in facts]


def to_csv(rows: list[dict]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, lineterminator="\n")
    writer.writeheader()
    writer.writerows(rows)
    return buffer.getvalue()


# ═══════════════════════════════════════════════
#  BRANCH SUMMARY
# ═══════════════════════════════════════════════

def branch_summary(db: Session, branch_id: int) -> dict:
    """Branch manager view: payment health, open flags and who is high risk."""
    branch = fetch(db, Branch, branch_id, "Branch")
    facts = load_facts(db, Scope("branch", branch_id))
    totals = fold(facts, lambda f: branch_id).get(branch_id) or Totals()

    member_ids = [row.member_id for row in db.query(Membership.member_id)
                  .join(ChitGroup, Membership.group_id == ChitGroup.id)
                  .filter(ChitGroup.branch_id == branch_id).distinct().all()]
    agent_ids = [row.id for row in db.query(User.id).filter(User.branch_id == branch_id).all()]

    def open_flags(subject: FlagSubject, ids: list[int]) -> int:
        if not ids:
            return 0
        return db.query(RiskFlag).filter(
            RiskFlag.subject_type == subject,
            RiskFlag.subject_id.in_(ids),
            RiskFlag.status == FlagStatus.OPEN,
        ).count()

    fined_by_member = fold([f for f in facts if f.fine > 0], lambda f: f.member_id)
    high_risk = db.query(User).filter(User.id.in_(member_ids), User.risk_level == RiskTier.HIGH) \
        .order_by(User.id).all() if member_ids else []

    return {
        "branch_id": branch.id,
        "branch_name": branch.name,
        "paid": totals.collections,
        "missed": totals.missed,
        "overdue": totals.overdue,
        "total_paid": float(totals.amount),
        "fines_collected": float(totals.fines),
        "open_user_flags": open_flags(FlagSubject.USER, member_ids),
        "open_agent_flags": open_flags(FlagSubject.AGENT, agent_ids),
        "high_risk_members": [{
            "member_id": user.id,
            "name": user.name,
            "fined_collections": fined_by_member[user.id].collections if user.id in fined_by_member else 0,
        } for user in high_risk],
    }
