"""
Risk Scorer
═══════════
Classifies members (and collection agents) as normal or high risk from
their payment history and keeps an append-only flag log.

  Member rule   missed_payments          = collections with fine > 0
                consecutive_recent_fines = fined collections counted from the
                                           newest backwards until a clean one
                high  ⇔  missed ≥ 2  OR  consecutive ≥ 3

  Agent rule    collection_ratio = (collections − fined) / collections
                high  ⇔  collections ≥ AGENT_MIN_SAMPLE  AND  ratio < AGENT_MIN_COLLECTION_RATIO

Flags are appended only when a subject's stored tier moves normal → high,
so re-scoring a subject who is already high never duplicates the flag.
"""
import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from chitfund import config
from chitfund.errors import InvalidState
from chitfund.models import (
    Collection, CollectionStatus, FlagStatus, FlagSubject, RiskFlag, RiskTier,
    User, UserRole, utcnow,
)
from chitfund.services.ledger import compare_and_set, fetch, log_activity
from chitfund.services.notifications import Messenger, build_high_risk_alert

logger = logging.getLogger("chitfund.risk")

HIGH_RISK_REASON = "high risk: missed payments or repeated fines"
AGENT_RISK_REASON = "high risk: low collection ratio"

MISSED_THRESHOLD = 2
CONSECUTIVE_THRESHOLD = 3


@dataclass(frozen=True)
class PaymentRecord:
    payment_date: date
    fine: float


@dataclass(frozen=True)
class RiskAssessment:
    tier: RiskTier
    missed_payments: int
    consecutive_recent_fines: int

    def as_dict(self) -> dict:
        return {
            "tier": self.tier.value,
            "missed_payments": self.missed_payments,
            "consecutive_recent_fines": self.consecutive_recent_fines,
        }


@dataclass(frozen=True)
class EvaluationResult:
    subject_id: int
    previous_tier: RiskTier
    assessment: RiskAssessment
    changed: bool = False
    flag_id: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            "subject_id": self.subject_id,
            "previous_tier": self.previous_tier.value,
            "changed": self.changed,
            "flag_id": self.flag_id,
            **self.assessment.as_dict(),
        }


# ═══════════════════════════════════════════════
#  PURE SCORING
# ═══════════════════════════════════════════════

def score(history: Sequence) -> RiskAssessment:
    """Score a member from their collections, ordered oldest → newest."""
    fined = [(record.fine or 0) > 0 for record in history]
    missed = sum(fined)
    consecutive = 0
    for is_fined in reversed(fined):
        if not is_fined:
            break
        consecutive += 1
    high = missed >= MISSED_THRESHOLD or consecutive >= CONSECUTIVE_THRESHOLD
    return RiskAssessment(RiskTier.HIGH if high else RiskTier.NORMAL, missed, consecutive)


def member_history(db: Session, member_id: int) -> list[PaymentRecord]:
    rows = db.query(Collection.payment_date, Collection.fine).filter(
        Collection.member_id == member_id,
        Collection.status != CollectionStatus.REJECTED,
    ).order_by(Collection.payment_date.asc(), Collection.id.asc()).all()
    return [PaymentRecord(payment_date=r.payment_date, fine=r.fine or 0.0) for r in rows]


# ═══════════════════════════════════════════════
#  TIER TRANSITIONS + FLAGS
# ═══════════════════════════════════════════════

def _apply_tier(db: Session, user: User, tier: RiskTier, subject: FlagSubject,
                reason: str) -> tuple[bool, Optional[RiskFlag]]:
    """
    Store a new tier; on normal → high append exactly one open flag.
    The tier write is a conditional update so two concurrent evaluations
    cannot both raise the flag. Returns (tier written, flag).
    """
    previous = user.risk_level
    if previous == tier:
        return False, None
    if not compare_and_set(db, User, user.id, {"risk_level": previous}, {"risk_level": tier}):
        db.rollback()
        logger.info(f"{subject.value} #{user.id} tier changed concurrently; skipping")
        return False, None

    flag = None
    if tier == RiskTier.HIGH:
        flag = RiskFlag(subject_type=subject, subject_id=user.id, reason=reason,
                        status=FlagStatus.OPEN, created_at=utcnow())
        db.add(flag)
        db.flush()
        log_activity(db, "flag", flag.id, "flag.open", reason, user_id=user.id)
    db.commit()
    logger.info(f"{subject.value} #{user.id} risk {previous.value} → {tier.value}")
    return True, flag


def evaluate_member(db: Session, member_id: int, messenger: Optional[Messenger] = None) -> EvaluationResult:
    user = fetch(db, User, member_id, "Member")
    previous = user.risk_level
    assessment = score(member_history(db, member_id))
    changed, flag = _apply_tier(db, user, assessment.tier, FlagSubject.USER, HIGH_RISK_REASON)

    if flag is not None and messenger is not None:
        messenger.send(build_high_risk_alert(user, assessment.missed_payments,
                                             assessment.consecutive_recent_fines))
    return EvaluationResult(member_id, previous, assessment, changed, flag.id if flag else None)


def rescore_members(db: Session, messenger: Optional[Messenger] = None) -> int:
    """Evaluate every member; returns how many tiers changed."""
    member_ids = [row.id for row in db.query(User.id).filter(User.role == UserRole.MEMBER).order_by(User.id).all()]
    return sum(1 for member_id in member_ids if evaluate_member(db, member_id, messenger).changed)


# ═══════════════════════════════════════════════
#  AGENTS
# ═══════════════════════════════════════════════

def _agent_counts(db: Session, agent_id: int) -> tuple[int, int]:
    rows = db.query(Collection.fine).filter(
        Collection.agent_id == agent_id,
        Collection.status != CollectionStatus.REJECTED,
    ).all()
    total = len(rows)
    missed = sum(1 for r in rows if (r.fine or 0) > 0)
    return total, missed


def agent_performance(db: Session, agent_id: int) -> dict:
    fetch(db, User, agent_id, "Agent")
    total, missed = _agent_counts(db, agent_id)
    flags = db.query(RiskFlag).filter(
        RiskFlag.subject_type == FlagSubject.AGENT,
        RiskFlag.subject_id == agent_id,
    ).order_by(RiskFlag.created_at.desc(), RiskFlag.id.desc()).all()
    return {
        "agent_id": agent_id,
        "total_collections": total,
        "missed_collections": missed,
        "collection_ratio": round((total - missed) / total, 4) if total else 1.0,
        "flags": [{
            "id": f.id,
            "date": f.created_at.date().isoformat() if f.created_at else None,
            "reason": f.reason,
            "status": f.status.value,
        } for f in flags],
    }


def evaluate_agent(db: Session, agent_id: int) -> EvaluationResult:
    agent = fetch(db, User, agent_id, "Agent")
    if agent.role != UserRole.AGENT:
        raise InvalidState(f"User {agent_id} is not a collection agent")
    previous = agent.risk_level
    total, missed = _agent_counts(db, agent_id)
    ratio = (total - missed) / total if total else 1.0
    high = total >= config.AGENT_MIN_SAMPLE and ratio < config.AGENT_MIN_COLLECTION_RATIO
    assessment = RiskAssessment(RiskTier.HIGH if high else RiskTier.NORMAL, missed, 0)
    changed, flag = _apply_tier(db, agent, assessment.tier, FlagSubject.AGENT, AGENT_RISK_REASON)
    return EvaluationResult(agent_id, previous, assessment, changed, flag.id if flag else None)


# ═══════════════════════════════════════════════
#  FLAG LOG
# ═══════════════════════════════════════════════

def list_flags(db: Session, status: Optional[FlagStatus] = None,
               subject_type: Optional[FlagSubject] = None, subject_id: Optional[int] = None) -> list[RiskFlag]:
    query = db.query(RiskFlag)
    if status is not None:
        query = query.filter(RiskFlag.status == status)
    if subject_type is not None:
        query = query.filter(RiskFlag.subject_type == subject_type)
    if subject_id is not None:
        query = query.filter(RiskFlag.subject_id == subject_id)
    return query.order_by(RiskFlag.created_at.desc(), RiskFlag.id.desc()).all()


def resolve_flag(db: Session, flag_id: int) -> RiskFlag:
    """Close a flag. The record itself is kept forever."""
    flag = fetch(db, RiskFlag, flag_id, "Flag")
    if flag.status != FlagStatus.OPEN:
        raise InvalidState(f"Flag {flag_id} is already {flag.status.value}")
    flag.status = FlagStatus.RESOLVED
    flag.resolved_at = utcnow()
    log_activity(db, "flag", flag.id, "flag.resolve", "Flag resolved")
    db.commit()
    return flag
