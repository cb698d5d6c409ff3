"""
Loan Eligibility Gate + EMI Schedule
════════════════════════════════════
A member may hold one freshly approved loan per group at a time:

  last loan (by requested_on) for (member, group)
    approved  and  now − requested_on < LOAN_COOLDOWN_DAYS   → ineligible
    anything else (none, pending, rejected, older approval)   → eligible

  Status flow   pending ──▶ approved ──▶ disbursed ──▶ completed
                   │                         └──────▶ defaulted
                   └──────▶ rejected

Loans repay on a reducing balance in equal monthly instalments:

  r   = annual_rate / 12 / 100
  EMI = P × r × (1 + r)^n / ((1 + r)^n − 1)        (P / n when r = 0)

Instalment k falls due k calendar months after disbursement. Repayments
settle instalments oldest first; a late instalment carries the same tiered
fine as a late chit contribution.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from chitfund import config
from chitfund.errors import Ineligible, InvalidState, ValidationFailed
from chitfund.models import (
    ChitGroup, Loan, LoanRepayment, LoanStatus, PaymentState, RepaymentStatus, User, utcnow,
)
from chitfund.money import ZERO, to_money
from chitfund.services.groups import get_membership
from chitfund.services.ledger import fetch, insert, log_activity
from chitfund.services.reconciliation import compute_fine

logger = logging.getLogger("chitfund.loans")

INELIGIBLE_REASON = "not eligible for a new loan yet"

LOAN_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.APPROVED, LoanStatus.REJECTED},
    LoanStatus.APPROVED: {LoanStatus.DISBURSED},
    LoanStatus.DISBURSED: {LoanStatus.COMPLETED, LoanStatus.DEFAULTED},
}


@dataclass(frozen=True)
class Installment:
    number: int
    due_date: date
    amount: float
    principal: float
    interest: float
    balance: float
    status: PaymentState
    paid_on: Optional[date] = None
    late_fee: float = 0.0

    def as_dict(self) -> dict:
        return {
            "number": self.number,
            "due_date": self.due_date.isoformat(),
            "amount": self.amount,
            "principal": self.principal,
            "interest": self.interest,
            "balance": self.balance,
            "status": self.status.value,
            "paid_on": self.paid_on.isoformat() if self.paid_on else None,
            "late_fee": self.late_fee,
        }


# ═══════════════════════════════════════════════
#  ELIGIBILITY
# ═══════════════════════════════════════════════

def last_loan(db: Session, member_id: int, group_id: int) -> Optional[Loan]:
    return db.query(Loan).filter(
        Loan.member_id == member_id,
        Loan.group_id == group_id,
    ).order_by(Loan.requested_on.desc(), Loan.id.desc()).first()


def _cooldown_ends(loan: Optional[Loan]) -> Optional[datetime]:
    if loan is None or loan.status != LoanStatus.APPROVED:
        return None
    return loan.requested_on + timedelta(days=config.LOAN_COOLDOWN_DAYS)


def is_eligible(db: Session, member_id: int, group_id: int, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    ends = _cooldown_ends(last_loan(db, member_id, group_id))
    return ends is None or now >= ends


def loan_status(db: Session, member_id: int, group_id: int, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    loan = last_loan(db, member_id, group_id)
    ends = _cooldown_ends(loan)
    eligible = ends is None or now >= ends
    return {
        "member_id": member_id,
        "group_id": group_id,
        "eligible": eligible,
        "last_loan_id": loan.id if loan else None,
        "last_status": loan.status.value if loan else None,
        "last_requested_on": loan.requested_on.isoformat() if loan else None,
        "next_eligible_on": None if eligible else ends.isoformat(),
        "reason": None if eligible else INELIGIBLE_REASON,
    }


# ═══════════════════════════════════════════════
#  EMI MATHS
# ═══════════════════════════════════════════════

def emi(principal: float, annual_rate: float, tenure: int) -> float:
    """Equal monthly instalment, rounded to paise. emi(100000, 10, 12) == 8791.59"""
    if principal <= 0:
        raise ValidationFailed("Principal must be positive")
    if tenure < 1:
        raise ValidationFailed("Tenure must be at least one month")
    if annual_rate < 0:
        raise ValidationFailed("Interest rate cannot be negative")
    rate = annual_rate / 12 / 100
    if rate == 0:
        return float(to_money(principal / tenure))
    growth = (1 + rate) ** tenure
    return float(to_money(principal * rate * growth / (growth - 1)))


def amortise(principal: float, annual_rate: float, tenure: int) -> list[tuple[Decimal, Decimal, Decimal, Decimal]]:
    """(amount, principal, interest, balance after) per instalment; the last one clears the balance."""
    installment = to_money(emi(principal, annual_rate, tenure))
    rate = Decimal(str(annual_rate)) / Decimal(1200)
    balance = to_money(principal)
    rows = []
    for n in range(1, tenure + 1):
        interest = to_money(balance * rate)
        principal_part = balance if n == tenure else min(installment - interest, balance)
        balance -= principal_part
        rows.append((principal_part + interest, principal_part, interest, balance))
    return rows


def loan_quote(principal: float, annual_rate: float, tenure: int) -> dict:
    rows = amortise(principal, annual_rate, tenure)
    total = sum((row[0] for row in rows), ZERO)
    return {
        "principal": float(to_money(principal)),
        "interest_rate": annual_rate,
        "tenure_months": tenure,
        "emi": emi(principal, annual_rate, tenure),
        "total_interest": float(total - to_money(principal)),
        "total_amount": float(total),
    }


def total_repayable(loan: Loan) -> Decimal:
    return sum((row[0] for row in amortise(loan.amount, loan.interest_rate, loan.tenure_months)), ZERO)


def repayment_schedule(loan: Loan, as_of: Optional[date] = None) -> list[Installment]:
    """
    Instalment plan of a disbursed loan with each instalment's state on
    `as_of`. Only completed repayments dated on or before `as_of` count.
    """
    if loan.disbursed_on is None:
        raise InvalidState(f"Loan {loan.id} has not been disbursed")
    as_of = as_of or utcnow().date()
    start = loan.disbursed_on.date()

    payments = sorted(
        (r.payment_date, to_money(r.amount)) for r in loan.repayments
        if r.status == RepaymentStatus.COMPLETED and r.payment_date <= as_of
    )
    paid_total, consumed = ZERO, 0
    owed = ZERO
    schedule = []
    for number, (amount, principal, interest, balance) in enumerate(
            amortise(loan.amount, loan.interest_rate, loan.tenure_months), start=1):
        due = start + relativedelta(months=number)
        owed += amount
        while paid_total < owed and consumed < len(payments):
            paid_total += payments[consumed][1]
            consumed += 1

        paid_on, late_fee = None, 0.0
        if paid_total >= owed:
            status = PaymentState.PAID
            paid_on = payments[consumed - 1][0]
            late_fee, _ = compute_fine(due, paid_on)
        elif as_of > due:
            status = PaymentState.OVERDUE
            late_fee, _ = compute_fine(due, as_of)
        else:
            status = PaymentState.PENDING

        schedule.append(Installment(
            number=number,
            due_date=due,
            amount=float(amount),
            principal=float(principal),
            interest=float(interest),
            balance=float(balance),
            status=status,
            paid_on=paid_on,
            late_fee=late_fee,
        ))
    return schedule


# ═══════════════════════════════════════════════
#  LIFECYCLE
# ═══════════════════════════════════════════════

def request_loan(db: Session, member_id: int, group_id: int, amount: float,
                 interest_rate: Optional[float] = None, tenure_months: Optional[int] = None,
                 now: Optional[datetime] = None) -> Loan:
    """Open a pending loan request. Nothing is written when the member is ineligible."""
    now = now or utcnow()
    interest_rate = config.LOAN_INTEREST_RATE if interest_rate is None else interest_rate
    tenure_months = tenure_months or config.LOAN_TENURE_MONTHS
    fetch(db, User, member_id, "Member")
    fetch(db, ChitGroup, group_id, "Chit group")
    if amount <= 0:
        raise ValidationFailed("Loan amount must be positive")
    if interest_rate < 0 or tenure_months < 1:
        raise ValidationFailed("Loan needs a non-negative rate and at least one month of tenure")
    if get_membership(db, group_id, member_id) is None:
        raise Ineligible(f"User {member_id} is not a member of group {group_id}")
    if not is_eligible(db, member_id, group_id, now):
        logger.warning(f"Loan request from member #{member_id} in group #{group_id} refused: cooldown")
        raise Ineligible(INELIGIBLE_REASON)

    loan = insert(db, Loan(member_id=member_id, group_id=group_id, amount=amount,
                           interest_rate=interest_rate, tenure_months=tenure_months,
                           status=LoanStatus.PENDING, requested_on=now))
    log_activity(db, "loan", loan.id, "loan.request",
                 f"Loan of ₹{amount:,.2f} requested at {interest_rate}% for {tenure_months} months",
                 user_id=member_id)
    db.commit()
    logger.info(f"Loan #{loan.id} requested by member #{member_id}")
    return loan


def transition_loan(db: Session, loan_id: int, new_status: LoanStatus,
                    now: Optional[datetime] = None) -> Loan:
    now = now or utcnow()
    loan = fetch(db, Loan, loan_id)
    if new_status not in LOAN_TRANSITIONS.get(loan.status, set()):
        raise InvalidState(f"Loan {loan_id} cannot move from {loan.status.value} to {new_status.value}")
    previous = loan.status
    loan.status = new_status
    if previous == LoanStatus.PENDING:
        loan.decided_on = now
    if new_status == LoanStatus.DISBURSED:
        loan.disbursed_on = now
    log_activity(db, "loan", loan.id, f"loan.{new_status.value}",
                 f"Loan {previous.value} → {new_status.value}", user_id=loan.member_id)
    db.commit()
    logger.info(f"Loan #{loan_id} {previous.value} → {new_status.value}")
    return loan


# ═══════════════════════════════════════════════
#  REPAYMENTS
# ═══════════════════════════════════════════════

def repaid_amount(loan: Loan):
    total = ZERO
    for repayment in loan.repayments:
        if repayment.status == RepaymentStatus.COMPLETED:
            total += to_money(repayment.amount)
    return total


def record_repayment(db: Session, loan_id: int, amount: float, payment_date: date) -> LoanRepayment:
    """Record a completed repayment; the loan completes once principal and interest are covered."""
    loan = fetch(db, Loan, loan_id)
    if loan.status != LoanStatus.DISBURSED:
        raise InvalidState(f"Loan {loan_id} is {loan.status.value}; repayments need a disbursed loan")
    if amount <= 0:
        raise ValidationFailed("Repayment amount must be positive")

    repayment = insert(db, LoanRepayment(loan_id=loan_id, amount=amount, payment_date=payment_date,
                                         status=RepaymentStatus.COMPLETED))
    db.expire(loan, ["repayments"])
    log_activity(db, "loan", loan.id, "loan.repayment", f"Repayment of ₹{amount:,.2f}",
                 user_id=loan.member_id)
    if repaid_amount(loan) >= total_repayable(loan):
        loan.status = LoanStatus.COMPLETED
        log_activity(db, "loan", loan.id, "loan.completed", "Loan fully repaid", user_id=loan.member_id)
        logger.info(f"Loan #{loan_id} fully repaid")
    db.commit()
    return repayment
