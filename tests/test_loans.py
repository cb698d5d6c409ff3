from datetime import date, datetime, timedelta

import pytest

from chitfund.errors import Ineligible, InvalidState, ValidationFailed
from chitfund.models import Loan, LoanStatus, PaymentState
from chitfund.services.loans import (
    INELIGIBLE_REASON, emi, is_eligible, loan_quote, loan_status, record_repayment, repayment_schedule,
    request_loan, transition_loan,
)

NOW = datetime(2024, 3, 1, 10, 0)


def loan_at(db, ctx, days_ago, status=LoanStatus.APPROVED, amount=20000, **terms):
    loan = request_loan(db, ctx.members[0].id, ctx.group.id, amount, now=NOW - timedelta(days=days_ago), **terms)
    if status != LoanStatus.PENDING:
        transition_loan(db, loan.id, status)
    return loan


def test_first_loan_is_allowed(db, make_group):
    ctx = make_group()
    assert is_eligible(db, ctx.members[0].id, ctx.group.id, NOW)
    loan = request_loan(db, ctx.members[0].id, ctx.group.id, 15000, now=NOW)
    assert loan.status == LoanStatus.PENDING
    assert loan.requested_on == NOW


def test_recent_approval_blocks_new_request(db, make_group):
    ctx = make_group()
    loan_at(db, ctx, days_ago=29)
    assert not is_eligible(db, ctx.members[0].id, ctx.group.id, NOW)

    before = db.query(Loan).count()
    with pytest.raises(Ineligible) as exc:
        request_loan(db, ctx.members[0].id, ctx.group.id, 5000, now=NOW)
    assert exc.value.message == INELIGIBLE_REASON == "not eligible for a new loan yet"
    assert db.query(Loan).count() == before


def test_approval_older_than_cooldown_allows_request(db, make_group):
    ctx = make_group()
    loan_at(db, ctx, days_ago=31)
    assert is_eligible(db, ctx.members[0].id, ctx.group.id, NOW)
    assert request_loan(db, ctx.members[0].id, ctx.group.id, 5000, now=NOW).id is not None


def test_rejected_loan_does_not_block(db, make_group):
    ctx = make_group()
    loan_at(db, ctx, days_ago=2, status=LoanStatus.REJECTED)
    assert is_eligible(db, ctx.members[0].id, ctx.group.id, NOW)


def test_cooldown_is_per_group(db, make_group):
    ctx = make_group()
    loan_at(db, ctx, days_ago=1)
    other = make_group()
    assert is_eligible(db, ctx.members[0].id, other.group.id, NOW)


def test_status_reports_next_eligible_date(db, make_group):
    ctx = make_group()
    loan = loan_at(db, ctx, days_ago=10)
    status = loan_status(db, ctx.members[0].id, ctx.group.id, NOW)
    assert status["eligible"] is False
    assert status["last_loan_id"] == loan.id
    assert status["last_status"] == "approved"
    assert status["next_eligible_on"] == (NOW + timedelta(days=20)).isoformat()
    assert status["reason"] == INELIGIBLE_REASON

    fresh = loan_status(db, ctx.members[1].id, ctx.group.id, NOW)
    assert fresh["eligible"] is True
    assert fresh["last_loan_id"] is None


def test_request_validation(db, make_group):
    ctx = make_group()
    outsider = make_group().members[0]
    with pytest.raises(Ineligible):
        request_loan(db, outsider.id, ctx.group.id, 5000, now=NOW)
    with pytest.raises(ValidationFailed):
        request_loan(db, ctx.members[0].id, ctx.group.id, 0, now=NOW)


def test_transitions(db, make_group):
    ctx = make_group()
    loan = loan_at(db, ctx, days_ago=0, status=LoanStatus.PENDING)
    with pytest.raises(InvalidState):
        transition_loan(db, loan.id, LoanStatus.DISBURSED)
    approved = transition_loan(db, loan.id, LoanStatus.APPROVED)
    assert approved.decided_on is not None
    with pytest.raises(InvalidState):
        transition_loan(db, loan.id, LoanStatus.REJECTED)
    assert transition_loan(db, loan.id, LoanStatus.DISBURSED).status == LoanStatus.DISBURSED


def test_repayments_complete_the_loan(db, make_group):
    ctx = make_group()
    loan = loan_at(db, ctx, days_ago=5, amount=5000, interest_rate=0, tenure_months=5)
    with pytest.raises(InvalidState):
        record_repayment(db, loan.id, 1000, date(2024, 3, 1))

    transition_loan(db, loan.id, LoanStatus.DISBURSED)
    record_repayment(db, loan.id, 2000, date(2024, 3, 1))
    db.expire_all()
    assert db.get(Loan, loan.id).status == LoanStatus.DISBURSED

    record_repayment(db, loan.id, 3000, date(2024, 4, 1))
    db.expire_all()
    assert db.get(Loan, loan.id).status == LoanStatus.COMPLETED
    with pytest.raises(InvalidState):
        record_repayment(db, loan.id, 100, date(2024, 4, 2))


def test_interest_must_be_covered_before_completion(db, make_group):
    ctx = make_group()
    loan = loan_at(db, ctx, days_ago=5, amount=12000, interest_rate=12, tenure_months=3)
    transition_loan(db, loan.id, LoanStatus.DISBURSED)
    record_repayment(db, loan.id, 12000, date(2024, 4, 1))
    db.expire_all()
    assert db.get(Loan, loan.id).status == LoanStatus.DISBURSED

    owed = loan_quote(12000, 12, 3)["total_amount"]
    record_repayment(db, loan.id, round(owed - 12000, 2), date(2024, 5, 1))
    db.expire_all()
    assert db.get(Loan, loan.id).status == LoanStatus.COMPLETED


# ── EMI maths ──

@pytest.mark.parametrize("principal, rate, tenure, expected", [
    (100000, 10, 12, 8791.59),
    (12000, 0, 12, 1000.0),
    (50000, 12, 1, 50500.0),
])
def test_emi(principal, rate, tenure, expected):
    assert emi(principal, rate, tenure) == expected


def test_emi_rejects_bad_terms():
    with pytest.raises(ValidationFailed):
        emi(0, 10, 12)
    with pytest.raises(ValidationFailed):
        emi(10000, 10, 0)
    with pytest.raises(ValidationFailed):
        emi(10000, -1, 12)


def test_quote_balances():
    quote = loan_quote(100000, 10, 12)
    assert quote["emi"] == 8791.59
    assert abs(quote["total_amount"] - 105499.08) < 0.05
    assert quote["total_interest"] == round(quote["total_amount"] - 100000, 2)


def test_schedule_needs_disbursement(db, make_group):
    ctx = make_group()
    loan = loan_at(db, ctx, days_ago=1)
    with pytest.raises(InvalidState):
        repayment_schedule(loan)


def test_schedule_states_and_late_fees(db, make_group):
    ctx = make_group()
    loan = loan_at(db, ctx, days_ago=5, amount=30000, interest_rate=12, tenure_months=3)
    transition_loan(db, loan.id, LoanStatus.DISBURSED, now=datetime(2024, 1, 31, 11, 0))

    plan = repayment_schedule(db.get(Loan, loan.id), as_of=date(2024, 1, 31))
    assert [row.due_date for row in plan] == [date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)]
    assert all(row.status == PaymentState.PENDING for row in plan)
    assert plan[-1].balance == 0.0
    assert plan[0].interest == 300.0
    assert round(sum(row.principal for row in plan), 2) == 30000.0

    first = plan[0].amount
    record_repayment(db, loan.id, first, date(2024, 3, 10))
    db.expire_all()
    plan = repayment_schedule(db.get(Loan, loan.id), as_of=date(2024, 4, 5))
    assert [row.status for row in plan] == [PaymentState.PAID, PaymentState.OVERDUE, PaymentState.PENDING]
    assert plan[0].paid_on == date(2024, 3, 10)
    assert plan[0].late_fee == 250.0
    assert plan[1].paid_on is None
    assert plan[1].late_fee == 100.0

    # a repayment after as_of is not counted yet
    record_repayment(db, loan.id, plan[1].amount, date(2024, 4, 10))
    db.expire_all()
    plan = repayment_schedule(db.get(Loan, loan.id), as_of=date(2024, 4, 5))
    assert plan[1].status == PaymentState.OVERDUE
