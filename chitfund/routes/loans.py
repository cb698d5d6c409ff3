"""
Loan routes — eligibility, requests, status changes, EMI schedule and repayments.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from chitfund.database import get_db
from chitfund.models import Loan
from chitfund.schemas import (
    LoanCreate, LoanResponse, LoanTransition, RepaymentCreate, RepaymentResponse,
)
from chitfund.services import loans
from chitfund.services.ledger import fetch

router = APIRouter(prefix="/api/loans", tags=["loans"])


@router.get("/eligibility/{member_id}/{group_id}")
def loan_eligibility(member_id: int, group_id: int, db: Session = Depends(get_db)):
    return loans.loan_status(db, member_id, group_id)


@router.get("/calculator")
def emi_calculator(principal: float = Query(..., gt=0),
                   interest_rate: float = Query(..., ge=0, le=100),
                   tenure_months: int = Query(..., ge=1, le=360)):
    """Monthly instalment, total interest and total repayable for a reducing-balance loan."""
    return loans.loan_quote(principal, interest_rate, tenure_months)


@router.post("", response_model=LoanResponse, status_code=201)
def request_loan(data: LoanCreate, db: Session = Depends(get_db)):
    return loans.request_loan(db, data.member_id, data.group_id, data.amount,
                              interest_rate=data.interest_rate, tenure_months=data.tenure_months)


@router.get("/{loan_id}", response_model=LoanResponse)
def get_loan(loan_id: int, db: Session = Depends(get_db)):
    return fetch(db, Loan, loan_id)


@router.get("/{loan_id}/schedule")
def repayment_schedule(loan_id: int, db: Session = Depends(get_db)):
    loan = fetch(db, Loan, loan_id)
    return [row.as_dict() for row in loans.repayment_schedule(loan)]


@router.post("/{loan_id}/status", response_model=LoanResponse)
def transition_loan(loan_id: int, data: LoanTransition, db: Session = Depends(get_db)):
    return loans.transition_loan(db, loan_id, data.status)


@router.post("/{loan_id}/repayments", response_model=RepaymentResponse, status_code=201)
def record_repayment(loan_id: int, data: RepaymentCreate, db: Session = Depends(get_db)):
    return loans.record_repayment(db, loan_id, data.amount, data.payment_date)
