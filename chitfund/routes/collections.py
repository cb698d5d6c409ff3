"""
Collection routes — record, approve/reject, passbook and receipts.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chitfund.database import get_db
from chitfund.models import Collection
from chitfund.schemas import (
    CollectionCreate, CollectionReject, CollectionResponse, ReceiptCreate, ReceiptResponse,
)
from chitfund.services import reconciliation
from chitfund.services.ledger import fetch
from chitfund.services.receipts import issue_receipt

router = APIRouter(prefix="/api/collections", tags=["collections"])


@router.post("", response_model=CollectionResponse, status_code=201)
def record_collection(data: CollectionCreate, db: Session = Depends(get_db)):
    """Record a payment. Replaying the same receipt_number returns the stored record."""
    return reconciliation.record_collection(
        db,
        member_id=data.member_id,
        group_id=data.group_id,
        cycle=data.cycle,
        amount=data.amount,
        payment_date=data.payment_date,
        payment_mode=data.payment_mode,
        receipt_number=data.receipt_number,
        agent_id=data.agent_id,
        remarks=data.remarks,
        screenshot_url=data.screenshot_url,
        approve=data.approve,
    )


@router.get("/{collection_id}", response_model=CollectionResponse)
def get_collection(collection_id: int, db: Session = Depends(get_db)):
    return fetch(db, Collection, collection_id)


@router.post("/{collection_id}/approve", response_model=CollectionResponse)
def approve_collection(collection_id: int, db: Session = Depends(get_db)):
    return reconciliation.approve_collection(db, collection_id)


@router.post("/{collection_id}/reject", response_model=CollectionResponse)
def reject_collection(collection_id: int, data: CollectionReject = None, db: Session = Depends(get_db)):
    return reconciliation.reject_collection(db, collection_id, data.reason if data else None)


@router.post("/{collection_id}/receipt", response_model=ReceiptResponse, status_code=201)
def create_receipt(collection_id: int, data: ReceiptCreate, db: Session = Depends(get_db)):
    return issue_receipt(db, collection_id, data.issued_by)


@router.get("/passbook/{member_id}")
def passbook(member_id: int, db: Session = Depends(get_db)):
    return reconciliation.member_passbook(db, member_id)
