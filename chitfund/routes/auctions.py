"""
Auction routes — scheduling, bidding and settlement.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chitfund.database import get_db
from chitfund.models import Auction, Bid
from chitfund.schemas import (
    AuctionCreate, AuctionExtend, AuctionResponse, BidCreate, BidResponse,
)
from chitfund.services import auction as auctions
from chitfund.services.ledger import fetch

router = APIRouter(prefix="/api/auctions", tags=["auctions"])


@router.post("", response_model=AuctionResponse, status_code=201)
def schedule_auction(data: AuctionCreate, db: Session = Depends(get_db)):
    return auctions.schedule_auction(db, data.group_id, data.start_time, data.end_time)


@router.get("/{auction_id}", response_model=AuctionResponse)
def get_auction(auction_id: int, db: Session = Depends(get_db)):
    return fetch(db, Auction, auction_id)


@router.get("/{auction_id}/bids", response_model=list[BidResponse])
def list_bids(auction_id: int, db: Session = Depends(get_db)):
    fetch(db, Auction, auction_id)
    return db.query(Bid).filter(Bid.auction_id == auction_id).order_by(Bid.created_at, Bid.id).all()


@router.post("/{auction_id}/open", response_model=AuctionResponse)
def open_auction(auction_id: int, db: Session = Depends(get_db)):
    return auctions.open_auction(db, auction_id)


@router.post("/{auction_id}/bids", response_model=BidResponse, status_code=201)
def place_bid(auction_id: int, data: BidCreate, db: Session = Depends(get_db)):
    return auctions.place_bid(db, auction_id, data.member_id, data.amount)


@router.post("/{auction_id}/resolve")
def resolve_auction(auction_id: int, db: Session = Depends(get_db)):
    """Settle the cycle: winner, commission and net payout. Refused until the window closes."""
    return auctions.resolve_auction(db, auction_id).as_dict()


@router.post("/{auction_id}/cancel", response_model=AuctionResponse)
def cancel_auction(auction_id: int, db: Session = Depends(get_db)):
    return auctions.cancel_auction(db, auction_id)


@router.post("/{auction_id}/extend", response_model=AuctionResponse)
def extend_auction(auction_id: int, data: AuctionExtend, db: Session = Depends(get_db)):
    return auctions.extend_auction(db, auction_id, data.end_time)
