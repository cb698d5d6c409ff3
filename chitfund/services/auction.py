"""
Auction Resolver
════════════════
One auction per (group, cycle). Members bid the discount they will accept
against the full pot; the deepest discount wins and the earliest bid wins a
tie.

  Lifecycle   scheduled ──open──▶ active ──resolve──▶ completed
                  │                  │
                  └──────cancel──────┴──▶ cancelled

  Settlement  commission = chit_value × commission_percentage / 100
              net_payout = chit_value − discount − commission

Resolution is at-most-once: the active → completed step is a conditional
UPDATE guarded on status == active, so of two racing resolvers exactly one
wins and the other gets Conflict.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from chitfund import config
from chitfund.errors import (
    Conflict, Ineligible, InvalidState, NoWinner, NotYetClosable, ValidationFailed,
)
from chitfund.money import percentage_of, to_money
from chitfund.models import (
    Auction, AuctionStatus, Bid, ChitGroup, GroupStatus, Membership, as_naive_utc, utcnow,
)
from chitfund.services.groups import get_membership, transition_group
from chitfund.services.ledger import compare_and_set, fetch, insert, log_activity

logger = logging.getLogger("chitfund.auction")


@dataclass(frozen=True)
class Settlement:
    auction_id: int
    group_id: int
    cycle: int
    winner_id: int
    winning_bid_id: int
    chit_value: float
    discount: float
    commission: float
    net_payout: float
    group_completed: bool = False

    def as_dict(self) -> dict:
        return {
            "auction_id": self.auction_id,
            "group_id": self.group_id,
            "cycle": self.cycle,
            "winner_id": self.winner_id,
            "winning_bid_id": self.winning_bid_id,
            "chit_value": self.chit_value,
            "discount": self.discount,
            "commission": self.commission,
            "net_payout": self.net_payout,
            "group_completed": self.group_completed,
        }


# ═══════════════════════════════════════════════
#  PURE HELPERS
# ═══════════════════════════════════════════════

def commission_for(chit_value: float, commission_percentage: float) -> float:
    return float(percentage_of(chit_value, commission_percentage))


def compute_settlement(chit_value: float, commission_percentage: float, discount: float) -> tuple[float, float]:
    """Return (commission, net_payout) such that payout + commission + discount == chit_value."""
    commission = percentage_of(chit_value, commission_percentage)
    net_payout = to_money(chit_value) - to_money(discount) - commission
    leak = abs(float(net_payout + commission + to_money(discount)) - chit_value)
    if leak > config.MONEY_EPSILON:
        raise ValidationFailed(f"Settlement does not balance (leak {leak})")
    return float(commission), float(net_payout)


def select_winning_bid(bids: Sequence[Bid]) -> Optional[Bid]:
    """Highest discount wins; ties go to the earliest bid, then the lowest id."""
    if not bids:
        return None
    return min(bids, key=lambda b: (-b.amount, b.created_at, b.id))


def has_won_payout(db: Session, group_id: int, member_id: int) -> bool:
    membership = get_membership(db, group_id, member_id)
    return membership is not None and membership.payout_cycle is not None


# ═══════════════════════════════════════════════
#  LIFECYCLE
# ═══════════════════════════════════════════════

def schedule_auction(db: Session, group_id: int, start_time: datetime, end_time: datetime) -> Auction:
    """Schedule the auction for the group's next unsettled cycle."""
    start_time, end_time = as_naive_utc(start_time), as_naive_utc(end_time)
    group = fetch(db, ChitGroup, group_id, "Chit group")
    if group.status != GroupStatus.ACTIVE:
        raise InvalidState(f"Group {group_id} is {group.status.value}; auctions need an active group")
    if end_time <= start_time:
        raise ValidationFailed("end_time must be after start_time")
    if group.current_cycle >= group.duration:
        raise InvalidState(f"Group {group_id} has no cycles left to auction")

    cycle = group.current_cycle + 1
    clash = db.query(Auction).filter(
        Auction.group_id == group_id,
        Auction.cycle_number == cycle,
        Auction.status != AuctionStatus.CANCELLED,
    ).first()
    if clash:
        raise InvalidState(f"Cycle {cycle} already has auction #{clash.id} ({clash.status.value})")

    auction = insert(db, Auction(
        group_id=group_id,
        cycle_number=cycle,
        start_time=start_time,
        end_time=end_time,
        status=AuctionStatus.SCHEDULED,
    ))
    log_activity(db, "auction", auction.id, "auction.schedule",
                 f"Auction scheduled for group #{group_id} cycle {cycle}",
                 metadata={"start_time": start_time, "end_time": end_time})
    db.commit()
    logger.info(f"Auction #{auction.id} scheduled for group #{group_id} cycle {cycle}")
    return auction


def open_auction(db: Session, auction_id: int) -> Auction:
    auction = fetch(db, Auction, auction_id)
    if auction.status != AuctionStatus.SCHEDULED:
        raise InvalidState(f"Auction {auction_id} is {auction.status.value}, not scheduled")
    already_active = db.query(Auction).filter(
        Auction.group_id == auction.group_id,
        Auction.status == AuctionStatus.ACTIVE,
    ).first()
    if already_active:
        raise InvalidState(f"Group {auction.group_id} already has active auction #{already_active.id}")

    if not compare_and_set(db, Auction, auction_id,
                           {"status": AuctionStatus.SCHEDULED}, {"status": AuctionStatus.ACTIVE}):
        db.rollback()
        raise Conflict(f"Auction {auction_id} changed state while opening")
    log_activity(db, "auction", auction_id, "auction.open", "Auction opened for bidding")
    db.commit()
    return auction


def cancel_auction(db: Session, auction_id: int) -> Auction:
    auction = fetch(db, Auction, auction_id)
    if auction.status not in (AuctionStatus.SCHEDULED, AuctionStatus.ACTIVE):
        raise InvalidState(f"Auction {auction_id} is {auction.status.value} and cannot be cancelled")
    if not compare_and_set(db, Auction, auction_id,
                           {"status": auction.status}, {"status": AuctionStatus.CANCELLED}):
        db.rollback()
        raise Conflict(f"Auction {auction_id} changed state while cancelling")
    log_activity(db, "auction", auction_id, "auction.cancel", "Auction cancelled")
    db.commit()
    logger.info(f"Auction #{auction_id} cancelled")
    return auction


def extend_auction(db: Session, auction_id: int, new_end_time: datetime) -> Auction:
    """Push back the close of an active auction, e.g. after NoWinner."""
    new_end_time = as_naive_utc(new_end_time)
    auction = fetch(db, Auction, auction_id)
    if auction.status != AuctionStatus.ACTIVE:
        raise InvalidState(f"Auction {auction_id} is {auction.status.value}, not active")
    if new_end_time <= auction.end_time:
        raise ValidationFailed("new_end_time must be later than the current end_time")
    previous = auction.end_time
    auction.end_time = new_end_time
    log_activity(db, "auction", auction_id, "auction.extend", "Auction window extended",
                 metadata={"from": previous, "to": new_end_time})
    db.commit()
    return auction


# ═══════════════════════════════════════════════
#  BIDDING
# ═══════════════════════════════════════════════

def place_bid(db: Session, auction_id: int, member_id: int, amount: float,
              now: Optional[datetime] = None) -> Bid:
    """Submit an immutable bid. Ineligible bidders are rejected here, never at resolution."""
    now = as_naive_utc(now) or utcnow()
    auction = fetch(db, Auction, auction_id)
    if auction.status != AuctionStatus.ACTIVE:
        raise InvalidState(f"Auction {auction_id} is {auction.status.value}; bids need an active auction")
    if now < auction.start_time or now >= auction.end_time:
        raise InvalidState(f"Auction {auction_id} is not accepting bids at {now.isoformat()}")

    group = fetch(db, ChitGroup, auction.group_id, "Chit group")
    membership = get_membership(db, group.id, member_id)
    if membership is None:
        raise Ineligible(f"User {member_id} is not a member of group {group.id}")
    if membership.payout_cycle is not None:
        logger.warning(f"Rejected bid from member #{member_id}: already paid out in cycle "
                       f"{membership.payout_cycle} of group #{group.id}")
        raise Ineligible(f"Member {member_id} already received a payout in this group")

    max_discount = group.chit_value - commission_for(group.chit_value, group.commission_percentage)
    if amount < 0 or amount >= max_discount:
        raise ValidationFailed(f"Bid must be between 0 and {max_discount:,.2f}")

    bid = insert(db, Bid(auction_id=auction_id, member_id=member_id, amount=amount, created_at=now))
    log_activity(db, "auction", auction_id, "bid.place", f"Bid of ₹{amount:,.2f}",
                 user_id=member_id, metadata={"bid_id": bid.id})
    db.commit()
    return bid


# ═══════════════════════════════════════════════
#  RESOLUTION
# ═══════════════════════════════════════════════

def resolve_auction(db: Session, auction_id: int, now: Optional[datetime] = None) -> Settlement:
    """
    Close an active auction whose window has ended, pick the winner and
    settle the cycle. Raises InvalidState, NotYetClosable, NoWinner or
    Conflict; nothing is written unless the whole settlement commits.
    """
    now = as_naive_utc(now) or utcnow()
    auction = fetch(db, Auction, auction_id)
    if auction.status != AuctionStatus.ACTIVE:
        raise InvalidState(f"Auction {auction_id} is {auction.status.value}, not active")
    if now < auction.end_time:
        raise NotYetClosable(f"Auction {auction_id} closes at {auction.end_time.isoformat()}")

    bids = db.query(Bid).filter(Bid.auction_id == auction_id).all()
    winning = select_winning_bid(bids)
    if winning is None:
        logger.warning(f"Auction #{auction_id} closed without bids")
        raise NoWinner(f"Auction {auction_id} has no bids; cancel or extend it")

    group = fetch(db, ChitGroup, auction.group_id, "Chit group")
    commission, net_payout = compute_settlement(group.chit_value, group.commission_percentage, winning.amount)

    try:
        won = compare_and_set(
            db, Auction, auction_id,
            expected={"status": AuctionStatus.ACTIVE},
            changes={
                "status": AuctionStatus.COMPLETED,
                "winner_id": winning.member_id,
                "winning_bid_id": winning.id,
                "discount": winning.amount,
                "commission": commission,
                "net_payout": net_payout,
                "settled_at": now,
            },
        )
        if not won:
            raise Conflict(f"Auction {auction_id} was settled by another request")

        membership = db.query(Membership).filter(
            Membership.group_id == group.id,
            Membership.member_id == winning.member_id,
        ).one()
        if membership.payout_cycle is not None:
            raise InvalidState(f"Member {winning.member_id} already received a payout in this group")
        membership.payout_cycle = auction.cycle_number
        membership.payout_date = now

        group.current_cycle += 1
        completed = group.current_cycle == group.duration
        if completed:
            transition_group(db, group, GroupStatus.COMPLETED)

        log_activity(db, "auction", auction_id, "auction.resolve",
                     f"Member #{winning.member_id} won cycle {auction.cycle_number}",
                     user_id=winning.member_id,
                     metadata={"bid_id": winning.id, "discount": winning.amount,
                               "commission": commission, "net_payout": net_payout})
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Auction #{auction_id} settled: winner #{winning.member_id} "
                f"payout={net_payout} commission={commission}")
    return Settlement(
        auction_id=auction_id,
        group_id=group.id,
        cycle=auction.cycle_number,
        winner_id=winning.member_id,
        winning_bid_id=winning.id,
        chit_value=group.chit_value,
        discount=winning.amount,
        commission=commission,
        net_payout=net_payout,
        group_completed=completed,
    )
