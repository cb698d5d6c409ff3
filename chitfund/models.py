import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Float, Date, DateTime, Text, ForeignKey,
    UniqueConstraint, CheckConstraint, Index, Enum as SAEnum, text,
)
from sqlalchemy.orm import relationship

from chitfund.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Convert an offset-aware timestamp to naive UTC; naive values pass through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _enum_column(enum_cls, **kwargs):
    return Column(
        SAEnum(enum_cls, native_enum=False, length=20, validate_strings=True,
               values_callable=lambda e: [m.value for m in e]),
        **kwargs,
    )


# ════════════════════════════════════════════════
#  STATUS ENUMS
# ════════════════════════════════════════════════
class UserRole(str, enum.Enum):
    MEMBER = "member"
    AGENT = "agent"
    BRANCH_MANAGER = "branch_manager"
    MANDAL_HEAD = "mandal_head"
    DEPARTMENT_HEAD = "department_head"
    ADMIN = "admin"


class RiskTier(str, enum.Enum):
    NORMAL = "normal"
    HIGH = "high"


class GroupStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AuctionStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CollectionStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PaymentState(str, enum.Enum):
    """Derived state of a contribution or loan instalment; never stored."""
    PAID = "paid"
    PENDING = "pending"
    OVERDUE = "overdue"


class PaymentMode(str, enum.Enum):
    CASH = "cash"
    ONLINE = "online"
    PHONEPE_QR = "phonepe_qr"


class LoanStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISBURSED = "disbursed"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"


class RepaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class FlagSubject(str, enum.Enum):
    USER = "user"
    AGENT = "agent"


class FlagStatus(str, enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"


# ════════════════════════════════════════════════
#  ORG HIERARCHY  (Department ⊃ Mandal ⊃ Branch)
# ════════════════════════════════════════════════
class Department(Base):
    __tablename__ = "departments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    mandals = relationship("Mandal", back_populates="department")


class Mandal(Base):
    __tablename__ = "mandals"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    department_id = Column(Integer, ForeignKey("departments.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)

    department = relationship("Department", back_populates="mandals")
    branches = relationship("Branch", back_populates="mandal")


class Branch(Base):
    __tablename__ = "branches"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    code = Column(String(20), nullable=True, unique=True)
    mandal_id = Column(Integer, ForeignKey("mandals.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)

    mandal = relationship("Mandal", back_populates="branches")
    groups = relationship("ChitGroup", back_populates="branch")


# ════════════════════════════════════════════════
#  USERS  (members, collection agents, staff)
# ════════════════════════════════════════════════
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    phone = Column(String(15), nullable=True)
    role = _enum_column(UserRole, nullable=False, default=UserRole.MEMBER)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=True, index=True)
    risk_level = _enum_column(RiskTier, nullable=False, default=RiskTier.NORMAL)
    created_at = Column(DateTime, default=utcnow)


# ════════════════════════════════════════════════
#  CHIT GROUP + MEMBERSHIP
# ════════════════════════════════════════════════
class ChitGroup(Base):
    __tablename__ = "chit_groups"
    __table_args__ = (
        CheckConstraint("current_cycle >= 0 AND current_cycle <= duration", name="ck_group_cycle_range"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    chit_value = Column(Float, nullable=False)
    commission_percentage = Column(Float, nullable=False)  # 5 means 5%
    contribution_amount = Column(Float, nullable=False)  # owed per member per cycle
    duration = Column(Integer, nullable=False)  # total cycles
    max_members = Column(Integer, nullable=False)
    current_cycle = Column(Integer, nullable=False, default=0)  # settled cycles
    start_date = Column(Date, nullable=False)  # calendar month of cycle 1
    status = _enum_column(GroupStatus, nullable=False, default=GroupStatus.PENDING)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)

    branch = relationship("Branch", back_populates="groups")
    memberships = relationship("Membership", back_populates="group")


class Membership(Base):
    __tablename__ = "memberships"
    __table_args__ = (UniqueConstraint("group_id", "member_id", name="uq_membership_group_member"),)

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey("chit_groups.id"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    joined_at = Column(DateTime, default=utcnow)
    payout_cycle = Column(Integer, nullable=True)  # set once, when the member wins
    payout_date = Column(DateTime, nullable=True)

    group = relationship("ChitGroup", back_populates="memberships")
    member = relationship("User")


# ════════════════════════════════════════════════
#  AUCTION + BIDS
# ════════════════════════════════════════════════
class Auction(Base):
    __tablename__ = "auctions"
    __table_args__ = (
        Index("uq_auction_active_per_group", "group_id", unique=True,
              sqlite_where=text("status = 'active'"), postgresql_where=text("status = 'active'")),
        Index("uq_auction_completed_per_cycle", "group_id", "cycle_number", unique=True,
              sqlite_where=text("status = 'completed'"), postgresql_where=text("status = 'completed'")),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey("chit_groups.id"), nullable=False, index=True)
    cycle_number = Column(Integer, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = _enum_column(AuctionStatus, nullable=False, default=AuctionStatus.SCHEDULED)
    winner_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    winning_bid_id = Column(Integer, nullable=True)
    discount = Column(Float, nullable=True)
    commission = Column(Float, nullable=True)
    net_payout = Column(Float, nullable=True)
    settled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    group = relationship("ChitGroup")
    bids = relationship("Bid", back_populates="auction", order_by="Bid.created_at")


class Bid(Base):
    __tablename__ = "bids"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    auction_id = Column(Integer, ForeignKey("auctions.id"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Float, nullable=False)  # discount accepted against chit_value
    created_at = Column(DateTime, nullable=False, default=utcnow)

    auction = relationship("Auction", back_populates="bids")


# ════════════════════════════════════════════════
#  COLLECTIONS (member contributions) + RECEIPTS
# ════════════════════════════════════════════════
class Collection(Base):
    __tablename__ = "collections"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    member_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    group_id = Column(Integer, ForeignKey("chit_groups.id"), nullable=False, index=True)
    cycle_number = Column(Integer, nullable=False)
    amount = Column(Float, nullable=False)
    payment_date = Column(Date, nullable=False, index=True)
    payment_mode = _enum_column(PaymentMode, nullable=False)
    status = _enum_column(CollectionStatus, nullable=False, default=CollectionStatus.PENDING)
    fine = Column(Float, nullable=False, default=0.0)
    agent_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    receipt_number = Column(String(64), nullable=False, unique=True)  # caller-supplied idempotency key
    remarks = Column(Text, nullable=True)
    screenshot_url = Column(String(500), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    group = relationship("ChitGroup")
    member = relationship("User", foreign_keys=[member_id])
    agent = relationship("User", foreign_keys=[agent_id])
    receipts = relationship("Receipt", back_populates="collection")


class Receipt(Base):
    __tablename__ = "receipts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    collection_id = Column(Integer, ForeignKey("collections.id"), nullable=False, index=True)
    issued_by = Column(String(200), nullable=False)
    receipt_url = Column(String(500), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    collection = relationship("Collection", back_populates="receipts")


# ════════════════════════════════════════════════
#  LOANS
# ════════════════════════════════════════════════
class Loan(Base):
    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    member_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    group_id = Column(Integer, ForeignKey("chit_groups.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False, default=0.0)
    interest_rate = Column(Float, nullable=False, default=0.0)          # % per annum
    tenure_months = Column(Integer, nullable=False, default=12)
    status = _enum_column(LoanStatus, nullable=False, default=LoanStatus.PENDING)
    requested_on = Column(DateTime, nullable=False, default=utcnow)
    decided_on = Column(DateTime, nullable=True)
    disbursed_on = Column(DateTime, nullable=True)

    repayments = relationship("LoanRepayment", back_populates="loan")


class LoanRepayment(Base):
    __tablename__ = "loan_repayments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    payment_date = Column(Date, nullable=False)
    status = _enum_column(RepaymentStatus, nullable=False, default=RepaymentStatus.COMPLETED)
    created_at = Column(DateTime, default=utcnow)

    loan = relationship("Loan", back_populates="repayments")


# ════════════════════════════════════════════════
#  RISK FLAGS  (append-only)
# ════════════════════════════════════════════════
class RiskFlag(Base):
    __tablename__ = "risk_flags"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    subject_type = _enum_column(FlagSubject, nullable=False)
    subject_id = Column(Integer, nullable=False, index=True)
    reason = Column(String(300), nullable=False)
    status = _enum_column(FlagStatus, nullable=False, default=FlagStatus.OPEN)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)


# ════════════════════════════════════════════════
#  ACTIVITY LOG
# ════════════════════════════════════════════════
class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_type = Column(String(50), nullable=False)  # group, auction, collection, loan, flag
    entity_id = Column(Integer, nullable=False)
    action = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    user_id = Column(Integer, nullable=True)
    metadata_json = Column(Text, nullable=True)  # JSON string
    created_at = Column(DateTime, default=utcnow)
