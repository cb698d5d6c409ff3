from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chitfund.models import (
    AuctionStatus, CollectionStatus, FlagStatus, FlagSubject, GroupStatus,
    LoanStatus, PaymentMode, RepaymentStatus, RiskTier, UserRole, as_naive_utc,
)


# ── Org ──

class DepartmentCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)


class MandalCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    department_id: int


class BranchCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    mandal_id: int
    code: Optional[str] = Field(None, max_length=20)


class OrgNodeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class UserCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    role: UserRole = UserRole.MEMBER
    branch_id: Optional[int] = None
    phone: Optional[str] = Field(None, min_length=10, max_length=15)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.lstrip("+").isdigit():
            raise ValueError("Phone must contain digits only")
        return v


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    phone: Optional[str] = None
    role: UserRole
    branch_id: Optional[int] = None
    risk_level: RiskTier


# ── Chit groups ──

class GroupCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    branch_id: int
    chit_value: float = Field(..., gt=0)
    commission_percentage: float = Field(..., ge=0, lt=100)
    duration: int = Field(..., ge=1)
    max_members: int = Field(..., ge=1)
    start_date: date
    contribution_amount: Optional[float] = Field(None, gt=0)


class GroupResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    branch_id: int
    chit_value: float
    commission_percentage: float
    contribution_amount: float
    duration: int
    max_members: int
    current_cycle: int
    start_date: date
    status: GroupStatus


class MembershipCreate(BaseModel):
    member_id: int


class MembershipResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    group_id: int
    member_id: int
    payout_cycle: Optional[int] = None
    payout_date: Optional[datetime] = None


# ── Auctions ──

class AuctionCreate(BaseModel):
    group_id: int
    start_time: datetime
    end_time: datetime

    @field_validator("start_time", "end_time")
    @classmethod
    def to_utc(cls, v: datetime) -> datetime:
        return as_naive_utc(v)

    @model_validator(mode="after")
    def check_window(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class AuctionExtend(BaseModel):
    end_time: datetime

    @field_validator("end_time")
    @classmethod
    def to_utc(cls, v: datetime) -> datetime:
        return as_naive_utc(v)


class AuctionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    group_id: int
    cycle_number: int
    start_time: datetime
    end_time: datetime
    status: AuctionStatus
    winner_id: Optional[int] = None
    winning_bid_id: Optional[int] = None
    discount: Optional[float] = None
    commission: Optional[float] = None
    net_payout: Optional[float] = None
    settled_at: Optional[datetime] = None


class BidCreate(BaseModel):
    member_id: int
    amount: float = Field(..., ge=0)


class BidResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    auction_id: int
    member_id: int
    amount: float
    created_at: datetime


# ── Collections ──

class CollectionCreate(BaseModel):
    member_id: int
    group_id: int
    cycle: int = Field(..., ge=1)
    amount: float = Field(..., gt=0)
    payment_date: date
    payment_mode: PaymentMode
    receipt_number: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")
    agent_id: Optional[int] = None
    remarks: Optional[str] = None
    screenshot_url: Optional[str] = None
    approve: bool = False


class CollectionReject(BaseModel):
    reason: Optional[str] = None


class CollectionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    member_id: int
    group_id: int
    cycle_number: int
    amount: float
    payment_date: date
    payment_mode: PaymentMode
    status: CollectionStatus
    fine: float
    agent_id: Optional[int] = None
    receipt_number: str
    approved_at: Optional[datetime] = None


class ReceiptCreate(BaseModel):
    issued_by: str = Field(..., min_length=1, max_length=200)


class ReceiptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    collection_id: int
    issued_by: str
    receipt_url: str
    created_at: Optional[datetime] = None


# ── Risk ──

class FlagResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    subject_type: FlagSubject
    subject_id: int
    reason: str
    status: FlagStatus
    created_at: datetime
    resolved_at: Optional[datetime] = None


# ── Loans ──

class LoanCreate(BaseModel):
    member_id: int
    group_id: int
    amount: float = Field(..., gt=0)
    interest_rate: Optional[float] = Field(None, ge=0, le=100)
    tenure_months: Optional[int] = Field(None, ge=1, le=360)


class LoanTransition(BaseModel):
    status: LoanStatus


class RepaymentCreate(BaseModel):
    amount: float = Field(..., gt=0)
    payment_date: date


class LoanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    member_id: int
    group_id: int
    amount: float
    interest_rate: float
    tenure_months: int
    status: LoanStatus
    requested_on: datetime
    decided_on: Optional[datetime] = None
    disbursed_on: Optional[datetime] = None


class RepaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    loan_id: int
    amount: float
    payment_date: date
    status: RepaymentStatus
