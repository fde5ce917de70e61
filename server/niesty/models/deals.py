from datetime import datetime, date
from typing import Optional, Literal
from uuid import UUID
from pydantic import BaseModel, Field

PricingMode = Literal["fixed", "negotiable"]
SubmissionStatus = Literal["pending", "rework", "approved"]
PayoutStatus = Literal["requested", "paid"]
ReviewState = Literal["none", "awaiting_review", "rework", "approved"]


# Deal models
class DealCreate(BaseModel):
    receiver_id: UUID
    message: str = Field(min_length=1, max_length=5000)
    amount: Optional[int] = Field(default=None, gt=0, le=1_000_000)
    pricing_mode: Optional[PricingMode] = None
    currency: str = Field(default="USD", min_length=3, max_length=3)
    turnstile_token: Optional[str] = None


class StageProgress(BaseModel):
    stage: str
    state: Literal["done", "current", "upcoming", "suppressed"]


class DealResponse(BaseModel):
    id: UUID
    sender_id: UUID
    receiver_id: UUID
    creator_id: UUID
    business_id: UUID
    message: str
    deal_value: Optional[int]
    offer_currency: str
    offer_pricing_mode: PricingMode
    deal_stage: str
    status: Optional[str]
    is_rejected: bool
    accepted_at: Optional[datetime]
    rejected_at: Optional[datetime]
    creator_agreed_at: Optional[datetime]
    business_agreed_at: Optional[datetime]
    both_agreed: bool
    agreed_deadline: Optional[date]
    approved_at: Optional[datetime]
    payout_requested_at: Optional[datetime]
    payout_status: Optional[PayoutStatus]
    payment_released_at: Optional[datetime]
    version: int
    allowed_actions: list[str] = []
    progress: list[StageProgress] = []
    created_at: datetime
    updated_at: Optional[datetime] = None


class StageCatalogResponse(BaseModel):
    stages: list[str]
    transitions: dict[str, dict[str, str]]


class StageEventResponse(BaseModel):
    id: UUID
    from_stage: Optional[str]
    to_stage: str
    trigger: str
    actor_id: Optional[UUID]
    created_at: datetime


# Term proposal models
class TermProposalCreate(BaseModel):
    amount: int = Field(gt=0, le=1_000_000)
    deadline: date


class TermProposalResponse(BaseModel):
    id: UUID
    deal_id: UUID
    user_id: UUID
    amount: int
    deadline: date
    created_at: datetime


class ProposalPairResponse(BaseModel):
    sender: Optional[TermProposalResponse] = None
    receiver: Optional[TermProposalResponse] = None
    mine: Optional[TermProposalResponse]
    other: Optional[TermProposalResponse]
    matched: bool


# Submission models
class SubmissionCreate(BaseModel):
    url: str = Field(max_length=2048)


class SubmissionReject(BaseModel):
    reason: str = Field(max_length=2000)


class SubmissionResponse(BaseModel):
    id: UUID
    deal_id: UUID
    submitted_by: UUID
    url: str
    status: SubmissionStatus
    rejection_reason: Optional[str]
    created_at: datetime


class LatestSubmissionResponse(BaseModel):
    submission: Optional[SubmissionResponse]
    review_state: ReviewState
