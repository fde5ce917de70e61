from .auth import CurrentUser, TokenPayload, UserResponse, UserRole
from .deals import (
    DealCreate,
    DealResponse,
    StageProgress,
    StageCatalogResponse,
    StageEventResponse,
    TermProposalCreate,
    TermProposalResponse,
    ProposalPairResponse,
    SubmissionCreate,
    SubmissionReject,
    SubmissionResponse,
    LatestSubmissionResponse,
    PricingMode,
)

__all__ = [
    "CurrentUser",
    "TokenPayload",
    "UserResponse",
    "UserRole",
    "DealCreate",
    "DealResponse",
    "StageProgress",
    "StageCatalogResponse",
    "StageEventResponse",
    "TermProposalCreate",
    "TermProposalResponse",
    "ProposalPairResponse",
    "SubmissionCreate",
    "SubmissionReject",
    "SubmissionResponse",
    "LatestSubmissionResponse",
    "PricingMode",
]
