from .deal_errors import (
    DealError,
    DealValidationError,
    DealAuthorizationError,
    DealNotFoundError,
    DealTransitionError,
    DealConflictError,
)
from .deal_stages import DealStage, DealTrigger
from .deal_workflow import DealWorkflow

__all__ = [
    "DealError",
    "DealValidationError",
    "DealAuthorizationError",
    "DealNotFoundError",
    "DealTransitionError",
    "DealConflictError",
    "DealStage",
    "DealTrigger",
    "DealWorkflow",
]
