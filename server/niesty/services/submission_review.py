"""Content submission review: submit, approve, reject with reason, resubmit."""

from enum import Enum
from typing import Any, Mapping, Optional

from .deal_errors import DealNotFoundError, DealValidationError

MAX_URL_LENGTH = 2048
MAX_REASON_LENGTH = 2000


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    REWORK = "rework"
    APPROVED = "approved"


def validate_url(url: Any) -> str:
    if not isinstance(url, str) or not url.strip():
        raise DealValidationError("Content link is required", field="url")
    cleaned = url.strip()
    if len(cleaned) > MAX_URL_LENGTH:
        raise DealValidationError("Content link is too long", field="url")
    return cleaned


def validate_rejection_reason(reason: Any) -> str:
    if not isinstance(reason, str) or not reason.strip():
        raise DealValidationError("A reason is required to reject a submission", field="reason")
    cleaned = reason.strip()
    if len(cleaned) > MAX_REASON_LENGTH:
        raise DealValidationError("Rejection reason is too long", field="reason")
    return cleaned


def ensure_actionable(
    submission: Optional[Mapping[str, Any]],
    latest: Optional[Mapping[str, Any]],
    deal_id: Any,
) -> Mapping[str, Any]:
    """Check that ``submission`` is the deal's current, unreviewed delivery.

    Only the most recently created submission may be reviewed and it must not
    already be approved. Stale and missing submissions are reported the same way.
    """
    if submission is None or str(submission["deal_id"]) != str(deal_id):
        raise DealNotFoundError("Submission not found for this deal")
    if latest is None or str(latest["id"]) != str(submission["id"]):
        raise DealNotFoundError("This submission has been superseded by a newer one")
    if submission["status"] == SubmissionStatus.APPROVED.value:
        raise DealNotFoundError("No pending submission to review")
    return submission


def review_state(latest: Optional[Mapping[str, Any]]) -> str:
    """What the deal page shows for the latest submission.

    ``none`` (nothing delivered yet), ``awaiting_review``, ``rework`` or ``approved``.
    """
    if latest is None:
        return "none"
    status = latest["status"]
    if status == SubmissionStatus.PENDING.value:
        return "awaiting_review"
    if status == SubmissionStatus.REWORK.value:
        return "rework"
    return "approved"
