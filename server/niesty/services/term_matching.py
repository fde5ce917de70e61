"""
Term matching between the two parties of a deal.

Each party proposes an amount and a delivery date independently. Proposals are
append-only; the newest row per party is the one that counts. Terms match only
when both latest proposals carry exactly the same amount and calendar date.
"""

import math
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, NamedTuple, Optional

from .deal_errors import DealValidationError

MAX_AMOUNT = 1_000_000


class ProposalPair(NamedTuple):
    party_a: Optional[Mapping[str, Any]]
    party_b: Optional[Mapping[str, Any]]


def validate_amount(amount: Any) -> int:
    """Return ``amount`` as whole currency units or raise DealValidationError."""
    if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)):
        raise DealValidationError("Amount must be a number", field="amount")
    if isinstance(amount, float) and not math.isfinite(amount):
        raise DealValidationError("Amount must be a finite number", field="amount")
    if isinstance(amount, Decimal) and not amount.is_finite():
        raise DealValidationError("Amount must be a finite number", field="amount")
    if amount <= 0:
        raise DealValidationError("Amount must be greater than zero", field="amount")
    if amount != int(amount):
        raise DealValidationError("Amount must be in whole currency units", field="amount")
    if amount > MAX_AMOUNT:
        raise DealValidationError(f"Amount cannot exceed {MAX_AMOUNT:,}", field="amount")
    return int(amount)


def deadline_date_portion(value: Any) -> str:
    """Calendar-date part of a deadline (``YYYY-MM-DD``), ignoring any time of day."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()[:10]


def validate_deadline(deadline: Any) -> date:
    """Parse a deadline into a date or raise DealValidationError."""
    if deadline is None or (isinstance(deadline, str) and not deadline.strip()):
        raise DealValidationError("Deadline required", field="deadline")
    if isinstance(deadline, datetime):
        return deadline.date()
    if isinstance(deadline, date):
        return deadline
    try:
        return date.fromisoformat(deadline_date_portion(deadline))
    except (TypeError, ValueError) as exc:
        raise DealValidationError("Deadline must be a calendar date (YYYY-MM-DD)", field="deadline") from exc


def _creation_key(row: Mapping[str, Any]):
    return (row["created_at"], row.get("seq") or 0)


def latest_pair(
    proposals: Iterable[Mapping[str, Any]],
    party_a_id: Any,
    party_b_id: Any,
) -> ProposalPair:
    """Pick each party's most recently created proposal.

    Recency comes from creation order only; row order in ``proposals`` and
    the proposed values play no part.
    """
    latest: dict[str, Mapping[str, Any]] = {}
    for row in proposals:
        key = str(row["user_id"])
        current = latest.get(key)
        if current is None or _creation_key(row) > _creation_key(current):
            latest[key] = row
    return ProposalPair(latest.get(str(party_a_id)), latest.get(str(party_b_id)))


def _numeric(value: Any) -> Optional[Decimal]:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def proposals_match(
    a: Optional[Mapping[str, Any]],
    b: Optional[Mapping[str, Any]],
) -> bool:
    """True iff both exist, amounts are equal and deadline dates are equal."""
    if not a or not b:
        return False
    amount_a = _numeric(a["amount"])
    amount_b = _numeric(b["amount"])
    if amount_a is None or amount_b is None or amount_a != amount_b:
        return False
    return deadline_date_portion(a["deadline"]) == deadline_date_portion(b["deadline"])
