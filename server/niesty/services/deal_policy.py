"""Who may do what on a deal."""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Optional
from uuid import UUID

from ..models.auth import CurrentUser
from .deal_errors import DealAuthorizationError


class DealAction(str, Enum):
    VIEW = "view"
    RESPOND = "respond"
    DECLINE = "decline"
    PROPOSE_TERMS = "propose_terms"
    CONFIRM_AGREEMENT = "confirm_agreement"
    SUBMIT_CONTENT = "submit_content"
    REVIEW_SUBMISSION = "review_submission"
    RELEASE_PAYMENT = "release_payment"


class DealParty(str, Enum):
    CREATOR = "creator"
    BUSINESS = "business"


_DENIAL_MESSAGES: dict[DealAction, str] = {
    DealAction.VIEW: "You are not a party to this deal.",
    DealAction.RESPOND: "Only the recipient of the deal request can accept it.",
    DealAction.DECLINE: "Only the recipient of the deal request can decline it.",
    DealAction.PROPOSE_TERMS: "Only the two parties to this deal can propose terms.",
    DealAction.CONFIRM_AGREEMENT: "Only the two parties to this deal can confirm the agreement.",
    DealAction.SUBMIT_CONTENT: "Only the creator on this deal can submit content.",
    DealAction.REVIEW_SUBMISSION: "Only the business on this deal can approve or reject content.",
    DealAction.RELEASE_PAYMENT: "Only platform administrators can release payments.",
}


def _same(a: Any, b: Any) -> bool:
    return a is not None and b is not None and str(a) == str(b)


def party_of(deal: Mapping[str, Any], user_id: UUID | str) -> Optional[DealParty]:
    """Return which side of the deal ``user_id`` is on, or None."""
    if _same(deal["creator_id"], user_id):
        return DealParty.CREATOR
    if _same(deal["business_id"], user_id):
        return DealParty.BUSINESS
    return None


def is_allowed(action: DealAction, actor: CurrentUser, deal: Mapping[str, Any]) -> bool:
    party = party_of(deal, actor.id)

    if action == DealAction.VIEW:
        return party is not None or actor.role == "admin"
    if action in (DealAction.RESPOND, DealAction.DECLINE):
        return _same(deal["receiver_id"], actor.id)
    if action in (DealAction.PROPOSE_TERMS, DealAction.CONFIRM_AGREEMENT):
        return party is not None
    if action == DealAction.SUBMIT_CONTENT:
        return party == DealParty.CREATOR
    if action == DealAction.REVIEW_SUBMISSION:
        return party == DealParty.BUSINESS
    if action == DealAction.RELEASE_PAYMENT:
        return actor.role == "admin"
    return False


def authorize(action: DealAction, actor: CurrentUser, deal: Mapping[str, Any]) -> None:
    if not is_allowed(action, actor, deal):
        raise DealAuthorizationError(_DENIAL_MESSAGES[action])
