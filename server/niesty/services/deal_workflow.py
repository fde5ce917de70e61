"""
Deal Workflow

Runs every deal operation: authorizes the actor, validates input, resolves the
stage transition and writes the result. Payload writes and their stage change
share one transaction and one versioned deal update, so a concurrent writer
gets a DealConflictError rather than silently overwriting.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from ..models.auth import CurrentUser
from .deal_errors import (
    DealConflictError,
    DealNotFoundError,
    DealTransitionError,
    DealValidationError,
)
from .deal_policy import DealAction, DealParty, authorize, party_of
from .deal_stages import INITIAL_STAGE, DealStage, DealTrigger, next_stage
from .submission_review import (
    SubmissionStatus,
    ensure_actionable,
    validate_rejection_reason,
    validate_url,
)
from .term_matching import latest_pair, proposals_match, validate_amount, validate_deadline

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 5000
PRICING_MODES = ("fixed", "negotiable")

_AGREEMENT_COLUMNS = {
    DealParty.CREATOR: "creator_agreed_at",
    DealParty.BUSINESS: "business_agreed_at",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_rejected(deal: dict) -> bool:
    return deal.get("status") == "rejected" or deal.get("rejected_at") is not None


class DealWorkflow:
    """Deal lifecycle operations over a deal store."""

    def __init__(self, store):
        self.store = store

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _load_deal(self, deal_id: UUID) -> dict:
        deal = await self.store.get_deal(deal_id)
        if deal is None:
            raise DealNotFoundError("Deal not found")
        return deal

    async def _load_for(self, action: DealAction, actor: CurrentUser, deal_id: UUID) -> dict:
        deal = await self._load_deal(deal_id)
        authorize(action, actor, deal)
        return deal

    async def _write(self, deal: dict, changes: dict[str, Any]) -> dict:
        updated = await self.store.update_deal(deal["id"], deal["version"], changes)
        if updated is None:
            logger.warning("[Deals] Stale write rejected for deal %s (version %s)", deal["id"], deal["version"])
            raise DealConflictError("This deal was updated by someone else. Reload and try again.")
        return updated

    async def _advance(
        self,
        deal: dict,
        trigger: DealTrigger,
        actor: CurrentUser,
        changes: Optional[dict[str, Any]] = None,
    ) -> dict:
        target = next_stage(deal["deal_stage"], trigger, rejected=is_rejected(deal))
        updated = await self._write(deal, {**(changes or {}), "deal_stage": target.value})
        await self.store.record_stage_event(
            deal["id"], deal["deal_stage"], target.value, trigger.value, actor.id
        )
        logger.info(
            "[Deals] Deal %s: %s -> %s (%s by %s)",
            deal["id"], deal["deal_stage"], target.value, trigger.value, actor.id,
        )
        return updated

    # ------------------------------------------------------------------
    # Deal requests
    # ------------------------------------------------------------------

    async def create_deal(
        self,
        actor: CurrentUser,
        receiver_id: UUID,
        message: str,
        amount: Optional[int] = None,
        pricing_mode: Optional[str] = None,
        currency: str = "USD",
    ) -> dict:
        """Send a deal request from ``actor`` to ``receiver_id``."""
        if not isinstance(message, str) or not message.strip():
            raise DealValidationError("Message is required", field="message")
        message = message.strip()
        if len(message) > MAX_MESSAGE_LENGTH:
            raise DealValidationError("Message is too long", field="message")

        deal_value = validate_amount(amount) if amount is not None else None
        if pricing_mode is None:
            pricing_mode = "fixed" if deal_value else "negotiable"
        if pricing_mode not in PRICING_MODES:
            raise DealValidationError("Pricing mode must be 'fixed' or 'negotiable'", field="pricing_mode")
        if pricing_mode == "fixed" and deal_value is None:
            raise DealValidationError("A fixed-price offer needs an amount", field="amount")

        currency = (currency or "USD").strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise DealValidationError("Currency must be a 3-letter code", field="currency")

        if str(receiver_id) == str(actor.id):
            raise DealValidationError("You cannot send a deal to yourself", field="receiver_id")

        receiver = await self.store.get_user(receiver_id)
        if receiver is None or not receiver.get("is_active", True):
            raise DealNotFoundError("Recipient not found")

        roles = {actor.role: actor.id, receiver["role"]: receiver["id"]}
        if set(roles) != {DealParty.CREATOR.value, DealParty.BUSINESS.value}:
            raise DealValidationError("Deals must be between a creator and a business", field="receiver_id")

        async with self.store.transaction():
            deal = await self.store.create_deal(
                sender_id=actor.id,
                receiver_id=receiver["id"],
                creator_id=roles[DealParty.CREATOR.value],
                business_id=roles[DealParty.BUSINESS.value],
                message=message,
                deal_value=deal_value if pricing_mode == "fixed" else None,
                offer_currency=currency,
                offer_pricing_mode=pricing_mode,
                deal_stage=INITIAL_STAGE.value,
            )
            await self.store.record_stage_event(deal["id"], None, INITIAL_STAGE.value, "create", actor.id)

        logger.info("[Deals] Deal %s created by %s for %s", deal["id"], actor.id, receiver["id"])
        return deal

    async def respond(self, actor: CurrentUser, deal_id: UUID) -> dict:
        """Recipient accepts the request; negotiation opens."""
        deal = await self._load_for(DealAction.RESPOND, actor, deal_id)
        async with self.store.transaction():
            return await self._advance(deal, DealTrigger.RESPOND, actor, {"accepted_at": _now()})

    async def decline(self, actor: CurrentUser, deal_id: UUID) -> dict:
        """Recipient turns the request down. The deal is frozen, not deleted."""
        deal = await self._load_for(DealAction.DECLINE, actor, deal_id)
        if is_rejected(deal):
            raise DealTransitionError("This deal was already rejected.")
        if deal["deal_stage"] != DealStage.WAITING_FOR_RESPONSE.value:
            raise DealTransitionError("Only a deal awaiting a response can be declined.")

        async with self.store.transaction():
            updated = await self._write(deal, {"status": "rejected", "rejected_at": _now()})
            await self.store.record_stage_event(
                deal["id"], deal["deal_stage"], deal["deal_stage"], "decline", actor.id
            )
        logger.info("[Deals] Deal %s declined by %s", deal["id"], actor.id)
        return updated

    async def list_deals(self, actor: CurrentUser, limit: int = 50, offset: int = 0) -> list[dict]:
        return await self.store.list_deals_for_user(actor.id, limit=limit, offset=offset)

    async def get_deal(self, actor: CurrentUser, deal_id: UUID) -> dict:
        return await self._load_for(DealAction.VIEW, actor, deal_id)

    async def record_security_event(self, route: str, reason: str, user_id: Optional[UUID] = None) -> None:
        """Audit a denied or malformed request on the workflow's own connection."""
        await self.store.record_security_event(route, reason, user_id)

    async def stage_history(self, actor: CurrentUser, deal_id: UUID) -> list[dict]:
        await self._load_for(DealAction.VIEW, actor, deal_id)
        return await self.store.list_stage_events(deal_id)

    # ------------------------------------------------------------------
    # Term negotiation
    # ------------------------------------------------------------------

    async def propose_terms(self, actor: CurrentUser, deal_id: UUID, amount: Any, deadline: Any) -> dict:
        """Append a proposal for the actor. Never changes the stage.

        Any earlier agreement confirmations are cleared, since they referred
        to terms that are no longer the latest.
        """
        amount = validate_amount(amount)
        deadline = validate_deadline(deadline)

        deal = await self._load_for(DealAction.PROPOSE_TERMS, actor, deal_id)
        if is_rejected(deal):
            raise DealTransitionError("This deal was rejected and can no longer progress.")
        if deal["deal_stage"] != DealStage.NEGOTIATING_TERMS.value:
            raise DealTransitionError("Terms can only be proposed while negotiating.")

        async with self.store.transaction():
            proposal = await self.store.insert_proposal(deal["id"], actor.id, amount, deadline)
            await self._write(deal, {"creator_agreed_at": None, "business_agreed_at": None})

        logger.info("[Deals] Deal %s: %s proposed %s by %s", deal["id"], actor.id, amount, deadline)
        return proposal

    async def latest_terms(self, actor: CurrentUser, deal_id: UUID) -> dict:
        """Latest proposal of each party, seen from the actor's side."""
        deal = await self._load_for(DealAction.VIEW, actor, deal_id)
        pair = latest_pair(await self.store.list_proposals(deal["id"]), deal["sender_id"], deal["receiver_id"])

        if party_of(deal, actor.id) is None:
            # admins see both sides but own neither
            mine, other = None, None
        elif str(actor.id) == str(deal["receiver_id"]):
            mine, other = pair.party_b, pair.party_a
        else:
            mine, other = pair.party_a, pair.party_b
        return {
            "sender": pair.party_a,
            "receiver": pair.party_b,
            "mine": mine,
            "other": other,
            "matched": proposals_match(pair.party_a, pair.party_b),
        }

    async def confirm_agreement(self, actor: CurrentUser, deal_id: UUID) -> dict:
        """Record the actor's explicit agreement to the matched terms.

        Moves to Platform Escrow once both sides have confirmed.
        """
        deal = await self._load_for(DealAction.CONFIRM_AGREEMENT, actor, deal_id)
        if is_rejected(deal):
            raise DealTransitionError("This deal was rejected and cannot be confirmed.")
        if deal["deal_stage"] != DealStage.NEGOTIATING_TERMS.value:
            raise DealTransitionError("Agreement can only be confirmed while negotiating.")

        pair = latest_pair(await self.store.list_proposals(deal["id"]), deal["sender_id"], deal["receiver_id"])
        if not proposals_match(pair.party_a, pair.party_b):
            raise DealTransitionError(
                "Both sides must propose the same amount and delivery date before confirming."
            )

        party = party_of(deal, actor.id)
        column = _AGREEMENT_COLUMNS[party]
        other_column = _AGREEMENT_COLUMNS[
            DealParty.BUSINESS if party == DealParty.CREATOR else DealParty.CREATOR
        ]
        changes = {
            column: deal[column] or _now(),
            "deal_value": int(pair.party_a["amount"]),
            "agreed_deadline": validate_deadline(pair.party_a["deadline"]),
        }

        async with self.store.transaction():
            if deal[other_column]:
                return await self._advance(deal, DealTrigger.CONFIRM_AGREEMENT, actor, changes)
            return await self._write(deal, changes)

    # ------------------------------------------------------------------
    # Content delivery and review
    # ------------------------------------------------------------------

    async def submit_content(self, actor: CurrentUser, deal_id: UUID, url: str) -> dict:
        """Creator delivers a content link; a new submission row every time."""
        url = validate_url(url)
        deal = await self._load_for(DealAction.SUBMIT_CONTENT, actor, deal_id)
        next_stage(deal["deal_stage"], DealTrigger.SUBMIT_CONTENT, rejected=is_rejected(deal))

        async with self.store.transaction():
            submission = await self.store.insert_submission(deal["id"], actor.id, url)
            await self._advance(deal, DealTrigger.SUBMIT_CONTENT, actor)
        return submission

    async def _load_review(self, actor: CurrentUser, deal_id: UUID, submission_id: UUID, trigger: DealTrigger):
        deal = await self._load_for(DealAction.REVIEW_SUBMISSION, actor, deal_id)
        next_stage(deal["deal_stage"], trigger, rejected=is_rejected(deal))
        submission = await self.store.get_submission(submission_id)
        latest = await self.store.get_latest_submission(deal["id"])
        ensure_actionable(submission, latest, deal["id"])
        return deal, submission

    async def approve_submission(self, actor: CurrentUser, deal_id: UUID, submission_id: UUID) -> dict:
        """Business accepts the delivery; payout is requested."""
        deal, submission = await self._load_review(actor, deal_id, submission_id, DealTrigger.APPROVE_SUBMISSION)
        now = _now()

        async with self.store.transaction():
            await self.store.update_submission(submission["id"], SubmissionStatus.APPROVED.value, None)
            return await self._advance(
                deal,
                DealTrigger.APPROVE_SUBMISSION,
                actor,
                {"approved_at": now, "payout_requested_at": now, "payout_status": "requested"},
            )

    async def reject_submission(
        self,
        actor: CurrentUser,
        deal_id: UUID,
        submission_id: UUID,
        reason: str,
    ) -> dict:
        """Business sends the delivery back for rework with a reason."""
        reason = validate_rejection_reason(reason)
        deal, submission = await self._load_review(actor, deal_id, submission_id, DealTrigger.REJECT_SUBMISSION)

        async with self.store.transaction():
            await self.store.update_submission(submission["id"], SubmissionStatus.REWORK.value, reason)
            return await self._advance(deal, DealTrigger.REJECT_SUBMISSION, actor)

    async def fetch_latest_submission(self, actor: CurrentUser, deal_id: UUID) -> Optional[dict]:
        deal = await self._load_for(DealAction.VIEW, actor, deal_id)
        return await self.store.get_latest_submission(deal["id"])

    async def list_submissions(self, actor: CurrentUser, deal_id: UUID) -> list[dict]:
        deal = await self._load_for(DealAction.VIEW, actor, deal_id)
        return await self.store.list_submissions(deal["id"])

    # ------------------------------------------------------------------
    # Payout
    # ------------------------------------------------------------------

    async def release_payment(self, actor: CurrentUser, deal_id: UUID) -> dict:
        deal = await self._load_for(DealAction.RELEASE_PAYMENT, actor, deal_id)
        async with self.store.transaction():
            return await self._advance(
                deal,
                DealTrigger.RELEASE_PAYMENT,
                actor,
                {"payment_released_at": _now(), "payout_status": "paid"},
            )
