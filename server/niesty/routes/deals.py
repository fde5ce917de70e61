"""
Deal routes for the creator/business sponsorship marketplace.
Handles deal requests, term negotiation, content delivery review and payout release.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

import asyncpg
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..dependencies import get_current_user, get_deal_workflow, require_admin
from ..models.auth import CurrentUser
from ..models.deals import (
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
)
from ..services.deal_errors import (
    DealAuthorizationError,
    DealConflictError,
    DealError,
    DealNotFoundError,
    DealTransitionError,
    DealValidationError,
)
from ..services.deal_stages import all_stages, allowed_triggers, stage_progress, transition_map
from ..services.deal_workflow import DealWorkflow, is_rejected
from ..services.submission_review import review_state
from ..services.turnstile import verify_turnstile

logger = logging.getLogger(__name__)

router = APIRouter()

GENERIC_FAILURE = "Request failed. Please try again."

_STATUS_FOR_ERROR = (
    (DealValidationError, status.HTTP_400_BAD_REQUEST),
    (DealAuthorizationError, status.HTTP_403_FORBIDDEN),
    (DealNotFoundError, status.HTTP_404_NOT_FOUND),
    (DealTransitionError, status.HTTP_409_CONFLICT),
    (DealConflictError, status.HTTP_409_CONFLICT),
)


def _status_for(exc: DealError) -> int:
    for error_type, code in _STATUS_FOR_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


@asynccontextmanager
async def _deal_errors(route: str, actor: CurrentUser, workflow: DealWorkflow):
    """Translate domain and store failures into HTTP responses.

    Security events go through the request's own workflow connection.
    """
    try:
        yield
    except DealError as e:
        if isinstance(e, DealAuthorizationError):
            await workflow.record_security_event(route, "forbidden", actor.id)
        elif isinstance(e, DealValidationError):
            await workflow.record_security_event(route, f"validation_fail:{e.field or 'payload'}", actor.id)
        raise HTTPException(status_code=_status_for(e), detail=str(e)) from e
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
        logger.exception("[Deals] Store failure on %s for %s", route, actor.id)
        await workflow.record_security_event(route, f"db_error:{type(e).__name__}", actor.id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=GENERIC_FAILURE) from e


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("cf-connecting-ip") or request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _deal_response(deal: dict) -> DealResponse:
    rejected = is_rejected(deal)
    return DealResponse(
        id=deal["id"],
        sender_id=deal["sender_id"],
        receiver_id=deal["receiver_id"],
        creator_id=deal["creator_id"],
        business_id=deal["business_id"],
        message=deal["message"],
        deal_value=deal["deal_value"],
        offer_currency=deal["offer_currency"],
        offer_pricing_mode=deal["offer_pricing_mode"],
        deal_stage=deal["deal_stage"],
        status=deal["status"],
        is_rejected=rejected,
        accepted_at=deal["accepted_at"],
        rejected_at=deal["rejected_at"],
        creator_agreed_at=deal["creator_agreed_at"],
        business_agreed_at=deal["business_agreed_at"],
        both_agreed=bool(deal["creator_agreed_at"] and deal["business_agreed_at"]),
        agreed_deadline=deal["agreed_deadline"],
        approved_at=deal["approved_at"],
        payout_requested_at=deal["payout_requested_at"],
        payout_status=deal["payout_status"],
        payment_released_at=deal["payment_released_at"],
        version=deal["version"],
        allowed_actions=allowed_triggers(deal["deal_stage"], rejected=rejected),
        progress=[StageProgress(**p) for p in stage_progress(deal["deal_stage"], rejected=rejected)],
        created_at=deal["created_at"],
        updated_at=deal.get("updated_at"),
    )


def _proposal_response(row: Optional[dict]) -> Optional[TermProposalResponse]:
    if row is None:
        return None
    return TermProposalResponse(
        id=row["id"],
        deal_id=row["deal_id"],
        user_id=row["user_id"],
        amount=row["amount"],
        deadline=row["deadline"],
        created_at=row["created_at"],
    )


def _submission_response(row: Optional[dict]) -> Optional[SubmissionResponse]:
    if row is None:
        return None
    return SubmissionResponse(
        id=row["id"],
        deal_id=row["deal_id"],
        submitted_by=row["submitted_by"],
        url=row["url"],
        status=row["status"],
        rejection_reason=row["rejection_reason"],
        created_at=row["created_at"],
    )


# =============================================================================
# Deal Requests
# =============================================================================

@router.post("", response_model=DealResponse, status_code=status.HTTP_201_CREATED)
async def create_deal(
    body: DealCreate,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    workflow: DealWorkflow = Depends(get_deal_workflow),
):
    """Send a deal request to another user."""
    route = "/api/deals"
    check = await verify_turnstile(body.turnstile_token, _client_ip(request))
    if not check.ok:
        await workflow.record_security_event(route, f"turnstile_fail:{check.reason or 'unknown'}", current_user.id)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="CAPTCHA verification failed")

    async with _deal_errors(route, current_user, workflow):
        deal = await workflow.create_deal(
            current_user,
            receiver_id=body.receiver_id,
            message=body.message,
            amount=body.amount,
            pricing_mode=body.pricing_mode,
            currency=body.currency,
        )
    return _deal_response(deal)


@router.get("", response_model=list[DealResponse])
async def list_my_deals(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: CurrentUser = Depends(get_current_user),
    workflow: DealWorkflow = Depends(get_deal_workflow),
):
    """List deals the current user sent or received."""
    async with _deal_errors("/api/deals", current_user, workflow):
        deals = await workflow.list_deals(current_user, limit=limit, offset=offset)
    return [_deal_response(d) for d in deals]


@router.get("/stages", response_model=StageCatalogResponse)
async def get_stage_catalog(current_user: CurrentUser = Depends(get_current_user)):
    """Ordered stages and the transition table, for rendering progress."""
    return StageCatalogResponse(stages=all_stages(), transitions=transition_map())


@router.get("/{deal_id}", response_model=DealResponse)
async def get_deal(
    deal_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
    workflow: DealWorkflow = Depends(get_deal_workflow),
):
    async with _deal_errors("/api/deals/{id}", current_user, workflow):
        deal = await workflow.get_deal(current_user, deal_id)
    return _deal_response(deal)


@router.get("/{deal_id}/history", response_model=list[StageEventResponse])
async def get_deal_history(
    deal_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
    workflow: DealWorkflow = Depends(get_deal_workflow),
):
    """Stage transitions for a deal, oldest first."""
    async with _deal_errors("/api/deals/{id}/history", current_user, workflow):
        events = await workflow.stage_history(current_user, deal_id)
    return [StageEventResponse(**e) for e in events]


@router.post("/{deal_id}/respond", response_model=DealResponse)
async def respond_to_deal(
    deal_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
    workflow: DealWorkflow = Depends(get_deal_workflow),
):
    """Accept a deal request and open negotiation."""
    async with _deal_errors("/api/deals/{id}/respond", current_user, workflow):
        deal = await workflow.respond(current_user, deal_id)
    return _deal_response(deal)


@router.post("/{deal_id}/decline", response_model=DealResponse)
async def decline_deal(
    deal_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
    workflow: DealWorkflow = Depends(get_deal_workflow),
):
    async with _deal_errors("/api/deals/{id}/decline", current_user, workflow):
        deal = await workflow.decline(current_user, deal_id)
    return _deal_response(deal)


# =============================================================================
# Term Negotiation
# =============================================================================

@router.post("/{deal_id}/proposals", response_model=TermProposalResponse, status_code=status.HTTP_201_CREATED)
async def propose_terms(
    deal_id: UUID,
    body: TermProposalCreate,
    current_user: CurrentUser = Depends(get_current_user),
    workflow: DealWorkflow = Depends(get_deal_workflow),
):
    """Propose an amount and delivery date. Replaces the caller's previous proposal."""
    async with _deal_errors("/api/deals/{id}/proposals", current_user, workflow):
        proposal = await workflow.propose_terms(current_user, deal_id, body.amount, body.deadline)
    return _proposal_response(proposal)


@router.get("/{deal_id}/proposals/latest", response_model=ProposalPairResponse)
async def get_latest_proposals(
    deal_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
    workflow: DealWorkflow = Depends(get_deal_workflow),
):
    async with _deal_errors("/api/deals/{id}/proposals/latest", current_user, workflow):
        terms = await workflow.latest_terms(current_user, deal_id)
    return ProposalPairResponse(
        sender=_proposal_response(terms["sender"]),
        receiver=_proposal_response(terms["receiver"]),
        mine=_proposal_response(terms["mine"]),
        other=_proposal_response(terms["other"]),
        matched=terms["matched"],
    )


@router.post("/{deal_id}/agreement", response_model=DealResponse)
async def confirm_agreement(
    deal_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
    workflow: DealWorkflow = Depends(get_deal_workflow),
):
    """Confirm the matched terms. Both parties must confirm to reach escrow."""
    async with _deal_errors("/api/deals/{id}/agreement", current_user, workflow):
        deal = await workflow.confirm_agreement(current_user, deal_id)
    return _deal_response(deal)


# =============================================================================
# Content Delivery
# =============================================================================

@router.post("/{deal_id}/submissions", response_model=SubmissionResponse, status_code=status.HTTP_201_CREATED)
async def submit_content(
    deal_id: UUID,
    body: SubmissionCreate,
    current_user: CurrentUser = Depends(get_current_user),
    workflow: DealWorkflow = Depends(get_deal_workflow),
):
    async with _deal_errors("/api/deals/{id}/submissions", current_user, workflow):
        submission = await workflow.submit_content(current_user, deal_id, body.url)
    return _submission_response(submission)


@router.get("/{deal_id}/submissions", response_model=list[SubmissionResponse])
async def list_submissions(
    deal_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
    workflow: DealWorkflow = Depends(get_deal_workflow),
):
    """All delivery attempts for a deal, newest first."""
    async with _deal_errors("/api/deals/{id}/submissions", current_user, workflow):
        rows = await workflow.list_submissions(current_user, deal_id)
    return [_submission_response(r) for r in rows]


@router.get("/{deal_id}/submissions/latest", response_model=LatestSubmissionResponse)
async def get_latest_submission(
    deal_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
    workflow: DealWorkflow = Depends(get_deal_workflow),
):
    async with _deal_errors("/api/deals/{id}/submissions/latest", current_user, workflow):
        latest = await workflow.fetch_latest_submission(current_user, deal_id)
    return LatestSubmissionResponse(
        submission=_submission_response(latest),
        review_state=review_state(latest),
    )


@router.post("/{deal_id}/submissions/{submission_id}/approve", response_model=DealResponse)
async def approve_submission(
    deal_id: UUID,
    submission_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
    workflow: DealWorkflow = Depends(get_deal_workflow),
):
    async with _deal_errors("/api/deals/{id}/submissions/approve", current_user, workflow):
        deal = await workflow.approve_submission(current_user, deal_id, submission_id)
    return _deal_response(deal)


@router.post("/{deal_id}/submissions/{submission_id}/reject", response_model=DealResponse)
async def reject_submission(
    deal_id: UUID,
    submission_id: UUID,
    body: SubmissionReject,
    current_user: CurrentUser = Depends(get_current_user),
    workflow: DealWorkflow = Depends(get_deal_workflow),
):
    """Send the latest delivery back for rework. A reason is required."""
    async with _deal_errors("/api/deals/{id}/submissions/reject", current_user, workflow):
        deal = await workflow.reject_submission(current_user, deal_id, submission_id, body.reason)
    return _deal_response(deal)


# =============================================================================
# Payout
# =============================================================================

@router.post("/{deal_id}/payout/release", response_model=DealResponse)
async def release_payment(
    deal_id: UUID,
    current_user: CurrentUser = Depends(require_admin),
    workflow: DealWorkflow = Depends(get_deal_workflow),
):
    async with _deal_errors("/api/deals/{id}/payout/release", current_user, workflow):
        deal = await workflow.release_payment(current_user, deal_id)
    return _deal_response(deal)
