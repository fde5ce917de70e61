"""Deal stage machine: ordered stages, triggers and the transition table."""

from __future__ import annotations

from enum import Enum

from .deal_errors import DealTransitionError


class DealStage(str, Enum):
    WAITING_FOR_RESPONSE = "Waiting for Response"
    NEGOTIATING_TERMS = "Negotiating Terms"
    PLATFORM_ESCROW = "Platform Escrow"
    CONTENT_SUBMITTED = "Content Submitted"
    APPROVED = "Approved"
    PAYMENT_RELEASED = "Payment Released"


class DealTrigger(str, Enum):
    RESPOND = "respond"
    CONFIRM_AGREEMENT = "confirm_agreement"
    SUBMIT_CONTENT = "submit_content"
    APPROVE_SUBMISSION = "approve_submission"
    REJECT_SUBMISSION = "reject_submission"
    RELEASE_PAYMENT = "release_payment"


STAGE_ORDER: tuple[DealStage, ...] = tuple(DealStage)
INITIAL_STAGE = DealStage.WAITING_FOR_RESPONSE
TERMINAL_STAGE = DealStage.PAYMENT_RELEASED

# Stages that stay meaningful once the deal has been rejected.
_LAST_ACTIVE_STAGE_WHEN_REJECTED = DealStage.CONTENT_SUBMITTED

_TRANSITIONS: dict[tuple[DealStage, DealTrigger], DealStage] = {
    (DealStage.WAITING_FOR_RESPONSE, DealTrigger.RESPOND): DealStage.NEGOTIATING_TERMS,
    (DealStage.NEGOTIATING_TERMS, DealTrigger.CONFIRM_AGREEMENT): DealStage.PLATFORM_ESCROW,
    (DealStage.PLATFORM_ESCROW, DealTrigger.SUBMIT_CONTENT): DealStage.CONTENT_SUBMITTED,
    (DealStage.CONTENT_SUBMITTED, DealTrigger.APPROVE_SUBMISSION): DealStage.APPROVED,
    (DealStage.CONTENT_SUBMITTED, DealTrigger.REJECT_SUBMISSION): DealStage.PLATFORM_ESCROW,
    (DealStage.APPROVED, DealTrigger.RELEASE_PAYMENT): DealStage.PAYMENT_RELEASED,
}

# The one transition allowed to move backwards.
REWORK_LOOP = (DealStage.CONTENT_SUBMITTED, DealStage.PLATFORM_ESCROW)


def coerce_stage(value: str | DealStage) -> DealStage:
    if isinstance(value, DealStage):
        return value
    try:
        return DealStage(value)
    except ValueError as exc:
        raise DealTransitionError(f"Unknown deal stage '{value}'") from exc


def coerce_trigger(value: str | DealTrigger) -> DealTrigger:
    if isinstance(value, DealTrigger):
        return value
    try:
        return DealTrigger(value)
    except ValueError as exc:
        raise DealTransitionError(f"Unknown deal trigger '{value}'") from exc


def stage_index(stage: str | DealStage) -> int:
    return STAGE_ORDER.index(coerce_stage(stage))


def all_stages() -> list[str]:
    return [stage.value for stage in STAGE_ORDER]


def transition_map() -> dict[str, dict[str, str]]:
    result: dict[str, dict[str, str]] = {stage.value: {} for stage in STAGE_ORDER}
    for (source, trigger), target in _TRANSITIONS.items():
        result[source.value][trigger.value] = target.value
    return result


def allowed_triggers(stage: str | DealStage, *, rejected: bool = False) -> list[str]:
    if rejected:
        return []
    source = coerce_stage(stage)
    return [trigger.value for (s, trigger) in _TRANSITIONS if s == source]


def next_stage(
    stage: str | DealStage,
    trigger: str | DealTrigger,
    *,
    rejected: bool = False,
) -> DealStage:
    """Resolve the stage reached by applying ``trigger`` to ``stage``.

    Raises DealTransitionError when the deal is rejected or the pair is not
    in the transition table.
    """
    source = coerce_stage(stage)
    action = coerce_trigger(trigger)

    if rejected:
        raise DealTransitionError("This deal was rejected and can no longer progress.")

    target = _TRANSITIONS.get((source, action))
    if target is None:
        allowed = ", ".join(allowed_triggers(source)) or "none"
        raise DealTransitionError(
            f"Cannot '{action.value}' while the deal is in '{source.value}'. "
            f"Allowed actions: {allowed}."
        )
    return target


def is_permitted_move(from_stage: str | DealStage, to_stage: str | DealStage) -> bool:
    """True for forward moves and the rework loop; no other backward move exists."""
    source = coerce_stage(from_stage)
    target = coerce_stage(to_stage)
    if (source, target) == REWORK_LOOP:
        return True
    return stage_index(target) >= stage_index(source)


def stage_progress(stage: str | DealStage, *, rejected: bool = False) -> list[dict[str, str]]:
    """Per-stage display state: done, current, upcoming or suppressed."""
    current = stage_index(stage)
    cutoff = stage_index(_LAST_ACTIVE_STAGE_WHEN_REJECTED)
    progress = []
    for index, item in enumerate(STAGE_ORDER):
        if rejected and index > cutoff:
            state = "suppressed"
        elif index < current:
            state = "done"
        elif index == current:
            state = "done" if item == TERMINAL_STAGE else "current"
        else:
            state = "upcoming"
        progress.append({"stage": item.value, "state": state})
    return progress
