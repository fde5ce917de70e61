"""
PostgreSQL persistence for deals, term proposals, submissions and stage events.

All rows are returned as plain dicts. Deal writes are versioned: ``update_deal``
only succeeds when the caller's expected version is still current.
"""

from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Optional
from uuid import UUID

import asyncpg

from .security_log import sec_log

_DEAL_COLUMNS = """
    id, sender_id, receiver_id, creator_id, business_id, message, deal_value,
    offer_currency, offer_pricing_mode, deal_stage, status, accepted_at,
    rejected_at, creator_agreed_at, business_agreed_at, agreed_deadline,
    approved_at, payout_requested_at, payout_status, payment_released_at,
    version, created_at, updated_at
"""

_UPDATABLE_DEAL_COLUMNS = frozenset({
    "deal_stage",
    "status",
    "deal_value",
    "accepted_at",
    "rejected_at",
    "creator_agreed_at",
    "business_agreed_at",
    "agreed_deadline",
    "approved_at",
    "payout_requested_at",
    "payout_status",
    "payment_released_at",
})

_SUBMISSION_COLUMNS = "id, deal_id, submitted_by, url, status, rejection_reason, seq, created_at, updated_at"
_PROPOSAL_COLUMNS = "id, deal_id, user_id, amount, deadline, seq, created_at"


def _row(record: Optional[asyncpg.Record]) -> Optional[dict]:
    return dict(record) if record is not None else None


class PostgresDealStore:
    """Deal data access bound to a single asyncpg connection."""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    @asynccontextmanager
    async def transaction(self):
        async with self.conn.transaction():
            yield

    async def get_user(self, user_id: UUID) -> Optional[dict]:
        return _row(await self.conn.fetchrow(
            "SELECT id, email, role, full_name, is_active FROM users WHERE id = $1",
            user_id,
        ))

    # Deals

    async def create_deal(
        self,
        *,
        sender_id: UUID,
        receiver_id: UUID,
        creator_id: UUID,
        business_id: UUID,
        message: str,
        deal_value: Optional[int],
        offer_currency: str,
        offer_pricing_mode: str,
        deal_stage: str,
    ) -> dict:
        return _row(await self.conn.fetchrow(
            f"""INSERT INTO deals
               (sender_id, receiver_id, creator_id, business_id, message, deal_value,
                offer_currency, offer_pricing_mode, deal_stage)
               VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
               RETURNING {_DEAL_COLUMNS}""",
            sender_id,
            receiver_id,
            creator_id,
            business_id,
            message,
            deal_value,
            offer_currency,
            offer_pricing_mode,
            deal_stage,
        ))

    async def get_deal(self, deal_id: UUID) -> Optional[dict]:
        return _row(await self.conn.fetchrow(
            f"SELECT {_DEAL_COLUMNS} FROM deals WHERE id = $1",
            deal_id,
        ))

    async def list_deals_for_user(self, user_id: UUID, limit: int = 50, offset: int = 0) -> list[dict]:
        rows = await self.conn.fetch(
            f"""SELECT {_DEAL_COLUMNS} FROM deals
               WHERE sender_id = $1 OR receiver_id = $1
               ORDER BY created_at DESC
               LIMIT $2 OFFSET $3""",
            user_id,
            limit,
            offset,
        )
        return [dict(r) for r in rows]

    async def update_deal(self, deal_id: UUID, expected_version: int, changes: dict[str, Any]) -> Optional[dict]:
        """Compare-and-swap update. Returns None when the version is stale."""
        unknown = set(changes) - _UPDATABLE_DEAL_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update deal columns: {', '.join(sorted(unknown))}")

        assignments = []
        params: list[Any] = [deal_id, expected_version]
        for column, value in changes.items():
            params.append(value)
            assignments.append(f"{column} = ${len(params)}")
        assignments.append("version = version + 1")
        assignments.append("updated_at = NOW()")

        return _row(await self.conn.fetchrow(
            f"""UPDATE deals SET {', '.join(assignments)}
               WHERE id = $1 AND version = $2
               RETURNING {_DEAL_COLUMNS}""",
            *params,
        ))

    # Term proposals

    async def insert_proposal(self, deal_id: UUID, user_id: UUID, amount: int, deadline: date) -> dict:
        return _row(await self.conn.fetchrow(
            f"""INSERT INTO deal_term_proposals (deal_id, user_id, amount, deadline)
               VALUES ($1, $2, $3, $4)
               RETURNING {_PROPOSAL_COLUMNS}""",
            deal_id,
            user_id,
            amount,
            deadline,
        ))

    async def list_proposals(self, deal_id: UUID) -> list[dict]:
        rows = await self.conn.fetch(
            f"""SELECT {_PROPOSAL_COLUMNS} FROM deal_term_proposals
               WHERE deal_id = $1
               ORDER BY created_at DESC, seq DESC""",
            deal_id,
        )
        return [dict(r) for r in rows]

    # Submissions

    async def insert_submission(self, deal_id: UUID, user_id: UUID, url: str) -> dict:
        return _row(await self.conn.fetchrow(
            f"""INSERT INTO deal_submissions (deal_id, submitted_by, url, status)
               VALUES ($1, $2, $3, 'pending')
               RETURNING {_SUBMISSION_COLUMNS}""",
            deal_id,
            user_id,
            url,
        ))

    async def get_submission(self, submission_id: UUID) -> Optional[dict]:
        return _row(await self.conn.fetchrow(
            f"SELECT {_SUBMISSION_COLUMNS} FROM deal_submissions WHERE id = $1",
            submission_id,
        ))

    async def get_latest_submission(self, deal_id: UUID) -> Optional[dict]:
        return _row(await self.conn.fetchrow(
            f"""SELECT {_SUBMISSION_COLUMNS} FROM deal_submissions
               WHERE deal_id = $1
               ORDER BY created_at DESC, seq DESC
               LIMIT 1""",
            deal_id,
        ))

    async def list_submissions(self, deal_id: UUID) -> list[dict]:
        rows = await self.conn.fetch(
            f"""SELECT {_SUBMISSION_COLUMNS} FROM deal_submissions
               WHERE deal_id = $1
               ORDER BY created_at DESC, seq DESC""",
            deal_id,
        )
        return [dict(r) for r in rows]

    async def update_submission(
        self,
        submission_id: UUID,
        status: str,
        rejection_reason: Optional[str],
    ) -> Optional[dict]:
        return _row(await self.conn.fetchrow(
            f"""UPDATE deal_submissions
               SET status = $2, rejection_reason = $3, updated_at = NOW()
               WHERE id = $1
               RETURNING {_SUBMISSION_COLUMNS}""",
            submission_id,
            status,
            rejection_reason,
        ))

    # Stage history

    async def record_stage_event(
        self,
        deal_id: UUID,
        from_stage: Optional[str],
        to_stage: str,
        trigger: str,
        actor_id: Optional[UUID],
    ) -> None:
        await self.conn.execute(
            """INSERT INTO deal_stage_events (deal_id, from_stage, to_stage, trigger, actor_id)
               VALUES ($1, $2, $3, $4, $5)""",
            deal_id,
            from_stage,
            to_stage,
            trigger,
            actor_id,
        )

    async def list_stage_events(self, deal_id: UUID) -> list[dict]:
        rows = await self.conn.fetch(
            """SELECT id, deal_id, from_stage, to_stage, trigger, actor_id, created_at
               FROM deal_stage_events
               WHERE deal_id = $1
               ORDER BY created_at ASC""",
            deal_id,
        )
        return [dict(r) for r in rows]

    # Security audit

    async def record_security_event(self, route: str, reason: str, user_id: Optional[UUID]) -> None:
        await sec_log(self.conn, route, reason, user_id)
