import copy
import itertools
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from niesty.models.auth import CurrentUser


class InMemoryDealStore:
    """Deal store double with versioned deal writes and transaction rollback."""

    def __init__(self):
        self.users: dict = {}
        self.deals: dict = {}
        self.proposals: list[dict] = []
        self.submissions: list[dict] = []
        self.events: list[dict] = []
        self.security_events: list[tuple] = []
        self.transactions = 0
        self._seq = itertools.count(1)
        self._clock = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    @asynccontextmanager
    async def transaction(self):
        snapshot = copy.deepcopy((self.deals, self.proposals, self.submissions, self.events))
        self.transactions += 1
        try:
            yield
        except BaseException:
            self.deals, self.proposals, self.submissions, self.events = snapshot
            raise

    def add_user(self, role: str, name: str = "User", is_active: bool = True) -> CurrentUser:
        user_id = uuid4()
        self.users[user_id] = {
            "id": user_id,
            "email": f"{name.lower().replace(' ', '.')}@example.com",
            "role": role,
            "full_name": name,
            "is_active": is_active,
        }
        return CurrentUser(id=user_id, email=self.users[user_id]["email"], role=role, full_name=name)

    async def get_user(self, user_id):
        user = self.users.get(user_id)
        return dict(user) if user else None

    async def create_deal(self, **fields):
        deal_id = uuid4()
        now = self._tick()
        deal = {
            "id": deal_id,
            "status": None,
            "accepted_at": None,
            "rejected_at": None,
            "creator_agreed_at": None,
            "business_agreed_at": None,
            "agreed_deadline": None,
            "approved_at": None,
            "payout_requested_at": None,
            "payout_status": None,
            "payment_released_at": None,
            "version": 1,
            "created_at": now,
            "updated_at": now,
            **fields,
        }
        self.deals[deal_id] = deal
        return dict(deal)

    async def get_deal(self, deal_id):
        deal = self.deals.get(deal_id)
        return dict(deal) if deal else None

    async def list_deals_for_user(self, user_id, limit=50, offset=0):
        rows = [
            dict(d) for d in self.deals.values()
            if d["sender_id"] == user_id or d["receiver_id"] == user_id
        ]
        rows.sort(key=lambda d: d["created_at"], reverse=True)
        return rows[offset:offset + limit]

    async def update_deal(self, deal_id, expected_version, changes):
        deal = self.deals.get(deal_id)
        if deal is None or deal["version"] != expected_version:
            return None
        deal.update(changes)
        deal["version"] += 1
        deal["updated_at"] = self._tick()
        return dict(deal)

    async def insert_proposal(self, deal_id, user_id, amount, deadline):
        row = {
            "id": uuid4(),
            "deal_id": deal_id,
            "user_id": user_id,
            "amount": amount,
            "deadline": deadline,
            "seq": next(self._seq),
            "created_at": self._tick(),
        }
        self.proposals.append(row)
        return dict(row)

    async def list_proposals(self, deal_id):
        rows = [dict(p) for p in self.proposals if p["deal_id"] == deal_id]
        rows.sort(key=lambda p: (p["created_at"], p["seq"]), reverse=True)
        return rows

    async def insert_submission(self, deal_id, user_id, url):
        now = self._tick()
        row = {
            "id": uuid4(),
            "deal_id": deal_id,
            "submitted_by": user_id,
            "url": url,
            "status": "pending",
            "rejection_reason": None,
            "seq": next(self._seq),
            "created_at": now,
            "updated_at": now,
        }
        self.submissions.append(row)
        return dict(row)

    async def get_submission(self, submission_id):
        for row in self.submissions:
            if row["id"] == submission_id:
                return dict(row)
        return None

    async def get_latest_submission(self, deal_id):
        rows = await self.list_submissions(deal_id)
        return rows[0] if rows else None

    async def list_submissions(self, deal_id):
        rows = [dict(s) for s in self.submissions if s["deal_id"] == deal_id]
        rows.sort(key=lambda s: (s["created_at"], s["seq"]), reverse=True)
        return rows

    async def update_submission(self, submission_id, status, rejection_reason):
        for row in self.submissions:
            if row["id"] == submission_id:
                row["status"] = status
                row["rejection_reason"] = rejection_reason
                row["updated_at"] = self._tick()
                return dict(row)
        return None

    async def record_stage_event(self, deal_id, from_stage, to_stage, trigger, actor_id):
        self.events.append({
            "id": uuid4(),
            "deal_id": deal_id,
            "from_stage": from_stage,
            "to_stage": to_stage,
            "trigger": trigger,
            "actor_id": actor_id,
            "created_at": self._tick(),
        })

    async def list_stage_events(self, deal_id):
        return [dict(e) for e in self.events if e["deal_id"] == deal_id]

    async def record_security_event(self, route, reason, user_id):
        self.security_events.append((route, reason, user_id))


@pytest.fixture
def store():
    return InMemoryDealStore()


@pytest.fixture
def creator(store):
    return store.add_user("creator", "Casey Creator")


@pytest.fixture
def business(store):
    return store.add_user("business", "Bree Business")


@pytest.fixture
def admin(store):
    return store.add_user("admin", "Ada Admin")
