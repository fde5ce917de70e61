import asyncio
from contextlib import asynccontextmanager
from uuid import uuid4

import asyncpg
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from niesty import database
from niesty.routes import deals as deals_routes
from niesty.services.deal_workflow import DealWorkflow
from niesty.services.turnstile import TurnstileResult


class _Session:
    """Which user the overridden auth dependency returns."""

    def __init__(self, user):
        self.user = user


def _build_app(store, session):
    app = FastAPI()
    app.include_router(deals_routes.router, prefix="/api/deals")
    app.dependency_overrides[deals_routes.get_current_user] = lambda: session.user
    app.dependency_overrides[deals_routes.get_deal_workflow] = lambda: DealWorkflow(store)
    return app


def _patch_turnstile(monkeypatch, turnstile_ok=True):
    async def _fake_verify(token, remote_ip=None):
        if turnstile_ok:
            return TurnstileResult(ok=True)
        return TurnstileResult(ok=False, reason="invalid-input-response")

    monkeypatch.setattr(deals_routes, "verify_turnstile", _fake_verify)


def test_deal_lifecycle_over_http(monkeypatch, store, creator, business):
    _patch_turnstile(monkeypatch)
    session = _Session(business)
    app = _build_app(store, session)

    async def _run():
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
            created = await client.post(
                "/api/deals",
                json={"receiver_id": str(creator.id), "message": "Sponsor our launch video"},
            )
            assert created.status_code == 201
            deal = created.json()
            assert deal["deal_stage"] == "Waiting for Response"
            assert deal["allowed_actions"] == ["respond"]
            deal_id = deal["id"]

            session.user = creator
            responded = await client.post(f"/api/deals/{deal_id}/respond")
            assert responded.status_code == 200
            assert responded.json()["deal_stage"] == "Negotiating Terms"

            terms = {"amount": 500, "deadline": "2025-06-01"}
            assert (await client.post(f"/api/deals/{deal_id}/proposals", json=terms)).status_code == 201
            session.user = business
            assert (await client.post(f"/api/deals/{deal_id}/proposals", json=terms)).status_code == 201

            latest = (await client.get(f"/api/deals/{deal_id}/proposals/latest")).json()
            assert latest["matched"] is True
            assert latest["mine"]["user_id"] == str(business.id)

            first_confirm = await client.post(f"/api/deals/{deal_id}/agreement")
            assert first_confirm.json()["deal_stage"] == "Negotiating Terms"
            assert first_confirm.json()["both_agreed"] is False

            session.user = creator
            escrow = (await client.post(f"/api/deals/{deal_id}/agreement")).json()
            assert escrow["deal_stage"] == "Platform Escrow"
            assert escrow["both_agreed"] is True
            assert escrow["deal_value"] == 500
            assert escrow["agreed_deadline"] == "2025-06-01"

            submitted = await client.post(
                f"/api/deals/{deal_id}/submissions", json={"url": "https://x.com/content"}
            )
            assert submitted.status_code == 201
            submission_id = submitted.json()["id"]

            session.user = business
            latest_submission = (await client.get(f"/api/deals/{deal_id}/submissions/latest")).json()
            assert latest_submission["review_state"] == "awaiting_review"

            reworked = await client.post(
                f"/api/deals/{deal_id}/submissions/{submission_id}/reject",
                json={"reason": "needs captions"},
            )
            assert reworked.status_code == 200
            assert reworked.json()["deal_stage"] == "Platform Escrow"

            latest_submission = (await client.get(f"/api/deals/{deal_id}/submissions/latest")).json()
            assert latest_submission["review_state"] == "rework"
            assert latest_submission["submission"]["rejection_reason"] == "needs captions"

            session.user = creator
            resubmitted = await client.post(
                f"/api/deals/{deal_id}/submissions", json={"url": "https://x.com/content-v2"}
            )
            second_id = resubmitted.json()["id"]

            session.user = business
            approved = await client.post(f"/api/deals/{deal_id}/submissions/{second_id}/approve")
            assert approved.status_code == 200
            body = approved.json()
            assert body["deal_stage"] == "Approved"
            assert body["payout_status"] == "requested"
            assert body["allowed_actions"] == ["release_payment"]

            history = (await client.get(f"/api/deals/{deal_id}/history")).json()
            assert history[0]["trigger"] == "create"
            assert history[-1]["to_stage"] == "Approved"

            submissions = (await client.get(f"/api/deals/{deal_id}/submissions")).json()
            assert [s["status"] for s in submissions] == ["approved", "rework"]

    asyncio.run(_run())


def test_reviewing_as_creator_is_forbidden_and_logged(monkeypatch, store, creator, business):
    _patch_turnstile(monkeypatch)

    async def _setup():
        workflow = DealWorkflow(store)
        deal = await workflow.create_deal(business, creator.id, "Sponsor our launch video", amount=500)
        await workflow.respond(creator, deal["id"])
        await workflow.propose_terms(creator, deal["id"], 500, "2025-06-01")
        await workflow.propose_terms(business, deal["id"], 500, "2025-06-01")
        await workflow.confirm_agreement(creator, deal["id"])
        await workflow.confirm_agreement(business, deal["id"])
        submission = await workflow.submit_content(creator, deal["id"], "https://x.com/content")
        return deal["id"], submission["id"]

    deal_id, submission_id = asyncio.run(_setup())
    app = _build_app(store, _Session(creator))

    async def _run():
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
            return await client.post(
                f"/api/deals/{deal_id}/submissions/{submission_id}/reject",
                json={"reason": "not good enough"},
            )

    response = asyncio.run(_run())

    assert response.status_code == 403
    assert response.json()["detail"] == "Only the business on this deal can approve or reject content."
    assert store.security_events == [("/api/deals/{id}/submissions/reject", "forbidden", creator.id)]
    assert store.deals[deal_id]["deal_stage"] == "Content Submitted"


def test_error_status_codes(monkeypatch, store, creator, business):
    _patch_turnstile(monkeypatch)
    deal = asyncio.run(DealWorkflow(store).create_deal(business, creator.id, "Sponsor our launch video"))
    session = _Session(creator)
    app = _build_app(store, session)

    async def _run():
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
            missing = await client.get(f"/api/deals/{uuid4()}")
            assert missing.status_code == 404

            early_confirm = await client.post(f"/api/deals/{deal['id']}/agreement")
            assert early_confirm.status_code == 409

            submitted_early = await client.post(
                f"/api/deals/{deal['id']}/submissions", json={"url": "https://x.com/content"}
            )
            assert submitted_early.status_code == 409

            blank_link = await client.post(f"/api/deals/{deal['id']}/submissions", json={"url": "   "})
            assert blank_link.status_code == 400
            assert blank_link.json()["detail"] == "Content link is required"

            session.user = business
            respond_as_sender = await client.post(f"/api/deals/{deal['id']}/respond")
            assert respond_as_sender.status_code == 403

    asyncio.run(_run())

    assert ("/api/deals/{id}/submissions", "validation_fail:url", creator.id) in store.security_events
    assert store.submissions == []


def test_failed_captcha_blocks_deal_creation(monkeypatch, store, creator, business):
    _patch_turnstile(monkeypatch, turnstile_ok=False)
    app = _build_app(store, _Session(business))

    async def _run():
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
            return await client.post(
                "/api/deals",
                json={
                    "receiver_id": str(creator.id),
                    "message": "Sponsor our launch video",
                    "turnstile_token": "bad-token",
                },
            )

    response = asyncio.run(_run())

    assert response.status_code == 400
    assert response.json()["detail"] == "CAPTCHA verification failed"
    assert store.deals == {}
    assert store.security_events[0][1] == "turnstile_fail:invalid-input-response"


def test_release_payment_requires_admin_role(monkeypatch, store, creator, business):
    _patch_turnstile(monkeypatch)
    deal = asyncio.run(DealWorkflow(store).create_deal(business, creator.id, "Sponsor our launch video"))
    app = _build_app(store, _Session(business))

    async def _run():
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
            return await client.post(f"/api/deals/{deal['id']}/payout/release")

    response = asyncio.run(_run())

    assert response.status_code == 403
    assert store.deals[deal["id"]]["payout_status"] is None


def test_store_failure_returns_generic_error(monkeypatch, store, creator):
    _patch_turnstile(monkeypatch)

    async def _broken_get_deal(deal_id):
        raise OSError("connection reset by peer")

    monkeypatch.setattr(store, "get_deal", _broken_get_deal)
    app = _build_app(store, _Session(creator))

    async def _run():
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
            return await client.get(f"/api/deals/{uuid4()}")

    response = asyncio.run(_run())

    assert response.status_code == 500
    assert response.json()["detail"] == deals_routes.GENERIC_FAILURE
    assert store.security_events[0][1] == "db_error:OSError"


def test_stage_catalog_lists_order_and_transitions(monkeypatch, store, creator):
    _patch_turnstile(monkeypatch)
    app = _build_app(store, _Session(creator))

    async def _run():
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
            return await client.get("/api/deals/stages")

    response = asyncio.run(_run())

    assert response.status_code == 200
    body = response.json()
    assert body["stages"][0] == "Waiting for Response"
    assert body["stages"][-1] == "Payment Released"
    assert body["transitions"]["Content Submitted"] == {
        "approve_submission": "Approved",
        "reject_submission": "Platform Escrow",
    }
    assert body["transitions"]["Payment Released"] == {}


def test_closed_connection_returns_generic_error(monkeypatch, store, creator):
    _patch_turnstile(monkeypatch)

    async def _closed_get_deal(deal_id):
        raise asyncpg.InterfaceError("connection is closed")

    monkeypatch.setattr(store, "get_deal", _closed_get_deal)
    app = _build_app(store, _Session(creator))

    async def _run():
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
            return await client.get(f"/api/deals/{uuid4()}")

    response = asyncio.run(_run())

    assert response.status_code == 500
    assert response.json()["detail"] == deals_routes.GENERIC_FAILURE
    assert store.security_events == [("/api/deals/{id}", "db_error:InterfaceError", creator.id)]


class _DealLookupConn:
    def __init__(self, deal_row):
        self.deal_row = deal_row
        self.executed: list[tuple[str, tuple]] = []

    async def fetchrow(self, query, *args):
        if "FROM deals WHERE id" in query:
            return self.deal_row
        raise AssertionError(f"Unexpected fetchrow query: {query}")

    async def execute(self, query, *args):
        self.executed.append((query, args))
        return "INSERT 0 1"


class _SingleConnectionPool:
    """Pool with one connection; a second acquire waits until it is released."""

    def __init__(self, conn):
        self._conn = conn
        self._slot = asyncio.Semaphore(1)
        self.acquired = 0

    @asynccontextmanager
    async def _hold(self, timeout):
        await asyncio.wait_for(self._slot.acquire(), timeout)
        self.acquired += 1
        try:
            yield self._conn
        finally:
            self._slot.release()

    def acquire(self, timeout=None):
        return self._hold(timeout)


def test_forbidden_request_audits_on_its_own_connection(monkeypatch, store, creator, business):
    outsider = store.add_user("business", "Nosy Business")
    deal_id = uuid4()
    conn = _DealLookupConn({
        "id": deal_id,
        "sender_id": business.id,
        "receiver_id": creator.id,
        "creator_id": creator.id,
        "business_id": business.id,
        "deal_stage": "Waiting for Response",
        "status": None,
        "version": 1,
    })

    app = FastAPI()
    app.include_router(deals_routes.router, prefix="/api/deals")
    app.dependency_overrides[deals_routes.get_current_user] = lambda: outsider

    async def _run():
        pool = _SingleConnectionPool(conn)
        monkeypatch.setattr(database, "_pool", pool)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
            response = await asyncio.wait_for(client.get(f"/api/deals/{deal_id}"), 2)
        return response, pool

    response, pool = asyncio.run(_run())

    assert response.status_code == 403
    assert pool.acquired == 1
    query, args = conn.executed[0]
    assert "INSERT INTO security_events" in query
    assert args == ("/api/deals/{id}", "forbidden", outsider.id)
