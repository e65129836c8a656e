"""HTTP tests for the ledger API, run in-process over an in-memory store.

Covers: tenancy headers, entity setup, loan lifecycle endpoints, error
mapping (404 / 409 / 400 / 422), ledger listing and portfolio summary.
"""

import httpx
import pytest
import pytest_asyncio

from loanbook.main import create_app
from loanbook.services.ledger.memory_store import MemoryLedgerStore

from tests.conftest import ORG, OTHER_ORG, USER

HEADERS = {"X-Organization-Id": ORG, "X-User-Id": USER}
OTHER_HEADERS = {"X-Organization-Id": OTHER_ORG}


@pytest_asyncio.fixture
async def client():
    app = create_app(store=MemoryLedgerStore())
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _setup_facility(client, limit="1000000"):
    resp = await client.post("/api/banks", json={"code": "RJHI", "name": "Al Rajhi Bank"}, headers=HEADERS)
    assert resp.status_code == 201
    bank = resp.json()
    resp = await client.post("/api/facilities", json={
        "bank_id": bank["id"],
        "facility_type": "revolving",
        "credit_limit": limit,
        "cost_of_funding": "5.5",
        "start_date": "2024-01-01",
        "expiry_date": "2026-12-31",
    }, headers=HEADERS)
    assert resp.status_code == 201
    return resp.json()


async def _draw(client, facility, amount="100000", **extra):
    body = {
        "facility_id": facility["id"],
        "amount": amount,
        "sibor_rate": "5.0",
        "margin": "1.5",
        "start_date": "2025-01-01",
        "due_date": "2025-04-01",
        **extra,
    }
    return await client.post("/api/loans", json=body, headers=HEADERS)


# ── Health & tenancy ───────────────────────────────────────────────

class TestHealthAndTenancy:

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["store"] == "memory"

    @pytest.mark.asyncio
    async def test_missing_organization_header(self, client):
        resp = await client.get("/api/loans")
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_blank_organization_header(self, client):
        resp = await client.get("/api/loans", headers={"X-Organization-Id": "  "})
        assert resp.status_code == 400


# ── Banks ──────────────────────────────────────────────────────────

class TestBankEndpoints:

    @pytest.mark.asyncio
    async def test_tenant_cannot_create_a_global_bank(self, client):
        resp = await client.post(
            "/api/banks", json={"code": "SNB", "name": "Squatted", "is_global": True}, headers=OTHER_HEADERS
        )
        assert resp.status_code == 201
        assert resp.json()["organization_id"] == OTHER_ORG

        assert (await client.get("/api/banks", headers=HEADERS)).json() == []
        resp = await client.post("/api/banks", json={"code": "SNB", "name": "Saudi National Bank"}, headers=HEADERS)
        assert resp.status_code == 201
        assert resp.json()["organization_id"] == ORG


# ── Loans ──────────────────────────────────────────────────────────

class TestLoanEndpoints:

    @pytest.mark.asyncio
    async def test_draw(self, client):
        facility = await _setup_facility(client)
        resp = await _draw(client, facility)
        assert resp.status_code == 201
        loan = resp.json()
        assert loan["status"] == "active"
        assert loan["amount"] == "100000.00"
        assert loan["bank_rate"] == "6.5000"
        assert loan["interest_basis"] == "actual_365"

    @pytest.mark.asyncio
    async def test_float_amount_is_rejected(self, client):
        facility = await _setup_facility(client)
        resp = await _draw(client, facility, amount=100000.5)
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_oversized_amount_is_400(self, client):
        facility = await _setup_facility(client)
        resp = await _draw(client, facility, amount="1e30")
        assert resp.status_code == 400
        assert resp.json()["detail"]["field"] == "amount"
        assert (await client.get("/api/loans", headers=HEADERS)).json() == []

    @pytest.mark.asyncio
    async def test_limit_exceeded_then_acknowledged(self, client):
        facility = await _setup_facility(client)
        resp = await _draw(client, facility, amount="1500000")
        assert resp.status_code == 400
        detail = resp.json()["detail"]
        assert detail["error"] == "facility_limit_exceeded"
        assert detail["available"] == "1000000.00"

        resp = await _draw(client, facility, amount="1500000", acknowledge_overdraw=True)
        assert resp.status_code == 201

    @pytest.mark.asyncio
    async def test_other_organization_gets_404(self, client):
        facility = await _setup_facility(client)
        loan = (await _draw(client, facility)).json()
        resp = await client.get(f"/api/loans/{loan['id']}", headers=OTHER_HEADERS)
        assert resp.status_code == 404
        assert resp.json()["detail"]["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_payment_and_balance(self, client):
        facility = await _setup_facility(client)
        loan = (await _draw(client, facility)).json()
        resp = await client.post(f"/api/loans/{loan['id']}/repayments", json={
            "amount": "25000", "date": "2025-02-01", "idempotency_key": "pay-1",
        }, headers=HEADERS)
        assert resp.status_code == 201
        assert resp.json()["type"] == "repayment"

        resp = await client.get(f"/api/loans/{loan['id']}/balance", headers=HEADERS)
        assert resp.json() == {
            "principal": "75000.00", "interest": "0.00", "fees": "0.00", "total": "75000.00",
        }

    @pytest.mark.asyncio
    async def test_settle_replay_and_conflict(self, client):
        facility = await _setup_facility(client)
        loan = (await _draw(client, facility)).json()
        url = f"/api/loans/{loan['id']}/settle"

        first = await client.post(url, json={"date": "2025-03-01"}, headers=HEADERS)
        assert first.status_code == 200
        body = first.json()
        assert body["loan"]["status"] == "settled"
        assert body["transaction"]["amount"] == "100000.00"

        replay = await client.post(url, json={"date": "2025-03-01"}, headers=HEADERS)
        assert replay.json()["transaction"]["id"] == body["transaction"]["id"]

        conflict = await client.post(url, json={"date": "2025-03-05"}, headers=HEADERS)
        assert conflict.status_code == 409
        assert conflict.json()["detail"]["current_state"] == "settled"

    @pytest.mark.asyncio
    async def test_reverse_settlement(self, client):
        facility = await _setup_facility(client)
        loan = (await _draw(client, facility)).json()
        await client.post(f"/api/loans/{loan['id']}/settle", json={"date": "2025-03-01"}, headers=HEADERS)

        resp = await client.post(
            f"/api/loans/{loan['id']}/reverse-settlement", json={"reason": "posted in error"}, headers=HEADERS
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "active"
        assert resp.json()["reversed_by"] == USER

        ledger = (await client.get(f"/api/loans/{loan['id']}/ledger", headers=HEADERS)).json()
        assert sorted(tx["type"] for tx in ledger) == ["repayment", "reversal"]

    @pytest.mark.asyncio
    async def test_revolve(self, client):
        facility = await _setup_facility(client)
        loan = (await _draw(client, facility)).json()
        resp = await client.post(f"/api/loans/{loan['id']}/revolve", json={
            "date": "2025-04-01", "due_date": "2025-07-01",
        }, headers=HEADERS)
        assert resp.status_code == 201
        data = resp.json()
        assert data["closed_loan"]["status"] == "settled"
        assert data["new_loan"]["parent_loan_id"] == loan["id"]
        assert data["new_loan"]["cycle_number"] == 2

    @pytest.mark.asyncio
    async def test_cancel_with_reason_then_remove(self, client):
        facility = await _setup_facility(client)
        loan = (await _draw(client, facility)).json()

        resp = await client.request(
            "DELETE", f"/api/loans/{loan['id']}", json={"reason": "booked twice"}, headers=HEADERS
        )
        assert resp.status_code == 200
        assert resp.json()["cancellation_reason"] == "booked twice"

        resp = await client.post(f"/api/loans/{loan['id']}/permanent-delete", headers=HEADERS)
        assert resp.status_code == 204
        resp = await client.get(f"/api/loans/{loan['id']}", headers=HEADERS)
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_audit_trail(self, client):
        facility = await _setup_facility(client)
        loan = (await _draw(client, facility)).json()
        await client.request("DELETE", f"/api/loans/{loan['id']}", headers=HEADERS)

        entries = (await client.get(f"/api/loans/{loan['id']}/audit", headers=HEADERS)).json()
        assert [e["action"] for e in entries] == ["loan_cancelled", "loan_created"]
        assert entries[0]["user_id"] == USER


# ── Ledger & portfolio ─────────────────────────────────────────────

class TestLedgerAndPortfolio:

    @pytest.mark.asyncio
    async def test_transaction_listing(self, client):
        facility = await _setup_facility(client)
        loan = (await _draw(client, facility)).json()
        for day in ("2025-01-10", "2025-01-20", "2025-01-30"):
            await client.post(f"/api/loans/{loan['id']}/repayments", json={
                "amount": "1000", "date": day,
            }, headers=HEADERS)

        resp = await client.get("/api/transactions", params={"limit": 2}, headers=HEADERS)
        assert resp.status_code == 200
        page = resp.json()
        assert page["total"] == 3
        assert [tx["date"] for tx in page["items"]] == ["2025-01-30", "2025-01-20"]

        resp = await client.get("/api/transactions", params={"date_from": "2025-01-15"}, headers=HEADERS)
        assert resp.json()["total"] == 2

        resp = await client.get("/api/transactions", params={"offset": -1}, headers=HEADERS)
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_summary(self, client):
        facility = await _setup_facility(client)
        await _draw(client, facility, amount="400000")

        resp = await client.get("/api/portfolio/summary", headers=HEADERS)
        assert resp.status_code == 200
        data = resp.json()
        assert data["total_outstanding"] == "400000.00"
        assert data["utilization"] == "40.00"
        assert data["facility_ltv"] == "0.00"
        assert data["outstanding_ltv"] == "0.00"
        assert data["currency"] == "SAR"
        assert data["bank_exposures"][0]["bank_code"] == "RJHI"

        resp = await client.get("/api/portfolio/summary", headers=OTHER_HEADERS)
        assert resp.json()["active_loans_count"] == 0

    @pytest.mark.asyncio
    async def test_unknown_metric_is_400(self, client):
        resp = await client.get("/api/portfolio/totals", params={"metric": "net_worth"}, headers=HEADERS)
        assert resp.status_code == 400
        assert resp.json()["detail"]["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_snapshot_capture(self, client):
        facility = await _setup_facility(client)
        await _draw(client, facility)
        resp = await client.post(
            "/api/portfolio/snapshots", params={"snapshot_date": "2025-01-31"}, headers=HEADERS
        )
        assert resp.status_code == 201
        rows = (await client.get("/api/portfolio/snapshots", headers=HEADERS)).json()
        assert [r["snapshot_date"] for r in rows] == ["2025-01-31"]
