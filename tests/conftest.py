"""Shared feeds and fakes for the escrow vault tests."""

import json
from datetime import datetime, timezone

import pytest

from escrow_vault.errors import GatewayError
from escrow_vault.policy_engine import PolicyEngine


NOW = datetime(2026, 1, 6, tzinfo=timezone.utc)
START = "2026-01-01T00:00:00Z"
END = "2026-01-11T00:00:00Z"


def dashboard_campaign(percent_used=50, **overrides):
    """Active campaign half way through its 10-day run."""
    data = {
        "id": "c1",
        "title": "Spring Launch",
        "status": "Active",
        "startDate": START,
        "endDate": END,
        "budget": {"total": 1000, "percentUsed": percent_used},
        "creatorCount": 3,
    }
    data.update(overrides)
    return data


SAMPLE_SNAPSHOT = {
    "vault": {"totalBalance": 1300, "available": 500, "locked": 800, "pending": 800},
    "campaigns": [
        {
            "id": "c1",
            "name": "Spring Launch",
            "title": "Spring Launch",
            "status": "Active",
            "targetBudget": 1000,
            "fundedAmount": 600,
            "releasedAmount": 0,
            "startDate": START,
            "endDate": END,
            "budget": {"total": 1000, "percentUsed": 80},
            "creatorCount": 2,
        },
        {
            "id": "c2",
            "name": "Summer Promo",
            "title": "Summer Promo",
            "status": "Active",
            "targetBudget": 500,
            "fundedAmount": 200,
            "releasedAmount": 300,
            "creatorCount": 0,
            "isAtRisk": True,
            "riskReason": "Creator missed deadline",
        },
    ],
    "transactions": [
        {"id": "TX-1", "date": "2026-01-02T10:00:00Z", "type": "Funding", "status": "Completed",
         "amount": 600, "campaignId": "c1", "campaignName": "Spring Launch"},
        {"id": "TX-2", "date": "2026-01-03T10:00:00Z", "type": "Funding", "status": "Completed",
         "amount": 200, "campaignId": "c2", "campaignName": "Summer Promo"},
        {"id": "TX-3", "date": "2026-01-04T10:00:00Z", "type": "Release", "status": "Completed",
         "amount": 300, "campaignId": "c2", "campaignName": "Summer Promo"},
        {"id": "TX-4", "date": "2026-01-05T10:00:00Z", "type": "Adjustment", "status": "Pending",
         "amount": -25.5, "campaignId": "c1", "campaignName": "Spring Launch"},
    ],
    "metrics": {"overallROI": {"value": 2.0}},
    "previous_metrics": {"overallROI": {"value": 3.0}},
    "approvals": {"totalPending": 7},
}


class FakeGateway:
    """Records every call; returns canned payloads or raises."""

    def __init__(self, deposit_response=None, error=None, status_error=None):
        self.calls = []
        self.deposit_response = deposit_response or {"status": "success", "data": {"transactionId": "pay_1"}}
        self.error = error
        self.status_error = status_error

    def _respond(self, name, payload, **kwargs):
        self.calls.append((name, kwargs))
        if self.error:
            raise self.error
        if self.status_error:
            return {"status": "error", "message": self.status_error}
        return payload

    def deposit(self, amount, method, idempotency_key):
        return self._respond("deposit", self.deposit_response,
                             amount=amount, method=method, idempotency_key=idempotency_key)

    def withdraw(self, amount, idempotency_key):
        return self._respond("withdraw", {"status": "ok"},
                             amount=amount, idempotency_key=idempotency_key)

    def allocate(self, campaign_id, amount, idempotency_key):
        return self._respond("allocate", {"status": "ok"},
                             campaign_id=campaign_id, amount=amount, idempotency_key=idempotency_key)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def policy():
    return PolicyEngine()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def failing_gateway():
    return FakeGateway(error=GatewayError("Network unreachable"))


@pytest.fixture
def snapshot_data():
    return json.loads(json.dumps(SAMPLE_SNAPSHOT))


@pytest.fixture
def snapshot_file(tmp_path, snapshot_data):
    path = tmp_path / "snapshot.json"
    path.write_text(json.dumps(snapshot_data), encoding="utf-8")
    return path
