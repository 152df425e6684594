"""
API Tests for the Reward Ledger

Tests cover:
1. Click -> order -> commission flow over HTTP
2. Error mapping (404, 409, 400, 403, 422)
3. Wallet reads and admin adjustments
4. Referral settings, codes and processing
5. Bulk product rewards and per-product statistics
"""

import pytest
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4
from fastapi.testclient import TestClient

import ledger.api as api
from ledger.service import LedgerService
from ledger.storage import InMemoryStorage


DEMO_ACTOR_ID = "550e8400-e29b-41d4-a716-446655440000"


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(api, "ledger_service", LedgerService(storage=InMemoryStorage(seed=True)))
    return TestClient(api.app)


def complete_demo_order(client, order_id="ORD-100"):
    token = client.post("/clicks", json={"code": "DEMO10", "product_id": "prod-demo"}).json()
    response = client.post("/orders/completed", json={
        "order_id": order_id,
        "session_id": token["session_id"],
        "lines": [{"product_id": "prod-demo", "unit_price": "1000.00", "quantity": 1}],
    })
    return response.json()


class TestAttributionFlow:
    """Tests for the HTTP attribution flow."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_click_to_commission(self, client):
        """A tracked click turns the order into a capped commission."""
        result = complete_demo_order(client)

        assert result["attributed"] is True
        assert len(result["commissions"]) == 1
        assert Decimal(result["commissions"][0]["amount"]) == Decimal("50.00")

        wallet = client.get(f"/users/{DEMO_ACTOR_ID}/wallet").json()
        assert Decimal(wallet["wallet"]["affiliate_earnings"]) == Decimal("50.00")
        assert wallet["currency"] == "INR"

    def test_unknown_code_click(self, client):
        response = client.post("/clicks", json={"code": "NOPE", "product_id": "prod-demo"})

        assert response.status_code == 404

    def test_resolve_unknown_session(self, client):
        response = client.get("/attribution/sess_missing")

        assert response.status_code == 200
        assert response.json()["status"] == "absent"

    def test_register_duplicate_code(self, client):
        response = client.post("/actors", json={"name": "Copycat", "code": "DEMO10"})

        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "code"

    def test_list_product_rewards(self, client):
        client.put("/products/prod-off/reward", json={
            "is_enabled": False, "commission_type": "fixed", "commission_value": "5",
        })

        everything = client.get("/products/rewards").json()
        enabled = client.get("/products/rewards", params={"enabled_only": True}).json()

        assert {r["product_id"] for r in everything} == {"prod-demo", "prod-off"}
        assert [r["product_id"] for r in enabled] == ["prod-demo"]

    def test_invalid_product_reward(self, client):
        response = client.put("/products/prod-x/reward", json={
            "commission_type": "percentage",
            "commission_value": "150",
        })

        assert response.status_code == 422

    def test_resolve_expired_session_is_read_only(self, client, monkeypatch):
        """Reading an expired session twice reports expired both times."""
        token = client.post("/clicks", json={"code": "DEMO10", "product_id": "prod-demo"}).json()
        clock = api.ledger_service.tracker.clock
        monkeypatch.setattr(api.ledger_service.tracker, "clock", lambda: clock() + timedelta(days=31))

        first = client.get(f"/attribution/{token['session_id']}").json()
        second = client.get(f"/attribution/{token['session_id']}").json()

        assert first["status"] == second["status"] == "expired"

    def test_bulk_product_rewards(self, client):
        response = client.put("/products/rewards/bulk", json={
            "product_ids": ["prod-a", "prod-b"], "commission_type": "fixed", "commission_value": "12",
        })
        rewards = {r["product_id"] for r in client.get("/products/rewards").json()}

        assert response.status_code == 200
        assert len(response.json()) == 2
        assert {"prod-a", "prod-b"} <= rewards

    def test_bulk_product_rewards_invalid(self, client):
        response = client.put("/products/rewards/bulk", json={
            "product_ids": ["prod-demo"], "commission_type": "fixed", "commission_value": "1000",
        })

        assert response.status_code == 422

    def test_product_stats(self, client):
        complete_demo_order(client)

        stats = client.get("/products/stats").json()

        assert len(stats) == 1
        assert stats[0]["product_id"] == "prod-demo"
        assert stats[0]["total_orders"] == 1
        assert Decimal(stats[0]["total_commission"]) == Decimal("50.00")
        assert Decimal(stats[0]["product_price"]) == Decimal("1000.00")


class TestCommissionEndpoints:
    """Tests for commission transitions over HTTP."""

    def test_confirm_then_double_confirm(self, client):
        commission_id = complete_demo_order(client)["commissions"][0]["id"]

        first = client.post(f"/commissions/{commission_id}/confirm", json={"performed_by": "admin-1"})
        second = client.post(f"/commissions/{commission_id}/confirm", json={})

        assert first.status_code == 200
        assert first.json()["commission"]["status"] == "confirmed"
        assert second.status_code == 400

    def test_reverse(self, client):
        commission_id = complete_demo_order(client)["commissions"][0]["id"]

        response = client.post(f"/commissions/{commission_id}/reverse", json={"reason": "Refunded"})

        assert response.status_code == 200
        assert response.json()["wallet_transaction"]["direction"] == "debit"

    def test_unknown_commission(self, client):
        response = client.get(f"/commissions/{uuid4()}")

        assert response.status_code == 404


class TestPayoutEndpoints:
    """Tests for payouts over HTTP."""

    def test_payout_over_balance(self, client):
        complete_demo_order(client)

        response = client.post("/payouts", json={"actor_id": DEMO_ACTOR_ID, "amount": "50.01"})

        assert response.status_code == 409

    def test_payout_flow(self, client):
        complete_demo_order(client)
        payout_id = client.post("/payouts", json={"actor_id": DEMO_ACTOR_ID, "amount": "20.00"}).json()["payout"]["id"]

        own = client.post(f"/payouts/{payout_id}/process", json={"status": "processing", "performed_by": DEMO_ACTOR_ID})
        skip = client.post(f"/payouts/{payout_id}/process", json={"status": "completed", "performed_by": "admin-1"})
        processing = client.post(f"/payouts/{payout_id}/process", json={"status": "processing", "performed_by": "admin-1"})
        completed = client.post(f"/payouts/{payout_id}/process", json={"status": "completed", "performed_by": "admin-1"})

        assert own.status_code == 403
        assert skip.status_code == 400
        assert processing.status_code == 200
        assert completed.status_code == 200
        assert completed.json()["payout"]["status"] == "completed"

        wallet = client.get(f"/users/{DEMO_ACTOR_ID}/wallet").json()
        assert Decimal(wallet["wallet"]["affiliate_earnings"]) == Decimal("30.00")


class TestWalletEndpoints:
    """Tests for admin adjustments and history."""

    def test_adjust_and_history(self, client):
        user_id = str(uuid4())

        credit = client.post(f"/users/{user_id}/wallet/adjust", json={
            "bucket": "loyalty_coins", "direction": "credit", "amount": 120,
            "reason": "Goodwill", "admin_id": "admin-1",
        })
        history = client.get(f"/users/{user_id}/transactions").json()

        assert credit.status_code == 200
        assert Decimal(credit.json()["new_balance"]) == Decimal("120")
        assert history["total_count"] == 1
        assert history["transactions"][0]["reference_type"] == "admin_adjustment"
        assert Decimal(history["wallet"]["total_redeemable_amount"]) == Decimal("12.00")

    def test_adjust_insufficient(self, client):
        response = client.post(f"/users/{uuid4()}/wallet/adjust", json={
            "bucket": "refund_credits", "direction": "debit", "amount": "5.00",
            "reason": "Correction", "admin_id": "admin-1",
        })

        assert response.status_code == 409

    def test_adjust_invalid_amount(self, client):
        response = client.post(f"/users/{uuid4()}/wallet/adjust", json={
            "bucket": "refund_credits", "direction": "credit", "amount": "1.005",
            "reason": "Correction", "admin_id": "admin-1",
        })

        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "amount"


class TestReferralEndpoints:
    """Tests for referral settings and processing."""

    def test_settings_default_disabled(self, client):
        response = client.get("/referral-settings")

        assert response.status_code == 200
        assert response.json()["is_enabled"] is False

    def test_invalid_settings(self, client):
        response = client.put("/referral-settings", json={
            "is_enabled": True, "daily_referral_limit": 5, "monthly_referral_limit": 3,
        })

        assert response.status_code == 422
        errors = response.json()["detail"]["errors"]
        assert any("Daily limit cannot exceed monthly limit" in e for e in errors)

    def test_evaluate_is_dry_run(self, client):
        """Evaluation reports flags but records nothing."""
        response = client.post("/referrals/evaluate", json={
            "referrer_id": DEMO_ACTOR_ID, "referee_id": DEMO_ACTOR_ID, "referral_code": "DEMO10",
        })

        assert response.status_code == 200
        assert response.json()["allowed"] is False
        assert "self_referral" in response.json()["flags"]
        assert client.get("/referrals/stats").json()["total_referrals"] == 0

    def test_process_referral(self, client):
        client.put("/referral-settings", json={
            "is_enabled": True, "referrer_reward_coins": 100, "referee_welcome_coins": 50,
        })
        referrer, referee = str(uuid4()), str(uuid4())

        response = client.post("/referrals", json={
            "referrer_id": referrer, "referee_id": referee, "referral_code": "FRIEND", "order_value": "600",
        })
        stats = client.get("/referrals/stats").json()

        assert response.status_code == 201
        assert response.json()["status"] == "completed"
        assert client.get(f"/users/{referrer}/wallet").json()["wallet"]["referral_rewards"] == 100
        assert client.get(f"/users/{referee}/wallet").json()["wallet"]["loyalty_coins"] == 50
        assert stats["successful_referrals"] == 1
        assert stats["total_coins_issued"] == 150

    def test_referral_code_validation(self, client):
        owner = str(uuid4())
        issued = client.post("/referral-codes", json={"user_id": owner, "code": "pal50"})

        valid = client.get("/referral-codes/PAL50/validate").json()
        own = client.get("/referral-codes/PAL50/validate", params={"user_id": owner}).json()
        unknown = client.get("/referral-codes/NOPE/validate").json()

        assert issued.status_code == 201
        assert issued.json()["code"] == "PAL50"
        assert valid["valid"] is True
        assert valid["referrer_id"] == owner
        assert own["error"] == "Cannot use your own referral code"
        assert unknown["error"] == "Invalid referral code"

    def test_signup_then_order_completes_referral(self, client):
        client.put("/referral-settings", json={
            "is_enabled": True, "referrer_reward_coins": 100, "referee_welcome_coins": 50,
            "minimum_order_value": "500",
        })
        referrer, referee = str(uuid4()), str(uuid4())
        client.post("/referral-codes", json={"user_id": referrer, "code": "PAL50"})

        signup = client.post("/referrals/signup", json={"referral_code": "PAL50", "referee_id": referee})
        client.post("/orders/completed", json={
            "order_id": "ORD-200", "buyer_id": referee,
            "lines": [{"product_id": "prod-other", "unit_price": "750.00", "quantity": 1}],
        })

        assert signup.status_code == 201
        assert signup.json()["status"] == "pending"
        assert client.get(f"/users/{referrer}/wallet").json()["wallet"]["referral_rewards"] == 100
        assert client.get(f"/users/{referee}/wallet").json()["wallet"]["loyalty_coins"] == 50

    def test_signup_with_unknown_code(self, client):
        response = client.post("/referrals/signup", json={"referral_code": "NOPE", "referee_id": str(uuid4())})

        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "referral_code"
