import pytest
import asyncio
import httpx
from fastapi.testclient import TestClient
from unittest.mock import patch
from datetime import datetime

from main import app
from repositories import reset_repositories, get_balance_repository

client = TestClient(app)


@pytest.fixture(autouse=True)
def reset_state():
    """Reset repositories before each test."""
    reset_repositories()


def charge(user_id, amount):
    return client.patch(f"/point/{user_id}/charge", json={"amount": amount})


def use(user_id, amount):
    return client.patch(f"/point/{user_id}/use", json={"amount": amount})


class TestPointScenarios:
    """Test the basic charge/use flows."""

    def test_new_user_has_zero_balance(self):
        response = client.get("/point/1")

        assert response.status_code == 200
        data = response.json()
        assert data["userId"] == 1
        assert data["amount"] == 0
        assert "updatedAt" in data

    def test_charge(self):
        response = charge(1, 1000)

        assert response.status_code == 200
        assert response.json()["amount"] == 1000

        histories = client.get("/point/1/histories").json()
        assert len(histories) == 1
        assert histories[0]["type"] == "CHARGE"
        assert histories[0]["amount"] == 1000

    def test_charges_accumulate(self):
        charge(1, 1000)
        response = charge(1, 2000)

        assert response.json()["amount"] == 3000
        assert client.get("/point/1").json()["amount"] == 3000
        assert len(client.get("/point/1/histories").json()) == 2

    def test_charge_then_use(self):
        charge(1, 2000)
        response = use(1, 500)

        assert response.status_code == 200
        assert response.json()["amount"] == 1500

        histories = client.get("/point/1/histories").json()
        assert [(h["type"], h["amount"]) for h in histories] == [("CHARGE", 2000), ("USE", 500)]

    def test_use_more_than_balance(self):
        charge(1, 1000)
        response = use(1, 2000)

        assert response.status_code == 409
        data = response.json()
        assert data["error_code"] == "INSUFFICIENT_BALANCE"
        assert data["category"] == "business_rule"

        assert client.get("/point/1").json()["amount"] == 1000
        assert len(client.get("/point/1/histories").json()) == 1


class TestValidation:
    """Test input validation."""

    def test_non_positive_user_id(self):
        response = client.get("/point/0")

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_IDENTIFIER"

    def test_non_numeric_user_id(self):
        response = client.get("/point/abc")
        assert response.status_code == 422

    def test_charge_below_minimum(self):
        response = charge(1, 50)

        assert response.status_code == 400
        assert response.json()["error_code"] == "AMOUNT_TOO_SMALL"
        assert get_balance_repository().count() == 0

    def test_zero_use(self):
        response = use(1, 0)

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_AMOUNT"

    def test_charge_over_ceiling(self):
        charge(1, 99_500)
        response = charge(1, 1000)

        assert response.status_code == 409
        assert response.json()["error_code"] == "BALANCE_CEILING_EXCEEDED"
        assert client.get("/point/1").json()["amount"] == 99_500

    def test_missing_amount(self):
        response = client.patch("/point/1/charge", json={})
        assert response.status_code == 422

    @pytest.mark.parametrize("amount", ["1000", True, 1000.0])
    def test_non_integer_amount_rejected(self, amount):
        response = client.patch("/point/1/charge", json={"amount": amount})

        assert response.status_code == 422
        assert get_balance_repository().count() == 0
        assert client.get("/point/1/histories").json() == []

    @pytest.mark.parametrize("amount", ["100", False])
    def test_non_integer_use_rejected(self, amount):
        charge(1, 1000)
        response = client.patch("/point/1/use", json={"amount": amount})

        assert response.status_code == 422
        assert client.get("/point/1").json()["amount"] == 1000
        assert len(client.get("/point/1/histories").json()) == 1

    def test_malformed_json(self):
        response = client.patch(
            "/point/1/charge",
            content="{'amount': 100",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 422


class TestConcurrency:
    """Test concurrent requests on the same user."""

    @pytest.mark.asyncio
    async def test_concurrent_charges_same_user(self):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            tasks = [ac.patch("/point/1/charge", json={"amount": 100}) for _ in range(30)]
            results = await asyncio.gather(*tasks)

            assert all(r.status_code == 200 for r in results)

            balance = await ac.get("/point/1")
            histories = await ac.get("/point/1/histories")

        assert balance.json()["amount"] == 3000
        assert len(histories.json()) == 30

    @pytest.mark.asyncio
    async def test_concurrent_uses_never_overdraw(self):
        charge(1, 1000)

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            tasks = [ac.patch("/point/1/use", json={"amount": 300}) for _ in range(5)]
            results = await asyncio.gather(*tasks)

        successful = [r for r in results if r.status_code == 200]
        failed = [r for r in results if r.status_code == 409]
        assert len(successful) == 3
        assert len(failed) == 2
        assert client.get("/point/1").json()["amount"] == 100


class TestHealthAndUtility:
    """Test health check and utility endpoints."""

    def test_health_check(self):
        charge(1, 1000)
        charge(2, 1000)

        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["users_count"] == 2
        assert data["history_records"] == 2
        assert data["lock_keys"] == 2

    def test_timestamps_carry_timezone(self):
        balance = charge(1, 1000).json()
        error = use(1, 5000).json()
        health = client.get("/health").json()

        updated_at = datetime.fromisoformat(balance["updatedAt"])
        for value in (error["timestamp"], health["timestamp"]):
            stamp = datetime.fromisoformat(value)
            assert stamp.tzinfo is not None
            assert stamp.utcoffset() == updated_at.utcoffset()

    def test_root_endpoint(self):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert "message" in data
        assert "docs" in data


class TestErrorHandling:
    """Test error handling scenarios."""

    @patch("services.logger")
    def test_logging_on_rejection(self, mock_logger):
        response = use(1, 100)

        assert response.status_code == 409
        mock_logger.warning.assert_called()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
