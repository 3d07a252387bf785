"""
Webhook server tests
HTTP status mapping for M-Pesa callbacks and the health probe
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine

from conftest import stk_callback
from services.reconciliation_service import NotificationOutcome
from webhook_server import create_app


def make_client(outcome=None, engine=None):
    reconciliation = MagicMock()
    reconciliation.handle_provider_notification = AsyncMock(return_value=outcome)
    container = SimpleNamespace(reconciliation=reconciliation, engine=engine or MagicMock())
    return TestClient(create_app(container)), reconciliation


class TestMpesaCallback:

    def test_processed_payment_returns_200(self):
        client, reconciliation = make_client(NotificationOutcome(
            accepted=True, message="Payment processed successfully", checkout_request_id="ws_CO_001"
        ))

        response = client.post("/callback/mpesa", json=stk_callback())

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Payment processed successfully"}
        reconciliation.handle_provider_notification.assert_awaited_once_with(stk_callback())

    @pytest.mark.parametrize("reason", ["TRANSACTION_NOT_FOUND", "RECEIPT_NUMBER_MISSING", "USER_NOT_FOUND"])
    def test_handled_rejections_still_return_200(self, reason):
        client, _ = make_client(NotificationOutcome(accepted=False, message="nope", reason=reason))

        response = client.post("/callback/mpesa", json=stk_callback())

        assert response.status_code == 200
        assert response.json() == {"success": False, "message": "nope", "error": reason}

    def test_malformed_payload_returns_400(self):
        client, _ = make_client(NotificationOutcome(
            accepted=False, message="Invalid callback data structure", reason="MALFORMED_PAYLOAD"
        ))

        response = client.post("/callback/mpesa", json={"Body": {}})

        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Invalid callback data structure"}

    def test_body_that_is_not_json_returns_400(self):
        client, reconciliation = make_client()

        response = client.post(
            "/callback/mpesa", content=b"not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        reconciliation.handle_provider_notification.assert_not_awaited()

    def test_internal_error_returns_500(self):
        client, _ = make_client(NotificationOutcome(
            accepted=False, message="Internal server error", reason="CALLBACK_PROCESSING_ERROR"
        ))

        response = client.post("/callback/mpesa", json=stk_callback())

        assert response.status_code == 500
        assert response.json()["error"] == "CALLBACK_PROCESSING_ERROR"


class TestHealth:

    def test_root(self):
        client, _ = make_client()
        assert client.get("/").status_code == 200

    def test_healthy_database(self):
        client, _ = make_client(engine=create_async_engine("sqlite+aiosqlite://"))

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    def test_unreachable_database(self):
        engine = MagicMock()
        engine.connect.side_effect = OSError("connection refused")
        client, _ = make_client(engine=engine)

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
