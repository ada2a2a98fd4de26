"""Tests for the Stripe webhook receiver and signature parsing."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from contextlib import contextmanager
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from tourbook.api.factory import create_app
from tourbook.stripe.webhook import (
    InvalidPayloadError,
    InvalidSignatureError,
    StripeWebhookEvent,
    verify_and_extract,
)

SECRET = "whsec_test_secret"
TEST_EVENT_ID = "evt_test_12345678"


def _sign(payload: bytes, secret: str = SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _event_bytes(obj: dict, event_type: str = "payment_intent.succeeded") -> bytes:
    return json.dumps(
        {
            "id": TEST_EVENT_ID,
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }
    ).encode()


class TestVerifyAndExtract:
    def test_payment_intent_event(self):
        payload = _event_bytes({"id": "pi_1", "object": "payment_intent"})

        event = verify_and_extract(payload, _sign(payload), SECRET)

        assert event.event_id == TEST_EVENT_ID
        assert event.payment_intent_id == "pi_1"
        assert event.refunds == []

    def test_charge_refunded_lists_refunds(self):
        payload = _event_bytes(
            {
                "id": "ch_1",
                "object": "charge",
                "payment_intent": "pi_1",
                "refunds": {"object": "list", "data": [{"id": "re_1", "status": "succeeded"}]},
            },
            event_type="charge.refunded",
        )

        event = verify_and_extract(payload, _sign(payload), SECRET)

        assert event.payment_intent_id == "pi_1"
        assert event.refunds == [("re_1", "succeeded")]

    def test_refund_object(self):
        payload = _event_bytes(
            {"id": "re_2", "object": "refund", "status": "failed", "payment_intent": "pi_1"},
            event_type="refund.updated",
        )

        event = verify_and_extract(payload, _sign(payload), SECRET)

        assert event.refunds == [("re_2", "failed")]
        assert event.to_task_payload()["refunds"] == [{"id": "re_2", "status": "failed"}]

    def test_bad_signature(self):
        payload = _event_bytes({"id": "pi_1", "object": "payment_intent"})
        with pytest.raises(InvalidSignatureError):
            verify_and_extract(payload, _sign(payload, secret="whsec_other"), SECRET)

    def test_expanded_payment_intent_on_charge(self):
        payload = _event_bytes(
            {"id": "ch_2", "object": "charge", "payment_intent": {"id": "pi_9", "object": "payment_intent"}},
            event_type="charge.refund.updated",
        )

        event = verify_and_extract(payload, _sign(payload), SECRET)

        assert event.payment_intent_id == "pi_9"
        assert event.refunds == []

    def test_event_without_id(self):
        payload = json.dumps({"type": "payment_intent.succeeded", "data": {}}).encode()
        with pytest.raises(InvalidPayloadError):
            verify_and_extract(payload, _sign(payload), SECRET)

    def test_bad_payload(self):
        payload = b"not json"
        with pytest.raises(InvalidPayloadError):
            verify_and_extract(payload, _sign(payload), SECRET)


@contextmanager
def _txn_with_rowcount(rowcount: int):
    cur = MagicMock()
    cur.rowcount = rowcount
    yield cur


@pytest.fixture
def client():
    return TestClient(create_app(role="public"))


@pytest.fixture
def mock_tasks_client():
    """Inject a mock tasks client."""
    mock_client = MagicMock()
    mock_client.dispatch.return_value = True
    with patch(
        "tourbook.api.routes.webhooks_stripe._get_tasks_client",
        return_value=mock_client,
    ):
        yield mock_client


@pytest.fixture(autouse=True)
def webhook_secret(monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", SECRET)


@pytest.fixture
def mock_stripe_verify():
    event = StripeWebhookEvent(
        event_id=TEST_EVENT_ID,
        event_type="payment_intent.succeeded",
        object_id="pi_1",
        payment_intent_id="pi_1",
    )
    with patch(
        "tourbook.api.routes.webhooks_stripe.verify_and_extract",
        return_value=event,
    ):
        yield event


def _post(client, body: bytes = b"{}", signature: str = "t=1,v1=abc"):
    return client.post(
        "/webhooks/stripe",
        content=body,
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )


class TestStripeWebhookEndpoint:
    def test_new_event_is_dispatched(self, client, mock_tasks_client, mock_stripe_verify):
        with patch("tourbook.infra.db.txn", lambda: _txn_with_rowcount(1)):
            response = _post(client)

        assert response.status_code == 200
        assert response.text == "ok"
        kwargs = mock_tasks_client.dispatch.call_args.kwargs
        assert kwargs["task_id"] == f"stripe:{TEST_EVENT_ID}"
        assert kwargs["url_path"] == "/tasks/stripe/handle-event"
        assert kwargs["payload"]["payment_intent_id"] == "pi_1"

    def test_duplicate_event_is_acknowledged(self, client, mock_tasks_client, mock_stripe_verify):
        with patch("tourbook.infra.db.txn", lambda: _txn_with_rowcount(0)):
            response = _post(client)

        assert response.status_code == 200
        assert response.text == "duplicate"
        mock_tasks_client.dispatch.assert_not_called()

    def test_dispatch_failure_is_500(self, client, mock_tasks_client, mock_stripe_verify):
        mock_tasks_client.dispatch.side_effect = RuntimeError("queue down")
        with patch("tourbook.infra.db.txn", lambda: _txn_with_rowcount(1)):
            response = _post(client)

        assert response.status_code == 500

    def test_invalid_signature_is_400(self, client, mock_tasks_client):
        body = _event_bytes({"id": "pi_1", "object": "payment_intent"})
        response = _post(client, body, _sign(body, secret="whsec_wrong"))

        assert response.status_code == 400
        assert response.text == "invalid signature"
        mock_tasks_client.dispatch.assert_not_called()

    def test_missing_secret_is_500(self, client, mock_tasks_client, monkeypatch):
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")
        response = _post(client)
        assert response.status_code == 500

    def test_missing_signature_header(self, client):
        response = client.post("/webhooks/stripe", content=b"{}")
        assert response.status_code == 400

    def test_signed_payment_event_reaches_dispatch(self, client, mock_tasks_client):
        body = _event_bytes({"id": "pi_42", "object": "payment_intent"})
        with patch("tourbook.infra.db.txn", lambda: _txn_with_rowcount(1)):
            response = _post(client, body, _sign(body))

        assert response.status_code == 200
        payload = mock_tasks_client.dispatch.call_args.kwargs["payload"]
        assert payload["event_type"] == "payment_intent.succeeded"
        assert payload["payment_intent_id"] == "pi_42"

    def test_signed_refund_event_reaches_dispatch(self, client, mock_tasks_client):
        body = _event_bytes(
            {
                "id": "ch_1",
                "object": "charge",
                "payment_intent": "pi_1",
                "refunds": {"object": "list", "data": [{"id": "re_1", "status": "succeeded"}]},
            },
            event_type="charge.refunded",
        )
        with patch("tourbook.infra.db.txn", lambda: _txn_with_rowcount(1)):
            response = _post(client, body, _sign(body))

        assert response.status_code == 200
        payload = mock_tasks_client.dispatch.call_args.kwargs["payload"]
        assert payload["refunds"] == [{"id": "re_1", "status": "succeeded"}]
