"""Tests for refund policy and refund execution."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from helpers import utc
from tourbook.domain.errors import BookingConflict, GatewayError, PersistenceError, RefundNotEligible
from tourbook.domain.refund_selection import RefundAllocation
from tourbook.domain.refunds import (
    DEFAULT_POLICY_TIERS,
    RefundPolicy,
    RefundRequest,
    apply_percentage,
    load_refund_policy,
    process_multi_payment_refund,
    process_refund,
    quote_refund,
    update_refund_status,
    validate_tiers,
)
from tourbook.stripe.client import StripeClientError

NOW = utc(2026, 11, 1, 0, 0)
POLICY = RefundPolicy.from_dicts(DEFAULT_POLICY_TIERS, source="default")


@contextmanager
def mock_txn():
    """Mock txn context manager that yields a MagicMock cursor."""
    yield MagicMock()


@pytest.fixture
def repos():
    """Patch the payment and refund repositories used by refund execution."""
    with patch("tourbook.infra.db.txn", mock_txn):
        with patch("tourbook.domain.refunds.payments_repository") as payments:
            with patch("tourbook.domain.refunds.refunds_repository") as ledger:
                payments.mark_refund_pending.return_value = True
                yield payments, ledger


def _stripe(*refunds) -> MagicMock:
    client = MagicMock()
    client.create_refund.side_effect = list(refunds)
    return client


def _request(**overrides) -> RefundRequest:
    values = dict(
        payment_intent_id="pi_1",
        payment_id="pay-1",
        payment_amount_cents=12500,
        booking_id="b-1",
        booking_type="event",
        service_at=NOW + timedelta(hours=24),
        reason="Booking modification - price reduction",
        is_downgrade=True,
        downgrade_difference_cents=-2500,
        idempotency_scope="v3",
    )
    values.update(overrides)
    return RefundRequest(**values)


class TestPolicy:
    def test_more_than_twelve_hours_is_full(self):
        assert POLICY.percentage_for(12.5) == 100

    def test_exactly_twelve_hours_is_half(self):
        assert POLICY.percentage_for(12) == 50

    def test_inside_twelve_hours_is_half(self):
        assert POLICY.percentage_for(0.1) == 50

    def test_started_is_nothing(self):
        assert POLICY.percentage_for(0) == 0
        assert POLICY.percentage_for(-3) == 0

    def test_quote_uses_absolute_difference(self):
        quote = quote_refund(-2500, NOW + timedelta(hours=6), POLICY, NOW)
        assert quote.amount_cents == 1250
        assert quote.percentage == 50

    def test_quote_not_eligible(self):
        with pytest.raises(RefundNotEligible):
            quote_refund(2500, NOW - timedelta(hours=1), POLICY, NOW)

    def test_apply_percentage_rounds_half_up(self):
        assert apply_percentage(999, 50) == 500
        assert apply_percentage(998, 50) == 499

    def test_validate_tiers(self):
        validate_tiers([{"min_hours_before_service": 24, "refund_percent": 100}])
        with pytest.raises(ValueError, match="between 0 and 100"):
            validate_tiers([{"min_hours_before_service": 24, "refund_percent": 120}])
        with pytest.raises(ValueError, match="unique"):
            validate_tiers(
                [
                    {"min_hours_before_service": 1, "refund_percent": 10},
                    {"min_hours_before_service": 1, "refund_percent": 20},
                ]
            )


class TestLoadRefundPolicy:
    def test_database_wins(self, monkeypatch):
        monkeypatch.setenv("REFUND_POLICY_TIERS", '[{"min_hours": 1, "percent": 10}]')
        with patch("tourbook.infra.db.txn", mock_txn):
            with patch(
                "tourbook.infra.repositories.refund_policy_repository.list_tiers",
                return_value=[{"min_hours_before_service": 48, "refund_percent": 80}],
            ):
                policy = load_refund_policy()

        assert policy.source == "database"
        assert policy.percentage_for(72) == 80

    def test_env_when_database_empty(self, monkeypatch):
        monkeypatch.setenv("REFUND_POLICY_TIERS", '[{"min_hours": 1, "percent": 10}]')
        with patch("tourbook.infra.db.txn", mock_txn):
            with patch(
                "tourbook.infra.repositories.refund_policy_repository.list_tiers",
                return_value=[],
            ):
                policy = load_refund_policy()

        assert policy.source == "env"
        assert policy.percentage_for(2) == 10

    def test_invalid_env_falls_back_to_default(self, monkeypatch):
        monkeypatch.setenv("REFUND_POLICY_TIERS", "not json")
        with patch("tourbook.infra.db.txn", mock_txn):
            with patch(
                "tourbook.infra.repositories.refund_policy_repository.list_tiers",
                return_value=[],
            ):
                policy = load_refund_policy()

        assert policy.source == "default"
        assert policy.percentage_for(13) == 100


class TestProcessRefund:
    def test_downgrade_refunds_policy_share_of_difference(self, repos):
        payments, ledger = repos
        stripe_client = _stripe({"id": "re_1", "status": "succeeded", "amount": 2500})

        result = process_refund(_request(), stripe_client=stripe_client, policy=POLICY, now=NOW)

        assert result.success is True
        assert result.refund_id == "re_1"
        assert result.amount_cents == 2500
        assert result.percentage == 100
        kwargs = stripe_client.create_refund.call_args.kwargs
        assert kwargs["amount_cents"] == 2500
        assert kwargs["idempotency_key"] == "refund:event:b-1:pay-1:v3"
        payments.mark_refund_pending.assert_called_once()
        assert payments.record_refund.call_args.kwargs["refund_status"] == "refunded"
        assert ledger.insert_refund.call_args.kwargs["stripe_refund_id"] == "re_1"

    def test_half_refund_inside_twelve_hours(self, repos):
        stripe_client = _stripe({"id": "re_1", "status": "pending", "amount": 1250})

        result = process_refund(
            _request(service_at=NOW + timedelta(hours=3)),
            stripe_client=stripe_client,
            policy=POLICY,
            now=NOW,
        )

        assert result.amount_cents == 1250
        assert result.percentage == 50
        assert result.refunds[0]["status"] == "pending"

    def test_not_eligible_never_calls_gateway(self, repos):
        payments, _ = repos
        stripe_client = _stripe()

        with pytest.raises(RefundNotEligible):
            process_refund(
                _request(service_at=NOW - timedelta(hours=1)),
                stripe_client=stripe_client,
                policy=POLICY,
                now=NOW,
            )

        stripe_client.create_refund.assert_not_called()
        payments.mark_refund_pending.assert_not_called()

    def test_refund_capped_at_payment_headroom(self, repos):
        stripe_client = _stripe({"id": "re_1", "status": "succeeded", "amount": 1000})

        result = process_refund(
            _request(payment_amount_cents=1000, downgrade_difference_cents=-2500),
            stripe_client=stripe_client,
            policy=POLICY,
            now=NOW,
        )

        assert result.amount_cents == 1000

    def test_gateway_error_marks_payment_failed(self, repos):
        payments, ledger = repos
        stripe_client = MagicMock()
        stripe_client.create_refund.side_effect = StripeClientError("card_declined")

        with pytest.raises(GatewayError):
            process_refund(_request(), stripe_client=stripe_client, policy=POLICY, now=NOW)

        payments.mark_refunds_failed.assert_called_once()
        assert payments.mark_refunds_failed.call_args.args[2] == ["pay-1"]
        ledger.insert_refund.assert_not_called()

    def test_declined_refund_is_gateway_error(self, repos):
        payments, _ = repos
        stripe_client = _stripe({"id": "re_1", "status": "failed", "amount": 2500})

        with pytest.raises(GatewayError, match="declined"):
            process_refund(_request(), stripe_client=stripe_client, policy=POLICY, now=NOW)

        payments.mark_refunds_failed.assert_called_once()

    def test_refund_in_flight_is_conflict(self, repos):
        payments, _ = repos
        payments.mark_refund_pending.return_value = False
        stripe_client = _stripe()

        with pytest.raises(BookingConflict):
            process_refund(_request(), stripe_client=stripe_client, policy=POLICY, now=NOW)

        stripe_client.create_refund.assert_not_called()
        # The in-flight refund owns the pending state
        payments.mark_refunds_failed.assert_not_called()

    def test_unrecorded_refund_is_persistence_error(self, repos):
        payments, _ = repos
        payments.record_refund.side_effect = RuntimeError("db down")
        stripe_client = _stripe({"id": "re_1", "status": "succeeded", "amount": 2500})

        with pytest.raises(PersistenceError, match="could not be recorded"):
            process_refund(_request(), stripe_client=stripe_client, policy=POLICY, now=NOW)

        # Money moved; the payment must not be marked failed
        payments.mark_refunds_failed.assert_not_called()


class TestProcessMultiPaymentRefund:
    def _allocations(self) -> list[RefundAllocation]:
        return [
            RefundAllocation({"id": "pay-1"}, "pi_1", 10000),
            RefundAllocation({"id": "pay-2"}, "pi_2", 2000),
        ]

    def test_one_refund_per_payment(self, repos):
        stripe_client = _stripe(
            {"id": "re_1", "status": "succeeded", "amount": 10000},
            {"id": "re_2", "status": "succeeded", "amount": 2000},
        )

        result = process_multi_payment_refund(
            self._allocations(),
            booking_type="tour",
            booking_id="b-1",
            service_at=NOW + timedelta(hours=48),
            reason="test",
            stripe_client=stripe_client,
            policy=POLICY,
            idempotency_scope="v1",
            now=NOW,
        )

        assert result.amount_cents == 12000
        assert result.refund_id == "re_1"
        assert [r["refund_id"] for r in result.refunds] == ["re_1", "re_2"]
        assert stripe_client.create_refund.call_count == 2

    def test_partial_failure_marks_only_unconfirmed(self, repos):
        payments, ledger = repos
        stripe_client = MagicMock()
        stripe_client.create_refund.side_effect = [
            {"id": "re_1", "status": "succeeded", "amount": 10000},
            StripeClientError("processing_error"),
        ]

        with pytest.raises(GatewayError):
            process_multi_payment_refund(
                self._allocations(),
                booking_type="tour",
                booking_id="b-1",
                service_at=NOW + timedelta(hours=48),
                reason="test",
                stripe_client=stripe_client,
                policy=POLICY,
                now=NOW,
            )

        assert ledger.insert_refund.call_count == 1
        assert payments.mark_refunds_failed.call_args.args[2] == ["pay-2"]

    def test_refund_in_flight_on_one_payment_releases_the_others(self, repos):
        payments, ledger = repos
        payments.mark_refund_pending.side_effect = [True, False]
        allocations = [
            *self._allocations(),
            RefundAllocation({"id": "pay-3"}, "pi_3", 500),
        ]
        stripe_client = _stripe()

        with pytest.raises(BookingConflict):
            process_multi_payment_refund(
                allocations,
                booking_type="tour",
                booking_id="b-1",
                service_at=NOW + timedelta(hours=48),
                reason="test",
                stripe_client=stripe_client,
                policy=POLICY,
                now=NOW,
            )

        stripe_client.create_refund.assert_not_called()
        ledger.insert_refund.assert_not_called()
        # pay-2 belongs to the concurrent refund; pay-3 was never claimed
        payments.mark_refunds_failed.assert_called_once()
        assert payments.mark_refunds_failed.call_args.args[2] == ["pay-1"]

    def test_not_eligible_never_calls_gateway(self, repos):
        stripe_client = _stripe()

        with pytest.raises(RefundNotEligible):
            process_multi_payment_refund(
                self._allocations(),
                booking_type="tour",
                booking_id="b-1",
                service_at=NOW,
                reason="test",
                stripe_client=stripe_client,
                policy=POLICY,
                now=NOW,
            )

        stripe_client.create_refund.assert_not_called()


class TestUpdateRefundStatus:
    def _row(self, previous: str) -> dict:
        return {
            "booking_type": "event",
            "booking_id": "b-1",
            "payment_id": "pay-1",
            "amount_cents": 2500,
            "previous_status": previous,
        }

    def test_pending_to_refunded(self, repos):
        payments, ledger = repos
        ledger.update_refund_status.return_value = self._row("pending")

        assert update_refund_status("re_1", "succeeded") is True

        kwargs = payments.apply_refund_outcome.call_args.kwargs
        assert kwargs == {"refund_status": "refunded", "release_cents": 0}

    def test_failure_releases_reserved_amount(self, repos):
        payments, ledger = repos
        ledger.update_refund_status.return_value = self._row("pending")

        assert update_refund_status("re_1", "failed") is True

        assert payments.apply_refund_outcome.call_args.kwargs["release_cents"] == 2500

    def test_replay_is_noop(self, repos):
        payments, ledger = repos
        ledger.update_refund_status.return_value = self._row("refunded")

        assert update_refund_status("re_1", "succeeded") is False
        payments.apply_refund_outcome.assert_not_called()

    def test_unknown_refund(self, repos):
        _, ledger = repos
        ledger.update_refund_status.return_value = None

        assert update_refund_status("re_other", "succeeded") is False

    def test_unknown_gateway_status(self, repos):
        _, ledger = repos
        assert update_refund_status("re_1", "mystery") is False
        ledger.update_refund_status.assert_not_called()
