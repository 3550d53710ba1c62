from __future__ import annotations

import pytest
from api.services.subscription_state import (
    EXPIRY_TRIGGER,
    InvalidTransitionError,
    UnknownProviderStatusError,
    map_provider_status,
    transition,
)
from fluentdesk.schemas.billing import PaymentEventType as E
from fluentdesk.schemas.billing import SubscriptionStatus as S


class TestPaymentCompleted:
    @pytest.mark.parametrize("current", [None, S.CANCELED, S.EXPIRED])
    def test_closed_cycle_opens_new_one(self, current):
        change = transition(current, E.PAYMENT_COMPLETED)
        assert change.status is S.ACTIVE
        assert change.starts_new_cycle is True

    @pytest.mark.parametrize("current", [S.TRIALING, S.ACTIVE, S.PAST_DUE])
    def test_open_cycle_is_extended(self, current):
        change = transition(current, E.PAYMENT_COMPLETED)
        assert change.status is S.ACTIVE
        assert change.starts_new_cycle is False

    def test_accepts_raw_strings(self):
        change = transition("past_due", E.PAYMENT_COMPLETED)
        assert change.previous is S.PAST_DUE


class TestPaymentFailed:
    @pytest.mark.parametrize("current", [S.ACTIVE, S.PAST_DUE])
    def test_goes_past_due(self, current):
        assert transition(current, E.PAYMENT_FAILED).status is S.PAST_DUE

    @pytest.mark.parametrize("current", [None, S.TRIALING, S.CANCELED, S.EXPIRED])
    def test_rejected_elsewhere(self, current):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(current, E.PAYMENT_FAILED)
        assert exc_info.value.target is S.PAST_DUE
        assert exc_info.value.trigger == "payment_failed"


class TestProviderEvents:
    def test_created_keeps_current_status(self):
        assert transition(S.ACTIVE, E.SUBSCRIPTION_CREATED).status is S.ACTIVE

    def test_created_without_record_is_trialing(self):
        assert transition(None, E.SUBSCRIPTION_CREATED).status is S.TRIALING

    def test_canceled_from_active(self):
        assert transition(S.ACTIVE, E.SUBSCRIPTION_CANCELED).status is S.CANCELED

    def test_cannot_cancel_a_trial_directly(self):
        with pytest.raises(InvalidTransitionError):
            transition(S.TRIALING, E.SUBSCRIPTION_CANCELED)

    def test_updated_maps_provider_status(self):
        change = transition(S.TRIALING, E.SUBSCRIPTION_UPDATED, provider_status="active")
        assert change.status is S.ACTIVE

    def test_updated_cannot_revive_canceled(self):
        with pytest.raises(InvalidTransitionError):
            transition(S.CANCELED, E.SUBSCRIPTION_UPDATED, provider_status="active")

    def test_updated_with_unknown_status(self):
        with pytest.raises(UnknownProviderStatusError):
            transition(S.ACTIVE, E.SUBSCRIPTION_UPDATED, provider_status="frozen")


class TestExpiry:
    @pytest.mark.parametrize("current", [S.TRIALING, S.ACTIVE, S.PAST_DUE, S.CANCELED])
    def test_expiry_from_open_states(self, current):
        assert transition(current, EXPIRY_TRIGGER).status is S.EXPIRED

    def test_expired_is_terminal(self):
        assert transition(S.EXPIRED, EXPIRY_TRIGGER).status is S.EXPIRED
        with pytest.raises(InvalidTransitionError):
            transition(S.EXPIRED, E.SUBSCRIPTION_UPDATED, provider_status="past_due")

    def test_no_subscription_cannot_expire(self):
        with pytest.raises(InvalidTransitionError):
            transition(None, EXPIRY_TRIGGER)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("active", S.ACTIVE),
        (" Trialing ", S.TRIALING),
        ("unpaid", S.PAST_DUE),
        ("paused", S.PAST_DUE),
        ("cancelled", S.CANCELED),
        ("incomplete_expired", S.EXPIRED),
    ],
)
def test_map_provider_status(raw, expected):
    assert map_provider_status(raw) is expected


def test_map_provider_status_rejects_blank():
    with pytest.raises(UnknownProviderStatusError):
        map_provider_status(None)
