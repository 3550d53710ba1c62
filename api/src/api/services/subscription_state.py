"""Subscription lifecycle transitions.

Every status change, whether it comes from a provider webhook, a test-mode
activation or the expiry sweep, is decided here. Illegal moves raise
``InvalidTransitionError`` so an out-of-order or mis-routed event cannot
corrupt the local record.
"""

from __future__ import annotations

from dataclasses import dataclass

from fluentdesk.schemas.billing import PaymentEventType, SubscriptionStatus

S = SubscriptionStatus

EXPIRY_TRIGGER = "expiry"

ALLOWED_TRANSITIONS: dict[SubscriptionStatus | None, frozenset[SubscriptionStatus]] = {
    None: frozenset({S.TRIALING, S.ACTIVE}),
    S.TRIALING: frozenset({S.TRIALING, S.ACTIVE, S.EXPIRED}),
    S.ACTIVE: frozenset({S.ACTIVE, S.PAST_DUE, S.CANCELED, S.EXPIRED}),
    S.PAST_DUE: frozenset({S.PAST_DUE, S.ACTIVE, S.CANCELED, S.EXPIRED}),
    S.CANCELED: frozenset({S.CANCELED, S.EXPIRED}),
    S.EXPIRED: frozenset({S.EXPIRED}),
}

# A completed payment on a closed cycle opens a new one.
NEW_CYCLE_STATES = frozenset({None, S.CANCELED, S.EXPIRED})

PROVIDER_STATUS_ALIASES: dict[str, SubscriptionStatus] = {
    "trialing": S.TRIALING,
    "active": S.ACTIVE,
    "past_due": S.PAST_DUE,
    "unpaid": S.PAST_DUE,
    "paused": S.PAST_DUE,
    "canceled": S.CANCELED,
    "cancelled": S.CANCELED,
    "expired": S.EXPIRED,
    "incomplete_expired": S.EXPIRED,
}


class InvalidTransitionError(ValueError):
    def __init__(
        self,
        current: SubscriptionStatus | None,
        target: SubscriptionStatus,
        trigger: str,
    ) -> None:
        self.current = current
        self.target = target
        self.trigger = trigger
        current_label = current.value if current else "none"
        super().__init__(f"Cannot move subscription from {current_label} to {target.value} on {trigger}")


class UnknownProviderStatusError(ValueError):
    pass


@dataclass(frozen=True)
class Transition:
    previous: SubscriptionStatus | None
    status: SubscriptionStatus
    starts_new_cycle: bool = False


def map_provider_status(raw: str | None) -> SubscriptionStatus:
    key = str(raw or "").strip().lower()
    try:
        return PROVIDER_STATUS_ALIASES[key]
    except KeyError:
        raise UnknownProviderStatusError(f"Unrecognized provider subscription status: {raw!r}") from None


def _coerce(status: SubscriptionStatus | str | None) -> SubscriptionStatus | None:
    if status is None:
        return None
    return SubscriptionStatus(status)


def _target_for(
    current: SubscriptionStatus | None,
    trigger: PaymentEventType | str,
    provider_status: str | None,
) -> SubscriptionStatus:
    if trigger == EXPIRY_TRIGGER:
        return S.EXPIRED
    event_type = PaymentEventType(trigger)
    if event_type is PaymentEventType.PAYMENT_COMPLETED:
        return S.ACTIVE
    if event_type is PaymentEventType.PAYMENT_FAILED:
        return S.PAST_DUE
    if event_type is PaymentEventType.SUBSCRIPTION_CREATED:
        return current or S.TRIALING
    if event_type is PaymentEventType.SUBSCRIPTION_CANCELED:
        return S.CANCELED
    return map_provider_status(provider_status)


def transition(
    current: SubscriptionStatus | str | None,
    trigger: PaymentEventType | str,
    *,
    provider_status: str | None = None,
) -> Transition:
    """Return the status ``trigger`` moves ``current`` to, or raise."""
    previous = _coerce(current)
    target = _target_for(previous, trigger, provider_status)
    trigger_label = trigger.value if isinstance(trigger, PaymentEventType) else str(trigger)

    if trigger == PaymentEventType.PAYMENT_COMPLETED and previous in NEW_CYCLE_STATES:
        return Transition(previous=previous, status=target, starts_new_cycle=True)

    if trigger == PaymentEventType.PAYMENT_FAILED and previous not in {S.ACTIVE, S.PAST_DUE}:
        raise InvalidTransitionError(previous, target, trigger_label)

    if target not in ALLOWED_TRANSITIONS[previous]:
        raise InvalidTransitionError(previous, target, trigger_label)
    return Transition(previous=previous, status=target)
