"""
Subscription state machine.

States: pending -> active -> past_due -> canceled. ``cancel_at_period_end`` is
an orthogonal flag on open subscriptions; ``canceled`` is terminal and no
transition leaves it. Every function here checks its guard, mutates the row in
place and returns a Transition describing what changed; none of them touch the
database or the provider.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from community_support.billing.exceptions import AlreadyCanceled, ValidationError
from community_support.billing.subscriptions.models import SubscriptionStatus

CANCELED = SubscriptionStatus.CANCELED.value

PAYMENT_SOURCE_STATES = frozenset(
    {
        SubscriptionStatus.PENDING.value,
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.PAST_DUE.value,
    }
)
VALID_STATUSES = frozenset(status.value for status in SubscriptionStatus)


class SubscriptionState(Protocol):
    id: Any
    status: str
    cancel_at_period_end: bool
    canceled_at: datetime | None
    current_period_start: datetime
    current_period_end: datetime


@dataclass
class Transition:
    """Outcome of applying one lifecycle event to a subscription."""

    event: str
    from_status: str
    to_status: str
    changes: dict[str, Any] = field(default_factory=dict)

    @property
    def status_changed(self) -> bool:
        return self.from_status != self.to_status

    @property
    def changed(self) -> bool:
        return bool(self.changes)


def _set(sub: SubscriptionState, changes: dict[str, Any], name: str, value: Any) -> None:
    if getattr(sub, name) != value:
        setattr(sub, name, value)
        changes[name] = value


def _validate_period(start: datetime, end: datetime) -> None:
    if end < start:
        raise ValidationError(
            f"Billing period ends ({end.isoformat()}) before it starts ({start.isoformat()})",
            field="current_period_end",
        )


def is_canceled(sub: SubscriptionState) -> bool:
    return sub.status == CANCELED


def can_cancel(sub: SubscriptionState) -> bool:
    """
    Guard for a user-initiated cancel, whichever kind.

    A subscription already scheduled to cancel at period end counts as
    canceled here, so neither a second schedule nor an immediate cancel is
    accepted for it.
    """
    return not (is_canceled(sub) or sub.cancel_at_period_end)


def ensure_can_cancel(sub: SubscriptionState) -> None:
    if not can_cancel(sub):
        raise AlreadyCanceled("This subscription is already canceled", subscription_id=sub.id)


def apply_cancel(sub: SubscriptionState, at_period_end: bool, now: datetime) -> Transition:
    """Mirror a cancel the provider has already accepted."""
    ensure_can_cancel(sub)
    transition = Transition("cancel_requested", sub.status, sub.status)

    if at_period_end:
        _set(sub, transition.changes, "cancel_at_period_end", True)
    else:
        _set(sub, transition.changes, "status", CANCELED)
    if sub.canceled_at is None:
        _set(sub, transition.changes, "canceled_at", now)

    transition.to_status = sub.status
    return transition


def apply_payment(sub: SubscriptionState, succeeded: bool) -> Transition:
    """
    Invoice paid or failed.

    Paid moves the subscription to active, failed to past_due. A payment
    reported against a canceled subscription is still recorded by the caller
    but leaves the status alone.
    """
    event = "payment_succeeded" if succeeded else "payment_failed"
    transition = Transition(event, sub.status, sub.status)
    if sub.status not in PAYMENT_SOURCE_STATES:
        return transition

    target = SubscriptionStatus.ACTIVE.value if succeeded else SubscriptionStatus.PAST_DUE.value
    _set(sub, transition.changes, "status", target)
    transition.to_status = sub.status
    return transition


def apply_deleted(sub: SubscriptionState, now: datetime) -> Transition:
    """Provider deleted the subscription."""
    transition = Transition("subscription_deleted", sub.status, sub.status)
    _set(sub, transition.changes, "status", CANCELED)
    if sub.canceled_at is None:
        _set(sub, transition.changes, "canceled_at", now)
    transition.to_status = sub.status
    return transition


def apply_updated(
    sub: SubscriptionState,
    status: str,
    period_start: datetime,
    period_end: datetime,
    cancel_at_period_end: bool,
    now: datetime,
) -> Transition:
    """
    Provider reported the subscription's current state.

    The provider is authoritative for status and period, except that a
    canceled subscription stays canceled. ``canceled_at`` is set the first
    time the cancel flag turns on and is never cleared.
    """
    if status not in VALID_STATUSES:
        raise ValidationError(f"Unknown subscription status: {status}", field="status")
    _validate_period(period_start, period_end)

    transition = Transition("subscription_updated", sub.status, sub.status)

    if not is_canceled(sub):
        _set(sub, transition.changes, "status", status)
    _set(sub, transition.changes, "current_period_start", period_start)
    _set(sub, transition.changes, "current_period_end", period_end)

    if cancel_at_period_end != sub.cancel_at_period_end:
        _set(sub, transition.changes, "cancel_at_period_end", cancel_at_period_end)
    if cancel_at_period_end and sub.canceled_at is None:
        _set(sub, transition.changes, "canceled_at", now)
    if sub.status == CANCELED and sub.canceled_at is None:
        _set(sub, transition.changes, "canceled_at", now)

    transition.to_status = sub.status
    return transition


__all__ = [
    "Transition",
    "apply_cancel",
    "apply_deleted",
    "apply_payment",
    "apply_updated",
    "can_cancel",
    "ensure_can_cancel",
    "is_canceled",
]
