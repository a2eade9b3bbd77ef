"""State machine guards for offers, engagements and escrow payments.

Uses python-statemachine to enforce legal state transitions at the domain
level. The machines are instantiated from a row's current status and fired
before the conditional UPDATE is issued; the database compare-and-swap stays
the final word when two writers race.

Offer transition table:
    pending -> accepted    (accept)
    pending -> declined    (decline)
    pending -> countered   (counter)
    pending -> expired     (expire)
    pending -> cancelled   (cancel)

Engagement transition table:
    staged       -> interviewing   (begin_interviews)
    interviewing -> accepted       (accept_terms)
    staged       -> accepted       (accept_terms)
    staged|interviewing|accepted -> active (funds_held)
    active       -> completed      (complete)
    staged|interviewing|accepted|active -> terminated (terminate)
    accepted|active -> disputed    (dispute)

Escrow payment transition table:
    pending -> held       (confirm_hold)
    pending -> failed     (fail)
    held    -> released   (release)
    held    -> refunded   (refund)
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from talent_escrow.domain.exceptions import InvalidStateTransitionError


class _GuardMixin:
    """Shared constructor and helpers for the guard machines."""

    entity = "entity"

    def __init__(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown status '{current_status}'. Valid states: {valid}")
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the status enum)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.name for event in self.allowed_events]


class OfferStateMachine(_GuardMixin, StateMachine):
    """Guards offer row transitions. Every state except pending is final."""

    entity = "offer"

    pending = State("pending", initial=True)
    accepted = State("accepted", final=True)
    declined = State("declined", final=True)
    countered = State("countered", final=True)
    expired = State("expired", final=True)
    cancelled = State("cancelled", final=True)

    accept = pending.to(accepted)
    decline = pending.to(declined)
    counter = pending.to(countered)
    expire = pending.to(expired)
    cancel = pending.to(cancelled)


class EngagementStateMachine(_GuardMixin, StateMachine):
    """Guards engagement status changes."""

    entity = "engagement"

    staged = State("staged", initial=True)
    interviewing = State("interviewing")
    accepted = State("accepted")
    active = State("active")
    completed = State("completed", final=True)
    terminated = State("terminated", final=True)
    disputed = State("disputed", final=True)

    begin_interviews = staged.to(interviewing)
    accept_terms = interviewing.to(accepted) | staged.to(accepted)
    funds_held = staged.to(active) | interviewing.to(active) | accepted.to(active)
    complete = active.to(completed)
    terminate = (
        staged.to(terminated)
        | interviewing.to(terminated)
        | accepted.to(terminated)
        | active.to(terminated)
    )
    dispute = accepted.to(disputed) | active.to(disputed)


class EscrowPaymentStateMachine(_GuardMixin, StateMachine):
    """Guards escrow payment status changes (forward-only)."""

    entity = "payment"

    pending = State("pending", initial=True)
    held = State("held")
    released = State("released", final=True)
    refunded = State("refunded", final=True)
    failed = State("failed", final=True)

    confirm_hold = pending.to(held)
    fail = pending.to(failed)
    release = held.to(released)
    refund = held.to(refunded)


def validate_transition(
    machine_cls: type[_GuardMixin],
    current_status: str,
    event_name: str,
) -> str:
    """Validate a state transition and return the new status.

    Creates a temporary state machine at current_status, fires the named
    event, and returns the resulting status string.

    Raises:
        InvalidStateTransitionError: If the transition is illegal.
        ValueError: If the status or event name is unknown.
    """
    sm = machine_cls(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    try:
        event_method()
    except TransitionNotAllowed as err:
        raise InvalidStateTransitionError(sm.entity, current_status, event_name) from err
    return sm.status


def can_transition(machine_cls: type[_GuardMixin], current_status: str, event_name: str) -> bool:
    """Return True if event_name may fire from current_status."""
    return event_name in machine_cls(current_status=current_status).get_allowed_events()


def allowed_events(machine_cls: type[_GuardMixin], current_status: str) -> list[str]:
    """Event names that may fire from current_status, for status responses."""
    return machine_cls(current_status=current_status).get_allowed_events()
