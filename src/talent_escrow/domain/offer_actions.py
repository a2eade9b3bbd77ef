"""Responses a party can give to a pending offer.

A closed set of variants; OfferService.respond matches on the concrete
type and rejects anything else before touching the state machine.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class AcceptAction:
    """Accept the offer. With a payment method, an escrow hold is placed right away."""

    payment_method_ref: str | None = None


@dataclass(frozen=True)
class DeclineAction:
    reason: str | None = None


@dataclass(frozen=True)
class CounterOfferTerms:
    """Revised terms proposed by a counter-offer.

    Omitted duration/terms are inherited from the offer being countered.
    """

    rate: Decimal
    reason: str
    duration_days: int | None = None
    terms: str | None = None


@dataclass(frozen=True)
class CounterAction:
    counter_offer: CounterOfferTerms


OfferResponse = AcceptAction | DeclineAction | CounterAction
