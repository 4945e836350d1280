"""
Tier Pricing Engine
===================

Derives Good / Better / Best tier totals and deposits from a proposal's base
price.

    total[tier]   = round2(base_total * multiplier[tier])
    deposit[tier] = round2(total[tier] * deposit_percent / 100)

Rounding is half-up to the cent at each step.  The deposit is computed from
the *rounded* tier total, never from the unrounded product, so the deposit
shown to the customer matches the amount captured by the payment processor.

The engine is pure: no I/O, no database access.  Once a proposal is accepted
the result is persisted (``Proposal.tier_pricing``) and later readers use the
stored ``deposit_amount`` instead of recomputing.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Union

from quoteflow.core.errors import InvalidPricingInput
from quoteflow.models.proposal import PricingTier

Money = Union[Decimal, int, float, str]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TIER_MULTIPLIERS: dict[PricingTier, Decimal] = {
    PricingTier.GOOD: Decimal("0.85"),
    PricingTier.BETTER: Decimal("1.00"),
    PricingTier.BEST: Decimal("1.15"),
}

_CENT = Decimal("0.01")
_HUNDRED = Decimal("100")


# ---------------------------------------------------------------------------
# Result DTOs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TierAmounts:
    """Total and deposit for a single tier."""
    total: Decimal
    deposit: Decimal

    @property
    def balance(self) -> Decimal:
        return self.total - self.deposit


@dataclass(frozen=True)
class TierPricing:
    """Amounts for all three tiers, plus the inputs that produced them."""
    base_total: Decimal
    deposit_percent: Decimal
    good: TierAmounts
    better: TierAmounts
    best: TierAmounts

    def for_tier(self, tier: PricingTier | str) -> TierAmounts:
        return getattr(self, PricingTier(tier).value)

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe snapshot persisted on the proposal at accept time."""
        return {
            "base_total": str(self.base_total),
            "deposit_percent": str(self.deposit_percent),
            **{
                tier.value: {
                    "total": str(self.for_tier(tier).total),
                    "deposit": str(self.for_tier(tier).deposit),
                }
                for tier in PricingTier
            },
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def round2(value: Decimal) -> Decimal:
    """Round half-up to two decimal places."""
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Money) -> int:
    """Convert a currency amount to integer cents (half-up)."""
    value = _coerce(amount, "amount")
    return int((value * _HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _coerce(value: Money, field_name: str) -> Decimal:
    if isinstance(value, bool):
        raise InvalidPricingInput(f"{field_name} must be a number")
    try:
        # float -> str first so 0.1 stays 0.1 rather than its binary expansion
        number = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidPricingInput(
            f"{field_name} must be a number, got {value!r}"
        ) from exc

    if not number.is_finite():
        raise InvalidPricingInput(f"{field_name} must be finite, got {value!r}")
    if number < 0:
        raise InvalidPricingInput(f"{field_name} cannot be negative, got {value!r}")
    return number


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def compute_tier(
    base_total: Money,
    deposit_percent: Money,
    tier: PricingTier | str,
) -> TierAmounts:
    """Compute total and deposit for a single tier."""
    base = _coerce(base_total, "base_total")
    percent = _coerce(deposit_percent, "deposit_percent")
    if percent > _HUNDRED:
        raise InvalidPricingInput(
            f"deposit_percent must be between 0 and 100, got {deposit_percent!r}"
        )
    try:
        multiplier = TIER_MULTIPLIERS[PricingTier(tier)]
    except ValueError as exc:
        raise InvalidPricingInput(f"Unknown pricing tier {tier!r}") from exc

    total = round2(base * multiplier)
    deposit = round2(total * percent / _HUNDRED)
    return TierAmounts(total=total, deposit=deposit)


def compute_tiers(base_total: Money, deposit_percent: Money) -> TierPricing:
    """Compute Good / Better / Best totals and deposits.

    Args:
        base_total: The contractor's untiered price (the "better" tier).
        deposit_percent: Deposit percentage between 0 and 100.

    Returns:
        A ``TierPricing`` with one ``TierAmounts`` per tier.

    Raises:
        InvalidPricingInput: If either input is negative, NaN, infinite or
            not a number, or the percentage exceeds 100.
    """
    amounts = {
        tier: compute_tier(base_total, deposit_percent, tier)
        for tier in PricingTier
    }
    return TierPricing(
        base_total=round2(_coerce(base_total, "base_total")),
        deposit_percent=_coerce(deposit_percent, "deposit_percent"),
        good=amounts[PricingTier.GOOD],
        better=amounts[PricingTier.BETTER],
        best=amounts[PricingTier.BEST],
    )
