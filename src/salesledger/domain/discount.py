"""
Quantity-tiered discount policy.

The rate applied to a product line depends only on the total quantity of
that product in the sale:

    ========  ========
    quantity  discount
    ========  ========
    1 - 3     0%
    4 - 9     10%
    10 - 20   20%
    > 20      not allowed
    ========  ========
"""

from dataclasses import dataclass
from decimal import Decimal

from salesledger.exceptions import DiscountPolicyViolation

NO_DISCOUNT = Decimal("0.00")


@dataclass(frozen=True)
class DiscountTier:
    """A quantity bracket and the rate it earns (bounds inclusive)."""

    min_quantity: int
    max_quantity: int
    rate: Decimal


DEFAULT_TIERS: tuple[DiscountTier, ...] = (
    DiscountTier(0, 3, NO_DISCOUNT),
    DiscountTier(4, 9, Decimal("0.10")),
    DiscountTier(10, 20, Decimal("0.20")),
)


class DiscountPolicy:
    """
    Maps the cumulative quantity of one product to a discount rate.

    Callers must check allows() before relying on calculate() not raising.

    Example:
        >>> policy = DiscountPolicy()
        >>> policy.calculate(4)
        Decimal('0.10')
        >>> policy.allows(21)
        False
    """

    def __init__(self, tiers: tuple[DiscountTier, ...] = DEFAULT_TIERS) -> None:
        if not tiers:
            raise ValueError("tiers must not be empty")
        self._tiers = tuple(sorted(tiers, key=lambda t: t.min_quantity))
        self._max_quantity = self._tiers[-1].max_quantity

    @property
    def max_quantity(self) -> int:
        """Largest quantity of one product a sale may hold."""
        return self._max_quantity

    def allows(self, total_quantity: int) -> bool:
        """Return True if total_quantity is within the policy limit."""
        return total_quantity <= self._max_quantity

    def calculate(self, total_quantity: int) -> Decimal:
        """
        Return the discount rate for a product's total quantity.

        Args:
            total_quantity: Consolidated quantity of a single product

        Returns:
            Discount rate as a fraction (e.g., Decimal("0.10") for 10%)

        Raises:
            ValueError: If total_quantity is negative
            DiscountPolicyViolation: If total_quantity exceeds the limit
        """
        if total_quantity < 0:
            raise ValueError(f"total_quantity must be >= 0, got {total_quantity}")
        if not self.allows(total_quantity):
            raise DiscountPolicyViolation(total_quantity, self._max_quantity)
        for tier in self._tiers:
            if tier.min_quantity <= total_quantity <= tier.max_quantity:
                return tier.rate
        return NO_DISCOUNT


__all__ = ["DiscountPolicy", "DiscountTier", "DEFAULT_TIERS", "NO_DISCOUNT"]
