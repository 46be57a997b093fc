"""Sale aggregate and discount policy."""

from salesledger.domain.discount import DEFAULT_TIERS, DiscountPolicy, DiscountTier
from salesledger.domain.sale import (
    DEFAULT_CANCELLATION_REASON,
    MAX_UNIT_PRICE,
    Sale,
    SaleItem,
    SaleMemento,
    SaleStatus,
)

__all__ = [
    "DiscountPolicy",
    "DiscountTier",
    "DEFAULT_TIERS",
    "Sale",
    "SaleItem",
    "SaleMemento",
    "SaleStatus",
    "MAX_UNIT_PRICE",
    "DEFAULT_CANCELLATION_REASON",
]
