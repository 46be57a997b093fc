"""
Result type for operations whose failures are part of the contract.

Validation and business-rule failures are returned to callers as values
instead of being raised. Exceptions stay reserved for infrastructure errors
such as exhausted concurrency retries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from salesledger.events.base import DomainEvent

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Outcome of an operation: either a value or a human-readable error.

    Mutating aggregate operations also carry the events they produced, so
    the events of a single commit are an explicit part of the return value.

    Attributes:
        is_success: True if the operation succeeded
        value: Value produced on success (may be None)
        error: Reason for the failure, None on success
        events: Domain events produced by the operation

    Example:
        >>> result = sale.add_item(product_id, 3, Decimal("100"))
        >>> if result.is_failure:
        ...     return Result.failure(result.error)
        >>> result.events
        (SaleModified(...),)
    """

    is_success: bool
    value: T | None = None
    error: str | None = None
    events: tuple[DomainEvent, ...] = field(default=())

    @classmethod
    def success(
        cls,
        value: T | None = None,
        events: tuple[DomainEvent, ...] = (),
    ) -> Result[T]:
        return cls(is_success=True, value=value, events=events)

    @classmethod
    def failure(cls, error: str) -> Result[T]:
        if not error:
            raise ValueError("A failure needs an error message")
        return cls(is_success=False, error=error)

    @property
    def is_failure(self) -> bool:
        return not self.is_success

    def unwrap(self) -> T | None:
        """
        Return the value of a successful result.

        Raises:
            ValueError: If the result is a failure
        """
        if not self.is_success:
            raise ValueError(f"Cannot unwrap a failed result: {self.error}")
        return self.value


__all__ = ["Result"]
