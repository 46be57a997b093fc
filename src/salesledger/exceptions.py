"""Library exceptions for the salesledger package."""

from uuid import UUID


class SalesLedgerError(Exception):
    """Base exception for salesledger library."""

    pass


class InvalidSaleError(SalesLedgerError, ValueError):
    """Raised when a sale cannot be constructed from the given arguments."""

    pass


class DiscountPolicyViolation(SalesLedgerError):
    """Raised when a quantity falls outside every discount tier."""

    def __init__(self, total_quantity: int, max_quantity: int) -> None:
        self.total_quantity = total_quantity
        self.max_quantity = max_quantity
        super().__init__(
            f"Quantity {total_quantity} exceeds the maximum of {max_quantity} "
            "units of the same product"
        )


class SaleNotFoundError(SalesLedgerError):
    """Raised when a sale cannot be found."""

    def __init__(self, sale_id: UUID) -> None:
        self.sale_id = sale_id
        super().__init__(f"Sale not found: {sale_id}")


class ConcurrencyConflictError(SalesLedgerError):
    """
    Raised when a write loses an optimistic concurrency race.

    Covers both a compare-and-swap that matched no row (stale version) and a
    unique-constraint violation on an allocated key. Conflicts are transient
    and are retried by the retry strategy.
    """

    def __init__(
        self,
        resource: str,
        key: object,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        self.resource = resource
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version
        detail = ""
        if expected_version is not None:
            detail = f": expected version {expected_version}"
            if actual_version is not None:
                detail += f", but current version is {actual_version}"
        super().__init__(f"Concurrency conflict on {resource} {key}{detail}")


class ConcurrencyExhaustedError(SalesLedgerError):
    """Raised when a conflicting write still fails after every retry."""

    def __init__(self, operation: str, attempts: int, last_error: Exception | None) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Operation '{operation}' failed after {attempts} attempts "
            f"due to concurrent modifications: {last_error}"
        )


class SerializationError(SalesLedgerError):
    """Raised when event serialization or deserialization fails."""

    def __init__(self, event_type: str, message: str) -> None:
        self.event_type = event_type
        super().__init__(f"Serialization error for {event_type}: {message}")


__all__ = [
    "SalesLedgerError",
    "InvalidSaleError",
    "DiscountPolicyViolation",
    "SaleNotFoundError",
    "ConcurrencyConflictError",
    "ConcurrencyExhaustedError",
    "SerializationError",
]
