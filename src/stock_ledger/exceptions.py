"""Exception hierarchy shared by the business logic, ledger and count layers."""

from __future__ import annotations

from typing import Iterable, Optional


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced batch, location, count, or record is unknown."""


class BatchFrozen(BusinessRuleViolation):
    """Raised when a mutation targets a batch locked by an open physical count."""

    def __init__(self, batch_id: str, count_id: str, count_name: Optional[str] = None) -> None:
        self.batch_id = batch_id
        self.count_id = count_id
        self.count_name = count_name
        label = f"'{count_name}' ({count_id})" if count_name else f"'{count_id}'"
        super().__init__(f"Batch '{batch_id}' is frozen by open physical count {label}")


class MissingVarianceReason(BusinessRuleViolation):
    """Raised when approval is attempted while variances lack a reason code."""

    def __init__(self, count_id: str, batch_ids: Iterable[str]) -> None:
        self.count_id = count_id
        self.batch_ids = tuple(batch_ids)
        super().__init__(
            f"Count '{count_id}' has variances without a reason code: {', '.join(self.batch_ids)}"
        )


class EmptyLocationCount(BusinessRuleViolation):
    """Raised when a count is requested for a location holding no batches."""

    def __init__(self, location_id: str) -> None:
        self.location_id = location_id
        super().__init__(f"Cannot start a physical count for empty location '{location_id}'")


class InvalidTransition(BusinessRuleViolation):
    """Raised when a count cannot move from its current status to the target."""

    def __init__(self, count_id: str, current: str, target: str) -> None:
        self.count_id = count_id
        self.current = current
        self.target = target
        super().__init__(f"Count '{count_id}' cannot move from '{current}' to '{target}'")


class InsufficientStock(BusinessRuleViolation):
    """Raised when an outbound movement would drive a batch below zero."""

    def __init__(self, batch_id: str, available: int, requested: int) -> None:
        self.batch_id = batch_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Batch '{batch_id}' holds {available} units, cannot remove {requested}"
        )


class PurgeBlocked(BusinessRuleViolation):
    """Raised when purging a record would corrupt dependent history."""


class UnresolvableBatchReference(LookupError):
    """Raised by ledger resolution when a line item names an unknown batch.

    The ledger reconstructor catches this, logs it and skips the line, so it
    never escapes :func:`stock_ledger.ledger.build_ledger`.
    """

    def __init__(self, batch_id: str, record_id: str) -> None:
        self.batch_id = batch_id
        self.record_id = record_id
        super().__init__(f"Record '{record_id}' references unknown batch '{batch_id}'")


class PartialCommitDetected(RuntimeError):
    """Raised when an atomic unit could not be fully committed or rolled back.

    This is an integrity fault: the workbook may hold a mix of old and new
    values and needs operator intervention before further writes.
    """


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "BatchFrozen",
    "MissingVarianceReason",
    "EmptyLocationCount",
    "InvalidTransition",
    "InsufficientStock",
    "PurgeBlocked",
    "UnresolvableBatchReference",
    "PartialCommitDetected",
]
