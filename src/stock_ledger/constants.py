"""Enumerations shared across the stock ledger modules.

Centralises domain constants so that the data access layer (DAL), the
business logic layer (BLL), the ledger reconstructor and the count workflow
rely on a single source of truth for status values and sheet names.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class TransactionKind(str, Enum):
    """Enumerate the seven transaction streams kept in the log store."""

    RECEIVE = "RECEIVE"
    DISPENSE = "DISPENSE"
    TRANSFER = "TRANSFER"
    WRITE_OFF = "WRITE_OFF"
    RETURN = "RETURN"
    INTERNAL_RETURN = "INTERNAL_RETURN"
    ADJUSTMENT = "ADJUSTMENT"


class MovementKind(str, Enum):
    """Enumerate the labels carried by reconstructed ledger rows."""

    RECEIVE = "Receiving"
    DISPENSE = "Dispense"
    TRANSFER_OUT = "Transfer Out"
    TRANSFER_IN = "Transfer In"
    WRITE_OFF = "Write-Off"
    RETURN = "Return"
    INTERNAL_RETURN = "Internal Return"
    ADJUSTMENT = "Adjustment"
    COUNT_VARIANCE = "Count Adjustment"


class TransferStatus(str, Enum):
    """Acknowledgement sub-state of a transfer."""

    PENDING = "Pending"
    RECEIVED = "Received"
    DISCREPANCY = "Discrepancy"


class CountStatus(str, Enum):
    """Lifecycle states of a physical count."""

    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    PENDING_REVIEW = "Pending Review"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class VarianceReason(str, Enum):
    """Reason codes accepted for a counted-vs-system discrepancy."""

    DATA_ENTRY_ERROR = "Data Entry Error"
    UNDOCUMENTED_DISPENSE = "Undocumented Dispense"
    UNDOCUMENTED_RECEIVE = "Undocumented Receive"
    FOUND_STOCK = "Found Stock"
    MISPLACED = "Misplaced Item"
    THEFT = "Suspected Theft"
    OTHER = "Other"


class AdjustmentReason(str, Enum):
    """Reason codes for manual stock adjustments."""

    DATA_ENTRY_CORRECTION = "Data Entry Correction"
    STOCK_SPOILAGE = "Stock Spoilage"
    DONATION_OR_SAMPLE = "Donation / Sample"
    INVENTORY_RECOUNT = "Inventory Recount"
    STOCK_REDISCOVERY = "Stock Rediscovery"
    UNACCOUNTED_LOSS = "Unaccounted Loss"
    OTHER = "Other"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    LOCATIONS = "Locations"
    BATCHES = "Batches"
    RECEIVE_LOG = "ReceiveLog"
    DISPENSE_LOG = "DispenseLog"
    TRANSFER_LOG = "TransferLog"
    WRITE_OFF_LOG = "WriteOffLog"
    RETURN_LOG = "ReturnLog"
    INTERNAL_RETURN_LOG = "InternalReturnLog"
    ADJUSTMENT_LOG = "AdjustmentLog"
    PHYSICAL_COUNTS = "PhysicalCounts"
    PHYSICAL_COUNT_ITEMS = "PhysicalCountItems"


# Counts in these states hold their batches frozen.
ACTIVE_COUNT_STATUSES: frozenset[CountStatus] = frozenset(
    {CountStatus.PENDING, CountStatus.IN_PROGRESS, CountStatus.PENDING_REVIEW}
)

TERMINAL_COUNT_STATUSES: frozenset[CountStatus] = frozenset(
    {CountStatus.COMPLETED, CountStatus.CANCELLED}
)

# Streams sharing the plain line-item layout, keyed to their worksheet.
LINE_SHEETS: dict[TransactionKind, SheetName] = {
    TransactionKind.RECEIVE: SheetName.RECEIVE_LOG,
    TransactionKind.DISPENSE: SheetName.DISPENSE_LOG,
    TransactionKind.WRITE_OFF: SheetName.WRITE_OFF_LOG,
    TransactionKind.RETURN: SheetName.RETURN_LOG,
    TransactionKind.INTERNAL_RETURN: SheetName.INTERNAL_RETURN_LOG,
}

INBOUND_KINDS: frozenset[TransactionKind] = frozenset(
    {TransactionKind.RECEIVE, TransactionKind.INTERNAL_RETURN}
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "TransactionKind",
    "MovementKind",
    "TransferStatus",
    "CountStatus",
    "VarianceReason",
    "AdjustmentReason",
    "SheetName",
    "ACTIVE_COUNT_STATUSES",
    "TERMINAL_COUNT_STATUSES",
    "LINE_SHEETS",
    "INBOUND_KINDS",
]
