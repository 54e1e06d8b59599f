"""Business logic layer for the stock ledger.

This module owns the runtime context, the cached views over the Stock Batch
Store and the Transaction Log Store, and every batch-mutating workflow
(receive, dispense, transfer and its acknowledgement, write-off, return,
internal return, adjustment, purge). Each mutation consults the Freeze Index
inside the same atomic unit that performs its writes, so no check/write race
window exists between the two.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, ClassVar, Collection, Dict, Iterator, List, Mapping, Optional, Sequence, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    INBOUND_KINDS,
    LINE_SHEETS,
    AdjustmentReason,
    SheetName,
    TransactionKind,
    TransferStatus,
)
from .data_manager import (
    AdjustmentRecord,
    BatchRow,
    CountItemRow,
    CountRow,
    LineItem,
    LineRecord,
    LocationRow,
    TransferLine,
    TransferRecord,
)
from .exceptions import (
    BusinessRuleViolation,
    InsufficientStock,
    MissingReferenceError,
    PartialCommitDetected,
    PurgeBlocked,
)
from .freeze_index import FreezeIndex


TransactionRecord = Union[LineRecord, TransferRecord, AdjustmentRecord]

RECORD_ID_PREFIXES: Dict[TransactionKind, str] = {
    TransactionKind.RECEIVE: "RCV",
    TransactionKind.DISPENSE: "DSP",
    TransactionKind.TRANSFER: "TRF",
    TransactionKind.WRITE_OFF: "WOF",
    TransactionKind.RETURN: "RTN",
    TransactionKind.INTERNAL_RETURN: "IRT",
    TransactionKind.ADJUSTMENT: "ADJ",
}


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class ReceiveLine:
    """One received lot; becomes a new stock batch."""

    item_id: str
    quantity: int
    lot_number: Optional[str] = None
    expiry_date: Optional[str] = None


@dataclass(frozen=True)
class ReceiveCommand:
    """User intent for receiving stock into a storage location."""

    facility_id: str
    location_id: str
    user_id: str
    lines: Sequence[ReceiveLine]
    reference: Optional[str] = None
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class LineCommand:
    """User intent for a plain line-item movement against existing batches."""

    kind: ClassVar[TransactionKind]

    facility_id: str
    user_id: str
    lines: Sequence[LineItem]
    reference: Optional[str] = None
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class DispenseCommand(LineCommand):
    """User intent for dispensing stock to a patient or ward."""

    kind: ClassVar[TransactionKind] = TransactionKind.DISPENSE


@dataclass(frozen=True)
class WriteOffCommand(LineCommand):
    """User intent for writing off wasted or stolen stock."""

    kind: ClassVar[TransactionKind] = TransactionKind.WRITE_OFF


@dataclass(frozen=True)
class ReturnCommand(LineCommand):
    """User intent for returning stock to a supplier."""

    kind: ClassVar[TransactionKind] = TransactionKind.RETURN


@dataclass(frozen=True)
class InternalReturnCommand(LineCommand):
    """User intent for taking stock back from a patient or ward."""

    kind: ClassVar[TransactionKind] = TransactionKind.INTERNAL_RETURN


@dataclass(frozen=True)
class TransferCommand:
    """User intent for sending stock to another facility."""

    from_facility_id: str
    to_facility_id: str
    to_location_id: str
    user_id: str
    lines: Sequence[LineItem]
    reference: Optional[str] = None
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class AcknowledgeTransferCommand:
    """Destination-side confirmation of a transfer.

    ``received`` maps source batch ids to the quantity actually received.
    When omitted every line is taken as received in full.
    """

    record_id: str
    user_id: str
    received: Optional[Mapping[str, int]] = None
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class AdjustmentCommand:
    """User intent for setting a batch to a corrected quantity."""

    batch_id: str
    to_quantity: int
    reason: AdjustmentReason
    user_id: str
    reference: Optional[str] = None
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


def resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are simple dictionaries that store precomputed query results so
    repeated reads do not re-scan the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored so callers can request targeted invalidation
    freely.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_locations_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "locations")
    if "all" not in bucket:
        all_locations = list(data_manager.iter_locations(context.workbook))
        bucket["all"] = all_locations
        bucket["by_id"] = {location.location_id: location for location in all_locations}
    return bucket


def _ensure_batches_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the batch cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` batches in sheet order and a
            ``by_id`` lookup dictionary.
    """

    bucket = _get_cache_bucket(context, "batches")
    if "all" not in bucket:
        all_batches = list(data_manager.iter_batches(context.workbook))
        bucket["all"] = all_batches
        bucket["by_id"] = {batch.batch_id: batch for batch in all_batches}
        log.debug("Populated batches cache with %d entries", len(all_batches))
    return bucket


def _ensure_records_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the transaction-log cache bucket on demand.

    The bucket keeps one list per stream, keyed by :class:`TransactionKind`,
    plus a ``by_id`` dictionary spanning every stream.
    """

    bucket = _get_cache_bucket(context, "records")
    if "by_kind" not in bucket:
        by_kind: Dict[TransactionKind, List[TransactionRecord]] = {}
        for kind in LINE_SHEETS:
            by_kind[kind] = list(data_manager.iter_line_records(context.workbook, kind))
        by_kind[TransactionKind.TRANSFER] = list(data_manager.iter_transfers(context.workbook))
        by_kind[TransactionKind.ADJUSTMENT] = list(data_manager.iter_adjustments(context.workbook))
        bucket["by_kind"] = by_kind
        bucket["by_id"] = {
            record.record_id: record for records in by_kind.values() for record in records
        }
        log.debug(
            "Populated records cache with %d records across %d streams",
            len(bucket["by_id"]),
            len(by_kind),
        )
    return bucket


def _ensure_counts_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "counts")
    if "all" not in bucket:
        all_counts = list(data_manager.iter_counts(context.workbook))
        all_items = list(data_manager.iter_count_items(context.workbook))
        items_by_count: Dict[str, List[CountItemRow]] = {}
        for item in all_items:
            items_by_count.setdefault(item.count_id, []).append(item)
        bucket["all"] = all_counts
        bucket["by_id"] = {count.count_id: count for count in all_counts}
        bucket["items"] = all_items
        bucket["items_by_count"] = items_by_count
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Context bundling settings, the workbook handle and an
            empty cache store.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


@contextmanager
def atomic(context: RuntimeContext, *sheet_names: str) -> Iterator[None]:
    """Run a block of workbook writes as one all-or-nothing unit.

    The context lock is held for the whole block, which makes the block a
    critical section with respect to every other atomic unit on the same
    context. The named sheets (all managed sheets when none are named) are
    snapshotted first. If the block raises, the sheets are restored from the
    snapshot, every cache bucket including the Freeze Index is discarded, and
    the original exception propagates.

    Raises:
        PartialCommitDetected: If the rollback itself fails or the restored
            sheets do not match the snapshot.
    """

    names = sheet_names or tuple(data_manager.SHEET_COLUMNS)
    with context.lock:
        snapshot = data_manager.capture_sheets(context.workbook, names)
        try:
            yield
        except BaseException as exc:
            _rollback(context, snapshot, exc)
            raise


def _rollback(context: RuntimeContext, snapshot: data_manager.SheetSnapshot, cause: BaseException) -> None:
    context._cache.clear()
    try:
        data_manager.restore_sheets(context.workbook, snapshot)
        restored = data_manager.capture_sheets(context.workbook, snapshot.keys())
    except Exception as restore_error:
        log.critical("Rollback failed after '%s': %s", cause, restore_error)
        raise PartialCommitDetected(
            f"Rollback failed after '{cause}'; workbook may be partially updated"
        ) from restore_error
    if restored != snapshot:
        log.critical("Rollback after '%s' did not reproduce the pre-write snapshot", cause)
        raise PartialCommitDetected(
            f"Rollback after '{cause}' left sheets {sorted(snapshot)} inconsistent"
        ) from cause
    log.warning("Rolled back %d sheet(s) after failure: %s", len(snapshot), cause)


def get_freeze_index(context: RuntimeContext) -> FreezeIndex:
    """Return the context's Freeze Index, rebuilding it from counts if needed."""

    bucket = _get_cache_bucket(context, "freeze")
    if "index" not in bucket:
        counts = _ensure_counts_cache(context)
        bucket["index"] = FreezeIndex.from_counts(counts["all"], counts["items"])
    return bucket["index"]


def is_frozen(context: RuntimeContext, batch_id: str) -> bool:
    """Return ``True`` when ``batch_id`` is locked by an open physical count."""

    return get_freeze_index(context).is_frozen(batch_id)


def require_unfrozen(context: RuntimeContext, batch_ids: Collection[str]) -> None:
    """Reject with :class:`BatchFrozen` if any of ``batch_ids`` is frozen."""

    get_freeze_index(context).require_unfrozen(batch_ids)


def list_locations(context: RuntimeContext) -> List[LocationRow]:
    return list(_ensure_locations_cache(context)["all"])


def get_location(context: RuntimeContext, location_id: str) -> LocationRow:
    """Resolve a storage location by identifier.

    Raises:
        MissingReferenceError: If the location is unknown.
    """
    try:
        return _ensure_locations_cache(context)["by_id"][location_id]
    except KeyError as exc:
        log.warning("Location lookup failed for id '%s'", location_id)
        raise MissingReferenceError(f"Unknown location id: {location_id}") from exc


def list_batches(context: RuntimeContext, *, location_id: Optional[str] = None) -> List[BatchRow]:
    """Return cached batches, optionally restricted to one storage location."""

    batches = _ensure_batches_cache(context)["all"]
    if location_id is None:
        return list(batches)
    return [batch for batch in batches if batch.location_id == location_id]


def get_batch(context: RuntimeContext, batch_id: str) -> BatchRow:
    """Resolve a stock batch by its identifier.

    Raises:
        MissingReferenceError: If ``batch_id`` is absent from the workbook.
    """
    try:
        return _ensure_batches_cache(context)["by_id"][batch_id]
    except KeyError as exc:
        log.warning("Batch lookup failed for id '%s'", batch_id)
        raise MissingReferenceError(f"Unknown batch id: {batch_id}") from exc


def find_batch(context: RuntimeContext, batch_id: str) -> Optional[BatchRow]:
    """Return the batch for ``batch_id`` or ``None`` without logging."""

    return _ensure_batches_cache(context)["by_id"].get(batch_id)


def list_records(context: RuntimeContext, kind: TransactionKind) -> List[TransactionRecord]:
    """Return every record of one stream in sheet (append) order."""

    return list(_ensure_records_cache(context)["by_kind"][kind])


def get_record(context: RuntimeContext, record_id: str) -> TransactionRecord:
    """Retrieve any transaction record by its identifier.

    Raises:
        MissingReferenceError: If no stream holds ``record_id``.
    """
    try:
        return _ensure_records_cache(context)["by_id"][record_id]
    except KeyError as exc:
        log.warning("Record lookup failed for id '%s'", record_id)
        raise MissingReferenceError(f"Unknown record id: {record_id}") from exc


def list_counts(context: RuntimeContext) -> List[CountRow]:
    return list(_ensure_counts_cache(context)["all"])


def get_count(context: RuntimeContext, count_id: str) -> CountRow:
    """Resolve a physical count by identifier.

    Raises:
        MissingReferenceError: If the count is unknown.
    """
    try:
        return _ensure_counts_cache(context)["by_id"][count_id]
    except KeyError as exc:
        log.warning("Count lookup failed for id '%s'", count_id)
        raise MissingReferenceError(f"Unknown count id: {count_id}") from exc


def get_count_items(context: RuntimeContext, count_id: str) -> List[CountItemRow]:
    return list(_ensure_counts_cache(context)["items_by_count"].get(count_id, []))


def calculate_stock_by_item(context: RuntimeContext, *, location_id: Optional[str] = None) -> Dict[str, int]:
    """Sum current batch quantities per item-catalog id.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        location_id (str | None): Restrict the totals to one location.

    Returns:
        dict[str, int]: ``item_id`` mapped to the on-hand quantity.
    """
    totals: Dict[str, int] = {}
    for batch in list_batches(context, location_id=location_id):
        totals[batch.item_id] = totals.get(batch.item_id, 0) + batch.quantity
    log.debug("Calculated stock for %d items", len(totals))
    return totals


def generate_id(prefix: str, *, when: Optional[datetime] = None, taken: Collection[str] = ()) -> str:
    """Generate a sortable identifier from a UTC timestamp.

    The identifier is ``{prefix}{YYYYMMDDHHMMSSffffff}``; when that value is
    already in ``taken`` a ``-2``, ``-3``... suffix is appended until it is
    unique.
    """
    when = when or resolve_timestamp(None)
    base = f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"
    candidate = base
    suffix = 2
    while candidate in taken:
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is a strictly positive integer.

    Raises:
        ValueError: If ``quantity`` is not an integer or is zero or negative.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be a whole number greater than zero")


def require_nonnegative_quantity(quantity: int) -> None:
    """Validate that a quantity is a non-negative integer.

    Raises:
        ValueError: If ``quantity`` is not an integer or is negative.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be a whole number of zero or more")


def _facility_of_batch(context: RuntimeContext, batch: BatchRow) -> str:
    return get_location(context, batch.location_id).facility_id


def _taken_record_ids(context: RuntimeContext) -> Collection[str]:
    return _ensure_records_cache(context)["by_id"].keys()


def add_location(context: RuntimeContext, *, location_id: str, facility_id: str, location_name: str) -> LocationRow:
    """Register a storage location belonging to ``facility_id``.

    Raises:
        BusinessRuleViolation: If the location id is already registered.
    """
    with atomic(context, SheetName.LOCATIONS.value):
        if location_id in _ensure_locations_cache(context)["by_id"]:
            raise BusinessRuleViolation(f"Location '{location_id}' already exists")
        record = LocationRow(location_id=location_id, facility_id=facility_id, location_name=location_name)
        data_manager.append_location(context.workbook, record)
        _invalidate_cache(context, "locations")
    log.info("Registered location '%s' in facility '%s'", location_id, facility_id)
    return record


def record_receive(context: RuntimeContext, command: ReceiveCommand) -> LineRecord:
    """Receive stock into a location, creating one batch per line.

    Returns:
        LineRecord: The appended receive record; its lines reference the newly
            created batch ids.

    Raises:
        MissingReferenceError: If the location is unknown.
        BusinessRuleViolation: If the location belongs to another facility.
        ValueError: If a quantity is not a positive integer.
    """
    if not command.lines:
        raise ValueError("A receipt needs at least one line")
    for line in command.lines:
        require_positive_quantity(line.quantity)

    timestamp = resolve_timestamp(command.timestamp)
    with atomic(context, SheetName.BATCHES.value, SheetName.RECEIVE_LOG.value):
        location = get_location(context, command.location_id)
        if location.facility_id != command.facility_id:
            raise BusinessRuleViolation(
                f"Location '{location.location_id}' belongs to facility '{location.facility_id}', "
                f"not '{command.facility_id}'"
            )
        record_id = generate_id(
            RECORD_ID_PREFIXES[TransactionKind.RECEIVE], when=timestamp, taken=_taken_record_ids(context)
        )
        taken_batches = set(_ensure_batches_cache(context)["by_id"])
        lines: List[LineItem] = []
        for line in command.lines:
            batch_id = generate_id("B", when=timestamp, taken=taken_batches)
            taken_batches.add(batch_id)
            data_manager.append_batch(
                context.workbook,
                BatchRow(
                    batch_id=batch_id,
                    item_id=line.item_id,
                    location_id=location.location_id,
                    quantity=line.quantity,
                    lot_number=line.lot_number,
                    expiry_date=line.expiry_date,
                    receive_record_id=record_id,
                ),
            )
            lines.append(LineItem(batch_id=batch_id, quantity=line.quantity))
        record = LineRecord(
            record_id=record_id,
            kind=TransactionKind.RECEIVE,
            reference=command.reference or record_id,
            timestamp=timestamp,
            facility_id=command.facility_id,
            user_id=command.user_id,
            lines=tuple(lines),
            notes=command.notes,
        )
        data_manager.append_line_record(context.workbook, record)
        _invalidate_cache(context, "batches", "records")
    log.info("Recorded RECEIVE '%s' into '%s' (%d batch(es))", record_id, command.location_id, len(lines))
    return record


def _apply_line_command(context: RuntimeContext, command: LineCommand) -> LineRecord:
    """Validate, freeze-check and apply a plain line-item movement."""

    kind = command.kind
    if not command.lines:
        raise ValueError(f"A {kind.value} needs at least one line")
    for line in command.lines:
        require_positive_quantity(line.quantity)

    inbound = kind in INBOUND_KINDS
    timestamp = resolve_timestamp(command.timestamp)
    with atomic(context, SheetName.BATCHES.value, LINE_SHEETS[kind].value):
        require_unfrozen(context, [line.batch_id for line in command.lines])

        deltas: Dict[str, int] = {}
        for line in command.lines:
            batch = get_batch(context, line.batch_id)
            if _facility_of_batch(context, batch) != command.facility_id:
                raise BusinessRuleViolation(
                    f"Batch '{batch.batch_id}' is not stored in facility '{command.facility_id}'"
                )
            deltas[batch.batch_id] = deltas.get(batch.batch_id, 0) + (line.quantity if inbound else -line.quantity)

        for batch_id, delta in deltas.items():
            batch = get_batch(context, batch_id)
            if batch.quantity + delta < 0:
                raise InsufficientStock(batch_id, batch.quantity, -delta)

        record_id = generate_id(
            RECORD_ID_PREFIXES[kind], when=timestamp, taken=_taken_record_ids(context)
        )
        record = LineRecord(
            record_id=record_id,
            kind=kind,
            reference=command.reference or record_id,
            timestamp=timestamp,
            facility_id=command.facility_id,
            user_id=command.user_id,
            lines=tuple(command.lines),
            notes=command.notes,
        )
        for batch_id, delta in deltas.items():
            data_manager.set_batch_quantity(context.workbook, batch_id, get_batch(context, batch_id).quantity + delta)
        data_manager.append_line_record(context.workbook, record)
        _invalidate_cache(context, "batches", "records")
    log.info("Recorded %s '%s' touching %d batch(es)", kind.value, record_id, len(deltas))
    return record


def record_dispense(context: RuntimeContext, command: DispenseCommand) -> LineRecord:
    """Dispense stock; outbound, rejected for frozen or short batches."""

    return _apply_line_command(context, command)


def record_write_off(context: RuntimeContext, command: WriteOffCommand) -> LineRecord:
    """Write off stock; outbound, rejected for frozen or short batches."""

    return _apply_line_command(context, command)


def record_return(context: RuntimeContext, command: ReturnCommand) -> LineRecord:
    """Return stock to a supplier; outbound."""

    return _apply_line_command(context, command)


def record_internal_return(context: RuntimeContext, command: InternalReturnCommand) -> LineRecord:
    """Take stock back from a patient or ward; inbound."""

    return _apply_line_command(context, command)


def record_transfer(context: RuntimeContext, command: TransferCommand) -> TransferRecord:
    """Send stock to another facility.

    Source batches are decremented immediately; the destination receives
    nothing until :func:`acknowledge_transfer`.

    Raises:
        BatchFrozen: If a source batch is locked by an open count.
        InsufficientStock: If a source batch holds less than requested.
        BusinessRuleViolation: If source and destination facility coincide or
            the destination location belongs to another facility.
    """
    if not command.lines:
        raise ValueError("A transfer needs at least one line")
    for line in command.lines:
        require_positive_quantity(line.quantity)
    if command.from_facility_id == command.to_facility_id:
        raise BusinessRuleViolation("Transfers must target a different facility")

    timestamp = resolve_timestamp(command.timestamp)
    with atomic(context, SheetName.BATCHES.value, SheetName.TRANSFER_LOG.value):
        destination = get_location(context, command.to_location_id)
        if destination.facility_id != command.to_facility_id:
            raise BusinessRuleViolation(
                f"Location '{destination.location_id}' is not in facility '{command.to_facility_id}'"
            )
        require_unfrozen(context, [line.batch_id for line in command.lines])

        deltas: Dict[str, int] = {}
        for line in command.lines:
            batch = get_batch(context, line.batch_id)
            if _facility_of_batch(context, batch) != command.from_facility_id:
                raise BusinessRuleViolation(
                    f"Batch '{batch.batch_id}' is not stored in facility '{command.from_facility_id}'"
                )
            deltas[batch.batch_id] = deltas.get(batch.batch_id, 0) + line.quantity
        for batch_id, requested in deltas.items():
            batch = get_batch(context, batch_id)
            if requested > batch.quantity:
                raise InsufficientStock(batch_id, batch.quantity, requested)

        record_id = generate_id(
            RECORD_ID_PREFIXES[TransactionKind.TRANSFER], when=timestamp, taken=_taken_record_ids(context)
        )
        record = TransferRecord(
            record_id=record_id,
            reference=command.reference or record_id,
            timestamp=timestamp,
            from_facility_id=command.from_facility_id,
            to_facility_id=command.to_facility_id,
            to_location_id=command.to_location_id,
            user_id=command.user_id,
            lines=tuple(TransferLine(batch_id=line.batch_id, quantity=line.quantity) for line in command.lines),
            status=TransferStatus.PENDING,
            notes=command.notes,
        )
        for batch_id, requested in deltas.items():
            data_manager.set_batch_quantity(context.workbook, batch_id, get_batch(context, batch_id).quantity - requested)
        data_manager.append_transfer(context.workbook, record)
        _invalidate_cache(context, "batches", "records")
    log.info(
        "Recorded TRANSFER '%s' from '%s' to '%s'",
        record_id,
        command.from_facility_id,
        command.to_facility_id,
    )
    return record


def _find_destination_batch(context: RuntimeContext, source: BatchRow, location_id: str) -> Optional[BatchRow]:
    for batch in list_batches(context, location_id=location_id):
        if (
            batch.item_id == source.item_id
            and batch.lot_number == source.lot_number
            and batch.expiry_date == source.expiry_date
        ):
            return batch
    return None


def acknowledge_transfer(context: RuntimeContext, command: AcknowledgeTransferCommand) -> TransferRecord:
    """Confirm receipt of a pending transfer at its destination.

    Received stock merges into an existing destination batch with the same
    item, lot and expiry, or becomes a new batch in the destination location.
    Any line whose received quantity differs from the sent quantity marks the
    whole transfer as ``Discrepancy``.

    Raises:
        BusinessRuleViolation: If the transfer is already acknowledged, the
            initiator tries to acknowledge it, or ``received`` names a batch
            that is not part of the transfer.
        BatchFrozen: If the destination batch to merge into is frozen.
    """
    timestamp = resolve_timestamp(command.timestamp)
    with atomic(context, SheetName.BATCHES.value, SheetName.TRANSFER_LOG.value):
        record = get_record(context, command.record_id)
        if not isinstance(record, TransferRecord):
            raise BusinessRuleViolation(f"Record '{command.record_id}' is not a transfer")
        if record.status != TransferStatus.PENDING:
            raise BusinessRuleViolation(f"Transfer '{record.record_id}' is already {record.status.value}")
        if command.user_id == record.user_id:
            raise BusinessRuleViolation("The initiator of a transfer cannot acknowledge it")

        received = dict(command.received) if command.received is not None else {}
        unknown = set(received) - {line.batch_id for line in record.lines}
        if unknown:
            raise BusinessRuleViolation(
                f"Batches not part of transfer '{record.record_id}': {', '.join(sorted(unknown))}"
            )
        for quantity in received.values():
            require_nonnegative_quantity(quantity)

        outcomes = [(line, received.get(line.batch_id, line.quantity)) for line in record.lines]
        discrepancy = any(quantity != line.quantity for line, quantity in outcomes)
        status = TransferStatus.DISCREPANCY if discrepancy else TransferStatus.RECEIVED
        get_location(context, record.to_location_id)

        taken_batches = set(_ensure_batches_cache(context)["by_id"])
        for line, quantity in outcomes:
            destination_batch_id: Optional[str] = None
            if quantity > 0:
                source = get_batch(context, line.batch_id)
                existing = _find_destination_batch(context, source, record.to_location_id)
                if existing is not None:
                    require_unfrozen(context, [existing.batch_id])
                    data_manager.set_batch_quantity(context.workbook, existing.batch_id, existing.quantity + quantity)
                    destination_batch_id = existing.batch_id
                else:
                    destination_batch_id = generate_id("B", when=timestamp, taken=taken_batches)
                    taken_batches.add(destination_batch_id)
                    data_manager.append_batch(
                        context.workbook,
                        BatchRow(
                            batch_id=destination_batch_id,
                            item_id=source.item_id,
                            location_id=record.to_location_id,
                            quantity=quantity,
                            lot_number=source.lot_number,
                            expiry_date=source.expiry_date,
                            receive_record_id=source.receive_record_id,
                        ),
                    )
                _invalidate_cache(context, "batches")
            data_manager.update_transfer_line(
                context.workbook,
                record.record_id,
                line.batch_id,
                field_values={
                    "Status": status.value,
                    "AcknowledgedBy": command.user_id,
                    "AcknowledgedAt": timestamp.isoformat(),
                    "ReceivedQuantity": quantity,
                    "DestinationBatchID": destination_batch_id,
                },
            )
        _invalidate_cache(context, "batches", "records")
        acknowledged = get_record(context, record.record_id)
    log.info("Acknowledged TRANSFER '%s' as %s", record.record_id, status.value)
    return acknowledged


def record_adjustment(context: RuntimeContext, command: AdjustmentCommand) -> AdjustmentRecord:
    """Set a batch to a corrected quantity and log the change.

    Raises:
        BatchFrozen: If the batch is locked by an open count.
        BusinessRuleViolation: If the new quantity equals the current one.
        ValueError: If the new quantity is negative.
    """
    require_nonnegative_quantity(command.to_quantity)
    timestamp = resolve_timestamp(command.timestamp)
    with atomic(context, SheetName.BATCHES.value, SheetName.ADJUSTMENT_LOG.value):
        require_unfrozen(context, [command.batch_id])
        batch = get_batch(context, command.batch_id)
        if batch.quantity == command.to_quantity:
            raise BusinessRuleViolation(f"Batch '{batch.batch_id}' already holds {batch.quantity}")
        record_id = generate_id(
            RECORD_ID_PREFIXES[TransactionKind.ADJUSTMENT], when=timestamp, taken=_taken_record_ids(context)
        )
        record = AdjustmentRecord(
            record_id=record_id,
            reference=command.reference or record_id,
            timestamp=timestamp,
            facility_id=_facility_of_batch(context, batch),
            user_id=command.user_id,
            batch_id=batch.batch_id,
            from_quantity=batch.quantity,
            to_quantity=command.to_quantity,
            reason=command.reason.value,
            notes=command.notes,
        )
        data_manager.set_batch_quantity(context.workbook, batch.batch_id, command.to_quantity)
        data_manager.append_adjustment(context.workbook, record)
        _invalidate_cache(context, "batches", "records")
    log.info(
        "Recorded ADJUSTMENT '%s' on batch '%s' (%s -> %s)",
        record_id,
        batch.batch_id,
        record.from_quantity,
        record.to_quantity,
    )
    return record


def _signed_lines(record: TransactionRecord) -> List[LineItem]:
    """Return the stock effect of a record as signed per-batch deltas."""

    if isinstance(record, AdjustmentRecord):
        return [LineItem(batch_id=record.batch_id, quantity=record.variance)]
    if isinstance(record, TransferRecord):
        return [LineItem(batch_id=line.batch_id, quantity=-line.quantity) for line in record.lines]
    sign = 1 if record.kind in INBOUND_KINDS else -1
    return [LineItem(batch_id=line.batch_id, quantity=sign * line.quantity) for line in record.lines]


def _reverse_effect(context: RuntimeContext, record: TransactionRecord, *, skip: Collection[str] = ()) -> None:
    """Undo a record's quantity effect on every surviving batch it touched."""

    for line in _signed_lines(record):
        if line.batch_id in skip:
            continue
        batch = find_batch(context, line.batch_id)
        if batch is None:
            log.warning("Purge of '%s' skipped reversal for missing batch '%s'", record.record_id, line.batch_id)
            continue
        restored = batch.quantity - line.quantity
        if restored < 0:
            raise InsufficientStock(batch.batch_id, batch.quantity, line.quantity)
        data_manager.set_batch_quantity(context.workbook, batch.batch_id, restored)
        _invalidate_cache(context, "batches")


def _delete_record(context: RuntimeContext, record: TransactionRecord) -> None:
    if isinstance(record, TransferRecord):
        sheet = SheetName.TRANSFER_LOG.value
    elif isinstance(record, AdjustmentRecord):
        sheet = SheetName.ADJUSTMENT_LOG.value
    else:
        sheet = LINE_SHEETS[record.kind].value
    data_manager.delete_rows(context.workbook, sheet, "RecordID", record.record_id)


def _record_batches(record: TransactionRecord) -> List[str]:
    if isinstance(record, AdjustmentRecord):
        return [record.batch_id]
    return [line.batch_id for line in record.lines]


def purge_transaction(context: RuntimeContext, kind: TransactionKind, record_id: str) -> List[TransactionRecord]:
    """Remove a log record and reverse its net effect on batch quantities.

    Purging a receipt deletes the batches it created together with every
    downstream record touching them; downstream effects on other batches are
    reversed. Transfers and count-generated adjustments cannot be purged.

    Returns:
        list[TransactionRecord]: Every record removed, the target first.

    Raises:
        MissingReferenceError: If ``record_id`` is not a record of ``kind``.
        PurgeBlocked: If the record is not purgeable or a receipt's batches
            were moved by an acknowledged transfer.
        BatchFrozen: If any affected batch is locked by an open count.
    """
    with atomic(context):
        record = get_record(context, record_id)
        if record.kind != kind:
            raise MissingReferenceError(f"No {kind.value} record with id: {record_id}")
        if isinstance(record, TransferRecord):
            raise PurgeBlocked("Transfers cannot be purged")
        if isinstance(record, AdjustmentRecord) and record.count_id is not None:
            raise PurgeBlocked(
                f"Adjustment '{record_id}' was produced by physical count '{record.count_id}'"
            )

        removed: List[TransactionRecord] = [record]
        if record.kind == TransactionKind.RECEIVE:
            created = {line.batch_id for line in record.lines}
            require_unfrozen(context, sorted(created))
            for transfer in list_records(context, TransactionKind.TRANSFER):
                if transfer.status != TransferStatus.PENDING and created & set(_record_batches(transfer)):
                    raise PurgeBlocked(
                        f"Receipt '{record_id}' fed acknowledged transfer '{transfer.record_id}'"
                    )
            downstream = [
                candidate
                for kind in TransactionKind
                for candidate in list_records(context, kind)
                if candidate.record_id != record_id and created & set(_record_batches(candidate))
            ]
            for candidate in downstream:
                if isinstance(candidate, AdjustmentRecord) and candidate.count_id is not None:
                    raise PurgeBlocked(
                        f"Receipt '{record_id}' batches were reconciled by count '{candidate.count_id}'"
                    )
                survivors = [batch_id for batch_id in _record_batches(candidate) if batch_id not in created]
                require_unfrozen(context, survivors)
                _reverse_effect(context, candidate, skip=created)
                _delete_record(context, candidate)
                removed.append(candidate)
            for batch_id in sorted(created):
                data_manager.delete_rows(context.workbook, SheetName.BATCHES.value, "BatchID", batch_id)
        else:
            require_unfrozen(context, _record_batches(record))
            _reverse_effect(context, record)
        _delete_record(context, record)
        _invalidate_cache(context, "batches", "records")
    log.info("Purged %s '%s' (%d record(s) removed)", record.kind.value, record_id, len(removed))
    return removed


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    with context.lock:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook and an empty
            cache; the Freeze Index is rebuilt from disk on first use.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)
