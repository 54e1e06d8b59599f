"""Data access layer for the stock ledger.

This module provides low-level helpers that read from and write to the
``stock_ledger.xlsx`` workbook that backs both the Stock Batch Store and the
Transaction Log Store. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating or
   deleting rows.
4. Snapshots: capturing and restoring sheet contents so the business layer can
   make multi-row writes all-or-nothing.
"""


from __future__ import annotations

import configparser
import os
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import CountStatus, LINE_SHEETS, SheetName, TransactionKind, TransferStatus


CONFIG_FILE_NAME = "config.ini"
LOCATIONS_SHEET = SheetName.LOCATIONS.value
BATCHES_SHEET = SheetName.BATCHES.value
TRANSFER_LOG_SHEET = SheetName.TRANSFER_LOG.value
ADJUSTMENT_LOG_SHEET = SheetName.ADJUSTMENT_LOG.value
COUNTS_SHEET = SheetName.PHYSICAL_COUNTS.value
COUNT_ITEMS_SHEET = SheetName.PHYSICAL_COUNT_ITEMS.value

LINE_COLUMNS: Sequence[str] = (
    "RecordID",
    "Reference",
    "Timestamp",
    "FacilityID",
    "UserID",
    "BatchID",
    "Quantity",
    "Notes",
)

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    LOCATIONS_SHEET: ("LocationID", "FacilityID", "LocationName"),
    BATCHES_SHEET: (
        "BatchID",
        "ItemID",
        "LocationID",
        "Quantity",
        "LotNumber",
        "ExpiryDate",
        "ReceiveRecordID",
    ),
    **{sheet.value: LINE_COLUMNS for sheet in LINE_SHEETS.values()},
    TRANSFER_LOG_SHEET: (
        "RecordID",
        "Reference",
        "Timestamp",
        "FromFacilityID",
        "ToFacilityID",
        "ToLocationID",
        "UserID",
        "BatchID",
        "Quantity",
        "Status",
        "AcknowledgedBy",
        "AcknowledgedAt",
        "ReceivedQuantity",
        "DestinationBatchID",
        "Notes",
    ),
    ADJUSTMENT_LOG_SHEET: (
        "RecordID",
        "Reference",
        "Timestamp",
        "FacilityID",
        "UserID",
        "BatchID",
        "FromQuantity",
        "ToQuantity",
        "Reason",
        "CountID",
        "Notes",
    ),
    COUNTS_SHEET: (
        "CountID",
        "CountName",
        "FacilityID",
        "LocationID",
        "Status",
        "InitiatedBy",
        "AssignedTo",
        "InitiatedAt",
        "StartedAt",
        "SubmittedAt",
        "ReviewedBy",
        "ReviewedAt",
        "RejectionNotes",
        "CancelledBy",
        "CancelledAt",
    ),
    COUNT_ITEMS_SHEET: (
        "CountID",
        "BatchID",
        "SystemQuantity",
        "CountedQuantity",
        "VarianceReason",
        "Notes",
    ),
}

SheetSnapshot = Dict[str, List[Tuple[object, ...]]]


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    site_name: str
    schema_version: str
    default_user_id: str


@dataclass(frozen=True)
class LocationRow:
    """In-memory view of a row from the ``Locations`` sheet."""

    location_id: str
    facility_id: str
    location_name: str


@dataclass(frozen=True)
class BatchRow:
    """In-memory view of a row from the ``Batches`` sheet."""

    batch_id: str
    item_id: str
    location_id: str
    quantity: int
    lot_number: Optional[str] = None
    expiry_date: Optional[str] = None
    receive_record_id: Optional[str] = None


@dataclass(frozen=True)
class LineItem:
    """One ``(batch, quantity)`` pair of a transaction record."""

    batch_id: str
    quantity: int


@dataclass(frozen=True)
class LineRecord:
    """Receive, dispense, write-off, return or internal-return record."""

    record_id: str
    kind: TransactionKind
    reference: str
    timestamp: datetime
    facility_id: str
    user_id: str
    lines: Tuple[LineItem, ...]
    notes: Optional[str] = None


@dataclass(frozen=True)
class TransferLine:
    """One transferred batch together with its acknowledgement outcome."""

    batch_id: str
    quantity: int
    received_quantity: Optional[int] = None
    destination_batch_id: Optional[str] = None


@dataclass(frozen=True)
class TransferRecord:
    """Inter-facility transfer with its acknowledgement sub-state."""

    record_id: str
    reference: str
    timestamp: datetime
    from_facility_id: str
    to_facility_id: str
    to_location_id: str
    user_id: str
    lines: Tuple[TransferLine, ...]
    status: TransferStatus = TransferStatus.PENDING
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def kind(self) -> TransactionKind:
        return TransactionKind.TRANSFER


@dataclass(frozen=True)
class AdjustmentRecord:
    """Manual or count-generated quantity correction of a single batch."""

    record_id: str
    reference: str
    timestamp: datetime
    facility_id: str
    user_id: str
    batch_id: str
    from_quantity: int
    to_quantity: int
    reason: str
    count_id: Optional[str] = None
    notes: Optional[str] = None

    @property
    def kind(self) -> TransactionKind:
        return TransactionKind.ADJUSTMENT

    @property
    def variance(self) -> int:
        return self.to_quantity - self.from_quantity


@dataclass(frozen=True)
class CountRow:
    """In-memory view of a row from the ``PhysicalCounts`` sheet."""

    count_id: str
    name: str
    facility_id: str
    location_id: str
    status: CountStatus
    initiated_by: str
    assigned_to: str
    initiated_at: datetime
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_notes: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None


@dataclass(frozen=True)
class CountItemRow:
    """In-memory view of a row from the ``PhysicalCountItems`` sheet."""

    count_id: str
    batch_id: str
    system_quantity: int
    counted_quantity: Optional[int] = None
    variance_reason: Optional[str] = None
    notes: Optional[str] = None

    @property
    def variance(self) -> Optional[int]:
        if self.counted_quantity is None:
            return None
        return self.counted_quantity - self.system_quantity


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the working
            directory or any of its parents.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.
            Required entries are validated by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are anchored at ``base_path`` (normally the
    directory holding ``config.ini``) or at the working directory when no base
    is given, then resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        site_name = parser.get("System", "SiteName")
        schema_version = parser.get("System", "SchemaVersion")
        default_user = parser.get("Defaults", "DefaultUser")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        site_name=site_name,
        schema_version=schema_version,
        default_user_id=default_user,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    The workbook is first written to a temporary file in the destination
    directory and then moved over the target with :func:`os.replace`, so a
    crash mid-save never leaves a truncated workbook behind.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook. Parent directories are created on demand.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=dest.suffix, dir=dest.parent)
    os.close(fd)
    try:
        workbook.save(tmp_name)
        os.replace(tmp_name, dest)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[Tuple[object, ...]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def _group_rows(rows: Iterable[Tuple[object, ...]]) -> Dict[str, List[Tuple[object, ...]]]:
    """Group one-row-per-line sheets by their leading record id, in sheet order."""

    grouped: Dict[str, List[Tuple[object, ...]]] = {}
    for raw in rows:
        grouped.setdefault(str(raw[0]), []).append(raw)
    return grouped


def iter_locations(workbook: Workbook) -> Iterable[LocationRow]:
    """Iterate over storage locations stored on the ``Locations`` worksheet."""

    for raw in _iter_raw_rows(workbook, LOCATIONS_SHEET):
        yield deserialize_location(raw)


def iter_batches(workbook: Workbook) -> Iterable[BatchRow]:
    """Iterate over stock batches stored on the ``Batches`` worksheet.

    The iterator skips the header row and any fully empty rows. Each remaining
    row is converted into a :class:`BatchRow` via :func:`deserialize_batch`.

    Args:
        workbook (Workbook): Workbook containing the ``Batches`` sheet.

    Yields:
        BatchRow: One structured row for each batch in sheet order.
    """

    for raw in _iter_raw_rows(workbook, BATCHES_SHEET):
        yield deserialize_batch(raw)


def iter_line_records(workbook: Workbook, kind: TransactionKind) -> Iterable[LineRecord]:
    """Stream records of one plain line-item stream.

    Rows sharing a ``RecordID`` are folded into a single :class:`LineRecord`
    whose header fields come from the first row and whose ``lines`` keep the
    sheet order.

    Args:
        workbook (Workbook): Workbook containing the log sheets.
        kind (TransactionKind): Any stream listed in ``LINE_SHEETS``.

    Yields:
        LineRecord: One record per distinct ``RecordID``.

    Raises:
        KeyError: If ``kind`` is not a plain line-item stream.
    """

    sheet_name = LINE_SHEETS[kind].value
    for rows in _group_rows(_iter_raw_rows(workbook, sheet_name)).values():
        yield deserialize_line_record(kind, rows)


def iter_transfers(workbook: Workbook) -> Iterable[TransferRecord]:
    """Stream transfer records, folding one-row-per-line storage into records."""

    for rows in _group_rows(_iter_raw_rows(workbook, TRANSFER_LOG_SHEET)).values():
        yield deserialize_transfer(rows)


def iter_adjustments(workbook: Workbook) -> Iterable[AdjustmentRecord]:
    """Stream adjustment records from the ``AdjustmentLog`` worksheet."""

    for raw in _iter_raw_rows(workbook, ADJUSTMENT_LOG_SHEET):
        yield deserialize_adjustment(raw)


def iter_counts(workbook: Workbook) -> Iterable[CountRow]:
    """Stream physical count headers from the ``PhysicalCounts`` worksheet."""

    for raw in _iter_raw_rows(workbook, COUNTS_SHEET):
        yield deserialize_count(raw)


def iter_count_items(workbook: Workbook) -> Iterable[CountItemRow]:
    """Stream physical count lines from the ``PhysicalCountItems`` worksheet."""

    for raw in _iter_raw_rows(workbook, COUNT_ITEMS_SHEET):
        yield deserialize_count_item(raw)


def append_location(workbook: Workbook, record: LocationRow) -> None:
    """Append a storage location to the ``Locations`` worksheet."""

    workbook[LOCATIONS_SHEET].append(serialize_location(record))


def append_batch(workbook: Workbook, record: BatchRow) -> None:
    """Append a stock batch to the ``Batches`` worksheet."""

    workbook[BATCHES_SHEET].append(serialize_batch(record))


def append_line_record(workbook: Workbook, record: LineRecord) -> None:
    """Append a line-item record, one worksheet row per line.

    Args:
        workbook (Workbook): Workbook containing the log sheets.
        record (LineRecord): Record to persist; its ``kind`` selects the sheet.
    """

    sheet = workbook[LINE_SHEETS[record.kind].value]
    for row in serialize_line_record(record):
        sheet.append(row)


def append_transfer(workbook: Workbook, record: TransferRecord) -> None:
    """Append a transfer record, one worksheet row per transferred batch."""

    sheet = workbook[TRANSFER_LOG_SHEET]
    for row in serialize_transfer(record):
        sheet.append(row)


def append_adjustment(workbook: Workbook, record: AdjustmentRecord) -> None:
    """Append an adjustment record to the ``AdjustmentLog`` worksheet."""

    workbook[ADJUSTMENT_LOG_SHEET].append(serialize_adjustment(record))


def append_count(workbook: Workbook, record: CountRow, items: Sequence[CountItemRow]) -> None:
    """Append a physical count header and its item lines.

    Args:
        workbook (Workbook): Workbook containing the count sheets.
        record (CountRow): Count header to persist.
        items (Sequence[CountItemRow]): Item snapshot taken at freeze time.
    """

    workbook[COUNTS_SHEET].append(serialize_count(record))
    items_sheet = workbook[COUNT_ITEMS_SHEET]
    for item in items:
        items_sheet.append(serialize_count_item(item))


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _write_fields(workbook: Workbook, sheet_name: str, row_index: int, field_values: Mapping[str, Any]) -> None:
    header_map = _header_map(workbook, sheet_name)
    sheet = workbook[sheet_name]
    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=header_map[field]).value = value


def update_batch(workbook: Workbook, batch_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns for an existing batch.

    Only the specified fields are modified, leaving other columns untouched.

    Args:
        workbook (Workbook): Workbook containing the batches sheet.
        batch_id (str): Identifier used to locate the target row.
        field_values (Mapping[str, Any]): Column names mapped to new values.

    Raises:
        KeyError: If the batch or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, BATCHES_SHEET, {"BatchID": batch_id})
    if row_index is None:
        raise KeyError(f"Batch not found: {batch_id}")
    _write_fields(workbook, BATCHES_SHEET, row_index, field_values)


def set_batch_quantity(workbook: Workbook, batch_id: str, quantity: int) -> None:
    """Overwrite the current quantity of a batch."""

    update_batch(workbook, batch_id, field_values={"Quantity": int(quantity)})


def update_count(workbook: Workbook, count_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns of a physical count header.

    Raises:
        KeyError: If the count or any referenced column is missing.
    """

    row_index = locate_row(workbook, COUNTS_SHEET, {"CountID": count_id})
    if row_index is None:
        raise KeyError(f"Physical count not found: {count_id}")
    _write_fields(workbook, COUNTS_SHEET, row_index, field_values)


def update_count_item(workbook: Workbook, count_id: str, batch_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns of one count line, keyed by count and batch."""

    row_index = locate_row(workbook, COUNT_ITEMS_SHEET, {"CountID": count_id, "BatchID": batch_id})
    if row_index is None:
        raise KeyError(f"Batch '{batch_id}' is not part of count '{count_id}'")
    _write_fields(workbook, COUNT_ITEMS_SHEET, row_index, field_values)


def update_transfer_line(workbook: Workbook, record_id: str, batch_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns of one transfer line, keyed by record and batch."""

    row_index = locate_row(workbook, TRANSFER_LOG_SHEET, {"RecordID": record_id, "BatchID": batch_id})
    if row_index is None:
        raise KeyError(f"Batch '{batch_id}' is not part of transfer '{record_id}'")
    _write_fields(workbook, TRANSFER_LOG_SHEET, row_index, field_values)


def delete_rows(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> int:
    """Delete every row whose ``key_column`` equals ``key_value``.

    Rows are removed bottom-up so earlier indices stay valid while deleting.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Worksheet to prune.
        key_column (str): Header title of the column holding the key.
        key_value (str): Value identifying the rows to delete.

    Returns:
        int: Number of rows removed.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")
    col = header_map[key_column] - 1

    matches = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[col] is not None and str(row[col]) == key_value
    ]
    for row_idx in reversed(matches):
        sheet.delete_rows(row_idx)
    return len(matches)


def locate_row(workbook: Workbook, sheet_name: str, keys: Mapping[str, str]) -> Optional[int]:
    """Find the first row whose key columns all match the supplied values.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        keys (Mapping[str, str]): Header titles mapped to the values they must
            hold. Cell values are compared as strings.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If a key column is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    positions = []
    for column, value in keys.items():
        if column not in header_map:
            raise KeyError(f"Unknown column: {column}")
        positions.append((header_map[column] - 1, value))

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if all(row[col] is not None and str(row[col]) == value for col, value in positions):
            return row_idx

    return None


def capture_sheets(workbook: Workbook, sheet_names: Iterable[str]) -> SheetSnapshot:
    """Copy the cell values of the named sheets, header row included.

    Args:
        workbook (Workbook): Workbook to read.
        sheet_names (Iterable[str]): Sheets to include in the snapshot.

    Returns:
        dict[str, list[tuple]]: Row tuples per sheet, suitable for
            :func:`restore_sheets`.
    """

    return {
        name: [tuple(row) for row in workbook[name].iter_rows(values_only=True)]
        for name in sheet_names
    }


def restore_sheets(workbook: Workbook, snapshot: SheetSnapshot) -> None:
    """Rewrite sheets so their values equal a snapshot from :func:`capture_sheets`.

    The header row is rewritten in place so its formatting survives; all data
    rows are dropped and re-appended from the snapshot.
    """

    for name, rows in snapshot.items():
        sheet = workbook[name]
        if sheet.max_row > 1:
            sheet.delete_rows(2, sheet.max_row - 1)
        if rows:
            for col_idx, value in enumerate(rows[0], start=1):
                sheet.cell(row=1, column=col_idx, value=value)
        for row in rows[1:]:
            sheet.append(list(row))
    log.debug("Restored %d sheet(s) from snapshot", len(snapshot))


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: object) -> Optional[datetime]:
    """Parse stored timestamps; naive values are taken to be UTC."""

    if value is None or value == "":
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _opt_str(value: object) -> Optional[str]:
    return str(value) if value is not None and value != "" else None


def _opt_int(value: object) -> Optional[int]:
    return int(value) if value is not None and value != "" else None


def serialize_location(record: LocationRow) -> list[object]:
    return [record.location_id, record.facility_id, record.location_name]


def serialize_batch(record: BatchRow) -> list[object]:
    """Convert a batch dataclass into the ``Batches`` column ordering."""

    return [
        record.batch_id,
        record.item_id,
        record.location_id,
        record.quantity,
        record.lot_number,
        record.expiry_date,
        record.receive_record_id,
    ]


def serialize_line_record(record: LineRecord) -> list[list[object]]:
    """Expand a line record into one row per line item."""

    return [
        [
            record.record_id,
            record.reference,
            _format_ts(record.timestamp),
            record.facility_id,
            record.user_id,
            line.batch_id,
            line.quantity,
            record.notes,
        ]
        for line in record.lines
    ]


def serialize_transfer(record: TransferRecord) -> list[list[object]]:
    """Expand a transfer into one row per line, repeating the header fields."""

    return [
        [
            record.record_id,
            record.reference,
            _format_ts(record.timestamp),
            record.from_facility_id,
            record.to_facility_id,
            record.to_location_id,
            record.user_id,
            line.batch_id,
            line.quantity,
            record.status.value,
            record.acknowledged_by,
            _format_ts(record.acknowledged_at),
            line.received_quantity,
            line.destination_batch_id,
            record.notes,
        ]
        for line in record.lines
    ]


def serialize_adjustment(record: AdjustmentRecord) -> list[object]:
    return [
        record.record_id,
        record.reference,
        _format_ts(record.timestamp),
        record.facility_id,
        record.user_id,
        record.batch_id,
        record.from_quantity,
        record.to_quantity,
        record.reason,
        record.count_id,
        record.notes,
    ]


def serialize_count(record: CountRow) -> list[object]:
    """Convert a count header into the ``PhysicalCounts`` column ordering."""

    return [
        record.count_id,
        record.name,
        record.facility_id,
        record.location_id,
        record.status.value,
        record.initiated_by,
        record.assigned_to,
        _format_ts(record.initiated_at),
        _format_ts(record.started_at),
        _format_ts(record.submitted_at),
        record.reviewed_by,
        _format_ts(record.reviewed_at),
        record.rejection_notes,
        record.cancelled_by,
        _format_ts(record.cancelled_at),
    ]


def serialize_count_item(record: CountItemRow) -> list[object]:
    return [
        record.count_id,
        record.batch_id,
        record.system_quantity,
        record.counted_quantity,
        record.variance_reason,
        record.notes,
    ]


def deserialize_location(raw_row: Sequence[object]) -> LocationRow:
    location_id, facility_id, location_name = raw_row[:3]
    return LocationRow(
        location_id=str(location_id),
        facility_id=str(facility_id),
        location_name=str(location_name) if location_name is not None else "",
    )


def deserialize_batch(raw_row: Sequence[object]) -> BatchRow:
    """Convert a raw worksheet row into a strongly typed batch record.

    Identifiers are coerced to ``str`` to avoid surprises caused by Excel
    interpreting numeric-looking ids, and a blank quantity reads as zero.
    """

    batch_id, item_id, location_id, quantity, lot_number, expiry_date, receive_record_id = raw_row[:7]
    return BatchRow(
        batch_id=str(batch_id),
        item_id=str(item_id),
        location_id=str(location_id),
        quantity=int(quantity) if quantity is not None else 0,
        lot_number=_opt_str(lot_number),
        expiry_date=_opt_str(expiry_date),
        receive_record_id=_opt_str(receive_record_id),
    )


def deserialize_line_record(kind: TransactionKind, rows: Sequence[Sequence[object]]) -> LineRecord:
    """Fold the rows of one record id into a :class:`LineRecord`."""

    record_id, reference, timestamp, facility_id, user_id, _, _, notes = rows[0][:8]
    lines = tuple(
        LineItem(batch_id=str(row[5]), quantity=int(row[6]) if row[6] is not None else 0)
        for row in rows
    )
    return LineRecord(
        record_id=str(record_id),
        kind=kind,
        reference=str(reference) if reference is not None else "",
        timestamp=_parse_ts(timestamp),
        facility_id=str(facility_id),
        user_id=str(user_id) if user_id is not None else "",
        lines=lines,
        notes=_opt_str(notes),
    )


def deserialize_transfer(rows: Sequence[Sequence[object]]) -> TransferRecord:
    """Fold the rows of one transfer id into a :class:`TransferRecord`."""

    (
        record_id,
        reference,
        timestamp,
        from_facility_id,
        to_facility_id,
        to_location_id,
        user_id,
        _batch_id,
        _quantity,
        status,
        acknowledged_by,
        acknowledged_at,
        _received,
        _destination,
        notes,
    ) = rows[0][:15]
    lines = tuple(
        TransferLine(
            batch_id=str(row[7]),
            quantity=int(row[8]) if row[8] is not None else 0,
            received_quantity=_opt_int(row[12]),
            destination_batch_id=_opt_str(row[13]),
        )
        for row in rows
    )
    return TransferRecord(
        record_id=str(record_id),
        reference=str(reference) if reference is not None else "",
        timestamp=_parse_ts(timestamp),
        from_facility_id=str(from_facility_id),
        to_facility_id=str(to_facility_id),
        to_location_id=str(to_location_id),
        user_id=str(user_id) if user_id is not None else "",
        lines=lines,
        status=TransferStatus(status) if status else TransferStatus.PENDING,
        acknowledged_by=_opt_str(acknowledged_by),
        acknowledged_at=_parse_ts(acknowledged_at),
        notes=_opt_str(notes),
    )


def deserialize_adjustment(raw_row: Sequence[object]) -> AdjustmentRecord:
    (
        record_id,
        reference,
        timestamp,
        facility_id,
        user_id,
        batch_id,
        from_quantity,
        to_quantity,
        reason,
        count_id,
        notes,
    ) = raw_row[:11]
    return AdjustmentRecord(
        record_id=str(record_id),
        reference=str(reference) if reference is not None else "",
        timestamp=_parse_ts(timestamp),
        facility_id=str(facility_id),
        user_id=str(user_id) if user_id is not None else "",
        batch_id=str(batch_id),
        from_quantity=int(from_quantity) if from_quantity is not None else 0,
        to_quantity=int(to_quantity) if to_quantity is not None else 0,
        reason=str(reason) if reason is not None else "",
        count_id=_opt_str(count_id),
        notes=_opt_str(notes),
    )


def deserialize_count(raw_row: Sequence[object]) -> CountRow:
    """Convert a raw ``PhysicalCounts`` row into a :class:`CountRow`.

    Status text is parsed into :class:`CountStatus`; timestamp columns become
    timezone-aware datetimes or ``None`` when blank.
    """

    (
        count_id,
        name,
        facility_id,
        location_id,
        status,
        initiated_by,
        assigned_to,
        initiated_at,
        started_at,
        submitted_at,
        reviewed_by,
        reviewed_at,
        rejection_notes,
        cancelled_by,
        cancelled_at,
    ) = raw_row[:15]
    return CountRow(
        count_id=str(count_id),
        name=str(name) if name is not None else "",
        facility_id=str(facility_id),
        location_id=str(location_id),
        status=CountStatus(status),
        initiated_by=str(initiated_by) if initiated_by is not None else "",
        assigned_to=str(assigned_to) if assigned_to is not None else "",
        initiated_at=_parse_ts(initiated_at),
        started_at=_parse_ts(started_at),
        submitted_at=_parse_ts(submitted_at),
        reviewed_by=_opt_str(reviewed_by),
        reviewed_at=_parse_ts(reviewed_at),
        rejection_notes=_opt_str(rejection_notes),
        cancelled_by=_opt_str(cancelled_by),
        cancelled_at=_parse_ts(cancelled_at),
    )


def deserialize_count_item(raw_row: Sequence[object]) -> CountItemRow:
    count_id, batch_id, system_quantity, counted_quantity, variance_reason, notes = raw_row[:6]
    return CountItemRow(
        count_id=str(count_id),
        batch_id=str(batch_id),
        system_quantity=int(system_quantity) if system_quantity is not None else 0,
        counted_quantity=_opt_int(counted_quantity),
        variance_reason=_opt_str(variance_reason),
        notes=_opt_str(notes),
    )
