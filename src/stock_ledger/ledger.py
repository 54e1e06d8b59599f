"""Ledger reconstruction over the transaction streams and completed counts.

Every stream is projected into signed :class:`Movement` values by a small
per-kind function; the reconstructor only ever sees movements, so adding a
stream means adding one projector to ``_PROJECTORS``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from . import core_logic, log
from .constants import CountStatus, MovementKind, TransactionKind, TransferStatus
from .data_manager import AdjustmentRecord, BatchRow, CountItemRow, CountRow, LineRecord, TransferRecord
from .exceptions import UnresolvableBatchReference


WindowBound = Union[date, datetime, None]

LINE_MOVEMENT_KINDS: Dict[TransactionKind, MovementKind] = {
    TransactionKind.RECEIVE: MovementKind.RECEIVE,
    TransactionKind.DISPENSE: MovementKind.DISPENSE,
    TransactionKind.WRITE_OFF: MovementKind.WRITE_OFF,
    TransactionKind.RETURN: MovementKind.RETURN,
    TransactionKind.INTERNAL_RETURN: MovementKind.INTERNAL_RETURN,
}

_INBOUND_MOVEMENTS = frozenset({MovementKind.RECEIVE, MovementKind.INTERNAL_RETURN})


@dataclass(frozen=True)
class Movement:
    """One signed quantity change of one batch, before windowing."""

    timestamp: datetime
    kind: MovementKind
    facility_id: str
    reference: str
    record_id: str
    batch_id: str
    line_index: int
    quantity: int

    @property
    def sort_key(self) -> Tuple[datetime, str, int]:
        return (self.timestamp, self.record_id, self.line_index)


@dataclass(frozen=True)
class SkippedLine:
    """A line whose batch could not be resolved to an item-catalog entry."""

    record_id: str
    batch_id: str


@dataclass(frozen=True)
class LedgerEntry:
    """Visible ledger row carrying the balance after the movement."""

    date: datetime
    kind: MovementKind
    facility_id: str
    reference: str
    batch_id: str
    record_id: str
    quantity_in: int
    quantity_out: int
    running_balance: int


@dataclass(frozen=True)
class Ledger:
    """Result of :func:`build_ledger`.

    ``skipped`` lists the unresolvable batch references encountered while
    matching an item-catalog target; they are excluded from every balance.
    """

    entries: Tuple[LedgerEntry, ...]
    opening_balance: int
    closing_balance: int
    skipped: Tuple[SkippedLine, ...] = ()


def _project_line_record(record: LineRecord) -> Iterator[Movement]:
    kind = LINE_MOVEMENT_KINDS[record.kind]
    sign = 1 if kind in _INBOUND_MOVEMENTS else -1
    for index, line in enumerate(record.lines):
        yield Movement(
            timestamp=record.timestamp,
            kind=kind,
            facility_id=record.facility_id,
            reference=record.reference,
            record_id=record.record_id,
            batch_id=line.batch_id,
            line_index=index,
            quantity=sign * line.quantity,
        )


def _project_transfer(record: TransferRecord) -> Iterator[Movement]:
    """Yield the outbound leg of every line and, once acknowledged, the inbound leg.

    Inbound legs use the received quantity for ``Discrepancy`` transfers and
    sit after all outbound legs in line order.
    """
    for index, line in enumerate(record.lines):
        yield Movement(
            timestamp=record.timestamp,
            kind=MovementKind.TRANSFER_OUT,
            facility_id=record.from_facility_id,
            reference=record.reference,
            record_id=record.record_id,
            batch_id=line.batch_id,
            line_index=index,
            quantity=-line.quantity,
        )

    if record.status == TransferStatus.PENDING or record.acknowledged_at is None:
        return

    offset = len(record.lines)
    for index, line in enumerate(record.lines):
        if record.status == TransferStatus.DISCREPANCY:
            received = line.received_quantity or 0
        else:
            received = line.quantity
        if received <= 0:
            continue
        yield Movement(
            timestamp=record.acknowledged_at,
            kind=MovementKind.TRANSFER_IN,
            facility_id=record.to_facility_id,
            reference=record.reference,
            record_id=record.record_id,
            batch_id=line.destination_batch_id or line.batch_id,
            line_index=offset + index,
            quantity=received,
        )


def _project_adjustment(record: AdjustmentRecord) -> Iterator[Movement]:
    if record.variance == 0:
        return
    yield Movement(
        timestamp=record.timestamp,
        kind=MovementKind.ADJUSTMENT,
        facility_id=record.facility_id,
        reference=record.reference,
        record_id=record.record_id,
        batch_id=record.batch_id,
        line_index=0,
        quantity=record.variance,
    )


def _project_count(count: CountRow, items: Iterable[CountItemRow]) -> Iterator[Movement]:
    if count.status != CountStatus.COMPLETED or count.reviewed_at is None:
        return
    for index, item in enumerate(items):
        variance = item.variance
        if not variance:
            continue
        yield Movement(
            timestamp=count.reviewed_at,
            kind=MovementKind.COUNT_VARIANCE,
            facility_id=count.facility_id,
            reference=count.name or count.count_id,
            record_id=count.count_id,
            batch_id=item.batch_id,
            line_index=index,
            quantity=variance,
        )


_PROJECTORS: Dict[TransactionKind, Callable[..., Iterator[Movement]]] = {
    **{kind: _project_line_record for kind in LINE_MOVEMENT_KINDS},
    TransactionKind.TRANSFER: _project_transfer,
    TransactionKind.ADJUSTMENT: _project_adjustment,
}


def iter_movements(context: core_logic.RuntimeContext) -> Iterator[Movement]:
    """Project every stream and every completed count into movements.

    A completed count emits its own variance movements, so the synthetic
    adjustments it appended are not projected a second time. Once the count
    is deleted from history those adjustments carry its variances instead.
    """

    counts = core_logic.list_counts(context)
    projected = {
        count.count_id
        for count in counts
        if count.status == CountStatus.COMPLETED and count.reviewed_at is not None
    }
    for kind, projector in _PROJECTORS.items():
        for record in core_logic.list_records(context, kind):
            if isinstance(record, AdjustmentRecord) and record.count_id in projected:
                continue
            yield from projector(record)
    for count in counts:
        yield from _project_count(count, core_logic.get_count_items(context, count.count_id))


def _resolve_item(batches: Dict[str, BatchRow], movement: Movement) -> str:
    batch = batches.get(movement.batch_id)
    if batch is None:
        raise UnresolvableBatchReference(movement.batch_id, movement.record_id)
    return batch.item_id


def _as_bound(value: WindowBound, *, end: bool) -> Optional[datetime]:
    """Normalise a window bound; a bare ``date`` covers its whole UTC day."""

    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return datetime.combine(value, time.max if end else time.min, tzinfo=UTC)


def build_ledger(
    context: core_logic.RuntimeContext,
    *,
    batch_id: Optional[str] = None,
    item_id: Optional[str] = None,
    facility_id: Optional[str] = None,
    start: WindowBound = None,
    end: WindowBound = None,
) -> Ledger:
    """Reconstruct the chronological balance ledger of a batch or item.

    Movements before ``start`` fold into the opening balance, movements inside
    ``[start, end]`` become entries, later movements are ignored. Balances are
    never clamped, so a negative running balance exposes inconsistent history
    rather than hiding it.

    Args:
        context (RuntimeContext): Runtime context providing the stores.
        batch_id (str | None): Target batch. Mutually exclusive with
            ``item_id``.
        item_id (str | None): Target item-catalog entry; every batch of the
            item contributes.
        facility_id (str | None): Keep only movements attributed to this
            facility, both in the opening fold and in the window.
        start (date | datetime | None): Inclusive window start.
        end (date | datetime | None): Inclusive window end.

    Returns:
        Ledger: Entries with running balances plus opening and closing
            balances.

    Raises:
        ValueError: If neither or both targets are given, or ``start`` is
            after ``end``.
    """
    if (batch_id is None) == (item_id is None):
        raise ValueError("Exactly one of batch_id or item_id is required")
    lower = _as_bound(start, end=False)
    upper = _as_bound(end, end=True)
    if lower is not None and upper is not None and lower > upper:
        raise ValueError("Ledger window start is after its end")

    skipped: List[SkippedLine] = []
    with context.lock:
        batches = {batch.batch_id: batch for batch in core_logic.list_batches(context)}
        matched: List[Movement] = []
        for movement in iter_movements(context):
            if batch_id is not None:
                if movement.batch_id != batch_id:
                    continue
            else:
                try:
                    if _resolve_item(batches, movement) != item_id:
                        continue
                except UnresolvableBatchReference as exc:
                    log.warning("Skipping ledger line: %s", exc)
                    skipped.append(SkippedLine(record_id=exc.record_id, batch_id=exc.batch_id))
                    continue
            if facility_id is not None and movement.facility_id != facility_id:
                continue
            matched.append(movement)

    matched.sort(key=lambda movement: movement.sort_key)

    opening = 0
    balance = 0
    entries: List[LedgerEntry] = []
    for movement in matched:
        if lower is not None and movement.timestamp < lower:
            opening += movement.quantity
            continue
        if upper is not None and movement.timestamp > upper:
            break
        if not entries:
            balance = opening
        balance += movement.quantity
        entries.append(
            LedgerEntry(
                date=movement.timestamp,
                kind=movement.kind,
                facility_id=movement.facility_id,
                reference=movement.reference,
                batch_id=movement.batch_id,
                record_id=movement.record_id,
                quantity_in=max(movement.quantity, 0),
                quantity_out=max(-movement.quantity, 0),
                running_balance=balance,
            )
        )

    closing = entries[-1].running_balance if entries else opening
    log.debug(
        "Built ledger for %s: %d entries, opening %d, closing %d",
        batch_id or item_id,
        len(entries),
        opening,
        closing,
    )
    return Ledger(
        entries=tuple(entries),
        opening_balance=opening,
        closing_balance=closing,
        skipped=tuple(skipped),
    )


def current_balance(context: core_logic.RuntimeContext, batch_id: str) -> int:
    """Return the unfiltered all-time closing balance of a batch."""

    return build_ledger(context, batch_id=batch_id).closing_balance
