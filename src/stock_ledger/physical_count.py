"""Physical count workflow.

A count snapshots every batch in one storage location, freezes those batches
for as long as the count is open, collects counted quantities and, on
approval, commits the variances as batch quantity changes plus synthetic
adjustment records in a single atomic unit.

Status flow::

    Pending -> In Progress -> Pending Review -> Completed
       |            |   ^            |
       |            |   +-- reject --+
       +------------+-------+--------+-> Cancelled
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, List, Mapping, Optional, Sequence, Union

from . import core_logic, data_manager, log
from .constants import (
    ACTIVE_COUNT_STATUSES,
    TERMINAL_COUNT_STATUSES,
    CountStatus,
    SheetName,
    VarianceReason,
)
from .core_logic import RuntimeContext
from .data_manager import AdjustmentRecord, CountItemRow, CountRow
from .exceptions import (
    BusinessRuleViolation,
    EmptyLocationCount,
    InvalidTransition,
    MissingReferenceError,
    MissingVarianceReason,
    PartialCommitDetected,
)
from .ledger import current_balance


COUNT_SHEETS = (SheetName.PHYSICAL_COUNTS.value, SheetName.PHYSICAL_COUNT_ITEMS.value)
APPROVAL_SHEETS = (
    SheetName.BATCHES.value,
    SheetName.ADJUSTMENT_LOG.value,
    *COUNT_SHEETS,
)

ALLOWED_TRANSITIONS: Mapping[CountStatus, FrozenSet[CountStatus]] = {
    CountStatus.PENDING: frozenset(
        {CountStatus.IN_PROGRESS, CountStatus.PENDING_REVIEW, CountStatus.CANCELLED}
    ),
    CountStatus.IN_PROGRESS: frozenset({CountStatus.PENDING_REVIEW, CountStatus.CANCELLED}),
    CountStatus.PENDING_REVIEW: frozenset(
        {CountStatus.COMPLETED, CountStatus.IN_PROGRESS, CountStatus.CANCELLED}
    ),
    CountStatus.COMPLETED: frozenset(),
    CountStatus.CANCELLED: frozenset(),
}

ReasonInput = Union[VarianceReason, str]


@dataclass(frozen=True)
class StartCountCommand:
    """User intent for opening a physical count over one storage location."""

    location_id: str
    initiated_by: str
    assigned_to: Optional[str] = None
    name: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class CountEntry:
    """Counted quantity for one batch; ``None`` fields leave stored values alone."""

    batch_id: str
    counted_quantity: Optional[int] = None
    variance_reason: Optional[ReasonInput] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class VarianceLine:
    """Review row comparing counted, snapshotted and ledger quantities.

    ``ledger_drift`` is the ledger balance minus the snapshot; a nonzero value
    means the batch history changed outside the freeze and deserves a look
    before approval.
    """

    batch_id: str
    item_id: Optional[str]
    system_quantity: int
    counted_quantity: Optional[int]
    variance: Optional[int]
    variance_reason: Optional[str]
    ledger_balance: int

    @property
    def ledger_drift(self) -> int:
        return self.ledger_balance - self.system_quantity


def _reason_text(reason: Optional[ReasonInput]) -> Optional[str]:
    if reason is None:
        return None
    if isinstance(reason, VarianceReason):
        return reason.value
    return VarianceReason(reason).value


def _reload_count(context: RuntimeContext, count_id: str) -> CountRow:
    """Re-read a count header from the workbook, bypassing cached state."""

    core_logic._invalidate_cache(context, "counts")
    return core_logic.get_count(context, count_id)


def _require_transition(count: CountRow, target: CountStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[count.status]:
        log.warning(
            "Rejected transition of count '%s' from %s to %s",
            count.count_id,
            count.status.value,
            target.value,
        )
        raise InvalidTransition(count.count_id, count.status.value, target.value)


def create_count(context: RuntimeContext, command: StartCountCommand) -> CountRow:
    """Open a count over every batch in a location and freeze those batches.

    Returns:
        CountRow: The new count in ``Pending`` status.

    Raises:
        MissingReferenceError: If the location is unknown.
        EmptyLocationCount: If the location holds no batch.
        BatchFrozen: If any batch already belongs to another open count.
    """
    timestamp = core_logic.resolve_timestamp(command.timestamp)
    with core_logic.atomic(context, *COUNT_SHEETS):
        location = core_logic.get_location(context, command.location_id)
        batches = core_logic.list_batches(context, location_id=location.location_id)
        if not batches:
            log.warning("Refused to start a count for empty location '%s'", location.location_id)
            raise EmptyLocationCount(location.location_id)

        taken = {count.count_id for count in core_logic.list_counts(context)}
        count_id = core_logic.generate_id("PC", when=timestamp, taken=taken)
        record = CountRow(
            count_id=count_id,
            name=command.name or f"{location.location_name} count {timestamp:%Y-%m-%d}",
            facility_id=location.facility_id,
            location_id=location.location_id,
            status=CountStatus.PENDING,
            initiated_by=command.initiated_by,
            assigned_to=command.assigned_to or command.initiated_by,
            initiated_at=timestamp,
        )
        items = [
            CountItemRow(count_id=count_id, batch_id=batch.batch_id, system_quantity=batch.quantity)
            for batch in batches
        ]
        core_logic.get_freeze_index(context).lock_batches(
            count_id, [item.batch_id for item in items], count_name=record.name
        )
        data_manager.append_count(context.workbook, record, items)
        core_logic._invalidate_cache(context, "counts")
    log.info(
        "Started physical count '%s' (%s) over %d batch(es) in '%s'",
        record.name,
        count_id,
        len(items),
        location.location_id,
    )
    return record


def _write_status(context: RuntimeContext, count_id: str, status: CountStatus, **fields: object) -> None:
    field_values: Dict[str, object] = {"Status": status.value}
    field_values.update(fields)
    data_manager.update_count(context.workbook, count_id, field_values=field_values)
    core_logic._invalidate_cache(context, "counts")


def update_count_items(
    context: RuntimeContext,
    count_id: str,
    entries: Sequence[CountEntry],
    *,
    timestamp: Optional[datetime] = None,
) -> CountRow:
    """Record counted quantities, reason codes or notes for count lines.

    Entering data into a ``Pending`` count starts it. Reason codes and notes
    may also be edited while the count awaits review.

    Raises:
        InvalidTransition: If the count is not open for data entry.
        MissingReferenceError: If an entry names a batch outside the count.
        ValueError: If a counted quantity is negative.
    """
    for entry in entries:
        if entry.counted_quantity is not None:
            core_logic.require_nonnegative_quantity(entry.counted_quantity)

    timestamp = core_logic.resolve_timestamp(timestamp)
    with core_logic.atomic(context, *COUNT_SHEETS):
        count = _reload_count(context, count_id)
        quantities_entered = any(entry.counted_quantity is not None for entry in entries)
        if count.status == CountStatus.PENDING_REVIEW and quantities_entered:
            raise InvalidTransition(count_id, count.status.value, CountStatus.IN_PROGRESS.value)
        if count.status not in ACTIVE_COUNT_STATUSES:
            raise InvalidTransition(count_id, count.status.value, CountStatus.IN_PROGRESS.value)

        members = {item.batch_id for item in core_logic.get_count_items(context, count_id)}
        for entry in entries:
            if entry.batch_id not in members:
                raise MissingReferenceError(f"Batch '{entry.batch_id}' is not part of count '{count_id}'")
            field_values: Dict[str, object] = {}
            if entry.counted_quantity is not None:
                field_values["CountedQuantity"] = entry.counted_quantity
            if entry.variance_reason is not None:
                field_values["VarianceReason"] = _reason_text(entry.variance_reason)
            if entry.notes is not None:
                field_values["Notes"] = entry.notes
            if field_values:
                data_manager.update_count_item(context.workbook, count_id, entry.batch_id, field_values=field_values)

        if count.status == CountStatus.PENDING:
            _write_status(context, count_id, CountStatus.IN_PROGRESS, StartedAt=timestamp.isoformat())
        core_logic._invalidate_cache(context, "counts")
        updated = core_logic.get_count(context, count_id)
    log.info("Updated %d line(s) of physical count '%s'", len(entries), count_id)
    return updated


def start_count(context: RuntimeContext, count_id: str, *, timestamp: Optional[datetime] = None) -> CountRow:
    """Move a ``Pending`` count to ``In Progress``."""

    timestamp = core_logic.resolve_timestamp(timestamp)
    with core_logic.atomic(context, *COUNT_SHEETS):
        count = _reload_count(context, count_id)
        if count.status != CountStatus.PENDING:
            raise InvalidTransition(count_id, count.status.value, CountStatus.IN_PROGRESS.value)
        _write_status(context, count_id, CountStatus.IN_PROGRESS, StartedAt=timestamp.isoformat())
        started = core_logic.get_count(context, count_id)
    log.info("Physical count '%s' started", count_id)
    return started


def submit_count(
    context: RuntimeContext,
    count_id: str,
    *,
    zero_fill_uncounted: bool = False,
    timestamp: Optional[datetime] = None,
) -> CountRow:
    """Send a count for review.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        count_id (str): Count to submit.
        zero_fill_uncounted (bool): Record uncounted lines as zero instead of
            rejecting the submission.
        timestamp (datetime | None): Submission time; defaults to now.

    Returns:
        CountRow: The count in ``Pending Review`` status.

    Raises:
        InvalidTransition: If the count cannot be submitted from its status.
        BusinessRuleViolation: If lines are uncounted and
            ``zero_fill_uncounted`` is false.
    """
    timestamp = core_logic.resolve_timestamp(timestamp)
    with core_logic.atomic(context, *COUNT_SHEETS):
        count = _reload_count(context, count_id)
        _require_transition(count, CountStatus.PENDING_REVIEW)
        uncounted = [
            item.batch_id
            for item in core_logic.get_count_items(context, count_id)
            if item.counted_quantity is None
        ]
        if uncounted and not zero_fill_uncounted:
            raise BusinessRuleViolation(
                f"Count '{count_id}' has uncounted batches: {', '.join(uncounted)}"
            )
        for batch_id in uncounted:
            data_manager.update_count_item(context.workbook, count_id, batch_id, field_values={"CountedQuantity": 0})
        fields: Dict[str, object] = {"SubmittedAt": timestamp.isoformat()}
        if count.started_at is None:
            fields["StartedAt"] = timestamp.isoformat()
        _write_status(context, count_id, CountStatus.PENDING_REVIEW, **fields)
        submitted = core_logic.get_count(context, count_id)
    log.info("Physical count '%s' submitted for review (%d zero-filled)", count_id, len(uncounted))
    return submitted


def _verify_approval(context: RuntimeContext, count_id: str, expected: Mapping[str, int]) -> None:
    """Read back what approval wrote and fail loudly on any mismatch."""

    core_logic._invalidate_cache(context, "batches", "counts")
    mismatched = [
        batch_id
        for batch_id, quantity in expected.items()
        if core_logic.get_batch(context, batch_id).quantity != quantity
    ]
    status = core_logic.get_count(context, count_id).status
    if mismatched or status != CountStatus.COMPLETED:
        log.critical(
            "Approval read-back of count '%s' failed: status %s, mismatched batches %s",
            count_id,
            status.value,
            ", ".join(mismatched) or "none",
        )
        raise PartialCommitDetected(f"Approval of count '{count_id}' did not commit as written")


def approve_count(
    context: RuntimeContext,
    count_id: str,
    *,
    reviewer_id: str,
    reasons: Optional[Mapping[str, ReasonInput]] = None,
    timestamp: Optional[datetime] = None,
) -> CountRow:
    """Commit a reviewed count and release its freeze.

    For every line whose counted quantity differs from its snapshot the batch
    is set to the counted quantity and an adjustment tagged with the count id
    is appended. Zero-variance counts complete without touching any batch.
    All writes form one atomic unit and are verified by reading them back.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        count_id (str): Count to approve.
        reviewer_id (str): User approving the count.
        reasons (Mapping[str, VarianceReason | str] | None): Reason codes
            keyed by batch id, overriding those entered during counting.
        timestamp (datetime | None): Review time; defaults to now.

    Returns:
        CountRow: The completed count.

    Raises:
        InvalidTransition: If the count is not ``Pending Review``, including
            when a concurrent approval already completed it.
        MissingVarianceReason: If any nonzero variance lacks a reason code.
        PartialCommitDetected: If the committed values fail read-back.
    """
    overrides = {batch_id: _reason_text(reason) for batch_id, reason in (reasons or {}).items()}
    timestamp = core_logic.resolve_timestamp(timestamp)
    with core_logic.atomic(context, *APPROVAL_SHEETS):
        count = _reload_count(context, count_id)
        _require_transition(count, CountStatus.COMPLETED)
        items = core_logic.get_count_items(context, count_id)

        unknown = set(overrides) - {item.batch_id for item in items}
        if unknown:
            raise MissingReferenceError(
                f"Batches not part of count '{count_id}': {', '.join(sorted(unknown))}"
            )

        variances = [item for item in items if item.variance]
        missing = [
            item.batch_id
            for item in variances
            if not (overrides.get(item.batch_id) or item.variance_reason)
        ]
        if missing:
            log.warning("Approval of count '%s' blocked: %d variance(s) lack a reason", count_id, len(missing))
            raise MissingVarianceReason(count_id, missing)

        freeze = core_logic.get_freeze_index(context)
        taken = set(core_logic._taken_record_ids(context))
        expected: Dict[str, int] = {}
        for item in variances:
            reason = overrides.get(item.batch_id) or item.variance_reason
            batch = core_logic.get_batch(context, item.batch_id)
            if freeze.blocking_count(batch.batch_id) != count_id:
                raise BusinessRuleViolation(
                    f"Batch '{batch.batch_id}' is not held by count '{count_id}'"
                )
            if batch.quantity != item.system_quantity:
                log.warning(
                    "Batch '%s' drifted from snapshot %d to %d during count '%s'",
                    batch.batch_id,
                    item.system_quantity,
                    batch.quantity,
                    count_id,
                )
            record_id = core_logic.generate_id("ADJ", when=timestamp, taken=taken)
            taken.add(record_id)
            data_manager.set_batch_quantity(context.workbook, batch.batch_id, item.counted_quantity)
            data_manager.append_adjustment(
                context.workbook,
                AdjustmentRecord(
                    record_id=record_id,
                    reference=count.name or count_id,
                    timestamp=timestamp,
                    facility_id=count.facility_id,
                    user_id=reviewer_id,
                    batch_id=batch.batch_id,
                    from_quantity=item.system_quantity,
                    to_quantity=item.counted_quantity,
                    reason=reason,
                    count_id=count_id,
                ),
            )
            if reason != item.variance_reason:
                data_manager.update_count_item(
                    context.workbook, count_id, item.batch_id, field_values={"VarianceReason": reason}
                )
            expected[batch.batch_id] = item.counted_quantity

        _write_status(
            context,
            count_id,
            CountStatus.COMPLETED,
            ReviewedBy=reviewer_id,
            ReviewedAt=timestamp.isoformat(),
        )
        _verify_approval(context, count_id, expected)
        released = freeze.release_batches(count_id)
        core_logic._invalidate_cache(context, "batches", "records", "counts")
        completed = core_logic.get_count(context, count_id)
    log.info(
        "Approved physical count '%s': %d variance(s) applied, %d batch(es) released",
        count_id,
        len(expected),
        released,
    )
    return completed


def reject_count(
    context: RuntimeContext,
    count_id: str,
    *,
    reviewer_id: str,
    notes: str,
    timestamp: Optional[datetime] = None,
) -> CountRow:
    """Send a count back for recounting; counted quantities and the freeze stay.

    Raises:
        ValueError: If ``notes`` is blank.
        InvalidTransition: If the count is not ``Pending Review``.
    """
    if not notes or not notes.strip():
        raise ValueError("Rejecting a count requires notes")
    timestamp = core_logic.resolve_timestamp(timestamp)
    with core_logic.atomic(context, *COUNT_SHEETS):
        count = _reload_count(context, count_id)
        if count.status != CountStatus.PENDING_REVIEW:
            raise InvalidTransition(count_id, count.status.value, CountStatus.IN_PROGRESS.value)
        _write_status(
            context,
            count_id,
            CountStatus.IN_PROGRESS,
            RejectionNotes=notes.strip(),
            ReviewedBy=reviewer_id,
            ReviewedAt=timestamp.isoformat(),
        )
        rejected = core_logic.get_count(context, count_id)
    log.info("Physical count '%s' rejected by '%s'", count_id, reviewer_id)
    return rejected


def cancel_count(
    context: RuntimeContext,
    count_id: str,
    *,
    user_id: str,
    timestamp: Optional[datetime] = None,
) -> CountRow:
    """Abandon an open count, discarding counted quantities and releasing its freeze."""

    timestamp = core_logic.resolve_timestamp(timestamp)
    with core_logic.atomic(context, *COUNT_SHEETS):
        count = _reload_count(context, count_id)
        _require_transition(count, CountStatus.CANCELLED)
        for item in core_logic.get_count_items(context, count_id):
            if item.counted_quantity is not None:
                data_manager.update_count_item(
                    context.workbook, count_id, item.batch_id, field_values={"CountedQuantity": None}
                )
        _write_status(
            context,
            count_id,
            CountStatus.CANCELLED,
            CancelledBy=user_id,
            CancelledAt=timestamp.isoformat(),
        )
        released = core_logic.get_freeze_index(context).release_batches(count_id)
        cancelled = core_logic.get_count(context, count_id)
    log.info("Physical count '%s' cancelled by '%s'; %d batch(es) released", count_id, user_id, released)
    return cancelled


def transition_status(
    context: RuntimeContext,
    count_id: str,
    target: CountStatus,
    *,
    user_id: str,
    notes: Optional[str] = None,
    reasons: Optional[Mapping[str, ReasonInput]] = None,
    zero_fill_uncounted: bool = False,
    timestamp: Optional[datetime] = None,
) -> CountRow:
    """Move a count to ``target`` through the matching workflow operation.

    ``In Progress`` means start from ``Pending`` and reject from
    ``Pending Review``; the other targets map one-to-one onto submit, approve
    and cancel.

    Raises:
        InvalidTransition: If ``target`` is not reachable from the current
            status. The count is left unchanged.
    """
    count = _reload_count(context, count_id)
    _require_transition(count, target)

    if target == CountStatus.IN_PROGRESS:
        if count.status == CountStatus.PENDING_REVIEW:
            return reject_count(context, count_id, reviewer_id=user_id, notes=notes or "", timestamp=timestamp)
        return start_count(context, count_id, timestamp=timestamp)
    if target == CountStatus.PENDING_REVIEW:
        return submit_count(context, count_id, zero_fill_uncounted=zero_fill_uncounted, timestamp=timestamp)
    if target == CountStatus.COMPLETED:
        return approve_count(context, count_id, reviewer_id=user_id, reasons=reasons, timestamp=timestamp)
    return cancel_count(context, count_id, user_id=user_id, timestamp=timestamp)


def summarize_variances(context: RuntimeContext, count_id: str) -> List[VarianceLine]:
    """Build review rows for a count, with the ledger balance as a drift check."""

    core_logic.get_count(context, count_id)
    lines: List[VarianceLine] = []
    for item in core_logic.get_count_items(context, count_id):
        batch = core_logic.find_batch(context, item.batch_id)
        lines.append(
            VarianceLine(
                batch_id=item.batch_id,
                item_id=batch.item_id if batch is not None else None,
                system_quantity=item.system_quantity,
                counted_quantity=item.counted_quantity,
                variance=item.variance,
                variance_reason=item.variance_reason,
                ledger_balance=current_balance(context, item.batch_id),
            )
        )
    return lines


def delete_count(context: RuntimeContext, count_id: str) -> int:
    """Remove a completed or cancelled count and its lines from history.

    Returns:
        int: Number of count lines removed.

    Raises:
        InvalidTransition: If the count is still open.
    """
    with core_logic.atomic(context, *COUNT_SHEETS):
        count = _reload_count(context, count_id)
        if count.status not in TERMINAL_COUNT_STATUSES:
            raise InvalidTransition(count_id, count.status.value, "Deleted")
        data_manager.delete_rows(context.workbook, SheetName.PHYSICAL_COUNTS.value, "CountID", count_id)
        removed = data_manager.delete_rows(
            context.workbook, SheetName.PHYSICAL_COUNT_ITEMS.value, "CountID", count_id
        )
        core_logic._invalidate_cache(context, "counts")
    log.info("Deleted physical count '%s' (%d line(s))", count_id, removed)
    return removed
