"""Tests for the physical count workflow and its approval unit."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from stock_ledger import core_logic, data_manager, ledger, physical_count
from stock_ledger.constants import CountStatus, TransactionKind, VarianceReason
from stock_ledger.data_manager import LineItem
from stock_ledger.exceptions import (
    BatchFrozen,
    BusinessRuleViolation,
    EmptyLocationCount,
    InvalidTransition,
    MissingReferenceError,
    MissingVarianceReason,
)
from stock_ledger.physical_count import CountEntry, StartCountCommand


def at(day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(2024, 3, day, hour, minute, tzinfo=UTC)


def _start(context, location_id: str = "LOC-PHARM", **overrides):
    command = StartCountCommand(
        location_id=location_id,
        initiated_by=overrides.pop("initiated_by", "U-COUNTER"),
        timestamp=overrides.pop("timestamp", at(10)),
        **overrides,
    )
    return physical_count.create_count(context, command)


def _count_and_submit(context, counted, **submit_kwargs):
    """Open a count on the pharmacy, enter ``counted`` and submit it."""

    count = _start(context)
    entries = []
    for batch_id, value in counted.items():
        if isinstance(value, tuple):
            quantity, reason = value
        else:
            quantity, reason = value, None
        entries.append(CountEntry(batch_id, counted_quantity=quantity, variance_reason=reason))
    physical_count.update_count_items(context, count.count_id, entries, timestamp=at(10, 1))
    physical_count.submit_count(context, count.count_id, timestamp=at(10, 2), **submit_kwargs)
    return count


def _adjustments(context):
    return core_logic.list_records(context, TransactionKind.ADJUSTMENT)


def test_create_count_snapshots_location_and_freezes_members(runtime_context, receive_stock):
    first = receive_stock(100)
    second = receive_stock(40, item_id="ITEM-PARA", lot_number="LOT-9")
    elsewhere = receive_stock(25, location_id="LOC-WARD")

    count = _start(runtime_context)

    assert count.status == CountStatus.PENDING
    assert count.name == "Main Pharmacy count 2024-03-10"
    assert count.assigned_to == "U-COUNTER"
    items = {item.batch_id: item for item in core_logic.get_count_items(runtime_context, count.count_id)}
    assert set(items) == {first, second}
    assert items[first].system_quantity == 100
    assert items[second].counted_quantity is None
    assert core_logic.is_frozen(runtime_context, first)
    assert core_logic.is_frozen(runtime_context, second)
    assert not core_logic.is_frozen(runtime_context, elsewhere)


def test_freeze_survives_reload_from_workbook(runtime_context, receive_stock):
    batch_id = receive_stock(100)
    count = _start(runtime_context)

    core_logic.persist_context(runtime_context)
    reloaded = core_logic.refresh_context(runtime_context)

    assert core_logic.get_freeze_index(reloaded).blocking_count(batch_id) == count.count_id


def test_empty_location_count_creates_nothing(runtime_context):
    with pytest.raises(EmptyLocationCount) as excinfo:
        _start(runtime_context, location_id="LOC-EMPTY")

    assert excinfo.value.location_id == "LOC-EMPTY"
    assert core_logic.list_counts(runtime_context) == []
    assert core_logic.get_freeze_index(runtime_context).frozen_batches() == {}


def test_unknown_location_count_is_rejected(runtime_context):
    with pytest.raises(MissingReferenceError):
        _start(runtime_context, location_id="LOC-NOWHERE")


def test_overlapping_count_is_rejected_without_partial_locks(runtime_context, receive_stock):
    batch_id = receive_stock(100)
    first = _start(runtime_context)

    with pytest.raises(BatchFrozen) as excinfo:
        _start(runtime_context, timestamp=at(10, 5))

    assert excinfo.value.count_id == first.count_id
    assert [count.count_id for count in core_logic.list_counts(runtime_context)] == [first.count_id]
    assert core_logic.get_freeze_index(runtime_context).frozen_batches() == {batch_id: first.count_id}


def test_approval_applies_variance_and_releases_freeze(runtime_context, receive_stock):
    """100 on the books, 92 on the shelf, reason Misplaced Item."""

    batch_id = receive_stock(100)
    count = _count_and_submit(runtime_context, {batch_id: (92, VarianceReason.MISPLACED)})

    completed = physical_count.approve_count(
        runtime_context, count.count_id, reviewer_id="U-REVIEWER", timestamp=at(11)
    )

    assert completed.status == CountStatus.COMPLETED
    assert completed.reviewed_by == "U-REVIEWER"
    assert completed.reviewed_at == at(11)
    assert core_logic.get_batch(runtime_context, batch_id).quantity == 92
    adjustments = _adjustments(runtime_context)
    assert len(adjustments) == 1
    assert adjustments[0].count_id == count.count_id
    assert adjustments[0].reason == "Misplaced Item"
    assert (adjustments[0].from_quantity, adjustments[0].to_quantity) == (100, 92)
    assert adjustments[0].reference == count.name
    assert ledger.current_balance(runtime_context, batch_id) == 92
    assert not core_logic.is_frozen(runtime_context, batch_id)


def test_approved_count_ledger_closes_at_counted_quantity(runtime_context, receive_stock):
    batch_id = receive_stock(100, when=at(1))
    core_logic.record_dispense(
        runtime_context,
        core_logic.DispenseCommand("FAC-MAIN", "U1", [LineItem(batch_id, 13)], timestamp=at(2)),
    )
    count = _count_and_submit(runtime_context, {batch_id: (90, VarianceReason.FOUND_STOCK)})
    physical_count.approve_count(runtime_context, count.count_id, reviewer_id="U-REVIEWER", timestamp=at(11))

    assert ledger.build_ledger(runtime_context, batch_id=batch_id).closing_balance == 90


def test_zero_variance_approval_touches_no_batch(runtime_context, receive_stock):
    first = receive_stock(100)
    second = receive_stock(40, item_id="ITEM-PARA")
    count = _count_and_submit(runtime_context, {first: 100, second: 40})

    completed = physical_count.approve_count(runtime_context, count.count_id, reviewer_id="U-REVIEWER")

    assert completed.status == CountStatus.COMPLETED
    assert _adjustments(runtime_context) == []
    assert core_logic.get_batch(runtime_context, first).quantity == 100
    assert core_logic.get_batch(runtime_context, second).quantity == 40
    assert core_logic.get_freeze_index(runtime_context).frozen_batches() == {}


def test_missing_reasons_block_approval_and_list_batches(runtime_context, receive_stock):
    first = receive_stock(100)
    second = receive_stock(40, item_id="ITEM-PARA")
    exact = receive_stock(10, item_id="ITEM-IBU")
    count = _count_and_submit(runtime_context, {first: 98, second: 41, exact: 10})

    with pytest.raises(MissingVarianceReason) as excinfo:
        physical_count.approve_count(runtime_context, count.count_id, reviewer_id="U-REVIEWER")

    assert set(excinfo.value.batch_ids) == {first, second}
    assert core_logic.get_count(runtime_context, count.count_id).status == CountStatus.PENDING_REVIEW
    assert core_logic.get_batch(runtime_context, first).quantity == 100


def test_reasons_supplied_at_approval_are_recorded(runtime_context, receive_stock):
    batch_id = receive_stock(100)
    count = _count_and_submit(runtime_context, {batch_id: 95})

    physical_count.approve_count(
        runtime_context,
        count.count_id,
        reviewer_id="U-REVIEWER",
        reasons={batch_id: "Suspected Theft"},
    )

    assert _adjustments(runtime_context)[0].reason == VarianceReason.THEFT.value
    item = core_logic.get_count_items(runtime_context, count.count_id)[0]
    assert item.variance_reason == VarianceReason.THEFT.value


def test_unknown_reason_code_is_rejected(runtime_context, receive_stock):
    batch_id = receive_stock(100)
    count = _start(runtime_context)
    with pytest.raises(ValueError):
        physical_count.update_count_items(
            runtime_context, count.count_id, [CountEntry(batch_id, 90, variance_reason="Gremlins")]
        )


def test_approval_is_all_or_nothing(runtime_context, receive_stock, monkeypatch):
    first = receive_stock(100)
    second = receive_stock(40, item_id="ITEM-PARA")
    count = _count_and_submit(
        runtime_context,
        {first: (92, VarianceReason.MISPLACED), second: (45, VarianceReason.FOUND_STOCK)},
    )

    original_append = data_manager.append_adjustment
    calls = []

    def _fail_on_second(workbook, record):
        calls.append(record.batch_id)
        if len(calls) == 2:
            raise OSError("disk full")
        original_append(workbook, record)

    monkeypatch.setattr(data_manager, "append_adjustment", _fail_on_second)

    with pytest.raises(OSError):
        physical_count.approve_count(runtime_context, count.count_id, reviewer_id="U-REVIEWER")

    assert len(calls) == 2
    assert core_logic.get_batch(runtime_context, first).quantity == 100
    assert core_logic.get_batch(runtime_context, second).quantity == 40
    assert _adjustments(runtime_context) == []
    assert core_logic.get_count(runtime_context, count.count_id).status == CountStatus.PENDING_REVIEW
    assert core_logic.get_freeze_index(runtime_context).frozen_batches() == {
        first: count.count_id,
        second: count.count_id,
    }


def test_second_approval_is_an_invalid_transition(runtime_context, receive_stock):
    batch_id = receive_stock(100)
    count = _count_and_submit(runtime_context, {batch_id: (92, VarianceReason.MISPLACED)})
    physical_count.approve_count(runtime_context, count.count_id, reviewer_id="U-REVIEWER")

    with pytest.raises(InvalidTransition) as excinfo:
        physical_count.approve_count(runtime_context, count.count_id, reviewer_id="U-OTHER")

    assert excinfo.value.current == CountStatus.COMPLETED.value
    assert len(_adjustments(runtime_context)) == 1
    assert core_logic.get_batch(runtime_context, batch_id).quantity == 92


def test_entering_data_starts_a_pending_count(runtime_context, receive_stock):
    batch_id = receive_stock(100)
    count = _start(runtime_context)

    updated = physical_count.update_count_items(
        runtime_context, count.count_id, [CountEntry(batch_id, 97)], timestamp=at(10, 3)
    )

    assert updated.status == CountStatus.IN_PROGRESS
    assert updated.started_at == at(10, 3)


def test_start_count_only_from_pending(runtime_context, receive_stock):
    receive_stock(100)
    count = _start(runtime_context)
    started = physical_count.start_count(runtime_context, count.count_id, timestamp=at(10, 1))
    assert started.status == CountStatus.IN_PROGRESS

    with pytest.raises(InvalidTransition):
        physical_count.start_count(runtime_context, count.count_id)


def test_entry_for_batch_outside_count_is_rejected(runtime_context, receive_stock):
    receive_stock(100)
    outside = receive_stock(5, location_id="LOC-WARD")
    count = _start(runtime_context)

    with pytest.raises(MissingReferenceError):
        physical_count.update_count_items(runtime_context, count.count_id, [CountEntry(outside, 5)])


def test_submit_requires_every_line_counted(runtime_context, receive_stock):
    first = receive_stock(100)
    receive_stock(40, item_id="ITEM-PARA")
    count = _start(runtime_context)
    physical_count.update_count_items(runtime_context, count.count_id, [CountEntry(first, 100)])

    with pytest.raises(BusinessRuleViolation):
        physical_count.submit_count(runtime_context, count.count_id)

    assert core_logic.get_count(runtime_context, count.count_id).status == CountStatus.IN_PROGRESS


def test_submit_can_zero_fill_uncounted_lines(runtime_context, receive_stock):
    first = receive_stock(100)
    second = receive_stock(40, item_id="ITEM-PARA")
    count = _start(runtime_context)
    physical_count.update_count_items(runtime_context, count.count_id, [CountEntry(first, 100)])

    submitted = physical_count.submit_count(
        runtime_context, count.count_id, zero_fill_uncounted=True, timestamp=at(10, 4)
    )

    assert submitted.status == CountStatus.PENDING_REVIEW
    assert submitted.submitted_at == at(10, 4)
    items = {item.batch_id: item for item in core_logic.get_count_items(runtime_context, count.count_id)}
    assert items[second].counted_quantity == 0
    assert items[second].variance == -40


def test_quantities_are_locked_while_pending_review(runtime_context, receive_stock):
    batch_id = receive_stock(100)
    count = _count_and_submit(runtime_context, {batch_id: 95})

    with pytest.raises(InvalidTransition):
        physical_count.update_count_items(runtime_context, count.count_id, [CountEntry(batch_id, 96)])

    physical_count.update_count_items(
        runtime_context,
        count.count_id,
        [CountEntry(batch_id, variance_reason=VarianceReason.DATA_ENTRY_ERROR, notes="keyed wrong")],
    )
    item = core_logic.get_count_items(runtime_context, count.count_id)[0]
    assert item.counted_quantity == 95
    assert item.variance_reason == VarianceReason.DATA_ENTRY_ERROR.value
    assert item.notes == "keyed wrong"


def test_reject_returns_count_for_recount_and_keeps_freeze(runtime_context, receive_stock):
    batch_id = receive_stock(100)
    count = _count_and_submit(runtime_context, {batch_id: 80})

    rejected = physical_count.reject_count(
        runtime_context, count.count_id, reviewer_id="U-REVIEWER", notes="  recount shelf B  "
    )

    assert rejected.status == CountStatus.IN_PROGRESS
    assert rejected.rejection_notes == "recount shelf B"
    assert core_logic.get_count_items(runtime_context, count.count_id)[0].counted_quantity == 80
    assert core_logic.is_frozen(runtime_context, batch_id)

    physical_count.update_count_items(runtime_context, count.count_id, [CountEntry(batch_id, 100)])
    physical_count.submit_count(runtime_context, count.count_id)
    physical_count.approve_count(runtime_context, count.count_id, reviewer_id="U-REVIEWER")
    assert _adjustments(runtime_context) == []


def test_reject_requires_notes(runtime_context, receive_stock):
    batch_id = receive_stock(100)
    count = _count_and_submit(runtime_context, {batch_id: 80})
    with pytest.raises(ValueError):
        physical_count.reject_count(runtime_context, count.count_id, reviewer_id="U-REVIEWER", notes="   ")


def test_cancel_discards_counts_and_releases_freeze(runtime_context, receive_stock):
    batch_id = receive_stock(100)
    count = _start(runtime_context)
    physical_count.update_count_items(runtime_context, count.count_id, [CountEntry(batch_id, 70)])

    cancelled = physical_count.cancel_count(runtime_context, count.count_id, user_id="U-BOSS", timestamp=at(12))

    assert cancelled.status == CountStatus.CANCELLED
    assert cancelled.cancelled_by == "U-BOSS"
    assert cancelled.cancelled_at == at(12)
    assert core_logic.get_count_items(runtime_context, count.count_id)[0].counted_quantity is None
    assert not core_logic.is_frozen(runtime_context, batch_id)
    assert core_logic.get_batch(runtime_context, batch_id).quantity == 100

    core_logic.record_dispense(
        runtime_context, core_logic.DispenseCommand("FAC-MAIN", "U1", [LineItem(batch_id, 1)])
    )


@pytest.mark.parametrize("terminal", [CountStatus.COMPLETED, CountStatus.CANCELLED])
def test_terminal_counts_accept_no_transition(runtime_context, receive_stock, terminal):
    batch_id = receive_stock(100)
    count = _count_and_submit(runtime_context, {batch_id: 100})
    physical_count.transition_status(runtime_context, count.count_id, terminal, user_id="U-REVIEWER")

    for target in CountStatus:
        with pytest.raises(InvalidTransition):
            physical_count.transition_status(runtime_context, count.count_id, target, user_id="U-REVIEWER")


def test_transition_status_routes_to_workflow_operations(runtime_context, receive_stock):
    batch_id = receive_stock(100)
    count = _start(runtime_context)

    with pytest.raises(InvalidTransition):
        physical_count.transition_status(runtime_context, count.count_id, CountStatus.COMPLETED, user_id="U1")
    assert core_logic.get_count(runtime_context, count.count_id).status == CountStatus.PENDING

    started = physical_count.transition_status(runtime_context, count.count_id, CountStatus.IN_PROGRESS, user_id="U1")
    assert started.status == CountStatus.IN_PROGRESS

    physical_count.update_count_items(runtime_context, count.count_id, [CountEntry(batch_id, 99)])
    physical_count.transition_status(runtime_context, count.count_id, CountStatus.PENDING_REVIEW, user_id="U1")
    rejected = physical_count.transition_status(
        runtime_context, count.count_id, CountStatus.IN_PROGRESS, user_id="U-REVIEWER", notes="check again"
    )
    assert rejected.rejection_notes == "check again"

    physical_count.transition_status(runtime_context, count.count_id, CountStatus.PENDING_REVIEW, user_id="U1")
    completed = physical_count.transition_status(
        runtime_context,
        count.count_id,
        CountStatus.COMPLETED,
        user_id="U-REVIEWER",
        reasons={batch_id: VarianceReason.OTHER},
    )
    assert completed.status == CountStatus.COMPLETED
    assert core_logic.get_batch(runtime_context, batch_id).quantity == 99


def test_summarize_variances_flags_ledger_drift(runtime_context, receive_stock):
    batch_id = receive_stock(100, when=at(1))
    count = _start(runtime_context)
    physical_count.update_count_items(runtime_context, count.count_id, [CountEntry(batch_id, 94)])
    # History written behind the freeze, as an external import might.
    data_manager.append_line_record(
        runtime_context.workbook,
        data_manager.LineRecord(
            record_id="DSP-IMPORTED",
            kind=TransactionKind.DISPENSE,
            reference="import",
            timestamp=at(10, 10),
            facility_id="FAC-MAIN",
            user_id="U-IMPORT",
            lines=(LineItem(batch_id, 4),),
        ),
    )
    core_logic._invalidate_cache(runtime_context, "records")

    [line] = physical_count.summarize_variances(runtime_context, count.count_id)

    assert line.item_id == "ITEM-AMOX"
    assert line.variance == -6
    assert line.ledger_balance == 96
    assert line.ledger_drift == -4


def test_delete_count_requires_terminal_status(runtime_context, receive_stock):
    batch_id = receive_stock(100)
    count = _count_and_submit(runtime_context, {batch_id: (92, VarianceReason.MISPLACED)})

    with pytest.raises(InvalidTransition) as excinfo:
        physical_count.delete_count(runtime_context, count.count_id)
    assert excinfo.value.target == "Deleted"

    physical_count.approve_count(runtime_context, count.count_id, reviewer_id="U-REVIEWER")
    assert physical_count.delete_count(runtime_context, count.count_id) == 1

    with pytest.raises(MissingReferenceError):
        core_logic.get_count(runtime_context, count.count_id)
    assert ledger.current_balance(runtime_context, batch_id) == 92
    assert len(_adjustments(runtime_context)) == 1
