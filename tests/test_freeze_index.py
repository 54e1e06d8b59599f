"""Unit tests for the in-memory Freeze Index."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from stock_ledger.constants import CountStatus
from stock_ledger.data_manager import CountItemRow, CountRow
from stock_ledger.exceptions import BatchFrozen
from stock_ledger.freeze_index import FreezeIndex


STAMP = datetime(2024, 3, 1, tzinfo=UTC)


def _count(count_id: str, status: CountStatus) -> CountRow:
    return CountRow(
        count_id=count_id,
        name=f"Count {count_id}",
        facility_id="FAC-MAIN",
        location_id="LOC-PHARM",
        status=status,
        initiated_by="U1",
        assigned_to="U1",
        initiated_at=STAMP,
    )


@pytest.mark.parametrize(
    "status, frozen",
    [
        (CountStatus.PENDING, True),
        (CountStatus.IN_PROGRESS, True),
        (CountStatus.PENDING_REVIEW, True),
        (CountStatus.COMPLETED, False),
        (CountStatus.CANCELLED, False),
    ],
)
def test_from_counts_freezes_only_active_counts(status, frozen):
    """A batch is frozen exactly when it belongs to a count in an active status."""

    index = FreezeIndex.from_counts([_count("PC1", status)], [CountItemRow("PC1", "B1", 10)])

    assert index.is_frozen("B1") is frozen
    assert ("B1" in index) is frozen
    assert index.is_frozen("B2") is False


def test_from_counts_ignores_items_of_unknown_counts():
    index = FreezeIndex.from_counts([], [CountItemRow("PC-GONE", "B1", 1)])
    assert len(index) == 0


def test_lock_batches_records_owner():
    index = FreezeIndex()
    index.lock_batches("PC1", ["B1", "B2"], count_name="March count")

    assert index.blocking_count("B1") == "PC1"
    assert index.frozen_batches() == {"B1": "PC1", "B2": "PC1"}


def test_lock_batches_is_all_or_nothing_against_other_owner():
    """A second count overlapping an open count must lock nothing at all."""

    index = FreezeIndex()
    index.lock_batches("PC1", ["B2"], count_name="First")

    with pytest.raises(BatchFrozen) as excinfo:
        index.lock_batches("PC2", ["B1", "B2", "B3"])

    assert excinfo.value.count_id == "PC1"
    assert index.frozen_batches() == {"B2": "PC1"}


def test_relocking_for_same_count_is_a_no_op():
    index = FreezeIndex()
    index.lock_batches("PC1", ["B1"])
    index.lock_batches("PC1", ["B1"])
    assert len(index) == 1


def test_require_unfrozen_names_blocking_count():
    index = FreezeIndex()
    index.lock_batches("PC7", ["B1"], count_name="Ward count")

    index.require_unfrozen(["B2", "B3"])
    with pytest.raises(BatchFrozen) as excinfo:
        index.require_unfrozen(["B2", "B1"])

    assert excinfo.value.batch_id == "B1"
    assert excinfo.value.count_name == "Ward count"
    assert "Ward count" in str(excinfo.value)
    assert "PC7" in str(excinfo.value)


def test_release_batches_only_touches_the_given_count():
    index = FreezeIndex()
    index.lock_batches("PC1", ["B1", "B2"])
    index.lock_batches("PC2", ["B3"])

    assert index.release_batches("PC1") == 2
    assert index.frozen_batches() == {"B3": "PC2"}
    assert index.release_batches("PC1") == 0


def test_frozen_batches_returns_a_copy():
    index = FreezeIndex()
    index.lock_batches("PC1", ["B1"])
    snapshot = index.frozen_batches()
    snapshot["B9"] = "PC9"
    assert not index.is_frozen("B9")
