"""Freeze Index: the admission-control gate consulted before batch mutations.

A batch is frozen while it belongs to a physical count whose status is
Pending, In Progress or Pending Review. The index is derived state. It can
always be rebuilt from the count sheets with :meth:`FreezeIndex.from_counts`
and is maintained incrementally between rebuilds by the count workflow.
"""

from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional

from . import log
from .constants import ACTIVE_COUNT_STATUSES
from .data_manager import CountItemRow, CountRow
from .exceptions import BatchFrozen


class FreezeIndex:
    """Track which open count owns each frozen batch."""

    def __init__(self) -> None:
        self._owners: Dict[str, str] = {}
        self._names: Dict[str, str] = {}

    @classmethod
    def from_counts(cls, counts: Iterable[CountRow], items: Iterable[CountItemRow]) -> "FreezeIndex":
        """Rebuild the index as the union of all active counts' batches."""

        index = cls()
        active = {count.count_id: count for count in counts if count.status in ACTIVE_COUNT_STATUSES}
        batches_by_count: Dict[str, list[str]] = {}
        for item in items:
            if item.count_id in active:
                batches_by_count.setdefault(item.count_id, []).append(item.batch_id)
        for count_id, batch_ids in batches_by_count.items():
            index.lock_batches(count_id, batch_ids, count_name=active[count_id].name)
        log.debug("Rebuilt freeze index: %d batch(es) across %d count(s)", len(index), len(batches_by_count))
        return index

    def __len__(self) -> int:
        return len(self._owners)

    def __contains__(self, batch_id: object) -> bool:
        return batch_id in self._owners

    def is_frozen(self, batch_id: str) -> bool:
        return batch_id in self._owners

    def blocking_count(self, batch_id: str) -> Optional[str]:
        """Return the id of the count freezing ``batch_id``, if any."""

        return self._owners.get(batch_id)

    def frozen_batches(self) -> Mapping[str, str]:
        """Return a copy of the ``batch_id -> count_id`` membership."""

        return dict(self._owners)

    def require_unfrozen(self, batch_ids: Iterable[str]) -> None:
        """Raise :class:`BatchFrozen` for the first frozen batch in ``batch_ids``."""

        for batch_id in batch_ids:
            count_id = self._owners.get(batch_id)
            if count_id is not None:
                log.warning("Rejected mutation of batch '%s': frozen by count '%s'", batch_id, count_id)
                raise BatchFrozen(batch_id, count_id, self._names.get(count_id))

    def lock_batches(self, count_id: str, batch_ids: Iterable[str], *, count_name: Optional[str] = None) -> None:
        """Freeze ``batch_ids`` on behalf of ``count_id``.

        Locking is all-or-nothing: when any batch is already owned by a
        different count nothing is locked and :class:`BatchFrozen` names the
        owner. Re-locking a batch for the same count is a no-op.
        """

        batch_ids = list(batch_ids)
        for batch_id in batch_ids:
            owner = self._owners.get(batch_id)
            if owner is not None and owner != count_id:
                raise BatchFrozen(batch_id, owner, self._names.get(owner))
        for batch_id in batch_ids:
            self._owners[batch_id] = count_id
        if count_name is not None:
            self._names[count_id] = count_name

    def release_batches(self, count_id: str) -> int:
        """Unfreeze every batch owned by ``count_id`` and return how many."""

        released = [batch_id for batch_id, owner in self._owners.items() if owner == count_id]
        for batch_id in released:
            del self._owners[batch_id]
        self._names.pop(count_id, None)
        return len(released)
