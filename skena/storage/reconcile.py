"""Converge one owner's slice of a partition to an in-memory collection.

The in-memory collection is the source of truth; the store mirrors it.
Records the owner no longer has are deleted, every desired record is
upserted, and rows of other owners are never touched. All of it happens in
one transaction, so a failure part way leaves the store as it was.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from pydantic import BaseModel

from skena.storage.store import LocalStore, owner_of

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    deleted: list[str] = field(default_factory=list)
    upserted: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.deleted or self.upserted)


def reconcile(
    store: LocalStore,
    partition: str,
    owner_id: str,
    desired: Sequence[BaseModel],
) -> ReconcileResult:
    """Make the store hold exactly ``desired`` for ``owner_id`` in ``partition``.

    Rows whose stored JSON already equals the desired record are left alone,
    so a second call with the same collection changes nothing.

    Raises:
        ValueError: a desired record belongs to another owner, or the same
            id appears twice.
        StoreTransactionFailure: the transaction failed and was rolled back.
    """
    wanted: dict[str, BaseModel] = {}
    for record in desired:
        if owner_of(partition, record) != owner_id:
            raise ValueError(
                f"{partition} record {record.id} is owned by {owner_of(partition, record)!r}, not {owner_id!r}"
            )
        if record.id in wanted:
            raise ValueError(f"Duplicate {partition} id {record.id}")
        wanted[record.id] = record

    result = ReconcileResult()
    with store.transaction(partition) as tx:
        stored = tx.rows(partition)
        existing = {rid for rid, (owner, _) in stored.items() if owner == owner_id}

        for rid in sorted(existing - wanted.keys()):
            tx.delete(partition, rid)
            result.deleted.append(rid)

        for rid, record in wanted.items():
            data = record.model_dump_json()
            row = stored.get(rid)
            if row is not None and row == (owner_id, data):
                continue
            if row is not None and row[0] != owner_id:
                raise ValueError(f"{partition} id {rid} already belongs to another owner")
            tx.put(partition, record)
            result.upserted.append(rid)

    if result.changed:
        logger.debug(
            "reconciled %s for %s: %d deleted, %d upserted",
            partition, owner_id, len(result.deleted), len(result.upserted),
        )
    return result
