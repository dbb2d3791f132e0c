"""
Transactions: ordered batches of per-record updates.

One logical cause (a deep update, a link change, a deletion) produces one
transaction, applied and broadcast as a single unit. Operations are applied
in order; a record touched twice keeps the last value per field.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from relstore.runtime.backends.base import Backend

logger = logging.getLogger(__name__)


@dataclass
class Operation:
    """One record update inside a transaction."""

    model_id: str
    record_id: str
    updates: dict[str, Any]
    action: str = "update"

    def to_dict(self) -> dict[str, Any]:
        """Wire format, as carried by bulk events."""
        return {
            "action": self.action,
            "modelId": self.model_id,
            "recordId": self.record_id,
            "updates": dict(self.updates),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Operation:
        return cls(
            model_id=data.get("modelId") or data["model_id"],
            record_id=data.get("recordId") or data["record_id"],
            updates=dict(data.get("updates") or {}),
            action=data.get("action", "update"),
        )


@dataclass
class Transaction:
    """
    Ordered list of record updates produced by one logical cause.

    Example:
        tx = Transaction(user_id="alice")
        tx.add_operation("invoice", "inv-1", {"total": 120})
        tx.add_operation("customer", "cus-1", {"balance": 480})
        await tx.process(db)
    """

    operations: list[Operation] = field(default_factory=list)
    user_id: str | None = None

    def __len__(self) -> int:
        return len(self.operations)

    def __iter__(self) -> Iterator[Operation]:
        return iter(self.operations)

    def add_operation(
        self,
        model_id: str | Operation,
        record_id: str | None = None,
        updates: dict[str, Any] | None = None,
    ) -> None:
        """Append an operation (or the parts of one)."""
        if isinstance(model_id, Operation):
            self.operations.append(model_id)
            return
        if record_id is None:
            raise ValueError("record_id is required")
        self.operations.append(Operation(model_id, record_id, dict(updates or {})))

    def extend(self, other: Transaction) -> None:
        self.operations.extend(other.operations)

    def merged(self) -> list[Operation]:
        """
        Merge operations per (model, record), in first-seen order.

        Later updates overwrite earlier ones field by field. Operations whose
        merged updates are empty are dropped.
        """
        grouped: dict[tuple[str, str], dict[str, Any]] = {}
        for op in self.operations:
            grouped.setdefault((op.model_id, op.record_id), {}).update(op.updates)
        return [
            Operation(model_id, record_id, updates)
            for (model_id, record_id), updates in grouped.items()
            if updates
        ]

    def to_list(self) -> list[dict[str, Any]]:
        return [op.to_dict() for op in self.merged()]

    async def process(self, db: Backend, now: datetime | None = None) -> list[Operation]:
        """
        Apply the transaction through a backend.

        A single operation is downgraded to ``update_one``; several go
        through ``update_bulk`` (one broadcast).

        Returns:
            The applied operations, or ``[]`` when nothing was applied
        """
        operations = self.merged()
        if not operations:
            return []

        if self.user_id:
            stamp = (now or datetime.now()).isoformat(timespec="milliseconds")
            for op in operations:
                op.updates["updatedAt"] = stamp
                op.updates["updatedBy"] = self.user_id

        if len(operations) == 1:
            op = operations[0]
            result = await db.update_one(op.model_id, op.record_id, op.updates)
        else:
            result = await db.update_bulk(operations)

        if not result.ok:
            logger.error("Transaction failed: %s", result.error)
            return []
        return operations
