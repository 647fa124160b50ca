"""Pending-charges ledger: charges recorded locally but not yet synced.

Pure data model — no I/O. The billing service owns exactly one live
ledger and swaps it for a fresh one at the start of each sync attempt.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# CategoryCharges
# ---------------------------------------------------------------------------


@dataclass
class CategoryCharges:
    """Aggregate counter for one (account, category) pair."""

    count: int = 0
    credits: float = 0

    def add(self, other: CategoryCharges) -> None:
        self.count += other.count
        self.credits += other.credits

    def to_wire(self) -> list[float]:
        return [self.count, self.credits]


# ---------------------------------------------------------------------------
# PendingCharges
# ---------------------------------------------------------------------------


@dataclass
class PendingCharges:
    """Charges keyed by account id, then by pricing category.

    Serialized on the wire as ``{accountId: {category: [count, credits]}}``.
    """

    entries: dict[str, dict[str, CategoryCharges]] = field(default_factory=dict)

    def record(self, account_id: str, category: str, credits: float) -> None:
        """Count one charge of ``credits`` against ``account_id``/``category``."""
        charges = self.entries.setdefault(account_id, {}).setdefault(
            category, CategoryCharges()
        )
        charges.count += 1
        charges.credits += credits

    def merge(self, other: PendingCharges) -> None:
        """Add ``other`` into this ledger element-wise. Never overwrites."""
        for account_id, categories in other.entries.items():
            mine = self.entries.setdefault(account_id, {})
            for category, charges in categories.items():
                mine.setdefault(category, CategoryCharges()).add(charges)

    def get(self, account_id: str, category: str) -> CategoryCharges | None:
        return self.entries.get(account_id, {}).get(category)

    def total_credits(self, account_id: str | None = None) -> float:
        """Sum of pending credits, for one account or for all of them."""
        if account_id is not None:
            return sum(c.credits for c in self.entries.get(account_id, {}).values())
        return sum(
            c.credits for categories in self.entries.values() for c in categories.values()
        )

    def total_count(self) -> int:
        return sum(
            c.count for categories in self.entries.values() for c in categories.values()
        )

    def to_wire(self) -> dict[str, dict[str, list[Any]]]:
        return {
            account_id: {category: c.to_wire() for category, c in categories.items()}
            for account_id, categories in self.entries.items()
        }

    def __len__(self) -> int:
        """Number of accounts with pending charges."""
        return len(self.entries)
