from __future__ import annotations

from typing import Dict, Iterable, Optional


class PendingContributionTracker:
    """Value sent to the sale contract that no block has included yet."""

    def __init__(self, sale_address: str) -> None:
        self.sale_address = sale_address.lower()
        self._pending: Dict[str, int] = {}

    def observe(self, tx_hash: str, recipient: Optional[str], value: int) -> bool:
        if not recipient or recipient.lower() != self.sale_address:
            return False
        self._pending[tx_hash.lower()] = int(value)
        return True

    def confirm(self, tx_hashes: Iterable[str]) -> int:
        removed = 0
        for tx_hash in tx_hashes:
            if self._pending.pop(tx_hash.lower(), None) is not None:
                removed += 1
        return removed

    def total(self) -> int:
        return sum(self._pending.values())

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, tx_hash: object) -> bool:
        return isinstance(tx_hash, str) and tx_hash.lower() in self._pending


__all__ = ["PendingContributionTracker"]
