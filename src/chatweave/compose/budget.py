"""Token budget bookkeeping."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from chatweave.errors import BudgetExceeded

logger = logging.getLogger(__name__)


class Budget:
    """Remaining token allowance for one composed request.

    The remaining amount never goes below zero: every reservation is checked
    first and raises `BudgetExceeded` when it does not fit.
    """

    def __init__(self, total: int) -> None:
        if total < 0:
            raise ValueError(f"budget must be non-negative, got {total}")
        self.total = total
        self._remaining = total

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def used(self) -> int:
        return self.total - self._remaining

    def can_afford(self, cost: int) -> bool:
        return cost <= self._remaining

    def can_afford_all(self, costs: Iterable[int]) -> bool:
        return self.can_afford(sum(costs))

    def reserve(self, cost: int, identifier: str = "<reservation>") -> None:
        if not self.can_afford(cost):
            raise BudgetExceeded(identifier, cost, self._remaining)
        self._remaining -= cost
        logger.debug("Reserved %d tokens for %s (%d left)", cost, identifier, self._remaining)

    def free(self, cost: int) -> None:
        """Return previously reserved capacity."""
        self._remaining = min(self.total, self._remaining + cost)

    def __repr__(self) -> str:
        return f"Budget(total={self.total}, remaining={self._remaining})"
