"""
Session spend budget for LLM calls.

Callers reserve the worst-case cost of a call before making it and settle
the actual cost afterwards. Reservation is check-then-increment under a
lock, so concurrent agents cannot jointly overrun the limit with their
estimates. The estimate is a character-count approximation of the prompt,
so a settled call can still cost more than it reserved; spend may then
exceed the limit by that estimation error, which is logged and tracked in
``overrun_usd``.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from ..exceptions import BudgetExhausted

logger = logging.getLogger(__name__)


@dataclass
class Reservation:
    key: str
    amount: float
    settled: bool = False


class SpendBudget:
    """
    USD spend tracker with a session-wide limit and an optional per-key limit.

    Once a reservation is denied the budget latches exhausted for that scope
    and stays exhausted for the rest of the session.
    """

    def __init__(self, limit_usd: float, per_key_limit_usd: Optional[float] = None):
        self.limit_usd = limit_usd
        self.per_key_limit_usd = per_key_limit_usd
        self.spent_usd = 0.0
        self.reserved_usd = 0.0
        self.overrun_usd = 0.0
        self._spent_by_key: Dict[str, float] = {}
        self._reserved_by_key: Dict[str, float] = {}
        self._exhausted = False
        self._exhausted_keys = set()
        self._lock = asyncio.Lock()

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    def is_exhausted(self, key: str) -> bool:
        return self._exhausted or key in self._exhausted_keys

    def spent_by(self, key: str) -> float:
        return self._spent_by_key.get(key, 0.0)

    @property
    def remaining_usd(self) -> float:
        return max(0.0, self.limit_usd - self.spent_usd - self.reserved_usd)

    async def reserve(self, key: str, estimate: float) -> Optional[Reservation]:
        """Reserve ``estimate`` USD for ``key``; returns None when denied."""
        async with self._lock:
            if self.is_exhausted(key):
                return None

            if self.spent_usd + self.reserved_usd + estimate > self.limit_usd:
                self._exhausted = True
                logger.warning(
                    f"Session budget exhausted: spent ${self.spent_usd:.4f} of ${self.limit_usd:.4f}"
                )
                return None

            if self.per_key_limit_usd is not None:
                key_total = self._spent_by_key.get(key, 0.0) + self._reserved_by_key.get(key, 0.0)
                if key_total + estimate > self.per_key_limit_usd:
                    self._exhausted_keys.add(key)
                    logger.warning(f"Budget for {key} exhausted at ${key_total:.4f}")
                    return None

            self.reserved_usd += estimate
            self._reserved_by_key[key] = self._reserved_by_key.get(key, 0.0) + estimate
            return Reservation(key=key, amount=estimate)

    async def require(self, key: str, estimate: float) -> Reservation:
        """Like ``reserve`` but raises instead of returning None."""
        reservation = await self.reserve(key, estimate)
        if reservation is None:
            raise BudgetExhausted(f"No budget left for {key}")
        return reservation

    async def settle(self, reservation: Reservation, actual: float):
        """Replace a reservation with the actual cost of the call."""
        async with self._lock:
            if reservation.settled:
                return
            self._drop_reservation(reservation)
            if actual > reservation.amount:
                excess = actual - reservation.amount
                self.overrun_usd += excess
                logger.warning(
                    f"{reservation.key} cost ${actual:.6f}, ${excess:.6f} over its reservation"
                )
            self.spent_usd += actual
            self._spent_by_key[reservation.key] = self._spent_by_key.get(reservation.key, 0.0) + actual

    async def release(self, reservation: Reservation):
        """Refund a reservation for a call that consumed nothing."""
        async with self._lock:
            if not reservation.settled:
                self._drop_reservation(reservation)

    def _drop_reservation(self, reservation: Reservation):
        reservation.settled = True
        self.reserved_usd = max(0.0, self.reserved_usd - reservation.amount)
        remaining = self._reserved_by_key.get(reservation.key, 0.0) - reservation.amount
        self._reserved_by_key[reservation.key] = max(0.0, remaining)

    def to_dict(self) -> Dict[str, float]:
        return {
            "limit_usd": self.limit_usd,
            "spent_usd": self.spent_usd,
            "reserved_usd": self.reserved_usd,
            "remaining_usd": self.remaining_usd,
            "exhausted": self._exhausted,
        }
