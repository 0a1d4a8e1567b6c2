"""Budgets d'exécution : délai d'un rapprochement et plafond combinatoire."""

from __future__ import annotations

import time
from collections.abc import Callable

from concordbank.config import ConcordBankError


class TimeoutExceeded(ConcordBankError):
    """Délai d'exécution dépassé ; les résultats déjà calculés sont conservés."""


class CombinatorialBudgetExceeded(ConcordBankError):
    """Plafond d'états de la recherche combinatoire atteint."""


class Deadline:
    """Échéance murale, partagée par les phases d'un même rapprochement."""

    def __init__(
        self,
        seconds: float | None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._start = clock()
        self._end = None if seconds is None else self._start + seconds

    @classmethod
    def unlimited(cls) -> Deadline:
        return cls(None)

    def remaining(self) -> float | None:
        if self._end is None:
            return None
        return max(self._end - self._clock(), 0.0)

    def elapsed(self) -> float:
        return self._clock() - self._start

    @property
    def expired(self) -> bool:
        return self._end is not None and self._clock() >= self._end

    def check(self) -> None:
        """Lève TimeoutExceeded si l'échéance est passée."""
        if self.expired:
            raise TimeoutExceeded(f"Délai dépassé après {self.elapsed():.1f}s")
