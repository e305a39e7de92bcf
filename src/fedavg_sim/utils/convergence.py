"""
Rounds-to-target convergence tracking.

Not reaching the target is an ordinary outcome and is reported as ``None``.
"""

import logging
from typing import List, Optional, Tuple

from ..core.types import AccuracyHistory

logger = logging.getLogger(__name__)


def rounds_to_target(history: AccuracyHistory, target: float) -> Optional[float]:
    """
    Fractional round at which accuracy first reaches ``target``.

    Scans ``history`` in round order. A hit in the first entry returns that
    round exactly; otherwise the crossing is linearly interpolated between the
    last entry below target and the first entry at or above it.

    Args:
        history: Ordered (round, accuracy) pairs
        target: Accuracy threshold

    Returns:
        Interpolated round, or None if the target is never reached
    """
    entries = list(history)
    for i, (round_number, accuracy) in enumerate(entries):
        if accuracy < target:
            continue
        if i == 0:
            return float(round_number)
        r_prev, acc_prev = entries[i - 1]
        return float(r_prev + (target - acc_prev) * (round_number - r_prev) / (accuracy - acc_prev))
    return None


class ConvergenceTracker:
    """Accumulates the accuracy curve of one experiment."""

    def __init__(self, target: float, history: Optional[AccuracyHistory] = None):
        self.target = target
        self._history: List[Tuple[int, float]] = []
        for round_number, accuracy in history or []:
            self.record(round_number, accuracy)

    def record(self, round_number: int, accuracy: float) -> Optional[float]:
        """Add a round and return the current rounds-to-target."""
        if self._history and round_number <= self._history[-1][0]:
            # Replayed rounds after a restart supersede the earlier entries.
            self._history = [(r, a) for r, a in self._history if r < round_number]
        self._history.append((int(round_number), float(accuracy)))
        return self.rounds_to_target

    @property
    def history(self) -> List[Tuple[int, float]]:
        return list(self._history)

    @property
    def rounds_to_target(self) -> Optional[float]:
        return rounds_to_target(self._history, self.target)
