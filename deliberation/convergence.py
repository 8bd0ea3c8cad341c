"""Convergence and deadlock detection over a similarity history."""
import logging
import math
from typing import List

from models.schema import ConvergenceTrend, DeadlockRisk, TrendDirection

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 3
DEADLOCK_THRESHOLD = 0.01  # Minimum per-round change that counts as movement
TREND_THRESHOLD = 0.8  # Consensus level used for round prediction in analyze_trend
HIGH_RISK_SIMILARITY = 0.7

RECOMMENDATIONS = {
    "high_risk": (
        "High deadlock risk detected. Consider modifying prompts to emphasize "
        "common ground or invoking human escalation."
    ),
    "medium_risk": (
        "Moderate deadlock risk. Consider adjusting negotiation prompts to focus "
        "on areas of agreement."
    ),
    "diverging": (
        "Responses are diverging. Consider more structured prompts or reducing "
        "number of negotiation rounds."
    ),
    "stagnant": (
        "Progress has stalled. Consider providing more specific guidance or "
        "examples in prompts."
    ),
    "fast": "Good convergence progress. Continue current approach.",
    "steady": "Steady progress toward consensus.",
    "insufficient": "Insufficient data to analyze trend",
}


def _finite(history: List[float]) -> List[float]:
    return [v for v in history if isinstance(v, (int, float)) and math.isfinite(v)]


class ConvergenceDetector:
    """
    Stateless analysis of how round similarity evolves.

    Every method is a pure function of its arguments, so a single instance
    can be shared between concurrent negotiations. Non-finite entries in a
    history (a round whose similarity could not be measured) are ignored.

    Example:
        detector = ConvergenceDetector()
        detector.is_deadlocked([0.60, 0.60, 0.60])   # True (flat)
        detector.is_deadlocked([0.60, 0.65, 0.70])   # False (rising)
        detector.analyze_trend([0.5, 0.6, 0.7]).direction  # "converging"
    """

    def calculate_velocity(self, history: List[float]) -> float:
        """Mean round-over-round change. 0.0 with fewer than two valid points."""
        valid = _finite(history)
        if len(valid) < 2:
            return 0.0

        total_change = sum(valid[i] - valid[i - 1] for i in range(1, len(valid)))
        return total_change / (len(valid) - 1)

    def is_deadlocked(
        self, history: List[float], window_size: int = DEFAULT_WINDOW_SIZE
    ) -> bool:
        """
        Whether the last ``window_size`` valid values show no progress.

        Any single increase above DEADLOCK_THRESHOLD in the window means the
        negotiation is still moving. Otherwise the window is deadlocked when it
        is flat (every change within the threshold) or strictly decreasing.
        """
        valid = _finite(history)
        if len(valid) < window_size:
            return False

        recent = valid[-window_size:]
        is_flat = True
        is_decreasing = True

        for i in range(1, len(recent)):
            change = recent[i] - recent[i - 1]
            if change > DEADLOCK_THRESHOLD:
                return False
            if abs(change) > DEADLOCK_THRESHOLD:
                is_flat = False
            if change >= 0:
                is_decreasing = False

        return is_flat or is_decreasing

    def predict_rounds_to_consensus(
        self, current: float, velocity: float, threshold: float
    ) -> float:
        """Rounds needed at the current velocity; math.inf when not improving."""
        if current >= threshold:
            return 0
        if velocity <= 0:
            return math.inf

        return max(0, math.ceil((threshold - current) / velocity))

    def analyze_trend(
        self, history: List[float], threshold: float = TREND_THRESHOLD
    ) -> ConvergenceTrend:
        """Summarize direction, speed, deadlock risk and a recommendation."""
        valid = _finite(history)
        if len(valid) < 2:
            return ConvergenceTrend(
                direction="stagnant",
                velocity=0.0,
                predicted_rounds=0,
                deadlock_risk="low",
                recommendation=RECOMMENDATIONS["insufficient"],
            )

        velocity = self.calculate_velocity(valid)
        direction = self._direction(valid, velocity)
        risk = self._deadlock_risk(valid, velocity)
        predicted = self.predict_rounds_to_consensus(valid[-1], velocity, threshold)

        return ConvergenceTrend(
            direction=direction,
            velocity=velocity,
            predicted_rounds=predicted,
            deadlock_risk=risk,
            recommendation=self._recommendation(direction, risk, velocity),
        )

    def _direction(self, valid: List[float], velocity: float) -> TrendDirection:
        total_change = valid[-1] - valid[0]
        if total_change > DEADLOCK_THRESHOLD:
            return "converging"
        if total_change < -DEADLOCK_THRESHOLD:
            return "diverging"

        if abs(velocity) < DEADLOCK_THRESHOLD:
            return "stagnant"
        return "converging" if velocity > 0 else "diverging"

    def _deadlock_risk(self, valid: List[float], velocity: float) -> DeadlockRisk:
        if len(valid) < DEFAULT_WINDOW_SIZE:
            return "low"

        deadlocked = self.is_deadlocked(valid)
        if deadlocked and valid[-1] < HIGH_RISK_SIMILARITY:
            return "high"
        if deadlocked or velocity < DEADLOCK_THRESHOLD:
            return "medium"
        return "low"

    @staticmethod
    def _recommendation(
        direction: TrendDirection, risk: DeadlockRisk, velocity: float
    ) -> str:
        if risk == "high":
            return RECOMMENDATIONS["high_risk"]
        if risk == "medium":
            return RECOMMENDATIONS["medium_risk"]
        if direction == "diverging":
            return RECOMMENDATIONS["diverging"]
        if direction == "stagnant":
            return RECOMMENDATIONS["stagnant"]
        if velocity > 0.05:
            return RECOMMENDATIONS["fast"]
        return RECOMMENDATIONS["steady"]
