"""
Urgency score calculator.

Combines the risk score, contact recency and officer feedback into a 0-100
composite, and records how much each component contributed.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .utils import clamp, round_half_up
from .weights import UrgencyWeights


DEFAULT_DAYS_SINCE_INTERACTION = 30
DEFAULT_FEEDBACK_SCORE = 3
DAYS_FOR_FULL_URGENCY = 180


@dataclass(frozen=True)
class UrgencyComponent:
    value: float
    scaled_value: float
    weight: float
    normalized_weight: float  # percent of the weight total
    contribution: float

    def to_dict(self) -> Dict[str, float]:
        return {
            'value': self.value,
            'scaled_value': round(self.scaled_value, 2),
            'weight': self.weight,
            'normalized_weight': round(self.normalized_weight, 2),
            'contribution': round(self.contribution, 2),
        }


@dataclass(frozen=True)
class UrgencyResult:
    composite_urgency: float
    breakdown: Dict[str, UrgencyComponent]

    def breakdown_dict(self) -> Dict[str, Dict[str, float]]:
        """JSON-ready breakdown persisted next to the score."""
        return {name: component.to_dict() for name, component in self.breakdown.items()}


def _effective_weights(weights: Optional[UrgencyWeights]) -> UrgencyWeights:
    if weights is None or weights.total <= 0:
        return UrgencyWeights()
    return UrgencyWeights(
        risk_score=max(weights.risk_score, 0),
        days_since_interaction=max(weights.days_since_interaction, 0),
        feedback_score=max(weights.feedback_score, 0),
    )


def calculate_urgency(
    risk_score: Any,
    days_since_interaction: Optional[float] = None,
    feedback_score: Optional[float] = None,
    weights: Optional[UrgencyWeights] = None
) -> UrgencyResult:
    """
    Calculate the composite urgency score.

    Args:
        risk_score: Risk score (0-100)
        days_since_interaction: Days since the last visit or call (default 30)
        feedback_score: Officer feedback 1-5 (default 3)
        weights: Component weights of any total; non-positive totals fall
            back to 25/50/10

    Returns:
        UrgencyResult: Composite in [0, 100] rounded to one decimal, plus
        the per-component breakdown
    """
    if days_since_interaction is None:
        days_since_interaction = DEFAULT_DAYS_SINCE_INTERACTION
    if feedback_score is None:
        feedback_score = DEFAULT_FEEDBACK_SCORE

    weights = _effective_weights(weights)
    total_weight = weights.total

    scaled = {
        'risk_score': (float(risk_score or 0), clamp(float(risk_score or 0), 0, 100), weights.risk_score),
        'days_since_interaction': (
            float(days_since_interaction),
            clamp(float(days_since_interaction) / DAYS_FOR_FULL_URGENCY * 100, 0, 100),
            weights.days_since_interaction,
        ),
        'feedback_score': (
            float(feedback_score),
            clamp((5 - float(feedback_score)) * 25, 0, 100),
            weights.feedback_score,
        ),
    }

    breakdown = {}
    composite = 0.0
    for name, (value, scaled_value, weight) in scaled.items():
        share = weight / total_weight
        contribution = scaled_value * share
        composite += contribution
        breakdown[name] = UrgencyComponent(
            value=value,
            scaled_value=scaled_value,
            weight=weight,
            normalized_weight=share * 100,
            contribution=contribution,
        )

    composite = clamp(round_half_up(composite, 1), 0, 100)
    return UrgencyResult(composite_urgency=composite, breakdown=breakdown)
