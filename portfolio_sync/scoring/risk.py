"""
Risk score calculator.

Six weighted factors are normalized against fixed thresholds, pushed through
a steep logistic curve and summed into a 1-99 score.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .utils import clamp, finite_or_zero, read_metric, round_half_up
from .weights import RiskWeights


SIGMOID_STEEPNESS = 6.0
SIGMOID_MIDPOINT = 0.5

MIN_RISK_SCORE = 1
MAX_RISK_SCORE = 99
AT_RISK_THRESHOLD = 60


@dataclass(frozen=True)
class RiskFactor:
    """One scoring factor: which metric it reads and how it is scaled."""
    name: str
    field: str
    max_threshold: float
    inverse: bool = False
    baseline: float = 0.0


RISK_FACTORS: Tuple[RiskFactor, ...] = (
    RiskFactor('late_days', 'late_days', 90, baseline=0.1),
    RiskFactor('outstanding_at_risk', 'outstanding_at_risk', 10000, baseline=0.05),
    RiskFactor('par_per_loan', 'par_per_loan', 1.0, baseline=0.02),
    RiskFactor('reschedules', 'count_reschedule', 5),
    RiskFactor('payment_consistency', 'paid_instalments', 50, inverse=True),
    RiskFactor('delayed_instalments', 'total_delayed_instalments', 20),
)

# Factors whose all-zero state on an active loan means "no data", not "no risk"
INDICATOR_FIELDS = ('late_days', 'outstanding_at_risk', 'par_per_loan')


@dataclass(frozen=True)
class FactorContribution:
    name: str
    raw_value: float
    normalized_value: float
    sigmoid_value: float
    weight: float
    component_score: float

    def to_dict(self) -> Dict[str, float]:
        return {
            'raw_value': self.raw_value,
            'normalized_value': round(self.normalized_value, 4),
            'sigmoid_value': round(self.sigmoid_value, 4),
            'weight': self.weight,
            'component_score': round(self.component_score, 2),
        }


@dataclass(frozen=True)
class RiskScoreResult:
    score: int
    factors: Tuple[FactorContribution, ...]

    @property
    def is_at_risk(self) -> bool:
        return self.score > AT_RISK_THRESHOLD

    def to_dict(self) -> Dict[str, Any]:
        return {
            'risk_score': self.score,
            'is_at_risk': self.is_at_risk,
            'factors': {f.name: f.to_dict() for f in self.factors},
        }


def sigmoid(normalized_value: float) -> float:
    """Logistic curve centred on the midpoint of the normalized scale."""
    return 1.0 / (1.0 + math.exp(-SIGMOID_STEEPNESS * (normalized_value - SIGMOID_MIDPOINT)))


def normalize_factor(raw_value: float, factor: RiskFactor) -> float:
    """Scale a raw metric into [0, 1] against the factor's threshold."""
    normalized = min(raw_value, factor.max_threshold) / factor.max_threshold
    return 1.0 - normalized if factor.inverse else normalized


def has_missing_risk_indicators(metrics: Any) -> bool:
    """Active loan (outstanding > 0) whose late days, at-risk balance and PAR are all zero."""
    if finite_or_zero(read_metric(metrics, 'outstanding')) <= 0:
        return False
    return all(finite_or_zero(read_metric(metrics, name)) == 0 for name in INDICATOR_FIELDS)


def calculate_risk_score(metrics: Any, weights: Optional[RiskWeights] = None) -> RiskScoreResult:
    """
    Calculate the risk score for one client.

    Args:
        metrics: Mapping or object exposing the raw metric fields
        weights: Factor weights (default 25/20/20/15/10/10)

    Returns:
        RiskScoreResult: Score in [1, 99] with the per-factor decomposition
    """
    weights = weights or RiskWeights()
    apply_baseline = has_missing_risk_indicators(metrics)

    contributions = []
    for factor in RISK_FACTORS:
        raw_value = finite_or_zero(read_metric(metrics, factor.field))
        normalized = normalize_factor(raw_value, factor)
        if apply_baseline and factor.baseline:
            normalized = max(normalized, factor.baseline)

        weight = max(float(getattr(weights, factor.name)), 0.0)
        sigmoid_value = sigmoid(normalized)
        contributions.append(FactorContribution(
            name=factor.name,
            raw_value=raw_value,
            normalized_value=normalized,
            sigmoid_value=sigmoid_value,
            weight=weight,
            component_score=sigmoid_value * 100 * (weight / 100),
        ))

    total = sum(c.component_score for c in contributions)
    score = int(clamp(round_half_up(total), MIN_RISK_SCORE, MAX_RISK_SCORE))
    return RiskScoreResult(score=score, factors=tuple(contributions))
