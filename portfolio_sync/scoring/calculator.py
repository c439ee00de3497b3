"""
Single entry point for scoring a client.

Ingestion, feedback updates, visit and call completion, weight changes and
manual recalculation all call score_client(), so the same inputs always
produce the same scores.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from ..common.date_utils import days_since_last_interaction
from .classification import classify_urgency
from .risk import FactorContribution, calculate_risk_score
from .urgency import calculate_urgency
from .utils import read_metric
from .weights import ScoringWeights

SCORE_COLUMNS = (
    'risk_score',
    'is_at_risk',
    'composite_urgency',
    'urgency_classification',
    'urgency_breakdown',
)


@dataclass(frozen=True)
class ClientScores:
    risk_score: int
    is_at_risk: bool
    composite_urgency: float
    urgency_classification: str
    urgency_breakdown: Dict[str, Dict[str, float]]
    risk_factors: Tuple[FactorContribution, ...] = field(default=(), compare=False)

    def as_columns(self) -> Dict[str, Any]:
        """Values for the score columns of a Client row."""
        return {name: getattr(self, name) for name in SCORE_COLUMNS}


def score_client(
    metrics: Any,
    weights: Optional[ScoringWeights] = None,
    now: Optional[datetime] = None,
    include_interactions: bool = True
) -> ClientScores:
    """
    Score one client from its raw metrics and interaction history.

    Args:
        metrics: Client row or mapping with metric/interaction fields
        weights: Scoring weights (calculator defaults when None)
        now: Reference time for contact recency
        include_interactions: False at import time, where visit/call dates
            and feedback are not part of the extract and defaults apply

    Returns:
        ClientScores: Risk score, urgency, classification and breakdown
    """
    weights = weights or ScoringWeights()
    risk = calculate_risk_score(metrics, weights.risk)

    days = feedback = None
    if include_interactions:
        days = days_since_last_interaction(
            read_metric(metrics, 'last_visit_date'),
            read_metric(metrics, 'last_phone_call_date'),
            now,
        )
        feedback = read_metric(metrics, 'feedback_score')

    urgency = calculate_urgency(risk.score, days, feedback, weights.urgency)

    return ClientScores(
        risk_score=risk.score,
        is_at_risk=risk.is_at_risk,
        composite_urgency=urgency.composite_urgency,
        urgency_classification=classify_urgency(urgency.composite_urgency),
        urgency_breakdown=urgency.breakdown_dict(),
        risk_factors=risk.factors,
    )


def apply_scores(client: Any, weights: Optional[ScoringWeights] = None,
                 now: Optional[datetime] = None) -> Dict[str, bool]:
    """
    Recompute and assign scores on a Client row.

    Returns:
        dict: Which of risk/urgency/classification changed
    """
    scores = score_client(client, weights, now)
    changed = {
        'risk': client.risk_score != scores.risk_score,
        'urgency': client.composite_urgency != scores.composite_urgency,
        'classification': client.urgency_classification != scores.urgency_classification,
    }
    for name, value in scores.as_columns().items():
        setattr(client, name, value)
    return changed
