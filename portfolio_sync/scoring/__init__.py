"""
Pure scoring functions: risk, urgency, classification and weights.
"""

from .calculator import ClientScores, apply_scores, score_client
from .classification import (
    EXTREMELY_URGENT, URGENT, MODERATELY_URGENT, LOW_URGENCY,
    URGENCY_LEVELS, classify_urgency, is_classification_stale,
)
from .risk import RISK_FACTORS, RiskScoreResult, calculate_risk_score, sigmoid
from .urgency import UrgencyResult, calculate_urgency
from .weights import (
    ALL_WEIGHT_FIELDS, WEIGHT_CATEGORIES,
    FeedbackWeights, RiskWeights, ScoringWeights, UrgencyWeights,
    compute_feedback_score, settings_to_dict, validate_weight_update,
)

__all__ = [
    'ClientScores', 'apply_scores', 'score_client',
    'EXTREMELY_URGENT', 'URGENT', 'MODERATELY_URGENT', 'LOW_URGENCY',
    'URGENCY_LEVELS', 'classify_urgency', 'is_classification_stale',
    'RISK_FACTORS', 'RiskScoreResult', 'calculate_risk_score', 'sigmoid',
    'UrgencyResult', 'calculate_urgency',
    'ALL_WEIGHT_FIELDS', 'WEIGHT_CATEGORIES',
    'FeedbackWeights', 'RiskWeights', 'ScoringWeights', 'UrgencyWeights',
    'compute_feedback_score', 'settings_to_dict', 'validate_weight_update',
]
