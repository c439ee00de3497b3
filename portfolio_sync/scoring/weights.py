"""
Scoring weight groups, validation of weight updates and the composite
feedback score.

Weights are percentages grouped into three categories (risk, urgency,
feedback). A category that is fully specified in an update must sum to 100.
"""

import numbers
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Mapping, Optional

from ..common.exceptions import WeightValidationError
from .utils import clamp, read_metric, round_half_up

SUM_TOLERANCE = 0.01

RISK_WEIGHT_FIELDS = (
    'risk_late_days_weight',
    'risk_outstanding_at_risk_weight',
    'risk_par_per_loan_weight',
    'risk_reschedules_weight',
    'risk_payment_consistency_weight',
    'risk_delayed_instalments_weight',
)

URGENCY_WEIGHT_FIELDS = (
    'urgency_risk_score_weight',
    'urgency_days_since_visit_weight',
    'urgency_feedback_score_weight',
)

FEEDBACK_WEIGHT_FIELDS = (
    'feedback_payment_willingness_weight',
    'feedback_financial_situation_weight',
    'feedback_communication_quality_weight',
    'feedback_compliance_cooperation_weight',
    'feedback_future_outlook_weight',
)

WEIGHT_CATEGORIES = {
    'risk': RISK_WEIGHT_FIELDS,
    'urgency': URGENCY_WEIGHT_FIELDS,
    'feedback': FEEDBACK_WEIGHT_FIELDS,
}

ALL_WEIGHT_FIELDS = RISK_WEIGHT_FIELDS + URGENCY_WEIGHT_FIELDS + FEEDBACK_WEIGHT_FIELDS

# Feedback sub-dimension column -> weight field
FEEDBACK_DIMENSIONS = {
    'payment_willingness': 'feedback_payment_willingness_weight',
    'financial_situation': 'feedback_financial_situation_weight',
    'communication_quality': 'feedback_communication_quality_weight',
    'compliance_cooperation': 'feedback_compliance_cooperation_weight',
    'future_outlook': 'feedback_future_outlook_weight',
}


@dataclass(frozen=True)
class RiskWeights:
    late_days: float = 25
    outstanding_at_risk: float = 20
    par_per_loan: float = 20
    reschedules: float = 15
    payment_consistency: float = 10
    delayed_instalments: float = 10


@dataclass(frozen=True)
class UrgencyWeights:
    """Calculator fallback weights; they need not sum to 100."""
    risk_score: float = 25
    days_since_interaction: float = 50
    feedback_score: float = 10

    @property
    def total(self) -> float:
        return max(self.risk_score, 0) + max(self.days_since_interaction, 0) + max(self.feedback_score, 0)


@dataclass(frozen=True)
class FeedbackWeights:
    payment_willingness: float = 30
    financial_situation: float = 25
    communication_quality: float = 15
    compliance_cooperation: float = 20
    future_outlook: float = 10


@dataclass(frozen=True)
class ScoringWeights:
    """All weights needed to score a client."""
    risk: RiskWeights = field(default_factory=RiskWeights)
    urgency: UrgencyWeights = field(default_factory=UrgencyWeights)
    feedback: FeedbackWeights = field(default_factory=FeedbackWeights)

    @classmethod
    def from_settings(cls, settings: Optional[Any]) -> 'ScoringWeights':
        """
        Build weights from a WeightSettings row or a mapping of its fields.

        Missing fields fall back to the calculator defaults.

        Args:
            settings: WeightSettings instance, dict, or None

        Returns:
            ScoringWeights: Immutable weight groups
        """
        if settings is None:
            return cls()

        def pick(name: str, default: float) -> float:
            value = read_metric(settings, name)
            return default if value is None else float(value)

        risk_defaults, urgency_defaults, feedback_defaults = RiskWeights(), UrgencyWeights(), FeedbackWeights()
        return cls(
            risk=RiskWeights(
                late_days=pick('risk_late_days_weight', risk_defaults.late_days),
                outstanding_at_risk=pick('risk_outstanding_at_risk_weight', risk_defaults.outstanding_at_risk),
                par_per_loan=pick('risk_par_per_loan_weight', risk_defaults.par_per_loan),
                reschedules=pick('risk_reschedules_weight', risk_defaults.reschedules),
                payment_consistency=pick('risk_payment_consistency_weight', risk_defaults.payment_consistency),
                delayed_instalments=pick('risk_delayed_instalments_weight', risk_defaults.delayed_instalments),
            ),
            urgency=UrgencyWeights(
                risk_score=pick('urgency_risk_score_weight', urgency_defaults.risk_score),
                days_since_interaction=pick('urgency_days_since_visit_weight', urgency_defaults.days_since_interaction),
                feedback_score=pick('urgency_feedback_score_weight', urgency_defaults.feedback_score),
            ),
            feedback=FeedbackWeights(
                payment_willingness=pick('feedback_payment_willingness_weight', feedback_defaults.payment_willingness),
                financial_situation=pick('feedback_financial_situation_weight', feedback_defaults.financial_situation),
                communication_quality=pick('feedback_communication_quality_weight', feedback_defaults.communication_quality),
                compliance_cooperation=pick('feedback_compliance_cooperation_weight', feedback_defaults.compliance_cooperation),
                future_outlook=pick('feedback_future_outlook_weight', feedback_defaults.future_outlook),
            ),
        )


def settings_to_dict(settings: Any) -> Dict[str, Any]:
    """The 14 weight fields of a WeightSettings row, in category order."""
    return {name: read_metric(settings, name) for name in ALL_WEIGHT_FIELDS}


def validate_weight_update(
    changes: Mapping[str, Any],
    current: Optional[Any] = None
) -> Dict[str, float]:
    """
    Validate a partial weight update.

    Every field must be a number between 0 and 100. A category whose fields
    are all present in the update must sum to 100 (within 0.01). When the
    current settings are given, a partially updated category is checked
    against the merged values instead.

    Args:
        changes: Field name -> new value
        current: Current WeightSettings (row or mapping), optional

    Returns:
        dict: The validated changes

    Raises:
        WeightValidationError: On unknown fields, bad values or bad sums
    """
    unknown = sorted(set(changes) - set(ALL_WEIGHT_FIELDS))
    if unknown:
        raise WeightValidationError(f"Unknown weight fields: {', '.join(unknown)}")

    field_errors = {}
    for name, value in changes.items():
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            field_errors[name] = 'must be a number'
        elif not 0 <= value <= 100:
            field_errors[name] = 'must be between 0 and 100'
    if field_errors:
        raise WeightValidationError(
            'Invalid weight values: ' + ', '.join(f"{k} {v}" for k, v in field_errors.items()),
            field_errors=field_errors,
        )

    for category, fields in WEIGHT_CATEGORIES.items():
        touched = [name for name in fields if name in changes]
        if not touched:
            continue
        if len(touched) == len(fields):
            values = [changes[name] for name in fields]
        elif current is not None:
            values = [changes[name] if name in changes else read_metric(current, name, 0) or 0
                      for name in fields]
        else:
            continue

        total = sum(values)
        if abs(total - 100) > SUM_TOLERANCE:
            raise WeightValidationError(
                f"{category.capitalize()} weights must sum to 100% (currently {total:g}%)",
                category=category,
            )

    return dict(changes)


def compute_feedback_score(
    sub_scores: Mapping[str, Optional[float]],
    weights: Optional[FeedbackWeights] = None
) -> Optional[int]:
    """
    Composite 1-5 feedback score from the five sub-dimension ratings.

    Unrated dimensions are left out and the remaining weights renormalized.

    Args:
        sub_scores: Dimension name (e.g. 'payment_willingness') -> 1-5 rating
        weights: Feedback sub-weights (defaults 30/25/15/20/10)

    Returns:
        int or None: Rounded composite, or None when nothing was rated
    """
    weights = weights or FeedbackWeights()
    weight_map = asdict(weights)

    weighted_sum = 0.0
    weight_total = 0.0
    for dimension in FEEDBACK_DIMENSIONS:
        rating = sub_scores.get(dimension)
        if rating is None:
            continue
        weight = max(weight_map[dimension], 0)
        weighted_sum += clamp(float(rating), 1, 5) * weight
        weight_total += weight

    if weight_total <= 0:
        return None
    return int(clamp(round_half_up(weighted_sum / weight_total), 1, 5))
