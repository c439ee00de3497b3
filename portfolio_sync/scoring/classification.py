"""
Urgency classification.

The label is a pure function of the composite urgency score and is the only
place the thresholds live.
"""

from typing import Optional

EXTREMELY_URGENT = 'Extremely Urgent'
URGENT = 'Urgent'
MODERATELY_URGENT = 'Moderately Urgent'
LOW_URGENCY = 'Low Urgency'

# (inclusive lower bound, label), highest first
URGENCY_THRESHOLDS = (
    (60.0, EXTREMELY_URGENT),
    (40.0, URGENT),
    (20.0, MODERATELY_URGENT),
)

URGENCY_LEVELS = (EXTREMELY_URGENT, URGENT, MODERATELY_URGENT, LOW_URGENCY)


def classify_urgency(score: Optional[float]) -> str:
    """Map a composite urgency score to its tier."""
    value = float(score or 0)
    for lower_bound, label in URGENCY_THRESHOLDS:
        if value >= lower_bound:
            return label
    return LOW_URGENCY


def is_classification_stale(score: Optional[float], classification: Optional[str]) -> bool:
    return classify_urgency(score) != classification
