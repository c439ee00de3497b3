"""
Change-detection fingerprint for client rows.

The digest covers identity, raw metrics and the import-time scores, in a
fixed order. Officer-entered data (feedback, notes, visit and call dates) is
not part of it, so editing those never makes a financial sync see a change.
"""

import hashlib
import json
from typing import Any, Mapping, Optional

from ..common.data_utils import normalize_officer_id


# Ordered; changing this list changes every stored hash
HASHED_FIELDS = (
    'client_id',
    'name',
    'loan_officer_id',
    'manager_id',
    'outstanding',
    'outstanding_at_risk',
    'par_per_loan',
    'late_days',
    'total_delayed_instalments',
    'paid_instalments',
    'count_reschedule',
    'payment_monthly',
    'is_at_risk',
    'risk_score',
    'composite_urgency',
    'urgency_classification',
)

NUMERIC_FIELDS = frozenset({
    'outstanding',
    'outstanding_at_risk',
    'par_per_loan',
    'late_days',
    'total_delayed_instalments',
    'paid_instalments',
    'count_reschedule',
    'payment_monthly',
    'risk_score',
    'composite_urgency',
})


def _canonical_value(name: str, value: Any) -> Any:
    if name in NUMERIC_FIELDS:
        return round(float(value or 0), 2)
    if name == 'loan_officer_id':
        return normalize_officer_id(value)
    if name == 'is_at_risk':
        return bool(value)
    return '' if value is None else str(value)


def compute_client_data_hash(record: Mapping[str, Any]) -> str:
    """
    MD5 hex digest of the sync-relevant fields of a client record.

    Args:
        record: Client column values (extra keys are ignored)

    Returns:
        str: 32-character hex digest
    """
    payload = [[name, _canonical_value(name, record.get(name))] for name in HASHED_FIELDS]
    encoded = json.dumps(payload, separators=(',', ':'), ensure_ascii=False)
    return hashlib.md5(encoded.encode('utf-8')).hexdigest()


def has_changed(record: Mapping[str, Any], stored_hash: Optional[str]) -> bool:
    """True for new rows and rows whose fingerprint differs from the stored one."""
    if stored_hash is None:
        return True
    digest = record.get('data_hash') or compute_client_data_hash(record)
    return digest != stored_hash
