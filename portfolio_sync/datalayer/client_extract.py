"""
Client extract: turns a normalized sheet into Client column records with
import-time scores and fingerprints.

Import-time scoring uses the default contact recency and feedback because
the extract carries no interaction data; the officer refresh after
reconciliation applies the stored interaction data.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd

from ..common.data_utils import convert_to_identifier, convert_to_int, normalize_officer_id
from ..scoring import ScoringWeights, score_client
from ..scoring.risk import has_missing_risk_indicators
from . import column_normalizer as cols
from .column_normalizer import ColumnNormalizer
from .fingerprint import compute_client_data_hash
from .quality import DataQualityReport


logger = logging.getLogger(__name__)

MISSING_RISK_DATA_RATIO = 0.5


@dataclass
class ExtractResult:
    records: List[Dict[str, Any]] = field(default_factory=list)
    loan_officer_ids: List[str] = field(default_factory=list)
    report: DataQualityReport = field(default_factory=DataQualityReport)


def transform_record(row: Dict[str, Any], organization_id: str) -> Dict[str, Any]:
    """
    Map one normalized sheet row onto Client columns.

    Args:
        row: Row keyed by canonical column names
        organization_id: Owning organization

    Returns:
        dict: Client column values (scores not yet applied)
    """
    manager_id = convert_to_identifier(row.get(cols.MANAGER_ID))
    return {
        'organization_id': organization_id,
        'client_id': convert_to_identifier(row.get(cols.CLIENT_ID)) or '',
        'name': convert_to_identifier(row.get(cols.CLIENT_NAME)) or '',
        'loan_officer_id': normalize_officer_id(row.get(cols.LOAN_OFFICER_ID)),
        'manager_id': manager_id,
        'outstanding': float(row.get(cols.OUTSTANDING) or 0),
        'outstanding_at_risk': float(row.get(cols.OUTSTANDING_AT_RISK) or 0),
        'par_per_loan': float(row.get(cols.PAR_PER_LOAN) or 0),
        'late_days': convert_to_int(row.get(cols.LATE_DAYS)) or 0,
        'total_delayed_instalments': convert_to_int(row.get(cols.TOTAL_DELAYED_INSTALMENTS)) or 0,
        'paid_instalments': convert_to_int(row.get(cols.PAID_INSTALMENTS)) or 0,
        'count_reschedule': convert_to_int(row.get(cols.COUNT_RESCHEDULE)) or 0,
        'payment_monthly': float(row.get(cols.PAYMENT_MONTHLY) or 0),
    }


def prepare_client_records(
    frame: pd.DataFrame,
    organization_id: str,
    weights: Optional[ScoringWeights] = None,
    report: Optional[DataQualityReport] = None
) -> ExtractResult:
    """
    Normalize, score and fingerprint every row of a parsed sheet.

    Args:
        frame: First sheet as parsed by the source loader
        organization_id: Owning organization
        weights: Organization scoring weights
        report: Quality report to append to (a fresh one when None)

    Returns:
        ExtractResult: Records ready for reconciliation, distinct officer
        ids and the quality report
    """
    started = time.monotonic()
    result = ExtractResult(report=report or DataQualityReport())
    report = result.report

    report.add_info(f"Excel file contains {len(frame)} rows and {len(frame.columns)} columns")
    report.add_info(f"Column names: {', '.join(str(c) for c in frame.columns)}")

    normalized = ColumnNormalizer().normalize(frame, report)

    officers = []
    missing_risk = active = 0
    for row in normalized.to_dict(orient='records'):
        record = transform_record(row, organization_id)
        if not record['client_id']:
            report.add_error(f"Row for client '{record['name']}' has no client id - skipped")
            continue

        if record['outstanding'] > 0:
            active += 1
            if has_missing_risk_indicators(record):
                missing_risk += 1

        scores = score_client(record, weights, include_interactions=False)
        record.update(scores.as_columns())
        record['data_hash'] = compute_client_data_hash(record)
        result.records.append(record)

        if record['loan_officer_id'] not in officers:
            officers.append(record['loan_officer_id'])

    if active and missing_risk > active * MISSING_RISK_DATA_RATIO:
        report.add_warning(
            f"{missing_risk} of {active} active clients "
            f"({missing_risk / active * 100:.1f}%) have no risk indicators "
            f"(late days, outstanding at risk, PAR) - baseline risk applied"
        )

    result.loan_officer_ids = officers
    report.add_info(f"Unique loan officers: {len(officers)}")
    report.add_info(f"Prepared {len(result.records)} client records in {time.monotonic() - started:.2f}s")
    logger.info(f"Prepared {len(result.records)} records for organization '{organization_id}'")
    return result
