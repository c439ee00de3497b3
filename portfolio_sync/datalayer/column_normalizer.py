"""
Column normalizer: maps spreadsheet headers onto canonical field names.

Matching is case- and whitespace-insensitive. Exact alias matches are
resolved first; remaining fields then take the best fuzzy match among the
unclaimed columns, where a fuzzy match requires one name to contain the
other and a length ratio of at least 0.85. Ties go to the leftmost column.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import pandas as pd

from ..common.data_utils import convert_to_float, is_blank
from .quality import DataQualityReport


logger = logging.getLogger(__name__)

FUZZY_THRESHOLD = 0.85
ZERO_HEAVY_RATIO = 0.8

# ============================================================================
# Canonical fields
# ============================================================================
CLIENT_ID = 'Client ID'
CLIENT_NAME = 'Client Name'
LOAN_OFFICER_ID = 'Loan Officer ID'
MANAGER_ID = 'Manager ID'
OUTSTANDING = 'OUTSTANDING'
OUTSTANDING_AT_RISK = 'Outstanding at risk'
PAR_PER_LOAN = 'PAR PER LOAN'
LATE_DAYS = 'late days'
TOTAL_DELAYED_INSTALMENTS = 'total delayed instalments'
PAID_INSTALMENTS = 'paid instalments'
COUNT_RESCHEDULE = 'COUNT_RESCHEDULE'
PAYMENT_MONTHLY = 'PAYMENT_MONTLY'

# Canonical field -> accepted header spellings (normalized form)
COLUMN_ALIASES: Dict[str, Sequence[str]] = {
    CLIENT_ID: ('client id',),
    CLIENT_NAME: ('client name',),
    LOAN_OFFICER_ID: ('loan officer id', 'lo id', 'officer id'),
    MANAGER_ID: ('manager id', 'bm id'),
    OUTSTANDING: ('outstanding',),
    OUTSTANDING_AT_RISK: ('outstanding at risk', 'at risk'),
    PAR_PER_LOAN: ('par per loan', 'par'),
    LATE_DAYS: ('late days', 'days late'),
    TOTAL_DELAYED_INSTALMENTS: ('total delayed instalments', 'delayed instalments'),
    PAID_INSTALMENTS: ('paid instalments', 'instalments paid'),
    COUNT_RESCHEDULE: ('count_reschedule', 'reschedule count', 'reschedules'),
    PAYMENT_MONTHLY: ('payment_montly', 'payment_monthly', 'payment monthly', 'monthly payment'),
}

IDENTITY_COLUMNS = (CLIENT_ID, CLIENT_NAME, LOAN_OFFICER_ID)

FINANCIAL_COLUMNS = (
    OUTSTANDING,
    OUTSTANDING_AT_RISK,
    PAR_PER_LOAN,
    LATE_DAYS,
    TOTAL_DELAYED_INSTALMENTS,
    PAID_INSTALMENTS,
    COUNT_RESCHEDULE,
    PAYMENT_MONTHLY,
)

ZERO_CHECKED_COLUMNS = (OUTSTANDING, LATE_DAYS)


def normalize_header(name: object) -> str:
    return ' '.join(str(name).lower().split())


def similarity(a: str, b: str) -> float:
    """
    Similarity of two normalized names.

    1.0 for equal names, min/max length ratio when one contains the other,
    otherwise 0.
    """
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    if a in b or b in a:
        return min(len(a), len(b)) / max(len(a), len(b))
    return 0.0


@dataclass(frozen=True)
class ColumnMatch:
    canonical: str
    source_column: str
    alias: str
    score: float

    @property
    def exact(self) -> bool:
        return self.score == 1.0


@dataclass
class ColumnMapping:
    matches: Dict[str, ColumnMatch] = field(default_factory=dict)
    unmapped: List[str] = field(default_factory=list)

    @property
    def rename_map(self) -> Dict[str, str]:
        return {m.source_column: m.canonical for m in self.matches.values()}

    def source_for(self, canonical: str) -> Optional[str]:
        match = self.matches.get(canonical)
        return match.source_column if match else None


def _best_match(canonical: str, columns: Sequence[str], claimed: set,
                exact_only: bool, threshold: float) -> Optional[ColumnMatch]:
    best = None
    for column in columns:  # ties keep the earliest column
        if column in claimed:
            continue
        normalized = normalize_header(column)
        for alias in COLUMN_ALIASES[canonical]:
            score = similarity(normalized, alias)
            if exact_only and score < 1.0:
                continue
            if score < threshold:
                continue
            if best is None or score > best.score:
                best = ColumnMatch(canonical, column, alias, score)
    return best


def match_columns(columns: Sequence[str], threshold: float = FUZZY_THRESHOLD) -> ColumnMapping:
    """
    Resolve canonical fields against source headers.

    Args:
        columns: Source headers in sheet order
        threshold: Minimum fuzzy similarity

    Returns:
        ColumnMapping: Matched fields and the headers left unmapped
    """
    mapping = ColumnMapping()
    claimed = set()

    for exact_only in (True, False):
        for canonical in COLUMN_ALIASES:
            if canonical in mapping.matches:
                continue
            match = _best_match(canonical, columns, claimed, exact_only, threshold)
            if match is not None:
                mapping.matches[canonical] = match
                claimed.add(match.source_column)

    mapping.unmapped = [c for c in columns if c not in claimed]
    return mapping


class ColumnNormalizer:
    """
    Renames source columns to canonical fields and repairs missing ones.

    Identity columns that cannot be found are fabricated (sequential ids,
    "Client N" names, officer "UNKNOWN") and reported as errors. Missing
    financial columns are filled with zeros and reported as one warning.
    Financial values that are not numeric become 0.
    """

    def __init__(self, threshold: float = FUZZY_THRESHOLD):
        self.threshold = threshold

    def normalize(self, frame: pd.DataFrame, report: DataQualityReport) -> pd.DataFrame:
        """
        Produce a frame with every canonical column present.

        Args:
            frame: Parsed first sheet (header row already validated)
            report: Quality report for this run

        Returns:
            pd.DataFrame: Canonical columns plus unmapped columns verbatim
        """
        columns = [str(c) for c in frame.columns]
        frame = frame.copy()
        frame.columns = columns
        row_count = len(frame)

        mapping = match_columns(columns, self.threshold)
        for match in mapping.matches.values():
            if not match.exact:
                logger.info(
                    f"Fuzzy column match '{match.source_column}' -> '{match.canonical}' "
                    f"(similarity {match.score:.2f})"
                )

        report.add_info(
            "Successfully mapped columns: "
            + (', '.join(f"{m.source_column} -> {m.canonical}" for m in mapping.matches.values()) or 'none')
        )
        if mapping.unmapped:
            report.add_info(f"Unmapped columns passed through: {', '.join(mapping.unmapped)}")

        frame = frame.rename(columns=mapping.rename_map)

        self._fill_identity_columns(frame, report)
        self._fill_financial_columns(frame, report)
        self._convert_numeric_columns(frame, report, row_count)

        return frame

    def _fill_identity_columns(self, frame: pd.DataFrame, report: DataQualityReport) -> None:
        if CLIENT_ID not in frame.columns:
            report.add_error(f"Critical column '{CLIENT_ID}' is missing - generating sequential IDs")
            frame[CLIENT_ID] = [f"CLT-{i + 1:06d}" for i in range(len(frame))]
        if CLIENT_NAME not in frame.columns:
            report.add_error(f"Critical column '{CLIENT_NAME}' is missing - generating default names")
            frame[CLIENT_NAME] = [f"Client {i + 1}" for i in range(len(frame))]
        if LOAN_OFFICER_ID not in frame.columns:
            report.add_error(f"Critical column '{LOAN_OFFICER_ID}' is missing - using default 'UNKNOWN'")
            frame[LOAN_OFFICER_ID] = 'UNKNOWN'

    def _fill_financial_columns(self, frame: pd.DataFrame, report: DataQualityReport) -> None:
        missing = [col for col in FINANCIAL_COLUMNS if col not in frame.columns]
        for col in missing:
            frame[col] = 0
        if missing:
            report.add_warning(f"Missing financial columns (using defaults): {', '.join(missing)}")

    def _convert_numeric_columns(self, frame: pd.DataFrame, report: DataQualityReport,
                                 row_count: int) -> None:
        for col in FINANCIAL_COLUMNS:
            converted = frame[col].map(convert_to_float)
            failures = int(converted.isna().sum() - frame[col].map(is_blank).sum())
            frame[col] = converted.fillna(0.0)

            if failures > 0:
                report.add_error(
                    f"Column '{col}': {failures} non-numeric values converted to 0 "
                    f"({failures / row_count * 100:.1f}% of data)"
                )

            if col in ZERO_CHECKED_COLUMNS and row_count:
                zero_count = int((frame[col] == 0).sum())
                if zero_count > row_count * ZERO_HEAVY_RATIO:
                    report.add_warning(
                        f"Column '{col}': {zero_count} zero values ({zero_count / row_count * 100:.1f}%) - "
                        f"data may be incomplete or unrealistic"
                    )
