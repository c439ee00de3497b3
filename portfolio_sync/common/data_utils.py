"""
Data conversion and transformation utilities.

Provides type conversion functions for spreadsheet cell values and
record deduplication for batch database operations.
"""

import math
from datetime import datetime
from typing import Any, List, Dict, Optional

import dateutil.parser
import pandas as pd


def is_blank(value: Any) -> bool:
    """True for None, NaN/NaT and whitespace-only strings."""
    if isinstance(value, str):
        return not value.strip()
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def convert_to_float(value: Any) -> Optional[float]:
    """
    Convert a cell value to float.

    Handles numbers, numeric strings (thousands separators allowed) and
    blanks. Returns None for unconvertible values so callers can count
    conversion failures.

    Args:
        value: Value to convert

    Returns:
        float or None: Converted value or None if conversion fails
    """
    if is_blank(value):
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        result = float(value)
        return result if math.isfinite(result) else None
    try:
        result = float(str(value).strip().replace(',', ''))
    except (ValueError, TypeError):
        return None
    return result if math.isfinite(result) else None


def convert_to_int(value: Any) -> Optional[int]:
    """
    Convert value to integer, handling None and empty strings.

    Args:
        value: Value to convert

    Returns:
        int or None: Converted integer or None if conversion fails
    """
    result = convert_to_float(value)
    return int(result) if result is not None else None


def convert_to_identifier(value: Any) -> Optional[str]:
    """
    Convert an id cell to a clean string.

    Spreadsheet readers return numeric ids as floats (1001.0); whole floats
    are rendered without the trailing '.0'.
    """
    if is_blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def convert_to_datetime(value: Any) -> Optional[datetime]:
    """
    Convert value to Python datetime.

    Args:
        value: Datetime string, datetime object, or None

    Returns:
        datetime or None: Parsed datetime or None if parsing fails
    """
    if is_blank(value):
        return None
    if isinstance(value, datetime):
        return value
    try:
        return dateutil.parser.parse(value)
    except (ValueError, TypeError, OverflowError):
        return None


def normalize_officer_id(value: Any) -> str:
    """Loan officer ids are compared trimmed and upper-cased; blanks become UNKNOWN."""
    identifier = convert_to_identifier(value)
    return identifier.upper() if identifier else 'UNKNOWN'


def deduplicate_records(
    data: List[Dict[str, Any]],
    key_columns: List[str]
) -> List[Dict[str, Any]]:
    """
    Deduplicate records by composite key, keeping last occurrence.

    Duplicate keys in one batch would make a single ON CONFLICT statement
    touch the same row twice, which PostgreSQL rejects.

    Args:
        data: List of record dictionaries
        key_columns: List of column names that form the unique key

    Returns:
        Deduplicated list of records (keeps last duplicate)

    Example:
        >>> records = [
        ...     {'client_id': '1', 'name': 'A'},
        ...     {'client_id': '1', 'name': 'B'},  # duplicate
        ...     {'client_id': '2', 'name': 'C'},
        ... ]
        >>> deduplicate_records(records, ['client_id'])
        [{'client_id': '1', 'name': 'B'}, {'client_id': '2', 'name': 'C'}]
    """
    seen = {}
    for record in data:
        key = tuple(record.get(col) for col in key_columns)
        seen[key] = record  # Later records overwrite earlier ones
    return list(seen.values())
