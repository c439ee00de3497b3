"""
Ingestion data layer: source loading, column normalization, quality
reporting, fingerprints and bulk reconciliation.
"""

from .client_extract import ExtractResult, prepare_client_records, transform_record
from .column_normalizer import ColumnNormalizer, match_columns, normalize_header, similarity
from .fingerprint import HASHED_FIELDS, compute_client_data_hash, has_changed
from .quality import DataQualityReport
from .reconciler import BulkReconciler, ReconcileResult, bulk_upsert_clients, choose_batch_size
from .source import SourceLoader, is_local_path, parse_first_sheet, rewrite_share_link

__all__ = [
    'ExtractResult', 'prepare_client_records', 'transform_record',
    'ColumnNormalizer', 'match_columns', 'normalize_header', 'similarity',
    'HASHED_FIELDS', 'compute_client_data_hash', 'has_changed',
    'DataQualityReport',
    'BulkReconciler', 'ReconcileResult', 'bulk_upsert_clients', 'choose_batch_size',
    'SourceLoader', 'is_local_path', 'parse_first_sheet', 'rewrite_share_link',
]
