"""
Bulk reconciler: writes only new or changed client rows.

Existing fingerprints for the organization are fetched in one query, rows
whose fingerprint is unchanged are skipped, and the rest are upserted on
(organization_id, client_id) in sequential, size-bounded batches.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session
from tqdm import tqdm

from ..common.config import DatabaseType, SyncConfig
from ..common.data_utils import deduplicate_records
from ..common.models import Client, new_uuid
from ..common.operations import ClientRepository, UpsertOperations
from .fingerprint import has_changed


logger = logging.getLogger(__name__)

CONSTRAINT_COLUMNS = ['organization_id', 'client_id']

# Columns owned by the sync; officer-entered fields are never overwritten
SYNC_UPDATE_COLUMNS = [
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
    'urgency_breakdown',
    'data_hash',
]


@dataclass
class ReconcileResult:
    total_considered: int = 0
    new_records: int = 0
    changed_records: int = 0
    unchanged_records: int = 0
    upserted: int = 0
    failed: int = 0
    batch_size: int = 0
    changed_officer_ids: List[str] = field(default_factory=list)

    @property
    def written_candidates(self) -> int:
        return self.new_records + self.changed_records

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_considered': self.total_considered,
            'new_records': self.new_records,
            'changed_records': self.changed_records,
            'unchanged_records': self.unchanged_records,
            'upserted': self.upserted,
            'failed': self.failed,
            'batch_size': self.batch_size,
            'changed_officer_ids': list(self.changed_officer_ids),
        }


def choose_batch_size(row_count: int, columns_per_row: int, config: Optional[SyncConfig] = None) -> int:
    """
    Batch size for an upsert of row_count rows.

    One batch up to the small-batch threshold, fixed large batches above the
    large-dataset threshold, otherwise as many rows as fit under the
    per-statement parameter ceiling (capped).

    Args:
        row_count: Rows to write
        columns_per_row: Bound parameters per row
        config: Sizing settings (defaults when None)

    Returns:
        int: Rows per batch (at least 1)
    """
    config = config or SyncConfig()
    if row_count <= config.small_batch_threshold:
        return max(row_count, 1)
    if row_count > config.large_dataset_threshold:
        return config.large_batch_size
    by_params = config.max_statement_params // max(columns_per_row, 1)
    return max(1, min(by_params, config.max_batch_size))


class BulkReconciler:
    """
    Reconciles one organization's extract against stored client rows.
    """

    def __init__(self, session: Session, db_type: DatabaseType, config: Optional[SyncConfig] = None):
        """
        Args:
            session: Session of the enclosing transaction
            db_type: Database type (selects the upsert dialect)
            config: Batch sizing and pause settings
        """
        self.session = session
        self.config = config or SyncConfig()
        self.clients = ClientRepository(session)
        self.upserts = UpsertOperations(session, db_type)

    def reconcile(
        self,
        organization_id: str,
        records: List[Dict[str, Any]],
        progress_callback: Optional[Callable[[int, int], None]] = None,
        show_progress: bool = False
    ) -> ReconcileResult:
        """
        Upsert new and changed records, skipping unchanged ones.

        Args:
            organization_id: Organization the records belong to
            records: Client column dicts carrying data_hash
            progress_callback: Optional callback(written, total_to_write)
            show_progress: Display a tqdm bar over batches

        Returns:
            ReconcileResult: Counts, including every incoming row in
            total_considered
        """
        result = ReconcileResult(total_considered=len(records))
        if not records:
            return result

        unique_records = deduplicate_records(records, CONSTRAINT_COLUMNS)
        if len(unique_records) < len(records):
            logger.warning(
                f"Dropped {len(records) - len(unique_records)} duplicate client ids "
                f"(last occurrence kept)"
            )

        existing = self.clients.get_sync_index(organization_id)
        logger.info(f"Fetched {len(existing)} existing fingerprints for organization '{organization_id}'")

        to_write = []
        officers = []
        for record in unique_records:
            stored = existing.get(record['client_id'])
            if stored is None:
                result.new_records += 1
            elif has_changed(record, stored[0]):
                result.changed_records += 1
                if stored[1] not in officers:
                    officers.append(stored[1])
            else:
                result.unchanged_records += 1
                continue

            to_write.append({'id': new_uuid(), **record})
            if record['loan_officer_id'] not in officers:
                officers.append(record['loan_officer_id'])

        result.unchanged_records += len(records) - len(unique_records)
        result.changed_officer_ids = officers

        logger.info(
            f"Change detection: {result.new_records} new, {result.changed_records} changed, "
            f"{result.unchanged_records} unchanged"
        )
        if not to_write:
            return result

        result.batch_size = choose_batch_size(len(to_write), len(to_write[0]), self.config)
        total_batches = (len(to_write) + result.batch_size - 1) // result.batch_size

        def with_bar(iterable):
            return tqdm(iterable, total=total_batches, desc='Upserting clients',
                        unit='batch', disable=not show_progress)

        batch_result = self.upserts.upsert_batch(
            Client,
            to_write,
            constraint_columns=CONSTRAINT_COLUMNS,
            chunk_size=result.batch_size,
            update_columns=SYNC_UPDATE_COLUMNS,
            progress_callback=progress_callback,
            pause_every=self.config.upsert_pause_every,
            pause_seconds=self.config.upsert_pause_seconds,
            chunk_iterator=with_bar,
        )
        result.upserted = batch_result.processed
        result.failed = batch_result.failed
        return result


def bulk_upsert_clients(
    session: Session,
    db_type: DatabaseType,
    organization_id: str,
    records: List[Dict[str, Any]],
    config: Optional[SyncConfig] = None
) -> int:
    """
    Reconcile records and return the number of rows considered (skipped included).
    """
    return BulkReconciler(session, db_type, config).reconcile(organization_id, records).total_considered
