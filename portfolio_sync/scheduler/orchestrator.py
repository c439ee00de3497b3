"""
Sync orchestrator.

Runs one ingestion for one organization:

    pending -> in_progress -> success | error

The trigger (HTTP call, scheduler job, CLI) persists a SyncRun and takes the
organization's sync lease in the same transaction, then the pipeline runs on
a background thread and reports progress on the run record:

     5%  load source (local path or URL)
    20%  normalize columns, audit quality, score and fingerprint rows
    35%  reconcile against stored rows (progress moves to 85% per batch)
    90%  refresh classifications of officers whose rows changed
    95%  provision missing officer accounts (interactive runs only)
   100%  success

Reconciliation runs in a single transaction, so a run that fails leaves the
previously synced client data untouched.
"""

import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..common.config import SyncConfig
from ..common.date_utils import utcnow
from ..common.exceptions import IngestionError, RunSupersededError, SyncInProgressError
from ..common.http_client import HTTPClient
from ..common.models import new_uuid
from ..common.session import SessionManager
from ..datalayer import BulkReconciler, DataQualityReport, SourceLoader, prepare_client_records
from .events import EventBroadcaster
from .lease import SyncLeaseManager
from .models import ACTIVE_STATUSES, SyncRun, SyncStatus
from .provisioning import ProvisioningResult, provision_missing_officers
from .recalculation import RecalculationService


logger = logging.getLogger(__name__)

RESET_MESSAGE = 'Reset by user - was stuck in progress'


class SyncTrigger:
    """Who started a run."""
    SCHEDULER = 'scheduler'
    MANUAL = 'manual'
    UPLOAD = 'upload'
    CLI = 'cli'


# Runs started by a person; only these provision officer accounts
INTERACTIVE_TRIGGERS = (SyncTrigger.MANUAL, SyncTrigger.UPLOAD, SyncTrigger.CLI)


@dataclass
class SyncResult:
    """Outcome of one executed run."""
    run_id: str
    status: str
    records_processed: int = 0
    changed_records: int = 0
    error_message: Optional[str] = None
    quality_report: Dict[str, Any] = field(default_factory=dict)
    provisioned_users: List[Dict[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == SyncStatus.SUCCESS.value


class SyncOrchestrator:
    """
    Starts, executes and reports on sync runs.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        config: SyncConfig,
        loader: Optional[SourceLoader] = None,
        recalculation: Optional[RecalculationService] = None,
        broadcaster: Optional[EventBroadcaster] = None
    ):
        """
        Args:
            session_manager: Session factory
            config: Sync configuration (database type, lease length, batching)
            loader: Source loader (built from the HTTP settings when None)
            recalculation: Service used for the post-sync officer refresh
            broadcaster: Event broadcaster handed to a default recalculation service
        """
        self.session_manager = session_manager
        self.config = config
        self.loader = loader or SourceLoader(HTTPClient(
            pool_connections=config.http_pool_connections,
            pool_maxsize=config.http_pool_maxsize,
            total_retries=config.http_total_retries,
            default_timeout=config.http_timeout,
        ))
        self.recalculation = recalculation or RecalculationService(
            session_manager, broadcaster, config.recalculation_batch_size
        )
        self.lease_manager = SyncLeaseManager(config.sync_lease_minutes)

        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    # ========================================================================
    # Starting runs
    # ========================================================================

    def resolve_source(self, source: Optional[str]) -> str:
        source = source or self.config.excel_data_url
        if not source:
            raise IngestionError('No URL or file path provided')
        return source

    def create_run(self, organization_id: str, source: Optional[str] = None,
                   triggered_by: str = SyncTrigger.MANUAL) -> Dict[str, Any]:
        """
        Persist a pending run holding the organization's sync lease.

        Args:
            organization_id: Organization to sync
            source: Local path or URL (falls back to EXCEL_DATA_URL)
            triggered_by: One of SyncTrigger

        Returns:
            dict: The new run

        Raises:
            IngestionError: No source configured
            SyncInProgressError: Another live run holds the lease
        """
        source = self.resolve_source(source)
        run_id = new_uuid()

        with self.session_manager.session_scope() as session:
            lease = self.lease_manager.acquire(session, organization_id, run_id)
            if not lease.acquired:
                logger.info(f"Sync for '{organization_id}' refused: {lease.reason}")
                raise SyncInProgressError(organization_id, lease.holder_id)

            run = SyncRun(
                id=run_id,
                organization_id=organization_id,
                source=source,
                triggered_by=triggered_by,
                status=SyncStatus.PENDING.value,
                progress_percentage=0,
                current_step='Queued',
                started_at=utcnow(),
            )
            session.add(run)
            session.flush()
            payload = run.to_dict()

        logger.info(f"Created sync run {run_id} for '{organization_id}' ({triggered_by})")
        return payload

    def start_sync(self, organization_id: str, source: Optional[str] = None,
                   triggered_by: str = SyncTrigger.MANUAL,
                   remove_source_after: bool = False) -> Dict[str, Any]:
        """
        Accept a run and execute it on a background thread.

        Args:
            organization_id: Organization to sync
            source: Local path or URL (falls back to EXCEL_DATA_URL)
            triggered_by: One of SyncTrigger
            remove_source_after: Delete the local source file when done (uploads)

        Returns:
            dict: The accepted (pending) run
        """
        try:
            run = self.create_run(organization_id, source, triggered_by)
        except Exception:
            if remove_source_after and source:
                _remove_file(source)
            raise

        thread = threading.Thread(
            target=self.execute,
            args=(run['id'],),
            kwargs={'remove_source_after': remove_source_after},
            daemon=True,
            name=f"sync-{run['id'][:8]}",
        )
        with self._lock:
            self._threads[run['id']] = thread
        thread.start()
        return run

    def run_sync(self, organization_id: str, source: Optional[str] = None,
                 triggered_by: str = SyncTrigger.CLI) -> SyncResult:
        """Accept and execute a run on the calling thread."""
        run = self.create_run(organization_id, source, triggered_by)
        return self.execute(run['id'])

    def run_scheduled_sync(self, organization_id: Optional[str] = None) -> Optional[SyncResult]:
        """
        Scheduler job body: sync EXCEL_DATA_URL unless another run is live.

        Returns:
            SyncResult or None: None when the run was skipped
        """
        organization_id = organization_id or self.config.default_organization_id
        if not self.config.excel_data_url:
            logger.info('Scheduled sync skipped: EXCEL_DATA_URL is not configured')
            return None
        try:
            run = self.create_run(organization_id, triggered_by=SyncTrigger.SCHEDULER)
        except SyncInProgressError as e:
            logger.info(f"Scheduled sync skipped: {e}")
            return None
        return self.execute(run['id'])

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Block until a background run finishes and return its final state."""
        with self._lock:
            thread = self._threads.get(run_id)
        if thread is not None:
            thread.join(timeout)
        return self.get_run(run_id)

    # ========================================================================
    # Execution
    # ========================================================================

    def execute(self, run_id: str, remove_source_after: bool = False) -> SyncResult:
        """
        Run the pipeline for an accepted run.

        Pipeline failures end the run in the error state with the captured
        message. A run that is no longer pending (reset, or taken over after
        its lease expired) is left as it is, and so is a run that loses its
        lease while executing.

        Args:
            run_id: Pending run created by create_run()
            remove_source_after: Delete the local source file when done

        Returns:
            SyncResult: Final outcome

        Raises:
            IngestionError: No run with this id exists
        """
        with self.session_manager.session_scope() as session:
            run = session.get(SyncRun, run_id)
            if run is None:
                raise IngestionError(f"Sync run {run_id} not found")
            organization_id = run.organization_id
            source = run.source
            triggered_by = run.triggered_by
            skipped = None
            if run.status != SyncStatus.PENDING.value:
                skipped = SyncResult(run_id=run_id, status=run.status, error_message=run.error_message)
            else:
                run.status = SyncStatus.IN_PROGRESS.value
                run.current_step = 'Starting'

        if skipped is not None:
            logger.warning(f"Sync run {run_id} not started: already {skipped.status}")
            self._discard_run_thread(run_id, source if remove_source_after else None)
            return skipped

        report = DataQualityReport()
        result = SyncResult(run_id=run_id, status=SyncStatus.IN_PROGRESS.value)
        logger.info(f"Sync run {run_id} started for '{organization_id}' from {source}")

        try:
            self._update_run(run_id, organization_id, 5, 'Loading source data')
            frame = self.loader.load(source)

            self._update_run(run_id, organization_id, 20, f"Normalizing and scoring {len(frame)} rows")
            with self.session_manager.session_scope() as session:
                weights = self.recalculation.load_weights(session, organization_id)
            extract = prepare_client_records(frame, organization_id, weights, report)

            self._update_run(
                run_id, organization_id, 35,
                f"Reconciling {len(extract.records)} client records",
                quality_report=report.to_dict(),
            )
            reconciled = self._reconcile(run_id, organization_id, extract.records)
            result.records_processed = reconciled.total_considered
            result.changed_records = reconciled.written_candidates

            self._update_run(
                run_id, organization_id, 90,
                f"Refreshing scores for {len(reconciled.changed_officer_ids)} loan officers",
                records_processed=result.records_processed,
                changed_records=result.changed_records,
            )
            self._refresh_officers(organization_id, reconciled.changed_officer_ids, report)

            provisioned = ProvisioningResult()
            if triggered_by in INTERACTIVE_TRIGGERS:
                self._update_run(run_id, organization_id, 95, 'Provisioning loan officer accounts')
                with self.session_manager.session_scope() as session:
                    provisioned = provision_missing_officers(session, organization_id, extract.loan_officer_ids)
            result.provisioned_users = provisioned.created

            result.status = SyncStatus.SUCCESS.value
            result.quality_report = report.to_dict()
            finished = self._finish_run(
                run_id, organization_id, SyncStatus.SUCCESS,
                current_step=(f"Completed: {result.records_processed} records processed, "
                              f"{result.changed_records} new or changed"),
                quality_report=result.quality_report,
                provisioned_users=provisioned.created,
                provisioning_errors=provisioned.errors,
            )
            if not finished:
                raise RunSupersededError(run_id, 'run was ended before it could complete')
            logger.info(
                f"Sync run {run_id} succeeded: {result.records_processed} processed, "
                f"{result.changed_records} new or changed, {reconciled.failed} skipped"
            )

        except RunSupersededError as e:
            logger.warning(f"{e}; leaving the run record to its new owner")
            stored = self.get_run(run_id) or {}
            result.status = SyncStatus.ERROR.value
            result.error_message = stored.get('error_message') or e.reason
            result.quality_report = report.to_dict()

        except Exception as e:
            logger.exception(f"Sync run {run_id} for '{organization_id}' failed")
            result.status = SyncStatus.ERROR.value
            result.error_message = str(e) or e.__class__.__name__
            result.quality_report = report.to_dict()
            self._finish_run(
                run_id, organization_id, SyncStatus.ERROR,
                current_step='Failed',
                error_message=result.error_message,
                quality_report=result.quality_report,
            )

        finally:
            self._discard_run_thread(run_id, source if remove_source_after else None)

        return result

    def _discard_run_thread(self, run_id: str, upload_path: Optional[str]) -> None:
        if upload_path:
            _remove_file(upload_path)
        with self._lock:
            self._threads.pop(run_id, None)

    def _reconcile(self, run_id: str, organization_id: str, records: List[Dict[str, Any]]):
        with self.session_manager.session_scope() as session:

            def on_progress(written: int, total: int) -> None:
                percentage = 35 + int(50 * written / max(total, 1))
                with self._progress_session(session) as progress_session:
                    self._apply_progress(
                        progress_session, run_id, organization_id, percentage,
                        f"Reconciled {written}/{total} new or changed records",
                    )

            reconciler = BulkReconciler(session, self.config.database.db_type, self.config)
            return reconciler.reconcile(organization_id, records, progress_callback=on_progress)

    def _refresh_officers(self, organization_id: str, officer_ids: List[str],
                          report: DataQualityReport) -> None:
        try:
            self.recalculation.refresh_officers(organization_id, officer_ids)
        except Exception as e:
            logger.error(f"Post-sync score refresh for '{organization_id}' failed: {e}")
            report.add_warning(f"Score refresh after sync failed: {e}")

    # ========================================================================
    # Run record updates
    # ========================================================================

    @contextmanager
    def _progress_session(self, reconcile_session: Session):
        """
        Session for progress writes made while reconciliation is open.

        With a single-writer database progress goes through the reconcile
        session; elsewhere it is committed in its own transaction so pollers
        see it immediately.
        """
        if self.session_manager.single_writer:
            yield reconcile_session
            reconcile_session.flush()
        else:
            with self.session_manager.session_scope() as session:
                yield session

    def _apply_progress(self, session: Session, run_id: str, organization_id: str,
                        percentage: int, step: str, **fields) -> None:
        run = session.get(SyncRun, run_id)
        if run is None or run.is_terminal:
            raise RunSupersededError(run_id, 'run was ended elsewhere')
        if not self.lease_manager.renew(session, organization_id, run_id):
            raise RunSupersededError(run_id, 'sync lease is held by another run')
        # Progress only moves forward
        run.progress_percentage = max(run.progress_percentage or 0, min(percentage, 100))
        run.current_step = step
        for name, value in fields.items():
            setattr(run, name, value)

    def _update_run(self, run_id: str, organization_id: str, percentage: int, step: str, **fields) -> None:
        with self.session_manager.session_scope() as session:
            self._apply_progress(session, run_id, organization_id, percentage, step, **fields)
        logger.info(f"Sync run {run_id}: {percentage}% {step}")

    def _finish_run(self, run_id: str, organization_id: str, status: SyncStatus,
                    current_step: str, **fields) -> bool:
        """Record the final state; False when the run was already ended or lost its lease."""
        with self.session_manager.session_scope() as session:
            run = session.get(SyncRun, run_id)
            if run is None or run.is_terminal:
                logger.warning(f"Sync run {run_id} already ended; not recording {status.value}")
                return False
            if not self.lease_manager.release(session, organization_id, owner_id=run_id):
                logger.warning(f"Sync run {run_id} no longer holds the lease; not recording {status.value}")
                return False
            run.status = status.value
            run.current_step = current_step
            run.completed_at = utcnow()
            if status == SyncStatus.SUCCESS:
                run.progress_percentage = 100
            for name, value in fields.items():
                setattr(run, name, value)
        return True

    # ========================================================================
    # Status
    # ========================================================================

    def get_run(self, run_id: str, organization_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        with self.session_manager.session_scope() as session:
            run = session.get(SyncRun, run_id)
            if run is None or (organization_id is not None and run.organization_id != organization_id):
                return None
            return run.to_dict()

    def latest_run(self, organization_id: str) -> Optional[Dict[str, Any]]:
        """Most recently started run for an organization, or None if it never synced."""
        with self.session_manager.session_scope() as session:
            run = session.execute(
                select(SyncRun)
                .where(SyncRun.organization_id == organization_id)
                .order_by(SyncRun.started_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return run.to_dict() if run else None

    def reset_stuck_runs(self, organization_id: str) -> int:
        """
        Mark every pending or in-progress run as failed and drop the lease.

        Returns:
            int: Number of runs reset
        """
        with self.session_manager.session_scope() as session:
            runs = session.execute(
                select(SyncRun).where(
                    SyncRun.organization_id == organization_id,
                    SyncRun.status.in_(ACTIVE_STATUSES),
                )
            ).scalars().all()
            for run in runs:
                run.status = SyncStatus.ERROR.value
                run.error_message = RESET_MESSAGE
                run.current_step = 'Reset'
                run.completed_at = utcnow()
            self.lease_manager.release(session, organization_id)

        if runs:
            logger.warning(f"Reset {len(runs)} stuck sync runs for '{organization_id}'")
        return len(runs)


def _remove_file(path: str) -> None:
    try:
        if os.path.isfile(path):
            os.remove(path)
            logger.info(f"Removed uploaded file {path}")
    except OSError as e:
        logger.error(f"Failed to remove uploaded file {path}: {e}")
