"""
Sync Orchestrator Tests

End-to-end runs from a workbook on disk, the per-organization sync lease,
failure handling and run status queries.
"""
import dataclasses
import shutil
from datetime import timedelta

import pytest

from portfolio_sync.common.date_utils import utcnow
from portfolio_sync.common.exceptions import IngestionError, SyncInProgressError
from portfolio_sync.common.models import LoanOfficer
from portfolio_sync.datalayer import BulkReconciler
from portfolio_sync.scheduler import orchestrator as orchestrator_module
from portfolio_sync.scheduler.models import SyncLease, SyncRun
from portfolio_sync.scheduler.orchestrator import RESET_MESSAGE, SyncOrchestrator, SyncTrigger

from .conftest import ORG, fetch_clients


class FrameLoader:
    """Source loader returning a prepared frame."""

    def __init__(self, frame):
        self.frame = frame
        self.sources = []

    def load(self, source):
        self.sources.append(source)
        return self.frame.copy()


class InterruptedLoader(FrameLoader):
    """Runs a side effect while the source is being read."""

    def __init__(self, frame, during_load=None):
        super().__init__(frame)
        self.during_load = during_load

    def load(self, source):
        frame = super().load(source)
        if self.during_load:
            self.during_load()
        return frame


class ExplodingReconciler(BulkReconciler):
    """Writes everything, then fails before the transaction commits."""

    def reconcile(self, *args, **kwargs):
        super().reconcile(*args, **kwargs)
        raise RuntimeError('connection lost during commit')


def officers(session_manager, organization_id=ORG):
    with session_manager.session_scope() as session:
        rows = session.query(LoanOfficer).filter_by(organization_id=organization_id).all()
        return {o.loan_officer_id: o for o in rows}


def lease_holder(orchestrator, organization_id=ORG):
    with orchestrator.session_manager.session_scope() as session:
        return orchestrator.lease_manager.holder(session, organization_id)


def lease_owner(session_manager, organization_id=ORG):
    """Owner of the lease row, expired or not."""
    with session_manager.session_scope() as session:
        lease = session.get(SyncLease, organization_id)
        return lease.owner_id if lease else None


class TestRunSync:
    """Synchronous runs from the CLI path."""

    def test_first_run_imports_scores_and_provisions(self, orchestrator, session_manager, workbook_path):
        result = orchestrator.run_sync(ORG, workbook_path)

        assert result.success
        assert result.records_processed == 4
        assert result.changed_records == 4
        assert {u['loan_officer_id'] for u in result.provisioned_users} == {'LO1', 'LO2'}
        assert all(len(u['setup_token']) == 16 for u in result.provisioned_users)

        clients = fetch_clients(session_manager)
        assert set(clients) == {'C001', 'C002', 'C003', 'C004'}
        assert clients['C002'].is_at_risk

        stored = officers(session_manager)
        assert set(stored) == {'LO1', 'LO2'}
        assert stored['LO1'].requires_setup

    def test_run_record_reaches_success(self, orchestrator, workbook_path):
        result = orchestrator.run_sync(ORG, workbook_path)
        run = orchestrator.get_run(result.run_id)

        assert run['status'] == 'success'
        assert run['progress_percentage'] == 100
        assert run['triggered_by'] == SyncTrigger.CLI
        assert run['current_step'].startswith('Completed: 4 records processed')
        assert run['completed_at'] is not None
        assert 'Excel file contains 4 rows and 13 columns' in run['quality_report']['info']
        assert lease_holder(orchestrator) is None

    def test_second_identical_run_changes_nothing(self, orchestrator, broadcaster, workbook_path):
        orchestrator.run_sync(ORG, workbook_path)
        refreshes = broadcaster.types().count('scores_updated')

        result = orchestrator.run_sync(ORG, workbook_path)

        assert result.success
        assert result.records_processed == 4
        assert result.changed_records == 0
        assert result.provisioned_users == []
        assert broadcaster.types().count('scores_updated') == refreshes

    def test_changed_officers_are_refreshed(self, orchestrator, broadcaster, workbook_path):
        orchestrator.run_sync(ORG, workbook_path)

        refresh = next(e for e in broadcaster.events if e['type'] == 'scores_updated')
        assert refresh['organization_id'] == ORG
        assert refresh['data']['reason'] == 'sync'
        assert refresh['data']['summary']['processed'] == 4

    def test_refresh_failure_is_reported_as_warning(self, orchestrator, workbook_path, monkeypatch):
        def broken_refresh(organization_id, officer_ids):
            raise RuntimeError('scores table locked')

        monkeypatch.setattr(orchestrator.recalculation, 'refresh_officers', broken_refresh)
        result = orchestrator.run_sync(ORG, workbook_path)

        assert result.success
        assert any('scores table locked' in w for w in result.quality_report['warnings'])

    def test_source_falls_back_to_configured_url(self, session_manager, config, sample_frame):
        loader = FrameLoader(sample_frame)
        configured = dataclasses.replace(config, excel_data_url='https://files.example.com/portfolio.xlsx')
        orchestrator = SyncOrchestrator(session_manager, configured, loader=loader)

        assert orchestrator.run_sync(ORG).success
        assert loader.sources == ['https://files.example.com/portfolio.xlsx']

    def test_missing_source_is_rejected_before_a_run_exists(self, orchestrator):
        with pytest.raises(IngestionError, match='No URL or file path provided'):
            orchestrator.run_sync(ORG)
        assert orchestrator.latest_run(ORG) is None


class TestFailedRuns:
    """Failures end the run in the error state and keep earlier data."""

    def test_missing_file_marks_run_error(self, orchestrator, tmp_path):
        result = orchestrator.run_sync(ORG, str(tmp_path / 'absent.xlsx'))

        assert result.status == 'error'
        assert 'Local file not found' in result.error_message
        run = orchestrator.get_run(result.run_id)
        assert run['status'] == 'error'
        assert run['error_message'] == result.error_message
        assert run['current_step'] == 'Failed'
        assert lease_holder(orchestrator) is None

    def test_failed_reconcile_leaves_previous_data(self, orchestrator, session_manager,
                                                  sample_frame, workbook_path, tmp_path, monkeypatch):
        orchestrator.run_sync(ORG, workbook_path)

        updated = sample_frame.copy()
        updated.loc[0, 'late days'] = 60
        updated.loc[3, 'Client Name'] = 'Daniel'
        updated_path = tmp_path / 'updated.xlsx'
        updated.to_excel(updated_path, index=False)

        monkeypatch.setattr(orchestrator_module, 'BulkReconciler', ExplodingReconciler)
        result = orchestrator.run_sync(ORG, str(updated_path))

        assert result.status == 'error'
        assert result.error_message == 'connection lost during commit'
        clients = fetch_clients(session_manager)
        assert clients['C001'].late_days == 0
        assert clients['C004'].name == 'Dan'
        assert lease_holder(orchestrator) is None

    def test_unknown_run_id(self, orchestrator):
        with pytest.raises(IngestionError, match='not found'):
            orchestrator.execute('no-such-run')


class TestSyncLease:
    """One live run per organization."""

    def test_second_run_is_refused_while_lease_is_live(self, orchestrator, workbook_path):
        first = orchestrator.create_run(ORG, workbook_path)

        with pytest.raises(SyncInProgressError) as excinfo:
            orchestrator.create_run(ORG, workbook_path)

        assert excinfo.value.active_run_id == first['id']
        assert lease_holder(orchestrator) == first['id']

    def test_other_organizations_are_not_blocked(self, orchestrator, workbook_path):
        orchestrator.create_run(ORG, workbook_path)
        other = orchestrator.create_run('other', workbook_path)
        assert other['status'] == 'pending'

    def test_expired_lease_is_taken_over(self, session_manager, config, workbook_path):
        orchestrator = SyncOrchestrator(session_manager, dataclasses.replace(config, sync_lease_minutes=0))
        stale = orchestrator.create_run(ORG, workbook_path)

        fresh = orchestrator.create_run(ORG, workbook_path)

        abandoned = orchestrator.get_run(stale['id'])
        assert abandoned['status'] == 'error'
        assert abandoned['error_message'].startswith('Abandoned')
        assert fresh['id'] in abandoned['error_message']

    def test_stale_holder_is_marked_abandoned(self, orchestrator, workbook_path):
        stale = orchestrator.create_run(ORG, workbook_path)

        with orchestrator.session_manager.session_scope() as session:
            result = orchestrator.lease_manager.acquire(
                session, ORG, 'next-run', now=utcnow() + timedelta(minutes=11)
            )

        assert result.acquired
        assert result.superseded_run_id == stale['id']
        assert orchestrator.get_run(stale['id'])['status'] == 'error'

    def test_lease_of_finished_holder_is_reusable(self, orchestrator, workbook_path):
        first = orchestrator.create_run(ORG, workbook_path)
        with orchestrator.session_manager.session_scope() as session:
            session.get(SyncRun, first['id']).status = 'success'

        second = orchestrator.create_run(ORG, workbook_path)
        assert lease_holder(orchestrator) == second['id']

    def test_abandoned_run_is_not_started_later(self, session_manager, config, workbook_path):
        orchestrator = SyncOrchestrator(session_manager, dataclasses.replace(config, sync_lease_minutes=0))
        stale = orchestrator.create_run(ORG, workbook_path)
        fresh = orchestrator.create_run(ORG, workbook_path)

        result = orchestrator.execute(stale['id'])

        assert result.status == 'error'
        assert result.error_message.startswith('Abandoned')
        run = orchestrator.get_run(stale['id'])
        assert run['status'] == 'error'
        assert run['error_message'].startswith('Abandoned')
        assert fetch_clients(session_manager) == {}
        assert lease_owner(session_manager) == fresh['id']

    def test_run_taken_over_while_loading_stays_abandoned(self, session_manager, config, sample_frame):
        loader = InterruptedLoader(sample_frame)
        orchestrator = SyncOrchestrator(
            session_manager, dataclasses.replace(config, sync_lease_minutes=0), loader=loader
        )
        stale = orchestrator.create_run(ORG, 'portfolio.xlsx')
        taken_over = []
        loader.during_load = lambda: taken_over.append(orchestrator.create_run(ORG, 'portfolio.xlsx'))

        result = orchestrator.execute(stale['id'])

        fresh = taken_over[0]
        assert not result.success
        run = orchestrator.get_run(stale['id'])
        assert run['status'] == 'error'
        assert fresh['id'] in run['error_message']
        assert run['progress_percentage'] < 100
        assert fetch_clients(session_manager) == {}

        loader.during_load = None
        assert orchestrator.execute(fresh['id']).success
        assert orchestrator.get_run(stale['id'])['status'] == 'error'


class TestBackgroundRuns:
    """Runs accepted from HTTP triggers."""

    def test_start_sync_returns_pending_run(self, orchestrator, workbook_path):
        run = orchestrator.start_sync(ORG, workbook_path)

        assert run['status'] == 'pending'
        assert run['current_step'] == 'Queued'
        final = orchestrator.wait(run['id'], timeout=30)
        assert final['status'] == 'success'
        assert final['progress_percentage'] == 100

    def test_uploaded_file_is_removed(self, orchestrator, workbook_path, tmp_path):
        upload = tmp_path / 'upload.xlsx'
        shutil.copy(workbook_path, upload)

        run = orchestrator.start_sync(ORG, str(upload), SyncTrigger.UPLOAD, remove_source_after=True)
        orchestrator.wait(run['id'], timeout=30)

        assert not upload.exists()

    def test_refused_upload_is_removed(self, orchestrator, workbook_path, tmp_path):
        orchestrator.create_run(ORG, workbook_path)
        upload = tmp_path / 'upload.xlsx'
        shutil.copy(workbook_path, upload)

        with pytest.raises(SyncInProgressError):
            orchestrator.start_sync(ORG, str(upload), SyncTrigger.UPLOAD, remove_source_after=True)
        assert not upload.exists()


class TestScheduledSync:
    """Scheduler job body."""

    def test_skipped_without_configured_url(self, orchestrator):
        assert orchestrator.run_scheduled_sync() is None
        assert orchestrator.latest_run(ORG) is None

    def test_scheduled_run_does_not_provision(self, session_manager, config, workbook_path):
        scheduled = dataclasses.replace(config, excel_data_url=workbook_path)
        orchestrator = SyncOrchestrator(session_manager, scheduled)

        result = orchestrator.run_scheduled_sync()

        assert result.success
        assert result.provisioned_users == []
        assert officers(session_manager) == {}
        assert orchestrator.latest_run(ORG)['triggered_by'] == SyncTrigger.SCHEDULER

    def test_skipped_while_another_run_is_live(self, session_manager, config, workbook_path):
        scheduled = dataclasses.replace(config, excel_data_url=workbook_path)
        orchestrator = SyncOrchestrator(session_manager, scheduled)
        orchestrator.create_run(ORG, workbook_path)

        assert orchestrator.run_scheduled_sync() is None


class TestRunStatus:
    """Status queries and stuck-run reset."""

    def test_latest_run_for_never_synced_organization(self, orchestrator):
        assert orchestrator.latest_run('nobody') is None

    def test_get_run_is_scoped_to_organization(self, orchestrator, workbook_path):
        run = orchestrator.create_run(ORG, workbook_path)
        assert orchestrator.get_run(run['id'], ORG)['id'] == run['id']
        assert orchestrator.get_run(run['id'], 'other') is None

    def test_reset_stuck_runs(self, orchestrator, workbook_path):
        stuck = orchestrator.create_run(ORG, workbook_path)

        assert orchestrator.reset_stuck_runs(ORG) == 1

        run = orchestrator.get_run(stuck['id'])
        assert run['status'] == 'error'
        assert run['error_message'] == RESET_MESSAGE
        assert lease_holder(orchestrator) is None
        assert orchestrator.create_run(ORG, workbook_path)['status'] == 'pending'

    def test_reset_ignores_finished_runs(self, orchestrator, workbook_path):
        orchestrator.run_sync(ORG, workbook_path)
        assert orchestrator.reset_stuck_runs(ORG) == 0

    def test_reset_run_is_not_started_later(self, orchestrator, session_manager, workbook_path):
        stuck = orchestrator.create_run(ORG, workbook_path)
        orchestrator.reset_stuck_runs(ORG)

        result = orchestrator.execute(stuck['id'])

        assert result.status == 'error'
        assert result.error_message == RESET_MESSAGE
        run = orchestrator.get_run(stuck['id'])
        assert run['status'] == 'error'
        assert run['error_message'] == RESET_MESSAGE
        assert fetch_clients(session_manager) == {}

    def test_run_reset_while_loading_keeps_reset_message(self, session_manager, config, sample_frame):
        loader = InterruptedLoader(sample_frame)
        orchestrator = SyncOrchestrator(session_manager, config, loader=loader)
        loader.during_load = lambda: orchestrator.reset_stuck_runs(ORG)

        result = orchestrator.run_sync(ORG, 'portfolio.xlsx')

        assert result.status == 'error'
        assert result.error_message == RESET_MESSAGE
        run = orchestrator.get_run(result.run_id)
        assert run['status'] == 'error'
        assert run['error_message'] == RESET_MESSAGE
        assert run['current_step'] == 'Reset'
        assert fetch_clients(session_manager) == {}
        assert lease_owner(session_manager) is None
