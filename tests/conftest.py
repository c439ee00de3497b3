"""
Pytest fixtures: in-memory SQLite database, services and sample workbooks.
"""
import pandas as pd
import pytest

from portfolio_sync.common.config import SyncConfig
from portfolio_sync.common.engine import create_engine_from_config
from portfolio_sync.common.models import Client, create_tables
from portfolio_sync.common.session import SessionManager
from portfolio_sync.scheduler.orchestrator import SyncOrchestrator
from portfolio_sync.scheduler.recalculation import RecalculationService


ORG = 'mfw'


class RecordingBroadcaster:
    """Collects published events instead of delivering them."""

    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)

    def types(self):
        return [e['type'] for e in self.events]


@pytest.fixture
def config(tmp_path):
    return SyncConfig(upsert_pause_seconds=0, upload_folder=str(tmp_path / 'uploads'))


@pytest.fixture
def engine(config):
    engine = create_engine_from_config(config.database)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_manager(engine):
    return SessionManager(engine)


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def recalculation(session_manager, broadcaster):
    return RecalculationService(session_manager, broadcaster, batch_size=2)


@pytest.fixture
def orchestrator(session_manager, config, recalculation):
    return SyncOrchestrator(session_manager, config, recalculation=recalculation)


@pytest.fixture
def sample_frame():
    """Extract with a mix of header spellings and one risky client."""
    return pd.DataFrame({
        'Client ID': ['C001', 'C002', 'C003', 'C004'],
        'Client Name': ['Alice', 'Bob', 'Carol', 'Dan'],
        'LO ID': ['lo1', 'LO1', ' lo2 ', 'LO2'],
        'BM ID': ['BM1', 'BM1', 'BM2', 'BM2'],
        'OUTSTANDING': [5000, 12000, 800, 0],
        'Outstanding at risk': [0, 9000, 100, 0],
        'PAR PER LOAN': [0, 0.9, 0.1, 0],
        'late days': [0, 85, 10, 0],
        'total delayed instalments': [0, 15, 2, 0],
        'paid instalments': [40, 3, 20, 50],
        'COUNT_RESCHEDULE': [0, 4, 1, 0],
        'PAYMENT_MONTLY': [250, 600, 80, 0],
        'Branch': ['North', 'North', 'South', 'South'],
    })


@pytest.fixture
def workbook_path(tmp_path, sample_frame):
    path = tmp_path / 'portfolio.xlsx'
    sample_frame.to_excel(path, index=False)
    return str(path)


def fetch_clients(session_manager, organization_id=ORG):
    """All stored clients keyed by external client id, detached."""
    with session_manager.session_scope() as session:
        clients = session.query(Client).filter_by(organization_id=organization_id).all()
        return {c.client_id: c for c in clients}
