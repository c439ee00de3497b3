"""
Common data layer: configuration, database engine and sessions, ORM models,
dialect-aware upserts, repositories and HTTP downloads.

Example Usage:
    from portfolio_sync.common import SyncConfig, create_engine_from_config
    from portfolio_sync.common import SessionManager, UpsertOperations

    config = SyncConfig.from_env()
    engine = create_engine_from_config(config.database)
    session_manager = SessionManager(engine)

    with session_manager.session_scope() as session:
        upsert_ops = UpsertOperations(session, config.database.db_type)
"""

from .config import DatabaseConfig, DatabaseType, SyncConfig
from .engine import create_engine_from_config
from .session import SessionManager
from .models import (
    Base, BaseModel, TimestampMixin,
    Client, WeightSettings, LoanOfficer, Visit, PhoneCall,
    create_tables,
)
from .operations import (
    BaseRepository,
    ClientRepository,
    WeightSettingsRepository,
    LoanOfficerRepository,
    UpsertOperations,
    UpsertBatchResult,
)
from .upsert_strategies import (
    UpsertStrategy,
    UpsertFactory,
    PostgreSQLUpsertStrategy,
    MariaDBUpsertStrategy,
    SQLiteUpsertStrategy,
    AzureSQLUpsertStrategy,
)
from .http_client import HTTPClient
from .exceptions import (
    PortfolioSyncError,
    IngestionError,
    SourceFetchError,
    WeightValidationError,
    SyncInProgressError,
    RunSupersededError,
    NotFoundError,
)


__all__ = [
    'DatabaseConfig',
    'DatabaseType',
    'SyncConfig',
    'create_engine_from_config',
    'SessionManager',
    'Base',
    'BaseModel',
    'TimestampMixin',
    'Client',
    'WeightSettings',
    'LoanOfficer',
    'Visit',
    'PhoneCall',
    'create_tables',
    'BaseRepository',
    'ClientRepository',
    'WeightSettingsRepository',
    'LoanOfficerRepository',
    'UpsertOperations',
    'UpsertBatchResult',
    'UpsertStrategy',
    'UpsertFactory',
    'PostgreSQLUpsertStrategy',
    'MariaDBUpsertStrategy',
    'SQLiteUpsertStrategy',
    'AzureSQLUpsertStrategy',
    'HTTPClient',
    'PortfolioSyncError',
    'IngestionError',
    'SourceFetchError',
    'WeightValidationError',
    'SyncInProgressError',
    'RunSupersededError',
    'NotFoundError',
]
