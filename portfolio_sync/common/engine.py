"""
Database engine factory for the portfolio store.

Client rows, weight settings, sync runs and leases live in one of Azure SQL,
MariaDB, PostgreSQL or SQLite. Server databases get a sized connection pool;
SQLite is used for local runs and the test suite.
"""

import logging
import time
from typing import Any, Dict

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from .config import DatabaseConfig, DatabaseType


logger = logging.getLogger(__name__)

DRIVERS = {
    DatabaseType.AZURE_SQL: 'mssql+pyodbc',
    DatabaseType.MARIADB: 'mysql+pymysql',
    DatabaseType.POSTGRESQL: 'postgresql+psycopg2',
}


def build_connection_url(db_config: DatabaseConfig) -> URL:
    """
    SQLAlchemy URL for the configured database.

    Args:
        db_config: Database configuration

    Returns:
        URL: Connection URL (credentials are escaped by SQLAlchemy)

    Raises:
        ValueError: Unsupported type, or Azure SQL without an ODBC driver
    """
    if db_config.db_type == DatabaseType.SQLITE:
        return URL.create('sqlite', database=db_config.path or None)

    drivername = DRIVERS.get(db_config.db_type)
    if drivername is None:
        raise ValueError(
            f"Unsupported database type: {db_config.db_type}. "
            f"Supported types: {', '.join(t.value for t in DatabaseType)}"
        )

    query = {}
    if db_config.db_type == DatabaseType.AZURE_SQL:
        if not db_config.driver:
            raise ValueError("Azure SQL requires an ODBC driver (AZURE_SQL_DRIVER)")
        query = {'driver': db_config.driver, 'Encrypt': 'yes', 'TrustServerCertificate': 'yes'}

    return URL.create(
        drivername,
        username=db_config.username or None,
        password=db_config.password or None,
        host=db_config.host or None,
        port=db_config.port or None,
        database=db_config.database or None,
        query=query,
    )


def _engine_options(db_config: DatabaseConfig) -> Dict[str, Any]:
    if db_config.db_type != DatabaseType.SQLITE:
        return {
            'pool_size': db_config.pool_size,
            'max_overflow': db_config.max_overflow,
            'pool_timeout': db_config.pool_timeout,
            'pool_recycle': db_config.pool_recycle,
            'pool_pre_ping': db_config.pool_pre_ping,
        }
    if db_config.path:
        return {}
    # One in-memory database shared by the web threads, sync runs and recalculations
    return {'connect_args': {'check_same_thread': False}, 'poolclass': StaticPool}


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let SQLAlchemy emit BEGIN itself so nested transactions work.

    The per-row upsert fallback relies on SAVEPOINTs, which pysqlite's lazy
    implicit BEGIN breaks.
    """
    @event.listens_for(engine, 'connect')
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _emit_begin(conn):
        conn.exec_driver_sql('BEGIN')


def create_engine_from_config(
    db_config: DatabaseConfig,
    retries: int = 3,
    retry_delay: int = 5
) -> Engine:
    """
    Create the engine and check that the database answers.

    Args:
        db_config: Database configuration
        retries: Connection attempts before giving up
        retry_delay: Seconds between attempts

    Returns:
        Engine: Ready-to-use engine

    Raises:
        ValueError: Unsupported database configuration
        OperationalError: The database stayed unreachable
    """
    engine = create_engine(build_connection_url(db_config), **_engine_options(db_config))
    if db_config.db_type == DatabaseType.SQLITE:
        _enable_sqlite_savepoints(engine)

    for attempt in range(1, retries + 1):
        try:
            with engine.connect() as connection:
                connection.execute(text('SELECT 1'))
            break
        except OperationalError as e:
            logger.error(f"Connection attempt {attempt}/{retries} to {db_config.db_type.value} failed: {e}")
            if attempt >= retries:
                engine.dispose()
                logger.critical(f"Giving up on {db_config!r} after {retries} attempts")
                raise
            time.sleep(retry_delay)

    logger.info(
        f"Database engine ready: {db_config.db_type.value} "
        f"(host={db_config.host or 'local'}, database={db_config.database or db_config.path or ':memory:'})"
    )
    return engine
