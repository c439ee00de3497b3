"""
Engine, session and rate limiter tests.
"""
import pytest

from portfolio_sync.common.config import DatabaseConfig, DatabaseType
from portfolio_sync.common.engine import build_connection_url
from portfolio_sync.common.models import Client
from portfolio_sync.web.utils.rate_limit import RateLimiter

from .conftest import ORG


class TestConnectionUrl:

    def test_postgres_credentials_are_escaped(self):
        url = build_connection_url(DatabaseConfig(
            db_type=DatabaseType.POSTGRESQL, host='db', port=5432,
            database='portfolio', username='sync', password='p@ss:word',
        ))

        assert url.drivername == 'postgresql+psycopg2'
        assert url.password == 'p@ss:word'
        assert 'p%40ss%3Aword' in url.render_as_string(hide_password=False)

    def test_azure_carries_driver(self):
        url = build_connection_url(DatabaseConfig(
            db_type=DatabaseType.AZURE_SQL, host='srv', port=1433, database='loans',
            username='u', password='p', driver='ODBC Driver 18 for SQL Server',
        ))

        assert url.drivername == 'mssql+pyodbc'
        assert url.query['driver'] == 'ODBC Driver 18 for SQL Server'
        assert url.query['Encrypt'] == 'yes'

    def test_azure_without_driver(self):
        with pytest.raises(ValueError, match='ODBC driver'):
            build_connection_url(DatabaseConfig(db_type=DatabaseType.AZURE_SQL, host='srv'))

    def test_sqlite_file_and_memory(self, tmp_path):
        path = str(tmp_path / 'portfolio.db')
        assert build_connection_url(DatabaseConfig(db_type=DatabaseType.SQLITE, path=path)).database == path
        assert build_connection_url(DatabaseConfig(db_type=DatabaseType.SQLITE)).database is None


class TestSessionManager:

    def test_sqlite_is_single_writer(self, session_manager):
        assert session_manager.single_writer

    def test_error_rolls_back(self, session_manager):
        with pytest.raises(RuntimeError):
            with session_manager.session_scope() as session:
                session.add(Client(organization_id=ORG, client_id='C900', name='Temp', loan_officer_id='LO1'))
                session.flush()
                raise RuntimeError('abort')

        with session_manager.session_scope() as session:
            assert session.query(Client).filter_by(client_id='C900').count() == 0


class TestRateLimiter:

    def test_window_fills_up(self):
        limiter = RateLimiter()

        results = [limiter.hit('k', 2, 60) for _ in range(3)]

        assert results[:2] == [None, None]
        assert 1 <= results[2] <= 61

    def test_keys_are_independent(self):
        limiter = RateLimiter()
        limiter.hit('a', 1, 60)
        assert limiter.hit('b', 1, 60) is None

    def test_reset(self):
        limiter = RateLimiter()
        limiter.hit('a', 1, 60)
        limiter.hit('b', 1, 60)

        limiter.reset('a')
        assert limiter.hit('a', 1, 60) is None
        assert limiter.hit('b', 1, 60) is not None

        limiter.reset()
        assert limiter.hit('b', 1, 60) is None

    def test_old_hits_leave_the_window(self, monkeypatch):
        clock = [1000.0]
        monkeypatch.setattr('portfolio_sync.web.utils.rate_limit.time.monotonic', lambda: clock[0])
        limiter = RateLimiter()
        limiter.hit('k', 1, 60)
        assert limiter.hit('k', 1, 60) is not None

        clock[0] += 61
        assert limiter.hit('k', 1, 60) is None
