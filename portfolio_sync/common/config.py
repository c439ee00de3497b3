"""
Configuration management for the portfolio sync pipeline.
Handles .env-based configuration for the database, HTTP client, scheduled
sync and batch sizing.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import yaml
from decouple import config as env_config


class DatabaseType(Enum):
    """Supported database types"""
    AZURE_SQL = "azure_sql"
    MARIADB = "mariadb"
    POSTGRESQL = "postgresql"
    SQLITE = "sqlite"


DEFAULT_PORTS = {
    DatabaseType.AZURE_SQL: 1433,
    DatabaseType.MARIADB: 3306,
    DatabaseType.POSTGRESQL: 5432,
}


@dataclass
class DatabaseConfig:
    """
    Database connection configuration.
    Supports Azure SQL Server, MariaDB, PostgreSQL and SQLite (file or memory).
    """
    db_type: DatabaseType
    host: str = ''
    port: int = 0
    database: str = ''
    username: str = ''
    password: str = ''
    driver: Optional[str] = None  # Required for Azure SQL (ODBC driver)
    path: Optional[str] = None  # SQLite file path, None for in-memory

    # Connection pool settings
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 60
    pool_recycle: int = 1800
    pool_pre_ping: bool = True

    def __repr__(self) -> str:
        """Safe representation without password"""
        return (f"DatabaseConfig(db_type={self.db_type.value}, host={self.host}, "
                f"database={self.database or self.path}, username={self.username})")

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        """
        Load the database configuration selected by DATABASE_TYPE.

        Returns:
            DatabaseConfig: Configuration loaded from environment
        """
        db_type = DatabaseType(env_config('DATABASE_TYPE', default='postgresql').lower())

        if db_type == DatabaseType.SQLITE:
            return cls(db_type=db_type, path=env_config('SQLITE_PATH', default=None))

        prefix = {
            DatabaseType.AZURE_SQL: 'AZURE_SQL',
            DatabaseType.MARIADB: 'MARIADB',
            DatabaseType.POSTGRESQL: 'POSTGRESQL',
        }[db_type]

        return cls(
            db_type=db_type,
            host=env_config(f'{prefix}_HOST'),
            port=env_config(f'{prefix}_PORT', default=DEFAULT_PORTS[db_type], cast=int),
            database=env_config(f'{prefix}_DATABASE'),
            username=env_config(f'{prefix}_USERNAME'),
            password=env_config(f'{prefix}_PASSWORD'),
            driver=env_config('AZURE_SQL_DRIVER', default='ODBC Driver 17 for SQL Server')
            if db_type == DatabaseType.AZURE_SQL else None,
            pool_size=env_config('DB_POOL_SIZE', default=5, cast=int),
            max_overflow=env_config('DB_MAX_OVERFLOW', default=10, cast=int),
            pool_timeout=env_config('DB_POOL_TIMEOUT', default=60, cast=int),
            pool_recycle=env_config('DB_POOL_RECYCLE', default=1800, cast=int),
        )

    @classmethod
    def from_dict(cls, db_conf: dict) -> 'DatabaseConfig':
        db_type = DatabaseType(db_conf.get('db_type', 'postgresql').lower())
        return cls(
            db_type=db_type,
            host=db_conf.get('host', ''),
            port=db_conf.get('port', DEFAULT_PORTS.get(db_type, 0)),
            database=db_conf.get('database', ''),
            username=db_conf.get('username', ''),
            password=db_conf.get('password', ''),
            driver=db_conf.get('driver'),
            path=db_conf.get('path'),
            pool_size=db_conf.get('pool_size', 5),
            max_overflow=db_conf.get('max_overflow', 10),
            pool_timeout=db_conf.get('pool_timeout', 60),
            pool_recycle=db_conf.get('pool_recycle', 1800),
        )


@dataclass
class SyncConfig:
    """
    Main configuration class for the sync pipeline.
    Manages database, scheduled sync, batch sizing and HTTP client settings.
    """
    database: DatabaseConfig = field(
        default_factory=lambda: DatabaseConfig(db_type=DatabaseType.SQLITE)
    )

    # Scheduled sync
    excel_data_url: Optional[str] = None
    default_organization_id: str = 'mfw'
    sync_interval_minutes: int = 30
    sync_lease_minutes: int = 10
    classification_repair_hour: int = 2
    upload_folder: str = 'uploads'

    # Recalculation
    recalculation_batch_size: int = 100

    # Upsert batch sizing
    small_batch_threshold: int = 500
    large_dataset_threshold: int = 5000
    large_batch_size: int = 1000
    max_batch_size: int = 1500
    max_statement_params: int = 60000
    upsert_pause_every: int = 10
    upsert_pause_seconds: float = 0.1

    # HTTP client settings
    http_pool_connections: int = 10
    http_pool_maxsize: int = 20
    http_total_retries: int = 3
    http_timeout: int = 60

    @classmethod
    def from_env(cls) -> 'SyncConfig':
        """
        Load configuration from environment variables (.env file).

        Returns:
            SyncConfig: Configuration loaded from environment
        """
        return cls(
            database=DatabaseConfig.from_env(),
            excel_data_url=env_config('EXCEL_DATA_URL', default=None),
            default_organization_id=env_config('DEFAULT_ORGANIZATION_ID', default='mfw'),
            sync_interval_minutes=env_config('SYNC_INTERVAL_MINUTES', default=30, cast=int),
            sync_lease_minutes=env_config('SYNC_LEASE_MINUTES', default=10, cast=int),
            classification_repair_hour=env_config('CLASSIFICATION_REPAIR_CRON_HOUR', default=2, cast=int),
            upload_folder=env_config('UPLOAD_FOLDER', default='uploads'),
            recalculation_batch_size=env_config('RECALCULATION_BATCH_SIZE', default=100, cast=int),
            upsert_pause_every=env_config('UPSERT_PAUSE_EVERY', default=10, cast=int),
            upsert_pause_seconds=env_config('UPSERT_PAUSE_SECONDS', default=0.1, cast=float),
            http_pool_connections=env_config('HTTP_POOL_CONNECTIONS', default=10, cast=int),
            http_pool_maxsize=env_config('HTTP_POOL_MAXSIZE', default=20, cast=int),
            http_total_retries=env_config('HTTP_TOTAL_RETRIES', default=3, cast=int),
            http_timeout=env_config('HTTP_TIMEOUT', default=60, cast=int),
        )

    @classmethod
    def from_dict(cls, config_dict: dict) -> 'SyncConfig':
        """
        Load configuration from dictionary.

        Unknown keys are ignored; missing keys keep their defaults.

        Args:
            config_dict: Dictionary with configuration values

        Returns:
            SyncConfig: Configuration loaded from dictionary
        """
        values = {
            key: value for key, value in config_dict.items()
            if key in cls.__dataclass_fields__ and key != 'database'
        }
        if 'database' in config_dict:
            values['database'] = DatabaseConfig.from_dict(config_dict['database'])
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'SyncConfig':
        """Load configuration from a YAML file with the same keys as from_dict."""
        with open(path, 'r') as f:
            return cls.from_dict(yaml.safe_load(f) or {})
