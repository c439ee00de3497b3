"""
Database-specific upsert strategies using the Strategy pattern.
Handles differences in upsert syntax across PostgreSQL, MariaDB, SQLite and Azure SQL.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Type, Optional, Iterable
from sqlalchemy.orm import Session
from sqlalchemy.dialects import postgresql, mysql, sqlite
from sqlalchemy.sql import func

from .config import DatabaseType


logger = logging.getLogger(__name__)

# Columns never written from incoming values (auto-managed by database/ORM)
EXCLUDED_UPDATE_COLUMNS = {'created_at', 'updated_at'}


def resolve_update_columns(
    record: Dict[str, Any],
    constraint_columns: List[str],
    update_columns: Optional[Iterable[str]] = None
) -> List[str]:
    """
    Columns to overwrite when the row already exists.

    Args:
        record: One incoming record (its keys are the inserted columns)
        constraint_columns: Natural key columns (never updated)
        update_columns: Explicit allow-list; defaults to every inserted column

    Returns:
        List[str]: Column names for the UPDATE SET clause
    """
    excluded = set(constraint_columns) | EXCLUDED_UPDATE_COLUMNS
    candidates = record.keys() if update_columns is None else update_columns
    return [k for k in candidates if k in record and k not in excluded]


def _strip_managed(values_list: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {k: v for k, v in record.items() if k not in EXCLUDED_UPDATE_COLUMNS}
        for record in values_list
    ]


def _touch(model: Type) -> Dict[str, Any]:
    return {'updated_at': func.now()} if hasattr(model, 'updated_at') else {}


class UpsertStrategy(ABC):
    """Abstract base class for database-specific upsert strategies"""

    @abstractmethod
    def upsert(
        self,
        session: Session,
        model: Type,
        values: Dict[str, Any],
        constraint_columns: List[str],
        update_columns: Optional[Iterable[str]] = None
    ) -> None:
        """
        Upsert single record.

        Args:
            session: SQLAlchemy session
            model: SQLAlchemy model class
            values: Dictionary of column name -> value
            constraint_columns: Columns that determine uniqueness (for conflict resolution)
            update_columns: Columns overwritten on conflict (default: all inserted columns)
        """
        pass

    @abstractmethod
    def bulk_upsert(
        self,
        session: Session,
        model: Type,
        values_list: List[Dict[str, Any]],
        constraint_columns: List[str],
        update_columns: Optional[Iterable[str]] = None
    ) -> None:
        """
        Bulk upsert multiple records in one statement.

        Args:
            session: SQLAlchemy session
            model: SQLAlchemy model class
            values_list: List of dictionaries (each dict is one record)
            constraint_columns: Columns that determine uniqueness
            update_columns: Columns overwritten on conflict (default: all inserted columns)
        """
        pass


class _OnConflictUpsertStrategy(UpsertStrategy):
    """
    INSERT ... ON CONFLICT (key) DO UPDATE SET col = EXCLUDED.col

    Shared by PostgreSQL and SQLite, which spell the statement the same way.
    """

    dialect_insert = None
    label = ''

    def upsert(self, session, model, values, constraint_columns, update_columns=None) -> None:
        self.bulk_upsert(session, model, [values], constraint_columns, update_columns)

    def bulk_upsert(self, session, model, values_list, constraint_columns, update_columns=None) -> None:
        if not values_list:
            return

        filtered_values = _strip_managed(values_list)
        stmt = self.dialect_insert(model).values(filtered_values)

        update_dict = {
            k: stmt.excluded[k]
            for k in resolve_update_columns(filtered_values[0], constraint_columns, update_columns)
        }
        update_dict.update(_touch(model))

        stmt = stmt.on_conflict_do_update(
            index_elements=constraint_columns,
            set_=update_dict
        )

        session.execute(stmt)
        logger.debug(f"{self.label} bulk upsert: {len(values_list)} records into {model.__tablename__}")


class PostgreSQLUpsertStrategy(_OnConflictUpsertStrategy):
    """PostgreSQL upsert using ON CONFLICT ... DO UPDATE."""

    dialect_insert = staticmethod(postgresql.insert)
    label = 'PostgreSQL'


class SQLiteUpsertStrategy(_OnConflictUpsertStrategy):
    """SQLite (3.24+) upsert using ON CONFLICT ... DO UPDATE."""

    dialect_insert = staticmethod(sqlite.insert)
    label = 'SQLite'


class MariaDBUpsertStrategy(UpsertStrategy):
    """
    MariaDB/MySQL upsert using ON DUPLICATE KEY UPDATE.

    Syntax:
        INSERT INTO table (col1, col2) VALUES (:val1, :val2)
        ON DUPLICATE KEY UPDATE col2 = VALUES(col2)
    """

    def upsert(self, session, model, values, constraint_columns, update_columns=None) -> None:
        self.bulk_upsert(session, model, [values], constraint_columns, update_columns)

    def bulk_upsert(self, session, model, values_list, constraint_columns, update_columns=None) -> None:
        if not values_list:
            return

        filtered_values = _strip_managed(values_list)
        stmt = mysql.insert(model).values(filtered_values)

        update_dict = {
            k: stmt.inserted[k]
            for k in resolve_update_columns(filtered_values[0], constraint_columns, update_columns)
        }
        update_dict.update(_touch(model))

        stmt = stmt.on_duplicate_key_update(**update_dict)
        session.execute(stmt)
        logger.debug(f"MariaDB bulk upsert: {len(values_list)} records into {model.__tablename__}")


class AzureSQLUpsertStrategy(UpsertStrategy):
    """
    Azure SQL Server upsert.

    SQLAlchemy has no MERGE construct for SQL Server, so each record is
    looked up by its natural key and then updated or inserted.
    """

    def upsert(self, session, model, values, constraint_columns, update_columns=None) -> None:
        where_clause = {k: values[k] for k in constraint_columns}
        existing = session.query(model).filter_by(**where_clause).first()

        if existing:
            for key in resolve_update_columns(values, constraint_columns, update_columns):
                setattr(existing, key, values[key])
            logger.debug(f"Azure SQL update: {model.__tablename__}")
        else:
            session.add(model(**values))
            logger.debug(f"Azure SQL insert: {model.__tablename__}")
        session.flush()

    def bulk_upsert(self, session, model, values_list, constraint_columns, update_columns=None) -> None:
        if not values_list:
            return

        for values in values_list:
            self.upsert(session, model, values, constraint_columns, update_columns)

        logger.debug(f"Azure SQL bulk upsert: {len(values_list)} records into {model.__tablename__}")


class UpsertFactory:
    """Factory for creating database-specific upsert strategies"""

    _strategies = {
        DatabaseType.POSTGRESQL: PostgreSQLUpsertStrategy(),
        DatabaseType.MARIADB: MariaDBUpsertStrategy(),
        DatabaseType.AZURE_SQL: AzureSQLUpsertStrategy(),
        DatabaseType.SQLITE: SQLiteUpsertStrategy(),
    }

    @classmethod
    def get_strategy(cls, db_type: DatabaseType) -> UpsertStrategy:
        """
        Get upsert strategy for database type.

        Args:
            db_type: Database type

        Returns:
            UpsertStrategy: Database-specific upsert strategy

        Raises:
            ValueError: If database type is unsupported
        """
        strategy = cls._strategies.get(db_type)

        if strategy is None:
            raise ValueError(
                f"Unsupported database type for upsert: {db_type}. "
                f"Supported types: {', '.join([t.value for t in DatabaseType])}"
            )

        return strategy
