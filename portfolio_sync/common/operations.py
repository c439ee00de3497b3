"""
Database operations layer with repositories and chunked upserts.
Chunks are written inside savepoints so one bad chunk can be retried row by
row without losing the rest of the transaction.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Generic, TypeVar, Type, List, Optional, Dict, Any, Callable, Iterable, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import DatabaseType
from .models import Client, WeightSettings, LoanOfficer
from .upsert_strategies import UpsertFactory


logger = logging.getLogger(__name__)

# Generic type for models
T = TypeVar('T')


class BaseRepository(Generic[T]):
    """
    Generic repository for CRUD operations.
    """

    def __init__(self, session: Session, model_class: Type[T]):
        """
        Initialize repository.

        Args:
            session: SQLAlchemy session
            model_class: SQLAlchemy model class
        """
        self.session = session
        self.model_class = model_class

    def get_by_id(self, id_value: Any) -> Optional[T]:
        """
        Get record by primary key.

        Args:
            id_value: Primary key value

        Returns:
            Optional[T]: Model instance or None if not found
        """
        return self.session.get(self.model_class, id_value)

    def filter_by(self, **kwargs) -> List[T]:
        """
        Filter records by column values.

        Args:
            **kwargs: Column name -> value pairs

        Returns:
            List[T]: List of matching model instances
        """
        return self.session.query(self.model_class).filter_by(**kwargs).all()

    def create(self, obj: T) -> T:
        """
        Create new record.

        Args:
            obj: Model instance

        Returns:
            T: Created model instance
        """
        self.session.add(obj)
        self.session.flush()
        logger.debug(f"Created {self.model_class.__name__}")
        return obj

    def count(self, **kwargs) -> int:
        """Count records matching optional column filters."""
        return self.session.query(self.model_class).filter_by(**kwargs).count()


class ClientRepository(BaseRepository[Client]):
    """Queries over an organization's client portfolio"""

    def __init__(self, session: Session):
        super().__init__(session, Client)

    def get_by_client_id(self, organization_id: str, client_id: str) -> Optional[Client]:
        return self.session.query(Client).filter_by(
            organization_id=organization_id, client_id=client_id
        ).first()

    def get_sync_index(self, organization_id: str) -> Dict[str, Tuple[Optional[str], str]]:
        """
        Existing data hash and loan officer per external client id, in one query.

        Args:
            organization_id: Organization whose clients are indexed

        Returns:
            dict: client_id -> (data_hash, loan_officer_id)
        """
        rows = self.session.execute(
            select(Client.client_id, Client.data_hash, Client.loan_officer_id)
            .where(Client.organization_id == organization_id)
        )
        return {client_id: (data_hash, officer) for client_id, data_hash, officer in rows}

    def fetch_batch(
        self,
        organization_id: Optional[str] = None,
        after_id: Optional[str] = None,
        batch_size: int = 100,
        loan_officer_ids: Optional[Iterable[str]] = None
    ) -> List[Client]:
        """
        Next batch of clients ordered by primary key (keyset pagination).

        Args:
            organization_id: Restrict to one organization (all when None)
            after_id: Primary key of the last client of the previous batch
            batch_size: Maximum clients returned
            loan_officer_ids: Restrict to these officers' portfolios

        Returns:
            List[Client]: Empty when the walk is finished
        """
        query = self.session.query(Client)
        if organization_id is not None:
            query = query.filter(Client.organization_id == organization_id)
        if loan_officer_ids is not None:
            query = query.filter(Client.loan_officer_id.in_(list(loan_officer_ids)))
        if after_id is not None:
            query = query.filter(Client.id > after_id)
        return query.order_by(Client.id).limit(batch_size).all()

    def count_for(self, organization_id: Optional[str] = None,
                  loan_officer_ids: Optional[Iterable[str]] = None) -> int:
        query = self.session.query(Client)
        if organization_id is not None:
            query = query.filter(Client.organization_id == organization_id)
        if loan_officer_ids is not None:
            query = query.filter(Client.loan_officer_id.in_(list(loan_officer_ids)))
        return query.count()


class WeightSettingsRepository(BaseRepository[WeightSettings]):
    """Per-organization weight settings, created with defaults on first access"""

    def __init__(self, session: Session):
        super().__init__(session, WeightSettings)

    def get_or_create(self, organization_id: str) -> WeightSettings:
        settings = self.get_by_id(organization_id)
        if settings is None:
            settings = self.create(WeightSettings(organization_id=organization_id))
            logger.info(f"Created default weight settings for organization '{organization_id}'")
        return settings


class LoanOfficerRepository(BaseRepository[LoanOfficer]):

    def __init__(self, session: Session):
        super().__init__(session, LoanOfficer)

    def existing_officer_ids(self, organization_id: str) -> set:
        rows = self.session.execute(
            select(LoanOfficer.loan_officer_id).where(LoanOfficer.organization_id == organization_id)
        )
        return {officer_id for (officer_id,) in rows}


@dataclass
class UpsertBatchResult:
    """Outcome of a chunked upsert"""
    processed: int = 0
    failed: int = 0
    failed_keys: List[Tuple] = field(default_factory=list)


class UpsertOperations:
    """
    Database-agnostic upsert operations using strategy pattern.

    Features:
    - Single record upsert
    - Bulk upsert with chunking
    - Per-chunk savepoints with row-by-row fallback
    """

    def __init__(self, session: Session, db_type: DatabaseType):
        """
        Initialize upsert operations.

        Args:
            session: SQLAlchemy session
            db_type: Database type (determines upsert strategy)
        """
        self.session = session
        self.db_type = db_type
        self.strategy = UpsertFactory.get_strategy(db_type)

    def upsert_single(
        self,
        model: Type,
        values: Dict[str, Any],
        constraint_columns: List[str],
        update_columns: Optional[Iterable[str]] = None
    ) -> None:
        """
        Upsert single record.

        Args:
            model: SQLAlchemy model class
            values: Dictionary of column name -> value
            constraint_columns: Columns that determine uniqueness
            update_columns: Columns overwritten on conflict
        """
        self.strategy.upsert(self.session, model, values, constraint_columns, update_columns)

    def upsert_batch(
        self,
        model: Type,
        records: List[Dict[str, Any]],
        constraint_columns: List[str],
        chunk_size: int = 500,
        update_columns: Optional[Iterable[str]] = None,
        fallback_to_single: bool = True,
        progress_callback: Optional[Callable[[int, int], None]] = None,
        pause_every: int = 0,
        pause_seconds: float = 0.0,
        chunk_iterator: Optional[Callable[[Iterable], Iterable]] = None
    ) -> UpsertBatchResult:
        """
        Bulk upsert with chunking.

        Chunks run sequentially. A chunk that fails is rolled back to its
        savepoint and, when fallback_to_single is set, retried one record at
        a time; records that still fail are logged and skipped.

        Args:
            model: SQLAlchemy model class
            records: List of dictionaries (each dict is one record)
            constraint_columns: Columns that determine uniqueness
            chunk_size: Records per chunk
            update_columns: Columns overwritten on conflict
            fallback_to_single: Retry a failed chunk record by record
            progress_callback: Optional callback(current, total) after each chunk
            pause_every: Sleep after this many chunks (0 disables)
            pause_seconds: Length of the pause
            chunk_iterator: Optional wrapper around the chunk iterable (e.g. tqdm)

        Returns:
            UpsertBatchResult: processed and failed counts

        Raises:
            Exception: The chunk error, when fallback_to_single is False
        """
        result = UpsertBatchResult()
        if not records:
            return result

        chunk_size = max(1, chunk_size)
        total_chunks = (len(records) + chunk_size - 1) // chunk_size

        logger.info(
            f"Starting bulk upsert: {len(records)} records into {model.__tablename__} "
            f"(chunk_size={chunk_size}, chunks={total_chunks})"
        )

        starts = range(0, len(records), chunk_size)
        if chunk_iterator is not None:
            starts = chunk_iterator(starts)

        for i in starts:
            chunk = records[i:i + chunk_size]
            chunk_num = (i // chunk_size) + 1

            try:
                with self.session.begin_nested():
                    self.strategy.bulk_upsert(
                        self.session, model, chunk, constraint_columns, update_columns
                    )
                result.processed += len(chunk)
                logger.debug(
                    f"Processed chunk {chunk_num}/{total_chunks}: "
                    f"{len(chunk)} records ({result.processed}/{len(records)} total)"
                )

            except Exception as e:
                logger.error(f"Error processing chunk {chunk_num}/{total_chunks}: {e}")
                if not fallback_to_single:
                    raise
                self._upsert_one_by_one(model, chunk, constraint_columns, update_columns, result)

            if progress_callback:
                progress_callback(min(i + len(chunk), len(records)), len(records))

            if pause_every and pause_seconds and chunk_num % pause_every == 0 and chunk_num < total_chunks:
                time.sleep(pause_seconds)

        logger.info(
            f"Bulk upsert completed: {result.processed} records, {result.failed} skipped"
        )
        return result

    def _upsert_one_by_one(
        self,
        model: Type,
        chunk: List[Dict[str, Any]],
        constraint_columns: List[str],
        update_columns: Optional[Iterable[str]],
        result: UpsertBatchResult
    ) -> None:
        logger.warning(f"Falling back to single-record upserts for {len(chunk)} records")
        for record in chunk:
            key = tuple(record.get(col) for col in constraint_columns)
            try:
                with self.session.begin_nested():
                    self.strategy.upsert(
                        self.session, model, record, constraint_columns, update_columns
                    )
                result.processed += 1
            except Exception as e:
                result.failed += 1
                result.failed_keys.append(key)
                logger.error(f"Skipping record {key} in {model.__tablename__}: {e}")
