"""
Recalculation service.

Every event that can move a client's scores (feedback update, visit or call
completion, weight change, manual recalculation, post-sync officer refresh)
is handled here, and every one of them scores through score_client().

Organization-wide recalculations walk the portfolio in fixed-size batches,
one transaction per batch, and report progress on a record addressable by
id. Starting a second recalculation while one runs is allowed; scores are a
pure function of the current data and weights, so the later run simply
overwrites with the same or newer values.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..common.data_utils import convert_to_datetime
from ..common.date_utils import to_naive_utc, utcnow
from ..common.exceptions import NotFoundError, WeightValidationError
from ..common.models import Client, PhoneCall, Visit, new_uuid
from ..common.operations import ClientRepository, WeightSettingsRepository
from ..common.session import SessionManager
from ..scoring import (
    ScoringWeights, apply_scores, classify_urgency, compute_feedback_score,
    settings_to_dict, validate_weight_update,
)
from ..scoring.weights import FEEDBACK_DIMENSIONS
from .events import (
    EventBroadcaster, build_scores_updated_event, build_weight_update_event, safe_publish,
)


logger = logging.getLogger(__name__)


@dataclass
class RecalculationSummary:
    total: int = 0
    processed: int = 0
    risk_changed: int = 0
    urgency_changed: int = 0
    classification_changed: int = 0
    failed: int = 0

    def record(self, changed: Dict[str, bool]) -> None:
        self.risk_changed += int(changed['risk'])
        self.urgency_changed += int(changed['urgency'])
        self.classification_changed += int(changed['classification'])

    def to_dict(self) -> Dict[str, int]:
        return {
            'total': self.total,
            'processed': self.processed,
            'risk_changed': self.risk_changed,
            'urgency_changed': self.urgency_changed,
            'classification_changed': self.classification_changed,
            'failed': self.failed,
        }


@dataclass
class RecalculationProgress:
    """Progress of one organization-wide recalculation."""
    organization_id: str
    reason: str
    id: str = field(default_factory=new_uuid)
    status: str = 'running'  # running, completed, failed
    total: int = 0
    processed: int = 0
    error_message: Optional[str] = None
    summary: Optional[Dict[str, int]] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 100 if self.status != 'running' else 0
        return min(100, int(self.processed * 100 / self.total))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'reason': self.reason,
            'status': self.status,
            'total': self.total,
            'processed': self.processed,
            'progress_percentage': self.percentage,
            'error_message': self.error_message,
            'summary': self.summary,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }


class RecalculationService:
    """
    Applies score changes triggered by officer actions and weight updates.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        broadcaster: Optional[EventBroadcaster] = None,
        batch_size: int = 100,
        progress_ttl_seconds: int = 3600
    ):
        """
        Args:
            session_manager: Session factory shared with the orchestrator
            broadcaster: Receives weight_update / scores_updated payloads
            batch_size: Clients per recalculation batch
            progress_ttl_seconds: How long finished progress records stay pollable
        """
        self.session_manager = session_manager
        self.broadcaster = broadcaster or EventBroadcaster()
        self.batch_size = batch_size
        self.progress_ttl = timedelta(seconds=progress_ttl_seconds)

        self._progress: Dict[str, RecalculationProgress] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.RLock()

    # ========================================================================
    # Weights
    # ========================================================================

    def load_weights(self, session: Session, organization_id: str) -> ScoringWeights:
        settings = WeightSettingsRepository(session).get_or_create(organization_id)
        return ScoringWeights.from_settings(settings)

    def get_weights(self, organization_id: str) -> Dict[str, Any]:
        with self.session_manager.session_scope() as session:
            return settings_to_dict(WeightSettingsRepository(session).get_or_create(organization_id))

    def update_weights(self, organization_id: str, changes: Dict[str, Any],
                       recalculate_async: bool = True) -> Dict[str, Any]:
        """
        Validate and persist a weight update, then rescore the organization.

        Args:
            organization_id: Organization whose weights change
            changes: Weight field -> new percentage
            recalculate_async: Run the rescoring on a background thread

        Returns:
            dict: New settings and the recalculation progress record

        Raises:
            WeightValidationError: When the update is rejected
        """
        with self.session_manager.session_scope() as session:
            settings = WeightSettingsRepository(session).get_or_create(organization_id)
            try:
                validate_weight_update(changes, current=settings)
            except WeightValidationError as e:
                logger.warning(f"Rejected weight update for '{organization_id}': {e}")
                raise
            for name, value in changes.items():
                setattr(settings, name, value)
            event = build_weight_update_event(organization_id, settings)
            new_settings = settings_to_dict(settings)

        logger.info(f"Weight settings updated for '{organization_id}': {sorted(changes)}")
        safe_publish(self.broadcaster, event)

        if recalculate_async:
            progress = self.start_recalculation(organization_id, reason='weights_changed')
        else:
            progress = self._new_progress(organization_id, 'weights_changed')
            self._run_recalculation(progress)

        return {'settings': new_settings, 'recalculation': progress.to_dict()}

    # ========================================================================
    # Organization-wide recalculation
    # ========================================================================

    def _new_progress(self, organization_id: str, reason: str) -> RecalculationProgress:
        progress = RecalculationProgress(organization_id=organization_id, reason=reason)
        with self._lock:
            self._prune_progress(progress.started_at)
            self._progress[progress.id] = progress
        return progress

    def _prune_progress(self, now: datetime) -> None:
        cutoff = now - self.progress_ttl
        expired = [
            progress_id for progress_id, progress in self._progress.items()
            if progress.completed_at is not None and progress.completed_at <= cutoff
        ]
        for progress_id in expired:
            del self._progress[progress_id]
        if expired:
            logger.debug(f"Dropped {len(expired)} finished recalculation progress records")

    def get_progress(self, progress_id: str) -> Optional[RecalculationProgress]:
        with self._lock:
            return self._progress.get(progress_id)

    def start_recalculation(self, organization_id: str, reason: str = 'manual') -> RecalculationProgress:
        """Rescore an organization on a background thread and return its progress record."""
        progress = self._new_progress(organization_id, reason)
        thread = threading.Thread(
            target=self._run_recalculation,
            args=(progress,),
            daemon=True,
            name=f"recalculation-{progress.id[:8]}",
        )
        with self._lock:
            self._threads[progress.id] = thread
        thread.start()
        return progress

    def wait(self, progress_id: str, timeout: Optional[float] = None) -> Optional[RecalculationProgress]:
        """Block until a background recalculation finishes (used by the CLI and tests)."""
        with self._lock:
            thread = self._threads.get(progress_id)
        if thread is not None:
            thread.join(timeout)
        return self.get_progress(progress_id)

    def _run_recalculation(self, progress: RecalculationProgress) -> None:
        try:
            summary = self.recalculate(progress.organization_id, progress=progress)
            progress.summary = summary.to_dict()
            progress.status = 'completed'
            safe_publish(self.broadcaster, build_scores_updated_event(
                progress.organization_id, progress.reason, summary=progress.summary
            ))
        except Exception as e:
            logger.exception(f"Recalculation {progress.id} for '{progress.organization_id}' failed")
            progress.status = 'failed'
            progress.error_message = str(e)
        finally:
            progress.completed_at = utcnow()
            with self._lock:
                self._threads.pop(progress.id, None)

    def recalculate(
        self,
        organization_id: str,
        loan_officer_ids: Optional[Iterable[str]] = None,
        progress: Optional[RecalculationProgress] = None,
        now: Optional[datetime] = None
    ) -> RecalculationSummary:
        """
        Rescore an organization's clients (optionally only some officers').

        A client that fails to score is logged and counted; the rest of the
        organization is still processed.

        Args:
            organization_id: Organization to rescore
            loan_officer_ids: Restrict to these officers' portfolios
            progress: Progress record to update after every batch
            now: Reference time for contact recency

        Returns:
            RecalculationSummary: Counts of changed and failed clients
        """
        officer_filter = list(loan_officer_ids) if loan_officer_ids is not None else None
        summary = RecalculationSummary()
        now = now or utcnow()

        with self.session_manager.session_scope() as session:
            weights = self.load_weights(session, organization_id)
            summary.total = ClientRepository(session).count_for(organization_id, officer_filter)
        if progress is not None:
            progress.total = summary.total

        after_id = None
        while True:
            with self.session_manager.session_scope() as session:
                batch = ClientRepository(session).fetch_batch(
                    organization_id, after_id, self.batch_size, officer_filter
                )
                if not batch:
                    break
                for client in batch:
                    try:
                        summary.record(apply_scores(client, weights, now))
                    except Exception as e:
                        summary.failed += 1
                        logger.error(f"Failed to recalculate client {client.client_id}: {e}")
                after_id = batch[-1].id

            summary.processed += len(batch)
            if progress is not None:
                progress.processed = summary.processed
            logger.debug(f"Recalculated {summary.processed}/{summary.total} clients for '{organization_id}'")

        logger.info(
            f"Recalculation for '{organization_id}' complete: {summary.processed} clients, "
            f"{summary.classification_changed} classification changes, {summary.failed} failures"
        )
        return summary

    def refresh_officers(self, organization_id: str, loan_officer_ids: List[str]) -> RecalculationSummary:
        """Rescore the portfolios of officers whose rows changed in a sync."""
        if not loan_officer_ids:
            return RecalculationSummary()
        summary = self.recalculate(organization_id, loan_officer_ids=loan_officer_ids)
        safe_publish(self.broadcaster, build_scores_updated_event(
            organization_id, 'sync', summary=summary.to_dict()
        ))
        return summary

    def repair_classifications(self, organization_id: Optional[str] = None) -> Dict[str, int]:
        """
        Rewrite every stored classification that disagrees with its score.

        Args:
            organization_id: Limit to one organization (all when None)

        Returns:
            dict: {'updated': rows rewritten, 'total': rows scanned}
        """
        updated = total = 0
        after_id = None
        while True:
            with self.session_manager.session_scope() as session:
                batch = ClientRepository(session).fetch_batch(organization_id, after_id, self.batch_size)
                if not batch:
                    break
                for client in batch:
                    expected = classify_urgency(client.composite_urgency)
                    if client.urgency_classification != expected:
                        logger.info(
                            f"Client {client.client_id}: '{client.urgency_classification}' -> '{expected}' "
                            f"(urgency {client.composite_urgency})"
                        )
                        client.urgency_classification = expected
                        updated += 1
                total += len(batch)
                after_id = batch[-1].id

        logger.info(f"Classification repair: {updated} of {total} clients updated")
        return {'updated': updated, 'total': total}

    # ========================================================================
    # Single-client events
    # ========================================================================

    def _rescore_one(self, session: Session, client: Client,
                     reason: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        weights = self.load_weights(session, client.organization_id)
        apply_scores(client, weights)
        session.flush()
        payload = client.to_dict()
        event = build_scores_updated_event(client.organization_id, reason, client_ids=[client.client_id])
        return payload, event

    def record_feedback(self, organization_id: str, client_id: str, feedback: Dict[str, Any]) -> Dict[str, Any]:
        """
        Store officer feedback for a client and rescore it.

        Accepted keys: feedback_score, the five sub-dimension ratings, visit_notes,
        interaction_type ('visit' or 'call') and interaction_date. When only
        sub-dimension ratings are given, the composite feedback score is
        derived from them with the organization's feedback weights.

        Raises:
            NotFoundError: Unknown client
            ValueError: Ratings outside 1-5
        """
        with self.session_manager.session_scope() as session:
            client = ClientRepository(session).get_by_client_id(organization_id, client_id)
            if client is None:
                raise NotFoundError(f"Client '{client_id}' not found")

            ratings = {}
            for dimension in FEEDBACK_DIMENSIONS:
                if feedback.get(dimension) is not None:
                    ratings[dimension] = _rating(dimension, feedback[dimension])
                    setattr(client, dimension, ratings[dimension])

            if feedback.get('feedback_score') is not None:
                client.feedback_score = _rating('feedback_score', feedback['feedback_score'])
            elif ratings:
                weights = self.load_weights(session, organization_id)
                sub_scores = {d: getattr(client, d) for d in FEEDBACK_DIMENSIONS}
                client.feedback_score = compute_feedback_score(sub_scores, weights.feedback)

            if feedback.get('visit_notes') is not None:
                client.visit_notes = feedback['visit_notes']

            interaction_date = convert_to_datetime(feedback.get('interaction_date'))
            if interaction_date is not None:
                moment = to_naive_utc(interaction_date)
                if feedback.get('interaction_type') == 'call':
                    client.last_phone_call_date = moment
                else:
                    client.last_visit_date = moment

            payload, event = self._rescore_one(session, client, 'feedback_updated')

        safe_publish(self.broadcaster, event)
        return payload

    def complete_visit(self, organization_id: str, visit_id: str, notes: Optional[str] = None,
                       completed_at: Optional[datetime] = None) -> Dict[str, Any]:
        """Mark a visit completed, stamp the client's last visit and rescore it."""
        completed_at = to_naive_utc(completed_at) if completed_at else utcnow()
        with self.session_manager.session_scope() as session:
            visit = session.get(Visit, visit_id)
            if visit is None or visit.organization_id != organization_id:
                raise NotFoundError(f"Visit '{visit_id}' not found")

            visit.status = 'completed'
            visit.completed_at = completed_at
            if notes is not None:
                visit.notes = notes
            visit.client.last_visit_date = completed_at

            client_payload, event = self._rescore_one(session, visit.client, 'visit_completed')
            result = {'visit': visit.to_dict(), 'client': client_payload}

        safe_publish(self.broadcaster, event)
        return result

    def complete_call(self, organization_id: str, call_id: str, duration_minutes: Optional[int] = None,
                      notes: Optional[str] = None, completed_at: Optional[datetime] = None) -> Dict[str, Any]:
        """Mark a phone call completed, stamp the client's last call and rescore it."""
        completed_at = to_naive_utc(completed_at) if completed_at else utcnow()
        with self.session_manager.session_scope() as session:
            call = session.get(PhoneCall, call_id)
            if call is None or call.organization_id != organization_id:
                raise NotFoundError(f"Phone call '{call_id}' not found")

            call.status = 'completed'
            call.completed_at = completed_at
            if duration_minutes is not None:
                call.duration_minutes = duration_minutes
            if notes is not None:
                call.notes = notes
            call.client.last_phone_call_date = completed_at

            client_payload, event = self._rescore_one(session, call.client, 'call_completed')
            result = {'phone_call': call.to_dict(), 'client': client_payload}

        safe_publish(self.broadcaster, event)
        return result


def _rating(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer between 1 and 5")
    try:
        rating = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer between 1 and 5")
    if rating != float(value) or not 1 <= rating <= 5:
        raise ValueError(f"{name} must be an integer between 1 and 5")
    return rating
