"""
Score and weight change notifications.

Payloads are built here and handed to a broadcaster; delivering them to
connected clients is the broadcaster's job.
"""

import logging
from typing import Any, Dict, Optional

from ..scoring.weights import settings_to_dict


logger = logging.getLogger(__name__)

WEIGHT_UPDATE = 'weight_update'
SCORES_UPDATED = 'scores_updated'


class EventBroadcaster:
    """
    Default broadcaster: logs every event.

    Subclass and override publish() to push events to a real transport.
    """

    def publish(self, event: Dict[str, Any]) -> None:
        logger.info(f"Event {event.get('type')} for organization '{event.get('organization_id')}'")


def build_weight_update_event(organization_id: str, settings: Any) -> Dict[str, Any]:
    """Payload announcing new weights for an organization."""
    return {
        'type': WEIGHT_UPDATE,
        'organization_id': organization_id,
        'data': settings_to_dict(settings),
    }


def build_scores_updated_event(
    organization_id: str,
    reason: str,
    summary: Optional[Dict[str, Any]] = None,
    client_ids: Optional[list] = None
) -> Dict[str, Any]:
    """Payload announcing that stored scores changed."""
    data = {'reason': reason}
    if summary is not None:
        data['summary'] = summary
    if client_ids is not None:
        data['client_ids'] = client_ids
    return {
        'type': SCORES_UPDATED,
        'organization_id': organization_id,
        'data': data,
    }


def safe_publish(broadcaster: Optional[EventBroadcaster], event: Dict[str, Any]) -> None:
    """Publish without letting a broadcaster failure fail the caller."""
    if broadcaster is None:
        return
    try:
        broadcaster.publish(event)
    except Exception as e:
        logger.error(f"Failed to publish {event.get('type')} event: {e}")
