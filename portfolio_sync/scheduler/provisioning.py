"""
Loan officer account provisioning for officers first seen in an extract.
"""

import logging
import secrets
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from sqlalchemy.orm import Session

from ..common.models import LoanOfficer
from ..common.operations import LoanOfficerRepository


logger = logging.getLogger(__name__)

UNASSIGNED_OFFICER = 'UNKNOWN'


@dataclass
class ProvisioningResult:
    created: List[Dict[str, str]] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)


def provision_missing_officers(
    session: Session,
    organization_id: str,
    loan_officer_ids: Iterable[str]
) -> ProvisioningResult:
    """
    Create accounts for officers that have none yet.

    Each account gets a one-time setup token; a failure for one officer is
    recorded and does not stop the others.

    Args:
        session: Active session
        organization_id: Organization the officers belong to
        loan_officer_ids: Normalized officer ids seen in the extract

    Returns:
        ProvisioningResult: Created accounts and per-officer errors
    """
    result = ProvisioningResult()
    repo = LoanOfficerRepository(session)
    existing = repo.existing_officer_ids(organization_id)

    for officer_id in loan_officer_ids:
        if officer_id == UNASSIGNED_OFFICER or officer_id in existing:
            continue

        name = f"Loan Officer {officer_id}"
        token = secrets.token_hex(8)
        try:
            with session.begin_nested():
                repo.create(LoanOfficer(
                    organization_id=organization_id,
                    loan_officer_id=officer_id,
                    name=name,
                    setup_token=token,
                    requires_setup=True,
                ))
            existing.add(officer_id)
            result.created.append({'loan_officer_id': officer_id, 'name': name, 'setup_token': token})
        except Exception as e:
            logger.error(f"Failed to provision loan officer {officer_id}: {e}")
            result.errors.append({'loan_officer_id': officer_id, 'error': str(e)})

    if result.created:
        logger.info(f"Provisioned {len(result.created)} loan officer accounts for '{organization_id}'")
    return result
