"""
REST API routes.

Sync triggers return 202 as soon as the run is accepted; the pipeline runs on
a background thread and is polled through the status endpoints.
"""

import logging
import os
from datetime import datetime
from uuid import uuid4

from flask import Blueprint, jsonify, request, current_app
from werkzeug.utils import secure_filename

from ...common.data_utils import convert_to_datetime
from ...common.exceptions import (
    IngestionError, NotFoundError, SyncInProgressError, WeightValidationError,
)
from ...scheduler.orchestrator import SyncTrigger
from ..utils.rate_limit import rate_limit_api


logger = logging.getLogger(__name__)

api_bp = Blueprint('api', __name__, url_prefix='/api')

ORG_PREFIX = '/organizations/<organization_id>'
UPLOAD_EXTENSIONS = ('.xlsx', '.xls', '.csv')


# =============================================================================
# Error mapping
# =============================================================================

@api_bp.errorhandler(WeightValidationError)
def handle_weight_validation(error):
    body = {'error': str(error)}
    if error.category:
        body['category'] = error.category
    if error.field_errors:
        body['field_errors'] = error.field_errors
    return jsonify(body), 400


@api_bp.errorhandler(SyncInProgressError)
def handle_sync_in_progress(error):
    return jsonify({'error': str(error), 'active_sync_id': error.active_run_id}), 409


@api_bp.errorhandler(NotFoundError)
def handle_not_found(error):
    return jsonify({'error': str(error)}), 404


@api_bp.errorhandler(IngestionError)
def handle_ingestion_error(error):
    return jsonify({'error': str(error)}), 400


@api_bp.errorhandler(ValueError)
def handle_value_error(error):
    return jsonify({'error': str(error)}), 400


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValueError('Request body must be a JSON object')
    return body


# =============================================================================
# Health
# =============================================================================

@api_bp.route('/health')
def health():
    """Health check endpoint."""
    return jsonify({
        'status': 'healthy',
        'timestamp': datetime.now().isoformat(),
        'started_at': current_app.web_started_at.isoformat(),
    })


# =============================================================================
# Sync runs
# =============================================================================

@api_bp.route(f'{ORG_PREFIX}/sync', methods=['POST'])
@rate_limit_api(max_requests=5, window_seconds=60)
def trigger_sync(organization_id):
    """Start a sync from the given source or EXCEL_DATA_URL."""
    source = _json_body().get('source')
    run = current_app.orchestrator.start_sync(organization_id, source, SyncTrigger.MANUAL)
    return jsonify({
        'message': 'Sync started',
        'sync_id': run['id'],
        'status': run['status'],
    }), 202


@api_bp.route(f'{ORG_PREFIX}/sync/upload', methods=['POST'])
@rate_limit_api(max_requests=5, window_seconds=60)
def upload_and_sync(organization_id):
    """Store an uploaded workbook and sync it; the file is removed afterwards."""
    upload = request.files.get('file')
    if upload is None or not upload.filename:
        return jsonify({'error': 'No file uploaded'}), 400

    filename = secure_filename(upload.filename)
    if not filename.lower().endswith(UPLOAD_EXTENSIONS):
        return jsonify({'error': f"Unsupported file type; expected one of {', '.join(UPLOAD_EXTENSIONS)}"}), 400

    folder = current_app.sync_config.upload_folder
    os.makedirs(folder, exist_ok=True)
    path = os.path.join(folder, f"{uuid4().hex}_{filename}")
    upload.save(path)
    logger.info(f"Stored upload {upload.filename} for '{organization_id}' at {path}")

    run = current_app.orchestrator.start_sync(
        organization_id, path, SyncTrigger.UPLOAD, remove_source_after=True
    )
    return jsonify({
        'message': 'File uploaded, sync started',
        'sync_id': run['id'],
        'status': run['status'],
    }), 202


@api_bp.route(f'{ORG_PREFIX}/sync/status')
def sync_status(organization_id):
    """Latest run for the organization."""
    run = current_app.orchestrator.latest_run(organization_id)
    if run is None:
        return jsonify({'status': 'never_synced', 'message': 'No sync has run for this organization'})
    return jsonify(run)


@api_bp.route(f'{ORG_PREFIX}/sync/<run_id>')
def get_sync_run(organization_id, run_id):
    run = current_app.orchestrator.get_run(run_id, organization_id)
    if run is None:
        raise NotFoundError(f"Sync run '{run_id}' not found")
    return jsonify(run)


@api_bp.route(f'{ORG_PREFIX}/sync/reset', methods=['POST'])
def reset_sync(organization_id):
    """Mark stuck runs as failed and release the sync lease."""
    count = current_app.orchestrator.reset_stuck_runs(organization_id)
    return jsonify({'success': True, 'reset_runs': count})


# =============================================================================
# Weight settings and recalculation
# =============================================================================

@api_bp.route(f'{ORG_PREFIX}/settings')
def get_settings(organization_id):
    return jsonify(current_app.recalculation.get_weights(organization_id))


@api_bp.route(f'{ORG_PREFIX}/settings', methods=['PUT'])
def update_settings(organization_id):
    """Validate and store new weights, then rescore the organization in the background."""
    changes = _json_body()
    if not changes:
        return jsonify({'error': 'No weight fields provided'}), 400
    result = current_app.recalculation.update_weights(organization_id, changes)
    return jsonify(result)


@api_bp.route(f'{ORG_PREFIX}/recalculate', methods=['POST'])
@rate_limit_api(max_requests=5, window_seconds=60)
def recalculate(organization_id):
    progress = current_app.recalculation.start_recalculation(organization_id, reason='manual')
    return jsonify(progress.to_dict()), 202


@api_bp.route(f'{ORG_PREFIX}/recalculations/<progress_id>')
def get_recalculation(organization_id, progress_id):
    progress = current_app.recalculation.get_progress(progress_id)
    if progress is None or progress.organization_id != organization_id:
        raise NotFoundError(f"Recalculation '{progress_id}' not found")
    return jsonify(progress.to_dict())


@api_bp.route(f'{ORG_PREFIX}/classifications/repair', methods=['POST'])
def repair_classifications(organization_id):
    return jsonify(current_app.recalculation.repair_classifications(organization_id))


# =============================================================================
# Officer actions
# =============================================================================

@api_bp.route(f'{ORG_PREFIX}/clients/<client_id>/feedback', methods=['POST'])
def submit_feedback(organization_id, client_id):
    client = current_app.recalculation.record_feedback(organization_id, client_id, _json_body())
    return jsonify(client)


@api_bp.route(f'{ORG_PREFIX}/visits/<visit_id>/complete', methods=['POST'])
def complete_visit(organization_id, visit_id):
    body = _json_body()
    result = current_app.recalculation.complete_visit(
        organization_id, visit_id,
        notes=body.get('notes'),
        completed_at=convert_to_datetime(body.get('completed_at')),
    )
    return jsonify(result)


@api_bp.route(f'{ORG_PREFIX}/phone-calls/<call_id>/complete', methods=['POST'])
def complete_phone_call(organization_id, call_id):
    body = _json_body()
    duration = body.get('duration_minutes')
    if duration is not None:
        try:
            duration = int(duration)
        except (TypeError, ValueError):
            return jsonify({'error': 'duration_minutes must be an integer'}), 400
    result = current_app.recalculation.complete_call(
        organization_id, call_id,
        duration_minutes=duration,
        notes=body.get('notes'),
        completed_at=convert_to_datetime(body.get('completed_at')),
    )
    return jsonify(result)
