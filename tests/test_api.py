"""
REST API Tests

Uses the Flask test client against an in-memory database. Background work
started by a request is awaited before the next database access.
"""
import io
import os

import pytest

from portfolio_sync.scoring import ALL_WEIGHT_FIELDS
from portfolio_sync.web import create_app

from .conftest import ORG


BASE = f'/api/organizations/{ORG}'


@pytest.fixture
def app(config, session_manager, broadcaster, orchestrator):
    app = create_app(config, session_manager, broadcaster, orchestrator)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def synced(app, client, workbook_path):
    """Organization after one successful sync through the API."""
    response = client.post(f'{BASE}/sync', json={'source': workbook_path})
    run = app.orchestrator.wait(response.get_json()['sync_id'], timeout=30)
    assert run['status'] == 'success'
    return run


class TestHealth:

    def test_health(self, client):
        response = client.get('/api/health')
        assert response.status_code == 200
        assert response.get_json()['status'] == 'healthy'

    def test_api_responses_are_not_cached(self, client):
        response = client.get('/api/health')
        assert 'no-store' in response.headers['Cache-Control']
        assert response.headers['X-Content-Type-Options'] == 'nosniff'


class TestSyncEndpoints:
    """Triggering and polling sync runs."""

    def test_sync_is_accepted(self, app, client, workbook_path):
        response = client.post(f'{BASE}/sync', json={'source': workbook_path})

        assert response.status_code == 202
        body = response.get_json()
        assert body['status'] == 'pending'

        app.orchestrator.wait(body['sync_id'], timeout=30)
        run = client.get(f"{BASE}/sync/{body['sync_id']}").get_json()
        assert run['status'] == 'success'
        assert run['records_processed'] == 4
        assert {u['loan_officer_id'] for u in run['provisioned_users']} == {'LO1', 'LO2'}

    def test_sync_without_source(self, client):
        response = client.post(f'{BASE}/sync', json={})
        assert response.status_code == 400
        assert response.get_json()['error'] == 'No URL or file path provided'

    def test_sync_in_progress_conflict(self, app, client, workbook_path):
        active = app.orchestrator.create_run(ORG, workbook_path)

        response = client.post(f'{BASE}/sync', json={'source': workbook_path})

        assert response.status_code == 409
        assert response.get_json()['active_sync_id'] == active['id']

    def test_sync_is_rate_limited(self, client):
        statuses = [client.post(f'{BASE}/sync', json={}).status_code for _ in range(6)]
        assert statuses == [400] * 5 + [429]

    def test_upload(self, app, client, config, workbook_path):
        with open(workbook_path, 'rb') as f:
            response = client.post(
                f'{BASE}/sync/upload',
                data={'file': (io.BytesIO(f.read()), 'Portfolio March.xlsx')},
                content_type='multipart/form-data',
            )

        assert response.status_code == 202
        run = app.orchestrator.wait(response.get_json()['sync_id'], timeout=30)
        assert run['status'] == 'success'
        assert run['triggered_by'] == 'upload'
        assert os.listdir(config.upload_folder) == []

    def test_upload_rejects_other_file_types(self, client):
        response = client.post(
            f'{BASE}/sync/upload',
            data={'file': (io.BytesIO(b'#!/bin/sh'), 'script.sh')},
            content_type='multipart/form-data',
        )
        assert response.status_code == 400

    def test_upload_requires_a_file(self, client):
        response = client.post(f'{BASE}/sync/upload', data={}, content_type='multipart/form-data')
        assert response.status_code == 400

    def test_status_of_never_synced_organization(self, client):
        assert client.get(f'{BASE}/sync/status').get_json()['status'] == 'never_synced'

    def test_status_after_sync(self, client, synced):
        body = client.get(f'{BASE}/sync/status').get_json()
        assert body['id'] == synced['id']
        assert body['progress_percentage'] == 100

    def test_unknown_run(self, client):
        assert client.get(f'{BASE}/sync/does-not-exist').status_code == 404

    def test_reset(self, app, client, workbook_path):
        app.orchestrator.create_run(ORG, workbook_path)

        response = client.post(f'{BASE}/sync/reset')

        assert response.get_json() == {'success': True, 'reset_runs': 1}
        assert client.get(f'{BASE}/sync/status').get_json()['status'] == 'error'


class TestSettingsEndpoints:
    """Weight settings and recalculation."""

    def test_get_defaults(self, client):
        body = client.get(f'{BASE}/settings').get_json()
        assert set(body) == set(ALL_WEIGHT_FIELDS)
        assert body['urgency_risk_score_weight'] == 50

    def test_empty_update(self, client):
        assert client.put(f'{BASE}/settings', json={}).status_code == 400

    def test_invalid_update(self, client):
        response = client.put(f'{BASE}/settings', json={
            'urgency_risk_score_weight': 50,
            'urgency_days_since_visit_weight': 50,
            'urgency_feedback_score_weight': 10,
        })

        assert response.status_code == 400
        assert response.get_json()['category'] == 'urgency'

    def test_non_numeric_field(self, client):
        response = client.put(f'{BASE}/settings', json={'risk_late_days_weight': 'heavy'})
        assert response.status_code == 400
        assert 'risk_late_days_weight' in response.get_json()['field_errors']

    def test_valid_update_starts_recalculation(self, app, client, synced):
        response = client.put(f'{BASE}/settings', json={
            'urgency_risk_score_weight': 70,
            'urgency_days_since_visit_weight': 20,
            'urgency_feedback_score_weight': 10,
        })

        assert response.status_code == 200
        body = response.get_json()
        assert body['settings']['urgency_risk_score_weight'] == 70
        progress = app.recalculation.wait(body['recalculation']['id'], timeout=30)
        assert progress.status == 'completed'

    def test_recalculate_and_poll(self, app, client, synced):
        response = client.post(f'{BASE}/recalculate')

        assert response.status_code == 202
        progress_id = response.get_json()['id']
        app.recalculation.wait(progress_id, timeout=30)

        body = client.get(f'{BASE}/recalculations/{progress_id}').get_json()
        assert body['status'] == 'completed'
        assert body['summary']['processed'] == 4
        assert client.get(f'/api/organizations/other/recalculations/{progress_id}').status_code == 404

    def test_repair_classifications(self, client, synced):
        assert client.post(f'{BASE}/classifications/repair').get_json() == {'updated': 0, 'total': 4}


class TestOfficerActions:
    """Feedback and interaction completion."""

    def test_feedback(self, client, broadcaster, synced):
        response = client.post(f'{BASE}/clients/C002/feedback', json={'feedback_score': 1})

        assert response.status_code == 200
        assert response.get_json()['feedback_score'] == 1
        assert broadcaster.events[-1]['data']['client_ids'] == ['C002']

    def test_feedback_for_unknown_client(self, client):
        assert client.post(f'{BASE}/clients/C999/feedback', json={'feedback_score': 1}).status_code == 404

    def test_feedback_with_bad_rating(self, client, synced):
        response = client.post(f'{BASE}/clients/C001/feedback', json={'payment_willingness': 9})
        assert response.status_code == 400

    def test_feedback_body_must_be_an_object(self, client, synced):
        assert client.post(f'{BASE}/clients/C001/feedback', json=[1, 2]).status_code == 400

    def test_unknown_visit(self, client):
        assert client.post(f'{BASE}/visits/nope/complete', json={}).status_code == 404

    def test_call_duration_must_be_integer(self, client):
        response = client.post(f'{BASE}/phone-calls/nope/complete', json={'duration_minutes': 'long'})
        assert response.status_code == 400
