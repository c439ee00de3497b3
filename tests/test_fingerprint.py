"""
Change-Detection Fingerprint Tests
"""
from portfolio_sync.datalayer.fingerprint import HASHED_FIELDS, compute_client_data_hash, has_changed


BASE_RECORD = {
    'client_id': 'C001',
    'name': 'Alice',
    'loan_officer_id': 'LO1',
    'manager_id': 'BM1',
    'outstanding': 5000.0,
    'outstanding_at_risk': 0.0,
    'par_per_loan': 0.0,
    'late_days': 0,
    'total_delayed_instalments': 0,
    'paid_instalments': 40,
    'count_reschedule': 0,
    'payment_monthly': 250.0,
    'is_at_risk': False,
    'risk_score': 12,
    'composite_urgency': 18.4,
    'urgency_classification': 'Low Urgency',
}


class TestFingerprint:
    """Field isolation and numeric stability of the data hash."""

    def test_digest_is_md5_hex(self):
        digest = compute_client_data_hash(BASE_RECORD)
        assert len(digest) == 32
        assert digest == compute_client_data_hash(dict(BASE_RECORD))

    def test_feedback_fields_do_not_affect_hash(self):
        edited = dict(
            BASE_RECORD,
            feedback_score=1,
            payment_willingness=2,
            visit_notes='Client travelling',
            last_visit_date='2024-05-01',
        )
        assert compute_client_data_hash(edited) == compute_client_data_hash(BASE_RECORD)

    def test_metric_change_alters_hash(self):
        changed = dict(BASE_RECORD, late_days=3)
        assert compute_client_data_hash(changed) != compute_client_data_hash(BASE_RECORD)

    def test_float_noise_below_two_decimals_is_ignored(self):
        noisy = dict(BASE_RECORD, outstanding=5000.0000001, payment_monthly=250.001)
        assert compute_client_data_hash(noisy) == compute_client_data_hash(BASE_RECORD)

    def test_officer_id_is_normalized(self):
        lowered = dict(BASE_RECORD, loan_officer_id=' lo1 ')
        assert compute_client_data_hash(lowered) == compute_client_data_hash(BASE_RECORD)

    def test_import_time_scores_are_hashed(self):
        assert 'risk_score' in HASHED_FIELDS
        assert 'urgency_classification' in HASHED_FIELDS
        assert 'feedback_score' not in HASHED_FIELDS

    def test_has_changed(self):
        digest = compute_client_data_hash(BASE_RECORD)
        assert has_changed(BASE_RECORD, None)
        assert not has_changed(BASE_RECORD, digest)
        assert has_changed(dict(BASE_RECORD, late_days=1), digest)
