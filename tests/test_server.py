"""
Integrity Service API Tests

Flask test client against a TestConfig service (auto-seal every 10
entries, local witness, in-memory ledger).
"""

import pytest

from conftest import digest

from integrity_system.service.server import create_app


@pytest.fixture
def client(service):
    app = create_app(service=service)
    app.config['TESTING'] = True
    return app.test_client()


@pytest.fixture
def journal_id(client):
    return client.post('/journals', json={}).get_json()['journal_id']


def submit(client, journal_id, n, **extra):
    return client.post(f'/journals/{journal_id}/entries', json={
        'content_hash': digest(n),
        'metadata': {'entry_type': 'revision'},
        **extra,
    })


class TestJournals:

    def test_health(self, client):
        data = client.get('/health').get_json()
        assert data['status'] == 'healthy'

    def test_create_journal(self, client):
        response = client.post('/journals', json={'journal_id': 'essay-7'})
        data = response.get_json()

        assert response.status_code == 201
        assert data['journal_id'] == 'essay-7'
        assert data['owner_key_id'].startswith('ed25519:')
        assert data['public_key']

    def test_duplicate_journal_is_bad_request(self, client):
        client.post('/journals', json={'journal_id': 'essay-7'})
        assert client.post('/journals', json={'journal_id': 'essay-7'}).status_code == 400

    def test_unknown_journal(self, client):
        response = client.get('/journals/nope')
        assert response.status_code == 404
        assert response.get_json()['error'] == 'JournalNotFound'

    def test_state(self, client, journal_id):
        submit(client, journal_id, 0)
        data = client.get(f'/journals/{journal_id}').get_json()
        assert data['head']['sequence'] == 0
        assert data['checkpoints'] == []


class TestEntries:

    def test_submit(self, client, journal_id):
        response = submit(client, journal_id, 0)
        entry = response.get_json()['entry']

        assert response.status_code == 201
        assert entry['sequence'] == 0
        assert entry['content_hash'] == digest(0)

    def test_stale_expected_head_is_conflict(self, client, journal_id):
        """
        EDGE CASE: 409 carries the current head so the caller can retry.
        """
        first = submit(client, journal_id, 0).get_json()['entry']
        submit(client, journal_id, 1)

        response = submit(client, journal_id, 2, expected_head={'sequence': 0, 'hash': first['entry_hash']})
        data = response.get_json()

        assert response.status_code == 409
        assert data['retryable'] is True
        assert data['current_head']['sequence'] == 1

    def test_matching_expected_head(self, client, journal_id):
        first = submit(client, journal_id, 0).get_json()['entry']
        response = submit(client, journal_id, 1, expected_head={'sequence': 0, 'hash': first['entry_hash']})
        assert response.status_code == 201

    def test_bad_digest_is_unprocessable(self, client, journal_id):
        response = client.post(f'/journals/{journal_id}/entries', json={'content_hash': 'abc'})
        assert response.status_code == 422

    def test_non_string_metadata_is_unprocessable(self, client, journal_id):
        response = client.post(f'/journals/{journal_id}/entries', json={
            'content_hash': digest(0),
            'metadata': {'words': 12},
        })
        assert response.status_code == 422

    def test_missing_body(self, client, journal_id):
        assert client.post(f'/journals/{journal_id}/entries').status_code == 400

    def test_retraction(self, client, journal_id):
        submit(client, journal_id, 0)
        response = client.post(f'/journals/{journal_id}/retractions', json={'sequence': 0, 'reason': 'typo'})
        assert response.status_code == 201
        assert response.get_json()['entry']['metadata']['entry_type'] == 'retraction'

    def test_retraction_of_unknown_sequence(self, client, journal_id):
        response = client.post(f'/journals/{journal_id}/retractions', json={'sequence': 5})
        assert response.status_code == 404


class TestCheckpoints:

    def test_manual_seal(self, client, journal_id):
        for n in range(4):
            submit(client, journal_id, n)

        response = client.post(f'/journals/{journal_id}/checkpoint', json={'through_sequence': 2})
        assert response.status_code == 201
        assert response.get_json()['checkpoint']['range'] == [0, 2]

    def test_auto_seal_at_ten(self, client, journal_id):
        for n in range(10):
            submit(client, journal_id, n)
        checkpoints = client.get(f'/journals/{journal_id}').get_json()['checkpoints']
        assert [c['range'] for c in checkpoints] == [[0, 9]]

    def test_empty_range(self, client, journal_id):
        assert client.post(f'/journals/{journal_id}/checkpoint').status_code == 422

    def test_non_contiguous(self, client, journal_id):
        for n in range(3):
            submit(client, journal_id, n)
        response = client.post(f'/journals/{journal_id}/checkpoint', json={'from_sequence': 1})
        assert response.status_code == 422
        assert response.get_json()['error'] == 'NonContiguousRange'

    def test_non_integer_field(self, client, journal_id):
        response = client.post(f'/journals/{journal_id}/checkpoint', json={'through_sequence': '2'})
        assert response.status_code == 400


class TestCertificates:

    def test_issue_and_verify(self, client, journal_id):
        """
        HAPPY PATH: Issue over HTTP, verify over HTTP with only the document and key.
        """
        for n in range(10):
            submit(client, journal_id, n)

        issued = client.post(f'/journals/{journal_id}/certificates', json={'disclose': [4]})
        assert issued.status_code == 201
        body = issued.get_json()

        response = client.post('/verify/certificate', json={
            'certificate': body['certificate'],
            'public_key': body['public_key'],
        })
        result = response.get_json()
        assert response.status_code == 200
        assert result['valid'] is True
        assert result['reasons'] == []

    def test_tampered_certificate_reports_reasons(self, client, journal_id):
        for n in range(10):
            submit(client, journal_id, n)
        body = client.post(f'/journals/{journal_id}/certificates', json={'disclose': [4]}).get_json()

        certificate = body['certificate']
        certificate['disclosed_entries'][0]['metadata']['entry_type'] = 'prompt'

        result = client.post('/verify/certificate', json={
            'certificate': certificate,
            'public_key': body['public_key'],
        }).get_json()
        assert result['valid'] is False
        assert 'entry_hash_mismatch' in result['reasons']
        assert 'invalid_signature' in result['reasons']

    def test_unsealed_disclosure(self, client, journal_id):
        submit(client, journal_id, 0)
        response = client.post(f'/journals/{journal_id}/certificates', json={'disclose': [0]})
        assert response.status_code == 422
        assert response.get_json()['error'] == 'NotYetCheckpointed'

    def test_recency_disclosure(self, client, journal_id):
        submit(client, journal_id, 0)
        submit(client, journal_id, 1)
        body = client.post(f'/journals/{journal_id}/certificates', json={
            'disclose': [0],
            'allow_recency_proofs': True,
        }).get_json()

        result = client.post('/verify/certificate', json={
            'certificate': body['certificate'],
            'public_key': body['public_key'],
        }).get_json()
        assert result['valid'] is True

    def test_bad_disclose_list(self, client, journal_id):
        response = client.post(f'/journals/{journal_id}/certificates', json={'disclose': ['4']})
        assert response.status_code == 400

    def test_summary(self, client, journal_id):
        submit(client, journal_id, 0)
        certificate = client.post(f'/journals/{journal_id}/certificates', json={}).get_json()['certificate']
        assert certificate['certificate_type'] == 'summary'
        assert certificate['entry_count'] == 1


class TestMerkleProofEndpoint:

    def test_valid_and_invalid_proof(self, client, journal_id, service):
        for n in range(10):
            submit(client, journal_id, n)
        checkpoint, proof = service.builder.build_proof(journal_id, 4)
        entry = service.ledger.get_entry(journal_id, 4)
        payload = {
            'entry_hash': entry.entry_hash,
            'proof': [step.to_dict() for step in proof.sibling_hashes],
            'merkle_root': checkpoint.merkle_root,
            'leaf_index': 4,
            'leaf_count': 10,
        }

        assert client.post('/verify/merkle-proof', json=payload).get_json()['valid'] is True
        payload['leaf_index'] = 5
        assert client.post('/verify/merkle-proof', json=payload).get_json()['valid'] is False

    def test_malformed_proof(self, client):
        response = client.post('/verify/merkle-proof', json={
            'entry_hash': digest(0),
            'proof': [{'hash': digest(1)}],
            'merkle_root': digest(2),
        })
        assert response.status_code == 400


class TestReports:

    def test_validate_and_insights(self, client, journal_id):
        for n in range(3):
            submit(client, journal_id, n)

        summary = client.get(f'/journals/{journal_id}/validate').get_json()
        insights = client.get(f'/journals/{journal_id}/insights').get_json()

        assert summary['is_valid'] is True
        assert summary['total_entries'] == 3
        assert insights['revision_count'] == 3

    def test_text_report(self, client, journal_id):
        for n in range(10):
            submit(client, journal_id, n)

        response = client.get(f'/journals/{journal_id}/report?limit=5')
        text = response.get_data(as_text=True)

        assert response.status_code == 200
        assert response.mimetype == 'text/plain'
        assert 'Chain intact' in text
        assert 'CKPT-1' in text
        assert 'Showing last 5 of 10 entries' in text

    def test_validate_reports_checkpoint_roots(self, client, journal_id, service):
        for n in range(10):
            submit(client, journal_id, n)
        assert client.get(f'/journals/{journal_id}/validate').get_json()['checkpoints_valid'] is True

        service.ledger.get_journal(journal_id).checkpoints[0].merkle_root = digest(99)
        summary = client.get(f'/journals/{journal_id}/validate').get_json()
        assert summary['is_valid'] is False
        assert summary['invalid_checkpoints'] == ['CKPT-1']


class TestCheckpointVerification:

    def test_verify_stored_checkpoint(self, client, journal_id):
        for n in range(10):
            submit(client, journal_id, n)

        response = client.get(f'/journals/{journal_id}/checkpoints/CKPT-1/verify')
        assert response.status_code == 200
        assert response.get_json()['valid'] is True

    def test_unknown_checkpoint(self, client, journal_id):
        response = client.get(f'/journals/{journal_id}/checkpoints/CKPT-3/verify')
        assert response.status_code == 404
        assert response.get_json()['error'] == 'CheckpointNotFound'
