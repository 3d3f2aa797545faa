#!/usr/bin/env python3
"""
Integrity Service - HTTP front for the process-integrity engine
Flask app exposing journals, checkpoints, certificates and verification

The writing platform posts content DIGESTS here, never content. Anyone can
POST a certificate to /verify/certificate; that route touches no journal.
"""

import time
import uuid
from functools import wraps

from flask import Flask, g, jsonify, request

from integrity_system.core.config import get_config
from integrity_system.core.datashapes import JournalHead, ProofStep
from integrity_system.core.errors import (
    CheckpointNotFound,
    EmptyRange,
    IntegrityError,
    InvalidDigest,
    InvalidMetadata,
    JournalNotFound,
    KeyNotFound,
    NonContiguousRange,
    NotYetCheckpointed,
    SequenceConflict,
    SequenceNotFound,
    WitnessUnavailable,
)
from integrity_system.core.integrity_logger import service_logger
from integrity_system.core.journal_service import JournalService
from integrity_system.core.merkle import MerkleTree
from integrity_system.core.renderer import IntegrityRenderer

VERSION = '1.0.0'

STATUS_FOR_ERROR = [
    ((JournalNotFound, SequenceNotFound, KeyNotFound, CheckpointNotFound), 404),
    ((SequenceConflict,), 409),
    ((EmptyRange, NonContiguousRange, NotYetCheckpointed, InvalidMetadata, InvalidDigest), 422),
    ((WitnessUnavailable,), 503),
]


class BadRequest(Exception):
    """Request body is missing or has the wrong shape."""
    pass


def status_for(error: IntegrityError) -> int:
    for error_types, status in STATUS_FOR_ERROR:
        if isinstance(error, error_types):
            return status
    return 500


def log_request(f):
    """Decorator to log every request with an id for the audit trail"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.request_id = str(uuid.uuid4())
        service_logger.log_info("REQUEST", f"{request.method} {request.path}", {"request_id": g.request_id})

        start_time = time.time()
        result = f(*args, **kwargs)
        service_logger.log_debug("RESPONSE", f"Duration {time.time() - start_time:.3f}s", {
            "request_id": g.request_id
        })
        return result
    return decorated_function


def _json_body(required=()):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequest("No JSON object provided")
    missing = [name for name in required if name not in data]
    if missing:
        raise BadRequest(f"Missing fields: {', '.join(missing)}")
    return data


def _optional_json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise BadRequest("JSON body must be an object")
    return data


def _int_field(data, name, default=None):
    value = data.get(name, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise BadRequest(f"{name} must be an integer")
    return value


def create_app(service=None, config=None):
    """Build the Flask app around a JournalService."""
    config = config or get_config()
    service = service or JournalService(config)

    app = Flask(__name__)
    app.config['INTEGRITY_SERVICE'] = service

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(error):
        status = status_for(error)
        body = {
            'status': 'error',
            'error': type(error).__name__,
            'message': str(error),
            'retryable': error.retryable,
            'request_id': getattr(g, 'request_id', None),
        }
        if isinstance(error, SequenceConflict) and error.current_head is not None:
            body['current_head'] = {
                'sequence': error.current_head.sequence,
                'hash': error.current_head.hash,
            }
        service_logger.log_warning("REQUEST_FAILED", f"{type(error).__name__}: {error}", {"status": status})
        return jsonify(body), status

    @app.errorhandler(BadRequest)
    def handle_bad_request(error):
        return jsonify({
            'status': 'error',
            'error': 'BadRequest',
            'message': str(error),
            'request_id': getattr(g, 'request_id', None),
        }), 400

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint"""
        return jsonify({
            'status': 'healthy',
            'service': 'Integrity Service',
            'version': VERSION,
            'journals': len(service.ledger.list_journals()),
            'load_warnings': len(service.ledger.load_warnings),
            'timestamp': time.time()
        })

    # =========================================================================
    # JOURNALS
    # =========================================================================

    @app.route('/journals', methods=['POST'])
    @log_request
    def create_journal():
        data = _optional_json_body()
        try:
            journal = service.create_journal(data.get('owner_key_id'), data.get('journal_id'))
        except ValueError as e:
            raise BadRequest(str(e)) from e
        return jsonify({
            'journal_id': journal.journal_id,
            'owner_key_id': journal.owner_key_id,
            'public_key': service.public_key_b64(journal.owner_key_id),
            'created_at': journal.created_at,
            'request_id': g.request_id
        }), 201

    @app.route('/journals/<journal_id>', methods=['GET'])
    @log_request
    def journal_state(journal_id):
        head = service.head(journal_id)
        return jsonify({
            'journal_id': journal_id,
            'head': {'sequence': head.sequence, 'hash': head.hash},
            'checkpoints': [c.to_dict() for c in service.ledger.get_checkpoints(journal_id)],
        })

    @app.route('/journals/<journal_id>/entries', methods=['POST'])
    @log_request
    def submit_entry(journal_id):
        """Digest submission; with expected_head it is a single CAS attempt."""
        data = _json_body(required=('content_hash',))
        metadata = data.get('metadata') or {}

        expected = data.get('expected_head')
        if expected is not None:
            if not isinstance(expected, dict) or 'hash' not in expected:
                raise BadRequest("expected_head must be {sequence, hash}")
            head = JournalHead(_int_field(expected, 'sequence'), expected['hash'])
            entry = service.append(journal_id, data['content_hash'], metadata, expected_head=head)
        else:
            entry = service.submit_content_digest(journal_id, data['content_hash'], metadata)

        return jsonify({'entry': entry.to_dict(), 'request_id': g.request_id}), 201

    @app.route('/journals/<journal_id>/retractions', methods=['POST'])
    @log_request
    def retract_entry(journal_id):
        data = _json_body(required=('sequence',))
        sequence = _int_field(data, "sequence")
        if sequence is None:
            raise BadRequest("sequence is required")
        entry = service.retract(journal_id, sequence, str(data.get("reason", "")))
        return jsonify({'entry': entry.to_dict(), 'request_id': g.request_id}), 201

    @app.route('/journals/<journal_id>/checkpoint', methods=['POST'])
    @log_request
    def seal_checkpoint(journal_id):
        data = _optional_json_body()
        checkpoint = service.seal(
            journal_id,
            through_sequence=_int_field(data, 'through_sequence'),
            from_sequence=_int_field(data, 'from_sequence'),
        )
        return jsonify({'checkpoint': checkpoint.to_dict(), 'request_id': g.request_id}), 201

    @app.route('/journals/<journal_id>/validate', methods=['GET'])
    @log_request
    def validate_journal(journal_id):
        return jsonify(service.validate(journal_id))

    @app.route('/journals/<journal_id>/checkpoints/<checkpoint_id>/verify', methods=['GET'])
    @log_request
    def verify_checkpoint(journal_id, checkpoint_id):
        """Recompute one stored checkpoint root from its entries"""
        return jsonify({
            'journal_id': journal_id,
            'checkpoint_id': checkpoint_id,
            'valid': service.verify_checkpoint(journal_id, checkpoint_id),
        })

    @app.route('/journals/<journal_id>/insights', methods=['GET'])
    @log_request
    def journal_insights(journal_id):
        return jsonify(service.insights(journal_id))

    @app.route('/journals/<journal_id>/report', methods=['GET'])
    @log_request
    def journal_report(journal_id):
        """Plain-text overview for operators"""
        renderer = IntegrityRenderer(service.ledger)
        sections = [
            renderer.render_chain_summary(service.validate(journal_id)),
            renderer.render_insights(service.insights(journal_id)),
        ]
        sections.extend(renderer.render_checkpoint(c) for c in service.ledger.get_checkpoints(journal_id))
        sections.append(renderer.render_chain(journal_id, limit=request.args.get('limit', 20, type=int)))
        return '\n\n'.join(sections), 200, {'Content-Type': 'text/plain; charset=utf-8'}

    @app.route('/journals/<journal_id>/certificates', methods=['POST'])
    @log_request
    def issue_certificate(journal_id):
        data = _optional_json_body()
        disclose = data.get('disclose', [])
        if not isinstance(disclose, list) or any(isinstance(s, bool) or not isinstance(s, int) for s in disclose):
            raise BadRequest("disclose must be a list of sequence numbers")

        allow_recency = data.get('allow_recency_proofs')
        certificate = service.issue_certificate(journal_id, disclose, allow_recency)
        return jsonify({
            'certificate': certificate.to_dict(),
            'public_key': service.public_key_b64(certificate.owner_key_id),
            'request_id': g.request_id
        }), 201

    # =========================================================================
    # VERIFICATION (no journal access)
    # =========================================================================

    @app.route('/verify/certificate', methods=['POST'])
    @log_request
    def verify_certificate():
        data = _json_body(required=('certificate',))
        result = service.verifier.verify(data['certificate'], data.get('public_key'))
        return jsonify({**result.to_dict(), 'request_id': g.request_id})

    @app.route('/verify/merkle-proof', methods=['POST'])
    @log_request
    def verify_merkle_proof():
        data = _json_body(required=('entry_hash', 'proof', 'merkle_root'))
        try:
            steps = [ProofStep.from_dict(step) for step in data['proof']]
        except (KeyError, ValueError, TypeError) as e:
            raise BadRequest(f"proof must be a list of {{hash, side}} steps ({e})") from e

        valid = MerkleTree.verify_proof(
            data['entry_hash'],
            steps,
            data['merkle_root'],
            _int_field(data, 'leaf_index'),
            _int_field(data, 'leaf_count'),
        )
        return jsonify({'valid': valid, 'request_id': g.request_id})

    return app


def main():
    config = get_config()
    issues = config.validate_config()
    for issue in issues:
        service_logger.log_warning("CONFIG_ISSUE", issue)

    app = create_app(config=config)
    service_logger.log_info("SERVICE_START", f"Integrity Service on {config.SERVICE_HOST}:{config.SERVICE_PORT}")
    app.run(host=config.SERVICE_HOST, port=config.SERVICE_PORT, debug=config.DEBUG)


if __name__ == '__main__':
    main()
