#!/usr/bin/env python3
"""
JSON API for relayers, attesters and watchdogs
"""

import json
import logging
import os
import time

from flask import Flask, jsonify, request

from ..auth import RoleAuthorizer
from ..bitcoin.primitives import TxInfo
from ..bitcoin.spv import SPVProof, StaticRelay
from ..config import SystemParameters
from ..errors import ErrorKind, ReserveError
from ..oracle import SignedAttestation
from ..system import AccountControlSystem

log = logging.getLogger(__name__)

NOT_FOUND_KINDS = {ErrorKind.RESERVE_NOT_FOUND, ErrorKind.REDEMPTION_NOT_FOUND, ErrorKind.PROPOSAL_NOT_FOUND}


def _error_response(error: ReserveError):
    if error.kind == ErrorKind.NOT_AUTHORIZED:
        status = 403
    elif error.kind in NOT_FOUND_KINDS:
        status = 404
    else:
        status = 400
    return jsonify({'success': False, 'error': error.kind.value, 'message': error.message}), status


def _bad_request(message: str):
    return jsonify({'success': False, 'error': ErrorKind.INVALID_PARAMETERS.value, 'message': message}), 400


def create_app(system: AccountControlSystem, clock=time.time) -> Flask:
    app = Flask(__name__)

    def now() -> int:
        return int(clock())

    def actor() -> str:
        # Identity is established by the gateway in front of this service
        return request.headers.get('X-Actor', '')

    @app.route('/api/reserves/<reserve_id>')
    def get_reserve(reserve_id):
        """Reserve accounting and oracle state"""
        try:
            return jsonify(system.reserve_summary(reserve_id, now()))
        except ReserveError as e:
            return _error_response(e)

    @app.route('/api/attestations', methods=['POST'])
    def submit_attestation():
        """Signed balance attestation from an attester"""
        data = request.get_json(silent=True) or {}
        try:
            attestation = SignedAttestation(
                attester_pubkey=data['attester_pubkey'],
                reserve_id=data['reserve_id'],
                amount=int(data['amount']),
                proof_hash=bytes.fromhex(data['proof_hash']),
                signature=data['signature']
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            return _bad_request(f"Malformed attestation: {e}")

        try:
            result = system.oracle.submit_signed_attestation(attestation, now())
        except ReserveError as e:
            log.warning(f"Attestation for {attestation.reserve_id} rejected: {e.kind.value}")
            return _error_response(e)

        return jsonify({
            'success': True,
            'round_id': result.round_id,
            'status': result.status.value,
            'submissions': result.submissions,
            'finalized_amount': result.finalized_amount
        })

    @app.route('/api/redemptions/<redemption_id>')
    def get_redemption(redemption_id):
        try:
            return jsonify(system.redemptions.get_redemption(redemption_id).to_dict())
        except ReserveError as e:
            return _error_response(e)

    @app.route('/api/redemptions/<redemption_id>/fulfill', methods=['POST'])
    def fulfill_redemption(redemption_id):
        """SPV-proven payment submitted by a relayer"""
        data = request.get_json(silent=True) or {}
        try:
            satoshi_amount = int(data['satoshi_amount'])
            tx_info = TxInfo.from_dict(data['tx_info'])
            proof = SPVProof.from_dict(data['proof'])
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            return _bad_request(f"Malformed fulfilment: {e}")

        try:
            redemption = system.redemptions.fulfill(actor(), redemption_id, satoshi_amount, tx_info, proof, now())
        except ReserveError as e:
            return _error_response(e)

        return jsonify({'success': True, 'redemption': redemption.to_dict()})

    @app.route('/api/reports', methods=['POST'])
    def report_critical():
        """Watchdog critical report against a reserve"""
        data = request.get_json(silent=True) or {}
        if 'reserve_id' not in data or 'reason' not in data:
            return _bad_request("reserve_id and reason are required")

        try:
            paused = system.escalation.report_critical(actor(), data['reserve_id'], data['reason'], now())
        except ReserveError as e:
            return _error_response(e)

        return jsonify({'success': True, 'emergency_paused': paused})

    @app.route('/api/violations', methods=['POST'])
    def enforce_violation():
        """Permissionless enforcement of an objective violation"""
        data = request.get_json(silent=True) or {}
        if 'reserve_id' not in data or 'reason_code' not in data:
            return _bad_request("reserve_id and reason_code are required")

        try:
            deadline = system.enforcer.enforce_objective_violation(
                actor(), data['reserve_id'], data['reason_code'], now())
        except ReserveError as e:
            return _error_response(e)

        return jsonify({'success': True, 'escalation_deadline': deadline})

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')

    if os.environ.get("QC_NETWORK", "mainnet") == "mainnet":
        params = SystemParameters.mainnet()
    else:
        params = SystemParameters.testing()

    relay = StaticRelay(
        current=int(os.environ.get("CURRENT_EPOCH_DIFFICULTY", "1")),
        previous=int(os.environ.get("PREV_EPOCH_DIFFICULTY", "1"))
    )
    # QC_ROLE_GRANTS maps each actor to its role names, e.g. {"relayer": ["redemption_fulfiller"]}
    authorizer = RoleAuthorizer.from_dict(json.loads(os.environ.get("QC_ROLE_GRANTS", "{}")))
    port = int(os.environ.get("PORT", 10000))
    create_app(AccountControlSystem(authorizer, relay, params)).run(
        host="0.0.0.0",
        port=port,
        debug=False
    )
