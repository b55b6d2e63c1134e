import logging
import threading
from typing import Set

from .auth import Authorizer, Role
from .bitcoin.primitives import TxInfo, txid_hex
from .bitcoin.spv import CHAIN_PARAMS, Relay, SPVProof, SPVVerifier
from .config import SystemParameters
from .errors import ErrorKind, ReserveError
from .ledger import ReserveLedger
from .oracle import ReserveOracle
from .redemption import RedemptionManager
from .sync import BackingSynchronizer
from .token import InMemoryToken
from .watchdog import PauseEscalation, WatchdogConsensus, WatchdogEnforcer

log = logging.getLogger(__name__)


class AccountControlSystem:
    """Wires ledger, oracle, redemption and watchdog components together"""

    def __init__(self, authorizer: Authorizer, relay: Relay, params: SystemParameters = None,
                 token: InMemoryToken = None):
        self.params = params or SystemParameters.mainnet()
        self.authorizer = authorizer
        self.token = token or InMemoryToken()

        self.ledger = ReserveLedger(self.token, authorizer, self.params)
        self.verifier = SPVVerifier(relay, self.params.tx_proof_difficulty_factor, CHAIN_PARAMS[self.params.network])
        self.oracle = ReserveOracle(self.ledger, authorizer, self.params)
        self.synchronizer = BackingSynchronizer(self.oracle, self.ledger, authorizer)
        self.redemptions = RedemptionManager(self.ledger, self.verifier, authorizer, self.params)
        self.watchdog = WatchdogConsensus(self.ledger, authorizer, self.params)
        self.escalation = PauseEscalation(self.ledger, authorizer, self.params)
        self.enforcer = WatchdogEnforcer(self.ledger, self.oracle, self.params)
        self._wallet_proof_txs: Set[bytes] = set()
        self._wallet_proof_lock = threading.Lock()

    def register_wallet_with_proof(self, caller: str, reserve_id: str, wallet_address: str, challenge: bytes,
                                   tx_info: TxInfo, proof: SPVProof) -> bytes:
        """Register a wallet once an SPV-proven transaction shows the challenge in an OP_RETURN

        Each proven transaction registers one wallet; returns its hash.
        """
        if caller != reserve_id:
            self.authorizer.require(caller, Role.REGISTRAR)
        self.ledger.get_account(reserve_id)

        tx_hash = self.verifier.verify_wallet_control(
            wallet_address, challenge, tx_info, proof, self.params.tx_proof_difficulty_factor)

        with self._wallet_proof_lock:
            if tx_hash in self._wallet_proof_txs:
                raise ReserveError(ErrorKind.TRANSACTION_ALREADY_USED, txid_hex(tx_hash))
            self.ledger.register_wallet(caller, reserve_id, wallet_address)
            self._wallet_proof_txs.add(tx_hash)

        log.info(f"Wallet {wallet_address} proven by {txid_hex(tx_hash)} for {reserve_id}")
        return tx_hash

    def deregister_wallet(self, caller: str, reserve_id: str, wallet_address: str):
        """Detach a wallet once nothing is still owed from it"""
        with self.ledger.locks.for_reserve(reserve_id):
            if self.redemptions.wallet_has_unfulfilled(wallet_address):
                raise ReserveError(
                    ErrorKind.WALLET_HAS_PENDING_REDEMPTIONS,
                    f"{wallet_address} still has unfulfilled redemptions")
            self.ledger.deregister_wallet(caller, reserve_id, wallet_address)

    def is_fully_settled(self, reserve_id: str) -> bool:
        """No tokens outstanding and no redemption awaiting payment"""
        account = self.ledger.get_account(reserve_id)
        return account.minted == 0 and not self.redemptions.has_unfulfilled_redemptions(reserve_id)

    def reserve_summary(self, reserve_id: str, current_time: int) -> dict:
        account = self.ledger.get_account(reserve_id)
        oracle_amount, stale = self.oracle.get_reserve_balance_and_staleness(reserve_id, current_time)
        summary = account.to_dict()
        summary.update({
            'oracle_balance': oracle_amount,
            'oracle_stale': stale,
            'active_redemptions': len(self.redemptions.get_active_redemptions(reserve_id)),
            'critical_reports': self.escalation.get_report_count(reserve_id, current_time),
            'escalation_deadline': self.enforcer.get_escalation_deadline(reserve_id)
        })
        return summary
