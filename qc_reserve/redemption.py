"""
Redemption lifecycle: a token burn becomes a pending Bitcoin payout that is
either fulfilled by an SPV-proven payment or defaulted by a dispute arbiter
once its deadline has passed
"""

import hashlib
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Set

from .auth import Authorizer, Role
from .bitcoin.address import DecodedAddress, decode_address
from .bitcoin.primitives import TxInfo, parse_outputs, txid_hex
from .bitcoin.spv import SPV_ERROR_KINDS, SPVProof, SPVVerifier
from .config import SystemParameters
from .errors import ErrorKind, ReserveError, Result, SPVError
from .ledger import ReserveLedger

log = logging.getLogger(__name__)


class RedemptionStatus(Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    DEFAULTED = "defaulted"


@dataclass
class Redemption:
    redemption_id: str
    reserve_id: str
    user: str
    amount: int  # satoshis
    btc_address: str
    wallet: str  # reserve wallet expected to pay
    requested_at: int
    deadline: int
    status: RedemptionStatus = RedemptionStatus.PENDING
    fulfilled_amount: Optional[int] = None
    fulfillment_tx_hash: Optional[bytes] = None
    fulfilled_at: Optional[int] = None
    trusted_fulfillment: bool = False
    default_reason: Optional[str] = None
    defaulted_at: Optional[int] = None

    def is_timed_out(self, current_time: int) -> bool:
        return self.status == RedemptionStatus.PENDING and current_time > self.deadline

    def to_dict(self) -> dict:
        return {
            'redemption_id': self.redemption_id,
            'reserve_id': self.reserve_id,
            'user': self.user,
            'amount': self.amount,
            'btc_address': self.btc_address,
            'wallet': self.wallet,
            'requested_at': self.requested_at,
            'deadline': self.deadline,
            'status': self.status.value,
            'fulfilled_amount': self.fulfilled_amount,
            'fulfillment_txid': txid_hex(self.fulfillment_tx_hash) if self.fulfillment_tx_hash else None,
            'default_reason': self.default_reason
        }


class RedemptionManager:
    """Tracks redemptions from burn to fulfilment or default"""

    def __init__(self, ledger: ReserveLedger, verifier: SPVVerifier, authorizer: Authorizer,
                 params: SystemParameters = None):
        self.ledger = ledger
        self.verifier = verifier
        self.authorizer = authorizer
        self.params = params or ledger.params
        self.locks = ledger.locks
        self._redemptions: Dict[str, Redemption] = {}
        self._active_by_reserve: Dict[str, Set[str]] = {}
        self._active_by_wallet: Dict[str, Set[str]] = {}
        self._used_tx_hashes: Set[bytes] = set()
        self._tx_lock = threading.Lock()
        self._counter = 0
        self._counter_lock = threading.Lock()

    def _claim_tx(self, tx_hash: bytes) -> bool:
        """Reserve `tx_hash` for one fulfilment across every reserve"""
        with self._tx_lock:
            if tx_hash in self._used_tx_hashes:
                return False
            self._used_tx_hashes.add(tx_hash)
            return True

    def _next_redemption_id(self, reserve_id: str, user: str, current_time: int) -> str:
        with self._counter_lock:
            self._counter += 1
            counter = self._counter
        return hashlib.sha256(f"{reserve_id}_{user}_{counter}_{current_time}".encode()).hexdigest()

    def initiate(self, caller: str, reserve_id: str, amount: int, btc_address: str, wallet: str,
                 current_time: int) -> Redemption:
        """Burn the caller's tokens and open a pending payout"""
        if amount < self.params.min_redemption_amount:
            raise ReserveError(
                ErrorKind.REDEMPTION_BELOW_MINIMUM,
                f"{amount} is below minimum {self.params.min_redemption_amount}")
        decode_address(btc_address, self.params.network)

        with self.locks.for_reserve(reserve_id):
            self.ledger.get_account(reserve_id)
            if not self.ledger.is_wallet_registered(reserve_id, wallet):
                raise ReserveError(ErrorKind.WALLET_NOT_REGISTERED, f"{wallet} not registered to {reserve_id}")

            self.ledger.redeem(caller, reserve_id, caller, amount)

            redemption = Redemption(
                redemption_id=self._next_redemption_id(reserve_id, caller, current_time),
                reserve_id=reserve_id,
                user=caller,
                amount=amount,
                btc_address=btc_address,
                wallet=wallet,
                requested_at=current_time,
                deadline=current_time + self.params.redemption_timeout
            )
            self._redemptions[redemption.redemption_id] = redemption
            self._active_by_reserve.setdefault(reserve_id, set()).add(redemption.redemption_id)
            self._active_by_wallet.setdefault(wallet, set()).add(redemption.redemption_id)

        log.info(f"Redemption {redemption.redemption_id[:16]}... opened: {amount} sats from {reserve_id} to {btc_address}")
        return redemption

    # Fulfilment

    @staticmethod
    def calculate_paid_amount(output_vector: bytes, destination: DecodedAddress) -> int:
        """Total satoshis paid to `destination` across every output"""
        return sum(o.value for o in parse_outputs(output_vector) if destination.matches_script(o.script))

    def _check_payment(self, redemption: Redemption, paid: int) -> Result:
        if paid < self.params.dust_threshold:
            return Result.failure(ErrorKind.PAYMENT_BELOW_DUST, f"Paid {paid} is below dust {self.params.dust_threshold}")
        if paid + self.params.payment_tolerance < redemption.amount:
            return Result.failure(ErrorKind.INSUFFICIENT_PAYMENT, f"Paid {paid} of requested {redemption.amount}")
        return Result.success(paid)

    def _get_pending(self, redemption_id: str) -> Result:
        redemption = self._redemptions.get(redemption_id)
        if redemption is None:
            return Result.failure(ErrorKind.REDEMPTION_NOT_FOUND, redemption_id)
        if redemption.status != RedemptionStatus.PENDING:
            return Result.failure(ErrorKind.REDEMPTION_NOT_PENDING, f"{redemption_id} is {redemption.status.value}")
        return Result.success(redemption)

    def _check_proven_fulfillment(self, redemption: Redemption, satoshi_amount: int, tx_info: TxInfo,
                                  proof: SPVProof) -> Result:
        verified = self.verifier.verify_result(tx_info, proof, self.params.tx_proof_difficulty_factor)
        if not verified.ok:
            return verified
        tx_hash = verified.value

        if tx_hash in self._used_tx_hashes:
            return Result.failure(ErrorKind.TRANSACTION_ALREADY_USED, txid_hex(tx_hash))

        destination = decode_address(redemption.btc_address, self.params.network)
        paid = self.calculate_paid_amount(tx_info.output_vector, destination)
        if paid < satoshi_amount:
            return Result.failure(ErrorKind.PAYMENT_AMOUNT_MISMATCH, f"Claimed {satoshi_amount}, transaction pays {paid}")

        payment = self._check_payment(redemption, paid)
        if not payment.ok:
            return payment
        return Result.success((paid, tx_hash))

    def _fulfill_result(self, caller: str, redemption_id: str, satoshi_amount: int, tx_info: TxInfo,
                        proof: SPVProof, current_time: int) -> Result:
        if not self.params.permissionless_fulfillment and not self.authorizer.check(caller, Role.REDEMPTION_FULFILLER):
            return Result.failure(ErrorKind.NOT_AUTHORIZED, f"{caller} may not fulfil redemptions")

        lookup = self._get_pending(redemption_id)
        if not lookup.ok:
            return lookup

        with self.locks.for_reserve(lookup.value.reserve_id):
            lookup = self._get_pending(redemption_id)
            if not lookup.ok:
                return lookup
            redemption = lookup.value

            checked = self._check_proven_fulfillment(redemption, satoshi_amount, tx_info, proof)
            if not checked.ok:
                return checked

            paid, tx_hash = checked.value
            if not self._claim_tx(tx_hash):
                return Result.failure(ErrorKind.TRANSACTION_ALREADY_USED, txid_hex(tx_hash))
            self._mark_fulfilled(redemption, paid, tx_hash, current_time, trusted=False)

        return Result.success(redemption)

    def fulfill(self, caller: str, redemption_id: str, satoshi_amount: int, tx_info: TxInfo, proof: SPVProof,
                current_time: int) -> Redemption:
        """Record an SPV-proven payment; raises on any failed check"""
        result = self._fulfill_result(caller, redemption_id, satoshi_amount, tx_info, proof, current_time)
        if not result.ok:
            log.warning(f"Fulfilment of {redemption_id[:16]}... rejected: {result.error.value}")
            return result.unwrap(SPVError if result.error in SPV_ERROR_KINDS else ReserveError)
        return result.value

    def fulfill_safe(self, caller: str, redemption_id: str, satoshi_amount: int, tx_info: TxInfo,
                     proof: SPVProof, current_time: int) -> bool:
        """Advisory variant of `fulfill` for relayers iterating many proofs"""
        try:
            result = self._fulfill_result(caller, redemption_id, satoshi_amount, tx_info, proof, current_time)
        except ReserveError as e:
            log.info(f"Fulfilment of {redemption_id[:16]}... failed: {e.kind.value}")
            return False
        if not result.ok:
            log.info(f"Fulfilment of {redemption_id[:16]}... failed: {result.error.value}")
        return result.ok

    def fulfill_trusted(self, caller: str, redemption_id: str, satoshi_amount: int, current_time: int) -> Redemption:
        """Record a payment already validated elsewhere, without a proof"""
        if not self.params.allow_trusted_fulfillment:
            raise ReserveError(ErrorKind.TRUSTED_FULFILLMENT_DISABLED, "Trusted fulfilment is disabled")
        self.authorizer.require(caller, Role.REDEMPTION_FULFILLER)

        redemption = self._get_pending(redemption_id).unwrap()
        with self.locks.for_reserve(redemption.reserve_id):
            redemption = self._get_pending(redemption_id).unwrap()
            self._check_payment(redemption, satoshi_amount).unwrap()
            self._mark_fulfilled(redemption, satoshi_amount, None, current_time, trusted=True)

        return redemption

    def _mark_fulfilled(self, redemption: Redemption, paid: int, tx_hash: Optional[bytes], current_time: int,
                        trusted: bool):
        redemption.status = RedemptionStatus.FULFILLED
        redemption.fulfilled_amount = paid
        redemption.fulfillment_tx_hash = tx_hash
        redemption.fulfilled_at = current_time
        redemption.trusted_fulfillment = trusted
        self._deactivate(redemption)
        log.info(f"Redemption {redemption.redemption_id[:16]}... fulfilled with {paid} sats"
                 f"{' (trusted)' if trusted else ''}")

    # Default

    def flag_default(self, caller: str, redemption_id: str, reason: str, current_time: int) -> Redemption:
        """Dispute arbiter marks an overdue redemption as defaulted"""
        self.authorizer.require(caller, Role.ARBITER)
        if not reason:
            raise ReserveError(ErrorKind.REASON_REQUIRED, "Default needs a reason")

        redemption = self._get_pending(redemption_id).unwrap()
        with self.locks.for_reserve(redemption.reserve_id):
            redemption = self._get_pending(redemption_id).unwrap()
            if current_time <= redemption.deadline:
                raise ReserveError(
                    ErrorKind.REDEMPTION_NOT_TIMED_OUT,
                    f"Deadline {redemption.deadline} not reached at {current_time}")

            redemption.status = RedemptionStatus.DEFAULTED
            redemption.default_reason = reason
            redemption.defaulted_at = current_time
            self._deactivate(redemption)

        log.warning(f"Redemption {redemption_id[:16]}... of {redemption.reserve_id} defaulted: {reason}")
        return redemption

    def _deactivate(self, redemption: Redemption):
        self._active_by_reserve.get(redemption.reserve_id, set()).discard(redemption.redemption_id)
        self._active_by_wallet.get(redemption.wallet, set()).discard(redemption.redemption_id)

    # Queries

    def get_redemption(self, redemption_id: str) -> Redemption:
        redemption = self._redemptions.get(redemption_id)
        if redemption is None:
            raise ReserveError(ErrorKind.REDEMPTION_NOT_FOUND, redemption_id)
        return redemption

    def get_active_redemptions(self, reserve_id: str) -> List[Redemption]:
        return [self._redemptions[i] for i in sorted(self._active_by_reserve.get(reserve_id, set()))]

    def has_unfulfilled_redemptions(self, reserve_id: str) -> bool:
        return bool(self._active_by_reserve.get(reserve_id))

    def wallet_has_unfulfilled(self, wallet: str) -> bool:
        return bool(self._active_by_wallet.get(wallet))

    def is_timed_out(self, redemption_id: str, current_time: int) -> bool:
        return self.get_redemption(redemption_id).is_timed_out(current_time)

    def get_timed_out_redemptions(self, current_time: int) -> List[Redemption]:
        return [r for r in self._redemptions.values() if r.is_timed_out(current_time)]
