"""
Reserve oracle: multi-attester consensus on each reserve's Bitcoin balance

Attestations for a reserve are collected in a round. Once the round holds
`consensus_threshold` submissions, the value backed by a strict majority of
them is finalized and pushed to the ledger. A round that outlives
`attestation_timeout` is discarded and the next submission opens a new one.
A dispute arbiter can overwrite the finalized value at any time.
"""

import hashlib
import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .auth import Authorizer, Role
from .bitcoin.keys import BitcoinKey
from .config import SystemParameters
from .errors import ErrorKind, ReserveError
from .ledger import ReserveLedger

log = logging.getLogger(__name__)


class RoundStatus(Enum):
    PENDING = "pending"
    FINALIZED = "finalized"
    EXPIRED = "expired"
    RESET = "reset"
    OVERRIDDEN = "overridden"


@dataclass
class Attestation:
    attester: str
    amount: int  # satoshis
    proof_hash: bytes
    submitted_at: int


@dataclass
class AttestationRound:
    round_id: int
    reserve_id: str
    opened_at: int
    deadline: int
    status: RoundStatus = RoundStatus.PENDING
    attestations: Dict[str, Attestation] = field(default_factory=dict)
    finalized_amount: Optional[int] = None
    closed_at: Optional[int] = None

    def is_expired(self, current_time: int) -> bool:
        return current_time > self.deadline

    def majority_amount(self) -> Optional[Tuple[int, int]]:
        """(amount, votes) held by a strict majority of submissions, if any"""
        if not self.attestations:
            return None
        tally = Counter(a.amount for a in self.attestations.values())
        amount, votes = tally.most_common(1)[0]
        if votes * 2 > len(self.attestations):
            return amount, votes
        return None


@dataclass
class ReserveBalance:
    amount: int
    updated_at: int
    round_id: Optional[int]


@dataclass
class OverrideRecord:
    reserve_id: str
    arbiter: str
    prior_amount: Optional[int]
    new_amount: int
    justification: str
    overridden_at: int


@dataclass
class SignedAttestation:
    """Attestation whose attester identity is its secp256k1 public key"""
    attester_pubkey: str
    reserve_id: str
    amount: int
    proof_hash: bytes
    signature: str

    @staticmethod
    def digest(reserve_id: str, amount: int, proof_hash: bytes) -> bytes:
        hasher = hashlib.sha256()
        hasher.update(b"QC_RESERVE_ATTESTATION_V1")
        hasher.update(reserve_id.encode())
        hasher.update(amount.to_bytes(16, 'big'))
        hasher.update(proof_hash)
        return hasher.digest()

    @classmethod
    def create(cls, key: BitcoinKey, reserve_id: str, amount: int, proof_hash: bytes) -> 'SignedAttestation':
        digest = cls.digest(reserve_id, amount, proof_hash)
        return cls(
            attester_pubkey=key.get_public_key_hex(),
            reserve_id=reserve_id,
            amount=amount,
            proof_hash=proof_hash,
            signature=key.sign_digest(digest)
        )

    def verify(self) -> bool:
        digest = self.digest(self.reserve_id, self.amount, self.proof_hash)
        return BitcoinKey.verify_digest(digest, self.signature, self.attester_pubkey)


@dataclass
class AttestationResult:
    round_id: int
    status: RoundStatus
    submissions: int
    finalized_amount: Optional[int] = None


@dataclass
class BatchItemResult:
    reserve_id: str
    success: bool
    error: Optional[ErrorKind] = None
    result: Optional[AttestationResult] = None


class ReserveOracle:
    """Collects attestations and finalizes reserve balances by majority"""

    def __init__(self, ledger: ReserveLedger, authorizer: Authorizer, params: SystemParameters = None):
        self.ledger = ledger
        self.authorizer = authorizer
        self.params = params or ledger.params
        self.locks = ledger.locks
        self._round_counter = 0
        self._open_rounds: Dict[str, AttestationRound] = {}
        self._rounds: Dict[int, AttestationRound] = {}
        self._balances: Dict[str, ReserveBalance] = {}
        self._overrides: List[OverrideRecord] = []

    def _open_round(self, reserve_id: str, current_time: int) -> AttestationRound:
        self._round_counter += 1
        attestation_round = AttestationRound(
            round_id=self._round_counter,
            reserve_id=reserve_id,
            opened_at=current_time,
            deadline=current_time + self.params.attestation_timeout
        )
        self._rounds[attestation_round.round_id] = attestation_round
        self._open_rounds[reserve_id] = attestation_round
        return attestation_round

    def _close_round(self, attestation_round: AttestationRound, status: RoundStatus, current_time: int):
        attestation_round.status = status
        attestation_round.closed_at = current_time
        self._open_rounds.pop(attestation_round.reserve_id, None)

    def submit_attestation(self, caller: str, reserve_id: str, amount: int, proof_hash: bytes,
                           current_time: int) -> AttestationResult:
        """Record an attester's claimed balance for a reserve"""
        self.authorizer.require(caller, Role.ATTESTER)
        return self._submit(caller, reserve_id, amount, proof_hash, current_time)

    def submit_signed_attestation(self, attestation: SignedAttestation, current_time: int) -> AttestationResult:
        """Verify the attester's signature, then record its submission"""
        if not attestation.verify():
            raise ReserveError(ErrorKind.SIGNATURE_VERIFICATION_FAILED, f"Bad signature from {attestation.attester_pubkey[:16]}...")
        return self.submit_attestation(
            attestation.attester_pubkey, attestation.reserve_id,
            attestation.amount, attestation.proof_hash, current_time)

    def _submit(self, attester: str, reserve_id: str, amount: int, proof_hash: bytes,
                current_time: int) -> AttestationResult:
        if amount < 0:
            raise ReserveError(ErrorKind.INVALID_AMOUNT, "Attested balance cannot be negative")

        with self.locks.for_reserve(reserve_id):
            self.ledger.get_account(reserve_id)

            attestation_round = self._open_rounds.get(reserve_id)
            if attestation_round is not None and attestation_round.is_expired(current_time):
                self._close_round(attestation_round, RoundStatus.EXPIRED, current_time)
                log.warning(
                    f"Attestation round {attestation_round.round_id} for {reserve_id} expired with "
                    f"{len(attestation_round.attestations)} submissions")
                raise ReserveError(
                    ErrorKind.ATTESTATION_ROUND_EXPIRED,
                    f"Round {attestation_round.round_id} closed at {attestation_round.deadline}")

            if attestation_round is None:
                attestation_round = self._open_round(reserve_id, current_time)

            attestation_round.attestations[attester] = Attestation(attester, amount, proof_hash, current_time)
            submissions = len(attestation_round.attestations)

            if submissions >= self.params.consensus_threshold:
                majority = attestation_round.majority_amount()
                if majority is not None:
                    return self._finalize(attestation_round, majority[0], current_time)
                log.info(f"Round {attestation_round.round_id} for {reserve_id} has {submissions} submissions but no majority")

            return AttestationResult(attestation_round.round_id, attestation_round.status, submissions)

    def _finalize(self, attestation_round: AttestationRound, amount: int, current_time: int) -> AttestationResult:
        reserve_id = attestation_round.reserve_id
        attestation_round.finalized_amount = amount
        self._close_round(attestation_round, RoundStatus.FINALIZED, current_time)
        self._balances[reserve_id] = ReserveBalance(amount, current_time, attestation_round.round_id)

        log.info(f"Consensus for {reserve_id} in round {attestation_round.round_id}: {amount} sats")
        self.ledger.set_backing(reserve_id, amount, current_time)

        return AttestationResult(
            attestation_round.round_id, RoundStatus.FINALIZED,
            len(attestation_round.attestations), amount)

    def batch_attest(self, caller: str, reserve_ids: List[str], amounts: List[int], proof_hash: bytes,
                     current_time: int) -> List[BatchItemResult]:
        """Submit one attestation per reserve; a bad item never blocks the rest"""
        self.authorizer.require(caller, Role.ATTESTER)
        if len(reserve_ids) != len(amounts):
            raise ReserveError(ErrorKind.MISMATCHED_ARRAYS, f"{len(reserve_ids)} reserves, {len(amounts)} amounts")

        results = []
        for reserve_id, amount in zip(reserve_ids, amounts):
            try:
                result = self._submit(caller, reserve_id, amount, proof_hash, current_time)
                results.append(BatchItemResult(reserve_id, True, result=result))
            except ReserveError as e:
                log.warning(f"Batch attestation for {reserve_id} failed: {e.kind.value}")
                results.append(BatchItemResult(reserve_id, False, error=e.kind))
        return results

    def override_attestation(self, caller: str, reserve_id: str, amount: int, justification: str,
                             current_time: int) -> OverrideRecord:
        """Dispute arbiter replaces the finalized balance unconditionally"""
        self.authorizer.require(caller, Role.ARBITER)
        if amount < 0:
            raise ReserveError(ErrorKind.INVALID_AMOUNT, "Balance cannot be negative")
        if not justification:
            raise ReserveError(ErrorKind.JUSTIFICATION_REQUIRED, "Override needs a justification")

        with self.locks.for_reserve(reserve_id):
            self.ledger.get_account(reserve_id)
            prior = self._balances.get(reserve_id)
            record = OverrideRecord(
                reserve_id=reserve_id,
                arbiter=caller,
                prior_amount=prior.amount if prior else None,
                new_amount=amount,
                justification=justification,
                overridden_at=current_time
            )

            pending = self._open_rounds.get(reserve_id)
            if pending is not None:
                self._close_round(pending, RoundStatus.OVERRIDDEN, current_time)

            self._balances[reserve_id] = ReserveBalance(amount, current_time, None)
            self._overrides.append(record)
            self.ledger.set_backing(reserve_id, amount, current_time)

        log.warning(f"Arbiter {caller} overrode {reserve_id}: {record.prior_amount} -> {amount} ({justification})")
        return record

    def reset_consensus(self, caller: str, reserve_id: str, current_time: int) -> bool:
        """Discard the open round; the last finalized balance is untouched"""
        self.authorizer.require(caller, Role.ARBITER)
        with self.locks.for_reserve(reserve_id):
            pending = self._open_rounds.get(reserve_id)
            if pending is None:
                return False
            self._close_round(pending, RoundStatus.RESET, current_time)
        log.info(f"Attestation round {pending.round_id} for {reserve_id} reset by {caller}")
        return True

    # Queries

    def get_reserve_balance(self, reserve_id: str) -> Optional[ReserveBalance]:
        return self._balances.get(reserve_id)

    def get_reserve_balance_and_staleness(self, reserve_id: str, current_time: int) -> Tuple[int, bool]:
        """Last finalized balance and whether it is older than max_staleness"""
        balance = self._balances.get(reserve_id)
        if balance is None:
            return 0, True
        return balance.amount, current_time - balance.updated_at > self.params.max_staleness

    def get_open_round(self, reserve_id: str) -> Optional[AttestationRound]:
        return self._open_rounds.get(reserve_id)

    def get_round(self, round_id: int) -> Optional[AttestationRound]:
        return self._rounds.get(round_id)

    def get_overrides(self, reserve_id: str = None) -> List[OverrideRecord]:
        return [o for o in self._overrides if reserve_id is None or o.reserve_id == reserve_id]
