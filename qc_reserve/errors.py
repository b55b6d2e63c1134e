"""
Failure kinds and the tagged result shared by strict and safe call paths
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    # Generic
    NOT_AUTHORIZED = "NotAuthorized"
    INVALID_AMOUNT = "InvalidAmount"
    INVALID_PARAMETERS = "InvalidParameters"
    MISMATCHED_ARRAYS = "MismatchedArrays"

    # Bitcoin primitives / SPV
    BAD_VARINT = "BadVarInt"
    BAD_INPUT_VECTOR = "BadInputVector"
    BAD_OUTPUT_VECTOR = "BadOutputVector"
    PROOF_LENGTH_MISMATCH = "ProofLengthMismatch"
    INVALID_HEADERS_LENGTH = "InvalidHeadersLength"
    MERKLE_PROOF_INVALID = "MerkleProofInvalid"
    COINBASE_PROOF_INVALID = "CoinbaseProofInvalid"
    DIFFICULTY_MISMATCH = "DifficultyMismatch"
    INVALID_HEADER_CHAIN = "InvalidHeaderChain"
    INSUFFICIENT_HEADER_WORK = "InsufficientHeaderWork"
    INSUFFICIENT_ACCUMULATED_WORK = "InsufficientAccumulatedWork"

    # Address codec
    INVALID_ADDRESS_LENGTH = "InvalidAddressLength"
    INVALID_ADDRESS_PREFIX = "InvalidAddressPrefix"
    INVALID_ADDRESS_FORMAT = "InvalidAddressFormat"

    # Reserve ledger
    RESERVE_NOT_FOUND = "ReserveNotFound"
    RESERVE_ALREADY_REGISTERED = "ReserveAlreadyRegistered"
    RESERVE_NOT_ACTIVE = "ReserveNotActive"
    RESERVE_EMERGENCY_PAUSED = "ReserveEmergencyPaused"
    RESERVE_NOT_EMERGENCY_PAUSED = "ReserveNotEmergencyPaused"
    INVALID_STATUS_TRANSITION = "InvalidStatusTransition"
    INVALID_MINTING_CAP = "InvalidMintingCap"
    NEW_CAP_MUST_BE_HIGHER = "NewCapMustBeHigher"
    MINTING_CAP_EXCEEDED = "MintingCapExceeded"
    INSUFFICIENT_BACKING = "InsufficientBacking"
    INSUFFICIENT_MINTED = "InsufficientMinted"
    STALE_BACKING = "StaleBacking"
    WALLET_ALREADY_REGISTERED = "WalletAlreadyRegistered"
    WALLET_NOT_REGISTERED = "WalletNotRegistered"
    WALLET_HAS_PENDING_REDEMPTIONS = "WalletHasPendingRedemptions"
    WALLET_CONTROL_NOT_PROVEN = "WalletControlNotProven"
    TOKEN_OPERATION_FAILED = "TokenOperationFailed"

    # Reserve oracle / sync
    ATTESTATION_ROUND_EXPIRED = "AttestationRoundExpired"
    SIGNATURE_VERIFICATION_FAILED = "SignatureVerificationFailed"
    NO_ORACLE_DATA = "NoOracleData"
    SYNC_TOO_FREQUENT = "SyncTooFrequent"
    JUSTIFICATION_REQUIRED = "JustificationRequired"

    # Redemption
    REDEMPTION_BELOW_MINIMUM = "RedemptionBelowMinimum"
    REDEMPTION_NOT_FOUND = "RedemptionNotFound"
    REDEMPTION_NOT_PENDING = "RedemptionNotPending"
    REDEMPTION_NOT_TIMED_OUT = "RedemptionNotTimedOut"
    PAYMENT_AMOUNT_MISMATCH = "PaymentAmountMismatch"
    PAYMENT_BELOW_DUST = "PaymentBelowDust"
    INSUFFICIENT_PAYMENT = "InsufficientPayment"
    TRANSACTION_ALREADY_USED = "TransactionAlreadyUsed"
    TRUSTED_FULFILLMENT_DISABLED = "TrustedFulfillmentDisabled"
    REASON_REQUIRED = "ReasonRequired"

    # Watchdog
    PROPOSAL_NOT_FOUND = "ProposalNotFound"
    PROPOSAL_ALREADY_EXECUTED = "ProposalAlreadyExecuted"
    PROPOSAL_NOT_APPROVED = "ProposalNotApproved"
    PROPOSAL_EXPIRED = "ProposalExpired"
    VOTING_ENDED = "VotingEnded"
    VOTING_NOT_ENDED = "VotingNotEnded"
    ALREADY_VOTED = "AlreadyVoted"
    DUPLICATE_REPORT = "DuplicateReport"
    NOT_OBJECTIVE_VIOLATION = "NotObjectiveViolation"
    VIOLATION_NOT_FOUND = "ViolationNotFound"
    ESCALATION_DELAY_NOT_REACHED = "EscalationDelayNotReached"


class ReserveError(ValueError):
    """Raised by strict operations; `kind` names the failed precondition"""

    def __init__(self, kind: ErrorKind, message: str = ""):
        self.kind = kind
        self.message = message or kind.value
        super().__init__(f"{kind.value}: {self.message}")


class SPVError(ReserveError):
    """Proof verification failure"""


class AddressError(ReserveError):
    """Bitcoin address could not be decoded"""


@dataclass
class Result:
    """Tagged outcome of a core check: either a value or an error kind"""
    ok: bool
    value: Any = None
    error: Optional[ErrorKind] = None
    message: str = ""

    @classmethod
    def success(cls, value: Any = None) -> 'Result':
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str = "") -> 'Result':
        return cls(ok=False, error=kind, message=message or kind.value)

    def unwrap(self, error_cls: type = ReserveError) -> Any:
        """Return the value or raise `error_cls` with the recorded kind"""
        if not self.ok:
            raise error_cls(self.error, self.message)
        return self.value

    def value_or(self, default: Any) -> Any:
        return self.value if self.ok else default
