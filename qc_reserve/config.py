from dataclasses import dataclass, asdict, fields
from enum import Enum

DUST_THRESHOLD = 546  # satoshis

HOUR = 60 * 60
DAY = 24 * HOUR


class ExecutionPolicy(Enum):
    WITHIN_VOTING_PERIOD = "within_voting_period"
    AFTER_VOTING_PERIOD = "after_voting_period"


@dataclass
class SystemParameters:
    """Tunable parameters shared by every component"""

    network: str

    # Reserve oracle
    consensus_threshold: int
    attestation_timeout: int  # seconds
    max_staleness: int  # seconds
    min_sync_interval: int  # seconds
    max_batch_operations: int

    # Redemption
    redemption_timeout: int  # seconds
    min_redemption_amount: int  # satoshis
    dust_threshold: int  # satoshis
    payment_tolerance: int  # satoshis
    tx_proof_difficulty_factor: int
    allow_trusted_fulfillment: bool
    permissionless_fulfillment: bool

    # Watchdog consensus and escalation
    watchdog_quorum: int
    voting_period: int  # seconds
    execution_policy: ExecutionPolicy
    emergency_report_threshold: int
    emergency_report_window: int  # seconds

    # Objective violation enforcement
    min_collateral_ratio: int  # percent of minted that backing must cover
    escalation_delay: int  # seconds under review before an emergency pause

    def __post_init__(self):
        if isinstance(self.execution_policy, str):
            self.execution_policy = ExecutionPolicy(self.execution_policy)
        if self.network not in ("mainnet", "testnet", "regtest"):
            raise ValueError(f"Unknown network {self.network}")
        if self.consensus_threshold < 3 or self.consensus_threshold % 2 == 0:
            raise ValueError(
                f"Consensus threshold must be odd and at least 3, got {self.consensus_threshold}")
        for name in ("attestation_timeout", "max_staleness", "redemption_timeout",
                     "voting_period", "emergency_report_window", "escalation_delay"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.min_sync_interval < 0 or self.payment_tolerance < 0:
            raise ValueError("Intervals and tolerances cannot be negative")
        if self.max_batch_operations < 1:
            raise ValueError("Batch budget must allow at least one operation")
        if self.min_redemption_amount < self.dust_threshold:
            raise ValueError(
                f"Minimum redemption {self.min_redemption_amount} is below dust {self.dust_threshold}")
        if self.tx_proof_difficulty_factor < 1:
            raise ValueError("Difficulty factor must be at least 1")
        if self.watchdog_quorum < 1 or self.emergency_report_threshold < 1:
            raise ValueError("Quorum and report threshold must be at least 1")
        if self.min_collateral_ratio < 100:
            raise ValueError(f"Collateral ratio must be at least 100%, got {self.min_collateral_ratio}")

    @classmethod
    def mainnet(cls) -> 'SystemParameters':
        """Production parameters"""
        return cls(
            network="mainnet",
            consensus_threshold=3,
            attestation_timeout=6 * HOUR,
            max_staleness=DAY,
            min_sync_interval=5 * 60,
            max_batch_operations=50,
            redemption_timeout=7 * DAY,
            min_redemption_amount=100_000,  # 0.001 BTC
            dust_threshold=DUST_THRESHOLD,
            payment_tolerance=0,
            tx_proof_difficulty_factor=6,
            allow_trusted_fulfillment=False,
            permissionless_fulfillment=True,
            watchdog_quorum=3,
            voting_period=2 * HOUR,
            execution_policy=ExecutionPolicy.WITHIN_VOTING_PERIOD,
            emergency_report_threshold=3,
            emergency_report_window=HOUR,
            min_collateral_ratio=100,
            escalation_delay=45 * 60,
        )

    @classmethod
    def testing(cls) -> 'SystemParameters':
        """Regtest parameters with short proofs and the trusted path enabled"""
        return cls(
            network="regtest",
            consensus_threshold=3,
            attestation_timeout=2 * HOUR,
            max_staleness=DAY,
            min_sync_interval=60,
            max_batch_operations=10,
            redemption_timeout=7 * DAY,
            min_redemption_amount=DUST_THRESHOLD,
            dust_threshold=DUST_THRESHOLD,
            payment_tolerance=0,
            tx_proof_difficulty_factor=1,
            allow_trusted_fulfillment=True,
            permissionless_fulfillment=True,
            watchdog_quorum=3,
            voting_period=2 * HOUR,
            execution_policy=ExecutionPolicy.WITHIN_VOTING_PERIOD,
            emergency_report_threshold=3,
            emergency_report_window=HOUR,
            min_collateral_ratio=100,
            escalation_delay=45 * 60,
        )

    @classmethod
    def from_dict(cls, data: dict) -> 'SystemParameters':
        """Build parameters from a mapping, starting from the mainnet preset"""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown parameters: {sorted(unknown)}")
        merged = asdict(cls.mainnet())
        merged.update(data)
        return cls(**merged)

    def to_dict(self) -> dict:
        data = asdict(self)
        data['execution_policy'] = self.execution_policy.value
        return data
