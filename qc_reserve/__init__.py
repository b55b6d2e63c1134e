"""
Reserve-backed Bitcoin token accounting
Reserve ledger, attestation oracle, SPV-proven redemptions and watchdog controls
"""

from .auth import Authorizer, Role, RoleAuthorizer
from .config import SystemParameters, ExecutionPolicy
from .errors import ErrorKind, ReserveError, SPVError, AddressError, Result
from .ledger import ReserveLedger
from .oracle import ReserveOracle, SignedAttestation
from .redemption import RedemptionManager, Redemption, RedemptionStatus
from .reserves import ReserveAccount, ReserveStatus
from .sync import BackingSynchronizer
from .system import AccountControlSystem
from .token import InMemoryToken
from .watchdog import WatchdogConsensus, PauseEscalation, WatchdogEnforcer

__version__ = "0.1.0"
__all__ = [
    "Authorizer",
    "Role",
    "RoleAuthorizer",
    "SystemParameters",
    "ExecutionPolicy",
    "ErrorKind",
    "ReserveError",
    "SPVError",
    "AddressError",
    "Result",
    "ReserveLedger",
    "ReserveOracle",
    "SignedAttestation",
    "RedemptionManager",
    "Redemption",
    "RedemptionStatus",
    "ReserveAccount",
    "ReserveStatus",
    "BackingSynchronizer",
    "AccountControlSystem",
    "InMemoryToken",
    "WatchdogConsensus",
    "WatchdogEnforcer",
    "PauseEscalation"
]
