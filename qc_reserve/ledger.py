import logging
import threading
from typing import Dict, List, Optional

from .auth import Authorizer, Role
from .bitcoin.address import decode_address
from .config import SystemParameters
from .errors import ErrorKind, ReserveError
from .locks import ReserveLocks
from .reserves import ReserveAccount, ReserveStatus, StatusChange, is_valid_transition
from .token import InMemoryToken

log = logging.getLogger(__name__)


class ReserveLedger:
    """Per-reserve backing and minted accounting

    Every mutation of a reserve runs under that reserve's lock and checks all
    preconditions before touching state. The token capability is called
    before the counters move, so a failed mint or burn leaves the ledger as it
    was.
    """

    def __init__(self, token: InMemoryToken, authorizer: Authorizer,
                 params: SystemParameters = None, locks: ReserveLocks = None):
        self.token = token
        self.authorizer = authorizer
        self.params = params or SystemParameters.mainnet()
        self.locks = locks or ReserveLocks()
        self._accounts: Dict[str, ReserveAccount] = {}
        self._wallet_owner: Dict[str, str] = {}
        self._registry_lock = threading.Lock()
        self._total_lock = threading.Lock()
        self.total_minted = 0

    # Registration

    def authorize(self, caller: str, reserve_id: str, minting_cap: int, current_time: int = None) -> ReserveAccount:
        """Register a reserve holder with its minting cap"""
        self.authorizer.require(caller, Role.REGISTRAR)
        if not reserve_id:
            raise ReserveError(ErrorKind.INVALID_PARAMETERS, "Reserve id required")
        if minting_cap <= 0:
            raise ReserveError(ErrorKind.INVALID_MINTING_CAP, f"Minting cap must be positive, got {minting_cap}")

        with self._registry_lock:
            if reserve_id in self._accounts:
                raise ReserveError(ErrorKind.RESERVE_ALREADY_REGISTERED, reserve_id)
            account = ReserveAccount(reserve_id=reserve_id, minting_cap=minting_cap, registered_at=current_time)
            self._accounts[reserve_id] = account

        log.info(f"Reserve {reserve_id} authorized with cap {minting_cap}")
        return account

    def get_account(self, reserve_id: str) -> ReserveAccount:
        account = self._accounts.get(reserve_id)
        if account is None:
            raise ReserveError(ErrorKind.RESERVE_NOT_FOUND, reserve_id)
        return account

    def has_reserve(self, reserve_id: str) -> bool:
        return reserve_id in self._accounts

    def reserve_ids(self) -> List[str]:
        return list(self._accounts)

    def increase_minting_cap(self, caller: str, reserve_id: str, new_cap: int):
        self.authorizer.require(caller, Role.REGISTRAR)
        with self.locks.for_reserve(reserve_id):
            account = self.get_account(reserve_id)
            if new_cap <= account.minting_cap:
                raise ReserveError(ErrorKind.NEW_CAP_MUST_BE_HIGHER, f"{new_cap} <= {account.minting_cap}")
            account.minting_cap = new_cap
        log.info(f"Reserve {reserve_id} minting cap raised to {new_cap}")

    # Minting and redemption

    def mint(self, caller: str, reserve_id: str, to: str, amount: int, current_time: Optional[int] = None) -> int:
        """Mint against a reserve's backing; returns the reserve's new minted total

        When `current_time` is given, backing older than `max_staleness` is
        refused.
        """
        self.authorizer.require(caller, Role.MINTER)
        if amount <= 0:
            raise ReserveError(ErrorKind.INVALID_AMOUNT, "Mint amount must be positive")

        with self.locks.for_reserve(reserve_id):
            account = self.get_account(reserve_id)

            if account.emergency_paused:
                raise ReserveError(ErrorKind.RESERVE_EMERGENCY_PAUSED, reserve_id)
            if account.status != ReserveStatus.ACTIVE:
                raise ReserveError(ErrorKind.RESERVE_NOT_ACTIVE, f"{reserve_id} is {account.status.value}")
            if current_time is not None and self._is_stale(account, current_time):
                raise ReserveError(ErrorKind.STALE_BACKING, f"Backing of {reserve_id} is older than {self.params.max_staleness}s")

            new_minted = account.minted + amount
            if new_minted > account.minting_cap:
                raise ReserveError(
                    ErrorKind.MINTING_CAP_EXCEEDED,
                    f"Minting {amount} would reach {new_minted}, cap is {account.minting_cap}")
            if account.backing < new_minted:
                raise ReserveError(
                    ErrorKind.INSUFFICIENT_BACKING,
                    f"Minting {amount} would reach {new_minted}, backing is {account.backing}")

            self.token.mint(to, amount)
            account.minted = new_minted
            with self._total_lock:
                self.total_minted += amount

        log.info(f"Minted {amount} against {reserve_id} to {to}; minted now {new_minted}")
        return new_minted

    def redeem(self, caller: str, reserve_id: str, holder: str, amount: int) -> int:
        """Burn `holder`'s tokens against a reserve; returns the new minted total"""
        if caller != holder:
            self.authorizer.require(caller, Role.MINTER)
        if amount <= 0:
            raise ReserveError(ErrorKind.INVALID_AMOUNT, "Redeem amount must be positive")

        with self.locks.for_reserve(reserve_id):
            account = self.get_account(reserve_id)

            if account.emergency_paused:
                raise ReserveError(ErrorKind.RESERVE_EMERGENCY_PAUSED, reserve_id)
            if not account.can_redeem():
                raise ReserveError(ErrorKind.RESERVE_NOT_ACTIVE, f"{reserve_id} is {account.status.value}")
            if account.minted < amount:
                raise ReserveError(
                    ErrorKind.INSUFFICIENT_MINTED,
                    f"{reserve_id} has {account.minted} minted, cannot redeem {amount}")

            self.token.burn(holder, amount)
            account.minted -= amount
            with self._total_lock:
                self.total_minted -= amount
            new_minted = account.minted

        log.info(f"Redeemed {amount} from {holder} against {reserve_id}; minted now {new_minted}")
        return new_minted

    # Oracle sync path

    def set_backing(self, reserve_id: str, new_backing: int, current_time: Optional[int] = None):
        """Record attested backing without checking the mint invariant

        A backing below the minted amount blocks further minting until a later
        update restores it.
        """
        if new_backing < 0:
            raise ReserveError(ErrorKind.INVALID_AMOUNT, "Backing cannot be negative")

        with self.locks.for_reserve(reserve_id):
            account = self.get_account(reserve_id)
            previous = account.backing
            account.backing = new_backing
            account.backing_updated_at = current_time

            if account.minting_disabled:
                log.warning(
                    f"Reserve {reserve_id} backing {new_backing} is below minted {account.minted}; minting disabled")

        log.info(f"Reserve {reserve_id} backing {previous} -> {new_backing}")

    def _is_stale(self, account: ReserveAccount, current_time: int) -> bool:
        if account.backing_updated_at is None:
            return True
        return current_time - account.backing_updated_at > self.params.max_staleness

    # Status

    def set_status(self, reserve_id: str, new_status: ReserveStatus, reason: str, current_time: Optional[int] = None):
        """Apply a validated status transition (watchdog and governance path)"""
        if new_status == ReserveStatus.EMERGENCY_PAUSED:
            raise ReserveError(ErrorKind.INVALID_STATUS_TRANSITION, "Emergency pause is set through escalation")

        with self.locks.for_reserve(reserve_id):
            account = self.get_account(reserve_id)
            if not is_valid_transition(account.status, new_status):
                raise ReserveError(
                    ErrorKind.INVALID_STATUS_TRANSITION,
                    f"{account.status.value} -> {new_status.value} not allowed")

            account.status_history.append(StatusChange(account.status, new_status, reason, current_time))
            old_status = account.status
            account.status = new_status

        log.info(f"Reserve {reserve_id} status {old_status.value} -> {new_status.value} ({reason})")

    def self_pause(self, caller: str, reserve_id: str, current_time: Optional[int] = None):
        """A reserve holder pausing its own minting"""
        if caller != reserve_id:
            raise ReserveError(ErrorKind.NOT_AUTHORIZED, "Only the reserve holder can self-pause")
        self.set_status(reserve_id, ReserveStatus.SELF_PAUSED, "self_pause", current_time)

    def resume(self, caller: str, reserve_id: str, current_time: Optional[int] = None):
        if caller != reserve_id:
            raise ReserveError(ErrorKind.NOT_AUTHORIZED, "Only the reserve holder can resume")
        account = self.get_account(reserve_id)
        if account.status != ReserveStatus.SELF_PAUSED:
            raise ReserveError(ErrorKind.INVALID_STATUS_TRANSITION, f"{reserve_id} is not self-paused")
        self.set_status(reserve_id, ReserveStatus.ACTIVE, "resume", current_time)

    def set_emergency_pause(self, reserve_id: str, paused: bool, reason: str):
        with self.locks.for_reserve(reserve_id):
            account = self.get_account(reserve_id)
            if not paused and not account.emergency_paused:
                raise ReserveError(ErrorKind.RESERVE_NOT_EMERGENCY_PAUSED, reserve_id)
            account.emergency_paused = paused

        if paused:
            log.warning(f"Reserve {reserve_id} emergency paused: {reason}")
        else:
            log.info(f"Reserve {reserve_id} emergency pause cleared: {reason}")

    def is_operational(self, reserve_id: str) -> bool:
        return self.get_account(reserve_id).can_mint()

    # Wallets

    def register_wallet(self, caller: str, reserve_id: str, wallet_address: str):
        """Attach a Bitcoin wallet to a reserve"""
        if caller != reserve_id:
            self.authorizer.require(caller, Role.REGISTRAR)
        decode_address(wallet_address, self.params.network)

        with self.locks.for_reserve(reserve_id):
            account = self.get_account(reserve_id)
            with self._registry_lock:
                if wallet_address in self._wallet_owner:
                    raise ReserveError(
                        ErrorKind.WALLET_ALREADY_REGISTERED,
                        f"{wallet_address} belongs to {self._wallet_owner[wallet_address]}")
                self._wallet_owner[wallet_address] = reserve_id
            account.wallets.add(wallet_address)

        log.info(f"Wallet {wallet_address} registered to {reserve_id}")

    def deregister_wallet(self, caller: str, reserve_id: str, wallet_address: str):
        if caller != reserve_id:
            self.authorizer.require(caller, Role.REGISTRAR)

        with self.locks.for_reserve(reserve_id):
            account = self.get_account(reserve_id)
            if wallet_address not in account.wallets:
                raise ReserveError(ErrorKind.WALLET_NOT_REGISTERED, f"{wallet_address} not registered to {reserve_id}")
            account.wallets.discard(wallet_address)
            with self._registry_lock:
                self._wallet_owner.pop(wallet_address, None)

        log.info(f"Wallet {wallet_address} deregistered from {reserve_id}")

    def is_wallet_registered(self, reserve_id: str, wallet_address: str) -> bool:
        return self._wallet_owner.get(wallet_address) == reserve_id

    # Audit

    def check_invariants(self) -> List[str]:
        """Describe every violated accounting invariant (empty when healthy)"""
        violations = []
        total = 0
        for account in list(self._accounts.values()):
            total += account.minted
            if account.backing < account.minted:
                violations.append(f"{account.reserve_id}: backing {account.backing} < minted {account.minted}")
            if account.minted > account.minting_cap:
                violations.append(f"{account.reserve_id}: minted {account.minted} > cap {account.minting_cap}")
        if total != self.total_minted:
            violations.append(f"total minted {self.total_minted} != sum of reserves {total}")
        return violations
