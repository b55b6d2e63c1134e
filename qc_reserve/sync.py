import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .auth import Authorizer, Role
from .errors import ErrorKind, ReserveError
from .ledger import ReserveLedger
from .oracle import ReserveOracle

log = logging.getLogger(__name__)


@dataclass
class SyncItemResult:
    reserve_id: str
    success: bool
    backing: Optional[int] = None
    error: Optional[ErrorKind] = None


@dataclass
class BatchSyncReport:
    results: List[SyncItemResult] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    budget_exhausted: bool = False

    @property
    def succeeded(self) -> List[str]:
        return [r.reserve_id for r in self.results if r.success]

    @property
    def failed(self) -> List[str]:
        return [r.reserve_id for r in self.results if not r.success]


class BackingSynchronizer:
    """Pulls the oracle's last finalized balance into the ledger"""

    def __init__(self, oracle: ReserveOracle, ledger: ReserveLedger, authorizer: Authorizer):
        self.oracle = oracle
        self.ledger = ledger
        self.authorizer = authorizer
        self.params = ledger.params

    def sync_backing(self, caller: str, reserve_id: str, current_time: int) -> int:
        """Copy one reserve's oracle balance into the ledger; returns the new backing"""
        self.authorizer.require(caller, Role.SYNCER)
        return self._sync(reserve_id, current_time)

    def sync_backing_safe(self, caller: str, reserve_id: str, current_time: int) -> bool:
        try:
            self.sync_backing(caller, reserve_id, current_time)
            return True
        except ReserveError as e:
            log.info(f"Backing sync for {reserve_id} skipped: {e.kind.value}")
            return False

    def _sync(self, reserve_id: str, current_time: int) -> int:
        with self.ledger.locks.for_reserve(reserve_id):
            account = self.ledger.get_account(reserve_id)

            if (account.last_synced_at is not None
                    and current_time - account.last_synced_at < self.params.min_sync_interval):
                raise ReserveError(
                    ErrorKind.SYNC_TOO_FREQUENT,
                    f"{reserve_id} synced {current_time - account.last_synced_at}s ago")

            balance = self.oracle.get_reserve_balance(reserve_id)
            if balance is None:
                raise ReserveError(ErrorKind.NO_ORACLE_DATA, f"No finalized balance for {reserve_id}")
            amount, stale = self.oracle.get_reserve_balance_and_staleness(reserve_id, current_time)
            if stale:
                raise ReserveError(ErrorKind.STALE_BACKING, f"Oracle balance for {reserve_id} is stale")

            self.ledger.set_backing(reserve_id, amount, balance.updated_at)
            account.last_synced_at = current_time
            return amount

    def batch_sync(self, caller: str, reserve_ids: List[str], current_time: int,
                   budget: Optional[int] = None) -> BatchSyncReport:
        """Sync many reserves, stopping once the operation budget is spent

        Completed items are kept when the budget runs out; the remainder is
        listed in `skipped`.
        """
        self.authorizer.require(caller, Role.SYNCER)
        budget = budget if budget is not None else self.params.max_batch_operations

        report = BatchSyncReport()
        for position, reserve_id in enumerate(reserve_ids):
            if position >= budget:
                report.budget_exhausted = True
                report.skipped = list(reserve_ids[position:])
                log.warning(f"Batch sync budget of {budget} exhausted; {len(report.skipped)} reserves skipped")
                break

            try:
                backing = self._sync(reserve_id, current_time)
                report.results.append(SyncItemResult(reserve_id, True, backing=backing))
            except ReserveError as e:
                report.results.append(SyncItemResult(reserve_id, False, error=e.kind))

        return report
