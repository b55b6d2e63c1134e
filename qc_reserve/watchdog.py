"""
Watchdog consensus for reserve status changes, the lighter emergency
escalation path that freezes a reserve once enough independent critical
reports arrive inside a rolling window, and permissionless enforcement of
violations anyone can check against oracle data
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .auth import Authorizer, Role
from .config import ExecutionPolicy, SystemParameters
from .errors import ErrorKind, ReserveError
from .ledger import ReserveLedger
from .oracle import ReserveOracle
from .reserves import ReserveStatus

log = logging.getLogger(__name__)


class ProposalStatus(Enum):
    VOTING = "voting"
    APPROVED = "approved"
    EXPIRED = "expired"
    EXECUTED = "executed"


@dataclass
class StatusChangeAction:
    reserve_id: str
    new_status: ReserveStatus
    reason: str


@dataclass
class WatchdogProposal:
    proposal_id: int
    proposer: str
    action: StatusChangeAction
    created_at: int
    voting_ends_at: int
    voters: List[str] = field(default_factory=list)
    executed: bool = False
    executed_at: Optional[int] = None

    @property
    def votes(self) -> int:
        return len(self.voters)

    def status(self, current_time: int, quorum: int) -> ProposalStatus:
        if self.executed:
            return ProposalStatus.EXECUTED
        if self.votes >= quorum:
            return ProposalStatus.APPROVED
        if current_time > self.voting_ends_at:
            return ProposalStatus.EXPIRED
        return ProposalStatus.VOTING


class WatchdogConsensus:
    """Proposal, vote and execute workflow for reserve status changes"""

    def __init__(self, ledger: ReserveLedger, authorizer: Authorizer, params: SystemParameters = None):
        self.ledger = ledger
        self.authorizer = authorizer
        self.params = params or ledger.params
        self.proposals: Dict[int, WatchdogProposal] = {}
        self._proposal_counter = 0
        self._lock = threading.Lock()

    def propose(self, caller: str, reserve_id: str, new_status: ReserveStatus, reason: str,
                current_time: int) -> int:
        """Open a status-change proposal; the proposer's vote is counted"""
        self.authorizer.require(caller, Role.WATCHDOG)
        self.ledger.get_account(reserve_id)
        if new_status == ReserveStatus.EMERGENCY_PAUSED:
            raise ReserveError(ErrorKind.INVALID_STATUS_TRANSITION, "Emergency pause goes through critical reports")
        if not reason:
            raise ReserveError(ErrorKind.REASON_REQUIRED, "Proposal needs a reason")

        with self._lock:
            self._proposal_counter += 1
            proposal = WatchdogProposal(
                proposal_id=self._proposal_counter,
                proposer=caller,
                action=StatusChangeAction(reserve_id, new_status, reason),
                created_at=current_time,
                voting_ends_at=current_time + self.params.voting_period,
                voters=[caller]
            )
            self.proposals[proposal.proposal_id] = proposal

        log.info(f"Proposal {proposal.proposal_id} by {caller}: {reserve_id} -> {new_status.value} ({reason})")
        return proposal.proposal_id

    def _get(self, proposal_id: int) -> WatchdogProposal:
        proposal = self.proposals.get(proposal_id)
        if proposal is None:
            raise ReserveError(ErrorKind.PROPOSAL_NOT_FOUND, str(proposal_id))
        return proposal

    def vote(self, caller: str, proposal_id: int, current_time: int) -> int:
        """Add a distinct watchdog's vote; returns the vote count"""
        self.authorizer.require(caller, Role.WATCHDOG)

        with self._lock:
            proposal = self._get(proposal_id)
            if proposal.executed:
                raise ReserveError(ErrorKind.PROPOSAL_ALREADY_EXECUTED, str(proposal_id))
            if current_time > proposal.voting_ends_at:
                raise ReserveError(ErrorKind.VOTING_ENDED, f"Voting closed at {proposal.voting_ends_at}")
            if caller in proposal.voters:
                raise ReserveError(ErrorKind.ALREADY_VOTED, f"{caller} already voted on {proposal_id}")

            proposal.voters.append(caller)
            votes = proposal.votes

        log.info(f"Proposal {proposal_id} vote from {caller}: {votes}/{self.params.watchdog_quorum}")
        return votes

    def execute(self, caller: str, proposal_id: int, current_time: int) -> StatusChangeAction:
        """Apply an approved proposal's status change exactly once"""
        self.authorizer.require(caller, Role.WATCHDOG)

        with self._lock:
            proposal = self._get(proposal_id)
            if proposal.executed:
                raise ReserveError(ErrorKind.PROPOSAL_ALREADY_EXECUTED, str(proposal_id))
            if proposal.votes < self.params.watchdog_quorum:
                raise ReserveError(
                    ErrorKind.PROPOSAL_NOT_APPROVED,
                    f"{proposal.votes} votes, quorum is {self.params.watchdog_quorum}")

            if self.params.execution_policy == ExecutionPolicy.WITHIN_VOTING_PERIOD:
                if current_time > proposal.voting_ends_at:
                    raise ReserveError(ErrorKind.PROPOSAL_EXPIRED, f"Voting closed at {proposal.voting_ends_at}")
            elif current_time <= proposal.voting_ends_at:
                raise ReserveError(ErrorKind.VOTING_NOT_ENDED, f"Voting open until {proposal.voting_ends_at}")

            action = proposal.action
            self.ledger.set_status(action.reserve_id, action.new_status, action.reason, current_time)
            proposal.executed = True
            proposal.executed_at = current_time

        log.info(f"Proposal {proposal_id} executed by {caller}")
        return action

    def get_proposal(self, proposal_id: int) -> Optional[WatchdogProposal]:
        return self.proposals.get(proposal_id)

    def get_active_proposals(self, current_time: int) -> List[WatchdogProposal]:
        quorum = self.params.watchdog_quorum
        return [p for p in self.proposals.values()
                if p.status(current_time, quorum) in (ProposalStatus.VOTING, ProposalStatus.APPROVED)]


@dataclass
class CriticalReport:
    reporter: str
    reserve_id: str
    reason: str
    reported_at: int


class PauseEscalation:
    """Freezes a reserve once enough distinct watchdogs report it"""

    def __init__(self, ledger: ReserveLedger, authorizer: Authorizer, params: SystemParameters = None):
        self.ledger = ledger
        self.authorizer = authorizer
        self.params = params or ledger.params
        self.locks = ledger.locks
        self._reports: Dict[str, List[CriticalReport]] = {}

    def _live_reports(self, reserve_id: str, current_time: int) -> List[CriticalReport]:
        window_start = current_time - self.params.emergency_report_window
        live = [r for r in self._reports.get(reserve_id, []) if r.reported_at > window_start]
        self._reports[reserve_id] = live
        return live

    def report_critical(self, caller: str, reserve_id: str, reason: str, current_time: int) -> bool:
        """File a critical report; returns True when the reserve is (now) emergency paused"""
        self.authorizer.require(caller, Role.WATCHDOG)
        if not reason:
            raise ReserveError(ErrorKind.REASON_REQUIRED, "Report needs a reason")

        with self.locks.for_reserve(reserve_id):
            account = self.ledger.get_account(reserve_id)
            live = self._live_reports(reserve_id, current_time)
            if any(r.reporter == caller for r in live):
                raise ReserveError(ErrorKind.DUPLICATE_REPORT, f"{caller} already reported {reserve_id} in this window")

            live.append(CriticalReport(caller, reserve_id, reason, current_time))
            log.warning(f"Critical report {len(live)}/{self.params.emergency_report_threshold} "
                        f"against {reserve_id} from {caller}: {reason}")

            if account.emergency_paused:
                return True
            if len(live) >= self.params.emergency_report_threshold:
                self.ledger.set_emergency_pause(reserve_id, True, f"{len(live)} critical reports")
                return True
            return False

    def emergency_pause(self, caller: str, reserve_id: str, reason: str):
        """Governance freezes a reserve directly"""
        self.authorizer.require(caller, Role.GOVERNANCE)
        self.ledger.set_emergency_pause(reserve_id, True, reason)

    def clear_emergency_pause(self, caller: str, reserve_id: str):
        """Restore operability; the reserve's status is left as it was"""
        self.authorizer.require(caller, Role.GOVERNANCE)
        with self.locks.for_reserve(reserve_id):
            self.ledger.set_emergency_pause(reserve_id, False, f"cleared by {caller}")
            self._reports.pop(reserve_id, None)

    def get_report_count(self, reserve_id: str, current_time: int) -> int:
        with self.locks.for_reserve(reserve_id):
            return len(self._live_reports(reserve_id, current_time))


class ViolationReason(Enum):
    INSUFFICIENT_RESERVES = "INSUFFICIENT_RESERVES"
    STALE_ATTESTATIONS = "STALE_ATTESTATIONS"


SUSTAINED_RESERVE_VIOLATION = "SUSTAINED_RESERVE_VIOLATION"


class WatchdogEnforcer:
    """Moves a reserve under review when oracle data shows an objective violation

    Anyone may enforce. An insufficient-reserves enforcement also starts an
    escalation timer: if the reserve is still under review once
    `escalation_delay` has passed, `check_escalation` emergency-pauses it.
    """

    def __init__(self, ledger: ReserveLedger, oracle: ReserveOracle, params: SystemParameters = None):
        self.ledger = ledger
        self.oracle = oracle
        self.params = params or ledger.params
        self.locks = ledger.locks
        self.violation_timestamps: Dict[str, int] = {}

    @staticmethod
    def _reason(reason_code: Union[str, ViolationReason]) -> Optional[ViolationReason]:
        if isinstance(reason_code, ViolationReason):
            return reason_code
        try:
            return ViolationReason(reason_code)
        except ValueError:
            return None

    def check_violation(self, reserve_id: str, reason_code: Union[str, ViolationReason],
                        current_time: int) -> Tuple[bool, str]:
        """Whether the violation holds now, with the reason when it does not"""
        reason = self._reason(reason_code)
        if reason is None:
            return False, "Not an objective violation"

        account = self.ledger.get_account(reserve_id)
        balance, stale = self.oracle.get_reserve_balance_and_staleness(reserve_id, current_time)

        if reason == ViolationReason.STALE_ATTESTATIONS:
            return (True, "") if stale else (False, "Attestations are fresh")

        if stale:
            return False, "Reserves are stale, cannot determine violation"
        if balance * 100 < account.minted * self.params.min_collateral_ratio:
            return True, ""
        return False, "Reserves are sufficient"

    def batch_check_violations(self, reserve_ids: Iterable[str], reason_code: Union[str, ViolationReason],
                               current_time: int) -> List[str]:
        """Registered reserves from `reserve_ids` currently in violation, in order"""
        return [r for r in reserve_ids
                if self.ledger.has_reserve(r) and self.check_violation(r, reason_code, current_time)[0]]

    def enforce_objective_violation(self, caller: str, reserve_id: str, reason_code: Union[str, ViolationReason],
                                    current_time: int) -> Optional[int]:
        """Put a violating reserve under review; returns the escalation deadline if a timer started"""
        reason = self._reason(reason_code)
        if reason is None:
            raise ReserveError(ErrorKind.NOT_OBJECTIVE_VIOLATION, f"{reason_code} is not an objective violation")

        with self.locks.for_reserve(reserve_id):
            violated, detail = self.check_violation(reserve_id, reason, current_time)
            if not violated:
                log.info(f"Enforcement of {reason.value} on {reserve_id} by {caller} found nothing: {detail}")
                raise ReserveError(ErrorKind.VIOLATION_NOT_FOUND, detail)

            if self.ledger.get_account(reserve_id).status != ReserveStatus.UNDER_REVIEW:
                self.ledger.set_status(reserve_id, ReserveStatus.UNDER_REVIEW, reason.value, current_time)

            deadline = None
            if reason == ViolationReason.INSUFFICIENT_RESERVES:
                self.violation_timestamps[reserve_id] = current_time
                deadline = current_time + self.params.escalation_delay

        log.warning(f"Objective violation {reason.value} enforced on {reserve_id} by {caller}")
        return deadline

    def check_escalation(self, caller: str, reserve_id: str, current_time: int) -> bool:
        """Emergency-pause a reserve left under review past the escalation delay

        Returns False, clearing the timer, when the reserve has left review.
        """
        with self.locks.for_reserve(reserve_id):
            started = self.violation_timestamps.get(reserve_id)
            if started is None:
                raise ReserveError(ErrorKind.VIOLATION_NOT_FOUND, f"No escalation timer for {reserve_id}")

            account = self.ledger.get_account(reserve_id)
            if account.status != ReserveStatus.UNDER_REVIEW:
                del self.violation_timestamps[reserve_id]
                log.info(f"Escalation timer for {reserve_id} cleared by {caller}: status is {account.status.value}")
                return False

            if current_time < started + self.params.escalation_delay:
                raise ReserveError(
                    ErrorKind.ESCALATION_DELAY_NOT_REACHED,
                    f"Escalation possible from {started + self.params.escalation_delay}")

            if not account.emergency_paused:
                self.ledger.set_emergency_pause(reserve_id, True, SUSTAINED_RESERVE_VIOLATION)
            del self.violation_timestamps[reserve_id]

        log.warning(f"Reserve {reserve_id} escalated to emergency pause by {caller}")
        return True

    def clear_escalation_timer(self, caller: str, reserve_id: str) -> bool:
        """Drop the timer of a reserve that is no longer under review"""
        with self.locks.for_reserve(reserve_id):
            if reserve_id not in self.violation_timestamps:
                return False
            if self.ledger.get_account(reserve_id).status == ReserveStatus.UNDER_REVIEW:
                return False
            del self.violation_timestamps[reserve_id]

        log.info(f"Escalation timer for {reserve_id} cleared by {caller}")
        return True

    def get_escalation_deadline(self, reserve_id: str) -> Optional[int]:
        started = self.violation_timestamps.get(reserve_id)
        return None if started is None else started + self.params.escalation_delay
