import unittest

from qc_reserve.auth import Role, RoleAuthorizer
from qc_reserve.config import DAY, ExecutionPolicy, HOUR, SystemParameters
from qc_reserve.errors import ErrorKind, ReserveError
from qc_reserve.ledger import ReserveLedger
from qc_reserve.oracle import ReserveOracle
from qc_reserve.reserves import ReserveStatus
from qc_reserve.token import InMemoryToken
from qc_reserve.watchdog import (
    PauseEscalation, ProposalStatus, ViolationReason, WatchdogConsensus, WatchdogEnforcer,
)

NOW = 1_700_000_000


class WatchdogTestCase(unittest.TestCase):

    params = SystemParameters.testing()

    def setUp(self):
        """Set up test fixtures"""
        self.authorizer = RoleAuthorizer({
            'registrar': [Role.REGISTRAR],
            'governance': [Role.GOVERNANCE],
            'w1': [Role.WATCHDOG],
            'w2': [Role.WATCHDOG],
            'w3': [Role.WATCHDOG],
            'w4': [Role.WATCHDOG]
        })
        self.ledger = ReserveLedger(InMemoryToken(), self.authorizer, self.params)
        self.ledger.authorize('registrar', 'reserve-1', 1_000_000, NOW)

    def assertKind(self, kind, func, *args):
        with self.assertRaises(ReserveError) as ctx:
            func(*args)
        self.assertEqual(ctx.exception.kind, kind)


class TestWatchdogConsensus(WatchdogTestCase):

    def setUp(self):
        super().setUp()
        self.consensus = WatchdogConsensus(self.ledger, self.authorizer)

    def approved_proposal(self, new_status=ReserveStatus.UNDER_REVIEW):
        proposal_id = self.consensus.propose('w1', 'reserve-1', new_status, 'missed attestation', NOW)
        self.consensus.vote('w2', proposal_id, NOW + 10)
        self.consensus.vote('w3', proposal_id, NOW + 20)
        return proposal_id

    def test_quorum_executes_status_change(self):
        """Test three watchdog votes move the reserve under review"""
        proposal_id = self.approved_proposal()
        proposal = self.consensus.get_proposal(proposal_id)
        self.assertEqual(proposal.status(NOW + 30, 3), ProposalStatus.APPROVED)

        action = self.consensus.execute('w4', proposal_id, NOW + 30)

        self.assertEqual(action.new_status, ReserveStatus.UNDER_REVIEW)
        self.assertEqual(self.ledger.get_account('reserve-1').status, ReserveStatus.UNDER_REVIEW)
        self.assertEqual(proposal.status(NOW + 30, 3), ProposalStatus.EXECUTED)

    def test_execute_only_once(self):
        proposal_id = self.approved_proposal()
        self.consensus.execute('w1', proposal_id, NOW + 30)

        self.assertKind(ErrorKind.PROPOSAL_ALREADY_EXECUTED, self.consensus.execute, 'w2', proposal_id, NOW + 40)
        self.assertKind(ErrorKind.PROPOSAL_ALREADY_EXECUTED, self.consensus.vote, 'w4', proposal_id, NOW + 40)
        self.assertEqual(len(self.ledger.get_account('reserve-1').status_history), 1)

    def test_below_quorum(self):
        proposal_id = self.consensus.propose('w1', 'reserve-1', ReserveStatus.REVOKED, 'fraud', NOW)
        self.consensus.vote('w2', proposal_id, NOW + 10)
        self.assertKind(ErrorKind.PROPOSAL_NOT_APPROVED, self.consensus.execute, 'w1', proposal_id, NOW + 20)

    def test_vote_rules(self):
        """Test duplicate and late votes are refused"""
        proposal_id = self.consensus.propose('w1', 'reserve-1', ReserveStatus.REVOKED, 'fraud', NOW)

        self.assertKind(ErrorKind.ALREADY_VOTED, self.consensus.vote, 'w1', proposal_id, NOW + 1)
        self.assertKind(ErrorKind.VOTING_ENDED, self.consensus.vote, 'w2', proposal_id, NOW + 2 * HOUR + 1)
        self.assertKind(ErrorKind.NOT_AUTHORIZED, self.consensus.vote, 'registrar', proposal_id, NOW + 1)
        self.assertKind(ErrorKind.PROPOSAL_NOT_FOUND, self.consensus.vote, 'w2', 999, NOW + 1)

    def test_expired_under_within_policy(self):
        proposal_id = self.approved_proposal()
        self.assertKind(ErrorKind.PROPOSAL_EXPIRED, self.consensus.execute, 'w1', proposal_id, NOW + 2 * HOUR + 1)

    def test_invalid_transition_not_executed(self):
        self.ledger.set_status('reserve-1', ReserveStatus.REVOKED, 'governance', NOW)
        proposal_id = self.approved_proposal()

        self.assertKind(ErrorKind.INVALID_STATUS_TRANSITION, self.consensus.execute, 'w1', proposal_id, NOW + 30)
        self.assertFalse(self.consensus.get_proposal(proposal_id).executed)

    def test_proposal_checks(self):
        self.assertKind(ErrorKind.REASON_REQUIRED, self.consensus.propose,
                        'w1', 'reserve-1', ReserveStatus.REVOKED, '', NOW)
        self.assertKind(ErrorKind.INVALID_STATUS_TRANSITION, self.consensus.propose,
                        'w1', 'reserve-1', ReserveStatus.EMERGENCY_PAUSED, 'freeze', NOW)
        self.assertKind(ErrorKind.RESERVE_NOT_FOUND, self.consensus.propose,
                        'w1', 'missing', ReserveStatus.REVOKED, 'fraud', NOW)

    def test_active_proposals(self):
        first = self.consensus.propose('w1', 'reserve-1', ReserveStatus.UNDER_REVIEW, 'late', NOW)
        self.consensus.propose('w2', 'reserve-1', ReserveStatus.REVOKED, 'fraud', NOW + 3 * HOUR)

        active = self.consensus.get_active_proposals(NOW + 3 * HOUR)
        self.assertEqual(len(active), 1)
        self.assertNotEqual(active[0].proposal_id, first)


class TestAfterVotingPolicy(WatchdogTestCase):

    params = SystemParameters.from_dict({
        **SystemParameters.testing().to_dict(),
        'execution_policy': ExecutionPolicy.AFTER_VOTING_PERIOD.value
    })

    def test_execute_waits_for_voting_end(self):
        """Test approved proposals execute only once voting has closed"""
        consensus = WatchdogConsensus(self.ledger, self.authorizer)
        proposal_id = consensus.propose('w1', 'reserve-1', ReserveStatus.UNDER_REVIEW, 'review', NOW)
        consensus.vote('w2', proposal_id, NOW + 1)
        consensus.vote('w3', proposal_id, NOW + 2)

        self.assertKind(ErrorKind.VOTING_NOT_ENDED, consensus.execute, 'w1', proposal_id, NOW + 3)
        consensus.execute('w1', proposal_id, NOW + 2 * HOUR + 1)
        self.assertEqual(self.ledger.get_account('reserve-1').status, ReserveStatus.UNDER_REVIEW)


class TestPauseEscalation(WatchdogTestCase):

    def setUp(self):
        super().setUp()
        self.escalation = PauseEscalation(self.ledger, self.authorizer)

    def test_threshold_freezes_reserve(self):
        """Test two reports leave the reserve running and the third freezes it"""
        self.assertFalse(self.escalation.report_critical('w1', 'reserve-1', 'wallet drained', NOW))
        self.assertFalse(self.escalation.report_critical('w2', 'reserve-1', 'wallet drained', NOW + 60))
        self.assertTrue(self.ledger.is_operational('reserve-1'))

        self.assertTrue(self.escalation.report_critical('w3', 'reserve-1', 'wallet drained', NOW + 120))
        self.assertFalse(self.ledger.is_operational('reserve-1'))
        self.assertEqual(self.ledger.get_account('reserve-1').effective_status, ReserveStatus.EMERGENCY_PAUSED)

    def test_governance_clears_pause(self):
        for index, watchdog in enumerate(('w1', 'w2', 'w3')):
            self.escalation.report_critical(watchdog, 'reserve-1', 'drained', NOW + index)

        self.assertKind(ErrorKind.NOT_AUTHORIZED, self.escalation.clear_emergency_pause, 'w1', 'reserve-1')
        self.escalation.clear_emergency_pause('governance', 'reserve-1')

        self.assertTrue(self.ledger.is_operational('reserve-1'))
        self.assertEqual(self.ledger.get_account('reserve-1').status, ReserveStatus.ACTIVE)
        self.assertEqual(self.escalation.get_report_count('reserve-1', NOW + 10), 0)

    def test_reports_expire_with_window(self):
        """Test reports older than the window do not count towards the threshold"""
        self.escalation.report_critical('w1', 'reserve-1', 'drained', NOW)
        self.escalation.report_critical('w2', 'reserve-1', 'drained', NOW + 10)
        self.assertFalse(self.escalation.report_critical('w3', 'reserve-1', 'drained', NOW + HOUR + 5))

        self.assertEqual(self.escalation.get_report_count('reserve-1', NOW + HOUR + 5), 2)
        self.assertTrue(self.ledger.is_operational('reserve-1'))

    def test_duplicate_reporter(self):
        self.escalation.report_critical('w1', 'reserve-1', 'drained', NOW)
        self.assertKind(ErrorKind.DUPLICATE_REPORT, self.escalation.report_critical, 'w1', 'reserve-1', 'again', NOW + 5)
        self.assertKind(ErrorKind.REASON_REQUIRED, self.escalation.report_critical, 'w2', 'reserve-1', '', NOW)

    def test_governance_pause(self):
        self.assertKind(ErrorKind.NOT_AUTHORIZED, self.escalation.emergency_pause, 'w1', 'reserve-1', 'manual')
        self.escalation.emergency_pause('governance', 'reserve-1', 'manual')
        self.assertFalse(self.ledger.is_operational('reserve-1'))

ESCALATION_DELAY = 45 * 60


class TestWatchdogEnforcer(WatchdogTestCase):

    def setUp(self):
        super().setUp()
        self.authorizer.grant('minter', Role.MINTER)
        self.authorizer.grant('arbiter', Role.ARBITER)
        self.oracle = ReserveOracle(self.ledger, self.authorizer)
        self.enforcer = WatchdogEnforcer(self.ledger, self.oracle)

        self.ledger.set_backing('reserve-1', 500_000, NOW)
        self.ledger.mint('minter', 'reserve-1', 'alice', 400_000)

    def attest(self, amount, reserve_id='reserve-1', at=NOW):
        self.oracle.override_attestation('arbiter', reserve_id, amount, 'audit', at)

    def test_insufficient_reserves_put_under_review(self):
        """Test anyone can move an under-collateralized reserve under review"""
        self.attest(300_000)
        self.assertEqual(self.enforcer.check_violation('reserve-1', 'INSUFFICIENT_RESERVES', NOW), (True, ''))

        deadline = self.enforcer.enforce_objective_violation('anyone', 'reserve-1', 'INSUFFICIENT_RESERVES', NOW)

        self.assertEqual(deadline, NOW + ESCALATION_DELAY)
        account = self.ledger.get_account('reserve-1')
        self.assertEqual(account.status, ReserveStatus.UNDER_REVIEW)
        self.assertEqual(account.status_history[-1].reason, 'INSUFFICIENT_RESERVES')

    def test_sufficient_reserves(self):
        self.attest(400_000)
        self.assertEqual(self.enforcer.check_violation('reserve-1', ViolationReason.INSUFFICIENT_RESERVES, NOW),
                         (False, 'Reserves are sufficient'))
        self.assertKind(ErrorKind.VIOLATION_NOT_FOUND, self.enforcer.enforce_objective_violation,
                        'anyone', 'reserve-1', 'INSUFFICIENT_RESERVES', NOW)
        self.assertEqual(self.ledger.get_account('reserve-1').status, ReserveStatus.ACTIVE)

    def test_stale_attestations(self):
        """Test stale oracle data is a violation of its own but hides reserve shortfalls"""
        self.assertEqual(self.enforcer.check_violation('reserve-1', 'INSUFFICIENT_RESERVES', NOW),
                         (False, 'Reserves are stale, cannot determine violation'))
        self.assertKind(ErrorKind.VIOLATION_NOT_FOUND, self.enforcer.enforce_objective_violation,
                        'anyone', 'reserve-1', 'INSUFFICIENT_RESERVES', NOW)

        self.assertIsNone(self.enforcer.enforce_objective_violation('w1', 'reserve-1', 'STALE_ATTESTATIONS', NOW))
        self.assertEqual(self.ledger.get_account('reserve-1').status, ReserveStatus.UNDER_REVIEW)
        self.assertIsNone(self.enforcer.get_escalation_deadline('reserve-1'))

    def test_fresh_attestations(self):
        self.attest(500_000)
        self.assertEqual(self.enforcer.check_violation('reserve-1', 'STALE_ATTESTATIONS', NOW + 60),
                         (False, 'Attestations are fresh'))
        self.assertEqual(self.enforcer.check_violation('reserve-1', 'STALE_ATTESTATIONS', NOW + 2 * DAY),
                         (True, ''))

    def test_unknown_reason_code(self):
        self.assertEqual(self.enforcer.check_violation('reserve-1', 'INVALID_REASON', NOW),
                         (False, 'Not an objective violation'))
        self.assertKind(ErrorKind.NOT_OBJECTIVE_VIOLATION, self.enforcer.enforce_objective_violation,
                        'anyone', 'reserve-1', 'INVALID_REASON', NOW)
        self.assertEqual(self.enforcer.batch_check_violations(['reserve-1'], 'INVALID_REASON', NOW), [])

    def test_collateral_ratio(self):
        """Test a stricter ratio turns an exactly backed reserve into a violation"""
        self.attest(400_000)
        strict = WatchdogEnforcer(self.ledger, self.oracle, SystemParameters.from_dict({
            **SystemParameters.testing().to_dict(),
            'min_collateral_ratio': 150
        }))

        self.assertFalse(self.enforcer.check_violation('reserve-1', 'INSUFFICIENT_RESERVES', NOW)[0])
        self.assertTrue(strict.check_violation('reserve-1', 'INSUFFICIENT_RESERVES', NOW)[0])

    def test_batch_check_violations(self):
        for reserve_id, backing in (('reserve-2', 100_000), ('reserve-3', 100_000)):
            self.ledger.authorize('registrar', reserve_id, 1_000_000, NOW)
            self.ledger.set_backing(reserve_id, backing, NOW)
            self.ledger.mint('minter', reserve_id, 'alice', 100_000)

        self.attest(300_000)
        self.attest(100_000, 'reserve-2')
        self.attest(50_000, 'reserve-3')

        reserves = ['reserve-1', 'reserve-2', 'reserve-3', 'missing']
        self.assertEqual(self.enforcer.batch_check_violations(reserves, 'INSUFFICIENT_RESERVES', NOW),
                         ['reserve-1', 'reserve-3'])
        self.assertEqual(self.enforcer.batch_check_violations([], 'INSUFFICIENT_RESERVES', NOW), [])

    def test_escalates_after_delay(self):
        """Test a reserve still under review is emergency paused once the delay passes"""
        self.attest(300_000)
        self.enforcer.enforce_objective_violation('anyone', 'reserve-1', 'INSUFFICIENT_RESERVES', NOW)

        self.assertKind(ErrorKind.ESCALATION_DELAY_NOT_REACHED, self.enforcer.check_escalation,
                        'anyone', 'reserve-1', NOW + 10)
        self.assertTrue(self.enforcer.check_escalation('w2', 'reserve-1', NOW + ESCALATION_DELAY + 1))

        self.assertEqual(self.ledger.get_account('reserve-1').effective_status, ReserveStatus.EMERGENCY_PAUSED)
        self.assertIsNone(self.enforcer.get_escalation_deadline('reserve-1'))
        self.assertKind(ErrorKind.VIOLATION_NOT_FOUND, self.enforcer.check_escalation,
                        'anyone', 'reserve-1', NOW + ESCALATION_DELAY + 2)

    def test_restored_reserve_clears_timer(self):
        self.attest(300_000)
        self.enforcer.enforce_objective_violation('anyone', 'reserve-1', 'INSUFFICIENT_RESERVES', NOW)

        self.assertFalse(self.enforcer.clear_escalation_timer('anyone', 'reserve-1'))
        self.ledger.set_status('reserve-1', ReserveStatus.ACTIVE, 'recapitalized', NOW + 60)
        self.assertTrue(self.enforcer.clear_escalation_timer('anyone', 'reserve-1'))
        self.assertFalse(self.enforcer.clear_escalation_timer('anyone', 'reserve-1'))

    def test_status_change_before_escalation(self):
        """Test a reserve that left review is not paused when the delay passes"""
        self.attest(300_000)
        self.enforcer.enforce_objective_violation('anyone', 'reserve-1', 'INSUFFICIENT_RESERVES', NOW)
        self.ledger.set_status('reserve-1', ReserveStatus.REVOKED, 'fraud', NOW + 60)

        self.assertFalse(self.enforcer.check_escalation('anyone', 'reserve-1', NOW + ESCALATION_DELAY + 1))
        self.assertFalse(self.ledger.get_account('reserve-1').emergency_paused)
        self.assertIsNone(self.enforcer.get_escalation_deadline('reserve-1'))

    def test_retrigger_refreshes_timer(self):
        self.attest(300_000)
        self.enforcer.enforce_objective_violation('anyone', 'reserve-1', 'INSUFFICIENT_RESERVES', NOW)
        deadline = self.enforcer.enforce_objective_violation('anyone', 'reserve-1', 'INSUFFICIENT_RESERVES', NOW + 600)

        self.assertEqual(deadline, NOW + 600 + ESCALATION_DELAY)
        self.assertEqual(len(self.ledger.get_account('reserve-1').status_history), 1)



if __name__ == '__main__':
    unittest.main()
