"""Unit tests for chain status classification and Ledger correction planning."""
import pytest
from unittest.mock import MagicMock

from core.escrow_types import ChainStatus, JobDetails, PaymentStatus, TxKind, TxState
from services.ledger import PaymentRecord
from services.reconciliation import (
    LedgerCorrection, ReconciliationEngine, classify, missing_hash_evidence, plan_correction,
)
from tests.helpers.chain_helpers import CLIENT, FREELANCER, TX_HASH

ZERO = '0x' + '00' * 20


def _details(client=CLIENT, freelancer=FREELANCER, usd=100, eth=0, completed=False, paid=False):
    return JobDetails(client, freelancer, usd, eth, completed, paid)


def _record(status, deposit=None, release=None, refund=None):
    return PaymentRecord(
        application_id=42, job_id=42, client_address=CLIENT, freelancer_address=FREELANCER,
        usd_amount=None, payment_status=status,
        tx_hash_deposit=deposit, tx_hash_release=release, tx_hash_refund=refund,
    )


def _no_lookup(tx_hash):
    raise AssertionError("transaction state should not be consulted")


# ── Classification ──────────────────────────────────────────────────

def test_classification_priority_chain():
    assert classify(_details(eth=5, completed=True, paid=True)) == ChainStatus.RELEASED
    assert classify(_details(eth=5, completed=True)) == ChainStatus.COMPLETED
    assert classify(_details(eth=5)) == ChainStatus.DEPOSITED
    assert classify(_details(eth=0)) == ChainStatus.PENDING_DEPOSIT
    assert classify(None) == ChainStatus.NOT_FOUND


def test_ghost_job_is_not_found_regardless_of_flags():
    assert classify(_details(ZERO, ZERO, usd=0, eth=10 ** 18, completed=True, paid=True)) \
        == ChainStatus.NOT_FOUND


def test_engine_short_circuits_when_job_absent():
    chain = MagicMock()
    chain.job_exists.return_value = False
    state = ReconciliationEngine(chain).reconcile(42)
    assert state.status == ChainStatus.NOT_FOUND
    chain.get_job_details.assert_not_called()


def test_engine_reports_ghost_as_not_found():
    chain = MagicMock()
    chain.job_exists.return_value = True
    chain.get_job_details.return_value = _details(ZERO, ZERO, usd=0)
    state = ReconciliationEngine(chain).reconcile(42)
    assert state.status == ChainStatus.NOT_FOUND
    assert state.details is None


def test_status_is_monotonic_across_job_progression():
    chain = MagicMock()
    chain.job_exists.side_effect = [False, True, True, True, True]
    chain.get_job_details.side_effect = [
        _details(eth=0),
        _details(eth=5),
        _details(eth=5, completed=True),
        _details(eth=5, completed=True, paid=True),
    ]
    engine = ReconciliationEngine(chain)
    observed = [engine.reconcile(42).status for _ in range(5)]
    ranks = [ChainStatus.rank(s) for s in observed]
    assert ranks == sorted(ranks)
    assert observed[0] == ChainStatus.NOT_FOUND
    assert observed[-1] == ChainStatus.RELEASED


# ── Ledger corrections ──────────────────────────────────────────────

@pytest.mark.parametrize("chain_status,current,target", [
    (ChainStatus.DEPOSITED, PaymentStatus.DEPOSIT_INITIATED, PaymentStatus.DEPOSITED),
    (ChainStatus.DEPOSITED, PaymentStatus.PENDING_DEPOSIT, PaymentStatus.DEPOSITED),
    (ChainStatus.COMPLETED, PaymentStatus.DEPOSITED, PaymentStatus.RELEASE_INITIATED),
    (ChainStatus.RELEASED, PaymentStatus.RELEASE_INITIATED, PaymentStatus.RELEASED),
    (ChainStatus.RELEASED, PaymentStatus.DEPOSITED, PaymentStatus.RELEASED),
    (ChainStatus.DEPOSITED, PaymentStatus.RELEASED, PaymentStatus.DEPOSITED),
])
def test_ledger_follows_chain(chain_status, current, target):
    correction = plan_correction(chain_status, _record(current), _no_lookup)
    assert correction.status == target
    assert correction.tx_kind == TxKind.NONE


def test_agreeing_ledger_needs_no_correction():
    assert plan_correction(ChainStatus.DEPOSITED, _record(PaymentStatus.DEPOSITED), _no_lookup) is None
    assert plan_correction(ChainStatus.NOT_FOUND, _record(PaymentStatus.PENDING_DEPOSIT), _no_lookup) is None


def test_initiated_deposit_kept_while_job_awaits_deposit():
    record = _record(PaymentStatus.DEPOSIT_INITIATED, deposit=TX_HASH)
    assert plan_correction(ChainStatus.PENDING_DEPOSIT, record, _no_lookup) is None


def test_reverted_deposit_releases_application():
    record = _record(PaymentStatus.DEPOSIT_INITIATED, deposit=TX_HASH)
    correction = plan_correction(ChainStatus.NOT_FOUND, record, lambda h: TxState.REVERTED)
    assert correction.status == PaymentStatus.PENDING_DEPOSIT
    assert correction.tx_kind == TxKind.DEPOSIT
    assert correction.tx_hash is None


def test_pending_deposit_tx_is_left_alone():
    record = _record(PaymentStatus.DEPOSIT_INITIATED, deposit=TX_HASH)
    assert plan_correction(ChainStatus.NOT_FOUND, record, lambda h: TxState.PENDING) is None


def test_ledger_ahead_of_absent_job_is_reset():
    correction = plan_correction(ChainStatus.NOT_FOUND, _record(PaymentStatus.DEPOSITED, deposit=TX_HASH),
                                 lambda h: TxState.REVERTED)
    assert correction.status == PaymentStatus.PENDING_DEPOSIT
    assert correction.tx_kind == TxKind.DEPOSIT
    assert correction.tx_hash is None


def test_hashless_funded_record_on_absent_job_is_reset():
    correction = plan_correction(ChainStatus.NOT_FOUND, _record(PaymentStatus.DEPOSITED), _no_lookup)
    assert correction.status == PaymentStatus.PENDING_DEPOSIT


@pytest.mark.parametrize("current", [PaymentStatus.DEPOSITED, PaymentStatus.RELEASE_INITIATED])
def test_funded_job_gone_from_chain_was_refunded(current):
    """Cancel landed but its Ledger write was lost: the record must not become fundable again."""
    seen = []

    def _lookup(tx_hash):
        seen.append(tx_hash)
        return TxState.SUCCESS

    correction = plan_correction(ChainStatus.NOT_FOUND, _record(current, deposit=TX_HASH), _lookup)
    assert correction.status == PaymentStatus.REFUNDED
    assert correction.tx_kind == TxKind.NONE
    assert seen == [TX_HASH]


def test_funded_record_kept_while_deposit_tx_pending():
    record = _record(PaymentStatus.DEPOSITED, deposit=TX_HASH)
    assert plan_correction(ChainStatus.NOT_FOUND, record, lambda h: TxState.PENDING) is None


def test_released_record_not_rewritten_for_absent_job():
    record = _record(PaymentStatus.RELEASED, deposit=TX_HASH)
    assert plan_correction(ChainStatus.NOT_FOUND, record, lambda h: TxState.SUCCESS) is None


def test_cancelled_job_completes_refund():
    record = _record(PaymentStatus.REFUND_INITIATED, refund=TX_HASH)
    correction = plan_correction(ChainStatus.NOT_FOUND, record, lambda h: TxState.SUCCESS)
    assert correction.status == PaymentStatus.REFUNDED


def test_in_flight_release_kept_until_it_fails():
    record = _record(PaymentStatus.RELEASE_INITIATED, release=TX_HASH)
    assert plan_correction(ChainStatus.DEPOSITED, record, lambda h: TxState.PENDING) is None
    correction = plan_correction(ChainStatus.DEPOSITED, record, lambda h: TxState.REVERTED)
    assert correction.status == PaymentStatus.DEPOSITED


# ── Hash recovery ───────────────────────────────────────────────────

def test_promotion_without_deposit_hash_asks_for_job_posted_log():
    record = _record(PaymentStatus.PENDING_DEPOSIT)
    correction = LedgerCorrection(PaymentStatus.DEPOSITED)
    assert missing_hash_evidence(record, correction) == (TxKind.DEPOSIT, 'JobPosted')


def test_refund_without_refund_hash_asks_for_cancel_log():
    record = _record(PaymentStatus.DEPOSITED, deposit=TX_HASH)
    correction = LedgerCorrection(PaymentStatus.REFUNDED)
    assert missing_hash_evidence(record, correction) == (TxKind.REFUND, 'JobCancelled')


def test_release_without_release_hash_asks_for_payment_log():
    record = _record(PaymentStatus.RELEASE_INITIATED, deposit=TX_HASH)
    correction = LedgerCorrection(PaymentStatus.RELEASED)
    assert missing_hash_evidence(record, correction) == (TxKind.RELEASE, 'PaymentReleased')


def test_no_lookup_when_hashes_present_or_column_taken():
    record = _record(PaymentStatus.DEPOSIT_INITIATED, deposit=TX_HASH)
    assert missing_hash_evidence(record, LedgerCorrection(PaymentStatus.DEPOSITED)) is None
    reset = LedgerCorrection(PaymentStatus.PENDING_DEPOSIT, TxKind.DEPOSIT, None)
    assert missing_hash_evidence(_record(PaymentStatus.DEPOSITED), reset) is None
