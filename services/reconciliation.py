"""
Reconciliation: derive the canonical escrow status from contract state and
work out which Ledger correction (if any) brings the local record back in line.

Chain classification is a strict priority chain:
    absent or all-zero record -> not_found
    isPaid                    -> released
    isCompleted               -> completed
    ethAmount > 0             -> deposited
    otherwise                 -> pending_deposit
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from core.escrow_types import ChainJobState, ChainStatus, JobDetails, PaymentStatus, TxKind, TxState

logger = logging.getLogger('gateway.reconciliation')


def classify(details: Optional[JobDetails]) -> str:
    if details is None or details.is_ghost:
        return ChainStatus.NOT_FOUND
    if details.is_paid:
        return ChainStatus.RELEASED
    if details.is_completed:
        return ChainStatus.COMPLETED
    if details.eth_amount > 0:
        return ChainStatus.DEPOSITED
    return ChainStatus.PENDING_DEPOSIT


class ReconciliationEngine:
    def __init__(self, chain):
        self.chain = chain

    def reconcile(self, job_id: int, deadline=None) -> ChainJobState:
        if not self.chain.job_exists(job_id, deadline=deadline):
            return ChainJobState(job_id, ChainStatus.NOT_FOUND)
        details = self.chain.get_job_details(job_id, deadline=deadline)
        status = classify(details)
        if status == ChainStatus.NOT_FOUND:
            # Corrupted slot: the id may be reused by a fresh funding transaction
            logger.warning("Job %s has an all-zero record, reporting not_found", job_id)
            return ChainJobState(job_id, status)
        logger.info("Job %s reconciled as %s", job_id, status)
        return ChainJobState(job_id, status, details)


@dataclass
class LedgerCorrection:
    status: str
    tx_kind: str = TxKind.NONE
    tx_hash: Optional[str] = None
    note: str = ''


# Chain status -> Ledger status it proves, when the Ledger disagrees
_CHAIN_TO_LEDGER = {
    ChainStatus.RELEASED: PaymentStatus.RELEASED,
    ChainStatus.COMPLETED: PaymentStatus.RELEASE_INITIATED,
    ChainStatus.DEPOSITED: PaymentStatus.DEPOSITED,
    ChainStatus.PENDING_DEPOSIT: PaymentStatus.PENDING_DEPOSIT,
}

_IN_FLIGHT_HASH = {
    PaymentStatus.DEPOSIT_INITIATED: 'tx_hash_deposit',
    PaymentStatus.RELEASE_INITIATED: 'tx_hash_release',
    PaymentStatus.REFUND_INITIATED: 'tx_hash_refund',
}


def plan_correction(chain_status: str, record, tx_state: Callable[[str], str]) -> Optional[LedgerCorrection]:
    """Ledger update needed so `record` agrees with `chain_status`, or None.

    `tx_state(tx_hash)` returns a TxState value. It is consulted for an
    in-flight status whose transaction may still be pending, and for the
    deposit of a funded record whose job is no longer on chain.
    """
    current = record.payment_status

    def in_flight_state():
        tx_hash = getattr(record, _IN_FLIGHT_HASH[current], None)
        return tx_state(tx_hash) if tx_hash else TxState.UNKNOWN

    if chain_status == ChainStatus.NOT_FOUND:
        if current == PaymentStatus.REFUND_INITIATED:
            if in_flight_state() == TxState.PENDING:
                return None
            return LedgerCorrection(PaymentStatus.REFUNDED, note="escrow cancelled on chain")
        if current == PaymentStatus.DEPOSIT_INITIATED:
            if in_flight_state() in (TxState.REVERTED, TxState.UNKNOWN):
                return LedgerCorrection(PaymentStatus.PENDING_DEPOSIT, TxKind.DEPOSIT, None,
                                        note="deposit transaction reverted or dropped")
            return None
        if current in (PaymentStatus.DEPOSITED, PaymentStatus.RELEASE_INITIATED, PaymentStatus.RELEASED):
            deposit = record.tx_hash_deposit
            deposit_state = tx_state(deposit) if deposit else TxState.UNKNOWN
            if deposit_state == TxState.PENDING:
                return None
            if deposit_state == TxState.SUCCESS:
                if current == PaymentStatus.RELEASED:
                    return None
                # A funded job only leaves the contract through cancelJob
                return LedgerCorrection(PaymentStatus.REFUNDED, note="funded escrow cancelled on chain")
            return LedgerCorrection(PaymentStatus.PENDING_DEPOSIT, TxKind.DEPOSIT, None,
                                    note="no escrow job on chain")
        return None

    if chain_status == ChainStatus.PENDING_DEPOSIT and current == PaymentStatus.DEPOSIT_INITIATED:
        return None

    if chain_status == ChainStatus.DEPOSITED and current in (
            PaymentStatus.RELEASE_INITIATED, PaymentStatus.REFUND_INITIATED):
        # Release/refund still in flight unless its transaction failed
        if in_flight_state() in (TxState.PENDING, TxState.SUCCESS):
            return None

    target = _CHAIN_TO_LEDGER[chain_status]
    if target == current:
        return None
    return LedgerCorrection(target, note=f"chain reports {chain_status}")


_FUNDED = (PaymentStatus.DEPOSITED, PaymentStatus.RELEASE_INITIATED, PaymentStatus.RELEASED,
           PaymentStatus.REFUND_INITIATED, PaymentStatus.REFUNDED)

# (Ledger statuses that imply the hash, tx kind, record attribute, contract event carrying it)
_HASH_EVIDENCE = (
    (_FUNDED, TxKind.DEPOSIT, 'tx_hash_deposit', 'JobPosted'),
    ((PaymentStatus.RELEASED,), TxKind.RELEASE, 'tx_hash_release', 'PaymentReleased'),
    ((PaymentStatus.REFUNDED,), TxKind.REFUND, 'tx_hash_refund', 'JobCancelled'),
)


def missing_hash_evidence(record, correction: LedgerCorrection):
    """(tx_kind, event_name) for the first hash the corrected record implies but lacks, or None.

    A correction writes at most one hash column, so a correction that already
    sets one is left alone.
    """
    if correction.tx_kind != TxKind.NONE:
        return None
    for statuses, tx_kind, attr, event_name in _HASH_EVIDENCE:
        if correction.status in statuses and not getattr(record, attr):
            return tx_kind, event_name
    return None
