"""
Escrow orchestration: the single entry point used by the HTTP layer.

Flow for funding:
1. Validate input (addresses, USD amount)
2. Idempotency gate against the Ledger
3. Ledger readiness + party/amount match
4. Strategy.fund() (chain existence check, price, submit, finality)
5. Atomic Ledger mark of the deposit hash (best-effort)

The chain is the source of truth. Ledger writes that follow a successful
chain transaction never fail the request; reconcile() repairs them.
"""
import logging
from decimal import Decimal

from core.deadline import Deadline
from core.errors import (
    AddressMismatch, AmountMismatch, EscrowError, InvalidInput, InvalidStateForOperation,
    JobAlreadyFunded,
)
from core.escrow_types import (
    ChainStatus, FundingRequest, PaymentStatus, ReconciliationReport, TransactionResponse, TxKind,
)
from services.chain_client import to_checksum
from services.gateway_strategies import is_sync_marker
from services.ledger import PaymentLedger
from services.price_converter import parse_usd
from services.reconciliation import missing_hash_evidence, plan_correction

logger = logging.getLogger('gateway.orchestrator')

_DEPOSIT_CONFIRMED = (ChainStatus.DEPOSITED, ChainStatus.COMPLETED, ChainStatus.RELEASED)


def _parse_job_id(value) -> int:
    try:
        job_id = int(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"invalid job_id: {value!r}")
    if job_id <= 0:
        raise InvalidInput(f"invalid job_id: {value!r}")
    return job_id


class EscrowOrchestrator:
    def __init__(self, strategy, ledger=None):
        self.strategy = strategy
        self.ledger = ledger or PaymentLedger()

    @property
    def mode(self):
        return self.strategy.mode

    # --- Funding ----------------------------------------------------------------

    def fund_escrow(self, application_id, freelancer_address, usd_amount, client_address,
                    deadline=None) -> TransactionResponse:
        deadline = deadline or Deadline.none()
        application_id = _parse_job_id(application_id)
        freelancer = to_checksum(freelancer_address)
        client = to_checksum(client_address)
        usd = parse_usd(usd_amount)
        if usd <= 0:
            raise InvalidInput(f"USD amount must be positive, got {usd_amount!r}")

        already, existing_hash = self.ledger.check_idempotency(application_id)
        if already:
            record = self.ledger.get_payment_details(application_id)
            logger.info("Escrow deposit already initiated for application %s (tx=%s, status=%s)",
                        application_id, existing_hash, record.payment_status)
            return TransactionResponse(tx_hash=existing_hash, success=True, status=record.payment_status)

        record = self.ledger.validate_readiness(application_id)
        if record.freelancer_address.lower() != freelancer.lower():
            raise AddressMismatch(
                f"freelancer address mismatch: expected {record.freelancer_address}, got {freelancer}")
        if record.client_address.lower() != client.lower():
            raise AddressMismatch(
                f"client address mismatch: expected {record.client_address}, got {client}")
        if Decimal(record.usd_amount) != usd:
            raise AmountMismatch(
                f"USD amount mismatch: agreed {record.usd_amount}, got {usd_amount}")

        request = FundingRequest(application_id, freelancer, str(usd), client)
        try:
            response = self.strategy.fund(request, deadline)
        except JobAlreadyFunded:
            # A concurrent call may have funded and recorded first
            already, existing_hash = self.ledger.check_idempotency(application_id)
            if existing_hash:
                logger.info("Application %s funded by a concurrent request (tx=%s)",
                            application_id, existing_hash)
                return TransactionResponse(tx_hash=existing_hash, success=True,
                                           status=PaymentStatus.DEPOSIT_INITIATED)
            raise

        if is_sync_marker(response):
            return response
        if response.tx_hash:
            recorded = self._record_deposit(application_id, response.tx_hash)
            if recorded and recorded != response.tx_hash:
                return TransactionResponse(tx_hash=recorded, success=True,
                                           status=PaymentStatus.DEPOSIT_INITIATED)
        return response

    def _record_deposit(self, application_id, tx_hash):
        """Returns the deposit hash the Ledger holds afterwards, or None if the write failed."""
        try:
            recorded = self.ledger.atomic_mark_deposit_initiated(application_id, tx_hash)
        except EscrowError as e:
            logger.error("Deposit tx %s succeeded but Ledger update failed for application %s: %s",
                         tx_hash, application_id, e.message)
            return None
        if recorded != tx_hash:
            logger.warning("Application %s already records deposit tx %s; ours was %s",
                           application_id, recorded, tx_hash)
        return recorded

    # --- Settlement -------------------------------------------------------------

    def _settle(self, application_id, operation, status, tx_kind, deadline) -> TransactionResponse:
        deadline = deadline or Deadline.none()
        application_id = _parse_job_id(application_id)
        record = self.ledger.get_payment_details(application_id)
        if record.payment_status != PaymentStatus.DEPOSITED:
            raise InvalidStateForOperation(
                f"cannot {operation} job: payment status is '{record.payment_status}', expected 'deposited'",
                payment_status=record.payment_status,
            )

        if operation == 'complete':
            response = self.strategy.complete(record.job_id, deadline)
        else:
            response = self.strategy.cancel(record.job_id, deadline)

        if response.tx_hash:
            try:
                self.ledger.update_status(application_id, status, response.tx_hash, tx_kind)
            except EscrowError as e:
                logger.error("%s tx %s succeeded but Ledger update failed for application %s: %s",
                             operation, response.tx_hash, application_id, e.message)
        return response

    def complete_escrow(self, application_id, deadline=None) -> TransactionResponse:
        return self._settle(application_id, 'complete', PaymentStatus.RELEASE_INITIATED,
                            TxKind.RELEASE, deadline)

    def cancel_escrow(self, application_id, deadline=None) -> TransactionResponse:
        return self._settle(application_id, 'cancel', PaymentStatus.REFUND_INITIATED,
                            TxKind.REFUND, deadline)

    # --- Reads ------------------------------------------------------------------

    def get_status(self, application_id):
        """Ledger view only. Use reconcile() for the authoritative state."""
        return self.ledger.get_payment_details(_parse_job_id(application_id))

    def get_eth_usd_price(self, deadline=None) -> int:
        return self.strategy.eth_usd_price(deadline or Deadline.none())

    def chain_status(self, application_id, deadline=None):
        return self.strategy.chain_status(_parse_job_id(application_id), deadline or Deadline.none())

    def transaction_state(self, tx_hash, deadline=None) -> str:
        if not tx_hash:
            raise InvalidInput("tx_hash is required")
        return self.strategy.transaction_state(tx_hash, deadline or Deadline.none())

    # --- Reconciliation ---------------------------------------------------------

    def reconcile(self, application_id, deadline=None) -> ReconciliationReport:
        deadline = deadline or Deadline.none()
        application_id = _parse_job_id(application_id)
        record = self.ledger.get_payment_details(application_id)
        state = self.strategy.chain_status(record.job_id, deadline)

        report = ReconciliationReport(
            application_id=application_id,
            chain_status=state.status,
            previous_status=record.payment_status,
            payment_status=record.payment_status,
        )
        correction = plan_correction(
            state.status, record, lambda tx_hash: self.strategy.transaction_state(tx_hash, deadline),
        )
        if correction is not None:
            self._attach_event_hash(record, correction, deadline)
            self.ledger.update_status(application_id, correction.status, correction.tx_hash, correction.tx_kind)
            report.payment_status = correction.status
            report.updated = True
            report.notes.append(correction.note)
            logger.info("Reconciled application %s: %s -> %s (%s)", application_id,
                        record.payment_status, correction.status, correction.note)
        return report

    def _attach_event_hash(self, record, correction, deadline):
        """Recover a hash the Ledger never stored (failed write, deadline after broadcast) from its log."""
        wanted = missing_hash_evidence(record, correction)
        if wanted is None:
            return
        tx_kind, event_name = wanted
        try:
            tx_hash = self.strategy.job_event_tx(record.job_id, event_name, record.client_address,
                                                 record.freelancer_address, deadline)
        except EscrowError as e:
            logger.warning("%s lookup for job %s failed: %s", event_name, record.job_id, e.message)
            return
        if tx_hash:
            correction.tx_kind = tx_kind
            correction.tx_hash = tx_hash
            correction.note = f"{correction.note}; {tx_kind} tx {tx_hash} from {event_name} log"

    def job_event_tx(self, job_id, event_name, client=None, freelancer=None, deadline=None):
        job_id = _parse_job_id(job_id)
        client = to_checksum(client) if client else None
        freelancer = to_checksum(freelancer) if freelancer else None
        return self.strategy.job_event_tx(job_id, event_name, client, freelancer, deadline or Deadline.none())

    def confirm_deposit(self, application_id, deadline=None) -> dict:
        report = self.reconcile(application_id, deadline)
        body = report.to_dict()
        body['confirmed'] = report.chain_status in _DEPOSIT_CONFIRMED
        return body

    def confirm_release(self, application_id, deadline=None) -> dict:
        report = self.reconcile(application_id, deadline)
        body = report.to_dict()
        body['confirmed'] = report.chain_status == ChainStatus.RELEASED
        return body

    # --- Client-signed funding --------------------------------------------------

    def verify_and_record_deposit(self, application_id, tx_hash, deadline=None) -> dict:
        deadline = deadline or Deadline.none()
        application_id = _parse_job_id(application_id)
        if not tx_hash:
            raise InvalidInput("tx_hash is required")
        record = self.ledger.validate_readiness(application_id)
        verifier = self.strategy.deposit_verifier()
        evidence = verifier.verify(
            tx_hash, record.job_id, record.client_address, record.freelancer_address,
            record.usd_amount, deadline=deadline,
        )

        recorded = self.ledger.atomic_mark_deposit_initiated(application_id, tx_hash)
        if recorded != tx_hash:
            raise InvalidStateForOperation(
                f"application {application_id} already records deposit tx {recorded}",
                recorded_tx_hash=recorded,
            )
        self.ledger.update_status(application_id, PaymentStatus.DEPOSITED, tx_hash, TxKind.DEPOSIT)
        return {
            "verified": True,
            "payment_status": PaymentStatus.DEPOSITED,
            "evidence": evidence.to_dict(),
        }


# Singleton
_orchestrator = None


def get_orchestrator() -> EscrowOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        from config import Config
        from services.gateway_strategies import build_strategy
        _orchestrator = EscrowOrchestrator(build_strategy(Config))
    return _orchestrator
