"""
Payment execution strategies, selected once from PAYMENT_MODE:

    direct  - sign and submit against the escrow contract
    http    - delegate every call to a peer gateway over HTTP
    hybrid  - direct first; fall back to the peer unless the direct
              error is a definitive business-rule rejection
"""
import logging

from config import NETWORKS
from core.errors import EscrowError, JobAlreadyFunded, ModeUnavailable, PeerRequestFailed, TransactionReverted
from core.escrow_types import (
    ChainJobState, ChainStatus, FinalityState, JobDetails, PaymentMode, TransactionResponse,
)
from services.chain_client import ChainClient
from services.deposit_verifier import DepositVerifier
from services.peer_client import PeerClient
from services.price_converter import PriceConverter
from services.reconciliation import ReconciliationEngine

logger = logging.getLogger('gateway.strategy')

SYNC_MARKER_PREFIX = 'job_exists_pending_deposit'

_RESPONSE_STATUS = {
    FinalityState.MINED_SUCCESS: 'confirmed',
    FinalityState.MINED_REVERTED: 'reverted',
    FinalityState.UNCONFIRMED: 'unconfirmed',
}


def sync_marker(status: str) -> TransactionResponse:
    """Success with no tx: the job is already on chain awaiting its deposit."""
    return TransactionResponse(tx_hash='', success=True, status=f"{SYNC_MARKER_PREFIX}:{status}")


def is_sync_marker(response: TransactionResponse) -> bool:
    return response.status.startswith(SYNC_MARKER_PREFIX)


def _is_already_exists(reason: str) -> bool:
    return 'already exists' in reason.lower() or reason == 'JobAlreadyExists'


class DirectStrategy:
    mode = PaymentMode.DIRECT

    def __init__(self, chain: ChainClient, converter=None, reconciler=None):
        self.chain = chain
        self.converter = converter or PriceConverter(chain)
        self.reconciler = reconciler or ReconciliationEngine(chain)
        self.verifier = DepositVerifier(chain, self.converter)

    def _existing_job_response(self, job_id, deadline):
        """None when the job is absent; sync marker or JobAlreadyFunded otherwise."""
        if not self.chain.job_exists(job_id, deadline=deadline):
            return None
        state = self.reconciler.reconcile(job_id, deadline=deadline)
        if state.status == ChainStatus.NOT_FOUND:
            return None
        if state.status == ChainStatus.PENDING_DEPOSIT:
            logger.info("Job %s already on chain awaiting deposit, returning sync marker", job_id)
            return sync_marker(state.status)
        raise JobAlreadyFunded(job_id, state.status)

    def fund(self, request, deadline) -> TransactionResponse:
        existing = self._existing_job_response(request.job_id, deadline)
        if existing is not None:
            return existing

        usd8, value = self.converter.required_funding(request.usd_amount, deadline=deadline)
        tx_hash = self.chain.submit_funding_transaction(
            request.job_id, request.freelancer_address, usd8, request.client_address, value,
            deadline=deadline,
        )
        outcome = self.chain.wait_for_finality(tx_hash, deadline=deadline)
        if outcome.state == FinalityState.MINED_REVERTED:
            if _is_already_exists(outcome.error_detail or ''):
                # Lost a race against another submitter
                logger.warning("postJob for job %s reverted as duplicate, reconciling", request.job_id)
                existing = self._existing_job_response(request.job_id, deadline)
                if existing is not None:
                    return existing
            raise TransactionReverted(outcome.error_detail, tx_hash=tx_hash)
        return TransactionResponse.from_outcome(outcome, _RESPONSE_STATUS[outcome.state])

    def _settle(self, submit, job_id, deadline) -> TransactionResponse:
        tx_hash = submit(job_id, deadline=deadline)
        outcome = self.chain.wait_for_finality(tx_hash, deadline=deadline)
        if outcome.state == FinalityState.MINED_REVERTED:
            raise TransactionReverted(outcome.error_detail, tx_hash=tx_hash)
        return TransactionResponse.from_outcome(outcome, _RESPONSE_STATUS[outcome.state])

    def complete(self, job_id, deadline) -> TransactionResponse:
        return self._settle(self.chain.submit_completion, job_id, deadline)

    def cancel(self, job_id, deadline) -> TransactionResponse:
        return self._settle(self.chain.submit_cancellation, job_id, deadline)

    def chain_status(self, job_id, deadline) -> ChainJobState:
        return self.reconciler.reconcile(job_id, deadline=deadline)

    def eth_usd_price(self, deadline) -> int:
        return self.converter.eth_usd_price(deadline)

    def transaction_state(self, tx_hash, deadline) -> str:
        return self.chain.transaction_state(tx_hash, deadline=deadline)

    def job_event_tx(self, job_id, event_name, client, freelancer, deadline):
        return self.chain.find_job_event_tx(event_name, job_id, client=client, freelancer=freelancer,
                                            deadline=deadline)

    def deposit_verifier(self) -> DepositVerifier:
        return self.verifier


class DelegatedStrategy:
    mode = PaymentMode.DELEGATED

    def __init__(self, peer: PeerClient):
        self.peer = peer

    def fund(self, request, deadline) -> TransactionResponse:
        try:
            body = self.peer.post_job(request.job_id, request.freelancer_address, request.usd_amount,
                                      request.client_address, deadline=deadline)
        except PeerRequestFailed as e:
            if e.peer_code == JobAlreadyFunded.code:
                raise JobAlreadyFunded(request.job_id, e.body.get('chain_status'))
            raise
        return TransactionResponse.from_dict(body)

    def complete(self, job_id, deadline) -> TransactionResponse:
        return TransactionResponse.from_dict(self.peer.complete_job(job_id, deadline=deadline))

    def cancel(self, job_id, deadline) -> TransactionResponse:
        return TransactionResponse.from_dict(self.peer.cancel_job(job_id, deadline=deadline))

    def chain_status(self, job_id, deadline) -> ChainJobState:
        body = self.peer.chain_status(job_id, deadline=deadline)
        details = None
        if 'client_address' in body:
            details = JobDetails(
                client=body['client_address'],
                freelancer=body['freelancer_address'],
                usd_amount=int(body['usd_amount_e8']),
                eth_amount=int(body['eth_amount_wei']),
                is_completed=bool(body['is_completed']),
                is_paid=bool(body['is_paid']),
            )
        return ChainJobState(job_id, body['chain_status'], details)

    def eth_usd_price(self, deadline) -> int:
        return int(self.peer.eth_price(deadline=deadline)['eth_usd_price'])

    def transaction_state(self, tx_hash, deadline) -> str:
        return self.peer.tx_status(tx_hash, deadline=deadline)['state']

    def job_event_tx(self, job_id, event_name, client, freelancer, deadline):
        body = self.peer.job_event_tx(job_id, event_name, client=client, freelancer=freelancer,
                                      deadline=deadline)
        return body.get('tx_hash') or None

    def deposit_verifier(self):
        raise ModeUnavailable("deposit verification requires direct chain access")


class HybridStrategy:
    mode = PaymentMode.HYBRID

    def __init__(self, direct, delegated: DelegatedStrategy):
        self.direct = direct
        self.delegated = delegated

    def _call(self, operation, *args):
        if self.direct is None:
            return getattr(self.delegated, operation)(*args)
        try:
            return getattr(self.direct, operation)(*args)
        except EscrowError as e:
            if e.definitive:
                raise
            logger.warning("Direct %s failed (%s), falling back to peer gateway", operation, e.message)
        return getattr(self.delegated, operation)(*args)

    def fund(self, request, deadline) -> TransactionResponse:
        return self._call('fund', request, deadline)

    def complete(self, job_id, deadline) -> TransactionResponse:
        return self._call('complete', job_id, deadline)

    def cancel(self, job_id, deadline) -> TransactionResponse:
        return self._call('cancel', job_id, deadline)

    def chain_status(self, job_id, deadline) -> ChainJobState:
        return self._call('chain_status', job_id, deadline)

    def eth_usd_price(self, deadline) -> int:
        return self._call('eth_usd_price', deadline)

    def transaction_state(self, tx_hash, deadline) -> str:
        return self._call('transaction_state', tx_hash, deadline)

    def job_event_tx(self, job_id, event_name, client, freelancer, deadline):
        return self._call('job_event_tx', job_id, event_name, client, freelancer, deadline)

    def deposit_verifier(self):
        if self.direct is None:
            raise ModeUnavailable("deposit verification requires direct chain access")
        return self.direct.deposit_verifier()


def build_chain_client(config) -> ChainClient:
    chain = ChainClient(
        rpc_url=config.ETHEREUM_RPC_URL,
        contract_address=config.CONTRACT_ADDRESS,
        private_key=config.PRIVATE_KEY,
        gas_limit=config.GAS_LIMIT,
        wait_timeout=config.TX_WAIT_TIMEOUT_SECONDS,
        max_attempts=config.TX_MAX_ATTEMPTS,
        from_block=config.EVENT_FROM_BLOCK,
    )
    chain.verify_network(config.NETWORK_ID)
    network = NETWORKS.get(config.NETWORK_ID, {})
    logger.info("Connected to %s (chain id %s), explorer %s", network.get('name', 'unknown network'),
                config.NETWORK_ID, network.get('explorer_url', '-'))
    return chain


def build_strategy(config):
    try:
        mode = PaymentMode(config.PAYMENT_MODE)
    except ValueError:
        raise ModeUnavailable(f"unknown payment mode '{config.PAYMENT_MODE}'")

    if mode == PaymentMode.DIRECT:
        return DirectStrategy(build_chain_client(config))
    delegated = DelegatedStrategy(PeerClient(config.PAYMENT_GATEWAY_URL))
    if mode == PaymentMode.DELEGATED:
        return delegated

    direct = None
    try:
        chain = build_chain_client(config)
        if chain.is_connected():
            direct = DirectStrategy(chain)
        else:
            logger.warning("Hybrid mode: RPC %s unreachable, running delegated-only", config.ETHEREUM_RPC_URL)
    except Exception as e:
        logger.warning("Hybrid mode: direct chain client unavailable (%s), running delegated-only", e)
    return HybridStrategy(direct, delegated)
