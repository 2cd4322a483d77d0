"""
Escrow contract client.
Handles: fee/nonce authorization, balance pre-flight, signing and broadcast,
finality wait with bounded retries, revert reason recovery, job reads.

The signing key and its nonce sequence are owned here: nonce fetch, build,
sign and send run under one lock. Receipt waiting runs outside it.
"""
import logging
import threading
import time
from contextlib import contextmanager

from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound
from web3.logs import DISCARD

from core.deadline import Deadline
from core.errors import (
    ChainUnavailable, DeadlineExceeded, EscrowError, InsufficientFunds, InvalidAddress, InvalidInput,
    NetworkMismatch,
)
from core.escrow_types import FinalityState, JobDetails, TransactionOutcome, TxState
from services.escrow_abi import ESCROW_ABI, EVENT_NAMES
from services.revert_decoder import RevertEvidence, UNKNOWN_REASON, decode_revert

logger = logging.getLogger('gateway.chain')

DEFAULT_GAS_LIMIT = 300000
LEGACY_GAS_PRICE_BUFFER = 110  # percent
RPC_REQUEST_TIMEOUT = 30

# Read errors that mean "no such job" rather than a broken node
_NOT_FOUND_MARKERS = ("job does not exist", "Job not found", "execution reverted")


def to_checksum(address: str) -> str:
    if not address or not Web3.is_address(address):
        raise InvalidAddress(f"invalid address: {address!r}")
    return Web3.to_checksum_address(address)


class ChainClient:
    def __init__(self, rpc_url, contract_address, private_key, gas_limit=DEFAULT_GAS_LIMIT,
                 wait_timeout=60, max_attempts=3, poll_latency=2.0, from_block=0, w3=None,
                 sleep=time.sleep):
        if not private_key:
            raise ValueError("private key is required")
        self.rpc_url = rpc_url
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={'timeout': RPC_REQUEST_TIMEOUT}))
        self.contract_address = to_checksum(contract_address)
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=ESCROW_ABI)
        self._account = Account.from_key(private_key)
        self.gas_limit = gas_limit or DEFAULT_GAS_LIMIT
        self.wait_timeout = wait_timeout
        self.max_attempts = max_attempts
        self.poll_latency = poll_latency
        self.from_block = from_block
        self._sleep = sleep
        self._chain_id = None
        self._tx_lock = threading.Lock()
        logger.info("Chain client ready: contract=%s account=%s", self.contract_address, self.address)

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            with self._rpc("chain id"):
                self._chain_id = self.w3.eth.chain_id
        return self._chain_id

    def is_connected(self) -> bool:
        try:
            return bool(self.w3.is_connected())
        except Exception as e:
            logger.warning("RPC connectivity check failed: %s", e)
            return False

    @contextmanager
    def _rpc(self, operation):
        try:
            yield
        except EscrowError:
            raise
        except Exception as e:
            raise ChainUnavailable(f"{operation} failed: {e}")

    # --- Fees & authorization -------------------------------------------------

    def _fee_fields(self) -> dict:
        block = self.w3.eth.get_block('latest')
        base_fee = block.get('baseFeePerGas')
        if base_fee is not None:
            tip = self.w3.eth.max_priority_fee
            return {'maxPriorityFeePerGas': tip, 'maxFeePerGas': 2 * base_fee + tip}
        return {'gasPrice': self.w3.eth.gas_price * LEGACY_GAS_PRICE_BUFFER // 100}

    def build_authorization(self) -> dict:
        """Nonce, chain id, gas limit and fee fields for the next transaction."""
        with self._rpc("transaction authorization"):
            params = {
                'from': self.address,
                'nonce': self.w3.eth.get_transaction_count(self.address, 'pending'),
                'chainId': self.chain_id,
                'gas': self.gas_limit,
            }
            params.update(self._fee_fields())
        return params

    def estimate_total_cost(self, gas_limit=None) -> int:
        """(baseFee + tip) or the buffered legacy gas price, times the gas limit."""
        gas_limit = gas_limit or self.gas_limit
        with self._rpc("gas price estimation"):
            block = self.w3.eth.get_block('latest')
            base_fee = block.get('baseFeePerGas')
            if base_fee is not None:
                price = base_fee + self.w3.eth.max_priority_fee
            else:
                price = self.w3.eth.gas_price * LEGACY_GAS_PRICE_BUFFER // 100
        return price * gas_limit

    def get_balance(self, address=None) -> int:
        with self._rpc("balance read"):
            return self.w3.eth.get_balance(to_checksum(address) if address else self.address)

    def _ensure_balance(self, value: int, gas_limit: int):
        try:
            gas_cost = self.estimate_total_cost(gas_limit)
        except ChainUnavailable as e:
            logger.warning("Could not calculate gas cost, checking value only: %s", e)
            gas_cost = 0
        try:
            balance = self.get_balance()
        except ChainUnavailable as e:
            logger.warning("Could not check wallet balance, proceeding: %s", e)
            return
        required = value + gas_cost
        if balance < required:
            raise InsufficientFunds(required, balance, value=value, gas=gas_cost)

    # --- Submission ------------------------------------------------------------

    def _sign(self, tx: dict) -> bytes:
        return self._account.sign_transaction(tx).raw_transaction

    def _submit(self, fn, operation, value=0, deadline=None, check_balance=False) -> str:
        deadline = deadline or Deadline.none()
        with self._tx_lock:
            deadline.check(operation)
            params = self.build_authorization()
            if check_balance:
                self._ensure_balance(value, params['gas'])
            params['value'] = value
            with self._rpc(f"{operation} build"):
                tx = fn.build_transaction(params)
            deadline.check(operation)
            raw = self._sign(tx)
            with self._rpc(f"{operation} broadcast"):
                tx_hash = Web3.to_hex(self.w3.eth.send_raw_transaction(raw))
        logger.info("%s submitted: tx=%s nonce=%s value=%s", operation, tx_hash, params['nonce'], value)
        return tx_hash

    def submit_funding_transaction(self, job_id: int, freelancer: str, usd_fixed8: int,
                                   client: str, value_wei: int, deadline=None) -> str:
        fn = self.contract.functions.postJob(
            job_id, to_checksum(freelancer), usd_fixed8, to_checksum(client),
        )
        return self._submit(fn, 'postJob', value=value_wei, deadline=deadline, check_balance=True)

    def submit_completion(self, job_id: int, deadline=None) -> str:
        return self._submit(self.contract.functions.markJobCompleted(job_id), 'markJobCompleted',
                            deadline=deadline)

    def submit_cancellation(self, job_id: int, deadline=None) -> str:
        return self._submit(self.contract.functions.cancelJob(job_id), 'cancelJob', deadline=deadline)

    # --- Finality ---------------------------------------------------------------

    def wait_for_finality(self, tx_hash: str, max_attempts=None, deadline=None) -> TransactionOutcome:
        """Poll for inclusion; `2**(attempt-1)` s backoff between failed polls.

        Returns UNCONFIRMED after exhausting attempts. Raises DeadlineExceeded
        (carrying the hash) when the deadline runs out first.
        """
        deadline = deadline or Deadline.none()
        attempts = max_attempts or self.max_attempts
        last_error = None
        for attempt in range(1, attempts + 1):
            deadline.check('finality wait', tx_hash=tx_hash)
            logger.info("Attempt %d/%d: waiting for transaction %s", attempt, attempts, tx_hash)
            try:
                receipt = self.w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=deadline.bound(self.wait_timeout), poll_latency=self.poll_latency,
                )
            except Exception as e:
                last_error = e
                logger.warning("Attempt %d/%d failed for %s: %s", attempt, attempts, tx_hash, e)
                if attempt == attempts:
                    break
                delay = 2 ** (attempt - 1)
                remaining = deadline.remaining()
                if remaining is not None and remaining <= delay:
                    raise DeadlineExceeded('finality wait', tx_hash=tx_hash)
                self._sleep(delay)
                continue
            return self._outcome_from_receipt(tx_hash, receipt)

        logger.error("Transaction %s unconfirmed after %d attempts: %s", tx_hash, attempts, last_error)
        return TransactionOutcome(
            tx_hash=tx_hash,
            state=FinalityState.UNCONFIRMED,
            error_detail=f"failed after {attempts} attempts: {last_error}",
        )

    def _outcome_from_receipt(self, tx_hash, receipt) -> TransactionOutcome:
        block_number = receipt.get('blockNumber') or 0
        gas_used = receipt.get('gasUsed') or 0
        if receipt.get('status') == 1:
            logger.info("Transaction %s mined in block %s (gas used %s)", tx_hash, block_number, gas_used)
            return TransactionOutcome(tx_hash, FinalityState.MINED_SUCCESS, block_number, gas_used)
        reason = self.decode_revert_reason(tx_hash, receipt=receipt)
        logger.warning("Transaction %s reverted in block %s: %s", tx_hash, block_number, reason)
        return TransactionOutcome(tx_hash, FinalityState.MINED_REVERTED, block_number, gas_used,
                                  error_detail=reason)

    def decode_revert_reason(self, tx_hash: str, receipt=None) -> str:
        """Replay the transaction as a call at its block to recover the revert data."""
        try:
            if receipt is None:
                receipt = self.w3.eth.get_transaction_receipt(tx_hash)
            tx = self.w3.eth.get_transaction(tx_hash)
        except Exception as e:
            logger.debug("Could not load transaction %s for revert decoding: %s", tx_hash, e)
            return UNKNOWN_REASON

        call = {
            'from': tx['from'],
            'to': tx['to'],
            'value': tx.get('value', 0),
            'data': tx.get('input'),
            'gas': tx.get('gas'),
        }
        if tx.get('maxFeePerGas') is not None:
            call['maxFeePerGas'] = tx['maxFeePerGas']
            call['maxPriorityFeePerGas'] = tx.get('maxPriorityFeePerGas')
        elif tx.get('gasPrice') is not None:
            call['gasPrice'] = tx['gasPrice']

        try:
            result = self.w3.eth.call(call, block_identifier=receipt.get('blockNumber'))
        except Exception as e:
            return decode_revert(RevertEvidence.from_exception(e))
        return decode_revert(RevertEvidence.from_return_data(result))

    # --- Reads ------------------------------------------------------------------

    def _read_job(self, job_id: int) -> JobDetails:
        client, freelancer, usd_amount, eth_amount, is_completed, is_paid = \
            self.contract.functions.getJobDetails(job_id).call()
        return JobDetails(client, freelancer, usd_amount, eth_amount, is_completed, is_paid)

    def get_job_details(self, job_id: int, deadline=None) -> JobDetails:
        if deadline is not None:
            deadline.check('job details read')
        with self._rpc(f"job {job_id} read"):
            return self._read_job(job_id)

    def job_exists(self, job_id: int, deadline=None) -> bool:
        if deadline is not None:
            deadline.check('job existence check')
        try:
            details = self._read_job(job_id)
        except ContractLogicError as e:
            logger.debug("Job %s not found: %s", job_id, e)
            return False
        except Exception as e:
            if any(marker in str(e) for marker in _NOT_FOUND_MARKERS):
                return False
            raise ChainUnavailable(f"failed to check job existence: {e}")
        if details.is_ghost:
            logger.info("Job %s reads as an all-zero record, treating as non-existent", job_id)
            return False
        return True

    def get_eth_usd_price(self, deadline=None) -> int:
        if deadline is not None:
            deadline.check('price read')
        with self._rpc("ETH/USD price read"):
            return self.contract.functions.getLatestEthUsd().call()

    def get_transaction(self, tx_hash: str):
        """Returns (tx, receipt); receipt is None while pending. Raises TransactionNotFound."""
        try:
            tx = self.w3.eth.get_transaction(tx_hash)
            try:
                receipt = self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                receipt = None
        except TransactionNotFound:
            raise
        except Exception as e:
            raise ChainUnavailable(f"transaction {tx_hash} read failed: {e}")
        return tx, receipt

    def transaction_state(self, tx_hash: str, deadline=None) -> str:
        if deadline is not None:
            deadline.check('transaction state read')
        try:
            tx, receipt = self.get_transaction(tx_hash)
        except TransactionNotFound:
            return TxState.UNKNOWN
        if receipt is None:
            return TxState.PENDING
        return TxState.SUCCESS if receipt.get('status') == 1 else TxState.REVERTED

    def job_posted_events(self, receipt) -> list:
        with self._rpc("JobPosted log decoding"):
            return list(self.contract.events.JobPosted().process_receipt(receipt, errors=DISCARD))


    def find_job_event_tx(self, event_name: str, job_id: int, client=None, freelancer=None,
                          deadline=None):
        """Hash of the latest `event_name` log emitted for `job_id`, or None.

        jobId is not an indexed input, so logs are narrowed by whichever party
        address the event indexes and then matched on jobId.
        """
        if event_name not in EVENT_NAMES:
            raise InvalidInput(f"unknown escrow event '{event_name}'")
        if deadline is not None:
            deadline.check(f"{event_name} log lookup")
        parties = {'client': client, 'freelancer': freelancer}
        filters = {name: to_checksum(address) for name, address in parties.items()
                   if address and name in EVENT_NAMES[event_name]}

        with self._rpc(f"{event_name} log lookup"):
            logs = getattr(self.contract.events, event_name)().get_logs(
                from_block=self.from_block, to_block='latest', argument_filters=filters or None,
            )
        matches = [log for log in logs if log['args']['jobId'] == job_id]
        if not matches:
            logger.info("No %s log for job %s since block %s", event_name, job_id, self.from_block)
            return None
        return Web3.to_hex(matches[-1]['transactionHash'])

    def verify_network(self, expected_chain_id: int):
        """Refuse a node that serves a different chain than configured."""
        if self.chain_id != expected_chain_id:
            raise NetworkMismatch(expected_chain_id, self.chain_id)
