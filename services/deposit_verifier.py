"""
Verification of a client-signed funding transaction.

The client broadcasts postJob itself and hands us the hash. Nothing is
written to the Ledger until every check below passes.
"""
import logging
from dataclasses import dataclass

from web3.exceptions import TransactionNotFound

from core.errors import VerificationFailed
from services.price_converter import usd_to_fixed8, within_tolerance

logger = logging.getLogger('gateway.verifier')


@dataclass
class DepositEvidence:
    tx_hash: str
    job_id: int
    client_address: str
    freelancer_address: str
    value_wei: int
    required_wei: int
    usd_fixed8: int
    block_number: int

    def to_dict(self) -> dict:
        return {
            "tx_hash": self.tx_hash,
            "job_id": self.job_id,
            "client_address": self.client_address,
            "freelancer_address": self.freelancer_address,
            "value_wei": str(self.value_wei),
            "required_wei": str(self.required_wei),
            "block_number": self.block_number,
        }


def _same_address(a, b) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


class DepositVerifier:
    def __init__(self, chain, converter):
        self.chain = chain
        self.converter = converter

    def verify(self, tx_hash: str, job_id: int, client_address: str, freelancer_address: str,
               usd_amount, deadline=None) -> DepositEvidence:
        """Raises VerificationFailed(reason) on the first failing check."""
        try:
            tx, receipt = self.chain.get_transaction(tx_hash)
        except TransactionNotFound:
            raise VerificationFailed('tx_not_found', f"transaction {tx_hash} not found")
        if receipt is None:
            raise VerificationFailed('tx_pending', f"transaction {tx_hash} is not yet mined")
        if receipt.get('status') != 1:
            raise VerificationFailed('tx_reverted', f"transaction {tx_hash} reverted")

        if not _same_address(tx.get('from'), client_address):
            raise VerificationFailed(
                'sender_mismatch', f"sender {tx.get('from')} does not match client {client_address}")
        if not _same_address(tx.get('to'), self.chain.contract_address):
            raise VerificationFailed(
                'recipient_mismatch', f"recipient {tx.get('to')} is not the escrow contract")

        usd8 = usd_to_fixed8(usd_amount)
        required = self.converter.usd_to_wei(usd_amount, deadline=deadline)
        value = int(tx.get('value') or 0)
        if not within_tolerance(value, required):
            raise VerificationFailed(
                'value_mismatch', f"value {value} wei outside 1% of required {required} wei")

        if not self._has_matching_event(receipt, job_id, client_address, freelancer_address, usd8, required):
            raise VerificationFailed(
                'event_mismatch', f"no JobPosted event for job {job_id} matching the expected parties and amounts")

        logger.info("Deposit verified: job=%s tx=%s value=%s required=%s", job_id, tx_hash, value, required)
        return DepositEvidence(
            tx_hash=tx_hash,
            job_id=job_id,
            client_address=tx.get('from'),
            freelancer_address=freelancer_address,
            value_wei=value,
            required_wei=required,
            usd_fixed8=usd8,
            block_number=receipt.get('blockNumber') or 0,
        )

    def _has_matching_event(self, receipt, job_id, client, freelancer, usd8, required) -> bool:
        for event in self.chain.job_posted_events(receipt):
            args = event['args']
            if (args['jobId'] == job_id
                    and _same_address(args['client'], client)
                    and _same_address(args['freelancer'], freelancer)
                    and args['usdAmount'] == usd8
                    and within_tolerance(args['ethAmount'], required)):
                return True
        return False
