"""
Shared value types for the escrow gateway.

Payment statuses (off-chain ledger):
    pending_deposit -> deposit_initiated -> deposited -> release_initiated -> released
                                                     \\-> refund_initiated -> refunded
Chain statuses (canonical, derived from contract state):
    not_found < pending_deposit < deposited < completed < released
"""
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional

ZERO_ADDRESS = '0x' + '0' * 40


class PaymentStatus:
    PENDING_DEPOSIT = 'pending_deposit'
    DEPOSIT_INITIATED = 'deposit_initiated'
    DEPOSITED = 'deposited'
    RELEASE_INITIATED = 'release_initiated'
    RELEASED = 'released'
    REFUND_INITIATED = 'refund_initiated'
    REFUNDED = 'refunded'

    ALL = (
        PENDING_DEPOSIT, DEPOSIT_INITIATED, DEPOSITED,
        RELEASE_INITIATED, RELEASED, REFUND_INITIATED, REFUNDED,
    )


class ChainStatus:
    NOT_FOUND = 'not_found'
    PENDING_DEPOSIT = 'pending_deposit'
    DEPOSITED = 'deposited'
    COMPLETED = 'completed'
    RELEASED = 'released'

    ORDER = (NOT_FOUND, PENDING_DEPOSIT, DEPOSITED, COMPLETED, RELEASED)

    @classmethod
    def rank(cls, status: str) -> int:
        return cls.ORDER.index(status)


class TxKind:
    DEPOSIT = 'deposit'
    RELEASE = 'release'
    REFUND = 'refund'
    NONE = 'none'


class TxState:
    SUCCESS = 'success'
    REVERTED = 'reverted'
    PENDING = 'pending'
    UNKNOWN = 'unknown'


class FinalityState(str, Enum):
    MINED_SUCCESS = 'mined_success'
    MINED_REVERTED = 'mined_reverted'
    UNCONFIRMED = 'unconfirmed'


class PaymentMode(str, Enum):
    DIRECT = 'direct'
    DELEGATED = 'http'
    HYBRID = 'hybrid'


@dataclass(frozen=True)
class JobDetails:
    """On-chain job record as returned by getJobDetails()."""
    client: str
    freelancer: str
    usd_amount: int
    eth_amount: int
    is_completed: bool
    is_paid: bool

    @property
    def is_ghost(self) -> bool:
        # Unwritten storage slots read back as all zeroes
        return (
            _is_zero_address(self.client)
            and _is_zero_address(self.freelancer)
            and self.usd_amount == 0
        )


def _is_zero_address(address) -> bool:
    return not address or address.lower() == ZERO_ADDRESS


@dataclass(frozen=True)
class TransactionOutcome:
    tx_hash: str
    state: FinalityState
    block_number: int = 0
    gas_used: int = 0
    error_detail: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.state == FinalityState.MINED_SUCCESS


@dataclass
class TransactionResponse:
    """Wire shape returned by every mutating operation."""
    tx_hash: str
    success: bool
    status: str
    block_number: int = 0
    gas_used: int = 0
    error: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: TransactionOutcome, status: str):
        return cls(
            tx_hash=outcome.tx_hash,
            success=outcome.success,
            status=status,
            block_number=outcome.block_number,
            gas_used=outcome.gas_used,
            error=outcome.error_detail,
        )

    @classmethod
    def from_dict(cls, data: dict):
        return cls(
            tx_hash=data.get('tx_hash') or '',
            success=bool(data.get('success')),
            status=data.get('status') or '',
            block_number=int(data.get('block_number') or 0),
            gas_used=int(data.get('gas_used') or 0),
            error=data.get('error'),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class FundingRequest:
    job_id: int
    freelancer_address: str
    usd_amount: str
    client_address: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ChainJobState:
    job_id: int
    status: str
    details: Optional[JobDetails] = None

    def to_dict(self) -> dict:
        body = {"job_id": self.job_id, "chain_status": self.status}
        if self.details is not None:
            body.update({
                "client_address": self.details.client,
                "freelancer_address": self.details.freelancer,
                "usd_amount_e8": str(self.details.usd_amount),
                "eth_amount_wei": str(self.details.eth_amount),
                "is_completed": self.details.is_completed,
                "is_paid": self.details.is_paid,
            })
        return body


@dataclass
class ReconciliationReport:
    application_id: int
    chain_status: str
    previous_status: str
    payment_status: str
    updated: bool = False
    notes: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)
