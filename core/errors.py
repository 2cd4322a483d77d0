"""
Error taxonomy for the escrow gateway.

Every error carries an HTTP status, a stable code and a `definitive` flag.
Definitive errors are business-rule rejections: retrying them elsewhere
(e.g. through the delegated peer in hybrid mode) cannot change the answer.
"""


class EscrowError(Exception):
    http_status = 500
    code = 'escrow_error'
    definitive = False

    def __init__(self, message=None, **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


# --- Input errors -----------------------------------------------------------

class InvalidInput(EscrowError):
    http_status = 400
    code = 'invalid_input'
    definitive = True


class InvalidAmount(InvalidInput):
    code = 'invalid_amount'


class InvalidAddress(InvalidInput):
    code = 'invalid_address'


# --- Precondition errors ----------------------------------------------------

class PreconditionError(EscrowError):
    http_status = 409
    code = 'precondition_failed'
    definitive = True


class ApplicationNotFound(PreconditionError):
    http_status = 404
    code = 'application_not_found'


class ApplicationNotReady(PreconditionError):
    http_status = 400
    code = 'application_not_ready'


class AddressMismatch(PreconditionError):
    http_status = 400
    code = 'address_mismatch'


class AmountMismatch(PreconditionError):
    http_status = 400
    code = 'amount_mismatch'


class InvalidStateForOperation(PreconditionError):
    code = 'invalid_state'


class JobAlreadyFunded(PreconditionError):
    code = 'job_already_funded'

    def __init__(self, job_id, status):
        super().__init__(
            f"job {job_id} already exists in escrow contract with status '{status}'",
            job_id=job_id, chain_status=status,
        )
        self.status = status


# --- Resource errors --------------------------------------------------------

class InsufficientFunds(EscrowError):
    http_status = 402
    code = 'insufficient_funds'

    def __init__(self, required, available, value=None, gas=None):
        super().__init__(
            f"insufficient balance: need {required} wei "
            f"(value: {value} + gas: {gas}) but only have {available} wei",
            required=str(required), available=str(available),
        )
        self.required = required
        self.available = available


class PriceUnavailable(EscrowError):
    http_status = 503
    code = 'price_unavailable'


# --- Chain / transport errors ----------------------------------------------

class ChainUnavailable(EscrowError):
    http_status = 502
    code = 'chain_unavailable'


class NetworkMismatch(ChainUnavailable):
    code = 'network_mismatch'

    def __init__(self, expected, actual):
        super().__init__(
            f"RPC node is on chain id {actual}, configured NETWORK_ID is {expected}",
            expected_chain_id=expected, actual_chain_id=actual,
        )


class TransactionReverted(EscrowError):
    http_status = 422
    code = 'transaction_reverted'
    definitive = True

    def __init__(self, reason, tx_hash=None):
        super().__init__(f"transaction reverted: {reason}", reason=reason, tx_hash=tx_hash)
        self.reason = reason
        self.tx_hash = tx_hash


class DeadlineExceeded(EscrowError):
    http_status = 504
    code = 'deadline_exceeded'
    definitive = True

    def __init__(self, operation, tx_hash=None):
        msg = f"deadline exceeded during {operation}"
        if tx_hash:
            msg += f" (tx {tx_hash} was broadcast and may still be mined; reconcile later)"
        super().__init__(msg, tx_hash=tx_hash)
        self.tx_hash = tx_hash


class VerificationFailed(EscrowError):
    http_status = 400
    code = 'verification_failed'
    definitive = True

    def __init__(self, reason, message):
        super().__init__(message, reason=reason)
        self.reason = reason


class PeerRequestFailed(EscrowError):
    http_status = 502
    code = 'peer_request_failed'

    def __init__(self, message, status_code=None, definitive=False, body=None):
        super().__init__(message, peer_status=status_code)
        self.status_code = status_code
        self.body = body if isinstance(body, dict) else {}
        self.peer_code = self.body.get('code')
        # A 4xx from the peer is its own business-rule answer
        self.definitive = definitive


class ModeUnavailable(EscrowError):
    http_status = 501
    code = 'mode_unavailable'


class LedgerError(EscrowError):
    http_status = 500
    code = 'ledger_error'
