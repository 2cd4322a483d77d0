"""
Revert reason decoding.

A reverted transaction is replayed as an eth_call; the node answers with
raw revert data, an error message, or both. Decoders are tried in order and
each returns a reason string or None. Decoding never raises.
"""
from dataclasses import dataclass
from typing import Optional

from web3 import Web3

from services.escrow_abi import CUSTOM_ERRORS

ERROR_STRING_SELECTOR = bytes.fromhex('08c379a0')  # Error(string)
UNKNOWN_REASON = "execution reverted (unknown reason)"


@dataclass(frozen=True)
class RevertEvidence:
    data: Optional[bytes] = None
    message: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: Exception):
        return cls(data=_to_bytes(getattr(exc, 'data', None)), message=str(exc))

    @classmethod
    def from_return_data(cls, data):
        return cls(data=_to_bytes(data))


def _to_bytes(value) -> Optional[bytes]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        hex_str = value[2:] if value.startswith('0x') else value
        try:
            return bytes.fromhex(hex_str)
        except ValueError:
            return None
    return None


class ErrorStringDecoder:
    """Standard ABI Error(string): selector, 32-byte offset, 32-byte length, message."""

    def decode(self, evidence: RevertEvidence):
        data = evidence.data
        if not data or len(data) < 68 or data[:4] != ERROR_STRING_SELECTOR:
            return None
        length = int.from_bytes(data[36:68], 'big')
        if len(data) < 68 + length:
            return None
        return data[68:68 + length].decode('utf-8', errors='replace')


class CustomErrorDecoder:
    """Parameterless custom errors declared in the escrow ABI, matched by selector."""

    def __init__(self, error_names=CUSTOM_ERRORS):
        self._selectors = {bytes(Web3.keccak(text=f"{name}()")[:4]): name for name in error_names}

    def decode(self, evidence: RevertEvidence):
        data = evidence.data
        if not data or len(data) < 4:
            return None
        return self._selectors.get(bytes(data[:4]))


class MessagePatternDecoder:
    """Node-specific error text, e.g. 'execution reverted: NotJobClient'."""

    PATTERNS = ("execution reverted: ", "revert ")

    def decode(self, evidence: RevertEvidence):
        message = evidence.message or ''
        for pattern in self.PATTERNS:
            if pattern in message:
                reason = message.split(pattern, 1)[1].strip().strip('"\'')
                if reason:
                    return reason
        return None


class KeywordDecoder:
    KEYWORDS = (
        ("insufficient funds", "InsufficientEthSent"),
        ("Job already exists", "JobAlreadyExists"),
    )

    def decode(self, evidence: RevertEvidence):
        message = evidence.message or ''
        for keyword, reason in self.KEYWORDS:
            if keyword in message:
                return reason
        return None


DEFAULT_DECODERS = (
    ErrorStringDecoder(),
    CustomErrorDecoder(),
    MessagePatternDecoder(),
    KeywordDecoder(),
)


def decode_revert(evidence: RevertEvidence, decoders=DEFAULT_DECODERS) -> str:
    for decoder in decoders:
        reason = decoder.decode(evidence)
        if reason:
            return reason
    return UNKNOWN_REASON
