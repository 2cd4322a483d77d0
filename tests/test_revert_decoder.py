"""Unit tests for revert reason decoding."""
from services.revert_decoder import (
    CustomErrorDecoder, ErrorStringDecoder, KeywordDecoder, MessagePatternDecoder,
    RevertEvidence, UNKNOWN_REASON, decode_revert,
)
from tests.helpers.chain_helpers import custom_error_data, encode_error_string


def test_error_string_decodes_message():
    evidence = RevertEvidence(data=encode_error_string("JobAlreadyCompleted"))
    assert decode_revert(evidence) == "JobAlreadyCompleted"


def test_error_string_from_hex_return_data():
    data = '0x' + encode_error_string("Job already exists").hex()
    assert decode_revert(RevertEvidence.from_return_data(data)) == "Job already exists"


def test_error_string_truncated_data_is_no_match():
    data = encode_error_string("JobAlreadyCompleted")[:60]
    assert ErrorStringDecoder().decode(RevertEvidence(data=data)) is None


def test_custom_error_selector():
    evidence = RevertEvidence(data=custom_error_data("NotJobClient"))
    assert decode_revert(evidence) == "NotJobClient"


def test_unknown_selector_is_no_match():
    assert CustomErrorDecoder().decode(RevertEvidence(data=b'\xde\xad\xbe\xef')) is None


def test_exception_data_attribute_is_used():
    class _NodeError(Exception):
        pass

    exc = _NodeError("execution reverted")
    exc.data = '0x' + custom_error_data("PaymentAlreadyReleased").hex()
    assert decode_revert(RevertEvidence.from_exception(exc)) == "PaymentAlreadyReleased"


def test_message_patterns():
    decoder = MessagePatternDecoder()
    assert decoder.decode(RevertEvidence(message="execution reverted: JobNotCancelable")) == "JobNotCancelable"
    assert decoder.decode(RevertEvidence(message="VM Exception: revert 'Only client'")) == "Only client"
    assert decoder.decode(RevertEvidence(message="nonce too low")) is None


def test_keyword_fallbacks():
    decoder = KeywordDecoder()
    assert decoder.decode(RevertEvidence(message="err: insufficient funds for gas * price + value")) \
        == "InsufficientEthSent"
    assert decoder.decode(RevertEvidence(message="Job already exists")) == "JobAlreadyExists"


def test_abi_decoding_takes_priority_over_message():
    evidence = RevertEvidence(
        data=encode_error_string("NotJobClient"),
        message="execution reverted: something else",
    )
    assert decode_revert(evidence) == "NotJobClient"


def test_nothing_decodable_returns_unknown():
    assert decode_revert(RevertEvidence()) == UNKNOWN_REASON
    assert decode_revert(RevertEvidence(data=b'\x00', message="boom")) == UNKNOWN_REASON
