"""Unit tests for the peer gateway HTTP client."""
import pytest
import requests
from unittest.mock import MagicMock

from core.deadline import Deadline
from core.errors import DeadlineExceeded, PeerRequestFailed
from services.peer_client import PeerClient
from tests.helpers.chain_helpers import CLIENT, FREELANCER


class _Clock:
    now = 0.0

    def __call__(self):
        return self.now


def _response(status=200, body=None, text=''):
    resp = MagicMock()
    resp.status_code = status
    resp.reason = 'Reason'
    resp.text = text
    if body is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = body
    return resp


def _client(resp):
    session = MagicMock()
    session.request.return_value = resp
    return PeerClient('http://peer.test:8081/', session=session)


def test_post_job_sends_original_payload():
    client = _client(_response(body={"tx_hash": "0x1", "success": True}))
    assert client.post_job(42, FREELANCER, "150.00", CLIENT)['tx_hash'] == "0x1"
    method, url = client.session.request.call_args[0]
    kwargs = client.session.request.call_args[1]
    assert method == 'POST'
    assert url == 'http://peer.test:8081/post-job'
    assert kwargs['json'] == {"job_id": 42, "freelancer_address": FREELANCER,
                              "usd_amount": "150.00", "client_address": CLIENT}
    assert kwargs['timeout'] == 30


def test_query_parameters_for_job_routes():
    client = _client(_response(body={}))
    client.complete_job(42)
    assert client.session.request.call_args[1]['params'] == {"job_id": 42}


def test_timeout_bounded_by_deadline():
    clock = _Clock()
    client = _client(_response(body={"eth_usd_price": "1"}))
    client.eth_price(deadline=Deadline(10, clock=clock))
    assert client.session.request.call_args[1]['timeout'] == 10


def test_expired_deadline_skips_request():
    clock = _Clock()
    deadline = Deadline(1, clock=clock)
    clock.now = 2
    client = _client(_response(body={}))
    with pytest.raises(DeadlineExceeded):
        client.health(deadline=deadline)
    client.session.request.assert_not_called()


def test_client_error_is_definitive():
    client = _client(_response(409, {"error": "cannot complete job", "code": "invalid_state"}))
    with pytest.raises(PeerRequestFailed) as exc:
        client.complete_job(42)
    assert exc.value.definitive is True
    assert exc.value.status_code == 409
    assert "cannot complete job" in exc.value.message


def test_client_error_keeps_peer_code():
    client = _client(_response(409, {"error": "job 42 already exists", "code": "job_already_funded",
                                     "chain_status": "deposited"}))
    with pytest.raises(PeerRequestFailed) as exc:
        client.post_job(42, FREELANCER, "150.00", CLIENT)
    assert exc.value.peer_code == "job_already_funded"
    assert exc.value.body["chain_status"] == "deposited"


def test_job_event_lookup_drops_empty_parties():
    client = _client(_response(body={"tx_hash": None}))
    client.job_event_tx(42, "JobCancelled", client=CLIENT)
    method, url = client.session.request.call_args[0]
    assert (method, url) == ("GET", "http://peer.test:8081/job-event-tx")
    assert client.session.request.call_args.kwargs["params"] == {
        "job_id": 42, "event": "JobCancelled", "client": CLIENT}


def test_server_error_is_retryable():
    client = _client(_response(502, text='Bad Gateway'))
    with pytest.raises(PeerRequestFailed) as exc:
        client.job_status(42)
    assert exc.value.definitive is False


def test_transport_error_wrapped():
    session = MagicMock()
    session.request.side_effect = requests.ConnectionError("refused")
    client = PeerClient('http://peer.test', session=session)
    with pytest.raises(PeerRequestFailed) as exc:
        client.eth_price()
    assert exc.value.definitive is False


def test_base_url_required():
    with pytest.raises(ValueError):
        PeerClient('')
