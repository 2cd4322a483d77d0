"""
HTTP client for a peer escrow gateway exposing the same surface as server.py.
Used by the delegated strategy and by gateway-cli.py.
"""
import logging

import requests

from core.deadline import Deadline
from core.errors import PeerRequestFailed

logger = logging.getLogger('gateway.peer')

DEFAULT_TIMEOUT = 30


class PeerClient:
    def __init__(self, base_url, timeout=DEFAULT_TIMEOUT, session=None):
        if not base_url:
            raise ValueError("peer base URL is required")
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method, path, deadline=None, params=None, json=None) -> dict:
        deadline = deadline or Deadline.none()
        deadline.check(f"peer {path}")
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, params=params, json=json,
                                        timeout=deadline.bound(self.timeout))
        except requests.RequestException as e:
            logger.warning("Peer request %s %s failed: %s", method, path, e)
            raise PeerRequestFailed(f"peer request to {path} failed: {e}")

        try:
            body = resp.json()
        except ValueError:
            body = {"error": resp.text.strip()}

        if resp.status_code >= 400:
            message = body.get('error') if isinstance(body, dict) else None
            logger.warning("Peer %s %s returned %s: %s", method, path, resp.status_code, message)
            raise PeerRequestFailed(
                f"peer {path} returned {resp.status_code}: {message or resp.reason}",
                status_code=resp.status_code,
                definitive=400 <= resp.status_code < 500,
                body=body,
            )
        return body

    # Mutating
    def post_job(self, job_id, freelancer_address, usd_amount, client_address, deadline=None) -> dict:
        return self._request('POST', '/post-job', deadline, json={
            "job_id": job_id,
            "freelancer_address": freelancer_address,
            "usd_amount": str(usd_amount),
            "client_address": client_address,
        })

    def complete_job(self, job_id, deadline=None) -> dict:
        return self._request('POST', '/complete-job', deadline, params={"job_id": job_id})

    def cancel_job(self, job_id, deadline=None) -> dict:
        return self._request('POST', '/cancel-job', deadline, params={"job_id": job_id})

    def reconcile(self, job_id, deadline=None) -> dict:
        return self._request('POST', '/reconcile', deadline, params={"job_id": job_id})

    def confirm_deposit(self, job_id, deadline=None) -> dict:
        return self._request('POST', '/confirm-deposit', deadline, params={"job_id": job_id})

    def confirm_release(self, job_id, deadline=None) -> dict:
        return self._request('POST', '/confirm-release', deadline, params={"job_id": job_id})

    def verify_deposit(self, job_id, tx_hash, deadline=None) -> dict:
        return self._request('POST', '/verify-deposit', deadline, json={"job_id": job_id, "tx_hash": tx_hash})

    # Reads
    def job_status(self, job_id, deadline=None) -> dict:
        return self._request('GET', '/job-status', deadline, params={"job_id": job_id})

    def chain_status(self, job_id, deadline=None) -> dict:
        return self._request('GET', '/chain-status', deadline, params={"job_id": job_id})

    def tx_status(self, tx_hash, deadline=None) -> dict:
        return self._request('GET', '/tx-status', deadline, params={"tx_hash": tx_hash})

    def job_event_tx(self, job_id, event, client=None, freelancer=None, deadline=None) -> dict:
        params = {"job_id": job_id, "event": event, "client": client, "freelancer": freelancer}
        return self._request('GET', '/job-event-tx', deadline,
                             params={k: v for k, v in params.items() if v is not None})

    def eth_price(self, deadline=None) -> dict:
        return self._request('GET', '/eth-price', deadline)

    def health(self, deadline=None) -> dict:
        return self._request('GET', '/health', deadline)
