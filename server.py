"""
ETH Escrow Payment Gateway — HTTP server
Flask application exposing the escrow orchestrator.

Payment statuses: pending_deposit -> deposit_initiated -> deposited
                  -> release_initiated -> released | refund_initiated -> refunded
"""

from flask import Flask, request, jsonify, g
from models import db
from config import Config
from core.deadline import Deadline
from core.errors import EscrowError, InvalidInput
from services.escrow_orchestrator import get_orchestrator

import logging
import uuid

# ---------------------------------------------------------------------------
# Structured logging setup
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """Produce valid JSON log lines even when message contains quotes/newlines."""
    def format(self, record):
        import json as _json
        from flask import has_request_context
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            rid = getattr(g, 'request_id', None)
            if rid:
                entry["request_id"] = rid
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return _json.dumps(entry)


_log_handler = logging.StreamHandler()
_log_handler.setFormatter(_JsonFormatter())
logging.basicConfig(level=logging.INFO, handlers=[_log_handler])
logger = logging.getLogger('gateway')

# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

app = Flask(__name__)
app.config.from_object(Config)
db.init_app(app)

logger.info("Starting ETH escrow payment gateway (mode=%s)", Config.PAYMENT_MODE)
if 'sqlite' in Config.SQLALCHEMY_DATABASE_URI:
    logger.warning("SQLite detected — the deposit conditional update is only safe "
                   "under a single writer. Use PostgreSQL for production deployments.")

# Startup guard — reject SQLite and incomplete chain settings in production
Config.validate_production()

with app.app_context():
    try:
        db.create_all()
        logger.info("Database tables created / verified")
    except Exception as e:
        logger.critical("Database init failed: %s", e)


# Correlation ID — attach unique request ID to every request
@app.before_request
def _attach_request_id():
    g.request_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())


@app.after_request
def _add_request_id_header(response):
    rid = getattr(g, 'request_id', None)
    if rid:
        response.headers['X-Request-ID'] = rid
    return response


@app.errorhandler(EscrowError)
def _handle_escrow_error(e):
    if e.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.path, e.message)
    else:
        logger.warning("%s %s rejected (%s): %s", request.method, request.path, e.code, e.message)
    return jsonify(e.to_dict()), e.http_status


def _mutating_deadline():
    return Deadline(Config.MUTATING_TIMEOUT_SECONDS)


def _read_deadline():
    return Deadline(Config.READ_TIMEOUT_SECONDS)


def _job_id_arg():
    job_id = request.args.get('job_id')
    if job_id is None:
        data = request.get_json(silent=True) or {}
        job_id = data.get('job_id')
    if job_id in (None, ''):
        raise InvalidInput("job_id is required")
    return job_id


def _tx_response(result):
    # 202: broadcast but not yet observed in a block; reconcile later
    code = 200 if result.success else 202
    return jsonify(result.to_dict()), code


# ===================================================================
# GET /health
# ===================================================================


@app.route('/health', methods=['GET'])
def health():
    result = {"status": "healthy", "service": "eth-escrow-gateway", "mode": Config.PAYMENT_MODE}
    return jsonify(result), 200


# ===================================================================
# POST /post-job — fund escrow for an application
# ===================================================================


@app.route('/post-job', methods=['POST'])
def post_job():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidInput("request body must be a JSON object")
    missing = [f for f in ('job_id', 'freelancer_address', 'usd_amount', 'client_address')
               if data.get(f) in (None, '')]
    if missing:
        raise InvalidInput(f"missing required fields: {', '.join(missing)}")

    result = get_orchestrator().fund_escrow(
        data['job_id'],
        data['freelancer_address'],
        data['usd_amount'],
        data['client_address'],
        deadline=_mutating_deadline(),
    )
    return _tx_response(result)


# ===================================================================
# POST /complete-job, /cancel-job — release or refund
# ===================================================================


@app.route('/complete-job', methods=['POST'])
def complete_job():
    result = get_orchestrator().complete_escrow(_job_id_arg(), deadline=_mutating_deadline())
    return _tx_response(result)


@app.route('/cancel-job', methods=['POST'])
def cancel_job():
    result = get_orchestrator().cancel_escrow(_job_id_arg(), deadline=_mutating_deadline())
    return _tx_response(result)


# ===================================================================
# Status and price reads
# ===================================================================


@app.route('/job-status', methods=['GET'])
def job_status():
    record = get_orchestrator().get_status(_job_id_arg())
    return jsonify(record.to_dict()), 200


@app.route('/chain-status', methods=['GET'])
def chain_status():
    state = get_orchestrator().chain_status(_job_id_arg(), deadline=_read_deadline())
    return jsonify(state.to_dict()), 200


@app.route('/tx-status', methods=['GET'])
def tx_status():
    tx_hash = request.args.get('tx_hash', '')
    state = get_orchestrator().transaction_state(tx_hash, deadline=_read_deadline())
    return jsonify({"tx_hash": tx_hash, "state": state}), 200


@app.route('/job-event-tx', methods=['GET'])
def job_event_tx():
    job_id = _job_id_arg()
    event = request.args.get('event', '')
    if not event:
        raise InvalidInput("event is required")
    tx_hash = get_orchestrator().job_event_tx(
        job_id, event,
        client=request.args.get('client'), freelancer=request.args.get('freelancer'),
        deadline=_read_deadline(),
    )
    return jsonify({"job_id": int(job_id), "event": event, "tx_hash": tx_hash}), 200


@app.route('/eth-price', methods=['GET'])
def eth_price():
    price = get_orchestrator().get_eth_usd_price(deadline=_read_deadline())
    return jsonify({"eth_usd_price": str(price)}), 200


# ===================================================================
# Reconciliation and confirmation
# ===================================================================


@app.route('/reconcile', methods=['POST'])
def reconcile():
    report = get_orchestrator().reconcile(_job_id_arg(), deadline=_mutating_deadline())
    return jsonify(report.to_dict()), 200


@app.route('/confirm-deposit', methods=['POST'])
def confirm_deposit():
    result = get_orchestrator().confirm_deposit(_job_id_arg(), deadline=_mutating_deadline())
    return jsonify(result), 200


@app.route('/confirm-release', methods=['POST'])
def confirm_release():
    result = get_orchestrator().confirm_release(_job_id_arg(), deadline=_mutating_deadline())
    return jsonify(result), 200


# ===================================================================
# POST /verify-deposit — client-signed funding
# ===================================================================


@app.route('/verify-deposit', methods=['POST'])
def verify_deposit():
    data = request.get_json(silent=True) or {}
    if not data.get('job_id') or not data.get('tx_hash'):
        raise InvalidInput("job_id and tx_hash are required")
    result = get_orchestrator().verify_and_record_deposit(
        data['job_id'], data['tx_hash'], deadline=_mutating_deadline(),
    )
    return jsonify(result), 200


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

if __name__ == '__main__':
    app.run(port=Config.SERVER_PORT, debug=False)
