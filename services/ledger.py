"""
Payment ledger: read/update of application payment records.

Wraps the applications -> jobs -> users join. The only transactional
primitive the gateway relies on is the conditional UPDATE in
atomic_mark_deposit_initiated(), which guarantees at most one deposit
hash is ever recorded for an application.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased

from core.errors import ApplicationNotFound, ApplicationNotReady, InvalidInput, LedgerError
from core.escrow_types import PaymentStatus, TxKind
from models import db, User, Job, Application

logger = logging.getLogger('gateway.ledger')

_TX_HASH_COLUMNS = {
    TxKind.DEPOSIT: 'escrow_tx_hash_deposit',
    TxKind.RELEASE: 'escrow_tx_hash_release',
    TxKind.REFUND: 'escrow_tx_hash_refund',
}


@dataclass
class PaymentRecord:
    application_id: int
    job_id: int
    client_address: Optional[str]
    freelancer_address: Optional[str]
    usd_amount: Optional[Decimal]
    payment_status: str
    application_status: Optional[str] = None
    tx_hash_deposit: Optional[str] = None
    tx_hash_release: Optional[str] = None
    tx_hash_refund: Optional[str] = None

    def to_dict(self) -> dict:
        body = asdict(self)
        body['usd_amount'] = f"{self.usd_amount:.2f}" if self.usd_amount is not None else None
        return body


class PaymentLedger:
    """SQLAlchemy-backed ledger. Must be used inside an app context."""

    def get_payment_details(self, application_id: int) -> PaymentRecord:
        applicant = aliased(User)
        poster = aliased(User)
        try:
            row = (
                db.session.query(Application, applicant.wallet_address, poster.wallet_address)
                .join(Job, Application.job_id == Job.id)
                .join(applicant, Application.user_id == applicant.id)
                .join(poster, Job.user_id == poster.id)
                .filter(Application.id == application_id)
                .first()
            )
        except SQLAlchemyError as e:
            raise LedgerError(f"error querying application payment details: {e}")
        if row is None:
            raise ApplicationNotFound(f"application {application_id} not found")

        app_row, freelancer_wallet, client_wallet = row
        return PaymentRecord(
            application_id=app_row.id,
            job_id=app_row.escrow_job_id or app_row.id,
            client_address=client_wallet,
            freelancer_address=freelancer_wallet,
            usd_amount=app_row.agreed_usd_amount,
            payment_status=app_row.payment_status or PaymentStatus.PENDING_DEPOSIT,
            application_status=app_row.status,
            tx_hash_deposit=app_row.escrow_tx_hash_deposit,
            tx_hash_release=app_row.escrow_tx_hash_release,
            tx_hash_refund=app_row.escrow_tx_hash_refund,
        )

    def validate_readiness(self, application_id: int) -> PaymentRecord:
        """Both wallets set and an agreed amount > 0. Returns the record."""
        record = self.get_payment_details(application_id)
        if not record.freelancer_address:
            raise ApplicationNotReady("applicant wallet address not set")
        if not record.client_address:
            raise ApplicationNotReady("poster wallet address not set")
        if record.usd_amount is None or record.usd_amount <= 0:
            raise ApplicationNotReady("agreed USD amount not set or invalid")
        return record

    def check_idempotency(self, application_id: int) -> tuple:
        """Returns (already_initiated, existing_tx_hash)."""
        try:
            row = (
                db.session.query(Application.payment_status, Application.escrow_tx_hash_deposit)
                .filter(Application.id == application_id)
                .first()
            )
        except SQLAlchemyError as e:
            raise LedgerError(f"error checking escrow idempotency: {e}")
        if row is None:
            raise ApplicationNotFound(f"application {application_id} not found")

        status, tx_hash = row
        if tx_hash:
            return True, tx_hash
        if status and status != PaymentStatus.PENDING_DEPOSIT:
            return True, ''
        return False, ''

    def atomic_mark_deposit_initiated(self, application_id: int, tx_hash: str) -> str:
        """Record the deposit hash only if still pending with no hash.

        Returns the hash that is recorded afterwards: ours, or the first
        writer's when another call won the race.
        """
        try:
            rows = (
                Application.query
                .filter(
                    Application.id == application_id,
                    or_(
                        Application.payment_status == PaymentStatus.PENDING_DEPOSIT,
                        Application.payment_status == '',
                        Application.payment_status.is_(None),
                    ),
                    or_(
                        Application.escrow_tx_hash_deposit.is_(None),
                        Application.escrow_tx_hash_deposit == '',
                    ),
                )
                .update({
                    'payment_status': PaymentStatus.DEPOSIT_INITIATED,
                    'escrow_tx_hash_deposit': tx_hash,
                    'escrow_job_id': application_id,
                    'updated_at': datetime.utcnow(),
                }, synchronize_session=False)
            )
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise LedgerError(f"error updating application for escrow deposit: {e}")

        if rows:
            logger.info("Deposit initiated for application %s: tx=%s", application_id, tx_hash)
            return tx_hash

        existing = (
            db.session.query(Application.escrow_tx_hash_deposit)
            .filter(Application.id == application_id)
            .first()
        )
        if existing is None:
            raise ApplicationNotFound(f"application {application_id} not found")
        if existing[0]:
            logger.info("Escrow deposit already initiated for application %s (existing tx: %s)",
                        application_id, existing[0])
            return existing[0]
        raise LedgerError("failed to initiate escrow deposit - application may be in wrong state")

    def update_status(self, application_id: int, status: str, tx_hash=None, tx_kind=TxKind.NONE):
        if status not in PaymentStatus.ALL:
            raise InvalidInput(f"unknown payment status '{status}'")
        values = {'payment_status': status, 'updated_at': datetime.utcnow()}
        if tx_kind != TxKind.NONE:
            column = _TX_HASH_COLUMNS.get(tx_kind)
            if column is None:
                raise InvalidInput(f"unknown transaction kind '{tx_kind}'")
            values[column] = tx_hash

        try:
            rows = (
                Application.query
                .filter(Application.id == application_id)
                .update(values, synchronize_session=False)
            )
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise LedgerError(f"error updating payment status: {e}")
        if not rows:
            raise ApplicationNotFound(f"application {application_id} not found")
        logger.info("Payment status for application %s -> %s (%s tx=%s)",
                    application_id, status, tx_kind, tx_hash)
