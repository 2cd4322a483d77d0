from flask_sqlalchemy import SQLAlchemy
from datetime import datetime

db = SQLAlchemy()


class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(100), nullable=False)
    wallet_address = db.Column(db.String(42), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Job(db.Model):
    """A marketplace job posting. The poster is the escrow client."""
    __tablename__ = 'jobs'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    title = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    poster = db.relationship('User', foreign_keys=[user_id])


class Application(db.Model):
    """An application to a job. Its id doubles as the on-chain escrow job id."""
    __tablename__ = 'applications'
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('jobs.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    status = db.Column(db.String(20), default='pending')
    # Statuses: 'pending', 'accepted', 'rejected', 'completed', 'cancelled'
    agreed_usd_amount = db.Column(db.Numeric(20, 2), nullable=True)
    # Escrow payment state
    payment_status = db.Column(db.String(20), default='pending_deposit', index=True)
    # Statuses: see core.escrow_types.PaymentStatus
    escrow_job_id = db.Column(db.Integer, nullable=True)
    escrow_tx_hash_deposit = db.Column(db.String(100), nullable=True)
    escrow_tx_hash_release = db.Column(db.String(100), nullable=True)
    escrow_tx_hash_refund = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    # Relationships
    job = db.relationship('Job', foreign_keys=[job_id])
    applicant = db.relationship('User', foreign_keys=[user_id])

    __table_args__ = (
        db.Index('ix_applications_payment_status_updated', 'payment_status', 'updated_at'),
    )
