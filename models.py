"""
Deposit Refund Monitor - Database Schema
========================================

Tables backing the deposit verification and automatic refund engine:
- deposit_records: one row per observed qualifying transfer (idempotency key tx_hash + output_index)
- pending_registrations: expected deposits announced by the signup flow
- monitor_state: singleton row with the run flag, ledger checkpoint and statistics
- webhook_registrations: notification sinks (not authoritative for any financial state)
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Boolean, Text,
    UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.orm import DeclarativeBase

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class DepositStatus(Enum):
    """Deposit record lifecycle states"""
    PENDING = "pending"                  # Seen on chain, waiting for confirmations
    VERIFIED = "verified"                # Exact amount, confirmed, ready for refund
    REFUND_PENDING = "refund_pending"    # Claimed by a dispatcher, refund built/submitted
    REFUNDED = "refunded"                # Refund landed, record is final
    FAILED = "failed"                    # Retries exhausted, needs operator action


class RegistrationStatus(Enum):
    PENDING = "pending"
    LINKED = "linked"


class WebhookEventType(Enum):
    DEPOSIT_DETECTED = "deposit_detected"
    REFUND_COMPLETED = "refund_completed"
    REFUND_FAILED = "refund_failed"
    WEBHOOK_TEST = "webhook_test"


# Statuses that carry a refund transaction hash
REFUND_HASH_STATUSES = (DepositStatus.REFUND_PENDING.value, DepositStatus.REFUNDED.value)


# ============================================================================
# RECONCILIATION TABLES
# ============================================================================

class DepositRecord(Base):
    """
    Deposit observed on the ledger and the state of its refund.

    active_user_address mirrors user_address while the record is not REFUNDED and is
    cleared on refund; its unique constraint allows one in-flight registration per identity.
    """
    __tablename__ = "deposit_records"

    id = Column(Integer, primary_key=True)

    # Ledger identity
    tx_hash = Column(String(128), nullable=False)
    output_index = Column(Integer, nullable=False)
    block_height = Column(BigInteger, nullable=True)
    confirmations = Column(Integer, default=0, nullable=False)

    # Identity being registered and the refund destination
    user_address = Column(String(128), nullable=False, index=True)
    active_user_address = Column(String(128), nullable=True, unique=True)
    sender_wallet_address = Column(String(128), nullable=False, index=True)
    is_placeholder = Column(Boolean, default=False, nullable=False)
    registration_id = Column(Integer, nullable=True)

    amount = Column(BigInteger, nullable=False)  # lovelace

    status = Column(String(20), default=DepositStatus.VERIFIED.value, nullable=False, index=True)
    verification_attempts = Column(Integer, default=0, nullable=False)

    # Refund tracking
    refund_attempts = Column(Integer, default=0, nullable=False)
    next_attempt_at = Column(DateTime, nullable=True)
    refund_address = Column(String(128), nullable=True)
    refund_tx_hash = Column(String(128), nullable=True)
    refund_payload = Column(Text, nullable=True)           # signed refund transaction (hex)
    refund_needs_rebuild = Column(Boolean, default=False, nullable=False)
    last_refund_error = Column(Text, nullable=True)
    last_attempted_tx_hash = Column(String(128), nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("tx_hash", "output_index", name="uq_deposit_tx_output"),
        CheckConstraint("amount > 0", name="ck_deposit_amount_positive"),
        CheckConstraint(
            "(refund_tx_hash IS NOT NULL) = (status IN ('refund_pending', 'refunded'))",
            name="ck_deposit_refund_hash_status",
        ),
        Index("idx_deposit_status_next_attempt", "status", "next_attempt_at"),
    )

    @property
    def key(self) -> tuple:
        return (self.tx_hash, self.output_index)

    @property
    def status_message(self) -> str:
        """User-facing status string for the account/refund screens"""
        if self.status == DepositStatus.REFUNDED.value:
            return "refunded"
        if self.status == DepositStatus.FAILED.value:
            return "refund failed, contact support"
        if self.status == DepositStatus.PENDING.value:
            return "deposit awaiting confirmation"
        return "refund pending"

    def __repr__(self):
        return f"<DepositRecord {self.tx_hash}#{self.output_index} {self.status}>"


class PendingRegistration(Base):
    """Expected deposit announced by the signup flow before the funds arrive"""
    __tablename__ = "pending_registrations"

    id = Column(Integer, primary_key=True)
    user_address = Column(String(128), nullable=False, unique=True)
    sender_wallet_address = Column(String(128), nullable=False, index=True)
    correlation_key = Column(String(128), nullable=True, unique=True)
    status = Column(String(20), default=RegistrationStatus.PENDING.value, nullable=False, index=True)
    deposit_record_id = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)


class MonitorState(Base):
    """Process-wide monitor state, persisted so checkpoint and stats survive restarts"""
    __tablename__ = "monitor_state"

    SINGLETON_ID = 1

    id = Column(Integer, primary_key=True)
    running = Column(Boolean, default=False, nullable=False)
    last_checkpoint = Column(BigInteger, default=0, nullable=False)

    # Statistics
    processed = Column(Integer, default=0, nullable=False)
    refunded = Column(Integer, default=0, nullable=False)
    failed = Column(Integer, default=0, nullable=False)
    unmatched = Column(Integer, default=0, nullable=False)
    cycles = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    last_cycle_errored = Column(Boolean, default=False, nullable=False)
    last_run_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    stats_reset_at = Column(DateTime, nullable=True)

    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    def stats_dict(self) -> dict:
        return {
            "processed": self.processed,
            "refunded": self.refunded,
            "failed": self.failed,
            "unmatched": self.unmatched,
            "cycles": self.cycles,
            "last_error": self.last_error,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "stats_reset_at": self.stats_reset_at.isoformat() if self.stats_reset_at else None,
        }


class WebhookRegistration(Base):
    """External notification sink for deposit/refund events"""
    __tablename__ = "webhook_registrations"

    id = Column(Integer, primary_key=True)
    url = Column(String(500), nullable=False, unique=True)
    secret = Column(String(255), nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    last_delivery_at = Column(DateTime, nullable=True)
    last_delivery_status = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
