"""
Reconciliation Store - durable deposit/refund records and monitor state

Every refund state transition is a conditional UPDATE checked through rowcount, so two
dispatchers (or two processes) racing on the same record can never both win a claim.
Methods are synchronous; async callers run them through asyncio.to_thread.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from database import managed_session
from models import (
    DepositRecord, DepositStatus, MonitorState, PendingRegistration,
    RegistrationStatus, WebhookRegistration,
)
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class ReconciliationStore:
    """Sole source of truth for deposit and refund state"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

    @contextmanager
    def transaction(self):
        """One unit of work; commits on success, rolls back on any exception"""
        with managed_session(self.session_factory) as session:
            yield session

    # ------------------------------------------------------------------
    # Deposit records
    # ------------------------------------------------------------------

    @staticmethod
    def find_deposit(session: Session, tx_hash: str, output_index: int) -> Optional[DepositRecord]:
        return session.execute(
            select(DepositRecord).where(
                DepositRecord.tx_hash == tx_hash,
                DepositRecord.output_index == output_index,
            )
        ).scalar_one_or_none()

    def get_deposit(self, tx_hash: str, output_index: int) -> Optional[DepositRecord]:
        with self.transaction() as session:
            return self.find_deposit(session, tx_hash, output_index)

    def get_deposits_by_user(self, user_address: str) -> List[DepositRecord]:
        with self.transaction() as session:
            result = session.execute(
                select(DepositRecord)
                .where(DepositRecord.user_address == user_address)
                .order_by(DepositRecord.created_at, DepositRecord.id)
            )
            return list(result.scalars())

    def get_active_deposit_for_user(self, user_address: str) -> Optional[DepositRecord]:
        """The one non-REFUNDED record currently registering this identity, if any"""
        with self.transaction() as session:
            return session.execute(
                select(DepositRecord).where(DepositRecord.active_user_address == user_address)
            ).scalar_one_or_none()

    def list_deposits(self, status: Optional[DepositStatus] = None, limit: Optional[int] = None) -> List[DepositRecord]:
        with self.transaction() as session:
            query = select(DepositRecord).order_by(DepositRecord.id)
            if status is not None:
                query = query.where(DepositRecord.status == status.value)
            if limit:
                query = query.limit(limit)
            return list(session.execute(query).scalars())

    def list_due(self, status: DepositStatus, now: datetime, limit: int = 100) -> List[DepositRecord]:
        """Records in `status` whose next_attempt_at has passed (or is unset)"""
        with self.transaction() as session:
            result = session.execute(
                select(DepositRecord)
                .where(
                    DepositRecord.status == status.value,
                    DepositRecord.archived_at.is_(None),
                    or_(DepositRecord.next_attempt_at.is_(None), DepositRecord.next_attempt_at <= now),
                )
                .order_by(DepositRecord.id)
                .limit(limit)
            )
            return list(result.scalars())

    def count_by_status(self) -> Dict[str, int]:
        with self.transaction() as session:
            rows = session.execute(
                select(DepositRecord.status, func.count(DepositRecord.id)).group_by(DepositRecord.status)
            ).all()
        counts = {status.value: 0 for status in DepositStatus}
        counts.update({status: count for status, count in rows})
        return counts

    @staticmethod
    def add_deposit(session: Session, **fields) -> DepositRecord:
        record = DepositRecord(**fields)
        if record.status != DepositStatus.REFUNDED.value:
            record.active_user_address = record.user_address
        session.add(record)
        session.flush()
        return record

    # ------------------------------------------------------------------
    # Pending registrations
    # ------------------------------------------------------------------

    def create_registration(self, user_address: str, sender_wallet_address: str,
                            correlation_key: Optional[str] = None) -> PendingRegistration:
        with self.transaction() as session:
            registration = PendingRegistration(
                user_address=user_address,
                sender_wallet_address=sender_wallet_address,
                correlation_key=correlation_key,
                status=RegistrationStatus.PENDING.value,
            )
            session.add(registration)
            session.flush()
            return registration

    @staticmethod
    def find_pending_registration(session: Session, sender_address: str,
                                  correlation_key: Optional[str] = None) -> Optional[PendingRegistration]:
        """Correlation key wins over sender address; oldest registration first"""
        if correlation_key:
            registration = session.execute(
                select(PendingRegistration).where(
                    PendingRegistration.correlation_key == correlation_key,
                    PendingRegistration.status == RegistrationStatus.PENDING.value,
                )
            ).scalar_one_or_none()
            if registration is not None:
                return registration

        return session.execute(
            select(PendingRegistration)
            .where(
                PendingRegistration.sender_wallet_address == sender_address,
                PendingRegistration.status == RegistrationStatus.PENDING.value,
            )
            .order_by(PendingRegistration.created_at, PendingRegistration.id)
            .limit(1)
        ).scalar_one_or_none()

    @staticmethod
    def identity_has_active_deposit(session: Session, user_address: str) -> bool:
        return session.execute(
            select(DepositRecord.id).where(DepositRecord.active_user_address == user_address)
        ).first() is not None

    @staticmethod
    def link_registration(session: Session, registration: PendingRegistration, record: DepositRecord) -> None:
        registration.status = RegistrationStatus.LINKED.value
        registration.deposit_record_id = record.id
        session.flush()

    def get_registration(self, user_address: str) -> Optional[PendingRegistration]:
        with self.transaction() as session:
            return session.execute(
                select(PendingRegistration).where(PendingRegistration.user_address == user_address)
            ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Refund state machine
    # ------------------------------------------------------------------

    def claim_for_refund(self, tx_hash: str, output_index: int, refund_address: str,
                         refund_tx_hash: str, refund_payload: Optional[str],
                         lease_until: datetime, now: datetime) -> bool:
        """Compare-and-swap VERIFIED -> REFUND_PENDING. False means another dispatcher won."""
        with self.transaction() as session:
            result = session.execute(
                update(DepositRecord)
                .where(
                    DepositRecord.tx_hash == tx_hash,
                    DepositRecord.output_index == output_index,
                    DepositRecord.status == DepositStatus.VERIFIED.value,
                    or_(DepositRecord.next_attempt_at.is_(None), DepositRecord.next_attempt_at <= now),
                )
                .values(
                    status=DepositStatus.REFUND_PENDING.value,
                    refund_address=refund_address,
                    refund_tx_hash=refund_tx_hash,
                    refund_payload=refund_payload,
                    refund_needs_rebuild=False,
                    next_attempt_at=lease_until,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def mark_refunded(self, tx_hash: str, output_index: int, expected_tx_hash: str,
                      refund_tx_hash: str, now: datetime) -> bool:
        """REFUND_PENDING -> REFUNDED, only if the stored refund transaction is the one that landed"""
        with self.transaction() as session:
            result = session.execute(
                update(DepositRecord)
                .where(
                    DepositRecord.tx_hash == tx_hash,
                    DepositRecord.output_index == output_index,
                    DepositRecord.status == DepositStatus.REFUND_PENDING.value,
                    DepositRecord.refund_tx_hash == expected_tx_hash,
                )
                .values(
                    status=DepositStatus.REFUNDED.value,
                    refund_tx_hash=refund_tx_hash,
                    refund_payload=None,
                    refund_needs_rebuild=False,
                    active_user_address=None,
                    next_attempt_at=None,
                    refunded_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def record_refund_failure(self, tx_hash: str, output_index: int, expected_tx_hash: str,
                              error: str, needs_rebuild: bool, max_attempts: int,
                              next_attempt_for: Callable[[int], datetime],
                              now: datetime) -> Optional[DepositRecord]:
        """
        Count a failed submission. Status stays REFUND_PENDING with a backoff until the
        attempt cap, then moves to FAILED (the refund hash is kept as audit metadata only).
        Returns the updated record, or None if the record moved on concurrently.
        """
        with self.transaction() as session:
            record = session.execute(
                select(DepositRecord)
                .where(
                    DepositRecord.tx_hash == tx_hash,
                    DepositRecord.output_index == output_index,
                    DepositRecord.status == DepositStatus.REFUND_PENDING.value,
                    DepositRecord.refund_tx_hash == expected_tx_hash,
                )
                .with_for_update()
            ).scalar_one_or_none()
            if record is None:
                return None

            attempts = record.refund_attempts + 1
            record.refund_attempts = attempts
            record.last_refund_error = error[:2000]
            record.updated_at = now

            if attempts >= max_attempts:
                record.status = DepositStatus.FAILED.value
                record.last_attempted_tx_hash = record.refund_tx_hash
                record.refund_tx_hash = None
                record.refund_payload = None
                record.refund_needs_rebuild = False
                record.next_attempt_at = None
            else:
                record.refund_needs_rebuild = needs_rebuild
                record.next_attempt_at = next_attempt_for(attempts)
            session.flush()
            return record

    def record_build_failure(self, tx_hash: str, output_index: int, error: str, max_attempts: int,
                             next_attempt_for: Callable[[int], datetime],
                             now: datetime) -> Optional[DepositRecord]:
        """
        The wallet service refused to build a refund (e.g. invalid destination). Nothing was
        claimed or broadcast; the record stays VERIFIED with a backoff, or becomes FAILED at the cap.
        """
        with self.transaction() as session:
            record = session.execute(
                select(DepositRecord)
                .where(
                    DepositRecord.tx_hash == tx_hash,
                    DepositRecord.output_index == output_index,
                    DepositRecord.status == DepositStatus.VERIFIED.value,
                )
                .with_for_update()
            ).scalar_one_or_none()
            if record is None:
                return None

            attempts = record.refund_attempts + 1
            record.refund_attempts = attempts
            record.last_refund_error = error[:2000]
            record.updated_at = now
            if attempts >= max_attempts:
                record.status = DepositStatus.FAILED.value
                record.next_attempt_at = None
            else:
                record.next_attempt_at = next_attempt_for(attempts)
            session.flush()
            return record

    def resolve_failed_as_refunded(self, tx_hash: str, output_index: int, landed_tx_hash: str,
                                   now: datetime) -> bool:
        """FAILED -> REFUNDED when the last attempted refund turned out to be on chain"""
        with self.transaction() as session:
            result = session.execute(
                update(DepositRecord)
                .where(
                    DepositRecord.tx_hash == tx_hash,
                    DepositRecord.output_index == output_index,
                    DepositRecord.status == DepositStatus.FAILED.value,
                    DepositRecord.last_attempted_tx_hash == landed_tx_hash,
                )
                .values(
                    status=DepositStatus.REFUNDED.value,
                    refund_tx_hash=landed_tx_hash,
                    active_user_address=None,
                    next_attempt_at=None,
                    refunded_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def lease_pending(self, tx_hash: str, output_index: int, now: datetime, lease_until: datetime) -> bool:
        """Take exclusive recovery rights over a due REFUND_PENDING record"""
        with self.transaction() as session:
            result = session.execute(
                update(DepositRecord)
                .where(
                    DepositRecord.tx_hash == tx_hash,
                    DepositRecord.output_index == output_index,
                    DepositRecord.status == DepositStatus.REFUND_PENDING.value,
                    or_(DepositRecord.next_attempt_at.is_(None), DepositRecord.next_attempt_at <= now),
                )
                .values(next_attempt_at=lease_until, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def release_lease(self, tx_hash: str, output_index: int, next_attempt_at: datetime) -> None:
        with self.transaction() as session:
            session.execute(
                update(DepositRecord)
                .where(
                    DepositRecord.tx_hash == tx_hash,
                    DepositRecord.output_index == output_index,
                    DepositRecord.status == DepositStatus.REFUND_PENDING.value,
                )
                .values(next_attempt_at=next_attempt_at)
                .execution_options(synchronize_session=False)
            )

    def replace_refund_transaction(self, tx_hash: str, output_index: int, old_tx_hash: str,
                                   new_tx_hash: str, new_payload: Optional[str], now: datetime) -> bool:
        """Swap a rejected refund transaction for a freshly built one"""
        with self.transaction() as session:
            result = session.execute(
                update(DepositRecord)
                .where(
                    DepositRecord.tx_hash == tx_hash,
                    DepositRecord.output_index == output_index,
                    DepositRecord.status == DepositStatus.REFUND_PENDING.value,
                    DepositRecord.refund_tx_hash == old_tx_hash,
                )
                .values(
                    refund_tx_hash=new_tx_hash,
                    refund_payload=new_payload,
                    refund_needs_rebuild=False,
                    last_attempted_tx_hash=old_tx_hash,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def requeue_failed(self, tx_hash: str, output_index: int, refund_address: Optional[str] = None) -> bool:
        """Operator action: FAILED -> VERIFIED with the attempt counter reset"""
        now = get_naive_utc_now()
        values = dict(
            status=DepositStatus.VERIFIED.value,
            refund_attempts=0,
            refund_needs_rebuild=False,
            next_attempt_at=None,
            updated_at=now,
        )
        if refund_address:
            values["refund_address"] = refund_address
        with self.transaction() as session:
            result = session.execute(
                update(DepositRecord)
                .where(
                    DepositRecord.tx_hash == tx_hash,
                    DepositRecord.output_index == output_index,
                    DepositRecord.status == DepositStatus.FAILED.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def archive_refunded(self, older_than: datetime) -> int:
        """Flag old REFUNDED records as archived; records are never deleted"""
        with self.transaction() as session:
            result = session.execute(
                update(DepositRecord)
                .where(
                    DepositRecord.status == DepositStatus.REFUNDED.value,
                    DepositRecord.archived_at.is_(None),
                    DepositRecord.refunded_at < older_than,
                )
                .values(archived_at=get_naive_utc_now())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    # ------------------------------------------------------------------
    # Monitor state (singleton row)
    # ------------------------------------------------------------------

    @staticmethod
    def _get_or_create_state(session: Session, initial_checkpoint: int = 0) -> MonitorState:
        state = session.get(MonitorState, MonitorState.SINGLETON_ID)
        if state is None:
            state = MonitorState(
                id=MonitorState.SINGLETON_ID,
                running=False,
                last_checkpoint=initial_checkpoint,
                processed=0, refunded=0, failed=0, unmatched=0, cycles=0,
                last_cycle_errored=False,
            )
            session.add(state)
            session.flush()
        return state

    def load_monitor_state(self, initial_checkpoint: int = 0) -> MonitorState:
        with self.transaction() as session:
            return self._get_or_create_state(session, initial_checkpoint)

    def set_running(self, running: bool) -> MonitorState:
        with self.transaction() as session:
            state = self._get_or_create_state(session)
            state.running = running
            return state

    def save_cycle_result(self, *, checkpoint: Optional[int], processed: int, refunded: int,
                          failed: int, unmatched: int, error: Optional[str], now: datetime) -> MonitorState:
        """Persist one cycle's outcome. checkpoint=None leaves the cursor where it was."""
        with self.transaction() as session:
            state = self._get_or_create_state(session)
            if checkpoint is not None and checkpoint > state.last_checkpoint:
                state.last_checkpoint = checkpoint
            state.processed += processed
            state.refunded += refunded
            state.failed += failed
            state.unmatched += unmatched
            state.cycles += 1
            state.last_run_at = now
            state.last_cycle_errored = error is not None
            if error is not None:
                state.last_error = error[:2000]
            else:
                state.last_success_at = now
            return state

    def add_refund_counts(self, refunded: int, failed: int) -> MonitorState:
        """Count refunds resolved outside a poll cycle; cycle bookkeeping is untouched"""
        with self.transaction() as session:
            state = self._get_or_create_state(session)
            state.refunded += refunded
            state.failed += failed
            return state

    def reset_stats(self) -> MonitorState:
        """Clear counters; checkpoint, run flag and deposit records are untouched"""
        with self.transaction() as session:
            state = self._get_or_create_state(session)
            state.processed = 0
            state.refunded = 0
            state.failed = 0
            state.unmatched = 0
            state.cycles = 0
            state.last_error = None
            state.last_cycle_errored = False
            state.stats_reset_at = get_naive_utc_now()
            return state

    # ------------------------------------------------------------------
    # Webhook registrations
    # ------------------------------------------------------------------

    def upsert_webhook(self, url: str, secret: Optional[str]) -> WebhookRegistration:
        with self.transaction() as session:
            registration = session.execute(
                select(WebhookRegistration).where(WebhookRegistration.url == url)
            ).scalar_one_or_none()
            if registration is None:
                registration = WebhookRegistration(url=url, secret=secret, active=True)
                session.add(registration)
            else:
                registration.secret = secret
                registration.active = True
            session.flush()
            return registration

    def deactivate_webhook(self, url: str) -> bool:
        with self.transaction() as session:
            result = session.execute(
                update(WebhookRegistration)
                .where(WebhookRegistration.url == url, WebhookRegistration.active.is_(True))
                .values(active=False)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def list_active_webhooks(self) -> List[WebhookRegistration]:
        with self.transaction() as session:
            result = session.execute(
                select(WebhookRegistration)
                .where(WebhookRegistration.active.is_(True))
                .order_by(WebhookRegistration.id)
            )
            return list(result.scalars())

    def record_webhook_delivery(self, url: str, status: str) -> None:
        with self.transaction() as session:
            session.execute(
                update(WebhookRegistration)
                .where(WebhookRegistration.url == url)
                .values(last_delivery_at=get_naive_utc_now(), last_delivery_status=status[:50])
                .execution_options(synchronize_session=False)
            )
