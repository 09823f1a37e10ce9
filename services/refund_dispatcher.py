"""
Refund Dispatcher - returns verified deposits to their senders exactly once

Flow per record:
1. Prepare (build + sign) the refund so its hash is known before anything is broadcast
2. Claim: VERIFIED -> REFUND_PENDING with the hash and signed payload, as one conditional UPDATE
3. Submit, then REFUND_PENDING -> REFUNDED conditional on the stored hash

A failed submission leaves the record REFUND_PENDING with a next_attempt_at backoff. The
recovery pass asks the ledger whether the stored hash landed before resubmitting the same
signed payload, which cannot spend the deposit twice.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from config import Config
from models import DepositRecord, DepositStatus
from services.ledger_client import TX_STATUS_CONFIRMED, PreparedTransfer
from services.reconciliation_store import ReconciliationStore
from services.refund_errors import (
    AlreadyRefundedError,
    RefundSubmissionError,
    SubmissionMayHaveLandedError,
    TransientLedgerError,
)
from utils.centralized_logger import centralized_logger
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

OUTCOME_REFUNDED = "refunded"
OUTCOME_RETRY = "retry"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_RECOVERED = "recovered"
OUTCOME_ERRORED = "errored"


@dataclass
class DispatchSummary:
    refunded: int = 0
    recovered: int = 0   # confirmed on chain by the recovery pass, no resubmission
    retrying: int = 0
    failed: int = 0
    skipped: int = 0
    errored: int = 0     # unexpected exception; the record keeps its persisted state
    refunded_records: List[DepositRecord] = field(default_factory=list)
    failed_records: List[DepositRecord] = field(default_factory=list)

    def add(self, outcome: str, record: Optional[DepositRecord]):
        if outcome in (OUTCOME_REFUNDED, OUTCOME_RECOVERED):
            self.refunded += 1
            if outcome == OUTCOME_RECOVERED:
                self.recovered += 1
            if record is not None:
                self.refunded_records.append(record)
        elif outcome == OUTCOME_FAILED:
            self.failed += 1
            if record is not None:
                self.failed_records.append(record)
        elif outcome == OUTCOME_ERRORED:
            self.errored += 1
        elif outcome == OUTCOME_RETRY:
            self.retrying += 1
        else:
            self.skipped += 1

    @property
    def activity(self) -> bool:
        return bool(self.refunded or self.retrying or self.failed)


class RefundDispatcher:
    """Claims, submits and recovers refunds; the store's conditional updates are the safety boundary"""

    def __init__(self, store: ReconciliationStore, wallet, ledger_query,
                 max_attempts: int = None, backoff_base: int = None, backoff_max: int = None,
                 claim_lease: int = None, workers: int = None, submit_timeout: float = None,
                 clock: Callable[[], datetime] = get_naive_utc_now):
        self.store = store
        self.wallet = wallet
        self.ledger_query = ledger_query
        self.max_attempts = max_attempts or Config.MAX_REFUND_ATTEMPTS
        self.backoff_base = backoff_base if backoff_base is not None else Config.REFUND_BACKOFF_BASE
        self.backoff_max = backoff_max if backoff_max is not None else Config.REFUND_BACKOFF_MAX
        self.claim_lease = claim_lease if claim_lease is not None else Config.REFUND_CLAIM_LEASE
        self.workers = workers or Config.REFUND_WORKERS
        self.submit_timeout = submit_timeout or Config.REFUND_SUBMIT_TIMEOUT
        self._clock = clock

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def backoff_seconds(self, attempts: int) -> int:
        """min(base * 2**(attempts-1), max)"""
        if attempts < 1:
            return 0
        return min(self.backoff_base * (2 ** (attempts - 1)), self.backoff_max)

    def next_attempt_at(self, attempts: int, now: Optional[datetime] = None) -> datetime:
        return (now or self._clock()) + timedelta(seconds=self.backoff_seconds(attempts))

    # ------------------------------------------------------------------
    # Dispatch of VERIFIED records
    # ------------------------------------------------------------------

    async def dispatch(self, record: DepositRecord, override_address: Optional[str] = None,
                       summary: Optional[DispatchSummary] = None) -> Optional[str]:
        """
        Refund one VERIFIED record.

        Args:
            record: Deposit to refund
            override_address: Manual destination; the original sender is still logged
            summary: Collects the outcome for stats and notifications when given

        Returns:
            Refund transaction hash if the refund landed in this call, otherwise None
        """
        outcome, updated, refund_tx_hash = await self._dispatch(record, override_address)
        if summary is not None:
            summary.add(outcome, updated)
        return refund_tx_hash if outcome == OUTCOME_REFUNDED else None

    async def _dispatch(self, record: DepositRecord,
                        override_address: Optional[str] = None) -> Tuple[str, Optional[DepositRecord], Optional[str]]:
        now = self._clock()
        if record.status != DepositStatus.VERIFIED.value:
            logger.debug(f"Skipping {record.tx_hash}#{record.output_index}: status {record.status}")
            return OUTCOME_SKIPPED, record, None
        if record.next_attempt_at is not None and record.next_attempt_at > now:
            logger.debug(f"Skipping {record.tx_hash}#{record.output_index}: next attempt at {record.next_attempt_at}")
            return OUTCOME_SKIPPED, record, None

        destination = override_address or record.refund_address or record.sender_wallet_address
        if destination != record.sender_wallet_address:
            logger.warning(
                f"⚠️ REFUND_DESTINATION_OVERRIDE: {record.tx_hash}#{record.output_index} refunding to "
                f"{destination}, original sender {record.sender_wallet_address}"
            )

        try:
            prepared = await asyncio.wait_for(
                self.wallet.prepare_transfer(destination, record.amount), timeout=self.submit_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ REFUND_PREPARE_TIMEOUT: {record.tx_hash}#{record.output_index}, retrying next cycle")
            return OUTCOME_SKIPPED, record, None
        except TransientLedgerError as e:
            logger.warning(f"⚠️ REFUND_PREPARE_TRANSIENT: {record.tx_hash}#{record.output_index} - {e}")
            return OUTCOME_SKIPPED, record, None
        except RefundSubmissionError as e:
            return await self._handle_build_rejection(record, e)

        claimed = await asyncio.to_thread(
            self.store.claim_for_refund,
            record.tx_hash, record.output_index, destination,
            prepared.tx_hash, prepared.payload,
            now + timedelta(seconds=self.claim_lease), now,
        )
        if not claimed:
            current = await asyncio.to_thread(self.store.get_deposit, record.tx_hash, record.output_index)
            race = AlreadyRefundedError(
                record.tx_hash, record.output_index, current.status if current is not None else None
            )
            logger.warning(f"⚠️ REFUND_CLAIM_LOST: {race}")
            return OUTCOME_SKIPPED, current, None

        logger.info(
            f"🔒 REFUND_CLAIMED: {record.tx_hash}#{record.output_index} -> {destination} "
            f"(refund tx {prepared.tx_hash}, sender {record.sender_wallet_address})"
        )
        return await self._submit(record, prepared, resubmission=False)

    async def _handle_build_rejection(self, record: DepositRecord, error: RefundSubmissionError):
        now = self._clock()
        updated = await asyncio.to_thread(
            self.store.record_build_failure,
            record.tx_hash, record.output_index, str(error), self.max_attempts,
            lambda attempts: self.next_attempt_at(attempts, now), now,
        )
        if updated is None:
            return OUTCOME_SKIPPED, record, None
        if updated.status == DepositStatus.FAILED.value:
            self._log_failed(updated, str(error))
            return OUTCOME_FAILED, updated, None
        logger.warning(
            f"⚠️ REFUND_BUILD_REJECTED: {record.tx_hash}#{record.output_index} attempt "
            f"{updated.refund_attempts}/{self.max_attempts} - {error}"
        )
        return OUTCOME_RETRY, updated, None

    # ------------------------------------------------------------------
    # Submission and failure accounting
    # ------------------------------------------------------------------

    async def _submit(self, record: DepositRecord, prepared: PreparedTransfer,
                      resubmission: bool) -> Tuple[str, Optional[DepositRecord], Optional[str]]:
        try:
            landed_hash = await asyncio.wait_for(
                self.wallet.submit_transfer(prepared), timeout=self.submit_timeout
            )
        except asyncio.TimeoutError:
            return await self._record_failure(
                record, prepared, SubmissionMayHaveLandedError(f"Submission timed out after {self.submit_timeout}s"),
                needs_rebuild=False,
            )
        except SubmissionMayHaveLandedError as e:
            return await self._record_failure(record, prepared, e, needs_rebuild=False)
        except RefundSubmissionError as e:
            # A rejected resubmission may mean the first broadcast is already in the mempool,
            # so only a first submission's rejection allows building a replacement
            return await self._record_failure(record, prepared, e, needs_rebuild=not resubmission)
        except TransientLedgerError as e:
            return await self._record_failure(record, prepared, e, needs_rebuild=False)

        now = self._clock()
        marked = await asyncio.to_thread(
            self.store.mark_refunded, record.tx_hash, record.output_index, prepared.tx_hash, landed_hash, now
        )
        if not marked:
            logger.warning(
                f"⚠️ REFUND_STATE_MOVED: {record.tx_hash}#{record.output_index} submitted {landed_hash} "
                f"but the record no longer holds {prepared.tx_hash}"
            )
            return OUTCOME_SKIPPED, record, None

        refunded = await asyncio.to_thread(self.store.get_deposit, record.tx_hash, record.output_index)
        logger.info(
            f"✅ REFUND_DISPATCH_SUCCESS: {record.tx_hash}#{record.output_index} refunded "
            f"{record.amount} lovelace to {prepared.to_address} in {landed_hash}"
        )
        return OUTCOME_REFUNDED, refunded, landed_hash

    async def _record_failure(self, record: DepositRecord, prepared: PreparedTransfer,
                              error: Exception, needs_rebuild: bool):
        now = self._clock()
        updated = await asyncio.to_thread(
            self.store.record_refund_failure,
            record.tx_hash, record.output_index, prepared.tx_hash, str(error),
            needs_rebuild, self.max_attempts,
            lambda attempts: self.next_attempt_at(attempts, now), now,
        )
        if updated is None:
            logger.warning(f"⚠️ REFUND_STATE_MOVED: {record.tx_hash}#{record.output_index} changed during submission")
            return OUTCOME_SKIPPED, record, None

        if updated.status == DepositStatus.FAILED.value:
            self._log_failed(updated, str(error))
            return OUTCOME_FAILED, updated, None

        logger.warning(
            f"🔄 REFUND_SUBMIT_FAILED: {record.tx_hash}#{record.output_index} attempt "
            f"{updated.refund_attempts}/{self.max_attempts}, next at {updated.next_attempt_at} "
            f"({type(error).__name__}: {error})"
        )
        return OUTCOME_RETRY, updated, None

    def _log_failed(self, record: DepositRecord, error: str):
        logger.error(
            f"❌ REFUND_FAILED: {record.tx_hash}#{record.output_index} exhausted {record.refund_attempts} "
            f"attempts - operator action required ({error})"
        )
        centralized_logger.log_refund_failed(
            record.tx_hash, record.output_index,
            {
                "user_address": record.user_address,
                "sender_wallet_address": record.sender_wallet_address,
                "refund_address": record.refund_address,
                "last_attempted_tx_hash": record.last_attempted_tx_hash,
                "amount": record.amount,
                "error": error,
            },
        )

    # ------------------------------------------------------------------
    # Recovery of REFUND_PENDING records
    # ------------------------------------------------------------------

    async def recover_pending(self, summary: Optional[DispatchSummary] = None) -> DispatchSummary:
        """Resolve due REFUND_PENDING records left by failed submissions or a crash"""
        summary = summary or DispatchSummary()
        now = self._clock()
        due = await asyncio.to_thread(self.store.list_due, DepositStatus.REFUND_PENDING, now)
        for record in due:
            try:
                outcome, updated, _ = await self._recover(record)
            except Exception as e:
                self._log_dispatch_error(record, e)
                summary.add(OUTCOME_ERRORED, record)
                continue
            summary.add(outcome, updated)
        return summary

    def _log_dispatch_error(self, record: DepositRecord, error: Exception):
        # The record keeps its persisted state; a REFUND_PENDING claim is resolved by a later recovery pass
        logger.error(
            f"❌ REFUND_DISPATCH_ERROR: {record.tx_hash}#{record.output_index} - {type(error).__name__}: {error}",
            exc_info=error,
        )
        centralized_logger.log_error(
            "refund_dispatch_error",
            f"{type(error).__name__}: {error}",
            {"tx_hash": record.tx_hash, "output_index": record.output_index, "status": record.status},
        )

    async def _recover(self, record: DepositRecord):
        now = self._clock()
        leased = await asyncio.to_thread(
            self.store.lease_pending, record.tx_hash, record.output_index,
            now, now + timedelta(seconds=self.claim_lease),
        )
        if not leased:
            return OUTCOME_SKIPPED, record, None

        stored_hash = record.refund_tx_hash
        try:
            tx_status = await asyncio.wait_for(
                self.ledger_query.get_transaction_status(stored_hash), timeout=self.submit_timeout
            )
        except (TransientLedgerError, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ REFUND_RECOVERY_STATUS_UNAVAILABLE: {stored_hash} - {type(e).__name__}: {e}")
            await asyncio.to_thread(
                self.store.release_lease, record.tx_hash, record.output_index,
                self.next_attempt_at(max(record.refund_attempts, 1), now),
            )
            return OUTCOME_SKIPPED, record, None

        if tx_status == TX_STATUS_CONFIRMED:
            marked = await asyncio.to_thread(
                self.store.mark_refunded, record.tx_hash, record.output_index, stored_hash, stored_hash, now
            )
            if not marked:
                return OUTCOME_SKIPPED, record, None
            logger.info(
                f"✅ REFUND_RECOVERED: {record.tx_hash}#{record.output_index} refund {stored_hash} "
                f"already on chain, no resubmission"
            )
            refunded = await asyncio.to_thread(self.store.get_deposit, record.tx_hash, record.output_index)
            return OUTCOME_RECOVERED, refunded, stored_hash

        if record.refund_needs_rebuild or not record.refund_payload:
            return await self._rebuild_and_submit(record)

        logger.info(f"🔁 REFUND_RESUBMIT: {record.tx_hash}#{record.output_index} resubmitting {stored_hash}")
        prepared = PreparedTransfer(
            tx_hash=stored_hash,
            payload=record.refund_payload,
            to_address=record.refund_address or record.sender_wallet_address,
            amount=record.amount,
        )
        return await self._submit(record, prepared, resubmission=True)

    async def _rebuild_and_submit(self, record: DepositRecord):
        now = self._clock()
        destination = record.refund_address or record.sender_wallet_address
        stored = PreparedTransfer(record.refund_tx_hash, record.refund_payload, destination, record.amount)
        try:
            fresh = await asyncio.wait_for(
                self.wallet.prepare_transfer(destination, record.amount), timeout=self.submit_timeout
            )
        except (TransientLedgerError, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ REFUND_REBUILD_DEFERRED: {record.tx_hash}#{record.output_index} - {type(e).__name__}: {e}")
            await asyncio.to_thread(
                self.store.release_lease, record.tx_hash, record.output_index,
                self.next_attempt_at(max(record.refund_attempts, 1), now),
            )
            return OUTCOME_SKIPPED, record, None
        except RefundSubmissionError as e:
            return await self._record_failure(record, stored, e, needs_rebuild=True)

        swapped = await asyncio.to_thread(
            self.store.replace_refund_transaction,
            record.tx_hash, record.output_index, record.refund_tx_hash, fresh.tx_hash, fresh.payload, now,
        )
        if not swapped:
            return OUTCOME_SKIPPED, record, None

        logger.info(
            f"🔧 REFUND_REBUILT: {record.tx_hash}#{record.output_index} replaced rejected "
            f"{record.refund_tx_hash} with {fresh.tx_hash}"
        )
        return await self._submit(record, fresh, resubmission=False)

    # ------------------------------------------------------------------
    # Batch pass
    # ------------------------------------------------------------------

    async def run_pending(self) -> DispatchSummary:
        """Recovery pass, then all due VERIFIED records through a bounded worker pool"""
        summary = await self.recover_pending()

        due = await asyncio.to_thread(self.store.list_due, DepositStatus.VERIFIED, self._clock())
        if not due:
            return summary

        semaphore = asyncio.Semaphore(self.workers)

        async def _bounded(record: DepositRecord):
            async with semaphore:
                return await self._dispatch(record)

        # Every started dispatch is awaited here, so one record's crash never detaches the others
        results = await asyncio.gather(*[_bounded(record) for record in due], return_exceptions=True)
        for record, result in zip(due, results):
            if isinstance(result, BaseException):
                self._log_dispatch_error(record, result)
                summary.add(OUTCOME_ERRORED, record)
                continue
            outcome, updated, _ = result
            summary.add(outcome, updated)

        logger.info(
            f"📊 REFUND_BATCH: {summary.refunded} refunded, {summary.retrying} retrying, "
            f"{summary.failed} failed, {summary.skipped} skipped, {summary.errored} errored"
        )
        return summary

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def requeue_failed(self, tx_hash: str, output_index: int,
                             refund_address: Optional[str] = None) -> bool:
        """
        Send a FAILED record back to VERIFIED with its attempt counter reset.

        If its last attempted refund has since landed, the record is resolved as REFUNDED
        instead so the deposit is never returned twice.
        """
        record = await asyncio.to_thread(self.store.get_deposit, tx_hash, output_index)
        if record is None or record.status != DepositStatus.FAILED.value:
            return False

        if record.last_attempted_tx_hash:
            tx_status = await self.ledger_query.get_transaction_status(record.last_attempted_tx_hash)
            if tx_status == TX_STATUS_CONFIRMED:
                resolved = await asyncio.to_thread(
                    self.store.resolve_failed_as_refunded,
                    tx_hash, output_index, record.last_attempted_tx_hash, self._clock(),
                )
                if resolved:
                    logger.info(
                        f"✅ REFUND_FAILED_RESOLVED: {tx_hash}#{output_index} last attempt "
                        f"{record.last_attempted_tx_hash} is on chain, marked refunded"
                    )
                return False

        requeued = await asyncio.to_thread(self.store.requeue_failed, tx_hash, output_index, refund_address)
        if requeued:
            logger.info(
                f"🔁 REFUND_REQUEUED: {tx_hash}#{output_index} back to verified "
                f"(destination {refund_address or record.sender_wallet_address})"
            )
        return requeued
