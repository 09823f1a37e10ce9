"""
Auto Refund Monitor - owns the reconciliation loop

One cycle: poll the ledger -> ingest transfers -> recover and dispatch refunds -> queue
notifications -> persist stats. The new checkpoint is persisted only by a cycle that raised
nothing. Cycles are serialized by a lock shared by the APScheduler timer and trigger_once();
every refund is additionally guarded by the store's atomic claim, so correctness does not
depend on the lock.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from models import DepositRecord, DepositStatus
from monitoring.health_check import (
    HealthReport,
    build_report,
    check_database,
    check_system_resources,
    evaluate_monitor_health,
)
from services.deposit_matcher import DepositMatcher
from services.ledger_poller import LedgerPoller
from services.reconciliation_store import ReconciliationStore
from services.refund_dispatcher import DispatchSummary, RefundDispatcher
from services.refund_errors import LedgerQuotaExceededError, TransientLedgerError
from services.webhook_notifier import (
    DepositDetectedEvent,
    RefundCompletedEvent,
    RefundFailedEvent,
    WebhookNotifier,
)
from utils.centralized_logger import centralized_logger
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

JOB_ID = "auto_refund_monitor_cycle"
ADAPTIVE_BACKOFF_FACTOR = 1.5
RESCHEDULE_THRESHOLD_SECONDS = 5


@dataclass
class CycleResult:
    source: str
    started_at: datetime = field(default_factory=get_naive_utc_now)
    checkpoint_before: Optional[int] = None
    checkpoint_after: Optional[int] = None
    transfers_seen: int = 0
    created: int = 0
    unmatched: int = 0
    promoted: int = 0
    refunded: int = 0
    retrying: int = 0
    failed: int = 0
    dispatch_errors: int = 0
    error: Optional[str] = None
    skipped: bool = False

    @property
    def activity(self) -> bool:
        return bool(self.created or self.promoted or self.refunded or self.retrying or self.failed)


class MonitorController:
    """Start/stop/trigger surface over the reconciliation engine"""

    def __init__(self, store: ReconciliationStore, poller: LedgerPoller, matcher: DepositMatcher,
                 dispatcher: RefundDispatcher, notifier: WebhookNotifier,
                 interval: int = None, adaptive: bool = None, min_interval: int = None,
                 max_interval: int = None, auto_refund_enabled: bool = None,
                 initial_checkpoint: int = None, clock: Callable[[], datetime] = get_naive_utc_now):
        self.store = store
        self.poller = poller
        self.matcher = matcher
        self.dispatcher = dispatcher
        self.notifier = notifier

        self.base_interval = interval or Config.AUTO_REFUND_POLLING_INTERVAL
        self.adaptive = adaptive if adaptive is not None else Config.AUTO_REFUND_ADAPTIVE
        self.min_interval = min_interval or Config.AUTO_REFUND_MIN_INTERVAL
        self.max_interval = max_interval or Config.AUTO_REFUND_MAX_INTERVAL
        self.auto_refund_enabled = (
            auto_refund_enabled if auto_refund_enabled is not None else Config.AUTO_REFUND_ENABLED
        )
        self.initial_checkpoint = (
            initial_checkpoint if initial_checkpoint is not None else Config.INITIAL_CHECKPOINT
        )
        self.current_interval = float(self.min_interval if self.adaptive else self.base_interval)
        self._clock = clock

        self.scheduler: Optional[AsyncIOScheduler] = None
        self._cycle_lock = asyncio.Lock()
        self._inflight: Set[asyncio.Task] = set()
        self._running = False
        self._started_at: Optional[datetime] = None
        self._stopped_by_operator = False

        # In-memory mirror of the last cycle, used by health when the store is unreachable
        self._last_cycle_at: Optional[datetime] = None
        self._last_cycle_errored = False
        self._last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def _loop_alive(self) -> bool:
        return (
            self._running
            and self.scheduler is not None
            and self.scheduler.running
            and self.scheduler.get_job(JOB_ID) is not None
        )

    async def initialize(self) -> Dict[str, Any]:
        """Load persisted state and resume the loop if it was running before a restart"""
        state = await asyncio.to_thread(self.store.load_monitor_state, self.initial_checkpoint)
        logger.info(
            f"🔧 AUTO_REFUND_INIT: checkpoint={state.last_checkpoint} persisted_running={state.running} "
            f"enabled={self.auto_refund_enabled}"
        )
        if state.running and self.auto_refund_enabled:
            await self.start()
        elif state.running:
            logger.warning("⚠️ AUTO_REFUND_INIT: monitor was running but AUTO_REFUND_ENABLED is off, not resuming")
            await asyncio.to_thread(self.store.set_running, False)
        return state.stats_dict()

    async def start(self, run_immediately: bool = True) -> bool:
        """Start the polling loop; returns False if it was already running"""
        if self._running:
            logger.info("Auto refund monitor already running")
            return False

        self.scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
            timezone="UTC",
        )
        job_kwargs = {}
        if run_immediately:
            job_kwargs["next_run_time"] = datetime.now(timezone.utc)
        self.scheduler.add_job(
            self._scheduled_cycle,
            trigger=IntervalTrigger(seconds=self.current_interval),
            id=JOB_ID,
            name="Auto refund monitor cycle",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            **job_kwargs,
        )
        self.scheduler.start()
        self.notifier.start()

        self._running = True
        self._stopped_by_operator = False
        self._started_at = self._clock()
        await asyncio.to_thread(self.store.set_running, True)
        logger.info(f"🚀 AUTO_REFUND_STARTED: polling every {self.current_interval:.0f}s")
        return True

    async def stop(self) -> bool:
        """Stop scheduling new cycles and wait for the in-flight one; never cancels a submission"""
        if not self._running:
            # trigger_once() alone may have started the notifier worker
            await self.notifier.stop()
            logger.info("Auto refund monitor already stopped")
            return False

        self._running = False
        self._stopped_by_operator = True
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        if self._inflight:
            logger.info(f"⏳ AUTO_REFUND_STOPPING: waiting for {len(self._inflight)} in-flight cycle(s)")
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        async with self._cycle_lock:
            pass

        await self.notifier.stop()
        await asyncio.to_thread(self.store.set_running, False)
        logger.info("🛑 AUTO_REFUND_STOPPED")
        return True

    async def trigger_once(self) -> CycleResult:
        """Run one cycle now, serialized with the timer"""
        return await self._spawn_cycle("manual")

    async def _scheduled_cycle(self):
        await self._spawn_cycle("timer")

    async def _spawn_cycle(self, source: str) -> CycleResult:
        # Shielded so scheduler shutdown or caller cancellation cannot abort a submission
        task = asyncio.ensure_future(self._run_cycle(source))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _run_cycle(self, source: str) -> CycleResult:
        async with self._cycle_lock:
            if source == "timer" and not self._running:
                return CycleResult(source=source, skipped=True)
            result = CycleResult(source=source, started_at=self._clock())
            try:
                await self._cycle(result)
            except Exception as e:
                result.error = f"{type(e).__name__}: {e}"
                logger.error(f"❌ AUTO_REFUND_CYCLE_FATAL: {result.error}", exc_info=True)
                centralized_logger.log_cycle_fatal(result.error, {"source": source})
            await self._finish_cycle(result)
            return result

    async def _cycle(self, result: CycleResult):
        state = await asyncio.to_thread(self.store.load_monitor_state, self.initial_checkpoint)
        since = state.last_checkpoint
        result.checkpoint_before = since

        try:
            poll = await self.poller.poll(since)
        except LedgerQuotaExceededError as e:
            poll = None
            result.error = str(e)
            logger.warning(f"⏸️ AUTO_REFUND_POLL_PAUSED: {e}")
        except TransientLedgerError as e:
            poll = None
            result.error = str(e)
            logger.warning(f"⚠️ AUTO_REFUND_POLL_FAILED: {e}, checkpoint stays at {since}")

        if poll is not None:
            result.transfers_seen = len(poll.transfers)
            hold_below: List[int] = []
            for transfer in poll.transfers:
                ingest = await self.matcher.ingest(transfer)
                record = ingest.record
                if record is None:
                    continue
                if ingest.created:
                    result.created += 1
                    if not ingest.matched:
                        result.unmatched += 1
                    self.notifier.notify(self._deposit_event(record, ingest.matched))
                if ingest.promoted:
                    result.promoted += 1
                if record.status == DepositStatus.PENDING.value:
                    hold_below.append(transfer.block_height if transfer.block_height is not None else since + 1)

            checkpoint = poll.new_checkpoint
            if hold_below:
                # Re-scan under-confirmed deposits until they verify
                checkpoint = max(since, min(checkpoint, min(hold_below) - 1))
            result.checkpoint_after = checkpoint

        summary = await self.dispatcher.run_pending()
        result.refunded = summary.refunded
        result.retrying = summary.retrying
        result.failed = summary.failed
        result.dispatch_errors = summary.errored
        self._notify_refund_outcomes(summary)

    def _notify_refund_outcomes(self, summary: DispatchSummary):
        for record in summary.refunded_records:
            self.notifier.notify(self._refund_completed_event(record))
        for record in summary.failed_records:
            self.notifier.notify(self._refund_failed_event(record))

    async def _finish_cycle(self, result: CycleResult):
        now = self._clock()
        # A cycle that hit an error keeps the old cursor; the next poll re-reads and dedups
        checkpoint = result.checkpoint_after if result.error is None else None
        error = result.error
        if error is None and result.dispatch_errors:
            error = f"{result.dispatch_errors} refund dispatch(es) raised, see refund error log"

        self._last_cycle_at = now
        self._last_cycle_errored = error is not None
        if error is not None:
            self._last_error = error

        try:
            await asyncio.to_thread(
                self.store.save_cycle_result,
                checkpoint=checkpoint,
                processed=result.created,
                refunded=result.refunded,
                failed=result.failed,
                unmatched=result.unmatched,
                error=error,
                now=now,
            )
        except Exception as e:
            self._last_cycle_errored = True
            self._last_error = f"failed to persist cycle result: {e}"
            logger.error(f"❌ AUTO_REFUND_STATE_SAVE_FAILED: {e}")

        logger.info(
            f"🔄 AUTO_REFUND_CYCLE ({result.source}): seen={result.transfers_seen} new={result.created} "
            f"unmatched={result.unmatched} refunded={result.refunded} failed={result.failed} "
            f"checkpoint {result.checkpoint_before} -> {checkpoint if checkpoint is not None else result.checkpoint_before}"
        )
        self._adjust_interval(result)

    def _adjust_interval(self, result: CycleResult):
        if not self.adaptive:
            return
        if result.activity:
            new_interval = float(self.min_interval)
        else:
            new_interval = min(float(self.max_interval), self.current_interval * ADAPTIVE_BACKOFF_FACTOR)

        if abs(new_interval - self.current_interval) <= RESCHEDULE_THRESHOLD_SECONDS:
            return
        logger.info(f"⏱️ AUTO_REFUND_INTERVAL: {self.current_interval:.0f}s -> {new_interval:.0f}s")
        self.current_interval = new_interval
        if self._loop_alive():
            self.scheduler.reschedule_job(JOB_ID, trigger=IntervalTrigger(seconds=new_interval))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @staticmethod
    def _deposit_event(record: DepositRecord, matched: bool) -> DepositDetectedEvent:
        return DepositDetectedEvent(
            tx_hash=record.tx_hash,
            output_index=record.output_index,
            user_address=record.user_address,
            sender_address=record.sender_wallet_address,
            amount=record.amount,
            status=record.status,
            matched=matched,
        )

    @staticmethod
    def _refund_completed_event(record: DepositRecord) -> RefundCompletedEvent:
        return RefundCompletedEvent(
            tx_hash=record.tx_hash,
            output_index=record.output_index,
            user_address=record.user_address,
            refund_tx_hash=record.refund_tx_hash,
            refund_address=record.refund_address,
            amount=record.amount,
        )

    @staticmethod
    def _refund_failed_event(record: DepositRecord) -> RefundFailedEvent:
        return RefundFailedEvent(
            tx_hash=record.tx_hash,
            output_index=record.output_index,
            user_address=record.user_address,
            attempts=record.refund_attempts,
            last_error=record.last_refund_error,
            last_attempted_tx_hash=record.last_attempted_tx_hash,
        )

    # ------------------------------------------------------------------
    # Stats and health
    # ------------------------------------------------------------------

    async def get_stats(self) -> Dict[str, Any]:
        state = await asyncio.to_thread(self.store.load_monitor_state, self.initial_checkpoint)
        counts = await asyncio.to_thread(self.store.count_by_status)
        stats = state.stats_dict()
        stats.update(
            {
                "running": self._running,
                "last_checkpoint": state.last_checkpoint,
                "current_interval": self.current_interval,
                "webhook_count": await self.notifier.webhook_count(),
                "webhooks_dropped": self.notifier.dropped,
                "quota_cooldown": self.poller.in_quota_cooldown,
                "records_by_status": counts,
            }
        )
        return stats

    async def reset_stats(self) -> Dict[str, Any]:
        """Clear counters only; deposit records and the checkpoint are untouched"""
        state = await asyncio.to_thread(self.store.reset_stats)
        self._last_error = None
        self._last_cycle_errored = False
        logger.info("🧹 AUTO_REFUND_STATS_RESET")
        return state.stats_dict()

    async def health(self) -> HealthReport:
        database = await asyncio.to_thread(check_database, self.store.session_factory)

        should_run = self._running
        failed_records = 0
        last_cycle_at = self._last_cycle_at
        last_cycle_errored = self._last_cycle_errored
        last_error = self._last_error
        try:
            state = await asyncio.to_thread(self.store.load_monitor_state, self.initial_checkpoint)
            counts = await asyncio.to_thread(self.store.count_by_status)
            should_run = state.running
            failed_records = counts.get(DepositStatus.FAILED.value, 0)
            last_cycle_at = last_cycle_at or state.last_run_at
            if self._last_cycle_at is None:
                last_cycle_errored = state.last_cycle_errored
                last_error = state.last_error
        except Exception as e:
            logger.error(f"❌ AUTO_REFUND_HEALTH_STATE_UNAVAILABLE: {e}")

        monitor = evaluate_monitor_health(
            should_run=should_run,
            loop_alive=self._loop_alive(),
            interval_seconds=self.current_interval,
            last_cycle_at=last_cycle_at,
            started_at=self._started_at,
            last_cycle_errored=last_cycle_errored,
            last_error=last_error,
            failed_records=failed_records,
            quota_cooldown=self.poller.in_quota_cooldown,
            stopped_by_operator=self._stopped_by_operator and not self._running,
            now=self._clock(),
        )
        return build_report([monitor, database, check_system_resources()])

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    async def register_webhook(self, url: str, secret: Optional[str] = None):
        return await self.notifier.register_webhook(url, secret)

    async def unregister_webhook(self, url: str) -> bool:
        return await self.notifier.unregister_webhook(url)

    async def test_webhook(self, url: str, secret: Optional[str] = None) -> Dict[str, Any]:
        return await self.notifier.test_webhook(url, secret)

    async def register_pending(self, user_address: str, sender_wallet_address: str,
                               correlation_key: Optional[str] = None):
        return await self.matcher.register_pending(user_address, sender_wallet_address, correlation_key)

    async def requeue_failed(self, tx_hash: str, output_index: int, refund_address: Optional[str] = None) -> bool:
        return await self.dispatcher.requeue_failed(tx_hash, output_index, refund_address)

    async def refund_now(self, tx_hash: str, output_index: int,
                         override_address: Optional[str] = None) -> Optional[str]:
        """Manual refund of one VERIFIED record, optionally to a different address"""
        record = await asyncio.to_thread(self.store.get_deposit, tx_hash, output_index)
        if record is None:
            return None
        summary = DispatchSummary()
        async with self._cycle_lock:
            refund_tx_hash = await self.dispatcher.dispatch(
                record, override_address=override_address, summary=summary
            )
            if summary.refunded or summary.failed:
                await asyncio.to_thread(self.store.add_refund_counts, summary.refunded, summary.failed)
            self._notify_refund_outcomes(summary)
        return refund_tx_hash
