"""
Ledger Poller - pages through new transfers to the deposit address

The checkpoint returned by poll() only covers blocks that were fully read. On any
ledger error nothing is returned, so the caller keeps its old checkpoint and the
same range is re-scanned next cycle (ingest is idempotent on tx_hash + output_index).
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from config import Config
from services.ledger_client import Transfer
from services.refund_errors import LedgerQuotaExceededError, TransientLedgerError

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    transfers: List[Transfer] = field(default_factory=list)
    new_checkpoint: int = 0
    pages_fetched: int = 0
    truncated: bool = False
    skipped_stale: int = 0


class LedgerPoller:
    """Fetch transfers after a checkpoint, bounded by a page cap and per-query timeout"""

    def __init__(self, ledger_query, deposit_address: str = None, max_pages: int = None,
                 request_timeout: float = None, quota_cooldown: int = None,
                 max_transfer_age_seconds: int = None, clock=time.monotonic):
        self.ledger_query = ledger_query
        self.deposit_address = deposit_address or Config.DEPOSIT_ADDRESS
        self.max_pages = max_pages or Config.LEDGER_MAX_PAGES
        self.request_timeout = request_timeout or Config.LEDGER_REQUEST_TIMEOUT
        self.quota_cooldown = quota_cooldown if quota_cooldown is not None else Config.LEDGER_QUOTA_COOLDOWN
        self.max_transfer_age_seconds = (
            max_transfer_age_seconds if max_transfer_age_seconds is not None else Config.MAX_TRANSFER_AGE_SECONDS
        )
        self._clock = clock
        self._cooldown_until: Optional[float] = None

    @property
    def in_quota_cooldown(self) -> bool:
        return self._cooldown_until is not None and self._clock() < self._cooldown_until

    def cooldown_remaining(self) -> float:
        if not self.in_quota_cooldown:
            return 0.0
        return max(0.0, self._cooldown_until - self._clock())

    def _enter_cooldown(self):
        self._cooldown_until = self._clock() + self.quota_cooldown
        logger.warning(
            f"⏸️ LEDGER_QUOTA_EXCEEDED: pausing ledger queries for {self.quota_cooldown}s"
        )

    def _is_stale(self, transfer: Transfer) -> bool:
        if not self.max_transfer_age_seconds or transfer.block_time is None:
            return False
        return time.time() - transfer.block_time > self.max_transfer_age_seconds

    async def poll(self, since: int) -> PollResult:
        """
        Read every page after `since` (up to max_pages).

        Raises:
            TransientLedgerError: any query failed; the caller must not move its checkpoint
            LedgerQuotaExceededError: the API is out of quota or still cooling down
        """
        if self.in_quota_cooldown:
            raise LedgerQuotaExceededError(
                f"Ledger quota cooldown active ({self.cooldown_remaining():.0f}s remaining)",
                status_code=402,
            )

        result = PollResult(new_checkpoint=since)
        highest_block: Optional[int] = None
        page: Optional[int] = 1

        while page is not None:
            if result.pages_fetched >= self.max_pages:
                result.truncated = True
                break

            try:
                transfer_page = await asyncio.wait_for(
                    self.ledger_query.list_incoming_transfers(self.deposit_address, since, page),
                    timeout=self.request_timeout,
                )
            except asyncio.TimeoutError:
                raise TransientLedgerError(
                    f"Ledger query timed out after {self.request_timeout}s (page {page})"
                )
            except LedgerQuotaExceededError:
                self._enter_cooldown()
                raise

            result.pages_fetched += 1
            if transfer_page.highest_block is not None:
                highest_block = (
                    transfer_page.highest_block if highest_block is None
                    else max(highest_block, transfer_page.highest_block)
                )

            for transfer in transfer_page.transfers:
                if self._is_stale(transfer):
                    result.skipped_stale += 1
                    logger.info(
                        f"⏭️ LEDGER_POLL_SKIP_STALE: {transfer.tx_hash}#{transfer.output_index} "
                        f"older than {self.max_transfer_age_seconds}s"
                    )
                    continue
                result.transfers.append(transfer)

            page = transfer_page.next_page

        if highest_block is not None:
            # A truncated scan may have stopped part way through the last block it saw
            covered = highest_block - 1 if result.truncated else highest_block
            result.new_checkpoint = max(since, covered)

        if result.truncated:
            logger.warning(
                f"📄 LEDGER_POLL_TRUNCATED: page cap {self.max_pages} reached, "
                f"checkpoint {since} -> {result.new_checkpoint}, remainder re-scanned next cycle"
            )
        logger.debug(
            f"🔍 LEDGER_POLL: {len(result.transfers)} transfers in {result.pages_fetched} pages "
            f"after block {since}"
        )
        return result
