"""
Ledger poller tests
Pagination, page cap, checkpoint safety on errors, quota cooldown and the age filter
"""

import asyncio
import time

import pytest

from services.ledger_poller import LedgerPoller
from services.refund_errors import LedgerQuotaExceededError, TransientLedgerError

from conftest import DEPOSIT_ADDRESS, FakeLedgerQuery, make_transfer, transient


def _fill(ledger, count, start_block=101):
    for i in range(count):
        ledger.add(make_transfer(tx_hash=f"tx_{i:03d}", block_height=start_block + i))


class TestPolling:

    @pytest.mark.asyncio
    async def test_reads_all_pages_and_advances_to_highest_block(self, ledger, poller):
        ledger.page_size = 3
        _fill(ledger, 7)

        result = await poller.poll(100)

        assert len(result.transfers) == 7
        assert result.pages_fetched == 3
        assert result.truncated is False
        assert result.new_checkpoint == 107

    @pytest.mark.asyncio
    async def test_no_new_transfers_keeps_checkpoint(self, ledger, poller):
        result = await poller.poll(250)
        assert result.transfers == []
        assert result.new_checkpoint == 250

    @pytest.mark.asyncio
    async def test_repeated_poll_with_same_checkpoint_is_safe(self, ledger, poller):
        _fill(ledger, 2)
        first = await poller.poll(100)
        second = await poller.poll(100)
        assert [t.tx_hash for t in first.transfers] == [t.tx_hash for t in second.transfers]

    @pytest.mark.asyncio
    async def test_page_cap_truncates_and_rescans_last_block(self, ledger):
        ledger.page_size = 2
        _fill(ledger, 10)
        poller = LedgerPoller(ledger, deposit_address=DEPOSIT_ADDRESS, max_pages=2, request_timeout=2)

        result = await poller.poll(100)

        assert result.truncated is True
        assert result.pages_fetched == 2
        assert len(result.transfers) == 4
        # Highest block read was 104; only blocks up to 103 count as fully covered
        assert result.new_checkpoint == 103

        follow_up = await poller.poll(result.new_checkpoint)
        assert follow_up.transfers[0].tx_hash == "tx_003"


class TestCheckpointSafety:

    @pytest.mark.asyncio
    async def test_mid_pagination_error_propagates(self, ledger, poller):
        ledger.page_size = 2
        _fill(ledger, 5)

        original = ledger.list_incoming_transfers

        async def fail_on_second_page(address, since, page=1):
            if page == 2:
                raise transient("503 on page 2")
            return await original(address, since, page)

        ledger.list_incoming_transfers = fail_on_second_page

        with pytest.raises(TransientLedgerError):
            await poller.poll(100)

    @pytest.mark.asyncio
    async def test_query_timeout_becomes_transient_error(self):
        class HangingLedger(FakeLedgerQuery):
            async def list_incoming_transfers(self, address, since_checkpoint, page=1):
                await asyncio.sleep(5)

        poller = LedgerPoller(HangingLedger(), deposit_address=DEPOSIT_ADDRESS, request_timeout=0.05)

        with pytest.raises(TransientLedgerError):
            await poller.poll(0)


class TestQuotaCooldown:

    @pytest.mark.asyncio
    async def test_402_pauses_queries_until_cooldown_expires(self, ledger):
        now = [1000.0]
        poller = LedgerPoller(
            ledger, deposit_address=DEPOSIT_ADDRESS, quota_cooldown=300, clock=lambda: now[0]
        )
        ledger.errors.append(LedgerQuotaExceededError("quota", status_code=402))

        with pytest.raises(LedgerQuotaExceededError):
            await poller.poll(0)
        assert poller.in_quota_cooldown is True

        calls_before = len(ledger.list_calls)
        with pytest.raises(LedgerQuotaExceededError):
            await poller.poll(0)
        assert len(ledger.list_calls) == calls_before

        now[0] += 301
        assert poller.in_quota_cooldown is False
        result = await poller.poll(0)
        assert result.transfers == []


class TestAgeFilter:

    @pytest.mark.asyncio
    async def test_stale_transfers_skipped_but_covered(self, ledger):
        current = int(time.time())
        ledger.add(make_transfer(tx_hash="tx_old", block_height=101, block_time=current - 7200))
        ledger.add(make_transfer(tx_hash="tx_new", block_height=102, block_time=current - 60))
        poller = LedgerPoller(ledger, deposit_address=DEPOSIT_ADDRESS, max_transfer_age_seconds=3600)

        result = await poller.poll(100)

        assert [t.tx_hash for t in result.transfers] == ["tx_new"]
        assert result.skipped_stale == 1
        assert result.new_checkpoint == 102
