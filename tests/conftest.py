"""
Shared fixtures for the refund monitor test suite

1. Isolated SQLite store per test (file database in tmp_path, real SQLAlchemy sessions)
2. In-memory ledger query and wallet service fakes with failure injection
3. Transfer factory and engine component builders
"""

import asyncio
import itertools
import logging
from typing import Dict, List, Optional, Set

import pytest

from database import build_engine, build_session_factory
from models import Base
from services.deposit_matcher import DepositMatcher
from services.ledger_client import PreparedTransfer, Transfer, TransferPage, TX_STATUS_CONFIRMED, TX_STATUS_UNKNOWN
from services.ledger_poller import LedgerPoller
from services.reconciliation_store import ReconciliationStore
from services.refund_dispatcher import RefundDispatcher
from services.refund_errors import TransientLedgerError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

DEPOSIT_ADDRESS = "addr_test1_deposit_vault"
REQUIRED_AMOUNT = 2_000_000
SENDER_A = "addr_test1_sender_a"
SENDER_B = "addr_test1_sender_b"


class FakeLedgerQuery:
    """Ledger history held in memory; transfers are visible once their block is above `since`"""

    def __init__(self, page_size: int = 10):
        self.page_size = page_size
        self.transfers: List[Transfer] = []
        self.confirmed: Set[str] = set()
        self.errors: List[Exception] = []
        self.status_errors: List[Exception] = []
        self.list_calls: List[tuple] = []
        self.status_calls: List[str] = []

    def add(self, transfer: Transfer):
        self.transfers.append(transfer)

    async def list_incoming_transfers(self, address: str, since_checkpoint: int, page: int = 1) -> TransferPage:
        self.list_calls.append((address, since_checkpoint, page))
        await asyncio.sleep(0)
        if self.errors:
            raise self.errors.pop(0)

        visible = sorted(
            (t for t in self.transfers if t.recipient_address == address and (t.block_height or 0) > since_checkpoint),
            key=lambda t: (t.block_height or 0, t.tx_hash, t.output_index),
        )
        start = (page - 1) * self.page_size
        chunk = visible[start:start + self.page_size]
        next_page = page + 1 if start + self.page_size < len(visible) else None
        highest = max((t.block_height for t in chunk if t.block_height is not None), default=None)
        return TransferPage(transfers=list(chunk), next_page=next_page, highest_block=highest)

    async def get_transaction_status(self, tx_hash: str) -> str:
        self.status_calls.append(tx_hash)
        await asyncio.sleep(0)
        if self.status_errors:
            raise self.status_errors.pop(0)
        return TX_STATUS_CONFIRMED if tx_hash in self.confirmed else TX_STATUS_UNKNOWN


class FakeWalletService:
    """
    Builds deterministic refund transactions and records every broadcast.

    `submit_errors` are raised in order; with `land_before_error` the transaction reaches the
    ledger before the error is raised (the ambiguous-outcome case). `prepare_errors_for`
    fails every prepare for one destination address.
    """

    def __init__(self, ledger: Optional[FakeLedgerQuery] = None):
        self.ledger = ledger
        self._counter = itertools.count(1)
        self.prepared: List[PreparedTransfer] = []
        self.submissions: List[PreparedTransfer] = []
        self.prepare_errors: List[Exception] = []
        self.prepare_errors_for: Dict[str, Exception] = {}
        self.submit_errors: List[Exception] = []
        self.land_before_error = False
        self.submit_delay = 0.0

    @property
    def submitted_hashes(self) -> List[str]:
        return [p.tx_hash for p in self.submissions]

    def refunds_to(self, address: str) -> List[PreparedTransfer]:
        return [p for p in self.submissions if p.to_address == address]

    async def prepare_transfer(self, to_address: str, amount: int) -> PreparedTransfer:
        await asyncio.sleep(0)
        if self.prepare_errors:
            raise self.prepare_errors.pop(0)
        if to_address in self.prepare_errors_for:
            raise self.prepare_errors_for[to_address]
        n = next(self._counter)
        prepared = PreparedTransfer(
            tx_hash=f"refund_tx_{n:04d}", payload=f"signed_payload_{n:04d}", to_address=to_address, amount=amount
        )
        self.prepared.append(prepared)
        return prepared

    async def submit_transfer(self, prepared: PreparedTransfer) -> str:
        await asyncio.sleep(self.submit_delay)
        if self.submit_errors:
            error = self.submit_errors.pop(0)
            if self.land_before_error:
                self._land(prepared)
            raise error
        self._land(prepared)
        return prepared.tx_hash

    def _land(self, prepared: PreparedTransfer):
        self.submissions.append(prepared)
        if self.ledger is not None:
            self.ledger.confirmed.add(prepared.tx_hash)


def make_transfer(tx_hash: str = "tx_" + "a" * 60, output_index: int = 0, sender: str = SENDER_A,
                  amount: int = REQUIRED_AMOUNT, confirmations: int = 3, block_height: int = 100,
                  recipient: str = DEPOSIT_ADDRESS, correlation_key: Optional[str] = None,
                  block_time: Optional[int] = None) -> Transfer:
    return Transfer(
        tx_hash=tx_hash,
        output_index=output_index,
        sender_address=sender,
        recipient_address=recipient,
        amount=amount,
        confirmations=confirmations,
        block_height=block_height,
        block_time=block_time,
        correlation_key=correlation_key,
    )


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'refund_monitor_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return ReconciliationStore(build_session_factory(engine))


@pytest.fixture
def ledger():
    return FakeLedgerQuery()


@pytest.fixture
def wallet(ledger):
    return FakeWalletService(ledger)


@pytest.fixture
def matcher(store):
    return DepositMatcher(
        store, deposit_address=DEPOSIT_ADDRESS, required_amount=REQUIRED_AMOUNT, required_confirmations=1
    )


@pytest.fixture
def dispatcher(store, wallet, ledger):
    return RefundDispatcher(
        store, wallet, ledger,
        max_attempts=3, backoff_base=0, backoff_max=0, claim_lease=120, workers=4, submit_timeout=5,
    )


@pytest.fixture
def poller(ledger):
    return LedgerPoller(
        ledger, deposit_address=DEPOSIT_ADDRESS, max_pages=5, request_timeout=2,
        quota_cooldown=300, max_transfer_age_seconds=0,
    )


def transient(message: str = "ledger unavailable") -> TransientLedgerError:
    return TransientLedgerError(message, status_code=503)
