"""
Deposit matcher tests
Exact-amount filter, duplicate delivery, registration matching and placeholder identities
"""

import asyncio

import pytest

from models import DepositStatus, RegistrationStatus
from services.deposit_matcher import placeholder_identity
from services.refund_errors import ReconciliationError

from conftest import DEPOSIT_ADDRESS, REQUIRED_AMOUNT, SENDER_A, SENDER_B, make_transfer


class TestAmountAndRecipientFilter:
    """Only exact-amount transfers to the deposit address become records"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [REQUIRED_AMOUNT - 1, REQUIRED_AMOUNT + 1])
    async def test_off_by_one_amount_creates_nothing(self, matcher, store, amount):
        record, created = await matcher.ingest(make_transfer(amount=amount))

        assert record is None
        assert created is False
        assert store.list_deposits() == []

    @pytest.mark.asyncio
    async def test_exact_amount_creates_verified_record(self, matcher):
        result = await matcher.ingest(make_transfer(tx_hash="tx_exact"))

        assert result.created is True
        assert result.record.status == DepositStatus.VERIFIED.value
        assert result.record.amount == REQUIRED_AMOUNT
        assert result.record.sender_wallet_address == SENDER_A

    @pytest.mark.asyncio
    async def test_transfer_to_other_address_is_ignored(self, matcher, store):
        record, created = await matcher.ingest(make_transfer(recipient="addr_test1_someone_else"))
        assert (record, created) == (None, False)
        assert store.list_deposits() == []

    @pytest.mark.asyncio
    async def test_change_output_of_own_refund_is_ignored(self, matcher, store):
        record, created = await matcher.ingest(make_transfer(sender=DEPOSIT_ADDRESS))
        assert (record, created) == (None, False)
        assert store.list_deposits() == []


class TestDuplicateDelivery:
    """Re-polled transfers are no-ops keyed on (tx_hash, output_index)"""

    @pytest.mark.asyncio
    async def test_same_transfer_twice_yields_one_record(self, matcher, store):
        transfer = make_transfer(tx_hash="tx_dup")

        first_record, first_created = await matcher.ingest(transfer)
        second_record, second_created = await matcher.ingest(transfer)

        assert first_created is True
        assert second_created is False
        assert second_record.id == first_record.id
        assert len(store.list_deposits()) == 1
        assert store.get_deposit("tx_dup", 0).verification_attempts == 2

    @pytest.mark.asyncio
    async def test_concurrent_ingest_of_same_transfer(self, matcher, store):
        transfer = make_transfer(tx_hash="tx_race")

        results = await asyncio.gather(*[matcher.ingest(transfer) for _ in range(5)])

        assert sum(1 for r in results if r.created) == 1
        assert len(store.list_deposits()) == 1

    @pytest.mark.asyncio
    async def test_under_confirmed_deposit_is_promoted_on_resighting(self, matcher):
        pending = await matcher.ingest(make_transfer(tx_hash="tx_slow", confirmations=0))
        assert pending.record.status == DepositStatus.PENDING.value

        promoted = await matcher.ingest(make_transfer(tx_hash="tx_slow", confirmations=2))
        assert promoted.created is False
        assert promoted.promoted is True
        assert promoted.record.status == DepositStatus.VERIFIED.value
        assert promoted.record.confirmations == 2


class TestRegistrationMatching:
    """Correlation key first, then sender address; placeholders otherwise"""

    @pytest.mark.asyncio
    async def test_match_by_sender_address(self, matcher, store):
        await matcher.register_pending("addr_user_alice", SENDER_A)

        result = await matcher.ingest(make_transfer(tx_hash="tx_alice"))

        assert result.matched is True
        assert result.record.user_address == "addr_user_alice"
        assert result.record.is_placeholder is False
        registration = store.get_registration("addr_user_alice")
        assert registration.status == RegistrationStatus.LINKED.value
        assert registration.deposit_record_id == result.record.id

    @pytest.mark.asyncio
    async def test_correlation_key_wins_over_sender(self, matcher):
        await matcher.register_pending("addr_user_by_sender", SENDER_A)
        await matcher.register_pending("addr_user_by_key", SENDER_B, correlation_key="signup-7f3a")

        result = await matcher.ingest(make_transfer(tx_hash="tx_keyed", sender=SENDER_A, correlation_key="signup-7f3a"))

        assert result.record.user_address == "addr_user_by_key"
        assert result.record.sender_wallet_address == SENDER_A

    @pytest.mark.asyncio
    async def test_unmatched_deposit_gets_placeholder_identity(self, matcher):
        tx_hash = "f" * 64
        result = await matcher.ingest(make_transfer(tx_hash=tx_hash, output_index=1))

        assert result.created is True
        assert result.matched is False
        assert result.record.is_placeholder is True
        assert result.record.user_address == placeholder_identity(tx_hash, 1)
        assert result.record.user_address == "auto_ffffffffffffffff_1"

    @pytest.mark.asyncio
    async def test_independent_deposits_from_same_sender(self, matcher, store):
        await matcher.register_pending("addr_user_alice", SENDER_A)

        first = await matcher.ingest(make_transfer(tx_hash="tx_one"))
        second = await matcher.ingest(make_transfer(tx_hash="tx_two"))

        assert first.created and second.created
        assert first.record.user_address == "addr_user_alice"
        assert second.record.is_placeholder is True
        assert len(store.get_deposits_by_user("addr_user_alice")) == 1
        assert len(store.list_deposits()) == 2

    @pytest.mark.asyncio
    async def test_duplicate_registration_is_rejected(self, matcher):
        await matcher.register_pending("addr_user_alice", SENDER_A)
        with pytest.raises(ReconciliationError):
            await matcher.register_pending("addr_user_alice", SENDER_B)
