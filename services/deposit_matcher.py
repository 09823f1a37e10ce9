"""
Deposit Matcher - turns observed transfers into deposit records

Matching and persisting happen in one store transaction. Registrations are matched by
correlation key first, then by sender address; a deposit nobody announced still gets a
record under a placeholder identity so it can be refunded.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from config import Config
from models import DepositRecord, DepositStatus, PendingRegistration
from services.ledger_client import Transfer
from services.reconciliation_store import ReconciliationStore
from services.refund_errors import DuplicateObservationError, InvalidAmountError, ReconciliationError
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

REASON_CREATED = "created"
REASON_DUPLICATE = "duplicate"
REASON_PROMOTED = "promoted"
REASON_INVALID_AMOUNT = "invalid_amount"
REASON_WRONG_RECIPIENT = "wrong_recipient"
REASON_SELF_TRANSFER = "self_transfer"


def placeholder_identity(tx_hash: str, output_index: int) -> str:
    return f"auto_{tx_hash[:16]}_{output_index}"


@dataclass
class IngestResult:
    record: Optional[DepositRecord]
    created: bool
    matched: bool = False
    reason: str = REASON_CREATED

    def __iter__(self):
        # Unpacks as (record, created)
        return iter((self.record, self.created))

    @property
    def promoted(self) -> bool:
        return self.reason == REASON_PROMOTED


class DepositMatcher:
    """Validate a transfer, match it to a registration and persist it exactly once"""

    def __init__(self, store: ReconciliationStore, deposit_address: str = None,
                 required_amount: int = None, required_confirmations: int = None):
        self.store = store
        self.deposit_address = deposit_address or Config.DEPOSIT_ADDRESS
        self.required_amount = required_amount or Config.REQUIRED_DEPOSIT_AMOUNT
        self.required_confirmations = (
            required_confirmations if required_confirmations is not None else Config.REQUIRED_CONFIRMATIONS
        )

    def _validate(self, transfer: Transfer):
        if transfer.amount != self.required_amount:
            raise InvalidAmountError(transfer.amount, self.required_amount)

    async def ingest(self, transfer: Transfer) -> IngestResult:
        """
        Record a transfer if it is a qualifying deposit.

        Returns:
            IngestResult; (None, False) for transfers that are not deposits,
            (record, False) when the key was already recorded
        """
        if transfer.recipient_address != self.deposit_address:
            logger.debug(f"Ignoring {transfer.tx_hash}#{transfer.output_index}: not sent to deposit address")
            return IngestResult(None, False, reason=REASON_WRONG_RECIPIENT)

        # Change outputs of our own refund transactions land back on the deposit address
        if transfer.sender_address == self.deposit_address:
            logger.debug(f"Ignoring {transfer.tx_hash}#{transfer.output_index}: self transfer")
            return IngestResult(None, False, reason=REASON_SELF_TRANSFER)

        try:
            self._validate(transfer)
        except InvalidAmountError as e:
            logger.info(f"💸 DEPOSIT_INVALID_AMOUNT: {transfer.tx_hash}#{transfer.output_index} - {e}")
            return IngestResult(None, False, reason=REASON_INVALID_AMOUNT)

        try:
            return await asyncio.to_thread(self._record_observation, transfer)
        except DuplicateObservationError as e:
            return IngestResult(e.record, False, matched=not e.record.is_placeholder, reason=REASON_DUPLICATE)
        except IntegrityError as e:
            # Lost a race with a concurrent ingest; the retry sees the winner's row
            logger.warning(
                f"⚠️ DEPOSIT_INGEST_CONFLICT: {transfer.tx_hash}#{transfer.output_index} "
                f"retrying once after integrity error: {e.orig}"
            )

        try:
            return await asyncio.to_thread(self._record_observation, transfer)
        except DuplicateObservationError as e:
            return IngestResult(e.record, False, matched=not e.record.is_placeholder, reason=REASON_DUPLICATE)

    def _record_observation(self, transfer: Transfer) -> IngestResult:
        confirmed = transfer.confirmations >= self.required_confirmations

        with self.store.transaction() as session:
            existing = self.store.find_deposit(session, transfer.tx_hash, transfer.output_index)
            if existing is not None:
                result = self._resight(existing, transfer, confirmed)
            else:
                result = self._create(session, transfer, confirmed)

        # Raised after commit so the re-sighting counters are kept
        if result.reason == REASON_DUPLICATE:
            raise DuplicateObservationError(transfer.tx_hash, transfer.output_index, record=result.record)
        return result

    def _create(self, session, transfer: Transfer, confirmed: bool) -> IngestResult:
        registration = self.store.find_pending_registration(
            session, transfer.sender_address, transfer.correlation_key
        )
        if registration is not None and self.store.identity_has_active_deposit(session, registration.user_address):
            logger.warning(
                f"⚠️ DEPOSIT_IDENTITY_BUSY: {registration.user_address} already has an active deposit, "
                f"treating {transfer.tx_hash}#{transfer.output_index} as unmatched"
            )
            registration = None

        if registration is not None:
            user_address = registration.user_address
        else:
            user_address = placeholder_identity(transfer.tx_hash, transfer.output_index)

        record = self.store.add_deposit(
            session,
            tx_hash=transfer.tx_hash,
            output_index=transfer.output_index,
            block_height=transfer.block_height,
            confirmations=transfer.confirmations,
            user_address=user_address,
            sender_wallet_address=transfer.sender_address,
            is_placeholder=registration is None,
            registration_id=registration.id if registration is not None else None,
            amount=transfer.amount,
            status=DepositStatus.VERIFIED.value if confirmed else DepositStatus.PENDING.value,
            verification_attempts=1,
            refund_attempts=0,
        )

        if registration is not None:
            self.store.link_registration(session, registration, record)
            logger.info(
                f"✅ DEPOSIT_MATCHED: {transfer.tx_hash}#{transfer.output_index} -> {user_address} ({record.status})"
            )
            return IngestResult(record, True, matched=True, reason=REASON_CREATED)

        logger.info(
            f"🆕 DEPOSIT_UNMATCHED: {transfer.tx_hash}#{transfer.output_index} from "
            f"{transfer.sender_address} recorded as {user_address} ({record.status})"
        )
        return IngestResult(record, True, matched=False, reason=REASON_CREATED)

    def _resight(self, existing: DepositRecord, transfer: Transfer, confirmed: bool) -> IngestResult:
        existing.verification_attempts += 1
        existing.confirmations = max(existing.confirmations or 0, transfer.confirmations)
        matched = not existing.is_placeholder

        if existing.status == DepositStatus.PENDING.value and confirmed:
            existing.status = DepositStatus.VERIFIED.value
            existing.updated_at = get_naive_utc_now()
            logger.info(
                f"✅ DEPOSIT_CONFIRMED: {existing.tx_hash}#{existing.output_index} reached "
                f"{transfer.confirmations} confirmations"
            )
            return IngestResult(existing, False, matched=matched, reason=REASON_PROMOTED)

        logger.debug(f"Deposit {existing.tx_hash}#{existing.output_index} already recorded ({existing.status})")
        return IngestResult(existing, False, matched=matched, reason=REASON_DUPLICATE)

    async def register_pending(self, user_address: str, sender_wallet_address: str,
                               correlation_key: Optional[str] = None) -> PendingRegistration:
        """Announce an expected deposit from the signup flow"""
        try:
            registration = await asyncio.to_thread(
                self.store.create_registration, user_address, sender_wallet_address, correlation_key
            )
        except IntegrityError:
            raise ReconciliationError(f"Registration for {user_address} already exists")
        logger.info(f"📝 DEPOSIT_REGISTRATION_PENDING: {user_address} expecting deposit from {sender_wallet_address}")
        return registration
