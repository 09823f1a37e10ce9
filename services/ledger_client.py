"""
Ledger clients for the refund monitor

LedgerQueryClient reads address history from a Blockfrost-compatible REST API.
WalletServiceClient talks to the signing service that builds, signs and submits
refund transactions; keys never live in this process.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from config import Config
from services.refund_errors import (
    LedgerQuotaExceededError,
    RefundSubmissionError,
    SubmissionMayHaveLandedError,
    TransientLedgerError,
)

logger = logging.getLogger(__name__)

LOVELACE_UNIT = "lovelace"
# CIP-20 transaction message label; the signup flow puts the correlation key in "msg"
CORRELATION_METADATA_LABEL = "674"

TX_STATUS_CONFIRMED = "confirmed"
TX_STATUS_UNKNOWN = "unknown"


@dataclass
class Transfer:
    """One ledger output paying the deposit address"""
    tx_hash: str
    output_index: int
    sender_address: str
    recipient_address: str
    amount: int
    confirmations: int
    block_height: Optional[int] = None
    block_time: Optional[int] = None
    correlation_key: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.tx_hash, self.output_index)


@dataclass
class TransferPage:
    transfers: List[Transfer] = field(default_factory=list)
    next_page: Optional[int] = None
    highest_block: Optional[int] = None


@dataclass
class PreparedTransfer:
    """A built and signed transaction that has not been submitted yet"""
    tx_hash: str
    payload: str
    to_address: str
    amount: int


def _lovelace(amounts: List[Dict[str, Any]]) -> int:
    for entry in amounts or []:
        if entry.get("unit") == LOVELACE_UNIT:
            return int(entry.get("quantity", 0))
    return 0


def _correlation_key_from_metadata(metadata: List[Dict[str, Any]]) -> Optional[str]:
    for entry in metadata or []:
        if str(entry.get("label")) != CORRELATION_METADATA_LABEL:
            continue
        body = entry.get("json_metadata")
        if isinstance(body, dict):
            body = body.get("msg")
        if isinstance(body, list):
            body = body[0] if body else None
        if isinstance(body, str) and body.strip():
            return body.strip()
    return None


class LedgerQueryClient:
    """Read-only ledger history queries"""

    def __init__(self, base_url: str = None, api_key: str = None,
                 page_size: int = None, timeout: float = None):
        self.base_url = (base_url or Config.LEDGER_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else Config.LEDGER_API_KEY
        self.page_size = page_size or Config.LEDGER_PAGE_SIZE
        self.timeout = aiohttp.ClientTimeout(total=timeout or Config.LEDGER_REQUEST_TIMEOUT)
        self._session: Optional[aiohttp.ClientSession] = None

        if not self.api_key:
            logger.warning("LEDGER_API_KEY not configured - ledger queries will be rejected")

    def _get_headers(self) -> Dict[str, str]:
        return {"project_id": self.api_key, "Accept": "application/json"}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self._get_headers())
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """GET a JSON resource; None on 404, typed errors for everything else"""
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.get(url, params=params) as response:
                if response.status == 200:
                    return await response.json()
                if response.status == 404:
                    return None

                error_text = (await response.text())[:200]
                if response.status == 402:
                    raise LedgerQuotaExceededError(
                        f"Ledger API quota exceeded (402): {error_text}", status_code=402
                    )
                raise TransientLedgerError(
                    f"Ledger API error {response.status} on {path}: {error_text}",
                    status_code=response.status,
                )
        except asyncio.TimeoutError:
            raise TransientLedgerError(f"Ledger API timeout on {path}")
        except aiohttp.ClientError as e:
            raise TransientLedgerError(f"Ledger API network error on {path}: {e}")

    async def get_tip_height(self) -> int:
        latest = await self._get("/blocks/latest")
        if not latest or latest.get("height") is None:
            raise TransientLedgerError("Ledger API returned no chain tip")
        return int(latest["height"])

    async def list_incoming_transfers(self, address: str, since_checkpoint: int,
                                      page: int = 1) -> TransferPage:
        """
        Transfers paying `address` in blocks strictly after `since_checkpoint`, oldest first.

        Args:
            address: Deposit address to scan
            since_checkpoint: Last fully processed block height
            page: 1-based page number

        Returns:
            TransferPage with next_page=None once the history is exhausted
        """
        params = {
            "order": "asc",
            "page": page,
            "count": self.page_size,
            "from": str(int(since_checkpoint) + 1),
        }
        history = await self._get(f"/addresses/{address}/transactions", params=params)
        if not history:
            return TransferPage()

        tip_height = await self.get_tip_height()
        transfers: List[Transfer] = []
        highest_block = None

        for item in history:
            tx_hash = item["tx_hash"]
            block_height = item.get("block_height")
            if block_height is not None:
                block_height = int(block_height)
                highest_block = block_height if highest_block is None else max(highest_block, block_height)

            utxos = await self._get(f"/txs/{tx_hash}/utxos")
            if not utxos:
                logger.warning(f"⚠️ LEDGER_QUERY: no UTxO data for {tx_hash}, skipping")
                continue

            inputs = utxos.get("inputs") or []
            sender = inputs[0].get("address") if inputs else None
            if not sender:
                logger.warning(f"⚠️ LEDGER_QUERY: could not determine sender for {tx_hash}")
                continue

            outputs = [
                (position, output) for position, output in enumerate(utxos.get("outputs") or [])
                if output.get("address") == address
            ]
            if not outputs:
                continue

            correlation_key = None
            metadata = await self._get(f"/txs/{tx_hash}/metadata")
            if metadata:
                correlation_key = _correlation_key_from_metadata(metadata)

            confirmations = max(0, tip_height - block_height + 1) if block_height is not None else 0
            for position, output in outputs:
                transfers.append(
                    Transfer(
                        tx_hash=tx_hash,
                        output_index=int(output.get("output_index", position)),
                        sender_address=sender,
                        recipient_address=address,
                        amount=_lovelace(output.get("amount")),
                        confirmations=confirmations,
                        block_height=block_height,
                        block_time=item.get("block_time"),
                        correlation_key=correlation_key,
                    )
                )

        next_page = page + 1 if len(history) >= self.page_size else None
        return TransferPage(transfers=transfers, next_page=next_page, highest_block=highest_block)

    async def get_transaction_status(self, tx_hash: str) -> str:
        """Return "confirmed" once the transaction is in a block, otherwise "unknown"."""
        tx = await self._get(f"/txs/{tx_hash}")
        if tx and tx.get("block_height") is not None:
            return TX_STATUS_CONFIRMED
        return TX_STATUS_UNKNOWN


class WalletServiceClient:
    """Build, sign and submit refund transfers through the wallet service"""

    def __init__(self, base_url: str = None, token: str = None, timeout: float = None):
        self.base_url = (base_url or Config.WALLET_SERVICE_URL).rstrip("/")
        self.token = token if token is not None else Config.WALLET_SERVICE_TOKEN
        self.timeout = aiohttp.ClientTimeout(total=timeout or Config.REFUND_SUBMIT_TIMEOUT)
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": Config.WEBHOOK_USER_AGENT}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self._get_headers())
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def prepare_transfer(self, to_address: str, amount: int) -> PreparedTransfer:
        """Build and sign a transfer without broadcasting it"""
        session = await self._get_session()
        path = "/transactions/prepare"
        try:
            async with session.post(
                f"{self.base_url}{path}", json={"to_address": to_address, "amount": amount}
            ) as response:
                if response.status == 200:
                    data = await response.json()
                    return PreparedTransfer(
                        tx_hash=data["tx_hash"],
                        payload=data["payload"],
                        to_address=to_address,
                        amount=amount,
                    )
                error_text = (await response.text())[:200]
                if response.status == 429 or response.status >= 500:
                    raise TransientLedgerError(
                        f"Wallet service unavailable ({response.status}): {error_text}",
                        status_code=response.status,
                    )
                raise RefundSubmissionError(
                    f"Wallet service rejected transfer build ({response.status}): {error_text}",
                    status_code=response.status,
                )
        except asyncio.TimeoutError:
            raise TransientLedgerError("Wallet service timeout while preparing transfer")
        except aiohttp.ClientError as e:
            raise TransientLedgerError(f"Wallet service network error: {e}")

    async def submit_transfer(self, prepared: PreparedTransfer) -> str:
        """
        Broadcast a prepared transfer and return its hash.

        Once the request has been sent the outcome is ambiguous on timeout or 5xx,
        so those raise SubmissionMayHaveLandedError rather than a transient error.
        """
        session = await self._get_session()
        path = "/transactions/submit"
        try:
            async with session.post(
                f"{self.base_url}{path}", json={"tx_hash": prepared.tx_hash, "payload": prepared.payload}
            ) as response:
                if response.status in (200, 201, 202):
                    data = await response.json()
                    return data.get("tx_hash") or prepared.tx_hash
                error_text = (await response.text())[:200]
                if response.status == 429:
                    raise TransientLedgerError(
                        f"Wallet service rate limited submission: {error_text}", status_code=429
                    )
                if response.status >= 500:
                    raise SubmissionMayHaveLandedError(
                        f"Wallet service error {response.status} during submission: {error_text}",
                        status_code=response.status,
                    )
                raise RefundSubmissionError(
                    f"Refund transaction rejected ({response.status}): {error_text}",
                    status_code=response.status,
                )
        except asyncio.TimeoutError:
            raise SubmissionMayHaveLandedError(f"Timeout submitting {prepared.tx_hash}")
        except aiohttp.ClientConnectorError as e:
            raise TransientLedgerError(f"Wallet service unreachable: {e}")
        except aiohttp.ClientConnectionError as e:
            raise SubmissionMayHaveLandedError(f"Connection lost submitting {prepared.tx_hash}: {e}")
        except aiohttp.ClientError as e:
            raise TransientLedgerError(f"Wallet service network error: {e}")

    async def build_and_submit_transfer(self, to_address: str, amount: int) -> str:
        prepared = await self.prepare_transfer(to_address, amount)
        return await self.submit_transfer(prepared)
