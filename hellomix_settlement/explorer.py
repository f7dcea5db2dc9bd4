"""
Bitcoin deposit observation via an Esplora-compatible API
(blockstream.info, mempool.space).
"""

from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from .errors import UpstreamError
from .models import PaymentCheck, PaymentClassification

logger = structlog.get_logger()

# Esplora returns address history in pages of 25
PAGE_SIZE = 25


@dataclass
class AddressTotals:
    """Balances of an address in satoshis."""

    confirmed_sats: int
    unconfirmed_sats: int
    total_received_sats: int


@dataclass
class TxOutput:
    """Transaction output."""

    vout: int
    value_sats: int
    script_pubkey: str
    script_pubkey_type: str
    address: Optional[str]


@dataclass
class BitcoinTx:
    """Parsed Bitcoin transaction."""

    txid: str
    confirmed: bool
    block_height: Optional[int]
    block_time: Optional[int]
    confirmations: int
    outputs: list[TxOutput]


@dataclass
class TxMatch:
    """A single output paying the deposit address enough."""

    txid: str
    vout: int
    value_sats: int
    confirmations: int


def _int_field(stats: Any, name: str) -> int:
    if not isinstance(stats, dict):
        raise UpstreamError("explorer", "malformed address stats")
    value = stats.get(name, 0)
    if not isinstance(value, int) or isinstance(value, bool):
        raise UpstreamError("explorer", f"malformed address stats field {name}")
    return value


class ChainObserver:
    """Async client for Esplora-compatible Bitcoin explorers."""

    def __init__(
        self,
        base_url: str = "https://blockstream.info/api",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def _get(self, path: str) -> httpx.Response:
        try:
            response = await self.client.get(path)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UpstreamError("explorer", f"GET {path} failed", e.response.status_code) from e
        except httpx.HTTPError as e:
            raise UpstreamError("explorer", f"GET {path} failed: {e}") from e
        return response

    async def _get_json(self, path: str) -> Any:
        response = await self._get(path)
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError("explorer", f"malformed JSON from {path}") from e

    async def get_tip_height(self) -> int:
        response = await self._get("/blocks/tip/height")
        try:
            return int(response.text)
        except ValueError as e:
            raise UpstreamError("explorer", "malformed tip height") from e

    async def get_address_totals(self, address: str) -> AddressTotals:
        """
        Confirmed balance = chain funded - spent.
        Unconfirmed balance = mempool funded - spent.
        """
        data = await self._get_json(f"/address/{address}")
        if not isinstance(data, dict):
            raise UpstreamError("explorer", "invalid response from /address endpoint")

        chain = data.get("chain_stats")
        mempool = data.get("mempool_stats")
        chain_funded = _int_field(chain, "funded_txo_sum")
        mempool_funded = _int_field(mempool, "funded_txo_sum")

        return AddressTotals(
            confirmed_sats=chain_funded - _int_field(chain, "spent_txo_sum"),
            unconfirmed_sats=mempool_funded - _int_field(mempool, "spent_txo_sum"),
            total_received_sats=chain_funded + mempool_funded,
        )

    async def get_address_txs(self, address: str) -> list[dict[str, Any]]:
        """
        Get transactions for an address.

        The first page holds mempool transactions plus the newest confirmed
        ones. Older confirmed history is followed through
        `/txs/chain/<last_seen_txid>` until exhausted.
        """
        base = f"/address/{address}/txs"
        txs: list[dict[str, Any]] = []
        cursor_txid: Optional[str] = None
        seen_cursors: set[str] = set()

        while True:
            if cursor_txid is None:
                path = base
            else:
                # Guard against accidental cursor loops from upstream responses.
                if cursor_txid in seen_cursors:
                    logger.warning("address_txs_cursor_loop", address=address, cursor_txid=cursor_txid)
                    break
                seen_cursors.add(cursor_txid)
                path = f"{base}/chain/{cursor_txid}"

            page = await self._get_json(path)
            if not isinstance(page, list):
                raise UpstreamError("explorer", f"invalid response from {path}")
            if not page:
                break

            txs.extend(tx for tx in page if isinstance(tx, dict))

            # Shorter page means end of history.
            if len(page) < PAGE_SIZE:
                break

            last_txid = page[-1].get("txid") if isinstance(page[-1], dict) else None
            if not last_txid:
                break
            cursor_txid = last_txid

        return txs

    @staticmethod
    def parse_tx(tx_data: dict[str, Any], tip_height: int) -> BitcoinTx:
        """Parse transaction data into BitcoinTx."""
        txid = tx_data.get("txid")
        if not isinstance(txid, str) or not txid:
            raise UpstreamError("explorer", "malformed transaction: missing txid")

        status = tx_data.get("status") or {}
        if not isinstance(status, dict):
            raise UpstreamError("explorer", f"malformed transaction {txid}: status is not an object")
        confirmed = bool(status.get("confirmed", False))
        block_height = status.get("block_height")

        confirmations = 0
        if confirmed and isinstance(block_height, int):
            confirmations = max(1, tip_height - block_height + 1)

        vouts = tx_data.get("vout") or []
        if not isinstance(vouts, list):
            raise UpstreamError("explorer", f"malformed transaction {txid}: vout is not a list")

        outputs = []
        for i, vout in enumerate(vouts):
            if not isinstance(vout, dict):
                raise UpstreamError("explorer", f"malformed transaction {txid}: output {i} is not an object")
            value = vout.get("value", 0)
            if isinstance(value, bool) or not isinstance(value, int):
                raise UpstreamError("explorer", f"malformed transaction {txid}: output {i} value {value!r}")
            outputs.append(
                TxOutput(
                    vout=i,
                    value_sats=value,
                    script_pubkey=vout.get("scriptpubkey", ""),
                    script_pubkey_type=vout.get("scriptpubkey_type", ""),
                    address=vout.get("scriptpubkey_address"),
                )
            )

        return BitcoinTx(
            txid=txid,
            confirmed=confirmed,
            block_height=block_height if confirmed else None,
            block_time=status.get("block_time"),
            confirmations=confirmations,
            outputs=outputs,
        )

    async def find_matching_transaction(self, address: str, min_sats: int) -> Optional[TxMatch]:
        """
        First output paying at least `min_sats` to `address`.

        Confirmed transactions are preferred over mempool ones. Among
        qualifying outputs of the same kind the first one listed wins.
        """
        txs_data = await self.get_address_txs(address)
        tip_height: Optional[int] = None
        if any(isinstance(tx.get("status"), dict) and tx["status"].get("confirmed") for tx in txs_data):
            tip_height = await self.get_tip_height()

        unconfirmed_match: Optional[TxMatch] = None
        for tx_data in txs_data:
            if "txid" not in tx_data:
                continue
            tx = self.parse_tx(tx_data, tip_height or 0)
            for output in tx.outputs:
                if output.address != address or output.value_sats < min_sats:
                    continue
                match = TxMatch(
                    txid=tx.txid,
                    vout=output.vout,
                    value_sats=output.value_sats,
                    confirmations=tx.confirmations,
                )
                if tx.confirmed:
                    return match
                if unconfirmed_match is None:
                    unconfirmed_match = match

        return unconfirmed_match

    async def classify_payment(self, address: str, expected_sats: int) -> PaymentCheck:
        """
        Compare the address balances against the expected amount.

        confirmed:   confirmed balance >= expected
        unconfirmed: confirmed < expected <= confirmed + unconfirmed
        pending:     otherwise
        """
        totals = await self.get_address_totals(address)

        if totals.confirmed_sats >= expected_sats:
            classification = PaymentClassification.CONFIRMED
        elif totals.confirmed_sats + totals.unconfirmed_sats >= expected_sats:
            classification = PaymentClassification.UNCONFIRMED
        else:
            classification = PaymentClassification.PENDING

        check = PaymentCheck(
            address=address,
            expected_sats=expected_sats,
            confirmed_sats=totals.confirmed_sats,
            unconfirmed_sats=totals.unconfirmed_sats,
            total_received_sats=totals.total_received_sats,
            classification=classification,
        )

        if classification is not PaymentClassification.PENDING:
            match = await self.find_matching_transaction(address, expected_sats)
            if match is not None:
                check.txid = match.txid
                check.confirmations = match.confirmations
            elif classification is PaymentClassification.CONFIRMED:
                # Funded by several smaller outputs; no single txid to report.
                check.confirmations = 1

        logger.debug(
            "payment_classified",
            address=address,
            status=classification.value,
            confirmed_sats=totals.confirmed_sats,
            unconfirmed_sats=totals.unconfirmed_sats,
            expected_sats=expected_sats,
        )
        return check
