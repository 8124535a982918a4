"""Async Blockfrost ingestion for a script address.

Lists the address's transactions oldest first, then fetches each
transaction's header, UTxOs, redeemers and any datum or redeemer bytes
that are only referenced by hash. Requests share one httpx.AsyncClient
and one RateLimiter; 429 responses back off using Retry-After.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional

import httpx

from eutxo import Datum, Redeemer, Transaction, TxInput, TxOutput
from eutxo.errors import DataSourceError, RateLimitError
from eutxo.loader import parse_amount
from eutxo.rate_limiter import RateLimiter, blockfrost_limiter

logger = logging.getLogger(__name__)

NETWORKS = ("mainnet", "preprod", "preview")
PAGE_SIZE = 100
MAX_RETRIES = 3
DEFAULT_RETRY_AFTER = 2.0


def base_url(network: str) -> str:
    if network not in NETWORKS:
        raise DataSourceError(f"Unknown network {network!r} (expected one of {', '.join(NETWORKS)})")
    return f"https://cardano-{network}.blockfrost.io/api/v0"


class BlockfrostSource:
    """Thin Blockfrost client bound to one network and project id."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        project_id: str,
        network: str = "mainnet",
        limiter: Optional[RateLimiter] = None,
    ):
        if not project_id:
            raise DataSourceError("A Blockfrost project id is required")
        self.client = client
        self.project_id = project_id
        self.base = base_url(network)
        self.limiter = limiter or blockfrost_limiter()

    async def get(self, path: str, params: Optional[dict] = None) -> Any:
        """GET a JSON document. Returns None on 404.

        Raises:
            RateLimitError: still throttled after MAX_RETRIES attempts.
            DataSourceError: any other HTTP or transport failure.
        """
        url = f"{self.base}{path}"
        for attempt in range(MAX_RETRIES + 1):
            async with self.limiter:
                try:
                    resp = await self.client.get(
                        url, params=params, headers={"project_id": self.project_id}
                    )
                except httpx.HTTPError as exc:
                    raise DataSourceError(f"Request to {path} failed: {exc}") from exc

            if resp.status_code == 404:
                return None
            if resp.status_code == 429:
                delay = _retry_after(resp)
                logger.debug("429 on %s (attempt %d), retrying in %.1fs", path, attempt + 1, delay)
                self.limiter.penalize(delay)
                continue
            if resp.status_code == 403:
                raise DataSourceError(f"Blockfrost rejected the project id for {path}")
            try:
                resp.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise DataSourceError(f"Blockfrost returned {resp.status_code} for {path}") from exc
            return resp.json()

        raise RateLimitError(f"Rate limited on {path} after {MAX_RETRIES} retries")

    async def address_transactions(
        self,
        address: str,
        limit: Optional[int] = None,
        known: Optional[Iterable[str]] = None,
    ) -> list[str]:
        """Transaction hashes touching ``address``, oldest first.

        Hashes in ``known`` are skipped while paging, so ``limit`` caps the
        number of unseen hashes returned.
        """
        seen = set(known or ())
        hashes: list[str] = []
        page = 1
        while limit is None or len(hashes) < limit:
            rows = await self.get(
                f"/addresses/{address}/transactions",
                params={"page": page, "count": PAGE_SIZE, "order": "asc"},
            )
            if not rows:
                break
            hashes.extend(row["tx_hash"] for row in rows if row["tx_hash"] not in seen)
            if len(rows) < PAGE_SIZE:
                break
            page += 1
        return hashes[:limit] if limit is not None else hashes

    async def datum_cbor(self, datum_hash: str) -> Optional[bytes]:
        data = await self.get(f"/scripts/datum/{datum_hash}/cbor")
        if not data or not data.get("cbor"):
            return None
        return bytes.fromhex(data["cbor"])

    async def transaction(self, tx_hash: str) -> Optional[Transaction]:
        """Fetch and assemble one transaction, or None if unknown."""
        header, utxos, redeemers = await asyncio.gather(
            self.get(f"/txs/{tx_hash}"),
            self.get(f"/txs/{tx_hash}/utxos"),
            self.get(f"/txs/{tx_hash}/redeemers"),
        )
        if header is None or utxos is None:
            logger.debug("Transaction %s not found", tx_hash)
            return None

        tx = parse_transaction(header, utxos, [])
        witness_hashes = _datum_hashes_without_bytes(tx)
        fetched = await asyncio.gather(*(self.datum_cbor(h) for h in witness_hashes))
        tx.datums = [
            Datum(hash=h, raw_cbor=raw) for h, raw in zip(witness_hashes, fetched) if raw
        ]
        tx.redeemers = await self._redeemers(redeemers or [])
        return tx

    async def _redeemers(self, rows: list[dict]) -> list[Redeemer]:
        hashes = [row.get("redeemer_data_hash") for row in rows]
        raws = await asyncio.gather(*(self.datum_cbor(h) for h in hashes if h))
        by_hash = dict(zip([h for h in hashes if h], raws))
        return [
            parse_redeemer(row, by_hash.get(row.get("redeemer_data_hash")) or b"")
            for row in rows
        ]


async def fetch_script_transactions(
    client: httpx.AsyncClient,
    address: str,
    project_id: str,
    network: str = "mainnet",
    known: Optional[Iterable[str]] = None,
    max_transactions: Optional[int] = None,
    limiter: Optional[RateLimiter] = None,
) -> list[Transaction]:
    """Fetch the address's history, skipping hashes in ``known``.

    Returns transactions ordered by (block, slot), ready for the graph
    builder.
    """
    source = BlockfrostSource(client, project_id, network, limiter)
    seen = set(known or ())

    fresh = await source.address_transactions(address, limit=max_transactions, known=seen)
    logger.info("Address %s: %d new transactions", address, len(fresh))

    fetched = await asyncio.gather(*(source.transaction(h) for h in fresh))
    transactions = [tx for tx in fetched if tx is not None]
    transactions.sort(key=lambda tx: (tx.block, tx.slot))
    return transactions


# ── Parsing ───────────────────────────────────────────────────────────────────


def parse_transaction(header: dict, utxos: dict, redeemers: list[Redeemer]) -> Transaction:
    """Assemble a Transaction from the /txs header and /utxos documents.

    Reference and collateral inputs are dropped, and inputs are put in
    ledger order (tx hash, output index) so spend redeemer indices line
    up with input positions. Collateral return outputs are dropped.
    """
    inputs = [
        TxInput(
            tx_hash=row["tx_hash"],
            output_index=int(row["output_index"]),
            address=row.get("address"),
            amount=parse_amount(row.get("amount", [])),
        )
        for row in utxos.get("inputs", [])
        if not row.get("reference") and not row.get("collateral")
    ]
    inputs.sort(key=lambda i: (i.tx_hash, i.output_index))

    rows = [row for row in utxos.get("outputs", []) if not row.get("collateral")]
    rows.sort(key=lambda row: int(row.get("output_index", 0)))
    outputs = [
        TxOutput(
            address=row["address"],
            amount=parse_amount(row.get("amount", [])),
            datum=_parse_output_datum(row),
        )
        for row in rows
    ]

    return Transaction(
        hash=header.get("hash") or utxos.get("hash", ""),
        block=int(header.get("block_height") or 0),
        slot=int(header.get("slot") or 0),
        inputs=inputs,
        outputs=outputs,
        redeemers=redeemers,
    )


def parse_redeemer(row: dict, raw_cbor: bytes) -> Redeemer:
    return Redeemer(
        purpose=row.get("purpose", "spend"),
        index=int(row.get("tx_index", 0)),
        raw_cbor=raw_cbor,
        ex_units_mem=int(row.get("unit_mem") or 0),
        ex_units_steps=int(row.get("unit_steps") or 0),
    )


def _parse_output_datum(row: dict) -> Optional[Datum]:
    inline = row.get("inline_datum")
    data_hash = row.get("data_hash")
    if inline:
        return Datum(hash=data_hash or "", raw_cbor=bytes.fromhex(inline))
    if data_hash:
        return Datum(hash=data_hash)
    return None


def _datum_hashes_without_bytes(tx: Transaction) -> list[str]:
    hashes = []
    for output in tx.outputs:
        datum = output.datum
        if datum is not None and not datum.raw_cbor and datum.hash not in hashes:
            hashes.append(datum.hash)
    return hashes


def _retry_after(resp: httpx.Response) -> float:
    try:
        return float(resp.headers.get("Retry-After", DEFAULT_RETRY_AFTER))
    except ValueError:
        return DEFAULT_RETRY_AFTER
