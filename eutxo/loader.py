"""Offline transaction documents.

Reads the JSON form of the transaction list: either a bare list or an
object with a ``transactions`` key. CBOR payloads are hex strings and
quantities may be strings or integers.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from eutxo import Asset, Datum, Redeemer, Transaction, TxInput, TxOutput
from eutxo.errors import DataSourceError

logger = logging.getLogger(__name__)


def load_transactions(path: Path | str) -> list[Transaction]:
    """Load and parse a transaction document.

    Raises:
        DataSourceError: unreadable file, invalid JSON, missing keys or
            entries of the wrong shape.
    """
    path = Path(path)
    try:
        with open(path) as f:
            document = json.load(f)
    except OSError as exc:
        raise DataSourceError(f"Cannot read {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise DataSourceError(f"Invalid JSON in {path}: {exc}") from exc

    if isinstance(document, dict):
        document = document.get("transactions", [])
    if not isinstance(document, list):
        raise DataSourceError(f"Expected a list of transactions in {path}")
    transactions = [parse_transaction(entry) for entry in document]
    # Chain order; ties keep file order
    transactions.sort(key=lambda tx: (tx.block, tx.slot))
    logger.info("Loaded %d transactions from %s", len(transactions), path)
    return transactions


def parse_transaction(entry: dict[str, Any]) -> Transaction:
    try:
        return Transaction(
            hash=entry["hash"],
            block=int(entry.get("block", 0)),
            slot=int(entry.get("slot", 0)),
            inputs=[_parse_input(i) for i in entry.get("inputs", [])],
            outputs=[_parse_output(o) for o in entry.get("outputs", [])],
            datums=[_parse_datum(d) for d in entry.get("datums", [])],
            redeemers=[_parse_redeemer(r) for r in entry.get("redeemers", [])],
        )
    except KeyError as exc:
        raise DataSourceError(f"Transaction entry missing key {exc}") from exc
    except ValueError as exc:
        raise DataSourceError(f"Malformed transaction entry: {exc}") from exc
    except (TypeError, AttributeError) as exc:
        raise DataSourceError(f"Transaction entry has the wrong shape: {exc}") from exc


def parse_amount(amount: list[dict[str, Any]]) -> list[Asset]:
    """Quantities become Python ints, so nothing above 2**64 is truncated."""
    return [Asset(unit=a["unit"], quantity=int(a["quantity"])) for a in amount]


def _parse_input(entry: dict[str, Any]) -> TxInput:
    return TxInput(
        tx_hash=entry["tx_hash"],
        output_index=int(entry["output_index"]),
        address=entry.get("address"),
        amount=parse_amount(entry.get("amount", [])),
    )


def _parse_output(entry: dict[str, Any]) -> TxOutput:
    datum = entry.get("datum")
    return TxOutput(
        address=entry["address"],
        amount=parse_amount(entry.get("amount", [])),
        datum=_parse_datum(datum) if datum else None,
    )


def _parse_datum(entry: dict[str, Any]) -> Datum:
    raw = bytes.fromhex(entry.get("cbor") or "")
    return Datum(hash=entry.get("hash", ""), raw_cbor=raw)


def _parse_redeemer(entry: dict[str, Any]) -> Redeemer:
    return Redeemer(
        purpose=entry.get("purpose", "spend"),
        index=int(entry["index"]),
        raw_cbor=bytes.fromhex(entry.get("cbor") or ""),
        ex_units_mem=int(entry.get("mem", 0)),
        ex_units_steps=int(entry.get("steps", 0)),
    )
