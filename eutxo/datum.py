"""Datum extraction and per-run decode caching.

Outputs carry either an inline datum (raw CBOR present) or only a datum
hash, in which case the CBOR must come from the transaction's witness
datums. Decoding happens once per datum content hash for the lifetime of
a DatumCache, which callers create per analysis run.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Optional

from eutxo import ContractSchema, Datum, Transaction, TxOutput
from eutxo.cbor import decode_plutus_data
from eutxo.errors import DecodeError
from eutxo.schema import resolve_datum

logger = logging.getLogger(__name__)

MISSING_WITNESS = "datum bytes not found in transaction witnesses"


def datum_hash(raw_cbor: bytes) -> str:
    """Blake2b-256 of the datum bytes, as Cardano hashes datums."""
    return hashlib.blake2b(raw_cbor, digest_size=32).hexdigest()


def extract_datum(output: TxOutput, tx: Transaction) -> Optional[Datum]:
    """Return the output's datum with raw bytes filled in from witnesses.

    A by-hash datum whose bytes are not in the witness set is returned
    with empty ``raw_cbor`` and a ``decode_error`` note instead of raising.
    """
    datum = output.datum
    if datum is None:
        return None
    if datum.raw_cbor:
        return datum

    for witness in tx.datums:
        if witness.raw_cbor and witness.hash == datum.hash:
            return Datum(hash=datum.hash, raw_cbor=witness.raw_cbor)

    logger.debug("Datum %s missing from witnesses of %s", datum.hash, tx.hash)
    return Datum(hash=datum.hash, decode_error=MISSING_WITNESS)


class DatumCache:
    """Decode-once cache keyed by datum content hash.

    Cached entries are shared between nodes that carry the same datum;
    they are never mutated after creation.
    """

    def __init__(self, schema: Optional[ContractSchema] = None):
        self.schema = schema
        self._entries: dict[str, Datum] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def decode(self, datum: Datum) -> Datum:
        """Return a Datum with ``value`` (or ``decode_error``) populated."""
        if not datum.raw_cbor:
            return datum

        key = datum.hash or datum_hash(datum.raw_cbor)
        cached = self._entries.get(key)
        if cached is not None:
            self.hits += 1
            return cached

        self.misses += 1
        decoded = Datum(hash=key, raw_cbor=datum.raw_cbor)
        try:
            decoded.value = decode_plutus_data(datum.raw_cbor)
        except DecodeError as exc:
            logger.debug("Datum %s failed to decode: %s", key, exc)
            decoded.decode_error = str(exc)

        if decoded.value is not None and self.schema is not None:
            decoded.resolved = resolve_datum(decoded.value, self.schema)

        self._entries[key] = decoded
        return decoded

    def datum_for(self, output: TxOutput, tx: Transaction) -> Optional[Datum]:
        datum = extract_datum(output, tx)
        if datum is None:
            return None
        return self.decode(datum)
