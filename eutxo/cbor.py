"""CBOR decoding of Plutus data.

Pure computation, no I/O. Decodes the subset of CBOR used by Plutus data
(integers, big integers, byte strings, arrays, maps, constructor tags)
into the PlutusData tree defined in eutxo/__init__.py.

Constructor encodings:
  tag 121..127          -> constructor 0..6, fields array follows
  tag 1280..1400        -> constructor 7..127, fields array follows
  tag 102 [i, [fields]] -> constructor i (any index)
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from eutxo import (
    PlutusBytes,
    PlutusConstr,
    PlutusData,
    PlutusInt,
    PlutusList,
    PlutusMap,
)
from eutxo.errors import (
    INTEGER_OVERFLOW,
    MALFORMED_CONSTRUCTOR,
    RESERVED_ADDITIONAL_INFO,
    TRAILING_BYTES,
    TRUNCATED_INPUT,
    UNEXPECTED_BREAK,
    UNEXPECTED_MAJOR_TYPE,
    UNSUPPORTED_INDEFINITE,
    UNSUPPORTED_TAG,
    DecodeError,
    DepthExceeded,
)

MAX_DEPTH = 128

# Tag ranges from the Plutus data CDDL
COMPACT_CONSTR_TAGS = range(121, 128)
EXTENDED_CONSTR_TAGS = range(1280, 1401)
GENERAL_CONSTR_TAG = 102
POSITIVE_BIGNUM_TAG = 2
NEGATIVE_BIGNUM_TAG = 3
MAX_CONSTRUCTOR_INDEX = 2**64 - 1

BREAK = 0xFF

# Integers in this range are rendered as POSIX millisecond timestamps
POSIX_MS_MIN = 1_000_000_000_000  # 2001-09-09
POSIX_MS_MAX = 4_102_444_800_000  # 2100-01-01


def decode_plutus_data(raw: bytes) -> PlutusData:
    """Decode one CBOR-encoded Plutus data item.

    Raises:
        DecodeError: malformed input, with the byte offset and reason.
        DepthExceeded: nesting deeper than MAX_DEPTH.
    """
    decoder = _Decoder(bytes(raw))
    value = decoder.item(0)
    remaining = len(decoder.data) - decoder.pos
    if remaining:
        raise DecodeError(decoder.pos, TRAILING_BYTES, f"{remaining} bytes left")
    return value


class _Decoder:
    """Cursor over a byte buffer. One instance per decode call."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def item(self, depth: int) -> PlutusData:
        if depth > MAX_DEPTH:
            raise DepthExceeded(self.pos, MAX_DEPTH)

        major, argument, start = self._header()

        if major == 0:
            return PlutusInt(self._definite(argument, start))
        if major == 1:
            return PlutusInt(-1 - self._definite(argument, start))
        if major == 2:
            return PlutusBytes(self._bytes(argument))
        if major == 4:
            return PlutusList(tuple(self._array(argument, depth)))
        if major == 5:
            return PlutusMap(tuple(self._map(argument, depth)))
        if major == 6:
            return self._tagged(self._definite(argument, start), start, depth)
        if major == 7 and argument is None:
            raise DecodeError(start, UNEXPECTED_BREAK)
        raise DecodeError(start, UNEXPECTED_MAJOR_TYPE, f"major type {major}")

    # ── Primitives ────────────────────────────────────────────────────────

    def _take(self, n: int) -> bytes:
        end = self.pos + n
        if end > len(self.data):
            raise DecodeError(
                self.pos,
                TRUNCATED_INPUT,
                f"need {n} bytes, {len(self.data) - self.pos} left",
            )
        chunk = self.data[self.pos:end]
        self.pos = end
        return chunk

    def _header(self) -> tuple[int, Optional[int], int]:
        """Read an initial byte and its argument.

        Returns (major type, argument, start offset). The argument is None
        for indefinite-length headers (additional info 31).
        """
        start = self.pos
        initial = self._take(1)[0]
        major, info = initial >> 5, initial & 0x1F
        if info < 24:
            return major, info, start
        if info <= 27:
            width = 1 << (info - 24)
            return major, int.from_bytes(self._take(width), "big"), start
        if info == 31:
            return major, None, start
        raise DecodeError(start, RESERVED_ADDITIONAL_INFO, f"initial byte 0x{initial:02x}")

    @staticmethod
    def _definite(argument: Optional[int], start: int) -> int:
        if argument is None:
            raise DecodeError(start, UNSUPPORTED_INDEFINITE)
        return argument

    def _at_break(self) -> bool:
        """Consume a break byte if one is next."""
        if self.pos >= len(self.data):
            raise DecodeError(self.pos, TRUNCATED_INPUT, "missing break")
        if self.data[self.pos] == BREAK:
            self.pos += 1
            return True
        return False

    # ── Containers ────────────────────────────────────────────────────────

    def _bytes(self, length: Optional[int]) -> bytes:
        if length is not None:
            return self._take(length)

        # Indefinite: definite byte-string chunks until break
        chunks = []
        while not self._at_break():
            major, chunk_length, chunk_start = self._header()
            if major != 2 or chunk_length is None:
                raise DecodeError(
                    chunk_start,
                    UNSUPPORTED_INDEFINITE,
                    "byte string chunks must be definite byte strings",
                )
            chunks.append(self._take(chunk_length))
        return b"".join(chunks)

    def _array(self, length: Optional[int], depth: int) -> list[PlutusData]:
        items = []
        if length is not None:
            for _ in range(length):
                items.append(self.item(depth + 1))
            return items
        while not self._at_break():
            items.append(self.item(depth + 1))
        return items

    def _map(self, length: Optional[int], depth: int) -> list[tuple[PlutusData, PlutusData]]:
        pairs = []
        if length is not None:
            for _ in range(length):
                key = self.item(depth + 1)
                pairs.append((key, self.item(depth + 1)))
            return pairs
        while not self._at_break():
            key = self.item(depth + 1)
            pairs.append((key, self.item(depth + 1)))
        return pairs

    # ── Tags ──────────────────────────────────────────────────────────────

    def _tagged(self, tag: int, start: int, depth: int) -> PlutusData:
        if tag in COMPACT_CONSTR_TAGS:
            return PlutusConstr(tag - 121, self._fields(start, depth))
        if tag in EXTENDED_CONSTR_TAGS:
            return PlutusConstr(tag - 1280 + 7, self._fields(start, depth))
        if tag == GENERAL_CONSTR_TAG:
            return self._general_constr(start, depth)
        if tag in (POSITIVE_BIGNUM_TAG, NEGATIVE_BIGNUM_TAG):
            payload_start = self.pos
            major, length, _ = self._header()
            if major != 2:
                raise DecodeError(
                    payload_start,
                    UNEXPECTED_MAJOR_TYPE,
                    f"big integer payload has major type {major}",
                )
            n = int.from_bytes(self._bytes(length), "big")
            return PlutusInt(n if tag == POSITIVE_BIGNUM_TAG else -1 - n)
        raise DecodeError(start, UNSUPPORTED_TAG, f"tag {tag}")

    def _fields(self, start: int, depth: int) -> tuple:
        inner = self.item(depth + 1)
        if not isinstance(inner, PlutusList):
            raise DecodeError(start, MALFORMED_CONSTRUCTOR, "fields must be an array")
        return inner.items

    def _general_constr(self, start: int, depth: int) -> PlutusConstr:
        inner = self.item(depth + 1)
        if not (
            isinstance(inner, PlutusList)
            and len(inner.items) == 2
            and isinstance(inner.items[0], PlutusInt)
            and isinstance(inner.items[1], PlutusList)
        ):
            raise DecodeError(
                start, MALFORMED_CONSTRUCTOR, "tag 102 expects [index, [fields]]"
            )
        index = inner.items[0].value
        if index < 0:
            raise DecodeError(start, MALFORMED_CONSTRUCTOR, f"negative index {index}")
        if index > MAX_CONSTRUCTOR_INDEX:
            raise DecodeError(start, INTEGER_OVERFLOW, f"constructor index {index}")
        return PlutusConstr(index, inner.items[1].items)


# ── Rendering ─────────────────────────────────────────────────────────────────


def describe(value: PlutusData) -> str:
    """Short human-readable rendering with a few heuristics.

    28-byte strings look like key hashes, 32-byte strings like hashes,
    0/1 may be booleans, and large integers are often POSIX ms timestamps.
    """
    if isinstance(value, PlutusBytes):
        raw = value.value
        if len(raw) == 28:
            return f"PubKeyHash({raw.hex()})"
        if len(raw) == 32:
            return f"Hash({raw.hex()})"
        if raw and all(32 <= c < 127 or c in (9, 10, 13) for c in raw):
            return f'String("{raw.decode("ascii")}")'
        return f"Bytes(0x{raw.hex()})"
    if isinstance(value, PlutusInt):
        n = value.value
        if n in (0, 1):
            return f"{n} (bool: {'true' if n else 'false'})"
        if POSIX_MS_MIN <= n < POSIX_MS_MAX:
            moment = datetime.fromtimestamp(n / 1000, tz=timezone.utc)
            return moment.strftime("%Y-%m-%d %H:%M:%S UTC")
        return str(n)
    if isinstance(value, PlutusList):
        return f"List[{len(value.items)} items]" if value.items else "[]"
    if isinstance(value, PlutusMap):
        return f"Map{{{len(value.pairs)} pairs}}" if value.pairs else "{}"
    if isinstance(value, PlutusConstr):
        if value.fields:
            return f"Constr({value.index}, {len(value.fields)} fields)"
        return f"Constr({value.index})"
    raise TypeError(f"not Plutus data: {value!r}")


def to_jsonable(value: PlutusData) -> dict:
    """Convert to the detailed-schema JSON shape used by cardano tooling."""
    if isinstance(value, PlutusConstr):
        return {
            "constructor": value.index,
            "fields": [to_jsonable(f) for f in value.fields],
        }
    if isinstance(value, PlutusInt):
        return {"int": value.value}
    if isinstance(value, PlutusBytes):
        return {"bytes": value.value.hex()}
    if isinstance(value, PlutusList):
        return {"list": [to_jsonable(i) for i in value.items]}
    if isinstance(value, PlutusMap):
        return {
            "map": [{"k": to_jsonable(k), "v": to_jsonable(v)} for k, v in value.pairs]
        }
    raise TypeError(f"not Plutus data: {value!r}")
