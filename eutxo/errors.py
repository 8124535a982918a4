"""Exception types.

Only hard failures raise. Recoverable conditions met while building a
graph (bad datums, schema mismatches, unresolved inputs, malformed
transactions) are recorded as warnings on the affected node or graph.
"""

# Decode failure reasons
UNEXPECTED_MAJOR_TYPE = "unexpected major type"
TRUNCATED_INPUT = "truncated input"
INTEGER_OVERFLOW = "integer overflow"
UNSUPPORTED_INDEFINITE = "unsupported indefinite-length construct"
UNSUPPORTED_TAG = "unsupported tag"
RESERVED_ADDITIONAL_INFO = "reserved additional info"
UNEXPECTED_BREAK = "unexpected break"
TRAILING_BYTES = "trailing bytes"
MALFORMED_CONSTRUCTOR = "malformed constructor"
DEPTH_EXCEEDED = "maximum nesting depth exceeded"


class EutxoError(Exception):
    pass


class DecodeError(EutxoError):
    """Malformed CBOR. ``offset`` is the byte position where decoding stopped."""

    def __init__(self, offset: int, reason: str, detail: str = ""):
        self.offset = offset
        self.reason = reason
        self.detail = detail
        message = f"{reason} at offset {offset}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class DepthExceeded(DecodeError):
    def __init__(self, offset: int, max_depth: int):
        self.max_depth = max_depth
        super().__init__(offset, DEPTH_EXCEEDED, f"limit {max_depth}")


class SchemaError(EutxoError):
    pass


class AnalysisError(EutxoError):
    pass


class DataSourceError(EutxoError):
    pass


class RateLimitError(DataSourceError):
    pass
