"""eutxoviz core data models.

All dataclasses and enums live here to prevent circular imports.
Every other module in eutxo/ imports from this file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


# ── Enums ─────────────────────────────────────────────────────────────────────


class StateClass(Enum):
    """Role of a state node in the contract's lifecycle."""

    INITIAL = "initial"  # Created, later spent by the script
    ACTIVE = "active"  # Both created from and spent into script states
    COMPLETED = "completed"  # Created from a script state, never spent on
    FAILED = "failed"  # Schema rule only
    LOCKED = "locked"  # Schema rule only
    UNKNOWN = "unknown"  # Isolated

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @property
    def color(self) -> str:
        return {
            StateClass.INITIAL: "lightblue",
            StateClass.ACTIVE: "lightgreen",
            StateClass.COMPLETED: "green",
            StateClass.FAILED: "red",
            StateClass.LOCKED: "yellow",
            StateClass.UNKNOWN: "gray",
        }[self]


class ContractPattern(Enum):
    """Dominant structural shape of a state graph."""

    LINEAR = "linear"  # A -> B -> C
    TREE = "tree"  # A -> B, A -> C
    CYCLE = "cycle"  # A -> B -> A
    DISCONNECTED = "disconnected"  # Several independent components
    UNKNOWN = "unknown"  # Too small, or merge points

    @property
    def label(self) -> str:
        return {
            ContractPattern.LINEAR: "LINEAR",
            ContractPattern.TREE: "BRANCHING",
            ContractPattern.CYCLE: "CYCLIC",
            ContractPattern.DISCONNECTED: "DISCONNECTED",
            ContractPattern.UNKNOWN: "COMPLEX/UNKNOWN",
        }[self]


class LinkStrategy(Enum):
    """How a multi-input, multi-output transaction is turned into edges."""

    PAIRWISE = "pairwise"  # Every (input node, output node) pair
    FIRST_INPUT = "first_input"  # Only the first resolved input links


# ── Plutus data ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PlutusConstr:
    """Constructor application: index plus ordered fields."""

    index: int
    fields: tuple = ()


@dataclass(frozen=True)
class PlutusInt:
    value: int


@dataclass(frozen=True)
class PlutusBytes:
    value: bytes


@dataclass(frozen=True)
class PlutusList:
    items: tuple = ()


@dataclass(frozen=True)
class PlutusMap:
    """Key/value pairs in encounter order."""

    pairs: tuple = ()


PlutusData = Union[PlutusConstr, PlutusInt, PlutusBytes, PlutusList, PlutusMap]


# ── Transaction primitives ────────────────────────────────────────────────────


@dataclass(frozen=True)
class UtxoRef:
    """Unique reference to a transaction output. Node identity key."""

    tx_hash: str
    output_index: int

    def __str__(self) -> str:
        return f"{self.tx_hash}#{self.output_index}"


@dataclass
class Asset:
    """A single (unit, quantity) amount. Unit "lovelace" is ADA."""

    unit: str
    quantity: int

    @classmethod
    def lovelace(cls, quantity: int) -> Asset:
        return cls(unit="lovelace", quantity=quantity)


@dataclass
class Datum:
    """Datum attached to an output.

    ``raw_cbor`` is always kept, even when decoding or schema mapping
    fails. An empty ``raw_cbor`` with a hash is a by-hash datum that must
    be looked up in the transaction's witness datums.
    """

    hash: str
    raw_cbor: bytes = b""
    value: Optional[PlutusData] = None
    decode_error: Optional[str] = None
    resolved: Optional[ResolvedDatum] = None

    @property
    def decoded(self) -> bool:
        return self.value is not None


@dataclass
class Redeemer:
    """Redeemer supplied to a script. For spends, ``index`` is the input position."""

    purpose: str
    index: int
    raw_cbor: bytes = b""
    ex_units_mem: int = 0
    ex_units_steps: int = 0


@dataclass
class TxInput:
    """A consumed output reference."""

    tx_hash: str
    output_index: int
    address: Optional[str] = None  # Known only when the indexer supplies it
    amount: list[Asset] = field(default_factory=list)

    @property
    def ref(self) -> UtxoRef:
        return UtxoRef(self.tx_hash, self.output_index)


@dataclass
class TxOutput:
    address: str
    amount: list[Asset] = field(default_factory=list)
    datum: Optional[Datum] = None

    @property
    def lovelace(self) -> int:
        return sum(a.quantity for a in self.amount if a.unit == "lovelace")


@dataclass
class Transaction:
    """A transaction as handed over by ingestion. Not mutated afterwards."""

    hash: str
    block: int
    slot: int
    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    datums: list[Datum] = field(default_factory=list)  # Witness datums
    redeemers: list[Redeemer] = field(default_factory=list)


# ── Schema ────────────────────────────────────────────────────────────────────


@dataclass
class FieldDef:
    name: str
    type: str  # bytes, int, bool, list, map, constr
    desc: Optional[str] = None


@dataclass
class RedeemerDef:
    name: str
    constructor_index: int


@dataclass
class StateRule:
    """Predicate assigning ``state`` (failed or locked) to matching nodes."""

    state: str
    rule: str


@dataclass
class TransitionStyle:
    label: Optional[str] = None
    color: Optional[str] = None
    style: Optional[str] = None


@dataclass
class ContractSchema:
    """User-supplied contract metadata and datum/redeemer layout."""

    name: str
    script_address: str
    description: Optional[str] = None
    datum_type: str = "constr"
    constructor_index: int = 0
    fields: list[FieldDef] = field(default_factory=list)
    redeemers: list[RedeemerDef] = field(default_factory=list)
    rules: list[StateRule] = field(default_factory=list)
    transitions: dict[str, TransitionStyle] = field(default_factory=dict)


@dataclass
class ResolvedField:
    name: str
    type: str
    value: PlutusData
    desc: Optional[str] = None
    type_ok: bool = True


@dataclass
class ResolvedDatum:
    """Schema-labelled view of a decoded datum. Partial when ``mismatch``."""

    constructor_index: Optional[int]
    fields: dict[str, ResolvedField] = field(default_factory=dict)
    mismatch: bool = False
    warnings: list[str] = field(default_factory=list)


# ── Graph structures ──────────────────────────────────────────────────────────


@dataclass
class StateNode:
    """A node in the state graph. Each node is one transaction output."""

    ref: UtxoRef
    block: int
    slot: int
    output: TxOutput
    datum: Optional[Datum] = None
    classification: StateClass = StateClass.UNKNOWN
    # Inputs of the creating tx that point outside the observed window
    unresolved_inputs: list[UtxoRef] = field(default_factory=list)
    consumed_by: Optional[str] = None  # Spending tx hash, if observed
    consumed_redeemer: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    @property
    def tx_hash(self) -> str:
        return self.ref.tx_hash

    @property
    def has_unresolved_predecessor(self) -> bool:
        return bool(self.unresolved_inputs)


@dataclass
class Transition:
    """Directed edge from a spent state to a state its spender produced."""

    source: UtxoRef
    target: UtxoRef
    tx_hash: str
    input_index: int
    redeemer: Optional[str] = None
    redeemer_index: Optional[int] = None
    label: Optional[str] = None

    @property
    def key(self) -> tuple[str, int, UtxoRef, UtxoRef]:
        return (self.tx_hash, self.input_index, self.source, self.target)

    @property
    def display_label(self) -> str:
        return self.label or self.redeemer or "transition"


@dataclass
class StateGraph:
    """Complete result of graph construction.

    ``nodes`` is an insertion-ordered key -> node arena; edges refer to
    nodes by key only.
    """

    script_address: Optional[str] = None
    nodes: dict[UtxoRef, StateNode] = field(default_factory=dict)
    edges: list[Transition] = field(default_factory=list)
    transactions: dict[str, int] = field(default_factory=dict)  # tx hash -> output count
    warnings: list[str] = field(default_factory=list)

    def outgoing(self, ref: UtxoRef) -> list[Transition]:
        return [e for e in self.edges if e.source == ref]

    def incoming(self, ref: UtxoRef) -> list[Transition]:
        return [e for e in self.edges if e.target == ref]

    def out_degrees(self) -> dict[UtxoRef, int]:
        degrees = dict.fromkeys(self.nodes, 0)
        for edge in self.edges:
            degrees[edge.source] += 1
        return degrees

    def in_degrees(self) -> dict[UtxoRef, int]:
        degrees = dict.fromkeys(self.nodes, 0)
        for edge in self.edges:
            degrees[edge.target] += 1
        return degrees

    def node_keys(self) -> set[UtxoRef]:
        return set(self.nodes)

    def edge_keys(self) -> set[tuple[str, int, UtxoRef, UtxoRef]]:
        return {e.key for e in self.edges}


# ── Analysis results ──────────────────────────────────────────────────────────


@dataclass
class PatternReport:
    """Pattern label plus the metrics it was derived from."""

    pattern: ContractPattern
    node_count: int
    edge_count: int
    max_out_degree: int = 0
    max_in_degree: int = 0
    component_count: int = 0
    cycle_members: frozenset = frozenset()
    branching_factor: float = 0.0  # Mean out-degree
    max_depth: int = 0  # Longest path; 0 when cyclic
    class_counts: dict[str, int] = field(default_factory=dict)


@dataclass
class AnalysisResult:
    graph: StateGraph
    report: PatternReport
    schema: Optional[ContractSchema] = None
    warnings: list[str] = field(default_factory=list)
