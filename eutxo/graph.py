"""State graph construction from an ordered transaction list.

Pure computation, no I/O. Each transaction output (optionally only those
at the tracked script address) becomes a StateNode keyed by
(tx hash, output index); each input that spends a known node links that
node to the outputs its spending transaction produced.

Input ordering is the caller's responsibility and is not re-sorted here.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Iterable, Optional

from eutxo import (
    ContractSchema,
    LinkStrategy,
    PlutusConstr,
    StateClass,
    StateGraph,
    StateNode,
    Transaction,
    Transition,
    UtxoRef,
)
from eutxo.cbor import decode_plutus_data
from eutxo.datum import DatumCache
from eutxo.errors import DecodeError
from eutxo.schema import resolve_redeemer_name, transition_label

logger = logging.getLogger(__name__)


def build_state_graph(
    transactions: Iterable[Transaction],
    script_address: Optional[str] = None,
    schema: Optional[ContractSchema] = None,
    previous: Optional[StateGraph] = None,
    link: LinkStrategy = LinkStrategy.PAIRWISE,
    cache: Optional[DatumCache] = None,
) -> StateGraph:
    """Build (or extend) a state graph.

    Args:
        transactions: Transactions ordered by (block, slot).
        script_address: When set, only outputs at this address become nodes.
        schema: Optional contract schema for datum fields and redeemer names.
        previous: Graph from an earlier run over a prefix of the same
                  history. Its nodes and edges are carried over by key and
                  transactions it already ingested are skipped.
        link: Edge expansion for multi-input, multi-output transactions.
        cache: Datum decode cache; a fresh one is used when omitted.

    Returns:
        A new StateGraph. ``previous`` is not modified. Nodes are left
        unclassified; see eutxo.classify.
    """
    if cache is None:
        cache = DatumCache(schema)
    if previous is not None and script_address is None:
        script_address = previous.script_address

    graph = _seed(previous, script_address)
    accepted = _validate(list(transactions), graph)

    # Pass 1: one node per output
    for tx in accepted:
        graph.transactions[tx.hash] = len(tx.outputs)
        for index, output in enumerate(tx.outputs):
            if script_address is not None and output.address != script_address:
                continue
            ref = UtxoRef(tx.hash, index)
            node = StateNode(
                ref=ref,
                block=tx.block,
                slot=tx.slot,
                output=output,
                datum=cache.datum_for(output, tx),
            )
            _attach_datum_warnings(node)
            graph.nodes[ref] = node

    # Pass 2: edges, in transaction order then input order
    for tx in accepted:
        _link_transaction(graph, tx, script_address, schema, link)

    logger.debug(
        "Built graph: %d nodes, %d edges, %d datums decoded",
        len(graph.nodes),
        len(graph.edges),
        len(cache),
    )
    return graph


def merge_graphs(base: StateGraph, extra: StateGraph) -> StateGraph:
    """Union two graphs by key. Nodes and edges already in ``base`` win."""
    merged = _seed(base, base.script_address or extra.script_address)
    for ref, node in extra.nodes.items():
        if ref not in merged.nodes:
            merged.nodes[ref] = _copy_node(node)
    known_edges = merged.edge_keys()
    for edge in extra.edges:
        if edge.key not in known_edges:
            merged.edges.append(dataclasses.replace(edge))
            known_edges.add(edge.key)
    for tx_hash, count in extra.transactions.items():
        merged.transactions.setdefault(tx_hash, count)
    merged.warnings.extend(w for w in extra.warnings if w not in merged.warnings)
    return merged


# ── Construction helpers ──────────────────────────────────────────────────────


def _seed(previous: Optional[StateGraph], script_address: Optional[str]) -> StateGraph:
    """Start a new graph holding copies of ``previous``'s nodes and edges."""
    graph = StateGraph(script_address=script_address)
    if previous is None:
        return graph
    graph.nodes = {ref: _copy_node(node) for ref, node in previous.nodes.items()}
    graph.edges = [dataclasses.replace(edge) for edge in previous.edges]
    graph.transactions = dict(previous.transactions)
    graph.warnings = list(previous.warnings)
    return graph


def _copy_node(node: StateNode) -> StateNode:
    return dataclasses.replace(
        node,
        classification=StateClass.UNKNOWN,
        unresolved_inputs=list(node.unresolved_inputs),
        warnings=list(node.warnings),
    )


def _validate(transactions: list[Transaction], graph: StateGraph) -> list[Transaction]:
    """Drop duplicate and malformed transactions, recording warnings.

    Malformed means an input spending the transaction's own outputs, or an
    output index that does not exist on the referenced transaction.
    """
    output_counts = dict(graph.transactions)
    fresh = []
    for tx in transactions:
        if tx.hash in output_counts:
            logger.debug("Skipping already ingested transaction %s", tx.hash)
            continue
        output_counts[tx.hash] = len(tx.outputs)
        fresh.append(tx)

    accepted = []
    for tx in fresh:
        problem = _find_problem(tx, output_counts)
        if problem:
            warning = f"Skipped malformed transaction {tx.hash}: {problem}"
            logger.warning(warning)
            if warning not in graph.warnings:
                graph.warnings.append(warning)
            continue
        accepted.append(tx)
    return accepted


def _find_problem(tx: Transaction, output_counts: dict[str, int]) -> Optional[str]:
    if not tx.hash:
        return "missing transaction hash"
    for position, inp in enumerate(tx.inputs):
        if inp.tx_hash == tx.hash:
            return f"input {position} spends its own output {inp.ref}"
        if inp.output_index < 0:
            return f"input {position} has negative output index"
        count = output_counts.get(inp.tx_hash)
        if count is not None and inp.output_index >= count:
            return (
                f"input {position} references {inp.ref} but that transaction "
                f"has {count} outputs"
            )
    return None


def _attach_datum_warnings(node: StateNode) -> None:
    datum = node.datum
    if datum is None:
        return
    if datum.decode_error:
        node.warnings.append(f"Datum {datum.hash[:16]} not decoded: {datum.decode_error}")
    if datum.resolved is not None:
        for warning in datum.resolved.warnings:
            node.warnings.append(f"Schema mismatch: {warning}")


def _link_transaction(
    graph: StateGraph,
    tx: Transaction,
    script_address: Optional[str],
    schema: Optional[ContractSchema],
    link: LinkStrategy,
) -> None:
    targets = [
        UtxoRef(tx.hash, index)
        for index in range(len(tx.outputs))
        if UtxoRef(tx.hash, index) in graph.nodes
    ]
    redeemers = _spend_redeemers(graph, tx, schema)

    sources: list[tuple[int, StateNode]] = []
    for position, inp in enumerate(tx.inputs):
        ref = inp.ref
        node = graph.nodes.get(ref)
        if node is not None:
            sources.append((position, node))
            continue
        if ref.tx_hash in graph.transactions:
            # Observed transaction, but not a tracked output
            continue
        if script_address is not None and inp.address and inp.address != script_address:
            # Wallet input with known address: not contract state
            continue
        for target in targets:
            target_node = graph.nodes[target]
            target_node.unresolved_inputs.append(ref)
            target_node.warnings.append(
                f"Predecessor {ref} is outside the observed transactions"
            )

    for position, node in sources:
        name, _ = redeemers.get(position, (None, None))
        if node.consumed_by is not None and node.consumed_by != tx.hash:
            warning = f"{node.ref} spent by both {node.consumed_by} and {tx.hash}"
            node.warnings.append(warning)
            graph.warnings.append(warning)
        node.consumed_by = tx.hash
        node.consumed_redeemer = name

    if link is LinkStrategy.FIRST_INPUT:
        sources = sources[:1]

    for position, node in sources:
        name, constr_index = redeemers.get(position, (None, None))
        for target in targets:
            graph.edges.append(
                Transition(
                    source=node.ref,
                    target=target,
                    tx_hash=tx.hash,
                    input_index=position,
                    redeemer=name,
                    redeemer_index=constr_index,
                    label=transition_label(schema, name),
                )
            )


def _spend_redeemers(
    graph: StateGraph,
    tx: Transaction,
    schema: Optional[ContractSchema],
) -> dict[int, tuple[str, int]]:
    """Map input position -> (redeemer name, constructor index)."""
    names = {}
    for redeemer in tx.redeemers:
        if redeemer.purpose != "spend":
            continue
        if not redeemer.raw_cbor:
            graph.warnings.append(f"{tx.hash}: redeemer for input {redeemer.index} has no bytes")
            continue
        try:
            value = decode_plutus_data(redeemer.raw_cbor)
        except DecodeError as exc:
            graph.warnings.append(
                f"{tx.hash}: redeemer for input {redeemer.index} not decoded: {exc}"
            )
            continue
        if not isinstance(value, PlutusConstr):
            graph.warnings.append(
                f"{tx.hash}: redeemer for input {redeemer.index} is not a constructor"
            )
            continue
        names[redeemer.index] = (resolve_redeemer_name(value.index, schema), value.index)
    return names
