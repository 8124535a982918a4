"""End-to-end analysis: decode -> build -> classify -> analyze."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from eutxo import (
    AnalysisResult,
    ContractSchema,
    LinkStrategy,
    StateGraph,
    Transaction,
)
from eutxo.analyzer import detect_pattern
from eutxo.classify import classify_states
from eutxo.datum import DatumCache
from eutxo.errors import AnalysisError
from eutxo.graph import build_state_graph

logger = logging.getLogger(__name__)


def run_analysis(
    transactions: Sequence[Transaction],
    schema: Optional[ContractSchema] = None,
    script_address: Optional[str] = None,
    previous: Optional[StateGraph] = None,
    link: LinkStrategy = LinkStrategy.PAIRWISE,
    require_transactions: bool = False,
    now_ms: Optional[int] = None,
) -> AnalysisResult:
    """Run the full analysis pass over an ordered transaction list.

    Raises:
        AnalysisError: ``require_transactions`` is set and the list is empty.
    """
    if require_transactions and not transactions:
        raise AnalysisError("No transactions to analyze")

    cache = DatumCache(schema)
    graph = build_state_graph(
        transactions,
        script_address=script_address,
        schema=schema,
        previous=previous,
        link=link,
        cache=cache,
    )
    classify_states(graph, schema, now_ms=now_ms)
    report = detect_pattern(graph)

    logger.info(
        "Analyzed %d transactions: %d states, %d transitions, pattern %s",
        len(transactions),
        report.node_count,
        report.edge_count,
        report.pattern.value,
    )

    warnings = list(graph.warnings)
    for node in graph.nodes.values():
        warnings.extend(f"{node.ref}: {w}" for w in node.warnings)

    return AnalysisResult(graph=graph, report=report, schema=schema, warnings=warnings)
