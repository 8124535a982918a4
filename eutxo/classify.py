"""Node role classification.

Pure post-pass over a finished StateGraph. The structural role comes from
edge counts alone; schema rules may then override it with FAILED or
LOCKED. Classification is the only mutation applied to a built graph.
"""

from __future__ import annotations

import time
from collections import Counter
from typing import Optional

from eutxo import ContractSchema, StateClass, StateGraph, StateNode
from eutxo.schema import Predicate, compile_rules, evaluate_rule


def classify_states(
    graph: StateGraph,
    schema: Optional[ContractSchema] = None,
    now_ms: Optional[int] = None,
) -> dict[str, int]:
    """Label every node in place.

    Args:
        graph: Finished graph.
        schema: Optional schema whose failed/locked rules override the
                structural role.
        now_ms: Value of ``current_time`` in rules (POSIX ms). Defaults
                to the wall clock.

    Returns:
        Count of nodes per classification value.
    """
    predicates = compile_rules(schema)
    if now_ms is None:
        now_ms = int(time.time() * 1000)

    in_degrees = graph.in_degrees()
    out_degrees = graph.out_degrees()

    for ref, node in graph.nodes.items():
        node.classification = structural_class(
            has_incoming=in_degrees[ref] > 0 or node.has_unresolved_predecessor,
            has_outgoing=out_degrees[ref] > 0,
        )
        override = _rule_override(predicates, node, now_ms)
        if override is not None:
            node.classification = override

    return dict(Counter(n.classification.value for n in graph.nodes.values()))


def structural_class(has_incoming: bool, has_outgoing: bool) -> StateClass:
    """Role from topology.

    An unresolved predecessor counts as incoming history, so a state whose
    creator spent something outside the observed window is not mistaken
    for an initial state.
    """
    if has_incoming and has_outgoing:
        return StateClass.ACTIVE
    if has_outgoing:
        return StateClass.INITIAL
    if has_incoming:
        return StateClass.COMPLETED
    return StateClass.UNKNOWN


def _rule_override(
    predicates: list[Predicate], node: StateNode, now_ms: int
) -> Optional[StateClass]:
    for predicate in predicates:
        if evaluate_rule(predicate, node, now_ms):
            return predicate.state
    return None
