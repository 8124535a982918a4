"""Output formatting for terminal (Rich), JSON, plain text and Graphviz.

Renders an AnalysisResult: the pattern report, per-class counts, every
state node with its datum, and every transition.
"""

from __future__ import annotations

import json
import sys
from typing import Optional, TextIO

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from eutxo import (
    AnalysisResult,
    ContractPattern,
    StateClass,
    StateNode,
    Transition,
)
from eutxo.cbor import describe, to_jsonable

MAX_TERMINAL_NODES = 50


def render_terminal(
    console: Console,
    result: AnalysisResult,
    verbose: bool = False,
) -> None:
    """Render the full analysis to the terminal using Rich."""
    graph = result.graph
    report = result.report

    # Header
    console.print()
    console.print("[bold]eutxoviz[/bold] - Cardano contract state analysis", style="bright_white")
    console.print("━" * 50, style="dim")
    console.print()

    if result.schema is not None:
        console.print(f"  [dim]Contract:[/dim]        {escape(result.schema.name)}")
    if graph.script_address:
        console.print(f"  [dim]Script address:[/dim]  {escape(_shorten(graph.script_address, 50))}")
    console.print(f"  [dim]Transactions:[/dim]    {len(graph.transactions)}")
    console.print(f"  [dim]States:[/dim]          {report.node_count}")
    console.print(f"  [dim]Transitions:[/dim]     {report.edge_count}")
    console.print()

    if not graph.nodes:
        console.print("  [bold yellow]No contract states found.[/bold yellow]")
        console.print()
        _render_warnings(console, result.warnings)
        return

    # Pattern section
    style = _pattern_style(report.pattern)
    console.print("[bold]PATTERN[/bold]")
    console.print(f"  Detected:           [bold {style}]{report.pattern.label}[/bold {style}]")
    console.print(f"  {_pattern_note(report.pattern)}")
    console.print(f"  Branching factor:   {report.branching_factor}")
    console.print(f"  Max out-degree:     {report.max_out_degree}")
    console.print(f"  Max in-degree:      {report.max_in_degree}")
    console.print(f"  Components:         {report.component_count}")
    if report.cycle_members:
        console.print(f"  Cycle members:      {len(report.cycle_members)}")
    else:
        console.print(f"  Longest path:       {report.max_depth} transitions")
    console.print()

    # Class counts
    console.print("[bold]STATES[/bold]")
    counts = Table(show_header=False, box=None, padding=(0, 2, 0, 2))
    counts.add_column("Class")
    counts.add_column("Count", justify="right")
    for state in StateClass:
        n = report.class_counts.get(state.value, 0)
        if n:
            counts.add_row(f"[{_class_style(state)}]{state.label}[/{_class_style(state)}]", str(n))
    console.print(counts)
    console.print()

    if verbose:
        _render_nodes(console, result)
        _render_transitions(console, result)

    _render_warnings(console, result.warnings)


def build_json(result: AnalysisResult) -> dict:
    """Structured document for programmatic consumption."""
    graph = result.graph
    report = result.report
    return {
        "contract": result.schema.name if result.schema else None,
        "script_address": graph.script_address,
        "transactions": len(graph.transactions),
        "pattern": {
            "type": report.pattern.value,
            "label": report.pattern.label,
            "node_count": report.node_count,
            "edge_count": report.edge_count,
            "max_out_degree": report.max_out_degree,
            "max_in_degree": report.max_in_degree,
            "component_count": report.component_count,
            "branching_factor": report.branching_factor,
            "max_depth": report.max_depth,
            "cycle_members": sorted(str(ref) for ref in report.cycle_members),
        },
        "class_counts": report.class_counts,
        "states": [_node_json(node) for node in graph.nodes.values()],
        "transitions": [_edge_json(edge) for edge in graph.edges],
        "warnings": result.warnings,
    }


def render_json(result: AnalysisResult, stream: Optional[TextIO] = None) -> None:
    """Render analysis as JSON (stdout by default)."""
    stream = stream or sys.stdout
    json.dump(build_json(result), stream, indent=2, ensure_ascii=False)
    stream.write("\n")


def render_table(result: AnalysisResult) -> str:
    """Plain-text report with one row per state and per transition."""
    graph = result.graph
    report = result.report
    lines = [
        "Cardano State Analysis",
        "=" * 80,
        "",
        "Summary:",
        f"  Transactions: {len(graph.transactions)}",
        f"  States:       {report.node_count}",
        f"  Transitions:  {report.edge_count}",
        f"  Pattern:      {report.pattern.label}",
        "",
    ]

    if graph.nodes:
        lines += [
            "States:",
            "-" * 80,
            f"{'UTxO':<20} {'Block':>10} {'Class':<10} Datum",
            "-" * 80,
        ]
        for node in graph.nodes.values():
            lines.append(
                f"{_short_ref(str(node.ref)):<20} {node.block:>10} "
                f"{node.classification.label:<10} {_datum_summary(node)}"
            )
        lines.append("")

    if graph.edges:
        lines += [
            "Transitions:",
            "-" * 80,
            f"{'From':<20} {'To':<20} Redeemer",
            "-" * 80,
        ]
        for edge in graph.edges:
            lines.append(
                f"{_short_ref(str(edge.source)):<20} {_short_ref(str(edge.target)):<20} "
                f"{edge.display_label}"
            )
        lines.append("")

    if result.warnings:
        lines.append("Warnings:")
        lines += [f"  ! {w}" for w in result.warnings]
        lines.append("")

    return "\n".join(lines)


def render_dot(result: AnalysisResult) -> str:
    """Graphviz document; nodes filled by classification colour."""
    graph = result.graph
    schema = result.schema
    title = schema.name if schema else "eutxo"
    lines = [
        f'digraph "{_dot_escape(title)}" {{',
        "  rankdir=LR;",
        '  node [shape=box, style="rounded,filled", fontname="monospace"];',
    ]
    for node in graph.nodes.values():
        label = f"{_short_ref(str(node.ref))}\n{node.classification.label}"
        lines.append(
            f'  "{node.ref}" [label="{_dot_escape(label)}", '
            f'fillcolor="{node.classification.color}"];'
        )
    for edge in graph.edges:
        attrs = [f'label="{_dot_escape(edge.display_label)}"']
        style = schema.transitions.get(edge.redeemer) if schema and edge.redeemer else None
        if style is not None:
            if style.color:
                attrs.append(f'color="{_dot_escape(style.color)}"')
            if style.style:
                attrs.append(f'style="{_dot_escape(style.style)}"')
        lines.append(f'  "{edge.source}" -> "{edge.target}" [{", ".join(attrs)}];')
    lines.append("}")
    return "\n".join(lines) + "\n"


# ── Helpers ───────────────────────────────────────────────────────────────────


def _node_json(node: StateNode) -> dict:
    datum = node.datum
    datum_json = None
    if datum is not None:
        datum_json = {
            "hash": datum.hash,
            "cbor": datum.raw_cbor.hex(),
            "value": to_jsonable(datum.value) if datum.value is not None else None,
            "decode_error": datum.decode_error,
        }
        if datum.resolved is not None:
            datum_json["fields"] = {
                name: describe(rf.value) for name, rf in datum.resolved.fields.items()
            }
            datum_json["schema_mismatch"] = datum.resolved.mismatch
    return {
        "ref": str(node.ref),
        "tx_hash": node.tx_hash,
        "output_index": node.ref.output_index,
        "block": node.block,
        "slot": node.slot,
        "address": node.output.address,
        "lovelace": str(node.output.lovelace),
        "classification": node.classification.value,
        "consumed_by": node.consumed_by,
        "unresolved_inputs": [str(ref) for ref in node.unresolved_inputs],
        "datum": datum_json,
        "warnings": node.warnings,
    }


def _edge_json(edge: Transition) -> dict:
    return {
        "source": str(edge.source),
        "target": str(edge.target),
        "tx_hash": edge.tx_hash,
        "input_index": edge.input_index,
        "redeemer": edge.redeemer,
        "redeemer_index": edge.redeemer_index,
        "label": edge.label,
    }


def _render_nodes(console: Console, result: AnalysisResult) -> None:
    console.print("[bold]STATE NODES[/bold]")
    table = Table(show_header=True, box=None, padding=(0, 2))
    table.add_column("UTxO", style="dim")
    table.add_column("Block", justify="right")
    table.add_column("Class")
    table.add_column("ADA", justify="right")
    table.add_column("Datum")

    nodes = list(result.graph.nodes.values())
    for node in nodes[:MAX_TERMINAL_NODES]:
        style = _class_style(node.classification)
        table.add_row(
            _short_ref(str(node.ref)),
            str(node.block),
            f"[{style}]{node.classification.label}[/{style}]",
            f"{node.output.lovelace / 1_000_000:,.2f}",
            escape(_datum_summary(node)),
        )
    console.print(table)
    if len(nodes) > MAX_TERMINAL_NODES:
        console.print(f"  [dim]... and {len(nodes) - MAX_TERMINAL_NODES} more states[/dim]")
    console.print()


def _render_transitions(console: Console, result: AnalysisResult) -> None:
    edges = result.graph.edges
    if not edges:
        return
    console.print("[bold]TRANSITIONS[/bold]")
    for edge in edges[:MAX_TERMINAL_NODES]:
        console.print(
            f"  [dim]{_short_ref(str(edge.source))}[/dim] → "
            f"[dim]{_short_ref(str(edge.target))}[/dim]  {escape(edge.display_label)}"
        )
    if len(edges) > MAX_TERMINAL_NODES:
        console.print(f"  [dim]... and {len(edges) - MAX_TERMINAL_NODES} more transitions[/dim]")
    console.print()


def _render_warnings(console: Console, warnings: list[str]) -> None:
    if not warnings:
        return
    console.print("[bold yellow]WARNINGS[/bold yellow]")
    for warning in warnings:
        console.print(f"  ⚠ {warning}", markup=False)
    console.print()


def _datum_summary(node: StateNode) -> str:
    datum = node.datum
    if datum is None:
        return "-"
    if datum.value is None:
        return f"undecoded ({datum.decode_error})" if datum.decode_error else "undecoded"
    if datum.resolved is not None and datum.resolved.fields:
        parts = [f"{name}={describe(rf.value)}" for name, rf in datum.resolved.fields.items()]
        return _shorten(", ".join(parts), 60)
    return _shorten(describe(datum.value), 60)


def _short_ref(ref: str) -> str:
    tx_hash, _, index = ref.partition("#")
    if len(tx_hash) > 12:
        tx_hash = tx_hash[:12] + ".."
    return f"{tx_hash}#{index}"


def _shorten(text: str, width: int) -> str:
    if len(text) <= width:
        return text
    half = (width - 2) // 2
    return text[:half] + ".." + text[-half:]


def _dot_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _class_style(state: StateClass) -> str:
    return {
        StateClass.INITIAL: "cyan",
        StateClass.ACTIVE: "green",
        StateClass.COMPLETED: "bright_green",
        StateClass.FAILED: "red",
        StateClass.LOCKED: "yellow",
        StateClass.UNKNOWN: "dim",
    }.get(state, "white")


def _pattern_style(pattern: ContractPattern) -> str:
    return {
        ContractPattern.LINEAR: "green",
        ContractPattern.TREE: "cyan",
        ContractPattern.CYCLE: "magenta",
        ContractPattern.DISCONNECTED: "yellow",
        ContractPattern.UNKNOWN: "white",
    }.get(pattern, "white")


def _pattern_note(pattern: ContractPattern) -> str:
    notes = {
        ContractPattern.LINEAR: "[dim]Each state is spent into exactly one successor.[/dim]",
        ContractPattern.TREE: "[dim]States fan out into several successors; no merges.[/dim]",
        ContractPattern.CYCLE: "[dim]Some state reaches itself through later transitions.[/dim]",
        ContractPattern.DISCONNECTED: (
            "[dim]Several independent state chains share the script address.[/dim]"
        ),
        ContractPattern.UNKNOWN: "[dim]Merge points or too few states to classify.[/dim]",
    }
    return notes.get(pattern, "")
