"""Contract schemas: loading, validation, datum mapping and state rules.

A schema is an optional TOML document describing one contract's datum
layout, its redeemers, and declarative rules that mark states as failed
or locked. Every mapping here is lenient: a datum that disagrees with its
schema yields a partial result flagged ``mismatch``, never an exception.
"""

from __future__ import annotations

import logging
import operator
import re
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from eutxo import (
    ContractSchema,
    FieldDef,
    PlutusBytes,
    PlutusConstr,
    PlutusData,
    PlutusInt,
    PlutusList,
    PlutusMap,
    RedeemerDef,
    ResolvedDatum,
    ResolvedField,
    StateClass,
    StateNode,
    StateRule,
    TransitionStyle,
)
from eutxo.errors import SchemaError

logger = logging.getLogger(__name__)

FIELD_TYPES = ("bytes", "int", "bool", "list", "map", "constr")
RULE_STATES = {"failed": StateClass.FAILED, "locked": StateClass.LOCKED}

_RULE_PATTERN = re.compile(
    r"^(?P<subject>redeemer|datum\.(?P<field>[A-Za-z_][A-Za-z0-9_]*))"
    r"\s*(?P<op>==|!=|>=|<=|>|<)\s*(?P<operand>\S+)$"
)
_OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}
CURRENT_TIME = "current_time"


# ── Loading ───────────────────────────────────────────────────────────────────


def load_schema(path: Path | str) -> ContractSchema:
    """Load a TOML schema file.

    Raises:
        SchemaError: unreadable file, invalid TOML or missing keys.
    """
    path = Path(path)
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except OSError as exc:
        raise SchemaError(f"Cannot read schema {path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise SchemaError(f"Invalid TOML in {path}: {exc}") from exc

    schema = parse_schema(data, source=str(path))
    logger.info("Loaded schema %r from %s", schema.name, path)
    return schema


def parse_schema(data: dict[str, Any], source: str = "<schema>") -> ContractSchema:
    """Build a ContractSchema from an already-parsed document."""
    try:
        contract = data["contract"]
        datum = data.get("datum", {})
        schema = ContractSchema(
            name=contract["name"],
            script_address=contract["script_address"],
            description=contract.get("description"),
            datum_type=datum.get("type", "constr"),
            constructor_index=int(datum.get("constructor_index", 0)),
            fields=[
                FieldDef(name=f["name"], type=f["type"], desc=f.get("desc"))
                for f in datum.get("fields", [])
            ],
            redeemers=[
                RedeemerDef(name=r["name"], constructor_index=int(r["constructor_index"]))
                for r in data.get("redeemer", [])
            ],
            rules=[
                StateRule(state=state, rule=body["rule"])
                for state, body in data.get("states", {}).items()
            ],
            transitions={
                name: TransitionStyle(
                    label=style.get("label"),
                    color=style.get("color"),
                    style=style.get("style"),
                )
                for name, style in data.get("transitions", {}).items()
            },
        )
    except KeyError as exc:
        raise SchemaError(f"{source}: missing required key {exc}") from exc
    except (TypeError, ValueError, AttributeError) as exc:
        raise SchemaError(f"{source}: malformed schema: {exc}") from exc
    return schema


def validate_schema(schema: ContractSchema) -> tuple[list[str], list[str]]:
    """Check a schema for structural problems.

    Returns:
        (errors, warnings). The schema is usable when errors is empty.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not schema.name:
        errors.append("Contract name cannot be empty")
    if not schema.script_address:
        errors.append("Script address cannot be empty")
    elif not schema.script_address.startswith("addr"):
        warnings.append("Script address should start with 'addr'")
    if not schema.datum_type:
        errors.append("Datum type cannot be empty")
    elif schema.datum_type != "constr":
        warnings.append(
            f"Datum type {schema.datum_type!r} cannot be mapped to fields; "
            "datums will be shown raw"
        )

    seen_fields = set()
    for fd in schema.fields:
        if fd.name in seen_fields:
            errors.append(f"Duplicate field name: {fd.name}")
        seen_fields.add(fd.name)
        if fd.type not in FIELD_TYPES:
            errors.append(
                f"Field {fd.name}: unknown type {fd.type!r} "
                f"(expected one of {', '.join(FIELD_TYPES)})"
            )

    seen_indices = set()
    for rd in schema.redeemers:
        if rd.constructor_index in seen_indices:
            errors.append(f"Duplicate redeemer constructor index: {rd.constructor_index}")
        seen_indices.add(rd.constructor_index)

    for rule in schema.rules:
        if rule.state not in RULE_STATES:
            warnings.append(
                f"Rule for state {rule.state!r} ignored: only "
                f"{', '.join(RULE_STATES)} can be set by schema"
            )
            continue
        try:
            predicate = parse_rule(rule)
        except SchemaError as exc:
            errors.append(str(exc))
            continue
        if predicate.field and predicate.field not in seen_fields:
            warnings.append(f"Rule {rule.rule!r} references undeclared field {predicate.field!r}")

    redeemer_names = {rd.name for rd in schema.redeemers}
    for name in schema.transitions:
        if name not in redeemer_names:
            warnings.append(f"Transition style for undeclared redeemer {name!r}")

    return errors, warnings


# ── Datum mapping ─────────────────────────────────────────────────────────────


def resolve_datum(value: PlutusData, schema: ContractSchema) -> ResolvedDatum:
    """Map a decoded datum onto the schema's declared fields.

    Field count, constructor index and per-field type disagreements are
    reported as warnings with ``mismatch`` set; as many fields as line up
    are still mapped.
    """
    if not isinstance(value, PlutusConstr):
        return ResolvedDatum(
            constructor_index=None,
            mismatch=True,
            warnings=[f"Expected a constructor datum, got {type(value).__name__}"],
        )

    resolved = ResolvedDatum(constructor_index=value.index)
    if schema.datum_type != "constr":
        resolved.mismatch = True
        resolved.warnings.append(f"Schema datum type {schema.datum_type!r} is not a constructor")
        return resolved

    if value.index != schema.constructor_index:
        resolved.mismatch = True
        resolved.warnings.append(
            f"Constructor index {value.index} differs from schema's {schema.constructor_index}"
        )

    for fd, field_value in zip(schema.fields, value.fields):
        type_ok = matches_type(fd.type, field_value)
        if not type_ok:
            resolved.mismatch = True
            resolved.warnings.append(
                f"Field {fd.name}: expected {fd.type}, got {type(field_value).__name__}"
            )
        resolved.fields[fd.name] = ResolvedField(
            name=fd.name,
            type=fd.type,
            value=field_value,
            desc=fd.desc,
            type_ok=type_ok,
        )

    if len(value.fields) != len(schema.fields):
        resolved.mismatch = True
        resolved.warnings.append(
            f"Datum has {len(value.fields)} fields, schema declares {len(schema.fields)}"
        )
    return resolved


def matches_type(field_type: str, value: PlutusData) -> bool:
    if field_type == "int":
        return isinstance(value, PlutusInt)
    if field_type == "bytes":
        return isinstance(value, PlutusBytes)
    if field_type == "list":
        return isinstance(value, PlutusList)
    if field_type == "map":
        return isinstance(value, PlutusMap)
    if field_type == "constr":
        return isinstance(value, PlutusConstr)
    if field_type == "bool":
        # Plutus Bool: False = Constr 0 [], True = Constr 1 []
        return isinstance(value, PlutusConstr) and value.index in (0, 1) and not value.fields
    return False


# ── Redeemers ─────────────────────────────────────────────────────────────────


def resolve_redeemer_name(index: int, schema: Optional[ContractSchema] = None) -> str:
    """Declared redeemer name for a constructor index, else ``redeemer#<index>``."""
    if schema is not None:
        for rd in schema.redeemers:
            if rd.constructor_index == index:
                return rd.name
    return f"redeemer#{index}"


def transition_label(schema: Optional[ContractSchema], redeemer_name: Optional[str]) -> Optional[str]:
    if schema is None or redeemer_name is None:
        return None
    style = schema.transitions.get(redeemer_name)
    return style.label if style else None


# ── State rules ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Predicate:
    """Compiled form of a StateRule."""

    state: StateClass
    text: str
    subject: str  # "redeemer", "datum", "always" or "never"
    field: Optional[str] = None
    op: Optional[str] = None
    operand: Any = None


def parse_rule(rule: StateRule) -> Predicate:
    """Compile one rule.

    Grammar::

        always | never
        redeemer (==|!=) <Name>
        datum.<field> <op> <int | 0xhex | true | false | current_time>
    """
    state = RULE_STATES.get(rule.state)
    if state is None:
        raise SchemaError(f"Rules may only target {', '.join(RULE_STATES)}, not {rule.state!r}")

    text = rule.rule.strip()
    if text in ("always", "never"):
        return Predicate(state=state, text=text, subject=text)

    match = _RULE_PATTERN.match(text)
    if match is None:
        raise SchemaError(f"Cannot parse rule {text!r}")

    op = match.group("op")
    raw_operand = match.group("operand")
    if match.group("subject") == "redeemer":
        if op not in ("==", "!="):
            raise SchemaError(f"Rule {text!r}: redeemers only support == and !=")
        return Predicate(state=state, text=text, subject="redeemer", op=op, operand=raw_operand)

    return Predicate(
        state=state,
        text=text,
        subject="datum",
        field=match.group("field"),
        op=op,
        operand=_parse_operand(raw_operand, text),
    )


def _parse_operand(raw: str, text: str) -> Any:
    if raw == CURRENT_TIME:
        return CURRENT_TIME
    if raw in ("true", "false"):
        return raw == "true"
    if raw.startswith("0x"):
        try:
            return bytes.fromhex(raw[2:])
        except ValueError as exc:
            raise SchemaError(f"Rule {text!r}: bad hex operand") from exc
    try:
        return int(raw)
    except ValueError as exc:
        raise SchemaError(f"Rule {text!r}: unsupported operand {raw!r}") from exc


def compile_rules(schema: Optional[ContractSchema]) -> list[Predicate]:
    """Compile the schema's failed/locked rules, failed first.

    Rules for other states and rules that do not parse are skipped with a
    logged warning; validate_schema reports them to the user.
    """
    if schema is None:
        return []
    predicates = []
    for rule in schema.rules:
        if rule.state not in RULE_STATES:
            logger.warning("Ignoring rule for structural state %r", rule.state)
            continue
        try:
            predicates.append(parse_rule(rule))
        except SchemaError as exc:
            logger.warning("Ignoring rule: %s", exc)
    predicates.sort(key=lambda p: 0 if p.state is StateClass.FAILED else 1)
    return predicates


def evaluate_rule(predicate: Predicate, node: StateNode, now_ms: int) -> bool:
    if predicate.subject == "always":
        return True
    if predicate.subject == "never":
        return False
    if predicate.subject == "redeemer":
        if node.consumed_redeemer is None:
            return False
        return _OPERATORS[predicate.op](node.consumed_redeemer, predicate.operand)

    if node.datum is None or node.datum.resolved is None:
        return False
    resolved_field = node.datum.resolved.fields.get(predicate.field)
    if resolved_field is None:
        return False
    actual = _field_scalar(resolved_field)
    expected = now_ms if predicate.operand == CURRENT_TIME else predicate.operand
    if actual is None or type(actual) is not type(expected):
        return False
    return _OPERATORS[predicate.op](actual, expected)


def _field_scalar(resolved_field: ResolvedField) -> Any:
    """Comparable Python value for a datum field, or None."""
    value = resolved_field.value
    if isinstance(value, PlutusInt):
        return value.value
    if isinstance(value, PlutusBytes):
        return value.value
    if isinstance(value, PlutusConstr) and not value.fields:
        if resolved_field.type == "bool" and value.index in (0, 1):
            return value.index == 1
        # Enum-like constructors compare by index
        return value.index
    return None
