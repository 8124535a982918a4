"""Tests for state graph construction."""

from eutxo import (
    Asset,
    ContractSchema,
    Datum,
    LinkStrategy,
    PlutusConstr,
    Redeemer,
    RedeemerDef,
    Transaction,
    TransitionStyle,
    TxInput,
    TxOutput,
    UtxoRef,
)
from eutxo.graph import build_state_graph, merge_graphs

SCRIPT = "addr_test1wzscript"
WALLET = "addr_test1qzwallet"

SPEND_0 = "d87980"  # Constr 0 []
SPEND_1 = "d87a80"  # Constr 1 []


# ── Helpers ───────────────────────────────────────────────────────────────────


def _out(address: str = SCRIPT, datum_hex: str | None = None) -> TxOutput:
    datum = Datum(hash="", raw_cbor=bytes.fromhex(datum_hex)) if datum_hex else None
    return TxOutput(address=address, amount=[Asset.lovelace(2_000_000)], datum=datum)


def _tx(
    tx_hash: str,
    block: int,
    spends: list[tuple[str, int]] = (),
    outputs: list[TxOutput] | None = None,
    redeemers: list[Redeemer] = (),
    funded: bool = False,
) -> Transaction:
    """Transaction spending ``spends``; ``funded`` adds a wallet input."""
    inputs = [TxInput(tx_hash=h, output_index=i) for h, i in spends]
    if funded:
        inputs.append(TxInput(tx_hash="f" * 64, output_index=0, address=WALLET))
    return Transaction(
        hash=tx_hash,
        block=block,
        slot=block * 20,
        inputs=inputs,
        outputs=outputs if outputs is not None else [_out()],
        redeemers=list(redeemers),
    )


def _chain() -> list[Transaction]:
    return [
        _tx("tx1", 1, funded=True),
        _tx("tx2", 2, spends=[("tx1", 0)]),
        _tx("tx3", 3, spends=[("tx2", 0)]),
    ]


# ── Basic construction ────────────────────────────────────────────────────────


def test_empty_transaction_list():
    graph = build_state_graph([])
    assert graph.nodes == {}
    assert graph.edges == []


def test_chain_nodes_and_edges():
    graph = build_state_graph(_chain(), script_address=SCRIPT)
    assert list(graph.nodes) == [UtxoRef("tx1", 0), UtxoRef("tx2", 0), UtxoRef("tx3", 0)]
    assert [(str(e.source), str(e.target)) for e in graph.edges] == [
        ("tx1#0", "tx2#0"),
        ("tx2#0", "tx3#0"),
    ]


def test_node_records_block_and_slot():
    graph = build_state_graph(_chain(), script_address=SCRIPT)
    node = graph.nodes[UtxoRef("tx2", 0)]
    assert node.block == 2
    assert node.slot == 40
    assert node.tx_hash == "tx2"


def test_consumed_by_recorded():
    graph = build_state_graph(_chain(), script_address=SCRIPT)
    assert graph.nodes[UtxoRef("tx1", 0)].consumed_by == "tx2"
    assert graph.nodes[UtxoRef("tx3", 0)].consumed_by is None


def test_script_address_filters_outputs():
    txs = [_tx("tx1", 1, outputs=[_out(), _out(address=WALLET)], funded=True)]
    graph = build_state_graph(txs, script_address=SCRIPT)
    assert list(graph.nodes) == [UtxoRef("tx1", 0)]


def test_without_address_every_output_is_a_node():
    txs = [_tx("tx1", 1, outputs=[_out(), _out(address=WALLET)])]
    graph = build_state_graph(txs)
    assert len(graph.nodes) == 2


def test_multiple_edges_between_same_pair_preserved():
    # One transaction spends two outputs of tx1 into a single state
    txs = [
        _tx("tx1", 1, outputs=[_out(), _out()], funded=True),
        _tx("tx2", 2, spends=[("tx1", 0), ("tx1", 1)]),
    ]
    graph = build_state_graph(txs, script_address=SCRIPT)
    assert len(graph.edges) == 2
    assert {e.input_index for e in graph.edges} == {0, 1}


def test_pairwise_expansion():
    txs = [
        _tx("a", 1, funded=True),
        _tx("b", 1, funded=True),
        _tx("c", 2, spends=[("a", 0), ("b", 0)], outputs=[_out(), _out()]),
    ]
    graph = build_state_graph(txs, script_address=SCRIPT)
    assert len(graph.edges) == 4


def test_first_input_strategy():
    txs = [
        _tx("a", 1, funded=True),
        _tx("b", 1, funded=True),
        _tx("c", 2, spends=[("a", 0), ("b", 0)], outputs=[_out(), _out()]),
    ]
    graph = build_state_graph(txs, script_address=SCRIPT, link=LinkStrategy.FIRST_INPUT)
    assert len(graph.edges) == 2
    assert all(e.source == UtxoRef("a", 0) for e in graph.edges)
    # Both spent nodes still know their consumer
    assert graph.nodes[UtxoRef("b", 0)].consumed_by == "c"


def test_fan_out_double_spend_kept_with_warning():
    txs = [
        _tx("tx1", 1, funded=True),
        _tx("tx2", 2, spends=[("tx1", 0)]),
        _tx("tx3", 3, spends=[("tx1", 0)]),
    ]
    graph = build_state_graph(txs, script_address=SCRIPT)
    assert len(graph.edges) == 2
    assert any("spent by both" in w for w in graph.warnings)


# ── Unresolved predecessors ───────────────────────────────────────────────────


def test_unresolved_predecessor_recorded():
    txs = [_tx("tx5", 5, spends=[("old", 3)])]
    graph = build_state_graph(txs, script_address=SCRIPT)
    node = graph.nodes[UtxoRef("tx5", 0)]
    assert node.unresolved_inputs == [UtxoRef("old", 3)]
    assert node.has_unresolved_predecessor
    assert any("outside the observed" in w for w in node.warnings)


def test_wallet_input_is_not_unresolved():
    graph = build_state_graph([_tx("tx1", 1, funded=True)], script_address=SCRIPT)
    assert graph.nodes[UtxoRef("tx1", 0)].unresolved_inputs == []


def test_spending_observed_wallet_output_is_ignored():
    txs = [
        _tx("tx1", 1, outputs=[_out(), _out(address=WALLET)], funded=True),
        _tx("tx2", 2, spends=[("tx1", 1)]),
    ]
    graph = build_state_graph(txs, script_address=SCRIPT)
    assert graph.edges == []
    assert graph.nodes[UtxoRef("tx2", 0)].unresolved_inputs == []


# ── Malformed transactions ────────────────────────────────────────────────────


def test_self_spending_transaction_skipped():
    txs = [_tx("tx1", 1, funded=True), _tx("bad", 2, spends=[("bad", 0)])]
    graph = build_state_graph(txs, script_address=SCRIPT)
    assert UtxoRef("bad", 0) not in graph.nodes
    assert any("Skipped malformed transaction bad" in w for w in graph.warnings)


def test_out_of_range_output_index_skipped():
    txs = [_tx("tx1", 1, funded=True), _tx("bad", 2, spends=[("tx1", 5)])]
    graph = build_state_graph(txs, script_address=SCRIPT)
    assert UtxoRef("bad", 0) not in graph.nodes
    assert graph.nodes[UtxoRef("tx1", 0)].consumed_by is None
    assert len(graph.warnings) == 1


def test_duplicate_transaction_ingested_once():
    txs = _chain() + [_tx("tx2", 2, spends=[("tx1", 0)])]
    graph = build_state_graph(txs, script_address=SCRIPT)
    assert len(graph.nodes) == 3
    assert len(graph.edges) == 2


# ── Datums ────────────────────────────────────────────────────────────────────


def test_datum_decoded_on_node():
    txs = [_tx("tx1", 1, outputs=[_out(datum_hex="d8799f0102ff")], funded=True)]
    graph = build_state_graph(txs, script_address=SCRIPT)
    datum = graph.nodes[UtxoRef("tx1", 0)].datum
    assert datum.decoded
    assert isinstance(datum.value, PlutusConstr)


def test_malformed_datum_keeps_node_and_bytes():
    raw = bytes.fromhex("830102")  # array of 3, only 2 items present
    txs = [_tx("tx1", 1, outputs=[_out(datum_hex=raw.hex())], funded=True)]
    graph = build_state_graph(txs, script_address=SCRIPT)
    node = graph.nodes[UtxoRef("tx1", 0)]
    assert node.datum.raw_cbor == raw
    assert node.datum.value is None
    assert "truncated input at offset 3" in node.datum.decode_error
    assert any("not decoded" in w for w in node.warnings)


def test_datum_by_hash_hydrated_from_witness():
    raw = bytes.fromhex("d87980")
    tx = _tx("tx1", 1, outputs=[TxOutput(address=SCRIPT, datum=Datum(hash="dh1"))], funded=True)
    tx.datums = [Datum(hash="dh1", raw_cbor=raw)]
    graph = build_state_graph([tx], script_address=SCRIPT)
    datum = graph.nodes[UtxoRef("tx1", 0)].datum
    assert datum.raw_cbor == raw
    assert datum.value == PlutusConstr(0, ())


def test_datum_by_hash_without_witness():
    tx = _tx("tx1", 1, outputs=[TxOutput(address=SCRIPT, datum=Datum(hash="dh1"))], funded=True)
    graph = build_state_graph([tx], script_address=SCRIPT)
    node = graph.nodes[UtxoRef("tx1", 0)]
    assert node.datum.value is None
    assert node.datum.decode_error
    assert node.warnings


# ── Redeemers ─────────────────────────────────────────────────────────────────


def test_redeemer_fallback_name():
    txs = [
        _tx("tx1", 1, funded=True),
        _tx("tx2", 2, spends=[("tx1", 0)],
            redeemers=[Redeemer(purpose="spend", index=0, raw_cbor=bytes.fromhex(SPEND_1))]),
    ]
    graph = build_state_graph(txs, script_address=SCRIPT)
    edge = graph.edges[0]
    assert edge.redeemer == "redeemer#1"
    assert edge.redeemer_index == 1
    assert graph.nodes[UtxoRef("tx1", 0)].consumed_redeemer == "redeemer#1"


def test_redeemer_named_by_schema():
    schema = ContractSchema(
        name="Counter",
        script_address=SCRIPT,
        redeemers=[RedeemerDef("Increment", 0), RedeemerDef("Close", 1)],
        transitions={"Increment": TransitionStyle(label="+1")},
    )
    txs = [
        _tx("tx1", 1, funded=True),
        _tx("tx2", 2, spends=[("tx1", 0)],
            redeemers=[Redeemer(purpose="spend", index=0, raw_cbor=bytes.fromhex(SPEND_0))]),
    ]
    graph = build_state_graph(txs, script_address=SCRIPT, schema=schema)
    edge = graph.edges[0]
    assert edge.redeemer == "Increment"
    assert edge.label == "+1"
    assert edge.display_label == "+1"


def test_redeemer_matched_by_input_position():
    # The funding input sits at position 1; the redeemer for position 0 applies
    txs = [
        _tx("tx1", 1, funded=True),
        Transaction(
            hash="tx2",
            block=2,
            slot=40,
            inputs=[TxInput("tx1", 0), TxInput("f" * 64, 1, address=WALLET)],
            outputs=[_out()],
            redeemers=[
                Redeemer(purpose="mint", index=0, raw_cbor=bytes.fromhex(SPEND_1)),
                Redeemer(purpose="spend", index=0, raw_cbor=bytes.fromhex(SPEND_0)),
            ],
        ),
    ]
    graph = build_state_graph(txs, script_address=SCRIPT)
    assert graph.edges[0].redeemer == "redeemer#0"


def test_undecodable_redeemer_leaves_name_unset():
    txs = [
        _tx("tx1", 1, funded=True),
        _tx("tx2", 2, spends=[("tx1", 0)],
            redeemers=[Redeemer(purpose="spend", index=0, raw_cbor=b"\x83\x01")]),
    ]
    graph = build_state_graph(txs, script_address=SCRIPT)
    assert graph.edges[0].redeemer is None
    assert graph.edges[0].display_label == "transition"
    assert any("not decoded" in w for w in graph.warnings)


def test_redeemer_without_bytes_is_reported():
    txs = [
        _tx("tx1", 1, funded=True),
        _tx("tx2", 2, spends=[("tx1", 0)],
            redeemers=[Redeemer(purpose="spend", index=0, raw_cbor=b"")]),
    ]
    graph = build_state_graph(txs, script_address=SCRIPT)
    assert graph.edges[0].redeemer is None
    assert graph.warnings == ["tx2: redeemer for input 0 has no bytes"]


def test_mint_redeemer_without_bytes_is_ignored():
    txs = [
        _tx("tx1", 1, funded=True),
        _tx("tx2", 2, spends=[("tx1", 0)],
            redeemers=[Redeemer(purpose="mint", index=0, raw_cbor=b"")]),
    ]
    assert build_state_graph(txs, script_address=SCRIPT).warnings == []


# ── Incremental builds ────────────────────────────────────────────────────────


def test_prefix_run_is_subset_of_extended_run():
    full = _chain() + [_tx("tx4", 4, spends=[("tx3", 0)], outputs=[_out(), _out()])]
    prefix_graph = build_state_graph(full[:2], script_address=SCRIPT)
    full_graph = build_state_graph(full, script_address=SCRIPT)
    assert prefix_graph.node_keys() <= full_graph.node_keys()
    assert prefix_graph.edge_keys() <= full_graph.edge_keys()


def test_incremental_build_equals_full_build():
    full = _chain() + [_tx("tx4", 4, spends=[("tx3", 0)], outputs=[_out(), _out()])]
    first = build_state_graph(full[:2], script_address=SCRIPT)
    extended = build_state_graph(full[2:], previous=first)
    full_graph = build_state_graph(full, script_address=SCRIPT)
    assert extended.node_keys() == full_graph.node_keys()
    assert extended.edge_keys() == full_graph.edge_keys()
    assert extended.script_address == SCRIPT


def test_incremental_build_does_not_modify_previous():
    first = build_state_graph(_chain()[:2], script_address=SCRIPT)
    before = (first.node_keys(), first.edge_keys())
    build_state_graph(_chain()[2:], previous=first)
    assert (first.node_keys(), first.edge_keys()) == before
    assert first.nodes[UtxoRef("tx2", 0)].consumed_by is None


def test_previous_transactions_skipped():
    first = build_state_graph(_chain(), script_address=SCRIPT)
    again = build_state_graph(_chain(), previous=first)
    assert again.edge_keys() == first.edge_keys()
    assert len(again.edges) == len(first.edges)


def test_independent_builds_are_identical():
    a = build_state_graph(_chain(), script_address=SCRIPT)
    b = build_state_graph(_chain(), script_address=SCRIPT)
    assert a.node_keys() == b.node_keys()
    assert a.edge_keys() == b.edge_keys()


def test_merge_graphs_union_by_key():
    left = build_state_graph(_chain()[:2], script_address=SCRIPT)
    right = build_state_graph(_chain(), script_address=SCRIPT)
    merged = merge_graphs(left, right)
    assert merged.node_keys() == right.node_keys()
    assert merged.edge_keys() == right.edge_keys()
    assert len(merged.edges) == len(right.edges)
