"""Tests for the Blockfrost adapter (mocked transport) and the rate limiter."""

import asyncio
import os
import time

import httpx
import pytest

from eutxo import ContractPattern
from eutxo.blockfrost import (
    PAGE_SIZE,
    BlockfrostSource,
    base_url,
    fetch_script_transactions,
    parse_transaction,
)
from eutxo.errors import DataSourceError, RateLimitError
from eutxo.pipeline import run_analysis
from eutxo.rate_limiter import RateLimiter

SCRIPT = "addr_test1wzcounterscript"
WALLET = "addr_test1qzwallet"
H1 = "1" * 64
H2 = "2" * 64
D0 = "d87980"
D1 = "d87a80"
BASE = "https://cardano-preprod.blockfrost.io/api/v0"


# ── Helpers ───────────────────────────────────────────────────────────────────


def _lovelace(n: int) -> list[dict]:
    return [{"unit": "lovelace", "quantity": str(n)}]


ROUTES = {
    f"/addresses/{SCRIPT}/transactions": [
        {"tx_hash": H1, "tx_index": 0, "block_height": 100, "block_time": 1},
        {"tx_hash": H2, "tx_index": 3, "block_height": 101, "block_time": 2},
    ],
    f"/txs/{H1}": {"hash": H1, "block_height": 100, "slot": 2000},
    f"/txs/{H1}/utxos": {
        "hash": H1,
        "inputs": [
            {"address": WALLET, "amount": _lovelace(9_000_000), "tx_hash": "f" * 64,
             "output_index": 0, "collateral": False, "reference": False},
        ],
        "outputs": [
            {"address": SCRIPT, "amount": _lovelace(5_000_000), "output_index": 0,
             "data_hash": "dh0", "inline_datum": D0, "collateral": False},
        ],
    },
    f"/txs/{H1}/redeemers": [],
    f"/txs/{H2}": {"hash": H2, "block_height": 101, "slot": 2020},
    f"/txs/{H2}/utxos": {
        "hash": H2,
        "inputs": [
            {"address": WALLET, "amount": _lovelace(5_000_000), "tx_hash": "c" * 64,
             "output_index": 0, "collateral": True, "reference": False},
            {"address": SCRIPT, "amount": _lovelace(5_000_000), "tx_hash": H1,
             "output_index": 0, "collateral": False, "reference": False},
            {"address": SCRIPT, "amount": _lovelace(2_000_000), "tx_hash": "0" * 64,
             "output_index": 0, "collateral": False, "reference": True},
        ],
        "outputs": [
            {"address": WALLET, "amount": _lovelace(4_000_000), "output_index": 1,
             "collateral": True},
            {"address": SCRIPT, "amount": _lovelace(5_000_000), "output_index": 0,
             "data_hash": "dh1", "inline_datum": None, "collateral": False},
        ],
    },
    f"/txs/{H2}/redeemers": [
        {"tx_index": 0, "purpose": "spend", "redeemer_data_hash": "rd1",
         "unit_mem": "1700", "unit_steps": "476468"},
    ],
    "/scripts/datum/dh1/cbor": {"cbor": D1},
    "/scripts/datum/rd1/cbor": {"cbor": "d87980"},
}


def _handler(routes: dict, seen: list | None = None):
    def handle(request: httpx.Request) -> httpx.Response:
        assert request.headers["project_id"] == "test-project"
        path = request.url.path.removeprefix("/api/v0")
        if seen is not None:
            seen.append(path)
        if path in routes:
            return httpx.Response(200, json=routes[path])
        return httpx.Response(404, json={"status_code": 404})

    return handle


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ── Fetching ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_fetch_script_transactions():
    async with _client(_handler(ROUTES)) as client:
        txs = await fetch_script_transactions(client, SCRIPT, "test-project", network="preprod")

    assert [tx.hash for tx in txs] == [H1, H2]
    assert txs[0].block == 100
    assert txs[0].outputs[0].datum.raw_cbor == bytes.fromhex(D0)


@pytest.mark.asyncio
async def test_collateral_and_reference_inputs_dropped():
    async with _client(_handler(ROUTES)) as client:
        txs = await fetch_script_transactions(client, SCRIPT, "test-project", network="preprod")

    tx2 = txs[1]
    assert [(i.tx_hash, i.output_index) for i in tx2.inputs] == [(H1, 0)]
    assert len(tx2.outputs) == 1
    assert tx2.outputs[0].address == SCRIPT


@pytest.mark.asyncio
async def test_datum_and_redeemer_bytes_fetched_by_hash():
    async with _client(_handler(ROUTES)) as client:
        txs = await fetch_script_transactions(client, SCRIPT, "test-project", network="preprod")

    tx2 = txs[1]
    assert tx2.datums[0].hash == "dh1"
    assert tx2.datums[0].raw_cbor == bytes.fromhex(D1)
    redeemer = tx2.redeemers[0]
    assert redeemer.raw_cbor == bytes.fromhex("d87980")
    assert redeemer.ex_units_mem == 1700


@pytest.mark.asyncio
async def test_fetched_history_analyzes():
    async with _client(_handler(ROUTES)) as client:
        txs = await fetch_script_transactions(client, SCRIPT, "test-project", network="preprod")

    result = run_analysis(txs, script_address=SCRIPT)
    assert result.report.pattern is ContractPattern.LINEAR
    assert result.graph.edges[0].redeemer == "redeemer#0"
    assert result.warnings == []


@pytest.mark.asyncio
async def test_known_transactions_skipped():
    seen: list[str] = []
    async with _client(_handler(ROUTES, seen)) as client:
        txs = await fetch_script_transactions(
            client, SCRIPT, "test-project", network="preprod", known={H1}
        )

    assert [tx.hash for tx in txs] == [H2]
    assert f"/txs/{H1}" not in seen


@pytest.mark.asyncio
async def test_pagination_and_limit():
    page1 = [{"tx_hash": f"{i:064x}"} for i in range(PAGE_SIZE)]
    page2 = [{"tx_hash": "e" * 64}]

    def handle(request: httpx.Request) -> httpx.Response:
        page = int(request.url.params["page"])
        assert request.url.params["order"] == "asc"
        return httpx.Response(200, json=page1 if page == 1 else page2)

    async with _client(handle) as client:
        source = BlockfrostSource(client, "test-project", "preprod")
        everything = await source.address_transactions(SCRIPT)
        limited = await source.address_transactions(SCRIPT, limit=5)

    assert len(everything) == PAGE_SIZE + 1
    assert everything[-1] == "e" * 64
    assert limited == [row["tx_hash"] for row in page1[:5]]


@pytest.mark.asyncio
async def test_missing_transaction_skipped():
    routes = dict(ROUTES)
    del routes[f"/txs/{H2}"]
    async with _client(_handler(routes)) as client:
        txs = await fetch_script_transactions(client, SCRIPT, "test-project", network="preprod")
    assert [tx.hash for tx in txs] == [H1]


@pytest.mark.asyncio
async def test_new_transactions_seen_past_the_limit():
    listing = [{"tx_hash": f"{i:064x}"} for i in range(3)]

    def handle(request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api/v0")
        if path == f"/addresses/{SCRIPT}/transactions":
            return httpx.Response(200, json=listing)
        tx_hash = path.split("/")[2]
        if path == f"/txs/{tx_hash}":
            return httpx.Response(200, json={"hash": tx_hash, "block_height": 1, "slot": 1})
        if path == f"/txs/{tx_hash}/utxos":
            return httpx.Response(200, json={"hash": tx_hash, "inputs": [], "outputs": []})
        return httpx.Response(200, json=[])

    async with _client(handle) as client:
        first = await fetch_script_transactions(
            client, SCRIPT, "test-project", network="preprod", max_transactions=3
        )
        listing.append({"tx_hash": "e" * 64})
        second = await fetch_script_transactions(
            client, SCRIPT, "test-project", network="preprod",
            known=[tx.hash for tx in first], max_transactions=3,
        )

    assert len(first) == 3
    assert [tx.hash for tx in second] == ["e" * 64]


@pytest.mark.asyncio
async def test_limit_counts_only_unseen_hashes():
    rows = [{"tx_hash": f"{i:064x}"} for i in range(6)]

    async with _client(lambda request: httpx.Response(200, json=rows)) as client:
        source = BlockfrostSource(client, "test-project", "preprod")
        hashes = await source.address_transactions(
            SCRIPT, limit=2, known={rows[0]["tx_hash"], rows[2]["tx_hash"]}
        )

    assert hashes == [rows[1]["tx_hash"], rows[3]["tx_hash"]]


@pytest.mark.asyncio
async def test_redeemer_bytes_not_found_is_warned():
    routes = dict(ROUTES)
    del routes["/scripts/datum/rd1/cbor"]
    async with _client(_handler(routes)) as client:
        txs = await fetch_script_transactions(client, SCRIPT, "test-project", network="preprod")

    assert txs[1].redeemers[0].raw_cbor == b""
    result = run_analysis(txs, script_address=SCRIPT)
    assert result.graph.edges[0].redeemer is None
    assert f"{H2}: redeemer for input 0 has no bytes" in result.warnings


# ── Errors and retries ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_429_then_success():
    calls = {"n": 0}

    def handle(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429, headers={"Retry-After": "0"})
        return httpx.Response(200, json={"ok": True})

    async with _client(handle) as client:
        source = BlockfrostSource(client, "test-project", "preprod")
        assert await source.get("/health") == {"ok": True}
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_429_exhausts_retries():
    def handle(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "0"})

    async with _client(handle) as client:
        source = BlockfrostSource(client, "test-project", "preprod")
        with pytest.raises(RateLimitError):
            await source.get("/health")


@pytest.mark.asyncio
async def test_server_error_raises():
    async with _client(lambda request: httpx.Response(500)) as client:
        source = BlockfrostSource(client, "test-project", "preprod")
        with pytest.raises(DataSourceError, match="500"):
            await source.get("/health")


@pytest.mark.asyncio
async def test_forbidden_raises():
    async with _client(lambda request: httpx.Response(403)) as client:
        source = BlockfrostSource(client, "test-project", "preprod")
        with pytest.raises(DataSourceError, match="project id"):
            await source.get("/health")


@pytest.mark.asyncio
async def test_transport_error_raises():
    def handle(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handle) as client:
        source = BlockfrostSource(client, "test-project", "preprod")
        with pytest.raises(DataSourceError, match="failed"):
            await source.get("/health")


def test_project_id_required():
    with pytest.raises(DataSourceError, match="project id"):
        BlockfrostSource(httpx.AsyncClient(), "", "mainnet")


def test_base_url():
    assert base_url("preprod") == BASE
    with pytest.raises(DataSourceError, match="Unknown network"):
        base_url("testnet")


# ── Parsing ───────────────────────────────────────────────────────────────────


def test_inputs_sorted_into_ledger_order():
    utxos = {
        "inputs": [
            {"tx_hash": "bb", "output_index": 0, "address": SCRIPT},
            {"tx_hash": "aa", "output_index": 2, "address": SCRIPT},
            {"tx_hash": "aa", "output_index": 1, "address": SCRIPT},
        ],
        "outputs": [],
    }
    tx = parse_transaction({"hash": "tx", "block_height": 1, "slot": 2}, utxos, [])
    assert [(i.tx_hash, i.output_index) for i in tx.inputs] == [("aa", 1), ("aa", 2), ("bb", 0)]


def test_unconfirmed_header_defaults():
    tx = parse_transaction({"hash": "tx", "block_height": None, "slot": None}, {"outputs": []}, [])
    assert tx.block == 0
    assert tx.slot == 0


# ── Rate limiter ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_rate_limiter_waits_when_bucket_empty():
    limiter = RateLimiter(rate=20.0, burst=2, max_in_flight=5)
    start = time.monotonic()
    for _ in range(4):
        async with limiter:
            pass
    assert time.monotonic() - start >= 0.08


@pytest.mark.asyncio
async def test_rate_limiter_caps_in_flight():
    limiter = RateLimiter(rate=1000.0, burst=100, max_in_flight=2)
    active = 0
    peak = 0

    async def job():
        nonlocal active, peak
        async with limiter:
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

    await asyncio.gather(*(job() for _ in range(6)))
    assert peak == 2


@pytest.mark.asyncio
async def test_penalize_pauses_requests():
    limiter = RateLimiter(rate=1000.0, burst=100)
    limiter.penalize(0.05)
    start = time.monotonic()
    async with limiter:
        pass
    assert time.monotonic() - start >= 0.04


def test_rate_must_be_positive():
    with pytest.raises(ValueError):
        RateLimiter(rate=0)


# ── Live API ──────────────────────────────────────────────────────────────────


@pytest.mark.integration
@pytest.mark.asyncio
async def test_live_preprod_fetch():
    project_id = os.environ.get("BLOCKFROST_PROJECT_ID")
    address = os.environ.get("EUTXO_TEST_ADDRESS")
    if not project_id or not address:
        pytest.skip("needs BLOCKFROST_PROJECT_ID and EUTXO_TEST_ADDRESS")
    async with httpx.AsyncClient(timeout=15.0) as client:
        txs = await fetch_script_transactions(
            client, address, project_id, network="preprod", max_transactions=5
        )
    assert len(txs) <= 5
    assert all(tx.hash for tx in txs)
