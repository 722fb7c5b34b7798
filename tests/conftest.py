"""Pytest configuration and fixtures."""

import os
from typing import Optional

import pytest
import pytest_asyncio
import fakeredis
from fakeredis import aioredis

# Set test environment
os.environ["ENVIRONMENT"] = "mainnet"
os.environ["DEBUG"] = "true"
os.environ["DRY_RUN"] = "true"
os.environ["BINANCE_API_KEY"] = "test-key"
os.environ["BINANCE_API_SECRET"] = "test-secret"

from rebalancer.bridges.base import (
    BridgeAdapter,
    MemoizedTransaction,
    SupportedBridge,
    TransactionMemo,
    TransactionReceipt,
    TransactionRequest,
)
from rebalancer.config import RebalanceConfig
from rebalancer.context import ProcessingContext
from rebalancer.ledger.store import RebalanceLedger

AGENT = "0x1111111111111111111111111111111111111111"

ARB_RPC = "https://arb.rpc.test"
ETH_RPC = "https://eth.rpc.test"

WETH_ARB = "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1"
WETH_ETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
USDC_ARB = "0xaf88d065e77c8cC2239327C5EDb3A432268e5831"
USDC_ETH = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
TOKEN_X = "0x000000000000000000000000000000000000000a"

ONE_ETH = 10**18


def make_config(routes: Optional[list[dict]] = None) -> RebalanceConfig:
    return RebalanceConfig.model_validate(
        {
            "chains": {
                "42161": {
                    "providers": [ARB_RPC],
                    "assets": [
                        {"symbol": "WETH", "address": WETH_ARB, "decimals": 18},
                        {"symbol": "USDC", "address": USDC_ARB, "decimals": 6},
                        {"symbol": "X", "address": TOKEN_X, "decimals": 18},
                    ],
                },
                "1": {
                    "providers": [ETH_RPC],
                    "assets": [
                        {"symbol": "WETH", "address": WETH_ETH, "decimals": 18},
                        {"symbol": "USDC", "address": USDC_ETH, "decimals": 6},
                        {"symbol": "X", "address": TOKEN_X, "decimals": 18},
                    ],
                },
            },
            "routes": routes
            if routes is not None
            else [
                {
                    "origin": 42161,
                    "destination": 1,
                    "asset": TOKEN_X,
                    "maximum": ONE_ETH // 2,
                    "preferences": ["across", "cctpv1"],
                    "slippages": [100, 50],
                }
            ],
        }
    )


class FakeChainService:
    """Records submissions and hands out canned receipts."""

    def __init__(self, fail_on: Optional[set[str]] = None):
        self.submitted: list[tuple[int, TransactionRequest]] = []
        self.receipts: dict[str, TransactionReceipt] = {}
        self.fail_on = fail_on or set()
        self.receipt_errors: set[str] = set()

    def get_address(self) -> dict[int, str]:
        return {42161: AGENT, 1: AGENT}

    async def submit_and_monitor(self, chain_id: int, tx: TransactionRequest) -> TransactionReceipt:
        self.submitted.append((chain_id, tx))
        if tx.to in self.fail_on:
            raise RuntimeError(f"submission to {tx.to} failed")
        tx_hash = "0x" + f"{len(self.submitted):064x}"
        receipt = TransactionReceipt(transaction_hash=tx_hash, status=1, to=tx.to)
        self.receipts[tx_hash] = receipt
        return receipt

    async def get_transaction_receipt(
        self, chain_id: int, tx_hash: str
    ) -> Optional[TransactionReceipt]:
        if tx_hash in self.receipt_errors:
            raise RuntimeError("rpc unavailable")
        return self.receipts.get(tx_hash)


class FakeBalances:
    def __init__(self, balances: Optional[dict[tuple[int, str], int]] = None):
        self.balances = balances or {}
        self.calls: list[tuple[int, str]] = []

    async def get_available_balance_less_earmarks(self, chain_id: int, asset: str) -> int:
        self.calls.append((chain_id, asset))
        return self.balances.get((chain_id, asset.lower()), 0)


class StubAdapter(BridgeAdapter):
    """Adapter double with configurable outcomes and call tracking."""

    def __init__(
        self,
        bridge: SupportedBridge,
        received: Optional[int] = None,
        quote_error: Optional[Exception] = None,
        send_error: Optional[Exception] = None,
        target: str = "0x00000000000000000000000000000000000000bb",
        with_approval: bool = False,
        ready: bool = True,
        callback: Optional[MemoizedTransaction] = None,
        callback_error: Optional[Exception] = None,
    ):
        self.bridge = bridge
        self.received = received
        self.quote_error = quote_error
        self.send_error = send_error
        self.target = target
        self.with_approval = with_approval
        self.ready = ready
        self.callback = callback
        self.callback_error = callback_error
        self.calls: list[str] = []
        self.routes: list = []

    def type(self) -> SupportedBridge:
        return self.bridge

    async def get_received_amount(self, amount, route):
        self.calls.append("quote")
        if self.quote_error:
            raise self.quote_error
        return amount if self.received is None else self.received

    async def send(self, sender, recipient, amount, route):
        self.calls.append("send")
        if self.send_error:
            raise self.send_error
        txs = []
        if self.with_approval:
            txs.append(
                MemoizedTransaction(
                    memo=TransactionMemo.APPROVAL,
                    transaction=TransactionRequest(to=route.asset, data="0x095ea7b3"),
                )
            )
        txs.append(
            MemoizedTransaction(
                memo=TransactionMemo.REBALANCE,
                transaction=TransactionRequest(to=self.target, data="0x01"),
            )
        )
        return txs

    async def ready_on_destination(self, amount, route, origin_receipt):
        self.calls.append("ready")
        self.routes.append(route)
        return self.ready

    async def destination_callback(self, route, origin_receipt):
        self.calls.append("callback")
        self.routes.append(route)
        if self.callback_error:
            raise self.callback_error
        return self.callback


class StubRegistry:
    def __init__(self, *adapters: BridgeAdapter):
        self.adapters = {a.type().value: a for a in adapters}

    def get_adapter(self, bridge: str) -> BridgeAdapter:
        from rebalancer.errors import UnsupportedBridgeError

        if bridge not in self.adapters:
            raise UnsupportedBridgeError(bridge)
        return self.adapters[bridge]


@pytest_asyncio.fixture
async def redis_client():
    """In-memory Redis for testing."""
    client = aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def ledger(redis_client) -> RebalanceLedger:
    return RebalanceLedger(redis_client)


@pytest.fixture
def config() -> RebalanceConfig:
    return make_config()


@pytest.fixture
def chain_service() -> FakeChainService:
    return FakeChainService()


@pytest.fixture
def make_context(ledger, chain_service):
    """Build a ProcessingContext around stub adapters."""

    def _make(config: RebalanceConfig, balances: FakeBalances, *adapters: BridgeAdapter):
        return ProcessingContext(
            config=config,
            ledger=ledger,
            adapters=StubRegistry(*adapters),
            chain_service=chain_service,
            balances=balances,
            quote_timeout=5.0,
            submission_timeout=5.0,
            receipt_timeout=5.0,
            balance_timeout=5.0,
        )

    return _make
