"""Binance deposit/withdraw rail.

Funds are deposited to a Binance address on the origin chain, then withdrawn
to the recipient on the destination chain. The second leg is driven by
`ready_on_destination` as a resumable state machine:

    DEPOSIT_PENDING -> WITHDRAWAL_REQUIRED -> WITHDRAWAL_PENDING
        -> WITHDRAWAL_COMPLETED -> CONFIRMED
    (WITHDRAWAL_FAILED when Binance cancels, rejects or fails it)

The withdrawal order id is deterministic per origin transaction and is written
to the ledger before the withdrawal request goes out, so a restart resumes
against the same order instead of creating a second one.
"""

import logging
import time
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Optional

import httpx

from rebalancer.bridges.assets import find_asset, find_matching_destination_asset, is_wrapped_native
from rebalancer.bridges.base import (
    BridgeAdapter,
    MemoizedTransaction,
    SupportedBridge,
    TransactionMemo,
    TransactionReceipt,
    TransactionRequest,
)
from rebalancer.bridges.binance_client import BinanceApiError, BinanceClient
from rebalancer.bridges.evm import (
    WETH_DEPOSIT_SELECTOR,
    ZERO_ADDRESS,
    JsonRpcClient,
    encode_transfer,
    encode_weth_withdraw,
)
from rebalancer.config import AssetConfig, RebalanceConfig, RouteConfig
from rebalancer.errors import BuildFailedError, CompletionCheckError, QuoteUnavailableError
from rebalancer.ledger.models import TransferRecord
from rebalancer.ledger.store import RebalanceLedger

logger = logging.getLogger(__name__)

BINANCE_NETWORK_TO_CHAIN_ID = {
    "ETH": 1,
    "ARBITRUM": 42161,
    "OPTIMISM": 10,
    "MATIC": 137,
    "BSC": 56,
    "BASE": 8453,
    "SCROLL": 534352,
    "ZKSYNCERA": 324,
    "AVAXC": 43114,
    "RON": 2020,
    "SONIC": 146,
}
CHAIN_ID_TO_BINANCE_NETWORK = {v: k for k, v in BINANCE_NETWORK_TO_CHAIN_ID.items()}

STABLECOINS = {"USDT", "USDC", "FDUSD"}

ASSET_CONFIG_TTL = 300


class WithdrawalStatus:
    EMAIL_SENT = 0
    CANCELLED = 1
    AWAITING_APPROVAL = 2
    REJECTED = 3
    PROCESSING = 4
    FAILURE = 5
    COMPLETED = 6


class DepositStatus:
    PENDING = 0
    SUCCESS = 1


FAILED_WITHDRAWAL_STATUSES = {
    WithdrawalStatus.CANCELLED,
    WithdrawalStatus.REJECTED,
    WithdrawalStatus.FAILURE,
}


class WithdrawalState(str, Enum):
    """Progress of the Binance leg of one transfer."""

    DEPOSIT_PENDING = "deposit_pending"
    WITHDRAWAL_REQUIRED = "withdrawal_required"
    WITHDRAWAL_PENDING = "withdrawal_pending"
    WITHDRAWAL_COMPLETED = "withdrawal_completed"
    WITHDRAWAL_FAILED = "withdrawal_failed"
    CONFIRMED = "confirmed"


def generate_withdraw_order_id(route: RouteConfig, transaction_hash: str) -> str:
    """Deterministic Binance withdrawOrderId for an origin transaction."""
    return f"mark-{transaction_hash[2:10]}-{route.origin}-{route.destination}-{route.asset[2:8]}"


def to_native(amount: str, decimals: int) -> int:
    return int(Decimal(amount) * (Decimal(10) ** decimals))


def to_decimal_string(amount: int, decimals: int, step: Optional[str] = None) -> str:
    """Native units to a Binance amount string, rounded down to `step`."""
    value = Decimal(amount) / (Decimal(10) ** decimals)
    if step and Decimal(step) > 0:
        value = (value / Decimal(step)).to_integral_value(rounding=ROUND_DOWN) * Decimal(step)
    return format(value.normalize(), "f")


def binance_coin(asset: AssetConfig) -> str:
    symbol = asset.symbol.upper()
    return "ETH" if symbol == "WETH" else symbol


class BinanceBridgeAdapter(BridgeAdapter):
    """Custodial rail through a Binance account."""

    def __init__(
        self,
        client: BinanceClient,
        config: RebalanceConfig,
        ledger: RebalanceLedger,
        timeout: float = 30.0,
    ):
        self.client = client
        self.config = config
        self.ledger = ledger
        self.timeout = timeout
        self._asset_config: list[dict] = []
        self._asset_config_at = 0.0

    def type(self) -> SupportedBridge:
        return SupportedBridge.BINANCE

    # ======================
    # Asset mapping
    # ======================

    async def _network_config(self, coin: str, chain_id: int) -> dict:
        """The Binance network entry for a coin on a chain."""
        network = CHAIN_ID_TO_BINANCE_NETWORK.get(chain_id)
        if network is None:
            raise ValueError(f"Chain {chain_id} has no Binance network")

        if not self._asset_config or time.monotonic() - self._asset_config_at > ASSET_CONFIG_TTL:
            self._asset_config = await self.client.get_asset_config()
            self._asset_config_at = time.monotonic()

        for entry in self._asset_config:
            if entry.get("coin") != coin:
                continue
            for net in entry.get("networkList", []):
                if net.get("network") == network:
                    return net
        raise ValueError(f"{coin} is not available on Binance network {network}")

    def _origin_asset(self, route: RouteConfig) -> AssetConfig:
        asset = find_asset(self.config, route.origin, route.asset)
        if asset is None:
            raise ValueError(f"Asset {route.asset} not configured on chain {route.origin}")
        return asset

    # ======================
    # Quote and send
    # ======================

    async def get_received_amount(self, amount: int, route: RouteConfig) -> int:
        try:
            asset = self._origin_asset(route)
            coin = binance_coin(asset)
            origin_net = await self._network_config(coin, route.origin)
            destination_net = await self._network_config(coin, route.destination)
        except (ValueError, httpx.HTTPError, BinanceApiError) as e:
            raise QuoteUnavailableError(f"Binance mapping failed: {e}") from e

        minimum = to_native(origin_net.get("withdrawMin", "0"), asset.decimals)
        if amount < minimum:
            raise QuoteUnavailableError("Amount is too low for Binance withdrawal")

        fee = to_native(destination_net.get("withdrawFee", "0"), asset.decimals)
        if amount <= fee:
            raise QuoteUnavailableError("Amount is too small to cover withdrawal fees")
        return amount - fee

    async def send(
        self, sender: str, recipient: str, amount: int, route: RouteConfig
    ) -> list[MemoizedTransaction]:
        if not await self.client.is_system_operational():
            raise BuildFailedError("Binance system is not operational")

        try:
            asset = self._origin_asset(route)
            coin = binance_coin(asset)
            origin_net = await self._network_config(coin, route.origin)
            if not origin_net.get("depositEnable", True):
                raise BuildFailedError(f"Deposits of {coin} disabled on {origin_net.get('network')}")

            minimum = to_native(origin_net.get("withdrawMin", "0"), asset.decimals)
            if amount < minimum:
                raise BuildFailedError(
                    f"Amount {amount} does not meet minimum withdrawal requirement of {minimum}"
                )

            await self._check_quota(coin, amount, asset.decimals)
            deposit = await self.client.get_deposit_address(coin, origin_net["network"])
        except (ValueError, httpx.HTTPError, BinanceApiError) as e:
            raise BuildFailedError(f"Failed to prepare Binance deposit: {e}") from e

        deposit_address = deposit["address"]
        logger.info(f"Binance deposit address for {coin}/{origin_net['network']}: {deposit_address}")

        transactions: list[MemoizedTransaction] = []
        if is_wrapped_native(asset):
            # Binance credits native ETH, so unwrap first
            transactions.append(
                MemoizedTransaction(
                    memo=TransactionMemo.UNWRAP,
                    transaction=TransactionRequest(to=route.asset, data=encode_weth_withdraw(amount)),
                )
            )
            transactions.append(
                MemoizedTransaction(
                    memo=TransactionMemo.REBALANCE,
                    transaction=TransactionRequest(to=deposit_address, value=amount),
                )
            )
        elif route.asset.lower() == ZERO_ADDRESS:
            transactions.append(
                MemoizedTransaction(
                    memo=TransactionMemo.REBALANCE,
                    transaction=TransactionRequest(to=deposit_address, value=amount),
                )
            )
        else:
            transactions.append(
                MemoizedTransaction(
                    memo=TransactionMemo.REBALANCE,
                    transaction=TransactionRequest(
                        to=route.asset, data=encode_transfer(deposit_address, amount)
                    ),
                )
            )
        return transactions

    async def _check_quota(self, coin: str, amount: int, decimals: int) -> None:
        quota = await self.client.get_withdraw_quota()
        remaining = Decimal(quota["wdQuota"]) - Decimal(quota["usedWdQuota"])

        value = Decimal(amount) / (Decimal(10) ** decimals)
        if coin not in STABLECOINS:
            value *= Decimal(await self.client.get_price(f"{coin}USDT"))

        if value > remaining:
            raise BuildFailedError(f"Withdrawal quota exceeded: need {value} USD, {remaining} left")

    # ======================
    # Withdrawal leg
    # ======================

    async def ready_on_destination(
        self, amount: int, route: RouteConfig, origin_receipt: TransactionReceipt
    ) -> bool:
        try:
            state = await self.advance(route, origin_receipt)
        except Exception as e:
            logger.error(
                f"Binance withdrawal check failed for {origin_receipt.transaction_hash} "
                f"on {route.label}: {e}"
            )
            return False

        logger.debug(f"Binance transfer {origin_receipt.transaction_hash} is {state.value}")
        if state == WithdrawalState.WITHDRAWAL_FAILED:
            logger.error(
                f"Binance withdrawal for {origin_receipt.transaction_hash} failed; manual action needed"
            )
        return state == WithdrawalState.CONFIRMED

    async def advance(self, route: RouteConfig, origin_receipt: TransactionReceipt) -> WithdrawalState:
        """Drive the withdrawal leg one step and return the resulting state."""
        record = await self.ledger.get_rebalance_by_transaction(origin_receipt.transaction_hash)
        if record is None or not record.recipient:
            raise CompletionCheckError(
                f"No recipient recorded for transaction {origin_receipt.transaction_hash}"
            )

        asset = self._origin_asset(route)
        coin = binance_coin(asset)

        order_id = await self.ledger.get_withdraw_id(record.id)
        if order_id is None:
            if not await self._deposit_confirmed(coin, origin_receipt.transaction_hash):
                return WithdrawalState.DEPOSIT_PENDING
            order_id = generate_withdraw_order_id(route, origin_receipt.transaction_hash)

        withdrawal = await self._find_withdrawal(coin, order_id)
        if withdrawal is None:
            # WITHDRAWAL_REQUIRED: persist the order id before asking Binance
            await self.ledger.add_withdraw_id(record.id, order_id)
            await self._initiate_withdrawal(route, record, asset, order_id)
            return WithdrawalState.WITHDRAWAL_PENDING

        return await self._withdrawal_state(route, withdrawal)

    async def _deposit_confirmed(self, coin: str, transaction_hash: str) -> bool:
        deposits = await self.client.get_deposit_history(coin, DepositStatus.SUCCESS)
        return any(d.get("txId", "").lower() == transaction_hash.lower() for d in deposits)

    async def _find_withdrawal(self, coin: str, order_id: str) -> Optional[dict]:
        withdrawals = await self.client.get_withdraw_history(coin, order_id)
        for withdrawal in withdrawals:
            if withdrawal.get("withdrawOrderId", order_id) == order_id:
                return withdrawal
        return None

    async def _initiate_withdrawal(
        self, route: RouteConfig, record: TransferRecord, asset: AssetConfig, order_id: str
    ) -> None:
        if not await self.client.is_system_operational():
            raise CompletionCheckError("Binance system is not operational - cannot initiate withdrawal")

        coin = binance_coin(asset)
        destination_net = await self._network_config(coin, route.destination)
        if not destination_net.get("withdrawEnable", True):
            raise CompletionCheckError(f"Withdrawals of {coin} disabled on {destination_net['network']}")

        fee = to_native(destination_net.get("withdrawFee", "0"), asset.decimals)
        net_amount = record.amount - fee
        if net_amount <= 0:
            raise CompletionCheckError("Amount is too small to cover withdrawal fees")

        result = await self.client.withdraw(
            coin=coin,
            network=destination_net["network"],
            address=record.recipient,
            amount=to_decimal_string(net_amount, asset.decimals, destination_net.get("withdrawIntegerMultiple")),
            withdraw_order_id=order_id,
        )
        logger.info(f"Binance withdrawal {result.get('id')} initiated for {record.id} ({order_id})")

    async def _withdrawal_state(self, route: RouteConfig, withdrawal: dict) -> WithdrawalState:
        status = withdrawal.get("status")
        if status in FAILED_WITHDRAWAL_STATUSES:
            return WithdrawalState.WITHDRAWAL_FAILED
        if status != WithdrawalStatus.COMPLETED or not withdrawal.get("txId"):
            return WithdrawalState.WITHDRAWAL_PENDING

        chain = self.config.chain(route.destination)
        if chain is None or not chain.providers:
            logger.warning(f"No provider for chain {route.destination}, cannot confirm withdrawal")
            return WithdrawalState.WITHDRAWAL_COMPLETED

        receipt = await JsonRpcClient(chain.providers, self.timeout).get_transaction_receipt(
            withdrawal["txId"]
        )
        if receipt is not None and receipt.succeeded:
            return WithdrawalState.CONFIRMED
        return WithdrawalState.WITHDRAWAL_COMPLETED

    async def destination_callback(
        self, route: RouteConfig, origin_receipt: TransactionReceipt
    ) -> Optional[MemoizedTransaction]:
        """Wrap withdrawn native ETH when the route moves WETH."""
        asset = find_asset(self.config, route.origin, route.asset)
        if not is_wrapped_native(asset):
            return None

        destination_weth = find_matching_destination_asset(
            self.config, route.asset, route.origin, route.destination
        )
        if destination_weth is None or not is_wrapped_native(destination_weth):
            return None

        record = await self.ledger.get_rebalance_by_transaction(origin_receipt.transaction_hash)
        if record is None:
            raise CompletionCheckError(f"No ledger record for {origin_receipt.transaction_hash}")
        order_id = await self.ledger.get_withdraw_id(record.id)
        if order_id is None:
            raise CompletionCheckError(f"No withdrawal recorded for {record.id}")

        try:
            withdrawal = await self._find_withdrawal(binance_coin(asset), order_id)
        except (httpx.HTTPError, BinanceApiError) as e:
            raise CompletionCheckError(f"Withdrawal lookup failed: {e}") from e
        if withdrawal is None or withdrawal.get("status") != WithdrawalStatus.COMPLETED:
            raise CompletionCheckError(f"Withdrawal {order_id} is not completed")

        amount = to_native(withdrawal["amount"], destination_weth.decimals)
        return MemoizedTransaction(
            memo=TransactionMemo.WRAP,
            transaction=TransactionRequest(
                to=destination_weth.address, data=WETH_DEPOSIT_SELECTOR, value=amount
            ),
        )
