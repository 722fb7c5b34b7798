"""Across protocol bridge adapter.

Quotes and fill status come from the Across HTTP API. Deposits go through
the origin spoke pool's `depositV3`.
"""

import logging
import time
from typing import Optional

import httpx

from rebalancer.bridges.assets import (
    find_asset,
    find_matching_destination_asset,
    is_wrapped_native,
)
from rebalancer.bridges.base import (
    BridgeAdapter,
    MemoizedTransaction,
    SupportedBridge,
    TransactionMemo,
    TransactionReceipt,
    TransactionRequest,
)
from rebalancer.bridges.evm import (
    WETH_DEPOSIT_SELECTOR,
    ZERO_ADDRESS,
    JsonRpcClient,
    checksum,
    decode_data,
    encode_approve,
    encode_call,
    event_topic,
)
from rebalancer.config import RebalanceConfig, RouteConfig
from rebalancer.errors import BuildFailedError, CompletionCheckError, QuoteUnavailableError

logger = logging.getLogger(__name__)

DEPOSIT_V3_SIGNATURE = (
    "depositV3(address,address,address,address,uint256,uint256,uint256,address,uint32,uint32,uint32,bytes)"
)
DEPOSIT_V3_TYPES = [
    "address", "address", "address", "address", "uint256", "uint256",
    "uint256", "address", "uint32", "uint32", "uint32", "bytes",
]

# depositId is the second indexed argument (topics[2]) on both event versions
V3_FUNDS_DEPOSITED_TOPIC = event_topic(
    "V3FundsDeposited(address,address,uint256,uint256,uint256,uint32,uint32,uint32,uint32,address,address,address,bytes)"
)
FUNDS_DEPOSITED_TOPIC = event_topic(
    "FundsDeposited(bytes32,bytes32,uint256,uint256,uint256,uint256,uint32,uint32,uint32,bytes32,bytes32,bytes32,bytes)"
)
DEPOSIT_TOPICS = {V3_FUNDS_DEPOSITED_TOPIC, FUNDS_DEPOSITED_TOPIC}

# WETH9 Withdrawal(address indexed src, uint256 wad)
WETH_WITHDRAWAL_TOPIC = event_topic("Withdrawal(address,uint256)")


class AcrossBridgeAdapter(BridgeAdapter):
    """Across intents bridge."""

    def __init__(self, url: str, config: RebalanceConfig, timeout: float = 30.0):
        self.url = url.rstrip("/")
        self.config = config
        self.timeout = timeout

    def type(self) -> SupportedBridge:
        return SupportedBridge.ACROSS

    async def get_received_amount(self, amount: int, route: RouteConfig) -> int:
        try:
            fees = await self._get_suggested_fees(route, amount)
        except (httpx.HTTPError, ValueError) as e:
            raise QuoteUnavailableError(f"Across fee lookup failed: {e}") from e

        if fees.get("isAmountTooLow"):
            raise QuoteUnavailableError("Amount is too low for Across")

        total_fees = int(fees["totalRelayFee"]["total"]) + int(fees["lpFee"]["total"])
        return amount - total_fees

    async def send(
        self, sender: str, recipient: str, amount: int, route: RouteConfig
    ) -> list[MemoizedTransaction]:
        try:
            fees = await self._get_suggested_fees(route, amount)
        except (httpx.HTTPError, ValueError) as e:
            raise BuildFailedError(f"Across fee lookup failed: {e}") from e

        if fees.get("isAmountTooLow"):
            raise BuildFailedError("Amount is too low for bridging via Across")

        output_token = find_matching_destination_asset(
            self.config, route.asset, route.origin, route.destination
        )
        if output_token is None:
            raise BuildFailedError("Could not find matching destination asset")

        spoke_pool = fees["spokePoolAddress"]
        total_fees = int(fees["totalRelayFee"]["total"]) + int(fees["lpFee"]["total"])
        output_amount = int(fees.get("outputAmount") or amount - total_fees)
        quote_timestamp = int(fees.get("timestamp") or time.time())
        fill_deadline = int(fees.get("fillDeadline") or quote_timestamp + 6 * 3600)
        exclusivity_deadline = int(fees.get("exclusivityDeadline") or 0)
        exclusive_relayer = fees.get("exclusiveRelayer") or ZERO_ADDRESS

        transactions: list[MemoizedTransaction] = []

        chain = self.config.chain(route.origin)
        if chain is None or not chain.providers:
            raise BuildFailedError(f"No providers for origin chain {route.origin}")
        try:
            allowance = await JsonRpcClient(chain.providers, self.timeout).get_allowance(
                route.asset, sender, spoke_pool
            )
        except RuntimeError as e:
            raise BuildFailedError(f"Allowance lookup failed: {e}") from e

        if allowance < amount:
            transactions.append(
                MemoizedTransaction(
                    memo=TransactionMemo.APPROVAL,
                    transaction=TransactionRequest(
                        to=route.asset, data=encode_approve(spoke_pool, amount)
                    ),
                )
            )

        data = encode_call(
            DEPOSIT_V3_SIGNATURE,
            DEPOSIT_V3_TYPES,
            [
                checksum(sender),
                checksum(recipient),
                checksum(route.asset),
                checksum(output_token.address),
                amount,
                output_amount,
                route.destination,
                checksum(exclusive_relayer),
                quote_timestamp,
                fill_deadline,
                exclusivity_deadline,
                b"",
            ],
        )
        transactions.append(
            MemoizedTransaction(
                memo=TransactionMemo.REBALANCE,
                transaction=TransactionRequest(to=spoke_pool, data=data),
            )
        )
        return transactions

    async def ready_on_destination(
        self, amount: int, route: RouteConfig, origin_receipt: TransactionReceipt
    ) -> bool:
        try:
            status = await self._get_deposit_status(route, origin_receipt)
        except Exception as e:
            logger.error(
                f"Across status check failed for {origin_receipt.transaction_hash} "
                f"on {route.label}: {e}"
            )
            return False

        if status is None:
            return False

        is_ready = status.get("status") == "filled"
        logger.debug(f"Across deposit {status.get('depositId')} ready={is_ready}")
        return is_ready

    async def destination_callback(
        self, route: RouteConfig, origin_receipt: TransactionReceipt
    ) -> Optional[MemoizedTransaction]:
        """Wrap native ETH into WETH when the fill unwrapped it for us."""
        origin_asset = find_asset(self.config, route.origin, route.asset)
        if not is_wrapped_native(origin_asset):
            return None

        destination_weth = find_matching_destination_asset(
            self.config, route.asset, route.origin, route.destination
        )
        if destination_weth is None:
            raise CompletionCheckError("Failed to find destination WETH")

        try:
            status = await self._get_deposit_status(route, origin_receipt)
        except (httpx.HTTPError, ValueError) as e:
            raise CompletionCheckError(f"Across status lookup failed: {e}") from e
        if not status or status.get("status") != "filled" or not status.get("fillTx"):
            raise CompletionCheckError(
                f"Deposit {status.get('depositId') if status else None} is not yet filled"
            )

        chain = self.config.chain(route.destination)
        if chain is None or not chain.providers:
            return None
        try:
            fill_receipt = await JsonRpcClient(chain.providers, self.timeout).get_transaction_receipt(
                status["fillTx"]
            )
        except RuntimeError as e:
            raise CompletionCheckError(f"Fill receipt lookup failed: {e}") from e
        if fill_receipt is None:
            raise CompletionCheckError(f"Fill receipt {status['fillTx']} not found")

        unwrapped = 0
        for log in fill_receipt.logs:
            if (
                log.topics
                and log.topics[0] == WETH_WITHDRAWAL_TOPIC
                and log.address.lower() == destination_weth.address.lower()
            ):
                unwrapped += decode_data(["uint256"], log.data)[0]

        if not unwrapped:
            return None

        logger.info(f"Fill {status['fillTx']} delivered {unwrapped} native, wrapping")
        return MemoizedTransaction(
            memo=TransactionMemo.WRAP,
            transaction=TransactionRequest(
                to=destination_weth.address, data=WETH_DEPOSIT_SELECTOR, value=unwrapped
            ),
        )

    # ======================
    # Helpers
    # ======================

    @staticmethod
    def extract_deposit_id(receipt: TransactionReceipt) -> Optional[int]:
        for log in receipt.logs:
            if log.topics and log.topics[0] in DEPOSIT_TOPICS and len(log.topics) > 2:
                return int(log.topics[2], 16)
        return None

    async def _get_suggested_fees(self, route: RouteConfig, amount: int) -> dict:
        output_token = find_matching_destination_asset(
            self.config, route.asset, route.origin, route.destination
        )
        if output_token is None:
            raise ValueError("Could not find matching destination asset")

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(
                f"{self.url}/suggested-fees",
                params={
                    "inputToken": route.asset,
                    "outputToken": output_token.address,
                    "originChainId": route.origin,
                    "destinationChainId": route.destination,
                    "amount": str(amount),
                },
            )
            response.raise_for_status()
            return response.json()

    async def _get_deposit_status(
        self, route: RouteConfig, receipt: TransactionReceipt
    ) -> Optional[dict]:
        deposit_id = self.extract_deposit_id(receipt)
        if deposit_id is None:
            logger.warning(f"No deposit id found in receipt {receipt.transaction_hash}")
            return None

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(
                f"{self.url}/deposit/status",
                params={"originChainId": route.origin, "depositId": deposit_id},
            )
            response.raise_for_status()
            data = response.json()

        data["depositId"] = deposit_id
        return data
