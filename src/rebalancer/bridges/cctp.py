"""Circle CCTP burn-and-mint adapter (v1 and v2).

USDC is burned on the origin chain via `depositForBurn`; once Circle's
attestation service signs the message, `receiveMessage` mints on the
destination.
"""

import logging
from typing import Optional

import httpx
from web3 import Web3

from rebalancer.bridges.base import (
    BridgeAdapter,
    MemoizedTransaction,
    SupportedBridge,
    TransactionMemo,
    TransactionReceipt,
    TransactionRequest,
)
from rebalancer.bridges.evm import (
    JsonRpcClient,
    address_to_bytes32,
    checksum,
    decode_data,
    encode_approve,
    encode_call,
)
from rebalancer.config import RebalanceConfig, RouteConfig
from rebalancer.errors import BuildFailedError, CompletionCheckError, QuoteUnavailableError

logger = logging.getLogger(__name__)

IRIS_API_URL = "https://iris-api.circle.com"

# MessageSent(bytes message)
MESSAGE_SENT_TOPIC = "0x8c5261668696ce22758910d05bab8f186d6eb247ceac2af2e82c7dc17669b036"

# Chain ID -> Circle domain
CIRCLE_DOMAINS = {
    1: 0,  # Ethereum
    43114: 1,  # Avalanche
    10: 2,  # Optimism
    42161: 3,  # Arbitrum
    8453: 6,  # Base
    137: 7,  # Polygon
    130: 10,  # Unichain
}

USDC_CONTRACTS = {
    1: "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
    43114: "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E",
    10: "0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85",
    42161: "0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
    8453: "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    137: "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
    130: "0x078D782b760474a361dDA0AF3839290b0EF57AD6",
}

TOKEN_MESSENGERS_V1 = {
    43114: "0x6B25532e1060CE10cc3B0A99e5683b91BFDe6982",
    1: "0xBd3fa81B58Ba92a82136038B25aDec7066af3155",
    10: "0x2B4069517957735bE00ceE0fadAE88a26365528f",
    42161: "0x19330d10D9Cc8751218eaf51E8885D058642E08A",
    8453: "0x1682Ae6375C4E4A97e4B583BC394c861A46D8962",
    137: "0x9daF8c91AEFAE50b9c0E69629D3F6Ca40cA3B3FE",
    130: "0x4e744b28E787c3aD0e810eD65A24461D4ac5a762",
}

MESSAGE_TRANSMITTERS_V1 = {
    43114: "0x8186359aF5F57FbB40c6b14A588d2A59C0C29880",
    1: "0x0a992d191DEeC32aFe36203Ad87D7d289a738F81",
    10: "0x4D41f22c5a0e5c74090899E5a8Fb597a8842b3e8",
    42161: "0xC30362313FBBA5cf9163F0bb16a0e01f01A896ca",
    8453: "0xAD09780d193884d503182aD4588450C416D6F9D4",
    137: "0xF3be9355363857F3e001be68856A2f96b4C39Ba9",
    130: "0x353bE9E2E38AB1D19104534e4edC21c643Df86f4",
}

# v2 contracts share one address on every supported chain
TOKEN_MESSENGER_V2 = "0x28b5a0e9C621a5BadaA536219b3a228C8168cf5d"
MESSAGE_TRANSMITTER_V2 = "0x81D40F21F12A8F0E3252Bccb954D722d4c464B64"

STANDARD_FINALITY_THRESHOLD = 2000
FAST_FINALITY_THRESHOLD = 1000

EMPTY_BYTES32 = b"\x00" * 32


class CctpBridgeAdapter(BridgeAdapter):
    """Circle CCTP adapter. `version` is "v1" or "v2"."""

    def __init__(
        self,
        version: str,
        config: RebalanceConfig,
        url: str = IRIS_API_URL,
        timeout: float = 30.0,
        fast_transfer: bool = False,
    ):
        if version not in ("v1", "v2"):
            raise ValueError(f"Unknown CCTP version: {version}")
        self.version = version
        self.config = config
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.fast_transfer = fast_transfer

    def type(self) -> SupportedBridge:
        return SupportedBridge.CCTP_V1 if self.version == "v1" else SupportedBridge.CCTP_V2

    def _token_messenger(self, chain_id: int) -> Optional[str]:
        if self.version == "v1":
            return TOKEN_MESSENGERS_V1.get(chain_id)
        return TOKEN_MESSENGER_V2 if chain_id in CIRCLE_DOMAINS else None

    def _message_transmitter(self, chain_id: int) -> Optional[str]:
        if self.version == "v1":
            return MESSAGE_TRANSMITTERS_V1.get(chain_id)
        return MESSAGE_TRANSMITTER_V2 if chain_id in CIRCLE_DOMAINS else None

    def _is_supported(self, route: RouteConfig) -> bool:
        usdc = USDC_CONTRACTS.get(route.origin)
        return (
            usdc is not None
            and usdc.lower() == route.asset.lower()
            and route.destination in CIRCLE_DOMAINS
        )

    async def get_received_amount(self, amount: int, route: RouteConfig) -> int:
        """Standard transfers are fee-free for supported USDC routes."""
        if not self._is_supported(route):
            raise QuoteUnavailableError(f"CCTP does not support {route.label}")
        if self.version == "v2" and self.fast_transfer:
            return amount - self._fast_max_fee(amount)
        return amount

    @staticmethod
    def _fast_max_fee(amount: int) -> int:
        # 1 bps
        return amount * 100 // 1_000_000

    async def send(
        self, sender: str, recipient: str, amount: int, route: RouteConfig
    ) -> list[MemoizedTransaction]:
        if not self._is_supported(route):
            raise BuildFailedError(f"Asset {route.asset} is not supported by CCTP on {route.label}")

        token_messenger = self._token_messenger(route.origin)
        if token_messenger is None:
            raise BuildFailedError(f"Token messenger not found for chain {route.origin}")
        destination_domain = CIRCLE_DOMAINS[route.destination]
        usdc = USDC_CONTRACTS[route.origin]

        chain = self.config.chain(route.origin)
        if chain is None or not chain.providers:
            raise BuildFailedError(f"No providers found for origin chain {route.origin}")
        try:
            allowance = await JsonRpcClient(chain.providers, self.timeout).get_allowance(
                usdc, sender, token_messenger
            )
        except RuntimeError as e:
            raise BuildFailedError(f"Allowance lookup failed: {e}") from e

        transactions: list[MemoizedTransaction] = []
        if allowance < amount:
            transactions.append(
                MemoizedTransaction(
                    memo=TransactionMemo.APPROVAL,
                    transaction=TransactionRequest(to=usdc, data=encode_approve(token_messenger, amount)),
                )
            )

        mint_recipient = address_to_bytes32(recipient)
        if self.version == "v1":
            data = encode_call(
                "depositForBurn(uint256,uint32,bytes32,address)",
                ["uint256", "uint32", "bytes32", "address"],
                [amount, destination_domain, mint_recipient, checksum(usdc)],
            )
        else:
            max_fee = self._fast_max_fee(amount) if self.fast_transfer else 0
            threshold = FAST_FINALITY_THRESHOLD if self.fast_transfer else STANDARD_FINALITY_THRESHOLD
            data = encode_call(
                "depositForBurn(uint256,uint32,bytes32,address,bytes32,uint256,uint32)",
                ["uint256", "uint32", "bytes32", "address", "bytes32", "uint256", "uint32"],
                [amount, destination_domain, mint_recipient, checksum(usdc), EMPTY_BYTES32, max_fee, threshold],
            )

        transactions.append(
            MemoizedTransaction(
                memo=TransactionMemo.REBALANCE,
                transaction=TransactionRequest(to=token_messenger, data=data),
            )
        )
        return transactions

    async def ready_on_destination(
        self, amount: int, route: RouteConfig, origin_receipt: TransactionReceipt
    ) -> bool:
        try:
            attestation = await self._fetch_attestation(route, origin_receipt)
        except Exception as e:
            logger.error(
                f"CCTP attestation check failed for {origin_receipt.transaction_hash} "
                f"on {route.label}: {e}"
            )
            return False
        return attestation is not None

    async def destination_callback(
        self, route: RouteConfig, origin_receipt: TransactionReceipt
    ) -> Optional[MemoizedTransaction]:
        try:
            attestation = await self._fetch_attestation(route, origin_receipt)
        except (httpx.HTTPError, ValueError, KeyError) as e:
            raise CompletionCheckError(f"Attestation fetch failed: {e}") from e
        if attestation is None:
            raise CompletionCheckError("Attestation not complete")

        message, signature = attestation
        transmitter = self._message_transmitter(route.destination)
        if transmitter is None:
            raise CompletionCheckError(f"Message transmitter not found for chain {route.destination}")

        return MemoizedTransaction(
            memo=TransactionMemo.MINT,
            transaction=TransactionRequest(
                to=transmitter,
                data=encode_call(
                    "receiveMessage(bytes,bytes)",
                    ["bytes", "bytes"],
                    [_hex_to_bytes(message), _hex_to_bytes(signature)],
                ),
            ),
        )

    # ======================
    # Attestations
    # ======================

    @staticmethod
    def extract_message(receipt: TransactionReceipt) -> Optional[str]:
        """MessageSent payload from the burn receipt (hex)."""
        for log in receipt.logs:
            if log.topics and log.topics[0] == MESSAGE_SENT_TOPIC:
                return "0x" + decode_data(["bytes"], log.data)[0].hex()
        return None

    async def _fetch_attestation(
        self, route: RouteConfig, receipt: TransactionReceipt
    ) -> Optional[tuple[str, str]]:
        """Return (message, attestation) once complete, else None."""
        if self.version == "v1":
            message = self.extract_message(receipt)
            if message is None:
                raise CompletionCheckError("MessageSent event not found")
            message_hash = "0x" + bytes(Web3.keccak(hexstr=message)).hex()
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.url}/attestations/{message_hash}")
            if response.status_code == 404:
                return None
            response.raise_for_status()
            data = response.json()
            if data.get("status") != "complete":
                return None
            return message, data["attestation"]

        domain = CIRCLE_DOMAINS.get(route.origin)
        if domain is None:
            raise CompletionCheckError(f"No Circle domain for chain {route.origin}")
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(
                f"{self.url}/v2/messages/{domain}",
                params={"transactionHash": receipt.transaction_hash},
            )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        messages = response.json().get("messages") or []
        if not messages or messages[0].get("status") != "complete":
            return None
        return messages[0]["message"], messages[0]["attestation"]


def _hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)
