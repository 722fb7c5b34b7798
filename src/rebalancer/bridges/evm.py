"""EVM helpers: calldata encoding and a minimal JSON-RPC client.

Simple ERC20 calls are hand-encoded; anything with dynamic types goes
through eth-abi.
"""

import logging
from typing import Any, Optional

import httpx
from eth_abi import decode, encode
from web3 import Web3

from rebalancer.bridges.base import TransactionReceipt

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Function selectors
APPROVE_SELECTOR = "0x095ea7b3"  # approve(address,uint256)
ALLOWANCE_SELECTOR = "0xdd62ed3e"  # allowance(address,address)
TRANSFER_SELECTOR = "0xa9059cbb"  # transfer(address,uint256)
BALANCE_OF_SELECTOR = "0x70a08231"  # balanceOf(address)
WETH_DEPOSIT_SELECTOR = "0xd0e30db0"  # deposit()
WETH_WITHDRAW_SELECTOR = "0x2e1a7d4d"  # withdraw(uint256)


def selector(signature: str) -> str:
    """4-byte function selector for a signature like `f(uint256)`."""
    return "0x" + bytes(Web3.keccak(text=signature)[:4]).hex()


def event_topic(signature: str) -> str:
    """Topic0 for an event signature."""
    return "0x" + bytes(Web3.keccak(text=signature)).hex()


def _pad_address(address: str) -> str:
    return address.lower().replace("0x", "").zfill(64)


def _pad_uint(value: int) -> str:
    return hex(value)[2:].zfill(64)


def checksum(address: str) -> str:
    return Web3.to_checksum_address(address)


def address_to_bytes32(address: str) -> bytes:
    """Left-pad a 20-byte address into a bytes32 word."""
    return bytes.fromhex(_pad_address(address))


def encode_approve(spender: str, amount: int) -> str:
    return APPROVE_SELECTOR + _pad_address(spender) + _pad_uint(amount)


def encode_allowance(owner: str, spender: str) -> str:
    return ALLOWANCE_SELECTOR + _pad_address(owner) + _pad_address(spender)


def encode_transfer(recipient: str, amount: int) -> str:
    return TRANSFER_SELECTOR + _pad_address(recipient) + _pad_uint(amount)


def encode_balance_of(owner: str) -> str:
    return BALANCE_OF_SELECTOR + _pad_address(owner)


def encode_weth_withdraw(amount: int) -> str:
    return WETH_WITHDRAW_SELECTOR + _pad_uint(amount)


def encode_call(signature: str, types: list[str], args: list[Any]) -> str:
    """Encode a call with eth-abi, e.g. `encode_call("f(uint256)", ["uint256"], [1])`."""
    return selector(signature) + encode(types, args).hex()


def decode_data(types: list[str], data: str) -> tuple:
    """Decode ABI-encoded log or return data."""
    raw = bytes.fromhex(data[2:] if data.startswith("0x") else data)
    return decode(types, raw)


class JsonRpcClient:
    """Read-only JSON-RPC access to one chain through its configured providers."""

    def __init__(self, providers: list[str], timeout: float = 30.0):
        self.providers = providers
        self.timeout = timeout

    async def _request(self, method: str, params: list) -> Any:
        """Call each provider in order until one answers."""
        last_error: Optional[Exception] = None
        for url in self.providers:
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        url,
                        json={"jsonrpc": "2.0", "method": method, "params": params, "id": 1},
                    )
                    response.raise_for_status()
                    payload = response.json()
                    if "error" in payload:
                        raise RuntimeError(f"RPC error: {payload['error']}")
                    return payload.get("result")
            except (httpx.HTTPError, RuntimeError, ValueError) as e:
                logger.warning(f"RPC {method} failed on {url}: {e}")
                last_error = e
        raise RuntimeError(f"All providers failed for {method}: {last_error}")

    async def call(self, to: str, data: str) -> str:
        return await self._request("eth_call", [{"to": to, "data": data}, "latest"])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        result = await self._request("eth_getTransactionReceipt", [tx_hash])
        if not result:
            return None
        return TransactionReceipt.from_rpc(result)

    async def get_balance(self, address: str) -> int:
        result = await self._request("eth_getBalance", [address, "latest"])
        return int(result, 16)

    async def get_allowance(self, token: str, owner: str, spender: str) -> int:
        result = await self.call(token, encode_allowance(owner, spender))
        return int(result, 16) if result and result != "0x" else 0

    async def get_token_balance(self, token: str, owner: str) -> int:
        result = await self.call(token, encode_balance_of(owner))
        return int(result, 16) if result and result != "0x" else 0
