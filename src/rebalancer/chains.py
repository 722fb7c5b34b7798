"""Chain collaborators: submission service and balance oracle.

Signing lives outside this package; `ChainService` is the seam. The dry-run
implementation fabricates confirmed receipts so a cycle can be exercised end
to end without keys.
"""

import hashlib
import logging
from typing import Optional, Protocol

from rebalancer.bridges.base import TransactionReceipt, TransactionRequest
from rebalancer.bridges.evm import ZERO_ADDRESS, JsonRpcClient
from rebalancer.config import RebalanceConfig

logger = logging.getLogger(__name__)


class ChainService(Protocol):
    async def submit_and_monitor(self, chain_id: int, tx: TransactionRequest) -> TransactionReceipt:
        ...

    async def get_transaction_receipt(
        self, chain_id: int, tx_hash: str
    ) -> Optional[TransactionReceipt]:
        ...

    def get_address(self) -> dict[int, str]:
        ...


class BalanceOracle(Protocol):
    async def get_available_balance_less_earmarks(self, chain_id: int, asset: str) -> int:
        ...


class DryRunChainService:
    """Simulated chain service that never broadcasts."""

    def __init__(self, address: str, config: RebalanceConfig, rpc_timeout: float = 30.0):
        self.address = address
        self.config = config
        self.rpc_timeout = rpc_timeout
        self._receipts: dict[str, TransactionReceipt] = {}
        self._nonce = 0

    def get_address(self) -> dict[int, str]:
        return {int(chain_id): self.address for chain_id in self.config.chains}

    async def submit_and_monitor(self, chain_id: int, tx: TransactionRequest) -> TransactionReceipt:
        self._nonce += 1
        # Deterministic fake hash for dev/test
        seed = f"{chain_id}:{tx.to}:{tx.data}:{tx.value}:{self._nonce}".encode()
        tx_hash = "0x" + hashlib.sha256(seed).hexdigest()
        receipt = TransactionReceipt(
            transaction_hash=tx_hash,
            status=1,
            to=tx.to,
            from_address=self.address,
        )
        self._receipts[tx_hash] = receipt
        logger.info(f"[dry-run] chain {chain_id} -> {tx.to} value={tx.value} hash={tx_hash}")
        return receipt

    async def get_transaction_receipt(
        self, chain_id: int, tx_hash: str
    ) -> Optional[TransactionReceipt]:
        if tx_hash in self._receipts:
            return self._receipts[tx_hash]
        chain = self.config.chain(chain_id)
        if chain is None or not chain.providers:
            return None
        return await JsonRpcClient(chain.providers, self.rpc_timeout).get_transaction_receipt(tx_hash)


class RpcBalanceOracle:
    """Reads on-chain balances for the agent address.

    Earmarks are held elsewhere; `earmarks` maps (chain_id, lowercased asset)
    to the amount reserved.
    """

    def __init__(
        self,
        address: str,
        config: RebalanceConfig,
        earmarks: Optional[dict[tuple[int, str], int]] = None,
        rpc_timeout: float = 30.0,
    ):
        self.address = address
        self.config = config
        self.earmarks = earmarks or {}
        self.rpc_timeout = rpc_timeout

    async def get_available_balance_less_earmarks(self, chain_id: int, asset: str) -> int:
        chain = self.config.chain(chain_id)
        if chain is None or not chain.providers:
            raise ValueError(f"No providers configured for chain {chain_id}")

        client = JsonRpcClient(chain.providers, self.rpc_timeout)
        if asset.lower() == ZERO_ADDRESS:
            balance = await client.get_balance(self.address)
        else:
            balance = await client.get_token_balance(asset, self.address)

        earmarked = self.earmarks.get((chain_id, asset.lower()), 0)
        return max(balance - earmarked, 0)
