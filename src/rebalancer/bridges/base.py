"""Bridge adapter base interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from rebalancer.config import RouteConfig


class SupportedBridge(str, Enum):
    """Rail identifiers used in route preferences and ledger records."""

    ACROSS = "across"
    CCTP_V1 = "cctpv1"
    CCTP_V2 = "cctpv2"
    BINANCE = "binance"


class TransactionMemo(str, Enum):
    """Intent tag carried by each step of a transfer."""

    APPROVAL = "Approval"
    UNWRAP = "Unwrap"
    WRAP = "Wrap"
    REBALANCE = "Rebalance"
    MINT = "Mint"


@dataclass
class TransactionRequest:
    """An unsigned call to submit on one chain."""

    to: str
    data: str = "0x"
    value: int = 0


@dataclass
class MemoizedTransaction:
    """One tagged step of a transfer's transaction sequence."""

    memo: TransactionMemo
    transaction: TransactionRequest
    effective_amount: Optional[int] = None  # Set when the rail moves less than requested


@dataclass
class TransactionLog:
    """Event log emitted by a confirmed transaction."""

    address: str
    topics: list[str]
    data: str = "0x"
    log_index: int = 0


@dataclass
class TransactionReceipt:
    """Confirmed transaction as seen by adapters and services."""

    transaction_hash: str
    status: int = 1
    block_number: int = 0
    to: Optional[str] = None
    from_address: Optional[str] = None
    logs: list[TransactionLog] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @classmethod
    def from_rpc(cls, payload: dict) -> "TransactionReceipt":
        """Build a receipt from an `eth_getTransactionReceipt` result."""
        logs = [
            TransactionLog(
                address=entry.get("address", ""),
                topics=[t.lower() for t in entry.get("topics", [])],
                data=entry.get("data", "0x"),
                log_index=int(entry.get("logIndex", "0x0"), 16),
            )
            for entry in payload.get("logs", [])
        ]
        return cls(
            transaction_hash=payload["transactionHash"],
            status=int(payload.get("status", "0x1"), 16),
            block_number=int(payload.get("blockNumber", "0x0"), 16),
            to=payload.get("to"),
            from_address=payload.get("from"),
            logs=logs,
        )


class BridgeAdapter(ABC):
    """Abstract base class for transfer rails.

    Every operation takes the route being served; adapters hold no per-transfer
    state in memory.
    """

    @abstractmethod
    def type(self) -> SupportedBridge:
        """Rail identifier."""
        raise NotImplementedError()

    @abstractmethod
    async def get_received_amount(self, amount: int, route: RouteConfig) -> int:
        """Quote what the recipient nets after rail fees.

        Raises:
            QuoteUnavailableError: If the rail cannot price the transfer
        """
        raise NotImplementedError()

    @abstractmethod
    async def send(
        self, sender: str, recipient: str, amount: int, route: RouteConfig
    ) -> list[MemoizedTransaction]:
        """Build the ordered origin-chain transactions for a transfer.

        Raises:
            BuildFailedError: If the rail preconditions are not met
        """
        raise NotImplementedError()

    @abstractmethod
    async def ready_on_destination(
        self, amount: int, route: RouteConfig, origin_receipt: TransactionReceipt
    ) -> bool:
        """Whether the destination side is ready. Returns False on lookup failure."""
        raise NotImplementedError()

    @abstractmethod
    async def destination_callback(
        self, route: RouteConfig, origin_receipt: TransactionReceipt
    ) -> Optional[MemoizedTransaction]:
        """Destination transaction that finalizes the transfer, if any."""
        raise NotImplementedError()
