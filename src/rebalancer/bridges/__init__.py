"""Transfer rails."""

from rebalancer.bridges.base import (
    BridgeAdapter,
    MemoizedTransaction,
    SupportedBridge,
    TransactionLog,
    TransactionMemo,
    TransactionReceipt,
    TransactionRequest,
)

__all__ = [
    "BridgeAdapter",
    "MemoizedTransaction",
    "SupportedBridge",
    "TransactionLog",
    "TransactionMemo",
    "TransactionReceipt",
    "TransactionRequest",
]
