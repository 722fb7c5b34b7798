"""Pending-transfer ledger."""

from rebalancer.ledger.models import TransferRecord
from rebalancer.ledger.store import RebalanceLedger

__all__ = ["RebalanceLedger", "TransferRecord"]
