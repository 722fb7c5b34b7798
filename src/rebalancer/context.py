"""Per-cycle processing context passed to the orchestrator and sweeper."""

from dataclasses import dataclass, field
from typing import Protocol

from rebalancer.bridges.base import BridgeAdapter
from rebalancer.chains import BalanceOracle, ChainService
from rebalancer.config import RebalanceConfig
from rebalancer.ledger.store import RebalanceLedger
from rebalancer.metrics import Metrics, NoopMetrics


class AdapterRegistry(Protocol):
    def get_adapter(self, bridge: str) -> BridgeAdapter:
        ...


@dataclass
class ProcessingContext:
    """Collaborators and limits for one rebalancing cycle."""

    config: RebalanceConfig
    ledger: RebalanceLedger
    adapters: AdapterRegistry
    chain_service: ChainService
    balances: BalanceOracle
    metrics: Metrics = field(default_factory=NoopMetrics)
    quote_timeout: float = 30.0
    submission_timeout: float = 600.0
    receipt_timeout: float = 30.0
    balance_timeout: float = 30.0
    max_concurrency: int = 4
