"""Adapter registry keyed by rail identifier."""

import logging
from typing import Optional

from rebalancer.bridges.across import AcrossBridgeAdapter
from rebalancer.bridges.base import BridgeAdapter, SupportedBridge
from rebalancer.bridges.binance import BinanceBridgeAdapter
from rebalancer.bridges.binance_client import BinanceClient
from rebalancer.bridges.cctp import CctpBridgeAdapter
from rebalancer.config import RebalanceConfig, Settings, get_settings
from rebalancer.errors import UnsupportedBridgeError
from rebalancer.ledger.store import RebalanceLedger

logger = logging.getLogger(__name__)


class RebalanceAdapter:
    """Builds one adapter per rail on first use and reuses it afterwards."""

    def __init__(
        self,
        config: RebalanceConfig,
        ledger: RebalanceLedger,
        settings: Optional[Settings] = None,
    ):
        self.config = config
        self.ledger = ledger
        self.settings = settings or get_settings()
        self._adapters: dict[str, BridgeAdapter] = {}

    def register(self, adapter: BridgeAdapter) -> None:
        """Install an adapter directly (used for custom rails and tests)."""
        self._adapters[adapter.type().value] = adapter

    def get_adapter(self, bridge: str) -> BridgeAdapter:
        """Get the adapter for a rail identifier.

        Raises:
            UnsupportedBridgeError: If the identifier is unknown
        """
        key = bridge.value if isinstance(bridge, SupportedBridge) else str(bridge).lower()
        if key in self._adapters:
            return self._adapters[key]

        adapter = self._build(key)
        self._adapters[key] = adapter
        logger.debug(f"Initialized {key} adapter")
        return adapter

    def _build(self, key: str) -> BridgeAdapter:
        settings = self.settings
        timeout = settings.quote_timeout

        if key == SupportedBridge.ACROSS.value:
            return AcrossBridgeAdapter(settings.across_url, self.config, timeout=timeout)
        if key == SupportedBridge.CCTP_V1.value:
            return CctpBridgeAdapter("v1", self.config, timeout=timeout)
        if key == SupportedBridge.CCTP_V2.value:
            return CctpBridgeAdapter("v2", self.config, timeout=timeout)
        if key == SupportedBridge.BINANCE.value:
            if not settings.has_binance:
                raise UnsupportedBridgeError(f"{key} (API key and secret not configured)")
            client = BinanceClient(
                settings.binance_api_key,
                settings.binance_api_secret,
                settings.binance_base_url,
                timeout=timeout,
            )
            return BinanceBridgeAdapter(client, self.config, self.ledger, timeout=timeout)

        raise UnsupportedBridgeError(key)
