"""Asset lookups shared by adapters."""

import logging
from typing import Optional

from rebalancer.config import AssetConfig, RebalanceConfig

logger = logging.getLogger(__name__)

WRAPPED_NATIVE_SYMBOLS = {"WETH"}


def find_asset(config: RebalanceConfig, chain_id: int, address: str) -> Optional[AssetConfig]:
    """Find an asset on a chain by address (case-insensitive)."""
    chain = config.chain(chain_id)
    if chain is None:
        return None
    for asset in chain.assets:
        if asset.address.lower() == address.lower():
            return asset
    return None


def find_asset_by_symbol(config: RebalanceConfig, chain_id: int, symbol: str) -> Optional[AssetConfig]:
    chain = config.chain(chain_id)
    if chain is None:
        return None
    for asset in chain.assets:
        if asset.symbol.upper() == symbol.upper():
            return asset
    return None


def find_matching_destination_asset(
    config: RebalanceConfig, address: str, origin: int, destination: int
) -> Optional[AssetConfig]:
    """Map an origin asset to the same ticker on the destination chain."""
    origin_asset = find_asset(config, origin, address)
    if origin_asset is None:
        logger.warning(f"Asset {address} not found on chain {origin}")
        return None

    chain = config.chain(destination)
    if chain is None:
        logger.warning(f"Destination chain {destination} not configured")
        return None

    for asset in chain.assets:
        if asset.ticker == origin_asset.ticker:
            return asset

    logger.warning(f"No {origin_asset.symbol} on destination chain {destination}")
    return None


def is_wrapped_native(asset: Optional[AssetConfig]) -> bool:
    return asset is not None and asset.symbol.upper() in WRAPPED_NATIVE_SYMBOLS
