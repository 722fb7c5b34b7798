"""Rebalancing services."""

from rebalancer.services.callbacks import execute_destination_callbacks
from rebalancer.services.rebalance import rebalance_inventory

__all__ = ["execute_destination_callbacks", "rebalance_inventory"]
