"""Rebalancer - cross-chain inventory rebalancing across bridge and exchange rails."""

__version__ = "0.1.0"
