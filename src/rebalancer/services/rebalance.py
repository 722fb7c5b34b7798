"""Rebalance orchestrator.

For each configured route whose origin balance is above its maximum, try the
route's bridges in preference order and record the first transfer that quotes
within slippage and lands on the origin chain.
"""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from rebalancer.bridges.base import MemoizedTransaction, TransactionMemo
from rebalancer.config import RouteConfig
from rebalancer.context import ProcessingContext
from rebalancer.errors import (
    BuildFailedError,
    LedgerWriteError,
    QuoteUnavailableError,
    RebalanceError,
    SlippageExceededError,
    SubmissionFailedError,
)
from rebalancer.ledger.models import TransferRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

BPS_DENOMINATOR = 10_000


def minimum_acceptable(amount: int, slippage_bps: int) -> int:
    """Smallest received amount tolerated for `amount` at `slippage_bps`."""
    return amount - amount * slippage_bps // BPS_DENOMINATOR


async def _bounded(awaitable: Awaitable[T], timeout: float, error_cls: type, step: str) -> T:
    """Await with a timeout, classifying any failure as `error_cls`."""
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except error_cls:
        raise
    except asyncio.TimeoutError as e:
        raise error_cls(f"{step} timed out after {timeout}s") from e
    except Exception as e:
        raise error_cls(f"{step} failed: {e}") from e


async def rebalance_inventory(context: ProcessingContext) -> list[TransferRecord]:
    """Run one rebalancing pass over every configured route.

    Routes drawing on the same (origin, asset) balance run one after another;
    other routes run concurrently up to `max_concurrency`.

    Returns:
        Transfer records created this pass, in route configuration order
    """
    if await context.ledger.is_paused():
        logger.warning("Rebalancing is paused, skipping all routes")
        return []

    routes = context.config.routes
    groups: dict[tuple[int, str], list[int]] = {}
    for index, route in enumerate(routes):
        groups.setdefault((route.origin, route.asset.lower()), []).append(index)

    results: list[Optional[TransferRecord]] = [None] * len(routes)
    semaphore = asyncio.Semaphore(max(context.max_concurrency, 1))

    async def run_group(indices: list[int]) -> None:
        async with semaphore:
            for index in indices:
                route = routes[index]
                try:
                    results[index] = await rebalance_route(context, route)
                except Exception as e:
                    logger.error(f"Route {route.label} failed: {e}")

    await asyncio.gather(*(run_group(indices) for indices in groups.values()))

    created = [r for r in results if r is not None]
    logger.info(f"Rebalance pass complete: {len(created)} transfer(s) across {len(routes)} route(s)")
    return created


async def rebalance_route(context: ProcessingContext, route: RouteConfig) -> Optional[TransferRecord]:
    """Evaluate one route and move its surplus if any."""
    balance = await asyncio.wait_for(
        context.balances.get_available_balance_less_earmarks(route.origin, route.asset),
        context.balance_timeout,
    )
    if balance <= route.maximum:
        logger.debug(f"{route.label}: balance {balance} within maximum {route.maximum}")
        return None

    amount = balance - route.reserve
    if amount <= 0:
        logger.debug(f"{route.label}: nothing to bridge above reserve {route.reserve}")
        return None

    addresses = context.chain_service.get_address()
    sender = addresses.get(route.origin)
    recipient = addresses.get(route.destination)
    if not sender or not recipient:
        logger.warning(f"{route.label}: no agent address on origin or destination chain")
        return None

    logger.info(f"{route.label}: balance {balance} above maximum {route.maximum}, bridging {amount}")

    for index, bridge in enumerate(route.preferences):
        try:
            return await _rebalance_with_bridge(
                context, route, bridge, route.slippage_for(index), amount, sender, recipient
            )
        except RebalanceError as e:
            logger.warning(f"{route.label}: skipping {bridge}: {e}")

    logger.warning(f"{route.label}: all {len(route.preferences)} bridge preference(s) exhausted")
    return None


async def _rebalance_with_bridge(
    context: ProcessingContext,
    route: RouteConfig,
    bridge: str,
    slippage: int,
    amount: int,
    sender: str,
    recipient: str,
) -> TransferRecord:
    adapter = context.adapters.get_adapter(bridge)
    bridge_type = adapter.type().value
    metrics = context.metrics

    # Quote
    try:
        received = await _bounded(
            adapter.get_received_amount(amount, route),
            context.quote_timeout,
            QuoteUnavailableError,
            "quote",
        )
    except QuoteUnavailableError:
        metrics.record_quote(route.label, bridge_type, "unavailable")
        raise

    minimum = minimum_acceptable(amount, slippage)
    if received < minimum:
        metrics.record_quote(route.label, bridge_type, "slippage")
        raise SlippageExceededError(received, minimum)
    metrics.record_quote(route.label, bridge_type, "ok")
    logger.debug(f"{route.label}: {bridge_type} quotes {received} for {amount} (minimum {minimum})")

    # Build
    transactions = await _bounded(
        adapter.send(sender, recipient, amount, route),
        context.quote_timeout,
        BuildFailedError,
        "build",
    )
    if not any(tx.memo == TransactionMemo.REBALANCE for tx in transactions):
        raise BuildFailedError(f"{bridge_type} returned no {TransactionMemo.REBALANCE.value} transaction")

    # Submit in order
    try:
        transaction_hash, effective_amount = await _submit_sequence(
            context, route, transactions, amount
        )
    except SubmissionFailedError:
        metrics.record_submission(route.label, bridge_type, "failed")
        raise
    metrics.record_submission(route.label, bridge_type, "ok")

    record = TransferRecord.create(
        bridge=bridge_type,
        amount=effective_amount,
        origin=route.origin,
        destination=route.destination,
        asset=route.asset,
        transaction=transaction_hash,
        recipient=recipient,
    )
    await _record_transfer(context, record)
    metrics.record_rebalance(route.label, bridge_type, effective_amount)
    logger.info(f"{route.label}: sent {effective_amount} via {bridge_type} in {transaction_hash}")
    return record


async def _submit_sequence(
    context: ProcessingContext,
    route: RouteConfig,
    transactions: list[MemoizedTransaction],
    amount: int,
) -> tuple[str, int]:
    """Submit each transaction on the origin chain, waiting for each receipt."""
    transaction_hash: Optional[str] = None
    effective_amount = amount

    for tx in transactions:
        receipt = await _bounded(
            context.chain_service.submit_and_monitor(route.origin, tx.transaction),
            context.submission_timeout,
            SubmissionFailedError,
            f"{tx.memo.value} submission",
        )
        if not receipt.succeeded:
            raise SubmissionFailedError(f"{tx.memo.value} transaction {receipt.transaction_hash} reverted")
        logger.debug(f"{route.label}: {tx.memo.value} confirmed in {receipt.transaction_hash}")

        if tx.memo == TransactionMemo.REBALANCE:
            transaction_hash = receipt.transaction_hash
            if tx.effective_amount is not None:
                effective_amount = tx.effective_amount

    return transaction_hash, effective_amount


async def _record_transfer(context: ProcessingContext, record: TransferRecord) -> None:
    """Write the record; a failure here is logged, the transfer already happened."""
    try:
        await context.ledger.add_rebalances([record])
    except LedgerWriteError as e:
        logger.error(
            f"Transfer {record.transaction} on {record.origin}->{record.destination} "
            f"is not in the ledger: {e}"
        )

