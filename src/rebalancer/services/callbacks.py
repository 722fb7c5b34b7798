"""Completion sweeper.

Walks the ledger, asks each transfer's adapter whether the destination side is
ready, submits any follow-up transaction and retires finished entries. An
entry that is not ready, or whose follow-up fails, stays for the next sweep.
"""

import asyncio
import logging

from rebalancer.config import RouteConfig
from rebalancer.context import ProcessingContext
from rebalancer.errors import LedgerWriteError, RebalanceError
from rebalancer.ledger.models import TransferRecord, route_prefix

logger = logging.getLogger(__name__)


async def execute_destination_callbacks(context: ProcessingContext) -> int:
    """Sweep every in-flight transfer once.

    Returns:
        Number of ledger entries retired
    """
    records = await context.ledger.get_rebalances(context.config.routes)
    if not records:
        logger.debug("No in-flight transfers to sweep")
        return 0

    logger.info(f"Sweeping {len(records)} in-flight transfer(s)")
    routes = {route_prefix(r.destination, r.origin, r.asset): r for r in context.config.routes}
    semaphore = asyncio.Semaphore(max(context.max_concurrency, 1))

    async def run(record: TransferRecord) -> bool:
        async with semaphore:
            try:
                return await process_transfer(context, record, routes[record.route_key])
            except Exception as e:
                logger.error(f"Sweep of {record.id} ({record.bridge}) failed: {e}")
                context.metrics.record_callback(record.bridge, "error")
                return False

    results = await asyncio.gather(*(run(record) for record in records))
    retired = sum(1 for removed in results if removed)
    logger.info(f"Sweep complete: {retired}/{len(records)} transfer(s) retired")
    return retired


async def process_transfer(context: ProcessingContext, record: TransferRecord, route: RouteConfig) -> bool:
    """Advance one ledger entry. Returns True when the entry was removed."""
    try:
        receipt = await asyncio.wait_for(
            context.chain_service.get_transaction_receipt(record.origin, record.transaction),
            context.receipt_timeout,
        )
    except Exception as e:
        logger.warning(f"{record.id}: origin receipt {record.transaction} unavailable: {e}")
        return False
    if receipt is None:
        logger.info(f"{record.id}: origin receipt {record.transaction} not found yet")
        return False

    try:
        adapter = context.adapters.get_adapter(record.bridge)
    except RebalanceError as e:
        logger.error(f"{record.id}: {e}")
        return False

    try:
        ready = await asyncio.wait_for(
            adapter.ready_on_destination(record.amount, route, receipt),
            context.quote_timeout,
        )
    except Exception as e:
        logger.warning(f"{record.id}: readiness check via {record.bridge} failed: {e}")
        return False
    if not ready:
        logger.info(f"{record.id}: not ready on destination {record.destination} yet")
        return False

    try:
        callback = await asyncio.wait_for(
            adapter.destination_callback(route, receipt),
            context.quote_timeout,
        )
    except Exception as e:
        logger.error(f"{record.id}: destination callback via {record.bridge} failed: {e}")
        context.metrics.record_callback(record.bridge, "prepare_failed")
        return False

    if callback is None:
        logger.info(f"{record.id}: no callback needed, retiring")
        context.metrics.record_callback(record.bridge, "none")
        return await _retire(context, record)

    try:
        callback_receipt = await asyncio.wait_for(
            context.chain_service.submit_and_monitor(record.destination, callback.transaction),
            context.submission_timeout,
        )
    except Exception as e:
        logger.error(f"{record.id}: {callback.memo.value} on chain {record.destination} failed: {e}")
        context.metrics.record_callback(record.bridge, "submit_failed")
        return False
    if not callback_receipt.succeeded:
        logger.error(
            f"{record.id}: {callback.memo.value} {callback_receipt.transaction_hash} reverted"
        )
        context.metrics.record_callback(record.bridge, "submit_failed")
        return False

    logger.info(
        f"{record.id}: {callback.memo.value} confirmed in {callback_receipt.transaction_hash}"
    )
    context.metrics.record_callback(record.bridge, "ok")
    return await _retire(context, record)


async def _retire(context: ProcessingContext, record: TransferRecord) -> bool:
    try:
        removed = await context.ledger.remove_rebalances([record.id])
        await context.ledger.remove_withdraw_id(record.id)
    except LedgerWriteError as e:
        logger.error(f"{record.id}: could not remove from ledger: {e}")
        return False
    return removed > 0
