"""Pending-transfer ledger backed by Redis.

Layout:
    rebalances:data                         id -> JSON record
    rebalances:route:<dest>-<orig>-<asset>  set of ids
    rebalances:transactions                 origin tx hash -> id
    rebalances:withdrawals                  id -> external withdrawal order id
    rebalances:paused                       "1" / "0"

Every write that touches more than one key runs in a MULTI/EXEC pipeline.
Writes that depend on what is already stored WATCH the keys they read and
retry when another client changes them first.
"""

import logging
from typing import Iterable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from rebalancer.config import RouteConfig
from rebalancer.errors import LedgerWriteError
from rebalancer.ledger.models import TransferRecord, route_prefix

logger = logging.getLogger(__name__)

PREFIX = "rebalances"
DATA_KEY = f"{PREFIX}:data"
PAUSE_KEY = f"{PREFIX}:paused"
WITHDRAWALS_KEY = f"{PREFIX}:withdrawals"
TRANSACTIONS_KEY = f"{PREFIX}:transactions"

WATCH_RETRIES = 10


def route_key(destination: int, origin: int, asset: str) -> str:
    return f"{PREFIX}:route:{route_prefix(destination, origin, asset)}"


class RebalanceLedger:
    """Durable record of in-flight transfers, the pause flag and withdrawal links."""

    def __init__(self, client: redis.Redis):
        self.redis = client

    # ======================
    # Transfers
    # ======================

    async def add_rebalances(self, records: list[TransferRecord]) -> int:
        """Insert records, returning how many were new.

        Records whose id or origin transaction is already present are skipped.
        The check and the write run under WATCH, so two writers racing on the
        same origin transaction store one record between them.
        """
        if not records:
            return 0

        try:
            for _ in range(WATCH_RETRIES):
                try:
                    created = await self._add_once(records)
                    break
                except WatchError:
                    logger.debug("Ledger changed during add, retrying")
            else:
                raise LedgerWriteError(
                    f"Failed to add rebalances: contended after {WATCH_RETRIES} attempts"
                )
        except RedisError as e:
            raise LedgerWriteError(f"Failed to add rebalances: {e}") from e

        logger.debug(f"Added {created}/{len(records)} rebalance record(s)")
        return created

    async def _add_once(self, records: list[TransferRecord]) -> int:
        async with self.redis.pipeline(transaction=True) as pipe:
            await pipe.watch(DATA_KEY, TRANSACTIONS_KEY)
            # Immediate mode until multi()
            indexed = await pipe.hmget(TRANSACTIONS_KEY, [r.transaction.lower() for r in records])
            stored = await pipe.hmget(DATA_KEY, [r.id for r in records])

            candidates = []
            seen: set[str] = set()
            for record, existing, row in zip(records, indexed, stored):
                tx_hash = record.transaction.lower()
                if row is not None:
                    continue
                if existing is not None and existing != record.id:
                    logger.warning(
                        f"Transaction {tx_hash} already tracked as {existing}, skipping {record.id}"
                    )
                    continue
                if tx_hash in seen or record.id in seen:
                    continue
                seen.update((tx_hash, record.id))
                candidates.append(record)

            if not candidates:
                await pipe.unwatch()
                return 0

            pipe.multi()
            for record in candidates:
                pipe.hset(DATA_KEY, record.id, record.model_dump_json())
                pipe.sadd(route_key(record.destination, record.origin, record.asset), record.id)
                pipe.hset(TRANSACTIONS_KEY, record.transaction.lower(), record.id)
            await pipe.execute()
        return len(candidates)

    async def get_rebalances(self, routes: Iterable[RouteConfig]) -> list[TransferRecord]:
        """Union of all records on any of the given routes."""
        keys = [route_key(r.destination, r.origin, r.asset) for r in routes]
        if not keys:
            return []

        async with self.redis.pipeline(transaction=False) as pipe:
            for key in keys:
                pipe.smembers(key)
            groups = await pipe.execute()

        ids: list[str] = []
        seen: set[str] = set()
        for group in groups:
            for record_id in sorted(group or []):
                if record_id not in seen:
                    seen.add(record_id)
                    ids.append(record_id)
        if not ids:
            return []

        rows = await self.redis.hmget(DATA_KEY, ids)
        records = []
        for record_id, raw in zip(ids, rows):
            if raw is None:
                continue
            record = TransferRecord.model_validate_json(raw)
            record.id = record_id
            records.append(record)
        return records

    async def get_rebalance_by_transaction(self, transaction_hash: str) -> Optional[TransferRecord]:
        record_id = await self.redis.hget(TRANSACTIONS_KEY, transaction_hash.lower())
        if record_id is None:
            return None
        raw = await self.redis.hget(DATA_KEY, record_id)
        if raw is None:
            return None
        return TransferRecord.model_validate_json(raw)

    async def remove_rebalances(self, ids: list[str]) -> int:
        """Delete records by id, returning how many were actually removed.

        The origin transaction link is dropped only while it still points at
        the removed id.
        """
        if not ids:
            return 0

        try:
            for _ in range(WATCH_RETRIES):
                try:
                    removed = await self._remove_once(ids)
                    break
                except WatchError:
                    logger.debug("Ledger changed during remove, retrying")
            else:
                raise LedgerWriteError(
                    f"Failed to remove rebalances: contended after {WATCH_RETRIES} attempts"
                )
        except RedisError as e:
            raise LedgerWriteError(f"Failed to remove rebalances: {e}") from e

        logger.debug(f"Removed {removed}/{len(ids)} rebalance record(s)")
        return removed

    async def _remove_once(self, ids: list[str]) -> int:
        async with self.redis.pipeline(transaction=True) as pipe:
            await pipe.watch(DATA_KEY, TRANSACTIONS_KEY)
            unique = list(dict.fromkeys(ids))
            rows = await pipe.hmget(DATA_KEY, unique)
            present = []
            for record_id, raw in zip(unique, rows):
                if raw is None:
                    continue
                record = TransferRecord.model_validate_json(raw)
                record.id = record_id
                present.append(record)
            if not present:
                await pipe.unwatch()
                return 0

            links = await pipe.hmget(TRANSACTIONS_KEY, [r.transaction.lower() for r in present])

            pipe.multi()
            for record, linked in zip(present, links):
                pipe.srem(route_key(record.destination, record.origin, record.asset), record.id)
                pipe.hdel(DATA_KEY, record.id)
                if linked == record.id:
                    pipe.hdel(TRANSACTIONS_KEY, record.transaction.lower())
            results = await pipe.execute()

        removed = 0
        i = 0
        for record, linked in zip(present, links):
            if results[i] == 1 and results[i + 1] == 1:
                removed += 1
            i += 3 if linked == record.id else 2
        return removed

    async def has_rebalance(self, record_id: str) -> bool:
        return bool(await self.redis.hexists(DATA_KEY, record_id))

    # ======================
    # Pause flag
    # ======================

    async def set_pause(self, paused: bool) -> None:
        await self.redis.set(PAUSE_KEY, "1" if paused else "0")
        logger.info(f"Rebalancing {'paused' if paused else 'unpaused'}")

    async def is_paused(self) -> bool:
        return await self.redis.get(PAUSE_KEY) == "1"

    # ======================
    # Withdrawal links
    # ======================

    async def add_withdraw_id(self, record_id: str, withdraw_id: str) -> None:
        await self.redis.hset(WITHDRAWALS_KEY, record_id, withdraw_id)

    async def get_withdraw_id(self, record_id: str) -> Optional[str]:
        return await self.redis.hget(WITHDRAWALS_KEY, record_id)

    async def remove_withdraw_id(self, record_id: str) -> bool:
        return bool(await self.redis.hdel(WITHDRAWALS_KEY, record_id))

    # ======================
    # Admin
    # ======================

    async def clear(self) -> None:
        """Remove every ledger key, including the pause flag."""
        keys = [key async for key in self.redis.scan_iter(match=f"{PREFIX}:route:*")]
        keys.extend([DATA_KEY, PAUSE_KEY, WITHDRAWALS_KEY, TRANSACTIONS_KEY])
        await self.redis.delete(*keys)
        logger.warning("Rebalance ledger cleared")

    async def disconnect(self) -> None:
        await self.redis.aclose()
