"""Tests for the rebalance ledger."""

import asyncio
import json

import pytest

from rebalancer.config import RouteConfig
from rebalancer.ledger.models import TransferRecord
from rebalancer.ledger.store import (
    DATA_KEY,
    PAUSE_KEY,
    TRANSACTIONS_KEY,
    WITHDRAWALS_KEY,
    RebalanceLedger,
    route_key,
)

from conftest import TOKEN_X, USDC_ARB


def make_record(tx: str = "0xabc", origin: int = 42161, destination: int = 1, asset: str = TOKEN_X, **kw):
    return TransferRecord.create(
        bridge=kw.get("bridge", "across"),
        amount=kw.get("amount", 1000),
        origin=origin,
        destination=destination,
        asset=asset,
        transaction=tx,
        recipient=kw.get("recipient", "0x1111111111111111111111111111111111111111"),
    )


def make_route(origin: int = 42161, destination: int = 1, asset: str = TOKEN_X) -> RouteConfig:
    return RouteConfig(
        origin=origin, destination=destination, asset=asset, maximum=0, preferences=["across"], slippages=[0]
    )


class TestTransferRecord:
    """Tests for the record model."""

    def test_id_has_route_prefix(self):
        record = make_record(asset="0xABCDEF")
        assert record.id.startswith("1-42161-0xabcdef-")

    def test_ids_are_unique(self):
        assert make_record().id != make_record().id

    def test_amount_serialized_as_string(self):
        record = make_record(amount=10**30)
        payload = json.loads(record.model_dump_json())
        assert payload["amount"] == str(10**30)
        assert TransferRecord.model_validate_json(record.model_dump_json()).amount == 10**30


class TestAddAndGet:
    """Tests for inserting and reading records."""

    @pytest.mark.asyncio
    async def test_round_trip(self, ledger: RebalanceLedger):
        """A record added on a route is returned with its id."""
        record = make_record()
        assert await ledger.add_rebalances([record]) == 1

        records = await ledger.get_rebalances([make_route()])
        assert len(records) == 1
        assert records[0].id == record.id
        assert records[0].transaction == "0xabc"
        assert records[0].amount == 1000

    @pytest.mark.asyncio
    async def test_add_empty_batch(self, ledger: RebalanceLedger):
        assert await ledger.add_rebalances([]) == 0

    @pytest.mark.asyncio
    async def test_add_same_record_twice(self, ledger: RebalanceLedger):
        """Re-adding the same id does not create a second row."""
        record = make_record()
        assert await ledger.add_rebalances([record]) == 1
        assert await ledger.add_rebalances([record]) == 0

        assert len(await ledger.get_rebalances([make_route()])) == 1

    @pytest.mark.asyncio
    async def test_one_record_per_origin_transaction(self, ledger: RebalanceLedger):
        """A second record for an already-tracked origin hash is skipped."""
        assert await ledger.add_rebalances([make_record(tx="0xAAA")]) == 1
        assert await ledger.add_rebalances([make_record(tx="0xaaa")]) == 0
        assert len(await ledger.get_rebalances([make_route()])) == 1

    @pytest.mark.asyncio
    async def test_batch_counts_only_new(self, ledger: RebalanceLedger):
        first = make_record(tx="0x1")
        await ledger.add_rebalances([first])
        created = await ledger.add_rebalances([first, make_record(tx="0x2"), make_record(tx="0x3")])
        assert created == 2

    @pytest.mark.asyncio
    async def test_concurrent_adds_for_same_transaction(self, ledger: RebalanceLedger):
        """Two writers racing on one origin hash store a single record."""
        a, b = make_record(tx="0xRACE"), make_record(tx="0xrace")

        counts = await asyncio.gather(ledger.add_rebalances([a]), ledger.add_rebalances([b]))

        assert sum(counts) == 1
        records = await ledger.get_rebalances([make_route()])
        assert len(records) == 1
        found = await ledger.get_rebalance_by_transaction("0xrace")
        assert found is not None
        assert found.id == records[0].id

    @pytest.mark.asyncio
    async def test_route_index_key(self, ledger: RebalanceLedger, redis_client):
        record = make_record(asset="0xABC")
        await ledger.add_rebalances([record])

        members = await redis_client.smembers("rebalances:route:1-42161-0xabc")
        assert members == {record.id}
        assert await redis_client.hexists(DATA_KEY, record.id)

    @pytest.mark.asyncio
    async def test_get_union_across_routes(self, ledger: RebalanceLedger):
        """Routes with no entries do not break the query."""
        a = make_record(tx="0x1")
        b = make_record(tx="0x2", asset=USDC_ARB)
        await ledger.add_rebalances([a, b])

        records = await ledger.get_rebalances(
            [make_route(), make_route(asset=USDC_ARB), make_route(origin=10)]
        )
        assert {r.id for r in records} == {a.id, b.id}

    @pytest.mark.asyncio
    async def test_get_other_route_untouched(self, ledger: RebalanceLedger):
        await ledger.add_rebalances([make_record()])
        assert await ledger.get_rebalances([make_route(origin=10)]) == []

    @pytest.mark.asyncio
    async def test_get_same_route_twice(self, ledger: RebalanceLedger):
        record = make_record()
        await ledger.add_rebalances([record])

        records = await ledger.get_rebalances([make_route(), make_route()])
        assert [r.id for r in records] == [record.id]

    @pytest.mark.asyncio
    async def test_get_no_routes(self, ledger: RebalanceLedger):
        assert await ledger.get_rebalances([]) == []

    @pytest.mark.asyncio
    async def test_get_skips_dangling_index_entries(self, ledger: RebalanceLedger, redis_client):
        await redis_client.sadd(route_key(1, 42161, TOKEN_X), "missing-id")
        assert await ledger.get_rebalances([make_route()]) == []

    @pytest.mark.asyncio
    async def test_get_by_transaction(self, ledger: RebalanceLedger):
        record = make_record(tx="0xDeadBeef")
        await ledger.add_rebalances([record])

        found = await ledger.get_rebalance_by_transaction("0xdeadbeef")
        assert found is not None
        assert found.id == record.id
        assert found.recipient == record.recipient
        assert await ledger.get_rebalance_by_transaction("0xother") is None

    @pytest.mark.asyncio
    async def test_has_rebalance(self, ledger: RebalanceLedger):
        record = make_record()
        assert not await ledger.has_rebalance(record.id)
        await ledger.add_rebalances([record])
        assert await ledger.has_rebalance(record.id)


class TestRemove:
    """Tests for removing records."""

    @pytest.mark.asyncio
    async def test_remove(self, ledger: RebalanceLedger, redis_client):
        record = make_record()
        await ledger.add_rebalances([record])

        assert await ledger.remove_rebalances([record.id]) == 1
        assert await ledger.get_rebalances([make_route()]) == []
        assert await redis_client.smembers(route_key(1, 42161, TOKEN_X)) == set()
        assert await ledger.get_rebalance_by_transaction(record.transaction) is None

    @pytest.mark.asyncio
    async def test_remove_missing_id(self, ledger: RebalanceLedger):
        assert await ledger.remove_rebalances(["nope"]) == 0
        assert await ledger.remove_rebalances([]) == 0

    @pytest.mark.asyncio
    async def test_remove_mixed(self, ledger: RebalanceLedger):
        a, b = make_record(tx="0x1"), make_record(tx="0x2")
        await ledger.add_rebalances([a, b])

        assert await ledger.remove_rebalances([a.id, "nope", b.id]) == 2

    @pytest.mark.asyncio
    async def test_remove_counts_only_when_index_and_entry_removed(
        self, ledger: RebalanceLedger, redis_client
    ):
        """An entry missing from its route index is deleted but not counted."""
        a, b = make_record(tx="0x1"), make_record(tx="0x2")
        await ledger.add_rebalances([a, b])
        await redis_client.srem(route_key(1, 42161, TOKEN_X), a.id)

        assert await ledger.remove_rebalances([a.id, b.id]) == 1
        assert not await ledger.has_rebalance(a.id)


    @pytest.mark.asyncio
    async def test_remove_keeps_link_owned_by_another_record(self, ledger: RebalanceLedger, redis_client):
        """Removing a row whose origin hash is linked elsewhere leaves that link alone."""
        kept = make_record(tx="0xshared")
        await ledger.add_rebalances([kept])
        stray = make_record(tx="0xshared")
        await redis_client.hset(DATA_KEY, stray.id, stray.model_dump_json())
        await redis_client.sadd(route_key(1, 42161, TOKEN_X), stray.id)

        assert await ledger.remove_rebalances([stray.id]) == 1

        found = await ledger.get_rebalance_by_transaction("0xshared")
        assert found is not None
        assert found.id == kept.id
        assert [r.id for r in await ledger.get_rebalances([make_route()])] == [kept.id]

    @pytest.mark.asyncio
    async def test_remove_same_id_twice_in_batch(self, ledger: RebalanceLedger):
        record = make_record()
        await ledger.add_rebalances([record])
        assert await ledger.remove_rebalances([record.id, record.id]) == 1
        assert await ledger.get_rebalance_by_transaction(record.transaction) is None

class TestPauseAndWithdrawals:
    """Tests for the pause flag and withdrawal links."""

    @pytest.mark.asyncio
    async def test_pause_default_false(self, ledger: RebalanceLedger):
        assert await ledger.is_paused() is False

    @pytest.mark.asyncio
    async def test_pause_toggle(self, ledger: RebalanceLedger, redis_client):
        await ledger.set_pause(True)
        assert await ledger.is_paused() is True
        assert await redis_client.get(PAUSE_KEY) == "1"

        await ledger.set_pause(False)
        assert await ledger.is_paused() is False
        assert await redis_client.get(PAUSE_KEY) == "0"

    @pytest.mark.asyncio
    async def test_withdraw_id_lifecycle(self, ledger: RebalanceLedger):
        assert await ledger.get_withdraw_id("r1") is None
        await ledger.add_withdraw_id("r1", "mark-1234")
        assert await ledger.get_withdraw_id("r1") == "mark-1234"
        assert await ledger.remove_withdraw_id("r1") is True
        assert await ledger.get_withdraw_id("r1") is None
        assert await ledger.remove_withdraw_id("r1") is False

    @pytest.mark.asyncio
    async def test_clear(self, ledger: RebalanceLedger, redis_client):
        await ledger.add_rebalances([make_record(), make_record(tx="0x2", asset=USDC_ARB)])
        await ledger.set_pause(True)
        await ledger.add_withdraw_id("r1", "w1")

        await ledger.clear()

        assert await redis_client.keys("rebalances:*") == []
        assert await ledger.is_paused() is False
        for key in (DATA_KEY, WITHDRAWALS_KEY, TRANSACTIONS_KEY):
            assert not await redis_client.exists(key)
