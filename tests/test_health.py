"""Tests for the periodic health monitor."""

import asyncio

import pytest

from burn_indexer.health import HealthMonitor
from burn_indexer.provider import EndpointPool

from conftest import URL_A, URL_B, FakeNetwork, make_chain, wait_until


def make_pool(chain, network) -> EndpointPool:
    return EndpointPool(chain, client_factory=network, max_retries=5, min_switch_interval=10.0,
                        probe_interval=3600.0)


class TestCheckChain:
    @pytest.mark.asyncio
    async def test_healthy_snapshot(self, db):
        chain = make_chain(start_block=1000)
        network = FakeNetwork(height=1500)
        await db.register_chain(chain)
        await db.set_watermark(chain.chain_id, 1450)
        monitor = HealthMonitor(db, {chain.chain_id: make_pool(chain, network)}, interval=3600)

        snapshot = await monitor.check_chain(monitor.pools[chain.chain_id])

        assert snapshot.is_healthy
        assert snapshot.blocks_behind == 50
        assert snapshot.rpc_latency_ms is not None
        assert snapshot.current_rpc_url == URL_A
        stored = await db.get_chain_health(chain.chain_id)
        assert stored.is_healthy and stored.blocks_behind == 50

    @pytest.mark.asyncio
    async def test_blocks_behind_before_first_batch(self, db):
        chain = make_chain(start_block=1000)
        network = FakeNetwork(height=1500)
        await db.register_chain(chain)
        monitor = HealthMonitor(db, {chain.chain_id: make_pool(chain, network)}, interval=3600)

        snapshot = await monitor.check_chain(monitor.pools[chain.chain_id])
        assert snapshot.blocks_behind == 501

    @pytest.mark.asyncio
    async def test_failure_marks_unhealthy_and_switches(self, db):
        chain = make_chain()
        network = FakeNetwork()
        network.node(URL_A).fail("block_number", asyncio.TimeoutError("request timed out"))
        await db.register_chain(chain)
        pool = make_pool(chain, network)
        monitor = HealthMonitor(db, {chain.chain_id: pool}, interval=3600)

        snapshot = await monitor.check_chain(pool)

        assert not snapshot.is_healthy
        assert snapshot.error_message == "request timed out"
        assert snapshot.blocks_behind is None
        assert snapshot.rpc_latency_ms is None
        assert snapshot.current_rpc_url == URL_A
        assert pool.active_url == URL_B

        [status] = await db.get_chain_status()
        assert status.health_status == "Error: request timed out"


class TestCheckAll:
    @pytest.mark.asyncio
    async def test_chains_are_isolated(self, db, monkeypatch):
        good = make_chain(key="base", chain_id=8453, name="Base")
        bad = make_chain(key="polygon", chain_id=137, name="Polygon")
        await db.register_chain(good)
        await db.register_chain(bad)

        real_get_watermark = db.get_watermark

        async def get_watermark(chain_id):
            if chain_id == bad.chain_id:
                raise RuntimeError("unexpected")
            return await real_get_watermark(chain_id)

        monkeypatch.setattr(db, "get_watermark", get_watermark)
        pools = {
            bad.chain_id: make_pool(bad, FakeNetwork(chain_id=137)),
            good.chain_id: make_pool(good, FakeNetwork()),
        }
        monitor = HealthMonitor(db, pools, interval=3600)

        results = await monitor.check_all()

        assert results[0] is None
        assert results[1].chain_id == good.chain_id
        assert await db.get_chain_health(good.chain_id) is not None
        assert await db.get_chain_health(bad.chain_id) is None

    @pytest.mark.asyncio
    async def test_start_checks_immediately(self, db):
        chain = make_chain()
        await db.register_chain(chain)
        network = FakeNetwork()
        monitor = HealthMonitor(db, {chain.chain_id: make_pool(chain, network)}, interval=3600)

        monitor.start()
        await wait_until(lambda: network.node(URL_A).count("block_number") >= 1)
        await asyncio.wait_for(monitor.stop(), timeout=1.0)

        assert await db.get_chain_health(chain.chain_id) is not None
