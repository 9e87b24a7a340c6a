"""Tests for bringing chains up and down together."""

import json

import pytest

from burn_indexer.database import Database
from burn_indexer.indexer import IndexerState
from burn_indexer.manager import IndexerManager

from conftest import FakeNetwork, make_chain, wait_until

GOOD_URL = "https://good.test"
WRONG_CHAIN_URL = "https://wrong-chain.test"


@pytest.fixture
def chains():
    return [
        make_chain(key="base", chain_id=8453, name="Base", rpc_urls=(GOOD_URL,), start_block=1900),
        make_chain(key="ethereum", chain_id=1, name="Ethereum", rpc_urls=(WRONG_CHAIN_URL,), start_block=1900),
    ]


@pytest.fixture
def manager_settings(settings, chains):
    return settings.model_copy(update={
        "chains_config": json.dumps([c.model_dump(mode="json") for c in chains]),
    })


@pytest.fixture
def network():
    # Every endpoint answers as Base, so the Ethereum descriptor fails validation
    return FakeNetwork(chain_id=8453, height=2000)


class TestIndexerManager:
    @pytest.mark.asyncio
    async def test_failed_chain_does_not_block_others(self, manager_settings, network):
        manager = IndexerManager(manager_settings, client_factory=network)
        await manager.start()
        try:
            assert manager.get_all_chain_ids() == [8453]
            indexer = manager.get_indexer(8453)
            assert indexer.state == IndexerState.RUNNING
            assert manager.get_indexer(1) is None

            # The failed chain keeps its pool so it is still health checked
            assert set(manager.health_monitor.pools) == {8453, 1}
            assert manager.get_fault(1).startswith("Chain ID mismatch")
            assert manager.get_fault(8453) is None

            await wait_until(lambda: indexer.watermark == 2000)
        finally:
            await manager.stop()

        assert network.node(WRONG_CHAIN_URL).provider.disconnected

    @pytest.mark.asyncio
    async def test_failed_chain_reports_its_error(self, manager_settings, network):
        manager = IndexerManager(manager_settings, client_factory=network)
        await manager.start()
        try:
            await manager.health_monitor.check_all()
            snapshot = await manager.db.get_chain_health(1)
            status = await manager.get_status()
        finally:
            await manager.stop()

        assert not snapshot.is_healthy
        assert "Chain ID mismatch" in snapshot.error_message
        by_id = {s.chain_id: s for s in status.chains}
        assert by_id[1].health_status.startswith("Error: Chain ID mismatch")
        assert by_id[8453].is_healthy

    @pytest.mark.asyncio
    async def test_rate_limited_start_is_retried(self, settings, network):
        base = make_chain(key="base", chain_id=8453, name="Base", rpc_urls=(GOOD_URL,), start_block=1900)
        single_settings = settings.model_copy(update={
            "chains_config": json.dumps([base.model_dump(mode="json")]),
        })
        network.node(GOOD_URL).fail("chain_id", Exception("429 Too Many Requests"))

        manager = IndexerManager(single_settings, client_factory=network)
        await manager.start()
        try:
            indexer = manager.get_indexer(8453)
            assert indexer is not None
            await wait_until(lambda: indexer.watermark == 2000)
            assert indexer.state == IndexerState.RUNNING
            assert manager.get_fault(8453) is None
        finally:
            await manager.stop()

        assert network.node(GOOD_URL).count("chain_id") == 2

    @pytest.mark.asyncio
    async def test_shutdown_order(self, manager_settings, network):
        manager = IndexerManager(manager_settings, client_factory=network)
        await manager.start()
        indexer = manager.get_indexer(8453)

        await manager.stop()

        assert indexer.state == IndexerState.STOPPED
        assert manager.health_monitor is None
        assert network.node(GOOD_URL).provider.disconnected
        assert manager.db._connection is None

    @pytest.mark.asyncio
    async def test_status_after_run(self, manager_settings, network):
        manager = IndexerManager(manager_settings, client_factory=network)
        await manager.start()
        try:
            indexer = manager.get_indexer(8453)
            await wait_until(lambda: indexer.watermark == 2000)
            await manager.health_monitor.check_all()
            status = await manager.get_status()
        finally:
            await manager.stop()

        by_id = {s.chain_id: s for s in status.chains}
        assert by_id[8453].last_indexed_block == 2000
        assert by_id[8453].current_rpc_url == GOOD_URL
        assert by_id[1].last_indexed_block is None

    @pytest.mark.asyncio
    async def test_resumes_from_stored_watermark(self, manager_settings, network):
        db = Database(manager_settings.database_path)
        await db.connect()
        await db.register_chain(make_chain(start_block=1900))
        await db.set_watermark(8453, 1990)
        await db.close()

        manager = IndexerManager(manager_settings, client_factory=network)
        await manager.start()
        try:
            indexer = manager.get_indexer(8453)
            await wait_until(lambda: indexer.watermark == 2000)
            assert await manager.db.get_watermark(8453) == 2000
        finally:
            await manager.stop()

        assert network.node(GOOD_URL).log_filters[0]["fromBlock"] == 1971
