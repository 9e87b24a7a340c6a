"""Lifecycle management for all chain indexers."""

import asyncio
import logging
from typing import Dict, List, Optional

from burn_indexer.config import ChainDescriptor, Settings, get_settings
from burn_indexer.database import Database
from burn_indexer.health import HealthMonitor
from burn_indexer.indexer import ChainIndexer
from burn_indexer.models import ChainStatusResponse
from burn_indexer.provider import ClientFactory, EndpointPool, default_client_factory

logger = logging.getLogger(__name__)


class IndexerManager:
    """Starts one pool and indexer per enabled chain, plus the shared health monitor."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        db: Optional[Database] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.settings = settings or get_settings()
        self.db = db or Database(self.settings.database_path)
        self.client_factory = client_factory or default_client_factory(self.settings.rpc_timeout)
        self.pools: Dict[int, EndpointPool] = {}
        self.indexers: Dict[int, ChainIndexer] = {}
        self.start_errors: Dict[int, str] = {}
        self.health_monitor: Optional[HealthMonitor] = None

    async def _start_chain(self, chain: ChainDescriptor) -> bool:
        """
        Bring up one chain. Any failure is logged and leaves the other chains untouched.

        The pool joins the health monitor's map before the indexer starts, so a
        chain whose indexer fails validation is still checked and reported.
        """
        try:
            pool = EndpointPool(
                chain,
                client_factory=self.client_factory,
                max_retries=self.settings.max_retries,
                min_switch_interval=self.settings.min_switch_interval,
                probe_interval=self.settings.probe_interval,
            )
        except Exception as e:
            logger.error(f"[Chain {chain.chain_id}] Failed to create {chain.name} endpoint pool: {e}")
            return False

        pool.start()
        self.pools[chain.chain_id] = pool

        indexer = ChainIndexer(chain, pool, self.db, self.settings)
        try:
            await self.db.register_chain(chain)
            await indexer.start()
        except Exception as e:
            logger.error(f"[Chain {chain.chain_id}] Failed to start {chain.name} indexer: {e}")
            self.start_errors[chain.chain_id] = str(e) or type(e).__name__
            return False

        self.indexers[chain.chain_id] = indexer
        logger.info(
            f"Registered chain: {chain.name} (ID: {chain.chain_id}) "
            f"Token: {chain.contracts.token} Start: {chain.start_block} "
            f"RPC: {pool.active_url}"
        )
        return True

    def get_fault(self, chain_id: int) -> Optional[str]:
        """Why a chain's indexer is not running, if its start-up gave up."""
        if chain_id in self.start_errors:
            return self.start_errors[chain_id]
        indexer = self.indexers.get(chain_id)
        return indexer.fault if indexer else None

    async def start(self):
        """Connect storage, start every enabled chain concurrently, then the health monitor."""
        await self.db.connect()

        chains = self.settings.get_chains()
        logger.info(f"Initializing {len(chains)} chain indexers...")

        results = await asyncio.gather(*(self._start_chain(chain) for chain in chains))
        logger.info(f"Started {sum(results)}/{len(chains)} chain indexers")

        self.health_monitor = HealthMonitor(
            self.db, self.pools, self.settings.health_check_interval, fault_of=self.get_fault
        )
        self.health_monitor.start()

    async def stop(self):
        """Drain the indexers, then stop health checks, close the pools and storage."""
        logger.info("Stopping indexers...")
        await asyncio.gather(*(indexer.stop() for indexer in self.indexers.values()))

        if self.health_monitor:
            await self.health_monitor.stop()
            self.health_monitor = None

        for pool in self.pools.values():
            await pool.close()

        await self.db.close()
        logger.info("Shutdown complete")

    def get_indexer(self, chain_id: int) -> Optional[ChainIndexer]:
        """Get indexer for a specific chain."""
        return self.indexers.get(chain_id)

    def get_all_chain_ids(self) -> List[int]:
        """Get all running chain IDs."""
        return list(self.indexers.keys())

    async def get_status(self) -> ChainStatusResponse:
        """Status of every registered chain, as stored by the indexers and health monitor."""
        return ChainStatusResponse(chains=await self.db.get_chain_status())
