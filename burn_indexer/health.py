"""Periodic per-chain health checks."""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

from burn_indexer import metrics
from burn_indexer.config import get_settings
from burn_indexer.database import Database
from burn_indexer.models import ChainHealthSnapshot
from burn_indexer.provider import EndpointPool

logger = logging.getLogger(__name__)


class HealthMonitor:
    """
    Records a health snapshot for every chain at a fixed interval.

    A snapshot holds the active endpoint, its latency and how far the persisted
    watermark trails the chain head. A failing query marks the chain unhealthy
    and gives the pool a chance to switch endpoints. A chain whose indexer gave
    up at start-up stays unhealthy, carrying the reason reported by fault_of.
    """

    def __init__(
        self,
        db: Database,
        pools: Dict[int, EndpointPool],
        interval: Optional[float] = None,
        fault_of: Optional[Callable[[int], Optional[str]]] = None,
    ):
        self.db = db
        self.pools = pools
        self.fault_of = fault_of
        self.interval = interval if interval is not None else get_settings().health_check_interval
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def check_chain(self, pool: EndpointPool) -> ChainHealthSnapshot:
        """Query one chain's active endpoint and store the resulting snapshot."""
        chain = pool.chain
        url = pool.active_url
        try:
            started = time.perf_counter()
            height = await pool.active().eth.block_number
            latency_ms = int((time.perf_counter() - started) * 1000)
        except Exception as e:
            logger.warning(f"[Chain {chain.chain_id}] Health check failed on {url}: {e}")
            await pool.evaluate_switch(url, e)
            snapshot = ChainHealthSnapshot(
                chain_id=chain.chain_id,
                is_healthy=False,
                error_message=str(e) or type(e).__name__,
                current_rpc_url=url,
            )
        else:
            watermark = await self.db.get_watermark(chain.chain_id)
            if watermark is None:
                watermark = chain.start_block - 1
            blocks_behind = max(0, height - watermark)
            fault = self.fault_of(chain.chain_id) if self.fault_of else None
            snapshot = ChainHealthSnapshot(
                chain_id=chain.chain_id,
                is_healthy=fault is None,
                error_message=fault,
                blocks_behind=blocks_behind,
                rpc_latency_ms=latency_ms,
                current_rpc_url=url,
            )
            metrics.CHAIN_HEAD_BLOCK.labels(chain=chain.name).set(height)
            metrics.BLOCKS_BEHIND.labels(chain=chain.name).set(blocks_behind)
            logger.debug(f"[Chain {chain.chain_id}] Head check: {blocks_behind} blocks behind, {latency_ms}ms via {url}")

        await self.db.upsert_chain_health(snapshot)
        metrics.CHAIN_HEALTHY.labels(chain=chain.name).set(1 if snapshot.is_healthy else 0)
        return snapshot

    async def _check_isolated(self, pool: EndpointPool) -> Optional[ChainHealthSnapshot]:
        try:
            return await self.check_chain(pool)
        except Exception as e:
            logger.error(f"[Chain {pool.chain_id}] Error recording health: {e}")
            return None

    async def check_all(self) -> List[Optional[ChainHealthSnapshot]]:
        """Check every chain. A failure on one chain does not affect the others."""
        return await asyncio.gather(*(self._check_isolated(pool) for pool in list(self.pools.values())))

    async def _run(self):
        while not self._stop_event.is_set():
            await self.check_all()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def start(self):
        """Start checking, beginning with an immediate round."""
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Health monitor started for {len(self.pools)} chains (interval: {self.interval:.0f}s)")

    async def stop(self):
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
