"""Burn event indexer for a single chain."""

import asyncio
import logging
import time
import traceback
from enum import Enum
from typing import Dict, List, Optional, Tuple

from cachetools import FIFOCache
from web3 import Web3

from burn_indexer import metrics
from burn_indexer.config import ChainDescriptor, Settings, get_settings
from burn_indexer.database import Database
from burn_indexer.errors import PermanentConfigFault, is_transient
from burn_indexer.events import EventClassifier
from burn_indexer.models import EventRecord, EventVariant, IndexingBatchRecord
from burn_indexer.provider import EndpointPool

logger = logging.getLogger(__name__)

# Accepted range for a chain's batch size
MIN_BATCH_SIZE = 10
MAX_BATCH_SIZE = 10000


class IndexerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    BACKOFF_WAIT = "backoff_wait"


def compute_backoff(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number attempt (0-based): base * 2**attempt, capped."""
    return min(base * 2 ** attempt, cap)


def next_batch_range(watermark: int, height: int, batch_size: int) -> Optional[Tuple[int, int]]:
    """
    Next inclusive block range to scan.

    Args:
        watermark: Last indexed block
        height: Current chain height
        batch_size: Maximum blocks per batch

    Returns:
        (start, end), or None when the watermark has reached the height
    """
    if watermark >= height:
        return None
    return watermark + 1, min(watermark + batch_size, height)


def rewind_watermark(persisted: Optional[int], start_block: int, reorg_depth: int) -> int:
    """In-memory watermark to resume from, rewound to re-scan possibly reorganized blocks."""
    if persisted is None:
        return start_block - 1
    return max(persisted - reorg_depth, start_block - 1)


class ChainIndexer:
    """Indexes burn and position events for one chain into the shared database."""

    def __init__(
        self,
        chain: ChainDescriptor,
        pool: EndpointPool,
        db: Database,
        settings: Optional[Settings] = None,
    ):
        self.chain = chain
        self.chain_id = chain.chain_id
        self.pool = pool
        self.db = db
        self.settings = settings or get_settings()
        self.batch_size = chain.batch_size or self.settings.batch_size
        self.classifier = EventClassifier(chain)

        self.state = IndexerState.STOPPED
        self._watermark: Optional[int] = None
        self._timestamp_cache: FIFOCache = FIFOCache(maxsize=self.settings.timestamp_cache_size)
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        # Why start-up gave up, if it did
        self.fault: Optional[str] = None

    @property
    def watermark(self) -> Optional[int]:
        """Last block indexed in memory (may trail the persisted value after a rewind)."""
        return self._watermark

    @property
    def is_running(self) -> bool:
        return self.state in (IndexerState.RUNNING, IndexerState.BACKOFF_WAIT)

    async def validate(self):
        """
        Check the chain descriptor against the live chain.

        Raises:
            PermanentConfigFault: if the batch size, chain id, start block or
                any contract address does not match the chain
        """
        if not MIN_BATCH_SIZE <= self.batch_size <= MAX_BATCH_SIZE:
            raise PermanentConfigFault(
                f"Batch size {self.batch_size} for chain {self.chain.name} "
                f"must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}"
            )

        chain_id = await self.pool.call(lambda w3: w3.eth.chain_id)
        if chain_id != self.chain_id:
            raise PermanentConfigFault(
                f"Chain ID mismatch for {self.chain.name}: expected {self.chain_id}, RPC reports {chain_id}"
            )

        height = await self.pool.get_block_number()
        if self.chain.start_block > height:
            raise PermanentConfigFault(
                f"Start block {self.chain.start_block} for {self.chain.name} is beyond current block {height}"
            )

        contracts = self.chain.contracts
        for role in ("token", "burn_contract", "position_contract"):
            address = getattr(contracts, role)
            code = await self.pool.call(
                lambda w3, address=address: w3.eth.get_code(Web3.to_checksum_address(address))
            )
            if not code or len(code) == 0:
                raise PermanentConfigFault(f"No contract code at {role} address {address} on {self.chain.name}")

        if self.chain.gas_price:
            logger.info(f"[Chain {self.chain_id}] Gas price hint: {self.chain.gas_price} gwei")

    async def _prepare(self):
        """Validate the chain and compute the in-memory watermark to resume from."""
        await self.validate()
        persisted = await self.db.get_watermark(self.chain_id)
        self._watermark = rewind_watermark(persisted, self.chain.start_block, self.settings.reorg_depth)

        if persisted is None:
            logger.info(f"[Chain {self.chain_id}] Set initial start block to {self.chain.start_block}")
        else:
            logger.info(f"[Chain {self.chain_id}] Last indexed block: {persisted}, resuming after {self._watermark}")

    async def start(self):
        """
        Validate the chain, resume from the persisted watermark and launch the loop.

        Does nothing if the indexer is already started. A PermanentConfigFault is
        raised and leaves the indexer stopped. Any other start-up failure is
        retried with backoff in the background until it succeeds or stop() is
        called; the indexer stays Starting meanwhile.
        """
        if self.state != IndexerState.STOPPED:
            return

        self.state = IndexerState.STARTING
        self.fault = None
        self._stop_event.clear()
        try:
            await self._prepare()
        except PermanentConfigFault as e:
            self.state = IndexerState.STOPPED
            self.fault = str(e)
            raise
        except Exception as e:
            logger.warning(f"[Chain {self.chain_id}] Start-up check failed, retrying in the background: {e}")
            self._task = asyncio.create_task(self._run(prepared=False))
            return

        self.state = IndexerState.RUNNING
        self._task = asyncio.create_task(self._run())

    async def _retry_start(self) -> bool:
        """Repeat start-up checks with backoff. Returns True once the indexer may run."""
        attempt = 0
        while True:
            delay = compute_backoff(attempt, self.settings.retry_delay, self.settings.max_backoff_delay)
            attempt += 1
            if await self._wait(delay):
                return False
            try:
                await self._prepare()
            except PermanentConfigFault as e:
                logger.error(f"[Chain {self.chain_id}] Start-up check failed permanently: {e}")
                self.fault = str(e)
                self.state = IndexerState.STOPPED
                return False
            except Exception as e:
                logger.warning(f"[Chain {self.chain_id}] Start-up check failed (attempt {attempt}), retrying: {e}")
                continue
            self.state = IndexerState.RUNNING
            return True

    async def stop(self):
        """Request the loop to stop and wait for it to finish."""
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        self.state = IndexerState.STOPPED
        logger.info(f"[Chain {self.chain_id}] Indexer stopped at block {self._watermark}")

    async def _wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds. Returns True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _get_block_timestamp(self, block_number: int) -> int:
        timestamp = self._timestamp_cache.get(block_number)
        if timestamp is None:
            block = await self.pool.call(lambda w3: w3.eth.get_block(block_number))
            timestamp = int(block["timestamp"])
            self._timestamp_cache[block_number] = timestamp
        return timestamp

    async def fetch_batch(self, from_block: int, to_block: int) -> List[EventRecord]:
        """
        Fetch and decode every event variant in a block range.

        Args:
            from_block: First block (inclusive)
            to_block: Last block (inclusive)

        Returns:
            Decoded records ordered by (block_number, log_index)
        """
        filters = [self.classifier.log_filter(variant, from_block, to_block) for variant in EventVariant]
        results = await asyncio.gather(*(
            self.pool.call(lambda w3, event_filter=event_filter: w3.eth.get_logs(event_filter))
            for event_filter in filters
        ))
        logs = [log for result in results for log in result]
        if not logs:
            return []

        block_numbers = sorted({int(log["blockNumber"]) for log in logs})
        timestamps = await asyncio.gather(*(self._get_block_timestamp(n) for n in block_numbers))
        timestamp_by_block: Dict[int, int] = dict(zip(block_numbers, timestamps))

        records: List[EventRecord] = []
        for log in logs:
            try:
                record = self.classifier.decode(log, timestamp_by_block[int(log["blockNumber"])])
            except Exception as e:
                logger.warning(f"[Chain {self.chain_id}] Failed to decode log: {e}")
                continue
            if record is not None:
                records.append(record)

        records.sort(key=lambda r: (r.block_number, r.log_index))
        return records

    async def process_range(self, from_block: int, to_block: int, height: Optional[int] = None) -> int:
        """
        Index one batch and advance the watermark to its end.

        Returns:
            Number of newly stored events
        """
        started = time.perf_counter()
        records = await self.fetch_batch(from_block, to_block)

        inserted = 0
        if records:
            duration_ms = int((time.perf_counter() - started) * 1000)
            batch = IndexingBatchRecord.from_records(self.chain_id, from_block, to_block, records, duration_ms)
            inserted = await self.db.persist_batch(self.chain_id, records, batch, to_block)
        else:
            await self.db.set_watermark(self.chain_id, to_block)

        self._watermark = to_block

        elapsed = time.perf_counter() - started
        metrics.BATCH_DURATION.labels(chain=self.chain.name).observe(elapsed)
        metrics.LAST_INDEXED_BLOCK.labels(chain=self.chain.name).set(to_block)
        for record in records:
            metrics.EVENTS_INDEXED.labels(chain=self.chain.name, variant=record.kind.value).inc()

        behind = ""
        if height is not None:
            metrics.BLOCKS_BEHIND.labels(chain=self.chain.name).set(height - to_block)
            behind = f" | Behind: {height - to_block}"
        logger.info(
            f"[Chain {self.chain_id}] Blocks {from_block}-{to_block} | "
            f"Events: {len(records)} | New: {inserted} | "
            f"Duration: {elapsed * 1000:.0f}ms{behind}"
        )
        return inserted

    async def _next_range(self) -> Tuple[int, Optional[Tuple[int, int]]]:
        height = await self.pool.get_block_number()
        metrics.CHAIN_HEAD_BLOCK.labels(chain=self.chain.name).set(height)
        return height, next_batch_range(self._watermark, height, self.batch_size)

    async def _run(self, prepared: bool = True):
        """Main loop: scan forward batch by batch until stopped."""
        if not prepared and not await self._retry_start():
            return

        attempt = 0
        pending: Optional[Tuple[int, int]] = None
        height: Optional[int] = None

        while not self._stop_event.is_set():
            try:
                if pending is None:
                    height, pending = await self._next_range()
                    if pending is None:
                        logger.debug(f"[Chain {self.chain_id}] Up to date at block {self._watermark}, waiting for new blocks...")
                        if await self._wait(self.settings.poll_interval):
                            break
                        continue

                await self.process_range(*pending, height=height)
                pending = None
                attempt = 0

            except Exception as e:
                where = f"batch {pending[0]}-{pending[1]}" if pending else "height query"
                if is_transient(e) and attempt < self.settings.max_retries:
                    delay = compute_backoff(attempt, self.settings.retry_delay, self.settings.max_backoff_delay)
                    attempt += 1
                    logger.warning(
                        f"[Chain {self.chain_id}] Retrying {where} in {delay:.1f}s, "
                        f"attempt {attempt}/{self.settings.max_retries}: {e}"
                    )
                    self.state = IndexerState.BACKOFF_WAIT
                    stopped = await self._wait(delay)
                    self.state = IndexerState.RUNNING
                    if stopped:
                        break
                else:
                    logger.error(f"[Chain {self.chain_id}] Error indexing {where}: {e}")
                    logger.debug(f"[Chain {self.chain_id}] Full traceback:\n{traceback.format_exc()}")
                    if await self._wait(self.settings.poll_interval):
                        break
