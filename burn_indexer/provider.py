"""RPC endpoint pool with health checks and failover."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from aiohttp import ClientTimeout
from web3 import AsyncWeb3

from burn_indexer import metrics
from burn_indexer.config import ChainDescriptor, get_settings
from burn_indexer.errors import PermanentConfigFault, TransientRpcFault, is_transient
from burn_indexer.models import EndpointHealth

logger = logging.getLogger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[str], Any]


def default_client_factory(timeout: float) -> ClientFactory:
    """Build AsyncWeb3 clients over HTTP with the given request timeout."""
    def factory(url: str) -> AsyncWeb3:
        return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            url, request_kwargs={"timeout": ClientTimeout(total=timeout)}
        ))
    return factory


class EndpointPool:
    """
    Keeps one active RPC endpoint per chain out of several candidates.

    Every endpoint is checked periodically; the active one is replaced by the
    fastest healthy alternative when it fails in a way that warrants it.
    """

    def __init__(
        self,
        chain: ChainDescriptor,
        urls: Optional[Sequence[str]] = None,
        client_factory: Optional[ClientFactory] = None,
        max_retries: Optional[int] = None,
        min_switch_interval: Optional[float] = None,
        probe_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.chain = chain
        self.chain_id = chain.chain_id
        self.urls: List[str] = list(urls if urls is not None else chain.rpc_urls)
        if not self.urls:
            raise PermanentConfigFault(f"No RPC endpoints configured for chain {chain.name}")

        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.min_switch_interval = (
            min_switch_interval if min_switch_interval is not None else settings.min_switch_interval
        )
        self.probe_interval = probe_interval if probe_interval is not None else settings.probe_interval
        self._clock = clock

        factory = client_factory or default_client_factory(settings.rpc_timeout)
        self._clients: Dict[str, Any] = {}
        self._health: Dict[str, EndpointHealth] = {}
        now = time.time()
        for url in self.urls:
            self._clients[url] = factory(url)
            self._health[url] = EndpointHealth(url=url, last_success=now)

        self._active_url = self.urls[0]
        self._last_switch: Optional[float] = None
        self._stop_event = asyncio.Event()
        self._check_task: Optional[asyncio.Task] = None

        logger.info(f"[Chain {self.chain_id}] Initialized endpoint pool with {len(self.urls)} RPC endpoints")

    @property
    def active_url(self) -> str:
        return self._active_url

    def active(self) -> Any:
        """Return the client for the active endpoint. Never performs I/O."""
        return self._clients[self._active_url]

    def health(self) -> List[EndpointHealth]:
        return [self._health[url] for url in self.urls]

    def get_health(self, url: str) -> EndpointHealth:
        return self._health[url]

    async def call(self, fn: Callable[[Any], Awaitable[T]]) -> T:
        """
        Run a query against the active endpoint.

        A failure is offered to evaluate_switch and then re-raised to the caller,
        transient faults wrapped in TransientRpcFault.

        Args:
            fn: Coroutine function receiving the active client

        Returns:
            Whatever fn returns
        """
        url = self._active_url
        try:
            return await fn(self._clients[url])
        except Exception as e:
            metrics.RPC_ERRORS.labels(chain=self.chain.name).inc()
            await self.evaluate_switch(url, e)
            if is_transient(e) and not isinstance(e, TransientRpcFault):
                raise TransientRpcFault(str(e) or type(e).__name__) from e
            raise

    async def get_block_number(self) -> int:
        return await self.call(lambda w3: w3.eth.block_number)

    async def probe_all(self):
        """Query the current height on every endpoint and record the outcome."""
        for url in self.urls:
            client = self._clients[url]
            health = self._health[url]
            try:
                start = time.perf_counter()
                block_number = await client.eth.block_number
                latency_ms = (time.perf_counter() - start) * 1000

                if not block_number:
                    raise ValueError("Invalid block number response")

                health.last_success = time.time()
                health.latency_ms = latency_ms
                health.is_healthy = True
                health.failure_count = 0
                health.current_block = block_number

                metrics.ENDPOINT_HEALTHY.labels(chain=self.chain.name, url=url).set(1)
                metrics.ENDPOINT_LATENCY.labels(chain=self.chain.name, url=url).set(latency_ms)
                logger.debug(f"[Chain {self.chain_id}] Provider {url} is healthy (Block: {block_number}) (Latency: {latency_ms:.0f}ms)")
            except Exception as e:
                health.last_failure = time.time()
                health.failure_count += 1
                health.is_healthy = False

                metrics.ENDPOINT_HEALTHY.labels(chain=self.chain.name, url=url).set(0)
                logger.warning(f"[Chain {self.chain_id}] Provider {url} failed health check: {e}")

                if url == self._active_url:
                    await self.evaluate_switch(url, e)

    async def evaluate_switch(self, failing_url: str, error: BaseException) -> bool:
        """
        Decide whether to move away from a failing endpoint, and do so.

        Switches only when the failing endpoint is the active one, the failure is
        transient or the endpoint has reached the retry ceiling, and the last
        switch is at least min_switch_interval old.

        Returns:
            True if the active endpoint changed
        """
        try:
            if failing_url != self._active_url:
                return False

            health = self._health[failing_url]
            if not (is_transient(error) or health.failure_count >= self.max_retries):
                return False

            now = self._clock()
            if self._last_switch is not None and now - self._last_switch < self.min_switch_interval:
                logger.debug(f"[Chain {self.chain_id}] Switch suppressed, last switch {now - self._last_switch:.1f}s ago")
                return False

            candidates = sorted(
                (h for url, h in self._health.items() if h.is_healthy and url != failing_url),
                key=lambda h: h.latency_ms,
            )
            if not candidates:
                logger.warning(f"[Chain {self.chain_id}] No healthy providers available, continuing with {failing_url}")
                return False

            self._active_url = candidates[0].url
            self._last_switch = now
            metrics.ENDPOINT_SWITCHES.labels(chain=self.chain.name).inc()
            logger.info(f"[Chain {self.chain_id}] Switched RPC provider from {failing_url} to {self._active_url}")
            return True
        except Exception as e:
            logger.error(f"[Chain {self.chain_id}] Error evaluating provider switch: {e}")
            return False

    async def _check_loop(self):
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.probe_interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.probe_all()
            except Exception as e:
                logger.error(f"[Chain {self.chain_id}] Endpoint health check error: {e}")

    def start(self):
        """Start the periodic endpoint check task."""
        if self._check_task and not self._check_task.done():
            return
        self._stop_event.clear()
        self._check_task = asyncio.create_task(self._check_loop())

    async def close(self):
        """Stop probing and release every client's HTTP session."""
        self._stop_event.set()
        if self._check_task:
            await self._check_task
            self._check_task = None

        for url, client in self._clients.items():
            try:
                await client.provider.disconnect()
            except Exception as e:
                logger.error(f"[Chain {self.chain_id}] Error closing provider {url}: {e}")
