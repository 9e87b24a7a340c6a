"""Prometheus metrics for the indexer."""

from prometheus_client import Counter, Gauge, Histogram

LAST_INDEXED_BLOCK = Gauge(
    'indexer_last_indexed_block',
    'Last indexed block number',
    ['chain']
)
CHAIN_HEAD_BLOCK = Gauge(
    'indexer_chain_head_block',
    'Latest block reported by the active endpoint',
    ['chain']
)
BLOCKS_BEHIND = Gauge(
    'indexer_blocks_behind',
    'Number of blocks behind chain head',
    ['chain']
)
EVENTS_INDEXED = Counter(
    'indexer_events_indexed_total',
    'Decoded events submitted for persistence',
    ['chain', 'variant']
)
BATCH_DURATION = Histogram(
    'indexer_batch_duration_seconds',
    'Time to fetch and persist one batch',
    ['chain']
)
RPC_ERRORS = Counter(
    'indexer_rpc_errors_total',
    'Failed RPC queries',
    ['chain']
)
ENDPOINT_SWITCHES = Counter(
    'indexer_endpoint_switches_total',
    'Active endpoint switches',
    ['chain']
)
ENDPOINT_HEALTHY = Gauge(
    'indexer_endpoint_healthy',
    'Whether an endpoint passed its last health check (1=yes, 0=no)',
    ['chain', 'url']
)
ENDPOINT_LATENCY = Gauge(
    'indexer_endpoint_latency_ms',
    'Latency of the last successful health check',
    ['chain', 'url']
)
CHAIN_HEALTHY = Gauge(
    'indexer_chain_healthy',
    'Health monitor verdict per chain (1=healthy, 0=unhealthy)',
    ['chain']
)
