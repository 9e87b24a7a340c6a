"""Pydantic models for indexed events, health and status."""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class EventVariant(str, Enum):
    """The closed set of event kinds the indexer records."""
    BURN = "burn"
    SWAP_AND_BURN = "swap_and_burn"
    LIQUIDITY_ADDED = "liquidity_added"
    POSITION_CREATED = "position_created"
    POSITION_CLAIMED = "position_claimed"


class EventRecordBase(BaseModel):
    """Fields shared by every decoded event."""
    model_config = ConfigDict(frozen=True)

    chain_id: int
    tx_hash: str
    log_index: int
    block_number: int
    block_timestamp: datetime
    user_address: str


class BurnRecord(EventRecordBase):
    """Token transfer into the burn contract."""
    kind: Literal[EventVariant.BURN] = EventVariant.BURN
    amount: int


class SwapAndBurnRecord(EventRecordBase):
    """Another token swapped into the burn token and burned."""
    kind: Literal[EventVariant.SWAP_AND_BURN] = EventVariant.SWAP_AND_BURN
    token_address: str
    token_amount: int
    xen_amount: int


class LiquidityAddedRecord(EventRecordBase):
    kind: Literal[EventVariant.LIQUIDITY_ADDED] = EventVariant.LIQUIDITY_ADDED
    token_address: str
    token_amount: int
    xen_amount: int


class PositionCreatedRecord(EventRecordBase):
    """A locked burn position minted as an NFT."""
    kind: Literal[EventVariant.POSITION_CREATED] = EventVariant.POSITION_CREATED
    token_id: int
    amount: int
    lock_duration: int  # days

    @property
    def maturity_date(self) -> datetime:
        return self.block_timestamp + timedelta(days=self.lock_duration)


class PositionClaimedRecord(EventRecordBase):
    kind: Literal[EventVariant.POSITION_CLAIMED] = EventVariant.POSITION_CLAIMED
    token_id: int
    base_amount: int
    bonus_amount: int


EventRecord = Union[
    BurnRecord,
    SwapAndBurnRecord,
    LiquidityAddedRecord,
    PositionCreatedRecord,
    PositionClaimedRecord,
]


class IndexingBatchRecord(BaseModel):
    """One successfully persisted batch, kept for observability."""
    chain_id: int
    start_block: int
    end_block: int
    burns_indexed: int = 0
    swaps_indexed: int = 0
    liquidity_indexed: int = 0
    positions_indexed: int = 0
    claims_indexed: int = 0
    duration_ms: int = 0

    @classmethod
    def from_records(cls, chain_id: int, start_block: int, end_block: int,
                     records: List[EventRecord], duration_ms: int) -> "IndexingBatchRecord":
        counts = {variant: 0 for variant in EventVariant}
        for record in records:
            counts[record.kind] += 1
        return cls(
            chain_id=chain_id,
            start_block=start_block,
            end_block=end_block,
            burns_indexed=counts[EventVariant.BURN],
            swaps_indexed=counts[EventVariant.SWAP_AND_BURN],
            liquidity_indexed=counts[EventVariant.LIQUIDITY_ADDED],
            positions_indexed=counts[EventVariant.POSITION_CREATED],
            claims_indexed=counts[EventVariant.POSITION_CLAIMED],
            duration_ms=duration_ms,
        )


class EndpointHealth(BaseModel):
    """Process-local liveness of one RPC endpoint."""
    url: str
    last_success: float
    last_failure: float = 0.0
    failure_count: int = 0
    latency_ms: float = 0.0
    is_healthy: bool = True
    current_block: Optional[int] = None


class ChainHealthSnapshot(BaseModel):
    """Latest health check result for a chain (one row per chain)."""
    chain_id: int
    is_healthy: bool
    error_message: Optional[str] = None
    blocks_behind: Optional[int] = None
    rpc_latency_ms: Optional[int] = None
    current_rpc_url: Optional[str] = None
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ChainStatus(BaseModel):
    """Status of one chain as exposed to the reporting layer."""
    chain_id: int
    chain_name: str
    last_indexed_block: Optional[int] = None
    last_successful_index: Optional[datetime] = None
    is_healthy: bool = False
    blocks_behind: Optional[int] = None
    error_message: Optional[str] = None
    rpc_latency_ms: Optional[int] = None
    current_rpc_url: Optional[str] = None
    checked_at: Optional[datetime] = None
    total_burns: int = 0
    total_positions: int = 0
    health_status: str = "Unknown"


class ChainStatusResponse(BaseModel):
    """Status for every registered chain."""
    chains: List[ChainStatus]
