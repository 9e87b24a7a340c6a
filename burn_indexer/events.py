"""Event signatures, log classification and decoding."""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from eth_abi import decode
from hexbytes import HexBytes
from web3 import Web3

from burn_indexer.config import ChainDescriptor
from burn_indexer.models import (
    BurnRecord,
    EventRecord,
    EventVariant,
    LiquidityAddedRecord,
    PositionClaimedRecord,
    PositionCreatedRecord,
    SwapAndBurnRecord,
)


def to_hex(value: Any) -> str:
    """Lowercase 0x-prefixed hex for bytes, HexBytes or hex strings."""
    return "0x" + bytes(HexBytes(value)).hex()


def event_topic(signature: str) -> str:
    return to_hex(Web3.keccak(text=signature))


def topic_to_address(topic: Any) -> str:
    # Topics: 32-byte left-padded address
    return Web3.to_checksum_address("0x" + to_hex(topic)[-40:])


def address_to_topic(address: str) -> str:
    return "0x" + "0" * 24 + address.lower()[2:]


# Event signatures per contract
TRANSFER_SIGNATURE = "Transfer(address,address,uint256)"
SWAP_AND_BURN_SIGNATURE = "SwapAndBurn(address,address,uint256,uint256)"
LIQUIDITY_ADDED_SIGNATURE = "LiquidityAdded(address,address,uint256,uint256)"
BURN_LOCK_CREATED_SIGNATURE = "BurnLockCreated(address,uint256,uint256,uint256)"
BURN_LOCK_CLAIMED_SIGNATURE = "BurnLockClaimed(address,uint256,uint256,uint256)"

TRANSFER_TOPIC = event_topic(TRANSFER_SIGNATURE)
SWAP_AND_BURN_TOPIC = event_topic(SWAP_AND_BURN_SIGNATURE)
LIQUIDITY_ADDED_TOPIC = event_topic(LIQUIDITY_ADDED_SIGNATURE)
BURN_LOCK_CREATED_TOPIC = event_topic(BURN_LOCK_CREATED_SIGNATURE)
BURN_LOCK_CLAIMED_TOPIC = event_topic(BURN_LOCK_CLAIMED_SIGNATURE)

# Which contract (by role) emits which variant
VARIANT_SOURCES: Dict[EventVariant, Tuple[str, str]] = {
    EventVariant.BURN: ("token", TRANSFER_TOPIC),
    EventVariant.SWAP_AND_BURN: ("burn_contract", SWAP_AND_BURN_TOPIC),
    EventVariant.LIQUIDITY_ADDED: ("burn_contract", LIQUIDITY_ADDED_TOPIC),
    EventVariant.POSITION_CREATED: ("position_contract", BURN_LOCK_CREATED_TOPIC),
    EventVariant.POSITION_CLAIMED: ("position_contract", BURN_LOCK_CLAIMED_TOPIC),
}


class EventClassifier:
    """
    Maps (emitting contract, event topic) to an event variant for one chain.

    Built once per chain indexer from its descriptor.
    """

    def __init__(self, chain: ChainDescriptor):
        self.chain = chain
        self._table: Dict[Tuple[str, str], EventVariant] = {}
        for variant, (role, topic) in VARIANT_SOURCES.items():
            address = getattr(chain.contracts, role).lower()
            self._table[(address, topic)] = variant

    def classify(self, address: str, topic0: Any) -> Optional[EventVariant]:
        return self._table.get((address.lower(), to_hex(topic0)))

    def log_filter(self, variant: EventVariant, from_block: int, to_block: int) -> Dict[str, Any]:
        """Build the eth_getLogs filter for one variant over a block range."""
        role, topic = VARIANT_SOURCES[variant]
        topics: List[Optional[str]] = [topic]
        if variant == EventVariant.BURN:
            # Only transfers into the burn contract are burns
            topics += [None, address_to_topic(self.chain.contracts.burn_contract)]

        return {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": Web3.to_checksum_address(getattr(self.chain.contracts, role)),
            "topics": topics,
        }

    def decode(self, log: Any, block_timestamp: int) -> Optional[EventRecord]:
        """
        Decode a raw log into an event record.

        Args:
            log: Log entry as returned by eth_getLogs
            block_timestamp: Unix timestamp of the log's block

        Returns:
            The event record, or None if the log is not one we index
        """
        topics = log["topics"]
        if not topics:
            return None

        variant = self.classify(log["address"], topics[0])
        if variant is None:
            return None

        base = {
            "chain_id": self.chain.chain_id,
            "tx_hash": to_hex(log["transactionHash"]),
            "log_index": int(log["logIndex"]),
            "block_number": int(log["blockNumber"]),
            "block_timestamp": datetime.fromtimestamp(block_timestamp, tz=timezone.utc),
        }
        data = bytes(HexBytes(log["data"]))
        return DECODERS[variant](self.chain, topics, data, base)


def _decode_burn(chain: ChainDescriptor, topics: List[Any], data: bytes,
                 base: Dict[str, Any]) -> Optional[EventRecord]:
    to_addr = topic_to_address(topics[2])
    if to_addr.lower() != chain.contracts.burn_contract.lower():
        return None
    (value,) = decode(["uint256"], data)
    return BurnRecord(user_address=topic_to_address(topics[1]), amount=value, **base)


def _decode_swap_and_burn(chain: ChainDescriptor, topics: List[Any], data: bytes,
                          base: Dict[str, Any]) -> EventRecord:
    token, token_amount, xen_amount = decode(["address", "uint256", "uint256"], data)
    return SwapAndBurnRecord(
        user_address=topic_to_address(topics[1]),
        token_address=Web3.to_checksum_address(token),
        token_amount=token_amount,
        xen_amount=xen_amount,
        **base,
    )


def _decode_liquidity_added(chain: ChainDescriptor, topics: List[Any], data: bytes,
                            base: Dict[str, Any]) -> EventRecord:
    token, token_amount, xen_amount = decode(["address", "uint256", "uint256"], data)
    return LiquidityAddedRecord(
        user_address=topic_to_address(topics[1]),
        token_address=Web3.to_checksum_address(token),
        token_amount=token_amount,
        xen_amount=xen_amount,
        **base,
    )


def _decode_position_created(chain: ChainDescriptor, topics: List[Any], data: bytes,
                             base: Dict[str, Any]) -> EventRecord:
    amount, lock_duration = decode(["uint256", "uint256"], data)
    return PositionCreatedRecord(
        user_address=topic_to_address(topics[1]),
        token_id=int(to_hex(topics[2]), 16),
        amount=amount,
        lock_duration=lock_duration,
        **base,
    )


def _decode_position_claimed(chain: ChainDescriptor, topics: List[Any], data: bytes,
                             base: Dict[str, Any]) -> EventRecord:
    base_amount, bonus_amount = decode(["uint256", "uint256"], data)
    return PositionClaimedRecord(
        user_address=topic_to_address(topics[1]),
        token_id=int(to_hex(topics[2]), 16),
        base_amount=base_amount,
        bonus_amount=bonus_amount,
        **base,
    )


DECODERS: Dict[EventVariant, Callable[..., Optional[EventRecord]]] = {
    EventVariant.BURN: _decode_burn,
    EventVariant.SWAP_AND_BURN: _decode_swap_and_burn,
    EventVariant.LIQUIDITY_ADDED: _decode_liquidity_added,
    EventVariant.POSITION_CREATED: _decode_position_created,
    EventVariant.POSITION_CLAIMED: _decode_position_claimed,
}
