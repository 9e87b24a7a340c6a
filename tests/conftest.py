"""Shared fixtures: fake RPC nodes, log builders and a temporary database."""

import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from eth_abi import encode
from hexbytes import HexBytes

from burn_indexer.config import ChainDescriptor, ContractAddresses, Settings
from burn_indexer.database import Database
from burn_indexer.events import (
    BURN_LOCK_CLAIMED_TOPIC,
    BURN_LOCK_CREATED_TOPIC,
    LIQUIDITY_ADDED_TOPIC,
    SWAP_AND_BURN_TOPIC,
    TRANSFER_TOPIC,
    address_to_topic,
    to_hex,
)

TOKEN = "0x" + "11" * 20
BURN_CONTRACT = "0x" + "22" * 20
POSITION_CONTRACT = "0x" + "33" * 20
USER = "0x" + "aa" * 20
OTHER_USER = "0x" + "bb" * 20
SWAP_TOKEN = "0x" + "cc" * 20

URL_A = "https://rpc-a.test"
URL_B = "https://rpc-b.test"
URL_C = "https://rpc-c.test"

GENESIS_TIME = 1_700_000_000


def block_time(block_number: int) -> int:
    return GENESIS_TIME + block_number * 2


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def make_chain(**overrides) -> ChainDescriptor:
    fields = dict(
        key="base",
        chain_id=8453,
        name="Base",
        rpc_urls=(URL_A, URL_B),
        contracts=ContractAddresses(
            token=TOKEN,
            burn_contract=BURN_CONTRACT,
            position_contract=POSITION_CONTRACT,
        ),
        start_block=1000,
    )
    fields.update(overrides)
    return ChainDescriptor(**fields)


def _log(address: str, topics: List[str], data: bytes, block: int, tx: str, log_index: int) -> Dict[str, Any]:
    return {
        "address": address,
        "topics": [HexBytes(t) for t in topics],
        "data": HexBytes(data),
        "transactionHash": HexBytes(tx),
        "logIndex": log_index,
        "blockNumber": block,
    }


def burn_log(block: int, tx: str, log_index: int = 0, sender: str = USER, amount: int = 10 ** 18,
             to: str = BURN_CONTRACT) -> Dict[str, Any]:
    return _log(TOKEN, [TRANSFER_TOPIC, address_to_topic(sender), address_to_topic(to)],
                encode(["uint256"], [amount]), block, tx, log_index)


def swap_and_burn_log(block: int, tx: str, log_index: int = 1, user: str = USER,
                      token_amount: int = 500, xen_amount: int = 2 * 10 ** 18) -> Dict[str, Any]:
    return _log(BURN_CONTRACT, [SWAP_AND_BURN_TOPIC, address_to_topic(user)],
                encode(["address", "uint256", "uint256"], [SWAP_TOKEN, token_amount, xen_amount]),
                block, tx, log_index)


def liquidity_added_log(block: int, tx: str, log_index: int = 0, user: str = USER,
                        token_amount: int = 700, xen_amount: int = 3 * 10 ** 18) -> Dict[str, Any]:
    return _log(BURN_CONTRACT, [LIQUIDITY_ADDED_TOPIC, address_to_topic(user)],
                encode(["address", "uint256", "uint256"], [SWAP_TOKEN, token_amount, xen_amount]),
                block, tx, log_index)


def position_created_log(block: int, tx: str, log_index: int = 0, user: str = USER, token_id: int = 7,
                         amount: int = 4 * 10 ** 18, lock_days: int = 30) -> Dict[str, Any]:
    return _log(POSITION_CONTRACT, [BURN_LOCK_CREATED_TOPIC, address_to_topic(user), "0x" + f"{token_id:064x}"],
                encode(["uint256", "uint256"], [amount, lock_days]), block, tx, log_index)


def position_claimed_log(block: int, tx: str, log_index: int = 0, user: str = USER, token_id: int = 7,
                         base_amount: int = 4 * 10 ** 18, bonus_amount: int = 10 ** 17) -> Dict[str, Any]:
    return _log(POSITION_CONTRACT, [BURN_LOCK_CLAIMED_TOPIC, address_to_topic(user), "0x" + f"{token_id:064x}"],
                encode(["uint256", "uint256"], [base_amount, bonus_amount]), block, tx, log_index)


class FakeProvider:
    def __init__(self):
        self.disconnected = False

    async def disconnect(self):
        self.disconnected = True


class FakeEth:
    """The subset of AsyncWeb3.eth the indexer uses."""

    def __init__(self, node: "FakeNode"):
        self._node = node

    @property
    def block_number(self):
        return self._node.respond("block_number", lambda: self._node.height)

    @property
    def chain_id(self):
        return self._node.respond("chain_id", lambda: self._node.chain_id)

    def get_logs(self, event_filter: Dict[str, Any]):
        self._node.log_filters.append(event_filter)
        return self._node.respond("get_logs", lambda: self._node.logs_for(event_filter))

    def get_block(self, block_number: int):
        return self._node.respond("get_block", lambda: {"number": block_number,
                                                         "timestamp": block_time(block_number)})

    def get_code(self, address: str):
        def code():
            if address.lower() in self._node.codeless:
                return HexBytes(b"")
            return HexBytes(b"\x60\x80\x60\x40")
        return self._node.respond("get_code", code)


class FakeNode:
    """
    Stand-in for an AsyncWeb3 client bound to one endpoint.

    Failures are queued per method with fail(); times=None fails forever.
    """

    def __init__(self, url: str, chain_id: int = 8453, height: int = 2000):
        self.url = url
        self.chain_id = chain_id
        self.height = height
        self.logs: List[Dict[str, Any]] = []
        self.codeless = set()
        self.calls: List[str] = []
        self.log_filters: List[Dict[str, Any]] = []
        self.eth = FakeEth(self)
        self.provider = FakeProvider()
        self._failures: Dict[str, List[Optional[BaseException]]] = {}
        self._always: Dict[str, BaseException] = {}

    def fail(self, method: str, error: BaseException, times: Optional[int] = 1):
        if times is None:
            self._always[method] = error
        else:
            self._failures.setdefault(method, []).extend([error] * times)

    def recover(self):
        self._failures.clear()
        self._always.clear()

    async def respond(self, method: str, produce: Callable[[], Any]):
        self.calls.append(method)
        await asyncio.sleep(0)
        if method in self._always:
            raise self._always[method]
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)
        return produce()

    def logs_for(self, event_filter: Dict[str, Any]) -> List[Dict[str, Any]]:
        matched = []
        for log in self.logs:
            if log["address"].lower() != event_filter["address"].lower():
                continue
            if not event_filter["fromBlock"] <= log["blockNumber"] <= event_filter["toBlock"]:
                continue
            topics = [to_hex(t) for t in log["topics"]]
            wanted = event_filter["topics"]
            if any(w is not None and (i >= len(topics) or topics[i] != w.lower()) for i, w in enumerate(wanted)):
                continue
            matched.append(log)
        return matched

    def count(self, method: str) -> int:
        return self.calls.count(method)


class FakeNetwork:
    """URL -> FakeNode registry, usable as an EndpointPool client factory."""

    def __init__(self, chain_id: int = 8453, height: int = 2000):
        self.chain_id = chain_id
        self.height = height
        self.nodes: Dict[str, FakeNode] = {}

    def node(self, url: str) -> FakeNode:
        if url not in self.nodes:
            self.nodes[url] = FakeNode(url, self.chain_id, self.height)
        return self.nodes[url]

    def __call__(self, url: str) -> FakeNode:
        return self.node(url)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def advance(self, seconds: float):
        self.now += seconds

    def __call__(self) -> float:
        return self.now


async def wait_until(condition: Callable[[], bool], timeout: float = 2.0):
    """Poll condition until it holds, failing the test after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def chain() -> ChainDescriptor:
    return make_chain()


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_path=str(tmp_path / "indexer.db"),
        poll_interval=0.02,
        batch_size=250,
        max_retries=3,
        retry_delay=0.01,
        max_backoff_delay=0.04,
        reorg_depth=20,
        min_switch_interval=10.0,
        probe_interval=3600.0,
        health_check_interval=3600.0,
    )


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "indexer.db"))
    await database.connect()
    yield database
    await database.close()
