"""Configuration management for the burn indexer."""

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Dict, Optional, Tuple
import json
import logging
import os

logger = logging.getLogger(__name__)


class ContractAddresses(BaseModel):
    """The three contracts indexed on every chain."""
    model_config = ConfigDict(frozen=True)

    token: str
    burn_contract: str
    position_contract: str


class ChainDescriptor(BaseModel):
    """Static, immutable description of a single chain."""
    model_config = ConfigDict(frozen=True)

    key: str
    chain_id: int
    name: str
    rpc_urls: Tuple[str, ...]
    contracts: ContractAddresses
    start_block: int
    batch_size: Optional[int] = None
    gas_price: Optional[str] = None


# Built-in chain catalog, keyed by the names accepted in ENABLED_CHAINS
CHAINS: Dict[str, ChainDescriptor] = {
    "base": ChainDescriptor(
        key="base",
        chain_id=8453,
        name="Base",
        rpc_urls=(
            "https://base.drpc.org",
            "https://1rpc.io/base",
            "https://mainnet.base.org",
            "https://base.llamarpc.com",
            "https://base-rpc.publicnode.com",
            "https://base.meowrpc.com",
        ),
        contracts=ContractAddresses(
            token="0xffcbF84650cE02DaFE96926B37a0ac5E34932fa5",
            burn_contract="0xe89AFDeFeBDba033f6e750615f0A0f1A37C78c4A",
            position_contract="0x305c60d2fef49fadfee67ec530de98f67bac861d",
        ),
        start_block=29193678,
        gas_price="0.005",
    ),
    "ethereum": ChainDescriptor(
        key="ethereum",
        chain_id=1,
        name="Ethereum",
        rpc_urls=(
            "https://ethereum.publicnode.com",
            "https://eth.llamarpc.com",
            "https://ethereum.blockpi.network/v1/rpc/public",
            "https://eth-pokt.nodies.app",
        ),
        contracts=ContractAddresses(
            token="0x06450dEe7FD2Fb8E39061434BAbCFC05599a6Fb8",
            burn_contract="0x32714eF2eD46EDa5C23C885462a9e439F4CBD7FF",
            position_contract="0x3b762aA4902e1D2b3CDb89B27E1BCF2012Edd22F",
        ),
        start_block=22551915,
        gas_price="5",
    ),
    "polygon": ChainDescriptor(
        key="polygon",
        chain_id=137,
        name="Polygon",
        rpc_urls=(
            "https://polygon.drpc.org",
            "https://1rpc.io/matic",
            "https://polygon-rpc.com",
            "https://polygon-bor-rpc.publicnode.com",
            "https://polygon.meowrpc.com",
        ),
        contracts=ContractAddresses(
            token="0x2AB0e9e4eE70FFf1fB9D67031E44F6410170d00e",
            burn_contract="0xF6143C6134Be3c3FD3431467D1252A2d18C89CDE",
            position_contract="0xe89AFDeFeBDba033f6e750615f0A0f1A37C78c4A",
        ),
        start_block=71338833,
        gas_price="300",
    ),
    "optimism": ChainDescriptor(
        key="optimism",
        chain_id=10,
        name="Optimism",
        rpc_urls=(
            "https://optimism.drpc.org",
            "https://mainnet.optimism.io",
            "https://1rpc.io/op",
            "https://optimism-rpc.publicnode.com",
        ),
        contracts=ContractAddresses(
            token="0xeB585163DEbB1E637c6D617de3bEF99347cd75c8",
            burn_contract="0x9d16374c01Cf785b6dB5B02A830E00C40c5381D8",
            position_contract="0xd7dd1997ed8d5b836099e5d28fed1a9d8e9cc723",
        ),
        start_block=135077350,
        gas_price="0.0001",
        batch_size=50,
    ),
    "pulsechain": ChainDescriptor(
        key="pulsechain",
        chain_id=369,
        name="PulseChain",
        rpc_urls=(
            "https://rpc.pulsechain.com",
            "https://pulsechain.publicnode.com",
            "https://rpc-pulsechain.g4mm4.io",
        ),
        contracts=ContractAddresses(
            token="0x8a7FDcA264e87b6da72D000f22186B4403081A2a",
            burn_contract="0xe89AFDeFeBDba033f6e750615f0A0f1A37C78c4A",
            position_contract="0x305C60D2fEf49FADfEe67EC530DE98f67bac861D",
        ),
        start_block=23431230,
        gas_price="2500000",
    ),
    "bsc": ChainDescriptor(
        key="bsc",
        chain_id=56,
        name="BSC",
        rpc_urls=(
            "https://bsc-rpc.publicnode.com",
            "https://bsc.meowrpc.com",
            "https://bsc-dataseed.binance.org",
            "https://bsc-dataseed1.binance.org",
            "https://rpc-bsc.48.club",
        ),
        contracts=ContractAddresses(
            token="0x2AB0e9e4eE70FFf1fB9D67031E44F6410170d00e",
            burn_contract="0x12cf65e044a59e85f38497c413f24de6d33250ba",
            position_contract="0xf0ca18f2462936df8332f88c4cf27a03d829dbb2",
        ),
        start_block=50300000,
        gas_price="0.1",
        batch_size=50,
    ),
    "avalanche": ChainDescriptor(
        key="avalanche",
        chain_id=43114,
        name="Avalanche",
        rpc_urls=(
            "https://avalanche.drpc.org",
            "https://1rpc.io/avax/c",
            "https://api.avax.network/ext/bc/C/rpc",
            "https://avalanche-c-chain-rpc.publicnode.com",
        ),
        contracts=ContractAddresses(
            token="0xC0C5AA69Dbe4d6DDdfBc89c0957686ec60F24389",
            burn_contract="0xE2D8836925B8684F47CaD8A90fbC27868f5B3922",
            position_contract="0x32714eF2eD46EDa5C23C885462a9e439F4CBD7FF",
        ),
        start_block=62267210,
        gas_price="25",
    ),
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "./data/indexer.db"

    # Indexer settings (intervals and delays in seconds)
    poll_interval: float = 15.0
    batch_size: int = 250
    max_retries: int = 5
    retry_delay: float = 5.0
    max_backoff_delay: float = 60.0
    reorg_depth: int = 20
    timestamp_cache_size: int = 1000

    # Endpoint pool and health monitoring
    rpc_timeout: float = 60.0
    min_switch_interval: float = 10.0
    probe_interval: float = 15.0
    health_check_interval: float = 60.0

    # Comma-separated chain keys, e.g. "base,ethereum". Empty means all chains.
    enabled_chains: Optional[str] = None

    # Replaces the built-in catalog when set.
    # Format: JSON array of chain descriptors
    # Example: [{"key": "base", "chain_id": 8453, "name": "Base", "rpc_urls": ["..."],
    #            "contracts": {"token": "...", "burn_contract": "...", "position_contract": "..."},
    #            "start_block": 29193678}]
    chains_config: Optional[str] = None

    # Observability
    metrics_port: Optional[int] = None
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    def _load_catalog(self) -> Dict[str, ChainDescriptor]:
        """Return the chain catalog, from chains_config JSON or the built-in one."""
        if not self.chains_config:
            return dict(CHAINS)

        try:
            configs = json.loads(self.chains_config)
            catalog = {}
            for config in configs:
                chain = ChainDescriptor(**config)
                catalog[chain.key] = chain
            return catalog
        except (json.JSONDecodeError, TypeError) as e:
            raise ValueError(f"Invalid chains_config JSON: {e}")

    def enabled_chain_keys(self) -> Optional[List[str]]:
        """Parse the ENABLED_CHAINS allowlist. None means every known chain."""
        if not self.enabled_chains:
            return None
        return [x.strip().lower() for x in self.enabled_chains.split(",") if x.strip()]

    def get_chains(self) -> List[ChainDescriptor]:
        """Resolve the enabled chains with per-chain endpoint overrides applied."""
        catalog = self._load_catalog()
        keys = self.enabled_chain_keys()
        if keys is None:
            keys = list(catalog.keys())

        chains = []
        for key in keys:
            chain = catalog.get(key)
            if chain is None:
                logger.warning(f"Chain {key} not found in configuration")
                continue
            chains.append(apply_endpoint_override(chain))

        return chains


def apply_endpoint_override(chain: ChainDescriptor) -> ChainDescriptor:
    """
    Replace a chain's endpoints from CHAIN_<KEY>_RPC_URLS or CHAIN_<KEY>_RPC_URL.

    The list form wins when both are set.
    """
    prefix = f"CHAIN_{chain.key.upper()}"
    urls_str = os.getenv(f"{prefix}_RPC_URLS", "")
    urls = tuple(x.strip() for x in urls_str.split(",") if x.strip())
    if not urls:
        single = os.getenv(f"{prefix}_RPC_URL", "").strip()
        urls = (single,) if single else ()

    if not urls:
        return chain
    return chain.model_copy(update={"rpc_urls": urls})


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
