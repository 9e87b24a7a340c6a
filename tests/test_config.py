"""Tests for settings, chain catalog resolution and error classification."""

import asyncio
import json
import logging

import aiohttp
import pytest

from burn_indexer.config import CHAINS, Settings, apply_endpoint_override
from burn_indexer.errors import (
    PermanentConfigFault,
    PersistenceFault,
    TransientRpcFault,
    is_transient,
)

from conftest import URL_A, URL_B, make_chain


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.poll_interval == 15.0
        assert settings.batch_size == 250
        assert settings.max_retries == 5
        assert settings.retry_delay == 5.0
        assert settings.max_backoff_delay == 60.0
        assert settings.reorg_depth == 20
        assert settings.min_switch_interval == 10.0
        assert settings.probe_interval == 15.0
        assert settings.health_check_interval == 60.0
        assert settings.timestamp_cache_size == 1000

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("POLL_INTERVAL", "3")
        monkeypatch.setenv("REORG_DEPTH", "50")
        settings = Settings(_env_file=None)
        assert settings.poll_interval == 3.0
        assert settings.reorg_depth == 50


class TestChainResolution:
    def test_all_catalog_chains_by_default(self):
        chains = Settings(_env_file=None).get_chains()
        assert [c.key for c in chains] == list(CHAINS.keys())

    def test_catalog_descriptors(self):
        base = CHAINS["base"]
        assert base.chain_id == 8453
        assert base.start_block == 29193678
        assert CHAINS["optimism"].batch_size == 50
        assert CHAINS["bsc"].batch_size == 50
        assert all(chain.rpc_urls for chain in CHAINS.values())

    def test_enabled_chains_allowlist(self, caplog):
        settings = Settings(_env_file=None, enabled_chains="Base, polygon,unknownchain")
        with caplog.at_level(logging.WARNING):
            chains = settings.get_chains()

        assert [c.chain_id for c in chains] == [8453, 137]
        assert "unknownchain" in caplog.text

    def test_chains_config_replaces_catalog(self):
        chain = make_chain(key="devnet", chain_id=31337, name="Devnet")
        settings = Settings(_env_file=None, chains_config=json.dumps([chain.model_dump(mode="json")]))

        chains = settings.get_chains()
        assert chains == [chain]

    def test_invalid_chains_config(self):
        settings = Settings(_env_file=None, chains_config="{not json")
        with pytest.raises(ValueError):
            settings.get_chains()

    def test_endpoint_list_override(self, monkeypatch):
        monkeypatch.setenv("CHAIN_BASE_RPC_URLS", f"{URL_A}, {URL_B}")
        monkeypatch.setenv("CHAIN_BASE_RPC_URL", "https://ignored.test")
        chain = apply_endpoint_override(CHAINS["base"])
        assert chain.rpc_urls == (URL_A, URL_B)

    def test_single_endpoint_override(self, monkeypatch):
        monkeypatch.setenv("CHAIN_POLYGON_RPC_URL", URL_A)
        chain = apply_endpoint_override(CHAINS["polygon"])
        assert chain.rpc_urls == (URL_A,)
        # Catalog entry untouched
        assert CHAINS["polygon"].rpc_urls != (URL_A,)

    def test_no_override(self, monkeypatch):
        monkeypatch.delenv("CHAIN_AVALANCHE_RPC_URLS", raising=False)
        monkeypatch.delenv("CHAIN_AVALANCHE_RPC_URL", raising=False)
        assert apply_endpoint_override(CHAINS["avalanche"]) == CHAINS["avalanche"]


class TestErrorClassification:
    @pytest.mark.parametrize("message", [
        "429 Client Error: Too Many Requests",
        "rate limit reached",
        "query returned more than 10000 results, limit exceeded",
        "Request timed out",
        "connect ECONNREFUSED 127.0.0.1:8545",
        "network error",
    ])
    def test_transient_messages(self, message):
        assert is_transient(Exception(message))

    def test_transient_types(self):
        assert is_transient(asyncio.TimeoutError())
        assert is_transient(ConnectionResetError())
        assert is_transient(aiohttp.ClientConnectionError("reset"))
        assert is_transient(TransientRpcFault("anything"))

    def test_permanent_errors(self):
        assert not is_transient(ValueError("execution reverted"))
        assert not is_transient(PermanentConfigFault("timeout in the message does not matter"))
        assert not is_transient(PersistenceFault("database is locked"))
