"""Tests for Config."""

import pytest

from paytrail.core.config import Config
from paytrail.core.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "PAYTRAIL_RPC_URL",
        "PAYTRAIL_START_BLOCK",
        "PAYTRAIL_REPUTATION_MODE",
        "PAYTRAIL_STORAGE_BACKEND",
        "PAYTRAIL_MAX_BLOCKS_PER_RUN",
    ):
        monkeypatch.delenv(name, raising=False)


class TestConfig:
    def test_defaults(self):
        config = Config(rpc_urls=("http://rpc.test",))
        assert config.storage_backend == "memory"
        assert config.reputation_mode == "batch"
        assert config.token_decimals == 6
        assert config.payment_indexer_interval == 300.0
        assert config.transaction_indexer_interval == 60.0

    def test_requires_rpc_url(self):
        with pytest.raises(ConfigurationError):
            Config(rpc_urls=())

    def test_rejects_unknown_reputation_mode(self):
        with pytest.raises(ConfigurationError):
            Config(rpc_urls=("http://rpc.test",), reputation_mode="realtime")

    def test_rejects_non_positive_batch(self):
        with pytest.raises(ConfigurationError):
            Config(rpc_urls=("http://rpc.test",), max_blocks_per_run=0)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("PAYTRAIL_RPC_URL", "http://a.test, http://b.test,")
        monkeypatch.setenv("PAYTRAIL_START_BLOCK", "1200")
        monkeypatch.setenv("PAYTRAIL_REPUTATION_MODE", "incremental")
        monkeypatch.setenv("PAYTRAIL_MAX_BLOCKS_PER_RUN", "250")

        config = Config.from_env()

        assert config.rpc_urls == ("http://a.test", "http://b.test")
        assert config.start_block == 1200
        assert config.reputation_mode == "incremental"
        assert config.max_blocks_per_run == 250

    def test_from_env_missing_rpc(self):
        with pytest.raises(ConfigurationError):
            Config.from_env()

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv("PAYTRAIL_STORAGE_BACKEND", "redis")
        config = Config.from_env(rpc_urls=["http://rpc.test"], storage_backend="memory")
        assert config.storage_backend == "memory"
        assert config.rpc_urls == ("http://rpc.test",)

    def test_with_updates(self):
        config = Config(rpc_urls=("http://rpc.test",))
        updated = config.with_updates(batch_size=5)
        assert updated.batch_size == 5
        assert config.batch_size == 100
        assert updated.rpc_urls == config.rpc_urls
