"""
tests/test_config.py - YAML Configuration Loader
=================================================
"""

from __future__ import annotations

import pytest

from jerkyrank.config import (
    DEFAULT_POOLS,
    DEFAULT_TIER_THRESHOLDS,
    EngineConfig,
    PoolConfig,
    config_from_dict,
    load_config,
)
from jerkyrank.errors import ValidationError


class TestLoadConfig:
    def test_missing_file_yields_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "absent.yaml")
        assert cfg == EngineConfig()
        assert cfg.batch_size == 10
        assert cfg.batch_interval_seconds == 5.0
        assert cfg.recalc_throttle_seconds == 60.0
        assert cfg.tier_thresholds == DEFAULT_TIER_THRESHOLDS
        assert cfg.forbid_rank_gaps is False

    def test_reads_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "batch_size: 25\n"
            "classification_workers: 8\n"
            "leaderboard_ttl_seconds: 30\n"
            "total_rankable_products: 120\n"
            "forbid_rank_gaps: true\n"
            "pools:\n"
            "  webhook: {pool_size: 1}\n",
            encoding="utf-8",
        )
        cfg = load_config(path)
        assert cfg.batch_size == 25
        assert cfg.classification_workers == 8
        assert cfg.leaderboard_ttl_seconds == 30.0
        assert cfg.total_rankable_products == 120
        assert cfg.forbid_rank_gaps is True
        assert cfg.pools["webhook"] == PoolConfig(pool_size=1, max_overflow=2)
        assert cfg.pools["interactive"] == DEFAULT_POOLS["interactive"]

    def test_empty_file_yields_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path) == EngineConfig()

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValidationError):
            load_config(path)


class TestConfigFromDict:
    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError, match="Unknown config keys"):
            config_from_dict({"batch_sise": 3})

    def test_partial_thresholds_merge_with_defaults(self):
        cfg = config_from_dict({"tier_thresholds": {"bronze": 30}})
        assert cfg.tier_thresholds["bronze"] == 30
        assert cfg.tier_thresholds["diamond"] == 100

    @pytest.mark.parametrize("thresholds", [
        {"silver": 30},            # below bronze
        {"gold": 60},              # equal to silver
        {"diamond": 120},          # above 100
        {"mythic": 95},            # unknown tier
    ])
    def test_bad_thresholds_rejected(self, thresholds):
        with pytest.raises(ValidationError):
            config_from_dict({"tier_thresholds": thresholds})

    @pytest.mark.parametrize("key", ["batch_size", "classification_workers", "retry_attempts"])
    def test_non_positive_counts_rejected(self, key):
        with pytest.raises(ValidationError):
            config_from_dict({key: 0})

    @pytest.mark.parametrize("value", ["yes", 1])
    def test_flags_must_be_booleans(self, value):
        with pytest.raises(ValidationError, match="forbid_rank_gaps must be true or false"):
            config_from_dict({"forbid_rank_gaps": value})

    def test_unknown_pool_rejected(self):
        with pytest.raises(ValidationError, match="Unknown pool"):
            config_from_dict({"pools": {"reporting": {"pool_size": 2}}})

    def test_config_is_frozen(self):
        cfg = config_from_dict({})
        with pytest.raises(AttributeError):
            cfg.batch_size = 99
