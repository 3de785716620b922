# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for OptimizerConfig / LLMConfig: env, dict and YAML loading."""
import pytest

from promptopt.config import LLMConfig, OptimizerConfig, load_config


_ENV_NAMES = (
    "PROMPTOPT_REPLICATES", "EVAL_REPLICATES", "PROMPTOPT_MAX_ITERATIONS",
    "OPT_ITERATIONS", "PROMPTOPT_PAIR_MIN_SIM", "PAIR_MIN_SIM",
    "PROMPTOPT_META_EVOLUTION", "PROMPTOPT_SELECTION_MODE",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestOptimizerConfig:

    def test_defaults(self):
        cfg = OptimizerConfig()
        assert cfg.replicates == 5
        assert cfg.seed_base == 12345
        assert cfg.discoverability_k == 3
        assert cfg.std_lambda == 0.25
        assert cfg.fail_penalty == 0.4
        assert cfg.pair_min_sim == 0.86
        assert cfg.pair_min_delta == 0.15
        assert cfg.pair_max_pairs == 8
        assert cfg.patch_candidates == 10
        assert cfg.min_patch_length == 20
        assert cfg.max_iterations == 10
        assert cfg.promotion_threshold == 0.01
        assert cfg.selection_mode == "nqd"
        assert cfg.max_consecutive_failures == 2
        assert cfg.persist_interval_s == 2.0
        assert cfg.task_ttl_s == 3600

    def test_from_dict_ignores_unknown(self):
        cfg = OptimizerConfig.from_dict({"replicates": 3, "no_such_key": 1})
        assert cfg.replicates == 3
        assert not hasattr(cfg, "no_such_key")

    def test_clamping(self):
        cfg = OptimizerConfig(replicates=0, pair_min_sim=1.5, hypermutation_rate=-1.0)
        assert cfg.replicates == 1
        assert cfg.pair_min_sim == 1.0
        assert cfg.hypermutation_rate == 0.0

    def test_inverted_tiers_swapped(self):
        cfg = OptimizerConfig(tier_high=0.4, tier_medium=0.8)
        assert cfg.tier_high == 0.8
        assert cfg.tier_medium == 0.4

    def test_unknown_selection_mode(self):
        assert OptimizerConfig(selection_mode="bogus").selection_mode == "nqd"
        assert OptimizerConfig(selection_mode="simple").selection_mode == "simple"

    def test_from_env_prefixed(self, clean_env):
        clean_env.setenv("PROMPTOPT_REPLICATES", "7")
        clean_env.setenv("PROMPTOPT_META_EVOLUTION", "true")
        cfg = OptimizerConfig.from_env()
        assert cfg.replicates == 7
        assert cfg.meta_evolution is True

    def test_from_env_legacy_names(self, clean_env):
        clean_env.setenv("OPT_ITERATIONS", "4")
        clean_env.setenv("PAIR_MIN_SIM", "0.9")
        cfg = OptimizerConfig.from_env()
        assert cfg.max_iterations == 4
        assert cfg.pair_min_sim == 0.9

    def test_prefixed_wins_over_legacy(self, clean_env):
        clean_env.setenv("EVAL_REPLICATES", "2")
        clean_env.setenv("PROMPTOPT_REPLICATES", "6")
        assert OptimizerConfig.from_env().replicates == 6

    def test_from_env_invalid_value(self, clean_env):
        clean_env.setenv("PROMPTOPT_REPLICATES", "many")
        with pytest.raises(ValueError):
            OptimizerConfig.from_env()


class TestLoadConfig:

    def test_missing_file_defaults(self, tmp_path):
        cfg = load_config(str(tmp_path / "nope.yaml"))
        assert cfg == OptimizerConfig()

    def test_none_defaults(self):
        assert load_config(None) == OptimizerConfig()

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "opt.yaml"
        path.write_text("replicates: 3\nselection_mode: simple\ntiered_pairs: true\n", encoding="utf-8")
        cfg = load_config(str(path))
        assert cfg.replicates == 3
        assert cfg.selection_mode == "simple"
        assert cfg.tiered_pairs is True

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(str(path)) == OptimizerConfig()


class TestLLMConfig:

    def test_resolved_model_defaults(self):
        assert LLMConfig(provider="openai").resolved_model == "gpt-4o-mini"
        assert LLMConfig(provider="anthropic").resolved_model == "claude-sonnet-4-5-20250929"
        assert LLMConfig(provider="ollama").resolved_model == "llama3.2"
        assert LLMConfig(provider="openai", model="gpt-4o").resolved_model == "gpt-4o"

    def test_temperature_clamped(self):
        assert LLMConfig(temperature=3.0).temperature == 2.0
        assert LLMConfig(temperature=-1.0).temperature == 0.0

    def test_from_env_openai_fallback(self, monkeypatch):
        monkeypatch.delenv("PROMPTOPT_PROVIDER", raising=False)
        monkeypatch.delenv("PROMPTOPT_API_KEY", raising=False)
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        cfg = LLMConfig.from_env()
        assert cfg.provider == "openai"
        assert cfg.api_key == "sk-test"

    def test_from_env_anthropic_fallback(self, monkeypatch):
        monkeypatch.delenv("PROMPTOPT_PROVIDER", raising=False)
        monkeypatch.delenv("PROMPTOPT_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        cfg = LLMConfig.from_env()
        assert cfg.provider == "anthropic"
        assert cfg.api_key == "sk-ant-test"

    def test_from_env_ollama_needs_no_key(self, monkeypatch):
        monkeypatch.setenv("PROMPTOPT_PROVIDER", "ollama")
        monkeypatch.delenv("PROMPTOPT_API_KEY", raising=False)
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        cfg = LLMConfig.from_env()
        assert cfg.api_key == "ollama"
