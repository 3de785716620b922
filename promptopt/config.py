# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Optimizer and LLM configuration."""
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "PROMPTOPT_"

SELECTION_MODES = ("simple", "nqd")


def _getenv(name: str, legacy: Optional[str] = None) -> Optional[str]:
    """Read PROMPTOPT_<name>, falling back to the bare legacy variable."""
    value = os.getenv(ENV_PREFIX + name)
    if value is None and legacy:
        value = os.getenv(legacy)
    return value


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class OptimizerConfig:
    """Configuration for evaluation, pair mining, selection and the loop.

    Can be created directly, from a dict, from a YAML file, or from
    environment variables.
    """
    # Distributional evaluation
    replicates: int = 5
    seed_base: int = 12345
    discoverability_k: int = 3
    std_lambda: float = 0.25
    fail_penalty: float = 0.4
    concurrency: int = 2
    generation_timeout_s: float = 120.0

    # Pair mining
    pair_min_sim: float = 0.86
    pair_min_delta: float = 0.15
    pair_max_pairs: int = 8
    tiered_pairs: bool = False
    tier_high: float = 0.75
    tier_medium: float = 0.50
    story_count_min: int = 4
    story_count_max: int = 8

    # Patch generation
    patch_candidates: int = 10
    patch_temperature: float = 0.6
    min_patch_length: int = 20

    # Loop
    max_iterations: int = 10
    promotion_threshold: float = 0.01
    max_consecutive_failures: int = 2

    # Tournament
    selection_mode: str = "nqd"
    constraint_fit_threshold: float = 1.0
    use_value_threshold: float = 0.0
    max_front_size: int = 10
    use_value_tie: float = 0.001
    diversity_tie: float = 0.01

    # Meta-evolution
    meta_evolution: bool = False
    hypermutation_rate: float = 0.1
    fitness_alpha: float = 0.3

    # Background service
    persist_interval_s: float = 2.0
    task_ttl_s: int = 3600

    @classmethod
    def from_dict(cls, data: dict) -> "OptimizerConfig":
        """Build from a dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(k for k in data if k not in known)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_env(cls) -> "OptimizerConfig":
        """Create config from environment variables.

        Reads PROMPTOPT_REPLICATES, PROMPTOPT_PAIR_MIN_SIM, etc. The bare
        names (EVAL_REPLICATES, PAIR_MIN_SIM, OPT_ITERATIONS, ...) are
        accepted as fallbacks.
        """
        env_vars = {
            "replicates": ("REPLICATES", "EVAL_REPLICATES", int),
            "seed_base": ("SEED_BASE", "EVAL_SEED_BASE", int),
            "discoverability_k": ("DISCOVERABILITY_K", "DISCOVERABILITY_TRIES", int),
            "std_lambda": ("STD_LAMBDA", "EVAL_STD_LAMBDA", float),
            "fail_penalty": ("FAIL_PENALTY", "EVAL_FAIL_PENALTY", float),
            "concurrency": ("CONCURRENCY", "OPT_CONCURRENCY", int),
            "generation_timeout_s": ("GENERATION_TIMEOUT_S", None, float),
            "pair_min_sim": ("PAIR_MIN_SIM", "PAIR_MIN_SIM", float),
            "pair_min_delta": ("PAIR_MIN_DELTA", "PAIR_MIN_DELTA", float),
            "pair_max_pairs": ("PAIR_MAX_PAIRS", "PAIR_MAX_PAIRS", int),
            "tiered_pairs": ("TIERED_PAIRS", None, _parse_bool),
            "patch_candidates": ("PATCH_CANDIDATES", "OPT_PATCH_CANDIDATES", int),
            "patch_temperature": ("PATCH_TEMPERATURE", "OPT_PATCH_TEMPERATURE", float),
            "max_iterations": ("MAX_ITERATIONS", "OPT_ITERATIONS", int),
            "promotion_threshold": ("PROMOTION_THRESHOLD", "OPT_PROMOTION_THRESHOLD", float),
            "selection_mode": ("SELECTION_MODE", None, str),
            "constraint_fit_threshold": ("CONSTRAINT_FIT_THRESHOLD", None, float),
            "meta_evolution": ("META_EVOLUTION", None, _parse_bool),
            "hypermutation_rate": ("HYPERMUTATION_RATE", None, float),
        }
        values = {}
        for attr, (name, legacy, cast) in env_vars.items():
            raw = _getenv(name, legacy)
            if raw is None or raw == "":
                continue
            values[attr] = _cast(attr, raw, cast)
        return cls(**values)

    def __post_init__(self):
        """Validate config values."""
        self.replicates = _clamp_int("replicates", self.replicates, 1, 50)
        self.discoverability_k = _clamp_int("discoverability_k", self.discoverability_k, 1, 50)
        self.concurrency = _clamp_int("concurrency", self.concurrency, 1, 64)
        self.pair_max_pairs = _clamp_int("pair_max_pairs", self.pair_max_pairs, 1, 100)
        self.patch_candidates = _clamp_int("patch_candidates", self.patch_candidates, 1, 50)
        self.max_iterations = _clamp_int("max_iterations", self.max_iterations, 1, 1000)
        self.max_front_size = _clamp_int("max_front_size", self.max_front_size, 1, 1000)
        self.max_consecutive_failures = _clamp_int(
            "max_consecutive_failures", self.max_consecutive_failures, 1, 100,
        )

        self.pair_min_sim = _clamp_float("pair_min_sim", self.pair_min_sim, 0.0, 1.0)
        self.pair_min_delta = _clamp_float("pair_min_delta", self.pair_min_delta, 0.0, 1.0)
        self.patch_temperature = _clamp_float("patch_temperature", self.patch_temperature, 0.0, 2.0)
        self.hypermutation_rate = _clamp_float("hypermutation_rate", self.hypermutation_rate, 0.0, 1.0)
        self.fitness_alpha = _clamp_float("fitness_alpha", self.fitness_alpha, 0.0, 1.0)
        self.std_lambda = _clamp_float("std_lambda", self.std_lambda, 0.0, 10.0)
        self.fail_penalty = _clamp_float("fail_penalty", self.fail_penalty, 0.0, 10.0)

        if self.tier_medium > self.tier_high:
            logger.warning(
                "tier_medium %s > tier_high %s, swapping", self.tier_medium, self.tier_high,
            )
            self.tier_medium, self.tier_high = self.tier_high, self.tier_medium

        if self.story_count_min > self.story_count_max:
            logger.warning(
                "story_count_min %s > story_count_max %s, swapping",
                self.story_count_min, self.story_count_max,
            )
            self.story_count_min, self.story_count_max = self.story_count_max, self.story_count_min

        if self.selection_mode not in SELECTION_MODES:
            logger.warning("Unknown selection_mode %r, using 'nqd'", self.selection_mode)
            self.selection_mode = "nqd"


def load_config(path: Optional[str] = None) -> OptimizerConfig:
    """Load optimizer config from YAML. Falls back to defaults."""
    if path is None:
        return OptimizerConfig()

    p = Path(path)
    if not p.exists():
        logger.info("Config %s not found, using defaults", path)
        return OptimizerConfig()

    with open(p, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    return OptimizerConfig.from_dict(data)


@dataclass
class LLMConfig:
    """Connection settings for the LLM adapters (generator, patch engineer)."""
    provider: str = ""
    api_key: str = ""
    model: str = ""
    temperature: float = 0.7
    max_tokens: int = 4096
    base_url: Optional[str] = None
    timeout_s: float = 120.0

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Create config from environment variables.

        Reads PROMPTOPT_PROVIDER, PROMPTOPT_API_KEY, PROMPTOPT_MODEL, etc.
        Falls back to OPENAI_API_KEY / ANTHROPIC_API_KEY if no key is set.
        """
        provider = os.getenv("PROMPTOPT_PROVIDER", "")
        api_key = os.getenv("PROMPTOPT_API_KEY", "")

        if not api_key:
            if provider == "openai" or not provider:
                api_key = os.getenv("OPENAI_API_KEY", "")
                if api_key and not provider:
                    provider = "openai"
            if not api_key and provider != "openai":
                api_key = os.getenv("ANTHROPIC_API_KEY", "")
                if api_key and not provider:
                    provider = "anthropic"

        # Ollama: no key needed
        if not api_key and provider == "ollama":
            api_key = "ollama"

        return cls(
            provider=provider,
            api_key=api_key,
            model=os.getenv("PROMPTOPT_MODEL", ""),
            temperature=float(os.getenv("PROMPTOPT_TEMPERATURE", "0.7")),
            max_tokens=int(os.getenv("PROMPTOPT_MAX_TOKENS", "4096")),
            base_url=os.getenv("PROMPTOPT_BASE_URL") or None,
            timeout_s=float(os.getenv("PROMPTOPT_LLM_TIMEOUT_S", "120")),
        )

    def __post_init__(self):
        if self.temperature < 0.0:
            logger.warning("temperature %s < 0, clamping to 0.0", self.temperature)
            self.temperature = 0.0
        elif self.temperature > 2.0:
            logger.warning("temperature %s > 2.0, clamping to 2.0", self.temperature)
            self.temperature = 2.0

        if self.max_tokens < 1:
            logger.warning("max_tokens %s < 1, setting to 1", self.max_tokens)
            self.max_tokens = 1

    @property
    def resolved_model(self) -> str:
        """Return model with sensible defaults per provider."""
        if self.model:
            return self.model
        if self.provider == "anthropic":
            return "claude-sonnet-4-5-20250929"
        if self.provider == "ollama":
            return "llama3.2"
        return "gpt-4o-mini"


def _cast(attr: str, raw: str, cast: Callable[[str], Any]) -> Any:
    try:
        return cast(raw)
    except ValueError:
        raise ValueError("Invalid value for {}: {!r}".format(attr, raw))


def _clamp_int(name: str, value: int, lo: int, hi: int) -> int:
    if value < lo:
        logger.warning("%s %s < %s, clamping to %s", name, value, lo, lo)
        return lo
    if value > hi:
        logger.warning("%s %s > %s, clamping to %s", name, value, hi, hi)
        return hi
    return value


def _clamp_float(name: str, value: float, lo: float, hi: float) -> float:
    if value < lo:
        logger.warning("%s %s < %s, clamping to %s", name, value, lo, lo)
        return lo
    if value > hi:
        logger.warning("%s %s > %s, clamping to %s", name, value, hi, hi)
        return hi
    return value
