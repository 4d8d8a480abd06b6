"""
Pitboss — Configuration System

All configuration is Pydantic-validated and loaded from:
1. default.yaml (defaults)
2. Environment variables (overrides)

Every tunable parameter in the monitoring loop lives here, including the
masking heuristics' thresholds so they can be recalibrated without code
changes.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

# ─── Sub-configs ──────────────────────────────────────────────────


class PersistenceConfig(BaseModel):
    backend: Literal["memory", "json"] = "memory"
    path: str = "data/pitboss.json"


class EventBusConfig(BaseModel):
    # Maximum time a subscriber gets before the bus logs a warning and moves on
    callback_timeout_s: float = 1.0
    recent_buffer_size: int = 100


class FixKnowledgeConfig(BaseModel):
    # Audit trail of attempts, oldest evicted
    max_attempts: int = 1000
    # Method success rate above which a success lands in the working-fixes list
    working_fix_threshold: float = 0.5
    # Pattern knowledge rate above which it is merged into suggestions
    knowledge_merge_threshold: float = 0.5


class CausalConfig(BaseModel):
    history_capacity: int = 10_000
    lookback_window_ms: int = 60_000
    # Dependency hops walked back from the earliest chain entry
    max_hops: int = 1


class MaskingThresholds(BaseModel):
    """
    Hand-tuned thresholds for the masking heuristics.

    None of these are derived; they are kept named so they can be
    recalibrated from YAML.
    """

    # Pattern quality: high success rate on a small sample
    low_sample_frequency: int = 10
    low_sample_rate: float = 0.8
    low_sample_score: float = 0.3
    # Pattern quality: a perfect record that has not earned it yet
    perfect_rate_frequency: int = 50
    perfect_rate_score: float = 0.2
    # Pattern quality: recent solutions diverge from lifetime rate
    recent_window: int = 5
    recent_divergence: float = 0.5
    recent_divergence_score: float = 0.4
    # Pattern quality weighting
    frequency_saturation: int = 50
    frequency_weight: float = 0.3
    success_weight: float = 0.4
    variance_weight: float = 0.3
    # Variance quality
    variance_min_samples: int = 3
    variance_default_score: float = 0.5
    zero_variance_samples: int = 20
    zero_variance_score: float = 0.6
    max_variance_penalty: float = 0.5
    # Solution optimisation quality
    solution_perfect_attempts: int = 20
    solution_perfect_score: float = 0.2
    solution_high_rate: float = 0.95
    solution_high_rate_attempts: int = 50
    solution_high_rate_score: float = 0.3
    solution_low_sample_attempts: int = 10
    solution_low_sample_cap: float = 0.5
    # Confidence history checks
    confidence_jump: float = 30.0
    confidence_window: int = 3
    confidence_lookback: int = 4
    optimization_ceiling: float = 95.0
    optimization_min_solutions: int = 5
    # Penalties applied by learn_from_mistake
    mistake_penalties: dict[str, float] = Field(
        default_factory=lambda: {
            "gave_up": 20.0,
            "masked_problem": 15.0,
            "superficial_fix": 10.0,
        }
    )
    default_mistake_penalty: float = 5.0
    # Fix quality verification
    fix_quality_floor: float = 50.0


class LearningConfig(BaseModel):
    # Confidence monitoring cadence (seconds)
    confidence_interval_s: float = 300.0
    history_capacity: int = 100
    max_warnings: int = 20
    # Per-pattern cap on stored contexts and solutions
    max_pattern_entries: int = 100
    # Confidence below this emits auto-adjustment directives
    auto_adjust_threshold: float = 50.0
    # Confidence below this makes the directives critical
    critical_threshold: float = 30.0
    # Sub-metric weights, in order: pattern recognition, causal analysis,
    # solution optimisation, cross-issue learning, prediction accuracy,
    # data quality
    metric_weights: dict[str, float] = Field(
        default_factory=lambda: {
            "pattern_recognition": 0.20,
            "causal_analysis": 0.20,
            "solution_optimization": 0.25,
            "cross_issue_learning": 0.15,
            "prediction_accuracy": 0.10,
            "data_quality": 0.10,
        }
    )
    masking: MaskingThresholds = Field(default_factory=MaskingThresholds)


class DecisionConfig(BaseModel):
    tick_interval_s: float = 1.0
    # Quiet period after an investigation completes before another may start
    cooldown_ms: int = 5000
    # Delay between "starting" and "active"
    activation_delay_s: float = 0.1
    investigation_timeout_s: float = 15.0


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"
    # Per-logger level overrides, e.g. {"pitboss.events.bus": "DEBUG"}
    levels: dict[str, str] = Field(default_factory=lambda: {"asyncio": "WARNING"})


class PitbossConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="PITBOSS_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    instance_id: str = "pitboss-default"

    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    event_bus: EventBusConfig = Field(default_factory=EventBusConfig)
    fixes: FixKnowledgeConfig = Field(default_factory=FixKnowledgeConfig)
    causal: CausalConfig = Field(default_factory=CausalConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # YAML values arrive as init kwargs; PITBOSS_<SECTION>__<KEY> outranks them
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_path: str | Path | None = None) -> PitbossConfig:
    """
    Load configuration from a YAML file, then apply environment overrides.

    Precedence, highest first: PITBOSS_<SECTION>__<KEY> variables, the
    shorthand variables below, the YAML file, model defaults.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    env_overrides: dict[str, Any] = {}
    if persistence_path := os.environ.get("PITBOSS_PERSISTENCE_PATH"):
        env_overrides.setdefault("persistence", {})["path"] = persistence_path
        env_overrides["persistence"]["backend"] = "json"
    if log_level := os.environ.get("PITBOSS_LOG_LEVEL"):
        env_overrides.setdefault("logging", {})["level"] = log_level
    if max_hops := os.environ.get("PITBOSS_CAUSAL_MAX_HOPS"):
        env_overrides.setdefault("causal", {})["max_hops"] = int(max_hops)

    merged = _deep_merge(raw, env_overrides)
    return PitbossConfig(**merged)
