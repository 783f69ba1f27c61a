"""Immutable configuration for the order fraud scoring pipeline.

Every knob the evaluator uses (risk thresholds, ensemble weights, external
signal endpoints, blacklist policies) lives on :class:`FraudSettings`, which is
passed explicitly into :class:`serving.fraud_evaluator.FraudEvaluator`.
:func:`load_settings` builds one from environment variables.
"""

from __future__ import annotations

import os
from enum import Enum
from typing import Dict, Literal, Optional, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, model_validator


class ScoringMode(str, Enum):
    """How the final score is produced."""
    BASIC = "basic"
    ENSEMBLE = "ensemble"


class LookupFailurePolicy(str, Enum):
    """What to do when trust data (blacklist) cannot be read."""
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class RiskThresholds(BaseModel):
    """Lower bounds (inclusive) of each risk tier on the 0-100 scale."""

    model_config = ConfigDict(frozen=True)

    critical: int = 90
    high: int = 60
    medium: int = 40
    low: int = 30

    @model_validator(mode="after")
    def _check_ordering(self) -> "RiskThresholds":
        if not 0 <= self.low <= self.medium <= self.high <= self.critical <= 100:
            raise ValueError(
                "Thresholds must satisfy 0 <= low <= medium <= high <= critical <= 100"
            )
        return self


STANDARD_THRESHOLDS = RiskThresholds()
STRICT_THRESHOLDS = RiskThresholds(critical=80)

THRESHOLD_POLICIES: Dict[str, RiskThresholds] = {
    "standard": STANDARD_THRESHOLDS,
    "strict": STRICT_THRESHOLDS,
}


class EnsembleWeights(BaseModel):
    """Weights of the rule score and each external signal in ensemble mode."""

    model_config = ConfigDict(frozen=True)

    rule: float = Field(default=0.25, ge=0.0, le=1.0)
    signals: Dict[str, float] = Field(
        default_factory=lambda: {"ml": 0.40, "anomaly": 0.20, "graph": 0.15}
    )

    @model_validator(mode="after")
    def _check_total(self) -> "EnsembleWeights":
        total = self.rule + sum(self.signals.values())
        if not np.isclose(total, 1.0):
            raise ValueError(f"Ensemble weights must sum to 1.0, got {total:.4f}")
        return self


class SignalProviderConfig(BaseModel):
    """One external risk signal served by the ML service."""

    model_config = ConfigDict(frozen=True)

    name: str
    endpoint: str
    model: str
    response_key: str
    timeout_seconds: float = Field(default=5.0, gt=0)
    fallback: float = Field(default=0.0, ge=0.0, le=1.0)
    scale: Literal["unit", "signed"] = "unit"
    enabled: bool = True


def default_signal_configs(timeout_seconds: float = 5.0) -> Tuple[SignalProviderConfig, ...]:
    """ML probability, isolation-forest anomaly and graph risk signals."""
    return (
        SignalProviderConfig(
            name="ml",
            endpoint="fraud/predict",
            model="ensemble",
            response_key="fraud_probability",
            timeout_seconds=timeout_seconds,
            fallback=0.5,
        ),
        SignalProviderConfig(
            name="anomaly",
            endpoint="fraud/anomaly",
            model="isolation_forest",
            response_key="anomaly_score",
            timeout_seconds=timeout_seconds,
            fallback=0.0,
            scale="signed",
        ),
        SignalProviderConfig(
            name="graph",
            endpoint="fraud/graph",
            model="graph",
            response_key="risk_score",
            timeout_seconds=timeout_seconds,
            fallback=0.0,
        ),
    )


class AutoBlacklistPolicy(BaseModel):
    """When repeated fraud attempts turn into a blacklist entry."""

    model_config = ConfigDict(frozen=True)

    attempt_threshold: int = Field(default=5, ge=1)
    window_hours: int = Field(default=24, ge=1)
    min_severity: int = Field(default=1, ge=1, le=10)


class FraudSettings(BaseModel):
    """Complete configuration of one fraud evaluator."""

    model_config = ConfigDict(frozen=True)

    database_url: str = "sqlite:///fraud.db"
    redis_url: Optional[str] = None
    ml_service_url: str = "http://localhost:5000/api"
    scoring_mode: ScoringMode = ScoringMode.BASIC
    thresholds: RiskThresholds = STANDARD_THRESHOLDS
    weights: EnsembleWeights = Field(default_factory=EnsembleWeights)
    signals: Tuple[SignalProviderConfig, ...] = Field(default_factory=default_signal_configs)
    lookup_failure_policy: LookupFailurePolicy = LookupFailurePolicy.FAIL_OPEN
    auto_blacklist: AutoBlacklistPolicy = Field(default_factory=AutoBlacklistPolicy)
    velocity_window_minutes: int = Field(default=60, ge=1)
    velocity_action: str = "order"
    seed_default_rules: bool = True
    local_graph_fallback: bool = False


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() not in ("0", "false", "no", "off")


def load_settings() -> FraudSettings:
    """Build settings from ``FRAUD_*`` environment variables."""
    policy_name = os.getenv("FRAUD_THRESHOLD_POLICY", "standard").lower()
    if policy_name not in THRESHOLD_POLICIES:
        raise RuntimeError(
            f"Unknown FRAUD_THRESHOLD_POLICY '{policy_name}', "
            f"expected one of: {', '.join(sorted(THRESHOLD_POLICIES))}"
        )

    timeout_str = os.getenv("FRAUD_ML_TIMEOUT_SECONDS", "5")
    window_str = os.getenv("FRAUD_VELOCITY_WINDOW_MINUTES", "60")
    try:
        timeout_seconds = float(timeout_str)
        window_minutes = int(window_str)
    except ValueError as exc:
        raise RuntimeError(f"Invalid numeric fraud setting: {exc}") from exc

    return FraudSettings(
        database_url=os.getenv("FRAUD_DATABASE_URL", "sqlite:///fraud.db"),
        redis_url=os.getenv("FRAUD_REDIS_URL") or None,
        ml_service_url=os.getenv("FRAUD_ML_SERVICE_URL", "http://localhost:5000/api"),
        scoring_mode=ScoringMode(os.getenv("FRAUD_SCORING_MODE", "basic").lower()),
        thresholds=THRESHOLD_POLICIES[policy_name],
        signals=default_signal_configs(timeout_seconds),
        lookup_failure_policy=LookupFailurePolicy(
            os.getenv("FRAUD_LOOKUP_FAILURE_POLICY", "fail_open").lower()
        ),
        velocity_window_minutes=window_minutes,
        seed_default_rules=_env_flag("FRAUD_SEED_DEFAULT_RULES", True),
        local_graph_fallback=_env_flag("FRAUD_LOCAL_GRAPH_FALLBACK", False),
    )


__all__ = [
    "ScoringMode",
    "LookupFailurePolicy",
    "RiskThresholds",
    "STANDARD_THRESHOLDS",
    "STRICT_THRESHOLDS",
    "THRESHOLD_POLICIES",
    "EnsembleWeights",
    "SignalProviderConfig",
    "default_signal_configs",
    "AutoBlacklistPolicy",
    "FraudSettings",
    "load_settings",
]
