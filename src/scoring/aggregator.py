"""Combine rule results and external signals into a 0-100 fraud score."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

from preprocessing.order_features import FeatureSet
from schemas.fraud_schemas import AggregateScore, RuleResults, ScoreBreakdown, SignalScore
from scoring.settings import EnsembleWeights, ScoringMode, default_signal_configs
from scoring.signals import RiskSignalProvider

logger = logging.getLogger("fraud-aggregator")


def clamp_score(value: float) -> int:
    """Round to the nearest integer and clamp to [0, 100]."""
    return int(np.clip(np.floor(float(value) + 0.5), 0, 100))


class ScoreAggregator:
    """Produce the total score in basic or ensemble mode.

    Basic mode is the sum of triggered rule scores. Ensemble mode mixes the
    rule score (scaled to [0, 1]) with each external signal::

        100 * (w_rule * rule / 100 + sum(w_signal * signal))

    Parameters
    ----------
    mode : ScoringMode
        Scoring mode.
    weights : EnsembleWeights
        Weights of the rule score and each named signal.
    providers : Sequence[RiskSignalProvider]
        Signal providers, only consulted in ensemble mode.
    signal_fallbacks : Dict[str, float], optional
        Value used for a weighted signal that has no provider. Defaults to
        the fallbacks of :func:`scoring.settings.default_signal_configs`.
    """

    def __init__(
        self,
        mode: ScoringMode = ScoringMode.BASIC,
        weights: Optional[EnsembleWeights] = None,
        providers: Sequence[RiskSignalProvider] = (),
        signal_fallbacks: Optional[Dict[str, float]] = None,
    ):
        self.mode = ScoringMode(mode)
        self.weights = weights or EnsembleWeights()
        self.providers = list(providers)
        if signal_fallbacks is None:
            signal_fallbacks = {config.name: config.fallback for config in default_signal_configs()}
        self.signal_fallbacks = dict(signal_fallbacks)

    @staticmethod
    def rule_score(rule_results: RuleResults) -> int:
        return clamp_score(sum(hit.score for hit in rule_results.triggered))

    def aggregate(self, rule_results: RuleResults, features: FeatureSet) -> AggregateScore:
        rule_score = self.rule_score(rule_results)
        if self.mode == ScoringMode.BASIC:
            return AggregateScore(
                total_score=rule_score,
                breakdown=ScoreBreakdown(
                    mode=self.mode.value,
                    rule_score=rule_score,
                    components={"rule": float(rule_score)},
                ),
            )
        return self._ensemble(rule_score, features)

    def _ensemble(self, rule_score: int, features: FeatureSet) -> AggregateScore:
        signals: Dict[str, SignalScore] = {
            provider.name: provider.score(features) for provider in self.providers
        }
        fallbacks: List[str] = [name for name, signal in signals.items() if signal.fallback]

        combined = self.weights.rule * rule_score / 100.0
        components: Dict[str, float] = {"rule": float(rule_score)}
        for name, weight in self.weights.signals.items():
            signal = signals.get(name)
            if signal is None:
                value = self.signal_fallbacks.get(name, 0.0)
                logger.warning(f"No provider configured for weighted signal '{name}', using fallback {value}")
                fallbacks.append(name)
                combined += weight * value
                components[name] = round(value, 4)
                continue
            combined += weight * signal.value
            components[name] = round(signal.value, 4)

        total = clamp_score(combined * 100.0)
        weights = {"rule": self.weights.rule, **self.weights.signals}
        return AggregateScore(
            total_score=total,
            breakdown=ScoreBreakdown(
                mode=self.mode.value,
                rule_score=rule_score,
                components=components,
                fallbacks=fallbacks,
                weights=weights,
            ),
        )


__all__ = ["clamp_score", "ScoreAggregator"]
