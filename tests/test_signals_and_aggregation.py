"""Tests for external risk signals and score aggregation."""

import json
from types import MappingProxyType

import httpx
import pytest

from schemas.fraud_schemas import RuleHit, RuleResults
from scoring.aggregator import ScoreAggregator, clamp_score
from scoring.settings import EnsembleWeights, FraudSettings, ScoringMode, default_signal_configs
from scoring.signals import (
    HttpSignalProvider,
    SharedIdentityGraphProvider,
    StaticSignalProvider,
    build_signal_providers,
)

BASE_URL = "http://ml.test/api"
FEATURES = MappingProxyType({"order_amount": 250.0, "is_new_device": True})


def config(name):
    return next(c for c in default_signal_configs() if c.name == name)


def provider_for(name, handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpSignalProvider(config(name), BASE_URL, client=client)


def hits(*scores):
    return RuleResults(
        triggered=[
            RuleHit(rule_id=i, rule_name=f"rule-{i}", rule_type="custom", score=score, action="flag")
            for i, score in enumerate(scores, start=1)
        ],
        total_rules_checked=len(scores),
    )


# ===========================================================================
# HTTP signal providers
# ===========================================================================


class TestHttpSignalProvider:

    def test_posts_features_and_model(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"fraud_probability": 0.9})

        signal = provider_for("ml", handler).score(FEATURES)

        assert seen["path"] == "/api/fraud/predict"
        assert seen["body"] == {"features": dict(FEATURES), "model": "ensemble"}
        assert signal.value == pytest.approx(0.9)
        assert signal.fallback is False
        assert signal.source == "ml"

    def test_anomaly_score_is_rescaled(self):
        def handler(request):
            assert request.url.path == "/api/fraud/anomaly"
            return httpx.Response(200, json={"anomaly_score": -0.6})

        assert provider_for("anomaly", handler).score(FEATURES).value == pytest.approx(0.8)

    def test_graph_value_is_clamped(self):
        def handler(request):
            return httpx.Response(200, json={"risk_score": 1.7})

        assert provider_for("graph", handler).score(FEATURES).value == 1.0

    def test_timeout_falls_back_to_half_for_ml(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        signal = provider_for("ml", handler).score(FEATURES)
        assert signal.value == 0.5
        assert signal.fallback is True
        assert signal.confidence == 0.0

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, json={"error": "boom"}),
            httpx.Response(200, content=b"<html>not json</html>"),
            httpx.Response(200, json={"unexpected": 1}),
            httpx.Response(200, json={"anomaly_score": "n/a"}),
        ],
    )
    def test_bad_responses_fall_back(self, response):
        signal = provider_for("anomaly", lambda request: response).score(FEATURES)
        assert signal.value == 0.0
        assert signal.fallback is True

    def test_build_providers_from_settings(self):
        providers = build_signal_providers(FraudSettings(ml_service_url=BASE_URL))
        assert [p.name for p in providers] == ["ml", "anomaly", "graph"]
        assert providers[0].url == "http://ml.test/api/fraud/predict"
        assert all(p.fallback_provider is None for p in providers)


class TestSharedIdentityGraph:

    @pytest.mark.parametrize(
        "device_users, ip_users, expected",
        [
            (1, 1, 0.0),
            (5, 10, 0.0),
            (6, 1, 0.3),
            (1, 11, 0.3),
            (40, 40, 0.6),
        ],
    )
    def test_shared_device_and_ip(self, device_users, ip_users, expected):
        features = {"device_shared_users": device_users, "ip_shared_users_7d": ip_users}
        signal = SharedIdentityGraphProvider().score(features)
        assert signal.value == pytest.approx(expected)
        assert signal.source == "graph"

    def test_missing_features_score_zero(self):
        assert SharedIdentityGraphProvider().score(FEATURES).value == 0.0

    def test_replaces_static_fallback_when_service_is_down(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        provider = HttpSignalProvider(
            config("graph"), BASE_URL, client=client, fallback_provider=SharedIdentityGraphProvider()
        )
        signal = provider.score({"device_shared_users": 9, "ip_shared_users_7d": 0})

        assert signal.value == pytest.approx(0.3)
        assert signal.fallback is True
        assert signal.confidence == 0.5

    def test_enabled_through_settings(self):
        settings = FraudSettings(ml_service_url=BASE_URL, local_graph_fallback=True)
        providers = {p.name: p for p in build_signal_providers(settings)}
        assert isinstance(providers["graph"].fallback_provider, SharedIdentityGraphProvider)
        assert providers["ml"].fallback_provider is None


# ===========================================================================
# Aggregation
# ===========================================================================


class TestBasicAggregation:

    def test_sum_of_triggered_rules(self):
        aggregate = ScoreAggregator().aggregate(hits(35, 20), FEATURES)
        assert aggregate.total_score == 55
        assert aggregate.breakdown.mode == "basic"

    def test_sum_is_clamped_to_100(self):
        assert ScoreAggregator().aggregate(hits(60, 70), FEATURES).total_score == 100

    def test_no_hits_scores_zero(self):
        assert ScoreAggregator().aggregate(RuleResults(), FEATURES).total_score == 0

    def test_clamp_score(self):
        assert clamp_score(-5) == 0
        assert clamp_score(54.5) == 55
        assert clamp_score(250) == 100


class TestEnsembleAggregation:

    def test_weighted_combination(self):
        providers = [
            StaticSignalProvider("ml", 0.8),
            StaticSignalProvider("anomaly", 0.5),
            StaticSignalProvider("graph", 0.2),
        ]
        aggregator = ScoreAggregator(ScoringMode.ENSEMBLE, providers=providers)
        aggregate = aggregator.aggregate(hits(40), FEATURES)

        # 100 * (0.4*0.8 + 0.25*0.4 + 0.2*0.5 + 0.15*0.2)
        assert aggregate.total_score == 55
        assert aggregate.breakdown.rule_score == 40
        assert aggregate.breakdown.components["ml"] == 0.8
        assert aggregate.breakdown.fallbacks == []

    def test_all_signals_down_uses_fallbacks(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        providers = build_signal_providers(FraudSettings(ml_service_url=BASE_URL), client=client)
        aggregate = ScoreAggregator(ScoringMode.ENSEMBLE, providers=providers).aggregate(hits(100), FEATURES)

        # 100 * (0.4*0.5 + 0.25*1.0)
        assert aggregate.total_score == 45
        assert aggregate.breakdown.fallbacks == ["ml", "anomaly", "graph"]

    def test_missing_provider_uses_configured_fallback(self):
        aggregator = ScoreAggregator(ScoringMode.ENSEMBLE, providers=[StaticSignalProvider("ml", 1.0)])
        aggregate = aggregator.aggregate(hits(0), FEATURES)
        assert aggregate.total_score == 40
        assert set(aggregate.breakdown.fallbacks) == {"anomaly", "graph"}

    def test_missing_ml_provider_is_neutral(self):
        providers = [StaticSignalProvider("anomaly", 0.0), StaticSignalProvider("graph", 0.0)]
        aggregate = ScoreAggregator(ScoringMode.ENSEMBLE, providers=providers).aggregate(hits(0), FEATURES)

        assert aggregate.total_score == 20
        assert aggregate.breakdown.components["ml"] == 0.5
        assert aggregate.breakdown.fallbacks == ["ml"]

    def test_explicit_fallbacks_override_defaults(self):
        aggregator = ScoreAggregator(
            ScoringMode.ENSEMBLE,
            providers=[StaticSignalProvider("anomaly", 0.0), StaticSignalProvider("graph", 0.0)],
            signal_fallbacks={"ml": 0.0},
        )
        assert aggregator.aggregate(hits(0), FEATURES).total_score == 0

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValueError):
            EnsembleWeights(rule=0.5)
