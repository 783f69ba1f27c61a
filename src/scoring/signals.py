"""External risk signals used by the ensemble score.

Each provider maps a feature set to a :class:`SignalScore` in [0, 1]. HTTP
providers talk to the ML service (``/fraud/predict``, ``/fraud/anomaly``,
``/fraud/graph``) with a hard per-call timeout; any transport error, bad
status or malformed payload yields the provider's fallback value with zero
confidence instead of an exception.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
import numpy as np

from preprocessing.order_features import FeatureSet
from schemas.fraud_schemas import SignalScore
from scoring.errors import SignalUnavailableError
from scoring.settings import FraudSettings, SignalProviderConfig

logger = logging.getLogger("fraud-signals")

DEVICE_SHARED_USERS_LIMIT = 5
IP_SHARED_USERS_LIMIT = 10
SHARED_IDENTITY_RISK = 0.3
LOCAL_GRAPH_CONFIDENCE = 0.5


class RiskSignalProvider(ABC):
    """Uniform contract of every external risk signal."""

    name: str

    @abstractmethod
    def score(self, features: FeatureSet) -> SignalScore:
        """Return a value in [0, 1]; never raises."""


class StaticSignalProvider(RiskSignalProvider):
    """Provider returning a fixed value, used when the ML service is not deployed."""

    def __init__(self, name: str, value: float, confidence: float = 1.0, fallback: bool = False):
        self.name = name
        self._score = SignalScore(
            source=name,
            value=float(np.clip(value, 0.0, 1.0)),
            confidence=confidence,
            fallback=fallback,
        )

    def score(self, features: FeatureSet) -> SignalScore:
        return self._score


class SharedIdentityGraphProvider(RiskSignalProvider):
    """Local graph risk from how many accounts share the order's device or IP.

    Adds 0.3 when more than five users have ordered from the device and 0.3
    when more than ten users ordered from the IP in the last seven days.
    """

    def __init__(self, name: str = "graph"):
        self.name = name

    def score(self, features: FeatureSet) -> SignalScore:
        value = 0.0
        if int(features.get("device_shared_users") or 0) > DEVICE_SHARED_USERS_LIMIT:
            value += SHARED_IDENTITY_RISK
        if int(features.get("ip_shared_users_7d") or 0) > IP_SHARED_USERS_LIMIT:
            value += SHARED_IDENTITY_RISK
        return SignalScore(
            source=self.name,
            value=float(min(value, 1.0)),
            confidence=LOCAL_GRAPH_CONFIDENCE,
            fallback=False,
        )


class HttpSignalProvider(RiskSignalProvider):
    """Signal served by the ML service over HTTP.

    Parameters
    ----------
    config : SignalProviderConfig
        Endpoint, model name, response key, timeout and fallback.
    base_url : str
        ML service base URL, e.g. ``http://localhost:5000/api``.
    client : httpx.Client, optional
        Shared client; one is created when omitted.
    fallback_provider : RiskSignalProvider, optional
        Local provider consulted when the service is unavailable, instead of
        the configured fallback value.
    """

    def __init__(
        self,
        config: SignalProviderConfig,
        base_url: str,
        client: Optional[httpx.Client] = None,
        fallback_provider: Optional[RiskSignalProvider] = None,
    ):
        self.config = config
        self.name = config.name
        self.url = f"{base_url.rstrip('/')}/{config.endpoint.lstrip('/')}"
        self._client = client or httpx.Client()
        self.fallback_provider = fallback_provider

    def score(self, features: FeatureSet) -> SignalScore:
        try:
            return self._fetch(features)
        except SignalUnavailableError as exc:
            if self.fallback_provider is not None:
                local = self.fallback_provider.score(features)
                logger.warning(f"{exc}; using local estimate {local.value}")
                return local.model_copy(update={"source": self.name, "fallback": True})
            logger.warning(f"{exc}; using fallback {self.config.fallback}")
            return SignalScore(
                source=self.name,
                value=self.config.fallback,
                confidence=0.0,
                fallback=True,
            )

    def _fetch(self, features: FeatureSet) -> SignalScore:
        payload: Dict[str, Any] = {"features": dict(features), "model": self.config.model}
        try:
            response = self._client.post(
                self.url, json=payload, timeout=self.config.timeout_seconds
            )
            response.raise_for_status()
            data = response.json()
            raw = float(data[self.config.response_key])
            confidence = float(data.get("confidence", 1.0))
        except httpx.HTTPError as exc:
            raise SignalUnavailableError(self.name, f"{type(exc).__name__}: {exc}") from exc
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise SignalUnavailableError(self.name, f"malformed response: {exc!r}") from exc

        if not np.isfinite(raw):
            raise SignalUnavailableError(self.name, f"non-finite value {raw}")

        if self.config.scale == "signed":
            # anomaly_score in [-1, 1], lower is more anomalous
            raw = (1.0 - float(np.clip(raw, -1.0, 1.0))) / 2.0

        return SignalScore(
            source=self.name,
            value=float(np.clip(raw, 0.0, 1.0)),
            confidence=float(np.clip(confidence, 0.0, 1.0)) if np.isfinite(confidence) else 0.0,
            fallback=False,
        )


def build_signal_providers(
    settings: FraudSettings,
    client: Optional[httpx.Client] = None,
) -> List[RiskSignalProvider]:
    """HTTP providers for every enabled signal in the settings.

    With ``local_graph_fallback`` set, the graph provider falls back to
    :class:`SharedIdentityGraphProvider` when the ML service is down.
    """
    providers: List[RiskSignalProvider] = []
    for config in settings.signals:
        if not config.enabled:
            continue
        fallback_provider: Optional[RiskSignalProvider] = None
        if config.name == "graph" and settings.local_graph_fallback:
            fallback_provider = SharedIdentityGraphProvider(config.name)
        providers.append(
            HttpSignalProvider(
                config, settings.ml_service_url, client=client, fallback_provider=fallback_provider
            )
        )
    return providers


__all__ = [
    "RiskSignalProvider",
    "StaticSignalProvider",
    "SharedIdentityGraphProvider",
    "HttpSignalProvider",
    "build_signal_providers",
]
