"""Exceptions raised by the fraud scoring pipeline."""

from __future__ import annotations


class FraudDetectionError(Exception):
    """Base class for fraud scoring errors."""


class BlacklistLookupError(FraudDetectionError):
    """The blacklist could not be read and the lookup policy is fail-closed."""


class SignalUnavailableError(FraudDetectionError):
    """An external risk signal did not produce a usable value."""

    def __init__(self, source: str, reason: str):
        super().__init__(f"Signal '{source}' unavailable: {reason}")
        self.source = source
        self.reason = reason


class OrderNotFoundError(FraudDetectionError):
    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class ScoreNotFoundError(FraudDetectionError):
    def __init__(self, key: int, what: str = "fraud score"):
        super().__init__(f"No {what} found for id {key}")
        self.key = key


class RuleNotFoundError(FraudDetectionError):
    def __init__(self, rule_id: int):
        super().__init__(f"Fraud rule {rule_id} not found")
        self.rule_id = rule_id


class RuleValidationError(FraudDetectionError):
    """A rule definition or condition set is malformed."""


__all__ = [
    "FraudDetectionError",
    "BlacklistLookupError",
    "SignalUnavailableError",
    "OrderNotFoundError",
    "ScoreNotFoundError",
    "RuleNotFoundError",
    "RuleValidationError",
]
