"""Seed rule set installed by ``RuleEvaluator.seed_default_rules``.

Scores are additive in basic mode; a handful of these firing together is
enough to reach review territory.
"""

from __future__ import annotations

from typing import Any, Dict, List

HIGH_RISK_COUNTRIES = ["NG", "GH", "PK", "ID", "VN"]


def _when(*predicates: Dict[str, Any], match: str = "all") -> Dict[str, Any]:
    return {"match": match, "predicates": list(predicates)}


def _p(feature: str, op: str, value: Any = None) -> Dict[str, Any]:
    return {"feature": feature, "op": op, "value": value}


DEFAULT_RULES: List[Dict[str, Any]] = [
    {
        "name": "First purchase with very low amount",
        "description": "Tiny first order, typical of card testing",
        "rule_type": "pattern",
        "conditions": _when(_p("user_orders_count", "==", 0), _p("order_amount", "<", 10)),
        "risk_score": 35,
        "action": "flag",
        "priority": 90,
    },
    {
        "name": "First purchase with high value",
        "description": "Large first order from an account without history",
        "rule_type": "amount",
        "conditions": _when(_p("user_orders_count", "==", 0), _p("order_amount", ">", 500)),
        "risk_score": 30,
        "action": "review",
        "priority": 85,
    },
    {
        "name": "User order velocity",
        "description": "More than 5 orders from the same user within an hour",
        "rule_type": "velocity",
        "conditions": _when(_p("velocity_user_order", ">", 5)),
        "risk_score": 40,
        "action": "review",
        "priority": 100,
    },
    {
        "name": "IP order velocity",
        "description": "More than 10 orders from the same IP within an hour",
        "rule_type": "velocity",
        "conditions": _when(_p("velocity_ip_order", ">", 10)),
        "risk_score": 40,
        "action": "review",
        "priority": 100,
    },
    {
        "name": "Email order velocity",
        "description": "More than 5 orders with the same email within an hour",
        "rule_type": "velocity",
        "conditions": _when(_p("velocity_email_order", ">", 5)),
        "risk_score": 30,
        "action": "flag",
        "priority": 95,
    },
    {
        "name": "Device order velocity",
        "description": "More than 8 orders from the same device within an hour",
        "rule_type": "velocity",
        "conditions": _when(_p("velocity_device_order", ">", 8)),
        "risk_score": 35,
        "action": "flag",
        "priority": 95,
    },
    {
        "name": "Very high order amount",
        "description": "Order amount above 5000",
        "rule_type": "amount",
        "conditions": _when(_p("order_amount", ">", 5000)),
        "risk_score": 25,
        "action": "review",
        "priority": 80,
    },
    {
        "name": "Amount far above user average",
        "description": "Order more than 3x above the user's historical average",
        "rule_type": "amount",
        "conditions": _when(_p("user_orders_count", ">", 0), _p("amount_vs_avg", ">", 3)),
        "risk_score": 20,
        "action": "flag",
        "priority": 70,
    },
    {
        "name": "Shipping and billing address mismatch",
        "description": "Different shipping and billing addresses",
        "rule_type": "geographic",
        "conditions": _when(_p("shipping_billing_match", "is_false")),
        "risk_score": 15,
        "action": "flag",
        "priority": 50,
    },
    {
        "name": "IP country differs from billing country",
        "description": "Geolocated IP country does not match the billing country",
        "rule_type": "geographic",
        "conditions": _when(_p("geo_mismatch", "is_true")),
        "risk_score": 20,
        "action": "flag",
        "priority": 60,
    },
    {
        "name": "High risk country",
        "description": "Billing (or IP) country on the high risk list",
        "rule_type": "geographic",
        "conditions": _when(_p("risk_country", "in", HIGH_RISK_COUNTRIES)),
        "risk_score": 25,
        "action": "review",
        "priority": 60,
        "is_active": False,
    },
    {
        "name": "Suspicious email",
        "description": "Disposable email domain or random-looking local part",
        "rule_type": "pattern",
        "conditions": _when(
            _p("disposable_email", "is_true"), _p("random_email", "is_true"), match="any"
        ),
        "risk_score": 20,
        "action": "flag",
        "priority": 65,
    },
    {
        "name": "Multiple cards in 24 hours",
        "description": "Three or more distinct cards used by the same user within a day",
        "rule_type": "pattern",
        "conditions": _when(_p("distinct_cards_24h", ">=", 3)),
        "risk_score": 30,
        "action": "review",
        "priority": 75,
    },
    {
        "name": "Unusual order time",
        "description": "Order placed between 02:00 and 05:00",
        "rule_type": "pattern",
        "conditions": _when(_p("is_off_hours", "is_true")),
        "risk_score": 10,
        "action": "flag",
        "priority": 20,
    },
    {
        "name": "Digital goods on a new device",
        "description": "All-digital basket bought from a device never seen before",
        "rule_type": "pattern",
        "conditions": _when(_p("all_digital", "is_true"), _p("is_new_device", "is_true")),
        "risk_score": 15,
        "action": "flag",
        "priority": 40,
    },
    {
        "name": "Brand new unverified account",
        "description": "Account younger than a day with an unverified email",
        "rule_type": "custom",
        "conditions": _when(
            _p("is_guest", "is_false"),
            _p("account_age_days", "<", 1),
            _p("email_verified", "is_false"),
        ),
        "risk_score": 10,
        "action": "flag",
        "priority": 30,
    },
]


__all__ = ["DEFAULT_RULES", "HIGH_RISK_COUNTRIES"]
