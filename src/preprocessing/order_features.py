"""Order feature engineering for rule-based fraud scoring.

Features are computed from the order being evaluated plus the user's
persisted order history, which is loaded into a pandas DataFrame. Extraction
only reads from the database. Guests and missing data degrade to neutral
values (zero counts, ``False`` flags, ``None`` for unknown comparisons).
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Final, List, Mapping, Optional

import numpy as np
import pandas as pd
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from schemas.fraud_schemas import TransactionContext
from storage.records import Order, UserAccount

FeatureSet = Mapping[str, Any]

DISPOSABLE_EMAIL_DOMAINS: Final[frozenset] = frozenset(
    {"tempmail.com", "guerrillamail.com", "10minutemail.com"}
)
RANDOM_LOCAL_PART = re.compile(r"\d{5,}")

HIGH_VALUE_ITEM_PRICE: Final[float] = 500.0
SHARED_IP_WINDOW: Final[timedelta] = timedelta(days=7)
OFF_HOURS_START: Final[int] = 2
OFF_HOURS_END: Final[int] = 5

HISTORY_COLUMNS: Final[List[str]] = [
    "id",
    "total_amount",
    "ip_address",
    "device_fingerprint",
    "card_last4",
    "created_at",
]

# Model-agnostic list of everything extract() returns
ORDER_FEATURE_COLUMNS: Final[List[str]] = [
    # Amount
    "order_amount",
    "avg_order_amount",
    "amount_vs_avg",
    "is_round_amount",
    # Account history
    "is_guest",
    "account_age_days",
    "user_orders_count",
    "user_lifetime_value",
    "orders_last_1h",
    "orders_last_24h",
    "orders_last_7d",
    "hours_since_last_order",
    "distinct_cards_24h",
    # Identity
    "email_verified",
    "phone_verified",
    "disposable_email",
    "random_email",
    "has_device_fingerprint",
    "is_new_device",
    "is_new_ip",
    "device_shared_users",
    "ip_shared_users_7d",
    # Basket
    "order_items_count",
    "digital_items",
    "high_value_items",
    "all_digital",
    # Geography
    "shipping_billing_match",
    "billing_country",
    "shipping_country",
    "ip_country",
    "risk_country",
    "geo_mismatch",
    # Time
    "hour_of_day",
    "day_of_week",
    "is_weekend",
    "is_off_hours",
]


def _normalize_address(address: Optional[str]) -> Optional[str]:
    if address is None:
        return None
    normalized = address.strip().lower()
    return normalized or None


def _country(code: Optional[str]) -> Optional[str]:
    return code.strip().upper() if code and code.strip() else None


def email_flags(email: Optional[str]) -> Mapping[str, bool]:
    """Disposable-domain and random-looking-local-part checks for an email."""
    if not email or "@" not in email:
        return {"disposable_email": False, "random_email": False}
    local_part, _, domain = email.lower().rpartition("@")
    return {
        "disposable_email": domain in DISPOSABLE_EMAIL_DOMAINS,
        "random_email": len(local_part) > 15 and bool(RANDOM_LOCAL_PART.search(local_part)),
    }


def _to_native(value: Any) -> Any:
    """Convert numpy scalars so feature sets serialize to JSON."""
    if isinstance(value, np.generic):
        return value.item()
    return value


class OrderFeatureExtractor:
    """Compute a read-only feature set for one transaction.

    Parameters
    ----------
    session : Session
        Session used to read users and order history.
    """

    def __init__(self, session: Session):
        self.session = session

    def extract(self, context: TransactionContext) -> FeatureSet:
        """Extract all order features.

        Parameters
        ----------
        context : TransactionContext
            Snapshot of the order being evaluated.

        Returns
        -------
        FeatureSet
            Immutable mapping of feature name to value.
        """
        user = self._load_user(context.user_id)
        history = self._load_history(context)

        features: dict[str, Any] = {}
        features.update(self._account_features(context, user, history))
        features.update(self._identity_features(context, user, history))
        features.update(self._basket_features(context))
        features.update(self._geo_features(context))
        features.update(self._time_features(context))
        features.update(email_flags(context.email))

        return MappingProxyType({name: _to_native(value) for name, value in features.items()})

    def _load_user(self, user_id: Optional[int]) -> Optional[UserAccount]:
        if user_id is None:
            return None
        return self.session.get(UserAccount, user_id)

    def _load_history(self, context: TransactionContext) -> pd.DataFrame:
        """Prior orders of the user, excluding the order under evaluation."""
        if context.user_id is None:
            return pd.DataFrame(columns=HISTORY_COLUMNS)

        stmt = (
            select(
                Order.id,
                Order.total_amount,
                Order.ip_address,
                Order.device_fingerprint,
                Order.card_last4,
                Order.created_at,
            )
            .where(Order.user_id == context.user_id)
            .where(Order.id != context.order_id)
            .where(Order.created_at <= context.timestamp)
        )
        rows = [dict(row._mapping) for row in self.session.execute(stmt)]
        history = pd.DataFrame(rows, columns=HISTORY_COLUMNS)
        history["created_at"] = pd.to_datetime(history["created_at"])
        history["total_amount"] = history["total_amount"].astype(float)
        return history

    def _account_features(
        self,
        context: TransactionContext,
        user: Optional[UserAccount],
        history: pd.DataFrame,
    ) -> dict[str, Any]:
        now = pd.Timestamp(context.timestamp)
        amount = float(context.amount)

        order_count = int(len(history))
        lifetime_value = float(history["total_amount"].sum()) if order_count else 0.0
        avg_amount = float(history["total_amount"].mean()) if order_count else 0.0
        amount_vs_avg = (amount - avg_amount) / avg_amount if avg_amount > 0 else 0.0

        def orders_since(delta: timedelta) -> int:
            if not order_count:
                return 0
            return int((history["created_at"] >= now - delta).sum())

        hours_since_last: Optional[float] = None
        if order_count:
            gap = now - history["created_at"].max()
            hours_since_last = round(gap.total_seconds() / 3600.0, 4)

        recent = history[history["created_at"] >= now - timedelta(hours=24)] if order_count else history
        cards = set(recent["card_last4"].dropna())
        if context.card_last4:
            cards.add(context.card_last4)

        account_age_days = 0
        if user is not None:
            account_age_days = max((context.timestamp - user.created_at).days, 0)

        return {
            "order_amount": amount,
            "avg_order_amount": round(avg_amount, 2),
            "amount_vs_avg": round(amount_vs_avg, 4),
            "is_round_amount": amount >= 100 and float(amount).is_integer(),
            "is_guest": context.user_id is None,
            "account_age_days": account_age_days,
            "user_orders_count": order_count,
            "user_lifetime_value": round(lifetime_value, 2),
            "orders_last_1h": orders_since(timedelta(hours=1)),
            "orders_last_24h": orders_since(timedelta(hours=24)),
            "orders_last_7d": orders_since(timedelta(days=7)),
            "hours_since_last_order": hours_since_last,
            "distinct_cards_24h": len(cards),
        }

    def _identity_features(
        self,
        context: TransactionContext,
        user: Optional[UserAccount],
        history: pd.DataFrame,
    ) -> dict[str, Any]:
        known_devices = set(history["device_fingerprint"].dropna())
        known_ips = set(history["ip_address"].dropna())

        return {
            "email_verified": bool(user is not None and user.email_verified_at is not None),
            "phone_verified": bool(user is not None and user.phone_verified_at is not None),
            "has_device_fingerprint": bool(context.device_fingerprint),
            "is_new_device": bool(context.device_fingerprint)
            and context.device_fingerprint not in known_devices,
            "is_new_ip": bool(context.ip_address) and context.ip_address not in known_ips,
            "device_shared_users": self._shared_users(
                Order.device_fingerprint, context.device_fingerprint, context
            ),
            "ip_shared_users_7d": self._shared_users(
                Order.ip_address, context.ip_address, context, since=context.timestamp - SHARED_IP_WINDOW
            ),
        }

    def _shared_users(
        self,
        column: Any,
        value: Optional[str],
        context: TransactionContext,
        since: Optional[datetime] = None,
    ) -> int:
        """Distinct registered users with an order on the same device or IP, this order included."""
        if not value:
            return 0
        stmt = (
            select(func.count(func.distinct(Order.user_id)))
            .where(column == value)
            .where(Order.user_id.is_not(None))
            .where(Order.created_at <= context.timestamp)
        )
        if since is not None:
            stmt = stmt.where(Order.created_at >= since)
        return int(self.session.execute(stmt).scalar_one())

    def _basket_features(self, context: TransactionContext) -> dict[str, Any]:
        items = context.items
        if not items:
            return {
                "order_items_count": 0,
                "digital_items": 0,
                "high_value_items": 0,
                "all_digital": False,
            }
        basket = pd.DataFrame([item.model_dump() for item in items])
        digital = basket["is_digital"].astype(bool)
        return {
            "order_items_count": int(basket["quantity"].sum()),
            "digital_items": int(basket.loc[digital, "quantity"].sum()),
            "high_value_items": int((basket["price"] > HIGH_VALUE_ITEM_PRICE).sum()),
            "all_digital": bool(digital.all()),
        }

    def _geo_features(self, context: TransactionContext) -> dict[str, Any]:
        billing = _normalize_address(context.billing_address)
        shipping = _normalize_address(context.shipping_address)
        billing_country = _country(context.billing_country)
        shipping_country = _country(context.shipping_country)
        ip_country = _country(context.ip_country)

        return {
            "shipping_billing_match": None if billing is None or shipping is None else billing == shipping,
            "billing_country": billing_country,
            "shipping_country": shipping_country,
            "ip_country": ip_country,
            "risk_country": billing_country or ip_country,
            "geo_mismatch": bool(ip_country and billing_country and ip_country != billing_country),
        }

    def _time_features(self, context: TransactionContext) -> dict[str, Any]:
        ts: datetime = context.timestamp
        return {
            "hour_of_day": ts.hour,
            "day_of_week": ts.weekday(),
            "is_weekend": ts.weekday() >= 5,
            "is_off_hours": OFF_HOURS_START <= ts.hour < OFF_HOURS_END,
        }


def merge_features(base: FeatureSet, extra: Mapping[str, Any]) -> FeatureSet:
    """Return a new read-only feature set with ``extra`` layered over ``base``."""
    merged = dict(base)
    merged.update(extra)
    return MappingProxyType(merged)


__all__ = [
    "FeatureSet",
    "ORDER_FEATURE_COLUMNS",
    "DISPOSABLE_EMAIL_DOMAINS",
    "OrderFeatureExtractor",
    "email_flags",
    "merge_features",
]
