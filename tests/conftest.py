"""Shared fixtures: in-memory database, controllable clock and order factories."""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Generator, List, Optional

import pytest
from sqlalchemy.orm import Session, sessionmaker

from scoring.settings import FraudSettings
from serving.fraud_evaluator import FraudEvaluator
from storage.database import create_db_engine, init_db
from storage.records import FraudRule, Order, OrderItem, UserAccount

# Tuesday afternoon, outside the off-hours window
BASE_TIME = datetime(2024, 3, 12, 14, 30)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings() -> FraudSettings:
    return FraudSettings(database_url="sqlite://")


@pytest.fixture
def evaluator(session, settings, clock) -> FraudEvaluator:
    return FraudEvaluator(session, settings, providers=[], clock=clock)


@pytest.fixture
def make_user(session, clock) -> Callable[..., UserAccount]:
    def factory(
        email: str = "buyer@example.com",
        age_days: int = 365,
        email_verified: bool = True,
        phone_verified: bool = False,
    ) -> UserAccount:
        created = clock() - timedelta(days=age_days)
        user = UserAccount(
            email=email,
            email_verified_at=created if email_verified else None,
            phone_verified_at=created if phone_verified else None,
            created_at=created,
            updated_at=created,
        )
        session.add(user)
        session.commit()
        return user

    return factory


@pytest.fixture
def make_order(session, clock) -> Callable[..., Order]:
    def factory(
        user: Optional[UserAccount] = None,
        amount: float = 50.0,
        created_at: Optional[datetime] = None,
        items: Optional[List[Dict[str, Any]]] = None,
        **fields: Any,
    ) -> Order:
        created = created_at or clock()
        values: Dict[str, Any] = {
            "billing_email": "guest@example.com" if user is None else None,
            "ip_address": "203.0.113.10",
            "user_agent": "Mozilla/5.0",
            "device_fingerprint": "device-abc",
            "billing_address": "12 Market Street, Springfield",
            "shipping_address": "12 Market Street, Springfield",
            "billing_country": "US",
            "shipping_country": "US",
            "ip_country": "US",
            "payment_method": "card",
            "card_last4": "4242",
        }
        values.update(fields)
        order = Order(
            user_id=user.id if user is not None else None,
            total_amount=amount,
            created_at=created,
            updated_at=created,
            **values,
        )
        for item in items if items is not None else [{"price": amount, "quantity": 1}]:
            order.items.append(OrderItem(**item))
        session.add(order)
        session.commit()
        return order

    return factory


@pytest.fixture
def make_rule(session) -> Callable[..., FraudRule]:
    def factory(
        name: str,
        predicates: List[Dict[str, Any]],
        risk_score: int,
        match: str = "all",
        priority: int = 0,
        rule_type: str = "custom",
        action: str = "flag",
        is_active: bool = True,
    ) -> FraudRule:
        rule = FraudRule(
            name=name,
            rule_type=rule_type,
            conditions={"match": match, "predicates": predicates},
            risk_score=risk_score,
            action=action,
            priority=priority,
            is_active=is_active,
        )
        session.add(rule)
        session.commit()
        return rule

    return factory
