"""
Root test configuration and fixtures.

Unit tests run against an in-memory SQLite database shared through a
StaticPool. Concurrency tests use a file-backed SQLite database so that each
thread gets its own connection and real locking applies.
"""

import os
import uuid
from typing import Any, Callable, Dict, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")

from billing_core.config.settings import BillingSettings
from billing_core.db_base import Base
from billing_core import models  # noqa: F401  (registers tables)
from billing_core.models.subscription import Subscription, SubscriptionPlan, SubscriptionStatus
from billing_core.models.tenant import Tenant

WEBHOOK_SECRET = "whsec_test_secret"
JWT_SECRET = "test-jwt-secret"


def pytest_configure(config):
    config.addinivalue_line("markers", "concurrency: runs threads against a file-backed database")


def _session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    return _session_factory(db_engine)


@pytest.fixture
def db_session(session_factory) -> Session:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def file_session_factory(tmp_path) -> sessionmaker:
    """Session factory over a SQLite file; safe to use from many threads."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'billing.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield _session_factory(engine)
    engine.dispose()


@pytest.fixture
def settings() -> BillingSettings:
    return BillingSettings(
        enabled_providers=("stripe",),
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_plans={"price_starter_monthly": "starter", "price_pro_monthly": "pro"},
        sweep_jitter_seconds=0.0,
        outbox_batch_size=50,
        inbox_max_retries=3,
        outbox_max_retries=3,
        jwt_secret=JWT_SECRET,
    )


@pytest.fixture
def make_tenant(db_session) -> Callable[..., Tenant]:
    def _make(tenant_id: Optional[str] = None, name: str = "Acme Inc") -> Tenant:
        tenant = Tenant(id=tenant_id or f"tenant-{uuid.uuid4().hex[:8]}", name=name)
        db_session.add(tenant)
        db_session.commit()
        return tenant

    return _make


@pytest.fixture
def make_subscription(db_session) -> Callable[..., Subscription]:
    def _make(
        tenant_id: str,
        plan: SubscriptionPlan = SubscriptionPlan.STARTER,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        seats_quantity: Optional[int] = 10,
        provider_subscription_id: Optional[str] = None,
    ) -> Subscription:
        subscription = Subscription(
            tenant_id=tenant_id,
            plan=plan.value,
            status=status.value,
            seats_quantity=seats_quantity,
            provider_subscription_id=provider_subscription_id,
            lock_version=1,
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription

    return _make


@pytest.fixture
def stripe_event() -> Callable[..., Dict[str, Any]]:
    """Build a Stripe event envelope around a business object."""

    def _build(event_type: str, obj: Dict[str, Any], event_id: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }

    return _build
