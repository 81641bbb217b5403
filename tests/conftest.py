import os

# Must be set before any app module reads the settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("TESTING", "true")
os.environ["PAYMENT_GATEWAY"] = "mock"

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.cache import CacheService
from app.core.distributed_lock import DistributedLockManager
from app.db.database import build_engine
from app.models import (
    Base,
    Business,
    BusinessOwner,
    Category,
    Subscription,
    SubscriptionStatus,
    SubscriptionType,
)
from app.repositories.category_queue import CategoryQueueRepository
from app.services.boost_queue import (
    BoostAdmissionService,
    BoostCancellationService,
    BoostQueueQueries,
    BoostQueueReconciler,
)
from app.services.notifications import NotificationDispatcher
from app.services.payment_gateway.mock_gateway import MockGateway

BOOST_DURATION = timedelta(hours=24)
T0 = datetime(2026, 1, 5, 12, 0, 0)


class FrozenClock:
    """Injectable clock; tests move time explicitly."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        super().__init__()
        self.sent = []

    async def notify(self, recipient, event, payload):
        self.sent.append((recipient, event, payload))

    def events(self):
        return [event for _, event, _ in self.sent]


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'boost_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)


@pytest.fixture
def fetch(session_factory):
    """Loads a row in a short-lived session so no transaction outlives the read."""
    async def _fetch(model, pk):
        async with session_factory() as session:
            return await session.get(model, pk)
    return _fetch


@pytest.fixture
def fetch_queue(session_factory):
    async def _fetch_queue(category_id):
        async with session_factory() as session:
            return await CategoryQueueRepository(session).get_by_category(category_id)
    return _fetch_queue


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def cache():
    # No REDIS_URL: every cache call degrades to a no-op
    return CacheService()


@pytest.fixture
def lock_manager(cache):
    return DistributedLockManager(cache)


@pytest.fixture
def gateway():
    return MockGateway()


@pytest.fixture
def notifier():
    return RecordingDispatcher()


@pytest.fixture
def admission_service(session_factory, gateway, notifier, lock_manager, cache, clock):
    return BoostAdmissionService(
        session_factory=session_factory,
        payment_gateway=gateway,
        notifier=notifier,
        lock_manager=lock_manager,
        cache=cache,
        boost_duration=BOOST_DURATION,
        clock=clock,
    )


@pytest.fixture
def cancellation_service(session_factory, gateway, notifier, lock_manager, cache, clock):
    return BoostCancellationService(
        session_factory=session_factory,
        payment_gateway=gateway,
        notifier=notifier,
        lock_manager=lock_manager,
        cache=cache,
        boost_duration=BOOST_DURATION,
        clock=clock,
    )


@pytest.fixture
def reconciler(session_factory, notifier, lock_manager, cache, cancellation_service, clock):
    return BoostQueueReconciler(
        session_factory=session_factory,
        notifier=notifier,
        lock_manager=lock_manager,
        cache=cache,
        cancellation_service=cancellation_service,
        boost_duration=BOOST_DURATION,
        clock=clock,
        polling_interval_seconds=1,
    )


@pytest.fixture
def queries(session_factory, cache, clock):
    return BoostQueueQueries(session_factory=session_factory, cache=cache, boost_duration=BOOST_DURATION, clock=clock)


@pytest.fixture
def make_category(session_factory):
    async def _factory(name: str = None, is_active: bool = True) -> Category:
        async with session_factory() as session:
            category = Category(id=uuid.uuid4(), name=name or f"category-{uuid.uuid4().hex[:8]}", is_active=is_active)
            session.add(category)
            await session.commit()
            return category
    return _factory


@pytest.fixture
def make_business(session_factory):
    async def _factory(category: Category = None, name: str = None) -> Business:
        async with session_factory() as session:
            suffix = uuid.uuid4().hex[:8]
            owner = BusinessOwner(
                id=uuid.uuid4(),
                name=f"owner-{suffix}",
                email=f"owner-{suffix}@example.com",
                payment_customer_id=f"cus_{suffix}",
            )
            business = Business(
                id=uuid.uuid4(),
                name=name or f"business-{suffix}",
                owner_id=owner.id,
                category_id=category.id if category else None,
            )
            session.add_all([owner, business])
            await session.commit()
            return business
    return _factory


@pytest.fixture
def make_paid_subscription(session_factory, gateway):
    """
    A pending boost subscription whose payment intent already succeeded at
    the mock gateway.
    """
    async def _factory(business: Business, amount: Decimal = Decimal("30.00"), currency: str = "usd") -> Subscription:
        intent = await gateway.create_payment_intent(amount, currency, metadata={"business_id": str(business.id)})
        async with session_factory() as session:
            subscription = Subscription(
                id=uuid.uuid4(),
                business_id=business.id,
                owner_id=business.owner_id,
                subscription_type=SubscriptionType.BOOST,
                status=SubscriptionStatus.PENDING,
                amount=amount,
                currency=currency,
                payment_intent_id=intent["id"],
            )
            session.add(subscription)
            await session.commit()
            return subscription
    return _factory


@pytest.fixture
def boost_business(make_business, make_paid_subscription, admission_service):
    """Creates a business in ``category`` and admits a paid boost for it."""
    async def _factory(category: Category, name: str = None, amount: Decimal = Decimal("30.00")):
        business = await make_business(category, name=name)
        subscription = await make_paid_subscription(business, amount=amount)
        result = await admission_service.admit(business.id, subscription.id)
        return business, subscription, result
    return _factory
