import os
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal

# Point the module-level engines somewhere disposable before payflow is imported
_TMP = tempfile.mkdtemp(prefix="payflow-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TMP, 'app.db')}")
os.environ.setdefault("QUEUE_DATABASE_URL", f"sqlite:///{os.path.join(_TMP, 'queue.db')}")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from payflow.database import Base, QueueBase, make_engine, make_session_factory
from payflow.gateway import SimulatedGateway
from payflow.jobs import JobQueue
from payflow.models import User, Product
from payflow.worker import PaymentWorker, LogNotifier


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, ms=0, seconds=0):
        self.now += timedelta(milliseconds=ms, seconds=seconds)


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'payments.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue_session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'queue.db'}")
    QueueBase.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    QueueBase.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def queue(queue_session_factory, clock):
    return JobQueue(queue_session_factory, "payment-processing", clock=clock, stall_timeout_ms=30000)


@pytest.fixture
def approving_gateway():
    return SimulatedGateway(decline_rate=0.0, min_latency_ms=0, max_latency_ms=0)


@pytest.fixture
def declining_gateway():
    return SimulatedGateway(decline_rate=1.0, min_latency_ms=0, max_latency_ms=0)


@pytest.fixture
def worker(queue, session_factory, approving_gateway):
    return PaymentWorker(queue, session_factory, gateway=approving_gateway, notifier=LogNotifier(latency=0))


@pytest.fixture
def user(db):
    user = User(name="Test User", email="test@example.com")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def products(db):
    first = Product(name="Test Product 1", price=Decimal("10.99"), stock=100)
    second = Product(name="Test Product 2", price=Decimal("25.50"), stock=50)
    db.add_all([first, second])
    db.commit()
    return first, second
