"""Pytest fixtures for testing"""

import pytest
import fakeredis
from datetime import timedelta
from typing import Callable, Generator, List, Tuple
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from auction_gateway.api.main import create_app
from auction_gateway.api.dependencies import get_gateway_client, get_publisher, get_redis_client
from auction_gateway.domain.events import RealtimeEvent
from auction_gateway.domain.models import ValidationResult
from auction_gateway.infrastructure.cache.ip_reputation import IPReputationStore
from auction_gateway.infrastructure.clients.esewa import EsewaClient
from auction_gateway.infrastructure.database.models import Auction, Base, PaymentTransaction
from auction_gateway.infrastructure.database.repositories import AuctionRepository, PaymentRepository, WalletRepository
from auction_gateway.infrastructure.database.session import get_db
from auction_gateway.services.notifications import NotificationFanout
from auction_gateway.utils.date_utils import utcnow

TEST_SECRET = "test-merchant-secret"


class RecordingPublisher:
    """In-memory publisher capturing (channel, event) pairs"""

    def __init__(self):
        self.events: List[Tuple[str, RealtimeEvent]] = []

    def publish(self, channel: str, event: RealtimeEvent) -> bool:
        self.events.append((channel, event))
        return True

    def on(self, channel: str) -> List[RealtimeEvent]:
        return [event for ch, event in self.events if ch == channel]


@pytest.fixture
def session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """File-backed SQLite so threads get independent connections"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def db(session_factory: sessionmaker) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def redis_client() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def ip_store(redis_client: fakeredis.FakeRedis) -> IPReputationStore:
    return IPReputationStore(redis_client, flag_ttl_seconds=86_400, attempt_window_seconds=3600)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def fanout(publisher: RecordingPublisher) -> NotificationFanout:
    return NotificationFanout(publisher)


@pytest.fixture
def gateway() -> EsewaClient:
    return EsewaClient(
        merchant_code="EPAYTEST",
        merchant_secret=TEST_SECRET,
        api_url="https://gateway.test/form",
        verify_url="https://gateway.test/status",
    )


@pytest.fixture
def client(
    session_factory: sessionmaker,
    redis_client: fakeredis.FakeRedis,
    publisher: RecordingPublisher,
    gateway: EsewaClient,
) -> TestClient:
    """Create FastAPI test client with test database, fake Redis and recorded fan-out"""
    app = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis_client] = lambda: redis_client
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_gateway_client] = lambda: gateway
    return TestClient(app)


@pytest.fixture
def auth() -> Callable[..., dict]:
    """Principal headers as forwarded by the upstream auth layer"""

    def _headers(user_id: str, role: str = "user") -> dict:
        return {"X-User-Id": user_id, "X-User-Role": role}

    return _headers


@pytest.fixture
def make_auction(db: Session) -> Callable[..., Auction]:
    def _make(
        seller_id: str = "seller",
        starting_price: int = 100,
        name: str = "Vintage Camera",
        ends_in: timedelta = timedelta(hours=1),
    ) -> Auction:
        auction = AuctionRepository(db).create_auction(
            name=name,
            seller_id=seller_id,
            starting_price=starting_price,
            end_time=utcnow() + ends_in,
        )
        db.commit()
        return auction

    return _make


@pytest.fixture
def make_account(db: Session) -> Callable[..., str]:
    def _make(user_id: str, role: str = "user", wallet_balance: int = 0) -> str:
        WalletRepository(db).create_account(user_id, role=role, wallet_balance=wallet_balance)
        db.commit()
        return user_id

    return _make


@pytest.fixture
def make_transaction(db: Session) -> Callable[..., PaymentTransaction]:
    """Insert a transaction directly, bypassing screening"""

    def _make(
        transaction_id: str,
        user_id: str = "buyer",
        amount: int = 500,
        status: str = "pending",
        created_at=None,
        **extra,
    ) -> PaymentTransaction:
        txn = PaymentRepository(db).create_pending(
            transaction_id=transaction_id,
            user_id=user_id,
            amount=amount,
            ip_address="10.0.0.1",
            user_agent="pytest",
            validation=ValidationResult(),
        )
        txn.status = status
        if created_at is not None:
            txn.created_at = created_at
        for key, value in extra.items():
            setattr(txn, key, value)
        db.commit()
        return txn

    return _make
