"""Dependency injection for FastAPI endpoints"""

from dataclasses import dataclass
from typing import Optional
import redis
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session
from auction_gateway.infrastructure.cache.ip_reputation import IPReputationStore
from auction_gateway.infrastructure.cache.redis_client import get_redis
from auction_gateway.infrastructure.clients.esewa import EsewaClient
from auction_gateway.infrastructure.database.session import get_db
from auction_gateway.infrastructure.realtime.publisher import EventPublisher, RedisEventPublisher
from auction_gateway.services.bidding import BidEngine
from auction_gateway.services.notifications import NotificationFanout
from auction_gateway.services.payments import PaymentService
from auction_gateway.services.settlement import SettlementProcessor
from auction_gateway.services.validation import TransactionValidator

ADMIN_ROLE = "admin"


@dataclass
class Principal:
    """Authenticated caller, resolved upstream and forwarded in headers"""

    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "unknown")


def get_principal(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Principal:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return Principal(user_id=x_user_id, role=x_user_role or "user")


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return principal


def get_redis_client() -> redis.Redis:
    return get_redis()


def get_ip_store(client: redis.Redis = Depends(get_redis_client)) -> IPReputationStore:
    return IPReputationStore(client)


def get_publisher(client: redis.Redis = Depends(get_redis_client)) -> EventPublisher:
    return RedisEventPublisher(client)


def get_fanout(publisher: EventPublisher = Depends(get_publisher)) -> NotificationFanout:
    return NotificationFanout(publisher)


def get_gateway_client() -> EsewaClient:
    """Provide eSewa gateway client instance"""
    return EsewaClient()


def get_bid_engine(
    db: Session = Depends(get_db),
    fanout: NotificationFanout = Depends(get_fanout),
) -> BidEngine:
    return BidEngine(db, fanout)


def get_settlement_processor(
    db: Session = Depends(get_db),
    fanout: NotificationFanout = Depends(get_fanout),
) -> SettlementProcessor:
    return SettlementProcessor(db, fanout)


def get_payment_service(
    db: Session = Depends(get_db),
    ip_store: IPReputationStore = Depends(get_ip_store),
    settlement: SettlementProcessor = Depends(get_settlement_processor),
    gateway: EsewaClient = Depends(get_gateway_client),
) -> PaymentService:
    return PaymentService(db, TransactionValidator(db, ip_store), settlement, gateway)
