"""SQLAlchemy ORM models for auctions, payments, wallets and the audit trail"""

import uuid
from sqlalchemy import Column, String, BigInteger, Boolean, DateTime, Integer, ForeignKey, Text, JSON, Index
from sqlalchemy.orm import declarative_base, relationship
from auction_gateway.utils.date_utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class UserAccount(Base):
    """Principal holding a wallet balance"""

    __tablename__ = "user_account"

    id = Column(String(64), primary_key=True, default=_uuid)
    role = Column(Text, nullable=False, default="user")
    wallet_balance = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Auction(Base):
    """Timed listing; current_price moves only through conditional updates"""

    __tablename__ = "auction"

    id = Column(String(64), primary_key=True, default=_uuid)
    name = Column(Text, nullable=False)
    seller_id = Column(String(64), nullable=False, index=True)
    starting_price = Column(BigInteger, nullable=False, default=0)
    current_price = Column(BigInteger, nullable=False, default=0)
    end_time = Column(DateTime, nullable=False)
    status = Column(Text, nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Newest first: bid ids grow with acceptance order
    bids = relationship(
        "Bid",
        back_populates="auction",
        order_by="Bid.id.desc()",
        cascade="all, delete-orphan",
    )


class Bid(Base):
    """Accepted bid, never updated or deleted"""

    __tablename__ = "bid"

    id = Column(Integer, primary_key=True, autoincrement=True)
    auction_id = Column(String(64), ForeignKey("auction.id", ondelete="CASCADE"), nullable=False, index=True)
    bidder_id = Column(String(64), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    auction = relationship("Auction", back_populates="bids")


class PaymentTransaction(Base):
    """Wallet top-up; status leaves pending at most once"""

    __tablename__ = "payment_transaction"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(64), nullable=False, unique=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    payment_method = Column(Text, nullable=False, default="esewa")
    payment_type = Column(Text, nullable=False, default="wallet_load")
    status = Column(Text, nullable=False, default="pending", index=True)
    failure_reason = Column(Text, nullable=True)
    ip_address = Column(Text, nullable=False)
    user_agent = Column(Text, nullable=True)
    fraud_score = Column(Integer, nullable=False, default=0)
    risk_level = Column(Text, nullable=False, default="low")
    security_flags = Column(JSON, nullable=False, default=list)
    verification_attempts = Column(Integer, nullable=False, default=0)
    last_verification_attempt = Column(DateTime, nullable=True)
    wallet_credited = Column(Boolean, nullable=False, default=False)
    settled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_payment_user_status_created", "user_id", "status", "created_at"),
        Index("ix_payment_fraud_created", "fraud_score", "created_at"),
    )


class AuditLog(Base):
    """Append-only audit trail for payment events"""

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(64), nullable=False, index=True)
    event_type = Column(Text, nullable=False, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    ip_address = Column(Text, nullable=False, default="unknown")
    user_agent = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default="info")
    error_message = Column(Text, nullable=True)
    error_code = Column(Text, nullable=True)
    security_flags = Column(JSON, nullable=False, default=list)
    event_data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
