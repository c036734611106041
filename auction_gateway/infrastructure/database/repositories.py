"""Data access layer for auctions, payments, wallets and audit entries.

Shared mutable rows (auction price, payment status, wallet balance) are only
changed through single conditional UPDATE statements; callers check the
returned row count instead of reading first and saving afterwards.
"""

from datetime import datetime
from typing import Iterable, List, Optional
from sqlalchemy import select, update, func, or_
from sqlalchemy.orm import Session, selectinload
from auction_gateway.infrastructure.database.models import Auction, Bid, PaymentTransaction, UserAccount, AuditLog
from auction_gateway.domain.events import AuditEvent
from auction_gateway.domain.models import (
    AuctionSnapshot,
    BidRecord,
    HistoryEntry,
    PaymentStatus,
    ValidationResult,
)


def to_snapshot(auction: Auction) -> AuctionSnapshot:
    """Map ORM auction (with loaded bids) to its domain snapshot"""
    return AuctionSnapshot(
        id=auction.id,
        name=auction.name,
        seller_id=auction.seller_id,
        starting_price=auction.starting_price,
        current_price=auction.current_price,
        end_time=auction.end_time,
        status=auction.status,
        bids=[BidRecord(bidder_id=b.bidder_id, amount=b.amount, timestamp=b.created_at) for b in auction.bids],
    )


class AuctionRepository:
    """Repository for auctions and their bids"""

    def __init__(self, db: Session):
        self.db = db

    def create_auction(
        self,
        name: str,
        seller_id: str,
        starting_price: int,
        end_time: datetime,
    ) -> Auction:
        """Persist a new auction; price starts at the starting price"""
        auction = Auction(
            name=name,
            seller_id=seller_id,
            starting_price=starting_price,
            current_price=starting_price,
            end_time=end_time,
        )
        self.db.add(auction)
        self.db.flush()
        return auction

    def get_auction(self, auction_id: str) -> Optional[Auction]:
        """Fetch auction with bids, bypassing any stale identity-map copy"""
        return (
            self.db.execute(
                select(Auction)
                .where(Auction.id == auction_id)
                .options(selectinload(Auction.bids))
                .execution_options(populate_existing=True)
            )
            .scalars()
            .first()
        )

    def raise_price(self, auction_id: str, bidder_id: str, amount: int, now: datetime) -> bool:
        """
        Move current_price to `amount` only if every bid precondition still
        holds at write time. Returns False when another writer got there first.
        """
        result = self.db.execute(
            update(Auction)
            .where(
                Auction.id == auction_id,
                Auction.seller_id != bidder_id,
                Auction.end_time >= now,
                Auction.current_price < amount,
            )
            .values(current_price=amount, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def add_bid(self, auction_id: str, bidder_id: str, amount: int, now: datetime) -> Bid:
        bid = Bid(auction_id=auction_id, bidder_id=bidder_id, amount=amount, created_at=now)
        self.db.add(bid)
        self.db.flush()
        return bid

    def leading_bidder_id(self, auction_id: str) -> Optional[str]:
        """Bidder of the newest bid, read inside the caller's transaction"""
        return self.db.execute(
            select(Bid.bidder_id).where(Bid.auction_id == auction_id).order_by(Bid.id.desc()).limit(1)
        ).scalar_one_or_none()

    def prior_bidder_ids(self, auction_id: str, exclude: str) -> List[str]:
        """Distinct earlier bidders, most recent first"""
        rows = self.db.execute(
            select(Bid.bidder_id, func.max(Bid.id).label("last_bid"))
            .where(Bid.auction_id == auction_id, Bid.bidder_id != exclude)
            .group_by(Bid.bidder_id)
            .order_by(func.max(Bid.id).desc())
        ).all()
        return [row.bidder_id for row in rows]


class PaymentRepository:
    """Repository for payment transactions"""

    def __init__(self, db: Session):
        self.db = db

    def create_pending(
        self,
        transaction_id: str,
        user_id: str,
        amount: int,
        ip_address: str,
        user_agent: Optional[str],
        validation: ValidationResult,
        payment_method: str = "esewa",
    ) -> PaymentTransaction:
        """Persist a pending transaction together with the risk verdict that allowed it"""
        txn = PaymentTransaction(
            transaction_id=transaction_id,
            user_id=user_id,
            amount=amount,
            payment_method=payment_method,
            status=PaymentStatus.PENDING.value,
            ip_address=ip_address,
            user_agent=user_agent,
            fraud_score=validation.fraud_score,
            risk_level=validation.risk_level.value,
            security_flags=list(validation.flags),
        )
        self.db.add(txn)
        self.db.flush()
        return txn

    def get_by_transaction_id(self, transaction_id: str) -> Optional[PaymentTransaction]:
        return (
            self.db.execute(
                select(PaymentTransaction)
                .where(PaymentTransaction.transaction_id == transaction_id)
                .execution_options(populate_existing=True)
            )
            .scalars()
            .first()
        )

    def mark_success_if_pending(self, transaction_id: str, now: datetime) -> bool:
        """pending -> success; the single serialization point for settlement"""
        result = self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.transaction_id == transaction_id,
                PaymentTransaction.status == PaymentStatus.PENDING.value,
            )
            .values(status=PaymentStatus.SUCCESS.value, wallet_credited=True, settled_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_failed_if_pending(self, transaction_id: str, reason: str, now: datetime) -> bool:
        result = self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.transaction_id == transaction_id,
                PaymentTransaction.status == PaymentStatus.PENDING.value,
            )
            .values(status=PaymentStatus.FAILED.value, failure_reason=reason, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def claim_uncredited(self, transaction_id: str, now: datetime) -> bool:
        """Flip wallet_credited for a settled-but-uncredited transaction"""
        result = self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.transaction_id == transaction_id,
                PaymentTransaction.status == PaymentStatus.SUCCESS.value,
                PaymentTransaction.wallet_credited.is_(False),
            )
            .values(wallet_credited=True, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def record_verification_attempt(self, transaction_id: str, now: datetime) -> None:
        self.db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.transaction_id == transaction_id)
            .values(
                verification_attempts=PaymentTransaction.verification_attempts + 1,
                last_verification_attempt=now,
            )
            .execution_options(synchronize_session=False)
        )

    def count_recent(self, user_id: str, statuses: Iterable[str], since: datetime) -> int:
        """Index-backed count of a user's transactions in a time window"""
        return self.db.execute(
            select(func.count(PaymentTransaction.id)).where(
                PaymentTransaction.user_id == user_id,
                PaymentTransaction.status.in_(list(statuses)),
                PaymentTransaction.created_at >= since,
            )
        ).scalar_one()

    def find_pending_duplicate(self, user_id: str, amount: int, since: datetime) -> Optional[PaymentTransaction]:
        return (
            self.db.execute(
                select(PaymentTransaction)
                .where(
                    PaymentTransaction.user_id == user_id,
                    PaymentTransaction.amount == amount,
                    PaymentTransaction.status == PaymentStatus.PENDING.value,
                    PaymentTransaction.created_at >= since,
                )
                .limit(1)
            )
            .scalars()
            .first()
        )

    def recent_history(self, user_id: str, limit: int = 10) -> List[HistoryEntry]:
        """Most recent transactions for risk scoring"""
        rows = (
            self.db.execute(
                select(PaymentTransaction)
                .where(PaymentTransaction.user_id == user_id)
                .order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
                .limit(limit)
            )
            .scalars()
            .all()
        )
        return [HistoryEntry(amount=t.amount, status=t.status, created_at=t.created_at) for t in rows]

    def list_successful(self, user_id: str) -> List[PaymentTransaction]:
        return (
            self.db.execute(
                select(PaymentTransaction)
                .where(
                    PaymentTransaction.user_id == user_id,
                    PaymentTransaction.status == PaymentStatus.SUCCESS.value,
                )
                .order_by(PaymentTransaction.created_at.desc())
            )
            .scalars()
            .all()
        )

    def list_failed(self, limit: int = 100) -> List[PaymentTransaction]:
        return (
            self.db.execute(
                select(PaymentTransaction)
                .where(PaymentTransaction.status == PaymentStatus.FAILED.value)
                .order_by(PaymentTransaction.created_at.desc())
                .limit(limit)
            )
            .scalars()
            .all()
        )

    def list_suspicious(self, since: datetime, min_score: int = 40, limit: int = 50) -> List[PaymentTransaction]:
        """High fraud score or failed, riskiest first"""
        return (
            self.db.execute(
                select(PaymentTransaction)
                .where(
                    PaymentTransaction.created_at >= since,
                    or_(
                        PaymentTransaction.fraud_score >= min_score,
                        PaymentTransaction.status == PaymentStatus.FAILED.value,
                    ),
                )
                .order_by(PaymentTransaction.fraud_score.desc(), PaymentTransaction.created_at.desc())
                .limit(limit)
            )
            .scalars()
            .all()
        )

    def list_settled_uncredited(self, limit: int = 100) -> List[PaymentTransaction]:
        return (
            self.db.execute(
                select(PaymentTransaction)
                .where(
                    PaymentTransaction.status == PaymentStatus.SUCCESS.value,
                    PaymentTransaction.wallet_credited.is_(False),
                )
                .order_by(PaymentTransaction.created_at)
                .limit(limit)
            )
            .scalars()
            .all()
        )


class WalletRepository:
    """Repository for user wallet balances"""

    def __init__(self, db: Session):
        self.db = db

    def create_account(self, user_id: str, role: str = "user", wallet_balance: int = 0) -> UserAccount:
        account = UserAccount(id=user_id, role=role, wallet_balance=wallet_balance)
        self.db.add(account)
        self.db.flush()
        return account

    def credit(self, user_id: str, amount: int) -> bool:
        """Atomic increment; False if the account does not exist"""
        result = self.db.execute(
            update(UserAccount)
            .where(UserAccount.id == user_id)
            .values(wallet_balance=UserAccount.wallet_balance + amount)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def get_balance(self, user_id: str) -> Optional[int]:
        return self.db.execute(
            select(UserAccount.wallet_balance).where(UserAccount.id == user_id)
        ).scalar_one_or_none()


class AuditRepository:
    """Repository for the payment audit trail"""

    def __init__(self, db: Session):
        self.db = db

    def record(self, event: AuditEvent) -> AuditLog:
        """Stage an audit entry in the caller's transaction"""
        entry = AuditLog(
            transaction_id=event.transaction_id,
            event_type=event.event_type,
            user_id=event.user_id,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            status=event.status,
            error_message=event.error_message,
            error_code=event.error_code,
            security_flags=list(event.security_flags),
            event_data=event.event_data(),
        )
        self.db.add(entry)
        return entry

    def get_trail(self, transaction_id: str) -> List[AuditLog]:
        """Audit entries for one transaction, oldest first"""
        return (
            self.db.execute(
                select(AuditLog)
                .where(AuditLog.transaction_id == transaction_id)
                .order_by(AuditLog.created_at, AuditLog.id)
            )
            .scalars()
            .all()
        )
