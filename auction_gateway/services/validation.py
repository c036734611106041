"""Transaction validator - screening in front of payment initiation"""

import logging
from typing import List, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from auction_gateway.config import Settings, settings as default_settings
from auction_gateway.domain.models import (
    HistoryEntry,
    PaymentCandidate,
    PaymentStatus,
    RiskLevel,
    ValidationResult,
)
from auction_gateway.domain.scoring import score_transaction
from auction_gateway.infrastructure.cache.ip_reputation import IPReputationStore
from auction_gateway.infrastructure.database.repositories import PaymentRepository
from auction_gateway.infrastructure.observability.logging import log_payment_decision
from auction_gateway.infrastructure.observability.metrics import fail_open_counter, record_validation
from auction_gateway.utils.date_utils import utcnow, window_start

logger = logging.getLogger(__name__)

FRAUD_BLOCK_MESSAGE = "Transaction blocked due to high fraud risk. Please contact support."
DUPLICATE_MESSAGE = "Duplicate transaction detected. Please wait before retrying."


class TransactionValidator:
    """
    Ordered screening, short-circuiting on the first hard failure:
    amount bounds, velocity, duplicate submission, IP reputation, fraud score.

    Velocity, duplicate and history lookups fail open: an unavailable store
    is logged and counted but never blocks payments on its own.
    """

    def __init__(self, db: Session, ip_store: IPReputationStore, config: Settings | None = None):
        self.payments = PaymentRepository(db)
        self.ip_store = ip_store
        self.config = config or default_settings

    def check_amount(self, amount: int) -> Optional[str]:
        if amount < self.config.min_payment_amount:
            return f"Amount must be at least NPR {self.config.min_payment_amount}"
        if amount > self.config.max_payment_amount:
            return f"Amount cannot exceed NPR {self.config.max_payment_amount}"
        return None

    def check_velocity(self, user_id: str) -> Optional[str]:
        since = window_start(self.config.payment_velocity_window_seconds)
        try:
            count = self.payments.count_recent(
                user_id, [PaymentStatus.PENDING.value, PaymentStatus.SUCCESS.value], since
            )
        except SQLAlchemyError as e:
            fail_open_counter.labels(check="velocity").inc()
            logger.error(f"Velocity check error: {e}", extra={"user_id": user_id})
            return None

        if count >= self.config.payment_velocity_limit:
            return (
                "Transaction velocity limit exceeded. "
                f"Maximum {self.config.payment_velocity_limit} transactions per hour."
            )
        return None

    def check_duplicate(self, user_id: str, amount: int) -> Optional[str]:
        since = window_start(self.config.duplicate_window_seconds)
        try:
            existing = self.payments.find_pending_duplicate(user_id, amount, since)
        except SQLAlchemyError as e:
            fail_open_counter.labels(check="duplicate").inc()
            logger.error(f"Duplicate check error: {e}", extra={"user_id": user_id})
            return None
        return DUPLICATE_MESSAGE if existing is not None else None

    def load_history(self, user_id: str) -> Optional[List[HistoryEntry]]:
        try:
            return self.payments.recent_history(user_id, limit=self.config.risk_history_limit)
        except SQLAlchemyError as e:
            fail_open_counter.labels(check="history").inc()
            logger.error(f"Error fetching transaction history: {e}", extra={"user_id": user_id})
            return None

    def validate(self, user_id: str, amount: int, ip_address: str, user_agent: str = "unknown") -> ValidationResult:
        result = ValidationResult()

        reason = self.check_amount(amount)
        if reason:
            return self._finish(user_id, amount, result.deny("amount", reason))

        reason = self.check_velocity(user_id)
        if reason:
            return self._finish(user_id, amount, result.deny("velocity", reason))

        reason = self.check_duplicate(user_id, amount)
        if reason:
            return self._finish(user_id, amount, result.deny("duplicate", reason))

        ip_reputation = self.ip_store.reputation(ip_address, user_id)
        if ip_reputation.is_suspicious:
            result.warnings.append(f"IP flagged: {ip_reputation.reason}")

        history = self.load_history(user_id)
        if history is None:
            result.warnings.append("Transaction history unavailable; history checks skipped")

        candidate = PaymentCandidate(user_id=user_id, amount=amount, ip_address=ip_address, user_agent=user_agent)
        assessment = score_transaction(
            candidate,
            history,
            ip_reputation,
            now=utcnow(),
            high_value_threshold=self.config.high_value_transaction_threshold,
        )
        result.fraud_score = assessment.score
        result.risk_level = assessment.risk_level
        result.flags = assessment.flags

        if assessment.risk_level == RiskLevel.HIGH:
            result.deny("fraud", FRAUD_BLOCK_MESSAGE)

        self.ip_store.track_attempt(ip_address, user_id)
        return self._finish(user_id, amount, result)

    def _finish(self, user_id: str, amount: int, result: ValidationResult) -> ValidationResult:
        record_validation(result.allowed, result.denial, result.risk_level.value)
        log_payment_decision(
            user_id=user_id,
            amount=amount,
            allowed=result.allowed,
            fraud_score=result.fraud_score,
            risk_level=result.risk_level.value,
            flags=result.flags,
            errors=result.errors,
        )
        return result
