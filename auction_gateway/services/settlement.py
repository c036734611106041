"""Settlement processor - exactly-once completion of payment transactions"""

import logging
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from auction_gateway.domain.events import (
    DuplicateSettlementAttempt,
    LateFailureIgnored,
    PaymentCompleted,
    PaymentFailed,
    WalletCredited,
    WalletCreditFailed,
)
from auction_gateway.domain.exceptions import (
    SettlementIntegrityError,
    TransactionNotFoundError,
    TransientStoreError,
)
from auction_gateway.domain.models import FLAG_DUPLICATE_ATTEMPT, ReconciliationReport, SettlementResult
from auction_gateway.infrastructure.database.repositories import AuditRepository, PaymentRepository, WalletRepository
from auction_gateway.infrastructure.observability.logging import log_settlement
from auction_gateway.infrastructure.observability.metrics import (
    reconciled_counter,
    settlement_counter,
    settlement_integrity_failure_counter,
)
from auction_gateway.services.notifications import NotificationFanout
from auction_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


class SettlementProcessor:
    """
    Moves a payment from pending to success and credits the wallet.

    Gateway callbacks, client confirmations and admin retries may all call
    `settle` for the same transaction, any number of times and concurrently.
    The conditional pending -> success UPDATE picks exactly one winner; the
    status flip, the wallet increment and the audit entries are committed in
    one database transaction, so a failed credit also undoes the flip.
    """

    def __init__(self, db: Session, fanout: NotificationFanout | None = None):
        self.db = db
        self.payments = PaymentRepository(db)
        self.wallets = WalletRepository(db)
        self.audit = AuditRepository(db)
        self.fanout = fanout

    def settle(self, transaction_id: str, ip_address: str = "unknown", user_agent: str = "unknown") -> SettlementResult:
        """
        Settle a transaction exactly once.

        Returns:
            SettlementResult with already_processed=True for every caller but the winner

        Raises:
            TransactionNotFoundError: No transaction with this id
            SettlementIntegrityError: The winner could not credit the wallet (alert)
            TransientStoreError: Database unavailable, nothing was committed
        """
        now = utcnow()
        try:
            won = self.payments.mark_success_if_pending(transaction_id, now)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Settlement status update failed: {e}", extra={"transaction_id": transaction_id})
            raise TransientStoreError("Payment store unavailable") from e

        if not won:
            self.db.rollback()
            return self._already_processed(transaction_id, ip_address, user_agent)

        user_id = None
        amount = 0
        try:
            txn = self.payments.get_by_transaction_id(transaction_id)
            user_id, amount = txn.user_id, txn.amount
            credited = self.wallets.credit(user_id, amount)
            failure = None if credited else f"wallet account {user_id} not found"
        except SQLAlchemyError as e:
            failure = str(e)

        if failure is not None:
            self.db.rollback()
            self._integrity_failure(transaction_id, user_id, amount, failure, ip_address, user_agent)

        context = dict(transaction_id=transaction_id, user_id=user_id, ip_address=ip_address, user_agent=user_agent)
        try:
            self.audit.record(PaymentCompleted(amount=amount, **context))
            self.audit.record(WalletCredited(amount=amount, **context))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Settlement commit failed: {e}", extra={"transaction_id": transaction_id})
            raise TransientStoreError("Payment store unavailable") from e

        settlement_counter.labels(outcome="settled").inc()
        log_settlement(transaction_id, "settled", user_id=user_id, amount=amount)

        result = SettlementResult(transaction_id=transaction_id, already_processed=False, user_id=user_id, amount=amount)
        if self.fanout is not None:
            self.fanout.payment_settled(result)
        return result

    def _already_processed(self, transaction_id: str, ip_address: str, user_agent: str) -> SettlementResult:
        txn = self.payments.get_by_transaction_id(transaction_id)
        if txn is None:
            raise TransactionNotFoundError(transaction_id)

        try:
            self.audit.record(
                DuplicateSettlementAttempt(
                    transaction_id=transaction_id,
                    user_id=txn.user_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    security_flags=[FLAG_DUPLICATE_ATTEMPT],
                    current_status=txn.status,
                )
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Failed to audit duplicate settlement: {e}", extra={"transaction_id": transaction_id})

        settlement_counter.labels(outcome="already_processed").inc()
        log_settlement(transaction_id, "already_processed", user_id=txn.user_id)
        return SettlementResult(
            transaction_id=transaction_id,
            already_processed=True,
            status=txn.status,
            user_id=txn.user_id,
            amount=txn.amount,
        )

    def _integrity_failure(
        self,
        transaction_id: str,
        user_id: str | None,
        amount: int,
        reason: str,
        ip_address: str,
        user_agent: str,
    ) -> None:
        settlement_integrity_failure_counter.inc()
        logger.critical(
            "Settlement won but wallet credit failed; transaction left pending",
            extra={"transaction_id": transaction_id, "user_id": user_id, "amount": amount, "reason": reason},
        )
        try:
            self.audit.record(
                WalletCreditFailed(
                    transaction_id=transaction_id,
                    user_id=user_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    amount=amount,
                    reason=reason,
                )
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to audit settlement failure: {e}", extra={"transaction_id": transaction_id})
        raise SettlementIntegrityError(transaction_id, reason)

    def mark_failed(
        self,
        transaction_id: str,
        reason: str,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
    ) -> bool:
        """pending -> failed; False if the transaction had already left pending"""
        txn = self.payments.get_by_transaction_id(transaction_id)
        if txn is None:
            raise TransactionNotFoundError(transaction_id)
        user_id = txn.user_id

        try:
            changed = self.payments.mark_failed_if_pending(transaction_id, reason, utcnow())
            context = dict(transaction_id=transaction_id, user_id=user_id, ip_address=ip_address, user_agent=user_agent)
            if changed:
                self.audit.record(PaymentFailed(reason=reason, **context))
            else:
                current = self.payments.get_by_transaction_id(transaction_id)
                self.audit.record(LateFailureIgnored(reason=reason, current_status=current.status, **context))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise TransientStoreError("Payment store unavailable") from e

        if changed:
            settlement_counter.labels(outcome="failed").inc()
        log_settlement(transaction_id, "failed" if changed else "failed_noop", user_id=user_id)
        return changed

    def reconcile_uncredited(self, limit: int = 100) -> ReconciliationReport:
        """
        Credit transactions marked success whose wallet credit never landed
        (manual status edits, legacy writes). Each one is claimed with a
        conditional update, so concurrent sweeps credit it once.
        """
        report = ReconciliationReport()
        candidates = [
            (txn.transaction_id, txn.user_id, txn.amount)
            for txn in self.payments.list_settled_uncredited(limit=limit)
        ]
        for transaction_id, user_id, amount in candidates:
            try:
                if not self.payments.claim_uncredited(transaction_id, utcnow()):
                    self.db.rollback()
                    continue
                if not self.wallets.credit(user_id, amount):
                    raise LookupError(f"wallet account {user_id} not found")
                self.audit.record(
                    WalletCredited(
                        transaction_id=transaction_id,
                        user_id=user_id,
                        ip_address="reconciliation",
                        amount=amount,
                        reconciled=True,
                    )
                )
                self.db.commit()
            except (SQLAlchemyError, LookupError) as e:
                self.db.rollback()
                settlement_integrity_failure_counter.inc()
                logger.critical(
                    f"Reconciliation credit failed: {e}",
                    extra={"transaction_id": transaction_id, "user_id": user_id, "amount": amount},
                )
                report.failed.append(transaction_id)
                continue

            reconciled_counter.inc()
            log_settlement(transaction_id, "reconciled", user_id=user_id, amount=amount)
            report.credited.append(transaction_id)

        return report
